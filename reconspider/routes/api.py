"""
General API routes
"""

from datetime import datetime

from flask import Blueprint, jsonify

from reconspider import __version__

api_bp = Blueprint('api', __name__)


@api_bp.route('/health')
def health_check():
    """API health check"""
    return jsonify({
        'status': 'healthy',
        'timestamp': datetime.now().isoformat(),
        'version': __version__
    })
