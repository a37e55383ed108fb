"""
Flask Application Factory
"""

import os

from flask import Flask
from flask_socketio import SocketIO

__version__ = '1.0.0'

socketio = SocketIO()


def create_app(config_class=None):
    """Create and configure the Flask application"""

    app = Flask(__name__)

    # Load configuration
    if config_class:
        app.config.from_object(config_class)
    else:
        from reconspider.config import Config
        app.config.from_object(Config)

    # Initialize extensions
    socketio.init_app(app, cors_allowed_origins="*", async_mode='threading')

    # Register blueprints
    from reconspider.routes.crawler import crawler_bp
    from reconspider.routes.api import api_bp

    app.register_blueprint(crawler_bp, url_prefix='/api')
    app.register_blueprint(api_bp, url_prefix='/api')

    # Create necessary directories
    os.makedirs(app.config.get('REPORTS_FOLDER', 'reports'), exist_ok=True)

    return app
