"""
Routes package initialization
"""

from reconspider.routes.crawler import crawler_bp
from reconspider.routes.api import api_bp

__all__ = ['crawler_bp', 'api_bp']
