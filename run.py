#!/usr/bin/env python3
"""
ReconSpider - Web Reconnaissance Crawler
Web UI / API entry point
"""

import os

from reconspider import create_app, socketio
from reconspider.config import DevelopmentConfig, ProductionConfig

config_class = ProductionConfig if os.environ.get('RECONSPIDER_ENV') == 'production' else DevelopmentConfig
app = create_app(config_class)

if __name__ == '__main__':
    print("""
    ╔══════════════════════════════════════════════════════════╗
    ║     🕷️  ReconSpider - Web Reconnaissance Crawler 🕷️        ║
    ║                                                          ║
    ║  ⚠️  Use responsibly and only on authorized targets!     ║
    ╚══════════════════════════════════════════════════════════╝
    """)
    socketio.run(app, debug=app.config['DEBUG'], host='0.0.0.0', port=5000,
                 allow_unsafe_werkzeug=True)
