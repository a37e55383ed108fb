"""
Crawler routes - start, monitor and stop crawl runs
"""

import logging
import os
import threading
from typing import Any, Dict

from flask import Blueprint, current_app, jsonify, request
from flask_socketio import emit

from reconspider import socketio
from reconspider.config import CrawlConfig
from reconspider.errors import ConfigError
from reconspider.services.crawler import WebCrawler
from reconspider.services.reporter import ReportWriter

logger = logging.getLogger(__name__)

crawler_bp = Blueprint('crawler', __name__)

# scan_id -> crawler, kept for the lifetime of the process
active_crawls: Dict[str, WebCrawler] = {}
_registry_lock = threading.Lock()


def build_crawler(data: Dict[str, Any], reports_folder: str) -> WebCrawler:
    """
    Build a crawler from a JSON request body

    Raises:
        ConfigError: for unknown keys or invalid values
    """
    if not isinstance(data, dict):
        raise ConfigError("Request body must be a JSON object")
    config = CrawlConfig.from_dict(data).validate()
    crawler = WebCrawler(config)
    prefix = config.output or os.path.join(reports_folder, crawler.scan_id)
    crawler.writers.append(ReportWriter(prefix))
    with _registry_lock:
        active_crawls[crawler.scan_id] = crawler
    return crawler


def get_crawler(scan_id: str):
    with _registry_lock:
        return active_crawls.get(scan_id)


def _run_crawl(crawler: WebCrawler) -> None:
    try:
        crawler.crawl()
    except Exception:
        logger.exception("Crawl %s failed", crawler.scan_id)


def _status(crawler: WebCrawler) -> Dict[str, Any]:
    return {
        'scan_id': crawler.scan_id,
        'target_url': crawler.seed.canonical,
        'status': crawler.status,
        'is_crawling': crawler.is_crawling,
        'pages': len(crawler.get_results()),
        'urls_discovered': len(crawler.get_scope_urls()),
        'findings': len(crawler.get_findings()),
        'metrics': crawler.metrics.snapshot()
    }


# ============ API ROUTES ============

@crawler_bp.route('/crawl', methods=['POST'])
def start_crawl_api():
    """Start a crawl in the background"""
    data = request.get_json(silent=True) or {}

    try:
        crawler = build_crawler(data, current_app.config.get('REPORTS_FOLDER', 'reports'))
    except ConfigError as e:
        return jsonify({'error': str(e)}), 400

    thread = threading.Thread(target=_run_crawl, args=(crawler,), name=f"crawl-{crawler.scan_id}", daemon=True)
    thread.start()

    return jsonify({'scan_id': crawler.scan_id}), 202


@crawler_bp.route('/crawl/<scan_id>', methods=['GET'])
def crawl_status_api(scan_id):
    """Crawl status and metrics snapshot"""
    crawler = get_crawler(scan_id)
    if crawler is None:
        return jsonify({'error': 'Crawl not found'}), 404
    return jsonify(_status(crawler))


@crawler_bp.route('/crawl/<scan_id>/results', methods=['GET'])
def crawl_results_api(scan_id):
    """Summary plus result store"""
    crawler = get_crawler(scan_id)
    if crawler is None:
        return jsonify({'error': 'Crawl not found'}), 404
    return jsonify(crawler.to_dict())


@crawler_bp.route('/crawl/<scan_id>/stop', methods=['POST'])
def stop_crawl_api(scan_id):
    """Cancel a running crawl"""
    crawler = get_crawler(scan_id)
    if crawler is None:
        return jsonify({'error': 'Crawl not found'}), 404
    crawler.stop()
    return jsonify({'scan_id': scan_id, 'status': 'stopping'})


# ============ WEBSOCKET EVENTS ============

@socketio.on('start_crawl')
def handle_start_crawl(data):
    """Handle real-time crawl via WebSocket"""
    try:
        crawler = build_crawler(data or {}, current_app.config.get('REPORTS_FOLDER', 'reports'))
    except ConfigError as e:
        emit('crawl_error', {'error': str(e)})
        return

    emit('crawl_started', {'scan_id': crawler.scan_id})

    def progress_callback(url, depth, status_code):
        emit('crawl_progress', {
            'scan_id': crawler.scan_id,
            'url': url,
            'depth': depth,
            'status_code': status_code,
            'pages': len(crawler.get_results())
        })

    crawler.crawl(callback=progress_callback)
    emit('crawl_complete', crawler.to_dict())
