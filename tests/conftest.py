"""
Pytest Configuration and Fixtures
Shared fixtures for all test modules
"""

import pytest
import os
import sys
import json
import threading
from unittest.mock import Mock

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, project_root)

from reconspider.config import CrawlConfig


# ============================================================
# CONFIGURATION
# ============================================================

def pytest_configure(config):
    """Configure pytest"""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "live: marks tests that require live network access"
    )
    config.addinivalue_line(
        "markers", "unit: marks unit tests"
    )
    config.addinivalue_line(
        "markers", "integration: marks integration tests"
    )


# ============================================================
# FAKE HTTP SITE
# ============================================================

class FakePage:
    """One canned response of the fake site"""

    def __init__(self, body='', status=200, content_type='text/html; charset=utf-8',
                 headers=None, redirect_to=None, error=None):
        self.body = body.encode('utf-8') if isinstance(body, str) else body
        self.status = status
        self.headers = {'Content-Type': content_type}
        self.headers.update(headers or {})
        self.redirect_to = redirect_to
        self.error = error


def make_response(url, status=200, headers=None, body=b'', history=None):
    """Mock requests.Response supporting streamed reads"""
    response = Mock()
    response.status_code = status
    response.headers = dict(headers or {})
    response.url = url
    response.history = list(history or [])
    response.text = body.decode('utf-8', errors='replace')
    response.content = body

    def iter_content(chunk_size=1, decode_unicode=False):
        for start in range(0, len(body), chunk_size):
            yield body[start:start + chunk_size]

    response.iter_content = Mock(side_effect=iter_content)
    response.close = Mock()
    return response


class FakeSession:
    """
    In-memory stand-in for requests.Session

    Pages are keyed by canonical URL; anything else answers 404.
    """

    def __init__(self, pages=None):
        self.pages = dict(pages or {})
        self.requests = []
        self.headers = {}
        self.closed = False
        self._lock = threading.Lock()

    def add(self, url, body='', **kwargs):
        self.pages[url] = FakePage(body, **kwargs)
        return self

    def request(self, method, url, **kwargs):
        with self._lock:
            self.requests.append((method, url, kwargs))
        page = self.pages.get(url)
        if page is None:
            return make_response(url, 404, {'Content-Type': 'text/html'}, b'<html><body>Not Found</body></html>')
        if page.error is not None:
            raise page.error
        if page.redirect_to:
            target = self.pages.get(page.redirect_to) or FakePage('', status=404)
            hop = Mock()
            hop.url = url
            return make_response(page.redirect_to, target.status, target.headers, target.body, [hop])
        return make_response(url, page.status, page.headers, page.body)

    def get(self, url, **kwargs):
        return self.request('GET', url, **kwargs)

    def close(self):
        self.closed = True

    @property
    def requested_urls(self):
        with self._lock:
            return [url for _, url, _ in self.requests]


@pytest.fixture
def fake_session():
    """Empty fake site"""
    return FakeSession()


# ============================================================
# FIXTURES - CONFIGURATION
# ============================================================

@pytest.fixture
def test_url():
    """Seed URL of the fake site"""
    return "http://example.test/"


@pytest.fixture
def crawl_config(test_url):
    """Factory for fast, deterministic crawl configs"""
    def _make(**overrides):
        config = CrawlConfig(
            target_url=test_url,
            workers=2,
            delay=0,
            timeout=2,
            retry_base=0,
            retry_jitter=0,
            respect_robots=False,
        )
        return config.update(**overrides).validate()
    return _make


# ============================================================
# FIXTURES - TEMPORARY FILES
# ============================================================

@pytest.fixture
def temp_wordlist(tmp_path):
    """Temporary parameter wordlist"""
    path = tmp_path / "params.txt"
    path.write_text("# comment\nsid\nsort\n\nlimit\n", encoding="utf-8")
    return str(path)


@pytest.fixture
def rules_file(tmp_path):
    """User rule catalog overriding one default rule and adding one"""
    path = tmp_path / "rules.json"
    path.write_text(json.dumps({
        "version": "2.0",
        "description": "Test rules",
        "rules": {
            "_comment": "ignored",
            "Email Address": {
                "pattern": r"[a-z]+@corp\.test",
                "severity": "MEDIUM",
                "mask": False,
                "description": "Corporate email"
            },
            "Internal Hostname": {
                "pattern": r"\b[a-z]+\.internal\b",
                "severity": "LOW",
                "description": "Internal host name"
            },
            "Broken": {
                "pattern": "([unclosed",
                "severity": "HIGH"
            },
            "NotAnObject": "skip me"
        }
    }), encoding="utf-8")
    return str(path)


# ============================================================
# FIXTURES - SAMPLE CONTENT
# ============================================================

@pytest.fixture
def sample_html():
    """Page exercising every extractor path"""
    return """
    <!DOCTYPE html>
    <html>
    <head>
        <title>Test Page</title>
        <link rel="stylesheet" href="/css/site.css">
        <link rel="alternate" href="/feed">
        <meta http-equiv="refresh" content="30; url=/refreshed">
    </head>
    <body>
        <a href="/about">About</a>
        <a href="contact#team">Contact</a>
        <a href="https://other.test/page">Elsewhere</a>
        <a href="mailto:admin@example.test">Mail</a>
        <a href="tel:+15551234">Call</a>
        <a href="javascript:void(0)">Nothing</a>
        <img src="/img/logo.png">
        <video src="/media/intro.mp4" poster="/img/poster.jpg"></video>
        <iframe src="/embedded"></iframe>
        <form action="/search" method="get">
            <input type="text" name="q">
            <select name="sort"><option value="new">New</option></select>
            <input type="submit" value="Go">
        </form>
        <form action="/login" method="POST">
            <input type="text" name="username">
            <input type="password" name="password">
        </form>
        <script src="/js/app.js"></script>
        <script>
            fetch("/api/users");
            fetch("/api/orders", {method: "POST", body: JSON.stringify({item: 1, qty: 2})});
            var ws = new WebSocket("wss://example.test/socket");
        </script>
    </body>
    </html>
    """
