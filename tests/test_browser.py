"""
Tests for Dynamic Extractor
Tests for reconspider/services/browser.py (the browser itself is faked)
"""

import pytest
import sys
import os
import threading

from playwright.sync_api import Error as PlaywrightError

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from reconspider.errors import BrowserUnavailable, CrawlCancelled
from reconspider.models.crawl_result import ApiHint, StaticRef
from reconspider.services.browser import (
    BrowserDriver,
    DynamicExtractor,
    NetworkEntry,
    PlaywrightDriver,
    RenderResult,
    looks_dynamic,
    parse_body_params,
)
from reconspider.services.extractor import StaticExtractor


class FakeDriver(BrowserDriver):
    """Returns a canned render and remembers what it was asked"""

    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = []

    def render(self, url, cancel=None, timeout=None):
        self.calls.append((url, timeout))
        if self.error is not None:
            raise self.error
        return self.result


RENDERED_DOM = """
<html><body>
  <div id="app"><a href="/spa/route">Route</a></div>
</body></html>
"""

TRANSCRIPT = [
    NetworkEntry(method="GET", url="http://example.test/", resource_type="document", status=200),
    NetworkEntry(method="GET", url="http://example.test/bundle.js", resource_type="script", status=200),
    NetworkEntry(method="GET", url="http://example.test/api/session", resource_type="xhr", status=200),
    NetworkEntry(method="POST", url="http://example.test/api/track",
                 headers={"Content-Type": "application/json"}, body='{"event": "view", "meta": {"a": 1}}',
                 resource_type="fetch", status=204),
    NetworkEntry(method="POST", url="http://example.test/login",
                 headers={"content-type": "application/x-www-form-urlencoded; charset=UTF-8"},
                 body="user=admin&pass=", resource_type="document"),
    NetworkEntry(method="GET", url="http://example.test/next-page", resource_type="document"),
    NetworkEntry(method="GET", url="http://example.test/img/hero.png", resource_type="image"),
    NetworkEntry(method="GET", url="http://example.test/css/app.css", resource_type="stylesheet"),
    NetworkEntry(method="GET", url="data:image/png;base64,AAAA", resource_type="image"),
]


class TestLooksDynamic:
    """Tests for the smart-mode heuristic"""

    @pytest.mark.unit
    @pytest.mark.parametrize("html", [
        '<div id="root"></div>',
        '<html ng-app="shop">',
        '<div data-reactroot></div>',
        '<script id="__NEXT_DATA__" type="application/json">{}</script>',
    ])
    def test_spa_markers(self, html):
        """Framework mount points are dynamic"""
        assert looks_dynamic(html)

    @pytest.mark.unit
    def test_script_heavy_link_poor(self):
        """Many external scripts and few links"""
        html = "".join(f'<script src="/s{n}.js"></script>' for n in range(5)) + '<a href="/x">x</a>'
        assert looks_dynamic(html)
        result = StaticExtractor().extract(html, "text/html", "http://example.test/")
        assert looks_dynamic(html, result)

    @pytest.mark.unit
    def test_plain_page(self):
        """Ordinary pages stay static"""
        html = '<script src="/a.js"></script>' + "".join(f'<a href="/p{n}">p</a>' for n in range(10))
        assert not looks_dynamic(html)


class TestDynamicExtractor:
    """Tests for DOM plus transcript extraction"""

    @pytest.mark.unit
    def test_extracts_dom_and_transcript(self):
        """Rendered DOM links and network traffic are merged"""
        driver = FakeDriver(RenderResult(final_url="http://example.test/", dom=RENDERED_DOM,
                                         transcript=TRANSCRIPT))
        extractor = DynamicExtractor(driver, render_timeout=12)

        result = extractor.extract("http://example.test/")

        assert driver.calls == [("http://example.test/", 12)]
        assert "http://example.test/spa/route" in result.links
        assert "http://example.test/next-page" in result.links
        assert "http://example.test/" not in result.links
        assert ApiHint(url="http://example.test/api/session", method="GET", source="network") in result.apis
        assert ApiHint(url="http://example.test/api/track", method="POST", source="network") in result.apis
        assert ApiHint(url="http://example.test/login", method="POST", source="network") in result.apis
        assert "http://example.test/bundle.js" in result.scripts
        assert StaticRef(url="http://example.test/img/hero.png", kind="images") in result.static_refs
        assert StaticRef(url="http://example.test/css/app.css", kind="stylesheet") in result.static_refs

    @pytest.mark.unit
    def test_post_descriptors_from_transcript(self):
        """Non-GET requests become POST descriptors with their body shape"""
        driver = FakeDriver(RenderResult(final_url="http://example.test/", dom="", transcript=TRANSCRIPT))
        result = DynamicExtractor(driver).extract("http://example.test/")

        posts = {p.url: p for p in result.post_requests}
        track = posts["http://example.test/api/track"]
        assert track.content_type == "application/json"
        assert track.params == {"event": "view", "meta": ""}
        login = posts["http://example.test/login"]
        assert login.content_type == "application/x-www-form-urlencoded"
        assert login.params == {"user": "admin", "pass": ""}
        assert all(p.source == "network" for p in result.post_requests)
        assert len(result.post_requests) == 2

    @pytest.mark.unit
    def test_driver_errors(self):
        """Browser failures surface as BrowserUnavailable, cancellation passes through"""
        with pytest.raises(BrowserUnavailable):
            DynamicExtractor(FakeDriver(error=PlaywrightError("Target closed"))).extract("http://example.test/")
        with pytest.raises(BrowserUnavailable):
            DynamicExtractor(FakeDriver(error=BrowserUnavailable("gone"))).extract("http://example.test/")
        with pytest.raises(CrawlCancelled):
            DynamicExtractor(FakeDriver(error=CrawlCancelled("stop"))).extract("http://example.test/")


class TestHelpers:
    """Tests for body parsing and driver guards"""

    @pytest.mark.unit
    def test_parse_body_params(self):
        """Form-encoded and JSON bodies"""
        assert parse_body_params("a=1&b=&a=2", "application/x-www-form-urlencoded") == {"a": "1", "b": ""}
        assert parse_body_params('{"x": 1, "y": [1]}', "application/json") == {"x": "1", "y": ""}
        assert parse_body_params("[1, 2]", "application/json") == {}
        assert parse_body_params("not json", "application/json") == {}
        assert parse_body_params(None, "application/json") == {}

    @pytest.mark.unit
    def test_render_requires_start(self, crawl_config):
        """An unstarted driver refuses to render"""
        driver = PlaywrightDriver(crawl_config())
        with pytest.raises(BrowserUnavailable):
            driver.render("http://example.test/", threading.Event())

    @pytest.mark.unit
    def test_base_driver_context_manager(self):
        """Drivers can be used as context managers"""
        driver = FakeDriver(RenderResult(final_url="u", dom=""))
        with driver as entered:
            assert entered is driver
