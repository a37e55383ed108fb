"""
Tests for Fetcher and Fetch Pool
Tests for reconspider/services/fetcher.py
"""

import pytest
import sys
import os
import queue
import threading
import time

import requests

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from reconspider.errors import ErrorKind
from reconspider.models.crawl_result import ItemState, ResultRecord, WorkItem
from reconspider.services.canonicalizer import canonicalize
from reconspider.services.fetcher import (
    CompletedFetch,
    CrawlMetrics,
    Fetcher,
    FetchPool,
    HostPacer,
    Rotator,
    backoff_delay,
)
from reconspider.services.frontier import Frontier


def work(url, method="GET", **kwargs):
    return WorkItem(url=canonicalize(url), method=method, **kwargs)


# ============================================================
# FETCHER TESTS
# ============================================================

class TestFetcher:
    """Tests for single-item fetching"""

    @pytest.mark.unit
    def test_success(self, crawl_config, fake_session):
        """2xx responses carry status, headers and body"""
        fake_session.add("http://example.test/", "<html>hi</html>")
        fetcher = Fetcher(crawl_config(user_agents=["UA-1", "UA-2"]), session=fake_session)

        outcome = fetcher.fetch(work("http://example.test/"))

        assert outcome.status_code == 200
        assert outcome.body == b"<html>hi</html>"
        assert outcome.attempts == 1
        assert outcome.error is None
        assert outcome.extractable and not outcome.failed
        assert fake_session.requests[0][2]['headers']['User-Agent'] == "UA-1"
        assert fake_session.requests[0][2]['stream'] is True

    @pytest.mark.unit
    def test_user_agent_rotation(self, crawl_config, fake_session):
        """User agents rotate round-robin"""
        fake_session.add("http://example.test/", "ok")
        fetcher = Fetcher(crawl_config(user_agents=["UA-1", "UA-2"]), session=fake_session)
        for _ in range(3):
            fetcher.fetch(work("http://example.test/"))
        agents = [kwargs['headers']['User-Agent'] for _, _, kwargs in fake_session.requests]
        assert agents == ["UA-1", "UA-2", "UA-1"]

    @pytest.mark.unit
    def test_proxy_rotation(self, crawl_config, fake_session):
        """Proxies rotate round-robin"""
        fake_session.add("http://example.test/", "ok")
        fetcher = Fetcher(crawl_config(proxies=["http://p1:8080", "http://p2:8080"]), session=fake_session)
        for _ in range(2):
            fetcher.fetch(work("http://example.test/"))
        proxies = [kwargs['proxies']['http'] for _, _, kwargs in fake_session.requests]
        assert proxies == ["http://p1:8080", "http://p2:8080"]

    @pytest.mark.unit
    def test_proxy_from_environment(self, crawl_config, fake_session, monkeypatch):
        """Proxy environment variables apply when none is configured"""
        for name in ("HTTPS_PROXY", "https_proxy", "HTTP_PROXY", "http_proxy"):
            monkeypatch.delenv(name, raising=False)
        monkeypatch.setenv("HTTP_PROXY", "http://envproxy:3128")
        fake_session.add("http://example.test/", "ok")
        fetcher = Fetcher(crawl_config(), session=fake_session)
        fetcher.fetch(work("http://example.test/"))
        assert fake_session.requests[0][2]['proxies']['https'] == "http://envproxy:3128"

    @pytest.mark.unit
    def test_client_error_not_retried(self, crawl_config, fake_session):
        """4xx is recorded without retry or extraction"""
        fetcher = Fetcher(crawl_config(), session=fake_session)
        outcome = fetcher.fetch(work("http://example.test/missing"))

        assert outcome.status_code == 404
        assert outcome.attempts == 1
        assert outcome.error == "HTTP 404"
        assert outcome.error_kind == ErrorKind.FETCH_HTTP_ERROR
        assert not outcome.extractable
        assert not outcome.failed

    @pytest.mark.unit
    def test_server_error_retried_then_failed(self, crawl_config, fake_session):
        """5xx is retried up to max_attempts, then failed"""
        fake_session.add("http://example.test/boom", "oops", status=503)
        metrics = CrawlMetrics()
        fetcher = Fetcher(crawl_config(max_attempts=3), session=fake_session, metrics=metrics)

        outcome = fetcher.fetch(work("http://example.test/boom"))

        assert outcome.attempts == 3
        assert outcome.failed
        assert len(fake_session.requests) == 3
        assert metrics.get('retries') == 2
        assert metrics.get('failures') == 1
        assert metrics.snapshot()['status_codes'] == {503: 3}

    @pytest.mark.unit
    def test_timeout_is_retryable(self, crawl_config, fake_session):
        """Timeouts are classified and retried for GET"""
        fake_session.add("http://example.test/slow", error=requests.exceptions.Timeout("read timed out"))
        fetcher = Fetcher(crawl_config(max_attempts=2), session=fake_session)

        outcome = fetcher.fetch(work("http://example.test/slow"))

        assert outcome.error_kind == ErrorKind.FETCH_TIMEOUT
        assert outcome.attempts == 2
        assert outcome.status_code is None
        assert outcome.failed

    @pytest.mark.unit
    def test_transport_error(self, crawl_config, fake_session):
        """Connection errors are transport failures"""
        fake_session.add("http://example.test/down", error=requests.exceptions.ConnectionError("refused"))
        fetcher = Fetcher(crawl_config(max_attempts=1), session=fake_session)
        outcome = fetcher.fetch(work("http://example.test/down"))
        assert outcome.error_kind == ErrorKind.FETCH_TRANSPORT
        assert "refused" in outcome.error

    @pytest.mark.unit
    def test_post_not_retried(self, crawl_config, fake_session):
        """Non-idempotent requests get a single attempt"""
        fake_session.add("http://example.test/submit", "err", status=500)
        fetcher = Fetcher(crawl_config(max_attempts=3), session=fake_session)
        outcome = fetcher.fetch(work("http://example.test/submit", method="POST", body={"a": "1"}))
        assert outcome.attempts == 1
        assert fake_session.requests[0][0] == "POST"
        assert fake_session.requests[0][2]['data'] == {"a": "1"}

    @pytest.mark.unit
    def test_post_marked_idempotent_is_retried(self, crawl_config, fake_session):
        """Callers can opt a POST into retries"""
        fake_session.add("http://example.test/submit", "err", status=500)
        fetcher = Fetcher(crawl_config(max_attempts=3), session=fake_session)
        outcome = fetcher.fetch(work("http://example.test/submit", method="POST", idempotent=True))
        assert outcome.attempts == 3

    @pytest.mark.unit
    def test_json_body(self, crawl_config, fake_session):
        """JSON content types send a json body"""
        fake_session.add("http://example.test/api/items", "{}", content_type="application/json")
        fetcher = Fetcher(crawl_config(), session=fake_session)
        fetcher.fetch(work("http://example.test/api/items", method="POST", body={"item": ""},
                           content_type="application/json"))
        assert fake_session.requests[0][2]['json'] == {"item": ""}

    @pytest.mark.unit
    def test_truncation(self, crawl_config, fake_session):
        """Bodies over the cap are truncated and flagged"""
        fake_session.add("http://example.test/big", "x" * 100)
        fetcher = Fetcher(crawl_config(max_body_bytes=10), session=fake_session)

        outcome = fetcher.fetch(work("http://example.test/big"))

        assert outcome.truncated
        assert len(outcome.body) == 10
        assert outcome.error_kind == ErrorKind.BODY_TOO_LARGE
        assert outcome.extractable

    @pytest.mark.unit
    def test_redirect_chain(self, crawl_config, fake_session):
        """Redirects record the chain and the final URL"""
        fake_session.add("http://example.test/old", redirect_to="http://example.test/new")
        fake_session.add("http://example.test/new", "moved here")
        fetcher = Fetcher(crawl_config(), session=fake_session)

        outcome = fetcher.fetch(work("http://example.test/old"))

        assert outcome.final_url == "http://example.test/new"
        assert outcome.redirect_chain == ["http://example.test/old", "http://example.test/new"]
        assert outcome.body == b"moved here"

    @pytest.mark.unit
    def test_too_many_redirects(self, crawl_config, fake_session):
        """Redirect loops are recorded as HTTP errors"""
        fake_session.add("http://example.test/loop", error=requests.exceptions.TooManyRedirects("loop"))
        fetcher = Fetcher(crawl_config(), session=fake_session)
        outcome = fetcher.fetch(work("http://example.test/loop"))
        assert outcome.error_kind == ErrorKind.FETCH_HTTP_ERROR
        assert outcome.attempts == 1

    @pytest.mark.unit
    def test_cancelled_before_request(self, crawl_config, fake_session):
        """A set cancellation token stops the fetch"""
        fake_session.add("http://example.test/", "ok")
        cancel = threading.Event()
        cancel.set()
        fetcher = Fetcher(crawl_config(), session=fake_session)

        outcome = fetcher.fetch(work("http://example.test/"), cancel)

        assert outcome.cancelled
        assert outcome.error_kind == ErrorKind.CANCELLED
        assert fake_session.requests == []


# ============================================================
# HELPER TESTS
# ============================================================

class TestHelpers:
    """Tests for pacing, rotation, backoff and metrics"""

    @pytest.mark.unit
    def test_backoff_delay(self):
        """Exponential growth without jitter"""
        assert backoff_delay(1, 0.5, 2.0, 0) == 0.5
        assert backoff_delay(2, 0.5, 2.0, 0) == 1.0
        assert backoff_delay(3, 0.5, 2.0, 0) == 2.0

    @pytest.mark.unit
    def test_backoff_jitter_bounds(self):
        """Jitter stays within +/- 25%"""
        for _ in range(50):
            delay = backoff_delay(2, 0.5, 2.0, 0.25)
            assert 0.75 <= delay <= 1.25

    @pytest.mark.unit
    def test_rotator(self):
        """Round-robin and empty rotation"""
        rotator = Rotator(["a", "b"])
        assert [rotator.next() for _ in range(3)] == ["a", "b", "a"]
        assert Rotator([]).next() is None

    @pytest.mark.unit
    def test_host_pacer_spaces_requests(self):
        """Consecutive requests to one origin are spaced by the delay"""
        pacer = HostPacer(0.05)
        started = time.monotonic()
        assert pacer.wait("http://example.test")
        assert pacer.wait("http://example.test")
        assert time.monotonic() - started >= 0.04

    @pytest.mark.unit
    def test_host_pacer_per_origin_override(self):
        """Overrides apply to one origin only"""
        pacer = HostPacer(0)
        pacer.set_delay("http://slow.test", 10)
        assert pacer.wait("http://fast.test")
        assert pacer.wait("http://fast.test")
        cancel = threading.Event()
        pacer.wait("http://slow.test", cancel)
        cancel.set()
        assert pacer.wait("http://slow.test", cancel) is False

    @pytest.mark.unit
    def test_metrics_snapshot(self):
        """Snapshot includes counters, histogram and timing"""
        metrics = CrawlMetrics()
        metrics.incr('requests', 2)
        metrics.record_response(200, 0.1)
        metrics.record_response(404, 0.3)
        snapshot = metrics.snapshot()
        assert snapshot['requests'] == 2
        assert snapshot['status_codes'] == {200: 1, 404: 1}
        assert snapshot['response_time_samples'] == 2
        assert snapshot['avg_response_time'] == pytest.approx(0.2)
        assert snapshot['max_response_time'] == pytest.approx(0.3)


# ============================================================
# FETCH POOL TESTS
# ============================================================

class TestFetchPool:
    """Tests for the worker pool"""

    def _run_pool(self, crawl_config, fake_session, items, process=None, admit=None):
        config = crawl_config()
        frontier = Frontier()
        for x in items:
            frontier.push(x)
        results = queue.Queue()
        cancel = threading.Event()

        def default_process(item, outcome):
            return CompletedFetch(item=item, record=ResultRecord(url=item.url.canonical,
                                                                 status_code=outcome.status_code))

        pool = FetchPool(frontier, Fetcher(config, session=fake_session), process or default_process,
                         results, cancel, workers=2, admit=admit)
        pool.start()
        deadline = time.monotonic() + 5
        while not frontier.is_idle() and time.monotonic() < deadline:
            time.sleep(0.01)
        pool.stop()
        pool.join(timeout=5)

        completed = []
        while not results.empty():
            completed.append(results.get_nowait())
        return frontier, completed

    @pytest.mark.integration
    def test_pool_fetches_every_item(self, crawl_config, fake_session):
        """Every leased item is published and completed"""
        for n in range(5):
            fake_session.add(f"http://example.test/p{n}", f"page {n}")
        items = [work(f"http://example.test/p{n}") for n in range(5)]

        frontier, completed = self._run_pool(crawl_config, fake_session, items)

        assert sorted(c.record.url for c in completed) == sorted(x.url.canonical for x in items)
        assert frontier.get_stats()['completed'] == 5
        assert all(x.state == ItemState.COMPLETED for x in items)

    @pytest.mark.integration
    def test_admit_drops_items(self, crawl_config, fake_session):
        """Items refused by admit are dropped without fetching"""
        fake_session.add("http://example.test/a", "a")
        fake_session.add("http://example.test/b", "b")
        items = [work("http://example.test/a"), work("http://example.test/b")]

        frontier, completed = self._run_pool(crawl_config, fake_session, items,
                                             admit=lambda item: item.url.path == "/a")

        assert [c.record.url for c in completed] == ["http://example.test/a"]
        assert fake_session.requested_urls == ["http://example.test/a"]
        assert frontier.get_stats()['dropped'] == 1

    @pytest.mark.integration
    def test_worker_crash_marks_item_failed(self, crawl_config, fake_session):
        """A crashing processor publishes a failed record and keeps the pool alive"""
        fake_session.add("http://example.test/a", "a")
        fake_session.add("http://example.test/b", "b")
        items = [work("http://example.test/a"), work("http://example.test/b")]

        def process(item, outcome):
            if item.url.path == "/a":
                raise RuntimeError("extractor exploded")
            return CompletedFetch(item=item, record=ResultRecord(url=item.url.canonical))

        frontier, completed = self._run_pool(crawl_config, fake_session, items, process=process)

        by_url = {c.record.url: c.record for c in completed}
        assert by_url["http://example.test/a"].state == ItemState.FAILED.value
        assert "extractor exploded" in by_url["http://example.test/a"].error
        assert by_url["http://example.test/b"].state == ItemState.COMPLETED.value
        assert items[0].state == ItemState.FAILED
