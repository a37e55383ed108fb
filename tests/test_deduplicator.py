"""
Tests for URL Deduplicator
Tests for reconspider/services/deduplicator.py
"""

import pytest
import sys
import os
import threading

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from reconspider.models.crawl_result import URLClass
from reconspider.services.canonicalizer import canonicalize
from reconspider.services.deduplicator import Deduplicator, FRESH, DUPLICATE


class TestDeduplicator:
    """Tests for Deduplicator"""

    @pytest.mark.unit
    def test_exact_duplicates(self):
        """Equal canonical URLs are duplicates"""
        dedup = Deduplicator()
        assert dedup.mark(canonicalize("http://example.test/a?b=1&a=2")) == FRESH
        assert dedup.mark(canonicalize("HTTP://EXAMPLE.test:80/a?a=2&b=1#x")) == DUPLICATE
        assert dedup.get_stats()['exact_duplicates'] == 1

    @pytest.mark.unit
    def test_restful_unlimited_by_default(self):
        """RESTful patterns have no cap by default"""
        dedup = Deduplicator()
        for n in range(5):
            url = canonicalize(f"http://example.test/users/{n}/orders/{n}")
            assert url.url_class == URLClass.RESTFUL
            assert dedup.mark(url) == FRESH

    @pytest.mark.unit
    def test_file_param_capped_at_one(self):
        """File-param echo variants collapse to one"""
        dedup = Deduplicator()
        assert dedup.mark(canonicalize("http://example.test/dl?file=a.pdf")) == FRESH
        assert dedup.mark(canonicalize("http://example.test/dl?file=b.pdf")) == DUPLICATE
        assert dedup.get_stats()['pattern_duplicates'] == 1

    @pytest.mark.unit
    def test_global_pattern_cap(self):
        """pattern_cap applies to every class"""
        dedup = Deduplicator(pattern_cap=1)
        assert dedup.mark(canonicalize("http://example.test/users/1")) == FRESH
        assert dedup.mark(canonicalize("http://example.test/users/2")) == DUPLICATE
        assert dedup.mark(canonicalize("http://example.test/users/3")) == DUPLICATE
        assert dedup.pattern_count("http://example.test/users/{id}") == 1

    @pytest.mark.unit
    def test_class_caps_override(self):
        """Per-class caps merge onto the defaults"""
        dedup = Deduplicator(class_caps={URLClass.NORMAL: 2})
        assert dedup.cap_for(URLClass.NORMAL) == 2
        assert dedup.cap_for(URLClass.FILE_PARAM) == 1
        assert dedup.cap_for(URLClass.RESTFUL) is None

    @pytest.mark.unit
    def test_custom_key(self):
        """Method-qualified keys keep POST and GET apart"""
        dedup = Deduplicator()
        url = canonicalize("http://example.test/login")
        assert dedup.mark(url) == FRESH
        assert dedup.mark(url, key="POST|" + url.hash + "|user") == FRESH
        assert dedup.mark(url, key="POST|" + url.hash + "|user") == DUPLICATE

    @pytest.mark.unit
    def test_mark_seen_and_would_admit(self):
        """mark_seen records without consuming pattern budget"""
        dedup = Deduplicator(pattern_cap=1)
        redirected = canonicalize("http://example.test/items/9")
        dedup.mark_seen(redirected)
        assert dedup.is_seen(redirected)
        assert dedup.pattern_count(redirected.pattern_key) == 0

        other = canonicalize("http://example.test/items/10")
        assert dedup.would_admit(other)
        assert dedup.mark(other) == FRESH
        assert not dedup.would_admit(canonicalize("http://example.test/items/11"))

    @pytest.mark.unit
    def test_mark_is_atomic(self):
        """Concurrent marks of one URL yield exactly one FRESH"""
        dedup = Deduplicator()
        url = canonicalize("http://example.test/race")
        results = []
        lock = threading.Lock()

        def worker():
            outcome = dedup.mark(url)
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=worker) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(FRESH) == 1
        assert len(dedup) == 1
