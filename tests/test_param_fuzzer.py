"""
Tests for Parameter Fuzzer
Tests for reconspider/services/param_fuzzer.py
"""

import pytest
import sys
import os

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from reconspider.models.crawl_result import FormDescriptor, FormField
from reconspider.services.canonicalizer import canonicalize
from reconspider.services.deduplicator import Deduplicator
from reconspider.services.param_fuzzer import (
    DEFAULT_FUZZ_PARAMS,
    POST_BODY_TEMPLATES,
    ParamFuzzer,
    placeholder_for,
)


class TestGetVariants:
    """Tests for GET variant generation"""

    @pytest.mark.unit
    def test_singles_in_dictionary_order(self):
        """The first variants inject one dictionary name each"""
        fuzzer = ParamFuzzer(limit=5)
        variants = fuzzer.get_variants(canonicalize("http://example.test/products"))
        assert [v.canonical for v in variants] == [
            "http://example.test/products?id=1",
            "http://example.test/products?page=1",
            "http://example.test/products?category=1",
            "http://example.test/products?product=1",
            "http://example.test/products?user=admin",
        ]
        assert fuzzer.get_stats()['variants'] == 5

    @pytest.mark.unit
    def test_pairs_follow_singles(self):
        """Once singles run out, pairs are injected"""
        fuzzer = ParamFuzzer(params=["a", "b", "c"], limit=5)
        variants = fuzzer.get_variants(canonicalize("http://example.test/x"))
        assert [v.canonical for v in variants] == [
            "http://example.test/x?a=1",
            "http://example.test/x?b=1",
            "http://example.test/x?c=1",
            "http://example.test/x?a=1&b=1",
            "http://example.test/x?a=1&c=1",
        ]

    @pytest.mark.unit
    def test_limit_bounds_output(self):
        """Never more than limit variants"""
        assert len(ParamFuzzer(limit=2).get_variants(canonicalize("http://example.test/x"))) == 2
        assert ParamFuzzer(limit=0).get_variants(canonicalize("http://example.test/x")) == []

    @pytest.mark.unit
    @pytest.mark.parametrize("url", [
        "http://example.test/x?already=1",
        "http://example.test/logo.png",
        "http://example.test/dl?file=report.pdf",
    ])
    def test_ineligible_endpoints(self, url):
        """Endpoints with a query, static files and file-param URLs are not fuzzed"""
        fuzzer = ParamFuzzer()
        assert not fuzzer.is_eligible(canonicalize(url))
        assert fuzzer.get_variants(canonicalize(url)) == []

    @pytest.mark.unit
    def test_dedup_suppressed_variants_skipped(self):
        """Variants the deduplicator would drop do not use the budget"""
        dedup = Deduplicator(pattern_cap=1)
        dedup.mark(canonicalize("http://example.test/p?id=7"))
        fuzzer = ParamFuzzer(limit=2, deduplicator=dedup)

        variants = fuzzer.get_variants(canonicalize("http://example.test/p"))

        assert [v.canonical for v in variants] == [
            "http://example.test/p?page=1",
            "http://example.test/p?category=1",
        ]
        assert fuzzer.get_stats()['skipped'] == 1

    @pytest.mark.unit
    def test_dictionary_deduplicated(self):
        """Repeated names are probed once"""
        assert ParamFuzzer(params=["id", "id", "q"]).params == ["id", "q"]
        assert ParamFuzzer().params == DEFAULT_FUZZ_PARAMS

    @pytest.mark.unit
    def test_placeholders(self):
        """Known names get typed placeholders, others get 1"""
        assert placeholder_for("user") == "admin"
        assert placeholder_for("file") == "index.html"
        assert placeholder_for("anything") == "1"


class TestFormVariants:
    """Tests for field-less form variants"""

    @pytest.mark.unit
    def test_form_with_fields_not_fuzzed(self):
        """Forms with named fields are submitted as-is"""
        form = FormDescriptor(method="POST", action="http://example.test/login",
                              fields=[FormField(name="user")])
        assert ParamFuzzer().form_variants(form) == []

    @pytest.mark.unit
    def test_get_form_uses_query_variants(self):
        """Field-less GET forms become query variants of the action"""
        form = FormDescriptor(method="GET", action="http://example.test/find")
        variants = ParamFuzzer(limit=2).form_variants(form)
        assert [(v.method, v.url, v.source) for v in variants] == [
            ("GET", "http://example.test/find?id=1", "fuzz"),
            ("GET", "http://example.test/find?page=1", "fuzz"),
        ]

    @pytest.mark.unit
    def test_post_form_uses_templates(self):
        """Field-less POST forms get common body templates"""
        form = FormDescriptor(method="post", action="http://example.test/submit")
        variants = ParamFuzzer(post_limit=3).form_variants(form)
        assert len(variants) == 3
        assert variants[0].params == POST_BODY_TEMPLATES[0]
        assert all(v.method == "POST" and v.url == "http://example.test/submit" for v in variants)

    @pytest.mark.unit
    def test_post_fuzz_disabled(self):
        """post_enabled=False suppresses POST templates"""
        form = FormDescriptor(method="POST", action="http://example.test/submit")
        assert ParamFuzzer(post_enabled=False).form_variants(form) == []
