"""
Parameter Fuzzer
Synthesizes probe variants for parameterless endpoints
"""

import itertools
import logging
from typing import Dict, Iterator, List, Optional

from reconspider.errors import URLRejected
from reconspider.models.crawl_result import FormDescriptor, PostDescriptor, URLClass, URLRecord
from reconspider.services.canonicalizer import canonicalize
from reconspider.services.deduplicator import Deduplicator

logger = logging.getLogger(__name__)


# Dictionary order is probe order
DEFAULT_FUZZ_PARAMS = [
    'id', 'page', 'category', 'product', 'user', 'token',
    'q', 'search', 'file', 'type', 'action', 'debug', 'lang', 'redirect', 'url',
]

PLACEHOLDER_VALUES = {
    'user': 'admin',
    'token': 'test',
    'q': 'test',
    'search': 'test',
    'file': 'index.html',
    'type': 'all',
    'action': 'view',
    'lang': 'en',
    'redirect': '/',
    'url': '/',
}
DEFAULT_PLACEHOLDER = '1'

# Common POST body shapes for forms without named fields
POST_BODY_TEMPLATES: List[Dict[str, str]] = [
    {'username': 'admin', 'password': 'admin123'},
    {'email': 'admin@test.com', 'password': 'admin123'},
    {'search': 'test', 'q': 'admin'},
    {'id': '1', 'action': 'update'},
    {'comment': 'test comment', 'author': 'Test User'},
    {'id': '1'},
    {'page': '1'},
    {'token': 'test'},
]

NON_FUZZABLE_CLASSES = (URLClass.STATIC, URLClass.FILE_PARAM)


def placeholder_for(name: str) -> str:
    """Placeholder value injected for a parameter name"""
    return PLACEHOLDER_VALUES.get(name, DEFAULT_PLACEHOLDER)


class ParamFuzzer:
    """
    Parameter-fuzz expander

    For an endpoint without query parameters, injects dictionary names one at
    a time and then in pairs, emitting at most `limit` variants. Variants the
    deduplicator would suppress are skipped without consuming the budget.
    """

    def __init__(
        self,
        params: Optional[List[str]] = None,
        limit: int = 5,
        post_limit: int = 3,
        deduplicator: Optional[Deduplicator] = None,
        post_enabled: bool = True
    ):
        """
        Args:
            params: Parameter dictionary (defaults to DEFAULT_FUZZ_PARAMS)
            limit: Maximum GET variants per endpoint
            post_limit: Maximum POST variants per form
            deduplicator: Consulted to skip variants that add nothing
            post_enabled: Emit POST variants for field-less forms
        """
        self.params = list(dict.fromkeys(params or DEFAULT_FUZZ_PARAMS))
        self.limit = limit
        self.post_limit = post_limit
        self.deduplicator = deduplicator
        self.post_enabled = post_enabled

        self.stats = {
            'endpoints': 0,
            'variants': 0,
            'post_variants': 0,
            'skipped': 0
        }

    def is_eligible(self, url: URLRecord) -> bool:
        """Only parameterless, non-static endpoints are fuzzed"""
        return not url.has_query and url.url_class not in NON_FUZZABLE_CLASSES

    def _combinations(self) -> Iterator[Dict[str, str]]:
        for name in self.params:
            yield {name: placeholder_for(name)}
        for first, second in itertools.combinations(self.params, 2):
            yield {first: placeholder_for(first), second: placeholder_for(second)}

    def get_variants(self, url: URLRecord) -> List[URLRecord]:
        """
        GET variants of a parameterless endpoint

        Args:
            url: Canonical URL of the endpoint

        Returns:
            Up to `limit` canonical variant records, in probe order
        """
        if self.limit <= 0 or not self.is_eligible(url):
            return []

        self.stats['endpoints'] += 1
        variants: List[URLRecord] = []
        seen_patterns = set()
        for combo in self._combinations():
            if len(variants) >= self.limit:
                break
            query = '&'.join(f"{name}={value}" for name, value in combo.items())
            try:
                variant = canonicalize(f"{url.canonical}?{query}")
            except URLRejected:
                continue
            if variant.pattern_key in seen_patterns:
                continue
            if self.deduplicator is not None and not self.deduplicator.would_admit(variant):
                self.stats['skipped'] += 1
                continue
            seen_patterns.add(variant.pattern_key)
            variants.append(variant)

        self.stats['variants'] += len(variants)
        logger.debug("Generated %d fuzz variant(s) for %s", len(variants), url.canonical)
        return variants

    def form_variants(self, form: FormDescriptor) -> List[PostDescriptor]:
        """
        Body variants for a form without named fields

        GET forms yield query variants of the action, POST forms yield body
        templates (only when POST fuzzing is enabled).
        """
        if form.fields:
            return []

        if form.method.upper() == 'GET':
            try:
                action = canonicalize(form.action)
            except URLRejected:
                return []
            return [
                PostDescriptor(url=variant.canonical, method='GET', params={}, source='fuzz')
                for variant in self.get_variants(action)
            ]

        if not self.post_enabled or self.post_limit <= 0:
            return []

        descriptors = []
        for template in POST_BODY_TEMPLATES[:self.post_limit]:
            descriptors.append(PostDescriptor(
                url=form.action,
                method=form.method.upper(),
                params=dict(template),
                content_type=form.enctype,
                source='fuzz',
            ))
        self.stats['post_variants'] += len(descriptors)
        return descriptors

    def get_stats(self) -> Dict[str, int]:
        return dict(self.stats)
