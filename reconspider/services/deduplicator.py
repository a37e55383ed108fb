"""
URL Deduplicator
Suppresses already-seen URLs by exact hash and by pattern-class key
"""

import threading
from collections import Counter
from typing import Dict, Optional, Set

from reconspider.models.crawl_result import URLClass, URLRecord


# Per-class pattern caps; None means unlimited
DEFAULT_PATTERN_CAPS: Dict[URLClass, Optional[int]] = {
    URLClass.STATIC: None,
    URLClass.FILE_PARAM: 1,
    URLClass.MULTI_PARAM: None,
    URLClass.AJAX: None,
    URLClass.RESTFUL: None,
    URLClass.NORMAL: None,
}

FRESH = 'fresh'
DUPLICATE = 'duplicate'


class Deduplicator:
    """
    Exact and pattern-aware URL deduplication

    A URL is a duplicate when its exact key has already been marked, or when
    its pattern key has already been admitted as many times as its class cap
    allows. `mark` is atomic.
    """

    def __init__(
        self,
        pattern_cap: Optional[int] = None,
        class_caps: Optional[Dict[URLClass, Optional[int]]] = None
    ):
        """
        Args:
            pattern_cap: Cap applied to every class, overrides class_caps
            class_caps: Per-class caps, merged onto DEFAULT_PATTERN_CAPS
        """
        self.class_caps = dict(DEFAULT_PATTERN_CAPS)
        if class_caps:
            self.class_caps.update(class_caps)
        self.pattern_cap = pattern_cap

        self._seen: Set[str] = set()
        self._patterns: Counter = Counter()
        self._lock = threading.Lock()

        self.stats = {
            'fresh': 0,
            'exact_duplicates': 0,
            'pattern_duplicates': 0
        }

    def cap_for(self, url_class: URLClass) -> Optional[int]:
        """Pattern cap applying to a URL class"""
        if self.pattern_cap is not None:
            return self.pattern_cap
        return self.class_caps.get(url_class)

    def mark(self, url: URLRecord, key: Optional[str] = None) -> str:
        """
        Record a URL as seen

        Args:
            url: Canonical URL record
            key: Exact key, defaults to the canonical hash (non-GET items pass
                 a method-qualified key)

        Returns:
            FRESH or DUPLICATE
        """
        exact = key or url.hash
        with self._lock:
            if exact in self._seen:
                self.stats['exact_duplicates'] += 1
                return DUPLICATE

            cap = self.cap_for(url.url_class)
            if cap is not None and self._patterns[url.pattern_key] >= cap:
                self.stats['pattern_duplicates'] += 1
                return DUPLICATE

            self._seen.add(exact)
            self._patterns[url.pattern_key] += 1
            self.stats['fresh'] += 1
            return FRESH

    def mark_seen(self, url: URLRecord, key: Optional[str] = None) -> None:
        """Record an exact key without consuming pattern budget (redirect targets)"""
        with self._lock:
            self._seen.add(key or url.hash)

    def is_seen(self, url: URLRecord, key: Optional[str] = None) -> bool:
        with self._lock:
            return (key or url.hash) in self._seen

    def would_admit(self, url: URLRecord, key: Optional[str] = None) -> bool:
        """Check whether mark() would return FRESH, without recording"""
        with self._lock:
            if (key or url.hash) in self._seen:
                return False
            cap = self.cap_for(url.url_class)
            return cap is None or self._patterns[url.pattern_key] < cap

    def pattern_count(self, pattern_key: str) -> int:
        with self._lock:
            return self._patterns[pattern_key]

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            stats = dict(self.stats)
            stats['unique_urls'] = len(self._seen)
            stats['patterns'] = len(self._patterns)
            return stats
