"""
Web Crawler Service
Coordinates frontier, fetch pool, extractors, deduplication and scanning
"""

import logging
import queue
import threading
import time
from collections import Counter, deque
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional, Set

import requests

from reconspider.config import CrawlConfig
from reconspider.errors import BrowserUnavailable, CrawlCancelled, ErrorKind, URLRejected
from reconspider.models.crawl_result import (
    CrawlMode,
    CrawlSummary,
    FormDescriptor,
    ItemState,
    Origin,
    PostDescriptor,
    ResultRecord,
    SensitiveFinding,
    SpecialProtocolSet,
    StaticResourceSet,
    Strategy,
    URLClass,
    URLRecord,
    WorkItem,
)
from reconspider.services.browser import BrowserDriver, DynamicExtractor, create_driver, looks_dynamic
from reconspider.services.canonicalizer import canonicalize, static_bucket, try_canonicalize
from reconspider.services.deduplicator import DUPLICATE, Deduplicator
from reconspider.services.extractor import StaticExtractor
from reconspider.services.fetcher import CompletedFetch, CrawlMetrics, FetchOutcome, FetchPool, Fetcher
from reconspider.services.frontier import Frontier, FrontierClosed
from reconspider.services.param_fuzzer import ParamFuzzer, placeholder_for
from reconspider.services.robots import RobotsPolicy, parse_sitemap
from reconspider.services.sensitive_scanner import RuleCatalog, SensitiveScanner, load_catalog
from reconspider.services.utils import (
    body_digest,
    build_url_with_params,
    content_type_of,
    decode_body,
    generate_scan_id,
    is_html,
)

logger = logging.getLogger(__name__)


ProgressCallback = Callable[[str, int, Optional[int]], None]

POLL_INTERVAL = 0.1
SHUTDOWN_GRACE = 5.0


class WebCrawler:
    """
    Crawl coordinator

    Features:
    - Multi-threaded fetch pool fed from a bounded frontier
    - Depth and page limits
    - Origin scope enforcement (optional subdomains)
    - Exact and pattern-aware deduplication
    - Static and headless-browser extraction (static, dynamic, smart modes)
    - Parameter fuzzing of parameterless endpoints
    - Sensitive information scanning
    - robots.txt and sitemap support
    - Progress callbacks and cooperative cancellation
    """

    def __init__(
        self,
        config: CrawlConfig,
        session: Optional[requests.Session] = None,
        driver: Optional[BrowserDriver] = None,
        catalog: Optional[RuleCatalog] = None,
        writers: Optional[List[Any]] = None
    ):
        """
        Initialize the crawler

        Args:
            config: Validated run configuration
            session: requests session to use (a pooled one is built otherwise)
            driver: Browser driver for dynamic/smart modes
            catalog: Rule catalog (default catalog merged with config.rules_file otherwise)
            writers: Report writers flushed when the run ends
        """
        self.config = config.validate()
        self.scan_id = generate_scan_id()
        self.seed = canonicalize(config.target_url)
        self.mode = CrawlMode(config.mode)

        self.cancel = threading.Event()
        self.metrics = CrawlMetrics()
        self.fetcher = Fetcher(config, session=session, metrics=self.metrics)
        self.frontier = Frontier(Strategy(config.strategy), config.frontier_capacity)
        self.deduplicator = Deduplicator(pattern_cap=config.pattern_cap)
        self.extractor = StaticExtractor()
        self.scanner = SensitiveScanner(catalog or load_catalog(config.rules_file), config.scan_max_bytes)
        self.fuzzer: Optional[ParamFuzzer] = None
        if config.fuzz:
            self.fuzzer = ParamFuzzer(
                params=config.fuzz_params or None,
                limit=config.param_fuzz_limit,
                post_limit=config.post_param_fuzz_limit,
                deduplicator=self.deduplicator,
                post_enabled=config.post_fuzz,
            )
        self.writers = list(writers or [])

        self._driver = driver
        self._owns_driver = False
        self.dynamic: Optional[DynamicExtractor] = None
        self.robots: Optional[RobotsPolicy] = None

        self._results: "queue.Queue[CompletedFetch]" = queue.Queue(maxsize=config.result_queue_size)
        self._overflow: Deque[WorkItem] = deque()
        self._pool: Optional[FetchPool] = None

        # Result store
        self._lock = threading.Lock()
        self._store: List[ResultRecord] = []
        self.discovered_urls: Set[str] = set()
        self.external_links: Set[str] = set()
        self.static_resources = StaticResourceSet()
        self.special_protocols = SpecialProtocolSet()
        self.post_requests: List[PostDescriptor] = []
        self._post_keys: Set[str] = set()
        self._pages_reserved = 0

        self.is_crawling = False
        self.status = 'pending'
        self.start_time: Optional[datetime] = None
        self.end_time: Optional[datetime] = None

        self.stats = Counter()

    # ============ Scope and admission ============

    def _is_in_scope(self, url: URLRecord) -> bool:
        """Same origin as the seed, or a subdomain of it when allowed"""
        if url.origin == self.seed.origin:
            return True
        if not self.config.allow_subdomains:
            return False
        scheme = url.origin.split('://', 1)[0]
        seed_scheme = self.seed.origin.split('://', 1)[0]
        return scheme == seed_scheme and url.host.endswith('.' + self.seed.host)

    def _pages_exhausted(self) -> bool:
        with self._lock:
            return self._pages_reserved >= self.config.max_pages

    def _reserve_page(self, item: WorkItem) -> bool:
        """Claim one of the max-pages slots before fetching"""
        with self._lock:
            if self._pages_reserved >= self.config.max_pages:
                self.stats['limit_dropped'] += 1
                return False
            self._pages_reserved += 1
            return True

    def offer(
        self,
        raw: str,
        parent: Optional[str],
        depth: int,
        origin: Origin = Origin.DISCOVERED,
        base: Optional[str] = None
    ) -> bool:
        """Canonicalize a candidate URL and promote it if novel and in scope"""
        try:
            url = canonicalize(raw, base)
        except URLRejected as e:
            self.stats['canon_rejects'] += 1
            logger.debug("Rejected %r: %s", raw, e.reason)
            return False
        return self._promote(WorkItem(url=url, parent=parent, depth=depth, origin=origin))

    def _promote(self, item: WorkItem) -> bool:
        url = item.url
        if not self._is_in_scope(url):
            with self._lock:
                self.external_links.add(url.canonical)
            self.stats['scope_rejects'] += 1
            logger.debug("Out of scope: %s", url.canonical)
            return False

        with self._lock:
            self.discovered_urls.add(url.canonical)

        if url.url_class == URLClass.STATIC:
            bucket = static_bucket(url.path)
            with self._lock:
                self.static_resources.add(bucket, url.canonical)
            return False

        if item.depth > self.config.max_depth:
            self.stats['depth_rejects'] += 1
            return False

        if self.robots is not None and not self.robots.allowed(url.canonical):
            self.stats['robots_rejects'] += 1
            logger.debug("Disallowed by robots.txt: %s", url.canonical)
            return False

        if self.deduplicator.mark(url, key=item.dedup_key) == DUPLICATE:
            self.stats['duplicates'] += 1
            return False

        if self._pages_exhausted():
            self.stats['limit_skipped'] += 1
            return False

        self._enqueue(item)
        return True

    def _enqueue(self, item: WorkItem) -> None:
        if self.frontier.closed:
            return
        if self._overflow:
            self._overflow.append(item)
            return
        try:
            if not self.frontier.push(item, block=False):
                self._overflow.append(item)
                return
        except FrontierClosed:
            return
        self.stats['enqueued'] += 1

    def _flush_overflow(self) -> None:
        """Move parked items into the frontier while it has room"""
        while self._overflow and not self.frontier.closed:
            item = self._overflow[0]
            try:
                if not self.frontier.push(item, timeout=POLL_INTERVAL):
                    return
            except FrontierClosed:
                self._overflow.clear()
                return
            self._overflow.popleft()
            self.stats['enqueued'] += 1

    # ============ Worker side ============

    def _process(self, item: WorkItem, outcome: FetchOutcome) -> CompletedFetch:
        """Turn a fetch outcome into a result record (runs on a fetch worker)"""
        record = ResultRecord(
            url=item.url.canonical,
            method=item.method,
            depth=item.depth,
            origin=item.origin.value,
            parent=item.parent,
            status_code=outcome.status_code,
            content_type=content_type_of(outcome.headers),
            final_url=outcome.final_url or item.url.canonical,
            redirect_chain=list(outcome.redirect_chain),
            body_ref=body_digest(outcome.body) if outcome.body else None,
            body_length=len(outcome.body),
            truncated=outcome.truncated,
            elapsed=round(outcome.elapsed, 4),
            attempts=outcome.attempts,
            error=outcome.error if outcome.error_kind != ErrorKind.BODY_TOO_LARGE else None,
            error_kind=outcome.error_kind.value if outcome.error_kind else None,
        )

        if outcome.failed or outcome.status_code is None:
            record.state = ItemState.FAILED.value
            return CompletedFetch(item=item, record=record)
        if not outcome.extractable:
            return CompletedFetch(item=item, record=record, headers=dict(outcome.headers))

        text = decode_body(outcome.body, outcome.headers)
        extraction = self.extractor.extract(text, record.content_type, record.final_url, record.redirect_chain)

        if self.dynamic is not None and is_html(record.content_type):
            if self.mode == CrawlMode.DYNAMIC or (self.mode == CrawlMode.SMART and looks_dynamic(text, extraction)):
                try:
                    extraction.merge(self.dynamic.extract(record.final_url, self.cancel))
                    record.rendered = True
                except BrowserUnavailable as e:
                    logger.warning("Dynamic render failed for %s, keeping static result: %s", record.url, e)
                    with self._lock:
                        self.stats['render_failures'] += 1
                except CrawlCancelled:
                    pass

        record.links = extraction.links
        record.forms = extraction.forms
        record.apis = extraction.apis
        record.post_requests = extraction.post_requests
        record.static_refs = extraction.static_refs
        record.special_links = extraction.special_links
        if extraction.error:
            record.error = extraction.error
            record.error_kind = ErrorKind.EXTRACT_PARSE.value

        return CompletedFetch(item=item, record=record, text=text, headers=dict(outcome.headers))

    # ============ Coordinator side ============

    def _handle(self, completed: CompletedFetch, callback: Optional[ProgressCallback]) -> None:
        item, record = completed.item, completed.record

        with self._lock:
            self._store.append(record)
        if record.state == ItemState.FAILED.value:
            self.stats['pages_failed'] += 1
        else:
            self.stats['pages_fetched'] += 1

        if completed.text or completed.headers:
            record.findings = self.scanner.scan_response(completed.text, completed.headers, record.url)

        if record.final_url and record.final_url != record.url:
            final = try_canonicalize(record.final_url)
            if final is not None and self._is_in_scope(final):
                self.deduplicator.mark_seen(final)
                with self._lock:
                    self.discovered_urls.add(final.canonical)

        if not self.frontier.closed and not self.cancel.is_set():
            self._promote_artifacts(item, record)

        if callback:
            try:
                callback(record.url, record.depth, record.status_code)
            except Exception:
                logger.exception("Progress callback failed for %s", record.url)

    def _promote_artifacts(self, item: WorkItem, record: ResultRecord) -> None:
        child_depth = item.depth + 1
        base = record.final_url or record.url

        for link in record.links:
            self.offer(link, record.url, child_depth, Origin.DISCOVERED, base)

        for ref in record.static_refs:
            if ref.kind in ('script', 'stylesheet'):
                self.offer(ref.url, record.url, child_depth, Origin.DISCOVERED, base)
            else:
                url = try_canonicalize(ref.url, base)
                if url is None:
                    continue
                if self._is_in_scope(url):
                    with self._lock:
                        self.discovered_urls.add(url.canonical)
                else:
                    with self._lock:
                        self.external_links.add(url.canonical)
                with self._lock:
                    self.static_resources.add(ref.kind, url.canonical)

        with self._lock:
            for special in record.special_links:
                self.special_protocols.add(special.kind, special.url)

        for hint in record.apis:
            if hint.method in ('GET', 'HEAD'):
                self.offer(hint.url, record.url, child_depth, Origin.API_INFERRED, base)

        for form in record.forms:
            self._promote_form(form, record, child_depth)

        for descriptor in record.post_requests:
            self._record_post(descriptor)
            if self.config.submit_post_forms and descriptor.source == 'form':
                self._offer_post(descriptor, record.url, child_depth, Origin.FORM_ACTION)

        self._fuzz(item, record)

    def _promote_form(self, form: FormDescriptor, record: ResultRecord, depth: int) -> None:
        if form.method.upper() != 'GET' or not form.fields:
            return
        params = {f.name: (f.value or placeholder_for(f.name)) for f in form.fields}
        action = form.action.split('?', 1)[0]
        self.offer(build_url_with_params(action, params), record.url, depth, Origin.FORM_ACTION)

    def _record_post(self, descriptor: PostDescriptor) -> None:
        key = f"{descriptor.method} {descriptor.url} {','.join(sorted(descriptor.params))}"
        with self._lock:
            if key in self._post_keys:
                return
            self._post_keys.add(key)
            self.post_requests.append(descriptor)

    def _offer_post(self, descriptor: PostDescriptor, parent: str, depth: int, origin: Origin) -> bool:
        try:
            url = canonicalize(descriptor.url)
        except URLRejected:
            self.stats['canon_rejects'] += 1
            return False
        return self._promote(WorkItem(
            url=url,
            method=descriptor.method.upper(),
            parent=parent,
            depth=depth,
            origin=origin,
            body=dict(descriptor.params),
            content_type=descriptor.content_type,
        ))

    def _fuzz(self, item: WorkItem, record: ResultRecord) -> None:
        """Fuzz variants inherit the parent's depth"""
        if self.fuzzer is None or item.origin == Origin.FUZZED or item.method != 'GET':
            return
        if record.state != ItemState.COMPLETED.value or not record.status_code or record.status_code >= 400:
            return

        for variant in self.fuzzer.get_variants(item.url):
            if self._promote(WorkItem(url=variant, parent=record.url, depth=item.depth, origin=Origin.FUZZED)):
                self.stats['fuzzed'] += 1

        for form in record.forms:
            for descriptor in self.fuzzer.form_variants(form):
                if descriptor.method == 'GET':
                    try:
                        variant = canonicalize(descriptor.url)
                    except URLRejected:
                        continue
                    self._promote(WorkItem(url=variant, parent=record.url, depth=item.depth, origin=Origin.FUZZED))
                else:
                    self._record_post(descriptor)
                    if self.config.submit_post_forms:
                        self._offer_post(descriptor, record.url, item.depth, Origin.FUZZED)

    def _finished(self) -> bool:
        """Frontier drained and every worker idle, or page budget spent"""
        if self._overflow:
            return False
        idle = self.frontier.is_idle()
        if not idle and not (self._pages_exhausted() and self.frontier.in_flight() == 0):
            return False
        return self._results.empty()

    # ============ Lifecycle ============

    def _prepare(self) -> None:
        session = self.fetcher.session
        base = self.seed.origin

        if self.config.respect_robots:
            self.robots = RobotsPolicy.fetch(session, base, self.config.timeout)
            if self.robots.crawl_delay and self.robots.crawl_delay > self.config.delay:
                logger.info("Honoring Crawl-delay of %.2fs", self.robots.crawl_delay)
                self.fetcher.pacer.set_delay(base, self.robots.crawl_delay)

        if self.mode != CrawlMode.STATIC:
            try:
                if self._driver is None:
                    self._driver = create_driver(self.config)
                    self._owns_driver = True
                self.dynamic = DynamicExtractor(self._driver, self.extractor, self.config.render_timeout)
            except BrowserUnavailable as e:
                logger.warning("Browser unavailable, falling back to static mode: %s", e)
                self.stats['browser_unavailable'] += 1
                self.mode = CrawlMode.STATIC

        seed = WorkItem(url=self.seed, depth=0, origin=Origin.SEED)
        with self._lock:
            self.discovered_urls.add(self.seed.canonical)
        self.deduplicator.mark(self.seed, key=seed.dedup_key)
        self._enqueue(seed)

        if self.config.use_sitemap:
            sitemaps = list(self.robots.sitemaps) if self.robots and self.robots.sitemaps else [f"{base}/sitemap.xml"]
            for sitemap_url in sitemaps:
                for url in parse_sitemap(session, sitemap_url, self.config.timeout):
                    self.offer(url, None, 0, Origin.SEED)

    def crawl(self, callback: Optional[ProgressCallback] = None) -> CrawlSummary:
        """
        Run the crawl to completion

        Args:
            callback: Progress callback(url, depth, status_code)

        Returns:
            CrawlSummary (the result store stays available on the crawler)
        """
        self.start_time = datetime.now()
        started = time.monotonic()
        self.is_crawling = True
        self.status = 'running'
        logger.info("Starting %s crawl of %s (scan %s)", self.mode.value, self.seed.canonical, self.scan_id)

        # published only once the writers have flushed
        status = 'completed'
        try:
            self._prepare()
            self._pool = FetchPool(
                self.frontier,
                self.fetcher,
                self._process,
                self._results,
                self.cancel,
                workers=self.config.workers,
                admit=self._reserve_page,
            )
            self._pool.start()

            deadline = started + self.config.run_timeout if self.config.run_timeout else None
            while True:
                if self.cancel.is_set():
                    status = 'cancelled'
                    break
                if deadline is not None and time.monotonic() >= deadline:
                    logger.warning("Run timeout reached, cancelling")
                    status = 'timeout'
                    self.cancel.set()
                    break
                self._flush_overflow()
                try:
                    completed = self._results.get(timeout=POLL_INTERVAL)
                except queue.Empty:
                    if self._finished():
                        break
                    continue
                self._handle(completed, callback)
        except KeyboardInterrupt:
            logger.warning("Interrupted, flushing partial results")
            status = 'cancelled'
            self.cancel.set()
        except Exception:
            status = 'error'
            self.cancel.set()
            raise
        finally:
            try:
                self._shutdown(callback)
            finally:
                self.end_time = datetime.now()
                summary = self.get_summary()
                summary.status = status
                self._flush_writers(summary)
                self.status = status
                self.is_crawling = False

        logger.info("Crawl %s: %d page(s), %d URL(s) discovered, %d finding(s)",
                    self.status, summary.pages_fetched, summary.urls_discovered, summary.findings)
        return summary

    def _shutdown(self, callback: Optional[ProgressCallback]) -> None:
        """Stop workers, keep draining results, release resources"""
        dropped = self.frontier.close()
        self._overflow.clear()
        if dropped:
            logger.debug("Dropped %d queued item(s)", len(dropped))

        if self._pool is not None:
            grace = time.monotonic() + SHUTDOWN_GRACE + self.config.timeout
            self.cancel.set()
            while self._pool.alive() and time.monotonic() < grace:
                try:
                    self._handle(self._results.get(timeout=POLL_INTERVAL), callback)
                except queue.Empty:
                    continue
            self._pool.stop()
            self._pool.join(timeout=SHUTDOWN_GRACE)

        while True:
            try:
                self._handle(self._results.get_nowait(), callback)
            except queue.Empty:
                break

        if self._driver is not None and self._owns_driver:
            self._driver.close()
        self.fetcher.close()

    def _flush_writers(self, summary: CrawlSummary) -> None:
        for writer in self.writers:
            try:
                writer.flush(
                    results=self.get_results(),
                    discovered_urls=self.get_discovered_urls(),
                    scope_urls=self.get_scope_urls(),
                    external_links=self.get_external_links(),
                    static_resources=self.static_resources,
                    special_protocols=self.special_protocols,
                    post_requests=list(self.post_requests),
                    findings=self.scanner.findings,
                    statistics=self.scanner.get_statistics(),
                    summary=summary,
                )
            except OSError as e:
                logger.error("Report writer %s failed: %s", type(writer).__name__, e)

    def stop(self) -> None:
        """Stop ongoing crawl"""
        self.cancel.set()

    # ============ Accessors ============

    def get_results(self) -> List[ResultRecord]:
        """Snapshot of the result store"""
        with self._lock:
            return list(self._store)

    def get_discovered_urls(self) -> List[str]:
        """All discovered URLs (in and out of scope)"""
        with self._lock:
            return sorted(self.discovered_urls | self.external_links)

    def get_scope_urls(self) -> List[str]:
        with self._lock:
            return sorted(self.discovered_urls)

    def get_external_links(self) -> List[str]:
        with self._lock:
            return sorted(self.external_links)

    def get_fetched_urls(self) -> List[str]:
        with self._lock:
            return [r.url for r in self._store]

    def get_findings(self) -> List[SensitiveFinding]:
        return self.scanner.findings

    def get_statistics(self) -> Dict[str, Any]:
        statistics: Dict[str, Any] = dict(self.stats)
        statistics['deduplication'] = self.deduplicator.get_stats()
        statistics['frontier'] = self.frontier.get_stats()
        statistics['sensitive'] = self.scanner.get_statistics()
        statistics['static_resources'] = len(self.static_resources)
        statistics['special_protocols'] = len(self.special_protocols)
        statistics['post_requests'] = len(self.post_requests)
        if self.fuzzer is not None:
            statistics['fuzzer'] = self.fuzzer.get_stats()
        return statistics

    def get_summary(self) -> CrawlSummary:
        end = self.end_time or datetime.now()
        start = self.start_time or end
        results = self.get_results()
        return CrawlSummary(
            scan_id=self.scan_id,
            target_url=self.seed.canonical,
            mode=self.mode.value,
            status=self.status,
            pages_fetched=sum(1 for r in results if r.state != ItemState.FAILED.value),
            pages_failed=sum(1 for r in results if r.state == ItemState.FAILED.value),
            urls_discovered=len(self.discovered_urls),
            external_links=len(self.external_links),
            findings=len(self.scanner.findings),
            statistics=self.get_statistics(),
            metrics=self.metrics.snapshot(),
            start_time=start.isoformat(),
            end_time=end.isoformat(),
            duration=(end - start).total_seconds(),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Summary plus the full result store"""
        return {
            'summary': self.get_summary().to_dict(),
            'results': [r.to_dict() for r in self.get_results()],
            'discovered_urls': self.get_discovered_urls(),
            'external_links': self.get_external_links(),
            'static_resources': self.static_resources.to_dict(),
            'special_protocols': self.special_protocols.to_dict(),
            'post_requests': [p.to_dict() for p in self.post_requests],
            'findings': [f.to_dict() for f in self.scanner.findings],
        }
