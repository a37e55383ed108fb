"""
Fetch Pool
Bounded-concurrency HTTP fetching with retries, pacing and UA/proxy rotation
"""

import itertools
import logging
import queue
import random
import threading
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter

from reconspider.config import CrawlConfig
from reconspider.errors import ErrorKind
from reconspider.models.crawl_result import ItemState, ResultRecord, WorkItem
from reconspider.services.frontier import Frontier

logger = logging.getLogger(__name__)


DEFAULT_HEADERS = {
    'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
    'Accept-Language': 'en-US,en;q=0.5',
    'Accept-Encoding': 'gzip, deflate',
    'Connection': 'keep-alive',
}

READ_CHUNK_SIZE = 64 * 1024


# ============ Outcome ============

@dataclass
class FetchOutcome:
    """Classified result of fetching one work item"""

    url: str
    method: str = "GET"
    status_code: Optional[int] = None
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    final_url: str = ""
    redirect_chain: List[str] = field(default_factory=list)
    truncated: bool = False
    elapsed: float = 0.0
    attempts: int = 0
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    cancelled: bool = False

    @property
    def extractable(self) -> bool:
        """2xx/3xx responses with a body go to the extractors"""
        return (self.error_kind in (None, ErrorKind.BODY_TOO_LARGE)
                and self.status_code is not None and self.status_code < 400)

    @property
    def failed(self) -> bool:
        """Transport/timeout errors and exhausted 5xx retries"""
        if self.error_kind in (ErrorKind.FETCH_TRANSPORT, ErrorKind.FETCH_TIMEOUT):
            return True
        return self.status_code is not None and self.status_code >= 500


# ============ Metrics ============

class CrawlMetrics:
    """Progress counters with an atomic snapshot"""

    def __init__(self, max_samples: int = 1000):
        self._lock = threading.Lock()
        self._counters: Counter = Counter()
        self._status_codes: Counter = Counter()
        self._samples: Deque[float] = deque(maxlen=max_samples)

    def incr(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[name] += amount

    def record_response(self, status_code: int, elapsed: float) -> None:
        with self._lock:
            self._status_codes[status_code] += 1
            self._samples.append(elapsed)

    def get(self, name: str) -> int:
        with self._lock:
            return self._counters[name]

    def snapshot(self) -> Dict[str, object]:
        """Consistent copy of every counter"""
        with self._lock:
            samples = list(self._samples)
            snapshot: Dict[str, object] = dict(self._counters)
            snapshot['status_codes'] = dict(self._status_codes)
            snapshot['response_time_samples'] = len(samples)
            snapshot['avg_response_time'] = (sum(samples) / len(samples)) if samples else 0.0
            snapshot['max_response_time'] = max(samples) if samples else 0.0
            return snapshot


# ============ Rotation and pacing ============

class Rotator:
    """Thread-safe round-robin over a list of values"""

    def __init__(self, values: List[str]):
        self.values = list(values)
        self._cycle = itertools.cycle(self.values) if self.values else None
        self._lock = threading.Lock()

    def next(self) -> Optional[str]:
        if self._cycle is None:
            return None
        with self._lock:
            return next(self._cycle)


class HostPacer:
    """Enforces a minimum delay between requests to the same origin"""

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self._overrides: Dict[str, float] = {}
        self._next_slot: Dict[str, float] = {}
        self._lock = threading.Lock()

    def set_delay(self, origin: str, delay: float) -> None:
        with self._lock:
            self._overrides[origin] = delay

    def wait(self, origin: str, cancel: Optional[threading.Event] = None) -> bool:
        """
        Reserve the next request slot for origin and sleep until it

        Returns:
            False if cancelled while waiting
        """
        with self._lock:
            delay = self._overrides.get(origin, self.delay)
            now = time.monotonic()
            slot = max(now, self._next_slot.get(origin, now))
            self._next_slot[origin] = slot + delay
        pause = slot - now
        if pause <= 0:
            return not (cancel and cancel.is_set())
        if cancel is not None:
            return not cancel.wait(pause)
        time.sleep(pause)
        return True


def backoff_delay(attempt: int, base: float, factor: float, jitter: float) -> float:
    """Exponential backoff with +/- jitter for the given 1-based attempt"""
    delay = base * (factor ** (attempt - 1))
    if jitter:
        delay *= random.uniform(1 - jitter, 1 + jitter)
    return max(0.0, delay)


def build_session(config: CrawlConfig) -> requests.Session:
    """Create the pooled session shared by all workers"""
    session = requests.Session()
    session.verify = config.verify_ssl
    session.max_redirects = config.max_redirects
    adapter = HTTPAdapter(pool_connections=config.workers, pool_maxsize=config.workers, max_retries=0)
    session.mount('http://', adapter)
    session.mount('https://', adapter)
    session.headers.update(DEFAULT_HEADERS)
    if config.headers:
        session.headers.update(config.headers)
    if config.cookies:
        session.cookies.update(config.cookies)
    return session


# ============ Fetcher ============

class Fetcher:
    """
    Executes one work item with retries

    Features:
    - User-Agent rotation
    - Round-robin proxy selection
    - Per-origin pacing
    - Exponential backoff for idempotent requests
    - Response size cap with truncation flag
    """

    def __init__(
        self,
        config: CrawlConfig,
        session: Optional[requests.Session] = None,
        metrics: Optional[CrawlMetrics] = None,
        pacer: Optional[HostPacer] = None
    ):
        self.config = config
        self.session = session or build_session(config)
        self.metrics = metrics or CrawlMetrics()
        self.pacer = pacer or HostPacer(config.delay)
        self.user_agents = Rotator(config.user_agents)
        self.proxies = Rotator(config.resolve_proxies())

    def close(self) -> None:
        self.session.close()

    def _request_kwargs(self, item: WorkItem) -> Dict[str, object]:
        headers = {}
        user_agent = self.user_agents.next()
        if user_agent:
            headers['User-Agent'] = user_agent
        if item.headers:
            headers.update(item.headers)

        kwargs: Dict[str, object] = {
            'headers': headers,
            'timeout': self.config.timeout,
            'allow_redirects': True,
            'stream': True,
        }
        proxy = self.proxies.next()
        if proxy:
            kwargs['proxies'] = {'http': proxy, 'https': proxy}
        if item.body is not None:
            if item.content_type and 'json' in item.content_type:
                kwargs['json'] = item.body
            else:
                kwargs['data'] = item.body
        return kwargs

    def _read_body(self, response: requests.Response, cancel: Optional[threading.Event]):
        cap = self.config.max_body_bytes
        chunks = []
        size = 0
        truncated = False
        for chunk in response.iter_content(chunk_size=READ_CHUNK_SIZE):
            if cancel is not None and cancel.is_set():
                return b''.join(chunks), truncated, True
            if not chunk:
                continue
            if size + len(chunk) > cap:
                chunks.append(chunk[:cap - size])
                truncated = True
                break
            chunks.append(chunk)
            size += len(chunk)
        return b''.join(chunks), truncated, False

    def _attempt(self, item: WorkItem, outcome: FetchOutcome,
                 cancel: Optional[threading.Event]) -> None:
        """Run one attempt, filling outcome in place"""
        started = time.monotonic()
        outcome.error = None
        outcome.error_kind = None
        self.metrics.incr('requests')
        try:
            response = self.session.request(item.method, item.url.canonical, **self._request_kwargs(item))
        except requests.exceptions.Timeout as e:
            outcome.error = f"Timeout: {e}"
            outcome.error_kind = ErrorKind.FETCH_TIMEOUT
            return
        except requests.exceptions.TooManyRedirects as e:
            outcome.error = f"Too many redirects: {e}"
            outcome.error_kind = ErrorKind.FETCH_HTTP_ERROR
            return
        except requests.exceptions.RequestException as e:
            outcome.error = str(e)
            outcome.error_kind = ErrorKind.FETCH_TRANSPORT
            return

        try:
            outcome.status_code = response.status_code
            outcome.headers = dict(response.headers)
            outcome.final_url = response.url or item.url.canonical
            outcome.redirect_chain = [r.url for r in (response.history or [])]
            if outcome.redirect_chain:
                outcome.redirect_chain.append(outcome.final_url)
            body, truncated, cancelled = self._read_body(response, cancel)
            outcome.body = body
            outcome.truncated = truncated
            outcome.cancelled = cancelled
        except requests.exceptions.Timeout as e:
            outcome.error = f"Timeout while reading body: {e}"
            outcome.error_kind = ErrorKind.FETCH_TIMEOUT
        except requests.exceptions.RequestException as e:
            outcome.error = f"Transport error while reading body: {e}"
            outcome.error_kind = ErrorKind.FETCH_TRANSPORT
        finally:
            response.close()
            outcome.elapsed = time.monotonic() - started

        if outcome.status_code is not None:
            self.metrics.record_response(outcome.status_code, outcome.elapsed)
        if outcome.error_kind is None:
            if outcome.status_code >= 400:
                outcome.error = f"HTTP {outcome.status_code}"
                outcome.error_kind = ErrorKind.FETCH_HTTP_ERROR
            elif outcome.truncated:
                outcome.error_kind = ErrorKind.BODY_TOO_LARGE

    def _should_retry(self, item: WorkItem, outcome: FetchOutcome) -> bool:
        if outcome.cancelled or not item.is_idempotent:
            return False
        if outcome.attempts >= self.config.max_attempts:
            return False
        if outcome.error_kind is not None and outcome.error_kind.retryable:
            return True
        return outcome.status_code is not None and outcome.status_code >= 500

    def fetch(self, item: WorkItem, cancel: Optional[threading.Event] = None) -> FetchOutcome:
        """
        Fetch a work item

        Args:
            item: Leased work item
            cancel: Run cancellation token

        Returns:
            FetchOutcome (never raises for network problems)
        """
        outcome = FetchOutcome(url=item.url.canonical, method=item.method)
        while True:
            if not self.pacer.wait(item.url.origin, cancel):
                outcome.cancelled = True
                break
            outcome.attempts += 1
            self._attempt(item, outcome, cancel)
            if not self._should_retry(item, outcome):
                break
            self.metrics.incr('retries')
            delay = backoff_delay(outcome.attempts, self.config.retry_base,
                                  self.config.retry_factor, self.config.retry_jitter)
            logger.debug("Retrying %s in %.2fs (attempt %d): %s",
                         item.url.canonical, delay, outcome.attempts, outcome.error)
            if cancel is not None and cancel.wait(delay):
                outcome.cancelled = True
                break
            if cancel is None and delay:
                time.sleep(delay)

        if outcome.cancelled:
            outcome.error = 'cancelled'
            outcome.error_kind = ErrorKind.CANCELLED
            self.metrics.incr('cancelled')
        elif outcome.failed:
            self.metrics.incr('failures')
            logger.warning("Fetch failed for %s after %d attempt(s): %s",
                           item.url.canonical, outcome.attempts, outcome.error)
        else:
            self.metrics.incr('successes')
            if outcome.truncated:
                self.metrics.incr('truncated')
        return outcome


# ============ Worker pool ============

@dataclass
class CompletedFetch:
    """Envelope published on the result queue"""
    item: WorkItem
    record: ResultRecord
    text: str = ""
    headers: Dict[str, str] = field(default_factory=dict)


class FetchPool:
    """
    Fixed set of worker threads leasing from the frontier

    Each worker leases an item, asks `admit` for a page slot, fetches it,
    hands the outcome to `process` (extraction) and publishes the resulting
    record on the outbound result queue.
    """

    def __init__(
        self,
        frontier: Frontier,
        fetcher: Fetcher,
        process: Callable[[WorkItem, FetchOutcome], CompletedFetch],
        results: 'queue.Queue[CompletedFetch]',
        cancel: threading.Event,
        workers: int = 10,
        admit: Optional[Callable[[WorkItem], bool]] = None
    ):
        self.frontier = frontier
        self.fetcher = fetcher
        self.process = process
        self.results = results
        self.cancel = cancel
        self.workers = workers
        self.admit = admit or (lambda item: True)

        self._threads: List[threading.Thread] = []
        self._stop = threading.Event()

    def start(self) -> None:
        for index in range(self.workers):
            thread = threading.Thread(target=self._worker_loop, name=f"fetch-worker-{index}", daemon=True)
            thread.start()
            self._threads.append(thread)

    def stop(self) -> None:
        self._stop.set()

    def join(self, timeout: Optional[float] = None) -> None:
        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in self._threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(remaining)

    def alive(self) -> int:
        return sum(1 for thread in self._threads if thread.is_alive())

    def _publish(self, completed: CompletedFetch) -> None:
        while not self._stop.is_set():
            try:
                self.results.put(completed, timeout=0.2)
                return
            except queue.Full:
                continue

    def _worker_loop(self) -> None:
        while not self._stop.is_set() and not self.cancel.is_set():
            item = self.frontier.lease(timeout=0.2)
            if item is None:
                continue
            self._handle(item)

    def _handle(self, item: WorkItem) -> None:
        try:
            if self.cancel.is_set() or not self.admit(item):
                self.frontier.drop(item)
                return
            outcome = self.fetcher.fetch(item, self.cancel)
            if outcome.cancelled:
                self.frontier.drop(item)
                return
            completed = self.process(item, outcome)
            self._publish(completed)
            if completed.record.state == ItemState.FAILED.value:
                self.frontier.fail(item)
            else:
                self.frontier.complete(item)
        except Exception as e:
            logger.exception("Worker crashed on %s", item.url.canonical)
            self._publish(CompletedFetch(item=item, record=ResultRecord(
                url=item.url.canonical,
                method=item.method,
                depth=item.depth,
                origin=item.origin.value,
                parent=item.parent,
                state=ItemState.FAILED.value,
                error=f"worker error: {e}",
            )))
            self.frontier.fail(item)
