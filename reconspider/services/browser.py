"""
Dynamic Extractor
Renders pages in headless Chromium, fires events and records network traffic
"""

import json
import logging
import queue
import re
import threading
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from urllib.parse import parse_qs

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

from reconspider.config import CrawlConfig
from reconspider.errors import BrowserUnavailable, CrawlCancelled
from reconspider.models.crawl_result import PostDescriptor
from reconspider.services.canonicalizer import get_origin
from reconspider.services.extractor import ArtifactCollector, ExtractionResult, StaticExtractor

logger = logging.getLogger(__name__)


# Elements that get hover/click/submit events
INTERACTIVE_SELECTOR = (
    'a[href], button, input[type=submit], input[type=button], '
    '[onclick], [onmouseover], [role=button], form'
)

SPA_MARKERS = re.compile(
    r'id=["\'](?:app|root|__next|__nuxt)["\']|ng-app|data-reactroot|__NEXT_DATA__|__NUXT__|data-v-app',
    re.IGNORECASE
)
_SCRIPT_SRC_RE = re.compile(r'<script[^>]+src\s*=', re.IGNORECASE)

SCRIPT_HEAVY_THRESHOLD = 5
LINK_POOR_THRESHOLD = 3


# ============ Data ============

@dataclass
class NetworkEntry:
    """One request observed while rendering"""
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[str] = None
    status: Optional[int] = None
    resource_type: str = "other"


@dataclass
class RenderResult:
    """Final state of a rendered page"""
    final_url: str
    dom: str
    transcript: List[NetworkEntry] = field(default_factory=list)


def looks_dynamic(html: str, extraction: Optional[ExtractionResult] = None) -> bool:
    """
    Smart-mode heuristic: is this page script-driven?

    True for SPA mount points / framework markers, or many external scripts
    alongside very few links.
    """
    if SPA_MARKERS.search(html or ''):
        return True
    if extraction is not None:
        scripts = len(extraction.scripts)
        links = len(extraction.links)
    else:
        scripts = len(_SCRIPT_SRC_RE.findall(html or ''))
        links = html.lower().count('<a ') if html else 0
    return scripts >= SCRIPT_HEAVY_THRESHOLD and links < LINK_POOR_THRESHOLD


# ============ Drivers ============

class BrowserDriver:
    """Interface of a page renderer"""

    def start(self) -> None:
        pass

    def render(self, url: str, cancel: Optional[threading.Event] = None,
               timeout: Optional[float] = None) -> RenderResult:
        raise NotImplementedError

    def close(self) -> None:
        pass

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class _RenderJob:
    def __init__(self, url: str, cancel: Optional[threading.Event], timeout: float):
        self.url = url
        self.cancel = cancel
        self.timeout = timeout
        self.future: Future = Future()


class PlaywrightDriver(BrowserDriver):
    """
    Headless Chromium through Playwright's sync API

    Playwright objects are bound to the thread that created them, so each
    browser lives on its own dedicated thread consuming a job queue. The pool
    size bounds concurrent renders.
    """

    def __init__(self, config: CrawlConfig):
        self.config = config
        self.workers = max(1, config.browser_workers)
        self.render_timeout = config.render_timeout
        self.max_event_elements = config.max_event_elements

        self._jobs: 'queue.Queue[Optional[_RenderJob]]' = queue.Queue()
        self._threads: List[threading.Thread] = []
        self._ready = threading.Semaphore(0)
        self._startup_errors: List[str] = []
        self._lock = threading.Lock()
        self._started = False

    def start(self) -> None:
        """
        Launch browser threads

        Raises:
            BrowserUnavailable: if no browser could be launched
        """
        if self._started:
            return
        for index in range(self.workers):
            thread = threading.Thread(target=self._browser_loop, name=f"browser-{index}", daemon=True)
            thread.start()
            self._threads.append(thread)
        for _ in self._threads:
            self._ready.acquire()
        if self._startup_errors:
            self.close()
            raise BrowserUnavailable(f"Cannot launch headless browser: {self._startup_errors[0]}")
        self._started = True
        logger.info("Started %d headless browser(s)", self.workers)

    def close(self) -> None:
        for _ in self._threads:
            self._jobs.put(None)
        for thread in self._threads:
            thread.join(timeout=10)
        self._threads = []
        self._started = False

    def render(self, url: str, cancel: Optional[threading.Event] = None,
               timeout: Optional[float] = None) -> RenderResult:
        if not self._started:
            raise BrowserUnavailable("Browser driver is not running")
        job = _RenderJob(url, cancel, timeout or self.render_timeout)
        self._jobs.put(job)

        # Poll in short slices so cancellation is observed
        deadline = time.monotonic() + job.timeout + 10
        while True:
            if cancel is not None and cancel.is_set():
                job.future.cancel()
                raise CrawlCancelled(f"Render cancelled: {url}")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                job.future.cancel()
                raise BrowserUnavailable(f"Render did not finish in time: {url}")
            try:
                return job.future.result(timeout=min(0.5, remaining))
            except FutureTimeout:
                continue

    # ============ Browser thread ============

    def _launch(self):
        playwright = sync_playwright().start()
        try:
            options = {'headless': True}
            if self.config.chrome_path:
                options['executable_path'] = self.config.chrome_path
            browser = playwright.chromium.launch(**options)
        except Exception:
            playwright.stop()
            raise
        return playwright, browser

    def _browser_loop(self) -> None:
        try:
            playwright, browser = self._launch()
        except Exception as e:
            with self._lock:
                self._startup_errors.append(str(e))
            self._ready.release()
            return
        self._ready.release()

        try:
            while True:
                job = self._jobs.get()
                if job is None:
                    break
                if not job.future.set_running_or_notify_cancel():
                    continue
                try:
                    job.future.set_result(self._render_page(browser, job))
                except Exception as e:
                    job.future.set_exception(e)
        finally:
            try:
                browser.close()
            finally:
                playwright.stop()

    def _new_context(self, browser, url: str):
        options = {'ignore_https_errors': not self.config.verify_ssl}
        if self.config.user_agents:
            options['user_agent'] = self.config.user_agents[0]
        if self.config.headers:
            options['extra_http_headers'] = dict(self.config.headers)
        context = browser.new_context(**options)
        if self.config.cookies:
            origin = get_origin(url)
            context.add_cookies([
                {'name': name, 'value': value, 'url': origin}
                for name, value in self.config.cookies.items()
            ])
        return context

    def _render_page(self, browser, job: _RenderJob) -> RenderResult:
        cancel = job.cancel
        if cancel is not None and cancel.is_set():
            raise CrawlCancelled(job.url)

        started = time.monotonic()
        timeout_ms = int(job.timeout * 1000)
        transcript: List[NetworkEntry] = []
        by_request: Dict[int, NetworkEntry] = {}
        state = {'loaded': False}

        context = self._new_context(browser, job.url)
        try:
            page = context.new_page()

            def on_request(request):
                entry = NetworkEntry(
                    method=request.method,
                    url=request.url,
                    headers=dict(request.headers),
                    body=request.post_data,
                    resource_type=request.resource_type,
                )
                by_request[id(request)] = entry
                transcript.append(entry)

            def on_response(response):
                entry = by_request.get(id(response.request))
                if entry is not None:
                    entry.status = response.status

            def guard_navigation(route, request):
                # Keep the page in place once loaded; the request is still recorded
                if (state['loaded'] and request.is_navigation_request()
                        and request.frame == page.main_frame):
                    route.abort()
                else:
                    route.continue_()

            page.on('request', on_request)
            page.on('response', on_response)
            page.route('**/*', guard_navigation)

            try:
                page.goto(job.url, wait_until='networkidle', timeout=timeout_ms)
            except PlaywrightTimeoutError:
                logger.debug("Network did not go idle before timeout: %s", job.url)
            state['loaded'] = True
            final_url = page.url

            self._fire_events(page, cancel, started + job.timeout)

            remaining_ms = int(max(0.0, started + job.timeout - time.monotonic()) * 1000)
            if remaining_ms:
                try:
                    page.wait_for_load_state('networkidle', timeout=remaining_ms)
                except PlaywrightTimeoutError:
                    pass

            return RenderResult(final_url=final_url, dom=page.content(), transcript=list(transcript))
        finally:
            context.close()

    def _fire_events(self, page, cancel: Optional[threading.Event], deadline: float) -> None:
        """Hover, click or submit a bounded number of interactive elements"""
        try:
            handles = page.query_selector_all(INTERACTIVE_SELECTOR)[:self.max_event_elements]
        except PlaywrightError as e:
            logger.debug("Cannot query interactive elements: %s", e)
            return

        for handle in handles:
            if (cancel is not None and cancel.is_set()) or time.monotonic() >= deadline:
                break
            try:
                tag = handle.evaluate('el => el.tagName.toLowerCase()')
                handle.dispatch_event('mouseover')
                if tag == 'form':
                    handle.evaluate('f => f.requestSubmit ? f.requestSubmit() : f.submit()')
                else:
                    handle.dispatch_event('click')
            except PlaywrightError:
                continue


# ============ Extractor ============

class DynamicExtractor:
    """Runs the static extractor over a rendered DOM and mines the network transcript"""

    def __init__(self, driver: BrowserDriver, static: Optional[StaticExtractor] = None,
                 render_timeout: Optional[float] = None):
        self.driver = driver
        self.static = static or StaticExtractor()
        self.render_timeout = render_timeout

    def extract(self, url: str, cancel: Optional[threading.Event] = None) -> ExtractionResult:
        """
        Render url and extract artifacts

        Raises:
            BrowserUnavailable: when the browser cannot render the page
            CrawlCancelled: when the run is cancelled mid-render
        """
        try:
            rendered = self.driver.render(url, cancel, self.render_timeout)
        except (BrowserUnavailable, CrawlCancelled):
            raise
        except PlaywrightError as e:
            raise BrowserUnavailable(f"Render failed for {url}: {e}") from e

        result = self.static.extract(rendered.dom, 'text/html', rendered.final_url or url)
        result.merge(self.from_transcript(rendered.final_url or url, rendered.transcript))
        return result

    def from_transcript(self, page_url: str, transcript: List[NetworkEntry]) -> ExtractionResult:
        """API hints, POST descriptors and sub-resources observed on the wire"""
        collector = ArtifactCollector(page_url)
        for entry in transcript:
            url = collector.resolve(entry.url)
            if not url:
                continue
            method = entry.method.upper()

            if entry.resource_type in ('xhr', 'fetch') or method not in ('GET', 'HEAD'):
                collector.add_api(url, method, 'network', with_post=False)
                if method not in ('GET', 'HEAD'):
                    content_type = _header(entry.headers, 'content-type') or 'application/x-www-form-urlencoded'
                    collector.add_post(PostDescriptor(
                        url=url,
                        method=method,
                        params=parse_body_params(entry.body, content_type),
                        content_type=content_type.split(';', 1)[0].strip(),
                        source='network',
                    ))
            elif entry.resource_type == 'document':
                collector.add_link(url)
            elif entry.resource_type == 'script':
                collector.add_script(url)
            elif entry.resource_type in ('image', 'media', 'font', 'stylesheet'):
                kind = 'stylesheet' if entry.resource_type == 'stylesheet' else None
                collector.add_static(url, kind)
        return collector.result


def _header(headers: Dict[str, str], name: str) -> str:
    for key, value in (headers or {}).items():
        if key.lower() == name:
            return value
    return ''


def parse_body_params(body: Optional[str], content_type: str) -> Dict[str, str]:
    """Parameter names and values of a captured request body"""
    if not body:
        return {}
    if 'json' in (content_type or '').lower():
        try:
            data = json.loads(body)
        except ValueError:
            return {}
        if isinstance(data, dict):
            return {str(k): '' if isinstance(v, (dict, list)) else str(v) for k, v in data.items()}
        return {}
    return {name: values[0] if values else '' for name, values in parse_qs(body, keep_blank_values=True).items()}


def create_driver(config: CrawlConfig) -> BrowserDriver:
    """Start the default driver for a run"""
    driver = PlaywrightDriver(config)
    driver.start()
    return driver
