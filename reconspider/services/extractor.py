"""
Static Extractor
Parses HTML, JavaScript and CSS payloads into crawl artifacts
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from bs4 import BeautifulSoup, FeatureNotFound

from reconspider.errors import ErrorKind, ExtractError, URLRejected
from reconspider.models.crawl_result import (
    ApiHint,
    FormDescriptor,
    FormField,
    PostDescriptor,
    SpecialLink,
    StaticRef,
)
from reconspider.services.canonicalizer import (
    STYLE_EXTENSIONS,
    canonicalize,
    extension_of,
    special_kind,
    static_bucket,
)
from reconspider.services.utils import is_html, is_script

logger = logging.getLogger(__name__)


# ============ Patterns ============

_QUOTE = r'["\'`]'
_LITERAL = r'["\'`]([^"\'`\s<>]+)["\'`]'

# "/api/users", "https://x.test/rest/items", "/v2/orders"
_API_LITERAL_RE = re.compile(
    _QUOTE + r'((?:https?://[^"\'`\s/<>]+)?/(?:[^"\'`\s<>]*/)?(?:api|ajax|rest|graphql|v\d+)(?:[/?][^"\'`\s<>]*)?)' + _QUOTE,
    re.IGNORECASE
)
_FETCH_RE = re.compile(r'\bfetch\(\s*' + _LITERAL + r'\s*(?:,\s*(\{[^{}]*(?:\{[^{}]*\}[^{}]*)*\}))?')
_XHR_OPEN_RE = re.compile(r'\.open\(\s*["\'](\w+)["\']\s*,\s*' + _LITERAL)
_JQUERY_SHORT_RE = re.compile(r'\$\.(get|post|getJSON)\(\s*' + _LITERAL)
_JQUERY_AJAX_RE = re.compile(r'\$\.ajax\(\s*(\{[^{}]*(?:\{[^{}]*\}[^{}]*)*\})')
_AXIOS_RE = re.compile(r'\baxios\.(get|post|put|patch|delete)\(\s*' + _LITERAL)
_LOCATION_ASSIGN_RE = re.compile(r'\blocation(?:\.href)?\s*=\s*' + _LITERAL)
_LOCATION_CALL_RE = re.compile(r'\blocation\.(?:assign|replace)\(\s*' + _LITERAL)
_SPECIAL_LITERAL_RE = re.compile(_QUOTE + r'((?:wss?|ftp)://[^"\'`\s<>]+)' + _QUOTE, re.IGNORECASE)

_OPTION_URL_RE = re.compile(r'\burl\s*:\s*' + _LITERAL)
_OPTION_METHOD_RE = re.compile(r'\b(?:method|type)\s*:\s*["\'](\w+)["\']', re.IGNORECASE)
_OPTION_BODY_RE = re.compile(r'\b(?:body|data)\s*:\s*(?:JSON\.stringify\()?\s*\{([^{}]*)\}')
_OBJECT_KEY_RE = re.compile(r'["\']?([A-Za-z_$][\w$-]*)["\']?\s*:')

_CSS_URL_RE = re.compile(r'url\(\s*["\']?([^"\')\s]+)["\']?\s*\)', re.IGNORECASE)
_CSS_IMPORT_RE = re.compile(r'@import\s+["\']([^"\']+)["\']', re.IGNORECASE)
_META_REFRESH_RE = re.compile(r'url\s*=\s*(.+)', re.IGNORECASE)

JSON_TYPES = ('application/json', 'text/json')
CSS_TYPES = ('text/css',)


# ============ Result ============

@dataclass
class ExtractionResult:
    """Artifacts found on one page, in document order"""

    links: List[str] = field(default_factory=list)
    forms: List[FormDescriptor] = field(default_factory=list)
    apis: List[ApiHint] = field(default_factory=list)
    post_requests: List[PostDescriptor] = field(default_factory=list)
    static_refs: List[StaticRef] = field(default_factory=list)
    special_links: List[SpecialLink] = field(default_factory=list)
    scripts: List[str] = field(default_factory=list)
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    def merge(self, other: 'ExtractionResult') -> None:
        """Append artifacts of another result, skipping ones already present"""
        for name in ('links', 'scripts'):
            target = getattr(self, name)
            for value in getattr(other, name):
                if value not in target:
                    target.append(value)
        for name in ('forms', 'apis', 'post_requests', 'static_refs', 'special_links'):
            target = getattr(self, name)
            for value in getattr(other, name):
                if value not in target:
                    target.append(value)
        if other.error and not self.error:
            self.error = other.error
            self.error_kind = other.error_kind


# ============ Extractor ============

class StaticExtractor:
    """
    HTML/JS/CSS text-level extractor

    Features:
    - Links from anchors, areas, link tags, frames and meta refresh
    - Forms with ordered named fields
    - Static resource references bucketed by extension
    - API hints from inline scripts (fetch, XHR, jQuery, axios, location)
    - Special protocol links (mailto, tel, websocket, ftp, data)
    """

    def __init__(self, parser: str = 'html.parser'):
        self.parser = parser

    def extract(
        self,
        body: str,
        content_type: str,
        page_url: str,
        redirect_chain: Optional[List[str]] = None
    ) -> ExtractionResult:
        """
        Extract artifacts from a decoded response body

        Args:
            body: Decoded body text
            content_type: Media type of the response
            page_url: URL the body was served from (used as base)
            redirect_chain: URLs visited through redirects, if any

        Returns:
            ExtractionResult, with `error` set when parsing failed part way
        """
        collector = ArtifactCollector(page_url)
        for hop in redirect_chain or []:
            collector.add_link(hop)

        try:
            if is_html(content_type):
                self._extract_html(body, collector)
            elif is_script(content_type, page_url):
                self._extract_script(body, collector)
            elif any(ct in content_type for ct in CSS_TYPES) or extension_of(page_url.split('?', 1)[0]) in STYLE_EXTENSIONS:
                self._extract_css(body, collector)
            elif any(ct in content_type for ct in JSON_TYPES) or content_type.endswith('+json'):
                self._extract_script(body, collector)
        except ExtractError as e:
            logger.warning("Extraction failed for %s: %s", page_url, e)
            collector.result.error = f"extract error: {e}"
            collector.result.error_kind = e.kind
        except Exception as e:
            logger.exception("Unexpected extraction failure for %s", page_url)
            collector.result.error = f"extract error: {e}"
            collector.result.error_kind = ErrorKind.EXTRACT_PARSE

        return collector.result

    def extract_script(self, text: str, page_url: str) -> ExtractionResult:
        """API hints and special links from a JavaScript or JSON payload"""
        collector = ArtifactCollector(page_url)
        self._extract_script(text, collector)
        return collector.result

    # ============ HTML ============

    def _extract_html(self, body: str, collector: 'ArtifactCollector') -> None:
        try:
            soup = BeautifulSoup(body, self.parser)
        except FeatureNotFound as e:
            raise ExtractError(f"HTML parser {self.parser!r} is not installed") from e

        base_tag = soup.find('base', href=True)
        if base_tag:
            collector.rebase(base_tag['href'])

        for tag in soup.find_all(True):
            name = tag.name
            if name in ('a', 'area'):
                collector.add_href(tag.get('href'))
            elif name == 'link':
                rel = [r.lower() for r in (tag.get('rel') or [])]
                if 'stylesheet' in rel:
                    collector.add_static(tag.get('href'), 'stylesheet')
                else:
                    collector.add_href(tag.get('href'))
            elif name in ('iframe', 'frame'):
                collector.add_href(tag.get('src'))
            elif name == 'meta':
                if (tag.get('http-equiv') or '').lower() == 'refresh':
                    match = _META_REFRESH_RE.search(tag.get('content', ''))
                    if match:
                        collector.add_href(match.group(1).strip().strip('"\''))
            elif name == 'script':
                if tag.get('src'):
                    collector.add_script(tag['src'])
                else:
                    self._extract_script(tag.string or tag.get_text() or '', collector)
            elif name in ('img', 'source', 'video', 'audio', 'embed', 'track'):
                collector.add_static(tag.get('src'), None)
                if name == 'video' and tag.get('poster'):
                    collector.add_static(tag['poster'], None)
            elif name == 'form':
                self._extract_form(tag, collector)
            elif name == 'style':
                self._extract_css(tag.get_text() or '', collector)

            for attr, value in tag.attrs.items():
                if attr.startswith('on') and isinstance(value, str) and value:
                    self._extract_script(value, collector)

    def _extract_form(self, form, collector: 'ArtifactCollector') -> None:
        method = (form.get('method') or 'GET').strip().upper() or 'GET'
        action_raw = (form.get('action') or '').strip()
        action = collector.resolve(action_raw) if action_raw else collector.page_url
        if action is None:
            return

        fields = []
        for control in form.find_all(['input', 'select', 'textarea']):
            field_name = control.get('name')
            if not field_name:
                continue
            if control.name == 'select':
                selected = control.find('option', selected=True) or control.find('option')
                value = selected.get('value', selected.get_text().strip()) if selected else None
                field_type = 'select'
            elif control.name == 'textarea':
                value = control.get_text() or None
                field_type = 'textarea'
            else:
                value = control.get('value')
                field_type = (control.get('type') or 'text').lower()
            fields.append(FormField(name=field_name, type=field_type, value=value))

        descriptor = FormDescriptor(
            method=method,
            action=action,
            fields=fields,
            enctype=form.get('enctype') or 'application/x-www-form-urlencoded',
            source_url=collector.page_url,
        )
        collector.result.forms.append(descriptor)

        if method != 'GET':
            collector.add_post(PostDescriptor(
                url=action,
                method=method,
                params={f.name: f.value or '' for f in fields},
                content_type=descriptor.enctype,
                source='form',
            ))

    # ============ Scripts ============

    def _extract_script(self, text: str, collector: 'ArtifactCollector') -> None:
        if not text:
            return
        found: List[Tuple[int, str, str, str, Optional[str]]] = []

        for match in _API_LITERAL_RE.finditer(text):
            found.append((match.start(), match.group(1), 'GET', 'literal', None))
        for match in _FETCH_RE.finditer(text):
            options = match.group(2) or ''
            method = _option_method(options) or 'GET'
            found.append((match.start(), match.group(1), method, 'fetch', options))
        for match in _XHR_OPEN_RE.finditer(text):
            found.append((match.start(), match.group(2), match.group(1).upper(), 'xhr', None))
        for match in _JQUERY_SHORT_RE.finditer(text):
            method = 'POST' if match.group(1) == 'post' else 'GET'
            found.append((match.start(), match.group(2), method, 'jquery', None))
        for match in _JQUERY_AJAX_RE.finditer(text):
            options = match.group(1)
            url_match = _OPTION_URL_RE.search(options)
            if url_match:
                method = _option_method(options) or 'GET'
                found.append((match.start(), url_match.group(1), method, 'jquery', options))
        for match in _AXIOS_RE.finditer(text):
            found.append((match.start(), match.group(2), match.group(1).upper(), 'axios', None))
        for match in _LOCATION_ASSIGN_RE.finditer(text):
            found.append((match.start(), match.group(1), 'GET', 'location', None))
        for match in _LOCATION_CALL_RE.finditer(text):
            found.append((match.start(), match.group(1), 'GET', 'location', None))

        found.sort(key=lambda entry: entry[0])
        for _, raw_url, method, source, options in found:
            collector.add_api(raw_url, method, source, options)

        for match in _SPECIAL_LITERAL_RE.finditer(text):
            collector.add_special(match.group(1))

    # ============ Stylesheets ============

    def _extract_css(self, text: str, collector: 'ArtifactCollector') -> None:
        if not text:
            return
        refs = [(m.start(), m.group(1)) for m in _CSS_URL_RE.finditer(text)]
        refs.extend((m.start(), m.group(1)) for m in _CSS_IMPORT_RE.finditer(text))
        for _, ref in sorted(refs):
            if extension_of(ref.split('?', 1)[0]) in STYLE_EXTENSIONS:
                collector.add_static(ref, 'stylesheet')
            else:
                collector.add_static(ref, None)


def _option_method(options: str) -> Optional[str]:
    match = _OPTION_METHOD_RE.search(options or '')
    return match.group(1).upper() if match else None


def _option_params(options: str) -> Dict[str, str]:
    match = _OPTION_BODY_RE.search(options or '')
    if not match:
        return {}
    return {key: '' for key in _OBJECT_KEY_RE.findall(match.group(1))}


class ArtifactCollector:
    """Accumulates artifacts for one page, resolving and de-duplicating"""

    def __init__(self, page_url: str):
        self.page_url = page_url
        self.base_url = page_url
        self.result = ExtractionResult()
        self._seen: Set[Tuple[str, str]] = set()

    def rebase(self, href: str) -> None:
        resolved = self.resolve(href)
        if resolved:
            self.base_url = resolved

    def resolve(self, raw: Optional[str]) -> Optional[str]:
        """Absolute canonical form of an http(s) reference, or None"""
        if not raw:
            return None
        try:
            return canonicalize(raw, self.base_url).canonical
        except URLRejected as e:
            logger.debug("Skipping %r on %s: %s", raw, self.page_url, e.reason)
            return None

    def _first(self, kind: str, value: str) -> bool:
        key = (kind, value)
        if key in self._seen:
            return False
        self._seen.add(key)
        return True

    def add_special(self, raw: str) -> bool:
        kind = special_kind(raw)
        if not kind:
            return False
        value = raw.strip()
        if self._first('special', value):
            self.result.special_links.append(SpecialLink(url=value, kind=kind))
        return True

    def add_href(self, raw: Optional[str]) -> None:
        if not raw or self.add_special(raw):
            return
        self.add_link(raw)

    def add_link(self, raw: str) -> None:
        url = self.resolve(raw)
        if url and url != self.page_url and self._first('link', url):
            self.result.links.append(url)

    def add_static(self, raw: Optional[str], kind: Optional[str]) -> None:
        if not raw or self.add_special(raw):
            return
        url = self.resolve(raw)
        if not url:
            return
        path = url.split('?', 1)[0]
        kind = kind or static_bucket(path) or 'other'
        if self._first('static', url):
            self.result.static_refs.append(StaticRef(url=url, kind=kind))

    def add_script(self, raw: str) -> None:
        url = self.resolve(raw)
        if not url:
            return
        if self._first('static', url):
            self.result.static_refs.append(StaticRef(url=url, kind='script'))
        if self._first('script', url):
            self.result.scripts.append(url)

    def add_api(self, raw: str, method: str, source: str, options: Optional[str] = None,
                with_post: bool = True) -> None:
        if '${' in raw or raw.startswith('#'):
            return
        if self.add_special(raw):
            return
        url = self.resolve(raw)
        if not url:
            return
        method = method.upper()
        if not self._first('api', f"{method} {url}"):
            return
        self.result.apis.append(ApiHint(url=url, method=method, source=source))
        if with_post and method not in ('GET', 'HEAD'):
            content_type = 'application/json' if 'JSON.stringify' in (options or '') else \
                'application/x-www-form-urlencoded'
            self.add_post(PostDescriptor(
                url=url,
                method=method,
                params=_option_params(options or ''),
                content_type=content_type,
                source=source,
            ))

    def add_post(self, descriptor: PostDescriptor) -> None:
        key = f"{descriptor.method} {descriptor.url} {','.join(sorted(descriptor.params))}"
        if self._first('post', key):
            self.result.post_requests.append(descriptor)
