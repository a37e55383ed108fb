"""
URL Canonicalizer & Classifier
Normalizes, hashes and tags URLs so that equal URLs compare equal
"""

import hashlib
import re
from typing import List, Optional, Tuple
from urllib.parse import urljoin, urlsplit

import idna

from reconspider.models.crawl_result import URLClass, URLRecord
from reconspider.errors import URLRejected


# ============ Constants ============

ALLOWED_SCHEMES = ('http', 'https')
DEFAULT_PORTS = {'http': 80, 'https': 443}

SPECIAL_SCHEMES = {
    'mailto': 'mailto',
    'tel': 'tel',
    'ws': 'websocket',
    'wss': 'websocket',
    'ftp': 'ftp',
    'data': 'data',
}

STATIC_EXTENSIONS = {
    'images': ('.jpg', '.jpeg', '.png', '.gif', '.svg', '.webp', '.ico', '.bmp',
               '.tif', '.tiff', '.avif'),
    'videos': ('.mp4', '.avi', '.mov', '.wmv', '.flv', '.mkv', '.webm', '.m4v',
               '.mpg', '.mpeg', '.3gp'),
    'audios': ('.mp3', '.wav', '.ogg', '.m4a', '.aac', '.flac', '.wma', '.opus',
               '.aiff'),
    'fonts': ('.woff', '.woff2', '.ttf', '.eot', '.otf'),
    'documents': ('.pdf', '.doc', '.docx', '.xls', '.xlsx', '.ppt', '.pptx',
                  '.txt', '.csv', '.rtf'),
    'archives': ('.zip', '.rar', '.tar', '.gz', '.bz2', '.7z', '.tgz'),
}

STYLE_EXTENSIONS = ('.css', '.scss', '.sass', '.less')

# Extensions that mark a query value as a file reference
FILE_PARAM_BUCKETS = ('documents', 'archives', 'images')

API_PATH_TOKENS = ('/api/', '/ajax/', '/rest/')

PATTERN_WILDCARD = '{id}'

_UNRESERVED = frozenset(
    'ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-._~'
)
_SUB_DELIMS = frozenset("!$&'()*+,;=")
_PATH_SAFE = _UNRESERVED | _SUB_DELIMS | frozenset(':@/')
_QUERY_SAFE = (_UNRESERVED | _SUB_DELIMS | frozenset(':@/?')) - frozenset('&=')

_HEX = frozenset('0123456789abcdefABCDEF')
_UUID_RE = re.compile(
    r'^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$'
)
_SLUG_RE = re.compile(r'^[A-Za-z0-9_-]+$')
_HOST_RE = re.compile(r'^[a-z0-9_-]+(\.[a-z0-9_-]+)*$')


# ============ Percent-encoding ============

def _normalize_component(text: str, safe: frozenset) -> str:
    """
    Percent-normalize a URL component

    Escapes of unreserved characters are decoded, remaining escapes get
    upper-case hex, and characters outside `safe` are UTF-8 encoded.
    """
    out: List[str] = []
    i = 0
    length = len(text)
    while i < length:
        ch = text[i]
        if ch == '%':
            if i + 2 < length and text[i + 1] in _HEX and text[i + 2] in _HEX:
                decoded = chr(int(text[i + 1:i + 3], 16))
                if decoded in _UNRESERVED:
                    out.append(decoded)
                else:
                    out.append('%' + text[i + 1:i + 3].upper())
                i += 3
                continue
            out.append('%25')
        elif ch in safe:
            out.append(ch)
        else:
            out.extend('%{:02X}'.format(b) for b in ch.encode('utf-8'))
        i += 1
    return ''.join(out)


def remove_dot_segments(path: str) -> str:
    """Resolve '.' and '..' segments (RFC 3986 section 5.2.4)"""
    if not path:
        return path
    segments = path.split('/')
    output: List[str] = []
    for segment in segments:
        if segment == '.':
            continue
        if segment == '..':
            if len(output) > 1:
                output.pop()
            continue
        output.append(segment)
    resolved = '/'.join(output)
    if segments[-1] in ('.', '..'):
        resolved += '/'
    if not resolved.startswith('/'):
        resolved = '/' + resolved
    return resolved


# ============ Host handling ============

def _encode_host(host: str) -> str:
    """Lower-case and IDNA-encode a host name"""
    if not host:
        raise URLRejected('empty-host')
    if host.startswith('['):
        return host.lower()
    host = host.rstrip('.').lower()
    if not all(ord(ch) < 128 for ch in host):
        try:
            host = idna.encode(host, uts46=True).decode('ascii')
        except idna.IDNAError as e:
            raise URLRejected('bad-host', host) from e
    if not _HOST_RE.match(host):
        raise URLRejected('bad-host', host)
    return host


def _split_netloc(netloc: str) -> Tuple[str, str, Optional[int]]:
    """Split netloc into (userinfo, host, port)"""
    userinfo = ''
    if '@' in netloc:
        userinfo, netloc = netloc.rsplit('@', 1)
    port: Optional[int] = None
    host = netloc
    if netloc.startswith('['):
        end = netloc.find(']')
        if end == -1:
            raise URLRejected('bad-host', netloc)
        host = netloc[:end + 1]
        rest = netloc[end + 1:]
        if rest.startswith(':') and rest[1:]:
            port = _parse_port(rest[1:])
    elif ':' in netloc:
        host, port_text = netloc.rsplit(':', 1)
        if port_text:
            port = _parse_port(port_text)
    return userinfo, host, port


def _parse_port(text: str) -> int:
    if not text.isdigit() or not 0 < int(text) < 65536:
        raise URLRejected('bad-port', text)
    return int(text)


# ============ Classification helpers ============

def extension_of(path: str) -> str:
    """Lower-case extension of the last path segment, with the dot"""
    last = path.rsplit('/', 1)[-1].lower()
    if last.endswith(('.tar.gz', '.tar.bz2')):
        return '.' + '.'.join(last.rsplit('.', 2)[-2:])
    if '.' not in last:
        return ''
    return '.' + last.rsplit('.', 1)[-1]


def static_bucket(path: str) -> Optional[str]:
    """Return the static-resource bucket for a path, or None"""
    ext = extension_of(path)
    if not ext:
        return None
    if ext in ('.tar.gz', '.tar.bz2'):
        return 'archives'
    for bucket, extensions in STATIC_EXTENSIONS.items():
        if ext in extensions:
            return bucket
    return None


def special_kind(url: str) -> Optional[str]:
    """Return the special-protocol bucket for a URL, or None"""
    match = re.match(r'^\s*([A-Za-z][A-Za-z0-9+.-]*):', url)
    if not match:
        return None
    return SPECIAL_SCHEMES.get(match.group(1).lower())


def is_resource_name(segment: str) -> bool:
    """Segment looks like a collection name such as 'users'"""
    if len(segment) < 2 or not segment[0].isalpha():
        return False
    alpha = sum(1 for ch in segment if ch.isalpha())
    return alpha / len(segment) >= 0.6


def is_resource_id(segment: str) -> bool:
    """Segment looks like an identifier: digits, UUID or slug containing a digit"""
    if not segment:
        return False
    if segment.isdigit():
        return True
    if _UUID_RE.match(segment):
        return True
    return bool(_SLUG_RE.match(segment)) and any(ch.isdigit() for ch in segment)


def _count_rest_pairs(segments: List[str]) -> int:
    pairs = 0
    i = 0
    while i + 1 < len(segments):
        name, ident = segments[i], segments[i + 1]
        trailing = i + 2 == len(segments) and pairs >= 1
        if is_resource_name(name) and not is_resource_id(name) and (
                is_resource_id(ident) or (trailing and _SLUG_RE.match(ident))):
            pairs += 1
            i += 2
        else:
            i += 1
    return pairs


def _split_query(query: str) -> List[Tuple[str, str]]:
    pairs = []
    for part in query.split('&'):
        if not part:
            continue
        name, _, value = part.partition('=')
        pairs.append((name, value))
    return pairs


def classify(path: str, query_pairs: List[Tuple[str, str]],
             content_type_hint: Optional[str] = None) -> URLClass:
    """
    Classify a canonical path and query

    Precedence: static, file-param, multi-param, ajax, restful, normal.
    """
    if static_bucket(path):
        return URLClass.STATIC

    for _, value in query_pairs:
        bucket = static_bucket(value.split('?', 1)[0])
        if bucket in FILE_PARAM_BUCKETS:
            return URLClass.FILE_PARAM

    if len(query_pairs) >= 3:
        return URLClass.MULTI_PARAM

    probe = path.lower()
    if not probe.endswith('/'):
        probe += '/'
    if any(token in probe for token in API_PATH_TOKENS):
        return URLClass.AJAX
    if content_type_hint and 'json' in content_type_hint.lower():
        return URLClass.AJAX

    segments = [s for s in path.split('/') if s]
    if _count_rest_pairs(segments) >= 2:
        return URLClass.RESTFUL

    return URLClass.NORMAL


def pattern_key(origin: str, path: str, query_names: Tuple[str, ...]) -> str:
    """URL shape with resource-id segments replaced by a wildcard"""
    segments = path.split('/')
    shaped = '/'.join(PATTERN_WILDCARD if is_resource_id(s) else s for s in segments)
    key = origin + shaped
    if query_names:
        key += '?' + '&'.join(sorted(set(query_names)))
    return key


def url_hash(canonical: str) -> str:
    """128-bit hash of a canonical URL"""
    return hashlib.md5(canonical.encode('utf-8')).hexdigest()


# ============ Public API ============

def canonicalize(raw: str, base: Optional[str] = None,
                 content_type_hint: Optional[str] = None) -> URLRecord:
    """
    Canonicalize a URL

    Args:
        raw: URL as found (absolute or relative)
        base: URL used to resolve relative references
        content_type_hint: Content type known for the target, if any

    Returns:
        URLRecord with canonical form, hash, classification and pattern key

    Raises:
        URLRejected: when the URL is empty, not http(s) or malformed
    """
    if raw is None:
        raise URLRejected('empty')
    text = raw.strip()
    if not text:
        raise URLRejected('empty')
    kind = special_kind(text)
    if kind:
        raise URLRejected('special-protocol:' + kind, text)
    if text.lower().startswith(('javascript:', 'about:', 'blob:')):
        raise URLRejected('unsupported-scheme', text)

    try:
        parts = urlsplit(text)
        # urljoin drops empty ;params, so absolute URLs are used as is
        if base and not parts.scheme:
            text = urljoin(base, text)
            parts = urlsplit(text)
    except ValueError as e:
        raise URLRejected('malformed', text) from e

    scheme = parts.scheme.lower()
    if scheme not in ALLOWED_SCHEMES:
        raise URLRejected('unsupported-scheme', text)

    userinfo, host, port = _split_netloc(parts.netloc)
    host = _encode_host(host)
    if port is not None and port == DEFAULT_PORTS[scheme]:
        port = None

    netloc = host if port is None else f"{host}:{port}"
    origin = f"{scheme}://{netloc}"
    if userinfo:
        netloc = f"{userinfo}@{netloc}"

    path = remove_dot_segments(_normalize_component(parts.path, _PATH_SAFE)) or '/'

    query_pairs = [
        (_normalize_component(name, _QUERY_SAFE), _normalize_component(value, _QUERY_SAFE))
        for name, value in _split_query(parts.query)
    ]
    query_pairs.sort(key=lambda pair: (pair[0], pair[1]))
    query = '&'.join(f"{name}={value}" for name, value in query_pairs)

    canonical = f"{scheme}://{netloc}{path}"
    if query:
        canonical += '?' + query

    query_names = tuple(sorted(name for name, _ in query_pairs))
    return URLRecord(
        raw=raw,
        canonical=canonical,
        origin=origin,
        host=host,
        path=path,
        query_names=query_names,
        url_class=classify(path, query_pairs, content_type_hint),
        hash=url_hash(canonical),
        pattern_key=pattern_key(origin, path, query_names),
    )


def try_canonicalize(raw: str, base: Optional[str] = None,
                     content_type_hint: Optional[str] = None) -> Optional[URLRecord]:
    """Canonicalize, returning None instead of raising"""
    try:
        return canonicalize(raw, base, content_type_hint)
    except URLRejected:
        return None


def get_origin(url: str) -> str:
    """Origin (scheme://host[:port]) of an absolute URL"""
    return canonicalize(url).origin
