"""
Utility Functions for ReconSpider
Common helper functions used across all services
"""

import hashlib
import json
import os
import re
from datetime import datetime
from typing import Dict, List, Optional
from urllib.parse import urlparse, urlencode

from reconspider.errors import ConfigError


# ============ Constants ============

DEFAULT_ENCODING = 'utf-8'

_CHARSET_RE = re.compile(r'charset\s*=\s*["\']?([\w.:-]+)', re.IGNORECASE)
_META_CHARSET_RE = re.compile(rb'<meta[^>]+charset\s*=\s*["\']?([\w.:-]+)', re.IGNORECASE)


# ============ Validation Functions ============

def is_valid_url(url: str) -> bool:
    """Check if string is a valid URL"""
    try:
        result = urlparse(url)
        return all([result.scheme, result.netloc])
    except Exception:
        return False


# ============ URL Functions ============

def build_url_with_params(base_url: str, params: Dict[str, str]) -> str:
    """Build URL with query parameters"""
    if not params:
        return base_url

    parsed = urlparse(base_url)
    query = urlencode(params)

    return f"{parsed.scheme}://{parsed.netloc}{parsed.path}?{query}"


# ============ HTTP Functions ============

def content_type_of(headers: Dict[str, str]) -> str:
    """Media type of a response without parameters, lower-cased"""
    value = ''
    for key, val in headers.items():
        if key.lower() == 'content-type':
            value = val
            break
    return value.split(';', 1)[0].strip().lower()


def is_html(content_type: str) -> bool:
    return any(ct in (content_type or '').lower() for ct in ('text/html', 'application/xhtml+xml'))


def is_script(content_type: str, url: str = '') -> bool:
    content_type = (content_type or '').lower()
    if 'javascript' in content_type or 'ecmascript' in content_type:
        return True
    return urlparse(url).path.lower().endswith(('.js', '.mjs'))


def decode_body(body: bytes, headers: Optional[Dict[str, str]] = None) -> str:
    """Decode a response body using the declared or sniffed charset"""
    encoding = None
    for key, value in (headers or {}).items():
        if key.lower() == 'content-type':
            match = _CHARSET_RE.search(value)
            if match:
                encoding = match.group(1)
            break
    if not encoding:
        match = _META_CHARSET_RE.search(body[:2048])
        if match:
            encoding = match.group(1).decode('ascii', errors='ignore')
    try:
        return body.decode(encoding or DEFAULT_ENCODING, errors='replace')
    except LookupError:
        return body.decode(DEFAULT_ENCODING, errors='replace')


def body_digest(body: bytes) -> str:
    """Reference hash stored on results instead of the body itself"""
    return hashlib.md5(body).hexdigest()


# ============ String Functions ============

def generate_scan_id() -> str:
    """Generate unique scan ID"""
    timestamp = datetime.now().strftime('%Y%m%d%H%M%S')
    random_hash = hashlib.md5(os.urandom(16)).hexdigest()[:8]
    return f"crawl_{timestamp}_{random_hash}"


def split_list(value: Optional[str]) -> List[str]:
    """Split a comma separated option into trimmed non-empty items"""
    if not value:
        return []
    return [item.strip() for item in value.split(',') if item.strip()]


# ============ File Functions ============

def load_wordlist(filepath: str) -> List[str]:
    """Load wordlist from file"""
    words = []
    try:
        with open(filepath, 'r', encoding='utf-8', errors='ignore') as f:
            for line in f:
                word = line.strip()
                if word and not word.startswith('#'):
                    words.append(word)
    except FileNotFoundError:
        raise ConfigError(f"Wordlist not found: {filepath}")
    return words


# ============ Parsing Functions ============

def parse_cookie_string(cookie_string: str) -> Dict[str, str]:
    """Parse cookie string into dictionary"""
    cookies = {}
    for item in cookie_string.split(';'):
        item = item.strip()
        if '=' in item:
            key, value = item.split('=', 1)
            cookies[key.strip()] = value.strip()
    return cookies


def load_cookie_file(filepath: str) -> Dict[str, str]:
    """
    Load cookies from a file

    Accepts a `name=value; name2=value2` header line, or Netscape cookie-jar
    lines with seven tab-separated columns.
    """
    try:
        with open(filepath, 'r', encoding='utf-8') as f:
            content = f.read()
    except OSError as e:
        raise ConfigError(f"Cannot read cookie file {filepath}: {e}") from e

    cookies: Dict[str, str] = {}
    for line in content.splitlines():
        line = line.strip()
        if not line or (line.startswith('#') and not line.startswith('#HttpOnly_')):
            continue
        columns = line.split('\t')
        if len(columns) == 7:
            cookies[columns[5]] = columns[6]
            continue
        if line.lower().startswith('cookie:'):
            line = line.split(':', 1)[1]
        cookies.update(parse_cookie_string(line))
    return cookies


def parse_headers_json(blob: Optional[str]) -> Dict[str, str]:
    """Parse a JSON object of extra request headers"""
    if not blob:
        return {}
    try:
        headers = json.loads(blob)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid headers JSON: {e}") from e
    if not isinstance(headers, dict):
        raise ConfigError("Headers must be a JSON object")
    return {str(k): str(v) for k, v in headers.items()}
