"""
robots.txt and sitemap support
"""

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple
from urllib.parse import urlsplit

import requests
from bs4 import BeautifulSoup

from reconspider.errors import ErrorKind, FetchError

logger = logging.getLogger(__name__)


AGENT_TOKEN = 'reconspider'
MAX_SITEMAP_URLS = 500
MAX_SITEMAP_DEPTH = 2


def _get_text(session: requests.Session, url: str, timeout: float) -> str:
    """GET a small text resource, raising FetchError unless it answers 200"""
    try:
        response = session.get(url, timeout=timeout)
    except requests.exceptions.Timeout as e:
        raise FetchError(str(e), ErrorKind.FETCH_TIMEOUT) from e
    except requests.exceptions.RequestException as e:
        raise FetchError(str(e)) from e
    if response.status_code != 200:
        raise FetchError(f"HTTP {response.status_code}", ErrorKind.FETCH_HTTP_ERROR, response.status_code)
    return response.text


def _rule_regex(path: str) -> 're.Pattern':
    """robots.txt path pattern with `*` wildcards and `$` anchor"""
    anchored = path.endswith('$')
    if anchored:
        path = path[:-1]
    pattern = '.*'.join(re.escape(part) for part in path.split('*'))
    return re.compile('^' + pattern + ('$' if anchored else ''))


@dataclass
class RobotsPolicy:
    """
    Parsed robots.txt rules for one origin

    The longest matching rule wins; Allow wins a tie. Only groups for `*`
    or our agent token apply.
    """

    rules: List[Tuple[str, bool]] = field(default_factory=list)
    sitemaps: List[str] = field(default_factory=list)
    crawl_delay: Optional[float] = None
    exists: bool = False

    @classmethod
    def parse(cls, content: str, agent: str = AGENT_TOKEN) -> 'RobotsPolicy':
        policy = cls(exists=True)
        agent = agent.lower()
        current_agents: List[str] = []
        in_rules = False

        for line in content.split('\n'):
            line = line.split('#', 1)[0].strip()
            if not line or ':' not in line:
                continue

            directive, value = line.split(':', 1)
            directive = directive.strip().lower()
            value = value.strip()

            if directive == 'user-agent':
                if in_rules:
                    current_agents = []
                    in_rules = False
                current_agents.append(value.lower())
                continue

            applies = any(a == '*' or (a and a in agent) for a in current_agents)

            if directive in ('disallow', 'allow'):
                in_rules = True
                if applies and value:
                    policy.rules.append((value, directive == 'allow'))
            elif directive == 'crawl-delay':
                in_rules = True
                if applies:
                    try:
                        policy.crawl_delay = float(value)
                    except ValueError:
                        pass
            elif directive == 'sitemap':
                policy.sitemaps.append(value)

        return policy

    @classmethod
    def fetch(cls, session: requests.Session, base_url: str, timeout: float = 10) -> 'RobotsPolicy':
        """Fetch and parse `<base_url>/robots.txt`; a missing file allows everything"""
        robots_url = f"{base_url.rstrip('/')}/robots.txt"
        try:
            text = _get_text(session, robots_url, timeout)
        except FetchError as e:
            logger.info("robots.txt unavailable at %s: %s", robots_url, e)
            return cls()
        policy = cls.parse(text)
        logger.info("Loaded robots.txt from %s (%d rules)", robots_url, len(policy.rules))
        return policy

    def allowed(self, url: str) -> bool:
        """Check a URL's path and query against the rules"""
        parts = urlsplit(url)
        target = parts.path or '/'
        if parts.query:
            target += '?' + parts.query

        best_length = -1
        best_allow = True
        for path, allow in self.rules:
            if _rule_regex(path).match(target):
                length = len(path)
                if length > best_length or (length == best_length and allow):
                    best_length = length
                    best_allow = allow
        return best_allow


def parse_sitemap(
    session: requests.Session,
    sitemap_url: str,
    timeout: float = 10,
    max_urls: int = MAX_SITEMAP_URLS,
    depth: int = 0
) -> List[str]:
    """Parse sitemap.xml (following nested sitemap indexes) for page URLs"""
    urls: List[str] = []

    try:
        text = _get_text(session, sitemap_url, timeout)
    except FetchError as e:
        logger.info("Sitemap unavailable at %s: %s", sitemap_url, e)
        return urls

    soup = BeautifulSoup(text, 'html.parser')

    # Sitemap index
    if depth < MAX_SITEMAP_DEPTH:
        for sitemap in soup.find_all('sitemap'):
            loc = sitemap.find('loc')
            if loc and len(urls) < max_urls:
                urls.extend(parse_sitemap(session, loc.get_text().strip(), timeout,
                                          max_urls - len(urls), depth + 1))

    for url_tag in soup.find_all('url'):
        if len(urls) >= max_urls:
            break
        loc = url_tag.find('loc')
        if loc:
            urls.append(loc.get_text().strip())

    return urls[:max_urls]
