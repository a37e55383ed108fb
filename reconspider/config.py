"""
Application Configuration
"""

import json
import os
from dataclasses import dataclass, field, fields, asdict
from typing import Any, Dict, List, Optional

from reconspider.models.crawl_result import CrawlMode, Strategy
from reconspider.errors import ConfigError, URLRejected


class Config:
    """Base configuration"""

    # Flask settings
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'your-secret-key-change-in-production'
    DEBUG = True

    # Crawl limits
    MAX_DEPTH = 3
    MAX_PAGES = 100
    MAX_WORKERS = 10
    FRONTIER_CAPACITY = 10000
    RESULT_QUEUE_SIZE = 100

    # Request settings
    REQUEST_TIMEOUT = 10
    REQUEST_DELAY = 0.1
    MAX_REDIRECTS = 10
    MAX_BODY_BYTES = 5 * 1024 * 1024
    USER_AGENTS = [
        'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
        'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
        'Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
    ]

    # Retry policy
    MAX_ATTEMPTS = 3
    RETRY_BASE = 0.5
    RETRY_FACTOR = 2.0
    RETRY_JITTER = 0.25

    # Dynamic rendering
    RENDER_TIMEOUT = 30
    MAX_EVENT_ELEMENTS = 30
    BROWSER_WORKERS = 1

    # Parameter fuzzing
    PARAM_FUZZ_LIMIT = 5
    POST_PARAM_FUZZ_LIMIT = 3

    # Sensitive scanning
    SCAN_MAX_BYTES = 2 * 1024 * 1024

    # Report settings
    REPORTS_FOLDER = 'reports'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    REQUEST_TIMEOUT = 20


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    REQUEST_DELAY = 0
    RETRY_BASE = 0


PROXY_ENV_VARS = ('HTTPS_PROXY', 'https_proxy', 'HTTP_PROXY', 'http_proxy')


@dataclass
class CrawlConfig:
    """
    Run configuration handed to the Coordinator

    Built from Config defaults, then a JSON config file, then CLI flags.
    """

    target_url: str = ''
    mode: str = CrawlMode.STATIC.value
    strategy: str = Strategy.BFS.value

    # Limits
    max_depth: int = Config.MAX_DEPTH
    max_pages: int = Config.MAX_PAGES
    workers: int = Config.MAX_WORKERS
    frontier_capacity: int = Config.FRONTIER_CAPACITY
    result_queue_size: int = Config.RESULT_QUEUE_SIZE
    run_timeout: Optional[float] = None

    # Requests
    timeout: float = Config.REQUEST_TIMEOUT
    delay: float = Config.REQUEST_DELAY
    max_redirects: int = Config.MAX_REDIRECTS
    max_body_bytes: int = Config.MAX_BODY_BYTES
    max_attempts: int = Config.MAX_ATTEMPTS
    retry_base: float = Config.RETRY_BASE
    retry_factor: float = Config.RETRY_FACTOR
    retry_jitter: float = Config.RETRY_JITTER
    user_agents: List[str] = field(default_factory=lambda: list(Config.USER_AGENTS))
    proxies: List[str] = field(default_factory=list)
    cookies: Dict[str, str] = field(default_factory=dict)
    headers: Dict[str, str] = field(default_factory=dict)
    verify_ssl: bool = False

    # Scope
    allow_subdomains: bool = False
    respect_robots: bool = True
    use_sitemap: bool = False

    # Deduplication
    pattern_cap: Optional[int] = None

    # Dynamic rendering
    render_timeout: float = Config.RENDER_TIMEOUT
    max_event_elements: int = Config.MAX_EVENT_ELEMENTS
    browser_workers: int = Config.BROWSER_WORKERS
    chrome_path: Optional[str] = None

    # Fuzzing
    fuzz: bool = False
    fuzz_params: List[str] = field(default_factory=list)
    param_fuzz_limit: int = Config.PARAM_FUZZ_LIMIT
    post_param_fuzz_limit: int = Config.POST_PARAM_FUZZ_LIMIT
    post_fuzz: bool = True
    submit_post_forms: bool = False

    # Sensitive scanning
    rules_file: Optional[str] = None
    scan_max_bytes: int = Config.SCAN_MAX_BYTES

    # Output
    output: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CrawlConfig':
        """Create config from a dictionary, rejecting unknown keys"""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}")
        return cls(**data)

    @classmethod
    def from_file(cls, filepath: str) -> 'CrawlConfig':
        """Load config from a JSON file"""
        try:
            with open(filepath, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Cannot read config file {filepath}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {filepath} must contain a JSON object")
        return cls.from_dict(data)

    def update(self, **overrides) -> 'CrawlConfig':
        """Apply non-None overrides in place"""
        known = {f.name for f in fields(self)}
        for key, value in overrides.items():
            if key not in known:
                raise ConfigError(f"Unknown configuration key: {key}")
            if value is not None:
                setattr(self, key, value)
        return self

    def resolve_proxies(self) -> List[str]:
        """Configured proxies, falling back to the proxy environment variables"""
        if self.proxies:
            return list(self.proxies)
        for name in PROXY_ENV_VARS:
            value = os.environ.get(name)
            if value:
                return [value]
        return []

    def validate(self) -> 'CrawlConfig':
        """
        Check the configuration

        Raises:
            ConfigError: on the first invalid setting
        """
        from reconspider.services.canonicalizer import canonicalize
        from reconspider.services.utils import is_valid_url

        if not self.target_url or not is_valid_url(self.target_url):
            raise ConfigError(f"Invalid target URL: {self.target_url!r}")
        if not self.target_url.lower().startswith(('http://', 'https://')):
            raise ConfigError("Target URL must use http or https")
        try:
            canonicalize(self.target_url)
        except URLRejected as e:
            raise ConfigError(f"Invalid target URL: {self.target_url!r} ({e.reason})") from e
        try:
            CrawlMode(self.mode)
        except ValueError:
            raise ConfigError(f"Unknown mode: {self.mode}")
        try:
            Strategy(self.strategy)
        except ValueError:
            raise ConfigError(f"Unknown strategy: {self.strategy}")

        positives = {
            'max_pages': self.max_pages,
            'workers': self.workers,
            'timeout': self.timeout,
            'frontier_capacity': self.frontier_capacity,
            'result_queue_size': self.result_queue_size,
            'max_attempts': self.max_attempts,
            'max_body_bytes': self.max_body_bytes,
            'render_timeout': self.render_timeout,
            'browser_workers': self.browser_workers,
        }
        for name, value in positives.items():
            if value is None or value <= 0:
                raise ConfigError(f"{name} must be positive, got {value}")

        non_negatives = {
            'max_depth': self.max_depth,
            'delay': self.delay,
            'max_redirects': self.max_redirects,
            'retry_base': self.retry_base,
            'param_fuzz_limit': self.param_fuzz_limit,
            'post_param_fuzz_limit': self.post_param_fuzz_limit,
            'max_event_elements': self.max_event_elements,
        }
        for name, value in non_negatives.items():
            if value is None or value < 0:
                raise ConfigError(f"{name} must not be negative, got {value}")

        if not 0 <= self.retry_jitter < 1:
            raise ConfigError("retry_jitter must be within [0, 1)")
        if self.run_timeout is not None and self.run_timeout <= 0:
            raise ConfigError("run_timeout must be positive")
        if self.pattern_cap is not None and self.pattern_cap < 1:
            raise ConfigError("pattern_cap must be at least 1")
        if not isinstance(self.headers, dict):
            raise ConfigError("headers must be a JSON object")
        if not self.user_agents:
            raise ConfigError("At least one user agent is required")
        if self.browser_workers > self.workers:
            self.browser_workers = self.workers
        return self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
