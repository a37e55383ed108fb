"""
Crawler Errors
Error kinds and exception hierarchy shared by the crawl engine
"""

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Kinds of errors recorded on results and counters"""
    CONFIG_INVALID = "config-invalid"
    CANON_REJECT = "canon-reject"
    SCOPE_REJECT = "scope-reject"
    FETCH_TRANSPORT = "fetch-transport"
    FETCH_TIMEOUT = "fetch-timeout"
    FETCH_HTTP_ERROR = "fetch-http-error"
    EXTRACT_PARSE = "extract-parse"
    BROWSER_UNAVAILABLE = "browser-unavailable"
    RULE_COMPILE = "rule-compile"
    BODY_TOO_LARGE = "body-too-large"
    CANCELLED = "cancelled"

    @property
    def retryable(self) -> bool:
        """Whether an idempotent request failing this way may be retried"""
        return self in (ErrorKind.FETCH_TRANSPORT, ErrorKind.FETCH_TIMEOUT)


class CrawlerError(Exception):
    """Base class for all crawl engine errors"""

    kind: ErrorKind = ErrorKind.FETCH_TRANSPORT

    def __init__(self, message: str = "", kind: Optional[ErrorKind] = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class ConfigError(CrawlerError):
    """Invalid configuration, fatal at startup"""
    kind = ErrorKind.CONFIG_INVALID


class URLRejected(CrawlerError):
    """URL could not be canonicalized or is not crawlable"""
    kind = ErrorKind.CANON_REJECT

    def __init__(self, reason: str, url: str = ""):
        super().__init__(f"{reason}: {url}" if url else reason)
        self.reason = reason
        self.url = url


class FetchError(CrawlerError):
    """Transport, timeout or HTTP error while fetching"""

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.FETCH_TRANSPORT,
                 status_code: Optional[int] = None):
        super().__init__(message, kind)
        self.status_code = status_code


class ExtractError(CrawlerError):
    """Payload could not be parsed"""
    kind = ErrorKind.EXTRACT_PARSE


class BrowserUnavailable(CrawlerError):
    """Headless browser could not be started or has died"""
    kind = ErrorKind.BROWSER_UNAVAILABLE


class RuleCompileError(CrawlerError):
    """A sensitive-information rule has an invalid pattern"""
    kind = ErrorKind.RULE_COMPILE

    def __init__(self, rule_name: str, message: str):
        super().__init__(f"rule '{rule_name}': {message}")
        self.rule_name = rule_name


class CrawlCancelled(CrawlerError):
    """The run was cancelled"""
    kind = ErrorKind.CANCELLED
