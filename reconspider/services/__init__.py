"""
ReconSpider Services Package
Crawl engine components
"""

from reconspider.services.canonicalizer import canonicalize, try_canonicalize
from reconspider.services.deduplicator import Deduplicator
from reconspider.services.frontier import Frontier
from reconspider.services.fetcher import Fetcher, FetchPool, CrawlMetrics
from reconspider.services.extractor import StaticExtractor
from reconspider.services.browser import DynamicExtractor, PlaywrightDriver
from reconspider.services.param_fuzzer import ParamFuzzer
from reconspider.services.sensitive_scanner import RuleCatalog, SensitiveScanner
from reconspider.services.robots import RobotsPolicy
from reconspider.services.reporter import ReportWriter
from reconspider.services.crawler import WebCrawler

__all__ = [
    'canonicalize',
    'try_canonicalize',
    'Deduplicator',
    'Frontier',
    'Fetcher',
    'FetchPool',
    'CrawlMetrics',
    'StaticExtractor',
    'DynamicExtractor',
    'PlaywrightDriver',
    'ParamFuzzer',
    'RuleCatalog',
    'SensitiveScanner',
    'RobotsPolicy',
    'ReportWriter',
    'WebCrawler',
]
