"""
ReconSpider Models Package
Data models for URLs, work items, crawl results and findings
"""

from reconspider.models.crawl_result import (
    # Base Models
    BaseModel,
    Severity,
    URLClass,
    Origin,
    ItemState,
    CrawlMode,
    Strategy,

    # URL and Work Models
    URLRecord,
    WorkItem,

    # Extraction Models
    FormField,
    FormDescriptor,
    PostDescriptor,
    ApiHint,
    StaticRef,
    SpecialLink,
    SensitiveFinding,
    Rule,

    # Result Models
    ResultRecord,
    StaticResourceSet,
    SpecialProtocolSet,
    CrawlSummary,
)

__all__ = [
    'BaseModel',
    'Severity',
    'URLClass',
    'Origin',
    'ItemState',
    'CrawlMode',
    'Strategy',
    'URLRecord',
    'WorkItem',
    'FormField',
    'FormDescriptor',
    'PostDescriptor',
    'ApiHint',
    'StaticRef',
    'SpecialLink',
    'SensitiveFinding',
    'Rule',
    'ResultRecord',
    'StaticResourceSet',
    'SpecialProtocolSet',
    'CrawlSummary',
]
