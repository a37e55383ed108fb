"""
Crawl Result Models
Data models shared by the crawl engine: URL records, work items, results
"""

from dataclasses import dataclass, field, asdict, fields
from typing import List, Dict, Optional, Any, Set, Tuple
from datetime import datetime
from enum import Enum
import itertools
import json
import re


# ============================================================
# ENUMS
# ============================================================

class Severity(Enum):
    """Sensitive finding severity levels"""
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"

    @property
    def score(self) -> int:
        """Get numeric score for severity"""
        scores = {
            "HIGH": 8,
            "MEDIUM": 5,
            "LOW": 2
        }
        return scores.get(self.value, 0)

    @property
    def color(self) -> str:
        """Get color code for severity"""
        colors = {
            "HIGH": "#ea580c",
            "MEDIUM": "#ca8a04",
            "LOW": "#16a34a"
        }
        return colors.get(self.value, "#6b7280")

    @classmethod
    def parse(cls, value: Any) -> 'Severity':
        """Parse a severity name, raising ValueError when unknown"""
        if isinstance(value, Severity):
            return value
        return cls(str(value).strip().upper())


class URLClass(Enum):
    """URL classification tags"""
    STATIC = "static"
    FILE_PARAM = "file-param"
    MULTI_PARAM = "multi-param"
    AJAX = "ajax"
    RESTFUL = "restful"
    NORMAL = "normal"


class Origin(Enum):
    """How a work item came to exist"""
    SEED = "seed"
    FORM_ACTION = "form-action"
    DISCOVERED = "discovered"
    API_INFERRED = "api-inferred"
    FUZZED = "fuzzed"

    @property
    def rank(self) -> int:
        """Tie-break rank in the frontier, lower is leased first"""
        ranks = {
            "seed": 0,
            "form-action": 1,
            "discovered": 2,
            "api-inferred": 3,
            "fuzzed": 4
        }
        return ranks[self.value]


class ItemState(Enum):
    """Work item lifecycle states"""
    QUEUED = "queued"
    LEASED = "leased"
    COMPLETED = "completed"
    FAILED = "failed"
    DROPPED = "dropped"


class CrawlMode(Enum):
    """Extraction mode"""
    STATIC = "static"
    DYNAMIC = "dynamic"
    SMART = "smart"


class Strategy(Enum):
    """Frontier discipline"""
    BFS = "bfs"
    DFS = "dfs"


# ============================================================
# BASE MODEL
# ============================================================

@dataclass
class BaseModel:
    """Base model with common functionality"""

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary"""
        def serialize(obj):
            if isinstance(obj, Enum):
                return obj.value
            elif isinstance(obj, datetime):
                return obj.isoformat()
            elif hasattr(obj, 'to_dict'):
                return obj.to_dict()
            elif isinstance(obj, (list, tuple)):
                return [serialize(item) for item in obj]
            elif isinstance(obj, dict):
                return {k: serialize(v) for k, v in obj.items()}
            elif isinstance(obj, set):
                return sorted(serialize(item) for item in obj)
            elif isinstance(obj, re.Pattern):
                return obj.pattern
            return obj

        return {f.name: serialize(getattr(self, f.name)) for f in fields(self)}

    def to_json(self, indent: int = 2) -> str:
        """Convert model to JSON string"""
        return json.dumps(self.to_dict(), indent=indent, default=str)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BaseModel':
        """Create model from dictionary"""
        return cls(**data)

    @classmethod
    def from_json(cls, json_str: str) -> 'BaseModel':
        """Create model from JSON string"""
        return cls.from_dict(json.loads(json_str))


# ============================================================
# URL AND WORK ITEM MODELS
# ============================================================

@dataclass(frozen=True)
class URLRecord:
    """Immutable canonicalized URL"""

    raw: str
    canonical: str
    origin: str
    host: str
    path: str
    query_names: Tuple[str, ...] = ()
    url_class: URLClass = URLClass.NORMAL
    hash: str = ""
    pattern_key: str = ""

    @property
    def has_query(self) -> bool:
        return bool(self.query_names)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['query_names'] = list(self.query_names)
        data['url_class'] = self.url_class.value
        return data

    def __str__(self) -> str:
        return self.canonical


_item_ids = itertools.count(1)


@dataclass
class WorkItem(BaseModel):
    """
    A unit of fetch work

    Created by the Coordinator when promoting a candidate, leased by exactly
    one fetch worker, discarded afterwards.
    """

    url: URLRecord
    method: str = "GET"
    parent: Optional[str] = None
    depth: int = 0
    origin: Origin = Origin.DISCOVERED
    body: Optional[Dict[str, str]] = None
    headers: Optional[Dict[str, str]] = None
    content_type: Optional[str] = None
    idempotent: Optional[bool] = None
    retries: int = 0
    state: ItemState = ItemState.QUEUED
    item_id: int = field(default_factory=lambda: next(_item_ids))

    @property
    def is_idempotent(self) -> bool:
        """GET/HEAD are idempotent; other methods only when the caller says so"""
        if self.idempotent is not None:
            return self.idempotent
        return self.method.upper() in ('GET', 'HEAD')

    @property
    def dedup_key(self) -> str:
        """Key used for exactly-once bookkeeping"""
        if self.method.upper() == 'GET':
            return self.url.hash
        body_names = ','.join(sorted(self.body or {}))
        return f"{self.method.upper()}|{self.url.hash}|{body_names}"


# ============================================================
# EXTRACTION MODELS
# ============================================================

@dataclass
class FormField(BaseModel):
    """Named form control"""
    name: str
    type: str = "text"
    value: Optional[str] = None


@dataclass
class FormDescriptor(BaseModel):
    """HTML form with its ordered named fields"""

    method: str = "GET"
    action: str = ""
    fields: List[FormField] = field(default_factory=list)
    enctype: str = "application/x-www-form-urlencoded"
    source_url: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FormDescriptor':
        data = dict(data)
        data['fields'] = [FormField.from_dict(f) for f in data.get('fields', [])]
        return cls(**data)

    @property
    def field_names(self) -> List[str]:
        return [f.name for f in self.fields]


@dataclass
class PostDescriptor(BaseModel):
    """Shape of a non-GET request observed or inferred on a page"""
    url: str
    method: str = "POST"
    params: Dict[str, str] = field(default_factory=dict)
    content_type: str = "application/x-www-form-urlencoded"
    source: str = "form"


@dataclass
class ApiHint(BaseModel):
    """API endpoint inferred from script text or network traffic"""
    url: str
    method: str = "GET"
    source: str = "literal"


@dataclass
class StaticRef(BaseModel):
    """Reference to a static resource"""
    url: str
    kind: str = "other"


@dataclass
class SpecialLink(BaseModel):
    """Link using a non-HTTP scheme, collected without enqueueing"""
    url: str
    kind: str


@dataclass
class SensitiveFinding(BaseModel):
    """One (rule, match, source URL) hit of the sensitive scanner"""

    rule_name: str
    severity: str
    match: str
    context: str = ""
    source_url: str = ""
    description: str = ""
    line_number: int = 0
    location: str = "body"

    @property
    def dedup_key(self) -> Tuple[str, str, str]:
        return (self.rule_name, self.match, self.source_url)


@dataclass
class Rule(BaseModel):
    """Compiled sensitive-information rule"""
    name: str
    pattern: Any
    severity: Severity = Severity.MEDIUM
    mask: bool = False
    description: str = ""


# ============================================================
# RESULT MODELS
# ============================================================

@dataclass
class ResultRecord(BaseModel):
    """Outcome of fetching and extracting one work item"""

    # Identification
    url: str
    method: str = "GET"
    depth: int = 0
    origin: str = Origin.DISCOVERED.value
    parent: Optional[str] = None

    # Response
    status_code: Optional[int] = None
    content_type: str = ""
    final_url: str = ""
    redirect_chain: List[str] = field(default_factory=list)
    body_ref: Optional[str] = None
    body_length: int = 0
    truncated: bool = False
    elapsed: float = 0.0
    attempts: int = 0
    rendered: bool = False

    # Artifacts
    links: List[str] = field(default_factory=list)
    forms: List[FormDescriptor] = field(default_factory=list)
    apis: List[ApiHint] = field(default_factory=list)
    post_requests: List[PostDescriptor] = field(default_factory=list)
    static_refs: List[StaticRef] = field(default_factory=list)
    special_links: List[SpecialLink] = field(default_factory=list)
    findings: List[SensitiveFinding] = field(default_factory=list)

    # Outcome
    state: str = ItemState.COMPLETED.value
    error: Optional[str] = None
    error_kind: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ResultRecord':
        """Create result from dictionary, rebuilding nested models"""
        data = dict(data)
        data['forms'] = [FormDescriptor.from_dict(f) for f in data.get('forms', [])]
        data['apis'] = [ApiHint.from_dict(a) for a in data.get('apis', [])]
        data['post_requests'] = [PostDescriptor.from_dict(p) for p in data.get('post_requests', [])]
        data['static_refs'] = [StaticRef.from_dict(s) for s in data.get('static_refs', [])]
        data['special_links'] = [SpecialLink.from_dict(s) for s in data.get('special_links', [])]
        data['findings'] = [SensitiveFinding.from_dict(f) for f in data.get('findings', [])]
        return cls(**data)

    @property
    def ok(self) -> bool:
        return self.state == ItemState.COMPLETED.value and self.error is None


class _BucketSet:
    """Named disjoint buckets of URLs"""

    BUCKETS: Tuple[str, ...] = ()

    def __init__(self):
        self._buckets: Dict[str, Set[str]] = {name: set() for name in self.BUCKETS}

    def add(self, bucket: str, url: str) -> bool:
        """Add url to bucket, returns False for unknown buckets"""
        if bucket not in self._buckets:
            return False
        self._buckets[bucket].add(url)
        return True

    def get(self, bucket: str) -> Set[str]:
        return set(self._buckets.get(bucket, set()))

    def __len__(self) -> int:
        return sum(len(urls) for urls in self._buckets.values())

    def to_dict(self) -> Dict[str, List[str]]:
        return {name: sorted(urls) for name, urls in self._buckets.items()}


class StaticResourceSet(_BucketSet):
    """Static resources collected but never fetched"""
    BUCKETS = ('images', 'videos', 'audios', 'fonts', 'documents', 'archives')


class SpecialProtocolSet(_BucketSet):
    """Links with non-HTTP schemes"""
    BUCKETS = ('mailto', 'tel', 'websocket', 'ftp', 'data')


@dataclass
class CrawlSummary(BaseModel):
    """Run-level summary returned by the Coordinator"""

    scan_id: str = ""
    target_url: str = ""
    mode: str = CrawlMode.STATIC.value
    status: str = "completed"
    pages_fetched: int = 0
    pages_failed: int = 0
    urls_discovered: int = 0
    external_links: int = 0
    findings: int = 0
    statistics: Dict[str, Any] = field(default_factory=dict)
    metrics: Dict[str, Any] = field(default_factory=dict)
    start_time: str = ""
    end_time: str = ""
    duration: float = 0.0
