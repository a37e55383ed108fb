"""
Sensitive Information Scanner
Applies a compiled rule catalog to response bodies and headers
"""

import bisect
import json
import logging
import re
import threading
from collections import Counter
from typing import Any, Dict, List, Optional, Set, Tuple

from reconspider.errors import ConfigError, RuleCompileError
from reconspider.models.crawl_result import Rule, SensitiveFinding, Severity

logger = logging.getLogger(__name__)


CONTEXT_WINDOW = 40
MAX_MATCHES_PER_RULE = 100

DEFAULT_CATALOG_VERSION = "1.0"

DEFAULT_RULES: Dict[str, Dict[str, Any]] = {
    "AWS Access Key ID": {
        "pattern": r"(?:A3T[A-Z0-9]|AKIA|ASIA|AGPA|AIDA|AROA|AIPA|ANPA|ANVA)[A-Z0-9]{16}",
        "severity": "HIGH",
        "mask": True,
        "description": "Amazon Web Services access key identifier",
    },
    "AWS Secret Access Key": {
        "pattern": r"(?i)aws.{0,20}(?:secret|private).{0,20}[\"'][0-9a-zA-Z/+]{40}[\"']",
        "severity": "HIGH",
        "mask": True,
        "description": "Amazon Web Services secret access key assignment",
    },
    "Google API Key": {
        "pattern": r"AIza[0-9A-Za-z\-_]{35}",
        "severity": "HIGH",
        "mask": True,
        "description": "Google Cloud / Maps API key",
    },
    "GitHub Token": {
        "pattern": r"gh[pousr]_[A-Za-z0-9]{36,}",
        "severity": "HIGH",
        "mask": True,
        "description": "GitHub personal access or OAuth token",
    },
    "Slack Token": {
        "pattern": r"xox[baprs]-[0-9A-Za-z\-]{10,48}",
        "severity": "HIGH",
        "mask": True,
        "description": "Slack API token",
    },
    "Stripe Secret Key": {
        "pattern": r"(?:sk|rk)_live_[0-9a-zA-Z]{24,}",
        "severity": "HIGH",
        "mask": True,
        "description": "Stripe live secret or restricted key",
    },
    "Private Key": {
        "pattern": r"-----BEGIN (?:RSA |EC |DSA |OPENSSH |PGP )?PRIVATE KEY(?: BLOCK)?-----",
        "severity": "HIGH",
        "mask": False,
        "description": "PEM encoded private key header",
    },
    "Database Connection String": {
        "pattern": r"(?i)(?:mysql|postgres(?:ql)?|mongodb(?:\+srv)?|redis|mssql)://[^\s:@/\"']+:[^\s@/\"']+@[^\s\"'<>]+",
        "severity": "HIGH",
        "mask": True,
        "description": "Database URL with embedded credentials",
    },
    "Password Assignment": {
        "pattern": r"(?i)(?:password|passwd|pwd)[\"']?\s*[:=]\s*[\"'][^\"'\s]{4,}[\"']",
        "severity": "HIGH",
        "mask": True,
        "description": "Hard-coded password",
    },
    "API Key Assignment": {
        "pattern": r"(?i)(?:api[_-]?key|apikey|secret[_-]?key|access[_-]?token|client[_-]?secret)[\"']?\s*[:=]\s*[\"'][A-Za-z0-9_\-]{16,}[\"']",
        "severity": "MEDIUM",
        "mask": True,
        "description": "Hard-coded API key or secret",
    },
    "JSON Web Token": {
        "pattern": r"eyJ[A-Za-z0-9_-]{10,}\.eyJ[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}",
        "severity": "MEDIUM",
        "mask": True,
        "description": "JSON Web Token",
    },
    "Bearer Token": {
        "pattern": r"(?i)bearer\s+[A-Za-z0-9\-._~+/]{20,}=*",
        "severity": "MEDIUM",
        "mask": True,
        "description": "Bearer authorization credential",
    },
    "Basic Auth Credential": {
        "pattern": r"(?i)basic\s+[A-Za-z0-9+/]{16,}={0,2}",
        "severity": "MEDIUM",
        "mask": True,
        "description": "HTTP basic authorization credential",
    },
    "Internal IP Address": {
        "pattern": r"\b(?:10\.\d{1,3}\.\d{1,3}\.\d{1,3}|192\.168\.\d{1,3}\.\d{1,3}|172\.(?:1[6-9]|2\d|3[01])\.\d{1,3}\.\d{1,3})\b",
        "severity": "LOW",
        "mask": False,
        "description": "Private network address disclosure",
    },
    "Email Address": {
        "pattern": r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}",
        "severity": "LOW",
        "mask": False,
        "description": "Email address",
    },
}


def mask_value(value: str) -> str:
    """Keep the first and last 4 characters; short values are fully masked"""
    if len(value) <= 8:
        return '*' * len(value)
    return value[:4] + '*' * (len(value) - 8) + value[-4:]


def compile_rule(name: str, definition: Dict[str, Any]) -> Rule:
    """
    Compile one rule definition

    Raises:
        RuleCompileError: when the pattern is missing or invalid
    """
    pattern = definition.get('pattern')
    if not pattern or not isinstance(pattern, str):
        raise RuleCompileError(name, "missing pattern")
    try:
        compiled = re.compile(pattern)
    except re.error as e:
        raise RuleCompileError(name, str(e)) from e

    try:
        severity = Severity.parse(definition.get('severity', 'MEDIUM'))
    except ValueError:
        logger.warning("Rule %r has unknown severity %r, using MEDIUM", name, definition.get('severity'))
        severity = Severity.MEDIUM

    return Rule(
        name=name,
        pattern=compiled,
        severity=severity,
        mask=bool(definition.get('mask', False)),
        description=str(definition.get('description', '')),
    )


# ============ Catalog ============

class RuleCatalog:
    """Ordered, named set of compiled rules"""

    def __init__(self, rules: Optional[List[Rule]] = None, version: str = "",
                 description: str = ""):
        self.rules: Dict[str, Rule] = {}
        for rule in rules or []:
            self.rules[rule.name] = rule
        self.version = version
        self.description = description
        self.skipped: List[str] = []

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RuleCatalog':
        """
        Build a catalog from `{"version", "description", "rules": {name: definition}}`

        Keys starting with `_` and non-object entries are ignored; rules that
        fail to compile are logged and skipped.
        """
        if not isinstance(data, dict):
            raise ConfigError("Rule catalog must be a JSON object")
        raw_rules = data.get('rules', {})
        if not isinstance(raw_rules, dict):
            raise ConfigError("Rule catalog 'rules' must be an object")

        catalog = cls(version=str(data.get('version', '')),
                      description=str(data.get('description', '')))
        for name, definition in raw_rules.items():
            if name.startswith('_') or not isinstance(definition, dict):
                continue
            try:
                catalog.rules[name] = compile_rule(name, definition)
            except RuleCompileError as e:
                logger.warning("Skipping rule %r: %s", name, e)
                catalog.skipped.append(name)
        return catalog

    @classmethod
    def from_file(cls, filepath: str) -> 'RuleCatalog':
        """Load a catalog from a JSON rule file"""
        try:
            with open(filepath, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Cannot read rule file {filepath}: {e}") from e
        catalog = cls.from_dict(data)
        logger.info("Loaded %d rule(s) from %s", len(catalog), filepath)
        return catalog

    @classmethod
    def default(cls) -> 'RuleCatalog':
        return cls.from_dict({
            'version': DEFAULT_CATALOG_VERSION,
            'description': 'Built-in sensitive information rules',
            'rules': DEFAULT_RULES,
        })

    def merge(self, other: 'RuleCatalog') -> 'RuleCatalog':
        """New catalog with other's rules layered on top (other wins by name)"""
        merged = RuleCatalog(list(self.rules.values()),
                             version=other.version or self.version,
                             description=other.description or self.description)
        for name, rule in other.rules.items():
            merged.rules[name] = rule
        merged.skipped = self.skipped + other.skipped
        return merged

    def __len__(self) -> int:
        return len(self.rules)

    def __iter__(self):
        return iter(self.rules.values())

    def __contains__(self, name: str) -> bool:
        return name in self.rules


def load_catalog(rules_file: Optional[str] = None) -> RuleCatalog:
    """Default catalog, merged with a user rule file when given"""
    catalog = RuleCatalog.default()
    if rules_file:
        catalog = catalog.merge(RuleCatalog.from_file(rules_file))
    return catalog


# ============ Scanner ============

class SensitiveScanner:
    """
    Sensitive information scanner

    Features:
    - Body and header scanning
    - Line numbers and bounded context for every match
    - Masking of secret values
    - Findings de-duplicated by (rule, masked match, source URL)
    - Per-severity and per-rule statistics
    """

    def __init__(self, catalog: Optional[RuleCatalog] = None, max_bytes: int = 2 * 1024 * 1024):
        self.catalog = catalog or RuleCatalog.default()
        self.max_bytes = max_bytes

        self._findings: List[SensitiveFinding] = []
        self._keys: Set[Tuple[str, str, str]] = set()
        self._lock = threading.Lock()
        self.stats = Counter()

    def scan(self, content: str, source_url: str, location: str = 'body') -> List[SensitiveFinding]:
        """
        Scan text against every rule

        Args:
            content: Decoded body (scanned up to the byte cap)
            source_url: URL the content came from
            location: 'body' or 'header'

        Returns:
            Findings not seen before for this source URL
        """
        if not content:
            return []
        if len(content) > self.max_bytes // 4:
            encoded = content.encode('utf-8')
            if len(encoded) > self.max_bytes:
                content = encoded[:self.max_bytes].decode('utf-8', errors='ignore')

        line_starts = [0]
        line_starts.extend(i + 1 for i, ch in enumerate(content) if ch == '\n')

        found: List[SensitiveFinding] = []
        for rule in self.catalog:
            try:
                found.extend(self._apply_rule(rule, content, line_starts, source_url, location))
            except Exception as e:
                logger.warning("Rule %r failed on %s: %s", rule.name, source_url, e)
                self.stats['rule_errors'] += 1

        with self._lock:
            self.stats['scanned'] += 1
            fresh = []
            for finding in found:
                if finding.dedup_key in self._keys:
                    continue
                self._keys.add(finding.dedup_key)
                self._findings.append(finding)
                fresh.append(finding)
            return fresh

    def _apply_rule(self, rule: Rule, content: str, line_starts: List[int],
                    source_url: str, location: str) -> List[SensitiveFinding]:
        results = []
        for count, match in enumerate(rule.pattern.finditer(content)):
            if count >= MAX_MATCHES_PER_RULE:
                break
            value = match.group(0)
            if not value:
                continue
            shown = mask_value(value) if rule.mask else value

            start = max(0, match.start() - CONTEXT_WINDOW)
            end = min(len(content), match.end() + CONTEXT_WINDOW)
            context = content[start:match.start()] + shown + content[match.end():end]
            context = ' '.join(context.split())

            results.append(SensitiveFinding(
                rule_name=rule.name,
                severity=rule.severity.value,
                match=shown,
                context=context,
                source_url=source_url,
                description=rule.description,
                line_number=bisect.bisect_right(line_starts, match.start()),
                location=location,
            ))
        return results

    def scan_headers(self, headers: Dict[str, str], source_url: str) -> List[SensitiveFinding]:
        """Scan `Name: value` header lines, recorded against `<url> (header)`"""
        if not headers:
            return []
        text = '\n'.join(f"{name}: {value}" for name, value in headers.items())
        return self.scan(text, f"{source_url} (header)", location='header')

    def scan_response(self, body: str, headers: Dict[str, str], source_url: str) -> List[SensitiveFinding]:
        findings = self.scan(body, source_url)
        findings.extend(self.scan_headers(headers, source_url))
        return findings

    # ============ Accessors ============

    @property
    def findings(self) -> List[SensitiveFinding]:
        with self._lock:
            return list(self._findings)

    def get_findings_by_severity(self, severity: str) -> List[SensitiveFinding]:
        return [f for f in self.findings if f.severity == severity]

    def get_findings_by_rule(self, rule_name: str) -> List[SensitiveFinding]:
        return [f for f in self.findings if f.rule_name == rule_name]

    def get_statistics(self) -> Dict[str, Any]:
        findings = self.findings
        by_severity = Counter(f.severity for f in findings)
        return {
            'total_scanned': self.stats['scanned'],
            'total_findings': len(findings),
            'high_severity': by_severity.get(Severity.HIGH.value, 0),
            'medium_severity': by_severity.get(Severity.MEDIUM.value, 0),
            'low_severity': by_severity.get(Severity.LOW.value, 0),
            'findings_by_rule': dict(Counter(f.rule_name for f in findings)),
            'urls_affected': len({f.source_url for f in findings}),
            'rule_errors': self.stats['rule_errors'],
        }

    def get_summary(self) -> str:
        stats = self.get_statistics()
        if not stats['total_findings']:
            return "No sensitive information found"
        return (f"Found {stats['total_findings']} sensitive item(s) "
                f"(HIGH: {stats['high_severity']}, MEDIUM: {stats['medium_severity']}, "
                f"LOW: {stats['low_severity']})")

    def clear(self) -> None:
        with self._lock:
            self._findings = []
            self._keys = set()
            self.stats = Counter()
