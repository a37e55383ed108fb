"""
Report Writers
Flush the in-memory result store to text, JSON, CSV and HTML files
"""

import csv
import json
import logging
import os
from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Optional

from jinja2 import Environment, select_autoescape

from reconspider.models.crawl_result import (
    CrawlSummary,
    PostDescriptor,
    ResultRecord,
    SensitiveFinding,
    Severity,
    SpecialProtocolSet,
    StaticResourceSet,
)

logger = logging.getLogger(__name__)


SEVERITY_ORDER = {s.value: -s.score for s in Severity}

CSV_FIELDS = ['rule_name', 'severity', 'match', 'source_url', 'line_number', 'location', 'description', 'context']

SENSITIVE_HTML_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<title>Sensitive Information Report - {{ target }}</title>
<style>
body { font-family: -apple-system, "Segoe UI", Roboto, sans-serif; margin: 2rem; color: #111827; }
table { border-collapse: collapse; width: 100%; font-size: 0.9rem; }
th, td { border: 1px solid #e5e7eb; padding: 0.4rem 0.6rem; text-align: left; vertical-align: top; }
th { background: #f3f4f6; }
.badge { color: #fff; padding: 0.1rem 0.5rem; border-radius: 0.25rem; font-weight: 600; }
code { word-break: break-all; }
</style>
</head>
<body>
<h1>Sensitive Information Report</h1>
<p>Target: <strong>{{ target }}</strong> &middot; Generated {{ generated }}</p>
<p>{{ summary }}</p>
<ul>
{% for severity, count in by_severity %}
  <li><span class="badge" style="background: {{ colors[severity] }}">{{ severity }}</span> {{ count }}</li>
{% endfor %}
</ul>
{% if findings %}
<table>
  <thead>
    <tr><th>#</th><th>Severity</th><th>Rule</th><th>Match</th><th>Source</th><th>Line</th><th>Context</th></tr>
  </thead>
  <tbody>
  {% for f in findings %}
    <tr>
      <td>{{ loop.index }}</td>
      <td><span class="badge" style="background: {{ colors[f.severity] }}">{{ f.severity }}</span></td>
      <td>{{ f.rule_name }}<br><small>{{ f.description }}</small></td>
      <td><code>{{ f.match }}</code></td>
      <td>{{ f.source_url }}</td>
      <td>{{ f.line_number }}</td>
      <td><code>{{ f.context }}</code></td>
    </tr>
  {% endfor %}
  </tbody>
</table>
{% else %}
<p>No sensitive information found.</p>
{% endif %}
</body>
</html>
"""


def sort_findings(findings: List[SensitiveFinding]) -> List[SensitiveFinding]:
    """Highest severity first, then rule, URL and line"""
    return sorted(findings, key=lambda f: (SEVERITY_ORDER.get(f.severity, 0), f.rule_name,
                                           f.source_url, f.line_number, f.match))


class ReportWriter:
    """
    Writes crawl artifacts under an output prefix

    For prefix P: P_detail.txt, P_all_urls.txt, P_scope_urls.txt,
    P_sensitive.{txt,json,csv,html}, P_sensitive_summary.txt, P_results.json
    """

    def __init__(self, output_prefix: str):
        self.output_prefix = output_prefix
        self.written: List[str] = []
        self._env = Environment(autoescape=select_autoescape(default_for_string=True))

    def _path(self, suffix: str) -> str:
        return f"{self.output_prefix}_{suffix}"

    def _open(self, suffix: str, newline: Optional[str] = None):
        path = self._path(suffix)
        self.written.append(path)
        return open(path, 'w', encoding='utf-8', newline=newline)

    def flush(
        self,
        results: List[ResultRecord],
        discovered_urls: List[str],
        scope_urls: List[str],
        external_links: List[str],
        static_resources: StaticResourceSet,
        special_protocols: SpecialProtocolSet,
        post_requests: List[PostDescriptor],
        findings: List[SensitiveFinding],
        statistics: Dict[str, Any],
        summary: CrawlSummary
    ) -> List[str]:
        """
        Write every report file

        Returns:
            Paths written
        """
        directory = os.path.dirname(self.output_prefix)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self.written = []

        results = sorted(results, key=lambda r: (r.url, r.method))
        findings = sort_findings(findings)

        self.write_detail(results, static_resources, special_protocols, external_links, post_requests, summary)
        self.write_url_list('all_urls.txt', discovered_urls)
        self.write_url_list('scope_urls.txt', scope_urls)
        self.write_sensitive_text(findings, summary)
        self.write_sensitive_json(findings, statistics, summary)
        self.write_sensitive_csv(findings)
        self.write_sensitive_html(findings, summary)
        self.write_sensitive_summary(findings, statistics, summary)
        self.write_results_json(results, summary)

        logger.info("Wrote %d report file(s) with prefix %s", len(self.written), self.output_prefix)
        return list(self.written)

    # ============ Crawl reports ============

    def write_detail(
        self,
        results: List[ResultRecord],
        static_resources: StaticResourceSet,
        special_protocols: SpecialProtocolSet,
        external_links: List[str],
        post_requests: List[PostDescriptor],
        summary: CrawlSummary
    ) -> None:
        with self._open('detail.txt') as f:
            f.write(f"Crawl report for {summary.target_url}\n")
            f.write(f"Scan ID: {summary.scan_id}  Mode: {summary.mode}  Status: {summary.status}\n")
            f.write(f"Started: {summary.start_time}  Duration: {summary.duration:.2f}s\n")
            f.write(f"Pages: {summary.pages_fetched} fetched, {summary.pages_failed} failed, "
                    f"{summary.urls_discovered} discovered\n")
            f.write("=" * 78 + "\n\n")

            for record in results:
                f.write(f"[{record.method}] {record.url}\n")
                f.write(f"  Status: {record.status_code}  Type: {record.content_type or '-'}  "
                        f"Depth: {record.depth}  Origin: {record.origin}\n")
                if record.final_url and record.final_url != record.url:
                    f.write(f"  Final URL: {record.final_url}\n")
                if record.redirect_chain:
                    f.write(f"  Redirects: {' -> '.join(record.redirect_chain)}\n")
                if record.truncated:
                    f.write("  Body truncated\n")
                if record.error:
                    f.write(f"  Error ({record.error_kind}): {record.error}\n")
                _write_section(f, 'Links', record.links)
                _write_section(f, 'Forms', [
                    f"{form.method} {form.action} [{', '.join(form.field_names)}]" for form in record.forms
                ])
                _write_section(f, 'APIs', [f"{api.method} {api.url} ({api.source})" for api in record.apis])
                _write_section(f, 'POST requests', [
                    f"{p.method} {p.url} {json.dumps(p.params, sort_keys=True)}" for p in record.post_requests
                ])
                _write_section(f, 'Static resources', [f"[{s.kind}] {s.url}" for s in record.static_refs])
                _write_section(f, 'Findings', [
                    f"[{x.severity}] {x.rule_name}: {x.match} (line {x.line_number})" for x in record.findings
                ])
                f.write("\n")

            f.write("=" * 78 + "\n")
            for bucket, urls in static_resources.to_dict().items():
                _write_section(f, f"Static {bucket}", urls, indent='')
            for bucket, urls in special_protocols.to_dict().items():
                _write_section(f, f"Special {bucket}", urls, indent='')
            _write_section(f, 'External links', sorted(external_links), indent='')
            _write_section(f, 'POST requests', sorted(
                f"{p.method} {p.url} {json.dumps(p.params, sort_keys=True)}" for p in post_requests
            ), indent='')

    def write_url_list(self, suffix: str, urls: List[str]) -> None:
        with self._open(suffix) as f:
            for url in sorted(set(urls)):
                f.write(url + "\n")

    def write_results_json(self, results: List[ResultRecord], summary: CrawlSummary) -> None:
        with self._open('results.json') as f:
            json.dump({
                'summary': summary.to_dict(),
                'results': [r.to_dict() for r in results],
            }, f, indent=2, default=str)

    # ============ Sensitive reports ============

    def write_sensitive_text(self, findings: List[SensitiveFinding], summary: CrawlSummary) -> None:
        with self._open('sensitive.txt') as f:
            f.write(f"Sensitive information report for {summary.target_url}\n")
            f.write("=" * 78 + "\n")
            if not findings:
                f.write("No sensitive information found\n")
                return
            for index, finding in enumerate(findings, 1):
                f.write(f"[{index}] [{finding.severity}] {finding.rule_name}\n")
                f.write(f"    Match:   {finding.match}\n")
                f.write(f"    Source:  {finding.source_url} (line {finding.line_number})\n")
                if finding.description:
                    f.write(f"    About:   {finding.description}\n")
                if finding.context:
                    f.write(f"    Context: {finding.context}\n")
                f.write("\n")

    def write_sensitive_json(self, findings: List[SensitiveFinding], statistics: Dict[str, Any],
                             summary: CrawlSummary) -> None:
        with self._open('sensitive.json') as f:
            json.dump({
                'target': summary.target_url,
                'scan_id': summary.scan_id,
                'generated': datetime.now().isoformat(),
                'statistics': statistics,
                'findings': [x.to_dict() for x in findings],
            }, f, indent=2, default=str)

    def write_sensitive_csv(self, findings: List[SensitiveFinding]) -> None:
        with self._open('sensitive.csv', newline='') as f:
            writer = csv.DictWriter(f, fieldnames=CSV_FIELDS, extrasaction='ignore')
            writer.writeheader()
            for finding in findings:
                writer.writerow(finding.to_dict())

    def write_sensitive_html(self, findings: List[SensitiveFinding], summary: CrawlSummary) -> None:
        counts = Counter(x.severity for x in findings)
        template = self._env.from_string(SENSITIVE_HTML_TEMPLATE)
        html = template.render(
            target=summary.target_url,
            generated=datetime.now().strftime('%Y-%m-%d %H:%M:%S'),
            summary=summary_line(findings),
            by_severity=[(s.value, counts.get(s.value, 0)) for s in Severity],
            colors={s.value: s.color for s in Severity},
            findings=findings,
        )
        with self._open('sensitive.html') as f:
            f.write(html)

    def write_sensitive_summary(self, findings: List[SensitiveFinding], statistics: Dict[str, Any],
                                summary: CrawlSummary) -> None:
        by_rule = Counter(x.rule_name for x in findings)
        with self._open('sensitive_summary.txt') as f:
            f.write(f"Target: {summary.target_url}\n")
            f.write(f"Pages scanned: {statistics.get('total_scanned', 0)}\n")
            f.write(summary_line(findings) + "\n\n")
            for rule_name, count in sorted(by_rule.items(), key=lambda item: (-item[1], item[0])):
                f.write(f"  {rule_name}: {count}\n")


def summary_line(findings: List[SensitiveFinding]) -> str:
    if not findings:
        return "No sensitive information found"
    counts = Counter(x.severity for x in findings)
    return (f"Found {len(findings)} sensitive item(s) "
            f"(HIGH: {counts.get('HIGH', 0)}, MEDIUM: {counts.get('MEDIUM', 0)}, LOW: {counts.get('LOW', 0)})")


def _write_section(f, title: str, items: List[str], indent: str = '  ') -> None:
    if not items:
        return
    f.write(f"{indent}{title} ({len(items)}):\n")
    for item in items:
        f.write(f"{indent}  - {item}\n")
