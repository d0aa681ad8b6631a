"""Output helpers: console table, JSON document and Excel workbook."""
from __future__ import annotations

import json
from typing import Iterable, List, Sequence, TextIO

from .findings import Finding, ScanResult, Severity, Status

STATUS_ORDER = {
    Status.FAIL: 0,
    Status.ERROR: 1,
    Status.WARNING: 2,
    Status.SKIPPED: 3,
    Status.PASS: 4,
}


def _finding_sort_key(finding: Finding) -> tuple[int, int, str, str]:
    """Return a tuple used to order findings consistently."""

    return (-finding.severity.rank, STATUS_ORDER[finding.status], finding.id, finding.resource)


def sorted_findings(findings: Iterable[Finding]) -> List[Finding]:
    return sorted(findings, key=_finding_sort_key)


def print_findings(findings: Iterable[Finding], stream: TextIO | None = None) -> None:
    """Pretty-print findings, most severe first."""

    findings = sorted_findings(findings)
    if not findings:
        print("No findings detected.", file=stream)
        return

    header = f"{'Severity':<9} {'Status':<8} {'ID':<10} {'Resource':<45} Title"
    print(header, file=stream)
    print("-" * len(header), file=stream)
    for finding in findings:
        resource = (finding.resource[:42] + "...") if len(finding.resource) > 45 else finding.resource
        print(
            f"{finding.severity.value:<9} {finding.status.value:<8} {finding.id:<10} {resource:<45} {finding.title}",
            file=stream,
        )


def print_summary(result: ScanResult, stream: TextIO | None = None) -> None:
    summary = result.summary
    print("", file=stream)
    print(f"Scan {result.id} ({result.scan_type}) on cluster {result.cluster_name or 'unknown'}", file=stream)
    if result.partial:
        print("WARNING: the scan was cancelled; results are partial.", file=stream)
    print(
        f"Score: {summary.score:.1f}%  Total: {summary.total_checks}  Passed: {summary.passed_checks}  "
        f"Failed: {summary.failed_checks}  Warnings: {summary.warning_count}",
        file=stream,
    )
    counts = ", ".join(f"{severity.value}={summary.count(severity)}" for severity in Severity)
    print(f"Findings by severity: {counts}", file=stream)


def print_report(result: ScanResult, stream: TextIO | None = None) -> None:
    print_findings(result.findings, stream)
    print_summary(result, stream)


def result_to_json(result: ScanResult) -> str:
    return json.dumps(result.to_dict(), indent=2)


def write_json(result: ScanResult, path: str) -> str:
    """Write *result* as a JSON document located at *path*."""

    with open(path, "w", encoding="utf-8") as fh:
        fh.write(result_to_json(result))
        fh.write("\n")
    return path


def export_findings_to_excel(findings: Iterable[Finding], path: str) -> str:
    """Write *findings* to an Excel workbook located at *path*."""

    headers = ("ID", "Severity", "Status", "Category", "Namespace", "Resource", "Title", "Remediation")
    rows = (
        (
            finding.id,
            finding.severity.value,
            finding.status.value,
            finding.category,
            finding.namespace,
            finding.resource,
            finding.title,
            finding.remediation,
        )
        for finding in sorted_findings(findings)
    )
    return _export_rows_to_excel(rows, headers, path, sheet_title="Findings")


def _export_rows_to_excel(
    rows: Iterable[Sequence[object]],
    headers: Sequence[str],
    path: str,
    *,
    sheet_title: str,
) -> str:
    """Write ``rows`` with ``headers`` to an Excel sheet using :mod:`openpyxl`."""

    try:
        from openpyxl import Workbook
        from openpyxl.utils import get_column_letter
    except ImportError as exc:  # pragma: no cover - dependency missing during tests
        raise RuntimeError(
            "The 'openpyxl' package is required to export findings to Excel. "
            "Install it with 'pip install openpyxl'."
        ) from exc

    workbook = Workbook()
    sheet = workbook.active
    sheet.title = sheet_title

    sheet.append(list(headers))
    column_widths = [len(header) for header in headers]

    for row in rows:
        values = list(row)
        sheet.append(values)
        for idx, value in enumerate(values):
            column_widths[idx] = max(column_widths[idx], len(str(value)))

    for idx, width in enumerate(column_widths, start=1):
        column_letter = get_column_letter(idx)
        sheet.column_dimensions[column_letter].width = min(width + 2, 60)

    workbook.save(path)
    return path


__all__ = [
    "export_findings_to_excel",
    "print_findings",
    "print_report",
    "print_summary",
    "result_to_json",
    "sorted_findings",
    "write_json",
]
