"""Data models for Kubernetes compliance audit findings and scan results."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

from .errors import ConfigurationError

if TYPE_CHECKING:  # pragma: no cover
    from .credentials import ClusterCredentials


class Severity(str, Enum):
    """Severity of a finding, totally ordered through :data:`SEVERITY_RANK`."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"

    @property
    def rank(self) -> int:
        return SEVERITY_RANK[self]

    def meets_threshold(self, threshold: "Severity") -> bool:
        """Return ``True`` when this severity is at or above *threshold*."""

        return self.rank >= threshold.rank

    @classmethod
    def parse(cls, text: str) -> "Severity":
        """Return the severity named by *text* (case-insensitive)."""

        try:
            return cls(str(text).strip().lower())
        except ValueError:
            valid = ", ".join(member.value for member in cls)
            raise ConfigurationError(f"Invalid severity {text!r} (valid: {valid})") from None


SEVERITY_RANK: Dict[Severity, int] = {
    Severity.CRITICAL: 5,
    Severity.HIGH: 4,
    Severity.MEDIUM: 3,
    Severity.LOW: 2,
    Severity.INFO: 1,
}


class Status(str, Enum):
    """Outcome of a single check."""

    PASS = "PASS"
    FAIL = "FAIL"
    WARNING = "WARNING"
    ERROR = "ERROR"
    SKIPPED = "SKIPPED"


SCAN_TYPES: Tuple[str, ...] = ("full", "cis", "rbac", "network", "pss")


@dataclass(frozen=True)
class Finding:
    """One check outcome for a cluster resource."""

    id: str
    title: str
    severity: Severity
    status: Status
    category: str
    description: str = ""
    resource: str = ""
    namespace: str = ""
    remediation: str = ""
    details: Dict[str, str] = field(default_factory=dict)
    timestamp: Optional[datetime] = None

    def key(self) -> str:
        """Stable identifier used to de-duplicate findings."""

        return f"{self.id}:{self.status.value}:{self.resource}:{self.description}"

    def with_timestamp(self, timestamp: datetime) -> "Finding":
        return replace(self, timestamp=timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "severity": self.severity.value,
            "status": self.status.value,
            "category": self.category,
            "resource": self.resource,
            "namespace": self.namespace,
            "remediation": self.remediation,
            "details": dict(self.details),
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Finding":
        timestamp = data.get("timestamp")
        return cls(
            id=data.get("id", ""),
            title=data.get("title", ""),
            description=data.get("description", ""),
            severity=Severity.parse(data.get("severity", Severity.MEDIUM.value)),
            status=Status(data.get("status", Status.FAIL.value)),
            category=data.get("category", ""),
            resource=data.get("resource", ""),
            namespace=data.get("namespace", ""),
            remediation=data.get("remediation", ""),
            details={str(k): str(v) for k, v in (data.get("details") or {}).items()},
            timestamp=datetime.fromisoformat(timestamp) if timestamp else None,
        )


@dataclass(frozen=True)
class ScanSummary:
    """Aggregated statistics derived from a list of findings."""

    total_checks: int = 0
    passed_checks: int = 0
    failed_checks: int = 0
    warning_count: int = 0
    error_count: int = 0
    skipped_count: int = 0
    score: float = 0.0
    findings_by_severity: Dict[Severity, int] = field(default_factory=dict)

    @classmethod
    def from_findings(cls, findings: List[Finding]) -> "ScanSummary":
        """Build the summary for *findings*.

        Only failing and warning findings contribute to the severity counts.
        The score is the share of passed checks among actionable (passed or
        failed) checks, or 0 when there are none.
        """

        counts = {status: 0 for status in Status}
        by_severity: Dict[Severity, int] = {}
        for finding in findings:
            counts[finding.status] += 1
            if finding.status in (Status.FAIL, Status.WARNING):
                by_severity[finding.severity] = by_severity.get(finding.severity, 0) + 1

        passed = counts[Status.PASS]
        failed = counts[Status.FAIL]
        actionable = passed + failed
        score = passed / actionable * 100.0 if actionable > 0 else 0.0
        return cls(
            total_checks=len(findings),
            passed_checks=passed,
            failed_checks=failed,
            warning_count=counts[Status.WARNING],
            error_count=counts[Status.ERROR],
            skipped_count=counts[Status.SKIPPED],
            score=score,
            findings_by_severity=by_severity,
        )

    def count(self, severity: Severity) -> int:
        return self.findings_by_severity.get(severity, 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalChecks": self.total_checks,
            "passedChecks": self.passed_checks,
            "failedChecks": self.failed_checks,
            "warningCount": self.warning_count,
            "errorCount": self.error_count,
            "skippedCount": self.skipped_count,
            "score": self.score,
            "findingsBySeverity": {
                severity.value: count for severity, count in self.findings_by_severity.items()
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScanSummary":
        return cls(
            total_checks=int(data.get("totalChecks", 0)),
            passed_checks=int(data.get("passedChecks", 0)),
            failed_checks=int(data.get("failedChecks", 0)),
            warning_count=int(data.get("warningCount", 0)),
            error_count=int(data.get("errorCount", 0)),
            skipped_count=int(data.get("skippedCount", 0)),
            score=float(data.get("score", 0.0)),
            findings_by_severity={
                Severity.parse(name): int(count)
                for name, count in (data.get("findingsBySeverity") or {}).items()
            },
        )


@dataclass
class ScanResult:
    """Complete output of one scan run.

    The orchestrator owns the result while the run is in progress; once the
    summary has been computed and the threshold filter applied it is treated
    as read-only.
    """

    id: str
    scan_type: str
    start_time: datetime
    end_time: Optional[datetime] = None
    duration: timedelta = timedelta(0)
    cluster_name: str = ""
    namespaces: List[str] = field(default_factory=list)
    findings: List[Finding] = field(default_factory=list)
    summary: ScanSummary = field(default_factory=ScanSummary)
    partial: bool = False

    def compute_summary(self) -> ScanSummary:
        self.summary = ScanSummary.from_findings(self.findings)
        return self.summary

    def filter_by_threshold(self, threshold: Severity) -> "ScanResult":
        """Return a copy keeping passes and findings at or above *threshold*."""

        filtered = ScanResult(
            id=self.id,
            scan_type=self.scan_type,
            start_time=self.start_time,
            end_time=self.end_time,
            duration=self.duration,
            cluster_name=self.cluster_name,
            namespaces=list(self.namespaces),
            findings=[
                finding
                for finding in self.findings
                if finding.status is Status.PASS or finding.severity.meets_threshold(threshold)
            ],
            partial=self.partial,
        )
        filtered.compute_summary()
        return filtered

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "scanType": self.scan_type,
            "startTime": self.start_time.isoformat(),
            "endTime": self.end_time.isoformat() if self.end_time else None,
            "duration": self.duration.total_seconds(),
            "clusterName": self.cluster_name,
            "namespaces": list(self.namespaces),
            "findings": [finding.to_dict() for finding in self.findings],
            "summary": self.summary.to_dict(),
            "partial": self.partial,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScanResult":
        end_time = data.get("endTime")
        return cls(
            id=data["id"],
            scan_type=data.get("scanType", ""),
            start_time=datetime.fromisoformat(data["startTime"]),
            end_time=datetime.fromisoformat(end_time) if end_time else None,
            duration=timedelta(seconds=float(data.get("duration", 0.0))),
            cluster_name=data.get("clusterName", ""),
            namespaces=list(data.get("namespaces") or []),
            findings=[Finding.from_dict(item) for item in data.get("findings") or []],
            summary=ScanSummary.from_dict(data.get("summary") or {}),
            partial=bool(data.get("partial", False)),
        )


@dataclass(frozen=True)
class ScanConfig:
    """Parameters of one scan invocation, built by the CLI or the reconciler."""

    scan_type: str = "full"
    namespaces: Tuple[str, ...] = ()
    severity_threshold: Optional[Severity] = None
    policy_paths: Tuple[str, ...] = ()
    credentials: Optional["ClusterCredentials"] = None
    delivery_endpoint: Optional[str] = None
    delivery_token: Optional[str] = None
    max_workers: int = 1

    def validate(self) -> None:
        if self.scan_type not in SCAN_TYPES:
            raise ConfigurationError(
                f"Unknown scan type {self.scan_type!r} (valid: {', '.join(SCAN_TYPES)})"
            )
        if self.max_workers < 1:
            raise ConfigurationError("max_workers must be at least 1")


@dataclass
class Violation:
    """A rule violation decoded from the rule engine's output."""

    msg: str
    id: str = ""
    title: str = ""
    description: str = ""
    severity: str = ""
    resource: str = ""
    namespace: str = ""
    remediation: str = ""
    category: str = ""

    def to_finding(self) -> Finding:
        """Convert to a failing :class:`Finding`; severity defaults to medium."""

        try:
            severity = Severity.parse(self.severity) if self.severity else Severity.MEDIUM
        except ConfigurationError:
            severity = Severity.MEDIUM
        return Finding(
            id=self.id,
            title=self.title,
            description=self.description,
            severity=severity,
            status=Status.FAIL,
            category=self.category,
            resource=self.resource,
            namespace=self.namespace,
            remediation=self.remediation,
            details={"message": self.msg},
        )


__all__ = [
    "Finding",
    "SCAN_TYPES",
    "SEVERITY_RANK",
    "ScanConfig",
    "ScanResult",
    "ScanSummary",
    "Severity",
    "Status",
    "Violation",
]
