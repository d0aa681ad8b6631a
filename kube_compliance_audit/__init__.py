"""Kubernetes security and compliance auditing toolkit."""

from __future__ import annotations

from .analyzers import ANALYZERS, Analyzer, build_analyzers, register_analyzer
from .cluster import ClusterAccessor, KubernetesCluster, SnapshotCluster
from .core import Scanner
from .errors import (
    AnalyzerError,
    AuditError,
    ConfigurationError,
    DeliveryError,
    ListingError,
    RuleCompileError,
    RuleEvaluationError,
    ScanCancelled,
)
from .findings import Finding, ScanConfig, ScanResult, ScanSummary, Severity, Status, Violation
from .report import print_findings
from .rules import RuleEngine
from .utils import ScanContext

__all__ = [
    "ANALYZERS",
    "Analyzer",
    "AnalyzerError",
    "AuditError",
    "ClusterAccessor",
    "ConfigurationError",
    "DeliveryError",
    "Finding",
    "KubernetesCluster",
    "ListingError",
    "RuleCompileError",
    "RuleEngine",
    "RuleEvaluationError",
    "ScanCancelled",
    "ScanConfig",
    "ScanContext",
    "ScanResult",
    "ScanSummary",
    "Scanner",
    "Severity",
    "SnapshotCluster",
    "Status",
    "Violation",
    "build_analyzers",
    "print_findings",
    "register_analyzer",
]
