"""Error taxonomy for the Kubernetes compliance audit."""
from __future__ import annotations


class AuditError(Exception):
    """Base class for every error raised by the audit toolkit."""


class ConfigurationError(AuditError, ValueError):
    """Raised for invalid scan types, severities, schedules or settings.

    Configuration errors are detected before any cluster I/O takes place.
    """


class ListingError(AuditError):
    """Raised when a cluster resource enumeration fails."""

    def __init__(self, kind: str, namespace: str | None, cause: object) -> None:
        self.kind = kind
        self.namespace = namespace
        scope = f" in namespace {namespace!r}" if namespace else ""
        super().__init__(f"Failed to list {kind}{scope}: {cause}")


class RuleCompileError(AuditError):
    """Raised when a rule source is malformed and cannot be loaded."""


class RuleEvaluationError(AuditError):
    """Raised when evaluating one resource against the loaded rules fails."""


class AnalyzerError(AuditError):
    """Raised when an analyzer cannot complete its analysis."""


class DeliveryError(AuditError):
    """Raised when uploading results to an external endpoint fails."""


class ScanCancelled(AuditError):
    """Raised inside a run when its context has been cancelled."""


__all__ = [
    "AnalyzerError",
    "AuditError",
    "ConfigurationError",
    "DeliveryError",
    "ListingError",
    "RuleCompileError",
    "RuleEvaluationError",
    "ScanCancelled",
]
