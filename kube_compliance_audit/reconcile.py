"""Recurring scans driven by persisted scan definitions.

A scan definition moves through ``Pending -> Running -> Completed | Failed``.
The :class:`Reconciler` advances one definition per call and reports when it
wants to be called again; the :class:`ReconcileScheduler` owns those
requeue times and drives the reconciler.
"""
from __future__ import annotations

import base64
import copy
import heapq
import itertools
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Tuple

import urllib3
from kubernetes import client
from kubernetes.client.rest import ApiException

from .core import Scanner
from .delivery import DEFAULT_ENDPOINT, DeliveryClient
from .errors import AuditError, DeliveryError, ListingError
from .findings import ScanConfig, ScanResult, ScanSummary, Severity
from .schedule import Schedule
from .utils import ScanContext

logger = logging.getLogger(__name__)

FINALIZER = "compliance.kubecomply.io/finalizer"
CRD_GROUP = "compliance.kubecomply.io"
CRD_VERSION = "v1alpha1"
CRD_PLURAL = "compliancescans"
CRD_KIND = "ComplianceScan"

CONDITION_SCAN_COMPLETE = "ScanComplete"
REASON_SUCCEEDED = "ScanSucceeded"
REASON_FAILED = "ScanFailed"
FAILURE_REQUEUE = timedelta(minutes=5)
ERROR_REQUEUE = timedelta(seconds=30)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_time(moment: Optional[datetime]) -> Optional[str]:
    if moment is None:
        return None
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_time(text: Optional[str]) -> Optional[datetime]:
    if not text:
        return None
    moment = datetime.fromisoformat(text.replace("Z", "+00:00"))
    return moment if moment.tzinfo else moment.replace(tzinfo=timezone.utc)


class Phase(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"


class DefinitionKey(NamedTuple):
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass
class SecretKeyRef:
    name: str
    key: str


@dataclass
class DeliverySpec:
    """Where and whether to upload results; the license key lives in a Secret."""

    enabled: bool = False
    endpoint: str = ""
    license_secret: Optional[SecretKeyRef] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeliverySpec":
        ref = data.get("licenseKeySecretRef")
        return cls(
            enabled=bool(data.get("enabled", False)),
            endpoint=data.get("endpoint", "") or "",
            license_secret=SecretKeyRef(name=ref.get("name", ""), key=ref.get("key", "")) if ref else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"enabled": self.enabled}
        if self.endpoint:
            data["endpoint"] = self.endpoint
        if self.license_secret is not None:
            data["licenseKeySecretRef"] = {"name": self.license_secret.name, "key": self.license_secret.key}
        return data


@dataclass
class ScanDefinitionSpec:
    scan_type: str = "full"
    schedule: str = ""
    namespaces: List[str] = field(default_factory=list)
    policy_paths: List[str] = field(default_factory=list)
    severity_threshold: str = ""
    delivery: Optional[DeliverySpec] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScanDefinitionSpec":
        delivery = data.get("delivery")
        return cls(
            scan_type=data.get("scanType") or "full",
            schedule=data.get("schedule", "") or "",
            namespaces=list(data.get("namespaces") or []),
            policy_paths=list(data.get("policyPaths") or []),
            severity_threshold=data.get("severityThreshold", "") or "",
            delivery=DeliverySpec.from_dict(delivery) if delivery else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"scanType": self.scan_type}
        if self.schedule:
            data["schedule"] = self.schedule
        if self.namespaces:
            data["namespaces"] = list(self.namespaces)
        if self.policy_paths:
            data["policyPaths"] = list(self.policy_paths)
        if self.severity_threshold:
            data["severityThreshold"] = self.severity_threshold
        if self.delivery is not None:
            data["delivery"] = self.delivery.to_dict()
        return data


@dataclass
class FindingCounts:
    critical: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0
    info: int = 0

    @classmethod
    def from_summary(cls, summary: ScanSummary) -> "FindingCounts":
        return cls(**{severity.value: summary.count(severity) for severity in Severity})

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FindingCounts":
        return cls(**{severity.value: int(data.get(severity.value, 0)) for severity in Severity})

    def to_dict(self) -> Dict[str, int]:
        return {severity.value: getattr(self, severity.value) for severity in Severity}


@dataclass
class Condition:
    type: str
    status: bool
    reason: str
    message: str
    last_transition_time: datetime

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Condition":
        return cls(
            type=data.get("type", ""),
            status=str(data.get("status", "")).lower() == "true",
            reason=data.get("reason", ""),
            message=data.get("message", ""),
            last_transition_time=parse_time(data.get("lastTransitionTime")) or utcnow(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "status": "True" if self.status else "False",
            "reason": self.reason,
            "message": self.message,
            "lastTransitionTime": format_time(self.last_transition_time),
        }


@dataclass
class ScanStatus:
    phase: str = ""
    compliance_score: float = 0.0
    total_checks: int = 0
    passed_checks: int = 0
    failed_checks: int = 0
    findings: FindingCounts = field(default_factory=FindingCounts)
    last_scan_time: Optional[datetime] = None
    next_scan_time: Optional[datetime] = None
    conditions: List[Condition] = field(default_factory=list)

    def set_condition(self, condition: Condition) -> None:
        """Replace the condition of the same type, or append it."""

        for index, existing in enumerate(self.conditions):
            if existing.type == condition.type:
                self.conditions[index] = condition
                return
        self.conditions.append(condition)

    def get_condition(self, condition_type: str) -> Optional[Condition]:
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScanStatus":
        return cls(
            phase=data.get("phase", "") or "",
            compliance_score=float(data.get("complianceScore", 0.0)),
            total_checks=int(data.get("totalChecks", 0)),
            passed_checks=int(data.get("passedChecks", 0)),
            failed_checks=int(data.get("failedChecks", 0)),
            findings=FindingCounts.from_dict(data.get("findings") or {}),
            last_scan_time=parse_time(data.get("lastScanTime")),
            next_scan_time=parse_time(data.get("nextScanTime")),
            conditions=[Condition.from_dict(item) for item in data.get("conditions") or []],
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "phase": self.phase,
            "complianceScore": self.compliance_score,
            "totalChecks": self.total_checks,
            "passedChecks": self.passed_checks,
            "failedChecks": self.failed_checks,
            "findings": self.findings.to_dict(),
            "conditions": [condition.to_dict() for condition in self.conditions],
        }
        if self.last_scan_time is not None:
            data["lastScanTime"] = format_time(self.last_scan_time)
        if self.next_scan_time is not None:
            data["nextScanTime"] = format_time(self.next_scan_time)
        return data


@dataclass
class ScanDefinition:
    """A persisted request for a (possibly recurring) scan."""

    namespace: str
    name: str
    spec: ScanDefinitionSpec = field(default_factory=ScanDefinitionSpec)
    status: ScanStatus = field(default_factory=ScanStatus)
    finalizers: List[str] = field(default_factory=list)
    deletion_requested: bool = False
    resource_version: str = ""

    @property
    def key(self) -> DefinitionKey:
        return DefinitionKey(self.namespace, self.name)

    @classmethod
    def from_resource(cls, obj: Dict[str, Any]) -> "ScanDefinition":
        metadata = obj.get("metadata") or {}
        return cls(
            namespace=metadata.get("namespace", ""),
            name=metadata.get("name", ""),
            spec=ScanDefinitionSpec.from_dict(obj.get("spec") or {}),
            status=ScanStatus.from_dict(obj.get("status") or {}),
            finalizers=list(metadata.get("finalizers") or []),
            deletion_requested=bool(metadata.get("deletionTimestamp")),
            resource_version=metadata.get("resourceVersion", "") or "",
        )

    def to_resource(self) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {
            "name": self.name,
            "namespace": self.namespace,
            "finalizers": list(self.finalizers),
        }
        if self.resource_version:
            metadata["resourceVersion"] = self.resource_version
        return {
            "apiVersion": f"{CRD_GROUP}/{CRD_VERSION}",
            "kind": CRD_KIND,
            "metadata": metadata,
            "spec": self.spec.to_dict(),
            "status": self.status.to_dict(),
        }


@dataclass
class ReconcileResult:
    """``requeue_after`` is ``None`` when no further call is wanted."""

    requeue_after: Optional[timedelta] = None


class ScanDefinitionStore(ABC):
    """Persistence for scan definitions and the secrets they reference."""

    @abstractmethod
    def get(self, key: DefinitionKey) -> Optional[ScanDefinition]:
        raise NotImplementedError

    @abstractmethod
    def update(self, definition: ScanDefinition) -> ScanDefinition:
        """Persist metadata and spec (e.g. finalizers)."""

        raise NotImplementedError

    @abstractmethod
    def update_status(self, definition: ScanDefinition) -> ScanDefinition:
        raise NotImplementedError

    @abstractmethod
    def list_keys(self) -> List[DefinitionKey]:
        raise NotImplementedError

    @abstractmethod
    def read_secret(self, namespace: str, name: str, key: str) -> Optional[str]:
        """Return the decoded value of ``key`` in Secret ``name``; ``None`` when absent."""

        raise NotImplementedError


class InMemoryScanStore(ScanDefinitionStore):
    """Store keeping definitions in process memory.

    Deletion mimics the API server: a definition carrying finalizers is only
    marked for deletion, and disappears once its last finalizer is removed.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._definitions: Dict[DefinitionKey, ScanDefinition] = {}
        self._secrets: Dict[Tuple[str, str], Dict[str, str]] = {}
        self._versions = itertools.count(1)

    def add(self, definition: ScanDefinition) -> ScanDefinition:
        with self._lock:
            stored = copy.deepcopy(definition)
            stored.resource_version = str(next(self._versions))
            self._definitions[stored.key] = stored
            return copy.deepcopy(stored)

    def delete(self, key: DefinitionKey) -> None:
        with self._lock:
            definition = self._definitions.get(key)
            if definition is None:
                return
            if definition.finalizers:
                definition.deletion_requested = True
            else:
                del self._definitions[key]

    def add_secret(self, namespace: str, name: str, data: Dict[str, str]) -> None:
        with self._lock:
            self._secrets[(namespace, name)] = dict(data)

    def get(self, key: DefinitionKey) -> Optional[ScanDefinition]:
        with self._lock:
            definition = self._definitions.get(key)
            return copy.deepcopy(definition) if definition is not None else None

    def update(self, definition: ScanDefinition) -> ScanDefinition:
        with self._lock:
            stored = self._require(definition.key)
            stored.spec = copy.deepcopy(definition.spec)
            stored.finalizers = list(definition.finalizers)
            stored.resource_version = str(next(self._versions))
            if stored.deletion_requested and not stored.finalizers:
                del self._definitions[stored.key]
            return copy.deepcopy(stored)

    def update_status(self, definition: ScanDefinition) -> ScanDefinition:
        with self._lock:
            stored = self._require(definition.key)
            stored.status = copy.deepcopy(definition.status)
            stored.resource_version = str(next(self._versions))
            return copy.deepcopy(stored)

    def list_keys(self) -> List[DefinitionKey]:
        with self._lock:
            return sorted(self._definitions)

    def read_secret(self, namespace: str, name: str, key: str) -> Optional[str]:
        with self._lock:
            data = self._secrets.get((namespace, name))
        if data is None:
            raise ListingError("Secret", namespace, f"secret {name!r} not found")
        return data.get(key)

    def _require(self, key: DefinitionKey) -> ScanDefinition:
        try:
            return self._definitions[key]
        except KeyError:
            raise KeyError(f"scan definition {key} not found") from None


class KubernetesScanStore(ScanDefinitionStore):
    """Store backed by the ``ComplianceScan`` custom resource."""

    def __init__(self, api_client: client.ApiClient, namespace: Optional[str] = None) -> None:
        self._custom = client.CustomObjectsApi(api_client)
        self._core = client.CoreV1Api(api_client)
        self._namespace = namespace or None

    def get(self, key: DefinitionKey) -> Optional[ScanDefinition]:
        try:
            obj = self._custom.get_namespaced_custom_object(
                CRD_GROUP, CRD_VERSION, key.namespace, CRD_PLURAL, key.name
            )
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise
        return ScanDefinition.from_resource(obj)

    def update(self, definition: ScanDefinition) -> ScanDefinition:
        obj = self._custom.replace_namespaced_custom_object(
            CRD_GROUP, CRD_VERSION, definition.namespace, CRD_PLURAL, definition.name, definition.to_resource()
        )
        return ScanDefinition.from_resource(obj)

    def update_status(self, definition: ScanDefinition) -> ScanDefinition:
        obj = self._custom.replace_namespaced_custom_object_status(
            CRD_GROUP, CRD_VERSION, definition.namespace, CRD_PLURAL, definition.name, definition.to_resource()
        )
        return ScanDefinition.from_resource(obj)

    def list_keys(self) -> List[DefinitionKey]:
        if self._namespace:
            response = self._custom.list_namespaced_custom_object(
                CRD_GROUP, CRD_VERSION, self._namespace, CRD_PLURAL
            )
        else:
            response = self._custom.list_cluster_custom_object(CRD_GROUP, CRD_VERSION, CRD_PLURAL)
        keys = []
        for item in response.get("items") or []:
            metadata = item.get("metadata") or {}
            keys.append(DefinitionKey(metadata.get("namespace", ""), metadata.get("name", "")))
        return sorted(keys)

    def read_secret(self, namespace: str, name: str, key: str) -> Optional[str]:
        try:
            secret = self._core.read_namespaced_secret(name=name, namespace=namespace)
        except (ApiException, urllib3.exceptions.HTTPError) as exc:
            raise ListingError("Secret", namespace, exc) from exc
        encoded = (secret.data or {}).get(key)
        if encoded is None:
            return None
        return base64.b64decode(encoded).decode("utf-8")


class Reconciler:
    """Advance one scan definition through its phase state machine."""

    def __init__(
        self,
        store: ScanDefinitionStore,
        scanner: Scanner,
        *,
        clock: Clock = utcnow,
        max_workers: int = 1,
        scan_timeout: Optional[float] = None,
        default_delivery_endpoint: str = DEFAULT_ENDPOINT,
        delivery_factory: Optional[Callable[[str], DeliveryClient]] = None,
    ) -> None:
        self.store = store
        self.scanner = scanner
        self.clock = clock
        self.max_workers = max_workers
        self.scan_timeout = scan_timeout
        self.default_delivery_endpoint = default_delivery_endpoint
        self._delivery_factory = delivery_factory or DeliveryClient
        self._delivery_clients: Dict[str, DeliveryClient] = {}
        self._cleanup_hooks: List[Callable[[DefinitionKey], None]] = []

    def on_cleanup(self, hook: Callable[[DefinitionKey], None]) -> None:
        """Register *hook* to be called when a definition is being deleted."""

        self._cleanup_hooks.append(hook)

    def reconcile(self, key: DefinitionKey) -> ReconcileResult:
        logger.info("reconciling scan definition %s", key)
        definition = self.store.get(key)
        if definition is None:
            logger.info("scan definition %s not found, likely deleted", key)
            return ReconcileResult()

        if definition.deletion_requested:
            if FINALIZER in definition.finalizers:
                logger.info("cleaning up scan definition %s", key)
                for hook in self._cleanup_hooks:
                    hook(key)
                definition.finalizers.remove(FINALIZER)
                self.store.update(definition)
            return ReconcileResult()

        if FINALIZER not in definition.finalizers:
            definition.finalizers.append(FINALIZER)
            definition = self.store.update(definition)

        now = self.clock()
        phase = definition.status.phase
        if phase == Phase.COMPLETED.value and definition.spec.schedule and definition.status.next_scan_time is None:
            definition = self._backfill_next_scan(definition, now)
        if phase == Phase.COMPLETED.value and self._scheduled_run_due(definition, now):
            logger.info("scheduled run of %s is due, resetting to %s", key, Phase.PENDING.value)
        elif phase in (Phase.RUNNING.value, Phase.COMPLETED.value):
            logger.info("scan definition %s already %s", key, phase)
            return self._schedule_next(definition, now)

        definition.status.phase = Phase.RUNNING.value
        definition = self.store.update_status(definition)

        try:
            config = self.build_config(definition)
            ctx = ScanContext(timeout=self.scan_timeout) if self.scan_timeout else None
            result = self.scanner.run(config, ctx)
        except AuditError as exc:
            logger.error("scan %s failed: %s", key, exc)
            return self._handle_failure(definition, exc)
        except Exception as exc:
            logger.exception("scan %s failed unexpectedly", key)
            return self._handle_failure(definition, exc)

        definition = self._record_success(definition, result)
        self._deliver(definition, result)
        logger.info(
            "scan %s completed: score=%.1f checks=%d", key, result.summary.score, result.summary.total_checks
        )
        return self._schedule_next(definition, self.clock())

    def build_config(self, definition: ScanDefinition) -> ScanConfig:
        """Translate a definition into a validated :class:`ScanConfig`."""

        spec = definition.spec
        if spec.schedule:
            Schedule.parse(spec.schedule)
        threshold = Severity.parse(spec.severity_threshold) if spec.severity_threshold else None
        config = ScanConfig(
            scan_type=spec.scan_type or "full",
            namespaces=tuple(spec.namespaces),
            severity_threshold=threshold,
            policy_paths=tuple(spec.policy_paths),
            max_workers=self.max_workers,
        )
        config.validate()
        return config

    def _backfill_next_scan(self, definition: ScanDefinition, now: datetime) -> ScanDefinition:
        """Store the next run of a schedule added after the definition completed."""

        status = definition.status
        try:
            schedule = Schedule.parse(definition.spec.schedule)
        except AuditError as exc:
            logger.error("cannot schedule %s: %s", definition.key, exc)
            return definition
        status.next_scan_time = schedule.next_after(status.last_scan_time or now)
        logger.info("scan definition %s gained a schedule, next run at %s", definition.key, status.next_scan_time)
        return self.store.update_status(definition)

    def _scheduled_run_due(self, definition: ScanDefinition, now: datetime) -> bool:
        next_scan = definition.status.next_scan_time
        return bool(definition.spec.schedule) and next_scan is not None and next_scan <= now

    def _schedule_next(self, definition: ScanDefinition, now: datetime) -> ReconcileResult:
        if not definition.spec.schedule:
            return ReconcileResult()
        if definition.status.phase == Phase.RUNNING.value:
            return ReconcileResult()
        next_scan = definition.status.next_scan_time
        if next_scan is None:
            try:
                next_scan = Schedule.parse(definition.spec.schedule).next_after(now)
            except AuditError as exc:
                logger.error("cannot schedule %s: %s", definition.key, exc)
                return ReconcileResult()
        return ReconcileResult(requeue_after=max(next_scan - now, timedelta(0)))

    def _handle_failure(self, definition: ScanDefinition, error: Exception) -> ReconcileResult:
        status = definition.status
        status.phase = Phase.FAILED.value
        status.set_condition(
            Condition(
                type=CONDITION_SCAN_COMPLETE,
                status=False,
                reason=REASON_FAILED,
                message=str(error),
                last_transition_time=self.clock(),
            )
        )
        self.store.update_status(definition)
        return ReconcileResult(requeue_after=FAILURE_REQUEUE)

    def _record_success(self, definition: ScanDefinition, result: ScanResult) -> ScanDefinition:
        now = self.clock()
        summary = result.summary
        status = definition.status
        status.phase = Phase.COMPLETED.value
        status.compliance_score = summary.score
        status.total_checks = summary.total_checks
        status.passed_checks = summary.passed_checks
        status.failed_checks = summary.failed_checks
        status.findings = FindingCounts.from_summary(summary)
        status.last_scan_time = now
        status.next_scan_time = (
            Schedule.parse(definition.spec.schedule).next_after(now) if definition.spec.schedule else None
        )
        message = (
            f"Scan completed with score {summary.score:.1f}% "
            f"({summary.passed_checks}/{summary.total_checks} checks passed)"
        )
        if result.partial:
            message += "; results are partial"
        status.set_condition(
            Condition(
                type=CONDITION_SCAN_COMPLETE,
                status=True,
                reason=REASON_SUCCEEDED,
                message=message,
                last_transition_time=now,
            )
        )
        return self.store.update_status(definition)

    def _delivery_client(self, endpoint: str) -> DeliveryClient:
        delivery_client = self._delivery_clients.get(endpoint)
        if delivery_client is None:
            delivery_client = self._delivery_factory(endpoint)
            self._delivery_clients[endpoint] = delivery_client
        return delivery_client

    def _deliver(self, definition: ScanDefinition, result: ScanResult) -> None:
        """Upload *result* when enabled; every failure is logged, never raised."""

        delivery = definition.spec.delivery
        if delivery is None or not delivery.enabled:
            return
        delivery_client = self._delivery_client(delivery.endpoint or self.default_delivery_endpoint)

        if not delivery_client.authenticated and delivery.license_secret is not None:
            ref = delivery.license_secret
            try:
                license_key = self.store.read_secret(definition.namespace, ref.name, ref.key)
            except ListingError as exc:
                logger.warning("failed to read license key secret for %s: %s", definition.key, exc)
                return
            if not license_key:
                logger.warning("license key is empty in secret %s (key %s)", ref.name, ref.key)
                return
            try:
                delivery_client.validate_license(license_key)
            except DeliveryError as exc:
                logger.warning("license validation failed for %s: %s", definition.key, exc)
                return

        try:
            delivery_client.upload_scan_results(result)
        except DeliveryError as exc:
            logger.warning("failed to upload results of %s: %s", definition.key, exc)


class ReconcileScheduler:
    """Time-ordered work queue of definition keys feeding a :class:`Reconciler`.

    Each key has at most one pending entry; enqueueing a key that is already
    due sooner is a no-op, and enqueueing it for an earlier time moves it up.
    """

    def __init__(
        self,
        reconciler: Reconciler,
        *,
        clock: Optional[Clock] = None,
        error_backoff: timedelta = ERROR_REQUEUE,
        poll_interval: float = 1.0,
    ) -> None:
        self.reconciler = reconciler
        self.clock = clock or reconciler.clock
        self.error_backoff = error_backoff
        self.poll_interval = poll_interval
        self._lock = threading.Lock()
        self._heap: List[Tuple[datetime, int, DefinitionKey]] = []
        self._due: Dict[DefinitionKey, datetime] = {}
        self._sequence = itertools.count()
        reconciler.on_cleanup(self.forget)

    def enqueue(self, key: DefinitionKey, delay: timedelta = timedelta(0)) -> None:
        due = self.clock() + delay
        with self._lock:
            current = self._due.get(key)
            if current is not None and current <= due:
                return
            self._due[key] = due
            heapq.heappush(self._heap, (due, next(self._sequence), key))

    def forget(self, key: DefinitionKey) -> None:
        with self._lock:
            self._due.pop(key, None)

    def pending(self) -> Dict[DefinitionKey, datetime]:
        with self._lock:
            return dict(self._due)

    def next_due(self) -> Optional[datetime]:
        with self._lock:
            self._discard_stale()
            return self._heap[0][0] if self._heap else None

    def resync(self) -> None:
        """Enqueue every stored definition for immediate reconciliation."""

        for key in self.reconciler.store.list_keys():
            self.enqueue(key)

    def run_once(self, now: Optional[datetime] = None) -> List[DefinitionKey]:
        """Reconcile every key due at *now*; return the keys processed."""

        now = now or self.clock()
        due_keys: List[DefinitionKey] = []
        with self._lock:
            while True:
                self._discard_stale()
                if not self._heap or self._heap[0][0] > now:
                    break
                _, _, key = heapq.heappop(self._heap)
                del self._due[key]
                due_keys.append(key)

        for key in due_keys:
            try:
                result = self.reconciler.reconcile(key)
            except Exception:
                logger.exception("reconcile of %s raised, retrying in %s", key, self.error_backoff)
                self.enqueue(key, self.error_backoff)
                continue
            if result.requeue_after is not None:
                self.enqueue(key, result.requeue_after)
        return due_keys

    def run_forever(self, stop_event: threading.Event, resync_interval: Optional[timedelta] = None) -> None:
        """Drive the queue until *stop_event* is set, resyncing periodically."""

        synced = self._try_resync()
        last_resync = self.clock()
        while not stop_event.is_set():
            self.run_once()
            now = self.clock()
            since_resync = now - last_resync
            if (not synced and since_resync >= self.error_backoff) or (
                resync_interval is not None and since_resync >= resync_interval
            ):
                synced = self._try_resync()
                last_resync = now
            next_due = self.next_due()
            wait = self.poll_interval
            if next_due is not None:
                wait = min(wait, max((next_due - now).total_seconds(), 0.0))
            stop_event.wait(wait)

    def _try_resync(self) -> bool:
        try:
            self.resync()
        except Exception:
            logger.exception("listing scan definitions failed, retrying in %s", self.error_backoff)
            return False
        return True

    def _discard_stale(self) -> None:
        while self._heap:
            due, _, key = self._heap[0]
            if self._due.get(key) == due:
                return
            heapq.heappop(self._heap)


__all__ = [
    "Condition",
    "DefinitionKey",
    "DeliverySpec",
    "FINALIZER",
    "FindingCounts",
    "InMemoryScanStore",
    "KubernetesScanStore",
    "Phase",
    "ReconcileResult",
    "ReconcileScheduler",
    "Reconciler",
    "ScanDefinition",
    "ScanDefinitionSpec",
    "ScanDefinitionStore",
    "ScanStatus",
    "SecretKeyRef",
]
