"""Tests for the scan definition reconciler and its scheduler."""

from __future__ import annotations

import sys
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


from kube_compliance_audit.errors import AnalyzerError, DeliveryError
from kube_compliance_audit.findings import Finding, ScanConfig, ScanResult, Severity, Status
from kube_compliance_audit.reconcile import (
    CONDITION_SCAN_COMPLETE,
    FAILURE_REQUEUE,
    FINALIZER,
    REASON_FAILED,
    REASON_SUCCEEDED,
    Condition,
    DefinitionKey,
    DeliverySpec,
    FindingCounts,
    InMemoryScanStore,
    Phase,
    ReconcileScheduler,
    Reconciler,
    ScanDefinition,
    ScanDefinitionSpec,
    ScanStatus,
    SecretKeyRef,
)
from kube_compliance_audit.utils import ScanContext


START = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
KEY = DefinitionKey("shop", "nightly")


class FakeClock:
    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


class StubScanner:
    """Stands in for :class:`Scanner`; records every configuration it runs."""

    def __init__(self, findings: Optional[List[Finding]] = None, error: Optional[Exception] = None) -> None:
        self.findings = findings if findings is not None else _default_findings()
        self.error = error
        self.configs: List[ScanConfig] = []

    def run(self, config: ScanConfig, ctx: Optional[ScanContext] = None) -> ScanResult:
        self.configs.append(config)
        if self.error is not None:
            raise self.error
        result = ScanResult(
            id=f"scan-{len(self.configs)}",
            scan_type=config.scan_type,
            start_time=START,
            findings=list(self.findings),
        )
        result.compute_summary()
        return result


class FakeDelivery:
    def __init__(self, endpoint: str, upload_error: Optional[Exception] = None) -> None:
        self.endpoint = endpoint
        self.upload_error = upload_error
        self.authenticated = False
        self.licenses: List[str] = []
        self.uploads: List[str] = []

    def validate_license(self, license_key: str) -> None:
        self.licenses.append(license_key)
        self.authenticated = True

    def upload_scan_results(self, result: ScanResult, token: Optional[str] = None) -> None:
        if self.upload_error is not None:
            raise self.upload_error
        self.uploads.append(result.id)


def _default_findings() -> List[Finding]:
    return [
        Finding(id="A", title="a", severity=Severity.HIGH, status=Status.PASS, category="t"),
        Finding(id="B", title="b", severity=Severity.HIGH, status=Status.FAIL, category="t"),
        Finding(id="C", title="c", severity=Severity.LOW, status=Status.WARNING, category="t"),
    ]


def _setup(spec: Optional[ScanDefinitionSpec] = None, scanner: Optional[StubScanner] = None, **kwargs):
    store = InMemoryScanStore()
    store.add(ScanDefinition(namespace=KEY.namespace, name=KEY.name, spec=spec or ScanDefinitionSpec(scan_type="rbac")))
    clock = FakeClock()
    scanner = scanner or StubScanner()
    reconciler = Reconciler(store, scanner, clock=clock, **kwargs)
    return store, scanner, clock, reconciler


def test_missing_definition_needs_no_requeue() -> None:
    """A key without a stored definition is silently finished."""

    reconciler = Reconciler(InMemoryScanStore(), StubScanner(), clock=FakeClock())

    assert reconciler.reconcile(DefinitionKey("shop", "gone")).requeue_after is None


def test_first_reconcile_runs_scan_and_records_status() -> None:
    """A new definition is scanned once and its status filled in."""

    store, scanner, clock, reconciler = _setup()

    result = reconciler.reconcile(KEY)

    assert result.requeue_after is None
    definition = store.get(KEY)
    assert FINALIZER in definition.finalizers
    status = definition.status
    assert status.phase == Phase.COMPLETED.value
    assert status.compliance_score == pytest.approx(50.0)
    assert (status.total_checks, status.passed_checks, status.failed_checks) == (3, 1, 1)
    assert status.findings == FindingCounts(high=1, low=1)
    assert status.last_scan_time == clock.now
    assert status.next_scan_time is None
    condition = status.get_condition(CONDITION_SCAN_COMPLETE)
    assert condition.status is True
    assert condition.reason == REASON_SUCCEEDED
    assert condition.message == "Scan completed with score 50.0% (1/3 checks passed)"
    assert [config.scan_type for config in scanner.configs] == ["rbac"]


def test_completed_definition_without_schedule_is_not_rerun() -> None:
    """One-shot definitions scan exactly once."""

    _, scanner, _, reconciler = _setup()

    reconciler.reconcile(KEY)
    reconciler.reconcile(KEY)

    assert len(scanner.configs) == 1


def test_failure_requeues_and_retries() -> None:
    """A failed scan is retried after five minutes and can then succeed."""

    scanner = StubScanner(error=AnalyzerError("rbac listing forbidden"))
    store, _, clock, reconciler = _setup(scanner=scanner)

    result = reconciler.reconcile(KEY)

    assert result.requeue_after == FAILURE_REQUEUE
    status = store.get(KEY).status
    assert status.phase == Phase.FAILED.value
    condition = status.get_condition(CONDITION_SCAN_COMPLETE)
    assert condition.status is False
    assert condition.reason == REASON_FAILED
    assert condition.message == "rbac listing forbidden"

    scanner.error = None
    clock.advance(FAILURE_REQUEUE)
    reconciler.reconcile(KEY)

    status = store.get(KEY).status
    assert status.phase == Phase.COMPLETED.value
    assert len(status.conditions) == 1
    assert status.conditions[0].status is True


def test_unexpected_scan_error_is_a_failure() -> None:
    """Errors outside the audit taxonomy still end in Failed with a retry."""

    scanner = StubScanner(error=ValueError("Invalid value for `containers`, must not be `None`"))
    store, _, clock, reconciler = _setup(scanner=scanner)

    result = reconciler.reconcile(KEY)

    assert result.requeue_after == FAILURE_REQUEUE
    status = store.get(KEY).status
    assert status.phase == Phase.FAILED.value
    assert "containers" in status.get_condition(CONDITION_SCAN_COMPLETE).message

    scanner.error = None
    clock.advance(FAILURE_REQUEUE)
    reconciler.reconcile(KEY)

    assert store.get(KEY).status.phase == Phase.COMPLETED.value
    assert len(scanner.configs) == 2


def test_invalid_severity_fails_without_scanning() -> None:
    """Bad settings in a definition are a scan failure, not a crash."""

    store, scanner, _, reconciler = _setup(ScanDefinitionSpec(scan_type="pss", severity_threshold="urgent"))

    result = reconciler.reconcile(KEY)

    assert result.requeue_after == FAILURE_REQUEUE
    assert store.get(KEY).status.phase == Phase.FAILED.value
    assert scanner.configs == []


def test_definition_settings_reach_the_scanner() -> None:
    """Namespaces, threshold and workers are passed through."""

    spec = ScanDefinitionSpec(scan_type="network", namespaces=["a", "b"], severity_threshold="High")
    _, scanner, _, reconciler = _setup(spec, max_workers=3)

    reconciler.reconcile(KEY)

    (config,) = scanner.configs
    assert config.namespaces == ("a", "b")
    assert config.severity_threshold is Severity.HIGH
    assert config.max_workers == 3


def test_interval_schedule_reruns_when_due() -> None:
    """Scheduled definitions wait for their next fire time and then rescan."""

    store, scanner, clock, reconciler = _setup(ScanDefinitionSpec(scan_type="rbac", schedule="@every 1h"))

    first = reconciler.reconcile(KEY)

    assert first.requeue_after == timedelta(hours=1)
    assert store.get(KEY).status.next_scan_time == START + timedelta(hours=1)

    clock.advance(timedelta(minutes=20))
    early = reconciler.reconcile(KEY)

    assert early.requeue_after == timedelta(minutes=40)
    assert len(scanner.configs) == 1

    clock.advance(timedelta(minutes=40))
    due = reconciler.reconcile(KEY)

    assert len(scanner.configs) == 2
    assert due.requeue_after == timedelta(hours=1)
    status = store.get(KEY).status
    assert status.last_scan_time == START + timedelta(hours=1)
    assert status.next_scan_time == START + timedelta(hours=2)


def test_schedule_added_after_completion_is_picked_up() -> None:
    """A one-shot definition that gains a schedule resumes scanning."""

    store, scanner, clock, reconciler = _setup()
    reconciler.reconcile(KEY)
    definition = store.get(KEY)
    definition.spec.schedule = "@every 1h"
    store.update(definition)

    clock.advance(timedelta(minutes=30))
    waiting = reconciler.reconcile(KEY)

    assert waiting.requeue_after == timedelta(minutes=30)
    assert store.get(KEY).status.next_scan_time == START + timedelta(hours=1)
    assert len(scanner.configs) == 1

    for _ in range(5):
        clock.advance(timedelta(hours=2))
        reconciler.reconcile(KEY)

    assert len(scanner.configs) == 6
    assert store.get(KEY).status.next_scan_time == clock.now + timedelta(hours=1)


def test_cron_schedule_sets_next_scan_time() -> None:
    """Cron schedules are evaluated against the reconciler clock."""

    store, _, _, reconciler = _setup(ScanDefinitionSpec(scan_type="rbac", schedule="0 * * * *"))

    result = reconciler.reconcile(KEY)

    assert store.get(KEY).status.next_scan_time == START + timedelta(hours=1)
    assert result.requeue_after == timedelta(hours=1)


def test_running_definition_is_not_reentered() -> None:
    """A definition already marked running is left alone."""

    store = InMemoryScanStore()
    store.add(
        ScanDefinition(
            namespace=KEY.namespace,
            name=KEY.name,
            spec=ScanDefinitionSpec(scan_type="rbac", schedule="@every 1h"),
            status=ScanStatus(phase=Phase.RUNNING.value),
            finalizers=[FINALIZER],
        )
    )
    scanner = StubScanner()

    result = Reconciler(store, scanner, clock=FakeClock()).reconcile(KEY)

    assert result.requeue_after is None
    assert scanner.configs == []


def test_deletion_runs_cleanup_and_releases_finalizer() -> None:
    """Deleting a definition calls cleanup hooks before it disappears."""

    store, _, _, reconciler = _setup()
    cleaned: List[DefinitionKey] = []
    reconciler.on_cleanup(cleaned.append)

    reconciler.reconcile(KEY)
    store.delete(KEY)
    assert store.get(KEY).deletion_requested is True

    result = reconciler.reconcile(KEY)

    assert result.requeue_after is None
    assert cleaned == [KEY]
    assert store.get(KEY) is None


def _delivery_spec(**kwargs) -> ScanDefinitionSpec:
    delivery = DeliverySpec(
        enabled=True,
        endpoint="https://results.example.test",
        license_secret=SecretKeyRef(name="license", key="key"),
    )
    return ScanDefinitionSpec(scan_type="rbac", delivery=delivery, **kwargs)


def test_delivery_validates_license_and_uploads() -> None:
    """The license key is read from the referenced secret before uploading."""

    clients: List[FakeDelivery] = []

    def factory(endpoint: str) -> FakeDelivery:
        clients.append(FakeDelivery(endpoint))
        return clients[-1]

    store, _, _, reconciler = _setup(_delivery_spec(), delivery_factory=factory)
    store.add_secret("shop", "license", {"key": "LIC-123"})

    reconciler.reconcile(KEY)

    (delivery,) = clients
    assert delivery.endpoint == "https://results.example.test"
    assert delivery.licenses == ["LIC-123"]
    assert delivery.uploads == ["scan-1"]


def test_delivery_failure_does_not_fail_scan() -> None:
    """Upload errors are logged; the scan still counts as completed."""

    def factory(endpoint: str) -> FakeDelivery:
        return FakeDelivery(endpoint, upload_error=DeliveryError("upload failed (HTTP 500)"))

    store, _, _, reconciler = _setup(_delivery_spec(), delivery_factory=factory)
    store.add_secret("shop", "license", {"key": "LIC-123"})

    reconciler.reconcile(KEY)

    assert store.get(KEY).status.phase == Phase.COMPLETED.value


def test_missing_license_secret_skips_upload() -> None:
    """Without the secret nothing is uploaded and the scan completes."""

    clients: List[FakeDelivery] = []

    def factory(endpoint: str) -> FakeDelivery:
        clients.append(FakeDelivery(endpoint))
        return clients[-1]

    store, _, _, reconciler = _setup(_delivery_spec(), delivery_factory=factory)

    reconciler.reconcile(KEY)

    assert clients[0].uploads == []
    assert store.get(KEY).status.phase == Phase.COMPLETED.value


def test_definition_round_trips_through_resource() -> None:
    """Resources written by the store read back into equal definitions."""

    definition = ScanDefinition(
        namespace="shop",
        name="nightly",
        spec=_delivery_spec(schedule="0 2 * * *", namespaces=["shop"], severity_threshold="medium"),
        status=ScanStatus(
            phase=Phase.COMPLETED.value,
            compliance_score=80.0,
            total_checks=5,
            passed_checks=4,
            failed_checks=1,
            findings=FindingCounts(critical=1),
            last_scan_time=START,
            next_scan_time=START + timedelta(hours=14),
            conditions=[Condition(CONDITION_SCAN_COMPLETE, True, REASON_SUCCEEDED, "ok", START)],
        ),
        finalizers=[FINALIZER],
        resource_version="7",
    )

    resource = definition.to_resource()
    restored = ScanDefinition.from_resource(resource)

    assert resource["kind"] == "ComplianceScan"
    assert resource["status"]["conditions"][0]["status"] == "True"
    assert resource["status"]["lastScanTime"] == "2024-01-01T12:00:00Z"
    assert resource["spec"]["delivery"]["licenseKeySecretRef"] == {"name": "license", "key": "key"}
    assert restored == definition


def test_scheduler_keeps_earliest_due_time() -> None:
    """Each key has a single pending entry at its earliest due time."""

    clock = FakeClock()
    scheduler = ReconcileScheduler(Reconciler(InMemoryScanStore(), StubScanner(), clock=clock))

    scheduler.enqueue(KEY, timedelta(seconds=10))
    scheduler.enqueue(KEY, timedelta(seconds=5))
    scheduler.enqueue(KEY, timedelta(seconds=20))

    assert scheduler.pending() == {KEY: START + timedelta(seconds=5)}
    assert scheduler.next_due() == START + timedelta(seconds=5)

    scheduler.forget(KEY)

    assert scheduler.pending() == {}
    assert scheduler.next_due() is None


def test_scheduler_runs_due_keys_and_requeues() -> None:
    """Due keys are reconciled and rescheduled from the result."""

    store, scanner, clock, reconciler = _setup(ScanDefinitionSpec(scan_type="rbac", schedule="@every 1h"))
    later = DefinitionKey("shop", "later")
    store.add(ScanDefinition(namespace="shop", name="later", spec=ScanDefinitionSpec(scan_type="rbac")))
    scheduler = ReconcileScheduler(reconciler)
    scheduler.enqueue(KEY)
    scheduler.enqueue(later, timedelta(minutes=10))

    processed = scheduler.run_once()

    assert processed == [KEY]
    assert len(scanner.configs) == 1
    assert scheduler.pending() == {
        KEY: START + timedelta(hours=1),
        later: START + timedelta(minutes=10),
    }


def test_scheduler_backs_off_after_unexpected_error() -> None:
    """Exceptions escaping the reconciler requeue the key after a delay."""

    class ExplodingStore(InMemoryScanStore):
        def get(self, key: DefinitionKey) -> Optional[ScanDefinition]:
            raise RuntimeError("api server unavailable")

    clock = FakeClock()
    scheduler = ReconcileScheduler(
        Reconciler(ExplodingStore(), StubScanner(), clock=clock), error_backoff=timedelta(seconds=30)
    )
    scheduler.enqueue(KEY)

    assert scheduler.run_once() == [KEY]
    assert scheduler.pending() == {KEY: START + timedelta(seconds=30)}


def test_scheduler_resync_enqueues_every_definition() -> None:
    """A resync schedules all stored definitions immediately."""

    store, _, _, reconciler = _setup()
    store.add(ScanDefinition(namespace="blog", name="weekly"))
    scheduler = ReconcileScheduler(reconciler)

    scheduler.resync()

    assert scheduler.pending() == {DefinitionKey("blog", "weekly"): START, KEY: START}


def test_deleted_definition_leaves_the_queue() -> None:
    """Cleanup of a deleted definition drops its pending entry."""

    store, _, _, reconciler = _setup(ScanDefinitionSpec(scan_type="rbac", schedule="@every 1h"))
    scheduler = ReconcileScheduler(reconciler)
    scheduler.enqueue(KEY)
    scheduler.run_once()
    assert KEY in scheduler.pending()

    store.delete(KEY)
    reconciler.reconcile(KEY)

    assert scheduler.pending() == {}


def test_run_forever_survives_failed_resync() -> None:
    """A failed listing of definitions is retried instead of ending the loop."""

    stop = threading.Event()

    class FlakyStore(InMemoryScanStore):
        def __init__(self) -> None:
            super().__init__()
            self.list_calls = 0

        def list_keys(self) -> List[DefinitionKey]:
            self.list_calls += 1
            if self.list_calls == 1:
                raise ConnectionError("connection reset by peer")
            return super().list_keys()

    class StoppingScanner(StubScanner):
        def run(self, config: ScanConfig, ctx: Optional[ScanContext] = None) -> ScanResult:
            stop.set()
            return super().run(config, ctx)

    store = FlakyStore()
    store.add(ScanDefinition(namespace=KEY.namespace, name=KEY.name, spec=ScanDefinitionSpec(scan_type="rbac")))
    scanner = StoppingScanner()
    scheduler = ReconcileScheduler(
        Reconciler(store, scanner, clock=FakeClock()), error_backoff=timedelta(0), poll_interval=0.0
    )

    scheduler.run_forever(stop)

    assert store.list_calls == 2
    assert len(scanner.configs) == 1
    assert store.get(KEY).status.phase == Phase.COMPLETED.value
