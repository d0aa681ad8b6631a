"""Tests for the NetworkPolicy analyzer."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Dict, List

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


from kube_compliance_audit.analyzers.network import (
    NetworkAnalyzer,
    coverage_band,
    is_default_deny,
    summarize_policies,
)
from kube_compliance_audit.cluster import SnapshotCluster
from kube_compliance_audit.errors import ListingError
from kube_compliance_audit.findings import Severity, Status


def _policy(namespace: str, name: str, spec: Dict[str, Any]) -> Dict[str, Any]:
    return {"metadata": {"name": name, "namespace": namespace}, "spec": spec}


def _service(namespace: str, name: str, service_type: str, ports: List[Dict[str, Any]] | None = None) -> Dict[str, Any]:
    spec: Dict[str, Any] = {"type": service_type}
    if ports is not None:
        spec["ports"] = ports
    return {"metadata": {"name": name, "namespace": namespace}, "spec": spec}


DENY_INGRESS = {"podSelector": {}, "policyTypes": ["Ingress"]}
DENY_ALL = {"podSelector": {}, "policyTypes": ["Ingress", "Egress"]}


def _by_id(findings, finding_id: str):
    return [finding for finding in findings if finding.id == finding_id]


def test_partial_coverage_is_a_medium_warning() -> None:
    """One of two namespaces covered lands in the 50-75% band."""

    cluster = SnapshotCluster(
        {
            "namespaces": [{"metadata": {"name": "dev"}}, {"metadata": {"name": "prod"}}],
            "networkpolicies": [_policy("prod", "deny-all", DENY_ALL)],
        }
    )

    findings = NetworkAnalyzer(cluster).analyze(None, ["dev", "prod"])

    (coverage,) = _by_id(findings, "NET-002")
    assert coverage.severity is Severity.MEDIUM
    assert coverage.status is Status.WARNING
    assert coverage.details["coverage"] == "50.0%"
    assert coverage.details["covered"] == "1"
    assert coverage.details["total"] == "2"

    (gap,) = _by_id(findings, "NET-001")
    assert gap.namespace == "dev"
    assert gap.resource == "Namespace/dev"
    assert _by_id(findings, "NET-003") == []
    assert _by_id(findings, "NET-004") == []


def test_empty_cluster_counts_as_fully_covered() -> None:
    """No user namespaces means full coverage and no gaps."""

    findings = NetworkAnalyzer(SnapshotCluster({})).analyze(None, [])

    assert [(finding.id, finding.status) for finding in findings] == [("NET-002", Status.PASS)]
    assert findings[0].severity is Severity.INFO


def test_system_namespaces_do_not_count_towards_coverage() -> None:
    """kube-system without policies is not a coverage gap."""

    cluster = SnapshotCluster({"networkpolicies": [_policy("shop", "deny", DENY_ALL)]})

    findings = NetworkAnalyzer(cluster).analyze(None, ["kube-system", "shop"])

    assert _by_id(findings, "NET-001") == []
    assert _by_id(findings, "NET-002")[0].status is Status.PASS


def test_unscoped_scan_inspects_system_namespaces() -> None:
    """Exposure checks cover kube-system when no namespaces are requested."""

    cluster = SnapshotCluster(
        {
            "namespaces": [{"metadata": {"name": "kube-system"}}, {"metadata": {"name": "shop"}}],
            "services": [_service("kube-system", "dashboard", "NodePort", [{"port": 443, "nodePort": 30443}])],
            "networkpolicies": [_policy("shop", "deny", DENY_ALL)],
        }
    )

    findings = NetworkAnalyzer(cluster).analyze(None, [])

    (node_port,) = _by_id(findings, "NET-006")
    assert node_port.namespace == "kube-system"
    assert [finding.namespace for finding in _by_id(findings, "NET-008")] == ["kube-system"]
    assert _by_id(findings, "NET-001") == []
    assert _by_id(findings, "NET-002")[0].details["total"] == "1"


def test_default_deny_requires_absent_rule_list() -> None:
    """An explicitly empty ingress list is not treated as default-deny."""

    absent = _policy("shop", "deny", DENY_INGRESS)
    empty = _policy("shop", "deny", {"podSelector": {}, "policyTypes": ["Ingress"], "ingress": []})
    selective = _policy("shop", "deny", {"podSelector": {"matchLabels": {"app": "web"}}, "policyTypes": ["Ingress"]})

    assert is_default_deny(absent, "Ingress")
    assert not is_default_deny(absent, "Egress")
    assert not is_default_deny(empty, "Ingress")
    assert not is_default_deny(selective, "Ingress")


def test_missing_default_deny_ingress_fails() -> None:
    """A namespace whose only policy lists empty ingress rules fails NET-003."""

    cluster = SnapshotCluster(
        {
            "networkpolicies": [
                _policy("shop", "empty", {"podSelector": {}, "policyTypes": ["Ingress"], "ingress": []})
            ]
        }
    )

    findings = NetworkAnalyzer(cluster).analyze(None, ["shop"])

    (ingress,) = _by_id(findings, "NET-003")
    assert ingress.status is Status.FAIL
    assert ingress.severity is Severity.MEDIUM
    (egress,) = _by_id(findings, "NET-004")
    assert egress.status is Status.WARNING
    (balance,) = _by_id(findings, "NET-005")
    assert balance.severity is Severity.LOW


def test_summarize_policies_tracks_directions() -> None:
    """Directions are aggregated across all policies in a namespace."""

    info = summarize_policies(
        [
            _policy("shop", "in", DENY_INGRESS),
            _policy("shop", "out", {"podSelector": {"matchLabels": {"a": "b"}}, "policyTypes": ["Egress"], "egress": []}),
        ]
    )

    assert info.policy_count == 2
    assert info.has_ingress and info.has_egress
    assert info.default_deny_ingress
    assert not info.default_deny_egress


def test_node_port_service_reports_each_port() -> None:
    """Every NodePort port yields its own warning."""

    cluster = SnapshotCluster(
        {
            "services": [
                _service(
                    "shop",
                    "web",
                    "NodePort",
                    [
                        {"port": 80, "nodePort": 30080, "targetPort": 8080},
                        {"port": 443, "nodePort": 30443, "targetPort": 8443, "protocol": "TCP"},
                    ],
                ),
                _service("shop", "internal", "ClusterIP"),
            ],
            "networkpolicies": [_policy("shop", "deny", DENY_ALL)],
        }
    )

    findings = NetworkAnalyzer(cluster).analyze(None, ["shop"])

    node_ports = _by_id(findings, "NET-006")
    assert [finding.details["node_port"] for finding in node_ports] == ["30080", "30443"]
    assert node_ports[0].details["protocol"] == "TCP"
    assert node_ports[0].resource == "Service/shop/web"
    assert _by_id(findings, "NET-008") == []


def test_exposed_service_without_policies_fails() -> None:
    """A LoadBalancer in an unprotected namespace is a high failure."""

    cluster = SnapshotCluster({"services": [_service("shop", "lb", "LoadBalancer")]})

    findings = NetworkAnalyzer(cluster).analyze(None, ["shop"])

    (load_balancer,) = _by_id(findings, "NET-007")
    assert load_balancer.status is Status.WARNING
    (unprotected,) = _by_id(findings, "NET-008")
    assert unprotected.severity is Severity.HIGH
    assert unprotected.details["service_type"] == "LoadBalancer"


@pytest.mark.parametrize(
    "percentage, expected",
    [
        (0.0, (Severity.CRITICAL, Status.FAIL)),
        (24.9, (Severity.CRITICAL, Status.FAIL)),
        (25.0, (Severity.HIGH, Status.FAIL)),
        (50.0, (Severity.MEDIUM, Status.WARNING)),
        (75.0, (Severity.LOW, Status.WARNING)),
        (100.0, (Severity.INFO, Status.PASS)),
    ],
)
def test_coverage_band_boundaries(percentage: float, expected) -> None:
    """Band boundaries are inclusive at the lower end."""

    assert coverage_band(percentage) == expected


class _PolicyListingFails(SnapshotCluster):
    def list_namespaced(self, kind: str, namespace: str) -> List[Dict[str, Any]]:
        if kind == "NetworkPolicy" and namespace == "broken":
            raise ListingError(kind, namespace, "forbidden")
        return super().list_namespaced(kind, namespace)


def test_listing_failure_skips_namespace() -> None:
    """A namespace whose policies cannot be listed is left out of coverage."""

    cluster = _PolicyListingFails({"networkpolicies": [_policy("shop", "deny", DENY_ALL)]})

    findings = NetworkAnalyzer(cluster).analyze(None, ["broken", "shop"])

    (coverage,) = _by_id(findings, "NET-002")
    assert coverage.details["total"] == "1"
    assert coverage.status is Status.PASS
    assert _by_id(findings, "NET-001") == []
