"""NetworkPolicy coverage and service exposure analysis."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..cluster import SYSTEM_NAMESPACES
from ..errors import AnalyzerError, ListingError
from ..findings import Finding, Severity, Status
from ..utils import ScanContext, object_name
from . import Analyzer, register_analyzer

logger = logging.getLogger(__name__)

CATEGORY = "network"
INGRESS = "Ingress"
EGRESS = "Egress"
EXPOSED_SERVICE_TYPES = ("NodePort", "LoadBalancer")

# (exclusive upper bound, severity, status), checked in order.
COVERAGE_BANDS: Tuple[Tuple[float, Severity, Status], ...] = (
    (25.0, Severity.CRITICAL, Status.FAIL),
    (50.0, Severity.HIGH, Status.FAIL),
    (75.0, Severity.MEDIUM, Status.WARNING),
    (100.0, Severity.LOW, Status.WARNING),
)

Resource = Dict[str, Any]


@dataclass
class NamespacePolicyInfo:
    """Traffic controls present in one namespace."""

    policy_count: int = 0
    has_ingress: bool = False
    has_egress: bool = False
    default_deny_ingress: bool = False
    default_deny_egress: bool = False


def is_default_deny(policy: Resource, direction: str) -> bool:
    """Return ``True`` if *policy* denies all traffic in *direction*.

    The pod selector must be empty, the policy types must include
    *direction*, and the matching rule list (``ingress``/``egress``) must be
    absent from the policy's ``spec`` block. An explicitly empty list is not treated as
    default-deny.
    """

    spec = policy.get("spec") or {}
    selector = spec.get("podSelector") or {}
    selects_all = not selector.get("matchLabels") and not selector.get("matchExpressions")
    return selects_all and direction in (spec.get("policyTypes") or []) and direction.lower() not in spec


def summarize_policies(policies: Sequence[Resource]) -> NamespacePolicyInfo:
    info = NamespacePolicyInfo(policy_count=len(policies))
    for policy in policies:
        policy_types = (policy.get("spec") or {}).get("policyTypes") or []
        info.has_ingress = info.has_ingress or INGRESS in policy_types
        info.has_egress = info.has_egress or EGRESS in policy_types
        info.default_deny_ingress = info.default_deny_ingress or is_default_deny(policy, INGRESS)
        info.default_deny_egress = info.default_deny_egress or is_default_deny(policy, EGRESS)
    return info


def coverage_band(percentage: float) -> Tuple[Severity, Status]:
    for upper, severity, status in COVERAGE_BANDS:
        if percentage < upper:
            return severity, status
    return Severity.INFO, Status.PASS


@register_analyzer("network")
class NetworkAnalyzer(Analyzer):
    """Evaluate NetworkPolicy coverage and externally exposed services."""

    def analyze(self, ctx: Optional[ScanContext], namespaces: Sequence[str]) -> List[Finding]:
        logger.info("starting network policy analysis")
        # Without a namespace list every namespace is inspected, system ones included;
        # only the coverage findings leave system namespaces out.
        scan_namespaces = list(namespaces) or self._all_namespaces()

        index: Dict[str, List[Resource]] = {}
        for namespace in scan_namespaces:
            if ctx is not None:
                ctx.check()
            try:
                index[namespace] = self.cluster.list_network_policies(namespace)
            except ListingError as exc:
                logger.warning("skipping namespace %s for network analysis: %s", namespace, exc)

        services: Dict[str, List[Resource]] = {}
        for namespace in scan_namespaces:
            if ctx is not None:
                ctx.check()
            try:
                services[namespace] = self.cluster.list_services(namespace)
            except ListingError as exc:
                logger.warning("failed to list services in %s: %s", namespace, exc)

        now = datetime.now(timezone.utc)
        findings: List[Finding] = []
        findings.extend(self.check_namespace_coverage(index, now))
        findings.extend(self.check_default_deny(index, now))
        findings.extend(self.check_ingress_egress_balance(index, now))
        findings.extend(self.check_exposed_services(services, now))
        findings.extend(self.check_unprotected_exposure(services, index, now))
        logger.info("network policy analysis complete: %d findings", len(findings))
        return findings

    def _all_namespaces(self) -> List[str]:
        try:
            return [object_name(item) for item in self.cluster.list_namespaces()]
        except ListingError as exc:
            raise AnalyzerError(f"network analysis: {exc}") from exc

    def check_namespace_coverage(self, index: Dict[str, List[Resource]], now: datetime) -> List[Finding]:
        """Per-namespace gaps plus one overall coverage finding."""

        findings: List[Finding] = []
        user_namespaces = [name for name in index if name not in SYSTEM_NAMESPACES]
        covered = 0
        for namespace in user_namespaces:
            if index[namespace]:
                covered += 1
                continue
            findings.append(
                Finding(
                    id="NET-001",
                    title="Namespace has no NetworkPolicies",
                    description=(
                        f"Namespace {namespace!r} has no NetworkPolicies, meaning all pods "
                        "accept unrestricted traffic"
                    ),
                    severity=Severity.HIGH,
                    status=Status.FAIL,
                    category=CATEGORY,
                    resource=f"Namespace/{namespace}",
                    namespace=namespace,
                    remediation=(
                        "Create NetworkPolicies to restrict ingress and egress traffic. Start with "
                        "a default-deny policy and add explicit allow rules."
                    ),
                    timestamp=now,
                )
            )

        total = len(user_namespaces)
        percentage = covered / total * 100.0 if total else 100.0
        severity, status = coverage_band(percentage)
        findings.append(
            Finding(
                id="NET-002",
                title="NetworkPolicy namespace coverage",
                description=(
                    f"{percentage:.0f}% of namespaces ({covered}/{total}) have at least one NetworkPolicy"
                ),
                severity=severity,
                status=status,
                category=CATEGORY,
                remediation="Add NetworkPolicies to every application namespace.",
                details={
                    "covered": str(covered),
                    "total": str(total),
                    "coverage": f"{percentage:.1f}%",
                },
                timestamp=now,
            )
        )
        return findings

    def check_default_deny(self, index: Dict[str, List[Resource]], now: datetime) -> List[Finding]:
        findings: List[Finding] = []
        for namespace, policies in index.items():
            if not policies:
                continue
            info = summarize_policies(policies)
            if not info.default_deny_ingress:
                findings.append(
                    Finding(
                        id="NET-003",
                        title="Missing default-deny ingress policy",
                        description=(
                            f"Namespace {namespace!r} lacks a default-deny ingress NetworkPolicy; "
                            "pods without explicit policies accept all ingress"
                        ),
                        severity=Severity.MEDIUM,
                        status=Status.FAIL,
                        category=CATEGORY,
                        resource=f"Namespace/{namespace}",
                        namespace=namespace,
                        remediation=(
                            "Create a NetworkPolicy with podSelector: {} and policyTypes: [Ingress] "
                            "and no ingress rules to deny all ingress by default."
                        ),
                        timestamp=now,
                    )
                )
            if not info.default_deny_egress:
                findings.append(
                    Finding(
                        id="NET-004",
                        title="Missing default-deny egress policy",
                        description=(
                            f"Namespace {namespace!r} lacks a default-deny egress NetworkPolicy; "
                            "pods without explicit policies can send traffic anywhere"
                        ),
                        severity=Severity.MEDIUM,
                        status=Status.WARNING,
                        category=CATEGORY,
                        resource=f"Namespace/{namespace}",
                        namespace=namespace,
                        remediation=(
                            "Create a NetworkPolicy with podSelector: {} and policyTypes: [Egress] "
                            "and no egress rules to deny all egress by default."
                        ),
                        timestamp=now,
                    )
                )
        return findings

    def check_ingress_egress_balance(self, index: Dict[str, List[Resource]], now: datetime) -> List[Finding]:
        findings: List[Finding] = []
        for namespace, policies in index.items():
            if not policies:
                continue
            info = summarize_policies(policies)
            if info.has_ingress and not info.has_egress:
                findings.append(
                    Finding(
                        id="NET-005",
                        title="Namespace has ingress policies but no egress policies",
                        description=(
                            f"Namespace {namespace!r} has {info.policy_count} NetworkPolicies covering "
                            "ingress but none covering egress"
                        ),
                        severity=Severity.LOW,
                        status=Status.WARNING,
                        category=CATEGORY,
                        resource=f"Namespace/{namespace}",
                        namespace=namespace,
                        remediation=(
                            "Add egress NetworkPolicies to control outbound traffic and prevent "
                            "data exfiltration."
                        ),
                        timestamp=now,
                    )
                )
        return findings

    def check_exposed_services(self, services: Dict[str, List[Resource]], now: datetime) -> List[Finding]:
        findings: List[Finding] = []
        for namespace, items in services.items():
            for service in items:
                name = object_name(service)
                spec = service.get("spec") or {}
                service_type = spec.get("type")
                if service_type == "NodePort":
                    for port in spec.get("ports") or []:
                        node_port = str(port.get("nodePort", ""))
                        target_port = str(port.get("targetPort", ""))
                        findings.append(
                            Finding(
                                id="NET-006",
                                title="NodePort service detected",
                                description=(
                                    f"Service {namespace}/{name} exposes NodePort {node_port} "
                                    f"(target port {target_port})"
                                ),
                                severity=Severity.MEDIUM,
                                status=Status.WARNING,
                                category=CATEGORY,
                                resource=f"Service/{namespace}/{name}",
                                namespace=namespace,
                                remediation=(
                                    "Consider using a LoadBalancer or Ingress controller instead of "
                                    "NodePort to avoid exposing ports on all cluster nodes."
                                ),
                                details={
                                    "node_port": node_port,
                                    "target_port": target_port,
                                    "protocol": str(port.get("protocol", "TCP")),
                                },
                                timestamp=now,
                            )
                        )
                elif service_type == "LoadBalancer":
                    findings.append(
                        Finding(
                            id="NET-007",
                            title="LoadBalancer service detected",
                            description=f"Service {namespace}/{name} is exposed via LoadBalancer",
                            severity=Severity.LOW,
                            status=Status.WARNING,
                            category=CATEGORY,
                            resource=f"Service/{namespace}/{name}",
                            namespace=namespace,
                            remediation=(
                                "Verify that the LoadBalancer has appropriate firewall rules and is "
                                "not publicly accessible unless intended."
                            ),
                            timestamp=now,
                        )
                    )
        return findings

    def check_unprotected_exposure(
        self,
        services: Dict[str, List[Resource]],
        index: Dict[str, List[Resource]],
        now: datetime,
    ) -> List[Finding]:
        """Exposed services living in a namespace without any NetworkPolicy."""

        findings: List[Finding] = []
        for namespace, items in services.items():
            if namespace not in index or index[namespace]:
                continue
            for service in items:
                service_type = (service.get("spec") or {}).get("type")
                if service_type not in EXPOSED_SERVICE_TYPES:
                    continue
                name = object_name(service)
                findings.append(
                    Finding(
                        id="NET-008",
                        title="Exposed service without NetworkPolicy protection",
                        description=(
                            f"Service {namespace}/{name} is exposed via {service_type} but namespace "
                            f"{namespace!r} has no NetworkPolicies"
                        ),
                        severity=Severity.HIGH,
                        status=Status.FAIL,
                        category=CATEGORY,
                        resource=f"Service/{namespace}/{name}",
                        namespace=namespace,
                        remediation=(
                            "Add NetworkPolicies restricting which sources may reach the pods behind "
                            "this service."
                        ),
                        details={"service_type": service_type},
                        timestamp=now,
                    )
                )
        return findings


__all__ = [
    "COVERAGE_BANDS",
    "NamespacePolicyInfo",
    "NetworkAnalyzer",
    "coverage_band",
    "is_default_deny",
    "summarize_policies",
]
