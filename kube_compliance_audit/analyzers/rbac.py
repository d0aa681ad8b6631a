"""RBAC analysis: over-privileged bindings, wildcard and escalating roles."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from ..errors import AnalyzerError, ListingError
from ..findings import Finding, Severity, Status
from ..utils import (
    ScanContext,
    contains_wildcard,
    is_system_name,
    join_values,
    object_name,
    object_namespace,
)
from . import Analyzer, register_analyzer

logger = logging.getLogger(__name__)

CATEGORY = "rbac"
CLUSTER_ADMIN = "cluster-admin"
WELL_KNOWN_ROLES = frozenset({"cluster-admin", "admin", "edit"})
SENSITIVE_RESOURCES = frozenset({"roles", "rolebindings", "clusterroles", "clusterrolebindings", "*"})
ESCALATING_VERBS = frozenset({"create", "update", "patch", "*"})

Resource = Dict[str, Any]


@register_analyzer("rbac")
class RBACAnalyzer(Analyzer):
    """Inspect roles and bindings for excessive or risky permissions."""

    def analyze(self, ctx: Optional[ScanContext], namespaces: Sequence[str]) -> List[Finding]:
        logger.info("starting RBAC analysis")
        try:
            cluster_roles = self.cluster.list_cluster_roles()
            cluster_role_bindings = self.cluster.list_cluster_role_bindings()
        except ListingError as exc:
            raise AnalyzerError(f"RBAC analysis: {exc}") from exc

        roles: List[Resource] = []
        role_bindings: List[Resource] = []
        for namespace in namespaces:
            if ctx is not None:
                ctx.check()
            try:
                namespace_roles = self.cluster.list_roles(namespace)
                namespace_bindings = self.cluster.list_role_bindings(namespace)
            except ListingError as exc:
                logger.warning("skipping namespace %s for RBAC analysis: %s", namespace, exc)
                continue
            roles.extend(namespace_roles)
            role_bindings.extend(namespace_bindings)

        now = datetime.now(timezone.utc)
        findings: List[Finding] = []
        findings.extend(check_cluster_admin_bindings(cluster_role_bindings, now))
        findings.extend(check_wildcard_permissions(cluster_roles, roles, now))
        findings.extend(
            check_unused_roles(cluster_roles, cluster_role_bindings, roles, role_bindings, now)
        )
        findings.extend(check_default_service_account_bindings(cluster_role_bindings, role_bindings, now))
        findings.extend(check_privilege_escalation(cluster_roles, roles, now))
        logger.info("RBAC analysis complete: %d findings", len(findings))
        return findings


def check_cluster_admin_bindings(bindings: Iterable[Resource], now: datetime) -> List[Finding]:
    """One failure per subject bound to cluster-admin outside ``system:`` bindings."""

    findings: List[Finding] = []
    for binding in bindings:
        name = object_name(binding)
        if (binding.get("roleRef") or {}).get("name") != CLUSTER_ADMIN or is_system_name(name):
            continue
        for subject in binding.get("subjects") or []:
            subject_kind = subject.get("kind", "")
            subject_name = subject.get("name", "")
            findings.append(
                Finding(
                    id="RBAC-001",
                    title="Non-default cluster-admin binding detected",
                    description=(
                        f"Subject {subject_name!r} ({subject_kind}) is bound to cluster-admin "
                        f"via ClusterRoleBinding {name!r}"
                    ),
                    severity=Severity.CRITICAL,
                    status=Status.FAIL,
                    category=CATEGORY,
                    resource=f"ClusterRoleBinding/{name}",
                    remediation=(
                        "Review whether this subject requires full cluster-admin privileges. "
                        "Consider creating a more restrictive role."
                    ),
                    details={
                        "subject_kind": subject_kind,
                        "subject_name": subject_name,
                        "subject_namespace": subject.get("namespace", "") or "",
                        "binding": name,
                    },
                    timestamp=now,
                )
            )

    if not findings:
        findings.append(
            Finding(
                id="RBAC-001",
                title="No non-default cluster-admin bindings",
                description="No custom ClusterRoleBindings to cluster-admin were found.",
                severity=Severity.CRITICAL,
                status=Status.PASS,
                category=CATEGORY,
                timestamp=now,
            )
        )
    return findings


def check_wildcard_permissions(
    cluster_roles: Iterable[Resource], roles: Iterable[Resource], now: datetime
) -> List[Finding]:
    """At most one finding per role whose rules use the ``*`` wildcard."""

    findings: List[Finding] = []
    for kind, role in _tagged_roles(cluster_roles, roles):
        name = object_name(role)
        if is_system_name(name):
            continue
        for rule in role.get("rules") or []:
            verbs = rule.get("verbs") or []
            resources = rule.get("resources") or []
            api_groups = rule.get("apiGroups") or []
            if not (contains_wildcard(verbs) or contains_wildcard(resources) or contains_wildcard(api_groups)):
                continue
            findings.append(
                Finding(
                    id="RBAC-002",
                    title=f"Wildcard permission in {kind}",
                    description=(
                        f"{kind} {_display_name(role)!r} has wildcard permissions: "
                        f"verbs={verbs}, resources={resources}, apiGroups={api_groups}"
                    ),
                    severity=Severity.HIGH,
                    status=Status.FAIL,
                    category=CATEGORY,
                    resource=_role_resource(kind, role),
                    namespace=object_namespace(role),
                    remediation=(
                        "Replace wildcard (*) with specific verbs, resources, and API groups "
                        "following the principle of least privilege."
                    ),
                    details={
                        "verbs": join_values(verbs),
                        "resources": join_values(resources),
                        "api_groups": join_values(api_groups),
                    },
                    timestamp=now,
                )
            )
            break
    return findings


def check_unused_roles(
    cluster_roles: Iterable[Resource],
    cluster_role_bindings: Iterable[Resource],
    roles: Iterable[Resource],
    role_bindings: Iterable[Resource],
    now: datetime,
) -> List[Finding]:
    """Flag roles that no binding references."""

    role_bindings = list(role_bindings)
    bound_cluster_roles: Set[str] = set()
    bound_roles: Set[Tuple[str, str]] = set()
    for binding in list(cluster_role_bindings) + role_bindings:
        role_ref = binding.get("roleRef") or {}
        if role_ref.get("kind") == "ClusterRole":
            bound_cluster_roles.add(role_ref.get("name", ""))
    for binding in role_bindings:
        role_ref = binding.get("roleRef") or {}
        if role_ref.get("kind") == "Role":
            bound_roles.add((object_namespace(binding), role_ref.get("name", "")))

    findings: List[Finding] = []
    for kind, role in _tagged_roles(cluster_roles, roles):
        name = object_name(role)
        if is_system_name(name):
            continue
        if kind == "ClusterRole":
            if name in bound_cluster_roles:
                continue
            remediation = "Remove unused ClusterRoles to reduce attack surface and simplify RBAC management."
        else:
            if (object_namespace(role), name) in bound_roles:
                continue
            remediation = "Remove unused Roles to reduce attack surface."
        findings.append(
            Finding(
                id="RBAC-003",
                title=f"Unused {kind}",
                description=f"{kind} {_display_name(role)!r} has no associated bindings",
                severity=Severity.LOW,
                status=Status.WARNING,
                category=CATEGORY,
                resource=_role_resource(kind, role),
                namespace=object_namespace(role),
                remediation=remediation,
                timestamp=now,
            )
        )
    return findings


def check_default_service_account_bindings(
    cluster_role_bindings: Iterable[Resource], role_bindings: Iterable[Resource], now: datetime
) -> List[Finding]:
    """Flag bindings that grant permissions to a ``default`` ServiceAccount."""

    findings: List[Finding] = []
    tagged = [("ClusterRoleBinding", item) for item in cluster_role_bindings]
    tagged += [("RoleBinding", item) for item in role_bindings]
    for kind, binding in tagged:
        for subject in binding.get("subjects") or []:
            if subject.get("kind") != "ServiceAccount" or subject.get("name") != "default":
                continue
            subject_namespace = subject.get("namespace", "") or object_namespace(binding)
            findings.append(
                Finding(
                    id="RBAC-004",
                    title=f"Default ServiceAccount in {kind}",
                    description=(
                        f"{kind} {_display_name(binding)!r} grants permissions to the default "
                        f"ServiceAccount in namespace {subject_namespace!r}"
                    ),
                    severity=Severity.MEDIUM,
                    status=Status.FAIL,
                    category=CATEGORY,
                    resource=_role_resource(kind, binding),
                    namespace=subject_namespace,
                    remediation=(
                        "Create a dedicated ServiceAccount for workloads instead of using the "
                        "default ServiceAccount."
                    ),
                    timestamp=now,
                )
            )
    return findings


def check_privilege_escalation(
    cluster_roles: Iterable[Resource], roles: Iterable[Resource], now: datetime
) -> List[Finding]:
    """At most one finding per role able to write RBAC objects."""

    findings: List[Finding] = []
    for kind, role in _tagged_roles(cluster_roles, roles):
        name = object_name(role)
        if is_system_name(name):
            continue
        if kind == "ClusterRole" and name in WELL_KNOWN_ROLES:
            continue
        if not any(can_escalate(rule) for rule in role.get("rules") or []):
            continue
        findings.append(
            Finding(
                id="RBAC-005",
                title=f"Potential privilege escalation in {kind}",
                description=(
                    f"{kind} {_display_name(role)!r} can modify RBAC resources (roles/bindings), "
                    "which may allow privilege escalation"
                ),
                severity=Severity.HIGH,
                status=Status.FAIL,
                category=CATEGORY,
                resource=_role_resource(kind, role),
                namespace=object_namespace(role),
                remediation=(
                    "Review whether this role genuinely needs to create or modify RBAC resources. "
                    "Grant 'escalate' and 'bind' permissions carefully."
                ),
                timestamp=now,
            )
        )
    return findings


def can_escalate(rule: Resource) -> bool:
    """Return ``True`` when *rule* grants write access to RBAC resources."""

    resources = rule.get("resources") or []
    if not any(resource in SENSITIVE_RESOURCES for resource in resources):
        return False
    return any(verb in ESCALATING_VERBS for verb in rule.get("verbs") or [])


def _tagged_roles(cluster_roles: Iterable[Resource], roles: Iterable[Resource]) -> List[Tuple[str, Resource]]:
    tagged = [("ClusterRole", item) for item in cluster_roles]
    tagged += [("Role", item) for item in roles]
    return tagged


def _display_name(obj: Resource) -> str:
    namespace = object_namespace(obj)
    return f"{namespace}/{object_name(obj)}" if namespace else object_name(obj)


def _role_resource(kind: str, obj: Resource) -> str:
    return f"{kind}/{_display_name(obj)}"


__all__ = [
    "RBACAnalyzer",
    "can_escalate",
    "check_cluster_admin_bindings",
    "check_default_service_account_bindings",
    "check_privilege_escalation",
    "check_unused_roles",
    "check_wildcard_permissions",
]
