"""Pod Security Standards (Baseline and Restricted) checks for workloads."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..errors import ListingError
from ..findings import Finding, Severity, Status
from ..utils import ScanContext, object_name, object_namespace
from . import Analyzer, register_analyzer

logger = logging.getLogger(__name__)

CATEGORY = "pss"
BASELINE = "baseline"
RESTRICTED = "restricted"

SAFE_CAPABILITIES = frozenset(
    {
        "AUDIT_WRITE",
        "CHOWN",
        "DAC_OVERRIDE",
        "FOWNER",
        "FSETID",
        "KILL",
        "MKNOD",
        "NET_BIND_SERVICE",
        "SETFCAP",
        "SETGID",
        "SETPCAP",
        "SETUID",
        "SYS_CHROOT",
    }
)
ALLOWED_SECCOMP_TYPES = frozenset({"RuntimeDefault", "Localhost"})

# Listing method name and resource kind for every workload kind checked.
WORKLOAD_LISTERS: Tuple[Tuple[str, str], ...] = (
    ("list_pods", "Pod"),
    ("list_deployments", "Deployment"),
    ("list_daemon_sets", "DaemonSet"),
    ("list_stateful_sets", "StatefulSet"),
)

Resource = Dict[str, Any]
PodSpec = Dict[str, Any]
Check = Callable[[PodSpec, str, str, datetime], List[Finding]]


@register_analyzer("pss")
class PSSAnalyzer(Analyzer):
    """Evaluate pods and pod templates against the Pod Security Standards."""

    def analyze(self, ctx: Optional[ScanContext], namespaces: Sequence[str]) -> List[Finding]:
        logger.info("starting Pod Security Standards check")
        findings: List[Finding] = []
        for namespace in namespaces:
            if ctx is not None:
                ctx.check()
            try:
                workloads = [
                    (kind, getattr(self.cluster, lister)(namespace)) for lister, kind in WORKLOAD_LISTERS
                ]
            except ListingError as exc:
                logger.warning("skipping namespace %s for PSS check: %s", namespace, exc)
                continue

            now = datetime.now(timezone.utc)
            for kind, items in workloads:
                for item in items:
                    if ctx is not None:
                        ctx.check()
                    findings.extend(check_workload(kind, item, now))
        logger.info("PSS check complete: %d findings", len(findings))
        return findings


def check_pod(pod: Resource, now: Optional[datetime] = None) -> List[Finding]:
    """Evaluate a single Pod."""

    return check_workload("Pod", pod, now)


def check_workload(kind: str, obj: Resource, now: Optional[datetime] = None) -> List[Finding]:
    """Evaluate a Pod or the pod template of a Deployment, DaemonSet or StatefulSet."""

    namespace = object_namespace(obj)
    resource = f"{kind}/{namespace}/{object_name(obj)}"
    return check_pod_spec(pod_spec_of(kind, obj), resource, namespace, now or datetime.now(timezone.utc))


def pod_spec_of(kind: str, obj: Resource) -> PodSpec:
    spec = obj.get("spec") or {}
    if kind == "Pod":
        return spec
    return (spec.get("template") or {}).get("spec") or {}


def check_pod_spec(spec: PodSpec, resource: str, namespace: str, now: datetime) -> List[Finding]:
    findings: List[Finding] = []
    for check in CHECKS:
        findings.extend(check(spec, resource, namespace, now))
    return findings


def all_containers(spec: PodSpec) -> List[Dict[str, Any]]:
    """Init, regular and ephemeral containers, in that order."""

    containers: List[Dict[str, Any]] = []
    for key in ("initContainers", "containers", "ephemeralContainers"):
        containers.extend(spec.get(key) or [])
    return containers


def _security_context(container: Dict[str, Any]) -> Dict[str, Any]:
    return container.get("securityContext") or {}


def _finding(
    rule_id: str,
    title: str,
    description: str,
    severity: Severity,
    resource: str,
    namespace: str,
    remediation: str,
    details: Dict[str, str],
    now: datetime,
    status: Status = Status.FAIL,
) -> Finding:
    return Finding(
        id=rule_id,
        title=title,
        description=description,
        severity=severity,
        status=status,
        category=CATEGORY,
        resource=resource,
        namespace=namespace,
        remediation=remediation,
        details=details,
        timestamp=now,
    )


# Baseline


def check_privileged(spec: PodSpec, resource: str, namespace: str, now: datetime) -> List[Finding]:
    findings: List[Finding] = []
    for container in all_containers(spec):
        if _security_context(container).get("privileged") is True:
            name = container.get("name", "")
            findings.append(
                _finding(
                    "PSS-B001",
                    "Privileged container",
                    f"Container {name!r} in {resource} runs in privileged mode",
                    Severity.CRITICAL,
                    resource,
                    namespace,
                    "Set securityContext.privileged to false. Privileged containers have full access to the host.",
                    {"container": name, "profile": BASELINE},
                    now,
                )
            )
    return findings


HOST_NAMESPACE_RULES: Tuple[Tuple[str, str, str, str], ...] = (
    (
        "hostNetwork",
        "PSS-B002",
        "network",
        "Set spec.hostNetwork to false unless the pod genuinely requires host network access.",
    ),
    (
        "hostPID",
        "PSS-B003",
        "PID",
        "Set spec.hostPID to false. Sharing the host PID namespace allows containers to see "
        "and signal host processes.",
    ),
    (
        "hostIPC",
        "PSS-B004",
        "IPC",
        "Set spec.hostIPC to false. Sharing the host IPC namespace enables container access "
        "to host shared memory.",
    ),
)


def check_host_namespaces(spec: PodSpec, resource: str, namespace: str, now: datetime) -> List[Finding]:
    findings: List[Finding] = []
    for field_name, rule_id, label, remediation in HOST_NAMESPACE_RULES:
        if spec.get(field_name) is True:
            findings.append(
                _finding(
                    rule_id,
                    f"{field_name} enabled",
                    f"{resource} uses {field_name}, sharing the host's {label} namespace",
                    Severity.HIGH,
                    resource,
                    namespace,
                    remediation,
                    {"profile": BASELINE},
                    now,
                )
            )
    return findings


def check_host_ports(spec: PodSpec, resource: str, namespace: str, now: datetime) -> List[Finding]:
    findings: List[Finding] = []
    for container in all_containers(spec):
        name = container.get("name", "")
        for port in container.get("ports") or []:
            host_port = port.get("hostPort") or 0
            if not host_port:
                continue
            findings.append(
                _finding(
                    "PSS-B005",
                    "Container uses hostPort",
                    f"Container {name!r} in {resource} uses hostPort {host_port}",
                    Severity.MEDIUM,
                    resource,
                    namespace,
                    "Remove hostPort mapping. Use Services or Ingress to expose ports instead.",
                    {"container": name, "host_port": str(host_port), "profile": BASELINE},
                    now,
                )
            )
    return findings


def check_capabilities(spec: PodSpec, resource: str, namespace: str, now: datetime) -> List[Finding]:
    findings: List[Finding] = []
    for container in all_containers(spec):
        name = container.get("name", "")
        capabilities = _security_context(container).get("capabilities") or {}
        for capability in capabilities.get("add") or []:
            if capability in SAFE_CAPABILITIES:
                continue
            findings.append(
                _finding(
                    "PSS-B006",
                    "Dangerous capability added",
                    (
                        f"Container {name!r} in {resource} adds capability {capability} which is "
                        "not in the Baseline safe set"
                    ),
                    Severity.HIGH,
                    resource,
                    namespace,
                    (
                        f"Remove capability {capability} from securityContext.capabilities.add. "
                        "Only baseline-approved capabilities should be added."
                    ),
                    {"container": name, "capability": str(capability), "profile": BASELINE},
                    now,
                )
            )
    return findings


def check_volume_types(spec: PodSpec, resource: str, namespace: str, now: datetime) -> List[Finding]:
    findings: List[Finding] = []
    for volume in spec.get("volumes") or []:
        host_path = volume.get("hostPath")
        if host_path is None:
            continue
        volume_name = volume.get("name", "")
        path = (host_path or {}).get("path", "")
        findings.append(
            _finding(
                "PSS-B007",
                "HostPath volume mount",
                f"{resource} mounts a hostPath volume {volume_name!r} at {path}",
                Severity.HIGH,
                resource,
                namespace,
                "Replace hostPath volumes with persistent volumes, ConfigMaps, or Secrets.",
                {"volume_name": volume_name, "host_path": path, "profile": BASELINE},
                now,
            )
        )
    return findings


def check_proc_mount(spec: PodSpec, resource: str, namespace: str, now: datetime) -> List[Finding]:
    findings: List[Finding] = []
    for container in all_containers(spec):
        mount = _security_context(container).get("procMount")
        if mount is None or mount == "Default":
            continue
        name = container.get("name", "")
        findings.append(
            _finding(
                "PSS-B008",
                "Non-default procMount",
                f"Container {name!r} in {resource} uses procMount {mount!r} instead of Default",
                Severity.MEDIUM,
                resource,
                namespace,
                "Set securityContext.procMount to Default or remove the field.",
                {"container": name, "procMount": str(mount), "profile": BASELINE},
                now,
            )
        )
    return findings


# Restricted


def _runs_as_non_root(security_context: Dict[str, Any]) -> bool:
    run_as_user = security_context.get("runAsUser")
    return security_context.get("runAsNonRoot") is True or (
        isinstance(run_as_user, int) and run_as_user > 0
    )


def check_run_as_non_root(spec: PodSpec, resource: str, namespace: str, now: datetime) -> List[Finding]:
    findings: List[Finding] = []
    pod_non_root = _runs_as_non_root(spec.get("securityContext") or {})
    for container in all_containers(spec):
        if pod_non_root or _runs_as_non_root(_security_context(container)):
            continue
        name = container.get("name", "")
        findings.append(
            _finding(
                "PSS-R001",
                "Container may run as root",
                (
                    f"Container {name!r} in {resource} does not set runAsNonRoot: true and does "
                    "not specify a non-root runAsUser"
                ),
                Severity.HIGH,
                resource,
                namespace,
                (
                    "Set securityContext.runAsNonRoot: true or specify a non-root runAsUser at the "
                    "pod or container level."
                ),
                {"container": name, "profile": RESTRICTED},
                now,
            )
        )
    return findings


def _has_seccomp(security_context: Dict[str, Any]) -> bool:
    profile = security_context.get("seccompProfile") or {}
    return profile.get("type") in ALLOWED_SECCOMP_TYPES


def check_seccomp_profile(spec: PodSpec, resource: str, namespace: str, now: datetime) -> List[Finding]:
    findings: List[Finding] = []
    pod_has_seccomp = _has_seccomp(spec.get("securityContext") or {})
    for container in all_containers(spec):
        if pod_has_seccomp or _has_seccomp(_security_context(container)):
            continue
        name = container.get("name", "")
        findings.append(
            _finding(
                "PSS-R002",
                "Missing seccomp profile",
                (
                    f"Container {name!r} in {resource} does not have a seccomp profile set "
                    "(RuntimeDefault or Localhost required)"
                ),
                Severity.MEDIUM,
                resource,
                namespace,
                "Set securityContext.seccompProfile.type to RuntimeDefault or Localhost.",
                {"container": name, "profile": RESTRICTED},
                now,
            )
        )
    return findings


def check_drop_all_capabilities(spec: PodSpec, resource: str, namespace: str, now: datetime) -> List[Finding]:
    findings: List[Finding] = []
    for container in all_containers(spec):
        capabilities = _security_context(container).get("capabilities") or {}
        if any(str(capability).upper() == "ALL" for capability in capabilities.get("drop") or []):
            continue
        name = container.get("name", "")
        findings.append(
            _finding(
                "PSS-R003",
                "Capabilities not dropped",
                f"Container {name!r} in {resource} does not drop ALL capabilities",
                Severity.MEDIUM,
                resource,
                namespace,
                (
                    "Set securityContext.capabilities.drop: [ALL]. You may then add back only "
                    "NET_BIND_SERVICE if needed."
                ),
                {"container": name, "profile": RESTRICTED},
                now,
            )
        )
    return findings


def check_allow_privilege_escalation(
    spec: PodSpec, resource: str, namespace: str, now: datetime
) -> List[Finding]:
    """The field defaults to true, so only an explicit ``false`` passes."""

    findings: List[Finding] = []
    for container in all_containers(spec):
        if _security_context(container).get("allowPrivilegeEscalation") is False:
            continue
        name = container.get("name", "")
        findings.append(
            _finding(
                "PSS-R004",
                "Privilege escalation allowed",
                (
                    f"Container {name!r} in {resource} allows privilege escalation "
                    "(allowPrivilegeEscalation is not set to false)"
                ),
                Severity.MEDIUM,
                resource,
                namespace,
                "Set securityContext.allowPrivilegeEscalation: false.",
                {"container": name, "profile": RESTRICTED},
                now,
            )
        )
    return findings


def check_read_only_root_filesystem(
    spec: PodSpec, resource: str, namespace: str, now: datetime
) -> List[Finding]:
    findings: List[Finding] = []
    for container in all_containers(spec):
        if _security_context(container).get("readOnlyRootFilesystem") is True:
            continue
        name = container.get("name", "")
        findings.append(
            _finding(
                "PSS-R005",
                "Root filesystem is writable",
                f"Container {name!r} in {resource} does not have a read-only root filesystem",
                Severity.LOW,
                resource,
                namespace,
                (
                    "Set securityContext.readOnlyRootFilesystem: true and use emptyDir or tmpfs "
                    "volumes for writable paths."
                ),
                {"container": name, "profile": RESTRICTED},
                now,
                status=Status.WARNING,
            )
        )
    return findings


CHECKS: Tuple[Check, ...] = (
    check_privileged,
    check_host_namespaces,
    check_host_ports,
    check_capabilities,
    check_volume_types,
    check_proc_mount,
    check_run_as_non_root,
    check_seccomp_profile,
    check_drop_all_capabilities,
    check_allow_privilege_escalation,
    check_read_only_root_filesystem,
)


__all__ = [
    "CHECKS",
    "PSSAnalyzer",
    "SAFE_CAPABILITIES",
    "all_containers",
    "check_pod",
    "check_pod_spec",
    "check_workload",
]
