"""Read-only access to cluster resources.

Every accessor returns plain JSON-shaped dictionaries (camelCase keys, unset
fields omitted) so analyzers and the rule engine work on the same document
shape whether the data comes from a live API server or a snapshot file.
"""
from __future__ import annotations

import copy
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

import urllib3
from kubernetes import client
from kubernetes.client.rest import ApiException

from .errors import ConfigurationError, ListingError
from .utils import object_namespace, safe_list

logger = logging.getLogger(__name__)

SYSTEM_NAMESPACES = frozenset({"kube-system", "kube-public", "kube-node-lease"})

Resource = Dict[str, Any]

# Snapshot document key for each resource kind.
KIND_KEYS: Dict[str, str] = {
    "Namespace": "namespaces",
    "Pod": "pods",
    "Service": "services",
    "Secret": "secrets",
    "Deployment": "deployments",
    "DaemonSet": "daemonsets",
    "StatefulSet": "statefulsets",
    "NetworkPolicy": "networkpolicies",
    "Role": "roles",
    "RoleBinding": "rolebindings",
    "ClusterRole": "clusterroles",
    "ClusterRoleBinding": "clusterrolebindings",
}

# Kinds offered through the generic listing used for rule evaluation.
JSON_KINDS: Dict[str, str] = {
    "pods": "Pod",
    "deployments": "Deployment",
    "daemonsets": "DaemonSet",
    "statefulsets": "StatefulSet",
    "services": "Service",
}


class ClusterAccessor(ABC):
    """Read-only cluster API consumed by the scanner and analyzers."""

    @abstractmethod
    def cluster_name(self) -> str:
        raise NotImplementedError

    @abstractmethod
    def list_namespaces(self) -> List[Resource]:
        raise NotImplementedError

    @abstractmethod
    def list_namespaced(self, kind: str, namespace: str) -> List[Resource]:
        """Return objects of *kind* (e.g. ``"Pod"``) in *namespace*."""

        raise NotImplementedError

    @abstractmethod
    def list_cluster_scoped(self, kind: str) -> List[Resource]:
        raise NotImplementedError

    @abstractmethod
    def get_secret(self, namespace: str, name: str) -> Resource:
        raise NotImplementedError

    def namespaces_for_scan(self, requested: Sequence[str], include_system: bool = False) -> List[str]:
        """Return *requested* as-is, or every namespace minus system ones."""

        if requested:
            return list(requested)
        names = [(item.get("metadata") or {}).get("name", "") for item in self.list_namespaces()]
        return [
            name for name in names if name and (include_system or name not in SYSTEM_NAMESPACES)
        ]

    def list_pods(self, namespace: str) -> List[Resource]:
        return self.list_namespaced("Pod", namespace)

    def list_services(self, namespace: str) -> List[Resource]:
        return self.list_namespaced("Service", namespace)

    def list_deployments(self, namespace: str) -> List[Resource]:
        return self.list_namespaced("Deployment", namespace)

    def list_daemon_sets(self, namespace: str) -> List[Resource]:
        return self.list_namespaced("DaemonSet", namespace)

    def list_stateful_sets(self, namespace: str) -> List[Resource]:
        return self.list_namespaced("StatefulSet", namespace)

    def list_network_policies(self, namespace: str) -> List[Resource]:
        return self.list_namespaced("NetworkPolicy", namespace)

    def list_roles(self, namespace: str) -> List[Resource]:
        return self.list_namespaced("Role", namespace)

    def list_role_bindings(self, namespace: str) -> List[Resource]:
        return self.list_namespaced("RoleBinding", namespace)

    def list_cluster_roles(self) -> List[Resource]:
        return self.list_cluster_scoped("ClusterRole")

    def list_cluster_role_bindings(self) -> List[Resource]:
        return self.list_cluster_scoped("ClusterRoleBinding")

    def list_json(self, kind: str, namespace: str) -> List[Resource]:
        """Generic listing used for rule evaluation (``kind`` like ``"pods"``)."""

        try:
            kind_name = JSON_KINDS[kind.lower()]
        except KeyError:
            valid = ", ".join(sorted(JSON_KINDS))
            raise ListingError(kind, namespace, f"unsupported kind (valid: {valid})") from None
        items = self.list_namespaced(kind_name, namespace)
        for item in items:
            item.setdefault("kind", kind_name)
        return items


class KubernetesCluster(ClusterAccessor):
    """Accessor backed by the official ``kubernetes`` client."""

    def __init__(self, api_client: client.ApiClient, cluster_name: str = "") -> None:
        self._api_client = api_client
        self._cluster_name = cluster_name
        core = client.CoreV1Api(api_client)
        apps = client.AppsV1Api(api_client)
        networking = client.NetworkingV1Api(api_client)
        rbac = client.RbacAuthorizationV1Api(api_client)
        self._namespaced: Dict[str, Callable[..., Any]] = {
            "Pod": core.list_namespaced_pod,
            "Service": core.list_namespaced_service,
            "Secret": core.list_namespaced_secret,
            "Deployment": apps.list_namespaced_deployment,
            "DaemonSet": apps.list_namespaced_daemon_set,
            "StatefulSet": apps.list_namespaced_stateful_set,
            "NetworkPolicy": networking.list_namespaced_network_policy,
            "Role": rbac.list_namespaced_role,
            "RoleBinding": rbac.list_namespaced_role_binding,
        }
        self._cluster_scoped: Dict[str, Callable[..., Any]] = {
            "Namespace": core.list_namespace,
            "ClusterRole": rbac.list_cluster_role,
            "ClusterRoleBinding": rbac.list_cluster_role_binding,
        }
        self._core = core

    def cluster_name(self) -> str:
        return self._cluster_name

    def list_namespaces(self) -> List[Resource]:
        return self.list_cluster_scoped("Namespace")

    def list_namespaced(self, kind: str, namespace: str) -> List[Resource]:
        return self._list(kind, self._namespaced, namespace=namespace)

    def list_cluster_scoped(self, kind: str) -> List[Resource]:
        return self._list(kind, self._cluster_scoped)

    def get_secret(self, namespace: str, name: str) -> Resource:
        try:
            secret = self._core.read_namespaced_secret(name=name, namespace=namespace)
        except (ApiException, urllib3.exceptions.HTTPError) as exc:
            raise ListingError("Secret", namespace, exc) from exc
        return self._api_client.sanitize_for_serialization(secret)

    def _list(
        self,
        kind: str,
        table: Mapping[str, Callable[..., Any]],
        namespace: Optional[str] = None,
    ) -> List[Resource]:
        try:
            list_fn = table[kind]
        except KeyError:
            raise ListingError(kind, namespace, "unsupported kind") from None
        kwargs = {"namespace": namespace} if namespace is not None else {}
        try:
            items = [
                self._api_client.sanitize_for_serialization(item)
                for item in safe_list(list_fn, **kwargs)
            ]
        except (ApiException, urllib3.exceptions.HTTPError) as exc:
            raise ListingError(kind, namespace, exc) from exc
        except Exception as exc:
            # Response deserialisation inside the client raises ValueError and friends.
            raise ListingError(kind, namespace, f"unexpected client error: {exc!r}") from exc
        logger.debug("listed %d %s objects in %s", len(items), kind, namespace or "<cluster>")
        return items


class SnapshotCluster(ClusterAccessor):
    """Accessor serving objects from an exported snapshot document.

    The document is either a mapping of lower-case plural kinds to object
    lists (``{"pods": [...], "clusterroles": [...]}``) or a Kubernetes
    ``List`` (``{"items": [...]}``, as written by ``kubectl get -o json``)
    whose items carry their ``kind``. Namespaces that are referenced by
    objects but not listed explicitly are added automatically.
    """

    def __init__(self, document: Mapping[str, Any], cluster_name: str = "snapshot") -> None:
        self._cluster_name = cluster_name
        self._objects: Dict[str, List[Resource]] = {key: [] for key in KIND_KEYS.values()}
        if "items" in document:
            for item in document.get("items") or []:
                key = KIND_KEYS.get(item.get("kind", ""))
                if key is None:
                    logger.debug("ignoring snapshot object of kind %r", item.get("kind"))
                    continue
                self._objects[key].append(item)
        else:
            for key, items in document.items():
                if key in self._objects:
                    self._objects[key].extend(items or [])
        self._add_implicit_namespaces()

    @classmethod
    def from_file(cls, path: str, cluster_name: Optional[str] = None) -> "SnapshotCluster":
        with open(path, "r", encoding="utf-8") as handle:
            document = json.load(handle)
        if not isinstance(document, dict):
            raise ConfigurationError(
                f"snapshot {path} must hold a JSON object, not {type(document).__name__}"
            )
        return cls(document, cluster_name=cluster_name or document.get("clusterName", "snapshot"))

    def cluster_name(self) -> str:
        return self._cluster_name

    def list_namespaces(self) -> List[Resource]:
        return copy.deepcopy(self._objects["namespaces"])

    def list_namespaced(self, kind: str, namespace: str) -> List[Resource]:
        key = self._key(kind, namespace)
        return [
            copy.deepcopy(item)
            for item in self._objects[key]
            if object_namespace(item) == namespace
        ]

    def list_cluster_scoped(self, kind: str) -> List[Resource]:
        return copy.deepcopy(self._objects[self._key(kind, None)])

    def get_secret(self, namespace: str, name: str) -> Resource:
        for item in self._objects["secrets"]:
            metadata = item.get("metadata") or {}
            if metadata.get("name") == name and metadata.get("namespace") == namespace:
                return copy.deepcopy(item)
        raise ListingError("Secret", namespace, f"secret {name!r} not found")

    def _key(self, kind: str, namespace: Optional[str]) -> str:
        try:
            return KIND_KEYS[kind]
        except KeyError:
            raise ListingError(kind, namespace, "unsupported kind") from None

    def _add_implicit_namespaces(self) -> None:
        known = {
            (item.get("metadata") or {}).get("name") for item in self._objects["namespaces"]
        }
        referenced: Iterable[str] = (
            object_namespace(item)
            for key, items in self._objects.items()
            if key != "namespaces"
            for item in items
        )
        for name in dict.fromkeys(referenced):
            if name and name not in known:
                self._objects["namespaces"].append({"metadata": {"name": name}})
                known.add(name)


__all__ = [
    "ClusterAccessor",
    "JSON_KINDS",
    "KIND_KEYS",
    "KubernetesCluster",
    "Resource",
    "SYSTEM_NAMESPACES",
    "SnapshotCluster",
]
