"""Target cluster credentials and Kubernetes API client construction."""
from __future__ import annotations

import base64
import logging
import os
import re
import tempfile
from dataclasses import dataclass
from typing import Any, Optional, Tuple

import boto3
from botocore.exceptions import ClientError, EndpointConnectionError
from botocore.signers import RequestSigner
from kubernetes import client
from kubernetes import config as kube_config
from kubernetes.config.config_exception import ConfigException

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

EKS_TOKEN_PREFIX = "k8s-aws-v1."
EKS_TOKEN_TTL_SECONDS = 60
STS_URL = "https://sts.{region}.amazonaws.com/?Action=GetCallerIdentity&Version=2011-06-15"


@dataclass(frozen=True)
class ClusterCredentials:
    """How to reach the cluster under audit.

    Exactly one source is used, in this order: an EKS cluster name (resolved
    through the AWS APIs), in-cluster service account credentials, or a
    kubeconfig file and context (the default kubeconfig when unset, falling
    back to in-cluster configuration).
    """

    kubeconfig: Optional[str] = None
    context: Optional[str] = None
    in_cluster: bool = False
    eks_cluster: Optional[str] = None
    region: Optional[str] = None
    profile: Optional[str] = None


def build_api_client(credentials: ClusterCredentials) -> Tuple[client.ApiClient, str]:
    """Return a Kubernetes API client and the cluster name for *credentials*."""

    if credentials.eks_cluster:
        session = boto3.Session(profile_name=credentials.profile, region_name=credentials.region)
        return _eks_api_client(session, credentials.eks_cluster), credentials.eks_cluster

    if credentials.in_cluster:
        return _in_cluster_api_client(), "in-cluster"

    try:
        api_client = kube_config.new_client_from_config(
            config_file=credentials.kubeconfig, context=credentials.context
        )
    except (ConfigException, OSError) as exc:
        if credentials.kubeconfig:
            raise ConfigurationError(
                f"Failed to load kubeconfig {credentials.kubeconfig}: {exc}"
            ) from exc
        logger.info("no usable kubeconfig found, trying in-cluster configuration")
        return _in_cluster_api_client(), "in-cluster"

    cluster_name = _kubeconfig_cluster_name(credentials)
    logger.info("using kubeconfig %s (cluster %s)", credentials.kubeconfig or "<default>", cluster_name)
    return api_client, cluster_name


def generate_eks_token(session: boto3.session.Session, cluster_name: str) -> str:
    """Return a bearer token for *cluster_name* from a presigned STS request."""

    region = session.region_name
    if not region:
        raise ConfigurationError("An AWS region is required to authenticate to EKS")
    credentials = session.get_credentials()
    if credentials is None:
        raise ConfigurationError("No AWS credentials available to authenticate to EKS")

    sts = session.client("sts", region_name=region)
    signer = RequestSigner(
        sts.meta.service_model.service_id,
        region,
        "sts",
        "v4",
        credentials,
        session.events,
    )
    params = {
        "method": "GET",
        "url": STS_URL.format(region=region),
        "body": {},
        "headers": {"x-k8s-aws-id": cluster_name},
        "context": {},
    }
    signed_url = signer.generate_presigned_url(
        params,
        region_name=region,
        expires_in=EKS_TOKEN_TTL_SECONDS,
        operation_name="",
    )
    encoded = base64.urlsafe_b64encode(signed_url.encode("utf-8")).decode("utf-8")
    return EKS_TOKEN_PREFIX + encoded.rstrip("=")


def describe_eks_endpoint(eks_client: Any, cluster_name: str) -> Tuple[str, str]:
    """Return the API endpoint and base64 CA bundle of an EKS cluster."""

    try:
        cluster = eks_client.describe_cluster(name=cluster_name)["cluster"]
    except (ClientError, EndpointConnectionError) as exc:
        raise ConfigurationError(f"Failed to describe EKS cluster {cluster_name}: {exc}") from exc
    endpoint = cluster.get("endpoint")
    ca_data = (cluster.get("certificateAuthority") or {}).get("data")
    if not endpoint or not ca_data:
        raise ConfigurationError(f"EKS cluster {cluster_name} has no endpoint or certificate authority yet")
    return endpoint, ca_data


def write_eks_ca_bundle(cluster_name: str, ca_data: str, directory: Optional[str] = None) -> str:
    """Write the base64 CA bundle of *cluster_name* and return its path.

    Each cluster owns one file that is overwritten on every refresh.
    """

    safe_name = re.sub(r"[^A-Za-z0-9_.-]", "_", cluster_name)
    path = os.path.join(directory or tempfile.gettempdir(), f"kube-compliance-audit-{safe_name}-ca.crt")
    with open(path, "wb") as handle:
        handle.write(base64.b64decode(ca_data))
    os.chmod(path, 0o600)
    return path


def _eks_api_client(session: boto3.session.Session, cluster_name: str) -> client.ApiClient:
    endpoint, ca_data = describe_eks_endpoint(session.client("eks"), cluster_name)
    token = generate_eks_token(session, cluster_name)
    ca_path = write_eks_ca_bundle(cluster_name, ca_data)

    configuration = client.Configuration()
    configuration.host = endpoint
    configuration.ssl_ca_cert = ca_path
    configuration.api_key = {"authorization": token}
    configuration.api_key_prefix = {"authorization": "Bearer"}
    logger.info("using EKS cluster %s at %s", cluster_name, endpoint)
    return client.ApiClient(configuration)


def _in_cluster_api_client() -> client.ApiClient:
    configuration = client.Configuration()
    try:
        kube_config.load_incluster_config(client_configuration=configuration)
    except ConfigException as exc:
        raise ConfigurationError(f"Failed to load in-cluster configuration: {exc}") from exc
    logger.info("using in-cluster configuration")
    return client.ApiClient(configuration)


def _kubeconfig_cluster_name(credentials: ClusterCredentials) -> str:
    try:
        contexts, active = kube_config.list_kube_config_contexts(config_file=credentials.kubeconfig)
    except (ConfigException, OSError):
        return "unknown"
    selected = active
    if credentials.context:
        selected = next((item for item in contexts if item.get("name") == credentials.context), active)
    return ((selected or {}).get("context") or {}).get("cluster", "unknown")


__all__ = [
    "ClusterCredentials",
    "build_api_client",
    "describe_eks_endpoint",
    "generate_eks_token",
    "write_eks_ca_bundle",
]
