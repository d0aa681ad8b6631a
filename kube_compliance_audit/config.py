"""Agent configuration: a JSON file plus environment overrides."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping, Optional, Tuple

from .credentials import ClusterCredentials
from .delivery import DEFAULT_ENDPOINT
from .errors import ConfigurationError

ENV_NAMESPACE = "KUBE_AUDIT_NAMESPACE"
ENV_DELIVERY_ENDPOINT = "KUBE_AUDIT_DELIVERY_ENDPOINT"
ENV_LOG_LEVEL = "KUBE_AUDIT_LOG_LEVEL"

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class AgentConfig:
    """Settings of the long-running reconciliation agent.

    ``namespace`` limits which scan definitions are watched; empty watches
    every namespace.
    """

    namespace: str = ""
    resync_interval_seconds: int = 300
    embedded_policies: bool = True
    policy_paths: Tuple[str, ...] = ()
    delivery_endpoint: str = DEFAULT_ENDPOINT
    log_level: str = "INFO"
    max_workers: int = 1
    scan_timeout_seconds: Optional[float] = None
    kubeconfig: Optional[str] = None
    context: Optional[str] = None
    in_cluster: bool = False

    @property
    def credentials(self) -> ClusterCredentials:
        return ClusterCredentials(kubeconfig=self.kubeconfig, context=self.context, in_cluster=self.in_cluster)

    @property
    def logging_level(self) -> int:
        return getattr(logging, self.log_level)


def load_agent_config(path: Optional[str | Path] = None, environ: Optional[Mapping[str, str]] = None) -> AgentConfig:
    """Load the agent configuration from *path* (if given) and apply environment overrides."""

    raw: dict = {}
    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigurationError(f"Config file not found: {config_path}")
        try:
            with config_path.open("r", encoding="utf-8") as handle:
                raw = json.load(handle)
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"Config file {config_path} is not valid JSON: {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigurationError("Config file must contain a JSON object")

    config = AgentConfig(
        namespace=str(raw.get("namespace", "") or ""),
        resync_interval_seconds=_positive_int(raw.get("resync_interval_seconds", 300), "resync_interval_seconds"),
        embedded_policies=bool(raw.get("embedded_policies", True)),
        policy_paths=tuple(_ensure_string_list(raw.get("policy_paths", []))),
        delivery_endpoint=_optional_str(raw.get("delivery_endpoint")) or DEFAULT_ENDPOINT,
        log_level=_log_level(raw.get("log_level", "INFO")),
        max_workers=_positive_int(raw.get("max_workers", 1), "max_workers"),
        scan_timeout_seconds=_optional_float(raw.get("scan_timeout_seconds"), "scan_timeout_seconds"),
        kubeconfig=_optional_str(raw.get("kubeconfig")),
        context=_optional_str(raw.get("context")),
        in_cluster=bool(raw.get("in_cluster", False)),
    )
    return apply_environment(config, os.environ if environ is None else environ)


def apply_environment(config: AgentConfig, environ: Mapping[str, str]) -> AgentConfig:
    overrides = {}
    if environ.get(ENV_NAMESPACE) is not None:
        overrides["namespace"] = environ[ENV_NAMESPACE].strip()
    if environ.get(ENV_DELIVERY_ENDPOINT):
        overrides["delivery_endpoint"] = environ[ENV_DELIVERY_ENDPOINT].strip()
    if environ.get(ENV_LOG_LEVEL):
        overrides["log_level"] = _log_level(environ[ENV_LOG_LEVEL])
    return replace(config, **overrides) if overrides else config


def _log_level(value: object) -> str:
    level = str(value).strip().upper()
    if level not in LOG_LEVELS:
        raise ConfigurationError(f"Invalid log level {value!r} (valid: {', '.join(LOG_LEVELS)})")
    return level


def _positive_int(value: object, name: str) -> int:
    try:
        number = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise ConfigurationError(f"'{name}' must be an integer") from None
    if number < 1:
        raise ConfigurationError(f"'{name}' must be at least 1")
    return number


def _optional_float(value: object, name: str) -> Optional[float]:
    if value is None:
        return None
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise ConfigurationError(f"'{name}' must be a number") from None
    if number <= 0:
        raise ConfigurationError(f"'{name}' must be positive")
    return number


def _optional_str(value: object) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _ensure_string_list(value: object) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigurationError("Expected a list of strings")
    return [str(item) for item in value]


__all__ = ["AgentConfig", "apply_environment", "load_agent_config"]
