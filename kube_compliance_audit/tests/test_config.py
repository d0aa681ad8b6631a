"""Tests for the agent configuration loader."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


from kube_compliance_audit.config import AgentConfig, load_agent_config
from kube_compliance_audit.delivery import DEFAULT_ENDPOINT
from kube_compliance_audit.errors import ConfigurationError


def _write(tmp_path: Path, payload: object) -> Path:
    path = tmp_path / "agent.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def test_defaults_without_file_or_environment() -> None:
    """No file and an empty environment give the documented defaults."""

    config = load_agent_config(environ={})

    assert config == AgentConfig()
    assert config.delivery_endpoint == DEFAULT_ENDPOINT
    assert config.logging_level == logging.INFO


def test_file_values_are_loaded(tmp_path: Path) -> None:
    """Every setting can be supplied through the JSON file."""

    path = _write(
        tmp_path,
        {
            "namespace": "compliance",
            "resync_interval_seconds": 60,
            "embedded_policies": False,
            "policy_paths": ["/policies/custom"],
            "delivery_endpoint": "https://results.example.test",
            "log_level": "debug",
            "max_workers": 4,
            "scan_timeout_seconds": 120,
            "in_cluster": True,
        },
    )

    config = load_agent_config(path, environ={})

    assert config.namespace == "compliance"
    assert config.resync_interval_seconds == 60
    assert config.embedded_policies is False
    assert config.policy_paths == ("/policies/custom",)
    assert config.log_level == "DEBUG"
    assert config.max_workers == 4
    assert config.scan_timeout_seconds == 120.0
    assert config.credentials.in_cluster is True


def test_environment_overrides_file(tmp_path: Path) -> None:
    """Environment variables win over file values."""

    path = _write(tmp_path, {"namespace": "compliance", "log_level": "INFO"})

    config = load_agent_config(
        path,
        environ={
            "KUBE_AUDIT_NAMESPACE": "",
            "KUBE_AUDIT_DELIVERY_ENDPOINT": "https://other.example.test",
            "KUBE_AUDIT_LOG_LEVEL": "warning",
        },
    )

    assert config.namespace == ""
    assert config.delivery_endpoint == "https://other.example.test"
    assert config.log_level == "WARNING"


@pytest.mark.parametrize(
    "payload",
    [
        ["not", "an", "object"],
        {"max_workers": 0},
        {"resync_interval_seconds": "often"},
        {"scan_timeout_seconds": -5},
        {"policy_paths": "/single/path"},
        {"log_level": "verbose"},
    ],
)
def test_invalid_values_are_rejected(tmp_path: Path, payload: object) -> None:
    """Malformed settings raise a configuration error."""

    with pytest.raises(ConfigurationError):
        load_agent_config(_write(tmp_path, payload), environ={})


def test_missing_file_and_bad_json(tmp_path: Path) -> None:
    """Unreadable configuration files are configuration errors."""

    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")

    with pytest.raises(ConfigurationError):
        load_agent_config(tmp_path / "absent.json", environ={})
    with pytest.raises(ConfigurationError):
        load_agent_config(broken, environ={})
