"""Tests for the results API client."""

from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List

import httpx
import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


from kube_compliance_audit.delivery import DeliveryClient
from kube_compliance_audit.errors import DeliveryError
from kube_compliance_audit.findings import Finding, ScanResult, Severity, Status


ENDPOINT = "https://results.example.test"


def _result() -> ScanResult:
    result = ScanResult(
        id="scan-42",
        scan_type="full",
        start_time=datetime(2024, 1, 1, tzinfo=timezone.utc),
        findings=[Finding(id="A", title="a", severity=Severity.HIGH, status=Status.FAIL, category="t")],
    )
    result.compute_summary()
    return result


def _client(handler: Callable[[httpx.Request], httpx.Response]) -> DeliveryClient:
    return DeliveryClient(ENDPOINT, transport=httpx.MockTransport(handler))


def test_license_validation_enables_upload() -> None:
    """A valid license yields the token used for subsequent uploads."""

    requests: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.url.path == "/api/v1/licenses/validate":
            return httpx.Response(
                200,
                json={"valid": True, "token": "tok-1", "clusterId": "c-9", "features": ["upload"]},
            )
        return httpx.Response(201, json={"scanId": "remote-1", "url": "https://app.example.test/scans/remote-1"})

    with _client(handler) as delivery:
        info = delivery.validate_license("LIC-123")
        receipt = delivery.upload_scan_results(_result())

    assert info.cluster_id == "c-9"
    assert delivery.authenticated
    assert json.loads(requests[0].content) == {"licenseKey": "LIC-123"}
    upload = requests[1]
    assert upload.method == "POST"
    assert upload.url.path == "/api/v1/scans"
    assert upload.headers["Authorization"] == "Bearer tok-1"
    assert json.loads(upload.content) == _result().to_dict()
    assert receipt.scan_id == "remote-1"
    assert receipt.url.endswith("/scans/remote-1")


def test_invalid_license_raises() -> None:
    """A license the service rejects leaves the client unauthenticated."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"valid": False, "message": "license expired"})

    delivery = _client(handler)

    with pytest.raises(DeliveryError) as excinfo:
        delivery.validate_license("LIC-OLD")

    assert "license expired" in str(excinfo.value)
    assert not delivery.authenticated


def test_license_error_status_uses_response_message() -> None:
    """Error responses surface their status and message."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, json={"message": "unknown license"})

    with pytest.raises(DeliveryError) as excinfo:
        _client(handler).validate_license("LIC-X")

    assert "HTTP 403" in str(excinfo.value)
    assert "unknown license" in str(excinfo.value)


def test_upload_without_token_is_skipped() -> None:
    """Nothing is sent when no token is known."""

    requests: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(201, json={})

    assert _client(handler).upload_scan_results(_result()) is None
    assert requests == []


def test_unreachable_endpoint_degrades_to_no_op() -> None:
    """Connection failures during upload are not errors."""

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    assert _client(handler).upload_scan_results(_result(), token="tok") is None


def test_server_error_on_upload_raises() -> None:
    """A 5xx response is reported with its body."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="internal failure")

    with pytest.raises(DeliveryError) as excinfo:
        _client(handler).upload_scan_results(_result(), token="tok")

    assert "HTTP 500" in str(excinfo.value)
    assert "internal failure" in str(excinfo.value)


def test_default_endpoint_and_trailing_slash() -> None:
    """Endpoints are normalised before the API prefix is added."""

    assert DeliveryClient().endpoint == "https://api.kubecomply.io"
    assert DeliveryClient(ENDPOINT + "/").endpoint == ENDPOINT
