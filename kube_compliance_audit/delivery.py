"""Delivery of scan results to a remote compliance service."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from .errors import DeliveryError
from .findings import ScanResult

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://api.kubecomply.io"
API_PREFIX = "/api/v1"
DEFAULT_TIMEOUT = 30.0
USER_AGENT = "kube-compliance-audit/1.0"
ERROR_BODY_LIMIT = 4096


@dataclass
class LicenseInfo:
    """Outcome of a license validation."""

    valid: bool
    token: str = ""
    cluster_id: str = ""
    features: List[str] = field(default_factory=list)
    expires_at: str = ""
    message: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LicenseInfo":
        return cls(
            valid=bool(data.get("valid", False)),
            token=data.get("token", "") or "",
            cluster_id=data.get("clusterId", "") or "",
            features=list(data.get("features") or []),
            expires_at=data.get("expiresAt", "") or "",
            message=data.get("message", "") or "",
        )


@dataclass
class UploadReceipt:
    scan_id: str = ""
    url: str = ""
    message: str = ""


class DeliveryClient:
    """Synchronous client for the results API.

    Uploads degrade to a logged no-op when the endpoint cannot be reached;
    error responses raise :class:`DeliveryError`.
    """

    def __init__(
        self,
        endpoint: Optional[str] = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.endpoint = (endpoint or DEFAULT_ENDPOINT).rstrip("/")
        self.token = ""
        self.cluster_id = ""
        self._client = httpx.Client(
            base_url=f"{self.endpoint}{API_PREFIX}",
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json", "User-Agent": USER_AGENT},
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "DeliveryClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def authenticated(self) -> bool:
        return bool(self.token)

    def validate_license(self, license_key: str) -> LicenseInfo:
        """Exchange *license_key* for an upload token."""

        try:
            response = self._client.post("/licenses/validate", json={"licenseKey": license_key})
        except httpx.HTTPError as exc:
            raise DeliveryError(f"license validation request failed: {exc}") from exc
        if response.status_code != httpx.codes.OK:
            raise _error_from_response(response, "license validation")

        try:
            info = LicenseInfo.from_dict(response.json())
        except ValueError as exc:
            raise DeliveryError(f"license validation returned invalid JSON: {exc}") from exc
        if not info.valid:
            raise DeliveryError(f"license is not valid: {info.message}")

        self.token = info.token
        self.cluster_id = info.cluster_id
        logger.info("license validated for cluster %s (features: %s)", info.cluster_id, ", ".join(info.features))
        return info

    def upload_scan_results(self, result: ScanResult, token: Optional[str] = None) -> Optional[UploadReceipt]:
        """Upload *result*; returns ``None`` when skipped or the endpoint is unreachable."""

        token = token or self.token
        if not token:
            logger.warning("no delivery token available, skipping upload of scan %s", result.id)
            return None

        try:
            response = self._client.post(
                "/scans",
                json=result.to_dict(),
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.TransportError as exc:
            logger.warning("delivery endpoint %s unreachable, continuing offline: %s", self.endpoint, exc)
            return None
        if response.status_code not in (httpx.codes.OK, httpx.codes.CREATED):
            raise _error_from_response(response, "scan upload")

        try:
            data = response.json()
        except ValueError as exc:
            raise DeliveryError(f"scan upload returned invalid JSON: {exc}") from exc
        receipt = UploadReceipt(
            scan_id=data.get("scanId", "") or "",
            url=data.get("url", "") or "",
            message=data.get("message", "") or "",
        )
        logger.info("scan results uploaded: scan_id=%s url=%s", receipt.scan_id, receipt.url)
        return receipt


def _error_from_response(response: httpx.Response, operation: str) -> DeliveryError:
    body = response.text[:ERROR_BODY_LIMIT]
    try:
        message = response.json().get("message", "")
    except (ValueError, AttributeError):
        message = ""
    return DeliveryError(f"{operation} failed (HTTP {response.status_code}): {message or body}")


__all__ = ["DEFAULT_ENDPOINT", "DeliveryClient", "LicenseInfo", "UploadReceipt"]
