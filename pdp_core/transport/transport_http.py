# pdp_core/transport/transport_http.py
from __future__ import annotations
from datetime import timedelta
from typing import Any, Dict, Optional
import requests

from pdp_core.config import PDPSettings
from pdp_core.logger import get_logger
from pdp_core.transport.transport_base import (
    BaseEndpoint, PermanentSubmissionError, StatusResult, SubmissionMeta, SubmitResult,
    TransientTransportError,
)
from pdp_core.utils import b64e, utcnow

log = get_logger("PDP.Transport.HTTP")

TRANSIENT_STATUS = {408, 425, 429, 500, 502, 503, 504}


class HTTPEndpoint(BaseEndpoint):
    """
    Production PDP client.

    - OAuth2 client-credentials token, cached until shortly before expiry
    - every call bounded by ``settings.timeout``
    - timeouts, connection errors, 408/429/5xx -> TransientTransportError
    - other 4xx -> PermanentSubmissionError
    """

    name = "http"

    def __init__(self, settings: PDPSettings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.base_url = settings.base_url.rstrip("/")
        self.session = session or requests.Session()
        self._token: Optional[str] = None
        self._token_expires = None

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------
    def _access_token(self) -> str:
        if self._token and self._token_expires and self._token_expires > utcnow():
            return self._token

        if not self.settings.client_id or not self.settings.client_secret:
            raise PermanentSubmissionError("PDP OAuth credentials not configured", code="AUTH_CONFIG")

        try:
            res = self.session.post(
                self.settings.oauth_url,
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.settings.client_id,
                    "client_secret": self.settings.client_secret,
                    "scope": self.settings.scope,
                },
                timeout=self.settings.timeout,
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientTransportError(f"PDP OAuth unreachable: {e}") from e

        if not res.ok:
            log.error(f"[HTTP OAUTH] token request failed status={res.status_code}")
            if res.status_code in TRANSIENT_STATUS:
                raise TransientTransportError(f"PDP OAuth error {res.status_code}")
            raise PermanentSubmissionError(f"PDP OAuth refused: {res.status_code}", code="AUTH_FAILED")

        data = res.json()
        self._token = data.get("access_token")
        if not self._token:
            raise TransientTransportError("PDP OAuth response carried no access_token")
        # refresh a minute early
        self._token_expires = utcnow() + timedelta(seconds=max(0, int(data.get("expires_in", 3600)) - 60))
        return self._token

    def _url(self, path: str) -> str:
        return f"{self.base_url}/api/{self.settings.api_version}{path}"

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self._access_token()}", "Accept": "application/json"}
        url = self._url(path)
        log.debug(f"[HTTP PDP] {method} {url}")
        try:
            res = self.session.request(method, url, headers=headers, timeout=self.settings.timeout, **kwargs)
        except requests.Timeout as e:
            raise TransientTransportError(f"PDP timeout after {self.settings.timeout}s") from e
        except requests.ConnectionError as e:
            raise TransientTransportError(f"PDP connection error: {e}") from e

        if res.status_code == 401:
            # token revoked server side; next attempt fetches a fresh one
            self._token = None
            raise TransientTransportError("PDP rejected the access token (401)")
        if res.status_code in TRANSIENT_STATUS:
            raise TransientTransportError(f"PDP error {res.status_code}: {res.text[:200]}")
        if not res.ok:
            body = _json_or_empty(res)
            raise PermanentSubmissionError(
                body.get("error_message") or f"PDP error {res.status_code}: {res.text[:200]}",
                code=body.get("error_code") or f"HTTP_{res.status_code}",
                response_data=body,
            )
        return _json_or_empty(res)

    # ------------------------------------------------------------------
    # Endpoint contract
    # ------------------------------------------------------------------
    def submit(self, artifact: bytes, meta: SubmissionMeta) -> SubmitResult:
        body = {
            "file_name": meta.filename,
            "file_content": b64e(artifact),
            "file_format": "facturx",
            "file_hash": meta.file_hash,
            "metadata": {
                "submission_id": meta.submission_id,
                "document_type": meta.document_kind,
                "document_id": meta.document_id,
                **meta.extra,
            },
        }
        if meta.signature:
            body["signature"] = {"value": meta.signature, "key_id": meta.signing_key_id}

        data = self._request("POST", "/invoices", json=body)
        log.info(f"[HTTP PDP] submitted submission_id={meta.submission_id} pdp_id={data.get('id')}")
        return SubmitResult(
            accepted=True,
            provider_reference_id=data.get("id"),
            provider_reference=data.get("reference"),
            response_data=data,
        )

    def check_status(self, provider_reference_id: str) -> StatusResult:
        if not provider_reference_id:
            raise PermanentSubmissionError("missing PDP id for status check", code="MISSING_PDP_ID")
        data = self._request("GET", f"/invoices/{provider_reference_id}")
        return StatusResult(status=str(data.get("status", "unknown")).lower(), details=data)

    def close(self) -> None:
        self.session.close()


def _json_or_empty(res: requests.Response) -> Dict[str, Any]:
    try:
        data = res.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}
