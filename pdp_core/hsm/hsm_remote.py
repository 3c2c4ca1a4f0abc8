# pdp_core/hsm/hsm_remote.py
from __future__ import annotations
from typing import Any, Dict, List, Optional
import binascii
import requests

from pdp_core.crypto import rsa_verify
from pdp_core.hsm.hsm_base import (
    SigningProvider, KeyNotFound, KeyAlreadyExists, HSMError, HSMConfigurationError, HSMUnavailable,
    check_algorithm,
)
from pdp_core.logger import get_logger
from pdp_core.utils import b64e, b64d

log = get_logger("PDP.HSM.Remote")

TRANSIENT_STATUS = {408, 425, 429, 500, 502, 503, 504}


class RemoteHSM(SigningProvider):
    """
    Signing provider backed by a remote HSM / signing service REST API
    (cloud HSM offerings and network-attached hardware expose the same shape).

    Key generation and signing happen on the service; only public keys and
    certificates travel back. Verification runs locally against the fetched
    public key so it never involves the private half.

    Endpoints (relative to base_url):
      POST   /keys                      {key_id, algorithm, key_size} -> {public_key}
      GET    /keys                      -> {keys: [...]}
      GET    /keys/{id}                 -> {key_id, public_key, ...}
      DELETE /keys/{id}
      POST   /keys/{id}/sign            {data, algorithm} -> {signature}
      POST   /keys/{id}/revoke
      GET    /keys/{id}/certificate     -> {certificate}
      PUT    /keys/{id}/certificate     {certificate}
      GET    /status
    """

    name = "remote"

    def __init__(self, base_url: str, api_key: str, provider: str = "remote", timeout: int = 30,
                 session: Optional[requests.Session] = None):
        if not base_url:
            raise HSMConfigurationError("remote HSM URL not configured (HSM_REMOTE_URL)")
        if not api_key:
            raise HSMConfigurationError("remote HSM credentials not configured (HSM_API_KEY)")
        self.base_url = base_url.rstrip("/")
        self.provider = provider
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {api_key}",
            "Accept": "application/json",
        })
        log.info(f"[HSM REMOTE] initialized provider={provider} url={self.base_url}")

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------
    def _call(self, method: str, path: str, key_id: Optional[str] = None, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            res = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            log.error(f"[HSM REMOTE] {method} {path} failed: {e.__class__.__name__}")
            raise HSMUnavailable(f"remote HSM unreachable: {e}") from e

        if res.status_code == 404 and key_id is not None:
            raise KeyNotFound(key_id)
        if res.status_code == 409 and key_id is not None:
            raise KeyAlreadyExists(key_id)
        if res.status_code in TRANSIENT_STATUS:
            log.warning(f"[HSM REMOTE] {method} {path} -> {res.status_code}")
            raise HSMUnavailable(f"remote HSM busy {res.status_code}")
        if not res.ok:
            log.error(f"[HSM REMOTE] {method} {path} -> {res.status_code}")
            raise HSMError(f"remote HSM error {res.status_code}: {res.text[:200]}")
        if res.status_code == 204 or not res.content:
            return {}
        return res.json()

    # ------------------------------------------------------------------
    # Capability surface
    # ------------------------------------------------------------------
    def generate_key_pair(self, key_id: str, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        options = options or {}
        body = {
            "key_id": key_id,
            "algorithm": str(options.get("algorithm", "RSA")).upper(),
            "key_size": int(options.get("key_size", 2048)),
        }
        data = self._call("POST", "/keys", key_id=key_id, json=body)
        log.info(f"[HSM REMOTE] key created key_id={key_id}")
        return {
            "public_key": data["public_key"],
            "key_id": key_id,
            "algorithm": body["algorithm"],
            "key_size": body["key_size"],
        }

    def sign(self, data: bytes, key_id: str, algorithm: str = "RS256") -> str:
        algorithm = check_algorithm(algorithm)
        payload = self.to_bytes(data)
        res = self._call("POST", f"/keys/{key_id}/sign", key_id=key_id,
                         json={"data": b64e(payload), "algorithm": algorithm})
        log.debug(f"[HSM REMOTE] data signed key_id={key_id} algorithm={algorithm} data_length={len(payload)}")
        return res["signature"]

    def verify(self, data: bytes, signature: str, key_id: str, algorithm: str = "RS256") -> bool:
        algorithm = check_algorithm(algorithm)
        pub = self.get_public_key(key_id).encode("ascii")
        try:
            sig = b64d(signature)
        except (binascii.Error, ValueError):
            return False
        return rsa_verify(pub, sig, self.to_bytes(data), algorithm)

    def get_public_key(self, key_id: str) -> str:
        return self._call("GET", f"/keys/{key_id}", key_id=key_id)["public_key"]

    def get_certificate(self, key_id: str) -> Optional[str]:
        return self._call("GET", f"/keys/{key_id}/certificate", key_id=key_id).get("certificate")

    def store_certificate(self, key_id: str, certificate: str) -> bool:
        self._call("PUT", f"/keys/{key_id}/certificate", key_id=key_id, json={"certificate": certificate})
        log.info(f"[HSM REMOTE] certificate stored key_id={key_id}")
        return True

    def delete_key(self, key_id: str) -> bool:
        try:
            self._call("DELETE", f"/keys/{key_id}", key_id=key_id)
        except KeyNotFound:
            return False
        log.info(f"[HSM REMOTE] key deleted key_id={key_id}")
        return True

    def revoke_key(self, key_id: str) -> bool:
        self._call("POST", f"/keys/{key_id}/revoke", key_id=key_id)
        return True

    def key_exists(self, key_id: str) -> bool:
        try:
            self.get_public_key(key_id)
            return True
        except KeyNotFound:
            return False

    def list_keys(self) -> List[Dict[str, Any]]:
        return list(self._call("GET", "/keys").get("keys", []))

    def get_status(self) -> Dict[str, Any]:
        try:
            remote = self._call("GET", "/status")
            status = remote.get("status", "operational")
        except HSMError as e:
            remote, status = {"error": str(e)}, "unavailable"
        return {"mode": self.name, "provider": self.provider, "status": status, "remote": remote}
