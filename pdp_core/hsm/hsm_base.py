from __future__ import annotations
from contextlib import contextmanager
from typing import Any, Dict, List, Optional
import threading

from pdp_core.crypto import DIGESTS


class HSMError(Exception):
    pass


class KeyNotFound(HSMError):
    def __init__(self, key_id: str):
        super().__init__(f"Key not found: {key_id}")
        self.key_id = key_id


class KeyAlreadyExists(HSMError):
    def __init__(self, key_id: str):
        super().__init__(f"Key already exists: {key_id}")
        self.key_id = key_id


class HSMConfigurationError(HSMError):
    pass


class HSMUnavailable(HSMError):
    """Signing backend unreachable or overloaded; the call may succeed later."""
    pass


class UnsupportedAlgorithm(HSMError):
    pass


def check_algorithm(algorithm: str) -> str:
    algorithm = algorithm.upper()
    if algorithm not in DIGESTS:
        raise UnsupportedAlgorithm(f"unsupported signature algorithm: {algorithm}")
    return algorithm


class KeyLocks:
    """
    One lock per key id. Generation, certificate writes and deletion hold it;
    signing different keys never contends.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    @contextmanager
    def hold(self, key_id: str):
        with self._guard:
            lock = self._locks.setdefault(key_id, threading.Lock())
        with lock:
            yield


class SigningProvider:
    """
    Capability surface shared by every signing backend.

    Private keys never leave the provider: generate_key_pair and
    get_public_key only ever return public material, signatures are
    base64 strings.
    """
    name: str = "base"

    def generate_key_pair(self, key_id: str, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        raise NotImplementedError

    def sign(self, data: bytes, key_id: str, algorithm: str = "RS256") -> str:
        raise NotImplementedError

    def verify(self, data: bytes, signature: str, key_id: str, algorithm: str = "RS256") -> bool:
        raise NotImplementedError

    def get_public_key(self, key_id: str) -> str:
        raise NotImplementedError

    def get_certificate(self, key_id: str) -> Optional[str]:
        raise NotImplementedError

    def store_certificate(self, key_id: str, certificate: str) -> bool:
        raise NotImplementedError

    def delete_key(self, key_id: str) -> bool:
        raise NotImplementedError

    def key_exists(self, key_id: str) -> bool:
        raise NotImplementedError

    def list_keys(self) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def revoke_key(self, key_id: str) -> bool:
        raise NotImplementedError

    def get_status(self) -> Dict[str, Any]:
        return {"mode": self.name, "status": "operational"}

    # ---------------------------
    # Helpers for backends
    # ---------------------------
    @staticmethod
    def to_bytes(data: bytes | str) -> bytes:
        if isinstance(data, bytes):
            return data
        return data.encode("utf-8")
