"""
pdp_core.hsm.hsm_simulator
--------------------------
Software stand-in for an HSM, for development and tests.

Keys are RSA pairs held in a KeyStore. The private half is sealed with
AES-GCM under a key derived from a deployment secret that is never written
next to the key files, so the store alone cannot reveal it. Unlike real
hardware the key is decrypted in process memory while signing.
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional
import binascii, json

from pdp_core.crypto import (
    rsa_generate, rsa_sign, rsa_verify, public_key_size,
    seal_private_key, open_private_key, compute_pubkey_fingerprint, SealError,
)
from pdp_core.hsm.hsm_base import (
    SigningProvider, KeyNotFound, KeyAlreadyExists, HSMError, HSMConfigurationError,
    KeyLocks, check_algorithm,
)
from pdp_core.logger import get_logger
from pdp_core.storage.models import KeyRecord
from pdp_core.storage.provider import KeyStore, PRIVATE, PUBLIC, CERTIFICATE, METADATA
from pdp_core.utils import b64e, b64d, now_ts

log = get_logger("PDP.HSM.Simulator")


class HSMSimulator(SigningProvider):
    name = "simulator"

    def __init__(self, store: KeyStore, secret: str | bytes, default_key_size: int = 2048):
        if not secret:
            raise HSMConfigurationError("HSM simulator requires an encryption secret (HSM_SIMULATOR_ENCRYPTION_KEY)")
        self.store = store
        self._secret = self.to_bytes(secret)
        self.default_key_size = default_key_size
        self._locks = KeyLocks()
        log.warning("[HSM SIM] simulator active, never use it in production")

    # ------------------------------------------------------------------
    # Key lifecycle
    # ------------------------------------------------------------------
    def generate_key_pair(self, key_id: str, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        options = options or {}
        key_size = int(options.get("key_size", self.default_key_size))
        algorithm = str(options.get("algorithm", "RSA")).upper()
        if algorithm != "RSA":
            raise HSMError(f"simulator only generates RSA keys, got {algorithm}")

        with self._locks.hold(key_id):
            if self.key_exists(key_id):
                raise KeyAlreadyExists(key_id)

            priv, pub = rsa_generate(key_size)
            meta = KeyRecord(
                key_id=key_id,
                algorithm=algorithm,
                key_size=key_size,
                fingerprint=compute_pubkey_fingerprint(pub),
            )
            # metadata last: list_keys only reports fully written keys
            self.store.put(key_id, PRIVATE, seal_private_key(self._secret, key_id, priv))
            del priv
            self.store.put(key_id, PUBLIC, pub)
            self._put_metadata(meta)

        log.info(f"[HSM SIM] generated key pair key_id={key_id} size={key_size}")
        return {
            "public_key": pub.decode("ascii"),
            "key_id": key_id,
            "algorithm": algorithm,
            "key_size": key_size,
        }

    def delete_key(self, key_id: str) -> bool:
        with self._locks.hold(key_id):
            deleted = self.store.delete(key_id)
        log.info(f"[HSM SIM] key deleted key_id={key_id} existed={deleted}")
        return deleted

    def revoke_key(self, key_id: str) -> bool:
        with self._locks.hold(key_id):
            meta = self._require_metadata(key_id)
            if meta.status == "revoked":
                return False
            meta.status = "revoked"
            meta.revoked_at = now_ts()
            self._put_metadata(meta)
        log.info(f"[HSM SIM] key revoked key_id={key_id}")
        return True

    def key_exists(self, key_id: str) -> bool:
        return self.store.has(key_id, PRIVATE) and self.store.has(key_id, PUBLIC)

    def list_keys(self) -> List[Dict[str, Any]]:
        keys = []
        for key_id in self.store.key_ids():
            meta = self._metadata(key_id)
            if meta is not None:
                keys.append(meta.to_dict())
        return keys

    # ------------------------------------------------------------------
    # Sign / verify
    # ------------------------------------------------------------------
    def sign(self, data: bytes, key_id: str, algorithm: str = "RS256") -> str:
        algorithm = check_algorithm(algorithm)
        data = self.to_bytes(data)
        sealed = self.store.get(key_id, PRIVATE)
        if sealed is None:
            raise KeyNotFound(key_id)
        meta = self._metadata(key_id)
        if meta is not None and meta.status == "revoked":
            raise HSMError(f"key {key_id} is revoked")
        try:
            sig = rsa_sign(open_private_key(self._secret, key_id, sealed), data, algorithm)
        except SealError as e:
            raise HSMError(str(e)) from None

        log.debug(f"[HSM SIM] data signed key_id={key_id} algorithm={algorithm} data_length={len(data)}")
        return b64e(sig)

    def verify(self, data: bytes, signature: str, key_id: str, algorithm: str = "RS256") -> bool:
        algorithm = check_algorithm(algorithm)
        pub = self.store.get(key_id, PUBLIC)
        if pub is None:
            raise KeyNotFound(key_id)
        try:
            sig = b64d(signature)
        except (binascii.Error, ValueError):
            return False
        valid = rsa_verify(pub, sig, self.to_bytes(data), algorithm)
        log.debug(f"[HSM SIM] signature verified key_id={key_id} algorithm={algorithm} valid={valid}")
        return valid

    # ------------------------------------------------------------------
    # Public material
    # ------------------------------------------------------------------
    def get_public_key(self, key_id: str) -> str:
        pub = self.store.get(key_id, PUBLIC)
        if pub is None:
            raise KeyNotFound(key_id)
        return pub.decode("ascii")

    def get_certificate(self, key_id: str) -> Optional[str]:
        if not self.key_exists(key_id):
            raise KeyNotFound(key_id)
        cert = self.store.get(key_id, CERTIFICATE)
        return cert.decode("ascii") if cert is not None else None

    def store_certificate(self, key_id: str, certificate: str) -> bool:
        with self._locks.hold(key_id):
            if not self.key_exists(key_id):
                raise KeyNotFound(key_id)
            self.store.put(key_id, CERTIFICATE, certificate.encode("ascii"))
            meta = self._require_metadata(key_id)
            meta.certificate_stored_at = now_ts()
            self._put_metadata(meta)
        log.info(f"[HSM SIM] certificate stored key_id={key_id}")
        return True

    def get_status(self) -> Dict[str, Any]:
        keys = self.list_keys()
        return {
            "mode": "simulator",
            "status": "operational",
            "warning": "This is a development simulator and should not be used in production",
            "storage_path": self.store.describe(),
            "key_count": len(keys),
            "keys": [k["key_id"] for k in keys],
        }

    def key_size(self, key_id: str) -> int:
        return public_key_size(self.get_public_key(key_id).encode("ascii"))

    # ------------------------------------------------------------------
    # Metadata helpers
    # ------------------------------------------------------------------
    def _metadata(self, key_id: str) -> Optional[KeyRecord]:
        raw = self.store.get(key_id, METADATA)
        if raw is None:
            return None
        return KeyRecord.from_dict(json.loads(raw.decode("utf-8")))

    def _require_metadata(self, key_id: str) -> KeyRecord:
        meta = self._metadata(key_id)
        if meta is None or not self.key_exists(key_id):
            raise KeyNotFound(key_id)
        return meta

    def _put_metadata(self, meta: KeyRecord) -> None:
        self.store.put(meta.key_id, METADATA, json.dumps(meta.to_dict(), indent=2, sort_keys=True).encode("utf-8"))
