from __future__ import annotations
from typing import Tuple, Optional, Dict
from cryptography.hazmat.primitives.asymmetric import rsa, padding
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.exceptions import InvalidSignature, InvalidTag
import os, hashlib, json
from .utils import b64e, b64d

"""
pdp_core.crypto
---------------
Cryptographic primitives behind the signing providers:

- RSA key pairs (PKCS#8 / SubjectPublicKeyInfo PEM)
- RS256 / RS384 / RS512 signatures (RSASSA-PKCS1-v1_5)
- HKDF + AES-GCM sealing of private keys at rest

Nothing here logs or persists key material; callers own storage.
"""

DIGESTS = {
    "RS256": hashes.SHA256,
    "RS384": hashes.SHA384,
    "RS512": hashes.SHA512,
}

SEAL_VERSION = 1


def digest_for(algorithm: str) -> hashes.HashAlgorithm:
    try:
        return DIGESTS[algorithm.upper()]()
    except KeyError:
        from pdp_core.hsm.hsm_base import UnsupportedAlgorithm
        raise UnsupportedAlgorithm(f"unsupported signature algorithm: {algorithm}") from None


# --------- RSA (generate / sign / verify) ----------
def rsa_generate(key_size: int = 2048) -> Tuple[bytes, bytes]:
    """Return (private_pem, public_pem)."""
    if key_size < 2048:
        raise ValueError("RSA keys below 2048 bits are not accepted")
    sk = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    priv = sk.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    pub = sk.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return priv, pub


def rsa_sign(priv_pem: bytes, data: bytes, algorithm: str = "RS256") -> bytes:
    digest = digest_for(algorithm)
    sk = serialization.load_pem_private_key(priv_pem, password=None)
    return sk.sign(data, padding.PKCS1v15(), digest)


def rsa_verify(pub_pem: bytes, sig: bytes, data: bytes, algorithm: str = "RS256") -> bool:
    digest = digest_for(algorithm)
    pk = serialization.load_pem_public_key(pub_pem)
    try:
        pk.verify(sig, data, padding.PKCS1v15(), digest)
        return True
    except InvalidSignature:
        return False


def public_key_size(pub_pem: bytes) -> int:
    return serialization.load_pem_public_key(pub_pem).key_size


# --------- HKDF + AES-GCM (key material at rest) ----------
def derive_key(secret: bytes, salt: Optional[bytes] = None, info: bytes = b"pdp-keystore-v1") -> bytes:
    hkdf = HKDF(algorithm=hashes.SHA256(), length=32, salt=salt, info=info)
    return hkdf.derive(secret)  # 256-bit AEAD key


def aead_encrypt(key: bytes, plaintext: bytes, aad: Optional[bytes] = None) -> Tuple[bytes, bytes]:
    aes = AESGCM(key)
    nonce = os.urandom(12)
    ct = aes.encrypt(nonce, plaintext, aad)
    return nonce, ct


def aead_decrypt(key: bytes, nonce: bytes, ciphertext: bytes, aad: Optional[bytes] = None) -> bytes:
    aes = AESGCM(key)
    return aes.decrypt(nonce, ciphertext, aad)


class SealError(Exception):
    pass


def seal_private_key(secret: bytes, key_id: str, priv_pem: bytes) -> bytes:
    """Encrypt a private key for storage; the key id is bound as AAD."""
    salt = os.urandom(16)
    nonce, ct = aead_encrypt(derive_key(secret, salt), priv_pem, aad=key_id.encode("utf-8"))
    blob: Dict[str, object] = {
        "v": SEAL_VERSION,
        "salt": b64e(salt),
        "nonce": b64e(nonce),
        "ciphertext": b64e(ct),
    }
    return json.dumps(blob, separators=(",", ":"), sort_keys=True).encode("utf-8")


def open_private_key(secret: bytes, key_id: str, sealed: bytes) -> bytes:
    try:
        blob = json.loads(sealed.decode("utf-8"))
        if blob.get("v") != SEAL_VERSION:
            raise SealError(f"unsupported sealed key version: {blob.get('v')}")
        key = derive_key(secret, b64d(blob["salt"]))
        return aead_decrypt(key, b64d(blob["nonce"]), b64d(blob["ciphertext"]), aad=key_id.encode("utf-8"))
    except InvalidTag:
        raise SealError(f"sealed key for {key_id} failed authentication") from None
    except (ValueError, KeyError) as e:
        raise SealError(f"sealed key for {key_id} is malformed: {e}") from None


def compute_pubkey_fingerprint(pub_pem: bytes) -> str:
    """
    Stable fingerprint of a public key: SHA-256 over its DER encoding,
    hex, truncated to 32 chars for readability.
    """
    der = serialization.load_pem_public_key(pub_pem).public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return hashlib.sha256(der).hexdigest()[:32]
