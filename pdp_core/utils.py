"""
pdp_core.utils
--------------
Id generation, UTC timestamps, base64 and hashing helpers.
"""

from __future__ import annotations
import base64, hashlib, uuid
from datetime import datetime, timezone
from typing import Optional


def b64e(b: bytes) -> str:
    return base64.b64encode(b).decode("ascii")


def b64d(s: str) -> bytes:
    return base64.b64decode(s.encode("ascii"), validate=True)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    # naive values are written by older rows; treat them as UTC
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def now_ts() -> str:
    return to_iso(utcnow())


def new_id() -> str:
    return uuid.uuid4().hex


def new_submission_id(now: Optional[datetime] = None) -> str:
    year = (now or utcnow()).year
    return f"PDP-{year}-{uuid.uuid4().hex[:12].upper()}"


def sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()
