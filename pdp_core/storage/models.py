from __future__ import annotations
from dataclasses import dataclass, field, asdict, fields
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from pdp_core.utils import new_id, now_ts, utcnow


class SubmissionStatus(str, Enum):
    PENDING = "pending"
    SUBMITTING = "submitting"
    SUBMITTED = "submitted"
    PROCESSING = "processing"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    ERROR = "error"


# submitted-or-later: the endpoint has acknowledged a transmission
TRANSMITTED = frozenset({
    SubmissionStatus.SUBMITTED,
    SubmissionStatus.PROCESSING,
    SubmissionStatus.ACCEPTED,
    SubmissionStatus.REJECTED,
})

PENDING_STATES = frozenset({
    SubmissionStatus.PENDING,
    SubmissionStatus.SUBMITTING,
    SubmissionStatus.SUBMITTED,
    SubmissionStatus.PROCESSING,
})


class DocumentKind(str, Enum):
    INVOICE = "invoice"
    CREDIT_NOTE = "credit_note"


@dataclass(frozen=True)
class DocumentRef:
    """Tagged reference to a submittable business document."""
    kind: DocumentKind
    id: str

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.id}"


@dataclass
class KeyRecord:
    """Public metadata of a signing key. Never carries private material."""
    key_id: str
    algorithm: str = "RSA"
    key_size: int = 2048
    created_at: str = field(default_factory=now_ts)
    status: str = "active"   # active|revoked
    fingerprint: str = ""
    certificate_stored_at: Optional[str] = None
    revoked_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KeyRecord":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class SubmissionRecord:
    submission_id: str
    document_kind: DocumentKind
    document_id: str
    mode: str = "simulation"   # simulation|production
    status: SubmissionStatus = SubmissionStatus.PENDING
    user_id: Optional[str] = None
    id: Optional[int] = None   # storage primary key

    pdp_id: Optional[str] = None
    pdp_reference: Optional[str] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    retry_count: int = 0
    poll_count: int = 0

    submitted_at: Optional[datetime] = None
    response_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    errored_at: Optional[datetime] = None

    artifact_path: Optional[str] = None
    original_filename: Optional[str] = None
    file_size: Optional[int] = None
    file_hash: Optional[str] = None
    signature: Optional[str] = None
    signing_key_id: Optional[str] = None
    response_data: Dict[str, Any] = field(default_factory=dict)

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def document_ref(self) -> DocumentRef:
        return DocumentRef(self.document_kind, self.document_id)

    @property
    def transmitted(self) -> bool:
        return self.status in TRANSMITTED

    @property
    def is_terminal(self) -> bool:
        # an error stays open only while its code is one the pipeline retries
        if self.status in (SubmissionStatus.ACCEPTED, SubmissionStatus.REJECTED):
            return True
        return self.status == SubmissionStatus.ERROR and self.error_code not in RETRYABLE_ERROR_CODES


RETRYABLE_ERROR_CODES = frozenset({
    "TRANSPORT_ERROR",
    "ARTIFACT_UNAVAILABLE",
    "DISPATCH_ERROR",
    "RESPONSE_PROCESSING_ERROR",
    "SIGNING_UNAVAILABLE",
    "STALE_CLAIM",
})


@dataclass
class SubmissionEvent:
    submission_id: str
    from_status: Optional[str]
    to_status: str
    code: Optional[str] = None
    message: Optional[str] = None
    ts: str = field(default_factory=now_ts)


@dataclass
class Task:
    """A unit of pipeline work due at ``run_at``."""
    name: str   # dispatch|reconcile
    payload: Dict[str, Any]
    run_at: datetime
    attempt: int = 1
    task_id: str = field(default_factory=new_id)
