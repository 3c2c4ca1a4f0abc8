from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

# verdicts an endpoint may report for a prior submission
ACCEPTED, REJECTED, PROCESSING = "accepted", "rejected", "processing"
KNOWN_VERDICTS = (ACCEPTED, REJECTED, PROCESSING)


class TransportError(Exception):
    pass


class TransientTransportError(TransportError):
    """Timeout, connection failure, throttling or 5xx: worth retrying."""
    pass


class PermanentSubmissionError(TransportError):
    """The endpoint explicitly refused; retrying the same artifact is pointless."""

    def __init__(self, message: str, code: str = "SUBMISSION_REFUSED", response_data: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.response_data = response_data or {}


@dataclass
class SubmissionMeta:
    submission_id: str
    document_kind: str
    document_id: str
    filename: str
    file_hash: str
    file_size: int
    signature: Optional[str] = None
    signing_key_id: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SubmitResult:
    accepted: bool
    provider_reference_id: Optional[str] = None
    provider_reference: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    response_data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StatusResult:
    status: str
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def error_message(self) -> Optional[str]:
        return self.details.get("error_message") or self.details.get("message")

    @property
    def error_code(self) -> Optional[str]:
        return self.details.get("error_code")


class BaseEndpoint:
    """
    Contract with the external PDP.

    ``submit`` transmits an artifact and reports whether the endpoint took
    it (not whether the document is valid). ``check_status`` reports the
    verdict for a previously acknowledged submission.
    Both raise TransientTransportError for retryable failures.
    """
    name: str = "base"

    def submit(self, artifact: bytes, meta: SubmissionMeta) -> SubmitResult:
        raise NotImplementedError

    def check_status(self, provider_reference_id: str) -> StatusResult:
        raise NotImplementedError

    def close(self) -> None:
        return
