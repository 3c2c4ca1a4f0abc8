"""
pdp_core.storage.provider
-------------------------
Pluggable storage interfaces.

- KeyStore: key material and metadata for the signing providers
  (encrypted local files by default, in-memory for tests)
- SubmissionStore: submission records with compare-and-set transitions
  plus an append-only event history
- TaskStore: delayed pipeline tasks with single-winner claiming

Implementations live in ``pdp_core.storage.providers``.
"""

from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional
from pdp_core.storage.models import SubmissionEvent, SubmissionRecord, SubmissionStatus, Task

# Artifact kinds a KeyStore holds for one key id
PRIVATE, PUBLIC, CERTIFICATE, METADATA = "private", "public", "certificate", "metadata"
ARTIFACT_KINDS = (PRIVATE, PUBLIC, CERTIFICATE, METADATA)


class KeyStore:
    # Interface. ``private`` is always stored sealed; the store never sees plaintext.
    def put(self, key_id: str, kind: str, data: bytes) -> None: ...
    def get(self, key_id: str, kind: str) -> Optional[bytes]: ...
    def has(self, key_id: str, kind: str) -> bool: ...
    def delete(self, key_id: str) -> bool: ...
    def key_ids(self) -> List[str]: ...
    def describe(self) -> str: ...


class SubmissionStore:
    # Interface
    def create_submission(self, rec: SubmissionRecord) -> SubmissionRecord: ...
    def get_submission(self, submission_id: str) -> Optional[SubmissionRecord]: ...
    def get_submission_by_pk(self, pk: int) -> Optional[SubmissionRecord]: ...
    def update_submission(self, submission_id: str, **fields: Any) -> None: ...
    def transition(
        self,
        submission_id: str,
        expected: Iterable[SubmissionStatus],
        status: SubmissionStatus,
        **fields: Any,
    ) -> bool: ...
    def list_submissions(self, status: Optional[SubmissionStatus] = None, limit: int = 200) -> List[SubmissionRecord]: ...
    def pending_submissions(self) -> List[SubmissionRecord]: ...
    def find_by_hash(self, file_hash: str, statuses: Iterable[SubmissionStatus]) -> List[SubmissionRecord]: ...
    def log_event(self, event: SubmissionEvent) -> None: ...
    def list_events(self, submission_id: str) -> List[SubmissionEvent]: ...


class TaskStore:
    # Interface
    def put_task(self, task: Task) -> None: ...
    def due_tasks(self, now: datetime, limit: int = 100) -> List[Task]: ...
    def claim_task(self, task_id: str) -> bool: ...
    def list_tasks(self) -> List[Task]: ...


def transition_event(rec: SubmissionRecord, status: SubmissionStatus, fields: Dict[str, Any]) -> SubmissionEvent:
    """History row for a successful transition of ``rec`` into ``status``."""
    return SubmissionEvent(
        submission_id=rec.submission_id,
        from_status=rec.status.value,
        to_status=status.value,
        code=fields.get("error_code"),
        message=fields.get("error_message"),
    )
