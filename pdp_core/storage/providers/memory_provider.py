from typing import Optional, Dict, Any, List, Iterable
from copy import deepcopy
from dataclasses import replace
from datetime import datetime
import threading
from pdp_core.storage.models import SubmissionEvent, SubmissionRecord, SubmissionStatus, Task, PENDING_STATES
from pdp_core.storage.provider import KeyStore, SubmissionStore, TaskStore, transition_event, PRIVATE, PUBLIC, METADATA
from pdp_core.utils import utcnow


class InMemoryKeyStore(KeyStore):
    def __init__(self):
        self.keys: Dict[str, Dict[str, bytes]] = {}
        self._lock = threading.Lock()

    def put(self, key_id: str, kind: str, data: bytes):
        with self._lock:
            self.keys.setdefault(key_id, {})[kind] = bytes(data)

    def get(self, key_id: str, kind: str):
        return self.keys.get(key_id, {}).get(kind)

    def has(self, key_id: str, kind: str) -> bool:
        return kind in self.keys.get(key_id, {})

    def delete(self, key_id: str) -> bool:
        with self._lock:
            artifacts = self.keys.pop(key_id, {})
        return PRIVATE in artifacts or PUBLIC in artifacts

    def key_ids(self) -> List[str]:
        return sorted(k for k, v in self.keys.items() if METADATA in v)

    def describe(self) -> str:
        return "memory"


class InMemoryStorage(SubmissionStore, TaskStore):
    def __init__(self):
        self.submissions: Dict[str, SubmissionRecord] = {}
        self.events: List[SubmissionEvent] = []
        self.tasks: Dict[str, Task] = {}
        self._next_pk = 1
        self._lock = threading.RLock()

    # submissions
    def create_submission(self, rec: SubmissionRecord) -> SubmissionRecord:
        with self._lock:
            if rec.submission_id in self.submissions:
                raise ValueError(f"submission already exists: {rec.submission_id}")
            stored = replace(deepcopy(rec), id=self._next_pk)
            self._next_pk += 1
            self.submissions[rec.submission_id] = stored
            self.events.append(SubmissionEvent(rec.submission_id, None, stored.status.value))
            return deepcopy(stored)

    def get_submission(self, submission_id: str) -> Optional[SubmissionRecord]:
        rec = self.submissions.get(submission_id)
        return deepcopy(rec) if rec else None

    def get_submission_by_pk(self, pk: int) -> Optional[SubmissionRecord]:
        rec = next((r for r in self.submissions.values() if r.id == pk), None)
        return deepcopy(rec) if rec else None

    def update_submission(self, submission_id: str, **fields: Any) -> None:
        with self._lock:
            rec = self.submissions.get(submission_id)
            if rec is None:
                return
            self.submissions[submission_id] = replace(rec, updated_at=utcnow(), **fields)

    def transition(self, submission_id: str, expected: Iterable[SubmissionStatus],
                   status: SubmissionStatus, **fields: Any) -> bool:
        with self._lock:
            rec = self.submissions.get(submission_id)
            if rec is None or rec.status not in set(expected):
                return False
            self.events.append(transition_event(rec, status, fields))
            self.submissions[submission_id] = replace(rec, status=status, updated_at=utcnow(), **fields)
            return True

    def list_submissions(self, status: Optional[SubmissionStatus] = None, limit: int = 200) -> List[SubmissionRecord]:
        recs = [r for r in self.submissions.values() if status is None or r.status == status]
        recs.sort(key=lambda r: r.id or 0, reverse=True)
        return [deepcopy(r) for r in recs[:limit]]

    def pending_submissions(self) -> List[SubmissionRecord]:
        return [deepcopy(r) for r in self.submissions.values() if r.status in PENDING_STATES]

    def find_by_hash(self, file_hash: str, statuses: Iterable[SubmissionStatus]) -> List[SubmissionRecord]:
        wanted = set(statuses)
        return [deepcopy(r) for r in self.submissions.values()
                if r.file_hash == file_hash and r.status in wanted]

    # audit
    def log_event(self, event: SubmissionEvent) -> None:
        self.events.append(event)

    def list_events(self, submission_id: str) -> List[SubmissionEvent]:
        return [e for e in self.events if e.submission_id == submission_id]

    # delayed tasks
    def put_task(self, task: Task) -> None:
        with self._lock:
            self.tasks[task.task_id] = task

    def due_tasks(self, now: datetime, limit: int = 100) -> List[Task]:
        due = sorted((t for t in self.tasks.values() if t.run_at <= now), key=lambda t: t.run_at)
        return due[:limit]

    def claim_task(self, task_id: str) -> bool:
        with self._lock:
            return self.tasks.pop(task_id, None) is not None

    def list_tasks(self) -> List[Task]:
        return sorted(self.tasks.values(), key=lambda t: t.run_at)
