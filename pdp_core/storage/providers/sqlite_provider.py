from __future__ import annotations
from typing import Optional, Dict, Any, List, Iterable
from datetime import datetime
import json, sqlite3, os, threading
from pdp_core.storage.models import (
    DocumentKind, SubmissionEvent, SubmissionRecord, SubmissionStatus, Task, PENDING_STATES,
)
from pdp_core.storage.provider import SubmissionStore, TaskStore, transition_event
from pdp_core.utils import to_iso, from_iso, utcnow

SUBMISSION_COLUMNS = (
    "id", "submission_id", "document_kind", "document_id", "user_id", "mode", "status",
    "pdp_id", "pdp_reference", "error_message", "error_code", "retry_count", "poll_count",
    "submitted_at", "response_at", "accepted_at", "rejected_at", "errored_at",
    "artifact_path", "original_filename", "file_size", "file_hash", "signature",
    "signing_key_id", "response_data", "created_at", "updated_at",
)
DATETIME_COLUMNS = {
    "submitted_at", "response_at", "accepted_at", "rejected_at", "errored_at",
    "created_at", "updated_at",
}


def _to_column(name: str, value: Any) -> Any:
    if name in DATETIME_COLUMNS:
        return to_iso(value)
    if name == "response_data":
        return json.dumps(value or {}, separators=(",", ":"), sort_keys=True, default=str)
    if name in ("status", "document_kind"):
        return value.value if hasattr(value, "value") else value
    return value


def _row_to_submission(row: sqlite3.Row) -> SubmissionRecord:
    data = dict(row)
    for name in DATETIME_COLUMNS:
        data[name] = from_iso(data[name])
    data["status"] = SubmissionStatus(data["status"])
    data["document_kind"] = DocumentKind(data["document_kind"])
    data["response_data"] = json.loads(data["response_data"]) if data["response_data"] else {}
    return SubmissionRecord(**data)


class SQLiteStorage(SubmissionStore, TaskStore):
    def __init__(self, path="db/pdp_state.db"):
        # If no directory, default to current working directory
        dir_path = os.path.dirname(path) or "."
        os.makedirs(dir_path, exist_ok=True)
        self.db = sqlite3.connect(path, check_same_thread=False, isolation_level=None)
        self.db.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._init()

    def execute(self, sql: str, params: tuple = None):
        with self._lock:
            if params:
                return self.db.execute(sql, params)
            return self.db.execute(sql)

    def _init(self) -> None:
        c = self.db.cursor()
        c.execute("PRAGMA journal_mode=WAL")
        c.execute("PRAGMA busy_timeout=5000")

        c.execute("""CREATE TABLE IF NOT EXISTS submissions(
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            submission_id TEXT NOT NULL UNIQUE,
            document_kind TEXT NOT NULL,
            document_id TEXT NOT NULL,
            user_id TEXT,
            mode TEXT NOT NULL,
            status TEXT NOT NULL,
            pdp_id TEXT,
            pdp_reference TEXT,
            error_message TEXT,
            error_code TEXT,
            retry_count INTEGER NOT NULL DEFAULT 0,
            poll_count INTEGER NOT NULL DEFAULT 0,
            submitted_at TEXT,
            response_at TEXT,
            accepted_at TEXT,
            rejected_at TEXT,
            errored_at TEXT,
            artifact_path TEXT,
            original_filename TEXT,
            file_size INTEGER,
            file_hash TEXT,
            signature TEXT,
            signing_key_id TEXT,
            response_data TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )""")
        c.execute("CREATE INDEX IF NOT EXISTS idx_submissions_status ON submissions(status)")
        c.execute("CREATE INDEX IF NOT EXISTS idx_submissions_hash ON submissions(file_hash)")
        c.execute("CREATE INDEX IF NOT EXISTS idx_submissions_document ON submissions(document_kind, document_id)")

        c.execute("""CREATE TABLE IF NOT EXISTS submission_events(
            ts TEXT NOT NULL,
            submission_id TEXT NOT NULL,
            from_status TEXT,
            to_status TEXT NOT NULL,
            code TEXT,
            message TEXT
        )""")
        c.execute("CREATE INDEX IF NOT EXISTS idx_events_submission ON submission_events(submission_id)")

        c.execute("""CREATE TABLE IF NOT EXISTS scheduled_tasks(
            task_id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            payload TEXT NOT NULL,
            run_at TEXT NOT NULL,
            attempt INTEGER NOT NULL
        )""")
        c.execute("CREATE INDEX IF NOT EXISTS idx_tasks_run_at ON scheduled_tasks(run_at)")

    # --- submissions ---

    def create_submission(self, rec: SubmissionRecord) -> SubmissionRecord:
        cols = [c for c in SUBMISSION_COLUMNS if c != "id"]
        values = tuple(_to_column(c, getattr(rec, c)) for c in cols)
        placeholders = ", ".join(["?"] * len(cols))
        with self._lock:
            try:
                self.db.execute("BEGIN IMMEDIATE")
                self.db.execute(
                    f"INSERT INTO submissions ({', '.join(cols)}) VALUES ({placeholders})",
                    values,
                )
                self._insert_event(SubmissionEvent(rec.submission_id, None, rec.status.value))
                self.db.execute("COMMIT")
            except sqlite3.IntegrityError:
                self.db.execute("ROLLBACK")
                raise ValueError(f"submission already exists: {rec.submission_id}") from None
        return self.get_submission(rec.submission_id)

    def get_submission(self, submission_id: str) -> Optional[SubmissionRecord]:
        cur = self.execute(
            f"SELECT {', '.join(SUBMISSION_COLUMNS)} FROM submissions WHERE submission_id=?",
            (submission_id,),
        )
        row = cur.fetchone()
        return _row_to_submission(row) if row else None

    def get_submission_by_pk(self, pk: int) -> Optional[SubmissionRecord]:
        cur = self.execute(f"SELECT {', '.join(SUBMISSION_COLUMNS)} FROM submissions WHERE id=?", (pk,))
        row = cur.fetchone()
        return _row_to_submission(row) if row else None

    def update_submission(self, submission_id: str, **fields: Any) -> None:
        fields["updated_at"] = utcnow()
        assignments = ", ".join(f"{k}=?" for k in fields)
        params = tuple(_to_column(k, v) for k, v in fields.items()) + (submission_id,)
        self.execute(f"UPDATE submissions SET {assignments} WHERE submission_id=?", params)

    def transition(self, submission_id: str, expected: Iterable[SubmissionStatus],
                   status: SubmissionStatus, **fields: Any) -> bool:
        """
        Compare-and-set on the status column. Returns False when the row is
        missing or no longer in one of the expected states (another worker won).
        """
        expected = [s.value for s in expected]
        fields = dict(fields, status=status, updated_at=utcnow())
        assignments = ", ".join(f"{k}=?" for k in fields)
        params = tuple(_to_column(k, v) for k, v in fields.items())
        with self._lock:
            self.db.execute("BEGIN IMMEDIATE")
            try:
                before = self.get_submission(submission_id)
                cur = self.db.execute(
                    f"UPDATE submissions SET {assignments} "
                    f"WHERE submission_id=? AND status IN ({', '.join(['?'] * len(expected))})",
                    params + (submission_id, *expected),
                )
                won = cur.rowcount == 1
                if won:
                    self._insert_event(transition_event(before, status, fields))
                self.db.execute("COMMIT")
            except Exception:
                self.db.execute("ROLLBACK")
                raise
        return won

    def list_submissions(self, status: Optional[SubmissionStatus] = None, limit: int = 200) -> List[SubmissionRecord]:
        sql = f"SELECT {', '.join(SUBMISSION_COLUMNS)} FROM submissions"
        params: list = []
        if status is not None:
            sql += " WHERE status = ?"
            params.append(status.value)
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(max(1, min(limit, 1000)))
        return [_row_to_submission(r) for r in self.execute(sql, tuple(params)).fetchall()]

    def pending_submissions(self) -> List[SubmissionRecord]:
        states = [s.value for s in PENDING_STATES]
        cur = self.execute(
            f"SELECT {', '.join(SUBMISSION_COLUMNS)} FROM submissions "
            f"WHERE status IN ({', '.join(['?'] * len(states))}) ORDER BY id",
            tuple(states),
        )
        return [_row_to_submission(r) for r in cur.fetchall()]

    def find_by_hash(self, file_hash: str, statuses: Iterable[SubmissionStatus]) -> List[SubmissionRecord]:
        states = [s.value for s in statuses]
        cur = self.execute(
            f"SELECT {', '.join(SUBMISSION_COLUMNS)} FROM submissions "
            f"WHERE file_hash=? AND status IN ({', '.join(['?'] * len(states))})",
            (file_hash, *states),
        )
        return [_row_to_submission(r) for r in cur.fetchall()]

    # --- audit trail ---

    def _insert_event(self, event: SubmissionEvent) -> None:
        self.db.execute(
            "INSERT INTO submission_events(ts,submission_id,from_status,to_status,code,message) VALUES(?,?,?,?,?,?)",
            (event.ts, event.submission_id, event.from_status, event.to_status, event.code, event.message),
        )

    def log_event(self, event: SubmissionEvent) -> None:
        with self._lock:
            self._insert_event(event)

    def list_events(self, submission_id: str) -> List[SubmissionEvent]:
        cur = self.execute(
            "SELECT submission_id, from_status, to_status, code, message, ts "
            "FROM submission_events WHERE submission_id=? ORDER BY rowid",
            (submission_id,),
        )
        return [SubmissionEvent(*r) for r in cur.fetchall()]

    # --- delayed tasks ---

    def put_task(self, task: Task) -> None:
        self.execute(
            "INSERT INTO scheduled_tasks(task_id,name,payload,run_at,attempt) VALUES(?,?,?,?,?)",
            (task.task_id, task.name, json.dumps(task.payload, sort_keys=True), to_iso(task.run_at), task.attempt),
        )

    def due_tasks(self, now: datetime, limit: int = 100) -> List[Task]:
        cur = self.execute(
            "SELECT task_id, name, payload, run_at, attempt FROM scheduled_tasks "
            "WHERE run_at <= ? ORDER BY run_at LIMIT ?",
            (to_iso(now), limit),
        )
        return [self._to_task(r) for r in cur.fetchall()]

    def claim_task(self, task_id: str) -> bool:
        cur = self.execute("DELETE FROM scheduled_tasks WHERE task_id=?", (task_id,))
        return cur.rowcount == 1

    def list_tasks(self) -> List[Task]:
        cur = self.execute("SELECT task_id, name, payload, run_at, attempt FROM scheduled_tasks ORDER BY run_at")
        return [self._to_task(r) for r in cur.fetchall()]

    @staticmethod
    def _to_task(row) -> Task:
        task_id, name, payload, run_at, attempt = row
        return Task(name=name, payload=json.loads(payload), run_at=from_iso(run_at),
                    attempt=attempt, task_id=task_id)

    def flush(self):
        # autocommit mode; kept for provider parity
        return

    def close(self):
        self.db.close()
