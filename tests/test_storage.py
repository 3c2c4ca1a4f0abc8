from datetime import timedelta

import pytest

from pdp_core.storage import (
    DocumentKind, InMemoryStorage, SQLiteStorage, SubmissionRecord, SubmissionStatus, Task,
)
from pdp_core.utils import utcnow

S = SubmissionStatus


@pytest.fixture(params=["sqlite", "memory"])
def db(request, tmp_path):
    if request.param == "sqlite":
        s = SQLiteStorage(str(tmp_path / "state.db"))
        yield s
        s.close()
    else:
        yield InMemoryStorage()


def _record(submission_id="PDP-2024-ABCDEF012345", **kw):
    return SubmissionRecord(submission_id=submission_id, document_kind=DocumentKind.INVOICE,
                            document_id="42", **kw)


def test_create_and_get(db):
    created = db.create_submission(_record(user_id="u-1", response_data={"a": 1}))
    assert created.id is not None
    got = db.get_submission("PDP-2024-ABCDEF012345")
    assert got.status == S.PENDING
    assert got.document_kind == DocumentKind.INVOICE
    assert got.response_data == {"a": 1}
    assert db.get_submission_by_pk(created.id).submission_id == got.submission_id
    assert db.get_submission("missing") is None


def test_duplicate_submission_id_refused(db):
    db.create_submission(_record())
    with pytest.raises(ValueError):
        db.create_submission(_record())


def test_transition_is_compare_and_set(db):
    db.create_submission(_record())
    assert db.transition("PDP-2024-ABCDEF012345", (S.PENDING, S.ERROR), S.SUBMITTING)
    # second claimer loses, row untouched
    assert not db.transition("PDP-2024-ABCDEF012345", (S.PENDING, S.ERROR), S.SUBMITTING, pdp_id="X")
    assert db.get_submission("PDP-2024-ABCDEF012345").pdp_id is None
    assert not db.transition("missing", (S.PENDING,), S.SUBMITTING)


def test_transition_writes_fields_and_history(db):
    db.create_submission(_record())
    now = utcnow()
    db.transition("PDP-2024-ABCDEF012345", (S.PENDING,), S.SUBMITTING, submitted_at=now)
    db.transition("PDP-2024-ABCDEF012345", (S.SUBMITTING,), S.ERROR,
                  error_message="PDP timeout", error_code="TRANSPORT_ERROR", retry_count=1)

    rec = db.get_submission("PDP-2024-ABCDEF012345")
    assert rec.status == S.ERROR
    assert rec.retry_count == 1
    assert abs((rec.submitted_at - now).total_seconds()) < 0.001

    events = db.list_events("PDP-2024-ABCDEF012345")
    assert [(e.from_status, e.to_status) for e in events] == [
        (None, "pending"), ("pending", "submitting"), ("submitting", "error"),
    ]
    assert events[-1].code == "TRANSPORT_ERROR"
    assert events[-1].message == "PDP timeout"


def test_query_scopes(db):
    db.create_submission(_record("A"))
    db.create_submission(_record("B"))
    db.create_submission(_record("C"))
    db.update_submission("B", file_hash="h1")
    db.transition("B", (S.PENDING,), S.SUBMITTED)
    db.transition("C", (S.PENDING,), S.ACCEPTED)

    assert {r.submission_id for r in db.pending_submissions()} == {"A", "B"}
    assert [r.submission_id for r in db.list_submissions(status=S.ACCEPTED)] == ["C"]
    assert [r.submission_id for r in db.list_submissions()] == ["C", "B", "A"]
    assert [r.submission_id for r in db.find_by_hash("h1", (S.SUBMITTED,))] == ["B"]
    assert db.find_by_hash("h1", (S.ACCEPTED,)) == []


def test_due_tasks_and_single_claim(db):
    now = utcnow()
    due = Task(name="dispatch", payload={"submission_id": "A"}, run_at=now - timedelta(seconds=1))
    later = Task(name="reconcile", payload={"submission_id": "A"}, run_at=now + timedelta(minutes=2), attempt=2)
    db.put_task(due)
    db.put_task(later)

    ready = db.due_tasks(now)
    assert [t.task_id for t in ready] == [due.task_id]
    assert ready[0].payload == {"submission_id": "A"}

    assert db.claim_task(due.task_id) is True
    assert db.claim_task(due.task_id) is False
    assert db.due_tasks(now) == []

    remaining = db.list_tasks()
    assert [t.task_id for t in remaining] == [later.task_id]
    assert remaining[0].attempt == 2


def test_sqlite_persists_across_connections(tmp_path):
    path = str(tmp_path / "state.db")
    first = SQLiteStorage(path)
    first.create_submission(_record())
    first.transition("PDP-2024-ABCDEF012345", (S.PENDING,), S.SUBMITTING)
    first.close()

    second = SQLiteStorage(path)
    assert second.get_submission("PDP-2024-ABCDEF012345").status == S.SUBMITTING
    assert len(second.list_events("PDP-2024-ABCDEF012345")) == 2
    second.close()
