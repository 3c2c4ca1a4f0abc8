import threading

from pdp_core.pipeline.scheduler import RetryPolicy, TaskScheduler
from pdp_core.storage.models import SubmissionStatus


def test_retry_policy_backoff():
    policy = RetryPolicy(max_attempts=3, retry_delay=60)
    assert [policy.backoff(n) for n in (1, 2, 3, 4)] == [60, 120, 240, 480]
    assert policy.backoff(20) == 3600
    assert policy.can_retry(2) and not policy.can_retry(3)


def test_scheduler_only_releases_due_tasks(store, clock):
    scheduler = TaskScheduler(store, RetryPolicy(), clock=clock)
    scheduler.schedule_dispatch("SUB-1")
    scheduler.schedule_reconcile("SUB-2")            # reconcile_interval later
    assert [t.payload["submission_id"] for t in scheduler.due()] == ["SUB-1"]

    claimed = list(scheduler.claim_due())
    assert [t.name for t in claimed] == ["dispatch"]
    assert list(scheduler.claim_due()) == []

    clock.advance(120)
    assert [t.name for t in scheduler.claim_due()] == ["reconcile"]


def test_run_once_counts_and_survives_failures(pipeline, store, invoice, artifact, caplog):
    pipeline.dispatcher.create_submission(invoice, submission_id="SUB-1")
    pipeline.dispatcher.enqueue("SUB-1", artifact)
    pipeline.scheduler.schedule_dispatch("SUB-MISSING")
    pipeline.scheduler.schedule("cleanup", {"submission_id": "SUB-1"})

    assert pipeline.worker.run_once() == 3
    assert store.get_submission("SUB-1").status == SubmissionStatus.SUBMITTED
    assert "task failed name=dispatch" in caplog.text
    assert "unknown task dropped name=cleanup" in caplog.text


def test_run_forever_stops(pipeline, invoice, artifact):
    pipeline.dispatcher.create_submission(invoice, submission_id="SUB-1")
    pipeline.dispatcher.enqueue("SUB-1", artifact)

    runner = threading.Thread(target=pipeline.worker.run_forever, kwargs={"tick_seconds": 0.01})
    runner.start()
    pipeline.worker.stop()
    runner.join(timeout=5)
    assert not runner.is_alive()
