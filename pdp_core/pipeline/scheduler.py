from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, Optional

from pdp_core.config import PDPSettings
from pdp_core.logger import get_logger
from pdp_core.storage.models import Task
from pdp_core.storage.provider import TaskStore
from pdp_core.utils import utcnow

log = get_logger("PDP.Scheduler")

DISPATCH, RECONCILE = "dispatch", "reconcile"
MAX_BACKOFF_SECONDS = 3600


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    retry_delay: int = 60
    reconcile_interval: int = 120
    stale_after: int = 86400
    claim_timeout: int = 900

    @classmethod
    def from_settings(cls, settings: PDPSettings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_attempts,
            retry_delay=settings.retry_delay,
            reconcile_interval=settings.reconcile_interval,
            stale_after=settings.stale_after,
            claim_timeout=settings.claim_timeout,
        )

    def backoff(self, attempt: int) -> int:
        """Delay before attempt ``attempt + 1``: retry_delay * 2**(attempt-1), capped."""
        return min(self.retry_delay * (2 ** max(0, attempt - 1)), MAX_BACKOFF_SECONDS)

    def can_retry(self, failures: int) -> bool:
        return failures < self.max_attempts


class TaskScheduler:
    """
    Delayed-task queue for the pipeline. Work is never re-entered
    recursively; every retry or follow-up poll is a Task with a due time,
    claimed by exactly one worker.
    """

    def __init__(self, store: TaskStore, policy: Optional[RetryPolicy] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.policy = policy or RetryPolicy()
        self.clock = clock

    def schedule(self, name: str, payload: Dict[str, Any], delay: float = 0, attempt: int = 1) -> Task:
        task = Task(name=name, payload=payload, run_at=self.clock() + timedelta(seconds=delay), attempt=attempt)
        self.store.put_task(task)
        log.info(
            f"[SCHED] {name} in {delay}s attempt={attempt}",
            extra={"task": name, "submission_id": payload.get("submission_id"), "attempt": attempt},
        )
        return task

    def schedule_dispatch(self, submission_id: str, document_path: Optional[str] = None,
                          delay: float = 0, attempt: int = 1) -> Task:
        payload = {"submission_id": submission_id}
        if document_path:
            payload["document_path"] = document_path
        return self.schedule(DISPATCH, payload, delay=delay, attempt=attempt)

    def schedule_reconcile(self, submission_id: str, delay: Optional[float] = None, attempt: int = 1) -> Task:
        if delay is None:
            delay = self.policy.reconcile_interval
        return self.schedule(RECONCILE, {"submission_id": submission_id}, delay=delay, attempt=attempt)

    def schedule_retry(self, name: str, payload: Dict[str, Any], failed_attempt: int) -> Task:
        return self.schedule(name, payload, delay=self.policy.backoff(failed_attempt), attempt=failed_attempt + 1)

    def due(self, now: Optional[datetime] = None, limit: int = 100):
        """Due tasks, unclaimed. For inspection; workers use ``claim_due``."""
        return self.store.due_tasks(now or self.clock(), limit=limit)

    def claim_due(self, now: Optional[datetime] = None, limit: int = 100) -> Iterator[Task]:
        """Yield due tasks this caller won; tasks claimed by other workers are skipped."""
        now = now or self.clock()
        for task in self.store.due_tasks(now, limit=limit):
            if self.store.claim_task(task.task_id):
                yield task

    def pending(self):
        return self.store.list_tasks()
