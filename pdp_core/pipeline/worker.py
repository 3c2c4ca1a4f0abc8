from __future__ import annotations
from datetime import datetime
from typing import Callable, Optional
import threading

from pdp_core.logger import get_logger
from pdp_core.pipeline.dispatcher import SubmissionDispatcher
from pdp_core.pipeline.reconciler import ResponseReconciler
from pdp_core.pipeline.scheduler import DISPATCH, RECONCILE, TaskScheduler
from pdp_core.storage.models import Task
from pdp_core.utils import utcnow

log = get_logger("PDP.Worker")


class PipelineWorker:
    """
    Drains due tasks from the scheduler. Each task is one dispatch or one
    poll; a failing task is logged and never stops the lane.

    Every ``sweep_interval`` seconds it also recovers records whose task was
    lost with a dead worker: expired ``submitting`` claims and acknowledged
    records past the staleness timeout.
    """

    def __init__(self, scheduler: TaskScheduler, dispatcher: SubmissionDispatcher,
                 reconciler: ResponseReconciler, clock: Callable[[], datetime] = utcnow,
                 batch_size: int = 100, sweep_interval: float = 60):
        self.scheduler = scheduler
        self.dispatcher = dispatcher
        self.reconciler = reconciler
        self.clock = clock
        self.batch_size = batch_size
        self.sweep_interval = sweep_interval
        self._last_sweep: Optional[datetime] = None
        self._stop = threading.Event()

    def run_once(self, now: Optional[datetime] = None) -> int:
        now = now or self.clock()
        if self._last_sweep is None or (now - self._last_sweep).total_seconds() >= self.sweep_interval:
            self.sweep(now)
        ran = 0
        for task in self.scheduler.claim_due(now, limit=self.batch_size):
            ran += 1
            try:
                self._run(task)
            except Exception:
                log.exception(
                    f"[WORKER] task failed name={task.name} task_id={task.task_id}",
                    extra={"task": task.name, "submission_id": task.payload.get("submission_id")},
                )
        if ran:
            log.info(f"[WORKER] ran {ran} task(s)")
        return ran

    def sweep(self, now: Optional[datetime] = None) -> int:
        self._last_sweep = now or self.clock()
        recovered = 0
        try:
            recovered += self.dispatcher.release_stale_claims()
            recovered += self.reconciler.sweep_stale()
        except Exception:
            log.exception("[WORKER] sweep failed")
        if recovered:
            log.warning(f"[WORKER] recovered {recovered} stranded submission(s)")
        return recovered

    def _run(self, task: Task) -> None:
        submission_id = task.payload["submission_id"]
        if task.name == DISPATCH:
            self.dispatcher.dispatch(submission_id, task.payload.get("document_path"))
        elif task.name == RECONCILE:
            self.reconciler.reconcile(submission_id, attempt=task.attempt)
        else:
            log.warning(f"[WORKER] unknown task dropped name={task.name} task_id={task.task_id}")

    def run_forever(self, tick_seconds: float = 5.0) -> None:
        log.info(f"[WORKER] started tick={tick_seconds}s")
        while not self._stop.is_set():
            self.run_once()
            self._stop.wait(tick_seconds)
        log.info("[WORKER] stopped")

    def stop(self) -> None:
        self._stop.set()
