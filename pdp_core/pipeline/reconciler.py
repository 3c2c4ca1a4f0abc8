"""
pdp_core.pipeline.reconciler
----------------------------
Second leg of a submission: fetch (or receive) the PDP verdict and settle
the record.

Polling and webhook ingestion share one settling path. The terminal write
is a compare-and-set out of ``processing``; only the caller that wins it
notifies, so a verdict seen twice (poll + webhook, two workers) is applied
and announced once.
"""

from __future__ import annotations
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Mapping, Optional
import hashlib, hmac, json

from pdp_core.config import PDPSettings
from pdp_core.logger import get_logger
from pdp_core.pipeline.errors import InvalidWebhookSignature, JobFailed, PipelineError, SubmissionNotFound, UnknownVerdict
from pdp_core.pipeline.notifications import NotificationFanout, resolve_document
from pdp_core.pipeline.scheduler import RECONCILE, TaskScheduler
from pdp_core.storage.models import SubmissionRecord, SubmissionStatus
from pdp_core.storage.provider import SubmissionStore
from pdp_core.transport.transport_base import (
    ACCEPTED, KNOWN_VERDICTS, PROCESSING, REJECTED, BaseEndpoint, PermanentSubmissionError, StatusResult,
    TransientTransportError,
)
from pdp_core.utils import to_iso, utcnow

log = get_logger("PDP.Reconciler")

S = SubmissionStatus

DEFAULT_REJECTION_MESSAGE = "Facture rejetée par le PDP"

# states a poll may start from; error only once the endpoint holds the artifact
POLLABLE = (S.SUBMITTED, S.PROCESSING, S.ERROR)


class ResponseReconciler:
    def __init__(
        self,
        store: SubmissionStore,
        endpoints: Mapping[str, BaseEndpoint],
        scheduler: TaskScheduler,
        settings: PDPSettings,
        notifier: Optional[NotificationFanout] = None,
        resolver=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.endpoints = endpoints
        self.scheduler = scheduler
        self.settings = settings
        self.notifier = notifier or NotificationFanout()
        self.resolver = resolver
        self.clock = clock

    @property
    def policy(self):
        return self.scheduler.policy

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------
    def reconcile(self, submission_id: str, attempt: int = 1) -> SubmissionRecord:
        """
        One status poll. ``attempt`` counts consecutive failed polls that led
        here; a poll that reaches the endpoint resets it.
        """
        rec = self.store.get_submission(submission_id)
        if rec is None:
            raise SubmissionNotFound(submission_id)

        if rec.is_terminal:
            log.info(f"[RECONCILE] already settled submission_id={submission_id} status={rec.status.value}")
            return rec
        if rec.status not in POLLABLE or (rec.status == S.ERROR and not rec.pdp_id):
            log.warning(f"[RECONCILE] nothing to poll submission_id={submission_id} status={rec.status.value}")
            return rec

        if self._is_stale(rec):
            return self._fail(
                rec, POLLABLE, "STALE_SUBMISSION",
                f"Aucune réponse du PDP depuis {self.policy.stale_after} secondes",
            )
        if not rec.pdp_id:
            return self._fail(
                rec, POLLABLE, "MISSING_PDP_ID",
                "Soumission acquittée sans identifiant PDP, statut impossible à vérifier",
            )

        if not self._claim_poll(rec):
            log.info(f"[RECONCILE] lost claim submission_id={submission_id}")
            return self.store.get_submission(submission_id)

        log.info(f"[RECONCILE] polling submission_id={submission_id} pdp_id={rec.pdp_id} attempt={attempt}",
                 extra={"submission_id": submission_id, "pdp_id": rec.pdp_id, "attempt": attempt})
        try:
            result = self._endpoint(rec).check_status(rec.pdp_id)
        except TransientTransportError as e:
            return self._poll_failed(rec, str(e), attempt)
        except PermanentSubmissionError as e:
            return self._fail(rec, (S.PROCESSING,), "STATUS_CHECK_REFUSED", str(e), response_data=e.response_data)
        except Exception as e:
            log.exception(f"[RECONCILE] unexpected failure submission_id={submission_id}")
            return self._poll_failed(rec, f"{e.__class__.__name__}: {e}", attempt)

        rec = self._apply_verdict(submission_id, result)
        if rec.status == S.PROCESSING:
            self.scheduler.schedule_reconcile(submission_id)
        return rec

    def ingest_verdict(self, submission_id: str, status: str, details: Optional[Dict[str, Any]] = None) -> SubmissionRecord:
        """Settle from a pushed verdict. No poll is scheduled; polling already covers it."""
        rec = self.store.get_submission(submission_id)
        if rec is None:
            raise SubmissionNotFound(submission_id)
        if rec.is_terminal:
            log.info(f"[RECONCILE] verdict for settled submission ignored submission_id={submission_id}")
            return rec
        if rec.status in (S.SUBMITTED, S.ERROR) and rec.pdp_id:
            self.store.transition(submission_id, (rec.status,), S.PROCESSING)
        return self._apply_verdict(submission_id, StatusResult(status, dict(details or {})))

    # ------------------------------------------------------------------
    # Webhook
    # ------------------------------------------------------------------
    def verify_webhook(self, body: bytes, signature: Optional[str]) -> None:
        secret = self.settings.webhook_secret
        if not secret:
            raise InvalidWebhookSignature("webhook secret not configured")
        if not signature:
            raise InvalidWebhookSignature("missing webhook signature")
        expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected, signature.strip().lower()):
            raise InvalidWebhookSignature("invalid webhook signature")

    def handle_webhook(self, body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        self.verify_webhook(body, signature)
        try:
            payload = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise PipelineError(f"malformed webhook payload: {e}") from e
        if not isinstance(payload, dict):
            raise PipelineError("malformed webhook payload: expected an object")

        event = payload.get("event_type")
        submission_id = payload.get("submission_id")
        log.info(f"[WEBHOOK] received event={event} submission_id={submission_id}")

        if event not in ("submission.accepted", "submission.rejected",
                         "submission.status_changed", "submission.processed"):
            log.warning(f"[WEBHOOK] unknown event type ignored event={event}")
            return {"status": "ignored", "event_type": event}
        if not submission_id:
            log.warning(f"[WEBHOOK] payload without submission_id ignored event={event}")
            return {"status": "ignored", "event_type": event}
        if self.store.get_submission(submission_id) is None:
            log.warning(f"[WEBHOOK] unknown submission ignored submission_id={submission_id}")
            return {"status": "ignored", "event_type": event}

        received = {"webhook_received_at": to_iso(self.clock()), "webhook_type": event}
        if event == "submission.accepted":
            details = dict(received, acceptance_data=payload.get("acceptance_data") or {})
            rec = self.ingest_verdict(submission_id, ACCEPTED, details)
        elif event == "submission.rejected":
            details = dict(
                received,
                error_message=payload.get("rejection_reason"),
                error_code=payload.get("rejection_code"),
            )
            rec = self.ingest_verdict(submission_id, REJECTED, details)
        elif event == "submission.status_changed":
            status = str(payload.get("new_status") or "").lower()
            details = dict(received, message=payload.get("message"))
            if status in KNOWN_VERDICTS:
                rec = self.ingest_verdict(submission_id, status, details)
            else:
                log.warning(f"[WEBHOOK] non-verdict status recorded only submission_id={submission_id} status={status}")
                rec = self._record_response(submission_id, dict(details, new_status=status))
        else:
            rec = self._record_response(submission_id, dict(received, processing_data=payload.get("processing_data") or {}))

        return {"status": "success", "event_type": event, "submission_status": rec.status.value}

    # ------------------------------------------------------------------
    # Settling
    # ------------------------------------------------------------------
    def _apply_verdict(self, submission_id: str, result: StatusResult) -> SubmissionRecord:
        verdict = (result.status or "").lower()
        now = self.clock()
        current = self.store.get_submission(submission_id)
        response_data = dict(current.response_data or {}, **result.details)

        if verdict == ACCEPTED:
            won = self.store.transition(
                submission_id, (S.PROCESSING,), S.ACCEPTED,
                accepted_at=now, response_at=now, response_data=response_data,
                error_message=None, error_code=None,
            )
            rec = self.store.get_submission(submission_id)
            if won:
                log.info(f"[RECONCILE] accepted submission_id={submission_id} pdp_id={rec.pdp_id}",
                         extra={"submission_id": submission_id, "status": "accepted"})
                self.notifier.accepted(rec, resolve_document(self.resolver, rec))
            return rec

        if verdict == REJECTED:
            won = self.store.transition(
                submission_id, (S.PROCESSING,), S.REJECTED,
                rejected_at=now, response_at=now, response_data=response_data,
                error_message=result.error_message or DEFAULT_REJECTION_MESSAGE,
                error_code=result.error_code or "REJECTED",
            )
            rec = self.store.get_submission(submission_id)
            if won:
                log.info(f"[RECONCILE] rejected submission_id={submission_id} code={rec.error_code}",
                         extra={"submission_id": submission_id, "status": "rejected"})
                self.notifier.rejected(rec, resolve_document(self.resolver, rec))
            return rec

        if verdict == PROCESSING:
            self.store.update_submission(submission_id, response_data=response_data, response_at=now)
            log.info(f"[RECONCILE] still processing submission_id={submission_id}")
            return self.store.get_submission(submission_id)

        unknown = UnknownVerdict(result.status)
        return self._fail(current, (S.PROCESSING,), "UNKNOWN_STATUS", str(unknown), response_data=response_data)

    def sweep_stale(self) -> int:
        """
        Settle acknowledged records whose follow-up poll was lost: past
        ``stale_after`` or without a PDP id. Returns how many were settled.
        """
        settled = 0
        for rec in self.store.pending_submissions():
            if rec.status not in (S.SUBMITTED, S.PROCESSING):
                continue
            if rec.pdp_id and not self._is_stale(rec):
                continue
            if self.reconcile(rec.submission_id).status == S.ERROR:
                settled += 1
        return settled

    def _record_response(self, submission_id: str, details: Dict[str, Any]) -> SubmissionRecord:
        rec = self.store.get_submission(submission_id)
        self.store.update_submission(submission_id, response_data=dict(rec.response_data or {}, **details))
        return self.store.get_submission(submission_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _endpoint(self, rec: SubmissionRecord) -> BaseEndpoint:
        try:
            return self.endpoints[rec.mode]
        except KeyError:
            raise PermanentSubmissionError(f"no endpoint for mode {rec.mode}", code="MODE_UNAVAILABLE") from None

    def _is_stale(self, rec: SubmissionRecord) -> bool:
        if rec.submitted_at is None:
            return False
        return self.clock() - rec.submitted_at > timedelta(seconds=self.policy.stale_after)

    def _claim_poll(self, rec: SubmissionRecord) -> bool:
        if rec.status == S.PROCESSING:
            self.store.update_submission(rec.submission_id, poll_count=rec.poll_count + 1)
            return True
        return self.store.transition(
            rec.submission_id, (rec.status,), S.PROCESSING,
            poll_count=rec.poll_count + 1, error_message=None, error_code=None, errored_at=None,
        )

    def _poll_failed(self, rec: SubmissionRecord, message: str, attempt: int) -> SubmissionRecord:
        submission_id = rec.submission_id
        if self.policy.can_retry(attempt):
            self.store.transition(
                submission_id, (S.PROCESSING,), S.ERROR,
                error_message=message, error_code="RESPONSE_PROCESSING_ERROR",
                errored_at=self.clock(), retry_count=rec.retry_count + 1,
            )
            log.warning(f"[RECONCILE] poll {attempt} failed submission_id={submission_id}: {message}")
            self.scheduler.schedule_retry(RECONCILE, {"submission_id": submission_id}, attempt)
            return self.store.get_submission(submission_id)
        return self._fail(
            rec, (S.PROCESSING,), "JOB_FAILED",
            str(JobFailed(message, attempt)),
            retry_count=rec.retry_count + 1,
        )

    def _fail(self, rec: SubmissionRecord, expected, code: str, message: str,
              retry_count: Optional[int] = None, response_data=None) -> SubmissionRecord:
        fields = dict(error_message=message, error_code=code, errored_at=self.clock())
        if retry_count is not None:
            fields["retry_count"] = retry_count
        if response_data:
            fields["response_data"] = response_data
        won = self.store.transition(rec.submission_id, expected, S.ERROR, **fields)
        log.error(f"[RECONCILE] permanently failed submission_id={rec.submission_id} code={code}: {message}",
                  extra={"submission_id": rec.submission_id})
        rec = self.store.get_submission(rec.submission_id)
        if won:
            self.notifier.rejected(rec, resolve_document(self.resolver, rec))
        return rec
