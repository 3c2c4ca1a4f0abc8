from __future__ import annotations
from typing import Any, Iterable, Optional

from pdp_core.logger import get_logger
from pdp_core.storage.models import SubmissionRecord

log = get_logger("PDP.Notify")


class NotificationSink:
    # Interface: informed of terminal outcomes only.
    def notify_accepted(self, submission: SubmissionRecord, document: Any) -> None: ...
    def notify_rejected(self, submission: SubmissionRecord, document: Any) -> None: ...


class LoggingNotificationSink(NotificationSink):
    """Default sink when the host application does not plug one in."""

    def notify_accepted(self, submission, document):
        log.info(f"[NOTIFY] accepted submission_id={submission.submission_id} pdp_id={submission.pdp_id}")

    def notify_rejected(self, submission, document):
        log.info(
            f"[NOTIFY] rejected submission_id={submission.submission_id} "
            f"code={submission.error_code} message={submission.error_message}"
        )


class NotificationFanout:
    """
    Delivers an outcome to the in-app sink and, when enabled, the
    transactional email sink. Each delivery is isolated: a failure is
    logged and never reaches the caller or the other sink.
    """

    def __init__(self, in_app: Optional[NotificationSink] = None,
                 email: Optional[NotificationSink] = None, email_enabled: bool = True):
        self.in_app = in_app or LoggingNotificationSink()
        self.email = email
        self.email_enabled = email_enabled

    def _sinks(self) -> Iterable[NotificationSink]:
        yield self.in_app
        if self.email is not None and self.email_enabled:
            yield self.email

    def accepted(self, submission: SubmissionRecord, document: Any) -> None:
        for sink in self._sinks():
            _deliver(sink.notify_accepted, "accepted", submission, document)

    def rejected(self, submission: SubmissionRecord, document: Any) -> None:
        for sink in self._sinks():
            _deliver(sink.notify_rejected, "rejected", submission, document)


def _deliver(call, outcome: str, submission: SubmissionRecord, document: Any) -> None:
    try:
        call(submission, document)
    except Exception:
        log.exception(
            f"[NOTIFY] failed to deliver {outcome} notification submission_id={submission.submission_id}",
            extra={"submission_id": submission.submission_id},
        )


def resolve_document(resolver, submission: SubmissionRecord) -> Any:
    """Business document for a notification; falls back to the bare reference."""
    ref = submission.document_ref
    if resolver is None:
        return ref
    try:
        return resolver.resolve(ref)
    except Exception:
        log.exception(f"[NOTIFY] could not resolve {ref} submission_id={submission.submission_id}")
        return ref
