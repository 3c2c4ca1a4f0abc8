"""
pdp_core.pipeline.dispatcher
----------------------------
First leg of a submission: artifact -> (signature) -> PDP.

One call to ``dispatch`` makes at most one transmission and always leaves
a state change on the record, whatever the outcome:

  pending|error --claim--> submitting --ack--> submitted [--> processing]
                                     \--fail--> error (+ retry task, or JOB_FAILED)

Records that already reached the endpoint (``pdp_id`` set, or status
submitted or later) are never transmitted again.

A ``submitting`` claim older than ``claim_timeout`` belongs to a worker that
died mid-dispatch. It is released to ``error`` (``STALE_CLAIM``) and retried
like a transport failure.
"""

from __future__ import annotations
from datetime import datetime, timedelta
from typing import Callable, Mapping, Optional

from pdp_core.config import PDPSettings
from pdp_core.hsm.hsm_base import HSMError, HSMUnavailable, SigningProvider
from pdp_core.logger import get_logger
from pdp_core.pipeline.documents import Artifact, DocumentAssembler, DocumentResolver, load_artifact
from pdp_core.pipeline.errors import ArtifactUnavailable, JobFailed, SubmissionNotFound
from pdp_core.pipeline.notifications import NotificationFanout, resolve_document
from pdp_core.pipeline.scheduler import DISPATCH, TaskScheduler
from pdp_core.storage.models import (
    DocumentRef, SubmissionRecord, SubmissionStatus, TRANSMITTED,
)
from pdp_core.storage.provider import SubmissionStore
from pdp_core.transport.transport_base import (
    BaseEndpoint, PermanentSubmissionError, SubmissionMeta, TransientTransportError,
)
from pdp_core.utils import new_submission_id, utcnow

log = get_logger("PDP.Dispatcher")

S = SubmissionStatus


class SubmissionDispatcher:
    def __init__(
        self,
        store: SubmissionStore,
        endpoints: Mapping[str, BaseEndpoint],
        scheduler: TaskScheduler,
        settings: PDPSettings,
        assembler: Optional[DocumentAssembler] = None,
        signer: Optional[SigningProvider] = None,
        signing_key_id: Optional[str] = None,
        signing_algorithm: str = "RS256",
        notifier: Optional[NotificationFanout] = None,
        resolver: Optional[DocumentResolver] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        if signer is not None and not signing_key_id:
            raise ValueError("a signing provider needs a signing_key_id")
        self.store = store
        self.endpoints = endpoints
        self.scheduler = scheduler
        self.settings = settings
        self.assembler = assembler
        self.signer = signer
        self.signing_key_id = signing_key_id
        self.signing_algorithm = signing_algorithm
        self.notifier = notifier or NotificationFanout()
        self.resolver = resolver
        self.clock = clock

    @property
    def policy(self):
        return self.scheduler.policy

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    def create_submission(self, document: DocumentRef, user_id: Optional[str] = None,
                          mode: Optional[str] = None, submission_id: Optional[str] = None) -> SubmissionRecord:
        mode = mode or self.settings.mode
        if mode not in self.endpoints:
            raise ValueError(f"no endpoint configured for mode {mode!r}")
        rec = SubmissionRecord(
            submission_id=submission_id or new_submission_id(self.clock()),
            document_kind=document.kind,
            document_id=document.id,
            user_id=user_id,
            mode=mode,
            created_at=self.clock(),
            updated_at=self.clock(),
        )
        rec = self.store.create_submission(rec)
        log.info(f"[DISPATCH] created submission_id={rec.submission_id} document={document} mode={mode}")
        return rec

    def enqueue(self, submission_id: str, document_path: Optional[str] = None, delay: float = 0):
        """Hand the submission to the worker lane instead of dispatching inline."""
        return self.scheduler.schedule_dispatch(submission_id, document_path, delay=delay)

    def dispatch(self, submission_id: str, document_path: Optional[str] = None) -> SubmissionRecord:
        rec = self.store.get_submission(submission_id)
        if rec is None:
            raise SubmissionNotFound(submission_id)

        if rec.pdp_id or rec.status in TRANSMITTED:
            log.info(f"[DISPATCH] already transmitted, skipping submission_id={submission_id} status={rec.status.value}")
            return rec
        if rec.status == S.SUBMITTING:
            if self._claim_expired(rec):
                return self._release_claim(rec)
            log.info(f"[DISPATCH] dispatch in flight, skipping submission_id={submission_id}")
            return rec
        if rec.status == S.ERROR and (rec.is_terminal or not self.policy.can_retry(rec.retry_count)):
            log.info(f"[DISPATCH] permanently failed, skipping submission_id={submission_id}")
            return rec

        attempt = rec.retry_count + 1
        now = self.clock()
        claimed = self.store.transition(
            submission_id, (S.PENDING, S.ERROR), S.SUBMITTING,
            submitted_at=now, error_message=None, error_code=None, errored_at=None,
        )
        if not claimed:
            log.info(f"[DISPATCH] lost claim submission_id={submission_id}")
            return self.store.get_submission(submission_id)

        log.info(f"[DISPATCH] start submission_id={submission_id} attempt={attempt}",
                 extra={"submission_id": submission_id, "attempt": attempt})
        try:
            artifact = self._obtain_artifact(rec, document_path)
            self.store.update_submission(
                submission_id,
                artifact_path=artifact.path,
                original_filename=artifact.filename,
                file_size=artifact.size,
                file_hash=artifact.file_hash,
            )

            duplicate = self._find_duplicate(submission_id, artifact.file_hash)
            if duplicate is not None:
                return self._fail(
                    submission_id, "DUPLICATE_SUBMISSION",
                    f"artifact already transmitted by {duplicate.submission_id}",
                    notify=False,
                )

            signature = self._sign(artifact)
            meta = SubmissionMeta(
                submission_id=submission_id,
                document_kind=rec.document_kind.value,
                document_id=rec.document_id,
                filename=artifact.filename,
                file_hash=artifact.file_hash,
                file_size=artifact.size,
                signature=signature,
                signing_key_id=self.signing_key_id if signature else None,
            )
            result = self._endpoint(rec).submit(artifact.content, meta)
            if not result.accepted:
                raise PermanentSubmissionError(
                    result.error or "Erreur lors de la soumission PDP",
                    code=result.error_code or "SUBMISSION_REFUSED",
                    response_data=result.response_data,
                )
            if not result.provider_reference_id:
                raise PermanentSubmissionError(
                    "Le PDP a accepté la transmission sans identifiant",
                    code="MISSING_PDP_ID",
                    response_data=result.response_data,
                )
        except HSMUnavailable as e:
            return self._fail_or_retry(submission_id, "SIGNING_UNAVAILABLE", str(e), attempt, document_path)
        except HSMError as e:
            return self._fail(submission_id, "SIGNING_ERROR", str(e))
        except PermanentSubmissionError as e:
            return self._fail(submission_id, e.code, str(e), response_data=e.response_data)
        except ArtifactUnavailable as e:
            return self._fail_or_retry(submission_id, "ARTIFACT_UNAVAILABLE", str(e), attempt, document_path)
        except TransientTransportError as e:
            return self._fail_or_retry(submission_id, "TRANSPORT_ERROR", str(e), attempt, document_path)
        except Exception as e:
            log.exception(f"[DISPATCH] unexpected failure submission_id={submission_id}")
            return self._fail_or_retry(submission_id, "DISPATCH_ERROR", f"{e.__class__.__name__}: {e}",
                                       attempt, document_path)

        return self._acknowledged(rec, result, signature)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------
    def _endpoint(self, rec: SubmissionRecord) -> BaseEndpoint:
        try:
            return self.endpoints[rec.mode]
        except KeyError:
            raise PermanentSubmissionError(f"no endpoint for mode {rec.mode}", code="MODE_UNAVAILABLE") from None

    def _obtain_artifact(self, rec: SubmissionRecord, document_path: Optional[str]) -> Artifact:
        path = document_path or rec.artifact_path
        if not path:
            if self.assembler is None:
                raise ArtifactUnavailable("no artifact supplied and no document assembler configured")
            path, error = self.assembler.produce_artifact(rec.document_ref)
            if error or not path:
                raise ArtifactUnavailable(error or "Impossible de générer le document")
        return load_artifact(path)

    def _find_duplicate(self, submission_id: str, file_hash: str) -> Optional[SubmissionRecord]:
        for other in self.store.find_by_hash(file_hash, TRANSMITTED):
            if other.submission_id != submission_id:
                return other
        return None

    def _sign(self, artifact: Artifact) -> Optional[str]:
        if self.signer is None:
            return None
        return self.signer.sign(artifact.content, self.signing_key_id, self.signing_algorithm)

    def _acknowledged(self, rec: SubmissionRecord, result, signature: Optional[str]) -> SubmissionRecord:
        submission_id = rec.submission_id
        ack = dict(
            pdp_id=result.provider_reference_id,
            pdp_reference=result.provider_reference,
            response_data=result.response_data,
            signature=signature,
            signing_key_id=self.signing_key_id if signature else None,
        )
        won = self.store.transition(submission_id, (S.SUBMITTING,), S.SUBMITTED, **ack)
        if not won and self.store.get_submission(submission_id).error_code == "STALE_CLAIM":
            # released as stale while the endpoint was answering; keep the ack
            won = self.store.transition(
                submission_id, (S.ERROR,), S.SUBMITTED,
                error_message=None, error_code=None, errored_at=None, **ack
            )
        if not won:
            # should not happen while we hold the submitting claim
            log.error(f"[DISPATCH] state changed under an active claim submission_id={submission_id}")
            return self.store.get_submission(submission_id)

        log.info(f"[DISPATCH] submitted submission_id={submission_id} pdp_id={result.provider_reference_id}",
                 extra={"submission_id": submission_id, "pdp_id": result.provider_reference_id})

        if rec.mode == "production":
            # verdict arrives by webhook; polling is the fallback
            self.store.transition(submission_id, (S.SUBMITTED,), S.PROCESSING)
            self.scheduler.schedule_reconcile(submission_id)
        else:
            self.scheduler.schedule_reconcile(submission_id, delay=self.settings.simulation_delay)
        return self.store.get_submission(submission_id)

    # ------------------------------------------------------------------
    # Failure paths
    # ------------------------------------------------------------------
    def release_stale_claims(self) -> int:
        """Release every expired ``submitting`` claim; returns how many were released."""
        released = 0
        for rec in self.store.pending_submissions():
            if rec.status == S.SUBMITTING and self._claim_expired(rec):
                if self._release_claim(rec).status != S.SUBMITTING:
                    released += 1
        return released

    def _claim_expired(self, rec: SubmissionRecord) -> bool:
        if rec.submitted_at is None:
            return True
        return self.clock() - rec.submitted_at > timedelta(seconds=self.policy.claim_timeout)

    def _release_claim(self, rec: SubmissionRecord) -> SubmissionRecord:
        log.warning(f"[DISPATCH] releasing stale claim submission_id={rec.submission_id} since={rec.submitted_at}",
                    extra={"submission_id": rec.submission_id})
        return self._fail_or_retry(
            rec.submission_id, "STALE_CLAIM",
            f"Soumission interrompue (aucune réponse depuis {self.policy.claim_timeout} secondes)",
            rec.retry_count + 1, None,
        )

    def _fail_or_retry(self, submission_id: str, code: str, message: str, attempt: int,
                       document_path: Optional[str]) -> SubmissionRecord:
        if self.policy.can_retry(attempt):
            now = self.clock()
            won = self.store.transition(
                submission_id, (S.SUBMITTING,), S.ERROR,
                error_message=message, error_code=code, errored_at=now, retry_count=attempt,
            )
            if not won:
                log.info(f"[DISPATCH] lost claim before retry submission_id={submission_id}")
                return self.store.get_submission(submission_id)
            log.warning(f"[DISPATCH] attempt {attempt} failed submission_id={submission_id} code={code}: {message}")
            payload = {"submission_id": submission_id}
            if document_path:
                payload["document_path"] = document_path
            self.scheduler.schedule_retry(DISPATCH, payload, attempt)
            return self.store.get_submission(submission_id)

        return self._fail(
            submission_id, "JOB_FAILED",
            str(JobFailed(message, attempt)),
            retry_count=attempt,
        )

    def _fail(self, submission_id: str, code: str, message: str, notify: bool = True,
              retry_count: Optional[int] = None, response_data=None) -> SubmissionRecord:
        rec = self.store.get_submission(submission_id)
        fields = dict(
            error_message=message,
            error_code=code,
            errored_at=self.clock(),
            retry_count=retry_count if retry_count is not None else rec.retry_count + 1,
        )
        if response_data:
            fields["response_data"] = response_data
        won = self.store.transition(submission_id, (S.SUBMITTING,), S.ERROR, **fields)
        log.error(f"[DISPATCH] permanently failed submission_id={submission_id} code={code}: {message}",
                  extra={"submission_id": submission_id})
        rec = self.store.get_submission(submission_id)
        if won and notify:
            self.notifier.rejected(rec, resolve_document(self.resolver, rec))
        return rec
