# pdp_core/pipeline/__init__.py
from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional

from pdp_core.config import PDPSettings
from pdp_core.hsm.hsm_base import SigningProvider
from pdp_core.pipeline.dispatcher import SubmissionDispatcher
from pdp_core.pipeline.documents import (
    Artifact, DocumentAssembler, DocumentResolver, load_artifact, parse_document_ref,
)
from pdp_core.pipeline.errors import (
    ArtifactUnavailable, InvalidWebhookSignature, JobFailed, PipelineError, SubmissionNotFound, UnknownVerdict,
)
from pdp_core.pipeline.notifications import LoggingNotificationSink, NotificationFanout, NotificationSink
from pdp_core.pipeline.reconciler import ResponseReconciler
from pdp_core.pipeline.scheduler import DISPATCH, RECONCILE, RetryPolicy, TaskScheduler
from pdp_core.pipeline.worker import PipelineWorker
from pdp_core.storage.providers.sqlite_provider import SQLiteStorage
from pdp_core.transport.transport_base import BaseEndpoint
from pdp_core.transport.transport_http import HTTPEndpoint
from pdp_core.transport.transport_simulated import SimulatedEndpoint
from pdp_core.utils import utcnow


@dataclass
class Pipeline:
    settings: PDPSettings
    store: object
    scheduler: TaskScheduler
    dispatcher: SubmissionDispatcher
    reconciler: ResponseReconciler
    worker: PipelineWorker
    endpoints: Dict[str, BaseEndpoint]

    def close(self) -> None:
        for endpoint in self.endpoints.values():
            endpoint.close()
        close = getattr(self.store, "close", None)
        if close is not None:
            close()


def build_pipeline(
    settings: Optional[PDPSettings] = None,
    store=None,
    endpoints: Optional[Dict[str, BaseEndpoint]] = None,
    signer: Optional[SigningProvider] = None,
    assembler: Optional[DocumentAssembler] = None,
    resolver: Optional[DocumentResolver] = None,
    in_app: Optional[NotificationSink] = None,
    email: Optional[NotificationSink] = None,
    clock: Callable[[], datetime] = utcnow,
) -> Pipeline:
    """
    Wire dispatcher, reconciler and worker around one store and one
    scheduler. Every collaborator is passed in explicitly; defaults come
    from ``PDPSettings``:

      - store     → SQLiteStorage(settings.db_path)
      - endpoints → one per mode, both always available since each record
                    carries its own mode
      - signer    → none; artifacts go out unsigned unless a provider and
                    ``settings.signing_key_id`` are given
    """
    settings = settings or PDPSettings.from_env()
    store = store if store is not None else SQLiteStorage(settings.db_path)
    if endpoints is None:
        endpoints = {
            "simulation": SimulatedEndpoint(settings, clock=clock),
            "production": HTTPEndpoint(settings),
        }

    scheduler = TaskScheduler(store, RetryPolicy.from_settings(settings), clock=clock)
    notifier = NotificationFanout(in_app=in_app, email=email, email_enabled=settings.email_notifications)

    dispatcher = SubmissionDispatcher(
        store, endpoints, scheduler, settings,
        assembler=assembler,
        signer=signer,
        signing_key_id=settings.signing_key_id if signer is not None else None,
        notifier=notifier,
        resolver=resolver,
        clock=clock,
    )
    reconciler = ResponseReconciler(
        store, endpoints, scheduler, settings,
        notifier=notifier, resolver=resolver, clock=clock,
    )
    worker = PipelineWorker(scheduler, dispatcher, reconciler, clock=clock)
    return Pipeline(settings, store, scheduler, dispatcher, reconciler, worker, endpoints)


__all__ = [
    "Pipeline",
    "build_pipeline",
    "SubmissionDispatcher",
    "ResponseReconciler",
    "PipelineWorker",
    "TaskScheduler",
    "RetryPolicy",
    "DISPATCH",
    "RECONCILE",
    "Artifact",
    "DocumentAssembler",
    "DocumentResolver",
    "load_artifact",
    "parse_document_ref",
    "NotificationSink",
    "LoggingNotificationSink",
    "NotificationFanout",
    "PipelineError",
    "ArtifactUnavailable",
    "InvalidWebhookSignature",
    "JobFailed",
    "SubmissionNotFound",
    "UnknownVerdict",
]
