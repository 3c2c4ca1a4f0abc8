"""
pdp_core.transport.transport_simulated
--------------------------------------
In-process PDP emulation for development and staging.

Verdicts are deterministic: the reference id is derived from the submission
id and the artifact hash, and the accept/reject outcome from the reference
id alone, so a fresh process reaches the same verdict for a known id.
A submission reports ``processing`` until ``simulation_delay`` seconds have
passed since it was submitted, then ``accepted`` unless its reference id
falls into the ``simulation_error_rate`` percent bucket, in which case
``rejected``. After a restart the submission clock is unknown and the
verdict is given at once.
"""

from __future__ import annotations
from datetime import datetime
from typing import Callable, Dict
import hashlib, threading

from pdp_core.config import PDPSettings
from pdp_core.logger import get_logger
from pdp_core.transport.transport_base import (
    BaseEndpoint, StatusResult, SubmissionMeta, SubmitResult, ACCEPTED, REJECTED, PROCESSING,
)
from pdp_core.utils import to_iso, utcnow

log = get_logger("PDP.Transport.Simulated")


def _bucket(value: str) -> int:
    return int(hashlib.sha256(value.encode("utf-8")).hexdigest()[:8], 16) % 100


class SimulatedEndpoint(BaseEndpoint):
    name = "simulation"

    def __init__(self, settings: PDPSettings, clock: Callable[[], datetime] = utcnow):
        self.settings = settings
        self.clock = clock
        # pdp_id -> submitted_at
        self._submitted: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    def submit(self, artifact: bytes, meta: SubmissionMeta) -> SubmitResult:
        log.info(f"[SIM PDP] submitting submission_id={meta.submission_id} size={len(artifact)}")

        if not artifact:
            return SubmitResult(accepted=False, error="Document invalide pour la simulation PDP",
                                error_code="SIM_INVALID")
        if len(artifact) > self.settings.max_file_size:
            return SubmitResult(
                accepted=False,
                error=f"Document trop volumineux ({len(artifact)} > {self.settings.max_file_size} octets)",
                error_code="SIM_TOO_LARGE",
            )

        now = self.clock()
        digest = hashlib.sha256(f"{meta.submission_id}:{meta.file_hash}".encode("utf-8")).hexdigest()
        pdp_id = f"SIM-{now.year}-{digest[:8].upper()}"
        with self._lock:
            # a replay of the same artifact keeps its original clock
            self._submitted.setdefault(pdp_id, now)

        return SubmitResult(
            accepted=True,
            provider_reference_id=pdp_id,
            provider_reference=f"REF-{pdp_id}",
            response_data={
                "message": "Document soumis avec succès (simulation)",
                "pdp_reference": f"REF-{pdp_id}",
                "processing_time": f"{self.settings.simulation_delay} seconds",
                "mode": "simulation",
            },
        )

    def check_status(self, provider_reference_id: str) -> StatusResult:
        with self._lock:
            submitted_at = self._submitted.get(provider_reference_id)
        now = self.clock()

        if submitted_at is not None:
            elapsed = (now - submitted_at).total_seconds()
            remaining = self.settings.simulation_delay - elapsed
            if remaining > 0:
                return StatusResult(PROCESSING, {
                    "message": "Document en cours de traitement (simulation)",
                    "estimated_completion": f"{int(remaining)} seconds",
                })

        if _bucket(provider_reference_id) < self.settings.simulation_error_rate:
            log.info(f"[SIM PDP] verdict rejected pdp_id={provider_reference_id}")
            return StatusResult(REJECTED, {
                "message": "Document rejeté (simulation)",
                "error_message": "Format de fichier invalide",
                "error_code": "SIM_REJECT",
            })

        log.info(f"[SIM PDP] verdict accepted pdp_id={provider_reference_id}")
        return StatusResult(ACCEPTED, {
            "message": "Document accepté avec succès (simulation)",
            "acceptance_date": to_iso(now),
            "pdp_reference": provider_reference_id,
        })

