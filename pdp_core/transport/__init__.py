# pdp_core/transport/__init__.py
from __future__ import annotations
from typing import Optional

from pdp_core.config import PDPSettings
from pdp_core.transport.transport_base import (
    BaseEndpoint, TransportError, TransientTransportError, PermanentSubmissionError,
    SubmissionMeta, SubmitResult, StatusResult,
)
from pdp_core.transport.transport_http import HTTPEndpoint
from pdp_core.transport.transport_simulated import SimulatedEndpoint


def endpoint_factory(settings: Optional[PDPSettings] = None, mode: Optional[str] = None) -> BaseEndpoint:
    """
    mode:
      - "simulation" → in-process deterministic PDP
      - "production" → real PDP over HTTPS

    ``mode`` overrides ``settings.mode``; it is never guessed from other values.
    """
    settings = settings or PDPSettings.from_env()
    mode = (mode or settings.mode).lower()

    if mode == "simulation":
        return SimulatedEndpoint(settings)

    if mode == "production":
        return HTTPEndpoint(settings)

    raise ValueError(f"unknown PDP mode: {mode}")


__all__ = [
    "endpoint_factory",
    "BaseEndpoint",
    "HTTPEndpoint",
    "SimulatedEndpoint",
    "TransportError",
    "TransientTransportError",
    "PermanentSubmissionError",
    "SubmissionMeta",
    "SubmitResult",
    "StatusResult",
]
