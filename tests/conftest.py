from datetime import datetime, timedelta, timezone

import pytest

from pdp_core.config import PDPSettings
from pdp_core.hsm.hsm_simulator import HSMSimulator
from pdp_core.pipeline import build_pipeline
from pdp_core.pipeline.notifications import NotificationSink
from pdp_core.storage.models import DocumentKind, DocumentRef
from pdp_core.storage.providers.memory_provider import InMemoryKeyStore, InMemoryStorage
from pdp_core.transport.transport_base import (
    BaseEndpoint, StatusResult, SubmitResult, ACCEPTED, PROCESSING,
)
from pdp_core.transport.transport_simulated import SimulatedEndpoint


class FakeClock:
    """Callable clock the tests move by hand."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class RecordingSink(NotificationSink):
    def __init__(self, fail=False):
        self.accepted = []
        self.rejected = []
        self.fail = fail

    def notify_accepted(self, submission, document):
        if self.fail:
            raise RuntimeError("mail server down")
        self.accepted.append((submission, document))

    def notify_rejected(self, submission, document):
        if self.fail:
            raise RuntimeError("mail server down")
        self.rejected.append((submission, document))


class FakeEndpoint(BaseEndpoint):
    """
    Scripted PDP. ``submit_script`` / ``status_script`` are consumed in
    order; an Exception instance is raised, anything else returned. Once a
    script is exhausted the last-resort defaults apply (acknowledge / accept).
    """

    name = "fake"

    def __init__(self, submit_script=None, status_script=None):
        self.submit_script = list(submit_script or [])
        self.status_script = list(status_script or [])
        self.submissions = []
        self.status_checks = []

    def submit(self, artifact, meta):
        self.submissions.append((artifact, meta))
        if self.submit_script:
            step = self.submit_script.pop(0)
            if isinstance(step, Exception):
                raise step
            return step
        n = len(self.submissions)
        return SubmitResult(accepted=True, provider_reference_id=f"FAKE-{n}",
                            provider_reference=f"REF-FAKE-{n}", response_data={"id": f"FAKE-{n}"})

    def check_status(self, provider_reference_id):
        self.status_checks.append(provider_reference_id)
        if self.status_script:
            step = self.status_script.pop(0)
            if isinstance(step, Exception):
                raise step
            return step
        return StatusResult(ACCEPTED, {"message": "ok"})


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return PDPSettings(
        simulation_delay=0,
        retry_attempts=3,
        retry_delay=60,
        reconcile_interval=120,
        webhook_secret="whsec-test",
    )


@pytest.fixture
def store():
    return InMemoryStorage()


@pytest.fixture
def keystore():
    return InMemoryKeyStore()


@pytest.fixture
def simulator(keystore):
    return HSMSimulator(keystore, "unit-test-secret")


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def fake_endpoint():
    return FakeEndpoint()


@pytest.fixture
def artifact(tmp_path):
    path = tmp_path / "INV-2024-001.pdf"
    path.write_bytes(b"%PDF-1.7 factur-x INV-2024-001")
    return str(path)


@pytest.fixture
def invoice():
    return DocumentRef(DocumentKind.INVOICE, "42")


def make_pipeline(settings, store, clock, sink, endpoint=None, **kwargs):
    """Pipeline on the in-memory store; ``endpoint`` replaces the simulation endpoint."""
    endpoints = {
        "simulation": endpoint or SimulatedEndpoint(settings, clock=clock),
        "production": endpoint or FakeEndpoint(),
    }
    return build_pipeline(settings, store=store, endpoints=endpoints, in_app=sink, clock=clock, **kwargs)


@pytest.fixture
def pipeline(settings, store, clock, sink, fake_endpoint):
    return make_pipeline(settings, store, clock, sink, endpoint=fake_endpoint)


@pytest.fixture
def sim_pipeline(settings, store, clock, sink):
    return make_pipeline(settings, store, clock, sink)
