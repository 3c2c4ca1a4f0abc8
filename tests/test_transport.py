import pytest
import requests

from pdp_core.config import PDPSettings
from pdp_core.transport import (
    HTTPEndpoint, PermanentSubmissionError, SimulatedEndpoint, SubmissionMeta, TransientTransportError,
    endpoint_factory,
)
from pdp_core.utils import sha256

CONTENT = b"%PDF-1.7 factur-x INV-2024-001"


def _meta(submission_id="SUB-ABC123", content=CONTENT):
    return SubmissionMeta(submission_id=submission_id, document_kind="invoice", document_id="42",
                          filename="INV-2024-001.pdf", file_hash=sha256(content), file_size=len(content))


# ---------------------------------------------------------------------------
# Simulation
# ---------------------------------------------------------------------------

def test_factory_modes(monkeypatch):
    monkeypatch.delenv("PDP_MODE", raising=False)
    assert isinstance(endpoint_factory(), SimulatedEndpoint)
    assert isinstance(endpoint_factory(PDPSettings(), mode="production"), HTTPEndpoint)
    monkeypatch.setenv("PDP_MODE", "production")
    assert isinstance(endpoint_factory(), HTTPEndpoint)
    with pytest.raises(ValueError):
        endpoint_factory(PDPSettings(), mode="staging")


def test_simulated_reference_is_deterministic(clock):
    settings = PDPSettings(simulation_delay=30)
    a = SimulatedEndpoint(settings, clock=clock).submit(CONTENT, _meta())
    b = SimulatedEndpoint(settings, clock=clock).submit(CONTENT, _meta())
    assert a.accepted and b.accepted
    assert a.provider_reference_id == b.provider_reference_id
    assert a.provider_reference_id.startswith("SIM-2024-")
    assert a.provider_reference == f"REF-{a.provider_reference_id}"


def test_simulated_processing_until_delay(clock):
    endpoint = SimulatedEndpoint(PDPSettings(simulation_delay=30), clock=clock)
    pdp_id = endpoint.submit(CONTENT, _meta()).provider_reference_id

    assert endpoint.check_status(pdp_id).status == "processing"
    clock.advance(29)
    assert endpoint.check_status(pdp_id).status == "processing"
    clock.advance(1)
    assert endpoint.check_status(pdp_id).status == "accepted"


def test_simulated_error_rate_rejects_with_message(clock):
    endpoint = SimulatedEndpoint(PDPSettings(simulation_delay=0, simulation_error_rate=100), clock=clock)
    pdp_id = endpoint.submit(CONTENT, _meta()).provider_reference_id
    result = endpoint.check_status(pdp_id)
    assert result.status == "rejected"
    assert result.error_message == "Format de fichier invalide"
    assert result.error_code == "SIM_REJECT"


def test_simulated_verdict_survives_restart(clock):
    settings = PDPSettings(simulation_delay=30, simulation_error_rate=50)
    first = SimulatedEndpoint(settings, clock=clock)
    pdp_ids = [first.submit(CONTENT, _meta(submission_id=f"SUB-{n}")).provider_reference_id for n in range(20)]
    clock.advance(30)
    before = [first.check_status(p).status for p in pdp_ids]

    restarted = SimulatedEndpoint(settings, clock=clock)
    assert [restarted.check_status(p).status for p in pdp_ids] == before
    assert set(before) == {"accepted", "rejected"}


def test_simulated_validation(clock):
    endpoint = SimulatedEndpoint(PDPSettings(max_file_size=10), clock=clock)
    empty = endpoint.submit(b"", _meta(content=b""))
    assert not empty.accepted and empty.error_code == "SIM_INVALID"
    big = endpoint.submit(CONTENT, _meta())
    assert not big.accepted and big.error_code == "SIM_TOO_LARGE"


# ---------------------------------------------------------------------------
# Production HTTP client
# ---------------------------------------------------------------------------

class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload if payload is not None else {}
        self.text = str(self._payload)

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        return self._payload


class FakeSession:
    def __init__(self, responses, token_payload=None):
        self.responses = list(responses)
        self.token_payload = token_payload or {"access_token": "tok-1", "expires_in": 3600}
        self.token_requests = 0
        self.requests = []
        self.closed = False

    def post(self, url, data=None, timeout=None):
        self.token_requests += 1
        return FakeResponse(200, dict(self.token_payload))

    def request(self, method, url, headers=None, timeout=None, **kwargs):
        self.requests.append((method, url, headers, kwargs))
        step = self.responses.pop(0)
        if isinstance(step, Exception):
            raise step
        return step

    def close(self):
        self.closed = True


@pytest.fixture
def prod_settings():
    return PDPSettings(mode="production", base_url="https://pdp.example.test",
                       client_id="client", client_secret="secret", timeout=5)


def test_http_submit_and_status(prod_settings):
    session = FakeSession([
        FakeResponse(201, {"id": "PDP-77", "reference": "REF-77"}),
        FakeResponse(200, {"id": "PDP-77", "status": "ACCEPTED"}),
    ])
    endpoint = HTTPEndpoint(prod_settings, session=session)

    result = endpoint.submit(CONTENT, _meta())
    assert result.accepted
    assert result.provider_reference_id == "PDP-77"
    assert result.provider_reference == "REF-77"

    method, url, headers, kwargs = session.requests[0]
    assert (method, url) == ("POST", "https://pdp.example.test/api/v1/invoices")
    assert headers["Authorization"] == "Bearer tok-1"
    assert kwargs["json"]["metadata"]["submission_id"] == "SUB-ABC123"
    assert kwargs["json"]["file_hash"] == sha256(CONTENT)

    assert endpoint.check_status("PDP-77").status == "accepted"
    # token cached between calls
    assert session.token_requests == 1


def test_http_transient_failures(prod_settings):
    session = FakeSession([
        requests.Timeout("slow"),
        requests.ConnectionError("refused"),
        FakeResponse(503, {"error": "maintenance"}),
        FakeResponse(429, {}),
    ])
    endpoint = HTTPEndpoint(prod_settings, session=session)
    for _ in range(4):
        with pytest.raises(TransientTransportError):
            endpoint.submit(CONTENT, _meta())


def test_http_permanent_refusal_keeps_code(prod_settings):
    session = FakeSession([FakeResponse(422, {"error_code": "INVALID_SIRET", "error_message": "SIRET invalide"})])
    endpoint = HTTPEndpoint(prod_settings, session=session)
    with pytest.raises(PermanentSubmissionError) as exc:
        endpoint.submit(CONTENT, _meta())
    assert exc.value.code == "INVALID_SIRET"
    assert str(exc.value) == "SIRET invalide"


def test_http_401_drops_token(prod_settings):
    session = FakeSession([FakeResponse(401, {}), FakeResponse(200, {"status": "processing"})])
    endpoint = HTTPEndpoint(prod_settings, session=session)
    with pytest.raises(TransientTransportError):
        endpoint.check_status("PDP-77")
    assert endpoint.check_status("PDP-77").status == "processing"
    assert session.token_requests == 2


def test_http_without_credentials_is_permanent():
    endpoint = HTTPEndpoint(PDPSettings(mode="production"), session=FakeSession([]))
    with pytest.raises(PermanentSubmissionError) as exc:
        endpoint.submit(CONTENT, _meta())
    assert exc.value.code == "AUTH_CONFIG"
