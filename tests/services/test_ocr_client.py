from __future__ import annotations

import pandas as pd
import pytest
import requests

from payrecon.cleaning.clean_claims import claim_from_candidate
from payrecon.core.config import OcrConfig
from payrecon.core.errors import OcrError
from payrecon.services import ocr_client
from payrecon.services.ocr_client import OcrClient, call_with_backoff, candidate_from_payload


PAYLOAD = {
    "transactionCode": "FT24015ABC",
    "amount": "1.250.000",
    "pointOfSaleName": "PVD 01",
    "invoiceNumber": "000123",
}


class FakeResponse:
    def __init__(self, status_code: int, payload=None, text: str = "") -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no JSON body")
        return self._payload


class FakeSession:
    """Replays canned responses (or raises canned exceptions) in order."""

    def __init__(self, *outcomes) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[dict] = []

    def post(self, url, headers=None, json=None, timeout=None):
        self.calls.append({"url": url, "headers": headers, "json": json, "timeout": timeout})
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def sleeps(monkeypatch: pytest.MonkeyPatch) -> list[float]:
    recorded: list[float] = []
    monkeypatch.setattr(ocr_client.time, "sleep", recorded.append)
    return recorded


def _client(session: FakeSession) -> OcrClient:
    return OcrClient(OcrConfig(url="http://ocr.test/extract", api_key="secret"), session=session)


def test_extract_returns_validated_candidate(sleeps: list[float]) -> None:
    session = FakeSession(FakeResponse(200, PAYLOAD))

    candidate = _client(session).extract("data:image/png;base64,iVBORw0KGgoAAAA")

    assert candidate.transaction_code == "FT24015ABC"
    assert candidate.amount == 1250000.0
    assert candidate.point_of_sale_name == "PVD 01"
    assert candidate.invoice_number == "000123"
    call = session.calls[0]
    assert call["json"] == {"image": "iVBORw0KGgoAAAA", "mime_type": "image/png"}
    assert call["headers"]["Authorization"] == "Bearer secret"
    assert sleeps == []


def test_extract_retries_rate_limits_and_overload(sleeps: list[float]) -> None:
    session = FakeSession(
        FakeResponse(503, text="Service Unavailable"),
        FakeResponse(429, text="Too Many Requests"),
        FakeResponse(200, PAYLOAD),
    )

    candidate = _client(session).extract("/9j/4AAQSkZJRg")

    assert candidate.transaction_code == "FT24015ABC"
    assert len(session.calls) == 3
    assert session.calls[0]["json"]["mime_type"] == "image/jpeg"
    assert sleeps == [1.0, 2.0]


def test_extract_retries_network_errors(sleeps: list[float]) -> None:
    session = FakeSession(requests.ConnectionError("reset by peer"), FakeResponse(200, PAYLOAD))

    candidate = _client(session).extract("abc")

    assert candidate.amount == 1250000.0
    assert sleeps == [1.0]


def test_extract_gives_up_after_max_attempts(sleeps: list[float]) -> None:
    session = FakeSession(*[FakeResponse(500, text="model is overloaded")] * 3)

    with pytest.raises(OcrError) as excinfo:
        _client(session).extract("abc")

    assert excinfo.value.status_code == 500
    assert excinfo.value.retryable is True
    assert len(session.calls) == 3
    assert sleeps == [1.0, 2.0]


def test_extract_does_not_retry_client_errors(sleeps: list[float]) -> None:
    session = FakeSession(FakeResponse(400, text="bad image"))

    with pytest.raises(OcrError) as excinfo:
        _client(session).extract("abc")

    assert excinfo.value.retryable is False
    assert len(session.calls) == 1
    assert sleeps == []


def test_extract_reads_json_embedded_in_text(sleeps: list[float]) -> None:
    text = 'Result:\n```json\n{"transaction_code": "FT1", "amount": 500000}\n```'
    session = FakeSession(FakeResponse(200, {"text": text}))

    candidate = _client(session).extract("abc")

    assert candidate.transaction_code == "FT1"
    assert candidate.amount == 500000.0


def test_candidate_without_code_or_amount_is_an_error() -> None:
    with pytest.raises(OcrError, match="no transaction code"):
        candidate_from_payload({"amount": 500000})
    with pytest.raises(OcrError, match="no usable amount"):
        candidate_from_payload({"transaction_code": "FT1", "amount": "n/a"})


def test_client_requires_endpoint() -> None:
    with pytest.raises(OcrError):
        OcrClient(OcrConfig(url=None))


def test_call_with_backoff_uses_injected_sleep() -> None:
    waits: list[float] = []
    attempts = iter([OcrError("busy", retryable=True), "ok"])

    def flaky():
        outcome = next(attempts)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    assert call_with_backoff(flaky, base_delay=0.5, sleep=waits.append) == "ok"
    assert waits == [0.5]


def test_ocr_config_from_env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.setenv("PAYRECON_OCR_URL", "http://ocr.internal/extract")
    monkeypatch.setenv("PAYRECON_OCR_API_KEY", "k")
    monkeypatch.setenv("PAYRECON_OCR_TIMEOUT", "12")

    config = OcrConfig.from_env(dotenv_path=str(tmp_path / ".env"))

    assert config.url == "http://ocr.internal/extract"
    assert config.api_key == "k"
    assert config.timeout_seconds == 12.0
    assert config.max_attempts == 3


def test_claim_from_candidate_builds_pending_claim() -> None:
    candidate = candidate_from_payload(dict(PAYLOAD, timestamp="05/01/2024 10:30"))

    claim = claim_from_candidate(candidate, "c1", agent_id="a1", now=pd.Timestamp("2024-02-01", tz="UTC"))

    assert claim["status"] == "PENDING"
    assert claim["amount"] == 1250000.0
    assert claim["timestamp"] == "2024-01-05T03:30:00+00:00"
    assert claim["agent_id"] == "a1"
