"""
ocr_client.py

Client for the OCR collaborator that turns a bill screenshot into a
candidate claim.

The OCR service itself is a black box behind an HTTP endpoint: we post the
image as base64 JSON and get back the extracted fields. This module owns the
transport (requests), the retry policy and the validation of what comes back.
A candidate without a settlement code or a usable amount is an error, never a
silently downgraded claim.

Retry policy
------------
`call_with_backoff` retries only errors flagged retryable: HTTP 429/503,
bodies reporting overload/unavailability/rate limiting, and network errors
(connection failures, timeouts). Waits are base_delay * 2**attempt.

Public API
----------
- OcrCandidate
- OcrClient(config)
  - extract(image_base64, mime_type=None) -> OcrCandidate
- call_with_backoff(func, max_attempts=3, base_delay=1.0, sleep=None)
- candidate_from_payload(payload) -> OcrCandidate
"""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, TypeVar

import requests

from ..core.config import OcrConfig
from ..core.errors import OcrError
from ..core.normalizers import cell_text, parse_amount

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RETRYABLE_TEXT_RE = re.compile(r"overloaded|unavailable|rate limit|network", re.IGNORECASE)
_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")

# camelCase keys are what the upstream OCR prompt produces
_FIELD_ALIASES = {
    "transaction_code": ("transaction_code", "transactionCode"),
    "amount": ("amount",),
    "invoice_number": ("invoice_number", "invoiceNumber"),
    "point_of_sale_name": ("point_of_sale_name", "pointOfSaleName"),
    "bank_account": ("bank_account", "bankAccount"),
    "payment_method": ("payment_method", "paymentMethod"),
    "timestamp": ("timestamp",),
}


@dataclass(frozen=True)
class OcrCandidate:
    """Fields read from a bill screenshot."""

    transaction_code: str
    amount: float
    invoice_number: str | None = None
    point_of_sale_name: str | None = None
    bank_account: str | None = None
    payment_method: str | None = None
    timestamp: str | None = None


def call_with_backoff(
    func: Callable[[], T],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    sleep: Callable[[float], None] | None = None,
) -> T:
    """
    Call `func`, retrying retryable OcrErrors with exponential backoff.

    Non-retryable errors and the error of the last attempt propagate.
    """
    for attempt in range(max_attempts):
        try:
            return func()
        except OcrError as exc:
            if not exc.retryable or attempt == max_attempts - 1:
                raise
            delay = base_delay * 2 ** attempt
            logger.warning(
                "OCR attempt %s/%s failed (%s); retrying in %.1fs",
                attempt + 1,
                max_attempts,
                exc,
                delay,
            )
            (sleep or time.sleep)(delay)
    raise ValueError("max_attempts must be at least 1")


def _pick(payload: Mapping[str, Any], field: str) -> Any:
    for alias in _FIELD_ALIASES[field]:
        if alias in payload and payload[alias] is not None:
            return payload[alias]
    return None


def candidate_from_payload(payload: Mapping[str, Any]) -> OcrCandidate:
    """
    Validate OCR output and build a candidate.

    Raises:
        OcrError: no transaction code, or an amount that does not parse.
    """
    code = cell_text(_pick(payload, "transaction_code"))
    if not code:
        raise OcrError("OCR result has no transaction code")
    amount = parse_amount(_pick(payload, "amount"))
    if amount <= 0:
        raise OcrError(f"OCR result for {code} has no usable amount")
    return OcrCandidate(
        transaction_code=code,
        amount=amount,
        invoice_number=cell_text(_pick(payload, "invoice_number")) or None,
        point_of_sale_name=cell_text(_pick(payload, "point_of_sale_name")) or None,
        bank_account=cell_text(_pick(payload, "bank_account")) or None,
        payment_method=cell_text(_pick(payload, "payment_method")) or None,
        timestamp=cell_text(_pick(payload, "timestamp")) or None,
    )


def _guess_mime_type(image_base64: str) -> str:
    if image_base64.startswith("iVBORw0KGgo"):
        return "image/png"
    return "image/jpeg"


class OcrClient:
    """HTTP client for the OCR collaborator."""

    def __init__(self, config: OcrConfig, session: requests.Session | None = None) -> None:
        if not config.url:
            raise OcrError("OCR endpoint is not configured (PAYRECON_OCR_URL)")
        self.config = config
        self.session = session or requests.Session()

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    def _post(self, body: Mapping[str, Any]) -> dict[str, Any]:
        try:
            response = self.session.post(
                self.config.url,
                headers=self._headers(),
                json=body,
                timeout=self.config.timeout_seconds,
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise OcrError(f"network error calling OCR service: {exc}", retryable=True) from exc

        if response.status_code >= 400:
            text = response.text or ""
            retryable = (
                response.status_code in self.config.retry_status_codes
                or bool(_RETRYABLE_TEXT_RE.search(text))
            )
            raise OcrError(
                f"OCR service returned HTTP {response.status_code}: {text[:200]}",
                status_code=response.status_code,
                retryable=retryable,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise OcrError("OCR service returned a non-JSON body") from exc
        return self._unwrap(payload)

    @staticmethod
    def _unwrap(payload: Any) -> dict[str, Any]:
        # model-style services wrap the JSON object in free text
        if isinstance(payload, Mapping) and isinstance(payload.get("text"), str):
            match = _JSON_OBJECT_RE.search(payload["text"])
            if not match:
                raise OcrError("OCR response text contains no JSON object")
            try:
                payload = json.loads(match.group(0))
            except ValueError as exc:
                raise OcrError("OCR response text is not valid JSON") from exc
        if not isinstance(payload, Mapping):
            raise OcrError("OCR response is not a JSON object")
        return dict(payload)

    def extract(self, image_base64: str, mime_type: str | None = None) -> OcrCandidate:
        """Send one image and return the validated candidate claim."""
        # strip a data-URL prefix ("data:image/png;base64,...")
        data = image_base64.split(",", 1)[1] if "," in image_base64 else image_base64
        body = {"image": data, "mime_type": mime_type or _guess_mime_type(data)}
        payload = call_with_backoff(
            lambda: self._post(body),
            max_attempts=self.config.max_attempts,
            base_delay=self.config.base_delay_seconds,
        )
        candidate = candidate_from_payload(payload)
        logger.info("OCR extracted code %s amount %s", candidate.transaction_code, candidate.amount)
        return candidate
