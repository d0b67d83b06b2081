from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Protocol

from rental_escrow import settings
from rental_escrow.services.errors import UpstreamFailure

PAYMENTS_LOGGER = logging.getLogger("rental_escrow.payments")


@dataclass(frozen=True)
class PaymentResult:
    status: str
    reference: str | None = None
    message: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


class PaymentGateway(Protocol):
    def capture(self, amount: Decimal, reference: str) -> PaymentResult:
        ...

    def refund(self, payment_ref: str, amount: Decimal, idempotency_key: str | None = None) -> PaymentResult:
        ...


class HttpPaymentGateway:
    """Talks to the payment provider bridge over JSON.

    The bridge owns card tokenization and webhooks; this side only sends
    amounts and opaque references and reads back a status.
    """

    def __init__(self, base_url: str, token: str = "", timeout: int = 10) -> None:
        self.base_url = (base_url or "").rstrip("/")
        self.token = token
        self.timeout = timeout

    def capture(self, amount: Decimal, reference: str) -> PaymentResult:
        return self._post("/captures", {"amount": str(amount), "reference": reference})

    def refund(self, payment_ref: str, amount: Decimal, idempotency_key: str | None = None) -> PaymentResult:
        # The provider answers a repeated key with the first result instead of paying twice.
        body = {"paymentReference": payment_ref, "amount": str(amount)}
        if idempotency_key:
            body["idempotencyKey"] = idempotency_key
        return self._post("/refunds", body, idempotency_key)

    def _post(self, path: str, body: dict[str, Any], idempotency_key: str | None = None) -> PaymentResult:
        if not self.base_url:
            raise UpstreamFailure("Payment gateway is not configured.", code="payment_gateway_unconfigured")
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        request = urllib.request.Request(
            url=f"{self.base_url}{path}",
            data=json.dumps(body).encode("utf-8"),
            headers=headers,
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                payload = json.loads(response.read().decode("utf-8"))
        except urllib.error.HTTPError as exc:
            PAYMENTS_LOGGER.warning("Payment gateway %s returned HTTP %s", path, exc.code)
            raise UpstreamFailure(f"Payment gateway HTTP error: {exc.code}", code="payment_gateway_error") from exc
        except urllib.error.URLError as exc:
            PAYMENTS_LOGGER.warning("Payment gateway %s unreachable: %s", path, exc.reason)
            raise UpstreamFailure(f"Payment gateway connection error: {exc.reason}", code="payment_gateway_unreachable") from exc
        except json.JSONDecodeError as exc:
            raise UpstreamFailure("Payment gateway returned invalid JSON", code="payment_gateway_error") from exc

        if not isinstance(payload, dict):
            raise UpstreamFailure("Payment gateway payload is not an object", code="payment_gateway_error")
        return PaymentResult(
            status=str(payload.get("status") or "failed"),
            reference=payload.get("reference"),
            message=payload.get("message"),
        )


def get_payment_gateway() -> PaymentGateway:
    return HttpPaymentGateway(
        settings.PAYMENT_GATEWAY_URL,
        settings.PAYMENT_GATEWAY_TOKEN,
        settings.PAYMENT_GATEWAY_TIMEOUT_SECONDS,
    )
