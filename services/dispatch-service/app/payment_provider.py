"""
Client for the payment gateway. The core only consumes an order id, a
payment id and a boolean "signature valid"; everything provider-specific
stays in this module.
"""
import hashlib
import hmac
import logging
import uuid
from decimal import Decimal

import httpx

from .breaker import CircuitBreaker, CircuitBreakerOpen
from .config import (
    PAYMENT_BREAKER_FAILURES,
    PAYMENT_BREAKER_RESET_SECONDS,
    PAYMENT_CURRENCY,
    PAYMENT_KEY_ID,
    PAYMENT_KEY_SECRET,
    PAYMENT_PROVIDER,
    PAYMENT_PROVIDER_URL,
    PAYMENT_WEBHOOK_SECRET,
)
from .errors import UpstreamError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0


def _hmac_sha256(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class PaymentProvider:
    def __init__(
        self,
        base_url: str = PAYMENT_PROVIDER_URL,
        key_id: str = PAYMENT_KEY_ID,
        key_secret: str = PAYMENT_KEY_SECRET,
        webhook_secret: str = PAYMENT_WEBHOOK_SECRET,
        name: str = PAYMENT_PROVIDER,
        breaker: CircuitBreaker | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.name = name
        self.breaker = breaker or CircuitBreaker(
            f"payment-{name}",
            failure_threshold=PAYMENT_BREAKER_FAILURES,
            reset_timeout_seconds=PAYMENT_BREAKER_RESET_SECONDS,
            trip_on=(httpx.HTTPError,),
        )
        self.timeout = timeout

    @property
    def offline(self) -> bool:
        # without credentials orders are minted locally (development mode)
        return not self.key_id

    async def create_order(self, amount: Decimal, receipt: str, currency: str = PAYMENT_CURRENCY) -> dict:
        minor_units = int((Decimal(amount) * 100).quantize(Decimal("1")))
        if self.offline:
            return {"id": f"order_{uuid.uuid4().hex[:14]}", "amount": minor_units, "currency": currency}

        payload = {"amount": minor_units, "currency": currency, "receipt": receipt}
        try:
            async with self.breaker.guard():
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(
                        f"{self.base_url}/orders",
                        json=payload,
                        auth=(self.key_id, self.key_secret),
                    )
                    resp.raise_for_status()
                    return resp.json()
        except CircuitBreakerOpen as e:
            raise UpstreamError(str(e), detail={"provider": self.name})
        except httpx.TimeoutException:
            raise UpstreamError("Timeout creating payment order", detail={"provider": self.name})
        except httpx.HTTPStatusError as e:
            logger.warning("payment provider rejected order %s: %s", receipt, e.response.text)
            raise UpstreamError(
                "Payment provider rejected the order",
                detail={"provider": self.name, "status": e.response.status_code},
            )
        except httpx.HTTPError as e:
            raise UpstreamError(f"Payment provider unreachable: {e}", detail={"provider": self.name})

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        if not (order_id and payment_id and signature):
            return False
        expected = _hmac_sha256(self.key_secret, f"{order_id}|{payment_id}".encode("utf-8"))
        return hmac.compare_digest(expected, signature)

    def verify_webhook(self, raw_body: bytes, signature: str | None) -> bool:
        if not (self.webhook_secret and signature):
            return False
        return hmac.compare_digest(_hmac_sha256(self.webhook_secret, raw_body), signature)


provider = PaymentProvider()
