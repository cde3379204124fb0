"""HTTP client for the external payment processor."""

import logging
from dataclasses import dataclass

import httpx

from .errors import PaymentProcessorError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentIntent:
    id: str
    client_secret: str | None
    amount: int
    currency: str


class PaymentProcessorClient:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        currency: str = "usd",
        timeout: float = 5.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=timeout,
            transport=transport,
        )
        self._currency = currency

    def create_intent(self, amount: int, metadata: dict, idempotency_key: str) -> PaymentIntent:
        try:
            r = self._client.post(
                "/v1/payment_intents",
                json={"amount": amount, "currency": self._currency, "metadata": metadata},
                headers={"Idempotency-Key": idempotency_key},
            )
            r.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("payment intent creation failed: %s", e)
            raise PaymentProcessorError() from e

        data = r.json()
        if "id" not in data:
            raise PaymentProcessorError("Payment processor returned no intent id")
        return PaymentIntent(
            id=data["id"],
            client_secret=data.get("client_secret"),
            amount=amount,
            currency=self._currency,
        )

    @property
    def closed(self) -> bool:
        return self._client.is_closed

    def close(self) -> None:
        self._client.close()
