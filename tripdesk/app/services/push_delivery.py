"""
Push delivery.

Sends a title/body/data message to a list of device tokens and reports how
many deliveries succeeded. Two implementations:

- LoggingPushDelivery: no gateway configured, messages are only logged
- HttpPushDelivery: posts batches to the push gateway over httpx
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

import httpx

from tripdesk.app.core.config import settings
from tripdesk.app.core.reliability import CircuitBreaker, CircuitOpenError, push_circuit_breaker

logger = logging.getLogger("tripdesk")


@dataclass
class DeliveryReport:
    success_count: int = 0
    failure_count: int = 0
    invalid_tokens: List[str] = field(default_factory=list)

    def add(self, other: "DeliveryReport") -> None:
        self.success_count += other.success_count
        self.failure_count += other.failure_count
        self.invalid_tokens.extend(other.invalid_tokens)


def _unique_tokens(tokens: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(t for t in tokens if t))


class PushDeliveryService:
    """Interface of a push transport."""

    async def send(
        self,
        tokens: Iterable[str],
        title: str,
        body: str,
        data: Optional[Dict[str, Any]] = None
    ) -> DeliveryReport:
        raise NotImplementedError


class LoggingPushDelivery(PushDeliveryService):
    """Logs messages instead of delivering them."""

    async def send(self, tokens, title, body, data=None) -> DeliveryReport:
        tokens = _unique_tokens(tokens)
        logger.info(
            "Push message (log-only delivery)",
            extra={"title": title, "recipients": len(tokens), "data": data or {}}
        )
        return DeliveryReport(success_count=len(tokens))


class HttpPushDelivery(PushDeliveryService):
    """
    Push gateway client.

    Tokens are sent in batches of ``batch_size`` (the gateway limit for one
    multicast). A failed batch counts all its tokens as failures; the other
    batches are still attempted.
    """

    def __init__(
        self,
        gateway_url: str,
        api_key: Optional[str] = None,
        batch_size: int = 500,
        timeout: float = 5.0,
        circuit_breaker: Optional[CircuitBreaker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.gateway_url = gateway_url
        self.api_key = api_key
        self.batch_size = batch_size
        self.timeout = timeout
        self.circuit_breaker = circuit_breaker or push_circuit_breaker
        self.transport = transport

    async def send(self, tokens, title, body, data=None) -> DeliveryReport:
        tokens = _unique_tokens(tokens)
        report = DeliveryReport()
        if not tokens:
            return report

        # Gateways accept string values only in the data payload
        payload_data = {key: str(value) for key, value in (data or {}).items()}
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

        async with httpx.AsyncClient(timeout=self.timeout, headers=headers, transport=self.transport) as client:
            for offset in range(0, len(tokens), self.batch_size):
                batch = tokens[offset:offset + self.batch_size]
                try:
                    batch_report = await self.circuit_breaker.call(
                        self._post_batch, client, batch, title, body, payload_data
                    )
                except CircuitOpenError:
                    logger.warning("Push gateway circuit open, batch dropped", extra={"tokens": len(batch)})
                    report.failure_count += len(batch)
                    continue
                except httpx.HTTPError as exc:
                    logger.warning("Push batch failed", extra={"tokens": len(batch), "error": str(exc)})
                    report.failure_count += len(batch)
                    continue
                report.add(batch_report)

        logger.info(
            "Push delivery finished",
            extra={"title": title, "success": report.success_count, "failed": report.failure_count}
        )
        return report

    async def _post_batch(
        self,
        client: httpx.AsyncClient,
        batch: List[str],
        title: str,
        body: str,
        data: Dict[str, str]
    ) -> DeliveryReport:
        response = await client.post(
            self.gateway_url,
            json={"tokens": batch, "notification": {"title": title, "body": body}, "data": data},
        )
        response.raise_for_status()
        result = response.json()
        return DeliveryReport(
            success_count=int(result.get("success_count", len(batch))),
            failure_count=int(result.get("failure_count", 0)),
            invalid_tokens=list(result.get("invalid_tokens", [])),
        )


def get_push_delivery() -> PushDeliveryService:
    """Build the push transport from settings."""
    if not settings.push_gateway_url:
        return LoggingPushDelivery()
    return HttpPushDelivery(
        settings.push_gateway_url,
        api_key=settings.push_gateway_api_key,
        batch_size=settings.push_batch_size,
        timeout=settings.push_timeout_seconds,
    )
