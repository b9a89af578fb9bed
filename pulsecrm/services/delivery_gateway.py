import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from pulsecrm.core.config import settings
from pulsecrm.core.id_utils import generate_vendor_id
from pulsecrm.core.observability import log_event, pipeline_logger
from pulsecrm.db.base import utcnow

DELIVERY_SENT = "SENT"
DELIVERY_FAILED = "FAILED"

FAILURE_REASONS = (
    "Invalid email address",
    "Customer unsubscribed",
    "Email bounced",
    "Rate limit exceeded",
    "Temporary server error",
)


class GatewayError(Exception):
    """The gateway could not be reached; distinct from a FAILED delivery outcome."""


@dataclass(frozen=True)
class DeliveryRequest:
    customer_id: str
    customer_name: str
    customer_email: str
    message: str
    campaign_id: str
    log_id: str


@dataclass(frozen=True)
class DeliveryResponse:
    vendor_id: str
    status: str
    message: str


@dataclass(frozen=True)
class DeliveryReceipt:
    log_id: str
    vendor_id: str
    status: str
    delivered_at: datetime
    failure_reason: str | None = None


ReceiptSink = Callable[[DeliveryReceipt], Awaitable[None]]


class DeliveryGateway(Protocol):
    name: str

    async def send(self, request: DeliveryRequest) -> DeliveryResponse:
        ...


class SimulatedDeliveryGateway:
    """Random-outcome vendor stand-in.

    ``send`` answers after a simulated latency with ``SENT`` or ``FAILED``. Independently,
    after a further random delay, a receipt for the same vendor id is handed to
    ``receipt_sink``. Receipt tasks are tracked so shutdown can wait for or cancel them.
    """

    name = "simulated"

    def __init__(
        self,
        *,
        failure_rate: float = 0.1,
        latency_seconds: tuple[float, float] = (0.5, 1.5),
        receipt_delay_seconds: tuple[float, float] = (1.0, 3.0),
        receipt_sink: ReceiptSink | None = None,
        rng: random.Random | None = None,
    ):
        if not 0 <= failure_rate <= 1:
            raise ValueError("failure_rate must be between 0 and 1")
        self.failure_rate = failure_rate
        self.latency_seconds = latency_seconds
        self.receipt_delay_seconds = receipt_delay_seconds
        self._receipt_sink = receipt_sink
        self._rng = rng or random.Random()
        self._receipt_tasks: set[asyncio.Task] = set()

    async def send(self, request: DeliveryRequest) -> DeliveryResponse:
        await asyncio.sleep(self._rng.uniform(*self.latency_seconds))

        vendor_id = generate_vendor_id()
        if self._rng.random() < self.failure_rate:
            reason = self._rng.choice(FAILURE_REASONS)
            response = DeliveryResponse(
                vendor_id=vendor_id,
                status=DELIVERY_FAILED,
                message=f"Failed to deliver message: {reason}",
            )
        else:
            reason = None
            response = DeliveryResponse(
                vendor_id=vendor_id,
                status=DELIVERY_SENT,
                message=f"Message delivered successfully to {request.customer_email}",
            )

        if self._receipt_sink is not None:
            task = asyncio.create_task(self._emit_receipt(request.log_id, response, reason))
            self._receipt_tasks.add(task)
            task.add_done_callback(self._receipt_tasks.discard)
        return response

    async def _emit_receipt(self, log_id: str, response: DeliveryResponse, reason: str | None) -> None:
        await asyncio.sleep(self._rng.uniform(*self.receipt_delay_seconds))
        receipt = DeliveryReceipt(
            log_id=log_id,
            vendor_id=response.vendor_id,
            status=response.status,
            delivered_at=utcnow(),
            failure_reason=reason,
        )
        try:
            await self._receipt_sink(receipt)
        except Exception as exc:
            log_event(
                pipeline_logger,
                "delivery_receipt_emit_failed",
                level=logging.ERROR,
                log_id=log_id,
                vendor_id=response.vendor_id,
                error=str(exc),
            )

    def pending_receipts(self) -> int:
        return len(self._receipt_tasks)

    async def drain(self) -> None:
        """Wait for every scheduled receipt to be delivered."""
        while self._receipt_tasks:
            await asyncio.gather(*list(self._receipt_tasks), return_exceptions=True)

    async def aclose(self) -> None:
        for task in list(self._receipt_tasks):
            task.cancel()
        if self._receipt_tasks:
            await asyncio.gather(*list(self._receipt_tasks), return_exceptions=True)


def build_delivery_gateway(name: str | None = None, *, receipt_sink: ReceiptSink | None = None) -> DeliveryGateway:
    normalized = (name or settings.delivery_gateway_default or "").strip().lower()
    if normalized == SimulatedDeliveryGateway.name:
        return SimulatedDeliveryGateway(
            failure_rate=settings.gateway_failure_rate,
            latency_seconds=(settings.gateway_min_latency_seconds, settings.gateway_max_latency_seconds),
            receipt_delay_seconds=(
                settings.gateway_min_receipt_delay_seconds,
                settings.gateway_max_receipt_delay_seconds,
            ),
            receipt_sink=receipt_sink,
        )
    raise ValueError(f"Unknown delivery gateway '{name}'. Available: {SimulatedDeliveryGateway.name}")
