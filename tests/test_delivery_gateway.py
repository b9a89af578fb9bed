import asyncio
import random

import pytest

from pulsecrm.services.delivery_gateway import (
    DELIVERY_FAILED,
    DELIVERY_SENT,
    FAILURE_REASONS,
    DeliveryReceipt,
    DeliveryRequest,
    SimulatedDeliveryGateway,
    build_delivery_gateway,
)


def _request(log_id: str = "log-1") -> DeliveryRequest:
    return DeliveryRequest(
        customer_id="cust-1",
        customer_name="Ada",
        customer_email="ada@example.com",
        message="Hi Ada",
        campaign_id="camp-1",
        log_id=log_id,
    )


def _gateway(failure_rate: float, sink=None) -> SimulatedDeliveryGateway:
    return SimulatedDeliveryGateway(
        failure_rate=failure_rate,
        latency_seconds=(0, 0),
        receipt_delay_seconds=(0, 0),
        receipt_sink=sink,
        rng=random.Random(7),
    )


def test_successful_send_emits_matching_receipt():
    receipts: list[DeliveryReceipt] = []

    async def sink(receipt: DeliveryReceipt) -> None:
        receipts.append(receipt)

    async def scenario():
        gateway = _gateway(0.0, sink)
        response = await gateway.send(_request())
        await gateway.drain()
        return response

    response = asyncio.run(scenario())

    assert response.status == DELIVERY_SENT
    assert response.vendor_id.startswith("vendor_")
    assert "ada@example.com" in response.message
    assert len(receipts) == 1
    receipt = receipts[0]
    assert receipt.log_id == "log-1"
    assert receipt.vendor_id == response.vendor_id
    assert receipt.status == DELIVERY_SENT
    assert receipt.failure_reason is None
    assert receipt.delivered_at.tzinfo is not None


def test_failed_send_samples_a_known_reason():
    receipts: list[DeliveryReceipt] = []

    async def sink(receipt: DeliveryReceipt) -> None:
        receipts.append(receipt)

    async def scenario():
        gateway = _gateway(1.0, sink)
        responses = [await gateway.send(_request(f"log-{i}")) for i in range(5)]
        await gateway.drain()
        return responses

    responses = asyncio.run(scenario())

    assert {response.status for response in responses} == {DELIVERY_FAILED}
    assert [receipt.log_id for receipt in sorted(receipts, key=lambda r: r.log_id)] == [f"log-{i}" for i in range(5)]
    for receipt in receipts:
        assert receipt.status == DELIVERY_FAILED
        assert receipt.failure_reason in FAILURE_REASONS


def test_failure_rate_is_roughly_respected():
    async def scenario():
        gateway = _gateway(0.1)
        return [await gateway.send(_request(f"log-{i}")) for i in range(400)]

    responses = asyncio.run(scenario())
    failed = sum(1 for response in responses if response.status == DELIVERY_FAILED)
    assert 15 <= failed <= 70


def test_receipt_sink_errors_do_not_escape():
    async def broken_sink(receipt: DeliveryReceipt) -> None:
        raise RuntimeError("ledger unavailable")

    async def scenario():
        gateway = _gateway(0.0, broken_sink)
        await gateway.send(_request())
        await gateway.drain()
        return gateway.pending_receipts()

    assert asyncio.run(scenario()) == 0


def test_invalid_failure_rate_is_rejected():
    with pytest.raises(ValueError):
        SimulatedDeliveryGateway(failure_rate=1.5)


def test_factory_builds_simulated_gateway_and_rejects_unknown_names():
    gateway = build_delivery_gateway("Simulated")
    assert isinstance(gateway, SimulatedDeliveryGateway)

    with pytest.raises(ValueError):
        build_delivery_gateway("carrier-pigeon")
