import asyncio
import random
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

from pulsecrm.core.security import hash_password
from pulsecrm.models.campaign import (
    CAMPAIGN_COMPLETED,
    CAMPAIGN_DRAFT,
    CAMPAIGN_FAILED,
    LOG_FAILED,
    LOG_PENDING,
    LOG_SENT,
    STATUS_SOURCE_ORCHESTRATOR,
    STATUS_SOURCE_RECEIPT,
    Campaign,
    CommunicationLog,
)
from pulsecrm.models.customer import Customer
from pulsecrm.models.segment import Segment
from pulsecrm.models.user import User
from pulsecrm.services.campaign_orchestrator import CampaignOrchestrator, render_message
from pulsecrm.services.delivery_gateway import (
    DELIVERY_FAILED,
    DELIVERY_SENT,
    DeliveryRequest,
    DeliveryResponse,
    GatewayError,
    SimulatedDeliveryGateway,
)
from pulsecrm.services.delivery_worker import DeliveryWorker
from pulsecrm.services.ledger_service import (
    GATEWAY_ERROR_REASON,
    LedgerReceiptSink,
    ReceiptNotFoundError,
    apply_delivery_receipt,
)

BASE_TIME = datetime(2026, 1, 1, tzinfo=timezone.utc)
HIGH_SPENDERS = {"conditions": [{"field": "totalSpent", "operator": ">", "value": "1000"}], "operator": "AND"}


class AlwaysSentGateway:
    name = "always-sent"

    def __init__(self):
        self.requests: list[DeliveryRequest] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def send(self, request: DeliveryRequest) -> DeliveryResponse:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        self.requests.append(request)
        await asyncio.sleep(0)
        self.in_flight -= 1
        return DeliveryResponse(vendor_id=f"vendor-{len(self.requests)}", status=DELIVERY_SENT, message="ok")


class AlternatingGateway(AlwaysSentGateway):
    async def send(self, request: DeliveryRequest) -> DeliveryResponse:
        response = await super().send(request)
        if len(self.requests) % 2 == 0:
            return DeliveryResponse(vendor_id=response.vendor_id, status=DELIVERY_FAILED, message="Email bounced")
        return response


class RaisingGateway:
    name = "raising"

    async def send(self, request: DeliveryRequest) -> DeliveryResponse:
        raise GatewayError("connection refused")


class TimeoutGateway:
    name = "timeout"

    async def send(self, request: DeliveryRequest) -> DeliveryResponse:
        raise TimeoutError("vendor timed out")


def _seed(session_local, *, spends: list[str], message: str = "Hi {name}!", rules=None) -> str:
    with session_local() as db:
        user = User(
            email="owner@example.com",
            username="owner",
            full_name="Owner",
            hashed_password=hash_password("password123"),
        )
        db.add(user)
        db.flush()
        for index, spent in enumerate(spends):
            db.add(
                Customer(
                    name=f"Customer {index}",
                    email=f"customer{index}@example.com",
                    total_spent=Decimal(spent),
                    visit_count=1,
                    created_at=BASE_TIME + timedelta(minutes=index),
                )
            )
        segment = Segment(
            name="High spenders",
            rules_json=HIGH_SPENDERS if rules is None else rules,
            created_by_user_id=user.id,
        )
        db.add(segment)
        db.flush()
        campaign = Campaign(
            name="Spring",
            segment_id=segment.id,
            message=message,
            status=CAMPAIGN_DRAFT,
            created_by_user_id=user.id,
        )
        db.add(campaign)
        db.commit()
        return campaign.id


def _campaign(session_local, campaign_id: str) -> Campaign:
    with session_local() as db:
        return db.execute(select(Campaign).where(Campaign.id == campaign_id)).scalar_one()


def _logs(session_local, campaign_id: str) -> list[CommunicationLog]:
    with session_local() as db:
        return db.execute(
            select(CommunicationLog)
            .where(CommunicationLog.campaign_id == campaign_id)
            .order_by(CommunicationLog.created_at.asc())
        ).scalars().all()


def test_render_message_replaces_every_placeholder():
    assert render_message("Hi {name}, {name} again", "Ada") == "Hi Ada, Ada again"
    assert render_message("No placeholder", "Ada") == "No placeholder"


def test_all_sent_completes_with_full_success_rate(session_local):
    campaign_id = _seed(session_local, spends=["5000", "50", "2500", "1200"], message="Hi {name}, {name}!")
    gateway = AlwaysSentGateway()
    orchestrator = CampaignOrchestrator(session_local, gateway, pacing_seconds=0)

    result = asyncio.run(orchestrator.run(campaign_id))

    assert result.status == CAMPAIGN_COMPLETED
    campaign = _campaign(session_local, campaign_id)
    assert campaign.status == CAMPAIGN_COMPLETED
    assert campaign.audience_size == 3
    assert campaign.delivered_count == 3
    assert campaign.failed_count == 0
    assert campaign.success_rate == Decimal("100.00")
    assert campaign.started_at is not None
    assert campaign.completed_at is not None

    # Evaluator order is customer insertion order; sends never overlap.
    assert [request.customer_name for request in gateway.requests] == ["Customer 0", "Customer 2", "Customer 3"]
    assert gateway.max_in_flight == 1

    logs = _logs(session_local, campaign_id)
    assert len(logs) == 3
    assert {log.status for log in logs} == {LOG_PENDING}
    assert logs[0].message == "Hi Customer 0, Customer 0!"
    assert all(log.vendor_id for log in logs)


def test_rejected_deliveries_count_against_success_rate(session_local):
    campaign_id = _seed(session_local, spends=["5000", "5000", "5000"])
    orchestrator = CampaignOrchestrator(session_local, AlternatingGateway(), pacing_seconds=0)

    asyncio.run(orchestrator.run(campaign_id))

    campaign = _campaign(session_local, campaign_id)
    assert campaign.delivered_count == 2
    assert campaign.failed_count == 1
    assert campaign.delivered_count + campaign.failed_count == campaign.audience_size
    assert campaign.success_rate == Decimal("66.67")


def test_gateway_errors_fail_every_recipient_but_complete_the_run(session_local):
    campaign_id = _seed(session_local, spends=["5000", "3000"])
    orchestrator = CampaignOrchestrator(session_local, RaisingGateway(), pacing_seconds=0)

    result = asyncio.run(orchestrator.run(campaign_id))

    assert result.status == CAMPAIGN_COMPLETED
    campaign = _campaign(session_local, campaign_id)
    assert campaign.status == CAMPAIGN_COMPLETED
    assert campaign.delivered_count == 0
    assert campaign.failed_count == 2
    assert campaign.success_rate == Decimal("0.00")

    logs = _logs(session_local, campaign_id)
    assert len(logs) == 2
    for log in logs:
        assert log.status == LOG_FAILED
        assert log.failure_reason == GATEWAY_ERROR_REASON
        assert log.status_source == STATUS_SOURCE_ORCHESTRATOR


@pytest.mark.parametrize("gateway_cls", [RaisingGateway, TimeoutGateway])
def test_any_gateway_exception_fails_only_that_recipient(session_local, gateway_cls):
    campaign_id = _seed(session_local, spends=["5000", "3000"])
    result = asyncio.run(CampaignOrchestrator(session_local, gateway_cls(), pacing_seconds=0).run(campaign_id))

    assert result.status == CAMPAIGN_COMPLETED
    campaign = _campaign(session_local, campaign_id)
    assert campaign.status == CAMPAIGN_COMPLETED
    assert (campaign.delivered_count, campaign.failed_count) == (0, 2)
    assert [log.status for log in _logs(session_local, campaign_id)] == [LOG_FAILED, LOG_FAILED]
    assert {log.failure_reason for log in _logs(session_local, campaign_id)} == {GATEWAY_ERROR_REASON}


def test_empty_audience_completes_with_zero_rate(session_local):
    campaign_id = _seed(session_local, spends=["10", "20"])
    gateway = AlwaysSentGateway()
    asyncio.run(CampaignOrchestrator(session_local, gateway, pacing_seconds=0).run(campaign_id))

    campaign = _campaign(session_local, campaign_id)
    assert campaign.status == CAMPAIGN_COMPLETED
    assert campaign.audience_size == 0
    assert campaign.success_rate == Decimal("0.00")
    assert gateway.requests == []


def test_missing_segment_marks_campaign_failed(session_local):
    campaign_id = _seed(session_local, spends=["5000"])
    with session_local() as db:
        campaign = db.execute(select(Campaign).where(Campaign.id == campaign_id)).scalar_one()
        campaign.segment_id = "missing-segment"
        db.commit()

    result = asyncio.run(CampaignOrchestrator(session_local, AlwaysSentGateway(), pacing_seconds=0).run(campaign_id))

    assert result.status == CAMPAIGN_FAILED
    assert _campaign(session_local, campaign_id).status == CAMPAIGN_FAILED
    assert _logs(session_local, campaign_id) == []


def test_missing_campaign_is_reported_not_raised(session_local):
    result = asyncio.run(CampaignOrchestrator(session_local, AlwaysSentGateway(), pacing_seconds=0).run("nope"))
    assert result.status == CAMPAIGN_FAILED


def test_finished_campaign_is_never_rerun(session_local):
    campaign_id = _seed(session_local, spends=["5000"])
    gateway = AlwaysSentGateway()
    orchestrator = CampaignOrchestrator(session_local, gateway, pacing_seconds=0)

    asyncio.run(orchestrator.run(campaign_id))
    second = asyncio.run(orchestrator.run(campaign_id))

    assert second.status == CAMPAIGN_COMPLETED
    assert len(gateway.requests) == 1
    assert len(_logs(session_local, campaign_id)) == 1


def test_receipts_finalize_logs_through_the_ledger_sink(session_local):
    campaign_id = _seed(session_local, spends=["5000", "7000"])

    async def scenario():
        gateway = SimulatedDeliveryGateway(
            failure_rate=0.0,
            latency_seconds=(0, 0),
            receipt_delay_seconds=(0, 0),
            receipt_sink=LedgerReceiptSink(session_local),
            rng=random.Random(1),
        )
        await CampaignOrchestrator(session_local, gateway, pacing_seconds=0).run(campaign_id)
        await gateway.drain()

    asyncio.run(scenario())

    logs = _logs(session_local, campaign_id)
    assert [log.status for log in logs] == [LOG_SENT, LOG_SENT]
    assert all(log.status_source == STATUS_SOURCE_RECEIPT for log in logs)
    assert all(log.sent_at is not None for log in logs)
    assert _campaign(session_local, campaign_id).delivered_count == 2


def test_receipt_overrides_orchestrator_failure_and_duplicates_are_ignored(session_local):
    campaign_id = _seed(session_local, spends=["5000"])
    asyncio.run(CampaignOrchestrator(session_local, RaisingGateway(), pacing_seconds=0).run(campaign_id))
    log_id = _logs(session_local, campaign_id)[0].id
    delivered_at = datetime(2026, 2, 1, tzinfo=timezone.utc)

    with session_local() as db:
        first = apply_delivery_receipt(
            db, log_id=log_id, vendor_id="vendor-late", status="SENT", delivered_at=delivered_at
        )
        assert first.applied is True
        assert first.log.status == LOG_SENT
        assert first.log.failure_reason is None

        second = apply_delivery_receipt(
            db,
            log_id=log_id,
            vendor_id="vendor-late",
            status="FAILED",
            delivered_at=delivered_at,
            failure_reason="Email bounced",
        )
        assert second.applied is False
        assert second.log.status == LOG_SENT

    # Campaign counters follow the immediate responses, not receipts.
    assert _campaign(session_local, campaign_id).failed_count == 1


def test_unknown_receipt_log_raises_and_touches_nothing(session_local):
    campaign_id = _seed(session_local, spends=["5000", "6000"])
    asyncio.run(CampaignOrchestrator(session_local, AlwaysSentGateway(), pacing_seconds=0).run(campaign_id))
    before = [(log.id, log.status, log.vendor_id) for log in _logs(session_local, campaign_id)]

    with session_local() as db:
        with pytest.raises(ReceiptNotFoundError):
            apply_delivery_receipt(
                db, log_id="missing", vendor_id="vendor-x", status="SENT", delivered_at=BASE_TIME
            )

    assert [(log.id, log.status, log.vendor_id) for log in _logs(session_local, campaign_id)] == before


def test_worker_runs_each_campaign_once(session_local):
    campaign_id = _seed(session_local, spends=["5000", "6000"])
    gateway = AlwaysSentGateway()
    orchestrator = CampaignOrchestrator(session_local, gateway, pacing_seconds=0)

    async def scenario():
        worker = DeliveryWorker(orchestrator, start_delay_seconds=0)
        worker.enqueue(campaign_id)
        worker.enqueue(campaign_id)
        assert worker.pending() == [campaign_id, campaign_id]
        worker.start()
        await worker.join()
        await worker.stop()
        return worker

    worker = asyncio.run(scenario())

    assert worker.pending() == []
    assert worker.active_campaigns() == set()
    assert len(gateway.requests) == 2
    assert _campaign(session_local, campaign_id).status == CAMPAIGN_COMPLETED


def test_enqueue_from_threads_reports_a_full_queue_to_the_caller(session_local):
    orchestrator = CampaignOrchestrator(session_local, AlwaysSentGateway(), pacing_seconds=0)

    def try_enqueue(worker: DeliveryWorker, campaign_id: str) -> str:
        try:
            worker.enqueue(campaign_id)
        except asyncio.QueueFull:
            return "full"
        return "queued"

    async def scenario():
        worker = DeliveryWorker(orchestrator, start_delay_seconds=0, maxsize=2)
        worker.attach()
        await asyncio.to_thread(worker.enqueue, "campaign-1")
        outcomes = await asyncio.gather(
            asyncio.to_thread(try_enqueue, worker, "campaign-2"),
            asyncio.to_thread(try_enqueue, worker, "campaign-3"),
        )
        return worker, outcomes

    worker, outcomes = asyncio.run(scenario())

    assert sorted(outcomes) == ["full", "queued"]
    pending = worker.pending()
    assert len(pending) == 2
    assert pending[0] == "campaign-1"
    assert pending[1] in {"campaign-2", "campaign-3"}
