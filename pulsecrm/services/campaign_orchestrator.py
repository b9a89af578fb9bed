import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from pulsecrm.core.money import percentage, to_money
from pulsecrm.core.observability import log_event, pipeline_logger
from pulsecrm.db.base import utcnow
from pulsecrm.models.campaign import (
    CAMPAIGN_ACTIVE,
    CAMPAIGN_COMPLETED,
    CAMPAIGN_DRAFT,
    CAMPAIGN_FAILED,
    Campaign,
)
from pulsecrm.models.segment import Segment
from pulsecrm.services.audience_service import resolve_audience
from pulsecrm.services.delivery_gateway import (
    DELIVERY_SENT,
    DeliveryGateway,
    DeliveryRequest,
)
from pulsecrm.services.ledger_service import create_pending_log, mark_log_failed, record_vendor_id

NAME_PLACEHOLDER = "{name}"


class CampaignLookupError(LookupError):
    pass


@dataclass
class CampaignRunResult:
    campaign_id: str
    status: str
    audience_size: int = 0
    delivered_count: int = 0
    failed_count: int = 0
    success_rate: float = 0.0


def render_message(template: str, customer_name: str) -> str:
    return template.replace(NAME_PLACEHOLDER, customer_name)


class CampaignOrchestrator:
    """Runs one campaign end to end: resolve audience, send sequentially, finalize stats.

    Sends within a campaign are strictly sequential. Any exception from the gateway
    fails that recipient only; errors outside the send mark the campaign failed.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        gateway: DeliveryGateway,
        *,
        pacing_seconds: float = 0.1,
    ):
        self._session_factory = session_factory
        self._gateway = gateway
        self._pacing_seconds = pacing_seconds

    async def run(self, campaign_id: str) -> CampaignRunResult:
        with self._session_factory() as db:
            try:
                return await self._run(db, campaign_id)
            except Exception as exc:
                db.rollback()
                log_event(
                    pipeline_logger,
                    "campaign_failed",
                    level=logging.ERROR,
                    campaign_id=campaign_id,
                    error=str(exc),
                )
                self._mark_failed(db, campaign_id)
                return CampaignRunResult(campaign_id=campaign_id, status=CAMPAIGN_FAILED)

    async def _run(self, db: Session, campaign_id: str) -> CampaignRunResult:
        campaign = db.execute(select(Campaign).where(Campaign.id == campaign_id)).scalar_one_or_none()
        if campaign is None:
            raise CampaignLookupError(f"Campaign '{campaign_id}' not found")
        segment = db.execute(select(Segment).where(Segment.id == campaign.segment_id)).scalar_one_or_none()
        if segment is None:
            raise CampaignLookupError(f"Segment '{campaign.segment_id}' not found")

        if campaign.status != CAMPAIGN_DRAFT:
            # Runs are one-shot; a campaign that already started is never resumed.
            log_event(
                pipeline_logger,
                "campaign_run_skipped",
                level=logging.WARNING,
                campaign_id=campaign_id,
                status=campaign.status,
            )
            return CampaignRunResult(campaign_id=campaign_id, status=campaign.status)

        campaign.status = CAMPAIGN_ACTIVE
        campaign.started_at = utcnow()
        db.add(campaign)
        db.commit()

        audience = resolve_audience(db, segment.rules_json).customers
        log_event(
            pipeline_logger,
            "campaign_started",
            campaign_id=campaign_id,
            segment_id=segment.id,
            audience_size=len(audience),
        )

        delivered = 0
        failed = 0
        for customer in audience:
            rendered = render_message(campaign.message, customer.name)
            log = create_pending_log(db, campaign_id=campaign_id, customer_id=customer.id, message=rendered)
            request = DeliveryRequest(
                customer_id=customer.id,
                customer_name=customer.name,
                customer_email=customer.email,
                message=rendered,
                campaign_id=campaign_id,
                log_id=log.id,
            )
            try:
                response = await self._gateway.send(request)
            except Exception as exc:
                # Any gateway error fails this recipient only.
                failed += 1
                mark_log_failed(db, log)
                log_event(
                    pipeline_logger,
                    "gateway_error",
                    level=logging.WARNING,
                    campaign_id=campaign_id,
                    log_id=log.id,
                    customer_id=customer.id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
            else:
                if response.status == DELIVERY_SENT:
                    delivered += 1
                else:
                    failed += 1
                record_vendor_id(db, log, response.vendor_id)

            if self._pacing_seconds:
                await asyncio.sleep(self._pacing_seconds)

        audience_size = len(audience)
        success_rate = percentage(delivered, audience_size)
        db.refresh(campaign)
        campaign.audience_size = audience_size
        campaign.delivered_count = delivered
        campaign.failed_count = failed
        campaign.success_rate = to_money(success_rate)
        campaign.status = CAMPAIGN_COMPLETED
        campaign.completed_at = utcnow()
        db.add(campaign)
        db.commit()

        log_event(
            pipeline_logger,
            "campaign_completed",
            campaign_id=campaign_id,
            audience_size=audience_size,
            delivered_count=delivered,
            failed_count=failed,
            success_rate=success_rate,
        )
        return CampaignRunResult(
            campaign_id=campaign_id,
            status=CAMPAIGN_COMPLETED,
            audience_size=audience_size,
            delivered_count=delivered,
            failed_count=failed,
            success_rate=success_rate,
        )

    @staticmethod
    def _mark_failed(db: Session, campaign_id: str) -> None:
        campaign = db.execute(select(Campaign).where(Campaign.id == campaign_id)).scalar_one_or_none()
        if campaign is None:
            return
        campaign.status = CAMPAIGN_FAILED
        db.add(campaign)
        db.commit()
