import asyncio

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from pulsecrm.core.api_docs import error_responses
from pulsecrm.core.deps import get_db
from pulsecrm.core.observability import log_event, logger
from pulsecrm.core.security_current import get_current_user
from pulsecrm.models.campaign import CAMPAIGN_DRAFT, CAMPAIGN_FAILED, Campaign, CommunicationLog
from pulsecrm.models.segment import Segment
from pulsecrm.models.user import User
from pulsecrm.schemas.campaign import (
    CampaignCreateIn,
    CampaignListOut,
    CampaignOut,
    CampaignStatus,
    CommunicationLogListOut,
    CommunicationLogOut,
    CommunicationStatus,
)
from pulsecrm.schemas.common import PaginationMeta

router = APIRouter(prefix="/campaigns", tags=["campaigns"])


def _campaign_out(campaign: Campaign) -> CampaignOut:
    return CampaignOut(
        id=campaign.id,
        name=campaign.name,
        segment_id=campaign.segment_id,
        message=campaign.message,
        status=campaign.status,
        audience_size=campaign.audience_size,
        delivered_count=campaign.delivered_count,
        failed_count=campaign.failed_count,
        success_rate=campaign.success_rate,
        created_by_user_id=campaign.created_by_user_id,
        started_at=campaign.started_at,
        completed_at=campaign.completed_at,
        created_at=campaign.created_at,
        updated_at=campaign.updated_at,
    )


def _log_out(log: CommunicationLog) -> CommunicationLogOut:
    return CommunicationLogOut(
        id=log.id,
        campaign_id=log.campaign_id,
        customer_id=log.customer_id,
        message=log.message,
        status=log.status,
        status_source=log.status_source,
        sent_at=log.sent_at,
        failure_reason=log.failure_reason,
        vendor_id=log.vendor_id,
        created_at=log.created_at,
    )


def _campaign_or_404(db: Session, *, user_id: str, campaign_id: str) -> Campaign:
    row = db.execute(
        select(Campaign).where(
            Campaign.id == campaign_id,
            Campaign.created_by_user_id == user_id,
        )
    ).scalar_one_or_none()
    if not row:
        raise HTTPException(status_code=404, detail="Campaign not found")
    return row


def _segment_or_404(db: Session, *, user_id: str, segment_id: str) -> Segment:
    row = db.execute(
        select(Segment).where(
            Segment.id == segment_id,
            Segment.created_by_user_id == user_id,
        )
    ).scalar_one_or_none()
    if not row:
        raise HTTPException(status_code=404, detail="Segment not found")
    return row


def _enqueue_delivery(request: Request, db: Session, campaign: Campaign) -> None:
    worker = getattr(request.app.state, "delivery_worker", None)
    if worker is None:
        log_event(logger, "delivery_worker_missing", campaign_id=campaign.id)
        return
    try:
        worker.enqueue(campaign.id)
    except asyncio.QueueFull as exc:
        campaign.status = CAMPAIGN_FAILED
        db.commit()
        raise HTTPException(status_code=503, detail="Delivery queue is full. Try again later.") from exc


@router.post(
    "",
    response_model=CampaignOut,
    status_code=status.HTTP_201_CREATED,
    summary="Create campaign",
    description=(
        "Creates a draft campaign for a segment and queues it for delivery. The run starts "
        "after a short delay; poll the campaign for status and counts."
    ),
    responses=error_responses(
        401, 403, 404, 422, 500, 503,
        path="/campaigns",
        messages={404: "Segment not found"},
    ),
)
def create_campaign(
    payload: CampaignCreateIn,
    request: Request,
    db: Session = Depends(get_db),
    actor: User = Depends(get_current_user),
):
    segment = _segment_or_404(db, user_id=actor.id, segment_id=payload.segment_id)
    campaign = Campaign(
        name=payload.name,
        segment_id=segment.id,
        message=payload.message,
        status=CAMPAIGN_DRAFT,
        audience_size=segment.audience_size,
        created_by_user_id=actor.id,
    )
    db.add(campaign)
    db.commit()
    db.refresh(campaign)

    _enqueue_delivery(request, db, campaign)
    log_event(logger, "campaign_created", campaign_id=campaign.id, segment_id=segment.id)
    return _campaign_out(campaign)


@router.get(
    "",
    response_model=CampaignListOut,
    summary="List my campaigns",
    responses=error_responses(401, 403, 422, 500, path="/campaigns"),
)
def list_campaigns(
    status_filter: CampaignStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    actor: User = Depends(get_current_user),
):
    count_stmt = select(func.count(Campaign.id)).where(Campaign.created_by_user_id == actor.id)
    data_stmt = select(Campaign).where(Campaign.created_by_user_id == actor.id)
    if status_filter:
        count_stmt = count_stmt.where(Campaign.status == status_filter)
        data_stmt = data_stmt.where(Campaign.status == status_filter)

    total = int(db.execute(count_stmt).scalar_one())
    rows = db.execute(
        data_stmt.order_by(Campaign.created_at.desc(), Campaign.id.desc()).offset(offset).limit(limit)
    ).scalars().all()

    items = [_campaign_out(row) for row in rows]
    count = len(items)
    return CampaignListOut(
        items=items,
        pagination=PaginationMeta.for_page(
            total=total,
            limit=limit,
            offset=offset,
            count=count,
        ),
    )


@router.get(
    "/{campaign_id}",
    response_model=CampaignOut,
    summary="Get campaign",
    responses=error_responses(
        401, 403, 404, 500,
        path="/campaigns/{campaign_id}",
        messages={404: "Campaign not found"},
    ),
)
def get_campaign(
    campaign_id: str,
    db: Session = Depends(get_db),
    actor: User = Depends(get_current_user),
):
    return _campaign_out(_campaign_or_404(db, user_id=actor.id, campaign_id=campaign_id))


@router.get(
    "/{campaign_id}/logs",
    response_model=CommunicationLogListOut,
    summary="List campaign communication logs",
    description="Per-recipient delivery records. Status follows vendor receipts, not the campaign counters.",
    responses=error_responses(
        401, 403, 404, 422, 500,
        path="/campaigns/{campaign_id}/logs",
        messages={404: "Campaign not found"},
    ),
)
def list_campaign_logs(
    campaign_id: str,
    status_filter: CommunicationStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    actor: User = Depends(get_current_user),
):
    _campaign_or_404(db, user_id=actor.id, campaign_id=campaign_id)

    count_stmt = select(func.count(CommunicationLog.id)).where(CommunicationLog.campaign_id == campaign_id)
    data_stmt = select(CommunicationLog).where(CommunicationLog.campaign_id == campaign_id)
    if status_filter:
        count_stmt = count_stmt.where(CommunicationLog.status == status_filter)
        data_stmt = data_stmt.where(CommunicationLog.status == status_filter)

    total = int(db.execute(count_stmt).scalar_one())
    rows = db.execute(
        data_stmt.order_by(CommunicationLog.created_at.desc(), CommunicationLog.id.desc())
        .offset(offset)
        .limit(limit)
    ).scalars().all()

    items = [_log_out(row) for row in rows]
    count = len(items)
    return CommunicationLogListOut(
        items=items,
        pagination=PaginationMeta.for_page(
            total=total,
            limit=limit,
            offset=offset,
            count=count,
        ),
        status=status_filter,
    )
