from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from pulsecrm.core.api_docs import error_responses
from pulsecrm.core.deps import get_db
from pulsecrm.core.observability import log_event, logger
from pulsecrm.core.security_current import get_current_user
from pulsecrm.models.segment import Segment
from pulsecrm.models.user import User
from pulsecrm.schemas.common import PaginationMeta
from pulsecrm.schemas.segment import (
    RuleWarningOut,
    SegmentCreateIn,
    SegmentListOut,
    SegmentOut,
    SegmentPreviewIn,
    SegmentPreviewOut,
)
from pulsecrm.services.audience_service import preview_audience, refresh_segment_audience
from pulsecrm.services.segment_rules import UnsupportedCondition, compile_rules, parse_rules

router = APIRouter(prefix="/segments", tags=["segments"])


def _warnings_out(unsupported: list[UnsupportedCondition]) -> list[RuleWarningOut]:
    return [RuleWarningOut(**item.to_dict()) for item in unsupported]


def _segment_out(segment: Segment) -> SegmentOut:
    rules, _ = parse_rules(segment.rules_json)
    compiled = compile_rules(segment.rules_json, log_unsupported=False)
    return SegmentOut(
        id=segment.id,
        name=segment.name,
        description=segment.description,
        rules=rules,
        audience_size=segment.audience_size,
        audience_refreshed_at=segment.audience_refreshed_at,
        warnings=_warnings_out(compiled.unsupported),
        created_by_user_id=segment.created_by_user_id,
        created_at=segment.created_at,
        updated_at=segment.updated_at,
    )


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


@router.post(
    "",
    response_model=SegmentOut,
    status_code=status.HTTP_201_CREATED,
    summary="Create segment",
    description="Stores the rules and a point-in-time audience size computed against current customers.",
    responses=error_responses(401, 403, 422, 500, path="/segments"),
)
def create_segment(
    payload: SegmentCreateIn,
    db: Session = Depends(get_db),
    actor: User = Depends(get_current_user),
):
    segment = Segment(
        name=payload.name,
        description=payload.description,
        rules_json=payload.rules.model_dump(),
        created_by_user_id=actor.id,
    )
    refresh_segment_audience(db, segment)
    db.commit()
    db.refresh(segment)

    log_event(logger, "segment_created", segment_id=segment.id, audience_size=segment.audience_size)
    return _segment_out(segment)


@router.get(
    "",
    response_model=SegmentListOut,
    summary="List my segments",
    responses=error_responses(401, 403, 422, 500, path="/segments"),
)
def list_segments(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    actor: User = Depends(get_current_user),
):
    total = int(
        db.execute(
            select(func.count(Segment.id)).where(Segment.created_by_user_id == actor.id)
        ).scalar_one()
    )
    rows = db.execute(
        select(Segment)
        .where(Segment.created_by_user_id == actor.id)
        .order_by(Segment.created_at.desc(), Segment.id.desc())
        .offset(offset)
        .limit(limit)
    ).scalars().all()

    items = [_segment_out(row) for row in rows]
    count = len(items)
    return SegmentListOut(
        items=items,
        pagination=PaginationMeta.for_page(
            total=total,
            limit=limit,
            offset=offset,
            count=count,
        ),
    )


@router.post(
    "/preview",
    response_model=SegmentPreviewOut,
    summary="Preview segment rules",
    description="Evaluates ad-hoc rules against current customers without saving anything.",
    responses=error_responses(401, 403, 422, 500, path="/segments/preview"),
)
def preview_segment(
    payload: SegmentPreviewIn,
    db: Session = Depends(get_db),
    actor: User = Depends(get_current_user),
):
    preview = preview_audience(db, payload.rules)
    return SegmentPreviewOut(
        audience_size=preview.audience_size,
        total_customers=preview.total_customers,
        percentage=preview.percentage,
        avg_spend=preview.avg_spend,
        engagement_rate=preview.engagement_rate,
        warnings=_warnings_out(preview.unsupported),
    )


@router.get(
    "/{segment_id}",
    response_model=SegmentOut,
    summary="Get segment",
    responses=error_responses(
        401, 403, 404, 500,
        path="/segments/{segment_id}",
        messages={404: "Segment not found"},
    ),
)
def get_segment(
    segment_id: str,
    db: Session = Depends(get_db),
    actor: User = Depends(get_current_user),
):
    return _segment_out(_segment_or_404(db, user_id=actor.id, segment_id=segment_id))


@router.post(
    "/{segment_id}/refresh-audience",
    response_model=SegmentOut,
    summary="Recompute segment audience size",
    responses=error_responses(
        401, 403, 404, 500,
        path="/segments/{segment_id}/refresh-audience",
        messages={404: "Segment not found"},
    ),
)
def refresh_segment(
    segment_id: str,
    db: Session = Depends(get_db),
    actor: User = Depends(get_current_user),
):
    segment = _segment_or_404(db, user_id=actor.id, segment_id=segment_id)
    refresh_segment_audience(db, segment)
    db.commit()
    db.refresh(segment)
    return _segment_out(segment)
