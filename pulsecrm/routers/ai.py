from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from pulsecrm.core.api_docs import error_responses
from pulsecrm.core.deps import get_db
from pulsecrm.core.security_current import get_current_user
from pulsecrm.models.campaign import Campaign
from pulsecrm.models.segment import Segment
from pulsecrm.models.user import User
from pulsecrm.schemas.ai import (
    AICampaignInsightsOut,
    AILookalikeIn,
    AILookalikeOut,
    AIMessagesIn,
    AIMessagesOut,
    AISegmentRulesIn,
)
from pulsecrm.schemas.segment import SegmentRulesIn
from pulsecrm.services.ai_service import (
    AIProviderError,
    generate_campaign_insights,
    generate_campaign_messages,
    generate_lookalike_audience,
    generate_segment_rules,
)
from pulsecrm.services.audience_service import audience_profile, resolve_audience

router = APIRouter(prefix="/ai", tags=["ai"])


def _run_ai(call, *args):
    try:
        return call(*args)
    except AIProviderError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.post(
    "/segment-rules",
    response_model=SegmentRulesIn,
    summary="Generate segment rules from a description",
    description="Output is validated with the same schema as user-supplied segment rules.",
    responses=error_responses(400, 401, 403, 422, 500, 502, path="/ai/segment-rules"),
)
def ai_segment_rules(payload: AISegmentRulesIn, actor: User = Depends(get_current_user)):
    return _run_ai(generate_segment_rules, payload.description).payload


@router.post(
    "/messages",
    response_model=AIMessagesOut,
    summary="Generate campaign message variants",
    responses=error_responses(400, 401, 403, 422, 500, 502, path="/ai/messages"),
)
def ai_campaign_messages(payload: AIMessagesIn, actor: User = Depends(get_current_user)):
    return _run_ai(generate_campaign_messages, payload.objective, payload.audience).payload


@router.post(
    "/campaigns/{campaign_id}/insights",
    response_model=AICampaignInsightsOut,
    summary="Generate campaign performance insights",
    responses=error_responses(
        400, 401, 403, 404, 500, 502,
        path="/ai/campaigns/{campaign_id}/insights",
        messages={404: "Campaign or segment not found"},
    ),
)
def ai_campaign_insights(
    campaign_id: str,
    db: Session = Depends(get_db),
    actor: User = Depends(get_current_user),
):
    campaign = db.execute(
        select(Campaign).where(Campaign.id == campaign_id, Campaign.created_by_user_id == actor.id)
    ).scalar_one_or_none()
    segment = None
    if campaign:
        segment = db.execute(select(Segment).where(Segment.id == campaign.segment_id)).scalar_one_or_none()
    if not campaign or not segment:
        raise HTTPException(status_code=404, detail="Campaign or segment not found")
    return _run_ai(generate_campaign_insights, campaign, segment).payload


@router.post(
    "/lookalike",
    response_model=AILookalikeOut,
    summary="Generate a lookalike audience from a segment",
    responses=error_responses(
        400, 401, 403, 404, 422, 500, 502,
        path="/ai/lookalike",
        messages={404: "Source segment not found"},
    ),
)
def ai_lookalike(
    payload: AILookalikeIn,
    db: Session = Depends(get_db),
    actor: User = Depends(get_current_user),
):
    segment = db.execute(
        select(Segment).where(
            Segment.id == payload.source_segment_id,
            Segment.created_by_user_id == actor.id,
        )
    ).scalar_one_or_none()
    if not segment:
        raise HTTPException(status_code=404, detail="Source segment not found")

    source = resolve_audience(db, segment.rules_json).customers
    result = _run_ai(generate_lookalike_audience, audience_profile(source)).payload
    return AILookalikeOut(
        source_segment_id=segment.id,
        source_size=len(source),
        characteristics=result.characteristics,
        rules=result.rules,
    )
