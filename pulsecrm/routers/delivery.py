from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from pulsecrm.core.api_docs import error_responses
from pulsecrm.core.deps import get_db
from pulsecrm.schemas.delivery import DeliveryReceiptIn, DeliveryReceiptOut
from pulsecrm.services.ledger_service import ReceiptNotFoundError, apply_delivery_receipt

router = APIRouter(prefix="/delivery-receipts", tags=["delivery"])


@router.post(
    "",
    response_model=DeliveryReceiptOut,
    summary="Vendor delivery receipt",
    description=(
        "Called by the delivery vendor once a message is finally delivered or rejected. "
        "The receipt is authoritative for the communication log; campaign counters are not "
        "recomputed. Repeated receipts for the same log are acknowledged and ignored."
    ),
    responses=error_responses(
        404, 422, 500,
        path="/delivery-receipts",
        messages={404: "Communication log not found"},
    ),
)
def receive_delivery_receipt(payload: DeliveryReceiptIn, db: Session = Depends(get_db)):
    try:
        outcome = apply_delivery_receipt(
            db,
            log_id=payload.log_id,
            vendor_id=payload.vendor_id,
            status=payload.status,
            delivered_at=payload.delivered_at,
            failure_reason=payload.failure_reason,
        )
    except ReceiptNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Communication log not found") from exc

    return DeliveryReceiptOut(log_id=outcome.log.id, status=outcome.log.status, applied=outcome.applied)
