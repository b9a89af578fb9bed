from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from pulsecrm.core.api_docs import error_responses
from pulsecrm.core.deps import get_db
from pulsecrm.core.money import to_money
from pulsecrm.core.observability import log_event, logger
from pulsecrm.db.base import utcnow
from pulsecrm.models.customer import Customer
from pulsecrm.models.order import Order
from pulsecrm.schemas.order import OrderCreateIn, OrderOut

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post(
    "",
    response_model=OrderOut,
    status_code=status.HTTP_201_CREATED,
    summary="Ingest order",
    description=(
        "Records an order and, in the same transaction, adds its amount to the customer's "
        "total spend, increments the visit count and sets the last purchase date."
    ),
    responses=error_responses(404, 422, 500, path="/orders", messages={404: "Customer not found"}),
)
def create_order(payload: OrderCreateIn, db: Session = Depends(get_db)):
    customer_exists = db.execute(
        select(Customer.id).where(Customer.id == payload.customer_id)
    ).scalar_one_or_none()
    if not customer_exists:
        raise HTTPException(status_code=404, detail="Customer not found")

    amount = to_money(payload.amount)
    order_date = payload.order_date or utcnow()
    order = Order(
        customer_id=payload.customer_id,
        amount=amount,
        order_date=order_date,
        status=payload.status,
    )
    db.add(order)
    db.execute(
        update(Customer)
        .where(Customer.id == payload.customer_id)
        .values(
            total_spent=Customer.total_spent + amount,
            visit_count=Customer.visit_count + 1,
            last_purchase_date=order_date,
            updated_at=utcnow(),
        )
    )
    db.commit()
    db.refresh(order)

    log_event(logger, "order_ingested", order_id=order.id, customer_id=order.customer_id, amount=amount)
    return OrderOut(
        id=order.id,
        customer_id=order.customer_id,
        amount=order.amount,
        order_date=order.order_date,
        status=order.status,
        created_at=order.created_at,
    )
