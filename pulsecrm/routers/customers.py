from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from pulsecrm.core.api_docs import error_responses
from pulsecrm.core.deps import get_db
from pulsecrm.core.security_current import get_current_user
from pulsecrm.models.customer import Customer
from pulsecrm.models.order import Order
from pulsecrm.models.user import User
from pulsecrm.schemas.common import PaginationMeta
from pulsecrm.schemas.customer import CustomerCreateIn, CustomerListOut, CustomerOut, CustomerUpdateIn
from pulsecrm.schemas.order import OrderListOut, OrderOut

router = APIRouter(prefix="/customers", tags=["customers"])


def _customer_out(customer: Customer) -> CustomerOut:
    return CustomerOut(
        id=customer.id,
        name=customer.name,
        email=customer.email,
        phone=customer.phone,
        total_spent=customer.total_spent,
        visit_count=customer.visit_count,
        last_purchase_date=customer.last_purchase_date,
        customer_since=customer.customer_since,
        is_active=customer.is_active,
        created_at=customer.created_at,
        updated_at=customer.updated_at,
    )


def _order_out(order: Order) -> OrderOut:
    return OrderOut(
        id=order.id,
        customer_id=order.customer_id,
        amount=order.amount,
        order_date=order.order_date,
        status=order.status,
        created_at=order.created_at,
    )


def _customer_or_404(db: Session, customer_id: str) -> Customer:
    customer = db.execute(select(Customer).where(Customer.id == customer_id)).scalar_one_or_none()
    if not customer:
        raise HTTPException(status_code=404, detail="Customer not found")
    return customer


def _email_taken(db: Session, email: str, *, exclude_id: str | None = None) -> bool:
    stmt = select(Customer.id).where(func.lower(Customer.email) == email.lower())
    if exclude_id:
        stmt = stmt.where(Customer.id != exclude_id)
    return db.execute(stmt).first() is not None


@router.post(
    "",
    response_model=CustomerOut,
    status_code=status.HTTP_201_CREATED,
    summary="Ingest customer",
    responses=error_responses(409, 422, 500, path="/customers"),
)
def create_customer(payload: CustomerCreateIn, db: Session = Depends(get_db)):
    if _email_taken(db, str(payload.email)):
        raise HTTPException(status_code=409, detail="Email already exists for another customer")

    customer = Customer(name=payload.name, email=str(payload.email), phone=payload.phone)
    db.add(customer)
    db.commit()
    db.refresh(customer)
    return _customer_out(customer)


@router.get(
    "",
    response_model=CustomerListOut,
    summary="List customers",
    responses=error_responses(401, 403, 422, 500, path="/customers"),
)
def list_customers(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    actor: User = Depends(get_current_user),
):
    total = int(db.execute(select(func.count(Customer.id))).scalar_one())
    customers = db.execute(
        select(Customer)
        .order_by(Customer.created_at.desc(), Customer.id.desc())
        .offset(offset)
        .limit(limit)
    ).scalars().all()

    items = [_customer_out(customer) for customer in customers]
    count = len(items)
    return CustomerListOut(
        items=items,
        pagination=PaginationMeta.for_page(
            total=total,
            limit=limit,
            offset=offset,
            count=count,
        ),
    )


@router.get(
    "/{customer_id}",
    response_model=CustomerOut,
    summary="Get customer",
    responses=error_responses(
        401, 403, 404, 500,
        path="/customers/{customer_id}",
        messages={404: "Customer not found"},
    ),
)
def get_customer(
    customer_id: str,
    db: Session = Depends(get_db),
    actor: User = Depends(get_current_user),
):
    return _customer_out(_customer_or_404(db, customer_id))


@router.patch(
    "/{customer_id}",
    response_model=CustomerOut,
    summary="Update customer",
    responses=error_responses(
        401, 403, 404, 409, 422, 500,
        path="/customers/{customer_id}",
        messages={404: "Customer not found"},
    ),
)
def update_customer(
    customer_id: str,
    payload: CustomerUpdateIn,
    db: Session = Depends(get_db),
    actor: User = Depends(get_current_user),
):
    customer = _customer_or_404(db, customer_id)
    if payload.email is not None and _email_taken(db, str(payload.email), exclude_id=customer.id):
        raise HTTPException(status_code=409, detail="Email already exists for another customer")

    if payload.name is not None:
        customer.name = payload.name
    if payload.email is not None:
        customer.email = str(payload.email)
    if "phone" in payload.model_fields_set:
        customer.phone = payload.phone
    if payload.is_active is not None:
        customer.is_active = payload.is_active

    db.commit()
    db.refresh(customer)
    return _customer_out(customer)


@router.get(
    "/{customer_id}/orders",
    response_model=OrderListOut,
    summary="List customer orders",
    responses=error_responses(
        401, 403, 404, 422, 500,
        path="/customers/{customer_id}/orders",
        messages={404: "Customer not found"},
    ),
)
def list_customer_orders(
    customer_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    actor: User = Depends(get_current_user),
):
    _customer_or_404(db, customer_id)
    total = int(
        db.execute(select(func.count(Order.id)).where(Order.customer_id == customer_id)).scalar_one()
    )
    orders = db.execute(
        select(Order)
        .where(Order.customer_id == customer_id)
        .order_by(Order.order_date.desc(), Order.created_at.desc())
        .offset(offset)
        .limit(limit)
    ).scalars().all()

    items = [_order_out(order) for order in orders]
    count = len(items)
    return OrderListOut(
        items=items,
        pagination=PaginationMeta.for_page(
            total=total,
            limit=limit,
            offset=offset,
            count=count,
        ),
    )
