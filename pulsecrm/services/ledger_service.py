"""Communication log ledger.

A log row is created ``pending`` and finalized exactly once by one of two transitions:

* ``mark_log_failed``: the orchestrator's optimistic path when the gateway raises.
* ``apply_delivery_receipt``: the vendor receipt, which is authoritative and may
  replace an orchestrator-written failure. A second receipt for the same row is ignored.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from pulsecrm.core.observability import log_event, pipeline_logger
from pulsecrm.db.base import utcnow
from pulsecrm.models.campaign import (
    LOG_FAILED,
    LOG_PENDING,
    LOG_SENT,
    STATUS_SOURCE_ORCHESTRATOR,
    STATUS_SOURCE_RECEIPT,
    CommunicationLog,
)
from pulsecrm.services.delivery_gateway import DeliveryReceipt

GATEWAY_ERROR_REASON = "gateway error"
_RECEIPT_STATUSES = {LOG_SENT, LOG_FAILED}


class ReceiptNotFoundError(LookupError):
    def __init__(self, log_id: str):
        super().__init__(f"Communication log '{log_id}' not found")
        self.log_id = log_id


@dataclass
class ReceiptOutcome:
    log: CommunicationLog
    applied: bool


def create_pending_log(db: Session, *, campaign_id: str, customer_id: str, message: str) -> CommunicationLog:
    log = CommunicationLog(
        campaign_id=campaign_id,
        customer_id=customer_id,
        message=message,
        status=LOG_PENDING,
    )
    db.add(log)
    db.commit()
    db.refresh(log)
    return log


def record_vendor_id(db: Session, log: CommunicationLog, vendor_id: str) -> None:
    # A receipt may already have landed with the same id.
    if log.vendor_id:
        return
    log.vendor_id = vendor_id
    db.add(log)
    db.commit()


def mark_log_failed(db: Session, log: CommunicationLog, *, reason: str = GATEWAY_ERROR_REASON) -> bool:
    db.refresh(log)
    if log.status != LOG_PENDING:
        return False
    log.status = LOG_FAILED
    log.failure_reason = reason
    log.status_source = STATUS_SOURCE_ORCHESTRATOR
    db.add(log)
    db.commit()
    return True


def apply_delivery_receipt(
    db: Session,
    *,
    log_id: str,
    vendor_id: str,
    status: str,
    delivered_at: datetime | None,
    failure_reason: str | None = None,
) -> ReceiptOutcome:
    normalized = status.strip().lower()
    if normalized not in _RECEIPT_STATUSES:
        raise ValueError(f"Unsupported receipt status '{status}'")

    log = db.execute(select(CommunicationLog).where(CommunicationLog.id == log_id)).scalar_one_or_none()
    if log is None:
        log_event(pipeline_logger, "delivery_receipt_unknown_log", level=logging.WARNING, log_id=log_id)
        raise ReceiptNotFoundError(log_id)

    if log.status_source == STATUS_SOURCE_RECEIPT:
        log_event(
            pipeline_logger,
            "delivery_receipt_ignored",
            log_id=log_id,
            vendor_id=vendor_id,
            status=normalized,
            current_status=log.status,
        )
        return ReceiptOutcome(log=log, applied=False)

    log.status = normalized
    log.sent_at = delivered_at or utcnow()
    log.failure_reason = failure_reason if normalized == LOG_FAILED else None
    log.vendor_id = vendor_id
    log.status_source = STATUS_SOURCE_RECEIPT
    db.add(log)
    db.commit()
    db.refresh(log)

    log_event(
        pipeline_logger,
        "delivery_receipt_applied",
        log_id=log_id,
        campaign_id=log.campaign_id,
        vendor_id=vendor_id,
        status=normalized,
    )
    return ReceiptOutcome(log=log, applied=True)


class LedgerReceiptSink:
    """Receipt sink that writes gateway receipts straight into the ledger."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    async def __call__(self, receipt: DeliveryReceipt) -> None:
        with self._session_factory() as db:
            try:
                apply_delivery_receipt(
                    db,
                    log_id=receipt.log_id,
                    vendor_id=receipt.vendor_id,
                    status=receipt.status,
                    delivered_at=receipt.delivered_at,
                    failure_reason=receipt.failure_reason,
                )
            except ReceiptNotFoundError:
                db.rollback()
