"""
MoMo IPN reconciliation.

The provider posts the payment outcome to the callback endpoint, at least
once and without authentication. This module verifies the signature and
moves the order out of PENDING together with its payment and, on success,
the catalog stock. Redelivery of an already-applied callback is a no-op.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import crud, models, schemas
from .clients.momo_client import parse_order_id
from .exceptions import InvalidSignature, NotFound, PersistenceError
from .models import OrderStatus, PaymentStatus
from .signature import CALLBACK_FIELDS, Signer, ordered_fields

logger = logging.getLogger(__name__)

RESULT_SUCCESS = 0

# Statuses an administrator can set before the gateway confirms payment
OVERRIDE_PAID_STATUSES = (
    OrderStatus.PAID, OrderStatus.SHIPPING, OrderStatus.DELIVERED, OrderStatus.COMPLETED,
)


@dataclass
class CallbackOutcome:
    order_id: int
    applied: bool
    status: OrderStatus


def verify_callback(signer: Signer, access_key: str, payload: schemas.MomoCallback) -> bool:
    values = payload.model_dump()
    values["accessKey"] = access_key
    return signer.verify(ordered_fields(CALLBACK_FIELDS, values), payload.signature)


def _settle(db: Session, db_order: models.Order, payment: Optional[models.Payment], trans_id: str) -> bool:
    """Attach the transaction to the payment and decrement stock, once per payment."""
    paid_at = datetime.utcnow()
    if payment is None:
        db.add(models.Payment(
            order_id=db_order.id,
            method=models.PaymentMethod.MOMO,
            amount=db_order.total,
            status=PaymentStatus.SUCCESS,
            transaction_code=trans_id,
            paid_at=paid_at,
        ))
    elif not crud.settle_payment_if_unsettled(db, db_order.id, trans_id, payment.paid_at or paid_at):
        return False

    for item in db_order.items:
        crud.decrement_stock(db, item.product_id, item.quantity)
    return True


def _mark_paid(db: Session, db_order: models.Order, payment: Optional[models.Payment], trans_id: str) -> bool:
    if not _settle(db, db_order, payment, trans_id):
        return False
    crud.log_order_event(
        db,
        order_id=db_order.id,
        event_type="paid",
        description=f"MoMo payment succeeded (transaction {trans_id})",
        old_value=OrderStatus.PENDING.value,
        new_value=OrderStatus.PAID.value,
    )
    return True


def _mark_settled(db: Session, db_order: models.Order, payment: Optional[models.Payment], trans_id: str) -> bool:
    status = db_order.status.value
    if not _settle(db, db_order, payment, trans_id):
        return False
    crud.log_order_event(
        db,
        order_id=db_order.id,
        event_type="payment_settled",
        description=f"MoMo payment confirmed (transaction {trans_id}) for order already {status}",
        old_value=status,
        new_value=status,
    )
    return True


def _mark_failed(db: Session, db_order: models.Order, payment: Optional[models.Payment], message: str) -> None:
    if payment is None:
        logger.warning(f"Order #{db_order.id} had no payment record; creating one from the callback")
        payment = models.Payment(
            order_id=db_order.id,
            method=models.PaymentMethod.MOMO,
            amount=db_order.total,
        )
        db.add(payment)
    payment.status = PaymentStatus.FAILED
    crud.log_order_event(
        db,
        order_id=db_order.id,
        event_type="payment_failed",
        description=f"MoMo payment failed or expired: {message}",
        old_value=OrderStatus.PENDING.value,
        new_value=OrderStatus.CANCELLED.value,
    )


def handle_callback(
    db: Session,
    signer: Signer,
    access_key: str,
    payload: schemas.MomoCallback,
) -> CallbackOutcome:
    """
    Apply a MoMo IPN callback.

    ``resultCode == 0`` marks the payment SUCCESS, the order PAID and
    decrements stock for every order line. Any other code marks the payment
    FAILED and the order CANCELLED. Either branch commits as one transaction.

    A payment that already carries a transaction code has been settled and
    its stock decremented, so any further callback for it is a no-op whatever
    the order status. A success callback for an order an administrator moved
    past PENDING by hand settles the payment and stock without changing the
    status.

    Args:
        db: Database session
        signer: Signer keyed with the MoMo secret
        access_key: MoMo access key, part of the signed string
        payload: Parsed callback body

    Returns:
        CallbackOutcome; ``applied`` is False for a redelivered callback

    Raises:
        InvalidSignature: if the signature does not match
        InvalidCallback: if the request id does not identify an order
        NotFound: if the order does not exist
        PersistenceError: if the transaction fails
    """
    if not verify_callback(signer, access_key, payload):
        logger.error(
            f"Invalid MoMo signature for request {payload.requestId} "
            f"(resultCode {payload.resultCode}, transId {payload.transId})"
        )
        raise InvalidSignature()

    order_id = parse_order_id(payload.requestId)
    db_order = crud.get_order(db, order_id)
    if db_order is None:
        logger.error(f"MoMo callback for unknown order #{order_id} (request {payload.requestId})")
        raise NotFound("Order not found")

    current_status = db_order.status
    payment = db_order.payment
    succeeded = payload.resultCode == RESULT_SUCCESS
    trans_id = str(payload.transId)

    if payment is not None and payment.transaction_code is not None:
        logger.warning(
            f"Duplicate MoMo callback for order #{order_id}: payment already settled "
            f"by transaction {payment.transaction_code}; ignoring"
        )
        return CallbackOutcome(order_id=order_id, applied=False, status=current_status)

    settles_override = succeeded and current_status in OVERRIDE_PAID_STATUSES
    if current_status != OrderStatus.PENDING and not settles_override:
        logger.warning(
            f"Duplicate MoMo callback for order #{order_id} already {current_status.value}; ignoring"
        )
        return CallbackOutcome(order_id=order_id, applied=False, status=current_status)

    if settles_override:
        new_status = current_status
    else:
        new_status = OrderStatus.PAID if succeeded else OrderStatus.CANCELLED

    try:
        if settles_override:
            applied = _mark_settled(db, db_order, payment, trans_id)
        elif not crud.transition_if_pending(db, order_id, new_status):
            applied = False
        elif succeeded:
            applied = _mark_paid(db, db_order, payment, trans_id)
        else:
            _mark_failed(db, db_order, payment, payload.message)
            applied = True

        if not applied:
            db.rollback()
            db.expire_all()
            current = db.get(models.Order, order_id)
            logger.warning(f"Order #{order_id} reconciled concurrently as {current.status.value}; ignoring")
            return CallbackOutcome(order_id=order_id, applied=False, status=current.status)

        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to reconcile MoMo callback for order #{order_id}: {e}")
        raise PersistenceError("Failed to reconcile payment") from e
    except Exception:
        db.rollback()
        raise

    if settles_override:
        logger.info(f"Payment settled for order #{order_id} already {new_status.value} (transaction {trans_id})")
    elif succeeded:
        logger.info(f"Payment success for order #{order_id} (transaction {trans_id})")
    else:
        logger.info(f"Payment failed/expired for order #{order_id} (resultCode {payload.resultCode}); order cancelled")
    return CallbackOutcome(order_id=order_id, applied=True, status=new_status)
