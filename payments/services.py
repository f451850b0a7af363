"""
Payment Reconciliation - keeps the local payment status aligned with the
gateway.

Entry points:
    - handle_webhook_event: payment_intent.succeeded / payment_intent.payment_failed
    - sync_payment: admin pulls the intent status and overwrites ours
    - refund_order: admin refund, optionally cancelling (and restocking)

All of them act only on processor-paid orders; webhooks for any other
order are acknowledged and ignored. Webhooks and admin calls are not
serialized against each other: the last write to ``payment_status``
wins, and the history log records every write so the sequence can be
reconstructed. A refund never gets downgraded by a later webhook or sync,
because the intent itself stays "succeeded" after a refund.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional

from django.db import DatabaseError, transaction
from django.db.models import F
from django.utils import timezone

from accounts.actors import Actor
from core.exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    ValidationError,
)
from orders import notifications
from orders.models import Order
from orders.restock import RestockResult
from orders.services import get_order, transition
from .gateway import GatewayEvent, get_gateway

logger = logging.getLogger(__name__)

PaymentStatus = Order.PaymentStatus

INTENT_STATUS_MAP = {
    'succeeded': PaymentStatus.PAID,
    'processing': PaymentStatus.PENDING,
    'requires_confirmation': PaymentStatus.PENDING,
    'requires_action': PaymentStatus.PENDING,
    'requires_payment_method': PaymentStatus.PENDING,
    'canceled': PaymentStatus.FAILED,
}

ZERO_DECIMAL_CURRENCIES = frozenset({
    'bif', 'clp', 'djf', 'gnf', 'jpy', 'kmf', 'krw', 'mga',
    'pyg', 'rwf', 'ugx', 'vnd', 'vuv', 'xaf', 'xof', 'xpf',
})

PAYMENT_SUCCEEDED = 'payment_intent.succeeded'
PAYMENT_FAILED = 'payment_intent.payment_failed'

REFUND_NOTE_PREFIX = 'Refunded via payment gateway'


@dataclass
class WebhookResult:
    handled: bool
    order_id: Optional[int] = None
    message: str = ''


@dataclass
class SyncResult:
    order: Order
    intent_status: str
    previous_payment_status: str
    payment_status: str


@dataclass
class RefundResult:
    order: Order
    refund_id: str
    amount: Decimal
    currency: str
    cancelled: bool = False
    restock: Optional[RestockResult] = None


def map_intent_status(intent_status: str) -> str:
    return INTENT_STATUS_MAP.get(intent_status, PaymentStatus.PENDING)


def _currency_exponent(currency: str) -> int:
    return 0 if currency.lower() in ZERO_DECIMAL_CURRENCIES else 2


def to_minor_units(amount: Decimal, currency: str) -> int:
    """12.50 usd -> 1250; 500 jpy -> 500."""
    scaled = amount * (Decimal(10) ** _currency_exponent(currency))
    return int(scaled.quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int, currency: str) -> Decimal:
    """1250 usd -> 12.50; keeps the currency's decimal places."""
    return Decimal(amount).scaleb(-_currency_exponent(currency))


def _require_processor(order: Order) -> None:
    if not order.is_processor_payment:
        raise InvalidStateError(
            f"Order {order.order_number} is not paid through the payment processor"
        )


def _require_intent(order: Order) -> None:
    _require_processor(order)
    if not order.payment_intent_id:
        raise InvalidStateError(f"Order {order.order_number} has no payment intent")


def _require_admin(actor: Actor) -> None:
    if not actor.is_admin:
        raise ForbiddenError("Admin access required")


def _write_payment_fields(order: Order, **fields) -> None:
    """Unconditional partial write; last writer wins on these fields."""
    Order.objects.filter(pk=order.pk).update(
        version=F('version') + 1, updated_at=timezone.now(), **fields
    )
    for name, value in fields.items():
        setattr(order, name, value)


def _payment_status_update(order: Order, new_status: str) -> dict:
    if order.payment_status == PaymentStatus.REFUNDED and new_status != PaymentStatus.REFUNDED:
        logger.warning(
            f"Order {order.order_number} is refunded; ignoring payment status {new_status}"
        )
        return {}
    return {'payment_status': new_status}


# =============================================================================
# Webhooks
# =============================================================================

def find_order_for_intent(intent: dict) -> Optional[Order]:
    """Locate the order by intent metadata, falling back to the intent id."""
    metadata = intent.get('metadata') or {}
    order_id = metadata.get('order_id') or metadata.get('orderId')
    if order_id:
        try:
            return Order.objects.get(pk=int(order_id))
        except (Order.DoesNotExist, TypeError, ValueError):
            logger.warning(f"Intent {intent.get('id')} references unknown order {order_id!r}")

    intent_id = intent.get('id')
    if intent_id:
        return Order.objects.filter(payment_intent_id=intent_id).first()
    return None


def _event_already_recorded(order: Order, event_id: str) -> bool:
    return bool(event_id) and order.status_history.filter(note__contains=event_id).exists()


def _ignore_non_processor(order: Order, event_id: str) -> WebhookResult:
    logger.warning(
        f"Event {event_id} references order {order.order_number}, "
        f"which is paid by {order.payment_method}; ignoring"
    )
    return WebhookResult(handled=False, order_id=order.pk, message='Order not paid through the payment processor')


def handle_webhook_event(event: GatewayEvent) -> WebhookResult:
    if event.type == PAYMENT_SUCCEEDED:
        return handle_payment_succeeded(event.id, event.object)
    if event.type == PAYMENT_FAILED:
        return handle_payment_failed(event.id, event.object)
    logger.info(f"Unhandled webhook event type {event.type}")
    return WebhookResult(handled=False, message=f'Unhandled event type {event.type}')


def handle_payment_succeeded(event_id: str, intent: dict) -> WebhookResult:
    """
    Mark the order paid and confirm it if still pending.

    A redelivered event skips the payment write but still completes the
    confirmation if an earlier delivery stopped short of it.
    """
    order = find_order_for_intent(intent)
    if order is None:
        logger.warning(f"No order for succeeded intent {intent.get('id')} (event {event_id})")
        return WebhookResult(handled=False, message='No matching order')
    if not order.is_processor_payment:
        return _ignore_non_processor(order, event_id)

    if _event_already_recorded(order, event_id):
        logger.warning(f"Event {event_id} already recorded on order {order.order_number}")
    else:
        fields = _payment_status_update(order, PaymentStatus.PAID)
        if order.paid_at is None:
            fields['paid_at'] = timezone.now()
        if not order.payment_intent_id and intent.get('id'):
            fields['payment_intent_id'] = intent['id']
        with transaction.atomic():
            _write_payment_fields(order, **fields)
            order.append_history(
                order.status,
                f"Payment succeeded (event {event_id}, intent {intent.get('id')})"
            )
        logger.info(f"Order {order.order_number} marked paid from event {event_id}")

    order.refresh_from_db()
    if order.status == Order.Status.PENDING and order.payment_status == PaymentStatus.PAID:
        transition(order.pk, Order.Status.CONFIRMED, Actor.system(), 'Payment succeeded, order confirmed.')

    return WebhookResult(handled=True, order_id=order.pk, message='Payment recorded')


def handle_payment_failed(event_id: str, intent: dict) -> WebhookResult:
    """Mark the payment failed and cancel the order, returning its stock."""
    order = find_order_for_intent(intent)
    if order is None:
        logger.warning(f"No order for failed intent {intent.get('id')} (event {event_id})")
        return WebhookResult(handled=False, message='No matching order')
    if not order.is_processor_payment:
        return _ignore_non_processor(order, event_id)

    if _event_already_recorded(order, event_id):
        logger.warning(f"Event {event_id} already recorded on order {order.order_number}")
    else:
        error = (intent.get('last_payment_error') or {}).get('message') or 'no reason given'
        with transaction.atomic():
            _write_payment_fields(order, **_payment_status_update(order, PaymentStatus.FAILED))
            order.append_history(
                order.status,
                f"Payment failed (event {event_id}, intent {intent.get('id')}): {error}"
            )
        logger.info(f"Order {order.order_number} payment failed from event {event_id}")

    order.refresh_from_db()
    if order.status == Order.Status.DELIVERED:
        logger.warning(f"Payment failed for delivered order {order.order_number}; status left as is")
        return WebhookResult(handled=True, order_id=order.pk, message='Delivered order left unchanged')

    transition(order.pk, Order.Status.CANCELLED, Actor.system(), 'Payment failed')
    return WebhookResult(handled=True, order_id=order.pk, message='Order cancelled')


# =============================================================================
# Admin sync
# =============================================================================

def sync_payment(order_id: int, actor: Actor) -> SyncResult:
    """
    Overwrite the local payment status with the gateway's view of the intent.

    Raises:
        ForbiddenError: Caller is not an admin
        NotFoundError: No such order
        InvalidStateError: Not a processor order, or no intent reference
        UpstreamError: Gateway call failed
    """
    _require_admin(actor)
    order = get_order(order_id)
    _require_intent(order)

    intent = get_gateway().retrieve_intent(order.payment_intent_id)
    mapped = map_intent_status(intent.status)
    previous = order.payment_status

    fields = _payment_status_update(order, mapped)
    if mapped == PaymentStatus.PAID and order.paid_at is None:
        fields['paid_at'] = timezone.now()
    new_status = fields.get('payment_status', previous)

    with transaction.atomic():
        _write_payment_fields(order, **fields)
        order.append_history(
            order.status,
            f"Admin sync payment: intent={intent.id} status={intent.status} "
            f"-> paymentStatus={new_status} (prev={previous})",
            actor.user_id,
        )

    logger.info(
        f"Order {order.order_number} payment synced: {intent.status} -> {new_status} (prev={previous})"
    )
    order.refresh_from_db()
    return SyncResult(
        order=order,
        intent_status=intent.status,
        previous_payment_status=previous,
        payment_status=order.payment_status,
    )


# =============================================================================
# Refund
# =============================================================================

def refund_idempotency_key(order: Order) -> str:
    """
    Same key for every retry of the same logical refund: it only changes
    once a refund has been recorded on the order.
    """
    recorded = order.status_history.filter(note__startswith=REFUND_NOTE_PREFIX).count()
    return f"order-{order.pk}-refund-{recorded + 1}"


def _parse_refund_amount(amount, order: Order) -> Optional[Decimal]:
    if amount is None:
        return None
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise ValidationError("Refund amount must be a number")
    if not value.is_finite() or value <= 0:
        raise ValidationError("Refund amount must be > 0")
    exponent = _currency_exponent(order.currency)
    if -value.normalize().as_tuple().exponent > exponent:
        raise ValidationError(
            f"Refund amount {value} has more than {exponent} decimal places "
            f"for {order.currency.upper()}"
        )
    if value > order.total_amount:
        raise ValidationError(
            f"Refund amount {value} exceeds order total {order.total_amount}"
        )
    return value


def refund_order(order_id: int, actor: Actor, amount=None, reason: str = 'Admin refund',
                 cancel_order: bool = True, restock: bool = True) -> RefundResult:
    """
    Refund a paid processor order, fully or partially.

    Args:
        amount: Major units (e.g. 12.50); None refunds the full total
        reason: Stored on the history entries
        cancel_order: Also cancel the order if it is not terminal
        restock: Restock when cancelling

    Raises:
        ForbiddenError, NotFoundError, InvalidStateError, ValidationError,
        UpstreamError (nothing changed), ConflictError (gateway refunded
        but the local write failed; retrying reuses the idempotency key)
    """
    _require_admin(actor)
    order = get_order(order_id)
    _require_intent(order)
    if order.payment_status != PaymentStatus.PAID:
        raise InvalidStateError(
            f'Order payment status must be "paid" to refund. Current: {order.payment_status}'
        )

    value = _parse_refund_amount(amount, order)
    amount_minor = to_minor_units(value, order.currency) if value is not None else None

    refund = get_gateway().refund(
        order.payment_intent_id,
        amount_minor,
        idempotency_key=refund_idempotency_key(order),
        metadata={
            'order_id': str(order.pk),
            'order_number': order.order_number,
            'admin_user_id': str(actor.id),
        },
    )
    refunded_amount = value if value is not None else order.total_amount

    try:
        with transaction.atomic():
            _write_payment_fields(
                order,
                payment_status=PaymentStatus.REFUNDED,
                refund_amount=refunded_amount,
                refunded_at=timezone.now(),
            )
            order.append_history(
                order.status,
                f"{REFUND_NOTE_PREFIX} ({refund.id}). {reason}",
                actor.user_id,
            )
    except DatabaseError as e:
        logger.exception(
            f"Refund {refund.id} issued for order {order.order_number} but not recorded locally"
        )
        raise ConflictError(
            f"Refund {refund.id} was issued but could not be recorded; retry the refund"
        ) from e

    logger.info(
        f"Order {order.order_number} refunded {refunded_amount} {order.currency} ({refund.id})"
    )
    notifications.notify_customer(order, notifications.REFUND_ISSUED, refund_amount=str(refunded_amount))

    result = RefundResult(
        order=order,
        refund_id=refund.id,
        amount=from_minor_units(refund.amount_minor_units, refund.currency),
        currency=refund.currency,
    )

    order.refresh_from_db()
    if cancel_order and not order.is_terminal:
        cancelled = transition(
            order.pk,
            Order.Status.CANCELLED,
            actor,
            f"Cancelled after refund {refund.id}. {reason}",
            restock=restock,
        )
        result.cancelled = cancelled.changed
        result.restock = cancelled.restock
        order = cancelled.order

    result.order = order
    return result
