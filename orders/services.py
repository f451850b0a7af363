"""
Order Service Layer - the status state machine.

Every status change goes through ``transition()``:
1. Load the order (NotFoundError)
2. Re-requesting the current status is a no-op success
3. Check the actor may make this change (ForbiddenError)
4. Check the edge exists in TRANSITIONS (InvalidTransitionError)
5. Conditionally write status + history against the loaded version
   (ConflictError if someone else wrote first)
6. On CANCELLED, run the restock engine

Steps 5 and 6 are separate commits. If restock fails the order stays
cancelled and the caller gets a retryable ConflictError; re-issuing the
cancel re-runs the idempotent restock.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from django.contrib.auth import get_user_model
from django.db import DatabaseError, transaction
from django.db.models import F
from django.utils import timezone

from accounts.actors import Actor, CUSTOMER, DELIVERY
from core.exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from . import notifications
from .models import Order
from .restock import RestockResult, restock_order_items

logger = logging.getLogger(__name__)

Status = Order.Status

TRANSITIONS = {
    Status.PENDING: (Status.CONFIRMED, Status.CANCELLED),
    Status.CONFIRMED: (Status.ASSIGNED, Status.CANCELLED),
    Status.ASSIGNED: (Status.PICKED_UP, Status.CANCELLED),
    Status.PICKED_UP: (Status.ON_THE_WAY, Status.CANCELLED),
    Status.ON_THE_WAY: (Status.DELIVERED, Status.CANCELLED),
    Status.DELIVERED: (),
    Status.CANCELLED: (),
}

CUSTOMER_CANCELLABLE_STATUSES = (Status.PENDING, Status.CONFIRMED)
DRIVER_TARGET_STATUSES = (Status.PICKED_UP, Status.ON_THE_WAY, Status.DELIVERED)

STATUS_NOTIFICATIONS = {
    Status.CONFIRMED: notifications.ORDER_CONFIRMED,
    Status.CANCELLED: notifications.ORDER_CANCELLED,
    Status.DELIVERED: notifications.ORDER_DELIVERED,
}


@dataclass
class TransitionResult:
    order: Order
    changed: bool
    restock: Optional[RestockResult] = None


def allowed_next_statuses(status: str) -> tuple:
    return TRANSITIONS.get(status, ())


def get_order(order_id: int) -> Order:
    try:
        return Order.objects.select_related('customer', 'delivery_man').get(pk=order_id)
    except Order.DoesNotExist:
        raise NotFoundError(f"Order {order_id} not found")


def get_order_by_number(order_number: str) -> Order:
    try:
        return Order.objects.select_related('customer', 'delivery_man').get(
            order_number=order_number
        )
    except Order.DoesNotExist:
        raise NotFoundError(f"Order {order_number} not found")


def check_order_access(order: Order, actor: Actor) -> None:
    """Non-admins may only touch orders they own or are assigned to."""
    if actor.is_admin:
        return
    if actor.role == CUSTOMER and order.customer_id == actor.id:
        return
    if actor.role == DELIVERY and order.delivery_man_id == actor.id:
        return
    raise ForbiddenError("You do not have access to this order")


def authorize_target(actor: Actor, target: str) -> None:
    """Statuses a role may ever request, regardless of the order's state."""
    if actor.is_admin:
        return
    if actor.role == CUSTOMER:
        if target != Status.CANCELLED:
            raise ForbiddenError("Customers may only cancel orders")
        return
    if actor.role != DELIVERY or target not in DRIVER_TARGET_STATUSES:
        raise ForbiddenError(f"Not allowed to set status to \"{target}\"")


def authorize_transition(order: Order, actor: Actor, target: str) -> None:
    """
    Role rules on top of ownership.

    Customers may only cancel, only before a driver is assigned, and only if
    the order was not already paid through the processor. Drivers may only
    move their assigned order along the delivery leg.
    """
    if actor.is_admin:
        return
    check_order_access(order, actor)
    authorize_target(actor, target)

    if actor.role == CUSTOMER:
        if order.status not in CUSTOMER_CANCELLABLE_STATUSES:
            raise ForbiddenError("Order can no longer be cancelled")
        if order.delivery_man_id is not None:
            raise ForbiddenError("Order is already assigned and cannot be cancelled by customer")
        if order.is_processor_payment and order.payment_status == Order.PaymentStatus.PAID:
            raise ForbiddenError("Paid orders require admin cancellation/refund")


def _get_driver(driver_id: int):
    User = get_user_model()
    try:
        return User.objects.get(pk=driver_id, role=User.Role.DELIVERY, is_active=True)
    except User.DoesNotExist:
        raise ValidationError(f"Driver {driver_id} not found or not an active delivery user")


def run_restock(order: Order) -> RestockResult:
    """Restock after a cancellation, turning store failures into a retryable error."""
    try:
        return restock_order_items(order.pk)
    except DatabaseError as e:
        logger.exception(f"Restock failed for cancelled order {order.order_number}")
        raise ConflictError(
            f"Order {order.order_number} is cancelled but inventory restock failed; "
            "retry the cancellation"
        ) from e


def transition(order_id: int, target: str, actor: Actor, note: str = '', *,
               driver_id: Optional[int] = None, restock: bool = True) -> TransitionResult:
    """
    Move an order to ``target``.

    Args:
        order_id: Order primary key
        target: One of Order.Status values
        actor: Who is asking
        note: Free text stored on the history entry
        driver_id: Required when assigning an order without a driver
        restock: Run the restock engine on cancellation (admin choice)

    Raises:
        NotFoundError, ForbiddenError, InvalidTransitionError,
        ValidationError, ConflictError
    """
    if target not in Status.values:
        raise ValidationError(f"Unknown status \"{target}\"")

    order = get_order(order_id)
    check_order_access(order, actor)

    # Role check first so a no-op never masks a forbidden request
    authorize_target(actor, target)
    if order.status == target:
        logger.info(f"Order {order.order_number} already {target}, nothing to do")
        restock_result = None
        if target == Status.CANCELLED and restock:
            # Completes a cancellation whose restock failed earlier
            restock_result = run_restock(order)
        return TransitionResult(order=order, changed=False, restock=restock_result)

    authorize_transition(order, actor, target)

    allowed = allowed_next_statuses(order.status)
    if target not in allowed:
        raise InvalidTransitionError(order.status, target, allowed)

    now = timezone.now()
    fields = {'status': target, 'updated_at': now}

    if target == Status.ASSIGNED:
        if driver_id is not None:
            fields['delivery_man'] = _get_driver(driver_id)
        elif order.delivery_man_id is None:
            raise ValidationError("driver_id is required to assign an order")
    elif target == Status.DELIVERED:
        fields['actual_delivery'] = now
    elif target == Status.CANCELLED:
        fields['cancelled_at'] = now
        fields['cancellation_reason'] = (note or 'Cancelled')[:200]

    with transaction.atomic():
        updated = Order.objects.filter(pk=order.pk, version=order.version).update(
            version=F('version') + 1, **fields
        )
        if not updated:
            raise ConflictError(
                f"Order {order.order_number} was modified concurrently; reload and retry"
            )
        order.append_history(target, note, actor.user_id)

    previous = order.status
    order.refresh_from_db()
    logger.info(f"Order {order.order_number}: {previous} -> {target} by {actor.role}:{actor.id}")

    restock_result = None
    if target == Status.CANCELLED and restock:
        restock_result = run_restock(order)

    kind = STATUS_NOTIFICATIONS.get(target)
    if kind:
        notifications.notify_customer(order, kind, note=note)

    return TransitionResult(order=order, changed=True, restock=restock_result)


def cancel_order(order_id: int, actor: Actor, reason: Optional[str] = None,
                 restock: bool = True) -> TransitionResult:
    """
    Cancel on behalf of a customer or an admin.

    Customers always restock; admins may opt out.
    """
    if actor.role == CUSTOMER:
        restock = True
        reason = reason or 'Customer cancelled'
    else:
        reason = reason or 'Admin cancelled'
    return transition(order_id, Status.CANCELLED, actor, reason[:200], restock=restock)


def orders_visible_to(actor: Actor):
    queryset = Order.objects.select_related('customer', 'delivery_man')
    if actor.is_admin:
        return queryset
    if actor.role == CUSTOMER:
        return queryset.filter(customer_id=actor.id)
    if actor.role == DELIVERY:
        return queryset.filter(delivery_man_id=actor.id)
    return queryset.none()
