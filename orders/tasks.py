"""
Celery tasks for order processing.

Tasks:
    - send_order_notification: e-mail a customer about an order event
    - cancel_stale_pending_orders: periodic cleanup of unpaid processor orders
"""
import logging
from datetime import timedelta

from celery import shared_task
from django.conf import settings
from django.core.mail import send_mail
from django.utils import timezone

logger = logging.getLogger(__name__)

TEMPLATES = {
    'order_confirmed': (
        'Order {order_number} confirmed',
        'Your payment was received and order {order_number} is confirmed.\n'
        'Total: {total_amount} {currency}',
    ),
    'order_cancelled': (
        'Order {order_number} cancelled',
        'Order {order_number} has been cancelled. {note}',
    ),
    'order_delivered': (
        'Order {order_number} delivered',
        'Order {order_number} has been delivered. Thank you!',
    ),
    'refund_issued': (
        'Refund for order {order_number}',
        'A refund of {refund_amount} {currency} was issued for order {order_number}.',
    ),
}


class _Defaults(dict):
    def __missing__(self, key):
        return ''


@shared_task(
    bind=True,
    max_retries=3,
    default_retry_delay=60,
    autoretry_for=(Exception,),
    retry_backoff=True
)
def send_order_notification(self, template_kind: str, recipient: str, payload: dict):
    """
    Render and send one notification e-mail.

    Args:
        template_kind: Key into TEMPLATES
        recipient: E-mail address
        payload: Values for the template placeholders

    Returns:
        Dict with delivery status
    """
    template = TEMPLATES.get(template_kind)
    if template is None:
        logger.error(f"Unknown notification template {template_kind!r}")
        return {'status': 'error', 'message': f'Unknown template {template_kind}'}

    values = _Defaults(payload)
    subject = template[0].format_map(values)
    body = template[1].format_map(values)

    send_mail(subject, body, settings.DEFAULT_FROM_EMAIL, [recipient])
    logger.info(f"[CELERY] Sent {template_kind} to {recipient} for order {payload.get('order_number')}")

    return {
        'status': 'success',
        'template': template_kind,
        'order_number': payload.get('order_number'),
    }


@shared_task
def cancel_stale_pending_orders():
    """
    Periodic task cancelling processor orders whose payment never arrived.

    Cancellation goes through the state machine as the system actor, so the
    reserved stock is returned.
    """
    from accounts.actors import Actor
    from core.exceptions import DomainError
    from orders.models import Order
    from orders.services import transition

    threshold = timezone.now() - timedelta(minutes=settings.PENDING_PAYMENT_TIMEOUT_MINUTES)
    stale_ids = list(
        Order.objects.filter(
            status=Order.Status.PENDING,
            payment_method=Order.PaymentMethod.PROCESSOR,
            payment_status=Order.PaymentStatus.PENDING,
            created_at__lt=threshold,
        ).values_list('id', flat=True)
    )

    cancelled = 0
    for order_id in stale_ids:
        try:
            result = transition(order_id, Order.Status.CANCELLED, Actor.system(), 'Payment not completed in time')
        except DomainError as e:
            logger.warning(f"Could not cancel stale order {order_id}: {e}")
            continue
        if result.changed:
            cancelled += 1

    if stale_ids:
        logger.warning(f"Found {len(stale_ids)} stale pending orders, cancelled {cancelled}")

    return {'found': len(stale_ids), 'cancelled': cancelled}
