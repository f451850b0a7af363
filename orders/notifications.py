"""
Fire-and-forget customer notifications.

Dispatch is deferred until the surrounding transaction commits and queues a
Celery task. A failure to queue is logged and never reaches the caller.
"""
import logging

from django.db import transaction

logger = logging.getLogger(__name__)

ORDER_CONFIRMED = 'order_confirmed'
ORDER_CANCELLED = 'order_cancelled'
ORDER_DELIVERED = 'order_delivered'
REFUND_ISSUED = 'refund_issued'


def _dispatch(template_kind, recipient, payload):
    try:
        from .tasks import send_order_notification
        send_order_notification.delay(template_kind, recipient, payload)
        logger.info(f"Queued {template_kind} notification for {recipient}")
    except Exception as e:
        # Don't fail the order operation if task queuing fails
        logger.error(f"Failed to queue {template_kind} notification: {e}")


def send(template_kind: str, recipient: str, payload: dict) -> None:
    if not recipient:
        logger.debug(f"No recipient for {template_kind} notification, skipping")
        return
    transaction.on_commit(lambda: _dispatch(template_kind, recipient, payload))


def notify_customer(order, template_kind: str, **extra) -> None:
    payload = {
        'order_id': order.pk,
        'order_number': order.order_number,
        'status': order.status,
        'total_amount': str(order.total_amount),
        'currency': order.currency,
    }
    payload.update(extra)
    send(template_kind, order.customer.email, payload)
