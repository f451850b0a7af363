"""
Restock engine - returns an order's reserved units to the catalog.

Idempotent: a RESTOCK_NOTE entry in the order's history marks a completed
restock, and a second call is a no-op.

The order row is locked with select_for_update() for the whole check,
increment and mark sequence, so two concurrent callers (a customer cancel
racing an admin refund cascade) restock at most once, and a failure on any
item rolls back every increment.
"""
import logging
from dataclasses import dataclass

from django.db import transaction

from core.exceptions import NotFoundError
from inventory.models import Product
from .models import Order, RESTOCK_NOTE

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RestockResult:
    restocked: bool
    item_count: int = 0
    message: str = ''


def restock_order_items(order_id: int) -> RestockResult:
    """
    Increment stock for every line item of the order, once.

    Returns:
        RestockResult(restocked=True, item_count=n) on the first call,
        RestockResult(restocked=False) on every later call.

    Raises:
        NotFoundError: If the order or one of its products does not exist
    """
    with transaction.atomic():
        try:
            order = Order.objects.select_for_update().get(pk=order_id)
        except Order.DoesNotExist:
            raise NotFoundError(f"Order {order_id} not found")

        if order.is_restocked:
            logger.info(f"Order {order.order_number} already restocked, skipping")
            return RestockResult(restocked=False, message='Already restocked')

        # Lock-step by product id to keep row lock order stable
        items = [item for item in order.items.order_by('product_id') if item.quantity > 0]

        for item in items:
            if not Product.increment_stock(item.product_id, item.quantity):
                raise NotFoundError(f"Product {item.product_id} not found")
            logger.debug(
                f"Order {order.order_number}: returned {item.quantity} of {item.name} to stock"
            )

        # Marker carries the current status so it stays inside the status enum
        order.append_history(order.status, RESTOCK_NOTE)

    logger.info(f"Order {order.order_number} restocked: {len(items)} items")
    return RestockResult(restocked=True, item_count=len(items))
