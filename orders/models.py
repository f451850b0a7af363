"""
Order Models - Order, OrderItem and the append-only status history.

Order Status Flow:
    PENDING -> CONFIRMED -> ASSIGNED -> PICKED_UP -> ON_THE_WAY -> DELIVERED
    any non-terminal status -> CANCELLED

DELIVERED and CANCELLED are terminal. Orders are never deleted.
"""
from decimal import Decimal
from typing import Optional

from django.conf import settings
from django.core.validators import MinValueValidator
from django.db import models
from django.db.models import Q
from django.utils import timezone

from inventory.models import Product
from tracking.geo import Coordinates, Position

RESTOCK_NOTE = 'Inventory restocked'


def default_currency() -> str:
    return settings.PAYMENT_CURRENCY.lower()


class Order(models.Model):
    """
    Order entity tracked from placement to delivery or cancellation.

    ``version`` is bumped on every write to status or payment fields so a
    writer holding a stale copy can be rejected instead of overwriting.
    """

    class Status(models.TextChoices):
        PENDING = 'pending', 'Pending'
        CONFIRMED = 'confirmed', 'Confirmed'
        ASSIGNED = 'assigned', 'Assigned'
        PICKED_UP = 'picked_up', 'Picked Up'
        ON_THE_WAY = 'on_the_way', 'On The Way'
        DELIVERED = 'delivered', 'Delivered'
        CANCELLED = 'cancelled', 'Cancelled'

    class PaymentMethod(models.TextChoices):
        CASH_ON_DELIVERY = 'cod', 'Cash on delivery'
        PROCESSOR = 'processor', 'Payment processor'

    class PaymentStatus(models.TextChoices):
        PENDING = 'pending', 'Pending'
        PAID = 'paid', 'Paid'
        FAILED = 'failed', 'Failed'
        REFUNDED = 'refunded', 'Refunded'

    TERMINAL_STATUSES = (Status.DELIVERED, Status.CANCELLED)
    ACTIVE_DELIVERY_STATUSES = (Status.PICKED_UP, Status.ON_THE_WAY)

    order_number = models.CharField(max_length=32, unique=True)
    customer = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name='orders',
        help_text="Customer who placed the order"
    )
    delivery_man = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='deliveries',
        help_text="Assigned delivery driver"
    )

    # Pricing
    subtotal = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    delivery_fee = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal('0.00'))
    tax = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal('0.00'))
    discount = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal('0.00'))
    total_amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=Decimal('0.00'),
        validators=[MinValueValidator(Decimal('0.00'))]
    )
    currency = models.CharField(max_length=3, default=default_currency)

    # Status
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.PENDING,
        db_index=True
    )
    version = models.PositiveIntegerField(default=0)

    # Payment
    payment_method = models.CharField(
        max_length=20,
        choices=PaymentMethod.choices,
        default=PaymentMethod.PROCESSOR
    )
    payment_status = models.CharField(
        max_length=20,
        choices=PaymentStatus.choices,
        default=PaymentStatus.PENDING,
        db_index=True
    )
    payment_intent_id = models.CharField(max_length=255, blank=True, default='', db_index=True)
    paid_at = models.DateTimeField(null=True, blank=True)
    refunded_at = models.DateTimeField(null=True, blank=True)
    refund_amount = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)

    # Delivery address
    street = models.CharField(max_length=255, blank=True, default='')
    city = models.CharField(max_length=100, blank=True, default='')
    state = models.CharField(max_length=100, blank=True, default='')
    zip_code = models.CharField(max_length=20, blank=True, default='')
    destination_latitude = models.FloatField(null=True, blank=True)
    destination_longitude = models.FloatField(null=True, blank=True)

    # Order-scoped driver position
    delivery_latitude = models.FloatField(null=True, blank=True)
    delivery_longitude = models.FloatField(null=True, blank=True)
    delivery_location_at = models.DateTimeField(null=True, blank=True)

    estimated_delivery = models.DateTimeField(null=True, blank=True)
    actual_delivery = models.DateTimeField(null=True, blank=True)

    # Cancellation
    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancellation_reason = models.CharField(max_length=200, blank=True, default='')

    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Order'
        verbose_name_plural = 'Orders'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['customer', 'status'], name='order_customer_status_idx'),
            models.Index(fields=['delivery_man', 'status'], name='order_driver_status_idx'),
            models.Index(fields=['status', 'updated_at'], name='order_status_updated_idx'),
        ]
        constraints = [
            models.CheckConstraint(
                condition=(
                    Q(refund_amount__isnull=True, refunded_at__isnull=True)
                    | Q(refund_amount__isnull=False, refunded_at__isnull=False, payment_status='refunded')
                ),
                name='order_refund_fields_require_refunded_status'
            ),
        ]

    def __str__(self):
        return f"Order {self.order_number} ({self.status})"

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES

    @property
    def is_processor_payment(self) -> bool:
        return self.payment_method == self.PaymentMethod.PROCESSOR

    @property
    def destination(self) -> Optional[Coordinates]:
        """Geocoded delivery address, when known."""
        if self.destination_latitude is None or self.destination_longitude is None:
            return None
        return Coordinates(self.destination_latitude, self.destination_longitude)

    @property
    def delivery_position(self) -> Optional[Position]:
        """Order-scoped driver position; only meaningful while out for delivery."""
        if self.status not in self.ACTIVE_DELIVERY_STATUSES:
            return None
        if self.delivery_latitude is None or self.delivery_longitude is None:
            return None
        return Position(self.delivery_latitude, self.delivery_longitude, self.delivery_location_at)

    @property
    def is_restocked(self) -> bool:
        return self.status_history.filter(note=RESTOCK_NOTE).exists()

    def append_history(self, status: str, note: str = '', actor_id: Optional[int] = None):
        """
        Append a history entry. Timestamps never go backwards, even if the
        clock does: an entry is stamped no earlier than the one before it.
        """
        now = timezone.now()
        last = self.status_history.order_by('-timestamp', '-id').values_list('timestamp', flat=True).first()
        if last is not None and last > now:
            now = last
        return OrderStatusHistory.objects.create(
            order=self,
            status=status,
            timestamp=now,
            note=note,
            actor_id=actor_id,
        )


class OrderItem(models.Model):
    """
    OrderItem entity representing a product in an order.

    Stores the name and unit price at time of order to preserve history.
    """
    order = models.ForeignKey(
        Order,
        on_delete=models.CASCADE,
        related_name='items',
        help_text="Parent order"
    )
    product = models.ForeignKey(
        Product,
        on_delete=models.PROTECT,  # Prevent deletion of products with orders
        related_name='order_items',
        help_text="Ordered product"
    )
    name = models.CharField(max_length=200, help_text="Product title at time of order")
    quantity = models.PositiveIntegerField(
        validators=[MinValueValidator(1)],
        help_text="Quantity ordered"
    )
    unit_price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        help_text="Price per unit at time of order"
    )

    class Meta:
        verbose_name = 'Order Item'
        verbose_name_plural = 'Order Items'
        ordering = ['id']

    def __str__(self):
        return f"{self.quantity}x {self.name} @ ${self.unit_price}"

    @property
    def subtotal(self) -> Decimal:
        """Calculate item subtotal."""
        return self.quantity * self.unit_price


class OrderStatusHistory(models.Model):
    """
    Append-only audit log of an order.

    Holds real transitions and synthetic notes (payment events, syncs,
    refunds, the restock marker). Synthetic entries carry the order's status
    at the time they were written. Rows are never updated or deleted.
    """
    order = models.ForeignKey(
        Order,
        on_delete=models.CASCADE,
        related_name='status_history'
    )
    status = models.CharField(max_length=20, choices=Order.Status.choices)
    timestamp = models.DateTimeField(default=timezone.now)
    note = models.TextField(blank=True, default='')
    actor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='+'
    )

    class Meta:
        verbose_name = 'Order Status History'
        verbose_name_plural = 'Order Status History'
        ordering = ['timestamp', 'id']
        indexes = [
            models.Index(fields=['order', 'timestamp'], name='history_order_time_idx'),
        ]

    def __str__(self):
        return f"{self.order_id}: {self.status} @ {self.timestamp:%Y-%m-%d %H:%M:%S}"
