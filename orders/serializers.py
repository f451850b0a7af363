"""
Serializers for order models.
"""
from rest_framework import serializers
from .models import Order, OrderItem, OrderStatusHistory
from inventory.serializers import ProductMinimalSerializer


class OrderItemSerializer(serializers.ModelSerializer):
    """Serializer for OrderItem with product details."""
    product = ProductMinimalSerializer(read_only=True)
    subtotal = serializers.DecimalField(
        max_digits=12,
        decimal_places=2,
        read_only=True
    )

    class Meta:
        model = OrderItem
        fields = ['id', 'product', 'name', 'quantity', 'unit_price', 'subtotal']


class StatusHistorySerializer(serializers.ModelSerializer):
    class Meta:
        model = OrderStatusHistory
        fields = ['status', 'timestamp', 'note', 'actor']


class OrderSerializer(serializers.ModelSerializer):
    """
    Serializer for Order model with nested items.
    Uses prefetch_related for optimized queries.
    """
    items = OrderItemSerializer(many=True, read_only=True)
    customer_name = serializers.CharField(source='customer.get_full_name', read_only=True)
    delivery_man_name = serializers.CharField(
        source='delivery_man.get_full_name', read_only=True, default=None
    )
    allowed_next_statuses = serializers.SerializerMethodField()

    class Meta:
        model = Order
        fields = [
            'id', 'order_number', 'customer', 'customer_name',
            'delivery_man', 'delivery_man_name', 'items',
            'subtotal', 'delivery_fee', 'tax', 'discount', 'total_amount', 'currency',
            'status', 'allowed_next_statuses',
            'payment_method', 'payment_status', 'paid_at', 'refunded_at', 'refund_amount',
            'street', 'city', 'state', 'zip_code',
            'estimated_delivery', 'actual_delivery',
            'cancelled_at', 'cancellation_reason',
            'created_at', 'updated_at'
        ]
        read_only_fields = fields

    def get_allowed_next_statuses(self, obj):
        from .services import allowed_next_statuses
        return list(allowed_next_statuses(obj.status))


class OrderListSerializer(serializers.ModelSerializer):
    """
    Optimized serializer for listing orders.
    """
    customer_name = serializers.CharField(source='customer.get_full_name', read_only=True)
    item_count = serializers.SerializerMethodField()

    class Meta:
        model = Order
        fields = [
            'id', 'order_number', 'customer_name', 'status', 'payment_status',
            'total_amount', 'item_count', 'created_at', 'updated_at'
        ]

    def get_item_count(self, obj):
        # Use prefetched items count if available
        if hasattr(obj, '_prefetched_objects_cache') and 'items' in obj._prefetched_objects_cache:
            return len(obj.items.all())
        return obj.items.count()


class StatusUpdateSerializer(serializers.Serializer):
    """
    Request body for PUT /orders/{id}/status/

    {
        "status": "assigned",
        "note": "Handed to Sam",
        "driver_id": 7
    }
    """
    status = serializers.ChoiceField(choices=Order.Status.choices)
    note = serializers.CharField(max_length=500, required=False, allow_blank=True, default='')
    driver_id = serializers.IntegerField(min_value=1, required=False)
    restock = serializers.BooleanField(required=False, default=True)


class CancelOrderSerializer(serializers.Serializer):
    reason = serializers.CharField(max_length=200, required=False, allow_blank=True)
    restock = serializers.BooleanField(required=False, default=True)
