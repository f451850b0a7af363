"""
Django Admin configuration for order models.

Status and payment fields are read-only here: changes must go through the
API so they pass the state machine and land in the history.
"""
from django.contrib import admin
from .models import Order, OrderItem, OrderStatusHistory


class OrderItemInline(admin.TabularInline):
    model = OrderItem
    extra = 0
    readonly_fields = ['product', 'name', 'quantity', 'unit_price', 'subtotal']
    can_delete = False

    def subtotal(self, obj):
        return f"${obj.subtotal}"
    subtotal.short_description = 'Subtotal'


class OrderStatusHistoryInline(admin.TabularInline):
    model = OrderStatusHistory
    extra = 0
    readonly_fields = ['status', 'timestamp', 'note', 'actor']
    can_delete = False

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ['order_number', 'customer', 'status', 'payment_status', 'total_amount', 'delivery_man', 'created_at']
    list_filter = ['status', 'payment_status', 'payment_method', 'created_at']
    search_fields = ['order_number', 'customer__username', 'customer__email', 'payment_intent_id']
    ordering = ['-created_at']
    raw_id_fields = ['customer', 'delivery_man']
    readonly_fields = [
        'status', 'version', 'payment_status', 'payment_intent_id', 'paid_at',
        'refunded_at', 'refund_amount', 'cancelled_at', 'cancellation_reason',
        'delivery_latitude', 'delivery_longitude', 'delivery_location_at',
        'actual_delivery', 'created_at', 'updated_at',
    ]
    inlines = [OrderItemInline, OrderStatusHistoryInline]
