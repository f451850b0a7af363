"""
Serializers for admin payment operations.
"""
from rest_framework import serializers


class RefundRequestSerializer(serializers.Serializer):
    """
    Request format:
    {
        "amount": 12.50,          # optional, omit for a full refund
        "reason": "Damaged item",
        "cancel_order": true,
        "restock": true
    }
    """
    amount = serializers.DecimalField(
        max_digits=12,
        decimal_places=2,
        required=False,
        allow_null=True
    )
    reason = serializers.CharField(max_length=200, required=False, default='Admin refund')
    cancel_order = serializers.BooleanField(required=False, default=True)
    restock = serializers.BooleanField(required=False, default=True)
