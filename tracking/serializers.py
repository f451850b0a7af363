from rest_framework import serializers


class LocationUpdateSerializer(serializers.Serializer):
    """Serializer for a driver location push."""
    lat = serializers.FloatField(min_value=-90, max_value=90)
    lng = serializers.FloatField(min_value=-180, max_value=180)
    order_id = serializers.IntegerField(required=False, allow_null=True)
