"""
Tracking API Views.

Implements:
- GET /location/ - The driver's own sharing state
- PUT /location/ - Driver location push (rate limited)
- GET /orders/{id}/tracking/ - Live tracking view for one order
- GET /orders/tracking/{order_number}/ - The same view, by order number
- GET /admin/tracking/active/ - Orders out for delivery with coordinates summary
"""
import logging

from rest_framework.response import Response
from rest_framework.views import APIView

from accounts.actors import actor_from_request
from accounts.permissions import IsAdminRole, IsDeliveryRole
from core.rate_limiting import RateLimitMixin, rate_limit
from .serializers import LocationUpdateSerializer
from .services import (
    driver_location_summary,
    get_order_tracking,
    get_order_tracking_by_number,
    list_active_deliveries,
    record_driver_location,
)

logger = logging.getLogger(__name__)


class LocationView(RateLimitMixin, APIView):
    """
    GET: Last stored position and the active order it is applied to
    PUT: Store the driver's current position

    Request Body (PUT):
    {
        "lat": 52.52,
        "lng": 13.405,
        "order_id": 42  // optional
    }
    """
    permission_classes = [IsDeliveryRole]
    rate_limit_max_requests = 30
    rate_limit_window_seconds = 60

    def get(self, request):
        return Response(driver_location_summary(request.user))

    def put(self, request):
        serializer = LocationUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        update = record_driver_location(
            request.user.pk, data['lat'], data['lng'], data.get('order_id')
        )
        return Response({
            'message': 'Location updated',
            'driver_location': update.driver_position._asdict(),
            'order_id': update.updated_order_id,
        })


class OrderTrackingView(APIView):
    """
    GET: Status, destination, best available driver position and ETA.
    """

    @rate_limit(120, 60)
    def get(self, request, pk):
        return Response(get_order_tracking(pk, actor_from_request(request)))


class OrderNumberTrackingView(APIView):
    """
    GET: Tracking view looked up by order number.
    """

    @rate_limit(120, 60)
    def get(self, request, order_number):
        return Response(get_order_tracking_by_number(order_number, actor_from_request(request)))


class ActiveDeliveriesView(APIView):
    """
    GET: Assigned and in-flight orders for the admin map.

    Query Parameters:
        - status: assigned, picked_up or on_the_way
        - has_coords: true/false
    """
    permission_classes = [IsAdminRole]

    def get(self, request):
        has_coords = request.query_params.get('has_coords', '').lower()
        return Response(list_active_deliveries(
            status=request.query_params.get('status', '').lower() or None,
            has_coords={'true': True, 'false': False}.get(has_coords),
        ))
