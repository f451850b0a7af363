"""
Order API Views.

Implements:
- GET /orders/ - Orders visible to the caller
- GET /orders/{id}/ - Order detail with items
- GET /orders/{id}/status/ - Status history
- PUT /orders/{id}/status/ - Status transition
- POST /orders/{id}/cancel/ - Customer or admin cancellation
"""
import logging
from dataclasses import asdict

from rest_framework import generics
from rest_framework.response import Response
from rest_framework.views import APIView

from accounts.actors import actor_from_request
from .models import Order
from .serializers import (
    OrderSerializer,
    OrderListSerializer,
    StatusHistorySerializer,
    StatusUpdateSerializer,
    CancelOrderSerializer,
)
from .services import (
    cancel_order,
    check_order_access,
    get_order,
    orders_visible_to,
    transition,
)

logger = logging.getLogger(__name__)


def transition_response(result, message=None):
    if message is None:
        if result.changed:
            message = f'Order status updated to "{result.order.status}"'
        else:
            message = f'Order already {result.order.status}'
    return Response({
        'message': message,
        'changed': result.changed,
        'restock': asdict(result.restock) if result.restock else None,
        'order': OrderSerializer(result.order).data,
    })


class OrderListView(generics.ListAPIView):
    """
    GET: List orders visible to the caller.

    Query Parameters:
        - status: a status value, or "active" for picked_up/on_the_way
        - payment_status: Filter by payment status
    """
    serializer_class = OrderListSerializer

    def get_queryset(self):
        queryset = orders_visible_to(actor_from_request(self.request)).prefetch_related('items')

        status_filter = self.request.query_params.get('status', '').lower()
        if status_filter == 'active':
            queryset = queryset.filter(status__in=Order.ACTIVE_DELIVERY_STATUSES)
        elif status_filter in Order.Status.values:
            queryset = queryset.filter(status=status_filter)

        payment_filter = self.request.query_params.get('payment_status', '').lower()
        if payment_filter in Order.PaymentStatus.values:
            queryset = queryset.filter(payment_status=payment_filter)

        return queryset.order_by('-updated_at', '-created_at')


class OrderDetailView(generics.RetrieveAPIView):
    """
    GET: Retrieve order details with all items.
    """
    serializer_class = OrderSerializer

    def get_object(self):
        order = get_order(self.kwargs['pk'])
        check_order_access(order, actor_from_request(self.request))
        return order


class OrderStatusView(APIView):
    """
    GET: Status history
    PUT: Move the order to a new status

    Request Body (PUT):
    {
        "status": "picked_up",
        "note": "optional"
    }
    """

    def get(self, request, pk):
        order = get_order(pk)
        check_order_access(order, actor_from_request(request))
        return Response({
            'order_number': order.order_number,
            'current_status': order.status,
            'history': StatusHistorySerializer(order.status_history.all(), many=True).data,
        })

    def put(self, request, pk):
        actor = actor_from_request(request)
        serializer = StatusUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        result = transition(
            pk,
            data['status'],
            actor,
            data['note'],
            driver_id=data.get('driver_id'),
            restock=data['restock'],
        )
        return transition_response(result)


class OrderCancelView(APIView):
    """
    POST: Cancel an order.

    Customers may cancel their own unassigned, unpaid orders while pending or
    confirmed. Admins may cancel any non-delivered order and may skip restock.
    """

    def post(self, request, pk):
        actor = actor_from_request(request)
        serializer = CancelOrderSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        result = cancel_order(pk, actor, data.get('reason') or None, restock=data['restock'])
        message = 'Order cancelled' if result.changed else 'Order already cancelled'
        return transition_response(result, message)
