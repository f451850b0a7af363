"""
Payment API Views.

Implements:
- POST /payments/webhook/ - Gateway webhook (signature verified, no session auth)
- POST /admin/orders/{id}/sync-payment/ - Pull intent status from the gateway
- POST /admin/orders/{id}/refund/ - Refund, optionally cancel and restock
"""
import logging
from dataclasses import asdict

from rest_framework import status
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.views import APIView

from accounts.actors import actor_from_request
from accounts.permissions import IsAdminRole
from orders.serializers import OrderSerializer
from .gateway import get_gateway
from .serializers import RefundRequestSerializer
from .services import handle_webhook_event, refund_order, sync_payment

logger = logging.getLogger(__name__)


class PaymentWebhookView(APIView):
    """
    POST: Receive a payment gateway event.

    Returns 200 for handled and ignored events alike so the gateway stops
    redelivering; returns an error only when processing should be retried.
    """
    authentication_classes = []
    permission_classes = [AllowAny]

    def post(self, request):
        signature = request.META.get('HTTP_STRIPE_SIGNATURE', '')
        event = get_gateway().parse_webhook(request.body, signature)
        logger.info(f"Webhook event {event.id} ({event.type}) received")

        result = handle_webhook_event(event)
        return Response({'received': True, **asdict(result)}, status=status.HTTP_200_OK)


class SyncPaymentView(APIView):
    """
    POST: Re-read the payment intent and overwrite the local payment status.
    """
    permission_classes = [IsAdminRole]

    def post(self, request, pk):
        result = sync_payment(pk, actor_from_request(request))
        return Response({
            'message': 'Payment status synced',
            'order_id': result.order.pk,
            'payment_intent_status': result.intent_status,
            'previous_payment_status': result.previous_payment_status,
            'payment_status': result.payment_status,
        })


class RefundView(APIView):
    """
    POST: Refund a paid order through the gateway.
    """
    permission_classes = [IsAdminRole]

    def post(self, request, pk):
        serializer = RefundRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        result = refund_order(
            pk,
            actor_from_request(request),
            amount=data.get('amount'),
            reason=data['reason'],
            cancel_order=data['cancel_order'],
            restock=data['restock'],
        )
        return Response({
            'message': 'Refund created',
            'refund_id': result.refund_id,
            'amount': str(result.amount),
            'currency': result.currency,
            'cancelled': result.cancelled,
            'restock': asdict(result.restock) if result.restock else None,
            'order': OrderSerializer(result.order).data,
        })
