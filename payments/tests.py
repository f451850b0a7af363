"""
Tests for payment reconciliation.

Test Cases:
1. Intent status mapping and minor-unit conversion
2. Refunds: partial with cancel cascade, full, validation, state checks
3. Webhooks: succeeded, failed, redelivery, order lookup
4. Admin sync: overwrite, refunded status kept
5. Stripe gateway error mapping
6. HTTP surface
"""
from decimal import Decimal
from unittest.mock import ANY, MagicMock, patch

import stripe
from django.test import TestCase
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient

from core.exceptions import (
    ForbiddenError,
    InvalidStateError,
    UpstreamError,
    ValidationError,
)
from orders.models import Order, RESTOCK_NOTE
from orders.tests import OrderFixtures
from payments.gateway import GatewayEvent, GatewayRefund, PaymentIntent, StripeGateway
from payments.services import (
    REFUND_NOTE_PREFIX,
    from_minor_units,
    handle_webhook_event,
    map_intent_status,
    refund_idempotency_key,
    refund_order,
    sync_payment,
    to_minor_units,
)


def fake_gateway(intent_status='succeeded', refund_amount=1250):
    gateway = MagicMock()
    gateway.retrieve_intent.return_value = PaymentIntent(id='pi_1', status=intent_status)
    gateway.refund.return_value = GatewayRefund(id='re_1', amount_minor_units=refund_amount, currency='usd')
    return gateway


class ConversionTestCase(TestCase):

    def test_intent_status_mapping(self):
        self.assertEqual(map_intent_status('succeeded'), 'paid')
        self.assertEqual(map_intent_status('processing'), 'pending')
        self.assertEqual(map_intent_status('requires_payment_method'), 'pending')
        self.assertEqual(map_intent_status('requires_action'), 'pending')
        self.assertEqual(map_intent_status('canceled'), 'failed')
        self.assertEqual(map_intent_status('something_new'), 'pending')

    def test_minor_units(self):
        self.assertEqual(to_minor_units(Decimal('12.50'), 'usd'), 1250)
        self.assertEqual(to_minor_units(Decimal('0.005'), 'usd'), 1)
        self.assertEqual(to_minor_units(Decimal('500'), 'JPY'), 500)
        self.assertEqual(from_minor_units(1250, 'usd'), Decimal('12.50'))
        self.assertEqual(str(from_minor_units(1250, 'usd')), '12.50')
        self.assertEqual(from_minor_units(500, 'jpy'), Decimal('500'))


class RefundTestCase(OrderFixtures, TestCase):
    """Test cases for refund_order()."""

    def setUp(self):
        self.create_fixtures()
        self.order = self.create_order(
            Order.Status.CONFIRMED,
            payment_status=Order.PaymentStatus.PAID,
            payment_intent_id='pi_1',
            paid_at=timezone.now(),
        )

    def test_partial_refund_cancels_and_restocks(self):
        """
        Test: Partial refund on a paid order out for delivery.

        Given: Paid on_the_way order, total 45.00, holding 2 units of product1
        When: Admin refunds 12.50 with the default options
        Then: Gateway asked for 1250 minor units, order refunded and
              cancelled, stock restored, history records the refund id
        """
        Order.objects.filter(pk=self.order.pk).update(
            status=Order.Status.ON_THE_WAY, delivery_man=self.driver
        )
        gateway = fake_gateway()
        with patch('payments.services.get_gateway', return_value=gateway):
            result = refund_order(self.order.pk, self.admin_actor, amount='12.50')

        gateway.refund.assert_called_once_with(
            'pi_1', 1250,
            idempotency_key=f'order-{self.order.pk}-refund-1',
            metadata=ANY,
        )
        self.assertEqual(result.refund_id, 're_1')
        self.assertEqual(result.amount, Decimal('12.50'))
        self.assertTrue(result.cancelled)
        self.assertTrue(result.restock.restocked)

        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.REFUNDED)
        self.assertEqual(self.order.refund_amount, Decimal('12.50'))
        self.assertIsNotNone(self.order.refunded_at)
        self.assertEqual(self.order.status, Order.Status.CANCELLED)
        self.assertTrue(
            self.order.status_history.filter(note=f'{REFUND_NOTE_PREFIX} (re_1). Admin refund').exists()
        )
        self.product1.refresh_from_db()
        self.assertEqual(self.product1.stock, 7)

    def test_full_refund_without_cancel(self):
        gateway = fake_gateway(refund_amount=4500)
        with patch('payments.services.get_gateway', return_value=gateway):
            result = refund_order(self.order.pk, self.admin_actor, cancel_order=False)

        self.assertEqual(gateway.refund.call_args.args, ('pi_1', None))
        self.assertFalse(result.cancelled)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.CONFIRMED)
        self.assertEqual(self.order.refund_amount, Decimal('45.00'))

    def test_refund_of_delivered_order_keeps_status(self):
        Order.objects.filter(pk=self.order.pk).update(status=Order.Status.DELIVERED)

        with patch('payments.services.get_gateway', return_value=fake_gateway()):
            result = refund_order(self.order.pk, self.admin_actor, amount=Decimal('10.00'))

        self.assertFalse(result.cancelled)
        self.assertEqual(result.order.status, Order.Status.DELIVERED)
        self.assertEqual(result.order.payment_status, Order.PaymentStatus.REFUNDED)

    def test_refund_without_restock(self):
        with patch('payments.services.get_gateway', return_value=fake_gateway()):
            result = refund_order(self.order.pk, self.admin_actor, restock=False)

        self.assertTrue(result.cancelled)
        self.assertIsNone(result.restock)
        self.assertFalse(self.order.status_history.filter(note=RESTOCK_NOTE).exists())

    def test_invalid_amounts(self):
        gateway = fake_gateway()
        with patch('payments.services.get_gateway', return_value=gateway):
            for amount in ('0', '-1', '45.01', 'abc'):
                with self.subTest(amount=amount):
                    with self.assertRaises(ValidationError):
                        refund_order(self.order.pk, self.admin_actor, amount=amount)

        gateway.refund.assert_not_called()

    def test_amount_finer_than_currency_unit(self):
        """
        Given: A paid usd order
        When: Admin refunds 0.004 (rounds to zero cents) or 1.005
        Then: Rejected before the gateway is called, order still paid;
              trailing zeros like 12.500 are accepted
        """
        gateway = fake_gateway()
        with patch('payments.services.get_gateway', return_value=gateway):
            for amount in ('0.004', '1.005'):
                with self.subTest(amount=amount):
                    with self.assertRaises(ValidationError):
                        refund_order(self.order.pk, self.admin_actor, amount=amount, cancel_order=False)

            gateway.refund.assert_not_called()
            self.order.refresh_from_db()
            self.assertEqual(self.order.payment_status, Order.PaymentStatus.PAID)

            refund_order(self.order.pk, self.admin_actor, amount='12.500', cancel_order=False)

        self.assertEqual(gateway.refund.call_args.args, ('pi_1', 1250))

    def test_zero_decimal_currency_rejects_fractions(self):
        Order.objects.filter(pk=self.order.pk).update(currency='jpy')

        with patch('payments.services.get_gateway', return_value=fake_gateway()) as get_gateway:
            with self.assertRaises(ValidationError):
                refund_order(self.order.pk, self.admin_actor, amount='10.5')

        get_gateway.return_value.refund.assert_not_called()

    def test_refund_requires_paid_status(self):
        Order.objects.filter(pk=self.order.pk).update(payment_status=Order.PaymentStatus.PENDING)

        with self.assertRaises(InvalidStateError):
            refund_order(self.order.pk, self.admin_actor)

    def test_refund_requires_processor_order(self):
        Order.objects.filter(pk=self.order.pk).update(payment_method=Order.PaymentMethod.CASH_ON_DELIVERY)

        with self.assertRaises(InvalidStateError):
            refund_order(self.order.pk, self.admin_actor)

    def test_refund_requires_intent(self):
        Order.objects.filter(pk=self.order.pk).update(payment_intent_id='')

        with self.assertRaises(InvalidStateError):
            refund_order(self.order.pk, self.admin_actor)

    def test_refund_requires_admin(self):
        with self.assertRaises(ForbiddenError):
            refund_order(self.order.pk, self.customer_actor)

    def test_gateway_failure_changes_nothing(self):
        gateway = fake_gateway()
        gateway.refund.side_effect = UpstreamError('card network down')

        with patch('payments.services.get_gateway', return_value=gateway):
            with self.assertRaises(UpstreamError) as context:
                refund_order(self.order.pk, self.admin_actor)

        self.assertTrue(context.exception.retryable)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.PAID)
        self.assertEqual(self.order.status, Order.Status.CONFIRMED)

    def test_idempotency_key_advances_after_recorded_refund(self):
        self.assertEqual(refund_idempotency_key(self.order), f'order-{self.order.pk}-refund-1')

        self.order.append_history(self.order.status, f'{REFUND_NOTE_PREFIX} (re_0). earlier')

        self.assertEqual(refund_idempotency_key(self.order), f'order-{self.order.pk}-refund-2')


class WebhookTestCase(OrderFixtures, TestCase):
    """Test cases for webhook event handling."""

    def setUp(self):
        self.create_fixtures()
        self.order = self.create_order(payment_intent_id='pi_1')

    def event(self, event_type, event_id='evt_1', **intent):
        intent.setdefault('id', 'pi_1')
        intent.setdefault('metadata', {'order_id': str(self.order.pk)})
        return GatewayEvent(id=event_id, type=event_type, object=intent)

    def test_payment_succeeded_confirms_order(self):
        """
        Test: Success event marks paid and confirms.
        """
        result = handle_webhook_event(self.event('payment_intent.succeeded'))

        self.assertTrue(result.handled)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.PAID)
        self.assertIsNotNone(self.order.paid_at)
        self.assertEqual(self.order.status, Order.Status.CONFIRMED)
        self.assertTrue(
            self.order.status_history.filter(note='Payment succeeded (event evt_1, intent pi_1)').exists()
        )

    def test_redelivered_event_is_recorded_once(self):
        handle_webhook_event(self.event('payment_intent.succeeded'))
        result = handle_webhook_event(self.event('payment_intent.succeeded'))

        self.assertTrue(result.handled)
        self.assertEqual(self.order.status_history.filter(note__contains='evt_1').count(), 1)
        self.assertEqual(self.order.status_history.filter(status=Order.Status.CONFIRMED).count(), 1)

    def test_order_found_by_intent_id(self):
        result = handle_webhook_event(self.event('payment_intent.succeeded', metadata={}))

        self.assertEqual(result.order_id, self.order.pk)

    def test_unknown_order_is_ignored(self):
        result = handle_webhook_event(
            self.event('payment_intent.succeeded', id='pi_other', metadata={})
        )

        self.assertFalse(result.handled)

    def test_unhandled_event_type(self):
        result = handle_webhook_event(self.event('charge.refunded'))

        self.assertFalse(result.handled)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.PENDING)

    def test_payment_failed_cancels_and_restocks(self):
        result = handle_webhook_event(self.event(
            'payment_intent.payment_failed',
            last_payment_error={'message': 'Card declined'},
        ))

        self.assertTrue(result.handled)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.FAILED)
        self.assertEqual(self.order.status, Order.Status.CANCELLED)
        self.assertTrue(self.order.is_restocked)
        self.assertTrue(self.order.status_history.filter(note__endswith='Card declined').exists())

    def test_payment_failed_on_delivered_order_keeps_status(self):
        Order.objects.filter(pk=self.order.pk).update(status=Order.Status.DELIVERED)

        handle_webhook_event(self.event('payment_intent.payment_failed'))

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.DELIVERED)
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.FAILED)

    def test_refunded_order_is_not_downgraded(self):
        Order.objects.filter(pk=self.order.pk).update(
            status=Order.Status.CANCELLED,
            payment_status=Order.PaymentStatus.REFUNDED,
            refund_amount=Decimal('45.00'),
            refunded_at=timezone.now(),
        )

        handle_webhook_event(self.event('payment_intent.succeeded'))

        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.REFUNDED)
        self.assertEqual(self.order.status, Order.Status.CANCELLED)

    def test_cash_order_is_ignored(self):
        """
        Given: A cash-on-delivery order referenced by an intent
        When: Success and failure events arrive
        Then: Both are acknowledged as unhandled and the order is untouched
        """
        Order.objects.filter(pk=self.order.pk).update(payment_method=Order.PaymentMethod.CASH_ON_DELIVERY)

        for event_type in ('payment_intent.succeeded', 'payment_intent.payment_failed'):
            with self.subTest(event_type=event_type):
                result = handle_webhook_event(self.event(event_type))
                self.assertFalse(result.handled)
                self.assertEqual(result.order_id, self.order.pk)

        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.PENDING)
        self.assertEqual(self.order.status, Order.Status.PENDING)


class SyncPaymentTestCase(OrderFixtures, TestCase):
    """Test cases for sync_payment()."""

    def setUp(self):
        self.create_fixtures()
        self.order = self.create_order(Order.Status.CONFIRMED, payment_intent_id='pi_1')

    def test_sync_overwrites_payment_status(self):
        with patch('payments.services.get_gateway', return_value=fake_gateway('succeeded')):
            result = sync_payment(self.order.pk, self.admin_actor)

        self.assertEqual(result.previous_payment_status, 'pending')
        self.assertEqual(result.payment_status, 'paid')
        self.assertEqual(result.order.status, Order.Status.CONFIRMED)
        entry = self.order.status_history.last()
        self.assertEqual(
            entry.note,
            'Admin sync payment: intent=pi_1 status=succeeded -> paymentStatus=paid (prev=pending)',
        )
        self.assertEqual(entry.actor, self.admin)

    def test_sync_can_mark_failed(self):
        with patch('payments.services.get_gateway', return_value=fake_gateway('canceled')):
            result = sync_payment(self.order.pk, self.admin_actor)

        self.assertEqual(result.payment_status, 'failed')

    def test_sync_keeps_refunded(self):
        Order.objects.filter(pk=self.order.pk).update(
            payment_status=Order.PaymentStatus.REFUNDED,
            refund_amount=Decimal('5.00'),
            refunded_at=timezone.now(),
        )

        with patch('payments.services.get_gateway', return_value=fake_gateway('succeeded')):
            result = sync_payment(self.order.pk, self.admin_actor)

        self.assertEqual(result.payment_status, 'refunded')

    def test_sync_requires_intent(self):
        Order.objects.filter(pk=self.order.pk).update(payment_intent_id='')

        with self.assertRaises(InvalidStateError):
            sync_payment(self.order.pk, self.admin_actor)

    def test_sync_requires_admin(self):
        with self.assertRaises(ForbiddenError):
            sync_payment(self.order.pk, self.driver_actor)


class StripeGatewayTestCase(TestCase):
    """Test cases for Stripe error mapping."""

    def setUp(self):
        self.gateway = StripeGateway(api_key='sk_test_x', webhook_secret='whsec_x')

    def test_refund_error_becomes_upstream_error(self):
        with patch('payments.gateway.stripe.Refund.create', side_effect=stripe.StripeError('boom')):
            with self.assertRaises(UpstreamError):
                self.gateway.refund('pi_1', 100, idempotency_key='k')

    def test_refund_passes_idempotency_key(self):
        refund = MagicMock(id='re_1', amount=100, currency='usd')
        with patch('payments.gateway.stripe.Refund.create', return_value=refund) as create:
            result = self.gateway.refund('pi_1', 100, idempotency_key='order-1-refund-1')

        self.assertEqual(result, GatewayRefund('re_1', 100, 'usd'))
        self.assertEqual(create.call_args.kwargs['idempotency_key'], 'order-1-refund-1')
        self.assertEqual(create.call_args.kwargs['amount'], 100)

    def test_bad_signature_becomes_validation_error(self):
        with patch('payments.gateway.stripe.Webhook.construct_event', side_effect=ValueError('bad json')):
            with self.assertRaises(ValidationError):
                self.gateway.parse_webhook(b'{}', 'sig')


class PaymentAPITestCase(OrderFixtures, TestCase):
    """Test cases for the payment endpoints."""

    def setUp(self):
        self.create_fixtures()
        self.client = APIClient()
        self.order = self.create_order(
            Order.Status.CONFIRMED,
            payment_status=Order.PaymentStatus.PAID,
            payment_intent_id='pi_1',
        )

    def test_webhook_endpoint(self):
        gateway = MagicMock()
        gateway.parse_webhook.return_value = GatewayEvent(
            id='evt_9', type='payment_intent.succeeded',
            object={'id': 'pi_1', 'metadata': {'order_id': str(self.order.pk)}},
        )

        with patch('payments.views.get_gateway', return_value=gateway):
            response = self.client.post(
                '/api/payments/webhook/', data=b'{}', content_type='application/json',
                HTTP_STRIPE_SIGNATURE='t=1,v1=abc',
            )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data['received'])
        self.assertTrue(response.data['handled'])
        gateway.parse_webhook.assert_called_once_with(b'{}', 't=1,v1=abc')

    def test_webhook_bad_signature(self):
        gateway = MagicMock()
        gateway.parse_webhook.side_effect = ValidationError('Invalid webhook payload or signature')

        with patch('payments.views.get_gateway', return_value=gateway):
            response = self.client.post('/api/payments/webhook/', data=b'{}', content_type='application/json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['error'], 'ValidationError')

    def test_refund_endpoint(self):
        self.client.force_authenticate(self.admin)
        with patch('payments.services.get_gateway', return_value=fake_gateway()):
            response = self.client.post(
                f'/api/admin/orders/{self.order.pk}/refund/', {'amount': '12.50'}, format='json'
            )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['amount'], '12.50')
        self.assertTrue(response.data['cancelled'])
        self.assertEqual(response.data['order']['payment_status'], 'refunded')

    def test_refund_endpoint_requires_admin(self):
        self.client.force_authenticate(self.customer)
        response = self.client.post(f'/api/admin/orders/{self.order.pk}/refund/', {}, format='json')

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(response.data['error'], 'Forbidden')

    def test_upstream_error_payload(self):
        gateway = fake_gateway()
        gateway.retrieve_intent.side_effect = UpstreamError('Payment gateway error: timeout')

        self.client.force_authenticate(self.admin)
        with patch('payments.services.get_gateway', return_value=gateway):
            response = self.client.post(f'/api/admin/orders/{self.order.pk}/sync-payment/')

        self.assertEqual(response.status_code, status.HTTP_502_BAD_GATEWAY)
        self.assertEqual(response.data['error'], 'UpstreamError')
        self.assertTrue(response.data['retryable'])
