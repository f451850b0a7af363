"""
Tests for the order status state machine and restock engine.

Test Cases:
1. Full delivery path and history growth
2. Invalid edges, unknown statuses and driver assignment
3. Customer and driver role rules
4. Idempotent restock, including the retry after a failed restock and
   concurrent callers
5. Stale writes rejected through the version check
6. Notifications and the stale pending order cleanup task
7. HTTP surface: list visibility, status updates, error payloads
"""
import threading
import time
from datetime import timedelta
from decimal import Decimal
from unittest.mock import ANY, patch

from django.contrib.auth import get_user_model
from django.core import mail
from django.db import DatabaseError, OperationalError, connection
from django.db.models import F
from django.test import TestCase, TransactionTestCase, override_settings
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient

from accounts.actors import Actor
from core.exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from inventory.models import Product
from orders.models import Order, OrderItem, OrderStatusHistory, RESTOCK_NOTE
from orders.restock import restock_order_items
from orders.services import cancel_order, transition
from orders.tasks import cancel_stale_pending_orders, send_order_notification

User = get_user_model()


class OrderFixtures:
    """Users, products and orders shared by the order, payment and tracking tests."""

    def create_fixtures(self):
        self.customer = User.objects.create_user(
            'alice', 'alice@example.com', 'pw', role=User.Role.CUSTOMER, first_name='Alice'
        )
        self.other_customer = User.objects.create_user(
            'bob', 'bob@example.com', 'pw', role=User.Role.CUSTOMER
        )
        self.driver = User.objects.create_user(
            'dave', 'dave@example.com', 'pw', role=User.Role.DELIVERY, first_name='Dave'
        )
        self.other_driver = User.objects.create_user(
            'erin', 'erin@example.com', 'pw', role=User.Role.DELIVERY
        )
        self.admin = User.objects.create_user(
            'root', 'root@example.com', 'pw', role=User.Role.ADMIN
        )

        self.product1 = Product.objects.create(title='Pad Thai', price=Decimal('10.00'), stock=5)
        self.product2 = Product.objects.create(title='Cold Brew', price=Decimal('12.50'), stock=0)

        self.customer_actor = Actor.from_user(self.customer)
        self.other_customer_actor = Actor.from_user(self.other_customer)
        self.driver_actor = Actor.from_user(self.driver)
        self.other_driver_actor = Actor.from_user(self.other_driver)
        self.admin_actor = Actor.from_user(self.admin)
        self._order_seq = 0

    def create_order(self, status=Order.Status.PENDING, customer=None, items=None, **fields):
        self._order_seq += 1
        defaults = {
            'order_number': f'ORD-{self._order_seq:04d}',
            'customer': customer or self.customer,
            'status': status,
            'total_amount': Decimal('45.00'),
        }
        defaults.update(fields)
        order = Order.objects.create(**defaults)

        if items is None:
            items = [(self.product1, 2), (self.product2, 1)]
        for product, quantity in items:
            OrderItem.objects.create(
                order=order, product=product, name=product.title,
                quantity=quantity, unit_price=product.price,
            )
        order.append_history(status, 'Order placed')
        return order

    def history_statuses(self, order):
        return list(
            order.status_history.exclude(note=RESTOCK_NOTE).values_list('status', flat=True)
        )


class OrderModelTestCase(OrderFixtures, TestCase):

    def setUp(self):
        self.create_fixtures()

    @override_settings(PAYMENT_CURRENCY='EUR')
    def test_currency_follows_payment_setting(self):
        order = self.create_order()

        order.refresh_from_db()
        self.assertEqual(order.currency, 'eur')


class StateMachineTestCase(OrderFixtures, TestCase):
    """Test cases for transition()."""

    def setUp(self):
        self.create_fixtures()

    def test_full_delivery_path(self):
        """
        Test: An order walks every status up to delivered.

        Given: A pending order
        When: Admin confirms and assigns, the driver carries it to delivered
        Then: History holds one entry per status, actual_delivery is set
        """
        order = self.create_order()

        transition(order.pk, Order.Status.CONFIRMED, self.admin_actor)
        transition(order.pk, Order.Status.ASSIGNED, self.admin_actor, driver_id=self.driver.pk)
        for target in (Order.Status.PICKED_UP, Order.Status.ON_THE_WAY, Order.Status.DELIVERED):
            result = transition(order.pk, target, self.driver_actor)
            self.assertTrue(result.changed)

        order.refresh_from_db()
        self.assertEqual(order.status, Order.Status.DELIVERED)
        self.assertEqual(order.delivery_man, self.driver)
        self.assertIsNotNone(order.actual_delivery)
        self.assertEqual(order.version, 5)
        self.assertEqual(self.history_statuses(order), [
            'pending', 'confirmed', 'assigned', 'picked_up', 'on_the_way', 'delivered',
        ])

    def test_history_entries_carry_actor(self):
        order = self.create_order()

        transition(order.pk, Order.Status.CONFIRMED, self.admin_actor, 'looks good')

        entry = order.status_history.last()
        self.assertEqual(entry.status, Order.Status.CONFIRMED)
        self.assertEqual(entry.note, 'looks good')
        self.assertEqual(entry.actor, self.admin)

    def test_skipping_a_status_is_rejected(self):
        """
        Test: pending -> assigned is not an edge.

        Then: InvalidTransitionError lists the allowed targets; nothing written
        """
        order = self.create_order()

        with self.assertRaises(InvalidTransitionError) as context:
            transition(order.pk, Order.Status.ASSIGNED, self.admin_actor, driver_id=self.driver.pk)

        self.assertIn('confirmed, cancelled', str(context.exception))
        order.refresh_from_db()
        self.assertEqual(order.status, Order.Status.PENDING)
        self.assertEqual(order.status_history.count(), 1)

    def test_terminal_statuses_have_no_exit(self):
        delivered = self.create_order(Order.Status.DELIVERED)
        cancelled = self.create_order(Order.Status.CANCELLED)

        with self.assertRaises(InvalidTransitionError):
            transition(delivered.pk, Order.Status.CANCELLED, self.admin_actor)
        with self.assertRaises(InvalidTransitionError):
            transition(cancelled.pk, Order.Status.PENDING, self.admin_actor)

    def test_same_status_is_a_noop(self):
        """
        Test: Re-requesting the current status succeeds without writing.
        """
        order = self.create_order(Order.Status.CONFIRMED)

        result = transition(order.pk, Order.Status.CONFIRMED, self.admin_actor)

        self.assertFalse(result.changed)
        order.refresh_from_db()
        self.assertEqual(order.version, 0)
        self.assertEqual(order.status_history.count(), 1)

    def test_unknown_status(self):
        order = self.create_order()

        with self.assertRaises(ValidationError):
            transition(order.pk, 'shipped', self.admin_actor)

    def test_missing_order(self):
        with self.assertRaises(NotFoundError):
            transition(99999, Order.Status.CONFIRMED, self.admin_actor)

    def test_assign_requires_driver(self):
        order = self.create_order(Order.Status.CONFIRMED)

        with self.assertRaises(ValidationError):
            transition(order.pk, Order.Status.ASSIGNED, self.admin_actor)

    def test_assign_rejects_non_driver(self):
        order = self.create_order(Order.Status.CONFIRMED)

        with self.assertRaises(ValidationError):
            transition(order.pk, Order.Status.ASSIGNED, self.admin_actor, driver_id=self.customer.pk)

    def test_stale_version_is_rejected(self):
        """
        Test: A writer holding an outdated copy loses.

        Given: The order was modified after it was loaded
        When: The transition's conditional write runs
        Then: ConflictError (retryable), the status is untouched
        """
        order = self.create_order()
        stale = Order.objects.get(pk=order.pk)
        Order.objects.filter(pk=order.pk).update(version=F('version') + 1)

        with patch('orders.services.get_order', return_value=stale):
            with self.assertRaises(ConflictError) as context:
                transition(order.pk, Order.Status.CONFIRMED, self.admin_actor)

        self.assertTrue(context.exception.retryable)
        order.refresh_from_db()
        self.assertEqual(order.status, Order.Status.PENDING)
        self.assertEqual(order.status_history.count(), 1)

    def test_history_timestamps_never_go_backwards(self):
        order = self.create_order()
        future = timezone.now() + timedelta(minutes=10)
        OrderStatusHistory.objects.create(order=order, status=order.status, timestamp=future, note='skewed')

        entry = order.append_history(order.status, 'later')

        self.assertGreaterEqual(entry.timestamp, future)


class CustomerRulesTestCase(OrderFixtures, TestCase):
    """Test cases for what a customer may do."""

    def setUp(self):
        self.create_fixtures()

    def test_customer_cancels_pending_order(self):
        """
        Test: Customer cancel returns reserved units to stock.

        Given: Pending cash-on-delivery order with 2x product1 and 1x product2
        When: The customer cancels
        Then: Order cancelled with the default reason, stock restored, one restock marker
        """
        order = self.create_order(payment_method=Order.PaymentMethod.CASH_ON_DELIVERY)

        result = cancel_order(order.pk, self.customer_actor)

        self.assertTrue(result.changed)
        self.assertTrue(result.restock.restocked)
        self.assertEqual(result.restock.item_count, 2)
        order.refresh_from_db()
        self.assertEqual(order.status, Order.Status.CANCELLED)
        self.assertEqual(order.cancellation_reason, 'Customer cancelled')
        self.assertIsNotNone(order.cancelled_at)

        self.product1.refresh_from_db()
        self.product2.refresh_from_db()
        self.assertEqual(self.product1.stock, 7)
        self.assertEqual(self.product2.stock, 1)
        self.assertEqual(order.status_history.filter(note=RESTOCK_NOTE).count(), 1)

    def test_same_status_request_still_checks_role(self):
        """
        Given: The customer's own order, already delivered
        When: The customer asks for "delivered" again
        Then: Forbidden, not a silent no-op; drivers are held to their statuses too
        """
        order = self.create_order(Order.Status.DELIVERED, delivery_man=self.driver)

        with self.assertRaises(ForbiddenError):
            transition(order.pk, Order.Status.DELIVERED, self.customer_actor)

        assigned = self.create_order(Order.Status.ASSIGNED, delivery_man=self.driver)
        with self.assertRaises(ForbiddenError):
            transition(assigned.pk, Order.Status.ASSIGNED, self.driver_actor)

    def test_customer_cancel_ignores_restock_opt_out(self):
        order = self.create_order()

        result = cancel_order(order.pk, self.customer_actor, restock=False)

        self.assertTrue(result.restock.restocked)

    def test_repeated_cancel_is_idempotent(self):
        """
        Test: Cancelling twice neither fails nor double-restocks.
        """
        order = self.create_order()
        cancel_order(order.pk, self.customer_actor)

        result = cancel_order(order.pk, self.customer_actor)

        self.assertFalse(result.changed)
        self.assertFalse(result.restock.restocked)
        self.product1.refresh_from_db()
        self.assertEqual(self.product1.stock, 7)

    def test_customer_may_only_cancel(self):
        order = self.create_order()

        with self.assertRaises(ForbiddenError):
            transition(order.pk, Order.Status.CONFIRMED, self.customer_actor)

    def test_customer_cannot_cancel_after_assignment(self):
        order = self.create_order(Order.Status.ASSIGNED, delivery_man=self.driver)

        with self.assertRaises(ForbiddenError):
            cancel_order(order.pk, self.customer_actor)

    def test_customer_cannot_cancel_confirmed_order_with_driver(self):
        order = self.create_order(Order.Status.CONFIRMED, delivery_man=self.driver)

        with self.assertRaises(ForbiddenError):
            cancel_order(order.pk, self.customer_actor)

    def test_customer_cannot_cancel_processor_paid_order(self):
        order = self.create_order(
            Order.Status.CONFIRMED,
            payment_status=Order.PaymentStatus.PAID,
            payment_intent_id='pi_123',
        )

        with self.assertRaises(ForbiddenError):
            cancel_order(order.pk, self.customer_actor)

    def test_customer_can_cancel_paid_cash_order(self):
        order = self.create_order(
            Order.Status.CONFIRMED,
            payment_method=Order.PaymentMethod.CASH_ON_DELIVERY,
            payment_status=Order.PaymentStatus.PAID,
        )

        result = cancel_order(order.pk, self.customer_actor)

        self.assertEqual(result.order.status, Order.Status.CANCELLED)

    def test_customer_cannot_touch_other_orders(self):
        order = self.create_order()

        with self.assertRaises(ForbiddenError):
            cancel_order(order.pk, self.other_customer_actor)


class DriverRulesTestCase(OrderFixtures, TestCase):
    """Test cases for what a delivery driver may do."""

    def setUp(self):
        self.create_fixtures()
        self.order = self.create_order(Order.Status.ASSIGNED, delivery_man=self.driver)

    def test_driver_advances_assigned_order(self):
        result = transition(self.order.pk, Order.Status.PICKED_UP, self.driver_actor)

        self.assertEqual(result.order.status, Order.Status.PICKED_UP)
        self.assertEqual(result.order.status_history.last().actor, self.driver)

    def test_driver_cannot_skip_statuses(self):
        with self.assertRaises(InvalidTransitionError):
            transition(self.order.pk, Order.Status.DELIVERED, self.driver_actor)

    def test_driver_cannot_cancel(self):
        with self.assertRaises(ForbiddenError):
            transition(self.order.pk, Order.Status.CANCELLED, self.driver_actor)

    def test_other_driver_is_forbidden(self):
        with self.assertRaises(ForbiddenError):
            transition(self.order.pk, Order.Status.PICKED_UP, self.other_driver_actor)


class RestockTestCase(OrderFixtures, TestCase):
    """Test cases for the restock engine."""

    def setUp(self):
        self.create_fixtures()

    def test_restock_runs_once(self):
        """
        Test: Second restock call is a no-op.

        Given: A cancelled order holding 2 units of product1
        When: restock_order_items is called twice
        Then: Stock grows by 2 exactly once, one marker written
        """
        order = self.create_order(Order.Status.CANCELLED)

        first = restock_order_items(order.pk)
        second = restock_order_items(order.pk)

        self.assertTrue(first.restocked)
        self.assertFalse(second.restocked)
        self.product1.refresh_from_db()
        self.assertEqual(self.product1.stock, 7)
        marker = order.status_history.get(note=RESTOCK_NOTE)
        self.assertEqual(marker.status, Order.Status.CANCELLED)

    def test_restock_missing_order(self):
        with self.assertRaises(NotFoundError):
            restock_order_items(99999)

    def test_admin_cancel_without_restock_then_retry(self):
        """
        Test: Admin may skip restock; a later cancel with restock completes it.
        """
        order = self.create_order(Order.Status.CONFIRMED)

        skipped = cancel_order(order.pk, self.admin_actor, restock=False)
        self.assertIsNone(skipped.restock)
        self.product1.refresh_from_db()
        self.assertEqual(self.product1.stock, 5)

        retried = cancel_order(order.pk, self.admin_actor)

        self.assertFalse(retried.changed)
        self.assertTrue(retried.restock.restocked)
        self.product1.refresh_from_db()
        self.assertEqual(self.product1.stock, 7)

    def test_failed_restock_is_retryable(self):
        """
        Test: Restock failure after the status write.

        Given: The restock step raises a database error
        When: Admin cancels
        Then: ConflictError, order stays cancelled, re-issuing the cancel restocks
        """
        order = self.create_order(Order.Status.CONFIRMED)

        with patch('orders.services.restock_order_items', side_effect=DatabaseError('lock timeout')):
            with self.assertRaises(ConflictError):
                cancel_order(order.pk, self.admin_actor)

        order.refresh_from_db()
        self.assertEqual(order.status, Order.Status.CANCELLED)
        self.assertFalse(order.is_restocked)

        result = cancel_order(order.pk, self.admin_actor)

        self.assertTrue(result.restock.restocked)
        self.assertTrue(order.is_restocked)


class ConcurrentRestockTestCase(OrderFixtures, TransactionTestCase):
    """Test cases for restock calls racing on separate connections."""

    def setUp(self):
        self.create_fixtures()

    def restock_in_thread(self, order_id, barrier, results, errors):
        try:
            barrier.wait()
            for attempt in range(50):
                try:
                    results.append(restock_order_items(order_id))
                    return
                except OperationalError:
                    # SQLite reports lock contention instead of waiting on it
                    time.sleep(0.01 * (attempt + 1))
            errors.append('gave up waiting for the database lock')
        except Exception as e:
            errors.append(repr(e))
        finally:
            connection.close()

    def test_concurrent_restocks_run_once(self):
        """
        Test: Two callers restock the same cancelled order at once.

        Given: A cancelled order holding 2 units of product1 and 1 of product2
        When: Two threads call restock_order_items together
        Then: Exactly one restocks, stock grows once, one marker written
        """
        order = self.create_order(Order.Status.CANCELLED)
        barrier = threading.Barrier(2)
        results, errors = [], []

        threads = [
            threading.Thread(target=self.restock_in_thread, args=(order.pk, barrier, results, errors))
            for _ in range(2)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        self.assertEqual(errors, [])
        self.assertEqual(sorted(r.restocked for r in results), [False, True])
        self.product1.refresh_from_db()
        self.product2.refresh_from_db()
        self.assertEqual(self.product1.stock, 7)
        self.assertEqual(self.product2.stock, 1)
        self.assertEqual(order.status_history.filter(note=RESTOCK_NOTE).count(), 1)


class NotificationTestCase(OrderFixtures, TestCase):
    """Test cases for notifications and periodic tasks."""

    def setUp(self):
        self.create_fixtures()

    def test_confirmation_queues_notification_after_commit(self):
        order = self.create_order()

        with patch('orders.tasks.send_order_notification') as task:
            with self.captureOnCommitCallbacks(execute=True):
                transition(order.pk, Order.Status.CONFIRMED, self.admin_actor)

        task.delay.assert_called_once_with('order_confirmed', 'alice@example.com', ANY)

    def test_send_order_notification_renders_template(self):
        result = send_order_notification(
            'order_cancelled', 'alice@example.com',
            {'order_number': 'ORD-0001', 'note': 'Customer cancelled'},
        )

        self.assertEqual(result['status'], 'success')
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].subject, 'Order ORD-0001 cancelled')
        self.assertIn('Customer cancelled', mail.outbox[0].body)

    def test_unknown_template(self):
        result = send_order_notification('nope', 'alice@example.com', {})

        self.assertEqual(result['status'], 'error')
        self.assertEqual(len(mail.outbox), 0)

    def test_stale_pending_processor_orders_are_cancelled(self):
        """
        Test: Only old, unpaid, processor orders are cancelled and restocked.
        """
        stale = self.create_order()
        fresh = self.create_order()
        cash = self.create_order(payment_method=Order.PaymentMethod.CASH_ON_DELIVERY)
        old = timezone.now() - timedelta(hours=2)
        Order.objects.filter(pk__in=[stale.pk, cash.pk]).update(created_at=old)

        result = cancel_stale_pending_orders()

        self.assertEqual(result, {'found': 1, 'cancelled': 1})
        stale.refresh_from_db()
        fresh.refresh_from_db()
        cash.refresh_from_db()
        self.assertEqual(stale.status, Order.Status.CANCELLED)
        self.assertTrue(stale.is_restocked)
        self.assertEqual(fresh.status, Order.Status.PENDING)
        self.assertEqual(cash.status, Order.Status.PENDING)


class OrderAPITestCase(OrderFixtures, TestCase):
    """Test cases for the order endpoints."""

    def setUp(self):
        self.create_fixtures()
        self.client = APIClient()

    def test_list_shows_only_own_orders(self):
        mine = self.create_order()
        self.create_order(customer=self.other_customer)

        self.client.force_authenticate(self.customer)
        response = self.client.get('/api/orders/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([o['id'] for o in response.data['results']], [mine.pk])

    def test_list_active_filter_for_driver(self):
        active = self.create_order(Order.Status.ON_THE_WAY, delivery_man=self.driver)
        self.create_order(Order.Status.ASSIGNED, delivery_man=self.driver)
        self.create_order(Order.Status.PICKED_UP, delivery_man=self.other_driver)

        self.client.force_authenticate(self.driver)
        response = self.client.get('/api/orders/', {'status': 'active'})

        self.assertEqual([o['id'] for o in response.data['results']], [active.pk])

    def test_detail_lists_allowed_next_statuses(self):
        order = self.create_order()

        self.client.force_authenticate(self.customer)
        response = self.client.get(f'/api/orders/{order.pk}/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['allowed_next_statuses'], ['confirmed', 'cancelled'])
        self.assertEqual(len(response.data['items']), 2)

    def test_driver_updates_status(self):
        order = self.create_order(Order.Status.ASSIGNED, delivery_man=self.driver)

        self.client.force_authenticate(self.driver)
        response = self.client.put(
            f'/api/orders/{order.pk}/status/', {'status': 'picked_up'}, format='json'
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data['changed'])
        self.assertEqual(response.data['order']['status'], 'picked_up')

    def test_status_history(self):
        order = self.create_order()
        transition(order.pk, Order.Status.CONFIRMED, self.admin_actor)

        self.client.force_authenticate(self.customer)
        response = self.client.get(f'/api/orders/{order.pk}/status/')

        self.assertEqual(response.data['current_status'], 'confirmed')
        self.assertEqual([h['status'] for h in response.data['history']], ['pending', 'confirmed'])

    def test_invalid_transition_payload(self):
        order = self.create_order()

        self.client.force_authenticate(self.admin)
        response = self.client.put(
            f'/api/orders/{order.pk}/status/', {'status': 'delivered'}, format='json'
        )

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data['error'], 'InvalidTransition')
        self.assertFalse(response.data['retryable'])

    def test_bad_status_value_is_a_validation_error(self):
        order = self.create_order()

        self.client.force_authenticate(self.admin)
        response = self.client.put(
            f'/api/orders/{order.pk}/status/', {'status': 'shipped'}, format='json'
        )

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['error'], 'ValidationError')

    def test_cancel_other_customers_order_is_forbidden(self):
        order = self.create_order()

        self.client.force_authenticate(self.other_customer)
        response = self.client.post(f'/api/orders/{order.pk}/cancel/', {}, format='json')

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(response.data['error'], 'Forbidden')

    def test_cancel_endpoint(self):
        order = self.create_order()

        self.client.force_authenticate(self.customer)
        response = self.client.post(
            f'/api/orders/{order.pk}/cancel/', {'reason': 'Changed my mind'}, format='json'
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['message'], 'Order cancelled')
        self.assertTrue(response.data['restock']['restocked'])
        self.assertEqual(response.data['order']['cancellation_reason'], 'Changed my mind')

    def test_missing_order_payload(self):
        self.client.force_authenticate(self.admin)
        response = self.client.get('/api/orders/99999/')

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.data['error'], 'NotFound')
