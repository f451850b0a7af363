"""
Tests for live location and tracking.

Test Cases:
1. Distance, ETA and ETA formatting
2. Location store: driver and order-scoped writes
3. Driver coordinate precedence (order-scoped first, driver fallback)
4. Tracking view and the admin active deliveries overview
5. Driver-side sharing loop: throttle, one-slot channel, failures
6. HTTP surface, including the location push rate limit
"""
import asyncio
import math
from datetime import timedelta
from unittest import IsolatedAsyncioTestCase
from unittest.mock import MagicMock, patch

import requests
from django.test import SimpleTestCase, TestCase, override_settings
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient

from core.exceptions import ForbiddenError, NotFoundError, ValidationError
from orders.models import Order
from orders.tests import OrderFixtures
from tracking.geo import (
    Position,
    estimate_eta_minutes,
    eta_between,
    format_eta,
    haversine_km,
    validate_coordinates,
)
from tracking.services import (
    SOURCE_DRIVER,
    SOURCE_ORDER,
    get_order_tracking,
    get_order_tracking_by_number,
    list_active_deliveries,
    record_driver_location,
    resolve_driver_coords,
)
from tracking.sharing import HttpLocationSender, LatestSampleChannel, LocationSharer, PushThrottle


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class GeoTestCase(SimpleTestCase):

    def test_haversine(self):
        self.assertAlmostEqual(haversine_km((0, 0), (0, 1)), 111.195, delta=0.01)
        self.assertEqual(haversine_km((40.7, -74.0), (40.7, -74.0)), 0)

    def test_eta_minutes(self):
        self.assertEqual(estimate_eta_minutes(10), 24)
        self.assertEqual(estimate_eta_minutes(0.1), 1)
        self.assertEqual(estimate_eta_minutes(1.3, speed_kmh=60), 1)
        self.assertEqual(estimate_eta_minutes(1.7, speed_kmh=60), 2)
        self.assertEqual(estimate_eta_minutes(0), 0)
        self.assertEqual(estimate_eta_minutes(-3), 0)
        self.assertEqual(estimate_eta_minutes(math.nan), 0)

    def test_eta_between_needs_both_ends(self):
        self.assertIsNone(eta_between(None, (40.7, -74.0)))
        self.assertIsNone(eta_between((40.7, -74.0), None))
        self.assertEqual(eta_between((40.7, -74.0), (40.7, -74.0)), 0)

    def test_format_eta(self):
        self.assertEqual(format_eta(None), '—')
        self.assertEqual(format_eta(0), '—')
        self.assertEqual(format_eta(5), '5 min')
        self.assertEqual(format_eta(59), '59 min')
        self.assertEqual(format_eta(60), '1h 0m')
        self.assertEqual(format_eta(135), '2h 15m')

    def test_validate_coordinates(self):
        self.assertTrue(validate_coordinates(90, -180))
        self.assertFalse(validate_coordinates(91, 0))
        self.assertFalse(validate_coordinates(0, 181))
        self.assertFalse(validate_coordinates(math.nan, 0))


class LocationStoreTestCase(OrderFixtures, TestCase):
    """Test cases for record_driver_location()."""

    def setUp(self):
        self.create_fixtures()

    def test_push_updates_driver_and_active_order(self):
        order = self.create_order(Order.Status.ON_THE_WAY, delivery_man=self.driver)

        update = record_driver_location(self.driver.pk, 40.71, -74.01)

        self.assertEqual(update.updated_order_id, order.pk)
        self.driver.refresh_from_db()
        order.refresh_from_db()
        self.assertEqual((self.driver.last_latitude, self.driver.last_longitude), (40.71, -74.01))
        self.assertEqual(order.delivery_position.coordinates, (40.71, -74.01))
        self.assertEqual(order.delivery_location_at, self.driver.last_location_at)

    def test_push_without_active_order(self):
        assigned = self.create_order(Order.Status.ASSIGNED, delivery_man=self.driver)

        update = record_driver_location(self.driver.pk, 40.71, -74.01)

        self.assertIsNone(update.updated_order_id)
        assigned.refresh_from_db()
        self.assertIsNone(assigned.delivery_latitude)
        self.driver.refresh_from_db()
        self.assertIsNotNone(self.driver.last_location)

    def test_push_goes_to_most_recently_updated_order(self):
        older = self.create_order(Order.Status.PICKED_UP, delivery_man=self.driver)
        newer = self.create_order(Order.Status.ON_THE_WAY, delivery_man=self.driver)
        Order.objects.filter(pk=older.pk).update(updated_at=timezone.now() - timedelta(hours=1))

        update = record_driver_location(self.driver.pk, 40.71, -74.01)

        self.assertEqual(update.updated_order_id, newer.pk)

    def test_push_naming_an_order_of_another_driver(self):
        theirs = self.create_order(Order.Status.ON_THE_WAY, delivery_man=self.other_driver)

        update = record_driver_location(self.driver.pk, 40.71, -74.01, order_id=theirs.pk)

        self.assertIsNone(update.updated_order_id)
        theirs.refresh_from_db()
        self.assertIsNone(theirs.delivery_latitude)

    def test_delivered_order_is_not_written(self):
        delivered = self.create_order(Order.Status.DELIVERED, delivery_man=self.driver)

        update = record_driver_location(self.driver.pk, 40.71, -74.01, order_id=delivered.pk)

        self.assertIsNone(update.updated_order_id)

    def test_invalid_coordinates(self):
        with self.assertRaises(ValidationError):
            record_driver_location(self.driver.pk, 95, 0)

        self.driver.refresh_from_db()
        self.assertIsNone(self.driver.last_location)


class DriverCoordsTestCase(OrderFixtures, TestCase):
    """Test cases for the coordinate precedence rule."""

    def setUp(self):
        self.create_fixtures()
        self.driver.last_latitude = 41.0
        self.driver.last_longitude = -73.0
        self.driver.last_location_at = timezone.now()
        self.driver.save()

    def test_order_scoped_position_wins(self):
        order = self.create_order(
            Order.Status.ON_THE_WAY, delivery_man=self.driver,
            delivery_latitude=40.0, delivery_longitude=-74.0,
        )

        coords = resolve_driver_coords(order)

        self.assertEqual((coords.lat, coords.lng, coords.source), (40.0, -74.0, SOURCE_ORDER))

    def test_driver_position_is_the_fallback(self):
        order = self.create_order(Order.Status.ON_THE_WAY, delivery_man=self.driver)

        coords = resolve_driver_coords(order)

        self.assertEqual((coords.lat, coords.lng, coords.source), (41.0, -73.0, SOURCE_DRIVER))

    def test_order_position_ignored_outside_delivery_leg(self):
        order = self.create_order(
            Order.Status.ASSIGNED, delivery_man=self.driver,
            delivery_latitude=40.0, delivery_longitude=-74.0,
        )

        self.assertEqual(resolve_driver_coords(order).source, SOURCE_DRIVER)

    def test_no_position_at_all(self):
        order = self.create_order(Order.Status.ON_THE_WAY, delivery_man=self.other_driver)

        self.assertIsNone(resolve_driver_coords(order))


class TrackingFacadeTestCase(OrderFixtures, TestCase):
    """Test cases for get_order_tracking() and list_active_deliveries()."""

    def setUp(self):
        self.create_fixtures()

    def test_tracking_view_with_eta(self):
        """
        Test: Customer sees driver position and ETA.

        Given: Destination (40.0, -74.0), driver at (40.0, -74.1), about 8.5 km
        When: The owning customer asks for tracking
        Then: Order-scoped coords, ETA 20 minutes at 25 km/h
        """
        order = self.create_order(
            Order.Status.ON_THE_WAY, delivery_man=self.driver,
            destination_latitude=40.0, destination_longitude=-74.0,
            delivery_latitude=40.0, delivery_longitude=-74.1,
        )

        view = get_order_tracking(order.pk, self.customer_actor)

        self.assertEqual(view['status'], 'on_the_way')
        self.assertEqual(view['destination_coords'], {'lat': 40.0, 'lng': -74.0})
        self.assertEqual(view['driver_coords']['source'], SOURCE_ORDER)
        self.assertEqual(view['eta_minutes'], 20)
        self.assertEqual(view['eta_text'], '20 min')
        self.assertEqual(view['delivery_man']['name'], 'Dave')

    def test_tracking_view_without_destination(self):
        order = self.create_order(
            Order.Status.ON_THE_WAY, delivery_man=self.driver,
            delivery_latitude=40.0, delivery_longitude=-74.1,
        )

        view = get_order_tracking(order.pk, self.driver_actor)

        self.assertIsNone(view['eta_minutes'])
        self.assertEqual(view['eta_text'], '—')

    def test_tracking_view_access(self):
        order = self.create_order(Order.Status.ON_THE_WAY, delivery_man=self.driver)

        with self.assertRaises(ForbiddenError):
            get_order_tracking(order.pk, self.other_customer_actor)
        with self.assertRaises(ForbiddenError):
            get_order_tracking(order.pk, self.other_driver_actor)

    def test_tracking_by_order_number(self):
        """
        Given: An in-flight order after a driver location push
        When: Tracked by order number
        Then: Same view as the id lookup, same access rule, unknown numbers 404
        """
        order = self.create_order(
            Order.Status.ON_THE_WAY, delivery_man=self.driver,
            destination_latitude=40.0, destination_longitude=-74.0,
        )
        record_driver_location(self.driver.pk, 40.0, -74.1)

        view = get_order_tracking_by_number(order.order_number, self.customer_actor)

        self.assertEqual(view, get_order_tracking(order.pk, self.customer_actor))
        self.assertEqual(view['id'], order.pk)
        self.assertEqual(view['eta_minutes'], 20)
        with self.assertRaises(ForbiddenError):
            get_order_tracking_by_number(order.order_number, self.other_customer_actor)
        with self.assertRaises(NotFoundError):
            get_order_tracking_by_number('ORD-9999', self.admin_actor)

    def test_active_deliveries_summary(self):
        """
        Test: Admin overview covers assigned and in-flight orders only.
        """
        self.driver.last_latitude = 41.0
        self.driver.last_longitude = -73.0
        self.driver.save()
        self.create_order(Order.Status.ASSIGNED, delivery_man=self.driver)
        self.create_order(
            Order.Status.PICKED_UP, delivery_man=self.driver,
            delivery_latitude=40.0, delivery_longitude=-74.0,
        )
        no_coords = self.create_order(Order.Status.ON_THE_WAY, delivery_man=self.other_driver)
        self.create_order(Order.Status.PENDING)
        self.create_order(Order.Status.DELIVERED, delivery_man=self.driver)

        result = list_active_deliveries()

        self.assertEqual(result['summary'], {
            'total': 3,
            'with_driver_coords': 2,
            'without_driver_coords': 1,
            'by_status': {'assigned': 1, 'picked_up': 1, 'on_the_way': 1},
        })
        self.assertEqual(len(result['orders']), 3)

        missing = list_active_deliveries(has_coords=False)
        self.assertEqual([o['id'] for o in missing['orders']], [no_coords.pk])
        self.assertEqual(missing['summary']['total'], 3)

        picked_up = list_active_deliveries(status='picked_up')
        self.assertEqual(picked_up['summary']['total'], 1)
        self.assertEqual(picked_up['orders'][0]['driver_coords']['source'], SOURCE_ORDER)


class PushThrottleTestCase(SimpleTestCase):

    def test_pushes_inside_window_are_dropped(self):
        """
        Test: Pushes at t=0s, 1s and 6s with a 5s window.

        Then: The first and the third go through
        """
        clock = FakeClock()
        throttle = PushThrottle(5, clock)

        results = []
        for t in (0, 1, 6):
            clock.now = t
            results.append(throttle.try_acquire())

        self.assertEqual(results, [True, False, True])

    def test_reset(self):
        clock = FakeClock()
        throttle = PushThrottle(5, clock)
        throttle.try_acquire()

        throttle.reset()

        self.assertTrue(throttle.try_acquire())


class HttpLocationSenderTestCase(SimpleTestCase):

    def test_put_to_location_endpoint(self):
        session = MagicMock()
        session.headers = {}
        session.put.return_value.json.return_value = {'message': 'Location updated'}
        sender = HttpLocationSender('http://api.test/', 'tok', order_id=7, session=session)

        result = sender(Position(40.0, -74.0))

        self.assertEqual(result, {'message': 'Location updated'})
        self.assertEqual(session.headers['Authorization'], 'Token tok')
        session.put.assert_called_once_with(
            'http://api.test/api/location/',
            json={'lat': 40.0, 'lng': -74.0, 'order_id': 7},
            timeout=10,
        )


class LocationSharerTestCase(IsolatedAsyncioTestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.sent = []

    def sender(self, sample):
        self.sent.append(sample)
        return {}

    async def test_push_is_throttled(self):
        sharer = LocationSharer(lambda: None, self.sender, min_interval=5, clock=self.clock)

        for t in (0, 1, 6):
            self.clock.now = t
            await sharer.push(Position(40.0, -74.0 + t))

        self.assertEqual([s.lng for s in self.sent], [-74.0, -68.0])
        self.assertEqual(sharer.sent_count, 2)
        self.assertEqual(sharer.dropped_count, 1)

    async def test_failed_push_keeps_sharing(self):
        calls = []

        def flaky(sample):
            calls.append(sample)
            if len(calls) == 1:
                raise requests.ConnectionError('offline')
            return {}

        sharer = LocationSharer(lambda: None, flaky, min_interval=5, clock=self.clock)

        self.assertFalse(await sharer.push(Position(40.0, -74.0)))
        self.assertEqual(sharer.last_error, 'offline')

        self.clock.now = 6
        self.assertTrue(await sharer.push(Position(40.0, -74.0)))
        self.assertIsNone(sharer.last_error)

    async def test_channel_keeps_only_latest_sample(self):
        channel = LatestSampleChannel()
        channel.put(Position(1.0, 1.0))
        channel.put(Position(2.0, 2.0))

        self.assertEqual(await channel.get(), Position(2.0, 2.0))

    async def test_background_loop(self):
        samples = iter([Position(40.0, -74.0), Position(40.1, -74.0)])
        sharer = LocationSharer(
            lambda: next(samples, None), self.sender, min_interval=0, sample_interval=0.01
        )

        sharer.start()
        self.assertTrue(sharer.is_sharing)
        await asyncio.sleep(0.3)
        await sharer.stop()

        self.assertFalse(sharer.is_sharing)
        self.assertEqual(sharer.last_sample, Position(40.1, -74.0))
        self.assertGreaterEqual(sharer.sent_count, 1)
        self.assertEqual(self.sent[-1], Position(40.1, -74.0))

    async def test_sender_bug_does_not_stop_pushing(self):
        """
        Given: A sender that raises ValueError on its first call
        When: The background loop runs over three samples
        Then: Later samples are still pushed
        """
        calls = []

        def broken_once(sample):
            calls.append(sample)
            if len(calls) == 1:
                raise ValueError('bad payload')
            self.sent.append(sample)
            return {}

        samples = iter([Position(1.0, 1.0), Position(2.0, 2.0), Position(3.0, 3.0)])
        sharer = LocationSharer(
            lambda: next(samples, None), broken_once, min_interval=0, sample_interval=0.01
        )

        with self.assertLogs('tracking.sharing', level='ERROR'):
            sharer.start()
            await asyncio.sleep(0.3)
            self.assertTrue(all(not task.done() for task in sharer._tasks))
            await sharer.stop()

        self.assertGreaterEqual(len(calls), 2)
        self.assertEqual(self.sent[-1], Position(3.0, 3.0))
        self.assertIsNone(sharer.last_error)


@override_settings(RATE_LIMIT_ENABLED=False)
class TrackingAPITestCase(OrderFixtures, TestCase):
    """Test cases for the location and tracking endpoints."""

    def setUp(self):
        self.create_fixtures()
        self.client = APIClient()
        self.order = self.create_order(
            Order.Status.ON_THE_WAY, delivery_man=self.driver,
            destination_latitude=40.0, destination_longitude=-74.0,
        )

    def test_driver_pushes_location(self):
        self.client.force_authenticate(self.driver)
        response = self.client.put('/api/location/', {'lat': 40.0, 'lng': -74.1}, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['order_id'], self.order.pk)
        self.assertEqual(response.data['driver_location']['lat'], 40.0)

    def test_out_of_range_coordinates(self):
        self.client.force_authenticate(self.driver)
        response = self.client.put('/api/location/', {'lat': 95, 'lng': 0}, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['error'], 'ValidationError')

    def test_customers_cannot_push(self):
        self.client.force_authenticate(self.customer)
        response = self.client.put('/api/location/', {'lat': 40.0, 'lng': -74.1}, format='json')

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_driver_reads_own_state(self):
        record_driver_location(self.driver.pk, 40.0, -74.1)

        self.client.force_authenticate(self.driver)
        response = self.client.get('/api/location/')

        self.assertEqual(response.data['driver']['last_location']['lng'], -74.1)
        self.assertEqual(response.data['active_order']['id'], self.order.pk)

    def test_customer_tracks_order(self):
        record_driver_location(self.driver.pk, 40.0, -74.1)

        self.client.force_authenticate(self.customer)
        response = self.client.get(f'/api/orders/{self.order.pk}/tracking/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['driver_coords']['source'], SOURCE_ORDER)
        self.assertEqual(response.data['eta_minutes'], 20)

    def test_customer_tracks_by_order_number(self):
        self.client.force_authenticate(self.customer)
        response = self.client.get(f'/api/orders/tracking/{self.order.order_number}/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['id'], self.order.pk)

        missing = self.client.get('/api/orders/tracking/ORD-9999/')
        self.assertEqual(missing.status_code, status.HTTP_404_NOT_FOUND)

    def test_active_deliveries_requires_admin(self):
        self.client.force_authenticate(self.driver)
        self.assertEqual(
            self.client.get('/api/admin/tracking/active/').status_code, status.HTTP_403_FORBIDDEN
        )

        self.client.force_authenticate(self.admin)
        response = self.client.get('/api/admin/tracking/active/', {'has_coords': 'false'})

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['summary']['total'], 1)
        self.assertEqual(len(response.data['orders']), 1)


@override_settings(RATE_LIMIT_ENABLED=True)
class LocationRateLimitTestCase(OrderFixtures, TestCase):
    """Test cases for the per-driver limit on location pushes."""

    def setUp(self):
        self.create_fixtures()
        self.client = APIClient()
        self.client.force_authenticate(self.driver)
        self.redis = MagicMock()
        self.redis.ttl.return_value = 42

    def test_headers_on_allowed_push(self):
        self.redis.incr.return_value = 1

        with patch('core.rate_limiting.get_redis_client', return_value=self.redis):
            response = self.client.put('/api/location/', {'lat': 40.0, 'lng': -74.0}, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response['X-RateLimit-Remaining'], '29')
        self.redis.incr.assert_called_once_with(f'rate_limit:LocationView:user:{self.driver.pk}')
        self.redis.expire.assert_called_once()

    def test_push_over_limit_is_rejected(self):
        self.redis.incr.return_value = 31

        with patch('core.rate_limiting.get_redis_client', return_value=self.redis):
            response = self.client.put('/api/location/', {'lat': 40.0, 'lng': -74.0}, format='json')

        self.assertEqual(response.status_code, status.HTTP_429_TOO_MANY_REQUESTS)
        self.assertEqual(response['Retry-After'], '42')
        self.driver.refresh_from_db()
        self.assertIsNone(self.driver.last_location)
