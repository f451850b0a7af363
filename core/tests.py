"""
Tests for the error payloads and the Redis rate limiter.
"""
from unittest.mock import MagicMock, patch

import redis
from django.test import RequestFactory, SimpleTestCase, override_settings
from rest_framework import exceptions, status

from core import rate_limiting
from core.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    api_exception_handler,
)


class ExceptionHandlerTestCase(SimpleTestCase):
    """Test cases for api_exception_handler."""

    def test_domain_error_payload(self):
        response = api_exception_handler(NotFoundError('Order 7 not found'), {})

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.data, {
            'error': 'NotFound', 'detail': 'Order 7 not found', 'retryable': False,
        })

    def test_conflict_is_retryable(self):
        response = api_exception_handler(ConflictError('stale'), {})

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data['error'], 'ConflictRisk')
        self.assertTrue(response.data['retryable'])

    def test_invalid_transition_message(self):
        error = InvalidTransitionError('delivered', 'cancelled')

        self.assertEqual(
            error.message,
            'Cannot change status from "delivered" to "cancelled". Valid next statuses: none',
        )

    def test_drf_errors_share_the_shape(self):
        response = api_exception_handler(exceptions.ValidationError({'lat': ['Required']}), {})

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['error'], 'ValidationError')
        self.assertEqual(response.data['detail'], {'lat': ['Required']})

    def test_unexpected_error_is_opaque(self):
        with self.assertLogs('core.exceptions', level='ERROR'):
            response = api_exception_handler(RuntimeError('db password is hunter2'), {})

        self.assertEqual(response.status_code, status.HTTP_500_INTERNAL_SERVER_ERROR)
        self.assertNotIn('hunter2', str(response.data))


class RateLimitingTestCase(SimpleTestCase):
    """Test cases for the shared Redis client and caller keys."""

    def setUp(self):
        self.factory = RequestFactory()
        rate_limiting.close_redis_client()

    def tearDown(self):
        rate_limiting.close_redis_client()

    def test_caller_key_prefers_user(self):
        request = self.factory.get('/', HTTP_X_FORWARDED_FOR='10.0.0.1, 10.0.0.2')
        request.user = MagicMock(is_authenticated=True, pk=5)
        self.assertEqual(rate_limiting.get_caller_key(request), 'user:5')

        request.user = MagicMock(is_authenticated=False)
        self.assertEqual(rate_limiting.get_caller_key(request), 'ip:10.0.0.1')

    @override_settings(REDIS_URL='redis://localhost:6379/0')
    def test_unreachable_redis_disables_limiting(self):
        client = MagicMock()
        client.ping.side_effect = redis.ConnectionError('refused')

        with patch('core.rate_limiting.redis.Redis.from_url', return_value=client) as from_url:
            self.assertIsNone(rate_limiting.get_redis_client())
            self.assertIsNone(rate_limiting.get_redis_client())

        from_url.assert_called_once()

    @override_settings(REDIS_URL='redis://localhost:6379/0')
    def test_client_is_shared_and_closed(self):
        client = MagicMock()

        with patch('core.rate_limiting.redis.Redis.from_url', return_value=client), \
                patch('core.rate_limiting.atexit.register'):
            self.assertIs(rate_limiting.get_redis_client(), client)
            self.assertIs(rate_limiting.get_redis_client(), client)
            rate_limiting.close_redis_client()

        client.close.assert_called_once()
