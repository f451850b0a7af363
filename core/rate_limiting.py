"""
Redis-based rate limiting for API endpoints.
Implements a fixed window counter keyed by caller (user id, else client IP).

The Redis client is created on first use through ``get_redis_client()`` and
released with ``close_redis_client()``.
"""
import atexit
import logging
import threading
from functools import wraps

import redis
from django.conf import settings
from rest_framework import status
from rest_framework.response import Response

logger = logging.getLogger(__name__)

_client = None
_client_lock = threading.Lock()
_client_unavailable = False


def get_redis_client():
    """
    Return the process-wide Redis client, connecting on first call.

    Returns None when Redis cannot be reached; rate limiting is then skipped.
    """
    global _client, _client_unavailable
    if _client is not None or _client_unavailable:
        return _client

    with _client_lock:
        if _client is None and not _client_unavailable:
            try:
                client = redis.Redis.from_url(
                    settings.REDIS_URL,
                    decode_responses=True,
                    socket_connect_timeout=5
                )
                client.ping()
            except (redis.ConnectionError, redis.TimeoutError) as e:
                logger.warning(f"Redis connection failed: {e}. Rate limiting will be disabled.")
                _client_unavailable = True
            else:
                _client = client
                atexit.register(close_redis_client)
    return _client


def close_redis_client():
    """Close the shared client; the next ``get_redis_client()`` reconnects."""
    global _client, _client_unavailable
    with _client_lock:
        if _client is not None:
            _client.close()
        _client = None
        _client_unavailable = False


def get_client_ip(request):
    """Extract client IP address from request."""
    x_forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR')
    if x_forwarded_for:
        ip = x_forwarded_for.split(',')[0].strip()
    else:
        ip = request.META.get('REMOTE_ADDR', 'unknown')
    return ip


def get_caller_key(request):
    user = getattr(request, 'user', None)
    if user is not None and user.is_authenticated:
        return f"user:{user.pk}"
    return f"ip:{get_client_ip(request)}"


def _limit_exceeded_response(max_requests, window_seconds, ttl):
    return Response(
        {
            'error': 'Rate limit exceeded',
            'detail': f'Maximum {max_requests} requests per {window_seconds} seconds allowed.',
            'retry_after': ttl
        },
        status=status.HTTP_429_TOO_MANY_REQUESTS,
        headers={
            'X-RateLimit-Limit': str(max_requests),
            'X-RateLimit-Remaining': '0',
            'X-RateLimit-Reset': str(ttl),
            'Retry-After': str(ttl)
        }
    )


def _count_request(client, key, window_seconds):
    current_count = client.incr(key)
    # Set expiry on first request
    if current_count == 1:
        client.expire(key, window_seconds)
    return current_count, client.ttl(key)


def rate_limit(max_requests: int = 20, window_seconds: int = 60):
    """
    Redis-based rate limiting decorator for DRF view methods.

    Usage:
        @rate_limit(30, 60)  # 30 requests per minute
        def put(self, request):
            ...
    """
    def decorator(view_func):
        @wraps(view_func)
        def wrapper(self, request, *args, **kwargs):
            client = get_redis_client() if getattr(settings, 'RATE_LIMIT_ENABLED', True) else None
            if client is None:
                return view_func(self, request, *args, **kwargs)

            try:
                key = f"rate_limit:{view_func.__name__}:{get_caller_key(request)}"
                current_count, ttl = _count_request(client, key, window_seconds)
            except redis.RedisError as e:
                logger.error(f"Redis error in rate limiting: {e}")
                # Fail open
                return view_func(self, request, *args, **kwargs)

            if current_count > max_requests:
                return _limit_exceeded_response(max_requests, window_seconds, ttl)

            response = view_func(self, request, *args, **kwargs)
            response['X-RateLimit-Limit'] = str(max_requests)
            response['X-RateLimit-Remaining'] = str(max(0, max_requests - current_count))
            response['X-RateLimit-Reset'] = str(ttl)
            return response

        return wrapper
    return decorator


class RateLimitMixin:
    """
    Mixin class for class-based views to add rate limiting.

    Usage:
        class MyView(RateLimitMixin, APIView):
            rate_limit_max_requests = 20
            rate_limit_window_seconds = 60
    """
    rate_limit_max_requests = 20
    rate_limit_window_seconds = 60

    def handle_exception(self, exc):
        if isinstance(exc, RateLimitExceeded):
            return _limit_exceeded_response(
                self.rate_limit_max_requests, self.rate_limit_window_seconds, exc.ttl
            )
        return super().handle_exception(exc)

    def finalize_response(self, request, response, *args, **kwargs):
        state = getattr(self, '_rate_limit_state', None)
        if state is not None and response.status_code != status.HTTP_429_TOO_MANY_REQUESTS:
            current_count, ttl = state
            response['X-RateLimit-Limit'] = str(self.rate_limit_max_requests)
            response['X-RateLimit-Remaining'] = str(max(0, self.rate_limit_max_requests - current_count))
            response['X-RateLimit-Reset'] = str(ttl)
        return super().finalize_response(request, response, *args, **kwargs)

    def check_throttles(self, request):
        # Authentication has already run, so the key can use the user id.
        super().check_throttles(request)
        self._rate_limit_state = None
        if not getattr(settings, 'RATE_LIMIT_ENABLED', True):
            return
        client = get_redis_client()
        if client is None:
            return
        try:
            key = f"rate_limit:{self.__class__.__name__}:{get_caller_key(request)}"
            self._rate_limit_state = _count_request(client, key, self.rate_limit_window_seconds)
        except redis.RedisError as e:
            logger.error(f"Redis error in rate limiting: {e}")
            return
        if self._rate_limit_state[0] > self.rate_limit_max_requests:
            raise RateLimitExceeded(self._rate_limit_state[1])


class RateLimitExceeded(Exception):
    def __init__(self, ttl):
        self.ttl = ttl
        super().__init__(f"Rate limit exceeded, retry after {ttl}s")
