"""
Redis-based rate limiting for API endpoints.
Implements a fixed window counter per client IP.
"""
import logging

import redis
from django.conf import settings
from rest_framework import status

from .exceptions import PizzeriaError
from .redis_client import get_redis_client

logger = logging.getLogger(__name__)


class RateLimitExceeded(PizzeriaError):
    code = 'RATE_LIMITED'
    status_code = status.HTTP_429_TOO_MANY_REQUESTS

    def __init__(self, max_requests: int, window_seconds: int, retry_after: int):
        self.retry_after = retry_after
        super().__init__(
            f'Maximum {max_requests} requests per {window_seconds} seconds allowed.',
            details={'retry_after': retry_after}
        )


def get_client_ip(request):
    """Extract client IP address from request."""
    x_forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR')
    if x_forwarded_for:
        ip = x_forwarded_for.split(',')[0].strip()
    else:
        ip = request.META.get('REMOTE_ADDR', 'unknown')
    return ip


class RateLimitMixin:
    """
    Mixin class for DRF views to rate limit some HTTP methods.

    Fails open when Redis is unavailable or RATE_LIMIT_ENABLED is off.

    Usage:
        class MyView(RateLimitMixin, APIView):
            rate_limit_methods = ('POST',)
            rate_limit_max_requests = 20
            rate_limit_window_seconds = 60
    """
    rate_limit_methods = ('POST',)
    rate_limit_max_requests = 20
    rate_limit_window_seconds = 60

    def initial(self, request, *args, **kwargs):
        super().initial(request, *args, **kwargs)
        self.rate_limit_headers = self.check_rate_limit(request)

    def check_rate_limit(self, request):
        """
        Count the request and return rate limit headers.

        Raises:
            RateLimitExceeded: When the client is over the limit
        """
        if request.method not in self.rate_limit_methods:
            return {}
        if not getattr(settings, 'RATE_LIMIT_ENABLED', True):
            return {}
        client = get_redis_client()
        if client is None:
            return {}

        key = f"rate_limit:{self.__class__.__name__}:{get_client_ip(request)}"
        try:
            current_count = client.incr(key)
            if current_count == 1:
                client.expire(key, self.rate_limit_window_seconds)
            ttl = client.ttl(key)
        except redis.RedisError as e:
            logger.error(f"Redis error in rate limiting: {e}")
            return {}

        if current_count > self.rate_limit_max_requests:
            raise RateLimitExceeded(
                self.rate_limit_max_requests, self.rate_limit_window_seconds, ttl
            )

        return {
            'X-RateLimit-Limit': str(self.rate_limit_max_requests),
            'X-RateLimit-Remaining': str(max(0, self.rate_limit_max_requests - current_count)),
            'X-RateLimit-Reset': str(ttl),
        }

    def finalize_response(self, request, response, *args, **kwargs):
        response = super().finalize_response(request, response, *args, **kwargs)
        for header, value in getattr(self, 'rate_limit_headers', {}).items():
            response[header] = value
        if isinstance(getattr(self, 'last_exception', None), RateLimitExceeded):
            response['Retry-After'] = str(self.last_exception.retry_after)
        return response

    def handle_exception(self, exc):
        self.last_exception = exc
        return super().handle_exception(exc)
