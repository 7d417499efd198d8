"""
Tests for the error envelope, Redis client and rate limiting.
"""
from unittest.mock import MagicMock, patch

import redis
from django.test import SimpleTestCase, override_settings
from rest_framework import exceptions as drf_exceptions
from rest_framework.response import Response
from rest_framework.test import APIRequestFactory
from rest_framework.views import APIView

from core.exceptions import (
    OrderNotFound,
    PersistenceError,
    envelope_exception_handler,
)
from core.rate_limiting import RateLimitMixin, get_client_ip
from core.redis_client import get_redis_client, reset_redis_client


class EnvelopeExceptionHandlerTestCase(SimpleTestCase):

    def handle(self, exc):
        return envelope_exception_handler(exc, {'view': None})

    def test_domain_error(self):
        response = self.handle(OrderNotFound(7))

        self.assertEqual(response.status_code, 404)
        self.assertEqual(
            response.data,
            {'success': False, 'error': 'Order 7 not found', 'code': 'ORDER_NOT_FOUND'},
        )

    def test_persistence_error_is_500(self):
        response = self.handle(PersistenceError('Database error during order creation'))

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.data['code'], 'DATABASE_ERROR')

    def test_drf_validation_error_keeps_details(self):
        response = self.handle(drf_exceptions.ValidationError({'items': ['This field is required.']}))

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data['code'], 'VALIDATION_ERROR')
        self.assertIn('items', response.data['details'])

    def test_drf_not_found(self):
        response = self.handle(drf_exceptions.NotFound())

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.data['code'], 'NOT_FOUND')

    def test_unexpected_error_is_500(self):
        response = self.handle(ValueError('boom'))

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.data['code'], 'INTERNAL_ERROR')
        self.assertNotIn('boom', response.data['error'])


class RedisClientTestCase(SimpleTestCase):

    def tearDown(self):
        reset_redis_client()

    @patch('core.redis_client.redis.Redis.from_url')
    def test_unreachable_redis_returns_none(self, from_url):
        from_url.return_value.ping.side_effect = redis.ConnectionError('refused')

        self.assertIsNone(get_redis_client())

    @patch('core.redis_client.redis.Redis.from_url')
    def test_client_created_once(self, from_url):
        first = get_redis_client()
        second = get_redis_client()

        self.assertIs(first, second)
        from_url.assert_called_once()


class LimitedView(RateLimitMixin, APIView):
    rate_limit_max_requests = 2
    rate_limit_window_seconds = 60

    def get(self, request):
        return Response({'success': True})

    def post(self, request):
        return Response({'success': True})


@override_settings(RATE_LIMIT_ENABLED=True)
class RateLimitMixinTestCase(SimpleTestCase):

    def setUp(self):
        self.factory = APIRequestFactory()
        self.view = LimitedView.as_view()
        self.client_mock = MagicMock()
        self.client_mock.ttl.return_value = 42
        patcher = patch('core.rate_limiting.get_redis_client', return_value=self.client_mock)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_under_limit_sets_headers(self):
        self.client_mock.incr.return_value = 1

        response = self.view(self.factory.post('/', {}, format='json'))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response['X-RateLimit-Remaining'], '1')
        self.client_mock.expire.assert_called_once()

    def test_over_limit_rejected(self):
        """
        Test: The request past the limit gets a 429 envelope.
        """
        self.client_mock.incr.return_value = 3

        response = self.view(self.factory.post('/', {}, format='json'))

        self.assertEqual(response.status_code, 429)
        self.assertEqual(response.data['code'], 'RATE_LIMITED')
        self.assertEqual(response['Retry-After'], '42')

    def test_unlimited_method_not_counted(self):
        response = self.view(self.factory.get('/'))

        self.assertEqual(response.status_code, 200)
        self.client_mock.incr.assert_not_called()

    def test_redis_error_fails_open(self):
        self.client_mock.incr.side_effect = redis.RedisError('gone')

        response = self.view(self.factory.post('/', {}, format='json'))

        self.assertEqual(response.status_code, 200)

    @override_settings(RATE_LIMIT_ENABLED=False)
    def test_disabled(self):
        response = self.view(self.factory.post('/', {}, format='json'))

        self.assertEqual(response.status_code, 200)
        self.client_mock.incr.assert_not_called()


class ClientIpTestCase(SimpleTestCase):

    def test_forwarded_for_wins(self):
        request = APIRequestFactory().get('/', HTTP_X_FORWARDED_FOR='10.0.0.1, 10.0.0.2')
        self.assertEqual(get_client_ip(request), '10.0.0.1')
