"""
Order API Views.

Implements:
- GET /orders/ - List orders with filters and pagination
- POST /orders/ - Create a priced order
- GET/PATCH/PUT/DELETE /orders/{id}/ - Detail, partial update, cancel
- POST /orders/{id}/state/ - Change state
- GET /orders/{id}/history/ - State history
- POST /orders/{id}/recalculate/ - Force price recalculation
- GET /orders/state/{state}/ - Orders in one state
- GET /orders/kitchen/ - Kitchen queue
- GET /orders/today/summary/ - Daily summary

Every response uses the envelope {"success": ..., "data": ...}; errors are
rendered by core.exceptions.envelope_exception_handler.
"""
import logging
from datetime import datetime, time

from django.conf import settings
from django.db import transaction
from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from core.exceptions import OrderValidationError
from core.rate_limiting import RateLimitMixin
from . import states
from .repository import OrderFilters, OrderPatch
from .serializers import (
    CancelSerializer,
    OrderCreateSerializer,
    OrderListSerializer,
    OrderPatchSerializer,
    OrderSerializer,
    StateChangeSerializer,
    StateHistorySerializer,
)
from .services import CreateOrderRequest, OrderService
from .tasks import ORDER_CREATED, ORDER_UPDATED, STATE_CHANGED, publish_order_event

logger = logging.getLogger(__name__)


def announce(event: str, payload: dict) -> None:
    """Queue an order event once the current transaction commits."""
    def send():
        try:
            publish_order_event.delay(event, payload)
        except Exception as e:
            # Don't fail the request if event queuing fails
            logger.error(f"Failed to queue {event} event: {e}")
    transaction.on_commit(send)


def get_actor(request) -> str:
    return request.headers.get('X-Actor', '').strip()[:100] or 'user'


def parse_int_param(request, name: str, default: int, minimum: int = 0, maximum: int = None) -> int:
    raw = request.query_params.get(name)
    if raw in (None, ''):
        return default
    try:
        value = int(raw)
    except ValueError:
        raise OrderValidationError(f"'{name}' must be an integer")
    if value < minimum:
        raise OrderValidationError(f"'{name}' must be >= {minimum}")
    if maximum is not None:
        value = min(value, maximum)
    return value


def parse_datetime_param(request, name: str, end_of_day: bool = False):
    raw = request.query_params.get(name)
    if not raw:
        return None
    value = parse_datetime(raw)
    if value is None:
        day = parse_date(raw)
        if day is None:
            raise OrderValidationError(f"'{name}' must be an ISO date or datetime")
        value = datetime.combine(day, time.max if end_of_day else time.min)
    if timezone.is_naive(value):
        value = timezone.make_aware(value)
    return value


class OrderServiceMixin:
    service_class = OrderService

    def get_service(self) -> OrderService:
        return self.service_class()


class OrderListCreateView(RateLimitMixin, OrderServiceMixin, APIView):
    """
    GET: List orders, newest first
    POST: Create a new order (rate limited)

    Query Parameters (GET):
        - state: Filter by state
        - date_from / date_to: Placement date range (ISO date or datetime)
        - customer_id: Filter by customer
        - limit / offset: Pagination
    """
    rate_limit_methods = ('POST',)

    @property
    def rate_limit_max_requests(self):
        return settings.PIZZERIA['CREATE_RATE_LIMIT'][0]

    @property
    def rate_limit_window_seconds(self):
        return settings.PIZZERIA['CREATE_RATE_LIMIT'][1]

    def get(self, request):
        state = request.query_params.get('state') or None
        customer_id = request.query_params.get('customer_id')
        filters = OrderFilters(
            state=state,
            date_from=parse_datetime_param(request, 'date_from'),
            date_to=parse_datetime_param(request, 'date_to', end_of_day=True),
            customer_id=parse_int_param(request, 'customer_id', 0, minimum=1) if customer_id else None,
            limit=parse_int_param(
                request, 'limit', settings.PIZZERIA['DEFAULT_PAGE_SIZE'],
                minimum=1, maximum=settings.PIZZERIA['MAX_PAGE_SIZE']
            ),
            offset=parse_int_param(request, 'offset', 0),
        )
        orders = self.get_service().list_orders(filters)
        return Response({
            'success': True,
            'data': OrderListSerializer(orders, many=True).data,
            'count': len(orders),
            'filters': {
                'state': filters.state,
                'date_from': filters.date_from,
                'date_to': filters.date_to,
                'customer_id': filters.customer_id,
                'limit': filters.limit,
                'offset': filters.offset,
            },
        })

    def post(self, request):
        """
        Returns:
            - 201: Order created and priced
            - 400: Validation error
            - 422: Unknown pizza or extra
        """
        serializer = OrderCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        order = self.get_service().create_order(CreateOrderRequest(
            items=data['items'],
            customer_id=data.get('customer_id'),
            customer_data=data.get('customer_data'),
            discount=data['discount'],
            payment_method=data['payment_method'],
            notes=data.get('notes', ''),
            estimated_minutes=data.get('estimated_minutes'),
            actor=get_actor(request),
        ))
        payload = OrderSerializer(order).data
        announce(ORDER_CREATED, {'order_id': order.id, 'order': payload})
        logger.info(f"Order created: {order.order_number} (#{order.id})")

        return Response(
            {'success': True, 'data': payload, 'message': 'Order created'},
            status=status.HTTP_201_CREATED
        )


class OrderDetailView(OrderServiceMixin, APIView):
    """
    GET: Retrieve an order with items
    PATCH/PUT: Update whitelisted fields (payment_method, notes,
        estimated_minutes, discount, customer_id)
    DELETE: Cancel the order
    """

    def get(self, request, pk):
        order = self.get_service().get_order(pk)
        return Response({'success': True, 'data': OrderSerializer(order).data})

    def patch(self, request, pk):
        serializer = OrderPatchSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        order = self.get_service().update_order(pk, OrderPatch(**serializer.validated_data))
        payload = OrderSerializer(order).data
        announce(ORDER_UPDATED, {'order_id': order.id, 'order': payload})
        return Response({'success': True, 'data': payload, 'message': 'Order updated'})

    put = patch

    def delete(self, request, pk):
        serializer = CancelSerializer(data=request.data or {})
        serializer.is_valid(raise_exception=True)
        result = self.get_service().cancel_order(
            pk, reason=serializer.validated_data['reason'] or None, actor=get_actor(request)
        )
        announce(STATE_CHANGED, {
            'order_id': result.order.id,
            'previous_state': result.previous_state,
            'new_state': result.order.state,
            'reason': result.entry.reason,
        })
        return Response({
            'success': True,
            'data': OrderSerializer(result.order).data,
            'previous_state': result.previous_state,
            'message': 'Order canceled',
        })


class OrderStateView(OrderServiceMixin, APIView):
    """
    POST: Change order state.

    Request Body:
    {
        "state": "preparing",
        "reason": "optional text",
        "expected_state": "new"   # optional, rejects if the order moved on
    }
    """

    def post(self, request, pk):
        serializer = StateChangeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        result = self.get_service().change_state(
            pk, data['state'], reason=data['reason'], actor=get_actor(request),
            expected_state=data.get('expected_state'),
        )
        payload = OrderSerializer(result.order).data
        announce(STATE_CHANGED, {
            'order_id': result.order.id,
            'previous_state': result.previous_state,
            'new_state': result.order.state,
            'reason': result.entry.reason,
            'order': payload,
        })
        return Response({
            'success': True,
            'data': payload,
            'previous_state': result.previous_state,
            'message': 'State updated',
        })


class OrdersByStateView(OrderServiceMixin, APIView):
    """GET: Orders currently in the given state."""

    def get(self, request, state):
        if state not in states.ALL_STATES:
            raise OrderValidationError(f"Unknown state '{state}'")
        limit = parse_int_param(
            request, 'limit', settings.PIZZERIA['DEFAULT_PAGE_SIZE'],
            minimum=1, maximum=settings.PIZZERIA['MAX_PAGE_SIZE']
        )
        orders = self.get_service().list_orders(OrderFilters(state=state, limit=limit))
        return Response({
            'success': True,
            'data': OrderSerializer(orders, many=True).data,
            'count': len(orders),
            'state': state,
        })


class KitchenOrdersView(OrderServiceMixin, APIView):
    """GET: New and preparing orders, new first, oldest first within a state."""

    def get(self, request):
        orders = self.get_service().kitchen_orders()
        return Response({
            'success': True,
            'data': OrderSerializer(orders, many=True).data,
            'count': len(orders),
            'timestamp': timezone.now().isoformat(),
        })


class DailySummaryView(OrderServiceMixin, APIView):
    """
    GET: Order counts and revenue for one day.

    Query Parameters:
        - date: ISO date (defaults to today)
    """

    def get(self, request):
        raw = request.query_params.get('date')
        day = None
        if raw:
            day = parse_date(raw)
            if day is None:
                raise OrderValidationError("'date' must be an ISO date")
        summary = self.get_service().daily_summary(day)
        summary['delivered_revenue'] = str(summary['delivered_revenue'])
        summary['potential_revenue'] = str(summary['potential_revenue'])
        return Response({'success': True, 'data': summary, 'date': summary['date']})


class OrderHistoryView(OrderServiceMixin, APIView):
    """GET: State history of an order, oldest first."""

    def get(self, request, pk):
        service = self.get_service()
        order = service.get_order(pk)
        history = service.order_history(pk)
        return Response({
            'success': True,
            'data': {
                'order': {
                    'id': order.id,
                    'order_number': order.order_number,
                    'current_state': order.state,
                },
                'history': StateHistorySerializer(history, many=True).data,
            },
            'count': len(history),
        })


class OrderRecalculateView(OrderServiceMixin, APIView):
    """POST: Re-derive item prices and totals from the catalog."""

    def post(self, request, pk):
        order = self.get_service().recalculate_order(pk)
        payload = OrderSerializer(order).data
        announce(ORDER_UPDATED, {'order_id': order.id, 'order': payload})
        return Response({'success': True, 'data': payload, 'message': 'Prices recalculated'})
