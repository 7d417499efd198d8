"""
Order Repository - the only component that writes orders.

Every multi-row write runs inside transaction.atomic() on the database
alias the repository was constructed with; a failure rolls back every row
and surfaces as PersistenceError.

State transitions are linearizable per order:
1. Lock the order row with select_for_update()
2. Check the transition table against the locked state
3. UPDATE ... WHERE id = ? AND state = <expected> (compare-and-swap)
4. Append the history entry
If the conditional update matches no row, StateConflict is raised and the
transaction rolls back.
"""
import logging
from dataclasses import dataclass, fields
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from functools import wraps
from typing import Dict, Iterable, List, Optional

from django.db import DatabaseError, OperationalError, connections, transaction
from django.db.models import Case, Count, IntegerField, Q, Sum, Value, When
from django.utils import timezone

from core.exceptions import (
    InvalidTransition,
    OrderNotFound,
    PersistenceError,
    StateConflict,
)
from . import states
from .models import Order, OrderItem, StateHistoryEntry
from .pricing import OrderTotals, PricedItem

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderDraft:
    """Already-priced order ready to be inserted."""
    items: List[PricedItem]
    totals: OrderTotals
    customer_id: Optional[int] = None
    payment_method: str = Order.PaymentMethod.CASH
    notes: str = ''
    estimated_minutes: Optional[int] = None
    actor: str = 'system'


@dataclass(frozen=True)
class OrderPatch:
    """
    Closed set of order fields that may change outside a state transition.

    None means "leave unchanged". state is deliberately absent.
    """
    payment_method: Optional[str] = None
    notes: Optional[str] = None
    estimated_minutes: Optional[int] = None
    discount: Optional[Decimal] = None
    subtotal: Optional[Decimal] = None
    total: Optional[Decimal] = None
    customer_id: Optional[int] = None

    def changes(self) -> Dict:
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not None
        }

    def is_empty(self) -> bool:
        return not self.changes()


@dataclass(frozen=True)
class OrderFilters:
    state: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    customer_id: Optional[int] = None
    limit: int = 50
    offset: int = 0


@dataclass(frozen=True)
class TransitionResult:
    order: Order
    previous_state: str
    entry: StateHistoryEntry


def persistence_errors(operation: str):
    """Re-raise datastore failures as PersistenceError."""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except DatabaseError as e:
                logger.exception(f"Database error during {operation}: {e}")
                raise PersistenceError(f"Database error during {operation}") from e
        return wrapper
    return decorator


class OrderRepository:
    """
    Persistence for orders, their line items and their state history.

    Args:
        using: Django database alias every query and transaction runs on
    """

    def __init__(self, using: str = 'default'):
        self.using = using

    def _orders(self):
        return Order.objects.using(self.using)

    def _detail_queryset(self):
        return self._orders().select_related('customer').prefetch_related(
            'items__pizza', 'items__second_pizza'
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @persistence_errors('order creation')
    def create(self, draft: OrderDraft, order_number: str) -> Order:
        """
        Insert the order header, its priced items and the birth history
        entry in one transaction.
        """
        with transaction.atomic(using=self.using):
            order = self._orders().create(
                order_number=order_number,
                customer_id=draft.customer_id,
                state=Order.State.NEW,
                subtotal=draft.totals.subtotal,
                discount=draft.totals.discount,
                total=draft.totals.total,
                payment_method=draft.payment_method,
                notes=draft.notes,
                estimated_minutes=draft.estimated_minutes,
            )

            OrderItem.objects.using(self.using).bulk_create([
                OrderItem(
                    order=order,
                    pizza_id=priced.spec.pizza_id,
                    quantity=priced.spec.quantity,
                    is_half_and_half=priced.spec.is_half_and_half,
                    extras=list(priced.spec.extras),
                    removed_ingredients=list(priced.spec.removed_ingredients),
                    second_pizza_id=priced.spec.second_pizza_id if priced.spec.is_half_and_half else None,
                    second_extras=list(priced.spec.second_extras),
                    second_removed_ingredients=list(priced.spec.second_removed_ingredients),
                    shared_extras=list(priced.spec.shared_extras),
                    shared_removed_ingredients=list(priced.spec.shared_removed_ingredients),
                    notes=priced.spec.notes,
                    **priced.price_fields()
                )
                for priced in draft.items
            ])

            StateHistoryEntry.objects.using(self.using).create(
                order=order,
                previous_state=None,
                new_state=Order.State.NEW,
                reason='Order created',
                actor=draft.actor,
            )

        logger.info(
            f"Created order {order.order_number} (#{order.id}): "
            f"{len(draft.items)} items, total ${order.total}"
        )
        return order

    @persistence_errors('order update')
    def update(self, order_id: int, patch: OrderPatch) -> Order:
        """
        Apply whitelisted field changes and bump updated_at.

        Raises:
            OrderNotFound: If the order does not exist
        """
        changes = patch.changes()
        changes['updated_at'] = timezone.now()
        updated = self._orders().filter(id=order_id).update(**changes)
        if not updated:
            raise OrderNotFound(order_id)
        logger.debug(f"Order #{order_id} updated: {sorted(changes)}")
        return self.get_by_id(order_id)

    @persistence_errors('price update')
    def apply_prices(self, order_id: int, priced_items: Iterable[PricedItem],
                     items: Iterable[OrderItem], totals: OrderTotals) -> Order:
        """
        Rewrite the priced columns of every item and the order totals in one
        transaction. priced_items and items must be aligned.
        """
        with transaction.atomic(using=self.using):
            to_update = []
            for item, priced in zip(items, priced_items):
                for name, value in priced.price_fields().items():
                    setattr(item, name, value)
                to_update.append(item)
            OrderItem.objects.using(self.using).bulk_update(
                to_update,
                ['base_price', 'extras_price', 'removal_discount', 'unit_price', 'line_total'],
            )
            updated = self._orders().filter(id=order_id).update(
                subtotal=totals.subtotal,
                total=totals.total,
                updated_at=timezone.now(),
            )
            if not updated:
                raise OrderNotFound(order_id)
        return self.get_by_id(order_id)

    @persistence_errors('state change')
    def transition(self, order_id: int, target_state: str, reason: str = '',
                   actor: str = 'system', expected_state: Optional[str] = None) -> TransitionResult:
        """
        Move an order to target_state.

        Args:
            expected_state: State the caller observed; when given and the
                order is no longer in it, StateConflict is raised

        Raises:
            OrderNotFound: If the order does not exist
            InvalidTransition: If the move is not in the transition table
            StateConflict: If the order changed state concurrently
        """
        try:
            entry, previous_state = self._transition(
                order_id, target_state, reason, actor, expected_state
            )
        except OperationalError as e:
            if not self._is_lock_contention(e):
                raise
            logger.warning(f"Order #{order_id}: transition to {target_state} lost a lock race: {e}")
            raise StateConflict(
                order_id, expected_state,
                message=f"Order {order_id} is being changed by another request"
            ) from e

        logger.info(f"Order #{order_id}: {previous_state} -> {target_state} by {entry.actor}")
        return TransitionResult(
            order=self.get_by_id(order_id),
            previous_state=previous_state,
            entry=entry,
        )

    def _is_lock_contention(self, error: OperationalError) -> bool:
        # SQLite has no row locks; a concurrent writer surfaces as a locked table
        return connections[self.using].vendor == 'sqlite' and 'locked' in str(error)

    def _transition(self, order_id, target_state, reason, actor, expected_state):
        with transaction.atomic(using=self.using):
            try:
                current = self._orders().select_for_update().only('id', 'state').get(id=order_id)
            except Order.DoesNotExist:
                raise OrderNotFound(order_id)

            previous_state = current.state
            if expected_state is not None and previous_state != expected_state:
                raise StateConflict(order_id, expected_state)
            if not states.is_valid_transition(previous_state, target_state):
                raise InvalidTransition(previous_state, target_state)

            now = timezone.now()
            values = {field: None for field in states.TIMESTAMP_FIELDS.values()}
            values[states.TIMESTAMP_FIELDS[target_state]] = now
            values['state'] = target_state
            values['updated_at'] = now

            swapped = self._orders().filter(id=order_id, state=previous_state).update(**values)
            if not swapped:
                raise StateConflict(order_id, previous_state)

            entry = StateHistoryEntry.objects.using(self.using).create(
                order_id=order_id,
                previous_state=previous_state,
                new_state=target_state,
                reason=reason or '',
                actor=actor or 'system',
            )
        return entry, previous_state

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @persistence_errors('order lookup')
    def get_by_id(self, order_id: int) -> Optional[Order]:
        """Order with customer and fully resolved items, or None."""
        return self._detail_queryset().filter(id=order_id).first()

    @persistence_errors('order lookup')
    def exists(self, order_id: int) -> bool:
        return self._orders().filter(id=order_id).exists()

    @persistence_errors('order listing')
    def get_all(self, filters: OrderFilters = OrderFilters()) -> List[Order]:
        queryset = self._detail_queryset()
        if filters.state:
            queryset = queryset.filter(state=filters.state)
        if filters.date_from:
            queryset = queryset.filter(placed_at__gte=filters.date_from)
        if filters.date_to:
            queryset = queryset.filter(placed_at__lte=filters.date_to)
        if filters.customer_id:
            queryset = queryset.filter(customer_id=filters.customer_id)
        queryset = queryset.order_by('-placed_at', '-id')
        return list(queryset[filters.offset:filters.offset + filters.limit])

    @persistence_errors('item lookup')
    def items_for(self, order_id: int) -> List[OrderItem]:
        return list(OrderItem.objects.using(self.using).filter(order_id=order_id).order_by('id'))

    @persistence_errors('history lookup')
    def list_history(self, order_id: int) -> List[StateHistoryEntry]:
        return list(
            StateHistoryEntry.objects.using(self.using)
            .filter(order_id=order_id)
            .order_by('changed_at', 'id')
        )

    @persistence_errors('kitchen queue')
    def kitchen_queue(self) -> List[Order]:
        """Orders the kitchen works on: new first, then preparing, oldest first."""
        priority = Case(
            *[When(state=state, then=Value(rank)) for rank, state in enumerate(states.KITCHEN_STATES)],
            output_field=IntegerField(),
        )
        return list(
            self._detail_queryset()
            .filter(state__in=states.KITCHEN_STATES)
            .annotate(state_priority=priority)
            .order_by('state_priority', 'placed_at', 'id')
        )

    @persistence_errors('daily summary')
    def daily_summary(self, day: Optional[date] = None) -> Dict:
        """Counts per state and revenue for orders placed on a given day."""
        day = day or timezone.localdate()
        tz = timezone.get_current_timezone()
        start = timezone.make_aware(datetime.combine(day, time.min), tz)
        end = start + timedelta(days=1)

        orders = self._orders().filter(placed_at__gte=start, placed_at__lt=end)
        stats = orders.aggregate(
            total_orders=Count('id'),
            new_orders=Count('id', filter=Q(state=Order.State.NEW)),
            preparing_orders=Count('id', filter=Q(state=Order.State.PREPARING)),
            ready_orders=Count('id', filter=Q(state=Order.State.READY)),
            delivered_orders=Count('id', filter=Q(state=Order.State.DELIVERED)),
            canceled_orders=Count('id', filter=Q(state=Order.State.CANCELED)),
            delivered_revenue=Sum('total', filter=Q(state=Order.State.DELIVERED)),
            potential_revenue=Sum('total', filter=~Q(state=Order.State.CANCELED)),
        )
        durations = [
            (delivered_at - placed_at).total_seconds()
            for placed_at, delivered_at in orders.filter(
                state=Order.State.DELIVERED, delivered_at__isnull=False
            ).values_list('placed_at', 'delivered_at')
        ]

        stats['delivered_revenue'] = stats['delivered_revenue'] or Decimal('0.00')
        stats['potential_revenue'] = stats['potential_revenue'] or Decimal('0.00')
        stats['avg_delivery_minutes'] = (
            round(sum(durations) / len(durations) / 60, 1) if durations else 0
        )
        stats['date'] = day.isoformat()
        return stats
