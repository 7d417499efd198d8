"""
Order Service Layer - order lifecycle use cases.

Create flow:
1. Validate item specifications
2. Price every item from the catalog and check removals against recipes
3. In one transaction: resolve or create the customer, insert header,
   priced items and birth history, refresh the customer's aggregates

No order is ever visible with placeholder prices.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional

from django.db import transaction
from django.utils import timezone

from catalog.services import CatalogReader
from core.exceptions import (
    AlreadyCanceled,
    DeliveredOrderCancellation,
    InvalidTransition,
    OrderNotFound,
    OrderValidationError,
)
from customers.services import refresh_customer_stats, resolve_customer
from . import states
from .models import Order, StateHistoryEntry
from .pricing import ItemSpec, OrderTotals, check_removals, price_items, price_order
from .repository import (
    OrderDraft,
    OrderFilters,
    OrderPatch,
    OrderRepository,
    TransitionResult,
)

logger = logging.getLogger(__name__)

DEFAULT_CANCEL_REASON = 'Canceled by user'


@dataclass
class CreateOrderRequest:
    items: List[Dict]
    customer_id: Optional[int] = None
    customer_data: Optional[Dict] = None
    discount: Decimal = Decimal('0.00')
    payment_method: str = Order.PaymentMethod.CASH
    notes: str = ''
    estimated_minutes: Optional[int] = None
    actor: str = 'system'


def generate_order_number(now=None) -> str:
    """Order number like 261019-4F2A9C: placement date plus a random suffix."""
    now = now or timezone.localtime()
    return f"{now:%y%m%d}-{uuid.uuid4().hex[:6].upper()}"


def validate_order_items(items: List[Dict]) -> List[ItemSpec]:
    """
    Validate order items structure and build item specifications.

    Args:
        items: List of dicts with at least 'pizza_id' and 'quantity'

    Raises:
        OrderValidationError: If validation fails
    """
    if not items:
        raise OrderValidationError("Order must contain at least one item")

    specs = []
    for idx, item in enumerate(items):
        if 'pizza_id' not in item or item['pizza_id'] in (None, ''):
            raise OrderValidationError(f"Item {idx}: missing 'pizza_id'")
        try:
            spec = ItemSpec.from_dict(item)
            spec.validate()
        except OrderValidationError as e:
            raise OrderValidationError(f"Item {idx}: {e.message}")
        specs.append(spec)
    return specs


class OrderService:
    """
    Order Lifecycle Controller.

    Orchestrates the catalog, pricing engine and repository. Every error is
    raised to the caller unchanged.
    """

    def __init__(self, repository: Optional[OrderRepository] = None,
                 removal_discount: Optional[Decimal] = None):
        self.repository = repository or OrderRepository()
        self.removal_discount = removal_discount

    def _catalog(self) -> CatalogReader:
        return CatalogReader(using=self.repository.using)

    def _require(self, order_id: int) -> Order:
        order = self.repository.get_by_id(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    def _refresh_customer(self, customer_id: Optional[int]) -> None:
        if customer_id:
            refresh_customer_stats(customer_id, using=self.repository.using)

    # ------------------------------------------------------------------
    # Pricing
    # ------------------------------------------------------------------

    def quote(self, specs: List[ItemSpec], discount=Decimal('0.00'),
              catalog: Optional[CatalogReader] = None) -> OrderTotals:
        """Price item specs without persisting anything."""
        priced = price_items(specs, catalog or self._catalog(), self.removal_discount)
        return price_order(priced, discount)

    def recalculate_order(self, order_id: int) -> Order:
        """
        Re-derive item prices, subtotal and total from the current items,
        catalog and discount. Idempotent.
        """
        order = self._require(order_id)
        items = self.repository.items_for(order_id)
        specs = [ItemSpec.from_order_item(item) for item in items]
        totals = self.quote(specs, order.discount)
        order = self.repository.apply_prices(order_id, totals.items, items, totals)
        logger.info(f"Order {order.order_number} recalculated: total ${order.total}")
        return order

    # ------------------------------------------------------------------
    # Use cases
    # ------------------------------------------------------------------

    def create_order(self, request: CreateOrderRequest) -> Order:
        """
        Create a fully priced order.

        The customer write and the order insert share one transaction.

        Raises:
            OrderValidationError: If items or customer data are invalid
            CatalogIntegrityError: If an item references unknown catalog ids
            PersistenceError: If the insert fails (nothing is written)
        """
        specs = validate_order_items(request.items)
        discount = Decimal(request.discount or 0)
        if discount < 0:
            raise OrderValidationError("discount cannot be negative")

        catalog = self._catalog()
        totals = self.quote(specs, discount, catalog=catalog)
        for idx, priced in enumerate(totals.items):
            try:
                check_removals(priced.spec, catalog)
            except OrderValidationError as e:
                raise OrderValidationError(f"Item {idx}: {e.message}")

        with transaction.atomic(using=self.repository.using):
            customer = resolve_customer(
                request.customer_id, request.customer_data, using=self.repository.using
            )
            draft = OrderDraft(
                items=list(totals.items),
                totals=totals,
                customer_id=customer.id if customer else None,
                payment_method=request.payment_method or Order.PaymentMethod.CASH,
                notes=request.notes or '',
                estimated_minutes=request.estimated_minutes,
                actor=request.actor,
            )
            order = self.repository.create(draft, generate_order_number())
            self._refresh_customer(draft.customer_id)
        return self.repository.get_by_id(order.id)

    def update_order(self, order_id: int, patch: OrderPatch) -> Order:
        """
        Apply whitelisted field changes; a discount change reprices the order.

        The update, the repricing and the customer refreshes commit together.
        """
        if patch.is_empty():
            raise OrderValidationError("No valid fields to update")
        if patch.discount is not None and patch.discount < 0:
            raise OrderValidationError("discount cannot be negative")
        if patch.subtotal is not None or patch.total is not None:
            raise OrderValidationError("subtotal and total are computed, not set directly")

        with transaction.atomic(using=self.repository.using):
            previous_customer_id = self._require(order_id).customer_id
            order = self.repository.update(order_id, patch)
            if patch.discount is not None:
                order = self.recalculate_order(order_id)
            if patch.customer_id is not None and patch.customer_id != previous_customer_id:
                self._refresh_customer(previous_customer_id)
                self._refresh_customer(patch.customer_id)
        logger.info(f"Order {order.order_number} updated: {sorted(patch.changes())}")
        return order

    def change_state(self, order_id: int, target_state: str, reason: Optional[str] = None,
                     actor: str = 'system', expected_state: Optional[str] = None) -> TransitionResult:
        """
        Move an order along the lifecycle.

        Returns the refreshed order and the state it left, so callers can
        announce both.

        Raises:
            OrderValidationError: If target_state is not a known state
            OrderNotFound: If the order does not exist
            InvalidTransition: If the move is not allowed
            StateConflict: If another transition won the race
        """
        if target_state not in states.ALL_STATES:
            raise OrderValidationError(f"Unknown state '{target_state}'")

        result = self.repository.transition(
            order_id, target_state, reason=reason or '', actor=actor,
            expected_state=expected_state,
        )
        self._refresh_customer(result.order.customer_id)
        return result

    def cancel_order(self, order_id: int, reason: Optional[str] = None,
                     actor: str = 'system') -> TransitionResult:
        """
        Cancel an order, with dedicated errors for delivered and already
        canceled orders.
        """
        try:
            return self.change_state(
                order_id, states.CANCELED, reason=reason or DEFAULT_CANCEL_REASON, actor=actor
            )
        except InvalidTransition as e:
            if e.current_state == states.DELIVERED:
                raise DeliveredOrderCancellation() from e
            if e.current_state == states.CANCELED:
                raise AlreadyCanceled() from e
            raise

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_order(self, order_id: int) -> Order:
        return self._require(order_id)

    def list_orders(self, filters: OrderFilters = OrderFilters()) -> List[Order]:
        if filters.state and filters.state not in states.ALL_STATES:
            raise OrderValidationError(f"Unknown state '{filters.state}'")
        return self.repository.get_all(filters)

    def kitchen_orders(self) -> List[Order]:
        return self.repository.kitchen_queue()

    def order_history(self, order_id: int) -> List[StateHistoryEntry]:
        if not self.repository.exists(order_id):
            raise OrderNotFound(order_id)
        return self.repository.list_history(order_id)

    def daily_summary(self, day: Optional[date] = None) -> Dict:
        return self.repository.daily_summary(day)
