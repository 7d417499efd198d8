"""
Tests for order pricing, lifecycle and API.

Test Cases:
1. Line item pricing (whole, half-and-half, extras, removals, clamping)
2. Order totals and discount capping
3. Order creation is priced and atomic
4. State machine transitions, timestamps and history
5. Stale transitions are rejected
6. Updates, recalculation, kitchen queue and daily summary
7. API envelope and error codes
"""
from decimal import Decimal
from types import SimpleNamespace
from unittest import skipUnless
from unittest.mock import patch

from django.conf import settings
from django.contrib import admin
from django.db import DatabaseError, OperationalError, connection
from django.test import SimpleTestCase, TestCase, TransactionTestCase, override_settings
from rest_framework.test import APITestCase

from catalog.models import Extra, Pizza
from core.exceptions import (
    AlreadyCanceled,
    CatalogIntegrityError,
    DeliveredOrderCancellation,
    InvalidTransition,
    OrderNotFound,
    OrderValidationError,
    PersistenceError,
    StateConflict,
)
from customers.models import Customer
from orders import states
from orders.admin import OrderAdmin
from orders.models import Order, OrderItem, StateHistoryEntry
from orders.pricing import (
    BOTH_HALVES,
    FIRST_HALF,
    SECOND_HALF,
    ItemSpec,
    price_item,
    price_order,
)
from orders.repository import OrderFilters, OrderPatch, OrderRepository
from orders.services import CreateOrderRequest, OrderService, validate_order_items


class StubCatalog:
    """In-memory catalog exposing the CatalogReader lookups."""

    def __init__(self, pizzas, extras):
        self.pizzas = {p.id: p for p in pizzas}
        self.extras = {e.id: e for e in extras}

    def get_pizza(self, pizza_id):
        if pizza_id not in self.pizzas:
            raise CatalogIntegrityError(f"Pizza {pizza_id} not found in catalog")
        return self.pizzas[pizza_id]

    def get_extras(self, extra_ids):
        missing = [i for i in extra_ids if i not in self.extras]
        if missing:
            raise CatalogIntegrityError(f"Extras not found in catalog: {missing}")
        return [self.extras[i] for i in extra_ids]


def pizza(pk, name, price):
    return SimpleNamespace(id=pk, name=name, base_price=Decimal(price))


def extra(pk, name, price):
    return SimpleNamespace(id=pk, name=name, price=Decimal(price))


class LineItemPricingTestCase(SimpleTestCase):
    """Pricing of single line items against an in-memory catalog."""

    def setUp(self):
        self.catalog = StubCatalog(
            pizzas=[
                pizza(1, 'Margherita', '390.00'),
                pizza(2, 'Four Cheese', '500.00'),
                pizza(3, 'Focaccia', '100.00'),
            ],
            extras=[
                extra(10, 'Mushroom', '40.00'),
                extra(11, 'Bacon', '60.00'),
            ],
        )
        self.discount = Decimal('50')

    def test_whole_pizza_with_extras_and_removal(self):
        """
        Test: Extras add, removals subtract, quantity multiplies.

        Given: A 390 pizza with extras at 40 and 60 and one removal
        When: Pricing two of them
        Then: Unit price is 440 and line total is 880
        """
        spec = ItemSpec(pizza_id=1, quantity=2, extras=(10, 11), removed_ingredients=('onion',))

        priced = price_item(spec, self.catalog, self.discount)

        self.assertEqual(priced.base_price, Decimal('390.00'))
        self.assertEqual(priced.extras_price, Decimal('100.00'))
        self.assertEqual(priced.removal_discount, Decimal('50.00'))
        self.assertEqual(priced.unit_price, Decimal('440.00'))
        self.assertEqual(priced.line_total, Decimal('880.00'))

    def test_half_and_half_base_is_mean(self):
        """
        Test: Half-and-half base price is the mean of both pizzas.

        Given: A 390 pizza and a 500 pizza
        When: Pricing one half-and-half without customizations
        Then: Unit price is 445
        """
        spec = ItemSpec(pizza_id=1, is_half_and_half=True, second_pizza_id=2)

        priced = price_item(spec, self.catalog, self.discount)

        self.assertEqual(priced.unit_price, Decimal('445.00'))
        self.assertEqual(priced.line_total, Decimal('445.00'))

    def test_half_and_half_is_commutative(self):
        """Swapping the halves does not change the price."""
        first = ItemSpec(pizza_id=1, is_half_and_half=True, second_pizza_id=2,
                         extras=(10,), second_removed_ingredients=('basil',))
        swapped = ItemSpec(pizza_id=2, is_half_and_half=True, second_pizza_id=1,
                           second_extras=(10,), removed_ingredients=('basil',))

        self.assertEqual(
            price_item(first, self.catalog, self.discount).unit_price,
            price_item(swapped, self.catalog, self.discount).unit_price,
        )

    def test_half_and_half_extras_charged_full_price(self):
        """
        Test: Extras cost the same on either half or on both.

        Given: One extra per half and one shared extra
        When: Pricing the half-and-half
        Then: Every extra is charged its full catalog price
        """
        spec = ItemSpec(
            pizza_id=1, is_half_and_half=True, second_pizza_id=2,
            extras=(10,), second_extras=(11,), shared_extras=(10,),
        )

        priced = price_item(spec, self.catalog, self.discount)

        self.assertEqual(priced.extras_price, Decimal('140.00'))
        self.assertEqual(priced.unit_price, Decimal('585.00'))
        self.assertEqual(
            [e.placement for e in priced.applied_extras],
            [FIRST_HALF, SECOND_HALF, BOTH_HALVES],
        )

    def test_removals_counted_across_all_halves(self):
        spec = ItemSpec(
            pizza_id=1, is_half_and_half=True, second_pizza_id=2,
            removed_ingredients=('basil',),
            second_removed_ingredients=('gorgonzola',),
            shared_removed_ingredients=('mozzarella',),
        )

        priced = price_item(spec, self.catalog, self.discount)

        self.assertEqual(priced.removal_discount, Decimal('150.00'))
        self.assertEqual(priced.unit_price, Decimal('295.00'))

    def test_unit_price_clamped_at_zero(self):
        """
        Test: Removals never make a pizza cost less than nothing.

        Given: A 100 pizza with three removals at 50
        When: Pricing it
        Then: Unit price and line total are zero
        """
        spec = ItemSpec(pizza_id=3, quantity=4, removed_ingredients=('a', 'b', 'c'))

        priced = price_item(spec, self.catalog, self.discount)

        self.assertEqual(priced.unit_price, Decimal('0.00'))
        self.assertEqual(priced.line_total, Decimal('0.00'))

    def test_duplicate_extras_charged_each_time(self):
        spec = ItemSpec(pizza_id=1, extras=(10, 10))

        priced = price_item(spec, self.catalog, self.discount)

        self.assertEqual(priced.extras_price, Decimal('80.00'))

    def test_unknown_pizza_raises(self):
        with self.assertRaises(CatalogIntegrityError):
            price_item(ItemSpec(pizza_id=99), self.catalog, self.discount)

    def test_unknown_extra_raises(self):
        with self.assertRaises(CatalogIntegrityError):
            price_item(ItemSpec(pizza_id=1, extras=(99,)), self.catalog, self.discount)

    def test_half_and_half_requires_second_pizza(self):
        with self.assertRaises(OrderValidationError):
            price_item(ItemSpec(pizza_id=1, is_half_and_half=True), self.catalog, self.discount)

    def test_second_half_fields_require_half_and_half(self):
        with self.assertRaises(OrderValidationError):
            price_item(ItemSpec(pizza_id=1, second_extras=(10,)), self.catalog, self.discount)

    def test_removal_discount_from_settings(self):
        pizzeria = {**settings.PIZZERIA, 'REMOVAL_DISCOUNT': Decimal('25')}
        spec = ItemSpec(pizza_id=1, removed_ingredients=('basil',))

        with override_settings(PIZZERIA=pizzeria):
            priced = price_item(spec, self.catalog)

        self.assertEqual(priced.unit_price, Decimal('365.00'))

    def test_describe_lists_components(self):
        spec = ItemSpec(pizza_id=1, is_half_and_half=True, second_pizza_id=2,
                        shared_extras=(11,), removed_ingredients=('basil',))

        text = price_item(spec, self.catalog, self.discount).describe()

        self.assertIn('Half-and-half Margherita / Four Cheese', text)
        self.assertIn('+ Bacon (both halves) $60.00', text)
        self.assertIn('- no basil (first half) -$50.00', text)


class OrderTotalsTestCase(SimpleTestCase):
    """Aggregation of priced items into order totals."""

    def setUp(self):
        self.catalog = StubCatalog(
            pizzas=[pizza(1, 'Margherita', '390.00'), pizza(2, 'Four Cheese', '500.00')],
            extras=[extra(10, 'Mushroom', '40.00')],
        )

    def _price(self, specs):
        return [price_item(spec, self.catalog, Decimal('50')) for spec in specs]

    def test_subtotal_is_sum_of_line_totals(self):
        items = self._price([
            ItemSpec(pizza_id=1, quantity=2),
            ItemSpec(pizza_id=2, extras=(10,)),
        ])

        totals = price_order(items, Decimal('100'))

        self.assertEqual(totals.subtotal, Decimal('1320.00'))
        self.assertEqual(totals.total, Decimal('1220.00'))
        self.assertEqual(totals.item_count, 2)

    def test_subtotal_independent_of_item_order(self):
        specs = [
            ItemSpec(pizza_id=1, quantity=3),
            ItemSpec(pizza_id=2, removed_ingredients=('parmesan',)),
            ItemSpec(pizza_id=1, is_half_and_half=True, second_pizza_id=2),
        ]

        forward = price_order(self._price(specs))
        backward = price_order(self._price(reversed(specs)))

        self.assertEqual(forward.subtotal, backward.subtotal)

    def test_discount_larger_than_subtotal_clamps_total(self):
        """
        Test: Total never goes negative.

        Given: Subtotal 1000
        When: A discount of 1200 is applied
        Then: Total is 0, the requested discount is kept and 1000 is applied
        """
        items = self._price([ItemSpec(pizza_id=2, quantity=2)])

        totals = price_order(items, Decimal('1200'))

        self.assertEqual(totals.subtotal, Decimal('1000.00'))
        self.assertEqual(totals.discount, Decimal('1200.00'))
        self.assertEqual(totals.applied_discount, Decimal('1000.00'))
        self.assertEqual(totals.total, Decimal('0.00'))

    def test_negative_discount_rejected(self):
        items = self._price([ItemSpec(pizza_id=1)])
        with self.assertRaises(OrderValidationError):
            price_order(items, Decimal('-1'))

    def test_empty_order_totals_zero(self):
        totals = price_order([])
        self.assertEqual(totals.subtotal, Decimal('0.00'))
        self.assertEqual(totals.total, Decimal('0.00'))


class StateMachineTestCase(SimpleTestCase):

    def test_transition_table(self):
        allowed = {
            (states.NEW, states.PREPARING),
            (states.NEW, states.CANCELED),
            (states.PREPARING, states.READY),
            (states.PREPARING, states.CANCELED),
            (states.READY, states.DELIVERED),
            (states.READY, states.CANCELED),
        }
        for current in states.ALL_STATES:
            for target in states.ALL_STATES:
                with self.subTest(current=current, target=target):
                    self.assertEqual(
                        states.is_valid_transition(current, target),
                        (current, target) in allowed,
                    )

    def test_terminal_states(self):
        self.assertTrue(states.is_terminal(states.DELIVERED))
        self.assertTrue(states.is_terminal(states.CANCELED))
        self.assertFalse(states.is_terminal(states.READY))
        self.assertFalse(states.is_valid_transition('unknown', states.NEW))


class MenuMixin:
    """Creates a small menu and an order service."""

    def setUp(self):
        self.margherita = Pizza.objects.create(
            name='Margherita', base_price=Decimal('390.00'),
            ingredients=['tomato sauce', 'mozzarella', 'basil'],
        )
        self.four_cheese = Pizza.objects.create(
            name='Four Cheese', base_price=Decimal('500.00'),
            ingredients=['mozzarella', 'gorgonzola', 'parmesan', 'provolone'],
        )
        self.mushroom = Extra.objects.create(
            name='Mushroom', price=Decimal('40.00'), category=Extra.Category.VEGETABLES
        )
        self.bacon = Extra.objects.create(
            name='Bacon', price=Decimal('60.00'), category=Extra.Category.MEATS
        )
        self.service = OrderService(removal_discount=Decimal('50'))

    def create_order(self, items=None, **kwargs):
        items = items or [{'pizza_id': self.margherita.id, 'quantity': 1}]
        return self.service.create_order(CreateOrderRequest(items=items, **kwargs))

    def force_state(self, order, state):
        Order.objects.filter(id=order.id).update(state=state)


class OrderCreationTestCase(MenuMixin, TestCase):
    """Test cases for priced, atomic order creation."""

    def test_order_created_fully_priced(self):
        """
        Test: A new order is stored with final prices.

        Given: Two item specifications
        When: Creating the order
        Then: Items, subtotal and total are priced and the order is new
        """
        order = self.create_order([
            {'pizza_id': self.margherita.id, 'quantity': 2,
             'extras': [self.mushroom.id, self.bacon.id], 'removed_ingredients': ['basil']},
            {'pizza_id': self.margherita.id, 'is_half_and_half': True,
             'second_pizza_id': self.four_cheese.id},
        ])

        self.assertEqual(order.state, Order.State.NEW)
        self.assertEqual(order.items.count(), 2)
        self.assertEqual(order.subtotal, Decimal('1325.00'))
        self.assertEqual(order.total, Decimal('1325.00'))
        self.assertFalse(order.items.filter(unit_price=0).exists())
        self.assertRegex(order.order_number, r'^\d{6}-[0-9A-F]{6}$')

    def test_order_created_with_single_birth_entry(self):
        order = self.create_order(actor='cashier')

        history = list(order.history.all())
        self.assertEqual(len(history), 1)
        self.assertIsNone(history[0].previous_state)
        self.assertEqual(history[0].new_state, states.NEW)
        self.assertEqual(history[0].reason, 'Order created')
        self.assertEqual(history[0].actor, 'cashier')

    def test_unknown_pizza_writes_nothing(self):
        """
        Test: A catalog error leaves no trace.

        Given: An item referencing a missing pizza
        When: Creating the order
        Then: CatalogIntegrityError is raised and no rows are written
        """
        with self.assertRaises(CatalogIntegrityError):
            self.create_order([
                {'pizza_id': self.margherita.id, 'quantity': 1},
                {'pizza_id': 99999, 'quantity': 1},
            ])

        self.assertEqual(Order.objects.count(), 0)
        self.assertEqual(OrderItem.objects.count(), 0)
        self.assertEqual(StateHistoryEntry.objects.count(), 0)

    def test_unknown_extra_rejected(self):
        with self.assertRaises(CatalogIntegrityError):
            self.create_order([{'pizza_id': self.margherita.id, 'extras': [99999]}])
        self.assertEqual(Order.objects.count(), 0)

    def test_failed_insert_rolls_back(self):
        """
        Test: A failure halfway through the insert rolls everything back.
        """
        with patch('orders.repository.StateHistoryEntry.objects.using') as using:
            using.return_value.create.side_effect = RuntimeError('disk full')
            with self.assertRaises(RuntimeError):
                self.create_order()

        self.assertEqual(Order.objects.count(), 0)
        self.assertEqual(OrderItem.objects.count(), 0)

    def test_removing_unknown_ingredient_rejected(self):
        """
        Test: Only ingredients on the pizza can be removed.

        Given: A Margherita without pineapple
        When: Ordering it without pineapple
        Then: OrderValidationError names the item and nothing is written
        """
        with self.assertRaises(OrderValidationError) as context:
            self.create_order([
                {'pizza_id': self.margherita.id},
                {'pizza_id': self.margherita.id, 'removed_ingredients': ['Basil', 'pineapple']},
            ])

        self.assertIn('Item 1', str(context.exception))
        self.assertIn('pineapple', str(context.exception))
        self.assertNotIn('Basil', str(context.exception))
        self.assertEqual(Order.objects.count(), 0)

    def test_half_and_half_removals_checked_per_half(self):
        with self.assertRaises(OrderValidationError):
            self.create_order([{
                'pizza_id': self.margherita.id, 'is_half_and_half': True,
                'second_pizza_id': self.four_cheese.id,
                'second_removed_ingredients': ['basil'],
            }])

        order = self.create_order([{
            'pizza_id': self.margherita.id, 'is_half_and_half': True,
            'second_pizza_id': self.four_cheese.id,
            'removed_ingredients': ['basil'],
            'second_removed_ingredients': ['gorgonzola'],
            'shared_removed_ingredients': ['parmesan'],
        }])
        self.assertEqual(order.total, Decimal('295.00'))

    def test_validation_error_empty_items(self):
        with self.assertRaises(OrderValidationError) as context:
            validate_order_items([])

        self.assertIn('at least one item', str(context.exception))

    def test_validation_error_invalid_quantity(self):
        with self.assertRaises(OrderValidationError) as context:
            self.create_order([{'pizza_id': self.margherita.id, 'quantity': 0}])

        self.assertIn('Item 0', str(context.exception))

    def test_validation_error_missing_pizza_id(self):
        with self.assertRaises(OrderValidationError):
            self.create_order([{'quantity': 1}])

    def test_customer_resolved_by_phone(self):
        """
        Test: Orders from the same phone share one customer.

        Given: Two orders with the same phone number
        When: Both are created
        Then: One customer exists, with the latest name and both orders
        """
        first = self.create_order(customer_data={'phone': '5551234567', 'name': 'Ana'})
        second = self.create_order(customer_data={'phone': '5551234567', 'name': 'Ana Lopez'})

        self.assertEqual(Customer.objects.count(), 1)
        self.assertEqual(first.customer_id, second.customer_id)
        customer = Customer.objects.get()
        self.assertEqual(customer.name, 'Ana Lopez')
        self.assertEqual(customer.total_orders, 2)
        self.assertIsNotNone(customer.last_order_at)

    def test_unknown_customer_id_rejected(self):
        with self.assertRaises(OrderValidationError):
            self.create_order(customer_id=99999)

    def test_walk_in_order_has_no_customer(self):
        order = self.create_order()
        self.assertIsNone(order.customer)

    def test_discount_exceeding_subtotal_gives_zero_total(self):
        """
        Test: Subtotal 1000 with discount 1200.

        Then: The order stores the requested discount and a total of 0
        """
        order = self.create_order(
            [{'pizza_id': self.four_cheese.id, 'quantity': 2}], discount=Decimal('1200')
        )

        self.assertEqual(order.subtotal, Decimal('1000.00'))
        self.assertEqual(order.discount, Decimal('1200.00'))
        self.assertEqual(order.total, Decimal('0.00'))


class OrderPersistenceTestCase(MenuMixin, TransactionTestCase):
    """
    Database failures with real transactions.
    Uses TransactionTestCase so the repository's atomic block is the outermost one.
    """

    def test_database_error_becomes_persistence_error(self):
        """
        Test: A failing item insert leaves no order and no customer behind.

        Given: The item bulk insert fails at the database
        When: Creating an order for a new phone number
        Then: PersistenceError is raised and header and customer are rolled back
        """
        with patch('orders.repository.OrderItem.objects.using') as using:
            using.return_value.bulk_create.side_effect = DatabaseError('connection lost')
            with self.assertRaises(PersistenceError):
                self.create_order(customer_data={'phone': '5557770000', 'name': 'Ana'})

        self.assertEqual(Order.objects.count(), 0)
        self.assertEqual(StateHistoryEntry.objects.count(), 0)
        self.assertEqual(Customer.objects.count(), 0)

    def test_failed_insert_keeps_existing_profile(self):
        Customer.objects.create(phone='5557770001', name='Ana')

        with patch('orders.repository.OrderItem.objects.using') as using:
            using.return_value.bulk_create.side_effect = DatabaseError('connection lost')
            with self.assertRaises(PersistenceError):
                self.create_order(customer_data={'phone': '5557770001', 'name': 'Ana Lopez'})

        self.assertEqual(Customer.objects.get(phone='5557770001').name, 'Ana')

    def test_failed_reprice_keeps_discount(self):
        """
        Test: A discount change that cannot be repriced is not saved.

        Given: An order whose extra was since removed from the catalog
        When: Changing its discount
        Then: CatalogIntegrityError is raised and discount and totals are unchanged
        """
        order = self.create_order([{'pizza_id': self.margherita.id, 'extras': [self.bacon.id]}])
        Extra.objects.filter(id=self.bacon.id).delete()

        with self.assertRaises(CatalogIntegrityError):
            self.service.update_order(order.id, OrderPatch(discount=Decimal('100')))

        stored = Order.objects.get(id=order.id)
        self.assertEqual(stored.discount, Decimal('0.00'))
        self.assertEqual(stored.subtotal, Decimal('450.00'))
        self.assertEqual(stored.total, Decimal('450.00'))

    @skipUnless(connection.vendor == 'sqlite', 'SQLite lock errors')
    def test_locked_table_is_a_state_conflict(self):
        """
        Test: Losing a write lock race on SQLite is reported as a conflict.
        """
        order = self.create_order()

        with patch.object(OrderRepository, '_transition',
                          side_effect=OperationalError('database table is locked')):
            with self.assertRaises(StateConflict):
                self.service.change_state(order.id, states.PREPARING)

        with patch.object(OrderRepository, '_transition',
                          side_effect=OperationalError('no such column: state')):
            with self.assertRaises(PersistenceError):
                self.service.change_state(order.id, states.PREPARING)

        self.assertEqual(Order.objects.get(id=order.id).state, states.NEW)


class OrderLifecycleTestCase(MenuMixin, TestCase):
    """Test cases for state transitions."""

    def test_happy_path_stamps_and_history(self):
        """
        Test: new -> preparing -> ready -> delivered.

        Then: Each step stamps its own timestamp and appends one entry
        """
        order = self.create_order()

        result = self.service.change_state(order.id, states.PREPARING, actor='kitchen')
        self.assertEqual(result.previous_state, states.NEW)
        self.assertIsNotNone(result.order.prep_started_at)

        self.service.change_state(order.id, states.READY)
        result = self.service.change_state(order.id, states.DELIVERED, reason='Handed over')

        order = result.order
        self.assertEqual(order.state, states.DELIVERED)
        self.assertIsNotNone(order.delivered_at)
        self.assertIsNone(order.prep_started_at)
        self.assertIsNone(order.ready_at)
        self.assertIsNone(order.canceled_at)
        self.assertEqual(order.state_timestamp, order.delivered_at)

        history = self.service.order_history(order.id)
        self.assertEqual(
            [(h.previous_state, h.new_state) for h in history],
            [
                (None, states.NEW),
                (states.NEW, states.PREPARING),
                (states.PREPARING, states.READY),
                (states.READY, states.DELIVERED),
            ],
        )
        self.assertEqual(history[1].actor, 'kitchen')
        self.assertEqual(history[3].reason, 'Handed over')

    def test_every_invalid_transition_rejected(self):
        """
        Test: Moves outside the table fail without side effects.

        Given: An order in each state
        When: Requesting every target not allowed from it
        Then: InvalidTransition is raised, state and history are unchanged
        """
        order = self.create_order()
        for current in states.ALL_STATES:
            for target in states.ALL_STATES:
                if states.is_valid_transition(current, target):
                    continue
                with self.subTest(current=current, target=target):
                    self.force_state(order, current)
                    entries = StateHistoryEntry.objects.filter(order=order).count()

                    with self.assertRaises(InvalidTransition):
                        self.service.change_state(order.id, target)

                    self.assertEqual(Order.objects.get(id=order.id).state, current)
                    self.assertEqual(
                        StateHistoryEntry.objects.filter(order=order).count(), entries
                    )

    def test_cancel_from_every_active_state(self):
        for current in (states.NEW, states.PREPARING, states.READY):
            with self.subTest(current=current):
                order = self.create_order()
                self.force_state(order, current)

                result = self.service.cancel_order(order.id)

                self.assertEqual(result.order.state, states.CANCELED)
                self.assertIsNotNone(result.order.canceled_at)
                self.assertEqual(result.entry.reason, 'Canceled by user')

    def test_cancel_delivered_is_distinct_error(self):
        """
        Test: Canceling a delivered order has its own error.

        Given: A delivered order and a new order
        When: Canceling the delivered one, and jumping the new one to delivered
        Then: The first raises DeliveredOrderCancellation, the second a plain
              InvalidTransition
        """
        delivered = self.create_order()
        self.force_state(delivered, states.DELIVERED)
        fresh = self.create_order()

        with self.assertRaises(DeliveredOrderCancellation) as delivered_error:
            self.service.cancel_order(delivered.id)
        with self.assertRaises(InvalidTransition) as jump_error:
            self.service.change_state(fresh.id, states.DELIVERED)

        self.assertEqual(delivered_error.exception.code, 'DELIVERED_ORDER')
        self.assertEqual(jump_error.exception.code, 'INVALID_TRANSITION')
        self.assertNotIsInstance(jump_error.exception, DeliveredOrderCancellation)
        self.assertEqual(Order.objects.get(id=delivered.id).state, states.DELIVERED)

    def test_cancel_twice(self):
        order = self.create_order()
        self.service.cancel_order(order.id)

        with self.assertRaises(AlreadyCanceled) as context:
            self.service.cancel_order(order.id)

        self.assertEqual(context.exception.code, 'ALREADY_CANCELED')

    def test_stale_transition_rejected(self):
        """
        Test: Two clients race on the same order.

        Given: Two clients both saw the order as new
        When: One starts preparing it and the other then cancels it
        Then: The second is rejected and history holds one consistent chain
        """
        order = self.create_order()

        self.service.change_state(order.id, states.PREPARING, expected_state=states.NEW)
        with self.assertRaises(StateConflict):
            self.service.change_state(order.id, states.CANCELED, expected_state=states.NEW)

        self.assertEqual(Order.objects.get(id=order.id).state, states.PREPARING)
        history = self.service.order_history(order.id)
        self.assertEqual(
            [(h.previous_state, h.new_state) for h in history],
            [(None, states.NEW), (states.NEW, states.PREPARING)],
        )

    def test_lost_compare_and_swap_rolls_back(self):
        """
        Test: If the conditional update matches no row nothing is written.
        """
        order = self.create_order()

        with patch('orders.repository.OrderRepository._orders') as orders:
            locked = orders.return_value.select_for_update.return_value.only.return_value
            locked.get.return_value = SimpleNamespace(id=order.id, state=states.NEW)
            orders.return_value.filter.return_value.update.return_value = 0
            with self.assertRaises(StateConflict):
                self.service.change_state(order.id, states.PREPARING)

        self.assertEqual(StateHistoryEntry.objects.filter(order=order).count(), 1)

    def test_unknown_state_rejected(self):
        order = self.create_order()
        with self.assertRaises(OrderValidationError):
            self.service.change_state(order.id, 'baking')

    def test_missing_order(self):
        with self.assertRaises(OrderNotFound):
            self.service.change_state(99999, states.PREPARING)
        with self.assertRaises(OrderNotFound):
            self.service.order_history(99999)

    def test_customer_stats_follow_delivery_and_cancel(self):
        delivered = self.create_order(customer_data={'phone': '5550001111'})
        canceled = self.create_order(customer_data={'phone': '5550001111'})
        for state in (states.PREPARING, states.READY, states.DELIVERED):
            self.service.change_state(delivered.id, state)
        self.service.cancel_order(canceled.id)

        customer = Customer.objects.get(phone='5550001111')
        self.assertEqual(customer.total_orders, 1)
        self.assertEqual(customer.total_spent, delivered.total)


class OrderMaintenanceTestCase(MenuMixin, TestCase):
    """Updates, recalculation and read models."""

    def test_empty_patch_rejected(self):
        order = self.create_order()
        with self.assertRaises(OrderValidationError) as context:
            self.service.update_order(order.id, OrderPatch())
        self.assertIn('No valid fields', str(context.exception))

    def test_totals_cannot_be_set_directly(self):
        order = self.create_order()
        with self.assertRaises(OrderValidationError):
            self.service.update_order(order.id, OrderPatch(total=Decimal('1')))

    def test_update_missing_order(self):
        with self.assertRaises(OrderNotFound):
            self.service.update_order(99999, OrderPatch(notes='x'))

    def test_discount_update_reprices(self):
        order = self.create_order([{'pizza_id': self.four_cheese.id, 'quantity': 1}])

        order = self.service.update_order(
            order.id, OrderPatch(discount=Decimal('100'), notes='Regular customer')
        )

        self.assertEqual(order.discount, Decimal('100.00'))
        self.assertEqual(order.total, Decimal('400.00'))
        self.assertEqual(order.notes, 'Regular customer')

    def test_reassigning_customer_refreshes_both(self):
        """
        Test: Moving an order to another customer updates both customers.

        Given: An order placed by one customer
        When: It is reassigned to a second customer
        Then: The first has no orders left and the second has one
        """
        order = self.create_order(customer_data={'phone': '5550002222'})
        other = Customer.objects.create(phone='5550003333', name='Luis')

        self.service.update_order(order.id, OrderPatch(customer_id=other.id))

        previous = Customer.objects.get(phone='5550002222')
        self.assertEqual(previous.total_orders, 0)
        self.assertIsNone(previous.last_order_at)
        other.refresh_from_db()
        self.assertEqual(other.total_orders, 1)
        self.assertIsNotNone(other.last_order_at)

    def test_update_leaves_state_alone(self):
        order = self.create_order()
        order = self.service.update_order(order.id, OrderPatch(payment_method='card'))
        self.assertEqual(order.payment_method, 'card')
        self.assertEqual(order.state, states.NEW)

    def test_recalculate_follows_catalog(self):
        """
        Test: Recalculation re-derives prices from the catalog and is idempotent.
        """
        order = self.create_order([
            {'pizza_id': self.margherita.id, 'quantity': 2, 'extras': [self.mushroom.id]}
        ])
        Pizza.objects.filter(id=self.margherita.id).update(base_price=Decimal('400.00'))

        first = self.service.recalculate_order(order.id)
        second = self.service.recalculate_order(order.id)

        self.assertEqual(first.subtotal, Decimal('880.00'))
        self.assertEqual(second.subtotal, first.subtotal)
        self.assertEqual(second.total, first.total)
        item = first.items.get()
        self.assertEqual(item.unit_price, Decimal('440.00'))

    def test_recalculate_missing_order(self):
        with self.assertRaises(OrderNotFound):
            self.service.recalculate_order(99999)

    def test_kitchen_queue_order(self):
        """
        Test: Kitchen sees new orders first, then preparing, oldest first.
        """
        preparing = self.create_order()
        new_first = self.create_order()
        ready = self.create_order()
        new_second = self.create_order()
        self.service.change_state(preparing.id, states.PREPARING)
        self.force_state(ready, states.READY)

        queue = self.service.kitchen_orders()

        self.assertEqual([o.id for o in queue], [new_first.id, new_second.id, preparing.id])

    def test_list_filters_by_state(self):
        kept = self.create_order()
        other = self.create_order()
        self.service.cancel_order(other.id)

        orders = self.service.list_orders(OrderFilters(state=states.NEW))

        self.assertEqual([o.id for o in orders], [kept.id])
        with self.assertRaises(OrderValidationError):
            self.service.list_orders(OrderFilters(state='baking'))

    def test_daily_summary(self):
        delivered = self.create_order([{'pizza_id': self.four_cheese.id}])
        canceled = self.create_order()
        pending = self.create_order()
        for state in (states.PREPARING, states.READY, states.DELIVERED):
            self.service.change_state(delivered.id, state)
        self.service.cancel_order(canceled.id)

        summary = self.service.daily_summary()

        self.assertEqual(summary['total_orders'], 3)
        self.assertEqual(summary['new_orders'], 1)
        self.assertEqual(summary['delivered_orders'], 1)
        self.assertEqual(summary['canceled_orders'], 1)
        self.assertEqual(summary['delivered_revenue'], Decimal('500.00'))
        self.assertEqual(summary['potential_revenue'], delivered.total + pending.total)


class OrderAdminTestCase(MenuMixin, TestCase):
    """Admin edits go through the order service."""

    def setUp(self):
        super().setUp()
        self.model_admin = OrderAdmin(Order, admin.site)

    def save(self, obj, **cleaned_data):
        form = SimpleNamespace(changed_data=list(cleaned_data), cleaned_data=cleaned_data)
        self.model_admin.save_model(request=None, obj=obj, form=form, change=True)

    def test_stale_form_does_not_revert_state(self):
        """
        Test: Saving an admin form opened before a transition keeps the new state.

        Given: An order loaded by the admin while new
        When: The kitchen starts preparing it, then the admin saves a note
        Then: The note is stored and state, timestamp and history stay consistent
        """
        order = self.create_order()
        stale = Order.objects.get(id=order.id)
        self.service.change_state(order.id, states.PREPARING)

        stale.notes = 'Ring twice'
        self.save(stale, notes='Ring twice')

        stored = Order.objects.get(id=order.id)
        self.assertEqual(stored.notes, 'Ring twice')
        self.assertEqual(stored.state, states.PREPARING)
        self.assertIsNotNone(stored.prep_started_at)
        self.assertEqual(stored.history.last().new_state, states.PREPARING)
        self.assertEqual(stale.state, states.PREPARING)

    def test_discount_edit_reprices(self):
        order = self.create_order([{'pizza_id': self.four_cheese.id}])

        self.save(Order.objects.get(id=order.id), discount=Decimal('50'))

        stored = Order.objects.get(id=order.id)
        self.assertEqual(stored.discount, Decimal('50.00'))
        self.assertEqual(stored.total, Decimal('450.00'))

    def test_customer_edit_uses_customer_id(self):
        order = self.create_order()
        customer = Customer.objects.create(phone='5550004444', name='Rosa')

        self.save(Order.objects.get(id=order.id), customer=customer)

        self.assertEqual(Order.objects.get(id=order.id).customer_id, customer.id)
        customer.refresh_from_db()
        self.assertEqual(customer.total_orders, 1)


@override_settings(RATE_LIMIT_ENABLED=False)
@patch('orders.views.publish_order_event')
class OrderAPITestCase(MenuMixin, APITestCase):
    """API envelope and error codes."""

    def post_order(self, **overrides):
        body = {
            'customer_data': {'phone': '5551234567', 'name': 'Ana'},
            'items': [{
                'pizza_id': self.margherita.id, 'quantity': 2,
                'extras': [self.mushroom.id, self.bacon.id],
                'removed_ingredients': ['basil'],
            }],
            'payment_method': 'cash',
        }
        body.update(overrides)
        return self.client.post('/api/orders/', body, format='json')

    def test_create_order(self, publish):
        with self.captureOnCommitCallbacks(execute=True):
            response = self.post_order()

        self.assertEqual(response.status_code, 201)
        self.assertTrue(response.data['success'])
        self.assertEqual(response.data['data']['total'], '880.00')
        self.assertEqual(response.data['data']['state'], 'new')
        self.assertEqual(response.data['data']['next_states'], ['preparing', 'canceled'])
        publish.delay.assert_called_once()
        self.assertEqual(publish.delay.call_args[0][0], 'order_created')

    def test_create_requires_items(self, publish):
        response = self.post_order(items=[])

        self.assertEqual(response.status_code, 400)
        self.assertFalse(response.data['success'])
        self.assertEqual(response.data['code'], 'VALIDATION_ERROR')

    def test_create_half_and_half_without_second_pizza(self, publish):
        response = self.post_order(items=[{'pizza_id': self.margherita.id, 'is_half_and_half': True}])

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data['code'], 'VALIDATION_ERROR')

    def test_create_with_unknown_pizza(self, publish):
        response = self.post_order(items=[{'pizza_id': 99999}])

        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.data['code'], 'CATALOG_INTEGRITY_ERROR')
        self.assertEqual(Order.objects.count(), 0)

    def test_create_with_ingredient_not_on_pizza(self, publish):
        response = self.post_order(items=[
            {'pizza_id': self.margherita.id, 'removed_ingredients': ['anchovies']}
        ])

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data['code'], 'VALIDATION_ERROR')
        self.assertEqual(Customer.objects.count(), 0)

    def test_get_missing_order(self, publish):
        response = self.client.get('/api/orders/99999/')

        self.assertEqual(response.status_code, 404)
        self.assertEqual(
            response.data,
            {'success': False, 'error': 'Order 99999 not found', 'code': 'ORDER_NOT_FOUND'},
        )

    def test_get_order(self, publish):
        order = self.create_order()

        response = self.client.get(f'/api/orders/{order.id}/')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['data']['order_number'], order.order_number)
        self.assertEqual(len(response.data['data']['items']), 1)

    def test_list_orders(self, publish):
        self.create_order()
        self.create_order()

        response = self.client.get('/api/orders/', {'state': 'new', 'limit': 1})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['count'], 1)

    def test_list_rejects_bad_limit(self, publish):
        response = self.client.get('/api/orders/', {'limit': 'many'})
        self.assertEqual(response.status_code, 400)

    def test_change_state(self, publish):
        order = self.create_order()

        with self.captureOnCommitCallbacks(execute=True):
            response = self.client.post(
                f'/api/orders/{order.id}/state/', {'state': 'preparing'},
                format='json', HTTP_X_ACTOR='kitchen',
            )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['previous_state'], 'new')
        self.assertEqual(response.data['data']['state'], 'preparing')
        self.assertEqual(StateHistoryEntry.objects.filter(order=order).last().actor, 'kitchen')
        self.assertEqual(publish.delay.call_args[0][0], 'state_changed')

    def test_invalid_transition(self, publish):
        order = self.create_order()

        response = self.client.post(
            f'/api/orders/{order.id}/state/', {'state': 'delivered'}, format='json'
        )

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data['code'], 'INVALID_TRANSITION')

    def test_stale_expected_state(self, publish):
        order = self.create_order()
        self.force_state(order, states.PREPARING)

        response = self.client.post(
            f'/api/orders/{order.id}/state/',
            {'state': 'canceled', 'expected_state': 'new'}, format='json',
        )

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data['code'], 'STATE_CONFLICT')

    def test_cancel_delivered(self, publish):
        order = self.create_order()
        self.force_state(order, states.DELIVERED)

        response = self.client.delete(f'/api/orders/{order.id}/')

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data['code'], 'DELIVERED_ORDER')

    def test_cancel(self, publish):
        order = self.create_order()

        response = self.client.delete(
            f'/api/orders/{order.id}/', {'reason': 'Customer called'}, format='json'
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['data']['state'], 'canceled')
        self.assertEqual(order.history.last().reason, 'Customer called')

    def test_patch_without_fields(self, publish):
        order = self.create_order()

        response = self.client.patch(f'/api/orders/{order.id}/', {}, format='json')

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data['error'], 'No valid fields to update')

    def test_patch_ignores_state(self, publish):
        order = self.create_order()

        response = self.client.patch(
            f'/api/orders/{order.id}/', {'state': 'delivered', 'notes': 'Ring twice'}, format='json'
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['data']['state'], 'new')
        self.assertEqual(response.data['data']['notes'], 'Ring twice')

    def test_history(self, publish):
        order = self.create_order()
        self.service.change_state(order.id, states.PREPARING)

        response = self.client.get(f'/api/orders/{order.id}/history/')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['data']['order']['current_state'], 'preparing')
        self.assertEqual(response.data['count'], 2)

    def test_kitchen(self, publish):
        self.create_order()

        response = self.client.get('/api/orders/kitchen/')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['count'], 1)

    def test_orders_by_unknown_state(self, publish):
        response = self.client.get('/api/orders/state/baking/')
        self.assertEqual(response.status_code, 400)

    def test_daily_summary(self, publish):
        self.create_order()

        response = self.client.get('/api/orders/today/summary/')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['data']['total_orders'], 1)
        self.assertEqual(response.data['data']['delivered_revenue'], '0.00')

    def test_recalculate(self, publish):
        order = self.create_order()

        response = self.client.post(f'/api/orders/{order.id}/recalculate/')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['data']['total'], '390.00')

    def test_event_queue_failure_does_not_fail_request(self, publish):
        publish.delay.side_effect = ConnectionError('broker down')

        with self.captureOnCommitCallbacks(execute=True):
            response = self.post_order()

        self.assertEqual(response.status_code, 201)


class OrderEventTaskTestCase(SimpleTestCase):

    @patch('orders.tasks.get_redis_client')
    def test_publish_to_every_channel(self, get_client):
        from orders.tasks import publish_order_event
        get_client.return_value.publish.return_value = 1

        result = publish_order_event.apply(args=('order_created', {'order_id': 7})).get()

        self.assertEqual(result['status'], 'published')
        self.assertEqual(
            sorted(result['receivers']), sorted(settings.PIZZERIA['EVENT_CHANNELS'])
        )
        channel, message = get_client.return_value.publish.call_args[0]
        self.assertIn('"order_created"', message)
