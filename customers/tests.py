"""
Tests for customer resolution and lifetime statistics.
"""
from decimal import Decimal

from django.test import TestCase

from core.exceptions import OrderValidationError
from customers.models import Customer
from customers.services import refresh_customer_stats, resolve_customer
from orders.models import Order


class ResolveCustomerTestCase(TestCase):

    def test_walk_in_returns_none(self):
        self.assertIsNone(resolve_customer())

    def test_explicit_id_wins_over_phone(self):
        """
        Test: customer_id takes precedence over customer_data.

        Given: An existing customer and data for a different phone
        When: Resolving with both
        Then: The existing customer is returned and nobody is created
        """
        customer = Customer.objects.create(phone='5550000001', name='Luis')

        resolved = resolve_customer(customer.id, {'phone': '5559999999'})

        self.assertEqual(resolved.id, customer.id)
        self.assertEqual(Customer.objects.count(), 1)

    def test_unknown_id_rejected(self):
        with self.assertRaises(OrderValidationError):
            resolve_customer(99999)

    def test_phone_required(self):
        with self.assertRaises(OrderValidationError):
            resolve_customer(customer_data={'name': 'No phone'})

    def test_existing_phone_keeps_unsupplied_fields(self):
        Customer.objects.create(phone='5550000002', name='Marta', address='Calle 5')

        resolved = resolve_customer(customer_data={'phone': '5550000002', 'references': 'Blue door'})

        resolved.refresh_from_db()
        self.assertEqual(resolved.name, 'Marta')
        self.assertEqual(resolved.address, 'Calle 5')
        self.assertEqual(resolved.references, 'Blue door')


class CustomerStatsTestCase(TestCase):

    def setUp(self):
        self.customer = Customer.objects.create(phone='5550000003', name='Rosa')

    def _order(self, number, state, total):
        return Order.objects.create(
            order_number=number, customer=self.customer, state=state,
            subtotal=Decimal(total), total=Decimal(total),
        )

    def test_stats_exclude_canceled_and_count_delivered_spend(self):
        """
        Test: Only delivered orders count as spend; canceled orders don't count at all.
        """
        self._order('A-1', Order.State.DELIVERED, '450.00')
        self._order('A-2', Order.State.READY, '300.00')
        self._order('A-3', Order.State.CANCELED, '999.00')

        customer = refresh_customer_stats(self.customer.id)

        self.assertEqual(customer.total_orders, 2)
        self.assertEqual(customer.total_spent, Decimal('450.00'))
        self.assertIsNotNone(customer.last_order_at)

    def test_stats_without_orders(self):
        customer = refresh_customer_stats(self.customer.id)

        self.assertEqual(customer.total_orders, 0)
        self.assertEqual(customer.total_spent, Decimal('0.00'))
        self.assertIsNone(customer.last_order_at)

    def test_missing_customer(self):
        self.assertIsNone(refresh_customer_stats(99999))
