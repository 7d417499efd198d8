"""
Tests for the catalog reader, menu endpoints and seed command.
"""
from decimal import Decimal
from io import StringIO

from django.core.management import call_command
from django.test import TestCase
from rest_framework.test import APITestCase

from catalog.models import Extra, Pizza
from catalog.services import CatalogReader
from core.exceptions import CatalogIntegrityError


class CatalogReaderTestCase(TestCase):

    def setUp(self):
        self.pizza = Pizza.objects.create(name='Margherita', base_price=Decimal('390.00'))
        self.mushroom = Extra.objects.create(name='Mushroom', price=Decimal('40.00'))
        self.bacon = Extra.objects.create(name='Bacon', price=Decimal('60.00'))
        self.reader = CatalogReader()

    def test_extras_returned_in_requested_order(self):
        extras = self.reader.get_extras([self.bacon.id, self.mushroom.id, self.bacon.id])
        self.assertEqual([e.name for e in extras], ['Bacon', 'Mushroom', 'Bacon'])

    def test_missing_ids_raise(self):
        with self.assertRaises(CatalogIntegrityError):
            self.reader.get_pizza(99999)
        with self.assertRaises(CatalogIntegrityError) as context:
            self.reader.get_extras([self.mushroom.id, 99998])
        self.assertIn('99998', str(context.exception))

    def test_inactive_items_still_priced(self):
        """Orders placed before a pizza left the menu can still be repriced."""
        Pizza.objects.filter(id=self.pizza.id).update(is_active=False)
        self.assertEqual(self.reader.get_pizza(self.pizza.id).name, 'Margherita')

    def test_prefetch_caches_lookups(self):
        self.reader.prefetch([self.pizza.id], [self.mushroom.id, self.bacon.id])

        with self.assertNumQueries(0):
            self.reader.get_pizza(self.pizza.id)
            self.reader.get_extras([self.mushroom.id, self.bacon.id])


class MenuAPITestCase(APITestCase):

    def setUp(self):
        Pizza.objects.create(name='Margherita', base_price=Decimal('390.00'), menu_order=1)
        Pizza.objects.create(name='Retired', base_price=Decimal('100.00'), is_active=False)
        Extra.objects.create(name='Mushroom', price=Decimal('40.00'), category=Extra.Category.VEGETABLES)
        Extra.objects.create(name='Bacon', price=Decimal('60.00'), category=Extra.Category.MEATS)

    def test_lists_active_pizzas(self):
        response = self.client.get('/api/pizzas/')

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.data['success'])
        self.assertEqual([p['name'] for p in response.data['data']], ['Margherita'])

    def test_filters_extras_by_category(self):
        response = self.client.get('/api/extras/', {'category': 'meats'})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['count'], 1)
        self.assertEqual(response.data['data'][0]['name'], 'Bacon')


class SeedMenuCommandTestCase(TestCase):

    def test_seed_is_repeatable(self):
        call_command('seed_menu', stdout=StringIO())
        pizzas, extras = Pizza.objects.count(), Extra.objects.count()

        call_command('seed_menu', stdout=StringIO())

        self.assertGreater(pizzas, 0)
        self.assertGreater(extras, 0)
        self.assertEqual(Pizza.objects.count(), pizzas)
        self.assertEqual(Extra.objects.count(), extras)

    def test_clear_replaces_menu(self):
        Pizza.objects.create(name='Old Special', base_price=Decimal('1.00'))

        call_command('seed_menu', '--clear', stdout=StringIO())

        self.assertFalse(Pizza.objects.filter(name='Old Special').exists())
