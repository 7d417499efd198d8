"""
Management command to seed the database with a sample pizza menu.

Generates:
- Pizzas with ordered ingredient lists
- Extras across every category

Usage:
    python manage.py seed_menu
    python manage.py seed_menu --clear  # Clear existing menu first
"""
from decimal import Decimal
from django.core.management.base import BaseCommand, CommandError
from django.db import transaction
from django.db.models import ProtectedError

from catalog.models import Pizza, Extra

PIZZAS = [
    ('Margherita', '390.00', ['tomato sauce', 'mozzarella', 'basil']),
    ('Pepperoni', '450.00', ['tomato sauce', 'mozzarella', 'pepperoni']),
    ('Hawaiian', '470.00', ['tomato sauce', 'mozzarella', 'ham', 'pineapple']),
    ('Four Cheese', '500.00', ['mozzarella', 'gorgonzola', 'parmesan', 'provolone']),
    ('Mexican', '520.00', ['tomato sauce', 'mozzarella', 'chorizo', 'jalapeno', 'onion', 'beans']),
    ('Veggie', '430.00', ['tomato sauce', 'mozzarella', 'bell pepper', 'mushroom', 'onion', 'olive']),
    ('Meat Lovers', '560.00', ['tomato sauce', 'mozzarella', 'pepperoni', 'ham', 'bacon', 'sausage']),
    ('BBQ Chicken', '510.00', ['bbq sauce', 'mozzarella', 'chicken', 'red onion', 'cilantro']),
]

EXTRAS = [
    ('Oregano', '10.00', Extra.Category.CONDIMENTS),
    ('Chili Flakes', '10.00', Extra.Category.CONDIMENTS),
    ('Mushroom', '40.00', Extra.Category.VEGETABLES),
    ('Jalapeno', '30.00', Extra.Category.VEGETABLES),
    ('Olive', '35.00', Extra.Category.VEGETABLES),
    ('Egg', '30.00', Extra.Category.PROTEINS),
    ('Chicken', '60.00', Extra.Category.PROTEINS),
    ('Bacon', '60.00', Extra.Category.MEATS),
    ('Pepperoni', '55.00', Extra.Category.MEATS),
    ('Extra Mozzarella', '50.00', Extra.Category.CHEESES),
    ('Parmesan', '45.00', Extra.Category.CHEESES),
    ('Stuffed Crust', '90.00', Extra.Category.SPECIALS),
]


class Command(BaseCommand):
    help = 'Seed the database with a sample pizza menu and extras'

    def add_arguments(self, parser):
        parser.add_argument(
            '--clear',
            action='store_true',
            help='Clear existing pizzas and extras before seeding',
        )

    def handle(self, *args, **options):
        with transaction.atomic():
            if options['clear']:
                self.stdout.write('Clearing existing menu...')
                self._clear_data()

            self.stdout.write('Seeding menu...')
            pizzas = self._create_pizzas()
            extras = self._create_extras()

        self.stdout.write(self.style.SUCCESS(
            f'Menu seeded: {pizzas} pizzas, {extras} extras'
        ))

    def _clear_data(self):
        """Clear the menu; pizzas already ordered cannot be removed."""
        try:
            Pizza.objects.all().delete()
        except ProtectedError:
            raise CommandError('Pizzas are referenced by existing orders; deactivate them instead.')
        Extra.objects.all().delete()
        self.stdout.write(self.style.WARNING('Existing menu cleared.'))

    def _create_pizzas(self):
        created = 0
        for position, (name, price, ingredients) in enumerate(PIZZAS):
            _, was_created = Pizza.objects.update_or_create(
                name=name,
                defaults={
                    'base_price': Decimal(price),
                    'ingredients': ingredients,
                    'menu_order': position,
                    'is_active': True,
                },
            )
            created += was_created
        self.stdout.write(f'  {created} new pizzas')
        return Pizza.objects.count()

    def _create_extras(self):
        created = 0
        positions = {}
        for name, price, category in EXTRAS:
            positions[category] = positions.get(category, -1) + 1
            _, was_created = Extra.objects.update_or_create(
                name=name,
                defaults={
                    'price': Decimal(price),
                    'category': category,
                    'category_order': positions[category],
                    'is_active': True,
                },
            )
            created += was_created
        self.stdout.write(f'  {created} new extras')
        return Extra.objects.count()
