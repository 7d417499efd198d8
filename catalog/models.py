"""
Catalog Models - Menu entities used as read-only pricing inputs.

Models:
    - Pizza: Menu pizza with a base price and an ordered ingredient list
    - Extra: Add-on ingredient priced independently of the pizza
"""
from decimal import Decimal
from django.db import models
from django.core.validators import MinValueValidator


class Pizza(models.Model):
    """
    Pizza recipe available on the menu.
    """
    name = models.CharField(
        max_length=100,
        unique=True,
        db_index=True,
        help_text="Pizza name shown on the menu"
    )
    base_price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        validators=[MinValueValidator(Decimal('0.01'))],
        help_text="Price of a whole pizza without customizations"
    )
    ingredients = models.JSONField(
        default=list,
        blank=True,
        help_text="Ordered list of ingredient names"
    )
    description = models.TextField(blank=True, default='')
    is_active = models.BooleanField(
        default=True,
        db_index=True,
        help_text="Whether the pizza can be ordered"
    )
    menu_order = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Pizza'
        verbose_name_plural = 'Pizzas'
        ordering = ['menu_order', 'name']
        indexes = [
            models.Index(fields=['is_active', 'menu_order']),
        ]

    def __str__(self):
        return f"{self.name} (${self.base_price})"


class Extra(models.Model):
    """
    Optional add-on ingredient.
    """

    class Category(models.TextChoices):
        CONDIMENTS = 'condiments', 'Condiments'
        VEGETABLES = 'vegetables', 'Vegetables'
        PROTEINS = 'proteins', 'Proteins'
        MEATS = 'meats', 'Meats'
        CHEESES = 'cheeses', 'Cheeses'
        SPECIALS = 'specials', 'Specials'
        GENERAL = 'general', 'General'

    name = models.CharField(
        max_length=50,
        unique=True,
        help_text="Extra name"
    )
    price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        validators=[MinValueValidator(Decimal('0.01'))],
        help_text="Price charged per added extra"
    )
    category = models.CharField(
        max_length=20,
        choices=Category.choices,
        default=Category.GENERAL,
        db_index=True
    )
    is_active = models.BooleanField(default=True, db_index=True)
    category_order = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name = 'Extra'
        verbose_name_plural = 'Extras'
        ordering = ['category', 'category_order', 'name']

    def __str__(self):
        return f"{self.name} (+${self.price})"
