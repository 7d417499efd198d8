"""
Customer Model - contact details and lifetime aggregates.
"""
from decimal import Decimal
from django.db import models


class Customer(models.Model):
    """
    Customer identified by phone number.

    total_orders, total_spent and last_order_at are derived from the
    customer's orders and refreshed by customers.services.
    """
    phone = models.CharField(
        max_length=20,
        unique=True,
        db_index=True,
        help_text="Contact phone, unique per customer"
    )
    name = models.CharField(max_length=100, blank=True, default='')
    address = models.CharField(max_length=500, blank=True, default='')
    references = models.CharField(
        max_length=500,
        blank=True,
        default='',
        help_text="Delivery directions"
    )
    notes = models.TextField(blank=True, default='')
    total_orders = models.PositiveIntegerField(default=0)
    total_spent = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=Decimal('0.00')
    )
    last_order_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Customer'
        verbose_name_plural = 'Customers'
        ordering = ['-last_order_at', 'name']

    def __str__(self):
        return f"{self.name or 'Customer'} ({self.phone})"
