"""
Order Models - Order, OrderItem and StateHistoryEntry entities.

Order State Flow:
    new -> preparing -> ready -> delivered
    new | preparing | ready -> canceled

Orders are never deleted; canceled is a terminal state.
"""
from decimal import Decimal
from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.db import models

from catalog.models import Pizza
from customers.models import Customer
from . import states


class Order(models.Model):
    """
    Customer order moving through the preparation lifecycle.

    At most one of prep_started_at, ready_at, delivered_at and canceled_at
    is set: the one belonging to the current state.
    """

    class State(models.TextChoices):
        NEW = states.NEW, 'New'
        PREPARING = states.PREPARING, 'Preparing'
        READY = states.READY, 'Ready'
        DELIVERED = states.DELIVERED, 'Delivered'
        CANCELED = states.CANCELED, 'Canceled'

    class PaymentMethod(models.TextChoices):
        CASH = 'cash', 'Cash'
        CARD = 'card', 'Card'
        TRANSFER = 'transfer', 'Transfer'

    order_number = models.CharField(
        max_length=20,
        unique=True,
        help_text="Human-readable order number"
    )
    customer = models.ForeignKey(
        Customer,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='orders',
    )
    state = models.CharField(
        max_length=20,
        choices=State.choices,
        default=State.NEW,
        db_index=True,
        help_text="Current lifecycle state"
    )
    subtotal = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=Decimal('0.00'),
        validators=[MinValueValidator(Decimal('0.00'))],
    )
    discount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=Decimal('0.00'),
        validators=[MinValueValidator(Decimal('0.00'))],
    )
    total = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=Decimal('0.00'),
        validators=[MinValueValidator(Decimal('0.00'))],
        help_text="subtotal - discount, never negative"
    )
    payment_method = models.CharField(
        max_length=20,
        choices=PaymentMethod.choices,
        default=PaymentMethod.CASH,
    )
    notes = models.TextField(blank=True, default='')
    estimated_minutes = models.PositiveIntegerField(null=True, blank=True)
    placed_at = models.DateTimeField(auto_now_add=True, db_index=True)
    prep_started_at = models.DateTimeField(null=True, blank=True)
    ready_at = models.DateTimeField(null=True, blank=True)
    delivered_at = models.DateTimeField(null=True, blank=True)
    canceled_at = models.DateTimeField(null=True, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Order'
        verbose_name_plural = 'Orders'
        ordering = ['-placed_at', '-id']
        indexes = [
            models.Index(fields=['state', 'placed_at']),
            models.Index(fields=['customer', 'placed_at']),
        ]

    def __str__(self):
        return f"Order {self.order_number} ({self.state})"

    @property
    def is_terminal(self) -> bool:
        return states.is_terminal(self.state)

    @property
    def next_states(self):
        return list(states.next_states(self.state))

    @property
    def item_count(self) -> int:
        return self.items.count()

    @property
    def state_timestamp(self):
        """Timestamp stamped when the order entered its current state."""
        field = states.TIMESTAMP_FIELDS.get(self.state)
        return getattr(self, field) if field else self.placed_at


class OrderItem(models.Model):
    """
    One pizza configuration at a given quantity.

    For half-and-half pizzas, extras/removed_ingredients describe the first
    half, second_* the second half and shared_* both halves. Priced fields
    are written by the pricing engine only.
    """
    order = models.ForeignKey(
        Order,
        on_delete=models.CASCADE,
        related_name='items',
    )
    pizza = models.ForeignKey(
        Pizza,
        on_delete=models.PROTECT,
        related_name='order_items',
    )
    quantity = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    is_half_and_half = models.BooleanField(default=False)
    extras = models.JSONField(default=list, blank=True)
    removed_ingredients = models.JSONField(default=list, blank=True)
    second_pizza = models.ForeignKey(
        Pizza,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='second_half_items',
    )
    second_extras = models.JSONField(default=list, blank=True)
    second_removed_ingredients = models.JSONField(default=list, blank=True)
    shared_extras = models.JSONField(default=list, blank=True)
    shared_removed_ingredients = models.JSONField(default=list, blank=True)
    notes = models.CharField(max_length=500, blank=True, default='')

    base_price = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal('0.00'))
    extras_price = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal('0.00'))
    removal_discount = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal('0.00'))
    unit_price = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal('0.00'))
    line_total = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name = 'Order Item'
        verbose_name_plural = 'Order Items'
        ordering = ['id']

    def __str__(self):
        if self.is_half_and_half:
            return f"{self.quantity}x {self.pizza.name} / {self.second_pizza.name}"
        return f"{self.quantity}x {self.pizza.name}"

    def clean(self):
        if self.is_half_and_half:
            if self.second_pizza_id is None:
                raise ValidationError("Half-and-half items require a second pizza")
        elif (self.second_pizza_id or self.second_extras or self.second_removed_ingredients
              or self.shared_extras or self.shared_removed_ingredients):
            raise ValidationError("Second-half fields are only allowed on half-and-half items")


class StateHistoryEntry(models.Model):
    """
    Append-only audit record of one state change.

    previous_state is null only for the entry written when the order is
    created.
    """
    order = models.ForeignKey(
        Order,
        on_delete=models.CASCADE,
        related_name='history',
    )
    previous_state = models.CharField(
        max_length=20,
        choices=Order.State.choices,
        null=True,
        blank=True,
    )
    new_state = models.CharField(max_length=20, choices=Order.State.choices)
    reason = models.CharField(max_length=500, blank=True, default='')
    actor = models.CharField(max_length=100, default='system')
    changed_at = models.DateTimeField(auto_now_add=True, db_index=True)

    class Meta:
        verbose_name = 'State History Entry'
        verbose_name_plural = 'State History'
        ordering = ['changed_at', 'id']

    def __str__(self):
        return f"{self.order_id}: {self.previous_state or '-'} -> {self.new_state}"
