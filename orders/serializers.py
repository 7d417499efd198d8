"""
Serializers for order models and order requests.
"""
from decimal import Decimal

from rest_framework import serializers

from catalog.serializers import PizzaMinimalSerializer
from customers.models import Customer
from . import states
from .models import Order, OrderItem, StateHistoryEntry


class CustomerMinimalSerializer(serializers.ModelSerializer):
    """Minimal serializer for nested customer representation."""
    class Meta:
        model = Customer
        fields = ['id', 'phone', 'name', 'address', 'references']


class OrderItemSerializer(serializers.ModelSerializer):
    """Serializer for OrderItem with pizza details."""
    pizza = PizzaMinimalSerializer(read_only=True)
    second_pizza = PizzaMinimalSerializer(read_only=True)

    class Meta:
        model = OrderItem
        fields = [
            'id', 'pizza', 'quantity', 'is_half_and_half',
            'extras', 'removed_ingredients',
            'second_pizza', 'second_extras', 'second_removed_ingredients',
            'shared_extras', 'shared_removed_ingredients', 'notes',
            'base_price', 'extras_price', 'removal_discount',
            'unit_price', 'line_total',
        ]


class OrderSerializer(serializers.ModelSerializer):
    """
    Serializer for Order model with nested items.
    Expects items__pizza and items__second_pizza to be prefetched.
    """
    customer = CustomerMinimalSerializer(read_only=True)
    items = OrderItemSerializer(many=True, read_only=True)
    next_states = serializers.ListField(child=serializers.CharField(), read_only=True)

    class Meta:
        model = Order
        fields = [
            'id', 'order_number', 'customer', 'state', 'next_states',
            'subtotal', 'discount', 'total', 'payment_method',
            'notes', 'estimated_minutes', 'items',
            'placed_at', 'prep_started_at', 'ready_at',
            'delivered_at', 'canceled_at', 'updated_at',
        ]
        read_only_fields = fields


class OrderListSerializer(serializers.ModelSerializer):
    """
    Compact serializer for listing orders.
    """
    customer_name = serializers.CharField(source='customer.name', read_only=True, default=None)
    customer_phone = serializers.CharField(source='customer.phone', read_only=True, default=None)
    item_count = serializers.SerializerMethodField()

    class Meta:
        model = Order
        fields = [
            'id', 'order_number', 'customer_name', 'customer_phone',
            'state', 'subtotal', 'discount', 'total', 'payment_method',
            'item_count', 'placed_at',
        ]

    def get_item_count(self, obj):
        # Use prefetched items count if available
        if hasattr(obj, '_prefetched_objects_cache') and 'items' in obj._prefetched_objects_cache:
            return len(obj.items.all())
        return obj.items.count()


class StateHistorySerializer(serializers.ModelSerializer):
    class Meta:
        model = StateHistoryEntry
        fields = ['id', 'previous_state', 'new_state', 'reason', 'actor', 'changed_at']


class OrderItemCreateSerializer(serializers.Serializer):
    """Serializer for one item specification in an order creation request."""
    pizza_id = serializers.IntegerField(min_value=1)
    quantity = serializers.IntegerField(min_value=1, default=1)
    is_half_and_half = serializers.BooleanField(default=False)
    extras = serializers.ListField(
        child=serializers.IntegerField(min_value=1), required=False, default=list
    )
    removed_ingredients = serializers.ListField(
        child=serializers.CharField(max_length=50), required=False, default=list
    )
    second_pizza_id = serializers.IntegerField(min_value=1, required=False, allow_null=True)
    second_extras = serializers.ListField(
        child=serializers.IntegerField(min_value=1), required=False, default=list
    )
    second_removed_ingredients = serializers.ListField(
        child=serializers.CharField(max_length=50), required=False, default=list
    )
    shared_extras = serializers.ListField(
        child=serializers.IntegerField(min_value=1), required=False, default=list
    )
    shared_removed_ingredients = serializers.ListField(
        child=serializers.CharField(max_length=50), required=False, default=list
    )
    notes = serializers.CharField(max_length=500, required=False, allow_blank=True, default='')

    def validate(self, attrs):
        if attrs['is_half_and_half']:
            if not attrs.get('second_pizza_id'):
                raise serializers.ValidationError(
                    {'second_pizza_id': 'Required for half-and-half items.'}
                )
        else:
            half_fields = [
                name for name in (
                    'second_pizza_id', 'second_extras', 'second_removed_ingredients',
                    'shared_extras', 'shared_removed_ingredients',
                )
                if attrs.get(name)
            ]
            if half_fields:
                raise serializers.ValidationError(
                    f"Only allowed on half-and-half items: {', '.join(half_fields)}"
                )
        return attrs


class CustomerDataSerializer(serializers.Serializer):
    phone = serializers.RegexField(r'^\+?[0-9\s\-()]{7,20}$', max_length=20)
    name = serializers.CharField(max_length=100, required=False, allow_blank=True)
    address = serializers.CharField(max_length=500, required=False, allow_blank=True)
    references = serializers.CharField(max_length=500, required=False, allow_blank=True)


class OrderCreateSerializer(serializers.Serializer):
    """
    Serializer for creating orders via POST /orders/

    Request format:
    {
        "customer_data": {"phone": "5551234567", "name": "Ana"},
        "items": [
            {"pizza_id": 1, "quantity": 2, "extras": [3], "removed_ingredients": ["onion"]},
            {"pizza_id": 2, "is_half_and_half": true, "second_pizza_id": 4}
        ],
        "discount": "0.00",
        "payment_method": "cash"
    }
    """
    customer_id = serializers.IntegerField(min_value=1, required=False, allow_null=True)
    customer_data = CustomerDataSerializer(required=False, allow_null=True)
    items = OrderItemCreateSerializer(many=True)
    discount = serializers.DecimalField(
        max_digits=12, decimal_places=2, min_value=Decimal('0.00'), default=Decimal('0.00')
    )
    payment_method = serializers.ChoiceField(
        choices=Order.PaymentMethod.choices, default=Order.PaymentMethod.CASH
    )
    notes = serializers.CharField(max_length=1000, required=False, allow_blank=True, default='')
    estimated_minutes = serializers.IntegerField(min_value=1, required=False, allow_null=True)

    def validate_items(self, value):
        if not value:
            raise serializers.ValidationError("At least one item is required")
        return value


class OrderPatchSerializer(serializers.Serializer):
    """Whitelisted fields of a partial order update."""
    payment_method = serializers.ChoiceField(choices=Order.PaymentMethod.choices, required=False)
    notes = serializers.CharField(max_length=1000, required=False, allow_blank=True)
    estimated_minutes = serializers.IntegerField(min_value=1, required=False)
    discount = serializers.DecimalField(
        max_digits=12, decimal_places=2, min_value=Decimal('0.00'), required=False
    )
    customer_id = serializers.IntegerField(min_value=1, required=False)

    def validate_customer_id(self, value):
        if not Customer.objects.filter(id=value).exists():
            raise serializers.ValidationError(f"Customer {value} not found")
        return value


class StateChangeSerializer(serializers.Serializer):
    state = serializers.ChoiceField(choices=states.ALL_STATES)
    reason = serializers.CharField(max_length=500, required=False, allow_blank=True, default='')
    expected_state = serializers.ChoiceField(choices=states.ALL_STATES, required=False)


class CancelSerializer(serializers.Serializer):
    reason = serializers.CharField(max_length=500, required=False, allow_blank=True, default='')
