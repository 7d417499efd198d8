"""
Serializers for catalog models.
"""
from rest_framework import serializers
from .models import Pizza, Extra


class PizzaSerializer(serializers.ModelSerializer):
    """Serializer for Pizza model."""

    class Meta:
        model = Pizza
        fields = [
            'id', 'name', 'base_price', 'ingredients',
            'description', 'is_active', 'menu_order'
        ]
        read_only_fields = fields


class PizzaMinimalSerializer(serializers.ModelSerializer):
    """Minimal serializer for nested pizza representation."""
    class Meta:
        model = Pizza
        fields = ['id', 'name', 'base_price', 'ingredients']


class ExtraSerializer(serializers.ModelSerializer):
    """Serializer for Extra model."""

    class Meta:
        model = Extra
        fields = ['id', 'name', 'price', 'category', 'is_active', 'category_order']
        read_only_fields = fields

