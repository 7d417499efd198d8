"""
Catalog API Views.

The catalog is read-only through the API; pizzas and extras are
maintained in the Django admin or with the seed_menu command.
"""
from rest_framework import generics
from rest_framework.response import Response

from .models import Pizza, Extra
from .serializers import PizzaSerializer, ExtraSerializer


class EnvelopeListMixin:
    """Wrap list responses in the service's success envelope."""

    def list(self, request, *args, **kwargs):
        serializer = self.get_serializer(self.get_queryset(), many=True)
        return Response({
            'success': True,
            'data': serializer.data,
            'count': len(serializer.data),
        })


class PizzaListView(EnvelopeListMixin, generics.ListAPIView):
    """
    GET: List active pizzas in menu order.
    """
    serializer_class = PizzaSerializer

    def get_queryset(self):
        return Pizza.objects.filter(is_active=True).order_by('menu_order', 'name')


class ExtraListView(EnvelopeListMixin, generics.ListAPIView):
    """
    GET: List active extras grouped by category.

    Query Parameters:
        - category: Filter by extra category
    """
    serializer_class = ExtraSerializer

    def get_queryset(self):
        queryset = Extra.objects.filter(is_active=True)
        category = self.request.query_params.get('category', '').strip().lower()
        if category in Extra.Category.values:
            queryset = queryset.filter(category=category)
        return queryset.order_by('category', 'category_order', 'name')
