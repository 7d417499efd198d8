"""
URL routing for catalog API endpoints.
"""
from django.urls import path
from . import views

app_name = 'catalog'

urlpatterns = [
    path('pizzas/', views.PizzaListView.as_view(), name='pizza-list'),
    path('extras/', views.ExtraListView.as_view(), name='extra-list'),
]
