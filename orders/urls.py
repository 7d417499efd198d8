"""
URL routing for order API endpoints.
"""
from django.urls import path
from . import views

app_name = 'orders'

urlpatterns = [
    path('orders/', views.OrderListCreateView.as_view(), name='order-list'),
    path('orders/kitchen/', views.KitchenOrdersView.as_view(), name='order-kitchen'),
    path('orders/today/summary/', views.DailySummaryView.as_view(), name='order-summary'),
    path('orders/state/<str:state>/', views.OrdersByStateView.as_view(), name='order-by-state'),
    path('orders/<int:pk>/', views.OrderDetailView.as_view(), name='order-detail'),
    path('orders/<int:pk>/state/', views.OrderStateView.as_view(), name='order-state'),
    path('orders/<int:pk>/history/', views.OrderHistoryView.as_view(), name='order-history'),
    path('orders/<int:pk>/recalculate/', views.OrderRecalculateView.as_view(), name='order-recalculate'),
]
