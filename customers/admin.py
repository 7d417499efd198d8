"""
Django Admin configuration for customers.
"""
from django.contrib import admin
from .models import Customer


@admin.register(Customer)
class CustomerAdmin(admin.ModelAdmin):
    list_display = ['id', 'phone', 'name', 'total_orders', 'total_spent', 'last_order_at']
    search_fields = ['phone', 'name', 'address']
    ordering = ['-last_order_at']
    readonly_fields = ['total_orders', 'total_spent', 'last_order_at', 'created_at', 'updated_at']
