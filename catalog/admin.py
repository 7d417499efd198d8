"""
Django Admin configuration for catalog models.
"""
from django.contrib import admin
from .models import Pizza, Extra


@admin.register(Pizza)
class PizzaAdmin(admin.ModelAdmin):
    list_display = ['id', 'name', 'base_price', 'is_active', 'menu_order']
    list_filter = ['is_active']
    search_fields = ['name', 'description']
    ordering = ['menu_order', 'name']
    list_editable = ['is_active', 'menu_order']


@admin.register(Extra)
class ExtraAdmin(admin.ModelAdmin):
    list_display = ['id', 'name', 'price', 'category', 'is_active']
    list_filter = ['category', 'is_active']
    search_fields = ['name']
    ordering = ['category', 'category_order', 'name']
