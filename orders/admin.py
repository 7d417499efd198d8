"""
Django Admin configuration for order models.

Prices and states are read-only here: prices come from the pricing engine
and states only change through the lifecycle service.
"""
from django.contrib import admin
from .models import Order, OrderItem, StateHistoryEntry
from .repository import OrderPatch
from .services import OrderService

# Admin form field -> OrderPatch field
PATCH_FIELDS = {
    'customer': 'customer_id',
    'discount': 'discount',
    'payment_method': 'payment_method',
    'notes': 'notes',
    'estimated_minutes': 'estimated_minutes',
}


class OrderItemInline(admin.TabularInline):
    model = OrderItem
    fk_name = 'order'
    extra = 0
    fields = [
        'pizza', 'second_pizza', 'is_half_and_half', 'quantity',
        'base_price', 'extras_price', 'removal_discount', 'unit_price', 'line_total',
    ]
    readonly_fields = fields
    can_delete = False

    def has_add_permission(self, request, obj=None):
        return False


class StateHistoryInline(admin.TabularInline):
    model = StateHistoryEntry
    extra = 0
    fields = ['previous_state', 'new_state', 'reason', 'actor', 'changed_at']
    readonly_fields = fields
    can_delete = False

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ['order_number', 'customer', 'state', 'total', 'item_count', 'placed_at']
    list_filter = ['state', 'payment_method', 'placed_at']
    search_fields = ['order_number', 'customer__phone', 'customer__name']
    ordering = ['-placed_at']
    readonly_fields = [
        'order_number', 'state', 'subtotal', 'total',
        'placed_at', 'prep_started_at', 'ready_at', 'delivered_at', 'canceled_at', 'updated_at',
    ]
    inlines = [OrderItemInline, StateHistoryInline]

    def has_add_permission(self, request):
        return False

    def save_model(self, request, obj, form, change):
        """
        Route edits through the order service so only changed fields are
        written and state is never touched here.
        """
        changes = {}
        for name in form.changed_data:
            value = form.cleaned_data.get(name)
            if name not in PATCH_FIELDS or value is None:
                continue
            changes[PATCH_FIELDS[name]] = value.pk if name == 'customer' else value
        if changes:
            OrderService().update_order(obj.pk, OrderPatch(**changes))
            obj.refresh_from_db()

    def item_count(self, obj):
        return obj.items.count()
    item_count.short_description = 'Items'


@admin.register(StateHistoryEntry)
class StateHistoryEntryAdmin(admin.ModelAdmin):
    list_display = ['id', 'order', 'previous_state', 'new_state', 'actor', 'changed_at']
    list_filter = ['new_state', 'actor']
    search_fields = ['order__order_number', 'reason']
    ordering = ['-changed_at']

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
