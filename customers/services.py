"""
Customer services used by order creation and state changes.
"""
import logging
from decimal import Decimal
from typing import Dict, Optional

from django.db.models import Count, Max, Q, Sum

from core.exceptions import OrderValidationError
from .models import Customer

logger = logging.getLogger(__name__)

PROFILE_FIELDS = ('name', 'address', 'references', 'notes')


def resolve_customer(customer_id: Optional[int] = None,
                     customer_data: Optional[Dict] = None,
                     using: str = 'default') -> Optional[Customer]:
    """
    Find the customer an order belongs to.

    An explicit customer_id wins. Otherwise the customer is looked up by
    phone in customer_data, updating any profile fields supplied, or
    created when the phone is unknown. Returns None for walk-in orders.
    """
    if customer_id:
        try:
            return Customer.objects.using(using).get(id=customer_id)
        except Customer.DoesNotExist:
            raise OrderValidationError(f"Customer {customer_id} not found")

    if not customer_data:
        return None

    phone = (customer_data.get('phone') or '').strip()
    if not phone:
        raise OrderValidationError("customer_data.phone is required")

    profile = {
        field: customer_data[field]
        for field in PROFILE_FIELDS
        if customer_data.get(field)
    }
    customer, created = Customer.objects.using(using).get_or_create(
        phone=phone, defaults=profile
    )
    if created:
        logger.info(f"Created customer #{customer.id} ({phone})")
    elif profile:
        for field, value in profile.items():
            setattr(customer, field, value)
        customer.save(using=using, update_fields=list(profile) + ['updated_at'])
        logger.debug(f"Updated customer #{customer.id} profile: {sorted(profile)}")
    return customer


def refresh_customer_stats(customer_id: int, using: str = 'default') -> Optional[Customer]:
    """
    Recompute lifetime aggregates from the customer's orders.

    total_orders counts every order that was not canceled, total_spent sums
    delivered orders only.
    """
    from orders.models import Order

    stats = Order.objects.using(using).filter(customer_id=customer_id).aggregate(
        total_orders=Count('id', filter=~Q(state=Order.State.CANCELED)),
        total_spent=Sum('total', filter=Q(state=Order.State.DELIVERED)),
        last_order_at=Max('placed_at'),
    )
    updated = Customer.objects.using(using).filter(id=customer_id).update(
        total_orders=stats['total_orders'] or 0,
        total_spent=stats['total_spent'] or Decimal('0.00'),
        last_order_at=stats['last_order_at'],
    )
    if not updated:
        logger.warning(f"Customer #{customer_id} vanished before stats refresh")
        return None
    return Customer.objects.using(using).get(id=customer_id)
