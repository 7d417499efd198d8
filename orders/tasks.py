"""
Celery tasks for order processing.

Tasks:
    - publish_order_event: Fan an order event out to kitchen/admin displays
    - generate_daily_order_report: Log the daily order summary
"""
import json
import logging
from datetime import timedelta

from celery import shared_task
from django.conf import settings
from django.utils import timezone

from core.redis_client import get_redis_client

logger = logging.getLogger(__name__)

ORDER_CREATED = 'order_created'
ORDER_UPDATED = 'order_updated'
STATE_CHANGED = 'state_changed'


@shared_task(
    bind=True,
    max_retries=3,
    default_retry_delay=5,
    retry_backoff=True
)
def publish_order_event(self, event: str, payload: dict):
    """
    Publish an order event on every configured Redis channel.

    Delivery to connected displays belongs to whoever subscribes to the
    channels; this task only publishes.

    Args:
        event: Event name (order_created, order_updated, state_changed)
        payload: JSON-serializable event data

    Returns:
        Dict with the number of subscribers reached per channel
    """
    client = get_redis_client()
    if client is None:
        logger.warning(f"Redis unavailable, retrying {event} event")
        raise self.retry()

    message = json.dumps({
        'event': event,
        'data': payload,
        'published_at': timezone.now().isoformat(),
    })
    receivers = {}
    for channel in settings.PIZZERIA['EVENT_CHANNELS']:
        receivers[channel] = client.publish(channel, message)

    logger.info(f"Published {event} for order {payload.get('order_id')}: {receivers}")
    return {'status': 'published', 'event': event, 'receivers': receivers}


@shared_task
def generate_daily_order_report(day: str = None):
    """
    Generate daily order statistics report.

    Can be scheduled via Celery Beat for daily execution. Defaults to
    yesterday.
    """
    from datetime import date
    from orders.services import OrderService

    target = date.fromisoformat(day) if day else timezone.localdate() - timedelta(days=1)
    stats = OrderService().daily_summary(target)

    report = f"""
    ===============================================
    DAILY ORDER REPORT - {stats['date']}
    ===============================================
    Total Orders: {stats['total_orders']}
    Delivered: {stats['delivered_orders']}
    Canceled: {stats['canceled_orders']}
    Delivered Revenue: ${stats['delivered_revenue']}
    Potential Revenue: ${stats['potential_revenue']}
    Avg Delivery: {stats['avg_delivery_minutes']} min
    ===============================================
    """

    logger.info(report)

    return {
        key: str(value) if not isinstance(value, (int, float, str)) else value
        for key, value in stats.items()
    }
