"""Re-export all models so Base.metadata sees them."""

from storefront.db.models.order import Order
from storefront.db.models.product import Product
from storefront.db.models.webhook_log import WebhookLog

__all__ = [
    "Order",
    "Product",
    "WebhookLog",
]
