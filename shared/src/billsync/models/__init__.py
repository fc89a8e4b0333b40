"""SQLAlchemy ORM models for the billing sync service."""

from billsync.models.base import Base
from billsync.models.analytics_event import AnalyticsEvent
from billsync.models.catalog_product import CatalogProduct
from billsync.models.promo_code import PromoCode
from billsync.models.promo_redemption import PromoRedemption
from billsync.models.stripe_product_mapping import StripeProductMapping
from billsync.models.subdomain import Subdomain
from billsync.models.subscription import Subscription
from billsync.models.sync_fence import SyncFence
from billsync.models.user import User
from billsync.models.webhook_retry import WebhookRetry

__all__ = [
    "Base",
    "AnalyticsEvent",
    "CatalogProduct",
    "PromoCode",
    "PromoRedemption",
    "StripeProductMapping",
    "Subdomain",
    "Subscription",
    "SyncFence",
    "User",
    "WebhookRetry",
]
