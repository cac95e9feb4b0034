"""
Checkout bridge for buying race credits.
"""

from .bridge import (
    PRICING_TIERS,
    CheckoutSession,
    PricingTier,
    complete_purchase,
    create_checkout_session,
    get_tier,
)

__all__ = [
    "PRICING_TIERS",
    "CheckoutSession",
    "PricingTier",
    "complete_purchase",
    "create_checkout_session",
    "get_tier",
]
