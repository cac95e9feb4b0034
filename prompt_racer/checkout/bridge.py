"""
Checkout bridge between Stripe and the credit ledger.

Creates payment sessions for credit packs and grants credits once a
payment is confirmed. Payment authenticity is established upstream.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import stripe

from prompt_racer.core.credits import CreditRouter, Identity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PricingTier:
    """Credit pack sold at a fixed price."""
    name: str
    display_name: str
    amount_cents: int
    credits: int

    @property
    def amount(self) -> float:
        return self.amount_cents / 100


@dataclass(frozen=True)
class CheckoutSession:
    """Stripe session the client is redirected to."""
    session_id: str
    url: Optional[str]


# Fixed pricing - no dynamic fetching
PRICING_TIERS: Dict[str, PricingTier] = {
    "starter": PricingTier("starter", "Starter Pack", 299, 10),
    "value": PricingTier("value", "Value Pack", 499, 25),
    "unlimited": PricingTier("unlimited", "24hr Unlimited", 999, 999),
}


def get_tier(name: str) -> PricingTier:
    """Get a pricing tier.

    Raises:
        ValueError: If tier is not offered
    """
    if name not in PRICING_TIERS:
        raise ValueError(f"Invalid tier: {name}")
    return PRICING_TIERS[name]


def create_checkout_session(
    tier_name: str,
    origin: str,
    secret_key: Optional[str],
    account_id: Optional[str] = None,
    client: Any = stripe
) -> CheckoutSession:
    """Create a Stripe Checkout session for a credit pack.

    Args:
        tier_name: Pricing tier to buy
        origin: Site origin used for the success and cancel redirects
        secret_key: Stripe secret key
        account_id: Account to credit after payment, if signed in
        client: Stripe module or a stand-in with the same interface

    Returns:
        CheckoutSession with the session id and redirect URL

    Raises:
        ValueError: If the tier is unknown or Stripe is not configured
        stripe.StripeError: Propagated without modification
    """
    tier = get_tier(tier_name)
    if not secret_key:
        raise ValueError("STRIPE_SECRET_KEY not configured")

    success_url = f"{origin}?success=true&credits={tier.credits}"
    if account_id:
        success_url += f"&userId={account_id}"

    session = client.checkout.Session.create(
        api_key=secret_key,
        payment_method_types=["card"],
        line_items=[{
            "price_data": {
                "currency": "usd",
                "product_data": {
                    "name": tier.display_name,
                    "description": f"{tier.credits} AI model races",
                },
                "unit_amount": tier.amount_cents,
            },
            "quantity": 1,
        }],
        mode="payment",
        success_url=success_url,
        cancel_url=f"{origin}?canceled=true",
        metadata={
            "credits": str(tier.credits),
            "userId": account_id or "",
            "amount": f"{tier.amount:.2f}",
        },
    )
    return CheckoutSession(session_id=session.id, url=session.url)


def complete_purchase(
    router: CreditRouter,
    identity: Identity,
    credits: int,
    amount_paid: Optional[float] = None,
    payment_reference: Optional[str] = None
) -> int:
    """Grant purchased credits.

    Not deduplicated: calling twice for the same payment_reference grants
    twice.

    Returns:
        Balance after the grant
    """
    if isinstance(credits, bool) or not isinstance(credits, int) or credits <= 0:
        raise ValueError("Invalid credits amount")

    remaining = router.grant(identity, credits, {
        "amount_paid": amount_paid,
        "payment_reference": payment_reference,
    })
    logger.info("Purchase %s settled: %d credits", payment_reference or "<none>", credits)
    return remaining
