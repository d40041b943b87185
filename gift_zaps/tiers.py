"""Subscription tiers: pricing and entitlements."""
from dataclasses import dataclass

from .models import (
    Entitlements,
    SUBSCRIPTION_PREMIUM,
    SUBSCRIPTION_PREMIUM_PLUS,
)

TIER_FREE = "free"
TIER_PREMIUM = "premium"
TIER_PREMIUM_PLUS = "premium_plus"

BILLING_MONTHLY = "monthly"
BILLING_QUARTERLY = "quarterly"
BILLING_YEARLY = "yearly"

FEATURE_LABELS = {
    "BASIC_WEBPUSH": "Basic web push notifications",
    "COMMUNITY_SUPPORT": "Community support",
    "ADVANCED_FILTERING": "Advanced notification filtering",
    "PRIORITY_SUPPORT": "Priority support",
    "CUSTOM_TEMPLATES": "Custom notification templates",
    "API_ACCESS": "API access",
    "WEBHOOK": "Webhook integrations",
    "ANALYTICS": "Advanced analytics",
}

BASIC_FEATURES = ["BASIC_WEBPUSH", "COMMUNITY_SUPPORT"]
PREMIUM_FEATURES = BASIC_FEATURES + [
    "ADVANCED_FILTERING",
    "PRIORITY_SUPPORT",
    "CUSTOM_TEMPLATES",
]
PREMIUM_PLUS_FEATURES = PREMIUM_FEATURES + ["API_ACCESS", "WEBHOOK", "ANALYTICS"]


@dataclass
class TierDetails:
    """Pricing (cents, USD) and entitlements for one tier."""
    tier: str
    notifications_per_day: int
    features: list[str]
    pricing: dict[str, int] | None = None   # billing cycle -> price in cents

    @property
    def monthly_price_cents(self) -> int | None:
        if not self.pricing:
            return None
        return self.pricing.get(BILLING_MONTHLY)

    def entitlements(self) -> Entitlements:
        """A fresh entitlement snapshot for this tier."""
        return Entitlements(
            notifications_per_day=self.notifications_per_day,
            features=list(self.features),
        )


DEFAULT_TIERS: dict[str, TierDetails] = {
    TIER_FREE: TierDetails(
        tier=TIER_FREE,
        notifications_per_day=5,
        features=BASIC_FEATURES,
    ),
    TIER_PREMIUM: TierDetails(
        tier=TIER_PREMIUM,
        notifications_per_day=50,
        features=PREMIUM_FEATURES,
        pricing={
            BILLING_MONTHLY: 1000,
            BILLING_QUARTERLY: 2500,
            BILLING_YEARLY: 9000,
        },
    ),
    TIER_PREMIUM_PLUS: TierDetails(
        tier=TIER_PREMIUM_PLUS,
        notifications_per_day=500,
        features=PREMIUM_PLUS_FEATURES,
        pricing={
            BILLING_MONTHLY: 2000,
            BILLING_QUARTERLY: 5000,
            BILLING_YEARLY: 18000,
        },
    ),
}

_SUBSCRIPTION_TYPE_TO_TIER = {
    SUBSCRIPTION_PREMIUM: TIER_PREMIUM,
    SUBSCRIPTION_PREMIUM_PLUS: TIER_PREMIUM_PLUS,
}

_TIER_DISPLAY_NAMES = {
    TIER_FREE: "Free",
    TIER_PREMIUM: "Premium",
    TIER_PREMIUM_PLUS: "Premium+",
}


def tier_for_subscription_type(subscription_type: str) -> str:
    """Map a gift's subscription type ("premium-plus") to a tier ("premium_plus").

    Raises:
        KeyError: If the subscription type is unknown
    """
    return _SUBSCRIPTION_TYPE_TO_TIER[subscription_type]


def tier_display_name(tier: str) -> str:
    return _TIER_DISPLAY_NAMES.get(tier, tier)


def with_monthly_prices(
    prices: dict[str, int],
    tiers: dict[str, TierDetails] | None = None,
) -> dict[str, TierDetails]:
    """Copy of a tier table with monthly prices (cents) overridden per tier."""
    base = tiers or DEFAULT_TIERS
    result = {}
    for name, details in base.items():
        pricing = dict(details.pricing) if details.pricing else None
        if name in prices:
            pricing = pricing or {}
            pricing[BILLING_MONTHLY] = int(prices[name])
        result[name] = TierDetails(
            tier=details.tier,
            notifications_per_day=details.notifications_per_day,
            features=list(details.features),
            pricing=pricing,
        )
    return result
