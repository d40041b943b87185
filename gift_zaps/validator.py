"""Payment validation: does a zap cover the price of the gifted tier?"""
import logging
from dataclasses import dataclass
from decimal import Decimal

from .price import PriceOracle, PriceUnavailable
from .tiers import DEFAULT_TIERS, TierDetails, tier_for_subscription_type

logger = logging.getLogger(__name__)

SATS_PER_BTC = Decimal(100_000_000)
DEFAULT_TOLERANCE = 0.1


@dataclass
class ValidationResult:
    """Outcome of validating one gift payment."""
    is_valid: bool
    amount_sats: int
    expected_cents: int | None = None
    estimated_cents: Decimal | None = None
    minimum_cents: Decimal | None = None
    message: str | None = None
    price_unavailable: bool = False


class PaymentValidator:
    """Checks gift payments against the tier price list and the BTC rate.

    A payment is accepted if its USD value is at least ``1 - tolerance`` of
    the price; the tolerance absorbs lag between the payer's rate and ours.

    Args:
        oracle: Source of the USD/BTC rate
        tiers: Tier table with monthly prices in cents
        tolerance: Accepted shortfall as a fraction of the price
    """

    def __init__(
        self,
        oracle: PriceOracle,
        tiers: dict[str, TierDetails] | None = None,
        tolerance: float = DEFAULT_TOLERANCE,
    ):
        self._oracle = oracle
        self._tiers = tiers or DEFAULT_TIERS
        self._min_ratio = Decimal(1) - Decimal(str(tolerance))

    async def validate(
        self,
        subscription_type: str,
        months: int,
        amount_millisats: int,
    ) -> ValidationResult:
        """Validate a payment for ``months`` of ``subscription_type``.

        Never raises for a missing price: the payment is rejected instead,
        with ``price_unavailable`` set.
        """
        amount_sats = amount_millisats // 1000
        tier = tier_for_subscription_type(subscription_type)
        details = self._tiers.get(tier)
        monthly = details.monthly_price_cents if details else None
        if monthly is None:
            logger.error("No pricing configuration for tier: %s", tier)
            return ValidationResult(
                is_valid=False,
                amount_sats=amount_sats,
                message=f"No pricing configured for tier {tier}",
            )

        expected_cents = monthly * months

        try:
            rate = await self._oracle.get()
        except PriceUnavailable as e:
            logger.error("Failed to fetch BTC price for validation: %s", e)
            return ValidationResult(
                is_valid=False,
                amount_sats=amount_sats,
                expected_cents=expected_cents,
                message="BTC price unavailable, cannot validate payment",
                price_unavailable=True,
            )

        # 1 sat = rate * 100 / 100,000,000 cents
        cents_per_sat = Decimal(str(rate)) * 100 / SATS_PER_BTC
        estimated_cents = Decimal(amount_sats) * cents_per_sat
        minimum_cents = Decimal(expected_cents) * self._min_ratio

        logger.info(
            "Payment validation: expected %d cents, received ~%.2f cents "
            "(%d sats at $%s/BTC)",
            expected_cents, estimated_cents, amount_sats, f"{rate:,.2f}",
        )

        if estimated_cents < minimum_cents:
            shortfall = Decimal(expected_cents) - estimated_cents
            return ValidationResult(
                is_valid=False,
                amount_sats=amount_sats,
                expected_cents=expected_cents,
                estimated_cents=estimated_cents,
                minimum_cents=minimum_cents,
                message=(
                    f"Underpaid by ~{shortfall:.2f} cents (expected {expected_cents} cents, "
                    f"minimum {minimum_cents:.2f} cents, received {estimated_cents:.2f} cents)"
                ),
            )

        return ValidationResult(
            is_valid=True,
            amount_sats=amount_sats,
            expected_cents=expected_cents,
            estimated_cents=estimated_cents,
            minimum_cents=minimum_cents,
        )
