"""Per-event zap handling: dedupe, parse, route, validate, apply, record."""
import asyncio
import logging
from typing import Any, Protocol

from .dedupe import DedupeCache
from .ledger import ActivationError, SubscriptionLedger
from .models import (
    ParsedZap,
    PlainZap,
    STATUS_FAILED,
    STATUS_SUCCESS,
    STATUS_UNDERPAID,
    ZapReceipt,
)
from .parser import ZapEventParser
from .publisher import NotificationPublisher
from .tiers import tier_for_subscription_type
from .validator import PaymentValidator

logger = logging.getLogger(__name__)

# Outcomes returned by GiftZapProcessor.handle
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_DROPPED = "dropped"
OUTCOME_PLAIN = "plain"
OUTCOME_CLAIMED = "claimed"
OUTCOME_PRICE_UNAVAILABLE = "price_unavailable"
OUTCOME_UNDERPAID = STATUS_UNDERPAID
OUTCOME_FAILED = STATUS_FAILED
OUTCOME_SUCCESS = STATUS_SUCCESS
OUTCOME_ERROR = "error"


class ZapNotifier(Protocol):
    async def notify(self, zap: PlainZap) -> None:
        ...


def plain_zap_message(zap: PlainZap) -> dict[str, Any]:
    """Push payload for a plain zap."""
    return {
        "title": "Zap Received! ⚡",
        "body": f"You received {zap.amount_sats} sats{' from a fan' if zap.from_fan else ''}!",
        "url": zap.link,
        "data": {
            "type": "zap",
            "amount": zap.amount_sats,
            "sender": zap.sender_pubkey,
            "eventId": zap.event_id,
        },
    }


class LoggingZapNotifier:
    """Default notifier: logs the message a push integration would send."""

    async def notify(self, zap: PlainZap) -> None:
        message = plain_zap_message(zap)
        logger.info(
            "Zap notification for %s: %s (%s)",
            zap.recipient_pubkey[:16], message["body"], message["url"],
        )


class GiftZapProcessor:
    """Handles every zap receipt delivered by the relay subscriptions.

    Gift zaps are claimed, validated against the tier price, applied to the
    recipient's account and recorded exactly once, then confirmed publicly.
    Plain zaps go to the notifier. ``handle`` never raises, so one bad event
    cannot stop the listener.

    Args:
        parser: Receipt parser and gift/plain router
        validator: Payment validator
        ledger: Subscription ledger (blocking; called in a worker thread)
        publisher: Confirmation note publisher
        notifier: Receives plain zaps
        dedupe: In-memory cache of event ids with a final outcome
    """

    def __init__(
        self,
        parser: ZapEventParser,
        validator: PaymentValidator,
        ledger: SubscriptionLedger,
        publisher: NotificationPublisher,
        notifier: ZapNotifier | None = None,
        dedupe: DedupeCache | None = None,
    ):
        self._parser = parser
        self._validator = validator
        self._ledger = ledger
        self._publisher = publisher
        self._notifier = notifier or LoggingZapNotifier()
        self._dedupe = dedupe if dedupe is not None else DedupeCache()

    async def handle(self, receipt: ZapReceipt, relay_url: str | None = None) -> str:
        """Process one delivered receipt.

        Returns:
            One of the ``OUTCOME_*`` labels
        """
        try:
            return await self._handle(receipt, relay_url)
        except Exception as e:
            logger.exception("Error processing zap event %s: %s", receipt.id[:16], e)
            return OUTCOME_ERROR

    async def _handle(self, receipt: ZapReceipt, relay_url: str | None) -> str:
        event_id = receipt.id
        if event_id in self._dedupe:
            logger.debug("Zap event %s already handled, skipping", event_id[:16])
            return OUTCOME_DUPLICATE

        if await asyncio.to_thread(self._ledger.is_processed, event_id):
            logger.info("Zap event %s already processed, skipping", event_id[:16])
            self._dedupe.mark_seen(event_id)
            return OUTCOME_DUPLICATE

        logger.info("Processing zap event %s from %s", event_id[:16], relay_url or "unknown relay")
        parsed = self._parser.parse(receipt)
        if parsed is None:
            self._dedupe.mark_seen(event_id)
            return OUTCOME_DROPPED

        if not parsed.is_gift:
            return await self._handle_plain(parsed.plain)
        return await self._handle_gift(parsed)

    async def _handle_plain(self, zap: PlainZap) -> str:
        # No await between the check and the mark: concurrent deliveries notify once
        if zap.event_id in self._dedupe:
            return OUTCOME_DUPLICATE
        self._dedupe.mark_seen(zap.event_id)
        try:
            await self._notifier.notify(zap)
        except Exception as e:
            logger.error("Error sending zap notification for %s: %s", zap.event_id[:16], e)
        return OUTCOME_PLAIN

    async def _handle_gift(self, parsed: ParsedZap) -> str:
        event_id = parsed.receipt.id
        gift = parsed.gift
        gifted_by = parsed.request.pubkey
        tier = tier_for_subscription_type(gift.subscription_type)

        logger.info(
            "Gift subscription: %s for %d month(s) to %s from %s",
            gift.subscription_type, gift.months,
            gift.recipient_pubkey[:16], gifted_by[:16],
        )

        if not await asyncio.to_thread(self._ledger.claim, event_id):
            return OUTCOME_CLAIMED

        recorded = False
        applied = False
        try:
            validation = await self._validator.validate(
                gift.subscription_type, gift.months, parsed.amount_millisats)

            if validation.price_unavailable:
                logger.warning(
                    "Cannot validate gift zap %s without a BTC rate, leaving it for redelivery",
                    event_id[:16],
                )
                return OUTCOME_PRICE_UNAVAILABLE

            async def record(status: str, message: str | None = None) -> None:
                nonlocal recorded
                await asyncio.to_thread(
                    self._ledger.record_outcome,
                    event_id, gift.recipient_pubkey, gifted_by, tier,
                    gift.months, validation.amount_sats, status, message,
                )
                recorded = True
                self._dedupe.mark_seen(event_id)

            if not validation.is_valid:
                logger.warning(
                    "Payment validation failed for zap %s: %d sats received. %s",
                    event_id[:16], validation.amount_sats, validation.message,
                )
                await record(STATUS_UNDERPAID, validation.message)
                return OUTCOME_UNDERPAID

            try:
                await asyncio.to_thread(
                    self._ledger.apply_gift, gift.recipient_pubkey, tier, gift.months, event_id)
                applied = True
            except ActivationError as e:
                logger.error("Failed to activate gift subscription for zap %s: %s", event_id[:16], e)
                await record(STATUS_FAILED, str(e))
                return OUTCOME_FAILED

            await record(STATUS_SUCCESS)
            logger.info(
                "Activated %s for %s: %d month(s), %d sats, gifted by %s, zap event %s",
                tier, gift.recipient_pubkey[:16], gift.months,
                validation.amount_sats, gifted_by[:16], event_id[:16],
            )
        finally:
            # An applied gift keeps its claim, pinned as applied, even if recording it failed
            if not recorded and not applied:
                await asyncio.to_thread(self._ledger.release, event_id)

        await self._publisher.publish_gift(gift, gifted_by, parsed.request.relays)
        return OUTCOME_SUCCESS
