"""Best-effort public confirmation of gifted subscriptions.

After a gift is applied, a signed kind 1 note congratulating the recipient
and crediting the sender is published to the zap request's relay hints plus
the operator relays. Failures are logged and never affect the ledger.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Protocol

from nostr_sdk import Client, Event, EventBuilder, Keys, Kind, PublicKey, RelayUrl, Tag

from .models import GiftPayload, KIND_TEXT_NOTE
from .relay import RelayError
from .tiers import tier_display_name, tier_for_subscription_type

logger = logging.getLogger(__name__)


class PublishClient(Protocol):
    async def publish(self, relay_urls: list[str], event: Event) -> dict[str, Exception | None]:
        """Publish to each relay; map relay URL to its error, or None on success."""
        ...


@dataclass
class PublishSummary:
    """Per-relay outcome of one confirmation note."""
    event_id: str
    succeeded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class NostrPublishClient:
    """Publishes an event to each relay over its own short-lived connection.

    Args:
        timeout_s: Bound on connecting to and sending to a single relay
    """

    def __init__(self, timeout_s: float = 10.0):
        self.timeout_s = timeout_s

    async def _publish_one(self, relay_url: str, event: Event) -> None:
        client = Client()
        try:
            await client.add_relay(RelayUrl.parse(relay_url))
            await asyncio.wait_for(client.connect(), timeout=self.timeout_s)
            output = await asyncio.wait_for(client.send_event(event), timeout=self.timeout_s)
            if not output.success:
                raise RelayError(f"{relay_url} did not accept event: {output.failed}")
        finally:
            try:
                await client.disconnect()
            except Exception as e:
                logger.debug("Error disconnecting from %s: %s", relay_url, e)

    async def publish(self, relay_urls: list[str], event: Event) -> dict[str, Exception | None]:
        results = await asyncio.gather(
            *(self._publish_one(url, event) for url in relay_urls),
            return_exceptions=True,
        )
        return dict(zip(relay_urls, results))


def merge_relays(*relay_lists: list[str]) -> list[str]:
    """Concatenate relay lists, dropping duplicates and keeping first occurrence order."""
    seen = set()
    merged = []
    for relays in relay_lists:
        for url in relays:
            if url and url not in seen:
                seen.add(url)
                merged.append(url)
    return merged


def _nostr_link(pubkey_hex: str) -> str:
    try:
        return f"nostr:{PublicKey.parse(pubkey_hex).to_bech32()}"
    except Exception:
        return f"nostr:{pubkey_hex}"


class NotificationPublisher:
    """Builds, signs and broadcasts gift confirmation notes.

    Args:
        keys: Signing keys; None disables publishing
        client: Relay publish client
        operator_relays: Relays that always receive the note
        premium_url: Where recipients set up their username
    """

    def __init__(
        self,
        keys: Keys | None,
        client: PublishClient,
        operator_relays: list[str],
        premium_url: str,
    ):
        self._keys = keys
        self._client = client
        self.operator_relays = list(operator_relays)
        self.premium_url = premium_url

    def relay_targets(self, request_relays: list[str]) -> list[str]:
        return merge_relays(request_relays, self.operator_relays)

    def compose_content(self, recipient_pubkey: str, gifted_by: str, tier: str, months: int) -> str:
        duration = "1 month" if months == 1 else f"{months} months"
        return (
            f"\U0001F381 Congratulations {_nostr_link(recipient_pubkey)} ! "
            f"You've received a {tier_display_name(tier)} subscription as a gift!\n"
            f"\n"
            f"Duration: {duration}\n"
            f"Gifted by: {_nostr_link(gifted_by)}\n"
            f"\n"
            f"Your premium subscription is now active! As a premium member, "
            f"you can claim your unique username.\n"
            f"\n"
            f"\U0001F449 Set up your username here: {self.premium_url}\n"
            f"\n"
            f"Enjoy your premium features! \U0001F680"
        )

    def build_event(self, recipient_pubkey: str, gifted_by: str, tier: str, months: int) -> Event:
        """Sign the confirmation note. Requires keys."""
        content = self.compose_content(recipient_pubkey, gifted_by, tier, months)
        tags = [
            Tag.parse(["p", recipient_pubkey]),
            Tag.parse(["p", gifted_by]),
        ]
        return EventBuilder(Kind(KIND_TEXT_NOTE), content).tags(tags).sign_with_keys(self._keys)

    async def publish_gift(
        self,
        gift: GiftPayload,
        gifted_by: str,
        request_relays: list[str],
    ) -> PublishSummary | None:
        """Publish the confirmation for an applied gift.

        Never raises.

        Returns:
            Per-relay summary, or None if nothing was published
        """
        if self._keys is None:
            logger.warning("Notification signing key not configured, skipping gift notification")
            return None

        try:
            tier = tier_for_subscription_type(gift.subscription_type)
            event = self.build_event(gift.recipient_pubkey, gifted_by, tier, gift.months)
            relays = self.relay_targets(request_relays)
            logger.info("Publishing gift notification to %d relays: %s", len(relays), ", ".join(relays))

            results = await self._client.publish(relays, event)
        except Exception as e:
            logger.error("Failed to post gift notification: %s", e)
            return None

        summary = PublishSummary(event_id=event.id().to_hex())
        for url in relays:
            error = results.get(url, RelayError("no result"))
            if error is None:
                summary.succeeded.append(url)
            else:
                summary.failed.append(url)
                logger.warning("Failed to publish to relay %s: %s", url, error)

        logger.info(
            "Posted gift notification for %s (event %s) to %d relays (%d succeeded, %d failed)",
            gift.recipient_pubkey[:16], summary.event_id[:16], len(relays),
            len(summary.succeeded), len(summary.failed),
        )
        return summary
