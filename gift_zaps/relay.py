"""Relay subscriptions for zap receipts, with per-relay reconnect and backoff.

Each relay gets its own client and its own connect/subscribe/listen loop, so
a relay that is down or slow never affects the others. A failed or closed
connection is retried forever with exponential backoff.
"""
import asyncio
import logging
import re
from typing import Awaitable, Callable, Optional

from nostr_sdk import (
    Client,
    Filter,
    HandleNotification,
    Kind,
    PublicKey,
    RelayUrl,
    Timestamp,
)

from .models import KIND_ZAP_RECEIPT, ZapReceipt

logger = logging.getLogger(__name__)

LARGE_WATCH_LIST = 1000

_PUBKEY_RE = re.compile(r"^[a-f0-9]{64}$")

ReceiptCallback = Callable[[ZapReceipt, str], Awaitable[None]]


class RelayError(Exception):
    """Raised when relay operations fail."""

    pass


class _ReceiptHandler(HandleNotification):
    """Forwards relay events to the manager without blocking the SDK."""

    def __init__(self, manager: "RelaySubscriptionManager", relay_url: str):
        self._manager = manager
        self._relay_url = relay_url

    async def handle(self, relay_url, subscription_id, event):
        self._manager._on_relay_event(event, self._relay_url)
        return False

    async def handle_msg(self, relay_url, msg):
        return False


class RelaySubscriptionManager:
    """Keeps zap receipt subscriptions open on every configured relay.

    The same receipt is usually delivered once per relay; every delivery is
    passed to ``on_event`` in its own task and the callback is expected to
    deduplicate.

    Args:
        relay_urls: Relay WebSocket URLs to subscribe on
        on_event: Async callback receiving (receipt, relay_url)
        since: Ignore receipts created before this Unix timestamp
        io_timeout_s: Timeout for connecting and subscribing
        max_backoff_s: Maximum reconnect delay
        drain_timeout_s: How long stop() waits for in-flight callbacks
        client_factory: Creates one nostr_sdk Client per relay

    Example:
        >>> manager = RelaySubscriptionManager(
        ...     ["wss://relay1.com", "wss://relay2.com"],
        ...     on_event=processor.handle,
        ...     since=1763769600,
        ... )
        >>> await manager.start([service_pubkey, *user_pubkeys])
        >>> await manager.stop()
    """

    def __init__(
        self,
        relay_urls: list[str],
        on_event: ReceiptCallback,
        since: int = 0,
        io_timeout_s: float = 10.0,
        max_backoff_s: float = 60.0,
        drain_timeout_s: float = 5.0,
        client_factory: Callable[[], Client] = Client,
    ):
        if not relay_urls:
            raise RelayError("Must provide at least one relay URL")

        self.relay_urls = list(dict.fromkeys(relay_urls))
        self.since = since
        self.io_timeout_s = io_timeout_s
        self.max_backoff_s = max_backoff_s
        self.drain_timeout_s = drain_timeout_s
        self._on_event = on_event
        self._client_factory = client_factory

        self._running = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._relay_tasks: dict[str, asyncio.Task] = {}
        self._clients: dict[str, Client] = {}
        self._connected: set[str] = set()
        self._inflight: set[asyncio.Task] = set()

        # Backoff tracking: relay_url -> consecutive failures
        self._failure_counts: dict[str, int] = {}

    def is_running(self) -> bool:
        return self._running

    def connected_relays(self) -> list[str]:
        """Relays with a live subscription."""
        return [url for url in self.relay_urls if url in self._connected]

    def watch_list(self, pubkeys: list[str]) -> list[str]:
        """Normalize pubkeys for the ``#p`` filter: lowercase, valid, unique."""
        result = []
        for pubkey in pubkeys:
            key = pubkey.strip().lower()
            if not _PUBKEY_RE.match(key):
                logger.warning("Skipping malformed pubkey in watch list: %r", pubkey)
                continue
            result.append(key)
        result = list(dict.fromkeys(result))
        if len(result) > LARGE_WATCH_LIST:
            logger.warning(
                "Listening for %d pubkeys, this might be too large for some relays",
                len(result),
            )
        return result

    def build_filter(self, pubkeys: list[str]) -> Filter:
        """Zap receipts tagging any watched pubkey, since the deployment floor."""
        return (
            Filter()
            .kind(Kind(KIND_ZAP_RECEIPT))
            .pubkeys([PublicKey.parse(p) for p in pubkeys])
            .since(Timestamp.from_secs(self.since))
        )

    async def start(self, watched_pubkeys: list[str]) -> None:
        """Open a subscription on every relay.

        Returns once the per-relay loops are scheduled; connections are
        established in the background.
        """
        if self._running:
            logger.warning("Relay subscriptions already running")
            return

        pubkeys = self.watch_list(watched_pubkeys)
        if not pubkeys:
            raise RelayError("Watch list is empty")
        zap_filter = self.build_filter(pubkeys)

        self._loop = asyncio.get_running_loop()
        self._running = True
        for url in self.relay_urls:
            self._relay_tasks[url] = asyncio.create_task(
                self._run_relay(url, zap_filter), name=f"relay:{url}")
        logger.info(
            "Subscribing to zap receipts for %d pubkeys on %d relays: %s",
            len(pubkeys), len(self.relay_urls), ", ".join(self.relay_urls),
        )

    async def stop(self) -> None:
        """Close all relay connections.

        Safe to call more than once, and before start().
        """
        if not self._running and not self._relay_tasks:
            return
        self._running = False
        logger.info("Stopping relay subscriptions...")

        for url, client in list(self._clients.items()):
            await self._disconnect(url, client)

        tasks = list(self._relay_tasks.values())
        self._relay_tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        if self._inflight:
            pending = list(self._inflight)
            _, still_running = await asyncio.wait(pending, timeout=self.drain_timeout_s)
            for task in still_running:
                task.cancel()
            await asyncio.gather(*still_running, return_exceptions=True)

        self._connected.clear()
        logger.info("Relay subscriptions stopped")

    # ── Per-relay loop ──────────────────────────────────────────────

    async def _run_relay(self, url: str, zap_filter: Filter) -> None:
        while self._running:
            try:
                await self._connect_and_listen(url, zap_filter)
                if self._running:
                    logger.warning("Notification stream from %s ended", url)
                    self._record_failure(url)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._record_failure(url)
                logger.warning("Relay %s failed: %s", url, e)

            if not self._running:
                break
            delay = self._get_backoff_delay(url)
            logger.info("Reconnecting to %s in %.1fs", url, delay)
            await asyncio.sleep(delay)

    async def _connect_and_listen(self, url: str, zap_filter: Filter) -> None:
        client = self._client_factory()
        self._clients[url] = client
        try:
            try:
                await client.add_relay(RelayUrl.parse(url))
                await asyncio.wait_for(client.connect(), timeout=self.io_timeout_s)
                await asyncio.wait_for(client.subscribe(zap_filter), timeout=self.io_timeout_s)
            except asyncio.TimeoutError as e:
                raise RelayError(f"Timed out connecting to {url}") from e

            self._record_success(url)
            self._connected.add(url)
            logger.info("Subscribed to zap receipts on %s", url)

            await client.handle_notifications(_ReceiptHandler(self, url))
        finally:
            self._connected.discard(url)
            if self._clients.get(url) is client:
                del self._clients[url]
                await self._disconnect(url, client)

    async def _disconnect(self, url: str, client: Client) -> None:
        self._clients.pop(url, None)
        try:
            await client.disconnect()
        except Exception as e:
            logger.debug("Error disconnecting from %s: %s", url, e)

    # ── Event delivery ──────────────────────────────────────────────

    def _on_relay_event(self, event, relay_url: str) -> None:
        try:
            receipt = ZapReceipt.from_event(event)
        except Exception as e:
            logger.warning("Unreadable event from %s: %s", relay_url, e)
            return
        if receipt.kind != KIND_ZAP_RECEIPT:
            logger.debug("Ignoring kind %d event %s from %s", receipt.kind, receipt.id[:16], relay_url)
            return
        if self._loop is None or not self._running:
            return
        self._loop.call_soon_threadsafe(self._spawn, receipt, relay_url)

    def _spawn(self, receipt: ZapReceipt, relay_url: str) -> None:
        task = asyncio.ensure_future(self._deliver(receipt, relay_url))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _deliver(self, receipt: ZapReceipt, relay_url: str) -> None:
        try:
            await self._on_event(receipt, relay_url)
        except Exception as e:
            logger.error("Error handling zap event %s from %s: %s", receipt.id[:16], relay_url, e)

    # ── Backoff ─────────────────────────────────────────────────────

    def _get_backoff_delay(self, relay_url: str) -> float:
        """Reconnect delay: min(2^failures, max_backoff_s)."""
        failures = self._failure_counts.get(relay_url, 0)
        return min(2 ** failures, self.max_backoff_s)

    def _record_failure(self, relay_url: str) -> None:
        self._failure_counts[relay_url] = self._failure_counts.get(relay_url, 0) + 1

    def _record_success(self, relay_url: str) -> None:
        self._failure_counts[relay_url] = 0
