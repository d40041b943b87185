"""Service process: wires the stores, oracle and processor to the relays."""
import argparse
import asyncio
import logging
import signal

from nostr_sdk import Client

from .config import ConfigError, ZapServiceConfig, load_config
from .dedupe import DedupeCache
from .ledger import SubscriptionLedger
from .log import setup_logging
from .parser import ZapEventParser
from .price import HttpPriceFeed, PriceFeed, PriceOracle, PriceUnavailable
from .processor import GiftZapProcessor, ZapNotifier
from .publisher import NostrPublishClient, NotificationPublisher, PublishClient
from .relay import RelaySubscriptionManager
from .store import SqliteAccountStore, SqliteProcessedZapStore, ZapDB
from .validator import PaymentValidator

logger = logging.getLogger(__name__)


class ZapService:
    """Long-running gift zap listener.

    Build with :meth:`from_config`; tests pass fakes for the network pieces.
    """

    def __init__(
        self,
        config: ZapServiceConfig,
        db: ZapDB,
        accounts: SqliteAccountStore,
        oracle: PriceOracle,
        processor: GiftZapProcessor,
        relays: RelaySubscriptionManager,
    ):
        self.config = config
        self.db = db
        self.accounts = accounts
        self.oracle = oracle
        self.processor = processor
        self.relays = relays
        self._stop_event: asyncio.Event | None = None
        self._stopped = False

    @classmethod
    def from_config(
        cls,
        config: ZapServiceConfig,
        price_feed: PriceFeed | None = None,
        publish_client: PublishClient | None = None,
        notifier: ZapNotifier | None = None,
        client_factory=Client,
    ) -> "ZapService":
        """Assemble the service from configuration.

        Raises:
            ConfigError: If the signing key cannot be parsed
        """
        tiers = config.tiers()
        db = ZapDB(config.db_path)
        accounts = SqliteAccountStore(db)
        processed = SqliteProcessedZapStore(db)

        feed = price_feed or HttpPriceFeed(config.price_url, timeout=config.price_timeout_s)
        oracle = PriceOracle(feed, ttl_seconds=config.price_ttl_seconds)

        ledger = SubscriptionLedger(
            accounts, processed, tiers=tiers,
            claim_lease_ms=config.claim_lease_seconds * 1000,
            transaction=db.transaction,
        )
        publisher = NotificationPublisher(
            keys=config.notification_keys(),
            client=publish_client or NostrPublishClient(timeout_s=config.io_timeout_s),
            operator_relays=config.operator_relays,
            premium_url=config.premium_url,
        )
        processor = GiftZapProcessor(
            parser=ZapEventParser(config.service_pubkey),
            validator=PaymentValidator(oracle, tiers=tiers, tolerance=config.payment_tolerance),
            ledger=ledger,
            publisher=publisher,
            notifier=notifier,
            dedupe=DedupeCache(),
        )
        relays = RelaySubscriptionManager(
            config.relay_urls,
            on_event=processor.handle,
            since=config.since,
            io_timeout_s=config.io_timeout_s,
            max_backoff_s=config.max_backoff_s,
            client_factory=client_factory,
        )
        return cls(config, db, accounts, oracle, processor, relays)

    def watch_list(self) -> list[str]:
        """Service identity, configured extras, then every known account."""
        pubkeys = [self.config.service_pubkey]
        pubkeys.extend(self.config.watched_pubkeys)
        pubkeys.extend(self.accounts.all_pubkeys())
        return pubkeys

    async def start(self) -> None:
        """Warm the price cache and open the relay subscriptions."""
        try:
            await self.oracle.get()
        except PriceUnavailable as e:
            logger.warning("Initial BTC rate fetch failed, will retry on first gift: %s", e)

        pubkeys = await asyncio.to_thread(self.watch_list)
        logger.info("Starting zap service for %d watched pubkeys", len(pubkeys))
        await self.relays.start(pubkeys)

    async def run(self) -> None:
        """Start, then block until stop() is called or SIGINT/SIGTERM arrives."""
        self._stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._stop_event.set)
                installed.append(sig)
            except (NotImplementedError, RuntimeError):
                # Not available on this platform or outside the main thread
                pass

        try:
            await self.start()
            await self._stop_event.wait()
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)
            await self.stop()

    async def stop(self) -> None:
        """Close relay connections and the database. Safe to call repeatedly."""
        if self._stopped:
            return
        self._stopped = True
        if self._stop_event is not None:
            self._stop_event.set()
        await self.relays.stop()
        self.db.close()
        logger.info("Zap service stopped")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="gift_zaps",
        description="Listen for gift subscription zaps and apply them to accounts.",
    )
    parser.add_argument("--config", help="YAML config file (env vars override it)")
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        setup_logging()
        logger.error("Invalid configuration: %s", e)
        return 2

    setup_logging(config.log_level)
    try:
        service = ZapService.from_config(config)
    except ConfigError as e:
        logger.error("Invalid configuration: %s", e)
        return 2

    asyncio.run(service.run())
    return 0
