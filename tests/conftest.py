"""
Shared pytest fixtures for gift-zaps tests.

Provides temp-directory SQLite stores, a controllable clock, fake price feed
and publish client, and builders for zap receipts.
"""
import asyncio
import json
import os
import tempfile

import pytest
from nostr_sdk import Keys

from gift_zaps.config import DEFAULT_SERVICE_PUBKEY
from gift_zaps.dedupe import DedupeCache
from gift_zaps.ledger import SubscriptionLedger
from gift_zaps.models import DAY_MS, ZapReceipt
from gift_zaps.parser import ZapEventParser
from gift_zaps.price import PriceFeedError, PriceOracle
from gift_zaps.processor import GiftZapProcessor
from gift_zaps.publisher import NotificationPublisher
from gift_zaps.store import SqliteAccountStore, SqliteProcessedZapStore, ZapDB
from gift_zaps.validator import PaymentValidator

SERVICE_PUBKEY = DEFAULT_SERVICE_PUBKEY
RECIPIENT_PUBKEY = Keys.generate().public_key().to_hex()
SENDER_PUBKEY = Keys.generate().public_key().to_hex()
OTHER_PUBKEY = Keys.generate().public_key().to_hex()

BTC_USD = 100_000.0
OPERATOR_RELAYS = ["wss://operator1.example.com", "wss://operator2.example.com"]

# 2025-12-01T00:00:00Z
START_MS = 1764547200000


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, now: int = START_MS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance_days(self, days: float) -> None:
        self.now += int(days * DAY_MS)


class FakePriceFeed:
    """Price feed returning a fixed rate, or failing on demand."""

    def __init__(self, rate: float = BTC_USD):
        self.rate = rate
        self.fail = False
        self.calls = 0

    def get_usd_per_btc(self) -> float:
        self.calls += 1
        if self.fail:
            raise PriceFeedError("price feed down")
        return self.rate


class FakePublishClient:
    """Records publishes; relays in ``failing`` report an error."""

    def __init__(self, failing: set[str] | None = None):
        self.failing = failing or set()
        self.published = []

    async def publish(self, relay_urls, event):
        self.published.append((list(relay_urls), event))
        return {
            url: (ConnectionError(f"{url} refused") if url in self.failing else None)
            for url in relay_urls
        }


class FakeClient:
    """Stands in for nostr_sdk.Client.

    ``connect`` fails ``fail_connects`` times, and always fails once a relay in
    ``failing_relays`` has been added.
    """

    def __init__(self, fail_connects=0, failing_relays=()):
        self.fail_connects = fail_connects
        self.failing_relays = set(failing_relays)
        self.relays = []
        self.filters = []
        self.handler = None
        self.disconnected = False
        self._closed = asyncio.Event()

    async def add_relay(self, url):
        self.relays.append(url)

    async def connect(self):
        if self.failing_relays and any(str(url) in self.failing_relays for url in self.relays):
            raise ConnectionError("relay unreachable")
        if self.fail_connects:
            self.fail_connects -= 1
            raise ConnectionError("connection refused")

    async def subscribe(self, zap_filter):
        self.filters.append(zap_filter)

    async def handle_notifications(self, handler):
        self.handler = handler
        await self._closed.wait()

    async def disconnect(self):
        self.disconnected = True
        self._closed.set()


class FakeClientFactory:

    def __init__(self, fail_first_connects=0, failing_relays=()):
        self.clients = []
        self._fail = fail_first_connects
        self._failing_relays = failing_relays

    def __call__(self):
        client = FakeClient(fail_connects=self._fail, failing_relays=self._failing_relays)
        self._fail = 0
        self.clients.append(client)
        return client


def gift_content(recipient=RECIPIENT_PUBKEY, subscription_type="premium", months=1, message="Enjoy!"):
    lines = ["\U0001F381 Nostria Premium Gift", recipient, subscription_type, str(months)]
    if message:
        lines.append(message)
    return "\n".join(lines)


def zap_request(
    content="",
    recipients=(SERVICE_PUBKEY,),
    amount_msats=10_000_000,
    sender=SENDER_PUBKEY,
    relays=("wss://hint.example.com",),
    extra_tags=(),
    kind=9734,
) -> dict:
    tags = [["p", p] for p in recipients]
    if amount_msats is not None:
        tags.append(["amount", str(amount_msats)])
    if relays:
        tags.append(["relays", *relays])
    tags.extend([list(t) for t in extra_tags])
    return {
        "kind": kind,
        "pubkey": sender,
        "created_at": 1764547200,
        "content": content,
        "tags": tags,
    }


def zap_receipt(event_id, request, recipients=None, description=None, extra_tags=()) -> ZapReceipt:
    """A kind 9735 receipt embedding ``request`` in its description tag."""
    if recipients is None:
        recipients = [t[1] for t in request["tags"] if t[0] == "p"]
    tags = [["p", p] for p in recipients]
    tags.append(["bolt11", "lnbc100u1pexample"])
    tags.append(["description", description if description is not None else json.dumps(request)])
    tags.extend([list(t) for t in extra_tags])
    return ZapReceipt(
        id=event_id,
        pubkey="f" * 64,
        kind=9735,
        created_at=1764547200,
        tags=tags,
    )


def gift_receipt(event_id="e" * 64, recipient=RECIPIENT_PUBKEY, subscription_type="premium",
                 months=1, amount_msats=10_000_000, relays=("wss://hint.example.com",)) -> ZapReceipt:
    request = zap_request(
        content=gift_content(recipient, subscription_type, months),
        amount_msats=amount_msats,
        relays=relays,
    )
    return zap_receipt(event_id, request)


@pytest.fixture
def db():
    """Create a fresh ZapDB in a temp directory for each test."""
    with tempfile.TemporaryDirectory() as tmpdir:
        zap_db = ZapDB(os.path.join(tmpdir, "test_gift_zaps.db"))
        yield zap_db
        zap_db.close()


@pytest.fixture
def accounts(db):
    return SqliteAccountStore(db)


@pytest.fixture
def processed(db):
    return SqliteProcessedZapStore(db)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger(db, accounts, processed, clock):
    return SubscriptionLedger(accounts, processed, clock=clock, transaction=db.transaction)


@pytest.fixture
def price_feed():
    return FakePriceFeed()


@pytest.fixture
def oracle(price_feed):
    return PriceOracle(price_feed, ttl_seconds=600)


@pytest.fixture
def validator(oracle):
    return PaymentValidator(oracle)


@pytest.fixture
def publish_client():
    return FakePublishClient()


@pytest.fixture
def signing_keys():
    return Keys.generate()


@pytest.fixture
def publisher(signing_keys, publish_client):
    return NotificationPublisher(
        keys=signing_keys,
        client=publish_client,
        operator_relays=OPERATOR_RELAYS,
        premium_url="https://nostria.app/premium",
    )


class RecordingNotifier:
    def __init__(self):
        self.zaps = []

    async def notify(self, zap):
        self.zaps.append(zap)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def processor(validator, ledger, publisher, notifier):
    return GiftZapProcessor(
        parser=ZapEventParser(SERVICE_PUBKEY),
        validator=validator,
        ledger=ledger,
        publisher=publisher,
        notifier=notifier,
        dedupe=DedupeCache(),
    )
