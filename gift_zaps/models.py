"""Data models for the gift zap processor.

Wire events (zap receipts and the zap requests embedded in them), parsed gift
payloads, ledger records and the account state mutated by gift subscriptions.
"""
import json
import time
from dataclasses import dataclass, field, asdict
from typing import Any


# Event kind constants (NIP-57)
KIND_TEXT_NOTE = 1          # Public confirmation note
KIND_ZAP_REQUEST = 9734     # Zap request embedded in a receipt's description tag
KIND_ZAP_RECEIPT = 9735     # Zap receipt published by the LNURL provider

# Durations (milliseconds)
DAY_MS = 24 * 60 * 60 * 1000
MONTH_MS = 31 * DAY_MS      # A gifted month is approximated as 31 days

# Ledger statuses
STATUS_SUCCESS = "success"
STATUS_UNDERPAID = "underpaid"
STATUS_FAILED = "failed"
ZAP_STATUSES = (STATUS_SUCCESS, STATUS_UNDERPAID, STATUS_FAILED)

# Subscription types named in gift zap content
SUBSCRIPTION_PREMIUM = "premium"
SUBSCRIPTION_PREMIUM_PLUS = "premium-plus"
SUBSCRIPTION_TYPES = (SUBSCRIPTION_PREMIUM, SUBSCRIPTION_PREMIUM_PLUS)


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


def _tag_value(tags: list[list[str]], name: str) -> str | None:
    for tag in tags:
        if len(tag) >= 2 and tag[0] == name:
            return tag[1]
    return None


def _tag_values(tags: list[list[str]], name: str) -> list[str]:
    return [tag[1] for tag in tags if len(tag) >= 2 and tag[0] == name]


@dataclass
class ZapReceipt:
    """A kind 9735 zap receipt as delivered by a relay.

    Built once at the transport boundary so the rest of the pipeline never
    touches raw tag arrays.
    """
    id: str                  # Event id (hex, content-addressed)
    pubkey: str              # Signer of the receipt (LNURL provider)
    kind: int
    created_at: int          # Unix timestamp (seconds)
    tags: list[list[str]]
    content: str = ""

    @classmethod
    def from_event(cls, event) -> "ZapReceipt":
        """Build from a ``nostr_sdk.Event``."""
        return cls(
            id=event.id().to_hex(),
            pubkey=event.author().to_hex(),
            kind=event.kind().as_u16(),
            created_at=event.created_at().as_secs(),
            tags=[list(tag.as_vec()) for tag in event.tags().to_vec()],
            content=event.content(),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ZapReceipt":
        """Deserialize from a NIP-01 event dictionary."""
        return cls(
            id=data["id"],
            pubkey=data["pubkey"],
            kind=data["kind"],
            created_at=data.get("created_at", 0),
            tags=[list(t) for t in data.get("tags", [])],
            content=data.get("content", ""),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return asdict(self)

    def tag_value(self, name: str) -> str | None:
        """First value of the named tag, if present."""
        return _tag_value(self.tags, name)

    def tag_values(self, name: str) -> list[str]:
        """All values of the named tag."""
        return _tag_values(self.tags, name)

    @property
    def bolt11(self) -> str | None:
        return self.tag_value("bolt11")

    @property
    def description(self) -> str | None:
        return self.tag_value("description")

    @property
    def recipients(self) -> list[str]:
        """Recipient pubkeys (``p`` tags)."""
        return self.tag_values("p")

    @property
    def sender_hint(self) -> str | None:
        """Zap sender as copied into the receipt's ``P`` tag."""
        return self.tag_value("P")


@dataclass
class ZapRequest:
    """The kind 9734 zap request embedded in a receipt's description tag."""
    kind: int
    pubkey: str              # Sender of the zap
    tags: list[list[str]]
    content: str = ""
    created_at: int = 0
    id: str | None = None
    sig: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ZapRequest":
        """Deserialize from the decoded description JSON."""
        raw_tags = data.get("tags")
        if not isinstance(raw_tags, list):
            raw_tags = []
        tags = [
            [str(v) for v in tag]
            for tag in raw_tags
            if isinstance(tag, list)
        ]
        kind = data.get("kind")
        return cls(
            kind=kind if isinstance(kind, int) else -1,
            pubkey=str(data.get("pubkey", "")),
            tags=tags,
            content=data.get("content") if isinstance(data.get("content"), str) else "",
            created_at=data.get("created_at", 0) or 0,
            id=data.get("id"),
            sig=data.get("sig"),
        )

    def tag_value(self, name: str) -> str | None:
        return _tag_value(self.tags, name)

    @property
    def amount_millisats(self) -> int | None:
        """Requested amount from the ``amount`` tag, None if absent or malformed."""
        raw = self.tag_value("amount")
        if raw is None:
            return None
        try:
            return int(raw)
        except ValueError:
            return None

    @property
    def relays(self) -> list[str]:
        """Relay hints: every value after the ``relays`` tag name."""
        for tag in self.tags:
            if tag and tag[0] == "relays":
                return [url for url in tag[1:] if url]
        return []

    @property
    def recipients(self) -> list[str]:
        return _tag_values(self.tags, "p")

    @property
    def event_ref(self) -> str | None:
        """Id of the zapped event, if the zap was for a note."""
        return self.tag_value("e")


@dataclass
class GiftPayload:
    """Gift details parsed from a zap request's content.

    Example content::

        Premium Gift
        d1bd33333733dcc411f0ee893b38b8522fc0de227fff459d99044ced9e65581b
        premium
        1
        Enjoy!
    """
    recipient_pubkey: str    # 64-char lowercase hex
    subscription_type: str   # "premium" or "premium-plus"
    months: int              # 1..12
    message: str | None = None


@dataclass
class PlainZap:
    """A zap to a regular user, routed to push delivery."""
    event_id: str
    recipient_pubkey: str
    sender_pubkey: str
    amount_sats: int
    link: str                # nostr: URI opened from the notification
    from_fan: bool = False   # Receipt carried a ``P`` (sender) tag


@dataclass
class ParsedZap:
    """Result of parsing a receipt: either a gift or a plain zap."""
    receipt: ZapReceipt
    request: ZapRequest
    gift: GiftPayload | None = None
    plain: PlainZap | None = None

    @property
    def is_gift(self) -> bool:
        return self.gift is not None

    @property
    def amount_millisats(self) -> int | None:
        return self.request.amount_millisats


@dataclass
class ProcessedZapRecord:
    """Audit row for a gift zap that reached validation.

    Created at most once per event id and never updated.
    """
    event_id: str
    recipient_pubkey: str
    gifted_by: str
    tier: str
    months: int
    amount_sats: int
    status: str              # success | underpaid | failed
    error_message: str | None = None
    processed_at: int = field(default_factory=now_ms)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProcessedZapRecord":
        """Deserialize from dictionary."""
        return cls(**data)


@dataclass
class Entitlements:
    """What a tier grants."""
    notifications_per_day: int
    features: list[str]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Entitlements":
        return cls(
            notifications_per_day=data["notifications_per_day"],
            features=list(data.get("features", [])),
        )


@dataclass
class AccountSubscription:
    """Subscription snapshot stored on an account."""
    tier: str
    entitlements: Entitlements
    expiry_date: int | None = None   # Epoch ms

    def to_dict(self) -> dict[str, Any]:
        return {
            "tier": self.tier,
            "entitlements": self.entitlements.to_dict(),
            "expiry_date": self.expiry_date,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AccountSubscription":
        return cls(
            tier=data["tier"],
            entitlements=Entitlements.from_dict(data["entitlements"]),
            expiry_date=data.get("expiry_date"),
        )


@dataclass
class Account:
    """An account as seen through the account store."""
    pubkey: str
    tier: str = "free"
    subscription: AccountSubscription | None = None
    expires: int | None = None       # Epoch ms, None = never subscribed
    username: str | None = None
    created: int = field(default_factory=now_ms)
    modified: int = field(default_factory=now_ms)

    def is_active(self, at_ms: int) -> bool:
        """True if a paid period is still running at ``at_ms``."""
        return self.expires is not None and self.expires > at_ms

    def to_dict(self) -> dict[str, Any]:
        return {
            "pubkey": self.pubkey,
            "tier": self.tier,
            "subscription": self.subscription.to_dict() if self.subscription else None,
            "expires": self.expires,
            "username": self.username,
            "created": self.created,
            "modified": self.modified,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Account":
        sub = data.get("subscription")
        return cls(
            pubkey=data["pubkey"],
            tier=data.get("tier", "free"),
            subscription=AccountSubscription.from_dict(sub) if sub else None,
            expires=data.get("expires"),
            username=data.get("username"),
            created=data.get("created", 0),
            modified=data.get("modified", 0),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, json_str: str) -> "Account":
        return cls.from_dict(json.loads(json_str))


@dataclass
class PriceSample:
    """A fetched USD/BTC rate."""
    rate: float              # USD per BTC
    fetched_at: float        # Unix timestamp (seconds)

    def is_fresh(self, at: float, ttl_seconds: float) -> bool:
        return at - self.fetched_at < ttl_seconds


def extend_expiry(current_expiry: int | None, duration_ms: int, at_ms: int) -> int:
    """New expiry after adding ``duration_ms`` of paid time.

    A still-running period is extended from its current end; an expired or
    missing one restarts at ``at_ms``.
    """
    if current_expiry is not None and current_expiry > at_ms:
        return current_expiry + duration_ms
    return at_ms + duration_ms
