"""Gift Zaps - Gift subscription zap processing over Nostr."""

__version__ = "0.1.0"

from .config import ConfigError, ZapServiceConfig, load_config
from .dedupe import DedupeCache
from .ledger import ActivationError, SubscriptionLedger
from .models import (
    Account,
    AccountSubscription,
    Entitlements,
    GiftPayload,
    ParsedZap,
    PlainZap,
    ProcessedZapRecord,
    ZapReceipt,
    ZapRequest,
    KIND_TEXT_NOTE,
    KIND_ZAP_REQUEST,
    KIND_ZAP_RECEIPT,
    MONTH_MS,
    STATUS_SUCCESS,
    STATUS_UNDERPAID,
    STATUS_FAILED,
)
from .parser import ZapEventParser, ZapParseError
from .price import HttpPriceFeed, PriceFeedError, PriceOracle, PriceUnavailable
from .processor import GiftZapProcessor, LoggingZapNotifier
from .publisher import NostrPublishClient, NotificationPublisher
from .relay import RelayError, RelaySubscriptionManager
from .service import ZapService
from .store import SqliteAccountStore, SqliteProcessedZapStore, ZapDB
from .tiers import DEFAULT_TIERS, TierDetails
from .validator import PaymentValidator, ValidationResult

__all__ = [
    # Service
    "ZapService",
    "ZapServiceConfig",
    "load_config",

    # Pipeline
    "GiftZapProcessor",
    "LoggingZapNotifier",
    "ZapEventParser",
    "PaymentValidator",
    "ValidationResult",
    "SubscriptionLedger",
    "NotificationPublisher",
    "NostrPublishClient",
    "RelaySubscriptionManager",
    "PriceOracle",
    "HttpPriceFeed",

    # Storage
    "ZapDB",
    "SqliteAccountStore",
    "SqliteProcessedZapStore",

    # Models
    "Account",
    "AccountSubscription",
    "Entitlements",
    "GiftPayload",
    "ParsedZap",
    "PlainZap",
    "ProcessedZapRecord",
    "ZapReceipt",
    "ZapRequest",
    "TierDetails",
    "DEFAULT_TIERS",

    # Constants
    "KIND_TEXT_NOTE",
    "KIND_ZAP_REQUEST",
    "KIND_ZAP_RECEIPT",
    "MONTH_MS",
    "STATUS_SUCCESS",
    "STATUS_UNDERPAID",
    "STATUS_FAILED",

    # Errors
    "ActivationError",
    "ConfigError",
    "PriceFeedError",
    "PriceUnavailable",
    "RelayError",
    "ZapParseError",

    # Utilities
    "DedupeCache",
]
