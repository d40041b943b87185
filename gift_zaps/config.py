"""Configuration for the gift zap service.

Values come from an optional YAML file, then environment overrides.
"""
import os
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone

import yaml
from nostr_sdk import Keys, SecretKey

from .tiers import DEFAULT_TIERS, TierDetails, with_monthly_prices


class ConfigError(Exception):
    """Raised when the service configuration is unusable."""

    pass


# Well-known identity that gift zaps are sent to
DEFAULT_SERVICE_PUBKEY = "3e5b8d197f4a9279278fd61d9d033058e13d62f6652e3f868dcab54fac8c9658"

DEFAULT_OPERATOR_RELAYS = [
    "wss://ribo.eu.nostria.app",
    "wss://ribo.af.nostria.app",
    "wss://ribo.us.nostria.app",
]

DEFAULT_RELAYS = DEFAULT_OPERATOR_RELAYS + [
    "wss://relay.damus.io",
    "wss://relay.primal.net",
]

# Receipts older than this are ignored on first subscribe
DEFAULT_SINCE = int(datetime(2025, 11, 22, tzinfo=timezone.utc).timestamp())

DEFAULT_PRICE_URL = "https://pay.ariton.app/price"
DEFAULT_PREMIUM_URL = "https://nostria.app/premium"

_LIST_FIELDS = {"relay_urls", "operator_relays", "watched_pubkeys"}
_INT_FIELDS = {"since", "claim_lease_seconds"}
_FLOAT_FIELDS = {
    "price_ttl_seconds",
    "payment_tolerance",
    "io_timeout_s",
    "max_backoff_s",
    "price_timeout_s",
}

_ENV_OVERRIDES = {
    "ZAP_RELAYS": "relay_urls",
    "ZAP_OPERATOR_RELAYS": "operator_relays",
    "ZAP_SERVICE_PUBKEY": "service_pubkey",
    "NOSTR_PREMIUM_NOTIFICATION_PRIVATE_KEY": "notification_private_key",
    "ZAP_DB_PATH": "db_path",
    "ZAP_PRICE_URL": "price_url",
    "ZAP_SINCE": "since",
    "LOG_LEVEL": "log_level",
}


@dataclass
class ZapServiceConfig:
    """Configuration for ZapService."""

    # Network
    relay_urls: list[str] = field(default_factory=lambda: list(DEFAULT_RELAYS))
    operator_relays: list[str] = field(default_factory=lambda: list(DEFAULT_OPERATOR_RELAYS))
    service_pubkey: str = DEFAULT_SERVICE_PUBKEY
    watched_pubkeys: list[str] = field(default_factory=list)  # Extra users to watch
    since: int = DEFAULT_SINCE                   # Unix timestamp floor for receipts
    io_timeout_s: float = 10.0                   # Connect/subscribe/publish timeout
    max_backoff_s: float = 60.0                  # Reconnect backoff cap

    # Confirmation notes
    notification_private_key: str | None = None  # nsec (bech32) or hex; None = don't post
    premium_url: str = DEFAULT_PREMIUM_URL

    # Pricing
    price_url: str = DEFAULT_PRICE_URL
    price_timeout_s: float = 10.0
    price_ttl_seconds: float = 600.0             # Cached rate is reused for 10 minutes
    payment_tolerance: float = 0.1               # Accept payments down to 90% of price
    monthly_prices: dict[str, int] = field(default_factory=dict)  # tier -> cents overrides

    # Storage
    db_path: str = "data/gift_zaps.db"
    claim_lease_seconds: int = 300

    log_level: str = "INFO"

    def tiers(self) -> dict[str, TierDetails]:
        """Tier table with any configured monthly price overrides applied."""
        if not self.monthly_prices:
            return DEFAULT_TIERS
        return with_monthly_prices(self.monthly_prices)

    def notification_keys(self) -> Keys | None:
        """Signing keys for confirmation notes, or None if not configured.

        Raises:
            ConfigError: If the key is set but cannot be parsed
        """
        if not self.notification_private_key:
            return None
        return parse_keys(self.notification_private_key)

    def validate(self) -> None:
        """Check the values that cannot be defaulted away.

        Raises:
            ConfigError: If the configuration is unusable
        """
        if not self.relay_urls:
            raise ConfigError("At least one relay URL is required")
        if len(self.service_pubkey) != 64:
            raise ConfigError(f"Invalid service pubkey: {self.service_pubkey!r}")
        if not 0 <= self.payment_tolerance < 1:
            raise ConfigError("payment_tolerance must be in [0, 1)")
        self.notification_keys()


def parse_keys(value: str) -> Keys:
    """Parse an nsec (bech32) or hex secret key.

    Raises:
        ConfigError: If the key is malformed
    """
    value = value.strip()
    try:
        if value.startswith("nsec"):
            return Keys.parse(value)
        return Keys(SecretKey.parse(value))
    except Exception as e:
        raise ConfigError(f"Invalid notification private key: {e}") from e


def _split_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _coerce(name: str, value):
    if name in _LIST_FIELDS and isinstance(value, str):
        return _split_list(value)
    if name in _INT_FIELDS:
        return int(value)
    if name in _FLOAT_FIELDS:
        return float(value)
    return value


def load_config(path: str | None = None, environ: dict[str, str] | None = None) -> ZapServiceConfig:
    """Load configuration from a YAML file and environment variables.

    Args:
        path: Optional YAML file whose top-level keys match ZapServiceConfig fields
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Validated ZapServiceConfig

    Raises:
        ConfigError: If the file is unreadable or a value is invalid
    """
    environ = os.environ if environ is None else environ
    values: dict = {}

    if path:
        try:
            with open(path) as f:
                loaded = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Cannot read config file {path}: {e}") from e
        if not isinstance(loaded, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")
        known = {f.name for f in fields(ZapServiceConfig)}
        unknown = set(loaded) - known
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(sorted(unknown))}")
        values.update(loaded)

    for env_name, field_name in _ENV_OVERRIDES.items():
        if environ.get(env_name):
            values[field_name] = environ[env_name]

    try:
        values = {name: _coerce(name, value) for name, value in values.items()}
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid config value: {e}") from e

    config = ZapServiceConfig(**values)
    config.validate()
    return config
