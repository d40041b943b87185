"""Tests for the tier table and configuration loading."""
import os
import tempfile

import pytest
from nostr_sdk import Keys

from gift_zaps.config import (
    ConfigError,
    DEFAULT_RELAYS,
    DEFAULT_SERVICE_PUBKEY,
    ZapServiceConfig,
    load_config,
    parse_keys,
)
from gift_zaps.tiers import (
    DEFAULT_TIERS,
    TIER_PREMIUM,
    TIER_PREMIUM_PLUS,
    tier_display_name,
    tier_for_subscription_type,
    with_monthly_prices,
)


class TestTiers:

    def test_subscription_type_mapping(self):
        assert tier_for_subscription_type("premium") == TIER_PREMIUM
        assert tier_for_subscription_type("premium-plus") == TIER_PREMIUM_PLUS
        with pytest.raises(KeyError):
            tier_for_subscription_type("gold")

    def test_default_prices(self):
        assert DEFAULT_TIERS[TIER_PREMIUM].monthly_price_cents == 1000
        assert DEFAULT_TIERS[TIER_PREMIUM_PLUS].monthly_price_cents == 2000
        assert DEFAULT_TIERS["free"].monthly_price_cents is None

    def test_entitlements_are_copies(self):
        first = DEFAULT_TIERS[TIER_PREMIUM].entitlements()
        first.features.append("EXTRA")
        assert "EXTRA" not in DEFAULT_TIERS[TIER_PREMIUM].entitlements().features

    def test_price_override(self):
        tiers = with_monthly_prices({TIER_PREMIUM: 500})
        assert tiers[TIER_PREMIUM].monthly_price_cents == 500
        assert tiers[TIER_PREMIUM].pricing["yearly"] == 9000
        # Defaults untouched
        assert DEFAULT_TIERS[TIER_PREMIUM].monthly_price_cents == 1000

    def test_display_names(self):
        assert tier_display_name(TIER_PREMIUM) == "Premium"
        assert tier_display_name(TIER_PREMIUM_PLUS) == "Premium+"


class TestParseKeys:

    def test_nsec(self):
        keys = Keys.generate()
        parsed = parse_keys(keys.secret_key().to_bech32())
        assert parsed.public_key().to_hex() == keys.public_key().to_hex()

    def test_hex(self):
        keys = Keys.generate()
        parsed = parse_keys(keys.secret_key().to_hex())
        assert parsed.public_key().to_hex() == keys.public_key().to_hex()

    def test_garbage(self):
        with pytest.raises(ConfigError):
            parse_keys("not-a-key")


class TestLoadConfig:

    def test_defaults(self):
        config = load_config(environ={})
        assert config.relay_urls == DEFAULT_RELAYS
        assert config.service_pubkey == DEFAULT_SERVICE_PUBKEY
        assert config.price_ttl_seconds == 600
        assert config.payment_tolerance == 0.1
        assert config.notification_keys() is None

    def test_env_overrides(self):
        keys = Keys.generate()
        config = load_config(environ={
            "ZAP_RELAYS": "wss://a.example.com, wss://b.example.com",
            "ZAP_SINCE": "1700000000",
            "NOSTR_PREMIUM_NOTIFICATION_PRIVATE_KEY": keys.secret_key().to_bech32(),
            "LOG_LEVEL": "DEBUG",
        })
        assert config.relay_urls == ["wss://a.example.com", "wss://b.example.com"]
        assert config.since == 1700000000
        assert config.log_level == "DEBUG"
        assert config.notification_keys().public_key().to_hex() == keys.public_key().to_hex()

    def test_yaml_file_then_env(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "config.yaml")
            with open(path, "w") as f:
                f.write(
                    "db_path: /tmp/zaps.db\n"
                    "monthly_prices:\n"
                    "  premium: 1500\n"
                    "operator_relays:\n"
                    "  - wss://op.example.com\n"
                )
            config = load_config(path, environ={"ZAP_DB_PATH": "/var/zaps.db"})

        assert config.db_path == "/var/zaps.db"
        assert config.operator_relays == ["wss://op.example.com"]
        assert config.tiers()[TIER_PREMIUM].monthly_price_cents == 1500

    def test_unknown_key(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "config.yaml")
            with open(path, "w") as f:
                f.write("relay_url: wss://typo.example.com\n")
            with pytest.raises(ConfigError, match="relay_url"):
                load_config(path, environ={})

    def test_bad_number(self):
        with pytest.raises(ConfigError):
            load_config(environ={"ZAP_SINCE": "yesterday"})

    def test_bad_signing_key(self):
        with pytest.raises(ConfigError):
            load_config(environ={"NOSTR_PREMIUM_NOTIFICATION_PRIVATE_KEY": "nsec1nope"})

    def test_validate(self):
        with pytest.raises(ConfigError):
            ZapServiceConfig(relay_urls=[]).validate()
        with pytest.raises(ConfigError):
            ZapServiceConfig(service_pubkey="abc").validate()
        with pytest.raises(ConfigError):
            ZapServiceConfig(payment_tolerance=1.5).validate()
