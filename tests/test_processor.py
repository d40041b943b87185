"""Tests for GiftZapProcessor: the full per-event pipeline against SQLite."""
import asyncio
import sqlite3
from unittest.mock import MagicMock

import pytest

from gift_zaps.dedupe import DedupeCache
from gift_zaps.ledger import SubscriptionLedger
from gift_zaps.models import DAY_MS, MONTH_MS
from gift_zaps.parser import ZapEventParser
from gift_zaps.processor import (
    GiftZapProcessor,
    LoggingZapNotifier,
    OUTCOME_CLAIMED,
    OUTCOME_DROPPED,
    OUTCOME_DUPLICATE,
    OUTCOME_ERROR,
    OUTCOME_FAILED,
    OUTCOME_PLAIN,
    OUTCOME_PRICE_UNAVAILABLE,
    OUTCOME_SUCCESS,
    OUTCOME_UNDERPAID,
    plain_zap_message,
)

from conftest import (
    OTHER_PUBKEY,
    RECIPIENT_PUBKEY,
    SENDER_PUBKEY,
    SERVICE_PUBKEY,
    gift_content,
    gift_receipt,
    zap_receipt,
    zap_request,
)


class TestGiftZaps:

    @pytest.mark.asyncio
    async def test_valid_gift_activates_and_publishes(
            self, processor, accounts, processed, clock, publish_client):
        """$10 premium for 1 month paid with 10,000 sats at $100,000/BTC."""
        outcome = await processor.handle(gift_receipt(), "wss://relay.example.com")

        assert outcome == OUTCOME_SUCCESS
        account = accounts.get_by_pubkey(RECIPIENT_PUBKEY)
        assert account.tier == "premium"
        assert account.expires == clock.now + MONTH_MS

        record = processed.get("e" * 64)
        assert record.status == "success"
        assert record.recipient_pubkey == RECIPIENT_PUBKEY
        assert record.gifted_by == SENDER_PUBKEY
        assert record.tier == "premium"
        assert record.amount_sats == 10_000
        assert record.error_message is None

        assert len(publish_client.published) == 1
        relays, _ = publish_client.published[0]
        assert relays[0] == "wss://hint.example.com"

    @pytest.mark.asyncio
    async def test_second_gift_extends_from_expiry(self, processor, accounts, clock):
        await processor.handle(gift_receipt("1" * 64, months=1))
        first_expiry = accounts.get_by_pubkey(RECIPIENT_PUBKEY).expires

        clock.advance_days(10)
        outcome = await processor.handle(gift_receipt("2" * 64, months=2, amount_msats=20_000_000))

        assert outcome == OUTCOME_SUCCESS
        assert accounts.get_by_pubkey(RECIPIENT_PUBKEY).expires == first_expiry + 62 * DAY_MS

    @pytest.mark.asyncio
    async def test_underpaid_is_recorded_without_activation(
            self, processor, accounts, processed, publish_client):
        outcome = await processor.handle(gift_receipt(amount_msats=8_999_000))

        assert outcome == OUTCOME_UNDERPAID
        assert accounts.get_by_pubkey(RECIPIENT_PUBKEY) is None
        record = processed.get("e" * 64)
        assert record.status == "underpaid"
        assert record.amount_sats == 8_999
        assert record.error_message.startswith("Underpaid by ~")
        assert publish_client.published == []

    @pytest.mark.asyncio
    async def test_activation_failure_is_recorded(self, validator, processed, publisher, clock):
        broken_accounts = MagicMock()
        broken_accounts.get_by_pubkey.return_value = None
        broken_accounts.create.side_effect = sqlite3.OperationalError("database disk image is malformed")
        processor = GiftZapProcessor(
            parser=ZapEventParser(SERVICE_PUBKEY),
            validator=validator,
            ledger=SubscriptionLedger(broken_accounts, processed, clock=clock),
            publisher=publisher,
        )

        outcome = await processor.handle(gift_receipt())

        assert outcome == OUTCOME_FAILED
        record = processed.get("e" * 64)
        assert record.status == "failed"
        assert "malformed" in record.error_message

    @pytest.mark.asyncio
    async def test_malformed_request_tags_are_dropped(self, processor, processed):
        request = zap_request(content=gift_content())
        request["tags"] = 5
        receipt = zap_receipt("6" * 64, request, recipients=[SERVICE_PUBKEY])

        assert await processor.handle(receipt) == OUTCOME_DROPPED
        assert await processor.handle(receipt) == OUTCOME_DUPLICATE
        assert processed.count() == 0

    @pytest.mark.asyncio
    async def test_invalid_content_drops_without_record(self, processor, processed):
        assert await processor.handle(gift_receipt(months=13)) == OUTCOME_DROPPED
        assert await processor.handle(gift_receipt("1" * 64, recipient="xyz")) == OUTCOME_DROPPED
        assert await processor.handle(gift_receipt("2" * 64, subscription_type="gold")) == OUTCOME_DROPPED
        assert processed.count() == 0


class TestIdempotence:

    @pytest.mark.asyncio
    async def test_sequential_redelivery(self, processor, accounts, processed, publish_client):
        receipt = gift_receipt()

        assert await processor.handle(receipt, "wss://relay1.example.com") == OUTCOME_SUCCESS
        expiry = accounts.get_by_pubkey(RECIPIENT_PUBKEY).expires
        assert await processor.handle(receipt, "wss://relay2.example.com") == OUTCOME_DUPLICATE

        assert accounts.get_by_pubkey(RECIPIENT_PUBKEY).expires == expiry
        assert processed.count() == 1
        assert len(publish_client.published) == 1

    @pytest.mark.asyncio
    async def test_redelivery_after_restart(
            self, validator, ledger, publisher, accounts, processed):
        """A fresh process (empty dedupe cache) still sees the stored record."""
        first = GiftZapProcessor(ZapEventParser(SERVICE_PUBKEY), validator, ledger, publisher)
        await first.handle(gift_receipt())
        expiry = accounts.get_by_pubkey(RECIPIENT_PUBKEY).expires

        second = GiftZapProcessor(ZapEventParser(SERVICE_PUBKEY), validator, ledger, publisher)
        assert await second.handle(gift_receipt()) == OUTCOME_DUPLICATE
        assert accounts.get_by_pubkey(RECIPIENT_PUBKEY).expires == expiry
        assert processed.count() == 1

    @pytest.mark.asyncio
    async def test_concurrent_deliveries(self, processor, accounts, processed, clock, publish_client):
        receipt = gift_receipt()

        outcomes = await asyncio.gather(*(
            processor.handle(receipt, f"wss://relay{i}.example.com") for i in range(5)
        ))

        assert outcomes.count(OUTCOME_SUCCESS) == 1
        assert all(o in (OUTCOME_SUCCESS, OUTCOME_CLAIMED, OUTCOME_DUPLICATE) for o in outcomes)
        assert accounts.get_by_pubkey(RECIPIENT_PUBKEY).expires == clock.now + MONTH_MS
        assert processed.count() == 1
        assert len(publish_client.published) == 1

    @pytest.mark.asyncio
    async def test_concurrent_processors_sharing_a_database(
            self, validator, ledger, publisher, accounts, processed, clock):
        """Two processors with separate caches race on the same receipt."""
        processors = [
            GiftZapProcessor(ZapEventParser(SERVICE_PUBKEY), validator, ledger, publisher, dedupe=DedupeCache())
            for _ in range(3)
        ]
        receipt = gift_receipt()

        outcomes = await asyncio.gather(*(p.handle(receipt) for p in processors))

        assert outcomes.count(OUTCOME_SUCCESS) == 1
        assert accounts.get_by_pubkey(RECIPIENT_PUBKEY).expires == clock.now + MONTH_MS
        assert processed.count() == 1

    @pytest.mark.asyncio
    async def test_applied_gift_survives_failed_record_and_lease_expiry(
            self, processor, ledger, accounts, processed, clock, monkeypatch):
        """A gift applied before its record write failed is never applied again."""
        receipt = gift_receipt()
        insert_once = processed.insert_once
        calls = []

        def fails_once(record):
            calls.append(record.event_id)
            if len(calls) == 1:
                raise sqlite3.OperationalError("database is locked")
            return insert_once(record)

        monkeypatch.setattr(processed, "insert_once", fails_once)

        assert await processor.handle(receipt, "wss://relay1.example.com") == OUTCOME_ERROR
        expiry = accounts.get_by_pubkey(RECIPIENT_PUBKEY).expires
        assert expiry == clock.now + MONTH_MS

        clock.now += ledger.claim_lease_ms + 1000
        assert await processor.handle(receipt, "wss://relay2.example.com") == OUTCOME_DUPLICATE

        assert accounts.get_by_pubkey(RECIPIENT_PUBKEY).expires == expiry
        assert ledger.is_processed(receipt.id)
        assert not ledger.claim(receipt.id)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_underpaid_redelivery_is_skipped(self, processor, processed):
        receipt = gift_receipt(amount_msats=1_000_000)
        assert await processor.handle(receipt) == OUTCOME_UNDERPAID
        assert await processor.handle(receipt) == OUTCOME_DUPLICATE
        assert processed.count() == 1


class TestPriceUnavailable:

    @pytest.mark.asyncio
    async def test_no_record_then_success_on_redelivery(
            self, processor, price_feed, accounts, processed):
        price_feed.fail = True
        receipt = gift_receipt()

        assert await processor.handle(receipt) == OUTCOME_PRICE_UNAVAILABLE
        assert processed.count() == 0
        assert accounts.get_by_pubkey(RECIPIENT_PUBKEY) is None

        price_feed.fail = False
        assert await processor.handle(receipt) == OUTCOME_SUCCESS
        assert processed.get("e" * 64).status == "success"
        assert accounts.get_by_pubkey(RECIPIENT_PUBKEY).tier == "premium"


class TestPlainZaps:

    @pytest.mark.asyncio
    async def test_routed_to_notifier_without_ledger_effect(
            self, processor, notifier, processed, accounts):
        request = zap_request(content="nice", recipients=[OTHER_PUBKEY], amount_msats=21_000)
        outcome = await processor.handle(zap_receipt("5" * 64, request))

        assert outcome == OUTCOME_PLAIN
        assert len(notifier.zaps) == 1
        assert notifier.zaps[0].recipient_pubkey == OTHER_PUBKEY
        assert notifier.zaps[0].amount_sats == 21
        assert processed.count() == 0
        assert accounts.get_by_pubkey(OTHER_PUBKEY) is None

    @pytest.mark.asyncio
    async def test_notified_once_per_event(self, processor, notifier):
        receipt = zap_receipt("5" * 64, zap_request(recipients=[OTHER_PUBKEY]))
        await asyncio.gather(*(processor.handle(receipt) for _ in range(3)))
        await processor.handle(receipt)
        assert len(notifier.zaps) == 1

    @pytest.mark.asyncio
    async def test_notifier_failure_is_contained(self, validator, ledger, publisher):
        class BrokenNotifier:
            async def notify(self, zap):
                raise ConnectionError("push service down")

        processor = GiftZapProcessor(
            ZapEventParser(SERVICE_PUBKEY), validator, ledger, publisher, notifier=BrokenNotifier())
        receipt = zap_receipt("5" * 64, zap_request(recipients=[OTHER_PUBKEY]))
        assert await processor.handle(receipt) == OUTCOME_PLAIN

    def test_push_message(self):
        request = zap_request(recipients=[OTHER_PUBKEY], amount_msats=5_000)
        receipt = zap_receipt("5" * 64, request, extra_tags=[["P", SENDER_PUBKEY]])
        plain = ZapEventParser(SERVICE_PUBKEY).parse(receipt).plain

        message = plain_zap_message(plain)

        assert message["body"] == "You received 5 sats from a fan!"
        assert message["url"] == f"nostr:{SENDER_PUBKEY}"
        assert message["data"] == {
            "type": "zap",
            "amount": 5,
            "sender": SENDER_PUBKEY,
            "eventId": "5" * 64,
        }

    @pytest.mark.asyncio
    async def test_logging_notifier(self, caplog):
        receipt = zap_receipt("5" * 64, zap_request(recipients=[OTHER_PUBKEY], amount_msats=5_000))
        plain = ZapEventParser(SERVICE_PUBKEY).parse(receipt).plain
        with caplog.at_level("INFO", logger="gift_zaps.processor"):
            await LoggingZapNotifier().notify(plain)
        assert "You received 5 sats!" in caplog.text


class TestErrorContainment:

    @pytest.mark.asyncio
    async def test_unexpected_error_is_contained_and_claim_released(
            self, processor, validator, processed):
        receipt = gift_receipt()
        original = validator.validate

        async def exploding(*args, **kwargs):
            raise RuntimeError("unexpected")

        validator.validate = exploding
        assert await processor.handle(receipt) == OUTCOME_ERROR
        assert processed.count() == 0

        validator.validate = original
        assert await processor.handle(receipt) == OUTCOME_SUCCESS
