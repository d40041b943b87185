"""Subscription ledger: idempotent gift application.

Two collaborators back the ledger. The account store holds subscription
state; the processed-zap store holds one audit record per gift event and the
claims that serialize concurrent deliveries of the same event. The claim
(an atomic insert-if-absent on the event id) is the only concurrency control
in the pipeline: whoever wins it validates, applies and records the gift;
every other delivery of that event skips.
"""
import logging
import threading
from contextlib import nullcontext
from typing import Callable, ContextManager, Protocol

from .models import (
    Account,
    AccountSubscription,
    MONTH_MS,
    ProcessedZapRecord,
    ZAP_STATUSES,
    extend_expiry,
    now_ms,
)
from .tiers import DEFAULT_TIERS, TierDetails

logger = logging.getLogger(__name__)

DEFAULT_CLAIM_LEASE_MS = 300_000


class ActivationError(Exception):
    """Raised when a gift cannot be applied to the account store."""

    pass


class AccountStore(Protocol):
    def get_by_pubkey(self, pubkey: str) -> Account | None:
        ...

    def create(self, account: Account) -> None:
        ...

    def update(self, account: Account) -> None:
        ...


class ProcessedZapStore(Protocol):
    def exists(self, event_id: str) -> bool:
        ...

    def insert_once(self, record: ProcessedZapRecord) -> bool:
        """Insert unless a record for the event exists. Returns True if inserted."""
        ...

    def try_claim(self, event_id: str, lease_ms: int, now: int) -> bool:
        """Atomically claim an unrecorded event. Returns True if granted."""
        ...

    def mark_applied(self, event_id: str, now: int) -> None:
        """Pin the claim of an applied event so it is never granted again."""
        ...

    def is_applied(self, event_id: str) -> bool:
        ...

    def release_claim(self, event_id: str) -> None:
        ...


class SubscriptionLedger:
    """Applies gifts to accounts and records each gift event once.

    Args:
        accounts: Account store
        processed: Processed-zap store with insert-once and claim semantics
        tiers: Tier table for entitlements
        clock: Returns the current epoch milliseconds
        claim_lease_ms: Age after which an unfinished claim can be re-taken
        transaction: Returns a context manager spanning both stores, so an
            account write and the applied mark on its claim commit together
    """

    def __init__(
        self,
        accounts: AccountStore,
        processed: ProcessedZapStore,
        tiers: dict[str, TierDetails] | None = None,
        clock: Callable[[], int] = now_ms,
        claim_lease_ms: int = DEFAULT_CLAIM_LEASE_MS,
        transaction: Callable[[], ContextManager] = nullcontext,
    ):
        self._accounts = accounts
        self._processed = processed
        self._tiers = tiers or DEFAULT_TIERS
        self._clock = clock
        self._transaction = transaction
        self.claim_lease_ms = claim_lease_ms
        # Serializes read-modify-write of expiries within this process
        self._apply_lock = threading.Lock()

    def is_processed(self, event_id: str) -> bool:
        """True if a record exists for this event id, or its gift was applied."""
        return self._processed.exists(event_id) or self._processed.is_applied(event_id)

    def claim(self, event_id: str) -> bool:
        """Take the processing claim for an event; False if someone else holds it."""
        granted = self._processed.try_claim(event_id, self.claim_lease_ms, self._clock())
        if not granted:
            logger.info("Zap event %s is claimed or recorded elsewhere, skipping", event_id[:16])
        return granted

    def release(self, event_id: str) -> None:
        """Give up a claim so a later delivery can process the event."""
        self._processed.release_claim(event_id)

    def record_outcome(
        self,
        event_id: str,
        recipient_pubkey: str,
        gifted_by: str,
        tier: str,
        months: int,
        amount_sats: int,
        status: str,
        message: str | None = None,
    ) -> bool:
        """Write the audit record for a gift event.

        A record that already exists is left untouched.

        Returns:
            True if this call created the record
        """
        if status not in ZAP_STATUSES:
            raise ValueError(f"Unknown zap status: {status}")
        record = ProcessedZapRecord(
            event_id=event_id,
            recipient_pubkey=recipient_pubkey,
            gifted_by=gifted_by,
            tier=tier,
            months=months,
            amount_sats=amount_sats,
            status=status,
            error_message=message,
            processed_at=self._clock(),
        )
        created = self._processed.insert_once(record)
        if created:
            logger.info("Marked zap event %s as processed with status: %s", event_id[:16], status)
        else:
            logger.info("Zap event %s was already recorded, keeping existing record", event_id[:16])
        return created

    def apply_gift(self, pubkey: str, tier: str, months: int, event_id: str | None = None) -> Account:
        """Grant or extend ``months`` of ``tier`` for ``pubkey``.

        An active subscription is extended from its current expiry; an
        expired or missing one restarts now. The stored tier is always set to
        the gifted tier, even if that is lower than the current one.

        With ``event_id``, the event's claim is marked applied in the same
        transaction as the account write, so the gift can never be applied
        twice even if its outcome record is never written.

        Returns:
            The account as written

        Raises:
            ActivationError: If the account store fails; nothing is written
        """
        details = self._tiers[tier]
        duration_ms = months * MONTH_MS
        at = self._clock()

        with self._apply_lock:
            try:
                with self._transaction():
                    account = self._apply(pubkey, tier, details, duration_ms, at)
                    if event_id is not None:
                        self._processed.mark_applied(event_id, at)
                return account
            except Exception as e:
                raise ActivationError(f"Failed to apply {tier} gift to {pubkey}: {e}") from e

    def _apply(self, pubkey: str, tier: str, details: TierDetails, duration_ms: int, at: int) -> Account:
        account = self._accounts.get_by_pubkey(pubkey)
        if account is None:
            expiry = at + duration_ms
            account = Account(
                pubkey=pubkey,
                tier=tier,
                subscription=AccountSubscription(
                    tier=tier,
                    entitlements=details.entitlements(),
                    expiry_date=expiry,
                ),
                expires=expiry,
                username=None,
                created=at,
                modified=at,
            )
            self._accounts.create(account)
            logger.info(
                "Created account with gifted %s subscription for %s, expires at %d",
                tier, pubkey[:16], expiry,
            )
            return account

        expiry = extend_expiry(account.expires, duration_ms, at)
        if account.is_active(at):
            logger.info(
                "Extending subscription for %s from %d to %d",
                pubkey[:16], account.expires, expiry,
            )
            if account.tier != tier:
                logger.warning(
                    "Gift changes active tier for %s from %s to %s",
                    pubkey[:16], account.tier, tier,
                )
        else:
            logger.info("Starting subscription for %s, expires at %d", pubkey[:16], expiry)

        account.tier = tier
        account.expires = expiry
        account.subscription = AccountSubscription(
            tier=tier,
            entitlements=details.entitlements(),
            expiry_date=expiry,
        )
        account.modified = at
        self._accounts.update(account)
        return account
