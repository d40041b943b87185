"""SQLite storage for accounts and processed gift zaps."""

import json
import os
import sqlite3
import threading
from contextlib import contextmanager

from .models import Account, AccountSubscription, ProcessedZapRecord


class ZapDB:
    """Thread-safe SQLite database shared by the account and zap stores.

    Each thread gets its own connection; writes from concurrent handlers are
    serialized by SQLite.
    """

    def __init__(self, db_path: str, busy_timeout_s: float = 30.0):
        self._db_path = db_path
        self._busy_timeout_s = busy_timeout_s
        directory = os.path.dirname(db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self._local = threading.local()
        # Every connection handed out, so close() can reach worker threads' too
        self._conns: list[sqlite3.Connection] = []
        self._conns_lock = threading.Lock()
        self._init_schema()

    def _get_conn(self) -> sqlite3.Connection:
        if not hasattr(self._local, 'conn') or self._local.conn is None:
            conn = sqlite3.connect(
                self._db_path, timeout=self._busy_timeout_s, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            with self._conns_lock:
                self._conns.append(conn)
            self._local.conn = conn
        return self._local.conn

    def _init_schema(self):
        conn = self._get_conn()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS accounts (
                pubkey TEXT PRIMARY KEY,
                username TEXT,
                tier TEXT NOT NULL DEFAULT 'free',
                expires INTEGER,
                subscription TEXT,
                created INTEGER NOT NULL,
                modified INTEGER NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS processed_zap_events (
                event_id TEXT PRIMARY KEY,
                recipient_pubkey TEXT NOT NULL,
                gifted_by TEXT NOT NULL,
                tier TEXT NOT NULL,
                months INTEGER NOT NULL,
                amount_sats INTEGER NOT NULL,
                processed_at INTEGER NOT NULL
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_zap_recipient
            ON processed_zap_events(recipient_pubkey)
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS zap_claims (
                event_id TEXT PRIMARY KEY,
                claimed_at INTEGER NOT NULL
            )
        """)
        # Migration: add status, error_message if missing (existing DBs)
        try:
            conn.execute("SELECT status FROM processed_zap_events LIMIT 1")
        except sqlite3.OperationalError:
            conn.execute(
                "ALTER TABLE processed_zap_events "
                "ADD COLUMN status TEXT NOT NULL DEFAULT 'success'")
            conn.execute(
                "ALTER TABLE processed_zap_events "
                "ADD COLUMN error_message TEXT")
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_zap_status
            ON processed_zap_events(status)
        """)
        # Migration: add applied_at to zap_claims if missing (existing DBs)
        try:
            conn.execute("SELECT applied_at FROM zap_claims LIMIT 1")
        except sqlite3.OperationalError:
            conn.execute("ALTER TABLE zap_claims ADD COLUMN applied_at INTEGER")
        conn.commit()

    @contextmanager
    def transaction(self):
        """IMMEDIATE transaction on this thread's connection.

        Taking the write lock up front makes racing writers wait on the busy
        timeout instead of failing on a read-to-write lock upgrade. Writes
        made inside an enclosing transaction join it; the outermost scope
        commits, or rolls everything back on error.
        """
        conn = self._get_conn()
        if conn.in_transaction:
            yield conn
            return
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise

    def execute_write(self, sql: str, params: tuple = ()) -> int:
        """Run one write statement in a transaction.

        Returns:
            Number of rows changed
        """
        with self.transaction() as conn:
            cur = conn.execute(sql, params)
        return cur.rowcount

    def close(self):
        """Close every connection opened by any thread."""
        with self._conns_lock:
            conns, self._conns = self._conns, []
        for conn in conns:
            conn.close()
        # Threads still holding a closed connection reconnect on next use
        self._local = threading.local()


class SqliteAccountStore:
    """Account store backed by the ``accounts`` table."""

    def __init__(self, db: ZapDB):
        self._db = db

    @staticmethod
    def _from_row(row: sqlite3.Row) -> Account:
        sub = json.loads(row['subscription']) if row['subscription'] else None
        return Account(
            pubkey=row['pubkey'],
            username=row['username'],
            tier=row['tier'],
            expires=row['expires'],
            subscription=AccountSubscription.from_dict(sub) if sub else None,
            created=row['created'],
            modified=row['modified'],
        )

    @staticmethod
    def _subscription_json(account: Account) -> str | None:
        if account.subscription is None:
            return None
        return json.dumps(account.subscription.to_dict())

    def get_by_pubkey(self, pubkey: str) -> Account | None:
        conn = self._db._get_conn()
        row = conn.execute(
            "SELECT * FROM accounts WHERE pubkey = ?", (pubkey,)).fetchone()
        return self._from_row(row) if row else None

    def create(self, account: Account) -> None:
        """Insert a new account. Raises sqlite3.IntegrityError if it exists."""
        self._db.execute_write("""
            INSERT INTO accounts
                (pubkey, username, tier, expires, subscription, created, modified)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (
            account.pubkey,
            account.username,
            account.tier,
            account.expires,
            self._subscription_json(account),
            account.created,
            account.modified,
        ))

    def update(self, account: Account) -> None:
        """Overwrite an existing account. Raises LookupError if it is missing."""
        changed = self._db.execute_write("""
            UPDATE accounts
            SET username = ?, tier = ?, expires = ?, subscription = ?, modified = ?
            WHERE pubkey = ?
        """, (
            account.username,
            account.tier,
            account.expires,
            self._subscription_json(account),
            account.modified,
            account.pubkey,
        ))
        if changed == 0:
            raise LookupError(f"No account for pubkey {account.pubkey}")

    def all_pubkeys(self) -> list[str]:
        """Every account pubkey, for building the relay watch list."""
        conn = self._db._get_conn()
        rows = conn.execute("SELECT pubkey FROM accounts ORDER BY created").fetchall()
        return [r['pubkey'] for r in rows]


class SqliteProcessedZapStore:
    """Insert-once gift zap records plus processing claims."""

    def __init__(self, db: ZapDB):
        self._db = db

    def exists(self, event_id: str) -> bool:
        conn = self._db._get_conn()
        row = conn.execute(
            "SELECT 1 FROM processed_zap_events WHERE event_id = ?",
            (event_id,)).fetchone()
        return row is not None

    def insert_once(self, record: ProcessedZapRecord) -> bool:
        """Insert a record. Returns False if one already exists for the event."""
        inserted = self._db.execute_write("""
            INSERT INTO processed_zap_events
                (event_id, recipient_pubkey, gifted_by, tier, months,
                 amount_sats, status, error_message, processed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(event_id) DO NOTHING
        """, (
            record.event_id,
            record.recipient_pubkey,
            record.gifted_by,
            record.tier,
            record.months,
            record.amount_sats,
            record.status,
            record.error_message,
            record.processed_at,
        ))
        return inserted == 1

    def try_claim(self, event_id: str, lease_ms: int, now: int) -> bool:
        """Claim an event for processing.

        Granted if the event has no record and either no claim or an
        unapplied claim older than ``lease_ms``. Single statement, so two
        connections can never both be granted the same event.
        """
        granted = self._db.execute_write("""
            INSERT INTO zap_claims (event_id, claimed_at)
            SELECT ?, ?
            WHERE NOT EXISTS (
                SELECT 1 FROM processed_zap_events WHERE event_id = ?
            )
            ON CONFLICT(event_id) DO UPDATE SET claimed_at = excluded.claimed_at
            WHERE zap_claims.claimed_at <= ? AND zap_claims.applied_at IS NULL
        """, (event_id, now, event_id, now - lease_ms))
        return granted == 1

    def mark_applied(self, event_id: str, now: int) -> None:
        """Pin an event's claim once its gift is applied; it is never re-granted."""
        self._db.execute_write("""
            INSERT INTO zap_claims (event_id, claimed_at, applied_at)
            VALUES (?, ?, ?)
            ON CONFLICT(event_id) DO UPDATE SET applied_at = excluded.applied_at
        """, (event_id, now, now))

    def is_applied(self, event_id: str) -> bool:
        conn = self._db._get_conn()
        row = conn.execute(
            "SELECT 1 FROM zap_claims WHERE event_id = ? AND applied_at IS NOT NULL",
            (event_id,)).fetchone()
        return row is not None

    def release_claim(self, event_id: str) -> None:
        """Drop an unapplied claim."""
        self._db.execute_write(
            "DELETE FROM zap_claims WHERE event_id = ? AND applied_at IS NULL", (event_id,))

    def get(self, event_id: str) -> ProcessedZapRecord | None:
        conn = self._db._get_conn()
        row = conn.execute(
            "SELECT * FROM processed_zap_events WHERE event_id = ?",
            (event_id,)).fetchone()
        return ProcessedZapRecord.from_dict(dict(row)) if row else None

    def list_by_status(self, status: str, limit: int = 100) -> list[ProcessedZapRecord]:
        """Most recent records with a status, e.g. underpaid zaps for review."""
        conn = self._db._get_conn()
        rows = conn.execute("""
            SELECT * FROM processed_zap_events
            WHERE status = ?
            ORDER BY processed_at DESC LIMIT ?
        """, (status, limit)).fetchall()
        return [ProcessedZapRecord.from_dict(dict(r)) for r in rows]

    def count(self) -> int:
        conn = self._db._get_conn()
        return conn.execute(
            "SELECT COUNT(*) FROM processed_zap_events").fetchone()[0]
