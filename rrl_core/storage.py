"""
rrl_core/storage.py — RRL SQLite Storage Backend

Tables:
- restaurants:       Restaurant aggregates
- reviews:           Review ledger
- review_index:      Uniqueness marker, one row per (reviewer, restaurant)
- media:             Media catalog
- restaurant_media:  (restaurant_id, slot) → media_id
- review_media:      (review_id, slot) → media_id
- reviewer_stats:    Per-principal counters
- loyalty:           Per-(restaurant, customer) visit counters
- counters:          Next-id counters (restaurant, review, media)
- reward_pool:       Single-row pool balance
- accounts:          Custody balances credited by payouts
- journal:           Sealed operation journal

The full entity JSON is stored in the `data` column; key columns are
extracted for lookups without deserializing every row. Unsigned 128-bit
amounts do not fit SQLite INTEGER, so balances are stored as decimal TEXT.

Every statement takes the connection lock. Writes made outside
transaction() autocommit. Inside it, everything is
one unit: BEGIN IMMEDIATE at the outermost level, SAVEPOINTs below it.
"""

from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from typing import Iterator, List, Optional, Tuple

from .journal import JournalEntry
from .models import LoyaltyRecord, MediaItem, Restaurant, Review, ReviewerStats
from .numeric import bump, checked_add

COUNTER_NAMES = ("restaurant", "review", "media")


class Storage:
    """SQLite keyed storage for every ledger structure.

    One connection, shared across threads behind a re-entrant lock that
    is held for the whole of each transaction: operations are serialized
    and none observes another's uncommitted writes.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self.conn = sqlite3.connect(
            db_path, isolation_level=None, check_same_thread=False
        )
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._create_tables()

    def _create_tables(self) -> None:
        """Create tables and seed counters if they don't exist."""
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS restaurants (
                restaurant_id INTEGER PRIMARY KEY,
                owner TEXT NOT NULL,
                data TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS reviews (
                review_id INTEGER PRIMARY KEY,
                restaurant_id INTEGER NOT NULL,
                reviewer TEXT NOT NULL,
                data TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_reviews_restaurant
                ON reviews(restaurant_id, review_id);

            CREATE TABLE IF NOT EXISTS review_index (
                reviewer TEXT NOT NULL,
                restaurant_id INTEGER NOT NULL,
                review_id INTEGER NOT NULL,
                PRIMARY KEY (reviewer, restaurant_id)
            );

            CREATE TABLE IF NOT EXISTS media (
                media_id INTEGER PRIMARY KEY,
                data TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS restaurant_media (
                restaurant_id INTEGER NOT NULL,
                slot INTEGER NOT NULL,
                media_id INTEGER NOT NULL,
                PRIMARY KEY (restaurant_id, slot)
            );

            CREATE TABLE IF NOT EXISTS review_media (
                review_id INTEGER NOT NULL,
                slot INTEGER NOT NULL,
                media_id INTEGER NOT NULL,
                PRIMARY KEY (review_id, slot)
            );

            CREATE TABLE IF NOT EXISTS reviewer_stats (
                principal TEXT PRIMARY KEY,
                data TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS loyalty (
                restaurant_id INTEGER NOT NULL,
                customer TEXT NOT NULL,
                data TEXT NOT NULL,
                PRIMARY KEY (restaurant_id, customer)
            );

            CREATE TABLE IF NOT EXISTS counters (
                name TEXT PRIMARY KEY,
                next_value INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS reward_pool (
                pool_id INTEGER PRIMARY KEY CHECK (pool_id = 1),
                balance TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS accounts (
                principal TEXT PRIMARY KEY,
                balance TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS journal (
                sequence_number INTEGER PRIMARY KEY,
                entry_type TEXT NOT NULL,
                entry_hash TEXT NOT NULL,
                previous_hash TEXT,
                data TEXT NOT NULL
            );

            INSERT OR IGNORE INTO counters (name, next_value) VALUES ('restaurant', 1);
            INSERT OR IGNORE INTO counters (name, next_value) VALUES ('review', 1);
            INSERT OR IGNORE INTO counters (name, next_value) VALUES ('media', 1);
            INSERT OR IGNORE INTO reward_pool (pool_id, balance) VALUES (1, '0');
        """)


    # ------------------------------------------------------------------
    # Statement helpers
    # ------------------------------------------------------------------
    # Every statement runs under self._lock. A thread inside transaction()
    # already holds it, so other threads' reads wait for its COMMIT or
    # ROLLBACK instead of seeing half-applied writes on the shared
    # connection.

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            return self.conn.execute(sql, params)

    def _fetchone(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchone()

    def _fetchall(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator["Storage"]:
        """Run the enclosed writes as one atomic unit.

        Any exception rolls back every write made inside the block
        (including nested blocks) and is re-raised.
        """
        with self._lock:
            if self._depth == 0:
                self.conn.execute("BEGIN IMMEDIATE")
                savepoint = None
            else:
                savepoint = f"sp_{self._depth}"
                self.conn.execute(f"SAVEPOINT {savepoint}")
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                if savepoint is None:
                    self.conn.execute("ROLLBACK")
                else:
                    self.conn.execute(f"ROLLBACK TO {savepoint}")
                    self.conn.execute(f"RELEASE {savepoint}")
                raise
            else:
                self._depth -= 1
                if savepoint is None:
                    self.conn.execute("COMMIT")
                else:
                    self.conn.execute(f"RELEASE {savepoint}")

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    # ------------------------------------------------------------------
    # Counters
    # ------------------------------------------------------------------

    def peek_counter(self, name: str) -> int:
        """Next id the named counter would allocate."""
        row = self._fetchone("SELECT next_value FROM counters WHERE name = ?", (name,))
        if row is None:
            raise KeyError(f"Unknown counter: {name}")
        return row["next_value"]

    def allocate_id(self, name: str, ceiling: int) -> int:
        """Return the next id and advance the counter.

        Raises InvalidInput once the counter has reached its ceiling.
        """
        with self._lock:
            current = self.peek_counter(name)
            advanced = bump(current, ceiling, name=f"{name} id counter")
            self._execute(
                "UPDATE counters SET next_value = ? WHERE name = ?", (advanced, name)
            )
        return current

    # ------------------------------------------------------------------
    # Restaurants
    # ------------------------------------------------------------------

    def get_restaurant(self, restaurant_id: int) -> Optional[Restaurant]:
        row = self._fetchone(
            "SELECT data FROM restaurants WHERE restaurant_id = ?", (restaurant_id,)
        )
        if row:
            return Restaurant.model_validate_json(row["data"])
        return None

    def put_restaurant(self, restaurant: Restaurant) -> None:
        """Insert or replace a restaurant record."""
        self._execute(
            """INSERT INTO restaurants (restaurant_id, owner, data)
               VALUES (?, ?, ?)
               ON CONFLICT(restaurant_id) DO UPDATE SET
                   owner = excluded.owner,
                   data = excluded.data""",
            (restaurant.restaurant_id, restaurant.owner, restaurant.model_dump_json()),
        )

    def get_all_restaurants(self) -> List[Restaurant]:
        rows = self._fetchall("SELECT data FROM restaurants ORDER BY restaurant_id")
        return [Restaurant.model_validate_json(row["data"]) for row in rows]

    # ------------------------------------------------------------------
    # Reviews and the uniqueness index
    # ------------------------------------------------------------------

    def get_review(self, review_id: int) -> Optional[Review]:
        row = self._fetchone("SELECT data FROM reviews WHERE review_id = ?", (review_id,))
        if row:
            return Review.model_validate_json(row["data"])
        return None

    def insert_review(self, review: Review) -> None:
        """Insert a review. Reviews are never replaced."""
        self._execute(
            """INSERT INTO reviews (review_id, restaurant_id, reviewer, data)
               VALUES (?, ?, ?, ?)""",
            (
                review.review_id,
                review.restaurant_id,
                review.reviewer,
                review.model_dump_json(),
            ),
        )

    def get_restaurant_reviews(self, restaurant_id: int) -> List[Review]:
        """All reviews of a restaurant in submission order."""
        rows = self._fetchall(
            "SELECT data FROM reviews WHERE restaurant_id = ? ORDER BY review_id",
            (restaurant_id,),
        )
        return [Review.model_validate_json(row["data"]) for row in rows]

    def get_all_reviews(self) -> List[Review]:
        rows = self._fetchall("SELECT data FROM reviews ORDER BY review_id")
        return [Review.model_validate_json(row["data"]) for row in rows]

    def get_review_id_for(self, reviewer: str, restaurant_id: int) -> Optional[int]:
        row = self._fetchone(
            "SELECT review_id FROM review_index WHERE reviewer = ? AND restaurant_id = ?",
            (reviewer, restaurant_id),
        )
        return row["review_id"] if row else None

    def claim_review_marker(self, reviewer: str, restaurant_id: int, review_id: int) -> None:
        """Insert the uniqueness marker.

        Raises sqlite3.IntegrityError if the pair is already taken.
        """
        self._execute(
            "INSERT INTO review_index (reviewer, restaurant_id, review_id) VALUES (?, ?, ?)",
            (reviewer, restaurant_id, review_id),
        )

    def get_review_index(self) -> List[Tuple[str, int, int]]:
        rows = self._fetchall(
            "SELECT reviewer, restaurant_id, review_id FROM review_index ORDER BY review_id"
        )
        return [(row["reviewer"], row["restaurant_id"], row["review_id"]) for row in rows]

    # ------------------------------------------------------------------
    # Media catalog and slot indexes
    # ------------------------------------------------------------------

    def get_media(self, media_id: int) -> Optional[MediaItem]:
        row = self._fetchone("SELECT data FROM media WHERE media_id = ?", (media_id,))
        if row:
            return MediaItem.model_validate_json(row["data"])
        return None

    def put_media(self, item: MediaItem) -> None:
        """Insert or replace a media item."""
        self._execute(
            """INSERT INTO media (media_id, data) VALUES (?, ?)
               ON CONFLICT(media_id) DO UPDATE SET data = excluded.data""",
            (item.media_id, item.model_dump_json()),
        )

    def get_all_media(self) -> List[MediaItem]:
        rows = self._fetchall("SELECT data FROM media ORDER BY media_id")
        return [MediaItem.model_validate_json(row["data"]) for row in rows]

    def set_restaurant_media_slot(self, restaurant_id: int, slot: int, media_id: int) -> None:
        self._execute(
            "INSERT INTO restaurant_media (restaurant_id, slot, media_id) VALUES (?, ?, ?)",
            (restaurant_id, slot, media_id),
        )

    def set_review_media_slot(self, review_id: int, slot: int, media_id: int) -> None:
        self._execute(
            "INSERT INTO review_media (review_id, slot, media_id) VALUES (?, ?, ?)",
            (review_id, slot, media_id),
        )

    def get_restaurant_media_id(self, restaurant_id: int, slot: int) -> Optional[int]:
        row = self._fetchone(
            "SELECT media_id FROM restaurant_media WHERE restaurant_id = ? AND slot = ?",
            (restaurant_id, slot),
        )
        return row["media_id"] if row else None

    def get_review_media_id(self, review_id: int, slot: int) -> Optional[int]:
        row = self._fetchone(
            "SELECT media_id FROM review_media WHERE review_id = ? AND slot = ?",
            (review_id, slot),
        )
        return row["media_id"] if row else None

    def list_restaurant_media_slots(self, restaurant_id: int) -> List[Tuple[int, int]]:
        """(slot, media_id) pairs in slot order."""
        rows = self._fetchall(
            "SELECT slot, media_id FROM restaurant_media WHERE restaurant_id = ? ORDER BY slot",
            (restaurant_id,),
        )
        return [(row["slot"], row["media_id"]) for row in rows]

    def list_review_media_slots(self, review_id: int) -> List[Tuple[int, int]]:
        """(slot, media_id) pairs in slot order."""
        rows = self._fetchall(
            "SELECT slot, media_id FROM review_media WHERE review_id = ? ORDER BY slot",
            (review_id,),
        )
        return [(row["slot"], row["media_id"]) for row in rows]

    # ------------------------------------------------------------------
    # Reviewer statistics and loyalty
    # ------------------------------------------------------------------

    def get_reviewer_stats(self, principal: str) -> Optional[ReviewerStats]:
        row = self._fetchone(
            "SELECT data FROM reviewer_stats WHERE principal = ?", (principal,)
        )
        if row:
            return ReviewerStats.model_validate_json(row["data"])
        return None

    def put_reviewer_stats(self, stats: ReviewerStats) -> None:
        self._execute(
            """INSERT INTO reviewer_stats (principal, data) VALUES (?, ?)
               ON CONFLICT(principal) DO UPDATE SET data = excluded.data""",
            (stats.principal, stats.model_dump_json()),
        )

    def get_all_reviewer_stats(self) -> List[ReviewerStats]:
        rows = self._fetchall("SELECT data FROM reviewer_stats ORDER BY principal")
        return [ReviewerStats.model_validate_json(row["data"]) for row in rows]

    def get_loyalty(self, restaurant_id: int, customer: str) -> Optional[LoyaltyRecord]:
        row = self._fetchone(
            "SELECT data FROM loyalty WHERE restaurant_id = ? AND customer = ?",
            (restaurant_id, customer),
        )
        if row:
            return LoyaltyRecord.model_validate_json(row["data"])
        return None

    def put_loyalty(self, record: LoyaltyRecord) -> None:
        self._execute(
            """INSERT INTO loyalty (restaurant_id, customer, data) VALUES (?, ?, ?)
               ON CONFLICT(restaurant_id, customer) DO UPDATE SET data = excluded.data""",
            (record.restaurant_id, record.customer, record.model_dump_json()),
        )

    def get_all_loyalty(self) -> List[LoyaltyRecord]:
        rows = self._fetchall("SELECT data FROM loyalty ORDER BY restaurant_id, customer")
        return [LoyaltyRecord.model_validate_json(row["data"]) for row in rows]

    # ------------------------------------------------------------------
    # Reward pool and custody accounts
    # ------------------------------------------------------------------

    def get_pool_balance(self) -> int:
        row = self._fetchone("SELECT balance FROM reward_pool WHERE pool_id = 1")
        return int(row["balance"])

    def compare_and_set_pool(self, expected: int, new_balance: int) -> bool:
        """Replace the pool balance only if it still equals `expected`."""
        if new_balance < 0:
            raise ValueError("Reward pool balance cannot go negative")
        cursor = self._execute(
            "UPDATE reward_pool SET balance = ? WHERE pool_id = 1 AND balance = ?",
            (str(new_balance), str(expected)),
        )
        return cursor.rowcount == 1

    def add_to_pool(self, amount: int) -> int:
        """Increase the pool by `amount`; returns the new balance.

        Raises InvalidInput if the balance would pass the u128 range.
        """
        with self._lock:
            balance = checked_add(self.get_pool_balance(), amount)
            self._execute(
                "UPDATE reward_pool SET balance = ? WHERE pool_id = 1", (str(balance),)
            )
        return balance

    def get_account_balance(self, principal: str) -> int:
        row = self._fetchone(
            "SELECT balance FROM accounts WHERE principal = ?", (principal,)
        )
        return int(row["balance"]) if row else 0

    def credit_account(self, principal: str, amount: int) -> int:
        """Add `amount` to a custody account; returns the new balance."""
        with self._lock:
            balance = checked_add(self.get_account_balance(principal), amount)
            self._execute(
                """INSERT INTO accounts (principal, balance) VALUES (?, ?)
                   ON CONFLICT(principal) DO UPDATE SET balance = excluded.balance""",
                (principal, str(balance)),
            )
        return balance

    # ------------------------------------------------------------------
    # Journal
    # ------------------------------------------------------------------

    def append_journal_entry(self, entry: JournalEntry) -> None:
        self._execute(
            """INSERT INTO journal
               (sequence_number, entry_type, entry_hash, previous_hash, data)
               VALUES (?, ?, ?, ?, ?)""",
            (
                entry.seal.sequence_number,
                entry.entry_type.value,
                entry.seal.entry_hash,
                entry.seal.previous_hash,
                entry.model_dump_json(),
            ),
        )

    def get_journal(self) -> List[JournalEntry]:
        rows = self._fetchall("SELECT data FROM journal ORDER BY sequence_number")
        return [JournalEntry.model_validate_json(row["data"]) for row in rows]

    def last_journal_entry(self) -> Optional[JournalEntry]:
        row = self._fetchone(
            "SELECT data FROM journal ORDER BY sequence_number DESC LIMIT 1"
        )
        if row:
            return JournalEntry.model_validate_json(row["data"])
        return None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self.conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
