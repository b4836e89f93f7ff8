"""
Subscription State store: the local mirror of the provider's single filter.

Behavioral Contract:
- Logically one row; history rows for earlier handles are retained.
- current() returns the most recently written subscription, or None when no
  subscription has ever been created (the bootstrap signal).
- persist() upserts by provider handle and is safe to repeat.
- The stored filter is only ever a reconciler output pushed to the provider.
"""

import json
import sqlite3
import threading
from datetime import datetime
from typing import List, Optional

from trackmux.models.subscription import SubscriptionSnapshot, Thresholds


class SubscriptionStore:
    """SQLite-backed singleton record keyed by provider handle."""

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS subscription_state (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    handle TEXT NOT NULL UNIQUE,
                    target_url TEXT,
                    name TEXT,
                    filter_json TEXT NOT NULL,
                    min_score REAL,
                    min_amount_usd REAL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._conn.commit()

    def _deserialize(self, row: sqlite3.Row) -> SubscriptionSnapshot:
        return SubscriptionSnapshot(
            handle=row["handle"],
            filter_set=set(json.loads(row["filter_json"])),
            thresholds=Thresholds(
                min_score=row["min_score"],
                min_amount_usd=row["min_amount_usd"],
            ),
            target_url=row["target_url"],
            name=row["name"],
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def current(self) -> Optional[SubscriptionSnapshot]:
        """The latest subscription, or None if none was ever created."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM subscription_state ORDER BY updated_at DESC, id DESC LIMIT 1"
            ).fetchone()
        return self._deserialize(row) if row else None

    def persist(self, snapshot: SubscriptionSnapshot) -> SubscriptionSnapshot:
        """Insert or update the row for this snapshot's handle."""
        now = datetime.utcnow()
        filter_json = json.dumps(sorted(snapshot.filter_set))
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO subscription_state (
                    handle, target_url, name, filter_json,
                    min_score, min_amount_usd, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(handle) DO UPDATE SET
                    target_url = excluded.target_url,
                    name = excluded.name,
                    filter_json = excluded.filter_json,
                    min_score = excluded.min_score,
                    min_amount_usd = excluded.min_amount_usd,
                    updated_at = excluded.updated_at
                """,
                (
                    snapshot.handle,
                    snapshot.target_url,
                    snapshot.name,
                    filter_json,
                    snapshot.thresholds.min_score,
                    snapshot.thresholds.min_amount_usd,
                    now.isoformat(),
                    now.isoformat(),
                ),
            )
            self._conn.commit()
        return snapshot.model_copy(update={"updated_at": now})

    def history(self) -> List[SubscriptionSnapshot]:
        """Every subscription ever recorded, oldest first."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM subscription_state ORDER BY id"
            ).fetchall()
        return [self._deserialize(r) for r in rows]

    def close(self) -> None:
        self._conn.close()
