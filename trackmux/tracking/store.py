"""
Tracking Store: the durable group/actor watch relation.

Behavioral Contract:
- The relation table is the only source of truth for reference counts.
- Adding an existing (group, actor) pair or removing a missing one is a no-op.
- Actors are created lazily the first time a relation references them.
- Deleting a group cascades to its relations.
- An unresolvable group reference returns None, never raises.
- sqlite errors propagate to the caller.
"""

import sqlite3
import threading
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

from trackmux.models.tracking import ActorId, Group, WatchRelation


class TrackingStore:
    """
    Many-to-many relation between groups and watched actors.
    SQLite-backed; a single connection guarded by a lock.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._lock = threading.RLock()
        self._init_schema()

    def _init_schema(self) -> None:
        """Create the group, actor and relation tables if they don't exist."""
        with self._lock:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS groups (
                    id TEXT PRIMARY KEY,
                    conversation_id TEXT UNIQUE,
                    created_at TEXT NOT NULL
                )
            """)
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS actors (
                    id INTEGER PRIMARY KEY,
                    first_seen_at TEXT NOT NULL
                )
            """)
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS relations (
                    group_id TEXT NOT NULL REFERENCES groups(id) ON DELETE CASCADE,
                    actor_id INTEGER NOT NULL REFERENCES actors(id) ON DELETE CASCADE,
                    added_by TEXT,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (group_id, actor_id)
                )
            """)
            self._conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_relations_actor_id ON relations(actor_id)
            """)
            self._conn.commit()

    # --- Groups ---

    def upsert_group(self, group_id: str, conversation_id: Optional[str] = None) -> Group:
        """Register a group, or attach a conversation id to an existing one."""
        now = datetime.utcnow().isoformat()
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO groups (id, conversation_id, created_at) VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    conversation_id = COALESCE(excluded.conversation_id, groups.conversation_id)
                """,
                (group_id, conversation_id, now),
            )
            self._conn.commit()
        return self.get_group(group_id)

    def get_group(self, group_id: str) -> Optional[Group]:
        with self._lock:
            row = self._conn.execute(
                "SELECT id, conversation_id, created_at FROM groups WHERE id = ?",
                (group_id,),
            ).fetchone()
        if not row:
            return None
        return Group(
            id=row["id"],
            conversation_id=row["conversation_id"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def delete_group(self, group_id: str) -> bool:
        """Delete a group and, by cascade, every relation it holds."""
        with self._lock:
            cursor = self._conn.execute("DELETE FROM groups WHERE id = ?", (group_id,))
            self._conn.commit()
        return cursor.rowcount > 0

    def resolve_group(self, external_ref: str) -> Optional[str]:
        """Resolve a group id or conversation id to the canonical group id."""
        if not external_ref:
            return None
        with self._lock:
            row = self._conn.execute(
                "SELECT id FROM groups WHERE id = ? OR conversation_id = ? "
                "ORDER BY (id = ?) DESC LIMIT 1",
                (external_ref, external_ref, external_ref),
            ).fetchone()
        return row["id"] if row else None

    # --- Relations ---

    def add_relations(self, relations: Iterable[WatchRelation]) -> int:
        """Bulk insert relations, ignoring pairs that already exist."""
        rows = list(relations)
        if not rows:
            return 0
        now = datetime.utcnow().isoformat()
        with self._lock:
            self._conn.executemany(
                "INSERT OR IGNORE INTO actors (id, first_seen_at) VALUES (?, ?)",
                [(r.actor_id, now) for r in rows],
            )
            before = self._conn.total_changes
            self._conn.executemany(
                """
                INSERT OR IGNORE INTO relations (group_id, actor_id, added_by, created_at)
                VALUES (?, ?, ?, ?)
                """,
                [(r.group_id, r.actor_id, r.added_by, now) for r in rows],
            )
            inserted = self._conn.total_changes - before
            self._conn.commit()
        return inserted

    def remove_relations(self, group_id: str, actor_ids: Iterable[ActorId]) -> int:
        """Remove the given actors from one group's watch-list."""
        ids = list(actor_ids)
        if not ids:
            return 0
        placeholders = ",".join("?" for _ in ids)
        with self._lock:
            cursor = self._conn.execute(
                f"DELETE FROM relations WHERE group_id = ? AND actor_id IN ({placeholders})",
                (group_id, *ids),
            )
            self._conn.commit()
        return cursor.rowcount

    def count_groups_watching(self, actor_id: ActorId) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(DISTINCT group_id) AS cnt FROM relations WHERE actor_id = ?",
                (actor_id,),
            ).fetchone()
        return row["cnt"]

    def groups_watching(self, actor_id: ActorId) -> List[str]:
        """Canonical ids of every group watching an actor (used by fan-out)."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT group_id FROM relations WHERE actor_id = ? ORDER BY group_id",
                (actor_id,),
            ).fetchall()
        return [r["group_id"] for r in rows]

    def actors_watched_by(self, group_id: str) -> List[ActorId]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT actor_id FROM relations WHERE group_id = ? ORDER BY actor_id",
                (group_id,),
            ).fetchall()
        return [r["actor_id"] for r in rows]

    def distinct_watched_actors(self) -> Set[ActorId]:
        """Every actor watched by at least one group."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT DISTINCT actor_id FROM relations"
            ).fetchall()
        return {r["actor_id"] for r in rows}

    def snapshot(self, actor_ids: Iterable[ActorId]) -> Dict[ActorId, Set[str]]:
        """Map each requested actor to the set of groups currently watching it."""
        ids = sorted(set(actor_ids))
        watchers: Dict[ActorId, Set[str]] = {a: set() for a in ids}
        if not ids:
            return watchers
        placeholders = ",".join("?" for _ in ids)
        with self._lock:
            rows = self._conn.execute(
                f"SELECT group_id, actor_id FROM relations WHERE actor_id IN ({placeholders})",
                ids,
            ).fetchall()
        for row in rows:
            watchers[row["actor_id"]].add(row["group_id"])
        return watchers

    def all_relations(self) -> List[WatchRelation]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT group_id, actor_id, added_by, created_at FROM relations "
                "ORDER BY group_id, actor_id"
            ).fetchall()
        return [
            WatchRelation(
                group_id=r["group_id"],
                actor_id=r["actor_id"],
                added_by=r["added_by"],
                created_at=datetime.fromisoformat(r["created_at"]),
            )
            for r in rows
        ]

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()
