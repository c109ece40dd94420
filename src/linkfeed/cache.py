"""SQLite cache for mentions API pages."""

import json
import sqlite3
from datetime import datetime, timedelta
from pathlib import Path

from linkfeed.config import CONFIG_DIR, ensure_config_dir

CACHE_DB = CONFIG_DIR / "mentions.db"
CACHE_EXPIRY_HOURS = 24


class MentionCache:
    """Raw mention pages keyed by (term, size, offset)."""

    def __init__(self, db_path: Path | None = None, expiry_hours: float = CACHE_EXPIRY_HOURS):
        if db_path is None:
            ensure_config_dir()
        self.db_path = db_path or CACHE_DB
        self.expiry = timedelta(hours=expiry_hours)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the cache table."""
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS mention_pages (
                    term TEXT NOT NULL,
                    size INTEGER NOT NULL,
                    page_offset INTEGER NOT NULL,
                    items TEXT NOT NULL,
                    fetched_at TIMESTAMP NOT NULL,
                    PRIMARY KEY (term, size, page_offset)
                )
            """)
            conn.commit()

    def get(self, term: str, size: int, offset: int) -> list | None:
        """Get a cached page, or None if not cached/expired."""
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT items, fetched_at FROM mention_pages WHERE term = ? AND size = ? AND page_offset = ?",
                (term.lower(), size, offset),
            ).fetchone()

            if not row:
                return None

            fetched_at = datetime.fromisoformat(row[1])
            if datetime.now() - fetched_at > self.expiry:
                conn.execute(
                    "DELETE FROM mention_pages WHERE term = ? AND size = ? AND page_offset = ?",
                    (term.lower(), size, offset),
                )
                conn.commit()
                return None

            try:
                items = json.loads(row[0])
            except json.JSONDecodeError:
                return None
            return items if isinstance(items, list) else None

    def set(self, term: str, size: int, offset: int, items: list) -> None:
        """Cache a page of raw items."""
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO mention_pages (term, size, page_offset, items, fetched_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(term, size, page_offset) DO UPDATE SET
                    items = excluded.items,
                    fetched_at = excluded.fetched_at
                """,
                (term.lower(), size, offset, json.dumps(items), datetime.now().isoformat()),
            )
            conn.commit()

    def clear_expired(self) -> int:
        """Remove expired pages. Returns number removed."""
        cutoff = (datetime.now() - self.expiry).isoformat()
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute("DELETE FROM mention_pages WHERE fetched_at < ?", (cutoff,))
            conn.commit()
            return cursor.rowcount

    def clear_all(self) -> int:
        """Remove every cached page. Returns number removed."""
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute("DELETE FROM mention_pages")
            conn.commit()
            return cursor.rowcount

    def get_stats(self) -> dict:
        with sqlite3.connect(self.db_path) as conn:
            pages, terms = conn.execute(
                "SELECT COUNT(*), COUNT(DISTINCT term) FROM mention_pages"
            ).fetchone()
        return {"pages": pages, "terms": terms, "db_path": str(self.db_path)}
