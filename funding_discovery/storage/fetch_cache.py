"""
SQLite-based cache for fetched web pages.
Prevents re-fetching the same opportunity page across discovery runs.
"""

import hashlib
import json
import logging
import sqlite3
from datetime import timedelta
from typing import Any, Dict, Optional

from funding_discovery.core.time_utils import Clock, ensure_aware, now_utc
from funding_discovery.storage.db import parse_timestamp

logger = logging.getLogger(__name__)


def _url_hash(url: str) -> str:
    return hashlib.sha256(url.encode()).hexdigest()


class FetchCache:
    """Page cache keyed by URL hash with TTL support."""

    def __init__(self, db_path: str = "fetch_cache.db", ttl_days: int = 7,
                 clock: Clock = now_utc):
        self.db_path = db_path
        self.ttl_days = ttl_days
        self.clock = clock
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def _init_db(self):
        conn = self._connect()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS fetch_cache (
                    url_hash TEXT PRIMARY KEY,
                    url TEXT NOT NULL,
                    content TEXT,
                    content_type TEXT,
                    fetched_at TEXT,
                    metadata TEXT
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_fetch_cache_fetched_at
                ON fetch_cache(fetched_at)
            """)
            conn.commit()
        finally:
            conn.close()

    def get(self, url: str) -> Optional[Dict[str, Any]]:
        """Cached page if present and younger than the TTL."""
        conn = self._connect()
        try:
            row = conn.execute("""
                SELECT content, content_type, fetched_at, metadata
                FROM fetch_cache
                WHERE url_hash = ?
            """, (_url_hash(url),)).fetchone()
        finally:
            conn.close()

        if not row:
            return None

        content, content_type, fetched_at, metadata = row

        fetched_dt = parse_timestamp(fetched_at)
        if fetched_dt is None or self.clock() - fetched_dt > timedelta(days=self.ttl_days):
            logger.debug(f"Cache expired for {url}")
            return None

        return {
            'content': content,
            'content_type': content_type,
            'fetched_at': fetched_dt,
            'metadata': json.loads(metadata) if metadata else {},
        }

    def set(self, url: str, content: str, content_type: str = "text/html",
            metadata: Optional[Dict] = None):
        """Store a page in the cache, replacing any older copy."""
        conn = self._connect()
        try:
            conn.execute("""
                INSERT OR REPLACE INTO fetch_cache
                (url_hash, url, content, content_type, fetched_at, metadata)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                _url_hash(url),
                url,
                content,
                content_type,
                ensure_aware(self.clock()).isoformat(),
                json.dumps(metadata) if metadata else None,
            ))
            conn.commit()
        finally:
            conn.close()

        logger.debug(f"Cached {content_type}: {url}")

    def cleanup_expired(self) -> int:
        """Remove expired entries. Returns the number deleted."""
        cutoff = ensure_aware(self.clock()) - timedelta(days=self.ttl_days)

        conn = self._connect()
        try:
            cursor = conn.execute(
                "DELETE FROM fetch_cache WHERE fetched_at < ?",
                (cutoff.isoformat(),),
            )
            deleted = cursor.rowcount
            conn.commit()
        finally:
            conn.close()

        if deleted > 0:
            logger.info(f"Cleaned up {deleted} expired cache entries")
        return deleted
