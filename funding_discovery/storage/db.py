"""
Lightweight SQLite database wrapper.

Handles:
- Database initialization
- Schema creation (opportunities, scoring cache, projects, profiles)
- Connection management
"""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional


logger = logging.getLogger(__name__)


def parse_timestamp(value) -> Optional[datetime]:
    """
    Parse a stored timestamp into an aware UTC datetime.

    Accepts ISO strings (with or without offset) and SQLite's
    CURRENT_TIMESTAMP format, which is UTC without an offset.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            logger.warning(f"Unparseable timestamp: {value!r}")
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class Database:
    """
    SQLite database wrapper for opportunities and scores.

    Usage:
        db = Database("funding.db")
        with db.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM opportunities")
    """

    def __init__(self, path: str = "funding.db"):
        """
        Initialize database.

        Args:
            path: Path to SQLite database file
        """
        self.path = path

        Path(self.path).parent.mkdir(parents=True, exist_ok=True)

        self._init_db()

        logger.info(f"Database initialized: {self.path}")

    def _init_db(self):
        """Create database schema if it doesn't exist."""
        with self.get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS opportunities (
                    id TEXT PRIMARY KEY,
                    external_id TEXT NOT NULL,
                    source TEXT NOT NULL,
                    title TEXT NOT NULL,
                    sponsor TEXT,
                    url TEXT NOT NULL,
                    description TEXT,
                    amount_min REAL,
                    amount_max REAL,
                    deadline_date TEXT,
                    eligibility_json TEXT,
                    project_types_json TEXT,
                    organization_types_json TEXT,
                    focus_areas_json TEXT,
                    is_non_monetary_resource INTEGER NOT NULL DEFAULT 0,
                    resource_types_json TEXT,
                    match_score REAL,
                    confidence REAL,
                    fit_score REAL NOT NULL,
                    competitiveness TEXT,
                    timeline_urgency TEXT,
                    application_priority TEXT,
                    recommendation_strength TEXT,
                    needs_review INTEGER NOT NULL DEFAULT 0,
                    matching_project_ids_json TEXT,
                    score_breakdown_json TEXT,
                    application_requirements TEXT,
                    recommended_next_steps TEXT,
                    organization_type TEXT,
                    project_type TEXT,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE (external_id, source)
                );
                """
            )

            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_opportunities_source_updated
                ON opportunities(source, updated_at);
                """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS scoring_cache (
                    user_id TEXT NOT NULL,
                    project_id TEXT NOT NULL,
                    opportunity_id TEXT NOT NULL,
                    fit_score REAL,
                    analysis_json TEXT,
                    score_calculated_at TEXT,
                    status TEXT NOT NULL DEFAULT 'scored',
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE (user_id, project_id, opportunity_id)
                );
                """
            )

            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_scoring_cache_user_project
                ON scoring_cache(user_id, project_id);
                """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS projects (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    data_json TEXT NOT NULL,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                );
                """
            )

            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_projects_user_id
                ON projects(user_id);
                """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS profiles (
                    user_id TEXT PRIMARY KEY,
                    data_json TEXT NOT NULL,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                );
                """
            )

            conn.commit()
            logger.debug("Database schema created/verified")

    @contextmanager
    def get_connection(self) -> Iterator[sqlite3.Connection]:
        """
        Get a database connection context manager.

        Automatically commits on success, rolls back on error, closes on exit.

        Yields:
            sqlite3.Connection
        """
        conn = sqlite3.connect(self.path)
        conn.row_factory = sqlite3.Row

        try:
            yield conn
            conn.commit()
        except Exception as e:
            conn.rollback()
            logger.error(f"Database error: {e}")
            raise
        finally:
            conn.close()
