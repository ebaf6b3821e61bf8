"""
Read access to user projects and organization profiles.

Rows are stored as JSON documents; callers get plain dicts with the
original field names, which is what the fit scorer and the cache
invalidation diffing read.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from funding_discovery.storage.db import Database


logger = logging.getLogger(__name__)


class ProfileRepository:
    """
    Projects and profiles keyed by user.

    Usage:
        repo = ProfileRepository(Database("funding.db"))
        repo.save_profile("user-1", {"organization_type": "nonprofit"})
        profile = repo.get_profile("user-1")
    """

    def __init__(self, db: Database):
        self.db = db

    def get_project(self, project_id: str) -> Optional[Dict[str, Any]]:
        with self.db.get_connection() as conn:
            row = conn.execute(
                "SELECT id, user_id, data_json FROM projects WHERE id = ? LIMIT 1",
                (str(project_id),),
            ).fetchone()
        return self._row_to_project(row) if row else None

    def list_projects(self, user_id: str) -> List[Dict[str, Any]]:
        with self.db.get_connection() as conn:
            rows = conn.execute(
                "SELECT id, user_id, data_json FROM projects WHERE user_id = ? ORDER BY updated_at DESC, id",
                (str(user_id),),
            ).fetchall()
        return [self._row_to_project(row) for row in rows]

    def get_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        with self.db.get_connection() as conn:
            row = conn.execute(
                "SELECT user_id, data_json FROM profiles WHERE user_id = ? LIMIT 1",
                (str(user_id),),
            ).fetchone()
        if not row:
            return None
        profile = json.loads(row["data_json"] or "{}")
        profile["user_id"] = row["user_id"]
        return profile

    def save_project(self, user_id: str, project: Dict[str, Any]) -> str:
        """Insert or replace a project. The dict must carry an `id`."""
        if project.get("id") is None:
            raise ValueError("project must have an id")

        project_id = str(project["id"])
        data = {k: v for k, v in project.items() if k not in ("id", "user_id")}

        with self.db.get_connection() as conn:
            conn.execute(
                """
                INSERT INTO projects (id, user_id, data_json, updated_at)
                VALUES (?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(id) DO UPDATE SET
                    user_id=excluded.user_id,
                    data_json=excluded.data_json,
                    updated_at=CURRENT_TIMESTAMP;
                """,
                (project_id, str(user_id), json.dumps(data, default=str)),
            )

        logger.debug(f"Saved project {project_id} for user {user_id}")
        return project_id

    def save_profile(self, user_id: str, profile: Dict[str, Any]) -> None:
        data = {k: v for k, v in profile.items() if k != "user_id"}
        with self.db.get_connection() as conn:
            conn.execute(
                """
                INSERT INTO profiles (user_id, data_json, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(user_id) DO UPDATE SET
                    data_json=excluded.data_json,
                    updated_at=CURRENT_TIMESTAMP;
                """,
                (str(user_id), json.dumps(data, default=str)),
            )

        logger.debug(f"Saved profile for user {user_id}")

    @staticmethod
    def _row_to_project(row) -> Dict[str, Any]:
        project = json.loads(row["data_json"] or "{}")
        project["id"] = row["id"]
        project["user_id"] = row["user_id"]
        return project
