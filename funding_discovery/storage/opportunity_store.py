"""
Storage layer for scored opportunities.

Handles:
- Persisting ScoredOpportunity records keyed by (external_id, source)
- Retrieving opportunities by id
- Listing recently discovered opportunities (DB-first discovery)
- Manual monetary / non-monetary reclassification
"""

import json
import logging
import sqlite3
from datetime import timedelta
from typing import Any, Dict, List, Optional

from funding_discovery.core.domain_models import ScoredOpportunity
from funding_discovery.core.errors import PersistenceError
from funding_discovery.core.time_utils import Clock, now_utc
from funding_discovery.core.utils import stable_id_from_url
from funding_discovery.storage.db import Database, parse_timestamp


logger = logging.getLogger(__name__)

AI_DISCOVERY_SOURCE = "ai_web_discovery"

_COLUMNS = (
    "id", "external_id", "source", "title", "sponsor", "url", "description",
    "amount_min", "amount_max", "deadline_date", "eligibility_json",
    "project_types_json", "organization_types_json", "focus_areas_json",
    "is_non_monetary_resource", "resource_types_json", "match_score", "confidence",
    "fit_score", "competitiveness", "timeline_urgency", "application_priority",
    "recommendation_strength", "needs_review", "matching_project_ids_json",
    "score_breakdown_json", "application_requirements", "recommended_next_steps",
    "organization_type", "project_type", "created_at", "updated_at",
)

_UPDATE_COLUMNS = [c for c in _COLUMNS if c not in ("id", "external_id", "source", "created_at")]

_INSERT_SQL = f"""
    INSERT INTO opportunities ({', '.join(_COLUMNS)})
    VALUES ({', '.join(':' + c for c in _COLUMNS)})
"""

_UPSERT_SQL = _INSERT_SQL + f"""
    ON CONFLICT(external_id, source) DO UPDATE SET
        {', '.join(f'{c}=excluded.{c}' for c in _UPDATE_COLUMNS)};
"""


class OpportunityStore:
    """
    Persistent storage for discovered opportunities.

    Usage:
        store = OpportunityStore(Database("funding.db"))
        opportunity_id = store.upsert(scored)
        row = store.get(opportunity_id)
    """

    def __init__(self, db: Database, clock: Clock = now_utc):
        """
        Args:
            db: Database wrapper
            clock: Source of timestamps (freshness checks are relative to it)
        """
        self.db = db
        self.clock = clock

    @staticmethod
    def opportunity_id(url: str) -> str:
        """Deterministic id of an opportunity discovered at `url`."""
        return stable_id_from_url(url)

    def _params(self, scored: ScoredOpportunity, source: str,
                organization_type: Optional[str], project_type: Optional[str]) -> Dict[str, Any]:
        c = scored.candidate
        external_id = self.opportunity_id(c.url)
        now = self.clock().isoformat()
        return {
            "id": external_id if source == AI_DISCOVERY_SOURCE else f"{source}-{external_id}",
            "external_id": external_id,
            "source": source,
            "title": c.program_name,
            "sponsor": c.sponsor,
            "url": c.url,
            "description": c.key_information or c.content.text,
            "amount_min": c.amount_min,
            "amount_max": c.amount_max,
            "deadline_date": c.deadline.isoformat() if c.deadline else None,
            "eligibility_json": json.dumps(c.eligibility),
            "project_types_json": json.dumps(c.project_types),
            "organization_types_json": json.dumps(c.organization_types),
            "focus_areas_json": json.dumps(c.focus_areas),
            "is_non_monetary_resource": 1 if c.is_non_monetary_resource else 0,
            "resource_types_json": json.dumps(c.resource_types),
            "match_score": c.match_score,
            "confidence": c.confidence,
            "fit_score": scored.fit_score,
            "competitiveness": scored.competitiveness.value,
            "timeline_urgency": scored.timeline_urgency.value,
            "application_priority": scored.application_priority.value,
            "recommendation_strength": scored.recommendation_strength,
            "needs_review": 1 if scored.needs_review else 0,
            "matching_project_ids_json": json.dumps(scored.matching_project_ids),
            "score_breakdown_json": json.dumps(scored.score_breakdown, default=str),
            "application_requirements": c.application_requirements,
            "recommended_next_steps": c.recommended_next_steps,
            "organization_type": organization_type,
            "project_type": project_type,
            "created_at": now,
            "updated_at": now,
        }

    def upsert(self, scored: ScoredOpportunity, source: str = AI_DISCOVERY_SOURCE,
               organization_type: Optional[str] = None,
               project_type: Optional[str] = None) -> str:
        """
        Insert or update an opportunity.

        A failed upsert is retried once as a plain insert.

        Returns:
            The opportunity id

        Raises:
            PersistenceError: if both the upsert and the insert fail
        """
        params = self._params(scored, source, organization_type, project_type)

        try:
            with self.db.get_connection() as conn:
                conn.execute(_UPSERT_SQL, params)
        except sqlite3.Error as e:
            logger.warning(f"Upsert failed for {params['id']}, retrying as insert: {e}")
            try:
                with self.db.get_connection() as conn:
                    conn.execute(_INSERT_SQL, params)
            except sqlite3.Error as e2:
                logger.error(f"Insert fallback failed for {params['id']}: {e2}")
                raise PersistenceError(f"Could not store opportunity {params['id']}: {e2}") from e2

        logger.debug(f"Upserted opportunity: {params['id']}")
        return params["id"]

    def exists(self, opportunity_id: str) -> bool:
        with self.db.get_connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM opportunities WHERE id = ? LIMIT 1",
                (opportunity_id,),
            ).fetchone()
        return row is not None

    def get(self, opportunity_id: str) -> Optional[Dict[str, Any]]:
        """
        Retrieve an opportunity by id.

        Returns:
            Dict with fit-scorer field names, or None if not found
        """
        with self.db.get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM opportunities WHERE id = ? LIMIT 1",
                (opportunity_id,),
            ).fetchone()
        return self._row_to_dict(row) if row else None

    def list_opportunities(self, limit: int = 100, offset: int = 0,
                           source: Optional[str] = None) -> List[Dict[str, Any]]:
        query = "SELECT * FROM opportunities"
        params: List[Any] = []
        if source:
            query += " WHERE source = ?"
            params.append(source)
        query += " ORDER BY fit_score DESC, updated_at DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        with self.db.get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_dict(row) for row in rows]

    def list_recent(self, freshness_days: int = 30, source: str = AI_DISCOVERY_SOURCE,
                    organization_type: Optional[str] = None,
                    project_type: Optional[str] = None,
                    limit: int = 50) -> List[Dict[str, Any]]:
        """
        Opportunities from `source` updated within the last `freshness_days`.

        Rows stored without an organization or project type match any filter.
        """
        cutoff = (self.clock() - timedelta(days=freshness_days)).isoformat()
        query = "SELECT * FROM opportunities WHERE source = ? AND updated_at >= ?"
        params: List[Any] = [source, cutoff]

        if organization_type:
            query += " AND (organization_type IS NULL OR organization_type = ?)"
            params.append(organization_type)
        if project_type:
            query += " AND (project_type IS NULL OR project_type = ?)"
            params.append(project_type)

        query += " ORDER BY fit_score DESC LIMIT ?"
        params.append(limit)

        with self.db.get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_dict(row) for row in rows]

    def reclassify(self, opportunity_id: str, non_monetary: bool,
                   resource_types: Optional[List[str]] = None) -> bool:
        """
        Manually mark an opportunity as a grant or a non-monetary resource.

        Returns:
            True if the opportunity exists and was updated
        """
        with self.db.get_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE opportunities
                SET is_non_monetary_resource = ?,
                    resource_types_json = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    1 if non_monetary else 0,
                    json.dumps(list(resource_types or []) if non_monetary else []),
                    self.clock().isoformat(),
                    opportunity_id,
                ),
            )
            updated = cursor.rowcount > 0

        if updated:
            kind = "non-monetary resource" if non_monetary else "monetary"
            logger.info(f"Reclassified {opportunity_id} as {kind}")
        else:
            logger.warning(f"Reclassify: opportunity {opportunity_id} not found")
        return updated

    def _row_to_dict(self, row) -> Dict[str, Any]:
        def loads(column: str, default):
            value = row[column]
            return json.loads(value) if value else default

        non_monetary = bool(row["is_non_monetary_resource"])
        return {
            "id": row["id"],
            "external_id": row["external_id"],
            "source": row["source"],
            "title": row["title"],
            "sponsor": row["sponsor"],
            "url": row["url"],
            "description": row["description"] or "",
            "amount_min": row["amount_min"],
            "amount_max": row["amount_max"],
            "deadline_date": row["deadline_date"],
            "eligibility": loads("eligibility_json", []),
            "project_types": loads("project_types_json", []),
            "organization_types": loads("organization_types_json", []),
            "focus_areas": loads("focus_areas_json", []),
            "is_non_monetary_resource": non_monetary,
            "resource_types": loads("resource_types_json", []),
            "type": "resource" if non_monetary else "grant",
            "match_score": row["match_score"],
            "confidence": row["confidence"],
            "fit_score": row["fit_score"],
            "competitiveness": row["competitiveness"],
            "timeline_urgency": row["timeline_urgency"],
            "application_priority": row["application_priority"],
            "recommendation_strength": row["recommendation_strength"],
            "needs_review": bool(row["needs_review"]),
            "matching_project_ids": loads("matching_project_ids_json", []),
            "score_breakdown": loads("score_breakdown_json", {}),
            "application_requirements": row["application_requirements"] or "",
            "recommended_next_steps": row["recommended_next_steps"] or "",
            "organization_type": row["organization_type"],
            "project_type": row["project_type"],
            "created_at": parse_timestamp(row["created_at"]),
            "updated_at": parse_timestamp(row["updated_at"]),
        }
