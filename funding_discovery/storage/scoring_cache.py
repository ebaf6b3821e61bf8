"""
Cache of fit scores per (user, project, opportunity).

A cached score is valid for `ttl_days` (7) after it was calculated. Expiry
is derived from `score_calculated_at`; nothing is deleted when a score goes
stale. Project and profile updates invalidate scores only when a field that
feeds scoring actually changed.
"""

import asyncio
import json
import logging
import sqlite3
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from funding_discovery.core.batching import run_in_batches
from funding_discovery.core.domain_models import CacheRecord, CacheStatus
from funding_discovery.core.errors import MissingDataError, PersistenceError
from funding_discovery.core.time_utils import Clock, age_description, ensure_aware, now_utc
from funding_discovery.storage.db import Database, parse_timestamp


logger = logging.getLogger(__name__)

_INSERT_SQL = """
    INSERT INTO scoring_cache (
        user_id, project_id, opportunity_id, fit_score,
        analysis_json, score_calculated_at, status, updated_at
    )
    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
"""

_UPSERT_SQL = _INSERT_SQL + """
    ON CONFLICT(user_id, project_id, opportunity_id) DO UPDATE SET
        fit_score=excluded.fit_score,
        analysis_json=excluded.analysis_json,
        score_calculated_at=excluded.score_calculated_at,
        status=excluded.status,
        updated_at=excluded.updated_at;
"""

SIGNIFICANT_PROJECT_FIELDS = (
    "name", "title", "description", "project_category", "category",
    "funding_request_amount", "total_project_budget", "funding_needed",
    "target_population", "target_population_description",
    "primary_goals", "expected_outcomes", "outcome_measures",
    "unique_innovation", "innovation_description", "methodology", "approach",
    "current_status", "timeline", "geographic_location", "service_area",
    "partnership_approach", "matching_funds_available",
    "proposed_start_date", "funding_decision_needed",
)

SIGNIFICANT_PROFILE_FIELDS = (
    "organization_type", "organization_name",
    "small_business", "woman_owned", "minority_owned", "veteran_owned",
    "annual_revenue", "employee_count", "geographic_location", "service_area",
    "years_operating", "incorporation_year", "certifications", "registrations",
    "core_capabilities", "past_experience",
)

_BOOLEAN_PROFILE_FIELDS = {"small_business", "woman_owned", "minority_owned", "veteran_owned"}


class ProfileInvalidationPolicy(str, Enum):
    """What a significant profile change does to cached scores."""
    ALL_USER_SCORES = "all_user_scores"
    NONE = "none"


def _comparable(value: Any, as_bool: bool = False) -> Any:
    if as_bool:
        return bool(value)
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, (list, tuple, dict)):
        return json.dumps(value, sort_keys=True, default=str)
    if isinstance(value, str):
        stripped = value.strip()
        try:
            return float(stripped)
        except ValueError:
            return stripped
    return str(value)


def _changed_fields(old: Dict[str, Any], new: Dict[str, Any], fields: Sequence[str],
                    bool_fields=frozenset()) -> List[str]:
    old = old or {}
    new = new or {}
    changed = []
    for name in fields:
        as_bool = name in bool_fields
        if _comparable(old.get(name), as_bool) != _comparable(new.get(name), as_bool):
            changed.append(name)
    return changed


def has_significant_project_change(old: Dict[str, Any], new: Dict[str, Any]) -> bool:
    """True if any scoring-relevant project field differs between old and new."""
    return bool(_changed_fields(old, new, SIGNIFICANT_PROJECT_FIELDS))


def has_significant_profile_change(old: Dict[str, Any], new: Dict[str, Any]) -> bool:
    """True if any scoring-relevant profile field differs between old and new."""
    return bool(_changed_fields(old, new, SIGNIFICANT_PROFILE_FIELDS, _BOOLEAN_PROFILE_FIELDS))


class ScoringCache:
    """
    Get-or-calculate access to fit scores with smart invalidation.

    Usage:
        cache = ScoringCache(db, scorer, repository, store)
        result = cache.get_or_calculate("user-1", "project-1", "ai-web-1a2b3c4d5e6f")
        result["score"], result["cached"]
    """

    def __init__(
        self,
        db: Database,
        scorer,
        repository,
        store,
        ttl_days: int = 7,
        batch_size: int = 5,
        batch_delay: float = 0.2,
        profile_policy: ProfileInvalidationPolicy = ProfileInvalidationPolicy.ALL_USER_SCORES,
        clock: Clock = now_utc,
    ):
        """
        Args:
            db: Database holding the scoring_cache table
            scorer: FitScorer
            repository: ProfileRepository (projects and profiles)
            store: OpportunityStore
            ttl_days: Days a calculated score stays valid
            batch_size: Concurrent scores per batch
            batch_delay: Seconds between batches
            profile_policy: Effect of a significant profile change
            clock: Source of "now"
        """
        self.db = db
        self.scorer = scorer
        self.repository = repository
        self.store = store
        self.ttl = timedelta(days=ttl_days)
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self.profile_policy = profile_policy
        self.clock = clock

    # Validity

    def is_score_valid(self, calculated_at: Optional[datetime]) -> bool:
        if calculated_at is None:
            return False
        return ensure_aware(self.clock()) - ensure_aware(calculated_at) < self.ttl

    # Rows

    def _row_to_record(self, row) -> CacheRecord:
        return CacheRecord(
            user_id=row["user_id"],
            project_id=row["project_id"],
            opportunity_id=row["opportunity_id"],
            fit_score=row["fit_score"] if row["fit_score"] is not None else 0.0,
            analysis_payload=json.loads(row["analysis_json"]) if row["analysis_json"] else {},
            calculated_at=parse_timestamp(row["score_calculated_at"]),
            status=CacheStatus(row["status"]),
        )

    def get_record(self, user_id: str, project_id: str, opportunity_id: str) -> Optional[CacheRecord]:
        with self.db.get_connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM scoring_cache
                WHERE user_id = ? AND project_id = ? AND opportunity_id = ?
                LIMIT 1
                """,
                (str(user_id), str(project_id), str(opportunity_id)),
            ).fetchone()
        return self._row_to_record(row) if row else None

    def save(self, record: CacheRecord) -> None:
        """
        Upsert a cache row on its (user, project, opportunity) key.

        A failed upsert is retried once as a plain insert.

        Raises:
            PersistenceError: if both the upsert and the insert fail
        """
        key = f"{record.user_id}/{record.project_id}/{record.opportunity_id}"
        params = (
            record.user_id,
            record.project_id,
            record.opportunity_id,
            record.fit_score,
            json.dumps(record.analysis_payload, default=str),
            record.calculated_at.isoformat() if record.calculated_at else None,
            record.status.value,
            ensure_aware(self.clock()).isoformat(),
        )
        try:
            with self.db.get_connection() as conn:
                conn.execute(_UPSERT_SQL, params)
        except sqlite3.Error as e:
            logger.warning(f"Score cache upsert failed for {key}, retrying as insert: {e}")
            try:
                with self.db.get_connection() as conn:
                    conn.execute(_INSERT_SQL, params)
            except sqlite3.Error as e2:
                logger.error(f"Insert fallback failed for {key}: {e2}")
                raise PersistenceError(f"Could not cache score for {key}: {e2}") from e2

    # Get or calculate

    def get_or_calculate(self, user_id: str, project_id: str, opportunity_id: str,
                         force_recalculate: bool = False) -> Dict[str, Any]:
        """
        Cached score if still valid, otherwise a fresh score (which is cached).

        Returns:
            {"score", "cached", "analysis", "last_calculated"}

        Raises:
            MissingDataError: if the project, profile or opportunity does not exist
            PersistenceError: if the new score cannot be cached
        """
        user_id, project_id, opportunity_id = str(user_id), str(project_id), str(opportunity_id)

        if not force_recalculate:
            record = self.get_record(user_id, project_id, opportunity_id)
            if (record and record.status == CacheStatus.SCORED
                    and self.is_score_valid(record.calculated_at)):
                logger.debug(f"Cache hit: {user_id}/{project_id}/{opportunity_id}")
                return {
                    "score": record.fit_score,
                    "cached": True,
                    "analysis": record.analysis_payload,
                    "last_calculated": record.calculated_at,
                }

        project = self.repository.get_project(project_id)
        profile = self.repository.get_profile(user_id)
        opportunity = self.store.get(opportunity_id)

        missing = [name for name, value in (
            ("project", project), ("profile", profile), ("opportunity", opportunity)
        ) if value is None]
        if missing:
            raise MissingDataError(
                f"Missing {', '.join(missing)} for {user_id}/{project_id}/{opportunity_id}"
            )

        result = self.scorer.score(opportunity, project, profile)
        calculated_at = ensure_aware(self.clock())
        record = CacheRecord(
            user_id=user_id,
            project_id=project_id,
            opportunity_id=opportunity_id,
            fit_score=result.final_score,
            analysis_payload=result.to_dict(),
            calculated_at=calculated_at,
            status=CacheStatus.SCORED,
        )
        self.save(record)

        logger.debug(f"Calculated score {result.final_score} for {user_id}/{project_id}/{opportunity_id}")
        return {
            "score": record.fit_score,
            "cached": False,
            "analysis": record.analysis_payload,
            "last_calculated": calculated_at,
        }

    async def aget_or_calculate(self, user_id: str, project_id: str, opportunity_id: str,
                                force_recalculate: bool = False) -> Dict[str, Any]:
        return await asyncio.to_thread(
            self.get_or_calculate, user_id, project_id, opportunity_id, force_recalculate
        )

    async def batch_calculate_scores(
        self,
        user_id: str,
        project_id: str,
        opportunity_ids: Sequence[str],
        force_recalculate: bool = False,
        progress: Optional[Callable[[], None]] = None,
    ) -> Dict[str, Any]:
        """
        Score many opportunities for one project in small concurrent groups.

        One failure never blocks the rest of the batch.

        Returns:
            {"total", "successful", "failed", "results"}
        """
        async def worker(opportunity_id: str) -> Dict[str, Any]:
            try:
                return await self.aget_or_calculate(user_id, project_id, opportunity_id, force_recalculate)
            finally:
                if progress:
                    progress()

        outcomes = await run_in_batches(
            list(opportunity_ids),
            worker,
            batch_size=self.batch_size,
            delay=self.batch_delay,
            label="scoring",
        )

        results = []
        for outcome in outcomes:
            if outcome.ok:
                results.append({
                    "opportunity_id": outcome.item,
                    "success": True,
                    "score": outcome.value["score"],
                    "cached": outcome.value["cached"],
                })
            else:
                logger.warning(f"Scoring failed for {outcome.item}: {outcome.error}")
                results.append({
                    "opportunity_id": outcome.item,
                    "success": False,
                    "error": str(outcome.error),
                })

        successful = sum(1 for r in results if r["success"])
        summary = {
            "total": len(results),
            "successful": successful,
            "failed": len(results) - successful,
            "results": results,
        }
        logger.info(
            f"Batch scoring for project {project_id}: "
            f"{summary['successful']}/{summary['total']} succeeded"
        )
        return summary

    # Invalidation

    def _invalidate(self, where: str, params: tuple) -> int:
        with self.db.get_connection() as conn:
            cursor = conn.execute(
                f"""
                UPDATE scoring_cache
                SET score_calculated_at = NULL,
                    status = ?,
                    updated_at = ?
                WHERE {where}
                """,
                (CacheStatus.NEEDS_SCORING.value, ensure_aware(self.clock()).isoformat()) + params,
            )
            return cursor.rowcount

    def invalidate_project_scores(self, user_id: str, project_id: str) -> int:
        """Mark every cached score of a project as needing scoring."""
        count = self._invalidate("user_id = ? AND project_id = ?", (str(user_id), str(project_id)))
        logger.info(f"Invalidated {count} cached scores for project {project_id}")
        return count

    def invalidate_user_scores(self, user_id: str) -> int:
        """Mark every cached score of a user as needing scoring."""
        count = self._invalidate("user_id = ?", (str(user_id),))
        logger.info(f"Invalidated {count} cached scores for user {user_id}")
        return count

    def invalidate_on_project_update(self, user_id: str, project_id: str,
                                     old_project: Dict[str, Any],
                                     new_project: Dict[str, Any]) -> bool:
        """
        Invalidate a project's scores if a significant field changed.

        Returns:
            True if the change was significant (scores invalidated)
        """
        changed = _changed_fields(old_project, new_project, SIGNIFICANT_PROJECT_FIELDS)
        if not changed:
            logger.debug(f"Project {project_id} update has no significant changes")
            return False

        logger.info(f"Project {project_id} changed significantly: {', '.join(changed)}")
        self.invalidate_project_scores(user_id, project_id)
        return True

    def invalidate_on_profile_update(self, user_id: str, old_profile: Dict[str, Any],
                                     new_profile: Dict[str, Any]) -> bool:
        """
        Invalidate the user's scores if a significant profile field changed.

        The profile feeds every (project, opportunity) pairing, so under the
        default policy all of the user's scores are invalidated.

        Returns:
            True if the change was significant
        """
        changed = _changed_fields(old_profile, new_profile, SIGNIFICANT_PROFILE_FIELDS,
                                  _BOOLEAN_PROFILE_FIELDS)
        if not changed:
            logger.debug(f"Profile update for {user_id} has no significant changes")
            return False

        logger.info(f"Profile for {user_id} changed significantly: {', '.join(changed)}")
        if self.profile_policy == ProfileInvalidationPolicy.ALL_USER_SCORES:
            self.invalidate_user_scores(user_id)
        return True

    # Reporting and maintenance

    def get_project_scores(self, user_id: str, project_id: str) -> List[Dict[str, Any]]:
        """Cached scores of a project, best first, with age and staleness."""
        with self.db.get_connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM scoring_cache
                WHERE user_id = ? AND project_id = ?
                ORDER BY fit_score DESC
                """,
                (str(user_id), str(project_id)),
            ).fetchall()

        now = self.clock()
        scores = []
        for row in rows:
            record = self._row_to_record(row)
            entry = record.to_dict()
            entry["score_age"] = age_description(record.calculated_at, now)
            entry["is_stale"] = (
                record.status != CacheStatus.SCORED or not self.is_score_valid(record.calculated_at)
            )
            scores.append(entry)
        return scores

    def cleanup_old_scores(self, days_old: int = 30) -> int:
        """Delete scored rows calculated more than `days_old` days ago."""
        cutoff = ensure_aware(self.clock()) - timedelta(days=days_old)
        with self.db.get_connection() as conn:
            cursor = conn.execute(
                """
                DELETE FROM scoring_cache
                WHERE status = ? AND score_calculated_at < ?
                """,
                (CacheStatus.SCORED.value, cutoff.isoformat()),
            )
            deleted = cursor.rowcount

        logger.info(f"Cleaned up {deleted} cached scores older than {days_old} days")
        return deleted
