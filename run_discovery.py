#!/usr/bin/env python3
"""
Funding discovery command line.

Usage:
    python run_discovery.py discover "clean energy nonprofit" --user u1
    python run_discovery.py discover --user u1 --resource-only --exclude example.org
    python run_discovery.py discover --user u1 --db-first
    python run_discovery.py score-batch --user u1 --project p1 --limit 50
    python run_discovery.py scores --user u1 --project p1
    python run_discovery.py reclassify ai-web-1a2b3c4d --non-monetary --types software cloud_credits
    python run_discovery.py cleanup --days 30
"""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace

from dotenv import load_dotenv
from tqdm import tqdm

from funding_discovery.config import DiscoveryConfig, Settings
from funding_discovery.core.errors import FundingDiscoveryError
from funding_discovery.pipeline import DiscoveryPipeline, DiscoveryRequest
from funding_discovery.storage.opportunity_store import AI_DISCOVERY_SOURCE


load_dotenv()

logger = logging.getLogger(__name__)


def cmd_discover(pipeline: DiscoveryPipeline, args) -> int:
    request = DiscoveryRequest(
        user_id=args.user,
        search_query=args.query,
        project_type=args.project_type,
        organization_type=args.organization_type,
        search_depth=args.depth,
        resource_only=args.resource_only,
        db_first=args.db_first,
        extra_exclusions=args.exclude or (),
    )
    result = pipeline.discover_sync(request)

    if not result["success"]:
        logger.error(f"Discovery failed: {result['error']}")
        return 1

    logger.info("=" * 60)
    logger.info("DISCOVERY COMPLETE")
    logger.info(f"  Query: {result['searchQuery']}")
    logger.info(f"  Opportunities: {result['opportunitiesFound']}")
    logger.info(f"  From cache: {result['usedCache']}")
    logger.info("=" * 60)

    for opp in result["opportunities"]:
        kind = "resource" if opp["isNonMonetaryResource"] else "grant"
        print(f"{opp['fitScore']:5.1f}  [{kind}] {opp['title']}  ({opp['sourceUrl']})")

    if args.json:
        print(json.dumps(result, indent=2, default=str))
    return 0


def cmd_score_batch(pipeline: DiscoveryPipeline, args) -> int:
    rows = pipeline.store.list_opportunities(limit=args.limit, source=AI_DISCOVERY_SOURCE)
    ids = [row["id"] for row in rows]
    if not ids:
        logger.warning("No stored opportunities to score")
        return 0

    with tqdm(total=len(ids), desc="Scoring") as bar:
        summary = asyncio.run(pipeline.cache.batch_calculate_scores(
            args.user, args.project, ids,
            force_recalculate=args.force,
            progress=bar.update,
        ))

    logger.info(f"Scored {summary['successful']}/{summary['total']} ({summary['failed']} failed)")
    return 0 if summary["failed"] == 0 else 1


def cmd_scores(pipeline: DiscoveryPipeline, args) -> int:
    for entry in pipeline.cache.get_project_scores(args.user, args.project):
        stale = " (stale)" if entry["is_stale"] else ""
        print(f"{entry['fit_score']:5.1f}  {entry['opportunity_id']}  {entry['score_age']}{stale}")
    return 0


def cmd_reclassify(pipeline: DiscoveryPipeline, args) -> int:
    updated = pipeline.store.reclassify(args.opportunity_id, args.non_monetary, args.types)
    return 0 if updated else 1


def cmd_cleanup(pipeline: DiscoveryPipeline, args) -> int:
    deleted = pipeline.cache.cleanup_old_scores(args.days)
    if pipeline.fetcher.cache:
        deleted += pipeline.fetcher.cache.cleanup_expired()
    logger.info(f"Removed {deleted} expired rows")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='AI funding discovery')
    parser.add_argument('--db', help='SQLite database path (default: FUNDING_DB_PATH or funding.db)')
    parser.add_argument('--no-delays', action='store_true', help='Skip inter-batch delays')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    sub = parser.add_subparsers(dest='command', required=True)

    p = sub.add_parser('discover', help='Search the web for funding opportunities')
    p.add_argument('query', nargs='?', help='Search query (derived from profile/projects if omitted)')
    p.add_argument('--user', required=True, help='User id')
    p.add_argument('--project-type', help='Project type filter')
    p.add_argument('--organization-type', help='Organization type (default: from profile)')
    p.add_argument('--depth', choices=['quick', 'standard', 'comprehensive'], help='Override search depth')
    p.add_argument('--resource-only', action='store_true', help='Look for non-monetary resources only')
    p.add_argument('--db-first', action='store_true', help='Return recent stored results if any')
    p.add_argument('--exclude', nargs='*', help='Extra domains to exclude')
    p.add_argument('--json', action='store_true', help='Print the full result as JSON')
    p.set_defaults(func=cmd_discover)

    p = sub.add_parser('score-batch', help='Score stored opportunities for a project')
    p.add_argument('--user', required=True)
    p.add_argument('--project', required=True)
    p.add_argument('--limit', type=int, default=100)
    p.add_argument('--force', action='store_true', help='Ignore cached scores')
    p.set_defaults(func=cmd_score_batch)

    p = sub.add_parser('scores', help='List cached scores for a project')
    p.add_argument('--user', required=True)
    p.add_argument('--project', required=True)
    p.set_defaults(func=cmd_scores)

    p = sub.add_parser('reclassify', help='Mark an opportunity as monetary or non-monetary')
    p.add_argument('opportunity_id')
    p.add_argument('--non-monetary', action='store_true')
    p.add_argument('--types', nargs='*', default=[], help='Resource types')
    p.set_defaults(func=cmd_reclassify)

    p = sub.add_parser('cleanup', help='Delete old cached scores and expired fetches')
    p.add_argument('--days', type=int, default=30)
    p.set_defaults(func=cmd_cleanup)

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    settings = Settings.from_env()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else getattr(logging, settings.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    if args.db:
        settings = replace(settings, db_path=args.db)

    config = DiscoveryConfig()
    if args.no_delays:
        config = config.without_delays()

    try:
        if args.func is cmd_discover:
            settings.require_llm()
        pipeline = DiscoveryPipeline.from_settings(settings, config)
        return args.func(pipeline, args)
    except FundingDiscoveryError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
