#!/usr/bin/env python3
"""
Export stored opportunities (and optionally a project's cached scores) to Excel.

Usage:
    python scripts/export_to_excel.py [--limit N] [--output FILENAME]
    python scripts/export_to_excel.py --user u1 --project p1

Examples:
    python scripts/export_to_excel.py                     # All discovered opportunities
    python scripts/export_to_excel.py --limit 20          # Top 20 by fit score
    python scripts/export_to_excel.py --output test.xlsx  # Custom output file
"""

import sys
import argparse
import logging
from datetime import datetime
from typing import Any, Dict, List

import pandas as pd
from dotenv import load_dotenv
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter

from funding_discovery.config import Settings
from funding_discovery.core.money import format_usd_amount
from funding_discovery.storage.db import Database
from funding_discovery.storage.opportunity_store import OpportunityStore
from funding_discovery.storage.profile_repository import ProfileRepository
from funding_discovery.storage.scoring_cache import ScoringCache


load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# (column, width)
COLUMNS = [
    ('ID', 22),
    ('Title', 50),
    ('Sponsor', 30),
    ('Type', 10),
    ('Resource Types', 25),
    ('Amount', 25),
    ('Deadline', 12),
    ('Fit Score', 10),
    ('Priority', 10),
    ('Urgency', 12),
    ('Competitiveness', 15),
    ('Recommendation', 15),
    ('Needs Review', 12),
    ('Eligibility', 60),
    ('Description', 60),
    ('URL', 50),
    ('Updated', 18),
]

HEADER_FILL = PatternFill(start_color="1F4E79", end_color="1F4E79", fill_type="solid")
HEADER_FONT = Font(bold=True, color="FFFFFF")
WRAPPED = {'Eligibility', 'Description'}


def amount_display(row: Dict[str, Any]) -> str:
    low, high = row.get('amount_min'), row.get('amount_max')
    if low and high and low != high:
        return f"{format_usd_amount(low)} - {format_usd_amount(high)}"
    if high or low:
        return format_usd_amount(high or low)
    return ''


def opportunity_rows(opportunities: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Flatten stored opportunities into spreadsheet rows."""
    rows = []
    for opp in opportunities:
        description = opp['description'] or ''
        rows.append({
            'ID': opp['id'],
            'Title': opp['title'],
            'Sponsor': opp['sponsor'] or '',
            'Type': opp['type'],
            'Resource Types': ', '.join(opp['resource_types']),
            'Amount': amount_display(opp),
            'Deadline': opp['deadline_date'] or 'Rolling',
            'Fit Score': opp['fit_score'],
            'Priority': opp['application_priority'] or '',
            'Urgency': opp['timeline_urgency'] or '',
            'Competitiveness': opp['competitiveness'] or '',
            'Recommendation': opp['recommendation_strength'] or '',
            'Needs Review': 'yes' if opp['needs_review'] else '',
            'Eligibility': '; '.join(opp['eligibility']),
            'Description': (description[:500] + '...') if len(description) > 500 else description,
            'URL': opp['url'],
            'Updated': opp['updated_at'].replace(tzinfo=None) if opp['updated_at'] else None,
        })
    return rows


def score_rows(scores: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {
            'Opportunity': s['opportunity_id'],
            'Fit Score': s['fit_score'],
            'Status': s['status'],
            'Calculated': s['calculated_at'] or '',
            'Age': s['score_age'],
            'Stale': 'yes' if s['is_stale'] else '',
        }
        for s in scores
    ]


def style_sheet(ws, widths: Dict[str, int]):
    for col_idx, cell in enumerate(ws[1], 1):
        cell.font = HEADER_FONT
        cell.fill = HEADER_FILL
        cell.alignment = Alignment(horizontal='center', vertical='center')
        ws.column_dimensions[get_column_letter(col_idx)].width = widths.get(cell.value, 15)

        if cell.value in WRAPPED:
            for row in ws.iter_rows(min_row=2, min_col=col_idx, max_col=col_idx):
                row[0].alignment = Alignment(wrap_text=True, vertical='top')

    # Freeze header row
    ws.freeze_panes = 'A2'


def export_to_excel(opportunities: List[Dict[str, Any]], filename: str,
                    scores: List[Dict[str, Any]] = None):
    """
    Write opportunities (and cached scores, if given) to an Excel workbook.

    Args:
        opportunities: Rows from OpportunityStore
        filename: Output Excel filename
        scores: Rows from ScoringCache.get_project_scores
    """
    df = pd.DataFrame(opportunity_rows(opportunities), columns=[c for c, _ in COLUMNS])

    with pd.ExcelWriter(filename, engine='openpyxl') as writer:
        df.to_excel(writer, sheet_name='Opportunities', index=False)
        style_sheet(writer.sheets['Opportunities'], dict(COLUMNS))

        if scores:
            pd.DataFrame(score_rows(scores)).to_excel(writer, sheet_name='Cached Scores', index=False)
            style_sheet(writer.sheets['Cached Scores'], {'Opportunity': 25, 'Calculated': 28})

    logger.info(f"Excel file saved: {filename}")


def main():
    parser = argparse.ArgumentParser(description='Export discovered opportunities to Excel')
    parser.add_argument('--limit', type=int, default=500,
                        help='Maximum number of opportunities to export')
    parser.add_argument('--output', type=str, default=None,
                        help='Output Excel filename (default: auto-generated)')
    parser.add_argument('--source', type=str, default=None,
                        help='Only export this source (e.g. ai_web_discovery)')
    parser.add_argument('--user', type=str, help='User id (with --project, adds cached scores)')
    parser.add_argument('--project', type=str, help='Project id')
    args = parser.parse_args()

    settings = Settings.from_env()
    db = Database(settings.db_path)
    store = OpportunityStore(db)

    opportunities = store.list_opportunities(limit=args.limit, source=args.source)
    if not opportunities:
        logger.error(f"No opportunities found in {settings.db_path}")
        sys.exit(1)

    scores = None
    if args.user and args.project:
        cache = ScoringCache(db, scorer=None, repository=ProfileRepository(db), store=store)
        scores = cache.get_project_scores(args.user, args.project)

    if args.output:
        filename = args.output
    else:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        filename = f"funding_opportunities_{timestamp}.xlsx"

    export_to_excel(opportunities, filename, scores)

    logger.info("=" * 60)
    logger.info("SUMMARY")
    logger.info(f"  Opportunities exported: {len(opportunities)}")
    logger.info(f"  Cached scores exported: {len(scores or [])}")
    logger.info(f"  Output file: {filename}")
    logger.info("=" * 60)


if __name__ == '__main__':
    main()
