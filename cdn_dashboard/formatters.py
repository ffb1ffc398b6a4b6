from typing import Dict, List, Any
import logging
from prettytable import PrettyTable

from .types import Snapshot

logger = logging.getLogger(__name__)

SUMMARY_COLUMNS = ['Account', 'Zone', 'Days', 'Hours', 'Requests (latest day)', 'Cached %', 'Status']
SUMMARY_TYPES = {
    'Days': 'numeric',
    'Hours': 'numeric',
    'Requests (latest day)': 'numeric',
    'Cached %': 'percentage',
}


class TableFormatter:
    """Handles table formatting and presentation"""

    def __init__(self):
        self.alignments = {
            'numeric': 'r',
            'text': 'l',
            'percentage': 'r'
        }

    def format_table(self, data: List[Dict], columns: List[str],
                     column_types: Dict[str, str]) -> PrettyTable:
        """Create consistently formatted table"""
        table = PrettyTable()
        table.field_names = columns

        for col in columns:
            col_type = column_types.get(col, 'text')
            table.align[col] = self.alignments.get(col_type, 'l')

        for row in data:
            table.add_row([
                self._format_value(row.get(col, ''), column_types.get(col, 'text'))
                for col in columns
            ])

        return table

    def _format_value(self, value: Any, value_type: str) -> str:
        if value is None or value == '':
            return self._get_default_value(value_type)
        if value_type == 'numeric' and isinstance(value, (int, float)):
            return f"{value:,}"
        if value_type == 'percentage' and isinstance(value, (int, float)):
            return f"{value:.1f}%"
        return str(value)

    def _get_default_value(self, value_type: str) -> str:
        return {'numeric': '0', 'percentage': '-'}.get(value_type, '')


def summary_rows(snapshot: Snapshot) -> List[Dict]:
    rows = []
    for account in snapshot.accounts:
        for zone in account.zones:
            latest = zone.days[0] if zone.days else None
            cached = None
            if latest and latest.requests:
                cached = latest.cachedRequests / latest.requests * 100
            rows.append({
                'Account': account.name,
                'Zone': zone.domain,
                'Days': len(zone.days),
                'Hours': len(zone.hours),
                'Requests (latest day)': latest.requests if latest else None,
                'Cached %': cached,
                'Status': f"error: {zone.error}" if zone.error else 'ok',
            })
    return rows


def format_snapshot_summary(snapshot: Snapshot) -> str:
    """Plain-text table of a snapshot, one row per zone."""
    rows = summary_rows(snapshot)
    if not rows:
        return 'No zones configured.'
    return TableFormatter().format_table(rows, SUMMARY_COLUMNS, SUMMARY_TYPES).get_string()
