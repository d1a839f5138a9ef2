"""
Usage Report Collector
Downloads Microsoft 365 usage reports. Graph answers report functions with
a redirect to a CSV file, which is parsed into one dict per row.
"""

from __future__ import annotations

import csv
import io
import logging
import re
from datetime import date as date_type
from typing import Optional, Union

from ..config import USAGE_REPORT_PERIODS
from .base import BaseCollector, FetchAborted

logger = logging.getLogger("m365_toolkit.collectors.usage")

_REPORT_NAME_RE = re.compile(r"^[A-Za-z0-9]+$")


def report_endpoint(
    name: str,
    period: Optional[str] = None,
    date: Union[str, date_type, None] = None,
) -> str:
    """reports/<name>(period='D7') or reports/<name>(date=YYYY-MM-DD)."""
    if not _REPORT_NAME_RE.match(name or ""):
        raise ValueError(f"Invalid usage report name: {name!r}")
    if (period is None) == (date is None):
        raise ValueError("Specify exactly one of period or date.")

    if period is not None:
        period = period.upper()
        if period not in USAGE_REPORT_PERIODS:
            raise ValueError(
                f"Invalid period {period!r}; expected one of {', '.join(USAGE_REPORT_PERIODS)}"
            )
        return f"reports/{name}(period='{period}')"

    if isinstance(date, date_type):
        day = date.isoformat()
    else:
        day = date_type.fromisoformat(str(date)).isoformat()
    return f"reports/{name}(date={day})"


def parse_report_csv(text: str) -> list[dict[str, str]]:
    return [dict(row) for row in csv.DictReader(io.StringIO(text.lstrip("\ufeff")))]


class UsageReportCollector(BaseCollector):
    name = "usage"
    description = "Microsoft 365 usage reports"

    async def get_report(
        self,
        name: str,
        period: Optional[str] = None,
        date: Union[str, date_type, None] = None,
    ) -> list[dict[str, str]]:
        endpoint = report_endpoint(name, period=period, date=date)
        result = self.new_result()
        try:
            text = await self.graph.get_text(endpoint)
        except Exception as e:
            result.add_error(f"Failed to download {endpoint}: {e}")
            raise FetchAborted(self.name, list(result.errors)) from e

        rows = parse_report_csv(text)
        logger.info(f"[{self.name}] {name}: {len(rows)} rows")
        result.add_data(name, rows)
        result.complete()
        return rows
