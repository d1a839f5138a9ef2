"""
CSV exporter — One flat row per record; list fields are joined with "; ".
"""

from __future__ import annotations

import csv
from pathlib import Path
from typing import Optional

from .context import ReportContext, Row, columns_for, flatten_row


def export_csv(
    rows: list[Row],
    output_dir: Path,
    context: ReportContext,
    columns: Optional[list[str]] = None,
) -> Path:
    """
    Write rows to a CSV file. Columns default to every field seen.

    Returns:
        Path to the created CSV file.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    flat = [flatten_row(r) for r in rows]
    fieldnames = columns or columns_for(flat)

    filepath = output_dir / context.filename("csv")
    # utf-8-sig so Excel detects the encoding
    with open(filepath, "w", newline="", encoding="utf-8-sig") as fh:
        writer = csv.DictWriter(fh, fieldnames=fieldnames, extrasaction="ignore")
        writer.writeheader()
        for row in flat:
            writer.writerow(row)

    return filepath
