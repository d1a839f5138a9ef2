"""
JSON exporter — Writes the full, nested result set of one operation.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

from .context import ReportContext, Row, row_to_dict


def export_json(
    rows: list[Row],
    output_dir: Path,
    context: ReportContext,
    metadata: Optional[dict] = None,
) -> Path:
    """
    Write rows plus report metadata to a JSON file.

    Returns:
        Path to the created JSON file.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    payload = {
        "metadata": {**context.to_dict(), "count": len(rows), **(metadata or {})},
        "rows": [row_to_dict(r) for r in rows],
    }

    filepath = output_dir / context.filename("json")
    with open(filepath, "w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2, default=str, ensure_ascii=False)

    return filepath
