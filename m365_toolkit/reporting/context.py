"""
Report context and row flattening shared by every exporter.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union

from .. import __version__
from ..models import Record

Row = Union[Record, dict]

# Attributes tried, in order, when a nested record is reduced to one label
_LABEL_ATTRS = ("display_name", "control_name", "role_name", "name", "id")


@dataclass
class ReportContext:
    """Per-report metadata handed explicitly to every exporter."""
    title: str
    report_name: str                       # File stem, e.g. "roles"
    tenant_name: str = "Unknown Tenant"
    version: str = __version__
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def stamp(self) -> str:
        return self.generated_at.strftime("%Y%m%d_%H%M%S")

    def filename(self, extension: str) -> str:
        return f"{self.report_name}_{self.stamp}.{extension}"

    def to_dict(self) -> dict:
        return {
            "tool": "M365 Graph Toolkit",
            "version": self.version,
            "title": self.title,
            "report": self.report_name,
            "tenant": self.tenant_name,
            "generated_utc": self.generated_at.isoformat(),
        }


def row_to_dict(row: Row) -> dict[str, Any]:
    return row.to_dict() if isinstance(row, Record) else dict(row)


def label(value: Any) -> str:
    """Short text for a nested record inside a flat cell."""
    if isinstance(value, Record):
        for attr in _LABEL_ATTRS:
            text = getattr(value, attr, None)
            if text:
                return str(text)
        return str(value.to_dict())
    if isinstance(value, dict):
        for attr in ("displayName", "display_name", "name", "id"):
            if value.get(attr):
                return str(value[attr])
        return str(value)
    return "" if value is None else str(value)


def flatten_value(value: Any) -> Any:
    """Reduce one field value to a scalar suitable for a table cell."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, tuple, set)):
        return "; ".join(label(v) for v in value)
    if isinstance(value, (Record, dict)):
        return label(value)
    if value is None:
        return ""
    return value


def flatten_row(row: Row) -> dict[str, Any]:
    if isinstance(row, Record):
        return {f.name: flatten_value(getattr(row, f.name)) for f in fields(row)}  # type: ignore[arg-type]
    return {k: flatten_value(v) for k, v in row.items()}


def columns_for(rows: list[dict[str, Any]]) -> list[str]:
    """Union of keys in first-seen order."""
    columns: list[str] = []
    seen = set()
    for row in rows:
        for key in row:
            if key not in seen:
                seen.add(key)
                columns.append(key)
    return columns
