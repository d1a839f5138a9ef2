"""Reporting package — multi-format output generation."""

from .context import ReportContext
from .json_export import export_json
from .csv_export import export_csv
from .html_report import export_html, render_html

__all__ = [
    "ReportContext",
    "export_json",
    "export_csv",
    "export_html",
    "render_html",
]
