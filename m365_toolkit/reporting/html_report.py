"""
HTML Report — Single-file HTML output for any toolkit result set.

Generates a self-contained page with inline CSS: a header, a row of summary
cards, and one table. Fields that hold lists of records (role members,
secure score controls) render as expandable sub-tables inside their cell.
"""

from __future__ import annotations

import html
from dataclasses import fields
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from ..models import Record
from .context import ReportContext, Row, columns_for, flatten_value


# ---------------------------------------------------------------------------
# Colour palette
# ---------------------------------------------------------------------------
_STATUS_COLOURS = {
    "removed":     {"bg": "#16a34a", "fg": "#fff"},
    "provisioned": {"bg": "#16a34a", "fg": "#fff"},
    "granted":     {"bg": "#16a34a", "fg": "#fff"},
    "failed":      {"bg": "#dc2626", "fg": "#fff"},
    "expired":     {"bg": "#dc2626", "fg": "#fff"},
    "denied":      {"bg": "#dc2626", "fg": "#fff"},
    "revoked":     {"bg": "#ea580c", "fg": "#fff"},
    "dryrun":      {"bg": "#2563eb", "fg": "#fff"},
    "skipped":     {"bg": "#6b7280", "fg": "#fff"},
}
_DEFAULT_BADGE = {"bg": "#6b7280", "fg": "#fff"}

_BADGE_COLUMNS = {"status", "status_code"}

_SCORE_COLOUR_MAP = [
    (0,  40, "#dc2626"),   # red
    (40, 60, "#ea580c"),   # orange
    (60, 75, "#d97706"),   # amber
    (75, 90, "#16a34a"),   # green
    (90, 101, "#059669"),  # emerald
]


# ---------------------------------------------------------------------------
# Utility helpers
# ---------------------------------------------------------------------------

def _score_colour(score: float) -> str:
    for lo, hi, colour in _SCORE_COLOUR_MAP:
        if lo <= score < hi:
            return colour
    return "#6b7280"


def _esc(val: Any) -> str:
    if val is None:
        return ""
    return html.escape(str(val))


def _badge(text: str) -> str:
    c = _STATUS_COLOURS.get(text.lower().replace(" ", ""), _DEFAULT_BADGE)
    return (
        f'<span class="badge" style="background:{c["bg"]};color:{c["fg"]}">'
        f'{_esc(text)}</span>'
    )


def _heading(key: str) -> str:
    return key.replace("_", " ").title()


def _nested_records(value: Any) -> bool:
    return isinstance(value, list) and bool(value) and all(isinstance(v, (Record, dict)) for v in value)


def _sub_table(items: list) -> str:
    """Build a compact table from a list of records or dicts."""
    flat = [
        {f.name: flatten_value(getattr(i, f.name)) for f in fields(i)} if isinstance(i, Record)
        else {k: flatten_value(v) for k, v in i.items()}
        for i in items
    ]
    cols = columns_for(flat)
    header = "".join(f"<th>{_esc(_heading(k))}</th>" for k in cols)
    body = "".join(
        "<tr>" + "".join(f"<td>{_esc(row.get(k, ''))}</td>" for k in cols) + "</tr>"
        for row in flat
    )
    return (
        f"<table class='sub-table'><thead><tr>{header}</tr></thead>"
        f"<tbody>{body}</tbody></table>"
    )


def _cell(key: str, value: Any) -> str:
    if _nested_records(value):
        return (
            f'<details class="sub-details"><summary>{len(value)} {_esc(_heading(key).lower())}</summary>'
            f'<div class="sub-content">{_sub_table(value)}</div></details>'
        )
    if key in _BADGE_COLUMNS and value:
        return _badge(str(value.value if isinstance(value, Enum) else value))
    if key == "expired" and value is True:
        return _badge("Expired")
    if key == "percentage" and isinstance(value, (int, float)):
        return f'<strong style="color:{_score_colour(value)}">{value:.1f}%</strong>'
    if isinstance(value, bool):
        return "Yes" if value else "No"
    return _esc(flatten_value(value))


def _raw_fields(row: Row) -> dict[str, Any]:
    if isinstance(row, Record):
        return {f.name: getattr(row, f.name) for f in fields(row)}  # type: ignore[arg-type]
    return dict(row)


# ---------------------------------------------------------------------------
# Main renderer
# ---------------------------------------------------------------------------

def _render_html(
    rows: list[Row],
    context: ReportContext,
    columns: Optional[list[str]],
    summary: dict[str, Any],
) -> str:
    """Build the full HTML string."""
    raw_rows = [_raw_fields(r) for r in rows]
    cols = columns or columns_for(raw_rows)

    cards = [("Rows", len(rows))] + list(summary.items())
    cards_html = "\n".join(
        f"""
        <div class="stat-card">
          <div class="stat-value">{_esc(value)}</div>
          <div class="stat-label">{_esc(name)}</div>
        </div>"""
        for name, value in cards
    )

    if raw_rows:
        header = "".join(f"<th>{_esc(_heading(k))}</th>" for k in cols)
        body = "\n".join(
            "<tr>" + "".join(f"<td>{_cell(k, row.get(k))}</td>" for k in cols) + "</tr>"
            for row in raw_rows
        )
        table_html = f"""
    <table class="data-table">
      <thead><tr>{header}</tr></thead>
      <tbody>
        {body}
      </tbody>
    </table>"""
    else:
        table_html = '<p class="muted">No records matched.</p>'

    generated = context.generated_at
    generated_text = (
        generated.strftime("%Y-%m-%d %H:%M:%S UTC") if isinstance(generated, datetime) else str(generated)
    )

    return f"""<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="UTF-8">
<meta name="viewport" content="width=device-width, initial-scale=1.0">
<title>{_esc(context.title)} · {_esc(context.tenant_name)}</title>
<style>
/* ---------- Reset & base ---------- */
*, *::before, *::after {{ box-sizing: border-box; margin: 0; padding: 0; }}
html {{ font-size: 15px; }}
body {{
  font-family: "Segoe UI", -apple-system, BlinkMacSystemFont, Roboto, "Helvetica Neue", sans-serif;
  background: #f8fafc; color: #1e293b; line-height: 1.55;
}}

/* ---------- Layout ---------- */
.page {{ max-width: 1400px; margin: 0 auto; padding: 2rem 1.5rem; }}

/* ---------- Header ---------- */
.report-header {{
  background: linear-gradient(135deg, #0f172a 0%, #1e3a5f 100%);
  color: #f1f5f9; padding: 2rem 2.5rem; border-radius: 12px;
  margin-bottom: 2rem; display: flex; justify-content: space-between; align-items: center; flex-wrap: wrap; gap: 1rem;
}}
.report-header h1 {{ font-size: 1.6rem; font-weight: 700; margin-bottom: .3rem; }}
.report-header .subtitle {{ font-size: .85rem; opacity: .75; }}
.report-header .meta {{ font-size: .78rem; opacity: .65; line-height: 1.7; text-align: right; }}

/* ---------- Summary cards ---------- */
.stat-grid {{
  display: grid; grid-template-columns: repeat(auto-fill, minmax(180px, 1fr));
  gap: 1rem; margin-bottom: 2rem;
}}
.stat-card {{
  background: #fff; border-radius: 10px; padding: 1rem 1.2rem;
  box-shadow: 0 1px 3px rgba(0,0,0,.06);
}}
.stat-value {{ font-size: 1.6rem; font-weight: 800; line-height: 1.1; }}
.stat-label {{ font-size: .78rem; color: #64748b; text-transform: uppercase; letter-spacing: .04em; }}

/* ---------- Data table ---------- */
.data-table {{ width: 100%; border-collapse: separate; border-spacing: 0; background: #fff; border-radius: 10px; }}
.data-table th {{
  text-align: left; font-size: .72rem; text-transform: uppercase;
  letter-spacing: .04em; color: #64748b; padding: .6rem .8rem;
  background: #f8fafc; position: sticky; top: 0; z-index: 2;
  border-bottom: 2px solid #e2e8f0; white-space: nowrap;
}}
.data-table td {{ padding: .6rem .8rem; vertical-align: top; border-bottom: 1px solid #f1f5f9; font-size: .85rem; word-break: break-word; }}
.data-table tr:hover td {{ background: #f8fafc; }}

/* ---------- Nested record tables ---------- */
.sub-details {{ background: #f8fafc; border: 1px solid #e2e8f0; border-radius: 6px; }}
.sub-details summary {{ cursor: pointer; font-weight: 600; font-size: .8rem; color: #475569; padding: .35rem .6rem; }}
.sub-content {{ padding: 0 .6rem .5rem; overflow-x: auto; }}
.sub-table {{ width: 100%; border-collapse: collapse; font-size: .75rem; }}
.sub-table th {{ text-align: left; font-size: .68rem; text-transform: uppercase; color: #64748b; padding: .3rem .45rem; background: #eef2f7; }}
.sub-table td {{ padding: .3rem .45rem; border-bottom: 1px solid #f1f5f9; color: #334155; }}

/* ---------- Badge ---------- */
.badge {{
  display: inline-block; font-size: .7rem; font-weight: 700; letter-spacing: .03em;
  padding: 3px 8px; border-radius: 4px; text-transform: uppercase;
}}
.muted {{ color: #94a3b8; }}
.footer {{ font-size: .75rem; color: #94a3b8; text-align: center; margin-top: 2rem; }}
</style>
</head>
<body>
<div class="page">

  <header class="report-header">
    <div>
      <h1>{_esc(context.title)}</h1>
      <div class="subtitle">{_esc(context.tenant_name)}</div>
    </div>
    <div class="meta">
      Generated {_esc(generated_text)}<br>
      M365 Graph Toolkit v{_esc(context.version)}
    </div>
  </header>

  <section class="stat-grid">
    {cards_html}
  </section>

  <section class="report-section">
    {table_html}
  </section>

  <div class="footer">
    M365 Graph Toolkit &middot; {_esc(context.report_name)} &middot; {_esc(generated_text)}
  </div>

</div>
</body>
</html>"""


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def render_html(
    rows: list[Row],
    context: ReportContext,
    columns: Optional[list[str]] = None,
    summary: Optional[dict[str, Any]] = None,
) -> str:
    return _render_html(rows, context, columns, summary or {})


def export_html(
    rows: list[Row],
    output_dir: Path,
    context: ReportContext,
    columns: Optional[list[str]] = None,
    summary: Optional[dict[str, Any]] = None,
) -> Path:
    """
    Generate a self-contained HTML report.

    Returns the Path to the written file.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    filepath = output_dir / context.filename("html")
    filepath.write_text(render_html(rows, context, columns, summary), encoding="utf-8")

    return filepath
