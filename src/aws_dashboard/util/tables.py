from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from rich.console import Console
from rich.table import Table

from ..models import CostOverview, ServiceCost
from .serialization import to_json_dict


def _money(value: float, currency: str) -> str:
    return f"{value:,.2f} {currency}".strip()


def render_records_table(
    title: str,
    records: Sequence[Any],
    *,
    console: Optional[Console] = None,
) -> None:
    """Print dataclass records as a table; columns follow the first record's fields."""
    rows: List[Dict[str, Any]] = [to_json_dict(r) for r in records]
    table = Table(title=f"{title} ({len(rows)})", show_header=True, header_style="bold")
    columns = list(rows[0].keys()) if rows else []
    for col in columns:
        table.add_column(col, style="cyan" if col == columns[0] else "white")
    for row in rows:
        table.add_row(*[str(row.get(col, "")) for col in columns])
    (console or Console()).print(table)


def render_cost_table(
    overview: CostOverview,
    services: Sequence[ServiceCost],
    *,
    console: Optional[Console] = None,
) -> None:
    console = console or Console()
    summary = Table(title=f"Cost {overview.start} .. {overview.end}", show_header=True, header_style="bold")
    summary.add_column("Metric", style="cyan")
    summary.add_column("Value", style="white")
    summary.add_row("Total", _money(overview.total, overview.currency))
    summary.add_row("Credits applied", _money(overview.credits_applied, overview.currency))
    summary.add_row("Net total", _money(overview.net_total, overview.currency))
    console.print(summary)

    table = Table(title="Services", show_header=True, header_style="bold")
    table.add_column("Service", style="cyan")
    table.add_column("Cost", justify="right")
    table.add_column("Drill-down", style="white")
    for svc in sorted(services, key=lambda s: s.cost, reverse=True):
        table.add_row(svc.display_name, _money(svc.cost, svc.currency), svc.drilldown_key)
    console.print(table)
