"""Rich output formatters for the twapbot CLI.

Each function accepts plain data and returns a Rich renderable. The caller
prints it via ``console.print()``, which keeps the formatters testable
without capturing stdout.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

from rich.panel import Panel
from rich.table import Table

from twapbot.execution.twap import format_amount

if TYPE_CHECKING:
    from twapbot.config.settings import TWAPConfig
    from twapbot.execution.reconciler import ReconciliationReport
    from twapbot.execution.twap import TWAPState


def format_plan_table(
    config: TWAPConfig,
    number_of_orders: int,
    nominal_size: Decimal,
    example_limit_price: Decimal | None = None,
    market_price: Decimal | None = None,
) -> Table:
    """Order schedule derived from the TWAP configuration."""
    table = Table(title=f"TWAP Plan: {config.pair}", show_lines=True)
    table.add_column("Parameter", style="bold")
    table.add_column("Value", justify="right")

    table.add_row("Total Amount", f"{config.total_amount} {config.base_asset}")
    table.add_row("Duration", f"{config.duration}s")
    table.add_row("Interval", f"{config.interval}s")
    table.add_row("Orders", str(number_of_orders))

    # Highlight when the size was clamped to a bound.
    clamped = nominal_size in (config.min_order_size, config.max_order_size)
    table.add_row(
        "Nominal Order Size",
        f"[yellow]{nominal_size}[/yellow]" if clamped else str(nominal_size),
    )
    table.add_row("Order Size Bounds", f"{config.min_order_size} - {config.max_order_size}")
    table.add_row("Slippage Tolerance", f"{config.slippage_tolerance:.2%}")

    if market_price is not None and example_limit_price is not None:
        table.add_row("Market Price", str(market_price))
        table.add_row("Limit Price", str(example_limit_price))

    return table


def format_summary_table(state: TWAPState, asset: str = "") -> Table:
    """Execution summary for a finished (or interrupted) run."""
    summary = state.summary()
    suffix = f" {asset}" if asset else ""

    table = Table(title="TWAP Execution Summary", show_lines=True)
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")

    table.add_row("Total Orders", str(summary["total_orders"]))
    table.add_row("Filled Orders", f"[green]{summary['filled_orders']}[/green]")
    pending = summary["pending_orders"]
    table.add_row(
        "Pending Orders",
        f"[yellow]{pending}[/yellow]" if pending else str(pending),
    )
    table.add_row("Total Executed", f"{summary['executed_amount']}{suffix}")
    table.add_row("Remaining", f"{summary['remaining_amount']}{suffix}")

    avg = summary["average_execution_price"]
    table.add_row("Average Execution Price", avg if avg is not None else "[dim]n/a[/dim]")
    return table


def format_orders_table(state: TWAPState, limit: int = 20) -> Table:
    """Most recent orders of a run, newest last."""
    table = Table(title="TWAP Orders")
    table.add_column("#", justify="right")
    table.add_column("Time")
    table.add_column("Order ID")
    table.add_column("Size", justify="right")
    table.add_column("Limit", justify="right")
    table.add_column("Status", justify="center")
    table.add_column("Filled", justify="right")
    table.add_column("Avg Price", justify="right")

    colors = {"filled": "green", "partial": "yellow", "pending": "cyan", "failed": "red"}
    orders = state.orders[-limit:] if limit > 0 else state.orders
    offset = len(state.orders) - len(orders)
    for i, order in enumerate(orders, start=offset + 1):
        status = order.status.value
        table.add_row(
            str(i),
            order.timestamp.strftime("%H:%M:%S"),
            order.order_id or "[dim]-[/dim]",
            str(order.size),
            str(order.price),
            f"[{colors[status]}]{status}[/{colors[status]}]",
            "" if order.filled_size is None else str(order.filled_size),
            "" if order.average_price is None else str(order.average_price),
        )
    return table


def format_reconciliation_report(report: ReconciliationReport) -> Panel:
    """Assumed vs venue-confirmed fills for non-terminal orders."""
    drift = report.drift
    color = "green" if drift == 0 else "yellow"
    lines = [
        f"Orders checked:     {report.n_checked}",
        f"Lookup errors:      {len(report.errors)}",
        f"Never submitted:    {report.unsubmitted}",
        f"Assumed filled:     {format_amount(report.assumed_filled)}",
        f"Confirmed filled:   {format_amount(report.confirmed_filled)}",
        f"Drift:              [{color}]{format_amount(drift)}[/{color}]",
    ]
    return Panel("\n".join(lines), title="Pending Order Reconciliation", border_style=color)


def format_order_response(order_id: str, status: str, filled_size, average_price) -> Panel:
    """Single venue order status."""
    lines = [
        f"Order ID:       {order_id}",
        f"Status:         {status}",
        f"Filled Size:    {filled_size if filled_size is not None else '-'}",
        f"Average Price:  {average_price if average_price is not None else '-'}",
    ]
    return Panel("\n".join(lines), title="Order Status", border_style="cyan")
