"""Tests for Rich CLI formatters: renderables are built without printing."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from conftest import make_twap_config
from twapbot.cli.formatters import (
    format_orders_table,
    format_plan_table,
    format_reconciliation_report,
    format_summary_table,
)
from twapbot.execution.reconciler import OrderCheck, ReconciliationReport
from twapbot.execution.twap import OrderExecution, OrderStatus, TWAPState

NOW = datetime(2026, 1, 1, 12, 30, tzinfo=timezone.utc)


def _render(renderable) -> str:
    console = Console(width=160, record=True)
    console.print(renderable)
    return console.export_text()


def _state() -> TWAPState:
    orders = (
        OrderExecution("a", NOW, Decimal("10"), Decimal("1.01"), OrderStatus.FILLED,
                       Decimal("10"), Decimal("1.00")),
        OrderExecution("", NOW, Decimal("10"), Decimal("1.01")),
    )
    return TWAPState(
        total_amount=Decimal("100"),
        remaining_amount=Decimal("90"),
        executed_amount=Decimal("10"),
        orders=orders,
        start_time=NOW,
        end_time=NOW,
        average_execution_price=Decimal("1.00000000"),
    )


def test_plan_table() -> None:
    table = format_plan_table(make_twap_config(), 12, Decimal("83.33333333"))
    assert isinstance(table, Table)
    text = _render(table)
    assert "83.33333333" in text
    assert "1.00%" in text


def test_summary_table_counts() -> None:
    text = _render(format_summary_table(_state(), asset="BLUE"))
    assert "Filled Orders" in text
    assert "90 BLUE" in text
    assert "1.00000000" in text


def test_orders_table_rows() -> None:
    table = format_orders_table(_state())
    assert table.row_count == 2
    assert "filled" in _render(table)


def test_orders_table_limit_keeps_latest() -> None:
    table = format_orders_table(_state(), limit=1)
    assert table.row_count == 1


def test_reconciliation_panel() -> None:
    report = ReconciliationReport(
        checks=[
            OrderCheck("a", OrderStatus.PENDING, OrderStatus.PENDING, Decimal("10"), Decimal("0")),
        ]
    )
    panel = format_reconciliation_report(report)
    assert isinstance(panel, Panel)
    assert "10" in _render(panel)


def test_reconciliation_panel_renders_zero_drift_fixed_point() -> None:
    rendered = _render(format_reconciliation_report(ReconciliationReport()))
    assert "0.00000000" in rendered
    assert "E-8" not in rendered
