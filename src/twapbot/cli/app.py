"""twapbot CLI -- operator control surface for the TWAP buyback bot.

Commands:
    run           -- Execute the configured TWAP program until done or Ctrl+C
    plan          -- Show the order schedule without touching the venue
    price         -- Fetch the current market price for the configured pair
    order-status  -- Look up one order on the venue
    cancel        -- Cancel one order on the venue
"""

from __future__ import annotations

import asyncio
import signal
from decimal import Decimal, InvalidOperation
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel

from twapbot.cli.formatters import (
    format_order_response,
    format_orders_table,
    format_plan_table,
    format_reconciliation_report,
    format_summary_table,
)
from twapbot.config.settings import AppConfig, load_config
from twapbot.errors import ConfigError, GatewayError, WalletError
from twapbot.log_config import configure_logging

app = typer.Typer(
    name="twapbot",
    help="TWAP buyback bot for Bluefin perpetuals",
    rich_markup_mode="rich",
)
console = Console()

ConfigOption = typer.Option(
    None, "--config", "-c", help="TWAP config JSON (default ./config/config.json)"
)


def _load(config_path: Optional[str], json_logs: bool = False) -> AppConfig:
    """Load configuration and configure logging, or exit 1 with a red panel."""
    try:
        cfg = load_config(config_path)
    except ConfigError as exc:
        _fail("Configuration", str(exc))
    configure_logging(cfg.log_level, json=json_logs)
    return cfg


def _fail(title: str, message: str) -> None:
    console.print(Panel(f"[red]{message}[/red]", title=title, border_style="red"))
    raise typer.Exit(1)


def _build_gateway(cfg: AppConfig):
    from twapbot.execution.gateway import ExchangeGateway
    from twapbot.wallet import KeystoreWallet

    try:
        wallet = KeystoreWallet(
            cfg.keystore_path,
            password=cfg.keystore_password,
            network=cfg.sui_network,
            keystore_data=cfg.keystore_data,
        )
    except WalletError as exc:
        _fail("Wallet", str(exc))
    return wallet, ExchangeGateway(wallet, api_url=cfg.api_url)


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------


@app.command()
def run(
    config: Optional[str] = ConfigOption,
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit JSON log lines"),
    monitor_interval: int = typer.Option(5, help="Seconds between completion checks"),
) -> None:
    """Execute the configured TWAP program. Ctrl+C stops gracefully."""
    cfg = _load(config, json_logs=json_logs)
    wallet, gateway = _build_gateway(cfg)

    console.print(
        Panel(
            f"[bold green]TWAP BUYBACK[/bold green]\n\n"
            f"  Pair:      {cfg.twap.pair}\n"
            f"  Amount:    {cfg.twap.total_amount}\n"
            f"  Duration:  {cfg.twap.duration}s\n"
            f"  Interval:  {cfg.twap.interval}s\n"
            f"  Wallet:    {wallet.address()}\n"
            f"  Network:   {cfg.sui_network}",
            title="Starting",
            border_style="green",
        )
    )

    runner = asyncio.run(_run(cfg, wallet, gateway, monitor_interval))

    state = runner.get_status()["twap_state"]
    console.print(format_orders_table(state))
    console.print(format_summary_table(state, asset=cfg.twap.base_asset))
    if runner.last_report is not None:
        console.print(format_reconciliation_report(runner.last_report))


async def _run(cfg: AppConfig, wallet, gateway, monitor_interval: int):
    from twapbot.execution.reconciler import PendingOrderReconciler
    from twapbot.execution.runner import BuybackRunner
    from twapbot.execution.twap import TWAPEngine

    engine = TWAPEngine(cfg.twap, gateway)
    runner = BuybackRunner(
        engine=engine,
        gateway=gateway,
        wallet=wallet,
        reconciler=PendingOrderReconciler(gateway),
        config={
            "monitor_interval": monitor_interval,
            "reconcile_interval": cfg.reconcile_interval,
        },
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, runner.request_stop)

    try:
        await runner.start()
        await runner.wait_until_complete()
        if cfg.reconcile_interval:
            await runner.run_reconciliation()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        await runner.stop()
    return runner


# ---------------------------------------------------------------------------
# plan
# ---------------------------------------------------------------------------


@app.command()
def plan(
    config: Optional[str] = ConfigOption,
    market_price: Optional[str] = typer.Option(
        None, help="Show the limit price the engine would use at this market price"
    ),
) -> None:
    """Show the order schedule derived from the config (no network calls)."""
    from twapbot.execution.twap import (
        calculate_nominal_order_size,
        calculate_number_of_orders,
        slippage_adjusted_price,
    )

    cfg = _load(config)
    number_of_orders = calculate_number_of_orders(cfg.twap)
    nominal_size = calculate_nominal_order_size(cfg.twap)

    price = limit_price = None
    if market_price is not None:
        try:
            price = Decimal(market_price)
        except InvalidOperation:
            _fail("Plan", f"Invalid market price: {market_price}")
        limit_price = slippage_adjusted_price(price, cfg.twap.slippage_tolerance)

    console.print(
        format_plan_table(cfg.twap, number_of_orders, nominal_size, limit_price, price)
    )


# ---------------------------------------------------------------------------
# price / order-status / cancel
# ---------------------------------------------------------------------------


@app.command()
def price(config: Optional[str] = ConfigOption) -> None:
    """Fetch the current market price for the configured pair."""
    cfg = _load(config)
    _, gateway = _build_gateway(cfg)

    async def _fetch() -> str:
        async with gateway:
            return await gateway.get_market_price(cfg.twap.pair)

    try:
        value = asyncio.run(_fetch())
    except GatewayError as exc:
        _fail("Market Price", str(exc))
    console.print(f"[bold]{cfg.twap.pair}[/bold] {value}")


@app.command(name="order-status")
def order_status(
    order_id: str = typer.Argument(help="Venue order id"),
    config: Optional[str] = ConfigOption,
) -> None:
    """Look up one order on the venue."""
    cfg = _load(config)
    _, gateway = _build_gateway(cfg)

    async def _fetch():
        async with gateway:
            return await gateway.get_order_status(order_id)

    try:
        response = asyncio.run(_fetch())
    except GatewayError as exc:
        _fail("Order Status", str(exc))
    console.print(
        format_order_response(
            response.order_id, response.status, response.filled_size, response.average_price,
        )
    )


@app.command()
def cancel(
    order_id: str = typer.Argument(help="Venue order id"),
    config: Optional[str] = ConfigOption,
) -> None:
    """Cancel one order on the venue."""
    cfg = _load(config)
    _, gateway = _build_gateway(cfg)

    async def _cancel() -> None:
        async with gateway:
            await gateway.cancel_order(order_id)

    try:
        asyncio.run(_cancel())
    except GatewayError as exc:
        _fail("Cancel", str(exc))
    console.print(Panel(f"[green]Order {order_id} cancelled[/green]", border_style="green"))


def main() -> None:
    app()


if __name__ == "__main__":
    main()
