"""BuybackRunner: process-level orchestrator for one TWAP buy program.

Wires the wallet, gateway and engine together for the host process:
    1. Start the TWAPEngine (first order goes out immediately).
    2. Run an APScheduler monitor job that polls ``is_active()`` and
       signals natural completion.
    3. Optionally run the pending-order reconciliation sweep on its own
       interval job.
    4. On ``stop()``: stop the engine, shut the scheduler down, close the
       gateway.

Signal handling belongs to the caller (the CLI wires SIGINT/SIGTERM to
``request_stop``); the runner never exits the process.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from twapbot.execution.twap import format_amount

if TYPE_CHECKING:
    from twapbot.execution.gateway import ExchangeGateway
    from twapbot.execution.reconciler import PendingOrderReconciler, ReconciliationReport
    from twapbot.execution.twap import TWAPEngine
    from twapbot.wallet import Wallet

logger = structlog.get_logger(__name__)


class BuybackRunner:
    """Owns the lifetime of one engine run inside the host process.

    All dependencies are injected for testability.

    Parameters
    ----------
    engine : TWAPEngine
        The TWAP execution engine.
    gateway : ExchangeGateway
        Venue client; closed on ``stop()``.
    wallet : Wallet
        Signing wallet; only its address is reported here.
    reconciler : PendingOrderReconciler | None
        Pending-order sweep. Scheduled only when ``reconcile_interval`` is set.
    config : dict | None
        Runtime configuration with keys:
        - monitor_interval (int, default 5): seconds between completion checks
        - reconcile_interval (int | None, default None): seconds between sweeps
    """

    def __init__(
        self,
        engine: TWAPEngine,
        gateway: ExchangeGateway,
        wallet: Wallet,
        reconciler: PendingOrderReconciler | None = None,
        config: dict | None = None,
    ) -> None:
        self._engine = engine
        self._gateway = gateway
        self._wallet = wallet
        self._reconciler = reconciler

        cfg = config or {}
        self._monitor_interval: int = cfg.get("monitor_interval", 5)
        self._reconcile_interval: int | None = cfg.get("reconcile_interval")

        self._scheduler: AsyncIOScheduler | None = None
        self._completed: asyncio.Event | None = None
        self._stopped = False
        self.last_report: ReconciliationReport | None = None

    async def start(self) -> None:
        """Start the engine and the monitoring jobs."""
        twap = self._engine.config
        logger.info(
            "runner_starting",
            wallet=self._wallet.address(),
            pair=twap.pair,
            total_amount=str(twap.total_amount),
            duration_seconds=twap.duration,
            interval_seconds=twap.interval,
        )

        self._completed = asyncio.Event()
        self._stopped = False

        await self._engine.start()

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self._check_completion,
            trigger=IntervalTrigger(seconds=self._monitor_interval),
            id="twap_monitor",
            name="TWAP completion monitor",
        )
        if self._reconciler is not None and self._reconcile_interval:
            self._scheduler.add_job(
                self.run_reconciliation,
                trigger=IntervalTrigger(seconds=self._reconcile_interval),
                id="pending_reconciliation",
                name="Pending order reconciliation",
                max_instances=1,
            )
        self._scheduler.start()

        logger.info("runner_started", monitor_interval=self._monitor_interval)

        # The first order may already have finished the program.
        await self._check_completion()

    async def wait_until_complete(self) -> None:
        """Block until the engine finishes or ``stop()``/``request_stop()`` runs."""
        if self._completed is None:
            return
        await self._completed.wait()

    def request_stop(self) -> None:
        """Signal-handler entry point: stop the engine and wake waiters."""
        logger.info("runner_stop_requested")
        self._engine.stop()
        if self._completed is not None:
            self._completed.set()

    async def stop(self) -> None:
        """Stop engine, scheduler and gateway. Safe to call more than once."""
        if self._stopped:
            return
        self._stopped = True

        if self._engine.is_active():
            logger.info("runner_stopping_engine")
            self._engine.stop()

        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None

        await self._gateway.close()
        if self._completed is not None:
            self._completed.set()

        logger.info("runner_stopped")

    def get_status(self) -> dict:
        """Current running flag, state snapshot and wallet address."""
        return {
            "is_running": self._engine.is_active(),
            "twap_state": self._engine.get_state(),
            "wallet_address": self._wallet.address(),
        }

    async def run_reconciliation(self) -> ReconciliationReport | None:
        """Sweep non-terminal orders of the current run. None if no reconciler."""
        if self._reconciler is None:
            return None
        self.last_report = await self._reconciler.reconcile(self._engine.get_state())
        return self.last_report

    async def _check_completion(self) -> None:
        if self._engine.is_active():
            return
        if self._completed is not None and self._completed.is_set():
            return
        state = self._engine.get_state()
        if state.remaining_amount <= 0:
            logger.info(
                "twap_completed_successfully",
                executed=format_amount(state.executed_amount),
            )
        else:
            logger.info(
                "twap_ended_with_remainder",
                executed=format_amount(state.executed_amount),
                remaining=format_amount(state.remaining_amount),
            )
        if self._completed is not None:
            self._completed.set()
