"""TWAPEngine: time-sliced buy program over the ExchangeGateway.

Turns a static TWAPConfig into a live sequence of limit buy orders:

    IDLE --start()--> RUNNING --stop() / self-stop--> STOPPED --start()--> RUNNING

On entering RUNNING the engine places one order immediately, then a single
background task fires a tick every ``interval`` seconds. Ticks never
overlap: the timer awaits each tick before arming the next, so a slow tick
delays the following one instead of running beside it.

Each tick:
    1. Self-stop if nothing remains, the duration has elapsed, or the
       remainder is negligible (<= 0.0001).
    2. Size = min(nominal size, remaining), 8 decimal places.
    3. Limit price = market price * (1 + slippage_tolerance).
    4. Append a pending OrderExecution, submit, fold the response.

A failed tick is logged and never halts the run. If the venue response
omits a filled size, the requested size is assumed filled.

``stop()`` may be called while a tick is awaiting the venue. The request
is not aborted; its response is logged and discarded because state is
frozen once STOPPED.
"""

from __future__ import annotations

import asyncio
import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import TYPE_CHECKING, Callable

import structlog

if TYPE_CHECKING:
    from twapbot.config.settings import TWAPConfig
    from twapbot.execution.gateway import ExchangeGateway, OrderResponse

logger = structlog.get_logger(__name__)

PRECISION = Decimal("0.00000001")
NEGLIGIBLE_AMOUNT = Decimal("0.0001")
ZERO = Decimal("0")

_FILLED_STATUSES = {"filled"}
_PARTIAL_STATUSES = {"partial", "partially_filled", "partiallyfilled"}
_FAILED_STATUSES = {"failed", "rejected", "cancelled", "canceled", "expired"}


class EngineStatus(Enum):
    """Engine lifecycle states."""

    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class OrderStatus(Enum):
    """Engine-side view of a submitted order."""

    PENDING = "pending"
    FILLED = "filled"
    PARTIAL = "partial"
    FAILED = "failed"

    @classmethod
    def from_venue(cls, status: str) -> OrderStatus:
        """Map a venue status string onto the engine's four states."""
        key = status.strip().lower()
        if key in _FILLED_STATUSES:
            return cls.FILLED
        if key in _PARTIAL_STATUSES:
            return cls.PARTIAL
        if key in _FAILED_STATUSES:
            return cls.FAILED
        return cls.PENDING


@dataclass(frozen=True)
class OrderExecution:
    """One submitted TWAP slice.

    ``order_id`` stays empty until the venue response returns.
    """

    order_id: str
    timestamp: datetime
    size: Decimal
    price: Decimal
    status: OrderStatus = OrderStatus.PENDING
    filled_size: Decimal | None = None
    average_price: Decimal | None = None


@dataclass(frozen=True)
class TWAPState:
    """Immutable snapshot of a run, handed to readers by ``get_state()``."""

    total_amount: Decimal
    remaining_amount: Decimal
    executed_amount: Decimal
    orders: tuple[OrderExecution, ...]
    start_time: datetime
    end_time: datetime
    average_execution_price: Decimal | None = None

    @property
    def filled_orders(self) -> list[OrderExecution]:
        return [o for o in self.orders if o.status is OrderStatus.FILLED]

    @property
    def pending_orders(self) -> list[OrderExecution]:
        return [o for o in self.orders if o.status is OrderStatus.PENDING]

    def summary(self) -> dict:
        """Counts and totals reported when a run stops."""
        return {
            "total_orders": len(self.orders),
            "filled_orders": len(self.filled_orders),
            "pending_orders": len(self.pending_orders),
            "executed_amount": format_amount(self.executed_amount),
            "remaining_amount": format_amount(self.remaining_amount),
            "total_amount": format_amount(self.total_amount),
            "average_execution_price": (
                None
                if self.average_execution_price is None
                else format_amount(self.average_execution_price)
            ),
        }


@dataclass
class _RunState:
    """Mutable per-run bookkeeping. Never leaves the engine."""

    total_amount: Decimal
    remaining_amount: Decimal
    executed_amount: Decimal
    start_time: datetime
    end_time: datetime
    orders: list[OrderExecution] = field(default_factory=list)
    average_execution_price: Decimal | None = None

    def snapshot(self) -> TWAPState:
        return TWAPState(
            total_amount=self.total_amount,
            remaining_amount=self.remaining_amount,
            executed_amount=self.executed_amount,
            orders=tuple(self.orders),
            start_time=self.start_time,
            end_time=self.end_time,
            average_execution_price=self.average_execution_price,
        )


def quantize(value: Decimal) -> Decimal:
    """Fix a quantity to 8 fractional digits."""
    return value.quantize(PRECISION, rounding=ROUND_HALF_UP)


def format_amount(value: Decimal) -> str:
    """Fixed-point rendering; never scientific notation for a zero."""
    return format(value, "f")


def calculate_number_of_orders(config: TWAPConfig) -> int:
    """floor(duration / interval). Raises ValueError when that is zero."""
    number_of_orders = config.duration // config.interval
    if number_of_orders == 0:
        raise ValueError("Duration must be greater than interval")
    return number_of_orders


def calculate_nominal_order_size(config: TWAPConfig) -> Decimal:
    """Per-order size: total / number of orders, clamped to [min, max]."""
    number_of_orders = calculate_number_of_orders(config)
    raw_size = quantize(config.total_amount / number_of_orders)

    if raw_size < config.min_order_size:
        logger.warning(
            "order_size_below_minimum",
            calculated=str(raw_size),
            minimum=str(config.min_order_size),
        )
        return config.min_order_size

    if raw_size > config.max_order_size:
        logger.warning(
            "order_size_above_maximum",
            calculated=str(raw_size),
            maximum=str(config.max_order_size),
        )
        return config.max_order_size

    return raw_size


def slippage_adjusted_price(market_price: Decimal, slippage_tolerance: float) -> Decimal:
    """Worst acceptable buy price: market * (1 + tolerance), 8 places."""
    return quantize(market_price * (1 + Decimal(str(slippage_tolerance))))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TWAPEngine:
    """Executes one TWAP buy program at a time through an ExchangeGateway.

    Parameters
    ----------
    config : TWAPConfig
        Validated program parameters. Trusted as-is apart from the
        ``floor(duration / interval) > 0`` check.
    gateway : ExchangeGateway
        Venue client providing ``get_market_price`` and ``place_order``.
    clock : Callable[[], datetime]
        Wall-clock source (UTC). Injected for tests.
    """

    def __init__(
        self,
        config: TWAPConfig,
        gateway: ExchangeGateway,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._config = config
        self._gateway = gateway
        self._clock = clock
        self._status = EngineStatus.IDLE
        self._state = self._initialize_state()
        self._generation = 0
        self._stop_event: asyncio.Event | None = None
        self._timer_task: asyncio.Task | None = None

    @property
    def config(self) -> TWAPConfig:
        return self._config

    @property
    def status(self) -> EngineStatus:
        return self._status

    def is_active(self) -> bool:
        """True iff the engine is RUNNING."""
        return self._status is EngineStatus.RUNNING

    def get_state(self) -> TWAPState:
        """Immutable snapshot of the current (or last) run."""
        return self._state.snapshot()

    async def start(self) -> None:
        """Begin a new run: place the first order now, then arm the timer.

        Returns once the run has begun; does not wait for completion.
        A second ``start()`` while running is logged and ignored.
        """
        if self.is_active():
            logger.warning("twap_already_running", pair=self._config.pair)
            return

        number_of_orders = calculate_number_of_orders(self._config)
        nominal_size = calculate_nominal_order_size(self._config)

        self._generation += 1
        self._state = self._initialize_state()
        self._status = EngineStatus.RUNNING
        self._stop_event = asyncio.Event()

        logger.info(
            "twap_starting",
            pair=self._config.pair,
            total_amount=str(self._config.total_amount),
            duration_seconds=self._config.duration,
            interval_seconds=self._config.interval,
            number_of_orders=number_of_orders,
            nominal_order_size=str(nominal_size),
            asset=self._config.base_asset,
            end_time=self._state.end_time.isoformat(),
        )

        await self._execute_order()

        if self.is_active():
            self._timer_task = asyncio.create_task(
                self._run_timer(self._generation, self._stop_event),
                name=f"twap-timer-{self._generation}",
            )

    def stop(self) -> None:
        """Stop the run and emit the execution summary. Idempotent."""
        if not self.is_active():
            return

        self._status = EngineStatus.STOPPED
        if self._stop_event is not None:
            self._stop_event.set()

        logger.info("twap_stopped", pair=self._config.pair)
        self._log_final_stats()

    async def wait_until_stopped(self) -> None:
        """Wait for the timer task of the current run to finish."""
        if self._timer_task is not None:
            await self._timer_task

    # ------------------------------------------------------------------
    # Timer
    # ------------------------------------------------------------------

    async def _run_timer(self, generation: int, stop_event: asyncio.Event) -> None:
        loop = asyncio.get_running_loop()
        interval = float(self._config.interval)
        next_fire = loop.time() + interval

        while self._is_current(generation):
            delay = max(0.0, next_fire - loop.time())
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=delay)
                return
            except asyncio.TimeoutError:
                pass

            await self._execute_order()

            # A tick that overran the interval pushes the next one back.
            next_fire = max(next_fire + interval, loop.time())

    def _is_current(self, generation: int) -> bool:
        return self.is_active() and generation == self._generation

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def _execute_order(self) -> None:
        if not self.is_active():
            return

        generation = self._generation
        state = self._state

        if state.remaining_amount <= 0:
            logger.info("twap_complete", reason="no_remaining_amount")
            self.stop()
            return

        if self._clock() >= state.end_time:
            logger.info("twap_complete", reason="duration_exceeded")
            self.stop()
            return

        nominal_size = calculate_nominal_order_size(self._config)
        order_size = quantize(min(nominal_size, state.remaining_amount))

        if order_size < self._config.min_order_size:
            if state.remaining_amount > NEGLIGIBLE_AMOUNT:
                logger.info(
                    "twap_final_order",
                    order_size=str(order_size),
                    minimum=str(self._config.min_order_size),
                )
            else:
                logger.info(
                    "twap_complete",
                    reason="remaining_negligible",
                    remaining=format_amount(state.remaining_amount),
                )
                self.stop()
                return

        try:
            market_price = Decimal(await self._gateway.get_market_price(self._config.pair))
        except Exception as exc:
            logger.error("market_price_failed", pair=self._config.pair, error=str(exc))
            return

        if not self._is_current(generation):
            logger.info("late_price_ignored", pair=self._config.pair)
            return

        limit_price = slippage_adjusted_price(market_price, self._config.slippage_tolerance)

        state.orders.append(
            OrderExecution(
                order_id="",
                timestamp=self._clock(),
                size=order_size,
                price=limit_price,
            )
        )
        order_index = len(state.orders) - 1

        logger.info(
            "twap_order_executing",
            pair=self._config.pair,
            size=str(order_size),
            market_price=str(market_price),
            limit_price=str(limit_price),
            order_number=order_index + 1,
        )

        try:
            response = await self._gateway.place_order(
                pair=self._config.pair,
                side="buy",
                size=order_size,
                price=limit_price,
                order_type="limit",
            )
        except Exception as exc:
            logger.error(
                "twap_order_failed",
                pair=self._config.pair,
                size=str(order_size),
                error=str(exc),
            )
            return

        if not self._is_current(generation):
            logger.warning(
                "late_order_response_ignored",
                order_id=response.order_id,
                status=response.status,
            )
            return

        self._fold_response(state, order_index, order_size, response)

    def _fold_response(
        self,
        state: _RunState,
        order_index: int,
        order_size: Decimal,
        response: OrderResponse,
    ) -> None:
        state.orders[order_index] = dataclasses.replace(
            state.orders[order_index],
            order_id=response.order_id,
            status=OrderStatus.from_venue(response.status),
            filled_size=response.filled_size,
            average_price=response.average_price,
        )

        # No filled size from the venue: assume the whole order filled.
        filled = response.filled_size if response.filled_size is not None else order_size
        state.executed_amount = quantize(state.executed_amount + filled)
        state.remaining_amount = quantize(state.total_amount - state.executed_amount)

        logger.info(
            "twap_order_placed",
            order_id=response.order_id,
            status=response.status,
            filled_size=None if response.filled_size is None else str(response.filled_size),
        )
        logger.info(
            "twap_progress",
            executed=format_amount(state.executed_amount),
            total=format_amount(state.total_amount),
            remaining=format_amount(state.remaining_amount),
        )

        self._update_average_execution_price(state)

    @staticmethod
    def _update_average_execution_price(state: _RunState) -> None:
        total_value = ZERO
        total_size = ZERO
        for order in state.orders:
            if (
                order.status is OrderStatus.FILLED
                and order.filled_size is not None
                and order.average_price is not None
            ):
                total_value += order.filled_size * order.average_price
                total_size += order.filled_size

        if total_size > 0:
            state.average_execution_price = quantize(total_value / total_size)
            logger.info(
                "twap_average_price",
                average_execution_price=str(state.average_execution_price),
            )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _initialize_state(self) -> _RunState:
        now = self._clock()
        total = quantize(self._config.total_amount)
        return _RunState(
            total_amount=total,
            remaining_amount=total,
            executed_amount=quantize(ZERO),
            start_time=now,
            end_time=now + timedelta(seconds=self._config.duration),
        )

    def _log_final_stats(self) -> None:
        summary = self._state.snapshot().summary()
        logger.info("twap_execution_summary", asset=self._config.base_asset, **summary)
