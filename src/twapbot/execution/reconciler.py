"""Pending-order reconciler: confirm engine-assumed fills against the venue.

The engine records each order's status from the placement response only,
and assumes the full size filled when the venue omits a filled size. This
sweep revisits every non-terminal record (pending or partial, with an
order id) through ``ExchangeGateway.get_order_status`` and reports how far
the engine's executed amount drifts from what the venue confirms. Failed
records without a filled size need no lookup: the venue already reported
nothing filled, so their whole size counts as drift.

The sweep is read-only with respect to the engine: it takes a
``TWAPState`` snapshot and returns a report. Scheduling it is the
runner's job (see ``BuybackRunner``).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING

import structlog

from twapbot.execution.twap import ZERO, OrderStatus, format_amount, quantize

if TYPE_CHECKING:
    from twapbot.execution.gateway import ExchangeGateway
    from twapbot.execution.twap import TWAPState

logger = structlog.get_logger(__name__)

_OPEN_STATUSES = (OrderStatus.PENDING, OrderStatus.PARTIAL)


@dataclass(frozen=True)
class OrderCheck:
    """Venue view of one non-terminal or rejected order."""

    order_id: str
    recorded_status: OrderStatus
    venue_status: OrderStatus
    assumed_filled: Decimal
    confirmed_filled: Decimal
    average_price: Decimal | None = None


@dataclass
class ReconciliationReport:
    """Result of one pending-order sweep.

    Parameters
    ----------
    checks : list[OrderCheck]
        One entry per order the venue answered for.
    errors : dict[str, str]
        ``order_id -> error`` for orders whose status lookup failed.
    unsubmitted : int
        Records with no order id (placement never returned).
    """

    checks: list[OrderCheck] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    unsubmitted: int = 0

    @property
    def assumed_filled(self) -> Decimal:
        return quantize(sum((c.assumed_filled for c in self.checks), Decimal(0)))

    @property
    def confirmed_filled(self) -> Decimal:
        return quantize(sum((c.confirmed_filled for c in self.checks), Decimal(0)))

    @property
    def drift(self) -> Decimal:
        """Assumed minus confirmed. Positive means the engine over-counted."""
        return quantize(self.assumed_filled - self.confirmed_filled)

    @property
    def n_checked(self) -> int:
        return len(self.checks)


class PendingOrderReconciler:
    """Sweep non-terminal orders of a run through ``get_order_status``.

    Parameters
    ----------
    gateway : ExchangeGateway
        Venue client. Only ``get_order_status`` is used.
    """

    def __init__(self, gateway: ExchangeGateway) -> None:
        self._gateway = gateway

    async def reconcile(self, state: TWAPState) -> ReconciliationReport:
        """Query the venue for every pending/partial order in ``state``.

        Failed records the engine counted as fully filled are reported
        without a venue call.
        Lookup failures are recorded in the report, not raised.
        """
        report = ReconciliationReport()

        for order in state.orders:
            if order.status is OrderStatus.FAILED and order.filled_size is None:
                # Engine folded the full size; the venue rejected it.
                report.checks.append(
                    OrderCheck(
                        order_id=order.order_id,
                        recorded_status=order.status,
                        venue_status=order.status,
                        assumed_filled=order.size,
                        confirmed_filled=ZERO,
                    )
                )
                continue
            if order.status not in _OPEN_STATUSES:
                continue
            if not order.order_id:
                report.unsubmitted += 1
                continue

            try:
                response = await self._gateway.get_order_status(order.order_id)
            except Exception as exc:
                logger.warning(
                    "reconcile_status_failed",
                    order_id=order.order_id,
                    error=str(exc),
                )
                report.errors[order.order_id] = str(exc)
                continue

            assumed = order.filled_size if order.filled_size is not None else order.size
            venue_status = OrderStatus.from_venue(response.status)
            confirmed = response.filled_size
            if confirmed is None:
                confirmed = order.size if venue_status is OrderStatus.FILLED else ZERO

            report.checks.append(
                OrderCheck(
                    order_id=order.order_id,
                    recorded_status=order.status,
                    venue_status=venue_status,
                    assumed_filled=assumed,
                    confirmed_filled=confirmed,
                    average_price=response.average_price,
                )
            )

        logger.info(
            "reconciliation_complete",
            n_checked=report.n_checked,
            n_errors=len(report.errors),
            unsubmitted=report.unsubmitted,
            assumed_filled=format_amount(report.assumed_filled),
            confirmed_filled=format_amount(report.confirmed_filled),
            drift=format_amount(report.drift),
        )
        return report
