"""Execution layer: venue gateway, TWAP engine, reconciliation, and runner.

Public API:
    - ExchangeGateway: venue HTTP client with 10^18 conversion and retry
    - OrderResponse: typed venue order response
    - TWAPEngine: stateful time-sliced buy program
    - TWAPState / OrderExecution: immutable run snapshots
    - PendingOrderReconciler: getOrderStatus sweep over non-terminal orders
    - ReconciliationReport: assumed vs confirmed fills
    - BuybackRunner: host-process orchestrator with APScheduler monitoring
"""

from twapbot.execution.gateway import ExchangeGateway, OrderResponse
from twapbot.execution.reconciler import PendingOrderReconciler, ReconciliationReport
from twapbot.execution.runner import BuybackRunner
from twapbot.execution.twap import (
    EngineStatus,
    OrderExecution,
    OrderStatus,
    TWAPEngine,
    TWAPState,
)

__all__ = [
    "BuybackRunner",
    "EngineStatus",
    "ExchangeGateway",
    "OrderExecution",
    "OrderResponse",
    "OrderStatus",
    "PendingOrderReconciler",
    "ReconciliationReport",
    "TWAPEngine",
    "TWAPState",
]
