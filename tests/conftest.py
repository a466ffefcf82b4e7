"""Shared test fixtures for the twapbot test suite."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
import structlog

from twapbot.config.settings import TWAPConfig


class StubWallet:
    """Deterministic wallet: fixed address, fixed-length fake signature."""

    def __init__(self, address: str = "0xabc") -> None:
        self._address = address

    def address(self) -> str:
        return self._address

    def sign(self, message: bytes) -> bytes:
        return b"\x01" * 64


def make_twap_config(**overrides) -> TWAPConfig:
    """Factory for TWAPConfig with the reference 1000-over-an-hour program."""
    defaults = dict(
        pair="BLUE-PERP",
        total_amount="1000",
        duration=3600,
        interval=300,
        slippage_tolerance=0.01,
        min_order_size="10",
        max_order_size="100",
    )
    defaults.update(overrides)
    return TWAPConfig(**defaults)


@pytest.fixture(autouse=True)
def _reset_structlog():
    """Undo any configure_logging() a test (or the CLI) performed."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """Write a valid config.json (camelCase keys) and return its path."""
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps(
            {
                "pair": "BLUE-PERP",
                "totalAmount": "1000",
                "duration": 3600,
                "interval": 300,
                "slippageTolerance": 0.01,
                "minOrderSize": "10",
                "maxOrderSize": "100",
            }
        )
    )
    return path
