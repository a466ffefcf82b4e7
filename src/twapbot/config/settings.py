"""Application and TWAP configuration.

TWAPConfig is the immutable, validated description of one buy program.
It is loaded from ``config/config.json`` (relative to the working
directory) and validated once; any failure is a fatal startup error.

Process-level settings (network, keystore location, API URL, log level)
come from the environment:

    SUI_NETWORK         mainnet | testnet | devnet | http(s)://custom-rpc
    KEYSTORE_PATH       default ./wallet.keystore
    KEYSTORE_PASSWORD   optional, only meaningful for encrypted keystores
    KEYSTORE_DATA       optional base64 keystore JSON (overrides the file)
    BLUEFIN_API_URL     optional venue base URL
    LOG_LEVEL           default info
    RECONCILE_INTERVAL  optional seconds between pending-order sweeps
"""

from __future__ import annotations

import json
import os
from decimal import Decimal
from pathlib import Path
from typing import Mapping

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from twapbot.errors import ConfigError

DEFAULT_CONFIG_PATH = Path("config") / "config.json"

# Amounts stay quantizable to 8 places under the default 28-digit context.
MAX_AMOUNT = Decimal("1000000000000")


class TWAPConfig(BaseModel):
    """Immutable parameters of one TWAP buy program.

    Accepts the camelCase keys used in ``config.json`` as well as the
    snake_case field names.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    pair: str
    total_amount: Decimal = Field(
        validation_alias=AliasChoices("total_amount", "totalAmount"),
    )
    duration: int = Field(description="Program length in seconds")
    interval: int = Field(description="Seconds between orders")
    slippage_tolerance: float = Field(
        validation_alias=AliasChoices("slippage_tolerance", "slippageTolerance"),
        description="Fraction added to market price, e.g. 0.01 for 1%",
    )
    min_order_size: Decimal = Field(
        validation_alias=AliasChoices("min_order_size", "minOrderSize"),
    )
    max_order_size: Decimal = Field(
        validation_alias=AliasChoices("max_order_size", "maxOrderSize"),
    )

    @field_validator("pair")
    @classmethod
    def _pair_required(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("pair is required")
        return v.strip()

    @field_validator("total_amount", "min_order_size", "max_order_size")
    @classmethod
    def _positive_amount(cls, v: Decimal, info) -> Decimal:
        if not v.is_finite() or v <= 0:
            raise ValueError(f"{info.field_name} must be a positive number")
        if v > MAX_AMOUNT:
            raise ValueError(f"{info.field_name} must not exceed {MAX_AMOUNT}")
        return v

    @field_validator("duration", "interval")
    @classmethod
    def _positive_seconds(cls, v: int, info) -> int:
        if v <= 0:
            raise ValueError(f"{info.field_name} must be a positive number")
        return v

    @field_validator("slippage_tolerance")
    @classmethod
    def _slippage_range(cls, v: float) -> float:
        if not 0 <= v <= 1:
            raise ValueError("slippage_tolerance must be between 0 and 1")
        return v

    @model_validator(mode="after")
    def _cross_field_checks(self) -> TWAPConfig:
        if self.interval > self.duration:
            raise ValueError("interval cannot be greater than duration")
        if self.min_order_size > self.max_order_size:
            raise ValueError("min_order_size cannot be greater than max_order_size")
        return self

    @property
    def base_asset(self) -> str:
        """Asset being bought, e.g. ``BLUE`` for ``BLUE/USDC`` or ``BLUE-PERP``."""
        return self.pair.replace("-", "/").split("/")[0]


class AppConfig(BaseModel):
    """Process-level settings plus the TWAP program."""

    model_config = ConfigDict(frozen=True)

    sui_network: str = "mainnet"
    keystore_path: str = "./wallet.keystore"
    keystore_password: str | None = None
    keystore_data: str | None = None
    api_url: str | None = None
    log_level: str = "info"
    reconcile_interval: int | None = Field(
        default=None,
        gt=0,
        description="Seconds between pending-order reconciliation sweeps",
    )
    twap: TWAPConfig


def load_twap_config(config_path: str | Path | None = None) -> TWAPConfig:
    """Read and validate the TWAP program from a JSON file.

    Raises
    ------
    ConfigError
        If the file is missing, is not valid JSON, or fails validation.
    """
    path = Path(config_path) if config_path is not None else Path.cwd() / DEFAULT_CONFIG_PATH
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Failed to load {path}: {exc}") from exc

    try:
        return TWAPConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid TWAP config in {path}: {_describe(exc)}") from exc


def load_config(
    config_path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
) -> AppConfig:
    """Build the AppConfig from the environment and the TWAP JSON file.

    Parameters
    ----------
    config_path : str | Path | None
        TWAP JSON file. Defaults to ``./config/config.json``.
    env : Mapping[str, str] | None
        Environment to read. Defaults to ``os.environ``.
    """
    env = os.environ if env is None else env
    twap = load_twap_config(config_path)

    reconcile_raw = env.get("RECONCILE_INTERVAL")
    try:
        return AppConfig(
            sui_network=env.get("SUI_NETWORK", "mainnet"),
            keystore_path=env.get("KEYSTORE_PATH", "./wallet.keystore"),
            keystore_password=env.get("KEYSTORE_PASSWORD") or None,
            keystore_data=env.get("KEYSTORE_DATA") or None,
            api_url=env.get("BLUEFIN_API_URL") or None,
            log_level=env.get("LOG_LEVEL", "info"),
            reconcile_interval=int(reconcile_raw) if reconcile_raw else None,
            twap=twap,
        )
    except (ValidationError, ValueError) as exc:
        detail = _describe(exc) if isinstance(exc, ValidationError) else str(exc)
        raise ConfigError(f"Invalid environment configuration: {detail}") from exc


def _describe(exc: ValidationError) -> str:
    """Flatten pydantic errors into one line: ``field: message; ...``."""
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "config"
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)
