"""Exception types shared across twapbot.

Callers distinguish failures by type. The gateway classifies transient
errors by HTTP status code when one is set and by message otherwise
(see ``ExchangeGateway.is_retryable``).
"""

from __future__ import annotations


class ConfigError(Exception):
    """Raised when configuration is missing or invalid. Fatal at startup."""


class WalletError(Exception):
    """Raised when the keystore cannot be read or decoded."""


class GatewayError(Exception):
    """Raised for any venue-side failure surfaced by the ExchangeGateway.

    Parameters
    ----------
    message : str
        Human-readable description. Retry classification matches on it when
        no status code is set.
    status_code : int | None
        HTTP status returned by the venue, if the failure came from a response.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
