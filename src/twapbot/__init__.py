"""TWAP buyback executor: time-sliced limit-order buying on a perpetuals venue."""

__version__ = "0.1.0"
