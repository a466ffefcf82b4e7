"""Configuration loading and validation."""

from twapbot.config.settings import AppConfig, TWAPConfig, load_config

__all__ = ["AppConfig", "TWAPConfig", "load_config"]
