"""Entry point for ``python -m twapbot``."""

from twapbot.cli.app import main

main()
