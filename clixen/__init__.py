"""Clixen AI — Telegram intent routing and user isolation for automation workflows."""

__version__ = "1.0.0"
