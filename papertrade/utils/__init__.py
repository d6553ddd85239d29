"""Utilities for the paper trading ledger."""

from papertrade.utils.logging_config import setup_logging

__all__ = ["setup_logging"]
