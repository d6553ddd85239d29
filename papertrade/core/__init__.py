"""Core models, configuration, errors and the trading session."""
