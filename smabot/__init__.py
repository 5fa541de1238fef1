"""SMA trading bot."""

__version__ = "1.0.0"
