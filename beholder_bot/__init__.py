"""Channel membership store and cross-process reconciliation for the Beholder IRC bot."""

__version__ = "0.1.0"
