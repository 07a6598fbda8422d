"""balancewatch: analytics core for a live balance and trade dashboard."""

__version__ = "0.1.0"
