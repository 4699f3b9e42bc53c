"""Task Market Service - task, bid, and escrow lifecycle engine."""

__version__ = "0.1.0"
