"""Custodial BTC/LTC escrow engine."""

__version__ = "0.1.0"
