"""
Settlement layer over the perpetuals core
"""

from .engine import MarketPrices, PerpetualsEngine, Settlement, Transfer

__all__ = [
    "MarketPrices",
    "PerpetualsEngine",
    "Settlement",
    "Transfer",
]
