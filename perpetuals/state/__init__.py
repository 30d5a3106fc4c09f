"""
Account snapshots consumed by the perpetuals engine
"""

from .account_map import Account, AccountMap

__all__ = [
    "Account",
    "AccountMap",
]
