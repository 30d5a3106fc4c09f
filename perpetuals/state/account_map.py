"""
Immutable identity -> account snapshot.

One map is built per operation from the caller-supplied account list, so every
lookup during that operation sees the same custody balances and oracle
records. Ordering never matters: accounts are addressed by key only.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterable, Mapping, Union

from ..core.custody import Custody
from ..core.errors import MissingAccount, ValidationError
from ..core.oracle import AggregatorRecord, OracleRecord, PushOracleRecord
from ..core.pool import Pool
from ..core.position import Position

Account = Union[Custody, Pool, Position, PushOracleRecord, AggregatorRecord]

_ACCOUNT_TYPES = (Custody, Pool, Position, PushOracleRecord, AggregatorRecord)


@dataclass(frozen=True)
class AccountMap:
    accounts: Mapping[str, Account]

    @classmethod
    def from_accounts(cls, accounts: Iterable[Account]) -> "AccountMap":
        """Index ``accounts`` by key.

        Raises:
            ValidationError: unsupported account type, empty key or duplicate key.
        """
        table: dict[str, Account] = {}
        for account in accounts:
            if not isinstance(account, _ACCOUNT_TYPES):
                raise ValidationError(f"unsupported account type: {type(account).__name__}")
            key = account.key
            if not isinstance(key, str) or not key:
                raise ValidationError(f"{type(account).__name__} account has no key")
            if key in table:
                raise ValidationError(f"duplicate account in snapshot: {key}")
            table[key] = account
        return cls(accounts=MappingProxyType(table))

    def __len__(self) -> int:
        return len(self.accounts)

    def __contains__(self, key: object) -> bool:
        return key in self.accounts

    def get_account(self, key: str) -> Account:
        try:
            return self.accounts[key]
        except KeyError:
            raise MissingAccount(key) from None

    def get_custody(self, key: str) -> Custody:
        account = self.get_account(key)
        if not isinstance(account, Custody):
            raise ValidationError(f"account {key} is a {type(account).__name__}, not a Custody")
        return account

    def get_oracle_record(self, key: str) -> OracleRecord:
        account = self.get_account(key)
        if not isinstance(account, (PushOracleRecord, AggregatorRecord)):
            raise ValidationError(f"account {key} is a {type(account).__name__}, not an oracle record")
        return account
