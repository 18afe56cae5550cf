"""
Chart of Accounts Module

Static registry of account codes, names and kinds used to classify journal
lines. Loaded once at start-up from a provider (built-in Bolivian
small-business plan or a JSON file) and never mutated afterwards.
"""

import json
from dataclasses import dataclass, fields
from enum import Enum
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Union

from .exceptions import UnknownAccountError


class AccountKind(Enum):
    """Standard accounting account kinds"""
    ASSET = "asset"           # Debit normal balance
    LIABILITY = "liability"   # Credit normal balance
    EQUITY = "equity"         # Credit normal balance
    REVENUE = "revenue"       # Credit normal balance
    EXPENSE = "expense"       # Debit normal balance

    @property
    def default_normal_balance(self) -> 'NormalBalance':
        if self in (AccountKind.ASSET, AccountKind.EXPENSE):
            return NormalBalance.DEBIT
        return NormalBalance.CREDIT


class NormalBalance(Enum):
    """Side on which an account's balance normally sits"""
    DEBIT = "debit"
    CREDIT = "credit"


@dataclass(frozen=True)
class ChartAccount:
    """Immutable chart of accounts entry"""
    code: str
    name: str
    kind: AccountKind
    normal_balance: Optional[NormalBalance] = None

    def __post_init__(self):
        if not self.code:
            raise ValueError("Account code is required")
        if self.normal_balance is None:
            object.__setattr__(self, 'normal_balance', self.kind.default_normal_balance)


# Codes follow the Bolivian plan de cuentas used by the business
DEFAULT_ACCOUNTS: List[ChartAccount] = [
    ChartAccount("1111", "Cash on Hand", AccountKind.ASSET),
    ChartAccount("1112", "Bank - Banco Nacional de Bolivia", AccountKind.ASSET),
    ChartAccount("1121", "Accounts Receivable", AccountKind.ASSET),
    ChartAccount("1131", "Inventory", AccountKind.ASSET),
    ChartAccount("1142", "IVA Tax Credit", AccountKind.ASSET),
    ChartAccount("2111", "Accounts Payable", AccountKind.LIABILITY),
    ChartAccount("2131", "IVA Payable (Debito Fiscal)", AccountKind.LIABILITY),
    ChartAccount("3111", "Share Capital", AccountKind.EQUITY),
    ChartAccount("3211", "Retained Earnings", AccountKind.EQUITY),
    ChartAccount("4111", "Product Sales", AccountKind.REVENUE),
    ChartAccount("4191", "Other Income", AccountKind.REVENUE),
    ChartAccount("5111", "Cost of Goods Sold", AccountKind.EXPENSE),
    ChartAccount("5191", "General Expenses", AccountKind.EXPENSE),
    ChartAccount("5291", "Bank Charges", AccountKind.EXPENSE),
    ChartAccount("5322", "Inventory Losses and Shortages", AccountKind.EXPENSE),
]


@dataclass(frozen=True)
class AccountRoles:
    """
    Account codes the engines post to, by role

    Keeps routing rules (e.g. "only sales debit COGS") independent of the
    concrete numbering of a given chart.
    """
    cash: str = "1111"
    bank: str = "1112"
    receivable: str = "1121"
    inventory: str = "1131"
    payable: str = "2111"
    iva_credit: str = "1142"
    iva_payable: str = "2131"
    sales: str = "4111"
    other_income: str = "4191"
    cogs: str = "5111"
    inventory_losses: str = "5322"
    bank_charges: str = "5291"

    def validate(self, chart: 'ChartOfAccounts') -> None:
        """Ensure every role points at an account in the chart"""
        for role in fields(self):
            chart.get(getattr(self, role.name))


class ChartOfAccounts:
    """Read-only lookup of account code to account"""

    def __init__(self, accounts: List[ChartAccount]):
        self._accounts: Dict[str, ChartAccount] = {}
        for account in accounts:
            if account.code in self._accounts:
                raise ValueError(f"Duplicate account code {account.code}")
            self._accounts[account.code] = account

    @classmethod
    def default(cls) -> 'ChartOfAccounts':
        """Built-in chart of accounts"""
        return cls(DEFAULT_ACCOUNTS)

    @classmethod
    def from_records(cls, records: List[Dict]) -> 'ChartOfAccounts':
        """
        Build a chart from provider records

        Args:
            records: Dicts with ``code``, ``name``, ``kind`` and optionally
                ``normal_balance``

        Returns:
            ChartOfAccounts instance
        """
        accounts = []
        for record in records:
            normal_balance = record.get('normal_balance')
            accounts.append(ChartAccount(
                code=str(record['code']),
                name=record['name'],
                kind=AccountKind(record['kind'].lower()),
                normal_balance=NormalBalance(normal_balance.lower()) if normal_balance else None
            ))
        return cls(accounts)

    @classmethod
    def from_json_file(cls, path: Union[str, Path]) -> 'ChartOfAccounts':
        """Load a chart from a JSON array of account records"""
        with open(path, encoding="utf-8") as handle:
            return cls.from_records(json.load(handle))

    def get(self, code: str) -> ChartAccount:
        """Get account by code, raising UnknownAccountError if missing"""
        account = self._accounts.get(code)
        if account is None:
            raise UnknownAccountError(code)
        return account

    def contains(self, code: str) -> bool:
        return code in self._accounts

    def by_kind(self, kind: AccountKind) -> List[ChartAccount]:
        return [a for a in self._accounts.values() if a.kind == kind]

    def __iter__(self) -> Iterator[ChartAccount]:
        return iter(self._accounts.values())

    def __len__(self) -> int:
        return len(self._accounts)

    def __contains__(self, code: object) -> bool:
        return code in self._accounts
