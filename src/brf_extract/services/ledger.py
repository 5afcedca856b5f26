# [Shared: External Collaborators]
"""
Ledger: tenant balances and the append-only usage log.

The production ledger is an external store; the gateway only depends on the
``Ledger`` protocol. Balance changes are conditional, atomic operations:
``decrement_if_sufficient`` checks and subtracts in one step so that
concurrent reservations on the same tenant can never overdraw it.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Dict, Iterable, List, Optional, Protocol

from brf_extract.models.schemas import TenantAccount, UsageLogEntry

logger = logging.getLogger(__name__)


class Ledger(Protocol):
    async def account(self, tenant_id: str) -> Optional[TenantAccount]: ...

    async def decrement_if_sufficient(self, tenant_id: str, amount: float) -> bool: ...

    async def increment(self, tenant_id: str, amount: float) -> None: ...

    async def append_usage_log(self, entry: UsageLogEntry) -> None: ...


class InMemoryLedger:
    """Process-local ledger. One lock guards every balance mutation."""

    def __init__(self, accounts: Iterable[TenantAccount] = ()):
        self._accounts: Dict[str, TenantAccount] = {a.tenant_id: a for a in accounts}
        self._lock = asyncio.Lock()
        self.usage_log: List[UsageLogEntry] = []

    @classmethod
    def from_balances(cls, balances: Dict[str, float]) -> "InMemoryLedger":
        return cls(TenantAccount(tenant_id=t, balance=b) for t, b in balances.items())

    async def account(self, tenant_id: str) -> Optional[TenantAccount]:
        account = self._accounts.get(tenant_id)
        return account.model_copy() if account else None

    async def decrement_if_sufficient(self, tenant_id: str, amount: float) -> bool:
        if amount < 0:
            raise ValueError("amount must be non-negative")
        async with self._lock:
            account = self._accounts.get(tenant_id)
            if account is None or account.balance < amount:
                return False
            account.balance -= amount
            return True

    async def increment(self, tenant_id: str, amount: float) -> None:
        if amount < 0:
            raise ValueError("amount must be non-negative")
        async with self._lock:
            account = self._accounts.get(tenant_id)
            if account is None:
                raise KeyError(f"Unknown tenant: {tenant_id}")
            account.balance += amount

    async def append_usage_log(self, entry: UsageLogEntry) -> None:
        self.usage_log.append(entry)

    # Helpers for the service layer and tests

    def balance(self, tenant_id: str) -> float:
        account = self._accounts.get(tenant_id)
        return account.balance if account else 0.0

    def set_account(self, account: TenantAccount) -> None:
        self._accounts[account.tenant_id] = account

    def entries_for(self, tenant_id: str) -> List[UsageLogEntry]:
        return [e for e in self.usage_log if e.tenant_id == tenant_id]

    def total_cost(self, tenant_id: str) -> float:
        """Sum of charged cost across a tenant's usage log."""
        return sum(e.cost for e in self.entries_for(tenant_id))
