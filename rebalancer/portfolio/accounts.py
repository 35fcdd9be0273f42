from __future__ import annotations

from typing import Protocol, runtime_checkable

from .models import Holding, Position, TargetAllocation
from .risk import RiskAllocation


@runtime_checkable
class AccountRef(Protocol):
    """One account regardless of ownership shape (individual, corporate, joint)."""

    id: str
    account_type: str
    household_name: str | None
    owner_name: str | None
    account_label: str | None

    def positions(self) -> list[Position]: ...

    def target_allocations(self) -> list[TargetAllocation]: ...

    def risk_allocation(self) -> RiskAllocation: ...


class HoldingRegistry(Protocol):
    def by_ticker(self, ticker: str) -> Holding | None: ...

    def by_id(self, holding_id: str) -> Holding | None: ...

    def create(self, ticker: str, risk_level: str, name: str | None = None, category: str = "auto_added", price: float = 0.0) -> Holding: ...


class ReportSink(Protocol):
    def send_reconciliation_report(
        self, account: AccountRef, reconciliation: dict, recipient: str, signal_id: str | None = None
    ) -> bool: ...


def account_display_name(account: AccountRef) -> str:
    parts = [p for p in (account.household_name, account.owner_name, account.account_label) if p]
    return " / ".join(parts) if parts else account.id
