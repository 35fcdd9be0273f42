from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any

ACCOUNT_TYPES = ("individual", "corporate", "joint")
SIGNAL_DIRECTIONS = ("BUY", "SELL")


class InvalidAccountType(ValueError):
    pass


class SignalValidationError(ValueError):
    pass


def validate_account_type(account_type: str) -> str:
    value = (account_type or "").strip().lower()
    if value not in ACCOUNT_TYPES:
        raise InvalidAccountType(f"account_type must be {'|'.join(ACCOUNT_TYPES)}")
    return value


@dataclass
class Position:
    id: str
    account_id: str
    symbol: str
    quantity: Any
    current_price: Any
    entry_price: Any = 0.0


@dataclass
class Holding:
    id: str
    ticker: str
    name: str
    risk_level: str
    category: str = "basket_etf"
    price: float = 0.0
    dividend_rate: float = 0.0
    dividend_yield: float = 0.0
    dividend_payout: str = "none"


@dataclass
class TargetAllocation:
    id: str
    account_id: str
    holding_id: str
    target_percentage: float
    # Resolved holding fields, filled by the store
    ticker: str = ""
    name: str = ""
    holding_price: float = 0.0


@dataclass
class Signal:
    symbol: str
    direction: str
    price: float
    timestamp: str | None = None
    message: str | None = None
    report_recipient: str | None = None
    raw_payload: dict = field(default_factory=dict)
    id: str | None = None

    @classmethod
    def from_payload(cls, payload: dict) -> "Signal":
        if not isinstance(payload, dict):
            raise SignalValidationError("payload must be an object")
        symbol = str(payload.get("symbol") or "").strip()
        if not symbol:
            raise SignalValidationError("symbol is required")
        direction = str(payload.get("direction") or payload.get("signal") or "").strip().upper()
        if direction not in SIGNAL_DIRECTIONS:
            raise SignalValidationError("direction must be BUY|SELL")
        try:
            price = float(payload.get("price"))
        except (TypeError, ValueError):
            raise SignalValidationError("price must be a number")
        if not math.isfinite(price) or price <= 0:
            raise SignalValidationError("price must be > 0")
        return cls(
            symbol=symbol,
            direction=direction,
            price=price,
            timestamp=payload.get("timestamp"),
            message=payload.get("message"),
            report_recipient=payload.get("reportRecipient") or payload.get("report_recipient"),
            raw_payload=dict(payload),
        )
