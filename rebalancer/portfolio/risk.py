from __future__ import annotations

from dataclasses import dataclass, asdict

RISK_LEVELS = ("low", "low_medium", "medium", "medium_high", "high")

RISK_LEVEL_LABELS = {
    "low": "Low",
    "low_medium": "Low-Medium",
    "medium": "Medium",
    "medium_high": "Medium-High",
    "high": "High",
}

# accounts table column per tier
RISK_LEVEL_COLUMNS = {
    "low": "low_risk_pct",
    "low_medium": "low_medium_risk_pct",
    "medium": "medium_risk_pct",
    "medium_high": "medium_high_risk_pct",
    "high": "high_risk_pct",
}

HOLDING_CATEGORIES = ("basket_etf", "single_etf", "double_long_etf", "leveraged_etf", "security", "auto_added", "misc")
AUTO_ADDED_RISK_LEVEL = "medium"


def is_risk_level(value) -> bool:
    return value in RISK_LEVELS


@dataclass(frozen=True)
class RiskAllocation:
    low: float = 0.0
    low_medium: float = 0.0
    medium: float = 0.0
    medium_high: float = 0.0
    high: float = 0.0

    def limit_for(self, risk_level: str) -> float:
        if risk_level not in RISK_LEVELS:
            raise ValueError(f"unknown risk level: {risk_level}")
        return float(getattr(self, risk_level))

    def total(self) -> float:
        return sum(self.limit_for(level) for level in RISK_LEVELS)

    def as_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_row(cls, row: dict) -> "RiskAllocation":
        return cls(**{level: float(row.get(col) or 0.0) for level, col in RISK_LEVEL_COLUMNS.items()})
