"""Actual-vs-target allocation reconciliation for one account.

Rows are recomputed on every call; nothing here is cached. Internal math runs
at full precision and values are rounded only when a row is emitted.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping

import structlog

from ..config import settings
from ..utils import coerce_float, round2
from .models import Holding, Position, TargetAllocation
from .tickers import DEFAULT_TABLE, TickerTable, is_cash, normalize_loose

log = structlog.get_logger()

STATUS_OVER = "over"
STATUS_UNDER = "under"
STATUS_ON_TARGET = "on-target"
STATUS_UNEXPECTED = "unexpected"
STATUS_ZERO_BALANCE = "zero-balance"
STATUS_CAN_DEPLOY = "can-deploy"

ACTION_BUY = "buy"
ACTION_SELL = "sell"
ACTION_HOLD = "hold"


@dataclass
class HeldTicker:
    symbol: str
    value: float = 0.0
    quantity: float = 0.0
    price: float = 0.0


def percent_of(value: float, total: float) -> float:
    return value * 100.0 / total if total > 0 else 0.0


def aggregate_positions(positions: Iterable[Position], table: TickerTable = DEFAULT_TABLE):
    """Sum valid positions by loose ticker key.

    Returns ``(held_by_key, total_value, warnings)``. Positions with a negative,
    NaN or non-numeric quantity or price are left out of both the map and the
    total.
    """
    held: dict[str, HeldTicker] = {}
    total = 0.0
    warnings = []
    for pos in positions:
        qty = coerce_float(pos.quantity)
        price = coerce_float(pos.current_price)
        if qty is None or price is None or qty < 0 or price < 0:
            log.warning(
                "position_data_quality",
                position_id=pos.id,
                account_id=pos.account_id,
                symbol=pos.symbol,
                quantity=str(pos.quantity),
                current_price=str(pos.current_price),
            )
            warnings.append({
                "code": "position_data_quality",
                "symbol": pos.symbol,
                "message": f"Position {pos.symbol} skipped: invalid quantity or price",
            })
            continue
        key = normalize_loose(pos.symbol, table)
        if not key:
            continue
        value = qty * price
        total += value
        entry = held.get(key)
        if entry is None:
            entry = held[key] = HeldTicker(symbol=pos.symbol.strip().upper())
        entry.value += value
        entry.quantity += qty
        if price > 0:
            entry.price = price
    return held, total, warnings


def _action_for(ticker: str, dollars: float, noise_threshold: float, table: TickerTable) -> str:
    if is_cash(ticker, table):
        return ACTION_HOLD
    if dollars > noise_threshold:
        return ACTION_BUY
    if dollars < -noise_threshold:
        return ACTION_SELL
    return ACTION_HOLD


def _status_for(ticker: str, variance: float, band_pct: float, table: TickerTable) -> str:
    if is_cash(ticker, table) and variance > band_pct:
        return STATUS_CAN_DEPLOY
    if variance > band_pct:
        return STATUS_OVER
    if variance < -band_pct:
        return STATUS_UNDER
    return STATUS_ON_TARGET


def _merge_targets(targets: Iterable[TargetAllocation], table: TickerTable):
    merged: dict[str, dict] = {}
    for target in targets:
        if not target.ticker:
            continue
        key = normalize_loose(target.ticker, table)
        pct = coerce_float(target.target_percentage) or 0.0
        slot = merged.get(key)
        if slot is None:
            merged[key] = {"target": target, "pct": pct}
        else:
            slot["pct"] += pct
    return merged


def reconcile(
    positions: Iterable[Position],
    targets: Iterable[TargetAllocation],
    holdings_by_ref: Mapping[str, Holding] | None = None,
    *,
    band_pct: float | None = None,
    noise_threshold: float | None = None,
    table: TickerTable = DEFAULT_TABLE,
) -> dict:
    band = settings.recon_on_target_band_pct if band_pct is None else float(band_pct)
    threshold = settings.recon_trade_noise_threshold if noise_threshold is None else float(noise_threshold)
    targets = list(targets)
    if not targets:
        return {
            "has_target_allocations": False,
            "comparison": [],
            "total_actual_value": 0.0,
            "total_target_percentage": 0.0,
            "warnings": [],
        }

    held, total_value, warnings = aggregate_positions(positions, table)
    holdings_by_ref = holdings_by_ref or {}
    merged = _merge_targets(targets, table)
    total_target_pct = sum(coerce_float(t.target_percentage) or 0.0 for t in targets)

    rows = []
    for key, slot in merged.items():
        target: TargetAllocation = slot["target"]
        target_pct = slot["pct"]
        ticker = target.ticker.strip().upper()
        actual = held.get(key)
        actual_value = actual.value if actual else 0.0
        actual_pct = percent_of(actual_value, total_value)
        variance = actual_pct - target_pct
        target_value = target_pct * total_value / 100.0 if total_value > 0 else 0.0
        dollars = target_value - actual_value

        price = actual.price if actual and actual.price > 0 else 0.0
        if price <= 0:
            registry = holdings_by_ref.get(target.holding_id)
            price = (registry.price if registry else target.holding_price) or 0.0
        action = _action_for(ticker, dollars, threshold, table)
        shares = abs(dollars) / price if price > 0 else 0.0
        if price <= 0:
            log.warning("price_missing", ticker=ticker, account_id=target.account_id)
            warnings.append({
                "code": "price_missing",
                "symbol": ticker,
                "message": f"No price for {ticker}; share quantity cannot be sized",
            })

        status = _status_for(ticker, variance, band, table)
        if target_pct == 0 and actual_value == 0 and not is_cash(ticker, table):
            status = STATUS_ZERO_BALANCE
        rows.append({
            "allocation_id": target.id,
            "ticker": ticker,
            "name": target.name or ticker,
            "target_percentage": target_pct,
            "actual_percentage": actual_pct,
            "variance": variance,
            "actual_value": actual_value,
            "target_value": target_value,
            "quantity": actual.quantity if actual else 0.0,
            "status": status,
            "action_type": action,
            "action_dollar_amount": dollars,
            "action_shares": shares,
            "current_price": price,
        })

    for key, actual in held.items():
        if key in merged:
            continue
        actual_pct = percent_of(actual.value, total_value)
        cash = is_cash(actual.symbol, table)
        rows.append({
            "allocation_id": None,
            "ticker": actual.symbol,
            "name": actual.symbol,
            "target_percentage": 0.0,
            "actual_percentage": actual_pct,
            "variance": actual_pct,
            "actual_value": actual.value,
            "target_value": 0.0,
            "quantity": actual.quantity,
            "status": STATUS_UNEXPECTED,
            "action_type": ACTION_HOLD if cash else ACTION_SELL,
            "action_dollar_amount": -actual.value,
            "action_shares": -actual.quantity,
            "current_price": actual.price,
        })

    rows.sort(key=lambda r: abs(r["variance"]), reverse=True)
    return {
        "has_target_allocations": True,
        "comparison": [_rounded(r) for r in rows],
        "total_actual_value": round2(total_value),
        "total_target_percentage": round2(total_target_pct),
        "warnings": warnings,
    }


def _rounded(row: dict) -> dict:
    out = dict(row)
    for field in (
        "target_percentage",
        "actual_percentage",
        "variance",
        "actual_value",
        "target_value",
        "action_dollar_amount",
        "current_price",
    ):
        out[field] = round2(out[field])
    out["action_shares"] = round(out["action_shares"], 4)
    return out


def reconcile_account(account, registry=None, **kwargs) -> dict:
    """Reconcile an ``AccountRef`` against its own target rows."""
    targets = account.target_allocations()
    holdings_by_ref = {}
    if registry is not None:
        for target in targets:
            holding = registry.by_id(target.holding_id)
            if holding:
                holdings_by_ref[target.holding_id] = holding
    return reconcile(account.positions(), targets, holdings_by_ref, **kwargs)
