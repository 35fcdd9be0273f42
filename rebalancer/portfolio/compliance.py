"""Risk category compliance.

Every ticker must be classified in the holdings library, the account must
allow the ticker's risk tier, and a new position must not push the tier past
the account's configured ceiling. Violations come back as structured results;
nothing in here raises for a compliance failure.
"""
from __future__ import annotations

import structlog

from ..config import settings
from ..utils import coerce_float, round1
from .accounts import AccountRef, HoldingRegistry
from .risk import RISK_LEVELS, RISK_LEVEL_LABELS, RiskAllocation

log = structlog.get_logger()


def _fmt_pct(value: float) -> str:
    # 25.0 -> "25", 25.5 -> "25.5"
    return f"{value:g}"


def _empty_result(ticker: str) -> dict:
    return {
        "compliant": False,
        "ticker": ticker,
        "errors": [],
        "warnings": [],
        "details": {"ticker_in_library": False},
    }


def category_values(positions, registry: HoldingRegistry):
    """Sum position value per risk tier.

    Returns ``(values_by_level, total_value, unclassified)`` where
    ``unclassified`` lists ``(symbol, value)`` for positions whose ticker has no
    library row; their value still counts toward the total.
    """
    values = {level: 0.0 for level in RISK_LEVELS}
    total = 0.0
    unclassified = []
    cache: dict[str, str | None] = {}
    for pos in positions:
        qty = coerce_float(pos.quantity)
        price = coerce_float(pos.current_price)
        if qty is None or price is None or qty < 0 or price < 0:
            log.warning("position_data_quality", position_id=pos.id, symbol=pos.symbol)
            continue
        value = qty * price
        total += value
        symbol = pos.symbol.strip().upper()
        if symbol not in cache:
            holding = registry.by_ticker(symbol)
            cache[symbol] = holding.risk_level if holding else None
        level = cache[symbol]
        if level is None or level not in values:
            unclassified.append((symbol, value))
            continue
        values[level] += value
    return values, total, unclassified


def check_position_compliance(
    account: AccountRef | None,
    ticker: str,
    position_value: float,
    registry: HoldingRegistry,
    *,
    near_limit_ratio: float | None = None,
) -> dict:
    ratio = settings.compliance_near_limit_ratio if near_limit_ratio is None else float(near_limit_ratio)
    ticker = (ticker or "").strip()
    result = _empty_result(ticker)
    errors, warnings, details = result["errors"], result["warnings"], result["details"]

    holding = registry.by_ticker(ticker)
    if holding is None:
        errors.append(
            f'Ticker "{ticker}" is not in the Holdings Library. '
            "Please add it with a risk classification before creating this position."
        )
        return result

    details["ticker_in_library"] = True
    details["ticker_risk_level"] = holding.risk_level

    if account is None:
        errors.append("Account not found")
        return result

    allocation: RiskAllocation = account.risk_allocation()
    details["account_allocation"] = allocation.as_dict()
    level = holding.risk_level
    label = RISK_LEVEL_LABELS.get(level, level)
    limit = allocation.limit_for(level)
    details["category_allocation_limit"] = limit

    if limit == 0:
        details["risk_level_allowed"] = False
        errors.append(
            f"This account has 0% allocation for {label} risk. "
            f'"{ticker}" is classified as {label} risk and cannot be added.'
        )
        return result
    details["risk_level_allowed"] = True

    values, total, _unclassified = category_values(account.positions(), registry)
    current_value = values[level]
    current_weight = current_value * 100.0 / total if total > 0 else 0.0
    details["current_category_weight"] = round1(current_weight)

    added = coerce_float(position_value) or 0.0
    new_total = total + added
    projected = (current_value + added) * 100.0 / new_total if new_total > 0 else 100.0
    details["projected_category_weight"] = round1(projected)

    if projected > limit:
        exceeded_by = round1(projected - limit)
        errors.append(
            f"Adding this position would put {label} risk at {_fmt_pct(round1(projected))}%, "
            f"exceeding your {_fmt_pct(limit)}% allocation by {_fmt_pct(exceeded_by)}%."
        )
        return result

    if projected > limit * ratio:
        warnings.append(
            f"This position brings {label} risk to {_fmt_pct(round1(projected))}%, "
            f"approaching your {_fmt_pct(limit)}% limit."
        )

    result["compliant"] = True
    return result


def check_account_compliance(account: AccountRef | None, registry: HoldingRegistry) -> dict:
    if account is None:
        return {"compliant": False, "issues": [{"ticker": "", "issue": "Account not found"}], "category_weights": {}}

    allocation = account.risk_allocation()
    values, total, unclassified = category_values(account.positions(), registry)
    issues = []
    for symbol, _value in unclassified:
        log.warning("unclassified_ticker", account_id=account.id, ticker=symbol)
        issues.append({"ticker": symbol, "issue": "Not in Holdings Library - unclassified risk"})

    forbidden_reported = set()
    for pos in account.positions():
        holding = registry.by_ticker(pos.symbol)
        if not holding or holding.risk_level not in RISK_LEVELS:
            continue
        key = (pos.symbol.strip().upper(), holding.risk_level)
        if allocation.limit_for(holding.risk_level) == 0 and key not in forbidden_reported:
            forbidden_reported.add(key)
            label = RISK_LEVEL_LABELS[holding.risk_level]
            issues.append({
                "ticker": key[0],
                "issue": f"{label} risk not allowed (0% allocation)",
                "risk_level": holding.risk_level,
            })

    weights = {}
    for level in RISK_LEVELS:
        current = values[level] * 100.0 / total if total > 0 else 0.0
        limit = allocation.limit_for(level)
        weights[level] = {"current": round1(current), "limit": limit}
        if limit > 0 and current > limit:
            label = RISK_LEVEL_LABELS[level]
            issues.append({
                "ticker": "",
                "issue": f"{label} category at {round1(current):g}%, exceeds {_fmt_pct(limit)}% limit",
                "risk_level": level,
            })

    return {"compliant": not issues, "issues": issues, "category_weights": weights}


def validate_target_risk(targets, allocation: RiskAllocation, registry: HoldingRegistry, *, warning_ratio: float | None = None) -> dict:
    """Check an account's target model against its per-tier ceilings."""
    ratio = settings.target_risk_warning_ratio if warning_ratio is None else float(warning_ratio)
    totals = {level: 0.0 for level in RISK_LEVELS}
    unclassified = []
    for target in targets:
        holding = registry.by_id(target.holding_id) if target.holding_id else registry.by_ticker(target.ticker)
        pct = coerce_float(target.target_percentage) or 0.0
        if holding is None or holding.risk_level not in totals:
            unclassified.append(target.ticker)
            continue
        totals[holding.risk_level] += pct

    violations, warnings = [], []
    for level in RISK_LEVELS:
        total = totals[level]
        limit = allocation.limit_for(level)
        entry = {"risk_level": level, "current_percentage": round1(total), "max_allowed": limit}
        if total > limit:
            violations.append({**entry, "exceeded_by": round1(total - limit)})
        elif limit > 0 and total > limit * ratio:
            warnings.append({**entry, "exceeded_by": 0.0})
    return {
        "is_valid": not violations,
        "violations": violations,
        "warnings": warnings,
        "unclassified": unclassified,
    }
