from __future__ import annotations

import sqlite3

import structlog

from ..config import settings
from ..portfolio.accounts import ReportSink, account_display_name
from ..portfolio.models import Signal
from ..portfolio.reconcile import aggregate_positions, percent_of, reconcile_account
from ..portfolio.storage import SqliteHoldingRegistry, accounts_holding, accounts_targeting, get_account
from ..portfolio.tickers import DEFAULT_TABLE, TickerTable, normalize_loose
from ..utils import coerce_float
from .storage import (
    archive_signal_tasks,
    create_signal,
    create_task_once,
    get_signal,
    list_signals,
    set_signal_status,
    signal_task_key,
    signal_task_title,
)

log = structlog.get_logger()


def _validated(signal: Signal | dict) -> Signal:
    if isinstance(signal, Signal):
        payload = {
            **signal.raw_payload,
            "symbol": signal.symbol,
            "direction": signal.direction,
            "price": signal.price,
            "message": signal.message,
            "timestamp": signal.timestamp,
            "reportRecipient": signal.report_recipient,
        }
        return Signal.from_payload(payload)
    return Signal.from_payload(signal)


def _target_pct_for(account, key: str, table: TickerTable) -> float:
    total = 0.0
    for target in account.target_allocations():
        if normalize_loose(target.ticker, table) == key:
            total += coerce_float(target.target_percentage) or 0.0
    return total


def _stored_price_for(account, key: str, table: TickerTable) -> float:
    for pos in account.positions():
        if normalize_loose(pos.symbol, table) == key:
            price = coerce_float(pos.current_price)
            if price:
                return price
    for target in account.target_allocations():
        if normalize_loose(target.ticker, table) == key and target.holding_price:
            return float(target.holding_price)
    return 0.0


def _evaluate_account(account, signal: Signal, key: str, table: TickerTable) -> dict | None:
    """Return the sizing for ``account`` if the signal applies to it, else None."""
    held, total, _warnings = aggregate_positions(account.positions(), table)
    if total <= 0:
        return None
    actual_value = held[key].value if key in held else 0.0
    actual_pct = percent_of(actual_value, total)
    target_pct = _target_pct_for(account, key, table)
    if key in held:
        if signal.direction == "BUY" and not actual_pct < target_pct:
            return None
        if signal.direction == "SELL" and not actual_pct > target_pct:
            return None
    elif signal.direction != "BUY" or signal.price <= 0 or target_pct <= 0:
        # not yet deployed: only accounts with a positive target qualify
        return None

    target_value = target_pct * total / 100.0
    dollars = abs(target_value - actual_value)
    if dollars <= 0:
        return None
    return {
        "actual_pct": actual_pct,
        "target_pct": target_pct,
        "variance": actual_pct - target_pct,
        "dollars": dollars,
        "shares": dollars / signal.price,
        "stored_price": _stored_price_for(account, key, table),
    }


def build_task_description(account, signal: Signal, sizing: dict) -> str:
    verb = "Buy" if signal.direction == "BUY" else "Sell"
    lines = [
        f"{signal.direction} signal received for {signal.symbol.upper()}.",
        f"Signal price: ${signal.price:,.2f} (stored price: ${sizing['stored_price']:,.2f})",
        f"Household: {account.household_name or '-'}",
        f"Owner: {account.owner_name or '-'}",
        f"Account: {account.account_label or account.id} ({account.account_type})",
        f"Current allocation: {sizing['actual_pct']:.2f}%",
        f"Target allocation: {sizing['target_pct']:.2f}%",
        f"Variance: {sizing['variance']:+.2f}%",
        f"Recommended: {verb} {sizing['shares']:,.4f} shares (~${sizing['dollars']:,.2f})",
    ]
    if signal.message:
        lines.append(f"Note: {signal.message}")
    return "\n".join(lines)


def process_signal(
    conn: sqlite3.Connection,
    signal: Signal | dict,
    *,
    report_sink: ReportSink | None = None,
    registry: SqliteHoldingRegistry | None = None,
    table: TickerTable = DEFAULT_TABLE,
) -> dict:
    """Turn one BUY/SELL signal into advisory tasks for every affected account.

    Raises ``SignalValidationError`` for a malformed signal before any account
    is touched. Per-account failures are logged and left out of the summary.
    ``tasks`` lists the accounts that got a new task and ``accounts`` those that
    were sent a report; an already-open task produces neither.
    """
    signal = _validated(signal)
    registry = registry or SqliteHoldingRegistry(conn, table)
    signal.id = create_signal(conn, signal)
    key = normalize_loose(signal.symbol, table)
    log.info("signal_received", signal_id=signal.id, symbol=signal.symbol, direction=signal.direction, price=signal.price)

    holders = accounts_holding(conn, signal.symbol, table)
    candidates = list(holders)
    if signal.direction == "BUY":
        candidates += [a for a in accounts_targeting(conn, signal.symbol, table) if a not in holders]

    recipient = signal.report_recipient or settings.report_default_recipient
    summary = {"accepted": True, "tasks_created": 0, "tasks": [], "reports_sent": 0, "accounts": []}
    for account_id in candidates:
        try:
            account = get_account(conn, account_id)
            if account is None:
                continue
            sizing = _evaluate_account(account, signal, key, table)
            if sizing is None:
                continue
            task, created = create_task_once(
                conn,
                {
                    "account_id": account.id,
                    "title": signal_task_title(signal.direction, signal.symbol),
                    "description": build_task_description(account, signal, sizing),
                    "priority": "high",
                    "signal_id": signal.id,
                    "signal_direction": signal.direction,
                    "signal_symbol": key,
                    "idempotency_key": signal_task_key(account.id, signal.direction, key),
                },
            )
            if not created:
                log.info("signal_task_exists", account_id=account.id, task_id=task["id"])
                continue
            line = f"{account_display_name(account)} — {signal.direction} — {signal.symbol.upper()}"
            summary["tasks_created"] += 1
            summary["tasks"].append(line)
        except Exception as exc:
            log.error("signal_account_failed", account_id=account_id, signal_id=signal.id, error=str(exc))
            continue

        if report_sink is not None and recipient:
            try:
                reconciliation = reconcile_account(account, registry, table=table)
                if report_sink.send_reconciliation_report(account, reconciliation, recipient, signal_id=signal.id):
                    summary["reports_sent"] += 1
                    summary["accounts"].append(line)
            except Exception as exc:
                log.warning("signal_report_failed", account_id=account.id, recipient=recipient, error=str(exc))

    log.info(
        "signal_processed",
        signal_id=signal.id,
        tasks_created=summary["tasks_created"],
        reports_sent=summary["reports_sent"],
    )
    return summary


def dismiss_signal(conn: sqlite3.Connection, signal_id: str, table: TickerTable = DEFAULT_TABLE) -> int | None:
    """Mark a signal dismissed and archive open tasks for its direction and symbol.

    Returns the number of archived tasks, or None when the signal is unknown.
    """
    signal = get_signal(conn, signal_id)
    if signal is None:
        return None
    set_signal_status(conn, signal_id, "dismissed")
    archived = archive_signal_tasks(conn, signal["direction"], normalize_loose(signal["symbol"], table))
    log.info("signal_dismissed", signal_id=signal_id, tasks_archived=archived)
    return archived


def dismiss_all_pending(conn: sqlite3.Connection, table: TickerTable = DEFAULT_TABLE) -> dict:
    pending = list_signals(conn, "pending")
    done = set()
    archived = 0
    for signal in pending:
        set_signal_status(conn, signal["id"], "dismissed")
        pair = (signal["direction"], normalize_loose(signal["symbol"], table))
        if pair in done:
            continue
        done.add(pair)
        archived += archive_signal_tasks(conn, *pair)
    log.info("signals_dismissed_all", signals=len(pending), tasks_archived=archived)
    return {"signals_dismissed": len(pending), "tasks_archived": archived}
