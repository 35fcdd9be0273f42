from __future__ import annotations

import html
import sqlite3

import structlog

from ..portfolio.accounts import account_display_name
from ..services.telegram import TelegramClient
from ..utils import now_utc_iso
from .storage import log_report_dispatch

log = structlog.get_logger()

_STATUS_BADGE = {
    "over": "🔴 Over",
    "under": "🟡 Under",
    "on-target": "🟢 On target",
    "unexpected": "⚠️ Unexpected",
    "zero-balance": "⚪ Zero balance",
    "can-deploy": "💵 Can deploy",
}


def _fmt_money(value) -> str:
    if value is None:
        return "n/a"
    return f"${value:,.2f}"


def _fmt_pct(value) -> str:
    if value is None:
        return "n/a"
    return f"{value:.2f}%"


def build_reconciliation_report_html(account, reconciliation: dict) -> str:
    """Standalone HTML page with the account's actual vs target table."""
    name = html.escape(account_display_name(account))
    parts = [
        "<!DOCTYPE html>",
        "<html><head><meta charset=\"utf-8\">",
        f"<title>Rebalancing report: {name}</title>",
        "<style>body{font-family:sans-serif}table{border-collapse:collapse}"
        "td,th{border:1px solid #ccc;padding:4px 8px;text-align:right}"
        "td:first-child,th:first-child{text-align:left}</style>",
        "</head><body>",
        f"<h2>Rebalancing report: {name}</h2>",
        f"<p>Account type: {html.escape(account.account_type)} | Generated: {now_utc_iso()}</p>",
    ]
    if not reconciliation.get("has_target_allocations"):
        parts.append("<p>No target allocations are set for this account.</p>")
        parts.append("</body></html>")
        return "\n".join(parts)

    parts.append(
        f"<p>Total value: {_fmt_money(reconciliation.get('total_actual_value'))} | "
        f"Target total: {_fmt_pct(reconciliation.get('total_target_percentage'))}</p>"
    )
    parts.append("<table><tr><th>Ticker</th><th>Target</th><th>Actual</th><th>Variance</th>"
                 "<th>Value</th><th>Status</th><th>Action</th><th>Shares</th><th>Amount</th></tr>")
    for row in reconciliation.get("comparison") or []:
        parts.append(
            "<tr>"
            f"<td>{html.escape(row['ticker'])}</td>"
            f"<td>{_fmt_pct(row['target_percentage'])}</td>"
            f"<td>{_fmt_pct(row['actual_percentage'])}</td>"
            f"<td>{row['variance']:+.2f}</td>"
            f"<td>{_fmt_money(row['actual_value'])}</td>"
            f"<td>{_STATUS_BADGE.get(row['status'], row['status'])}</td>"
            f"<td>{row['action_type'].upper()}</td>"
            f"<td>{row['action_shares']:,.4f}</td>"
            f"<td>{_fmt_money(row['action_dollar_amount'])}</td>"
            "</tr>"
        )
    parts.append("</table>")
    warnings = reconciliation.get("warnings") or []
    if warnings:
        parts.append("<h3>Warnings</h3><ul>")
        for w in warnings:
            parts.append(f"<li>{html.escape(w.get('message', ''))}</li>")
        parts.append("</ul>")
    parts.append("</body></html>")
    return "\n".join(parts)


def report_caption_html(account, reconciliation: dict) -> str:
    rows = reconciliation.get("comparison") or []
    actionable = [r for r in rows if r["action_type"] != "hold"]
    return (
        f"📊 <b>Rebalancing report</b> | {html.escape(account_display_name(account))}\n"
        f"Value: {_fmt_money(reconciliation.get('total_actual_value'))} | "
        f"{len(actionable)} action(s)"
    )


def format_signal_summary_html(direction: str, symbol: str, result: dict) -> str:
    """Short chat message listing the accounts a signal produced tasks for."""
    head = f"📣 <b>Signal {html.escape(direction.upper())}: {html.escape(symbol.upper())}</b>"
    if not result.get("tasks"):
        return f"{head}\nNo accounts affected."
    lines = [head, f"New tasks: {result.get('tasks_created', 0)} | Reports: {result.get('reports_sent', 0)}"]
    for entry in result["tasks"][:20]:
        lines.append(f"• {html.escape(entry)}")
    if len(result["tasks"]) > 20:
        lines.append(f"…and {len(result['tasks']) - 20} more.")
    return "\n".join(lines)


class TelegramReportSink:
    """Sends reconciliation reports as HTML attachments; the recipient is a chat id."""

    channel = "telegram"

    def __init__(self, conn: sqlite3.Connection, client: TelegramClient, signal_id: str | None = None):
        self.conn = conn
        self.client = client
        self.signal_id = signal_id

    def send_reconciliation_report(self, account, reconciliation: dict, recipient: str, signal_id: str | None = None) -> bool:
        body = build_reconciliation_report_html(account, reconciliation)
        filename = f"rebalance_{account.id}.html"
        error = None
        try:
            ok = self.client.send_document_sync(
                filename,
                body.encode("utf-8"),
                caption_html=report_caption_html(account, reconciliation),
                chat_id=recipient,
            )
        except Exception as exc:
            ok = False
            error = str(exc)
            log.warning("report_send_failed", account_id=account.id, recipient=recipient, error=error)
        log_report_dispatch(self.conn, account.id, signal_id or self.signal_id, str(recipient), self.channel, bool(ok), error)
        return bool(ok)
