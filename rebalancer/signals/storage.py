from __future__ import annotations

import json
import sqlite3
import uuid

from ..utils import now_utc_iso

OPEN_TASK_STATUSES = ("pending", "in_progress", "blocked", "on_hold")
SIGNAL_STATUSES = ("pending", "executed", "dismissed")

_TASK_COLS = (
    "id", "account_id", "title", "description", "status", "priority", "signal_id",
    "signal_direction", "signal_symbol", "idempotency_key", "archived", "created_at_utc",
    "completed_at_utc",
)


def signal_task_key(account_id: str, direction: str, symbol: str) -> str:
    return f"{account_id}:{direction.upper()}:{symbol.upper()}"


def signal_task_title(direction: str, symbol: str) -> str:
    return f"Signal {direction.upper()} Alert: {symbol.upper()}"


def _task_from_row(row) -> dict:
    task = dict(zip(_TASK_COLS, row))
    task["archived"] = bool(task["archived"])
    return task


def create_signal(conn: sqlite3.Connection, signal) -> str:
    signal_id = str(uuid.uuid4())
    now = now_utc_iso()
    conn.execute(
        """
        INSERT INTO signals (id, symbol, direction, price, message, status, payload_json, signal_ts_utc, created_at_utc, updated_at_utc)
        VALUES (?,?,?,?,?,?,?,?,?,?)
        """,
        (
            signal_id,
            signal.symbol.strip().upper(),
            signal.direction,
            float(signal.price),
            signal.message or "",
            "pending",
            json.dumps(signal.raw_payload, default=str) if signal.raw_payload else None,
            str(signal.timestamp) if signal.timestamp is not None else None,
            now,
            now,
        ),
    )
    return signal_id


def get_signal(conn: sqlite3.Connection, signal_id: str) -> dict | None:
    row = conn.execute(
        "SELECT id, symbol, direction, price, message, status, created_at_utc FROM signals WHERE id=?",
        (signal_id,),
    ).fetchone()
    if not row:
        return None
    return {
        "id": row[0], "symbol": row[1], "direction": row[2], "price": row[3],
        "message": row[4], "status": row[5], "created_at_utc": row[6],
    }


def list_signals(conn: sqlite3.Connection, status: str | None = None) -> list[dict]:
    if status is not None and status not in SIGNAL_STATUSES:
        raise ValueError(f"status must be {'|'.join(SIGNAL_STATUSES)}")
    sql = "SELECT id FROM signals"
    params: list = []
    if status:
        sql += " WHERE status=?"
        params.append(status)
    sql += " ORDER BY created_at_utc DESC"
    return [get_signal(conn, r[0]) for r in conn.execute(sql, params).fetchall()]


def set_signal_status(conn: sqlite3.Connection, signal_id: str, status: str) -> bool:
    if status not in SIGNAL_STATUSES:
        raise ValueError(f"status must be {'|'.join(SIGNAL_STATUSES)}")
    cur = conn.cursor()
    cur.execute("UPDATE signals SET status=?, updated_at_utc=? WHERE id=?", (status, now_utc_iso(), signal_id))
    return cur.rowcount > 0


def get_open_task_by_key(conn: sqlite3.Connection, idempotency_key: str) -> dict | None:
    placeholders = ",".join("?" for _ in OPEN_TASK_STATUSES)
    row = conn.execute(
        f"""
        SELECT {", ".join(_TASK_COLS)} FROM account_tasks
        WHERE idempotency_key=? AND archived=0 AND status IN ({placeholders})
        ORDER BY created_at_utc DESC LIMIT 1
        """,
        (idempotency_key, *OPEN_TASK_STATUSES),
    ).fetchone()
    return _task_from_row(row) if row else None


def create_task_once(conn: sqlite3.Connection, task: dict) -> tuple[dict, bool]:
    """Insert ``task`` unless an open task already holds its idempotency key.

    Returns ``(task, created)``. The partial unique index on open keys makes a
    racing duplicate insert fail; that case resolves to the existing row.
    """
    key = task.get("idempotency_key")
    if key:
        existing = get_open_task_by_key(conn, key)
        if existing:
            return existing, False
    now = now_utc_iso()
    row = {
        "id": str(uuid.uuid4()),
        "account_id": task["account_id"],
        "title": task["title"],
        "description": task.get("description"),
        "status": task.get("status", "pending"),
        "priority": task.get("priority", "medium"),
        "signal_id": task.get("signal_id"),
        "signal_direction": task.get("signal_direction"),
        "signal_symbol": task.get("signal_symbol"),
        "idempotency_key": key,
    }
    try:
        conn.execute(
            """
            INSERT INTO account_tasks
              (id, account_id, title, description, status, priority, signal_id, signal_direction,
               signal_symbol, idempotency_key, archived, created_at_utc, updated_at_utc)
            VALUES (?,?,?,?,?,?,?,?,?,?,0,?,?)
            """,
            (*row.values(), now, now),
        )
    except sqlite3.IntegrityError:
        existing = get_open_task_by_key(conn, key) if key else None
        if existing:
            return existing, False
        raise
    return get_task(conn, row["id"]), True


def get_task(conn: sqlite3.Connection, task_id: str) -> dict | None:
    row = conn.execute(f"SELECT {', '.join(_TASK_COLS)} FROM account_tasks WHERE id=?", (task_id,)).fetchone()
    return _task_from_row(row) if row else None


def list_tasks(conn: sqlite3.Connection, account_id: str | None = None, include_archived: bool = False) -> list[dict]:
    clauses, params = [], []
    if account_id:
        clauses.append("account_id=?")
        params.append(account_id)
    if not include_archived:
        clauses.append("archived=0")
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = conn.execute(
        f"SELECT {', '.join(_TASK_COLS)} FROM account_tasks {where} ORDER BY created_at_utc DESC",
        params,
    ).fetchall()
    return [_task_from_row(r) for r in rows]


def complete_task(conn: sqlite3.Connection, task_id: str) -> bool:
    now = now_utc_iso()
    cur = conn.cursor()
    cur.execute(
        "UPDATE account_tasks SET status='completed', completed_at_utc=?, updated_at_utc=? WHERE id=? AND status!='completed'",
        (now, now, task_id),
    )
    return cur.rowcount > 0


def archive_task(conn: sqlite3.Connection, task_id: str) -> bool:
    now = now_utc_iso()
    cur = conn.cursor()
    cur.execute(
        "UPDATE account_tasks SET archived=1, archived_at_utc=?, updated_at_utc=? WHERE id=? AND archived=0",
        (now, now, task_id),
    )
    return cur.rowcount > 0


def archive_signal_tasks(conn: sqlite3.Connection, direction: str, symbol: str) -> int:
    """Archive open tasks raised by signals with this direction and symbol."""
    now = now_utc_iso()
    placeholders = ",".join("?" for _ in OPEN_TASK_STATUSES)
    cur = conn.cursor()
    cur.execute(
        f"""
        UPDATE account_tasks SET archived=1, archived_at_utc=?, updated_at_utc=?
        WHERE signal_direction=? AND signal_symbol=? AND archived=0 AND status IN ({placeholders})
        """,
        (now, now, direction.upper(), symbol.upper(), *OPEN_TASK_STATUSES),
    )
    return cur.rowcount


def archive_stale_signal_tasks(conn: sqlite3.Connection, older_than_utc: str) -> int:
    placeholders = ",".join("?" for _ in OPEN_TASK_STATUSES)
    now = now_utc_iso()
    cur = conn.cursor()
    cur.execute(
        f"""
        UPDATE account_tasks SET archived=1, archived_at_utc=?, updated_at_utc=?
        WHERE idempotency_key IS NOT NULL AND archived=0 AND status IN ({placeholders}) AND created_at_utc < ?
        """,
        (now, now, *OPEN_TASK_STATUSES, older_than_utc),
    )
    return cur.rowcount


def log_report_dispatch(
    conn: sqlite3.Connection,
    account_id: str,
    signal_id: str | None,
    recipient: str,
    channel: str,
    success: bool,
    error: str | None,
):
    conn.execute(
        """
        INSERT INTO report_dispatches (account_id, signal_id, recipient, channel, sent_at_utc, success, error)
        VALUES (?,?,?,?,?,?,?)
        """,
        (account_id, signal_id, recipient, channel, now_utc_iso(), 1 if success else 0, error),
    )
