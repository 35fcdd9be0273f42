from __future__ import annotations

import sqlite3
import uuid

import structlog

from ..utils import now_utc_iso
from .models import Holding, Position, TargetAllocation, validate_account_type
from .risk import AUTO_ADDED_RISK_LEVEL, RISK_LEVEL_COLUMNS, RiskAllocation, is_risk_level
from .tickers import DEFAULT_TABLE, TickerTable, normalize_canonical, normalize_loose, registry_candidates

log = structlog.get_logger()

_HOLDING_COLS = "id, ticker, name, risk_level, category, price, dividend_rate, dividend_yield, dividend_payout"


def _holding_from_row(row) -> Holding:
    return Holding(
        id=row[0],
        ticker=row[1],
        name=row[2],
        risk_level=row[3],
        category=row[4],
        price=float(row[5] or 0.0),
        dividend_rate=float(row[6] or 0.0),
        dividend_yield=float(row[7] or 0.0),
        dividend_payout=row[8],
    )


class SqliteHoldingRegistry:
    def __init__(self, conn: sqlite3.Connection, table: TickerTable = DEFAULT_TABLE):
        self.conn = conn
        self.table = table

    def by_ticker(self, ticker: str) -> Holding | None:
        cur = self.conn.cursor()
        for key in registry_candidates(ticker, self.table):
            row = cur.execute(f"SELECT {_HOLDING_COLS} FROM universal_holdings WHERE ticker=?", (key,)).fetchone()
            if row:
                return _holding_from_row(row)
        # library rows may carry an exchange suffix the caller left off
        key = normalize_loose(ticker, self.table)
        if not key:
            return None
        for row in cur.execute(f"SELECT {_HOLDING_COLS} FROM universal_holdings ORDER BY created_at_utc").fetchall():
            if normalize_loose(row[1], self.table) == key:
                return _holding_from_row(row)
        return None

    def by_id(self, holding_id: str) -> Holding | None:
        row = self.conn.execute(f"SELECT {_HOLDING_COLS} FROM universal_holdings WHERE id=?", (holding_id,)).fetchone()
        return _holding_from_row(row) if row else None

    def create(self, ticker: str, risk_level: str, name: str | None = None, category: str = "auto_added", price: float = 0.0) -> Holding:
        if not is_risk_level(risk_level):
            raise ValueError(f"unknown risk level: {risk_level}")
        canonical = normalize_canonical(ticker, self.table)
        if not canonical:
            raise ValueError("ticker is required")
        now = now_utc_iso()
        self.conn.execute(
            """
            INSERT INTO universal_holdings
              (id, ticker, name, category, risk_level, price, created_at_utc, updated_at_utc)
            VALUES (?,?,?,?,?,?,?,?)
            ON CONFLICT(ticker) DO NOTHING
            """,
            (str(uuid.uuid4()), canonical, name or canonical, category, risk_level, float(price or 0.0), now, now),
        )
        return self.by_ticker(canonical)

    def ensure(self, ticker: str, name: str | None = None) -> Holding:
        """Return the library row for ``ticker``, auto-adding an unclassified-default row if absent."""
        existing = self.by_ticker(ticker)
        if existing:
            return existing
        holding = self.create(ticker, AUTO_ADDED_RISK_LEVEL, name=name, category="auto_added")
        log.info("holding_auto_added", ticker=holding.ticker, risk_level=holding.risk_level)
        return holding

    def classify(self, ticker: str, risk_level: str, name: str | None = None, category: str | None = None) -> Holding:
        holding = self.by_ticker(ticker)
        if holding is None:
            return self.create(ticker, risk_level, name=name, category=category or "basket_etf")
        self.conn.execute(
            """
            UPDATE universal_holdings
            SET risk_level=?, name=COALESCE(?, name), category=COALESCE(?, category), updated_at_utc=?
            WHERE id=?
            """,
            (risk_level, name, category, now_utc_iso(), holding.id),
        )
        return self.by_id(holding.id)

    def all(self) -> list[Holding]:
        rows = self.conn.execute(f"SELECT {_HOLDING_COLS} FROM universal_holdings ORDER BY ticker").fetchall()
        return [_holding_from_row(r) for r in rows]

    def set_price(self, holding_id: str, price: float, now_utc: str):
        self.conn.execute(
            "UPDATE universal_holdings SET price=?, price_updated_at_utc=?, updated_at_utc=? WHERE id=?",
            (float(price), now_utc, now_utc, holding_id),
        )


class SqliteAccount:
    def __init__(self, conn: sqlite3.Connection, row: dict):
        self.conn = conn
        self.id = row["id"]
        self.account_type = row["account_type"]
        self.household_name = row.get("household_name")
        self.owner_name = row.get("owner_name")
        self.account_label = row.get("account_label")
        self._allocation = RiskAllocation.from_row(row)

    def positions(self) -> list[Position]:
        rows = self.conn.execute(
            "SELECT id, account_id, symbol, quantity, current_price, entry_price FROM positions WHERE account_id=? ORDER BY created_at_utc, id",
            (self.id,),
        ).fetchall()
        return [
            Position(id=r[0], account_id=r[1], symbol=r[2], quantity=r[3], current_price=r[4], entry_price=r[5])
            for r in rows
        ]

    def target_allocations(self) -> list[TargetAllocation]:
        rows = self.conn.execute(
            """
            SELECT t.id, t.account_id, t.holding_id, t.target_percentage, h.ticker, h.name, h.price
            FROM target_allocations t
            JOIN universal_holdings h ON h.id = t.holding_id
            WHERE t.account_id=?
            ORDER BY t.created_at_utc, t.id
            """,
            (self.id,),
        ).fetchall()
        return [
            TargetAllocation(
                id=r[0],
                account_id=r[1],
                holding_id=r[2],
                target_percentage=float(r[3] or 0.0),
                ticker=r[4],
                name=r[5],
                holding_price=float(r[6] or 0.0),
            )
            for r in rows
        ]

    def risk_allocation(self) -> RiskAllocation:
        return self._allocation

    def __repr__(self):
        return f"SqliteAccount({self.account_type}:{self.id})"


_ACCOUNT_COLS = (
    "id", "account_type", "household_name", "owner_name", "account_label",
    *RISK_LEVEL_COLUMNS.values(),
)


def create_account(
    conn: sqlite3.Connection,
    account_type: str,
    *,
    account_id: str | None = None,
    household_name: str | None = None,
    owner_name: str | None = None,
    account_label: str | None = None,
    risk_allocation: RiskAllocation | None = None,
) -> SqliteAccount:
    account_type = validate_account_type(account_type)
    allocation = risk_allocation or RiskAllocation()
    account_id = account_id or str(uuid.uuid4())
    conn.execute(
        f"""
        INSERT INTO accounts ({", ".join(_ACCOUNT_COLS)}, created_at_utc)
        VALUES ({", ".join("?" for _ in _ACCOUNT_COLS)}, ?)
        """,
        (
            account_id,
            account_type,
            household_name,
            owner_name,
            account_label,
            *(allocation.limit_for(level) for level in RISK_LEVEL_COLUMNS),
            now_utc_iso(),
        ),
    )
    return get_account(conn, account_id)


def get_account(conn: sqlite3.Connection, account_id: str, account_type: str | None = None) -> SqliteAccount | None:
    row = conn.execute(f"SELECT {', '.join(_ACCOUNT_COLS)} FROM accounts WHERE id=?", (account_id,)).fetchone()
    if not row:
        return None
    data = dict(zip(_ACCOUNT_COLS, row))
    if account_type is not None and data["account_type"] != validate_account_type(account_type):
        return None
    return SqliteAccount(conn, data)


def list_accounts(conn: sqlite3.Connection) -> list[SqliteAccount]:
    rows = conn.execute(f"SELECT {', '.join(_ACCOUNT_COLS)} FROM accounts ORDER BY created_at_utc, id").fetchall()
    return [SqliteAccount(conn, dict(zip(_ACCOUNT_COLS, r))) for r in rows]


def add_position(
    conn: sqlite3.Connection,
    account_id: str,
    symbol: str,
    quantity: float,
    current_price: float,
    entry_price: float | None = None,
) -> Position:
    position_id = str(uuid.uuid4())
    entry = current_price if entry_price is None else entry_price
    conn.execute(
        """
        INSERT INTO positions (id, account_id, symbol, quantity, entry_price, current_price, created_at_utc)
        VALUES (?,?,?,?,?,?,?)
        """,
        (position_id, account_id, symbol.strip().upper(), quantity, entry, current_price, now_utc_iso()),
    )
    return Position(
        id=position_id,
        account_id=account_id,
        symbol=symbol.strip().upper(),
        quantity=quantity,
        current_price=current_price,
        entry_price=entry,
    )


def replace_target_allocations(
    conn: sqlite3.Connection,
    account_id: str,
    targets: list[dict],
    registry: SqliteHoldingRegistry,
    source_portfolio_type: str | None = None,
) -> list[TargetAllocation]:
    """Replace every target row of an account; tickers missing from the library are auto-added."""
    rows = []
    for item in targets:
        holding = registry.ensure(item["ticker"], name=item.get("name"))
        rows.append((holding, float(item["target_percentage"])))
    now = now_utc_iso()
    cur = conn.cursor()
    cur.execute("BEGIN")
    try:
        cur.execute("DELETE FROM target_allocations WHERE account_id=?", (account_id,))
        for holding, pct in rows:
            cur.execute(
                """
                INSERT INTO target_allocations (id, account_id, holding_id, target_percentage, source_portfolio_type, created_at_utc)
                VALUES (?,?,?,?,?,?)
                """,
                (str(uuid.uuid4()), account_id, holding.id, pct, source_portfolio_type, now),
            )
        cur.execute("COMMIT")
    except Exception:
        cur.execute("ROLLBACK")
        raise
    account = get_account(conn, account_id)
    return account.target_allocations() if account else []


def accounts_holding(conn: sqlite3.Connection, symbol: str, table: TickerTable = DEFAULT_TABLE) -> list[str]:
    key = normalize_loose(symbol, table)
    rows = conn.execute("SELECT DISTINCT account_id, symbol FROM positions").fetchall()
    seen = []
    for account_id, pos_symbol in rows:
        if normalize_loose(pos_symbol, table) == key and account_id not in seen:
            seen.append(account_id)
    return seen


def accounts_targeting(conn: sqlite3.Connection, symbol: str, table: TickerTable = DEFAULT_TABLE) -> list[str]:
    key = normalize_loose(symbol, table)
    rows = conn.execute(
        """
        SELECT DISTINCT t.account_id, h.ticker
        FROM target_allocations t
        JOIN universal_holdings h ON h.id = t.holding_id
        WHERE t.target_percentage > 0
        """
    ).fetchall()
    seen = []
    for account_id, ticker in rows:
        if normalize_loose(ticker, table) == key and account_id not in seen:
            seen.append(account_id)
    return seen


def distinct_position_symbols(conn: sqlite3.Connection) -> list[str]:
    return [r[0] for r in conn.execute("SELECT DISTINCT symbol FROM positions ORDER BY symbol").fetchall()]


def update_position_prices(conn: sqlite3.Connection, symbol: str, price: float, now_utc: str) -> int:
    cur = conn.cursor()
    cur.execute(
        "UPDATE positions SET current_price=?, price_updated_at_utc=? WHERE symbol=?",
        (float(price), now_utc, symbol),
    )
    return cur.rowcount
