import sqlite3
from pathlib import Path

def get_conn(db_path: str) -> sqlite3.Connection:
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, isolation_level=None, check_same_thread=False)  # autocommit
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn

DDL = [
    # Accounts (individual / corporate / joint share one shape)
    """
CREATE TABLE IF NOT EXISTS accounts (
  id TEXT PRIMARY KEY,
  account_type TEXT NOT NULL,     -- 'individual'|'corporate'|'joint'
  household_name TEXT,
  owner_name TEXT,
  account_label TEXT,
  low_risk_pct REAL NOT NULL DEFAULT 0,
  low_medium_risk_pct REAL NOT NULL DEFAULT 0,
  medium_risk_pct REAL NOT NULL DEFAULT 0,
  medium_high_risk_pct REAL NOT NULL DEFAULT 0,
  high_risk_pct REAL NOT NULL DEFAULT 0,
  created_at_utc TEXT NOT NULL
);
""",
    "CREATE INDEX IF NOT EXISTS ix_accounts_type ON accounts(account_type);",

    # Holdings library, one row per canonical ticker
    """
CREATE TABLE IF NOT EXISTS universal_holdings (
  id TEXT PRIMARY KEY,
  ticker TEXT NOT NULL UNIQUE,
  name TEXT NOT NULL,
  category TEXT NOT NULL DEFAULT 'basket_etf',
  risk_level TEXT NOT NULL,       -- 'low'|'low_medium'|'medium'|'medium_high'|'high'
  price REAL NOT NULL DEFAULT 0,
  price_updated_at_utc TEXT,
  dividend_rate REAL NOT NULL DEFAULT 0,
  dividend_yield REAL NOT NULL DEFAULT 0,
  dividend_payout TEXT NOT NULL DEFAULT 'none',
  created_at_utc TEXT NOT NULL,
  updated_at_utc TEXT NOT NULL
);
""",

    """
CREATE TABLE IF NOT EXISTS positions (
  id TEXT PRIMARY KEY,
  account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
  symbol TEXT NOT NULL,
  quantity REAL NOT NULL,
  entry_price REAL NOT NULL DEFAULT 0,
  current_price REAL NOT NULL DEFAULT 0,
  price_updated_at_utc TEXT,
  created_at_utc TEXT NOT NULL
);
""",
    "CREATE INDEX IF NOT EXISTS ix_positions_account ON positions(account_id);",
    "CREATE INDEX IF NOT EXISTS ix_positions_symbol ON positions(symbol);",

    """
CREATE TABLE IF NOT EXISTS target_allocations (
  id TEXT PRIMARY KEY,
  account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
  holding_id TEXT NOT NULL REFERENCES universal_holdings(id) ON DELETE CASCADE,
  target_percentage REAL NOT NULL,
  source_portfolio_type TEXT,
  created_at_utc TEXT NOT NULL
);
""",
    "CREATE INDEX IF NOT EXISTS ix_targets_account ON target_allocations(account_id);",
    "CREATE INDEX IF NOT EXISTS ix_targets_holding ON target_allocations(holding_id);",

    # Inbound signals, stored once per delivery (duplicates allowed)
    """
CREATE TABLE IF NOT EXISTS signals (
  id TEXT PRIMARY KEY,
  symbol TEXT NOT NULL,
  direction TEXT NOT NULL,        -- 'BUY'|'SELL'
  price REAL NOT NULL,
  message TEXT,
  status TEXT NOT NULL DEFAULT 'pending', -- 'pending'|'executed'|'dismissed'
  payload_json TEXT,
  signal_ts_utc TEXT,
  created_at_utc TEXT NOT NULL,
  updated_at_utc TEXT NOT NULL
);
""",
    "CREATE INDEX IF NOT EXISTS ix_signals_status ON signals(status, created_at_utc);",

    # Advisory tasks; idempotency_key = account_id:direction:symbol for signal tasks
    """
CREATE TABLE IF NOT EXISTS account_tasks (
  id TEXT PRIMARY KEY,
  account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
  title TEXT NOT NULL,
  description TEXT,
  status TEXT NOT NULL DEFAULT 'pending',
  priority TEXT NOT NULL DEFAULT 'medium',
  due_date TEXT,
  signal_id TEXT,
  signal_direction TEXT,
  signal_symbol TEXT,
  idempotency_key TEXT,
  archived INTEGER NOT NULL DEFAULT 0,
  created_at_utc TEXT NOT NULL,
  updated_at_utc TEXT NOT NULL,
  completed_at_utc TEXT,
  archived_at_utc TEXT
);
""",
    "CREATE INDEX IF NOT EXISTS ix_tasks_account ON account_tasks(account_id, status);",
    "CREATE INDEX IF NOT EXISTS ix_tasks_signal ON account_tasks(signal_direction, signal_symbol);",

    # Report dispatch log
    """
CREATE TABLE IF NOT EXISTS report_dispatches (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  account_id TEXT NOT NULL,
  signal_id TEXT,
  recipient TEXT NOT NULL,
  channel TEXT NOT NULL,
  sent_at_utc TEXT NOT NULL,
  success INTEGER NOT NULL,
  error TEXT
);
""",
]

# Open-task uniqueness per (account, direction, symbol)
OPEN_TASK_KEY_INDEX = """
CREATE UNIQUE INDEX IF NOT EXISTS ux_tasks_open_idempotency
ON account_tasks(idempotency_key)
WHERE idempotency_key IS NOT NULL
  AND archived=0
  AND status NOT IN ('completed', 'cancelled');
"""

def migrate(conn: sqlite3.Connection):
    cur = conn.cursor()
    for stmt in DDL:
        cur.execute(stmt)
    task_cols = {row[1] for row in cur.execute("PRAGMA table_info(account_tasks)").fetchall()}
    for col, ddl in [
        ("signal_id", "ALTER TABLE account_tasks ADD COLUMN signal_id TEXT"),
        ("idempotency_key", "ALTER TABLE account_tasks ADD COLUMN idempotency_key TEXT"),
        ("archived_at_utc", "ALTER TABLE account_tasks ADD COLUMN archived_at_utc TEXT"),
    ]:
        if col not in task_cols:
            cur.execute(ddl)
    cur.execute(OPEN_TASK_KEY_INDEX)
    conn.commit()
