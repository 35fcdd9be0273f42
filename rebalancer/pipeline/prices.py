from __future__ import annotations

import sqlite3
import time

import structlog

from ..config import settings
from ..portfolio.storage import SqliteHoldingRegistry, distinct_position_symbols, update_position_prices
from ..portfolio.tickers import DEFAULT_TABLE, TickerTable, is_cash, normalize_canonical
from ..providers.yfinance_adapter import YFinanceAdapter
from ..utils import RateLimiter, now_utc_iso, retry_call

log = structlog.get_logger()


def _chunked(items, size: int):
    if size <= 0:
        size = 1
    for idx in range(0, len(items), size):
        yield items[idx: idx + size]


class QuoteLoader:
    """Fetches last prices once per canonical ticker for a single refresh run."""

    def __init__(self, adapter=None):
        self.adapter = adapter or YFinanceAdapter(enabled=bool(settings.yf_enable))
        self.rate_limiter = RateLimiter(settings.market_rate_limit_seconds)
        self.quotes: dict[str, float] = {}
        self.failed: set[str] = set()

    def load(self, canonicals: list[str], deadline: float | None = None) -> dict[str, float]:
        pending = [c for c in dict.fromkeys(canonicals) if c not in self.quotes and c not in self.failed]
        if not pending:
            return self.quotes

        deferred: list[str] = []
        if hasattr(self.adapter, "latest_prices_batch"):
            for batch in _chunked(pending, max(1, settings.market_batch_size)):
                if deadline is not None and time.monotonic() >= deadline:
                    raise TimeoutError("time_budget_exceeded")
                try:
                    self.rate_limiter.wait(deadline)
                    results = retry_call(lambda: self.adapter.latest_prices_batch(batch), attempts=1, deadline=deadline)
                except Exception as exc:
                    log.warning("quote_batch_failed", symbols=batch, error=str(exc))
                    results = None
                for sym in batch:
                    price = (results or {}).get(sym)
                    if price and price > 0:
                        self.quotes[sym] = float(price)
                    else:
                        deferred.append(sym)
        else:
            deferred = pending

        for sym in deferred:
            if deadline is not None and time.monotonic() >= deadline:
                raise TimeoutError("time_budget_exceeded")
            self.rate_limiter.wait(deadline)
            try:
                price = retry_call(
                    lambda: self.adapter.latest_price(sym),
                    attempts=settings.market_retry_attempts,
                    deadline=deadline,
                    retry_on_result=lambda p: p is None,
                )
            except TimeoutError:
                raise
            except Exception as exc:
                log.warning("quote_fetch_failed", symbol=sym, error=str(exc))
                price = None
            if price and price > 0:
                self.quotes[sym] = float(price)
            else:
                self.failed.add(sym)
        return self.quotes


def refresh_prices(
    conn: sqlite3.Connection,
    adapter=None,
    *,
    table: TickerTable = DEFAULT_TABLE,
    deadline: float | None = None,
) -> dict:
    """Refresh stored prices for every held symbol and every library ticker.

    The quote cache lives only for this call. Symbols without a quote keep
    their previous price and are reported in ``warnings``.
    """
    registry = SqliteHoldingRegistry(conn, table)
    by_canonical: dict[str, list[str]] = {}
    for symbol in distinct_position_symbols(conn):
        if is_cash(symbol, table):
            continue
        by_canonical.setdefault(normalize_canonical(symbol, table), []).append(symbol)
    holdings = [h for h in registry.all() if not is_cash(h.ticker, table)]
    for holding in holdings:
        by_canonical.setdefault(normalize_canonical(holding.ticker, table), [])

    loader = QuoteLoader(adapter)
    quotes = loader.load(sorted(by_canonical), deadline=deadline)
    now = now_utc_iso()
    updated_positions = 0
    for canonical, raw_symbols in by_canonical.items():
        price = quotes.get(canonical)
        if price is None:
            continue
        for raw in raw_symbols:
            updated_positions += update_position_prices(conn, raw, price, now)
    updated_holdings = 0
    for holding in holdings:
        price = quotes.get(normalize_canonical(holding.ticker, table))
        if price is None:
            continue
        registry.set_price(holding.id, price, now)
        updated_holdings += 1

    warnings = [
        {"code": "price_missing", "symbol": sym, "message": f"No quote for {sym}; stored price kept"}
        for sym in sorted(set(by_canonical) - set(quotes))
    ]
    log.info(
        "prices_refreshed",
        symbols=len(by_canonical),
        quoted=len(quotes),
        positions_updated=updated_positions,
        holdings_updated=updated_holdings,
        missing=len(warnings),
    )
    return {
        "symbols": len(by_canonical),
        "quoted": len(quotes),
        "positions_updated": updated_positions,
        "holdings_updated": updated_holdings,
        "warnings": warnings,
    }
