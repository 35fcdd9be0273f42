"""Ticker normalization.

Two keys are produced from a free-text symbol:

* the loose key (``normalize_loose``) strips exchange suffixes and dashes and
  is used whenever positions, targets and signals are matched;
* the canonical form (``normalize_canonical``) keeps crypto pairs as
  ``CODE-USD`` and is the holdings library key.

Both are pure and idempotent. The suffix and crypto lists are carried by a
``TickerTable`` so callers can pass an extended table.
"""
from __future__ import annotations

import re
from dataclasses import dataclass

from ..config import settings

BASE_EXCHANGE_SUFFIXES = ("TO", "V", "CN", "NE", "TSX", "NYSE", "NASDAQ", "US")

BASE_CRYPTO_CODES = (
    "BTC", "ETH", "SOL", "XRP", "ADA", "DOGE", "DOT", "LTC", "BCH", "LINK",
    "AVAX", "MATIC", "XLM", "UNI", "ATOM", "ALGO", "SHIB", "TRX", "ETC", "XMR",
)

_CRYPTO_PAIR_RE = re.compile(r"^[A-Z]{2,5}-USD$")
_CRYPTO_GENERIC_RE = re.compile(r"^([A-Z]{2,5})(USDT|USD)$")

CASH_TICKER = "CASH"


@dataclass(frozen=True)
class TickerTable:
    version: str
    exchange_suffixes: tuple[str, ...]
    crypto_codes: frozenset[str]

    def __post_init__(self):
        suffixes = tuple(sorted({s.strip().lstrip(".").upper() for s in self.exchange_suffixes if s.strip()}, key=len, reverse=True))
        object.__setattr__(self, "exchange_suffixes", suffixes)
        object.__setattr__(self, "crypto_codes", frozenset(c.strip().upper() for c in self.crypto_codes if c.strip()))
        pattern = "|".join(re.escape(s) for s in suffixes) or "(?!)"
        object.__setattr__(self, "_suffix_re", re.compile(rf"\.({pattern})$", re.IGNORECASE))

    def extended(self, *, version: str, suffixes=(), crypto=()) -> "TickerTable":
        return TickerTable(
            version=version,
            exchange_suffixes=(*self.exchange_suffixes, *suffixes),
            crypto_codes=frozenset((*self.crypto_codes, *crypto)),
        )


def _split_csv(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [part.strip() for part in raw.split(",") if part.strip()]


def build_default_table() -> TickerTable:
    return TickerTable(
        version=settings.ticker_table_version,
        exchange_suffixes=(*BASE_EXCHANGE_SUFFIXES, *_split_csv(settings.ticker_extra_suffixes)),
        crypto_codes=frozenset((*BASE_CRYPTO_CODES, *_split_csv(settings.ticker_extra_crypto))),
    )


DEFAULT_TABLE = build_default_table()


def strip_exchange_suffix(raw: str, table: TickerTable = DEFAULT_TABLE) -> str:
    text = (raw or "").strip().upper()
    return table._suffix_re.sub("", text)


def normalize_canonical(raw: str, table: TickerTable = DEFAULT_TABLE) -> str:
    text = (raw or "").strip().upper()
    if not text:
        return ""
    if _CRYPTO_PAIR_RE.match(text):
        return text
    compact = text.replace("-", "")
    if compact in table.crypto_codes:
        return f"{compact}-USD"
    match = _CRYPTO_GENERIC_RE.match(compact)
    if match:
        return f"{match.group(1)}-USD"
    return text


def normalize_loose(raw: str, table: TickerTable = DEFAULT_TABLE) -> str:
    # Dashes go first so a suffix spelled "T-O" cannot reappear on a second pass.
    text = (raw or "").strip().upper().replace("-", "")
    while True:
        stripped = strip_exchange_suffix(text, table)
        if stripped == text:
            return text
        text = stripped


def tickers_match(left: str, right: str, table: TickerTable = DEFAULT_TABLE) -> bool:
    key = normalize_loose(left, table)
    return bool(key) and key == normalize_loose(right, table)


def is_cash(raw: str, table: TickerTable = DEFAULT_TABLE) -> bool:
    return normalize_loose(raw, table) == CASH_TICKER


def registry_candidates(raw: str, table: TickerTable = DEFAULT_TABLE) -> list[str]:
    """Keys to try against the holdings library, most specific first."""
    out = []
    for key in (normalize_canonical(raw, table), (raw or "").strip().upper(), strip_exchange_suffix(raw, table)):
        if key and key not in out:
            out.append(key)
    return out
