import pandas as pd

# Exchange suffixes Yahoo does not understand, and ones it spells differently
YAHOO_DROP_SUFFIXES = ("NYSE", "NASDAQ", "US")
YAHOO_SUFFIX_MAP = {"TSX": "TO"}

def yahoo_symbol(canonical: str) -> str:
    text = (canonical or "").strip().upper()
    if "." not in text:
        return text
    base, suffix = text.rsplit(".", 1)
    if suffix in YAHOO_DROP_SUFFIXES:
        return base
    return f"{base}.{YAHOO_SUFFIX_MAP.get(suffix, suffix)}"

def last_close(df) -> float | None:
    """Most recent non-null close from a yfinance frame, or None."""
    if df is None or not isinstance(df, pd.DataFrame) or df.empty:
        return None
    d = df.rename(columns={"Close": "close", "Adj Close": "adj_close"})
    col = "close" if "close" in d.columns else ("adj_close" if "adj_close" in d.columns else None)
    if col is None:
        return None
    series = pd.to_numeric(d[col], errors="coerce").dropna()
    series = series[series > 0]
    if series.empty:
        return None
    return float(series.iloc[-1])
