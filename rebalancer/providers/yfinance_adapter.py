from typing import Optional
import pandas as pd
from .common import last_close, yahoo_symbol


class YFinanceAdapter:
    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        try:
            if enabled:
                import yfinance as yf  # type: ignore
                self.yf = yf
            else:
                self.yf = None
        except ImportError:
            self.enabled = False
            self.yf = None

    def latest_price(self, symbol: str) -> Optional[float]:
        if not self.enabled or self.yf is None:
            return None
        df = self.yf.download(yahoo_symbol(symbol), period="5d", interval="1d", auto_adjust=False, progress=False)
        if isinstance(df, pd.DataFrame) and isinstance(df.columns, pd.MultiIndex):
            df.columns = [col[0] for col in df.columns]
        return last_close(df)

    def latest_prices_batch(self, symbols: list[str]) -> dict[str, float]:
        """Last close per requested symbol; symbols without data are left out."""
        if not self.enabled or self.yf is None or not symbols:
            return {}
        by_yahoo = {yahoo_symbol(sym): sym for sym in symbols}
        df = self.yf.download(
            " ".join(by_yahoo),
            period="5d",
            interval="1d",
            auto_adjust=False,
            progress=False,
            group_by="ticker",
        )
        if df is None or getattr(df, "empty", True):
            return {}
        out: dict[str, float] = {}
        if isinstance(df.columns, pd.MultiIndex):
            level0 = df.columns.get_level_values(0)
            for ysym, sym in by_yahoo.items():
                if ysym not in level0:
                    continue
                price = last_close(df[ysym])
                if price is not None:
                    out[sym] = price
            return out
        if len(by_yahoo) == 1:
            price = last_close(df)
            if price is not None:
                out[symbols[0]] = price
        return out
