"""
Market snapshot builder.

Turns a window of OHLCV candles (columns: open, high, low, close, volume)
into the MarketConditions the risk components consume. No fetching here;
callers bring their own data.
"""

import logging
import math

import numpy as np
import pandas as pd

from .models import MarketConditions, Trend

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("high", "low", "close")


def calculate_atr(ohlcv: pd.DataFrame, period: int = 14) -> float:
    """Calculate Average True Range."""
    high = ohlcv['high'].values
    low = ohlcv['low'].values
    close = ohlcv['close'].values

    if len(close) < 2:
        return float(high[-1] - low[-1]) if len(close) else 0.0

    tr = np.maximum(
        high[1:] - low[1:],
        np.maximum(np.abs(high[1:] - close[:-1]), np.abs(low[1:] - close[:-1]))
    )
    return float(np.mean(tr[-period:]) if len(tr) >= period else np.mean(tr))


def annualized_volatility(closes: pd.Series, periods_per_year: int = 365) -> float:
    """Std-dev of close-to-close returns scaled to a year (0.6 == 60%)."""
    returns = closes.pct_change().dropna()
    if len(returns) < 2:
        return 0.0
    return float(returns.std() * math.sqrt(periods_per_year))


def detect_trend(closes: pd.Series, threshold_pct: float = 0.1) -> Trend:
    """Linear-regression slope of closes, as % of mean price per bar."""
    y = closes.values.astype(float)
    if len(y) < 3:
        return Trend.SIDEWAYS

    x = np.arange(len(y))
    slope, _ = np.polyfit(x, y, 1)

    avg_price = np.mean(y)
    slope_pct = (slope / avg_price) * 100 if avg_price > 0 else 0

    if slope_pct > threshold_pct:
        return Trend.BULLISH
    if slope_pct < -threshold_pct:
        return Trend.BEARISH
    return Trend.SIDEWAYS


def build_market_conditions(
    ohlcv: pd.DataFrame,
    lookback: int = 20,
    atr_period: int = 14,
    periods_per_year: int = 365,
    trend_threshold_pct: float = 0.1
) -> MarketConditions:
    """
    Build a MarketConditions snapshot from candles.

    Support and resistance are the lowest low and highest high of the
    last `lookback` bars.
    """
    missing = [c for c in REQUIRED_COLUMNS if c not in ohlcv.columns]
    if missing:
        raise ValueError(f"OHLCV frame missing columns: {missing}")
    if ohlcv.empty:
        raise ValueError("OHLCV frame is empty")

    recent = ohlcv.tail(lookback)
    conditions = MarketConditions(
        volatility=annualized_volatility(recent['close'], periods_per_year),
        trend=detect_trend(recent['close'], trend_threshold_pct),
        atr=calculate_atr(ohlcv, atr_period),
        support_level=float(recent['low'].min()),
        resistance_level=float(recent['high'].max()),
    )

    logger.debug(
        f"Market snapshot: vol={conditions.volatility:.3f} trend={conditions.trend.value} "
        f"atr={conditions.atr:.4f}"
    )
    return conditions
