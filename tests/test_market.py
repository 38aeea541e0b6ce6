"""
Market Snapshot Tests
=====================

Run with: pytest tests/test_market.py -v
"""

import pytest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

import numpy as np
import pandas as pd

from core.market import annualized_volatility, build_market_conditions, calculate_atr, detect_trend
from core.models import Trend


def candles(closes, spread=1.0):
    closes = np.asarray(closes, dtype=float)
    return pd.DataFrame({
        "open": closes,
        "high": closes + spread,
        "low": closes - spread,
        "close": closes,
        "volume": np.full(len(closes), 1000.0),
    })


class TestIndicators:

    def test_atr_flat_market(self):
        """Flat closes: true range is just the high-low spread."""
        assert calculate_atr(candles([100] * 20, spread=1.0)) == pytest.approx(2.0)

    def test_atr_gap_counts(self):
        """A gap from the previous close widens the true range."""
        df = candles([100, 110])
        assert calculate_atr(df) == pytest.approx(11.0)

    def test_volatility_zero_for_constant_prices(self):
        assert annualized_volatility(pd.Series([100.0] * 30)) == 0.0

    def test_volatility_scaling(self):
        closes = pd.Series([100.0, 101.0, 100.0, 101.0, 100.0])
        daily = closes.pct_change().dropna().std()
        assert annualized_volatility(closes, periods_per_year=365) == pytest.approx(daily * np.sqrt(365))

    def test_trend_detection(self):
        assert detect_trend(pd.Series(np.linspace(100, 120, 20))) == Trend.BULLISH
        assert detect_trend(pd.Series(np.linspace(120, 100, 20))) == Trend.BEARISH
        assert detect_trend(pd.Series([100.0] * 20)) == Trend.SIDEWAYS


class TestBuildMarketConditions:

    def test_snapshot(self):
        df = candles(np.linspace(100, 120, 40))
        market = build_market_conditions(df, lookback=20)

        assert market.trend == Trend.BULLISH
        assert market.atr > 0
        assert market.volatility > 0
        assert market.support_level == pytest.approx(df["low"].tail(20).min())
        assert market.resistance_level == pytest.approx(df["high"].tail(20).max())

    def test_missing_columns(self):
        with pytest.raises(ValueError):
            build_market_conditions(pd.DataFrame({"close": [1.0, 2.0]}))

    def test_empty_frame(self):
        with pytest.raises(ValueError):
            build_market_conditions(candles([]))
