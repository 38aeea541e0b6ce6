"""
Portfolio Risk Manager Tests
============================

Run with: pytest tests/test_portfolio_risk.py -v
"""

import pytest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

import numpy as np
import pandas as pd

from core.config import PortfolioRiskConfig
from core.models import Position, Priority
from core.portfolio_risk import PortfolioRiskManager, RebalanceType, base_asset


def pos(symbol, size, price, pid=None, pnl=0.0):
    return Position(
        id=pid or f"{symbol}-{size}",
        symbol=symbol,
        size=size,
        entry_price=price,
        current_price=price,
        unrealized_pnl=pnl,
    )


BALANCED = [
    pos("BTC", 0.6, 50000),    # 30000
    pos("ETH", 8.0, 3125),     # 25000
    pos("ADA", 40000, 0.5),    # 20000
    pos("DOT", 2500, 6),       # 15000
    pos("LINK", 1000, 10),     # 10000
]


@pytest.fixture
def manager():
    return PortfolioRiskManager()


class TestBaseAsset:
    def test_strips_quotes(self):
        assert base_asset("BTCUSDT") == "BTC"
        assert base_asset("ETH-USD") == "ETH"
        assert base_asset("SOL/USDT") == "SOL"
        assert base_asset("DOT") == "DOT"


class TestExposures:
    """Asset and sector exposure."""

    def test_empty_portfolio(self, manager):
        report = manager.analyze_portfolio_risk([])
        assert report.metrics.total_value == 0
        assert report.asset_exposures == []
        assert report.overall_risk_score == 0

    def test_zero_value_positions_ignored(self, manager):
        report = manager.analyze_portfolio_risk([pos("BTC", 0, 50000)])
        assert report.metrics.total_value == 0

    def test_percentages_sum_to_100(self, manager):
        report = manager.analyze_portfolio_risk(BALANCED)
        total = sum(e.percentage for e in report.asset_exposures)
        assert total == pytest.approx(100.0, abs=0.1)
        assert report.metrics.total_value == pytest.approx(100000)

    def test_sorted_descending(self, manager):
        report = manager.analyze_portfolio_risk(BALANCED)
        percentages = [e.percentage for e in report.asset_exposures]
        assert percentages == sorted(percentages, reverse=True)
        assert report.asset_exposures[0].symbol == "BTC"

    def test_grouping_by_symbol(self, manager):
        positions = [pos("BTC", 0.5, 50000, pid="a"), pos("BTC", 0.5, 50000, pid="b"), pos("ETH", 10, 2500)]
        report = manager.analyze_portfolio_risk(positions)
        btc = report.asset_exposures[0]
        assert btc.symbol == "BTC"
        assert btc.position_count == 2
        assert btc.size == pytest.approx(1.0)

    def test_short_positions_use_absolute_value(self, manager):
        report = manager.analyze_portfolio_risk([pos("BTC", -1, 50000), pos("ETH", 10, 5000)])
        assert report.metrics.total_value == pytest.approx(100000)
        assert report.asset_exposures[0].percentage == pytest.approx(50.0)

    def test_sector_mapping(self, manager):
        report = manager.analyze_portfolio_risk(
            [pos("ETHUSDT", 10, 3000), pos("ADAUSDT", 30000, 1), pos("XYZ", 100, 1)]
        )
        sectors = {s.sector: s for s in report.sector_exposures}
        assert set(sectors["Smart Contracts"].assets) == {"ETHUSDT", "ADAUSDT"}
        assert "Other" in sectors

    def test_injected_sector_map(self):
        manager = PortfolioRiskManager(PortfolioRiskConfig(sector_map={"XYZ": "Memes"}))
        report = manager.analyze_portfolio_risk([pos("XYZ", 100, 1)])
        assert report.sector_exposures[0].sector == "Memes"

    def test_risk_contributions_sum_to_100(self, manager):
        report = manager.analyze_portfolio_risk(BALANCED)
        assert sum(e.risk_contribution for e in report.asset_exposures) == pytest.approx(100.0)


class TestSingleAsset:
    """A fully concentrated portfolio."""

    def test_concentration_and_flags(self, manager):
        report = manager.analyze_portfolio_risk([pos("BTC", 1, 50000)])

        assert report.metrics.concentration_risk == pytest.approx(1.0)
        assert report.asset_exposures[0].percentage == pytest.approx(100.0)
        assert report.correlation_matrix.diversification_score == 0
        assert any("Diversification score" in v for v in report.risk_violations)

        reduce = [r for r in report.rebalancing_recommendations if r.type == RebalanceType.REDUCE_EXPOSURE]
        assert reduce
        assert reduce[0].priority == Priority.CRITICAL
        assert reduce[0].recommended_size == pytest.approx(0.4)

    def test_summary_for_empty_portfolio(self, manager):
        """An empty book reports no exposure rather than poor diversification."""
        summary = manager.get_portfolio_risk_summary(manager.analyze_portfolio_risk([]))
        assert summary.diversification_status == "NO_EXPOSURE"
        assert summary.risk_level == Priority.LOW
        assert summary.key_risks == []

    def test_summary(self, manager):
        report = manager.analyze_portfolio_risk([pos("BTC", 1, 50000)])
        summary = manager.get_portfolio_risk_summary(report)
        assert summary.diversification_status == "POOR"
        assert summary.risk_level in (Priority.MEDIUM, Priority.HIGH, Priority.CRITICAL)
        assert len(summary.key_risks) <= 3


class TestCorrelation:
    """Correlation matrix and scores."""

    def test_table_correlations(self, manager):
        report = manager.analyze_portfolio_risk([pos("BTC", 1, 50000), pos("ETH", 10, 5000)])
        matrix = report.correlation_matrix
        assert matrix.get("BTC", "ETH") == pytest.approx(0.75)
        assert matrix.get("ETH", "BTC") == pytest.approx(0.75)
        # Two equal weights: correlation risk is just |rho|
        assert matrix.portfolio_correlation_risk == pytest.approx(0.75)
        # spread 1.0 * (1 - 0.75)
        assert matrix.diversification_score == pytest.approx(25.0)

    def test_default_correlation(self, manager):
        report = manager.analyze_portfolio_risk([pos("DOT", 100, 10), pos("LINK", 100, 10)])
        assert report.correlation_matrix.get("DOT", "LINK") == pytest.approx(0.3)

    def test_price_history_correlation(self, manager):
        rng = np.random.default_rng(7)
        base = 100 * np.cumprod(1 + rng.normal(0, 0.01, 200))
        history = pd.DataFrame({"DOT": base, "LINK": base * 2})

        report = manager.analyze_portfolio_risk(
            [pos("DOT", 100, 10), pos("LINK", 100, 10)], price_history=history
        )
        assert report.correlation_matrix.get("DOT", "LINK") == pytest.approx(1.0, abs=1e-6)

    def test_frame_view(self, manager):
        report = manager.analyze_portfolio_risk([pos("BTC", 1, 50000), pos("ETH", 10, 5000)])
        frame = report.correlation_matrix.to_frame()
        assert frame.loc["BTC", "BTC"] == 1.0
        assert frame.loc["BTC", "ETH"] == pytest.approx(0.75)

    def test_correlation_with(self, manager):
        view = manager.correlation_with("ETHUSDT", ["BTCUSDT", "ETH", "DOT"])
        assert view["BTCUSDT"] == pytest.approx(0.75)
        assert view["ETH"] == 1.0
        assert view["DOT"] == pytest.approx(0.3)

    def test_diversify_recommendation(self):
        manager = PortfolioRiskManager(PortfolioRiskConfig(max_portfolio_correlation=0.5))
        report = manager.analyze_portfolio_risk([pos("BTC", 1, 60000), pos("ETH", 10, 4000)])

        diversify = [r for r in report.rebalancing_recommendations if r.type == RebalanceType.DIVERSIFY]
        assert len(diversify) == 1
        assert diversify[0].symbol == "BTC"
        assert diversify[0].recommended_size == pytest.approx(0.7)
        assert any("correlation risk" in v for v in report.risk_violations)


class TestMetrics:
    """Portfolio metrics."""

    def test_balanced_portfolio_metrics(self, manager):
        report = manager.analyze_portfolio_risk(BALANCED)
        metrics = report.metrics

        weights = np.array([0.3, 0.25, 0.2, 0.15, 0.1])
        assert metrics.concentration_risk == pytest.approx(float(np.sum(weights ** 2)))
        assert metrics.beta == pytest.approx(0.3 * 1.0 + 0.25 * 1.2 + 0.2 * 1.5 + 0.15 * 1.3 + 0.1 * 1.0)
        assert metrics.diversification_ratio >= 1.0
        assert metrics.value_at_risk > 0
        assert metrics.expected_shortfall > metrics.value_at_risk

    def test_single_asset_var(self, manager):
        report = manager.analyze_portfolio_risk([pos("BTC", 1, 50000)])
        expected = 50000 * 0.6 / np.sqrt(252) * 1.645
        assert report.metrics.value_at_risk == pytest.approx(expected)
        assert report.metrics.diversification_ratio == pytest.approx(1.0)

    def test_unrealized_return(self, manager):
        report = manager.analyze_portfolio_risk([pos("BTC", 1, 50000, pnl=2500)])
        assert report.metrics.unrealized_return == pytest.approx(0.05)

    def test_risk_score_bounds(self, manager):
        for positions in ([pos("BTC", 1, 50000)], BALANCED):
            score = manager.analyze_portfolio_risk(positions).overall_risk_score
            assert 0 <= score <= 100


class TestRebalancing:
    """Target-allocation recommendations."""

    def test_on_target_has_no_recommendations(self, manager):
        report = manager.analyze_portfolio_risk(BALANCED)
        assert report.rebalancing_recommendations == []

    def test_under_target_increase(self, manager):
        positions = [
            pos("BTC", 0.78, 50000),   # 39000
            pos("ETH", 12.16, 2500),   # 30400
            pos("ADA", 40000, 0.5),    # 20000
            pos("LINK", 1060, 10),     # 10600
        ]
        report = manager.analyze_portfolio_risk(positions)
        increases = [r for r in report.rebalancing_recommendations if r.type == RebalanceType.INCREASE_EXPOSURE]
        assert increases == []

        positions.append(pos("DOT", 100, 6))   # DOT well under its 15% target
        report = manager.analyze_portfolio_risk(positions)
        dot = [r for r in report.rebalancing_recommendations if r.symbol == "DOT"][0]
        assert dot.type == RebalanceType.INCREASE_EXPOSURE
        assert dot.priority == Priority.MEDIUM
        assert dot.recommended_size > dot.current_size

    def test_over_target_reduce_medium(self, manager):
        positions = [
            pos("BTC", 0.76, 50000),   # 38000 -> 38% vs 30% target, under 40% limit
            pos("ETH", 8.0, 3125),
            pos("ADA", 40000, 0.5),
            pos("DOT", 1000, 6),
            pos("LINK", 1100, 10),
        ]
        report = manager.analyze_portfolio_risk(positions)
        btc = [r for r in report.rebalancing_recommendations if r.symbol == "BTC"][0]
        assert btc.type == RebalanceType.REDUCE_EXPOSURE
        assert btc.priority == Priority.MEDIUM
        assert btc.recommended_size < btc.current_size

    def test_sorted_by_priority(self, manager):
        report = manager.analyze_portfolio_risk([pos("BTC", 1, 90000), pos("DOT", 100, 100)])
        ranks = [r.priority.rank for r in report.rebalancing_recommendations]
        assert ranks == sorted(ranks, reverse=True)

    def test_impact_of_reducing_concentration(self, manager):
        report = manager.analyze_portfolio_risk([pos("BTC", 1, 80000), pos("DOT", 2000, 10)])
        btc = [r for r in report.rebalancing_recommendations if r.symbol == "BTC"][0]
        assert btc.estimated_impact.portfolio_risk < 0
        assert btc.estimated_impact.diversification_improvement > 0


class TestConfig:
    def test_update_config(self, manager):
        manager.update_config(max_single_asset_exposure=100.0)
        report = manager.analyze_portfolio_risk([pos("BTC", 1, 50000)])
        assert not any("exceeds limit" in v and "BTC" in v for v in report.risk_violations)

    def test_replace_target_allocation(self, manager):
        manager.update_config(target_allocation={"BTC": 100.0})
        assert manager.get_config().target_allocation == {"BTC": 100.0}
