"""
Position Sizing Evaluator Tests
===============================

Run with: pytest tests/test_position_sizing.py -v
"""

import pytest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from pydantic import ValidationError

from core.capital_preservation import CapitalPreservationSystem
from core.config import PositionSizingConfig
from core.models import MarketConditions, Position, PositionSizeRequest, Side, Trend
from core.position_sizing import PositionSizingEvaluator


NORMAL = MarketConditions(volatility=0.3, trend=Trend.SIDEWAYS)


def request(**overrides):
    params = dict(
        symbol="ETHUSDT",
        account_balance=100000.0,
        entry_price=3000.0,
        stop_loss_price=2940.0,
        take_profit_price=3150.0,
        confidence=50.0,
        volatility=0.0,
        market_conditions=NORMAL,
    )
    params.update(overrides)
    return PositionSizeRequest(**params)


@pytest.fixture
def evaluator():
    # Loose notional cap so the multipliers are visible
    return PositionSizingEvaluator(PositionSizingConfig(max_position_pct=1000))


class TestSizing:
    """Base size and multipliers."""

    def test_base_size(self, evaluator):
        """confidence 50 and zero volatility leave the fixed-fractional size unchanged."""
        result = evaluator.evaluate_position_size(request())

        # 100000 * 1.5% / 60
        assert result.approved is True
        assert result.position_size == pytest.approx(25.0)
        assert result.risk_amount == pytest.approx(1500.0)
        assert result.risk_percentage == pytest.approx(1.5)
        assert result.risk_reward_ratio == pytest.approx(2.5)
        assert result.correlation_adjustment == 1.0

    def test_confidence_multiplier_range(self, evaluator):
        assert evaluator.confidence_multiplier(0) == pytest.approx(0.5)
        assert evaluator.confidence_multiplier(100) == pytest.approx(1.5)
        assert evaluator.confidence_multiplier(250) == pytest.approx(1.5)
        assert evaluator.confidence_multiplier(-5) == pytest.approx(0.5)

    def test_volatility_multiplier_floor(self, evaluator):
        assert evaluator.volatility_multiplier(1.0) == pytest.approx(0.7)
        assert evaluator.volatility_multiplier(10.0) == pytest.approx(0.3)

    def test_confidence_scales_size(self, evaluator):
        result = evaluator.evaluate_position_size(request(confidence=80))
        assert result.confidence_adjusted_size == pytest.approx(25.0 * 1.3)
        assert result.position_size == pytest.approx(25.0 * 1.3)

    def test_correlated_holdings_shrink_size(self, evaluator):
        """Adding ETH next to BTC (rho 0.75 > 0.7) trims by the excess."""
        btc = Position(id="b", symbol="BTCUSDT", size=1, entry_price=50000, current_price=50000)
        result = evaluator.evaluate_position_size(request(existing_positions=[btc]))

        assert result.correlation_adjustment == pytest.approx(0.95)
        assert result.position_size == pytest.approx(25.0 * 0.95)

    def test_same_asset_counts_as_fully_correlated(self, evaluator):
        eth = Position(id="e", symbol="ETHUSDT", size=1, entry_price=3000, current_price=3000)
        result = evaluator.evaluate_position_size(request(existing_positions=[eth]))
        assert result.correlation_adjustment == pytest.approx(0.7)

    def test_closed_holdings_ignored(self, evaluator):
        """A zero-size holding is not part of the book and does not trim the size."""
        closed = Position(id="e", symbol="ETHUSDT", size=0, entry_price=3000, current_price=3000)
        result = evaluator.evaluate_position_size(request(existing_positions=[closed]))

        assert result.correlation_adjustment == 1.0
        assert result.position_size == pytest.approx(25.0)

    def test_notional_cap(self):
        """Default cap keeps the notional at 50% of the balance."""
        evaluator = PositionSizingEvaluator()
        result = evaluator.evaluate_position_size(request(stop_loss_price=2990, take_profit_price=3100))

        assert result.size_capped is True
        assert result.position_size * 3000 == pytest.approx(50000)


class TestRejections:
    """Rejected requests return reasons, never raise."""

    def test_stop_equals_entry(self, evaluator):
        result = evaluator.evaluate_position_size(request(stop_loss_price=3000))
        assert result.approved is False
        assert result.position_size == 0
        assert "cannot equal entry" in result.rejection_reasons[0]

    def test_non_positive_balance(self, evaluator):
        result = evaluator.evaluate_position_size(request(account_balance=0))
        assert result.approved is False
        assert "account balance" in result.rejection_reasons[0]

    def test_risk_above_maximum(self):
        evaluator = PositionSizingEvaluator(
            PositionSizingConfig(risk_per_trade_pct=2.5, max_risk_per_trade_pct=2.5, max_position_pct=1000)
        )
        result = evaluator.evaluate_position_size(request(confidence=100))

        assert result.approved is False
        assert result.position_size == 0
        assert any("exceeds maximum 2.5%" in r for r in result.rejection_reasons)

    def test_enforcer_reasons_merged(self, evaluator):
        """A poor reward/risk ratio rejects the sizing."""
        result = evaluator.evaluate_position_size(request(take_profit_price=3030))

        assert result.approved is False
        assert result.position_size == 0
        assert result.risk_reward_ratio == pytest.approx(0.5)
        assert any("ratio" in r.lower() for r in result.rejection_reasons)

    def test_side_inferred_for_short(self, evaluator):
        result = evaluator.evaluate_position_size(
            request(stop_loss_price=3060, take_profit_price=2850)
        )
        assert result.approved is True
        assert result.risk_reward_ratio == pytest.approx(2.5)


class TestScenarios:
    def test_scenarios(self, evaluator):
        results = evaluator.evaluate_scenarios(request(), [(0, 0.0), (50, 0.0), (100, 1.0)])

        assert [r.position_size for r in results] == pytest.approx([12.5, 25.0, 25.0 * 1.5 * 0.7])


class TestCapitalPreservation:
    """Sizing follows the account-level protection state."""

    def test_losing_streak_halves_size(self):
        capital = CapitalPreservationSystem()
        evaluator = PositionSizingEvaluator(PositionSizingConfig(max_position_pct=1000), capital=capital)
        for _ in range(3):
            capital.record_trade_result(-100)

        result = evaluator.evaluate_position_size(request())

        assert result.approved is True
        assert result.capital_adjustment == pytest.approx(0.5)
        assert result.position_size == pytest.approx(12.5)

    def test_halted_trading_rejects(self):
        capital = CapitalPreservationSystem()
        evaluator = PositionSizingEvaluator(capital=capital)
        capital.monitor_capital_preservation(98000, [], daily_pnl=-2500)

        result = evaluator.evaluate_position_size(request())

        assert result.approved is False
        assert result.position_size == 0
        assert result.capital_adjustment == 0
        assert "halted" in result.rejection_reasons[0]

    def test_no_new_risk_at_critical_drawdown(self):
        """Resuming by hand while still past critical leaves nothing to size."""
        capital = CapitalPreservationSystem()
        evaluator = PositionSizingEvaluator(capital=capital)
        capital.monitor_capital_preservation(100000, [])
        capital.monitor_capital_preservation(80000, [])
        capital.resume_normal_operations()

        result = evaluator.evaluate_position_size(request())

        assert result.approved is False
        assert result.capital_adjustment == 0
        assert any("no new risk" in r for r in result.rejection_reasons)


class TestConfigUpdate:
    def test_update_config(self, evaluator):
        config = evaluator.update_config(risk_per_trade_pct=1.0)
        assert config.risk_per_trade_pct == 1.0
        assert evaluator.get_config().max_position_pct == 1000

        result = evaluator.evaluate_position_size(request())
        assert result.position_size == pytest.approx(100000 * 0.01 / 60)

    def test_invalid_update_keeps_old_config(self, evaluator):
        with pytest.raises(ValidationError):
            evaluator.update_config(risk_per_trade_pct=5.0)
        assert evaluator.get_config().risk_per_trade_pct == 1.5

    def test_unknown_field(self, evaluator):
        with pytest.raises(ValueError):
            evaluator.update_config(leverage=10)
