"""
RAMPART Engine & Config Tests
=============================

Run with: pytest tests/test_engine.py -v
"""

import json
import pytest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from pydantic import ValidationError

from core.config import (
    CapitalProtectionConfig,
    PortfolioRiskConfig,
    PositionSizingConfig,
    RREnforcementConfig,
    RiskEngineConfig,
    TrailingStopConfig,
    load_engine_config,
    merge_config,
)
from core.engine import RiskEngine
from core.models import MarketConditions, Position, PositionSizeRequest, Side, TradeProposal, Trend
from core.trailing_stop import StopUpdateStatus


MARKET = MarketConditions(volatility=0.3, trend=Trend.SIDEWAYS, atr=500)

PROPOSAL = TradeProposal(
    symbol="BTCUSDT",
    side=Side.LONG,
    entry_price=50000,
    stop_loss_price=49000,
    take_profit_price=52600,
    position_size=0.1,
    confidence=75,
)


class TestConfigValidation:
    """Configs fail fast on bad values."""

    def test_defaults(self):
        config = RiskEngineConfig()
        assert config.risk_reward.min_risk_reward_ratio == 1.3
        assert config.trailing_stop.breakeven_threshold == 2.0
        assert config.portfolio.target_allocation["BTC"] == 30.0
        assert config.position_sizing.max_risk_per_trade_pct == 2.5

    def test_rejects_non_positive_ratio(self):
        with pytest.raises(ValidationError):
            RREnforcementConfig(min_risk_reward_ratio=0)

    def test_rejects_bad_percentage(self):
        with pytest.raises(ValidationError):
            PortfolioRiskConfig(max_single_asset_exposure=150)

    def test_rejects_bad_correlation(self):
        with pytest.raises(ValidationError):
            PortfolioRiskConfig(correlations={"BTC-ETH": 1.5})

    def test_rejects_inverted_volatility_bands(self):
        with pytest.raises(ValidationError):
            RREnforcementConfig(low_volatility_threshold=0.6, high_volatility_threshold=0.5)

    def test_rejects_risk_above_max(self):
        with pytest.raises(ValidationError):
            PositionSizingConfig(risk_per_trade_pct=3.0, max_risk_per_trade_pct=2.5)

    def test_configs_are_frozen(self):
        config = TrailingStopConfig()
        with pytest.raises(ValidationError):
            config.trailing_distance = 3.0

    def test_merge_config(self):
        merged = merge_config(TrailingStopConfig(), {"trailing_distance": 2.5})
        assert merged.trailing_distance == 2.5
        assert merged.initial_stop_loss == 1.0

    def test_load_from_json(self, tmp_path):
        path = tmp_path / "risk.json"
        path.write_text(json.dumps({"risk_reward": {"min_risk_reward_ratio": 2.0}}))

        config = load_engine_config(path)
        assert config.risk_reward.min_risk_reward_ratio == 2.0
        assert config.trailing_stop.trailing_distance == 1.5

    def test_load_without_path(self):
        assert load_engine_config() == RiskEngineConfig()


class TestRiskEngine:
    """The facade wires components together."""

    def test_evaluate_trade(self):
        engine = RiskEngine()
        assert engine.evaluate_trade(PROPOSAL, MARKET).approved is True

    def test_sizing_shares_enforcer(self):
        """Sizing goes through the same enforcer, so its metrics see the trade."""
        engine = RiskEngine()
        engine.size_position(PositionSizeRequest(
            symbol="BTCUSDT",
            account_balance=100000,
            entry_price=50000,
            stop_loss_price=49000,
            take_profit_price=52600,
            confidence=75,
            volatility=0.3,
        ))
        assert engine.risk_reward.get_performance_metrics().total_trades_analyzed == 1

    def test_position_lifecycle(self):
        engine = RiskEngine()
        position = Position(id="p1", symbol="BTCUSDT", size=0.1, entry_price=50000, current_price=50000)

        engine.track_position(position, MARKET)
        opening_stop = position.stop_loss
        assert 0 < opening_stop < 50000

        result = engine.on_price_tick("p1", 51000, MARKET)
        assert result.status == StopUpdateStatus.UPDATED
        assert result.breakeven_active is True
        assert position.stop_loss > 50000

        assert engine.close_position("p1") is True
        assert engine.on_price_tick("p1", 52000, MARKET).status == StopUpdateStatus.NOT_FOUND

    def test_initial_stop_for_short(self):
        engine = RiskEngine()
        assert engine.initial_stop_for(50000, Side.SHORT, MARKET) > 50000

    def test_review_portfolio(self):
        engine = RiskEngine()
        review = engine.review_portfolio([
            Position(id="a", symbol="BTC", size=1, entry_price=50000, current_price=50000),
        ])
        assert review["report"]["metrics"]["concentration_risk"] == pytest.approx(1.0)
        assert review["summary"]["diversification_status"] == "POOR"
        assert "total_trades_analyzed" in review["risk_reward"]

    def test_reload_config_keeps_state(self):
        engine = RiskEngine()
        engine.evaluate_trade(PROPOSAL, MARKET)

        engine.reload_config(RiskEngineConfig(risk_reward=RREnforcementConfig(min_risk_reward_ratio=3.0)))

        assert engine.evaluate_trade(PROPOSAL, MARKET).approved is False
        assert engine.risk_reward.get_performance_metrics().total_trades_analyzed == 2

    def test_reload_from_file(self, tmp_path):
        path = tmp_path / "risk.json"
        path.write_text(json.dumps({"portfolio": {"max_single_asset_exposure": 100}}))

        engine = RiskEngine()
        engine.reload_config(path)
        assert engine.portfolio.get_config().max_single_asset_exposure == 100

    def test_reload_resizes_stop_history(self):
        """A smaller history_limit trims audit trails that already exist."""
        engine = RiskEngine()
        position = Position(id="p1", symbol="BTCUSDT", size=0.1, entry_price=50000,
                            current_price=50000, stop_loss=1.0)
        engine.track_position(position)
        for i in range(6):
            engine.on_price_tick("p1", 50500 + i * 100, MARKET)
        assert len(engine.trailing_stops.get_trailing_stop_history("p1")) == 6

        engine.reload_config(RiskEngineConfig(trailing_stop=TrailingStopConfig(history_limit=2)))

        assert len(engine.trailing_stops.get_trailing_stop_history("p1")) == 2
        engine.on_price_tick("p1", 52000, MARKET)
        assert len(engine.trailing_stops.get_trailing_stop_history("p1")) == 2

    def test_reload_updates_sizing_and_capital(self):
        engine = RiskEngine()
        engine.record_trade_result(-50)

        engine.reload_config(RiskEngineConfig(
            position_sizing=PositionSizingConfig(risk_per_trade_pct=1.0),
            capital_protection=CapitalProtectionConfig(daily_loss_limit=1.0),
        ))

        assert engine.sizing.get_config().risk_per_trade_pct == 1.0
        assert engine.capital.get_config().daily_loss_limit == 1.0
        assert engine.capital.consecutive_losses == 1


class TestCapitalWiring:
    """The engine shares one capital preservation system with sizing."""

    def test_halt_blocks_sizing(self):
        engine = RiskEngine()
        report = engine.monitor_capital(98000, [], daily_pnl=-2500)
        assert report.trading_allowed is False

        result = engine.size_position(PositionSizeRequest(
            symbol="BTCUSDT",
            account_balance=98000,
            entry_price=50000,
            stop_loss_price=49000,
            take_profit_price=52600,
            confidence=75,
            volatility=0.3,
        ))
        assert result.approved is False

    def test_resume_requires_recovery(self):
        engine = RiskEngine()
        engine.monitor_capital(100000, [])
        engine.monitor_capital(80000, [])
        assert engine.resume_trading() is False

        engine.monitor_capital(99500, [])
        assert engine.resume_trading() is True
        assert engine.capital.is_trading_allowed() is True

    def test_review_includes_capital(self):
        review = RiskEngine().review_portfolio([])
        assert review["capital"]["current_status"] == "NORMAL"
        assert review["summary"]["diversification_status"] == "NO_EXPOSURE"
