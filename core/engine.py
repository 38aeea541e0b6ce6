"""
RAMPART Core Engine
===================

The main orchestrator that wires the risk components together behind
one validated configuration.

Usage:
    engine = RiskEngine(load_engine_config("risk.json"))
    analysis = engine.evaluate_trade(proposal, market)
    sizing = engine.size_position(request)
    engine.track_position(position)
    result = engine.on_price_tick(position.id, 51000.0, market)
    engine.monitor_capital(balance, positions, daily_pnl=-350.0)
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Union
import logging

import pandas as pd

from .capital_preservation import CapitalPreservationReport, CapitalPreservationSystem
from .config import RiskEngineConfig, load_engine_config
from .models import (
    MarketConditions,
    Position,
    PositionSizeRequest,
    PositionSizeResult,
    Side,
    TradeProposal,
)
from .portfolio_risk import PortfolioRiskManager
from .position_sizing import PositionSizingEvaluator
from .risk_reward import RiskRewardAnalysis, RiskRewardEnforcer
from .trailing_stop import StopLossSuggestion, TrailingStopManager, TrailingStopResult

logger = logging.getLogger(__name__)


class RiskEngine:
    """
    Main RAMPART engine - gates trades, sizes them, ratchets their stops
    and reviews the portfolio they add up to.
    """

    def __init__(self, config: Optional[RiskEngineConfig] = None):
        self.config = config or RiskEngineConfig()

        # Initialize sub-components
        self.trailing_stops = TrailingStopManager(history_limit=self.config.trailing_stop.history_limit)
        self.risk_reward = RiskRewardEnforcer(self.config.risk_reward)
        self.portfolio = PortfolioRiskManager(self.config.portfolio)
        self.capital = CapitalPreservationSystem(self.config.capital_protection)
        self.sizing = PositionSizingEvaluator(
            self.config.position_sizing,
            enforcer=self.risk_reward,
            portfolio=self.portfolio,
            capital=self.capital,
        )

    # ------------------------------------------------------------------
    # Entry decisions
    # ------------------------------------------------------------------

    def evaluate_trade(self, proposal: TradeProposal, market: MarketConditions) -> RiskRewardAnalysis:
        return self.risk_reward.analyze_risk_reward(proposal, market)

    def size_position(self, request: PositionSizeRequest) -> PositionSizeResult:
        return self.sizing.evaluate_position_size(request)

    def initial_stop_for(self, entry_price: float, side: Side, market: MarketConditions) -> float:
        return self.trailing_stops.calculate_initial_stop_loss(
            entry_price, side, self.config.trailing_stop, market
        )

    # ------------------------------------------------------------------
    # Open positions
    # ------------------------------------------------------------------

    def track_position(self, position: Position, market: Optional[MarketConditions] = None) -> Position:
        """
        Start managing a position's stop. A position without a stop gets
        its opening stop here when market conditions are supplied.
        """
        if position.stop_loss <= 0 and market is not None:
            position.stop_loss = self.initial_stop_for(position.entry_price, position.side, market)
            logger.info(f"{position.symbol} opening stop set at {position.stop_loss:.2f}")
        self.trailing_stops.track_position(position)
        return position

    def close_position(self, position_id: str) -> bool:
        return self.trailing_stops.release_position(position_id)

    def on_price_tick(
        self, position_id: str, current_price: float, market: MarketConditions
    ) -> TrailingStopResult:
        return self.trailing_stops.update_tracked_stop(
            position_id, current_price, self.config.trailing_stop, market
        )

    def update_stop(self, position: Position, market: MarketConditions) -> TrailingStopResult:
        return self.trailing_stops.update_trailing_stop(position, self.config.trailing_stop, market)

    def suggest_stop(self, position: Position, market: MarketConditions) -> StopLossSuggestion:
        return self.trailing_stops.optimize_stop_loss(position, self.config.trailing_stop, market)

    # ------------------------------------------------------------------
    # Portfolio
    # ------------------------------------------------------------------

    def review_portfolio(
        self,
        positions: List[Position],
        price_history: Optional[pd.DataFrame] = None
    ) -> Dict[str, Any]:
        """Portfolio report, its summary, the RR gate's running performance and capital status."""
        report = self.portfolio.analyze_portfolio_risk(positions, price_history)
        summary = self.portfolio.get_portfolio_risk_summary(report)
        return {
            "report": report.to_dict(),
            "summary": summary.to_dict(),
            "risk_reward": self.risk_reward.get_performance_metrics().to_dict(),
            "capital": self.capital.get_capital_preservation_stats(),
        }

    # ------------------------------------------------------------------
    # Capital preservation
    # ------------------------------------------------------------------

    def monitor_capital(
        self,
        balance: float,
        positions: List[Position],
        daily_pnl: float = 0.0,
        weekly_pnl: float = 0.0,
        monthly_pnl: float = 0.0
    ) -> CapitalPreservationReport:
        return self.capital.monitor_capital_preservation(
            balance, positions, daily_pnl, weekly_pnl, monthly_pnl
        )

    def record_trade_result(self, pnl: float) -> int:
        return self.capital.record_trade_result(pnl)

    def resume_trading(self) -> bool:
        """Leave emergency mode, but only once the recovery conditions hold."""
        if not self.capital.check_recovery_conditions():
            logger.warning("Resume refused: recovery conditions not met")
            return False
        self.capital.resume_normal_operations()
        return True

    # ------------------------------------------------------------------
    # Config
    # ------------------------------------------------------------------

    def reload_config(self, source: Union[RiskEngineConfig, str, Path]) -> RiskEngineConfig:
        """
        Swap in a new configuration without losing state.

        Tracked positions, stop histories, RR statistics and capital
        protection state survive; the new config is fully validated before
        anything is replaced. Stop histories are resized to the new limit.
        """
        config = source if isinstance(source, RiskEngineConfig) else load_engine_config(source)

        self.risk_reward.update_config(**config.risk_reward.model_dump())
        self.portfolio.update_config(**config.portfolio.model_dump())
        self.sizing.update_config(**config.position_sizing.model_dump())
        self.capital.update_config(**config.capital_protection.model_dump())
        if config.trailing_stop.history_limit != self.trailing_stops.history_limit:
            self.trailing_stops.set_history_limit(config.trailing_stop.history_limit)
        self.config = config

        logger.info("Risk engine configuration reloaded")
        return config
