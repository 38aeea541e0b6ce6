"""
Position Sizing Evaluator
=========================

Fixed-fractional sizing, scaled by confidence, volatility and correlation
with what is already held, then gated by the reward/risk enforcer.

    size = balance x risk% / |entry - stop|
           x confidence multiplier   (0.5 .. 1.5)
           x volatility multiplier   (>= 0.3)
           x correlation adjustment  (>= 0.2)
           x capital preservation factor (drawdown and losing-streak cuts)

The notional is capped at `max_position_pct` of the balance. Nothing is
sized while the capital preservation system has trading halted.
"""

from dataclasses import replace
from typing import Iterable, List, Optional, Tuple
import logging
import threading

from .capital_preservation import CapitalPreservationSystem
from .config import PositionSizingConfig, merge_config
from .models import (
    MarketConditions,
    PositionSizeRequest,
    PositionSizeResult,
    TradeProposal,
)
from .portfolio_risk import PortfolioRiskManager
from .risk_reward import RiskRewardEnforcer

logger = logging.getLogger(__name__)


class PositionSizingEvaluator:
    """Coordinates sizing with the portfolio correlation view and the RR gate."""

    def __init__(
        self,
        config: Optional[PositionSizingConfig] = None,
        enforcer: Optional[RiskRewardEnforcer] = None,
        portfolio: Optional[PortfolioRiskManager] = None,
        capital: Optional[CapitalPreservationSystem] = None
    ):
        self.config = config or PositionSizingConfig()
        self.enforcer = enforcer or RiskRewardEnforcer()
        self.portfolio = portfolio or PortfolioRiskManager()
        self.capital = capital or CapitalPreservationSystem()
        self._lock = threading.Lock()

    def evaluate_position_size(self, request: PositionSizeRequest) -> PositionSizeResult:
        """Size a trade. Invalid inputs come back as a rejected result, never an exception."""
        config = self.get_config()

        invalid = self._validate(request)
        if invalid:
            logger.warning(f"{request.symbol} sizing rejected: {'; '.join(invalid)}")
            return PositionSizeResult(approved=False, rejection_reasons=invalid)

        halted = self.capital.halt_reason()
        if halted:
            logger.warning(f"{request.symbol} sizing rejected: {halted}")
            return PositionSizeResult(approved=False, rejection_reasons=[halted], capital_adjustment=0.0)

        distance = abs(request.entry_price - request.stop_loss_price)
        base_size = request.account_balance * (config.risk_per_trade_pct / 100) / distance

        confidence_adjusted = base_size * self.confidence_multiplier(request.confidence)
        volatility_adjusted = confidence_adjusted * self.volatility_multiplier(request.volatility)

        correlation_adjustment = self.correlation_adjustment(
            request.symbol, (p.symbol for p in request.existing_positions if p.market_value > 0)
        )
        capital_adjustment = self.capital.position_size_factor()
        size = volatility_adjusted * correlation_adjustment * capital_adjustment

        # Notional cap
        max_size = request.account_balance * (config.max_position_pct / 100) / request.entry_price
        size_capped = size > max_size
        if size_capped:
            logger.debug(f"{request.symbol} size {size:.6f} capped at {max_size:.6f}")
            size = max_size

        risk_amount = size * distance
        risk_pct = risk_amount / request.account_balance * 100

        reasons: List[str] = []
        if capital_adjustment <= 0:
            reasons.append("Capital preservation allows no new risk at the current drawdown")
        if risk_pct > config.max_risk_per_trade_pct:
            reasons.append(
                f"Risk percentage {risk_pct:.2f}% exceeds maximum {config.max_risk_per_trade_pct}%"
            )

        market = request.market_conditions or MarketConditions(volatility=request.volatility)
        proposal = TradeProposal(
            symbol=request.symbol,
            side=request.resolved_side,
            entry_price=request.entry_price,
            stop_loss_price=request.stop_loss_price,
            take_profit_price=request.take_profit_price,
            position_size=size,
            confidence=request.confidence,
            strategy=request.strategy,
        )
        analysis = self.enforcer.analyze_risk_reward(proposal, market)
        reasons.extend(r for r in analysis.rejection_reasons if r not in reasons)

        approved = not reasons
        if approved:
            logger.info(
                f"{request.symbol} sized at {size:.6f} (risk {risk_pct:.2f}%, "
                f"RR {analysis.risk_reward_ratio:.2f})"
            )

        return PositionSizeResult(
            position_size=size if approved else 0.0,
            risk_amount=risk_amount,
            risk_percentage=risk_pct,
            risk_reward_ratio=analysis.risk_reward_ratio,
            confidence_adjusted_size=confidence_adjusted,
            correlation_adjustment=correlation_adjustment,
            capital_adjustment=capital_adjustment,
            approved=approved,
            rejection_reasons=reasons,
            size_capped=size_capped,
        )

    @staticmethod
    def _validate(request: PositionSizeRequest) -> List[str]:
        reasons = []
        if request.account_balance <= 0:
            reasons.append(f"Invalid account balance {request.account_balance}: must be positive")
        if request.entry_price <= 0:
            reasons.append(f"Invalid entry price {request.entry_price}: must be positive")
        if request.stop_loss_price <= 0:
            reasons.append(f"Invalid stop loss price {request.stop_loss_price}: must be positive")
        if request.take_profit_price <= 0:
            reasons.append(f"Invalid take profit price {request.take_profit_price}: must be positive")
        if request.stop_loss_price == request.entry_price:
            reasons.append("Stop loss price cannot equal entry price")
        return reasons

    # ------------------------------------------------------------------
    # Multipliers
    # ------------------------------------------------------------------

    def confidence_multiplier(self, confidence: float) -> float:
        normalized = max(0.0, min(100.0, confidence)) / 100
        multiplier = 0.5 + normalized
        return max(self.config.min_confidence_multiplier,
                   min(self.config.max_confidence_multiplier, multiplier))

    def volatility_multiplier(self, volatility: float) -> float:
        return max(
            self.config.min_volatility_multiplier,
            1 - volatility * self.config.volatility_adjustment_factor,
        )

    def correlation_adjustment(self, symbol: str, existing_symbols: Iterable[str]) -> float:
        """Shrink when the new symbol is highly correlated with anything already held."""
        others = list(existing_symbols)
        if not others:
            return 1.0

        correlations = self.portfolio.correlation_with(symbol, others)
        max_correlation = max(correlations.values())
        if max_correlation > self.config.max_correlation_exposure:
            excess = max_correlation - self.config.max_correlation_exposure
            return max(self.config.min_correlation_multiplier, 1 - excess)
        return 1.0

    # ------------------------------------------------------------------
    # Scenarios
    # ------------------------------------------------------------------

    def evaluate_scenarios(
        self,
        request: PositionSizeRequest,
        scenarios: List[Tuple[float, float]]
    ) -> List[PositionSizeResult]:
        """Re-run sizing for each (confidence, volatility) pair."""
        results = []
        for confidence, volatility in scenarios:
            scenario = replace(request, confidence=confidence, volatility=volatility)
            results.append(self.evaluate_position_size(scenario))
        return results

    def update_config(self, **updates) -> PositionSizingConfig:
        """Merge and re-validate a partial config; the old one stays on failure."""
        with self._lock:
            self.config = merge_config(self.config, updates)
            config = self.config
        logger.info(f"Position sizing config updated: {sorted(updates)}")
        return config

    def get_config(self) -> PositionSizingConfig:
        with self._lock:
            return self.config

