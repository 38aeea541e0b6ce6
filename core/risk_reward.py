"""
Risk-Reward Enforcer
====================

Gates trade proposals on their reward/risk ratio.

The minimum ratio is not fixed: it is scaled by a market-condition factor
(trend multiplier x volatility-band multiplier) so the bar is higher in
bearish or violent markets and lower in calm uptrends.

When the ratio rule fails, the enforcer also explains how the trade
could be fixed (tighter stop, further target, or a better entry).

Usage:
    enforcer = RiskRewardEnforcer()
    analysis = enforcer.analyze_risk_reward(proposal, market)
    if not analysis.approved:
        print(analysis.rejection_reasons)
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Deque, Dict, List, Optional, Any
import logging
import threading

from .config import RREnforcementConfig, merge_config
from .models import MarketConditions, Priority, Side, TradeProposal

logger = logging.getLogger(__name__)


class OptimizationType(str, Enum):
    ADJUST_STOP_LOSS = "ADJUST_STOP_LOSS"
    ADJUST_TAKE_PROFIT = "ADJUST_TAKE_PROFIT"
    WAIT_FOR_BETTER_ENTRY = "WAIT_FOR_BETTER_ENTRY"


@dataclass
class RROptimization:
    """One way to bring a rejected trade up to the effective minimum ratio."""
    type: OptimizationType
    current_value: float
    recommended_value: float
    rr_improvement: float
    description: str
    priority: Priority = Priority.LOW

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "current_value": self.current_value,
            "recommended_value": self.recommended_value,
            "rr_improvement": self.rr_improvement,
            "description": self.description,
            "priority": self.priority.value,
        }


@dataclass
class RiskRewardAnalysis:
    """Full verdict on a proposal."""
    risk_reward_ratio: float
    risk_amount: float
    reward_amount: float
    risk_percentage: float
    reward_percentage: float
    meets_minimum_rr: bool
    approved: bool
    rejection_reasons: List[str] = field(default_factory=list)
    optimization_recommendations: List[RROptimization] = field(default_factory=list)

    effective_min_ratio: float = 0.0
    adjustment_factor: float = 1.0
    symbol: str = ""
    strategy: str = "unknown"
    confidence: float = 0.0
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "strategy": self.strategy,
            "risk_reward_ratio": round(self.risk_reward_ratio, 4),
            "risk_amount": self.risk_amount,
            "reward_amount": self.reward_amount,
            "risk_percentage": round(self.risk_percentage, 4),
            "reward_percentage": round(self.reward_percentage, 4),
            "effective_min_ratio": round(self.effective_min_ratio, 4),
            "adjustment_factor": round(self.adjustment_factor, 4),
            "meets_minimum_rr": self.meets_minimum_rr,
            "approved": self.approved,
            "confidence": self.confidence,
            "rejection_reasons": list(self.rejection_reasons),
            "optimization_recommendations": [o.to_dict() for o in self.optimization_recommendations],
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class StrategyStats:
    """Running per-strategy statistics."""
    count: int = 0
    approved: int = 0
    average_rr: float = 0.0     # over approved trades

    @property
    def compliance(self) -> float:
        return self.approved / self.count * 100 if self.count else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "approved": self.approved,
            "average_rr": round(self.average_rr, 4),
            "compliance": round(self.compliance, 2),
        }


@dataclass
class RRPerformanceMetrics:
    total_trades_analyzed: int = 0
    rejected_trades_count: int = 0
    rr_compliance_rate: float = 0.0
    average_rr: float = 0.0
    best_rr: float = 0.0
    worst_rr: Optional[float] = None
    rr_by_strategy: Dict[str, StrategyStats] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_trades_analyzed": self.total_trades_analyzed,
            "rejected_trades_count": self.rejected_trades_count,
            "rr_compliance_rate": round(self.rr_compliance_rate, 2),
            "average_rr": round(self.average_rr, 4),
            "best_rr": round(self.best_rr, 4),
            "worst_rr": round(self.worst_rr, 4) if self.worst_rr is not None else None,
            "rr_by_strategy": {k: v.to_dict() for k, v in self.rr_by_strategy.items()},
        }


def adjustment_factor(market: MarketConditions, config: RREnforcementConfig) -> float:
    """
    Multiplier applied to the minimum ratio for the given market.

    Product of the trend entry and the volatility-band entry of the
    adjustment table. NORMAL volatility has no entry and contributes 1.0.
    """
    if not config.enable_dynamic_adjustment:
        return 1.0

    table = config.market_condition_adjustments.table()
    band = market.volatility_band(config.high_volatility_threshold, config.low_volatility_threshold)

    factor = 1.0
    for key in (market.trend, band):
        factor *= table.get(key, 1.0)
    return factor


class RiskRewardEnforcer:
    """
    Reward/risk gate with running compliance statistics.

    All state (config, history, metrics) is guarded by one re-entrant lock;
    readers get copies.
    """

    def __init__(self, config: Optional[RREnforcementConfig] = None):
        self.config = config or RREnforcementConfig()
        self._lock = threading.RLock()
        self._history: Deque[RiskRewardAnalysis] = deque(maxlen=self.config.history_limit)
        self._metrics = RRPerformanceMetrics()

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def analyze_risk_reward(
        self,
        proposal: TradeProposal,
        market_conditions: MarketConditions
    ) -> RiskRewardAnalysis:
        """Score a proposal, record it, and return the verdict."""
        with self._lock:
            config = self.config
            analysis = self._evaluate(proposal, market_conditions, config)
            self._history.append(analysis)
            self._record(analysis)

        if analysis.approved:
            logger.debug(
                f"{proposal.symbol} approved: RR {analysis.risk_reward_ratio:.2f} "
                f"(min {analysis.effective_min_ratio:.2f})"
            )
        else:
            logger.warning(f"{proposal.symbol} rejected: {'; '.join(analysis.rejection_reasons)}")

        return analysis

    def _evaluate(
        self,
        proposal: TradeProposal,
        market: MarketConditions,
        config: RREnforcementConfig
    ) -> RiskRewardAnalysis:
        entry = proposal.entry_price
        stop = proposal.stop_loss_price
        target = proposal.take_profit_price
        size = proposal.position_size

        risk_distance = abs(entry - stop)
        reward_distance = abs(target - entry)
        risk_amount = risk_distance * size if size > 0 else 0.0
        reward_amount = reward_distance * size if size > 0 else 0.0
        ratio = reward_amount / risk_amount if risk_amount > 0 else 0.0

        risk_pct = risk_distance / entry * 100 if entry > 0 else 0.0
        reward_pct = reward_distance / entry * 100 if entry > 0 else 0.0

        factor = adjustment_factor(market, config)
        effective_min = config.min_risk_reward_ratio * factor
        meets_minimum = risk_amount > 0 and ratio >= effective_min

        reasons = self._validate_inputs(proposal)
        inputs_valid = not reasons

        if risk_amount <= 0:
            reasons.append("Zero risk: stop loss equals entry price or position size is zero")
        elif not meets_minimum:
            reasons.append(
                f"Risk-reward ratio {ratio:.2f} below minimum {effective_min:.2f} "
                f"(base {config.min_risk_reward_ratio}, market adjustment {factor:.2f})"
            )

        if risk_pct > config.max_risk_percentage:
            reasons.append(
                f"Risk percentage {risk_pct:.2f}% exceeds maximum {config.max_risk_percentage}%"
            )

        if (
            proposal.confidence < config.low_confidence_floor
            and ratio < effective_min + config.near_threshold_band
        ):
            reasons.append(
                f"Low confidence {proposal.confidence:.0f}% with near-threshold RR ratio {ratio:.2f}"
            )

        optimizations: List[RROptimization] = []
        if inputs_valid and risk_amount > 0 and not meets_minimum:
            optimizations = self._recommend(proposal, ratio, effective_min)

        return RiskRewardAnalysis(
            risk_reward_ratio=ratio,
            risk_amount=risk_amount,
            reward_amount=reward_amount,
            risk_percentage=risk_pct,
            reward_percentage=reward_pct,
            meets_minimum_rr=meets_minimum,
            approved=not reasons,
            rejection_reasons=reasons,
            optimization_recommendations=optimizations,
            effective_min_ratio=effective_min,
            adjustment_factor=factor,
            symbol=proposal.symbol,
            strategy=proposal.strategy,
            confidence=proposal.confidence,
        )

    @staticmethod
    def _validate_inputs(proposal: TradeProposal) -> List[str]:
        reasons = []
        entry = proposal.entry_price

        if proposal.position_size <= 0:
            reasons.append(f"Invalid position size {proposal.position_size}: must be positive")
        if entry <= 0:
            reasons.append(f"Invalid entry price {entry}: must be positive")
            return reasons

        if proposal.side == Side.LONG:
            if proposal.stop_loss_price > entry:
                reasons.append("Stop loss above entry price for LONG trade")
            if proposal.take_profit_price < entry:
                reasons.append("Take profit below entry price for LONG trade")
        else:
            if proposal.stop_loss_price < entry:
                reasons.append("Stop loss below entry price for SHORT trade")
            if proposal.take_profit_price > entry:
                reasons.append("Take profit above entry price for SHORT trade")

        if not 0 <= proposal.confidence <= 100:
            reasons.append(f"Confidence {proposal.confidence} outside 0-100")

        return reasons

    def _recommend(
        self,
        proposal: TradeProposal,
        ratio: float,
        target_ratio: float
    ) -> List[RROptimization]:
        """Stop, target and entry that each reach `target_ratio` with the other two fixed."""
        entry = proposal.entry_price
        stop = proposal.stop_loss_price
        target = proposal.take_profit_price
        direction = 1 if proposal.side == Side.LONG else -1

        risk_distance = abs(entry - stop)
        reward_distance = abs(target - entry)
        candidates = []

        if reward_distance > 0:
            new_stop = entry - direction * reward_distance / target_ratio
            candidates.append(RROptimization(
                type=OptimizationType.ADJUST_STOP_LOSS,
                current_value=stop,
                recommended_value=new_stop,
                rr_improvement=reward_distance / abs(entry - new_stop) - ratio,
                description=f"Tighten stop loss to {new_stop:.2f} to reach RR {target_ratio:.2f}",
            ))

        new_target = entry + direction * risk_distance * target_ratio
        candidates.append(RROptimization(
            type=OptimizationType.ADJUST_TAKE_PROFIT,
            current_value=target,
            recommended_value=new_target,
            rr_improvement=abs(new_target - entry) / risk_distance - ratio,
            description=f"Extend take profit to {new_target:.2f} to reach RR {target_ratio:.2f}",
        ))

        # Entry e with |target - e| / |e - stop| == target_ratio
        new_entry = (target + target_ratio * stop) / (1 + target_ratio)
        new_risk = abs(new_entry - stop)
        if new_risk > 0:
            candidates.append(RROptimization(
                type=OptimizationType.WAIT_FOR_BETTER_ENTRY,
                current_value=entry,
                recommended_value=new_entry,
                rr_improvement=abs(target - new_entry) / new_risk - ratio,
                description=f"Wait for better entry at {new_entry:.2f} to reach RR {target_ratio:.2f}",
            ))

        # Smallest relative price move is the most actionable
        candidates.sort(key=lambda o: abs(o.recommended_value - o.current_value) / entry)
        for optimization, priority in zip(candidates, (Priority.HIGH, Priority.MEDIUM, Priority.LOW)):
            optimization.priority = priority

        return sorted(candidates, key=lambda o: o.priority.rank, reverse=True)

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def _record(self, analysis: RiskRewardAnalysis):
        m = self._metrics
        m.total_trades_analyzed += 1

        stats = m.rr_by_strategy.setdefault(analysis.strategy, StrategyStats())
        stats.count += 1

        if analysis.approved:
            approved_count = m.total_trades_analyzed - m.rejected_trades_count
            m.average_rr += (analysis.risk_reward_ratio - m.average_rr) / approved_count
            m.best_rr = max(m.best_rr, analysis.risk_reward_ratio)
            m.worst_rr = (
                analysis.risk_reward_ratio if m.worst_rr is None
                else min(m.worst_rr, analysis.risk_reward_ratio)
            )
            stats.approved += 1
            stats.average_rr += (analysis.risk_reward_ratio - stats.average_rr) / stats.approved
        else:
            m.rejected_trades_count += 1

        approved_total = m.total_trades_analyzed - m.rejected_trades_count
        m.rr_compliance_rate = approved_total / m.total_trades_analyzed * 100

    def get_performance_metrics(self) -> RRPerformanceMetrics:
        with self._lock:
            m = self._metrics
            return RRPerformanceMetrics(
                total_trades_analyzed=m.total_trades_analyzed,
                rejected_trades_count=m.rejected_trades_count,
                rr_compliance_rate=m.rr_compliance_rate,
                average_rr=m.average_rr,
                best_rr=m.best_rr,
                worst_rr=m.worst_rr,
                rr_by_strategy={
                    name: StrategyStats(s.count, s.approved, s.average_rr)
                    for name, s in m.rr_by_strategy.items()
                },
            )

    def get_trade_history(self, limit: Optional[int] = None) -> List[RiskRewardAnalysis]:
        with self._lock:
            history = list(self._history)
        if limit:
            return history[-limit:]
        return history

    def reset_performance_metrics(self):
        with self._lock:
            self._metrics = RRPerformanceMetrics()
            self._history.clear()
        logger.info("Risk-reward performance metrics reset")

    def generate_performance_report(self) -> Dict[str, Any]:
        """Summary, top-5 strategies by compliance, and recent approval trends."""
        metrics = self.get_performance_metrics()
        history = self.get_trade_history()

        top_strategies = sorted(
            metrics.rr_by_strategy.items(),
            key=lambda item: (item[1].compliance, item[1].average_rr),
            reverse=True,
        )[:5]

        recent_trends = []
        for period in (10, 20, 50):
            recent = history[-period:]
            approved = [a for a in recent if a.approved]
            recent_trends.append({
                "period": f"Last {period} trades",
                "trades": len(recent),
                "average_rr": (
                    sum(a.risk_reward_ratio for a in approved) / len(approved) if approved else 0.0
                ),
                "approval_rate": len(approved) / len(recent) * 100 if recent else 0.0,
            })

        return {
            "summary": metrics.to_dict(),
            "top_strategies": [
                {"strategy": name, **stats.to_dict()} for name, stats in top_strategies
            ],
            "recent_trends": recent_trends,
        }

    # ------------------------------------------------------------------
    # Config
    # ------------------------------------------------------------------

    def update_config(self, **updates) -> RREnforcementConfig:
        """
        Merge and re-validate a partial config. Raises pydantic.ValidationError
        (or ValueError for unknown fields) and leaves the old config in place
        when the result is invalid.
        """
        with self._lock:
            new_config = merge_config(self.config, updates)
            if new_config.history_limit != self.config.history_limit:
                self._history = deque(self._history, maxlen=new_config.history_limit)
            self.config = new_config
        logger.info(f"Risk-reward config updated: {sorted(updates)}")
        return new_config

    def get_config(self) -> RREnforcementConfig:
        with self._lock:
            return self.config
