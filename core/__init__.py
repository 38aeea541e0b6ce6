"""
RAMPART Core Module
===================

Risk-decision engine and supporting components.
"""

from .models import (
    Side,
    Trend,
    VolatilityBand,
    Priority,
    Position,
    TradeProposal,
    MarketConditions,
    PositionSizeRequest,
    PositionSizeResult,
)

from .config import (
    TrailingStopConfig,
    MarketConditionAdjustments,
    RREnforcementConfig,
    PortfolioRiskConfig,
    PositionSizingConfig,
    CapitalProtectionConfig,
    RiskEngineConfig,
    load_engine_config,
)

from .engine import RiskEngine
from .market import build_market_conditions
from .trailing_stop import (
    TrailingStopManager,
    TrailingStopResult,
    TrailingStopUpdate,
    StopLossSuggestion,
    StopPhase,
    StopUpdateStatus,
)
from .risk_reward import RiskRewardEnforcer, RiskRewardAnalysis, RROptimization, OptimizationType
from .portfolio_risk import (
    PortfolioRiskManager,
    PortfolioRiskReport,
    PortfolioRiskSummary,
    RebalancingRecommendation,
    RebalanceType,
)
from .position_sizing import PositionSizingEvaluator
from .capital_preservation import (
    CapitalPreservationSystem,
    CapitalPreservationReport,
    DrawdownStatus,
    LossLimits,
    CapitalStatus,
)

__all__ = [
    # Models
    "Side",
    "Trend",
    "VolatilityBand",
    "Priority",
    "Position",
    "TradeProposal",
    "MarketConditions",
    "PositionSizeRequest",
    "PositionSizeResult",
    # Config
    "TrailingStopConfig",
    "MarketConditionAdjustments",
    "RREnforcementConfig",
    "PortfolioRiskConfig",
    "PositionSizingConfig",
    "CapitalProtectionConfig",
    "RiskEngineConfig",
    "load_engine_config",
    # Engine
    "RiskEngine",
    "build_market_conditions",
    # Trailing stops
    "TrailingStopManager",
    "TrailingStopResult",
    "TrailingStopUpdate",
    "StopLossSuggestion",
    "StopPhase",
    "StopUpdateStatus",
    # Risk-reward
    "RiskRewardEnforcer",
    "RiskRewardAnalysis",
    "RROptimization",
    "OptimizationType",
    # Portfolio
    "PortfolioRiskManager",
    "PortfolioRiskReport",
    "PortfolioRiskSummary",
    "RebalancingRecommendation",
    "RebalanceType",
    # Sizing
    "PositionSizingEvaluator",
    # Capital preservation
    "CapitalPreservationSystem",
    "CapitalPreservationReport",
    "DrawdownStatus",
    "LossLimits",
    "CapitalStatus",
]
