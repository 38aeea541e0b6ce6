"""
RAMPART Data Models
===================

Shared, serializable data structures for the risk-decision engine.
Component-specific results live next to the component that produces them.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Dict, Any
from enum import Enum
from datetime import datetime


class Side(str, Enum):
    """Position / trade direction."""
    LONG = "LONG"
    SHORT = "SHORT"


class Trend(str, Enum):
    """Market trend classification."""
    BULLISH = "BULLISH"
    BEARISH = "BEARISH"
    SIDEWAYS = "SIDEWAYS"


class VolatilityBand(str, Enum):
    """Volatility band used by the reward/risk adjustment table."""
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"


class Priority(str, Enum):
    """Priority of a recommendation."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    Priority.LOW: 1,
    Priority.MEDIUM: 2,
    Priority.HIGH: 3,
    Priority.CRITICAL: 4,
}


@dataclass
class Position:
    """
    An open position as held by the account/portfolio store.

    `size` is signed; `stop_loss` is the only field the trailing stop
    manager writes.
    """
    id: str
    symbol: str
    size: float
    entry_price: float
    current_price: float
    side: Side = Side.LONG
    unrealized_pnl: float = 0.0
    stop_loss: float = 0.0
    take_profit: float = 0.0
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def profit_pct(self) -> float:
        """Signed profit percentage, positive when the position is in profit."""
        if self.entry_price <= 0:
            return 0.0
        move = (self.current_price - self.entry_price) / self.entry_price * 100
        return move if self.side == Side.LONG else -move

    @property
    def market_value(self) -> float:
        return abs(self.size) * self.current_price

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "size": self.size,
            "entry_price": self.entry_price,
            "current_price": self.current_price,
            "side": self.side.value,
            "unrealized_pnl": self.unrealized_pnl,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class TradeProposal:
    """A proposed trade. Immutable; never persisted beyond one evaluation."""
    symbol: str
    side: Side
    entry_price: float
    stop_loss_price: float
    take_profit_price: float
    position_size: float
    confidence: float           # 0-100
    strategy: str = "unknown"


@dataclass(frozen=True)
class MarketConditions:
    """
    Market snapshot supplied fresh for each evaluation.

    Can be populated from any data source, or built from candles with
    `core.market.build_market_conditions`.
    """
    volatility: float                       # unitless, roughly 0-1+
    trend: Trend = Trend.SIDEWAYS
    atr: float = 0.0
    support_level: Optional[float] = None
    resistance_level: Optional[float] = None

    def volatility_band(self, high_threshold: float = 0.5, low_threshold: float = 0.2) -> VolatilityBand:
        if self.volatility > high_threshold:
            return VolatilityBand.HIGH
        if self.volatility < low_threshold:
            return VolatilityBand.LOW
        return VolatilityBand.NORMAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "volatility": self.volatility,
            "trend": self.trend.value,
            "atr": self.atr,
            "support_level": self.support_level,
            "resistance_level": self.resistance_level,
        }


@dataclass
class PositionSizeRequest:
    """Input to the position sizing evaluator."""
    symbol: str
    account_balance: float
    entry_price: float
    stop_loss_price: float
    take_profit_price: float
    confidence: float
    volatility: float
    existing_positions: List[Position] = field(default_factory=list)
    side: Optional[Side] = None             # inferred from the stop when omitted
    strategy: str = "unknown"
    market_conditions: Optional[MarketConditions] = None

    @property
    def resolved_side(self) -> Side:
        if self.side is not None:
            return self.side
        return Side.LONG if self.stop_loss_price < self.entry_price else Side.SHORT


@dataclass
class PositionSizeResult:
    """Output of the position sizing evaluator."""
    position_size: float = 0.0
    risk_amount: float = 0.0
    risk_percentage: float = 0.0
    risk_reward_ratio: float = 0.0
    confidence_adjusted_size: float = 0.0
    correlation_adjustment: float = 1.0
    capital_adjustment: float = 1.0
    approved: bool = False
    rejection_reasons: List[str] = field(default_factory=list)
    size_capped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position_size": self.position_size,
            "risk_amount": self.risk_amount,
            "risk_percentage": self.risk_percentage,
            "risk_reward_ratio": self.risk_reward_ratio,
            "confidence_adjusted_size": self.confidence_adjusted_size,
            "correlation_adjustment": self.correlation_adjustment,
            "capital_adjustment": self.capital_adjustment,
            "approved": self.approved,
            "rejection_reasons": list(self.rejection_reasons),
            "size_capped": self.size_capped,
        }
