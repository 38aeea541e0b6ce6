"""
RAMPART API Models
==================

Pydantic models for request/response validation, plus conversion into
the core domain types.
"""

from pydantic import BaseModel, Field
from typing import Dict, List, Optional
from datetime import datetime

import pandas as pd

from core.config import TrailingStopConfig
from core.models import (
    MarketConditions,
    Position,
    PositionSizeRequest,
    Side,
    TradeProposal,
    Trend,
)


class MarketConditionsModel(BaseModel):
    """Market snapshot supplied with each request."""

    volatility: float = Field(
        ...,
        ge=0,
        description="Volatility, unitless (0.3 == 30%)"
    )
    trend: str = Field(
        default="SIDEWAYS",
        pattern="^(BULLISH|BEARISH|SIDEWAYS)$",
        description="Market trend"
    )
    atr: float = Field(default=0.0, ge=0, description="Average True Range in price units")
    support_level: Optional[float] = Field(default=None, gt=0)
    resistance_level: Optional[float] = Field(default=None, gt=0)

    def to_core(self) -> MarketConditions:
        return MarketConditions(
            volatility=self.volatility,
            trend=Trend(self.trend),
            atr=self.atr,
            support_level=self.support_level,
            resistance_level=self.resistance_level,
        )


class TradeProposalRequest(BaseModel):
    """Request model for /risk-reward/analyze."""

    symbol: str = Field(default="BTCUSDT", description="Trading pair symbol")
    side: str = Field(..., pattern="^(LONG|SHORT)$", description="Trade direction")
    entry_price: float = Field(..., gt=0)
    stop_loss_price: float = Field(..., gt=0)
    take_profit_price: float = Field(..., gt=0)
    position_size: float = Field(..., gt=0, description="Position size in base currency")
    confidence: float = Field(default=70, ge=0, le=100, description="Signal confidence (0-100)")
    strategy: str = Field(default="unknown")
    market: MarketConditionsModel

    model_config = {
        "json_schema_extra": {
            "example": {
                "symbol": "BTCUSDT",
                "side": "LONG",
                "entry_price": 50000,
                "stop_loss_price": 49000,
                "take_profit_price": 52600,
                "position_size": 0.1,
                "confidence": 75,
                "strategy": "breakout",
                "market": {"volatility": 0.3, "trend": "BULLISH", "atr": 800}
            }
        }
    }

    def to_core(self) -> TradeProposal:
        return TradeProposal(
            symbol=self.symbol,
            side=Side(self.side),
            entry_price=self.entry_price,
            stop_loss_price=self.stop_loss_price,
            take_profit_price=self.take_profit_price,
            position_size=self.position_size,
            confidence=self.confidence,
            strategy=self.strategy,
        )


class PositionModel(BaseModel):
    """An open position."""

    id: str
    symbol: str
    size: float = Field(..., description="Signed position size")
    entry_price: float = Field(..., gt=0)
    current_price: float = Field(..., gt=0)
    side: str = Field(default="LONG", pattern="^(LONG|SHORT)$")
    unrealized_pnl: float = 0.0
    stop_loss: float = Field(default=0.0, ge=0, description="0 means no stop yet")
    take_profit: float = Field(default=0.0, ge=0)

    def to_core(self) -> Position:
        return Position(
            id=self.id,
            symbol=self.symbol,
            size=self.size,
            entry_price=self.entry_price,
            current_price=self.current_price,
            side=Side(self.side),
            unrealized_pnl=self.unrealized_pnl,
            stop_loss=self.stop_loss,
            take_profit=self.take_profit,
        )


class PositionSizeRequestModel(BaseModel):
    """Request model for /position-size."""

    symbol: str = Field(default="BTCUSDT")
    account_balance: float = Field(..., gt=0, description="Account balance in USD")
    entry_price: float = Field(..., gt=0)
    stop_loss_price: float = Field(..., gt=0)
    take_profit_price: float = Field(..., gt=0)
    confidence: float = Field(default=70, ge=0, le=100)
    volatility: float = Field(default=0.3, ge=0)
    existing_positions: List[PositionModel] = Field(default_factory=list)
    side: Optional[str] = Field(
        default=None,
        pattern="^(LONG|SHORT)$",
        description="Inferred from the stop when omitted"
    )
    strategy: str = Field(default="unknown")
    market: Optional[MarketConditionsModel] = None

    model_config = {
        "json_schema_extra": {
            "example": {
                "symbol": "ETHUSDT",
                "account_balance": 100000,
                "entry_price": 3000,
                "stop_loss_price": 2940,
                "take_profit_price": 3150,
                "confidence": 80,
                "volatility": 0.4,
                "existing_positions": []
            }
        }
    }

    def to_core(self) -> PositionSizeRequest:
        return PositionSizeRequest(
            symbol=self.symbol,
            account_balance=self.account_balance,
            entry_price=self.entry_price,
            stop_loss_price=self.stop_loss_price,
            take_profit_price=self.take_profit_price,
            confidence=self.confidence,
            volatility=self.volatility,
            existing_positions=[p.to_core() for p in self.existing_positions],
            side=Side(self.side) if self.side else None,
            strategy=self.strategy,
            market_conditions=self.market.to_core() if self.market else None,
        )


class TrailingStopRequest(BaseModel):
    """Request model for /trailing-stop/update and /trailing-stop/optimize."""

    position: PositionModel
    market: MarketConditionsModel
    config: Optional[TrailingStopConfig] = Field(
        default=None,
        description="Overrides the engine's trailing stop config for this call"
    )


class InitialStopRequest(BaseModel):
    """Request model for /trailing-stop/initial."""

    entry_price: float = Field(..., gt=0)
    side: str = Field(..., pattern="^(LONG|SHORT)$")
    market: MarketConditionsModel
    config: Optional[TrailingStopConfig] = None


class TrackPositionRequest(BaseModel):
    """Request model for /trailing-stop/track."""

    position: PositionModel
    market: Optional[MarketConditionsModel] = Field(
        default=None,
        description="When given and the position has no stop, an opening stop is set"
    )


class PriceTickRequest(BaseModel):
    """Request model for /trailing-stop/{position_id}/tick."""

    current_price: float = Field(..., gt=0)
    market: MarketConditionsModel


class PortfolioRequest(BaseModel):
    """Request model for /portfolio/analyze."""

    positions: List[PositionModel] = Field(default_factory=list)
    price_history: Optional[Dict[str, List[float]]] = Field(
        default=None,
        description="Close prices per symbol, oldest first, equal lengths"
    )

    def history_frame(self) -> Optional[pd.DataFrame]:
        if not self.price_history:
            return None
        return pd.DataFrame(self.price_history)


class CapitalMonitorRequest(BaseModel):
    """Request model for /capital/monitor."""

    balance: float = Field(..., gt=0, description="Current account balance")
    positions: List[PositionModel] = Field(default_factory=list)
    daily_pnl: float = Field(default=0.0, description="Realized P&L today")
    weekly_pnl: float = 0.0
    monthly_pnl: float = 0.0

    model_config = {
        "json_schema_extra": {
            "example": {
                "balance": 98500,
                "positions": [],
                "daily_pnl": -1500,
                "weekly_pnl": -2200,
                "monthly_pnl": -1800
            }
        }
    }


class TradeResultRequest(BaseModel):
    """Request model for /capital/trade-result."""

    pnl: float = Field(..., description="Realized P&L of a closed trade")


class ErrorResponse(BaseModel):
    """Error response model."""

    error: str = Field(description="Error message")
    detail: Optional[str] = Field(default=None, description="Detailed error information")
    timestamp: datetime = Field(default_factory=datetime.now)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(default="ok")
    service: str = Field(default="RAMPART")
    version: str = Field(default="1.0.0")
    timestamp: datetime = Field(default_factory=datetime.now)
