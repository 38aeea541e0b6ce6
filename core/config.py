"""
RAMPART Configuration
=====================

Policy configuration for every risk component. Configs are pydantic models
so that bad values fail at load time, before any trade is evaluated.

Usage:
    config = load_engine_config("risk.json")
    enforcer_config = config.risk_reward
"""

from pathlib import Path
from typing import Dict, Any, Optional, Union
import logging

from pydantic import BaseModel, Field, model_validator

from .models import Trend, VolatilityBand

logger = logging.getLogger(__name__)


class TrailingStopConfig(BaseModel):
    """Trailing stop policy, one per strategy or global."""

    initial_stop_loss: float = Field(default=1.0, gt=0, description="Initial stop distance %")
    trailing_distance: float = Field(default=1.5, gt=0, description="Trailing distance %")
    min_profit_to_trail: float = Field(default=0.5, ge=0, description="Profit % before trailing starts")
    breakeven_threshold: float = Field(default=2.0, ge=0, description="Profit % that locks breakeven")
    volatility_adjustment: bool = True

    atr_multiplier: float = Field(default=2.0, ge=0, description="ATR floor for the trailing distance")
    initial_atr_multiplier: float = Field(default=1.5, ge=0, description="ATR floor for the opening stop")
    max_initial_distance: float = Field(default=10.0, gt=0, lt=100, description="Cap on the opening stop distance %")
    max_trailing_distance: float = Field(default=5.0, gt=0, description="Cap on the trailing distance %")
    level_offset_pct: float = Field(default=0.5, ge=0, lt=100, description="Offset beyond support/resistance %")
    breakeven_buffer_pct: float = Field(default=0.1, ge=0, lt=100, description="Fee buffer past entry %")
    # Audit trail length; applied by the manager at construction and on reload
    history_limit: int = Field(default=100, ge=1)

    model_config = {"frozen": True}


class MarketConditionAdjustments(BaseModel):
    """Multipliers applied to the minimum reward/risk ratio."""

    bullish: float = Field(default=0.9, gt=0)
    bearish: float = Field(default=1.2, gt=0)
    sideways: float = Field(default=1.1, gt=0)
    high_volatility: float = Field(default=1.3, gt=0)
    low_volatility: float = Field(default=0.8, gt=0)

    model_config = {"frozen": True}

    def table(self) -> Dict[Union[Trend, VolatilityBand], float]:
        """Enum-keyed lookup table; missing keys mean no adjustment."""
        return {
            Trend.BULLISH: self.bullish,
            Trend.BEARISH: self.bearish,
            Trend.SIDEWAYS: self.sideways,
            VolatilityBand.HIGH: self.high_volatility,
            VolatilityBand.LOW: self.low_volatility,
        }


class RREnforcementConfig(BaseModel):
    """Reward/risk enforcement policy."""

    min_risk_reward_ratio: float = Field(default=1.3, gt=0)
    preferred_risk_reward_ratio: float = Field(default=2.0, gt=0)
    max_risk_percentage: float = Field(default=3.0, gt=0, le=100)
    enable_dynamic_adjustment: bool = True
    market_condition_adjustments: MarketConditionAdjustments = Field(
        default_factory=MarketConditionAdjustments
    )

    high_volatility_threshold: float = Field(default=0.5, ge=0)
    low_volatility_threshold: float = Field(default=0.2, ge=0)
    low_confidence_floor: float = Field(default=50.0, ge=0, le=100)
    near_threshold_band: float = Field(default=0.7, ge=0)
    history_limit: int = Field(default=1000, ge=1)

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_bands(self):
        if self.low_volatility_threshold > self.high_volatility_threshold:
            raise ValueError("low_volatility_threshold must not exceed high_volatility_threshold")
        return self


DEFAULT_SECTOR_MAP = {
    "BTC": "Digital Gold",
    "ETH": "Smart Contracts",
    "ADA": "Smart Contracts",
    "SOL": "Smart Contracts",
    "DOT": "Interoperability",
    "LINK": "Oracle",
    "UNI": "DeFi",
    "AAVE": "DeFi",
}

DEFAULT_CORRELATIONS = {
    "BTC-ETH": 0.75,
}

DEFAULT_BETAS = {
    "BTC": 1.0,
    "ETH": 1.2,
    "ADA": 1.5,
    "DOT": 1.3,
}

DEFAULT_VOLATILITIES = {
    "BTC": 0.6,
    "ETH": 0.75,
}


class PortfolioRiskConfig(BaseModel):
    """Portfolio-level exposure and diversification policy."""

    max_single_asset_exposure: float = Field(default=40.0, gt=0, le=100)
    max_sector_exposure: float = Field(default=60.0, gt=0, le=100)
    min_diversification_score: float = Field(default=50.0, ge=0, le=100)
    max_portfolio_beta: float = Field(default=1.5, gt=0)
    rebalancing_threshold: float = Field(default=5.0, gt=0, le=100)
    target_allocation: Dict[str, float] = Field(
        default_factory=lambda: {"BTC": 30.0, "ETH": 25.0, "ADA": 20.0, "DOT": 15.0, "LINK": 10.0}
    )
    max_portfolio_correlation: float = Field(default=0.7, ge=0, le=1)

    sector_map: Dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_SECTOR_MAP))
    default_sector: str = "Other"
    correlations: Dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_CORRELATIONS))
    default_correlation: float = Field(default=0.3, ge=-1, le=1)
    asset_betas: Dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_BETAS))
    default_beta: float = 1.0
    asset_volatilities: Dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_VOLATILITIES))
    default_volatility: float = Field(default=0.5, ge=0)

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_tables(self):
        for pair, value in self.correlations.items():
            if "-" not in pair:
                raise ValueError(f"correlation key {pair!r} must look like 'AAA-BBB'")
            if not -1.0 <= value <= 1.0:
                raise ValueError(f"correlation for {pair} must be within [-1, 1]")
        for symbol, pct in self.target_allocation.items():
            if not 0.0 <= pct <= 100.0:
                raise ValueError(f"target allocation for {symbol} must be within [0, 100]")
        return self


class PositionSizingConfig(BaseModel):
    """Position sizing parameters."""

    risk_per_trade_pct: float = Field(default=1.5, gt=0, le=100)
    max_risk_per_trade_pct: float = Field(default=2.5, gt=0, le=100)
    min_confidence_multiplier: float = Field(default=0.5, gt=0)
    max_confidence_multiplier: float = Field(default=1.5, gt=0)
    volatility_adjustment_factor: float = Field(default=0.3, ge=0)
    min_volatility_multiplier: float = Field(default=0.3, gt=0, le=1)
    max_correlation_exposure: float = Field(default=0.7, ge=0, le=1)
    min_correlation_multiplier: float = Field(default=0.2, gt=0, le=1)
    max_position_pct: float = Field(default=50.0, gt=0)

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_ranges(self):
        if self.min_confidence_multiplier > self.max_confidence_multiplier:
            raise ValueError("min_confidence_multiplier must not exceed max_confidence_multiplier")
        if self.risk_per_trade_pct > self.max_risk_per_trade_pct:
            raise ValueError("risk_per_trade_pct must not exceed max_risk_per_trade_pct")
        return self


class CapitalProtectionConfig(BaseModel):
    """Drawdown and loss-limit policy. Thresholds are percentages."""

    warning_drawdown_threshold: float = Field(default=5.0, ge=0, le=100)
    max_drawdown_threshold: float = Field(default=10.0, gt=0, le=100)
    critical_drawdown_threshold: float = Field(default=15.0, gt=0, le=100)
    consecutive_loss_limit: int = Field(default=3, ge=1)
    position_size_reduction_factor: float = Field(default=0.5, gt=0, le=1)
    recovery_threshold: float = Field(default=3.0, ge=0, le=100, description="Drawdown % below which trading may resume")
    recovery_progress_required: float = Field(default=80.0, ge=0, le=100)
    daily_loss_limit: float = Field(default=2.0, gt=0, le=100)
    weekly_loss_limit: float = Field(default=5.0, gt=0, le=100)
    monthly_loss_limit: float = Field(default=10.0, gt=0, le=100)
    min_drawdown_pct: float = Field(default=0.1, ge=0, description="Smaller dips do not open a drawdown period")
    snapshot_limit: int = Field(default=1000, ge=2)
    alert_limit: int = Field(default=500, ge=1)

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_thresholds(self):
        if not (self.warning_drawdown_threshold
                < self.max_drawdown_threshold
                < self.critical_drawdown_threshold):
            raise ValueError("drawdown thresholds must satisfy warning < max < critical")
        return self


class RiskEngineConfig(BaseModel):
    """Bundle of all component configs, loadable from one JSON document."""

    trailing_stop: TrailingStopConfig = Field(default_factory=TrailingStopConfig)
    risk_reward: RREnforcementConfig = Field(default_factory=RREnforcementConfig)
    portfolio: PortfolioRiskConfig = Field(default_factory=PortfolioRiskConfig)
    position_sizing: PositionSizingConfig = Field(default_factory=PositionSizingConfig)
    capital_protection: CapitalProtectionConfig = Field(default_factory=CapitalProtectionConfig)

    model_config = {"frozen": True}


def merge_config(config: BaseModel, updates: Dict[str, Any]) -> BaseModel:
    """
    Return a new, re-validated config with `updates` merged in.

    Nested dict values are merged one level deep so a partial
    `market_condition_adjustments` only touches the keys it names.
    """
    merged = config.model_dump()
    for key, value in updates.items():
        if key not in merged:
            raise ValueError(f"Unknown config field {key!r} for {type(config).__name__}")
        if isinstance(value, BaseModel):
            value = value.model_dump()
        current = merged[key]
        if isinstance(current, dict) and isinstance(value, dict) and key not in _REPLACE_WHOLE:
            current = dict(current)
            current.update(value)
            merged[key] = current
        else:
            merged[key] = value
    return type(config).model_validate(merged)


# Mapping fields that are replaced, not merged, on update
_REPLACE_WHOLE = {"target_allocation", "sector_map", "correlations", "asset_betas", "asset_volatilities"}


def load_engine_config(path: Optional[Union[str, Path]] = None) -> RiskEngineConfig:
    """Load a RiskEngineConfig from a JSON file, or defaults when no path is given."""
    if path is None:
        return RiskEngineConfig()

    config_path = Path(path)
    config = RiskEngineConfig.model_validate_json(config_path.read_text())
    logger.info(f"Loaded risk configuration from {config_path}")
    return config
