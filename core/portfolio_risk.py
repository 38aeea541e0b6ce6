"""
Portfolio Risk Manager
======================

Aggregate exposure, concentration and correlation analysis over the
open position set, with rebalancing recommendations.

Weights are by market value (|size| x current price). Correlations come
from price history when it is supplied, otherwise from the configured
pair table, otherwise from a default.

Usage:
    manager = PortfolioRiskManager()
    report = manager.analyze_portfolio_risk(positions)
    summary = manager.get_portfolio_risk_summary(report)
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from itertools import combinations
from typing import Dict, Iterable, List, Optional, Tuple, Any
import logging
import math
import threading

import numpy as np
import pandas as pd

from .config import PortfolioRiskConfig, merge_config
from .models import Position, Priority

logger = logging.getLogger(__name__)

# One-sided 95% normal quantile, daily scaling
VAR_Z_95 = 1.645
TRADING_DAYS = 252

QUOTE_SUFFIXES = ("USDT", "USDC", "BUSD", "USD", "EUR")


def base_asset(symbol: str) -> str:
    """BTCUSDT / BTC-USD / BTC/USDT -> BTC"""
    s = symbol.upper()
    for sep in ("/", "-", "_"):
        if sep in s:
            return s.split(sep)[0]
    for quote in QUOTE_SUFFIXES:
        if s.endswith(quote) and len(s) > len(quote):
            return s[: -len(quote)]
    return s


class RebalanceType(str, Enum):
    REDUCE_EXPOSURE = "REDUCE_EXPOSURE"
    INCREASE_EXPOSURE = "INCREASE_EXPOSURE"
    DIVERSIFY = "DIVERSIFY"


@dataclass
class EstimatedImpact:
    """Projected change if a recommendation is applied on its own."""
    portfolio_risk: float               # change in concentration (HHI x 100); negative is better
    diversification_improvement: float  # change in diversification score
    correlation_reduction: float        # drop in correlation risk, percentage points

    def to_dict(self) -> Dict[str, float]:
        return {
            "portfolio_risk": round(self.portfolio_risk, 4),
            "diversification_improvement": round(self.diversification_improvement, 4),
            "correlation_reduction": round(self.correlation_reduction, 4),
        }


@dataclass
class RebalancingRecommendation:
    type: RebalanceType
    symbol: str
    current_size: float
    recommended_size: float
    current_allocation: float
    target_allocation: float
    reason: str
    priority: Priority
    estimated_impact: EstimatedImpact

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "symbol": self.symbol,
            "current_size": self.current_size,
            "recommended_size": self.recommended_size,
            "current_allocation": round(self.current_allocation, 2),
            "target_allocation": round(self.target_allocation, 2),
            "reason": self.reason,
            "priority": self.priority.value,
            "estimated_impact": self.estimated_impact.to_dict(),
        }


@dataclass
class AssetExposure:
    symbol: str
    value: float
    percentage: float
    size: float = 0.0
    position_count: int = 0
    average_entry_price: float = 0.0
    current_price: float = 0.0
    unrealized_pnl: float = 0.0
    sector: str = "Other"
    beta: float = 1.0
    volatility: float = 0.0
    risk_contribution: float = 0.0      # % of portfolio variance

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "value": self.value,
            "percentage": round(self.percentage, 4),
            "size": self.size,
            "position_count": self.position_count,
            "average_entry_price": self.average_entry_price,
            "current_price": self.current_price,
            "unrealized_pnl": self.unrealized_pnl,
            "sector": self.sector,
            "beta": self.beta,
            "volatility": self.volatility,
            "risk_contribution": round(self.risk_contribution, 4),
        }


@dataclass
class SectorExposure:
    sector: str
    value: float
    percentage: float
    assets: List[str] = field(default_factory=list)
    beta: float = 1.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sector": self.sector,
            "value": self.value,
            "percentage": round(self.percentage, 4),
            "assets": list(self.assets),
            "beta": round(self.beta, 4),
        }


@dataclass
class CorrelationMatrix:
    """Pairwise correlations keyed "A-B" plus the two scalar reductions."""
    symbols: List[str] = field(default_factory=list)
    correlations: Dict[str, float] = field(default_factory=dict)
    portfolio_correlation_risk: float = 0.0
    diversification_score: float = 0.0

    def get(self, a: str, b: str) -> float:
        if a == b:
            return 1.0
        return self.correlations.get(f"{a}-{b}", self.correlations.get(f"{b}-{a}", 0.0))

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            [[self.get(a, b) for b in self.symbols] for a in self.symbols],
            index=self.symbols,
            columns=self.symbols,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbols": list(self.symbols),
            "correlations": {k: round(v, 4) for k, v in self.correlations.items()},
            "portfolio_correlation_risk": round(self.portfolio_correlation_risk, 4),
            "diversification_score": round(self.diversification_score, 2),
        }


@dataclass
class PortfolioMetrics:
    total_value: float = 0.0
    beta: float = 0.0
    volatility: float = 0.0
    diversification_ratio: float = 0.0
    concentration_risk: float = 0.0
    value_at_risk: float = 0.0
    expected_shortfall: float = 0.0
    unrealized_return: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return {
            "total_value": self.total_value,
            "beta": round(self.beta, 4),
            "volatility": round(self.volatility, 4),
            "diversification_ratio": round(self.diversification_ratio, 4),
            "concentration_risk": round(self.concentration_risk, 4),
            "value_at_risk": round(self.value_at_risk, 2),
            "expected_shortfall": round(self.expected_shortfall, 2),
            "unrealized_return": round(self.unrealized_return, 6),
        }


@dataclass
class PortfolioRiskReport:
    metrics: PortfolioMetrics = field(default_factory=PortfolioMetrics)
    asset_exposures: List[AssetExposure] = field(default_factory=list)
    sector_exposures: List[SectorExposure] = field(default_factory=list)
    correlation_matrix: CorrelationMatrix = field(default_factory=CorrelationMatrix)
    rebalancing_recommendations: List[RebalancingRecommendation] = field(default_factory=list)
    risk_violations: List[str] = field(default_factory=list)
    overall_risk_score: float = 0.0
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metrics": self.metrics.to_dict(),
            "asset_exposures": [a.to_dict() for a in self.asset_exposures],
            "sector_exposures": [s.to_dict() for s in self.sector_exposures],
            "correlation_matrix": self.correlation_matrix.to_dict(),
            "rebalancing_recommendations": [r.to_dict() for r in self.rebalancing_recommendations],
            "risk_violations": list(self.risk_violations),
            "overall_risk_score": round(self.overall_risk_score, 2),
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class PortfolioRiskSummary:
    risk_level: Priority
    key_risks: List[str]
    top_recommendations: List[RebalancingRecommendation]
    diversification_status: str     # GOOD / FAIR / POOR, NO_EXPOSURE when empty

    def to_dict(self) -> Dict[str, Any]:
        return {
            "risk_level": self.risk_level.value,
            "key_risks": list(self.key_risks),
            "top_recommendations": [r.to_dict() for r in self.top_recommendations],
            "diversification_status": self.diversification_status,
        }


def herfindahl(weights: np.ndarray) -> float:
    """Sum of squared weights: 1 for a single asset, 1/n when equal."""
    return float(np.sum(weights ** 2)) if len(weights) else 0.0


class PortfolioRiskManager:
    """Stateless apart from its config; safe to share between threads."""

    def __init__(self, config: Optional[PortfolioRiskConfig] = None):
        self.config = config or PortfolioRiskConfig()
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _sector(self, symbol: str, config: PortfolioRiskConfig) -> str:
        return config.sector_map.get(symbol, config.sector_map.get(base_asset(symbol), config.default_sector))

    def _beta(self, symbol: str, config: PortfolioRiskConfig) -> float:
        return config.asset_betas.get(symbol, config.asset_betas.get(base_asset(symbol), config.default_beta))

    def _volatility(self, symbol: str, config: PortfolioRiskConfig) -> float:
        return config.asset_volatilities.get(
            symbol, config.asset_volatilities.get(base_asset(symbol), config.default_volatility)
        )

    def _target(self, symbol: str, config: PortfolioRiskConfig) -> Optional[float]:
        if symbol in config.target_allocation:
            return config.target_allocation[symbol]
        return config.target_allocation.get(base_asset(symbol))

    def _table_correlation(self, a: str, b: str, config: PortfolioRiskConfig) -> float:
        base_a, base_b = base_asset(a), base_asset(b)
        if base_a == base_b:
            return 1.0
        for key in (f"{a}-{b}", f"{b}-{a}", f"{base_a}-{base_b}", f"{base_b}-{base_a}"):
            if key in config.correlations:
                return config.correlations[key]
        return config.default_correlation

    @staticmethod
    def _returns(price_history: Optional[pd.DataFrame]) -> Optional[pd.DataFrame]:
        if price_history is None or price_history.empty:
            return None
        return price_history.sort_index().pct_change().dropna(how="all")

    def _pair_correlation(
        self,
        a: str,
        b: str,
        config: PortfolioRiskConfig,
        returns: Optional[pd.DataFrame] = None
    ) -> float:
        if returns is not None:
            col_a = a if a in returns.columns else base_asset(a)
            col_b = b if b in returns.columns else base_asset(b)
            if col_a in returns.columns and col_b in returns.columns and col_a != col_b:
                pair = returns[[col_a, col_b]].dropna()
                if len(pair) >= 3:
                    rho = pair[col_a].corr(pair[col_b])
                    if not pd.isna(rho):
                        return float(np.clip(rho, -1.0, 1.0))
        return self._table_correlation(a, b, config)

    def correlation_with(
        self,
        symbol: str,
        others: Iterable[str],
        price_history: Optional[pd.DataFrame] = None
    ) -> Dict[str, float]:
        """Correlation of `symbol` with each of `others` (same asset counts as 1.0)."""
        config = self.get_config()
        returns = self._returns(price_history)
        return {
            other: self._pair_correlation(symbol, other, config, returns)
            for other in dict.fromkeys(others)
        }

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def analyze_portfolio_risk(
        self,
        positions: List[Position],
        price_history: Optional[pd.DataFrame] = None
    ) -> PortfolioRiskReport:
        """
        Full portfolio review.

        Args:
            positions: open positions; zero-value positions are ignored
            price_history: optional close prices, one column per symbol
                (or base asset), used for return correlations
        """
        config = self.get_config()
        live = [p for p in positions if p.market_value > 0]
        if not live:
            return PortfolioRiskReport()

        total_value = sum(p.market_value for p in live)
        exposures = self._asset_exposures(live, total_value, config)
        symbols = [e.symbol for e in exposures]
        weights = np.array([e.value / total_value for e in exposures])

        returns = self._returns(price_history)
        rho = np.eye(len(symbols))
        for i, j in combinations(range(len(symbols)), 2):
            rho[i, j] = rho[j, i] = self._pair_correlation(symbols[i], symbols[j], config, returns)

        matrix = self._correlation_matrix(symbols, weights, rho)
        sigma = np.array([e.volatility for e in exposures])
        cov = np.outer(sigma, sigma) * rho
        portfolio_sigma = math.sqrt(max(float(weights @ cov @ weights), 0.0))

        # Share of portfolio variance
        if portfolio_sigma > 0:
            contributions = weights * (cov @ weights) / portfolio_sigma ** 2 * 100
        else:
            contributions = weights * 100
        for exposure, contribution in zip(exposures, contributions):
            exposure.risk_contribution = float(contribution)

        metrics = self._metrics(live, exposures, weights, sigma, portfolio_sigma, total_value)
        sectors = self._sector_exposures(exposures, total_value)
        violations = self._violations(exposures, sectors, matrix, metrics, config)
        recommendations = self._recommendations(exposures, weights, rho, matrix, config)

        score = (
            metrics.concentration_risk * 30
            + matrix.portfolio_correlation_risk * 25
            + len(violations) * 10
            + min(metrics.volatility * 100, 20)
        )

        report = PortfolioRiskReport(
            metrics=metrics,
            asset_exposures=exposures,
            sector_exposures=sectors,
            correlation_matrix=matrix,
            rebalancing_recommendations=recommendations,
            risk_violations=violations,
            overall_risk_score=float(min(100.0, max(0.0, score))),
        )

        for violation in violations:
            logger.warning(f"Portfolio violation: {violation}")
        logger.info(
            f"Portfolio analyzed: {len(symbols)} assets, value {total_value:,.2f}, "
            f"risk score {report.overall_risk_score:.1f}"
        )
        return report

    def _asset_exposures(
        self, positions: List[Position], total_value: float, config: PortfolioRiskConfig
    ) -> List[AssetExposure]:
        grouped: Dict[str, List[Position]] = {}
        for p in positions:
            grouped.setdefault(p.symbol, []).append(p)

        exposures = []
        for symbol, group in grouped.items():
            value = sum(p.market_value for p in group)
            size = sum(abs(p.size) for p in group)
            exposures.append(AssetExposure(
                symbol=symbol,
                value=value,
                percentage=value / total_value * 100,
                size=size,
                position_count=len(group),
                average_entry_price=sum(p.entry_price * abs(p.size) for p in group) / size,
                current_price=group[-1].current_price,
                unrealized_pnl=sum(p.unrealized_pnl for p in group),
                sector=self._sector(symbol, config),
                beta=self._beta(symbol, config),
                volatility=self._volatility(symbol, config),
            ))

        exposures.sort(key=lambda e: e.percentage, reverse=True)
        return exposures

    @staticmethod
    def _sector_exposures(exposures: List[AssetExposure], total_value: float) -> List[SectorExposure]:
        grouped: Dict[str, List[AssetExposure]] = {}
        for e in exposures:
            grouped.setdefault(e.sector, []).append(e)

        sectors = []
        for sector, assets in grouped.items():
            value = sum(a.value for a in assets)
            sectors.append(SectorExposure(
                sector=sector,
                value=value,
                percentage=value / total_value * 100,
                assets=[a.symbol for a in assets],
                beta=sum(a.beta * a.value for a in assets) / value,
            ))

        sectors.sort(key=lambda s: s.percentage, reverse=True)
        return sectors

    @staticmethod
    def _correlation_scores(weights: np.ndarray, rho: np.ndarray) -> Tuple[float, float]:
        """(correlation risk, diversification score) for a weight vector."""
        n = len(weights)
        if n < 2:
            return 0.0, 0.0

        pair_weights = np.outer(weights, weights)
        upper = np.triu_indices(n, k=1)
        total_pair_weight = pair_weights[upper].sum()
        if total_pair_weight > 0:
            correlation_risk = float((np.abs(rho[upper]) * pair_weights[upper]).sum() / total_pair_weight)
        else:
            correlation_risk = 0.0

        spread = (1 - herfindahl(weights)) / (1 - 1 / n)
        score = 100 * spread * (1 - correlation_risk)
        return correlation_risk, float(min(100.0, max(0.0, score)))

    def _correlation_matrix(
        self, symbols: List[str], weights: np.ndarray, rho: np.ndarray
    ) -> CorrelationMatrix:
        correlation_risk, score = self._correlation_scores(weights, rho)
        return CorrelationMatrix(
            symbols=list(symbols),
            correlations={
                f"{symbols[i]}-{symbols[j]}": float(rho[i, j])
                for i, j in combinations(range(len(symbols)), 2)
            },
            portfolio_correlation_risk=correlation_risk,
            diversification_score=score,
        )

    @staticmethod
    def _metrics(
        positions: List[Position],
        exposures: List[AssetExposure],
        weights: np.ndarray,
        sigma: np.ndarray,
        portfolio_sigma: float,
        total_value: float
    ) -> PortfolioMetrics:
        weighted_sigma = float(weights @ sigma)
        daily_sigma = portfolio_sigma / math.sqrt(TRADING_DAYS)
        # Normal expected shortfall: phi(z) / (1 - alpha)
        es_factor = math.exp(-VAR_Z_95 ** 2 / 2) / math.sqrt(2 * math.pi) / 0.05

        return PortfolioMetrics(
            total_value=total_value,
            beta=float(weights @ np.array([e.beta for e in exposures])),
            volatility=weighted_sigma,
            diversification_ratio=weighted_sigma / portfolio_sigma if portfolio_sigma > 0 else 1.0,
            concentration_risk=herfindahl(weights),
            value_at_risk=total_value * daily_sigma * VAR_Z_95,
            expected_shortfall=total_value * daily_sigma * es_factor,
            unrealized_return=sum(p.unrealized_pnl for p in positions) / total_value,
        )

    @staticmethod
    def _violations(
        exposures: List[AssetExposure],
        sectors: List[SectorExposure],
        matrix: CorrelationMatrix,
        metrics: PortfolioMetrics,
        config: PortfolioRiskConfig
    ) -> List[str]:
        violations = []

        for e in exposures:
            if e.percentage > config.max_single_asset_exposure:
                violations.append(
                    f"{e.symbol} exposure {e.percentage:.1f}% exceeds limit {config.max_single_asset_exposure}%"
                )

        for s in sectors:
            if s.percentage > config.max_sector_exposure:
                violations.append(
                    f"{s.sector} sector exposure {s.percentage:.1f}% exceeds limit {config.max_sector_exposure}%"
                )

        if matrix.portfolio_correlation_risk > config.max_portfolio_correlation:
            violations.append(
                f"Portfolio correlation risk {matrix.portfolio_correlation_risk * 100:.1f}% "
                f"exceeds limit {config.max_portfolio_correlation * 100:.1f}%"
            )

        if matrix.diversification_score < config.min_diversification_score:
            violations.append(
                f"Diversification score {matrix.diversification_score:.1f} "
                f"below minimum {config.min_diversification_score}"
            )

        if metrics.beta > config.max_portfolio_beta:
            violations.append(
                f"Portfolio beta {metrics.beta:.2f} exceeds limit {config.max_portfolio_beta}"
            )

        return violations

    # ------------------------------------------------------------------
    # Recommendations
    # ------------------------------------------------------------------

    def _impact(
        self, weights: np.ndarray, rho: np.ndarray, index: int, scale: float
    ) -> EstimatedImpact:
        """Re-project the portfolio with one asset's value scaled by `scale`."""
        projected = weights.copy()
        projected[index] *= scale
        if projected.sum() > 0:
            projected = projected / projected.sum()

        old_corr, old_score = self._correlation_scores(weights, rho)
        new_corr, new_score = self._correlation_scores(projected, rho)
        return EstimatedImpact(
            portfolio_risk=(herfindahl(projected) - herfindahl(weights)) * 100,
            diversification_improvement=new_score - old_score,
            correlation_reduction=(old_corr - new_corr) * 100,
        )

    def _recommendations(
        self,
        exposures: List[AssetExposure],
        weights: np.ndarray,
        rho: np.ndarray,
        matrix: CorrelationMatrix,
        config: PortfolioRiskConfig
    ) -> List[RebalancingRecommendation]:
        threshold = config.rebalancing_threshold
        limit = config.max_single_asset_exposure
        recommendations = []

        for i, e in enumerate(exposures):
            target = self._target(e.symbol, config)

            if e.percentage > limit:
                over = e.percentage - limit
                scale = limit / e.percentage
                recommendations.append(RebalancingRecommendation(
                    type=RebalanceType.REDUCE_EXPOSURE,
                    symbol=e.symbol,
                    current_size=e.size,
                    recommended_size=e.size * scale,
                    current_allocation=e.percentage,
                    target_allocation=limit,
                    reason=f"{e.symbol} at {e.percentage:.1f}% exceeds single-asset limit {limit}%",
                    priority=Priority.CRITICAL if over > 2 * threshold else Priority.HIGH,
                    estimated_impact=self._impact(weights, rho, i, scale),
                ))
                continue

            if target is None:
                continue

            deviation = e.percentage - target
            if deviation > threshold:
                scale = target / e.percentage
                recommendations.append(RebalancingRecommendation(
                    type=RebalanceType.REDUCE_EXPOSURE,
                    symbol=e.symbol,
                    current_size=e.size,
                    recommended_size=e.size * scale,
                    current_allocation=e.percentage,
                    target_allocation=target,
                    reason=f"{e.symbol} at {e.percentage:.1f}% is above target {target:.1f}%",
                    priority=Priority.MEDIUM,
                    estimated_impact=self._impact(weights, rho, i, scale),
                ))
            elif -deviation > threshold:
                scale = target / e.percentage
                recommendations.append(RebalancingRecommendation(
                    type=RebalanceType.INCREASE_EXPOSURE,
                    symbol=e.symbol,
                    current_size=e.size,
                    recommended_size=e.size * scale,
                    current_allocation=e.percentage,
                    target_allocation=target,
                    reason=f"{e.symbol} at {e.percentage:.1f}% is below target {target:.1f}%",
                    priority=Priority.MEDIUM if -deviation > 2 * threshold else Priority.LOW,
                    estimated_impact=self._impact(weights, rho, i, scale),
                ))

        if matrix.portfolio_correlation_risk > config.max_portfolio_correlation and len(exposures) > 1:
            n = len(exposures)
            i, j = max(
                combinations(range(n), 2),
                key=lambda pair: abs(rho[pair[0], pair[1]]),
            )
            larger = i if exposures[i].percentage >= exposures[j].percentage else j
            e = exposures[larger]
            other = exposures[j if larger == i else i]
            recommendations.append(RebalancingRecommendation(
                type=RebalanceType.DIVERSIFY,
                symbol=e.symbol,
                current_size=e.size,
                recommended_size=e.size * 0.7,
                current_allocation=e.percentage,
                target_allocation=e.percentage * 0.7,
                reason=(
                    f"High correlation {rho[i, j] * 100:.0f}% between {e.symbol} and {other.symbol}"
                ),
                priority=Priority.HIGH,
                estimated_impact=self._impact(weights, rho, larger, 0.7),
            ))

        recommendations.sort(key=lambda r: r.priority.rank, reverse=True)
        return recommendations

    # ------------------------------------------------------------------
    # Summary / config
    # ------------------------------------------------------------------

    def get_portfolio_risk_summary(self, report: PortfolioRiskReport) -> PortfolioRiskSummary:
        score = report.overall_risk_score
        if score < 25:
            level = Priority.LOW
        elif score < 50:
            level = Priority.MEDIUM
        elif score < 75:
            level = Priority.HIGH
        else:
            level = Priority.CRITICAL

        diversification = report.correlation_matrix.diversification_score
        if not report.asset_exposures:
            # Nothing held, nothing to diversify
            status = "NO_EXPOSURE"
        elif diversification > 70:
            status = "GOOD"
        elif diversification > 40:
            status = "FAIR"
        else:
            status = "POOR"

        return PortfolioRiskSummary(
            risk_level=level,
            key_risks=report.risk_violations[:3],
            top_recommendations=report.rebalancing_recommendations[:3],
            diversification_status=status,
        )

    def update_config(self, **updates) -> PortfolioRiskConfig:
        with self._lock:
            self.config = merge_config(self.config, updates)
            config = self.config
        logger.info(f"Portfolio risk config updated: {sorted(updates)}")
        return config

    def get_config(self) -> PortfolioRiskConfig:
        with self._lock:
            return self.config
