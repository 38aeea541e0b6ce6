"""
Capital Preservation System
===========================

Account-level protection that sits above individual trades.

Key Principles:
1. Track drawdown from the recent equity peak, period by period
2. Scale risk down between the warning and critical drawdown thresholds
3. Halt trading at the critical drawdown or when the daily loss limit is hit
4. Cut size after a run of consecutive losing trades
5. Emergency mode only ends through an explicit resume once recovered

Usage:
    capital = CapitalPreservationSystem()
    report = capital.monitor_capital_preservation(balance, positions, daily, weekly, monthly)
    if report.trading_allowed:
        size *= capital.position_size_factor()
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Deque, Dict, List, Optional
import logging
import threading

from .config import CapitalProtectionConfig, merge_config
from .models import Position, Priority

logger = logging.getLogger(__name__)


class CapitalStatus(str, Enum):
    NORMAL = "NORMAL"
    HALTED = "HALTED"
    EMERGENCY = "EMERGENCY"


class AlertType(str, Enum):
    DRAWDOWN_WARNING = "DRAWDOWN_WARNING"
    LOSS_LIMIT_WARNING = "LOSS_LIMIT_WARNING"
    EMERGENCY_STOP = "EMERGENCY_STOP"
    RECOVERY = "RECOVERY"


class EmergencyActionType(str, Enum):
    HALT_TRADING = "HALT_TRADING"
    REDUCE_POSITION_SIZES = "REDUCE_POSITION_SIZES"


@dataclass
class AccountSnapshot:
    balance: float
    unrealized_pnl: float
    realized_pnl: float
    open_positions: int
    portfolio_value: float
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class DrawdownPeriod:
    """One peak-to-recovery episode."""
    start: datetime
    peak_balance: float
    trough_balance: float
    max_drawdown_pct: float
    end: Optional[datetime] = None
    duration_days: int = 0
    emergency_measures_activated: bool = False

    @property
    def is_open(self) -> bool:
        return self.end is None


@dataclass
class DrawdownStatus:
    current_drawdown: float = 0.0
    max_drawdown: float = 0.0
    drawdown_duration_days: int = 0
    recovery_progress: float = 100.0
    emergency_measures_active: bool = False
    risk_reduction_level: float = 0.0       # 0-100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_drawdown": round(self.current_drawdown, 4),
            "max_drawdown": round(self.max_drawdown, 4),
            "drawdown_duration_days": self.drawdown_duration_days,
            "recovery_progress": round(self.recovery_progress, 2),
            "emergency_measures_active": self.emergency_measures_active,
            "risk_reduction_level": round(self.risk_reduction_level, 2),
        }


@dataclass
class LossLimit:
    limit: float
    current: float
    remaining: float
    reset_time: datetime

    @property
    def breached(self) -> bool:
        return self.remaining <= 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "limit": self.limit,
            "current": self.current,
            "remaining": self.remaining,
            "reset_time": self.reset_time.isoformat(),
            "breached": self.breached,
        }


@dataclass
class LossLimits:
    daily: LossLimit
    weekly: LossLimit
    monthly: LossLimit

    def to_dict(self) -> Dict[str, Any]:
        return {
            "daily": self.daily.to_dict(),
            "weekly": self.weekly.to_dict(),
            "monthly": self.monthly.to_dict(),
        }


@dataclass
class CapitalProtectionAlert:
    type: AlertType
    severity: Priority
    message: str
    recommended_actions: List[str] = field(default_factory=list)
    auto_executed_actions: List[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "recommended_actions": list(self.recommended_actions),
            "auto_executed_actions": list(self.auto_executed_actions),
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class EmergencyAction:
    type: EmergencyActionType
    description: str
    affected_positions: List[str] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)
    executed_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "description": self.description,
            "affected_positions": list(self.affected_positions),
            "details": dict(self.details),
            "executed_at": self.executed_at.isoformat(),
        }


@dataclass
class CapitalPreservationReport:
    drawdown_status: DrawdownStatus
    loss_limits: LossLimits
    alerts: List[CapitalProtectionAlert]
    emergency_actions: List[EmergencyAction]
    trading_allowed: bool
    position_size_factor: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "drawdown_status": self.drawdown_status.to_dict(),
            "loss_limits": self.loss_limits.to_dict(),
            "alerts": [a.to_dict() for a in self.alerts],
            "emergency_actions": [a.to_dict() for a in self.emergency_actions],
            "trading_allowed": self.trading_allowed,
            "position_size_factor": round(self.position_size_factor, 4),
        }


def _loss_limit(balance: float, limit_pct: float, pnl: float, reset_time: datetime) -> LossLimit:
    limit = balance * limit_pct / 100
    current = abs(min(0.0, pnl))
    return LossLimit(
        limit=limit,
        current=current,
        remaining=max(0.0, limit - current),
        reset_time=reset_time,
    )


class CapitalPreservationSystem:
    """
    Drawdown monitor and trading gate.

    All state (snapshots, drawdown periods, alerts, halt flags, loss streak)
    is guarded by one RLock; readers get copies.
    """

    def __init__(self, config: Optional[CapitalProtectionConfig] = None):
        self.config = config or CapitalProtectionConfig()
        self._lock = threading.RLock()
        self._snapshots: Deque[AccountSnapshot] = deque(maxlen=self.config.snapshot_limit)
        self._periods: List[DrawdownPeriod] = []
        self._alerts: Deque[CapitalProtectionAlert] = deque(maxlen=self.config.alert_limit)
        self._actions: Deque[EmergencyAction] = deque(maxlen=self.config.alert_limit)
        self._last_status = DrawdownStatus()
        self.consecutive_losses = 0
        self.emergency_mode_active = False
        self.trading_halted = False
        self._halted_until: Optional[datetime] = None

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    def monitor_capital_preservation(
        self,
        current_balance: float,
        positions: List[Position],
        daily_pnl: float = 0.0,
        weekly_pnl: float = 0.0,
        monthly_pnl: float = 0.0,
        timestamp: Optional[datetime] = None
    ) -> CapitalPreservationReport:
        """
        Record an account snapshot and re-evaluate every protection rule.

        Halts triggered here stay in force for later sizing calls until
        they expire (daily halt) or are lifted by `resume_normal_operations`.
        """
        now = timestamp or datetime.now()
        with self._lock:
            self._lift_expired_halt(now)

            snapshot = self._take_snapshot(current_balance, positions, daily_pnl, now)
            status = self._drawdown_status(snapshot)
            limits = self.check_loss_limits(current_balance, daily_pnl, weekly_pnl, monthly_pnl, now)

            alerts = self._generate_alerts(status, limits)
            actions = self._execute_emergency_actions(status, limits, positions, now)
            status.emergency_measures_active = self.emergency_mode_active
            self._last_status = status

            allowed = self.should_allow_trading(status, limits)
            factor = self.position_size_factor() if allowed else 0.0

        if not allowed:
            logger.warning(
                f"Trading not allowed: drawdown {status.current_drawdown:.2f}%, "
                f"daily loss {limits.daily.current:.2f} of {limits.daily.limit:.2f}"
            )

        return CapitalPreservationReport(
            drawdown_status=status,
            loss_limits=limits,
            alerts=alerts,
            emergency_actions=actions,
            trading_allowed=allowed,
            position_size_factor=factor,
        )

    def _take_snapshot(
        self,
        balance: float,
        positions: List[Position],
        daily_pnl: float,
        now: datetime
    ) -> AccountSnapshot:
        unrealized = sum(p.unrealized_pnl for p in positions)
        snapshot = AccountSnapshot(
            balance=balance,
            unrealized_pnl=unrealized,
            realized_pnl=daily_pnl,
            open_positions=len(positions),
            portfolio_value=balance + unrealized,
            timestamp=now,
        )
        self._snapshots.append(snapshot)
        return snapshot

    def _current_period(self) -> Optional[DrawdownPeriod]:
        for period in reversed(self._periods):
            if period.is_open:
                return period
        return None

    def _drawdown_status(self, snapshot: AccountSnapshot) -> DrawdownStatus:
        if len(self._snapshots) < 2:
            return DrawdownStatus(emergency_measures_active=self.emergency_mode_active)

        peak = max(s.portfolio_value for s in self._snapshots)
        value = snapshot.portfolio_value
        drawdown = (peak - value) / peak * 100 if peak > 0 else 0.0

        period = self._current_period()
        if drawdown > self.config.min_drawdown_pct:
            if period is None:
                period = DrawdownPeriod(
                    start=snapshot.timestamp,
                    peak_balance=peak,
                    trough_balance=value,
                    max_drawdown_pct=drawdown,
                )
                self._periods.append(period)
                logger.info(f"Drawdown period opened at {drawdown:.2f}% below peak {peak:.2f}")
            else:
                period.trough_balance = min(period.trough_balance, value)
                period.max_drawdown_pct = max(period.max_drawdown_pct, drawdown)
                period.duration_days = (snapshot.timestamp - period.start).days
        elif period is not None:
            period.end = snapshot.timestamp
            period.duration_days = (snapshot.timestamp - period.start).days
            logger.info(f"Drawdown period closed after {period.duration_days} days")
            period = None

        recovery = 100.0
        if period is not None:
            depth = period.peak_balance - period.trough_balance
            recovery = (value - period.trough_balance) / depth * 100 if depth > 0 else 0.0

        max_drawdown = max([p.max_drawdown_pct for p in self._periods] + [drawdown])

        return DrawdownStatus(
            current_drawdown=drawdown,
            max_drawdown=max_drawdown,
            drawdown_duration_days=period.duration_days if period else 0,
            recovery_progress=recovery,
            emergency_measures_active=self.emergency_mode_active,
            risk_reduction_level=self.risk_reduction_level(drawdown),
        )

    def risk_reduction_level(self, drawdown: float) -> float:
        """
        Percentage of risk to take off for a given drawdown.

        0 below warning, 0-50 linearly up to max, 50-80 linearly up to
        critical, and 100 (no new risk) at or past critical.
        """
        config = self.config
        if drawdown < config.warning_drawdown_threshold:
            return 0.0
        if drawdown < config.max_drawdown_threshold:
            progress = (
                (drawdown - config.warning_drawdown_threshold)
                / (config.max_drawdown_threshold - config.warning_drawdown_threshold)
            )
            return progress * 50
        if drawdown < config.critical_drawdown_threshold:
            progress = (
                (drawdown - config.max_drawdown_threshold)
                / (config.critical_drawdown_threshold - config.max_drawdown_threshold)
            )
            return 50 + progress * 30
        return 100.0

    def check_loss_limits(
        self,
        current_balance: float,
        daily_pnl: float,
        weekly_pnl: float,
        monthly_pnl: float,
        now: Optional[datetime] = None
    ) -> LossLimits:
        """Daily/weekly/monthly limits as a % of the current balance."""
        now = now or datetime.now()
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        next_day = midnight + timedelta(days=1)
        next_week = midnight + timedelta(days=7 - now.weekday())
        if now.month == 12:
            next_month = midnight.replace(year=now.year + 1, month=1, day=1)
        else:
            next_month = midnight.replace(month=now.month + 1, day=1)

        config = self.config
        return LossLimits(
            daily=_loss_limit(current_balance, config.daily_loss_limit, daily_pnl, next_day),
            weekly=_loss_limit(current_balance, config.weekly_loss_limit, weekly_pnl, next_week),
            monthly=_loss_limit(current_balance, config.monthly_loss_limit, monthly_pnl, next_month),
        )

    # ------------------------------------------------------------------
    # Alerts and emergency actions
    # ------------------------------------------------------------------

    def _generate_alerts(self, status: DrawdownStatus, limits: LossLimits) -> List[CapitalProtectionAlert]:
        config = self.config
        drawdown = status.current_drawdown
        alerts = []

        if drawdown >= config.critical_drawdown_threshold:
            alerts.append(CapitalProtectionAlert(
                type=AlertType.EMERGENCY_STOP,
                severity=Priority.CRITICAL,
                message=f"Critical drawdown of {drawdown:.2f}% reached. Emergency measures activated.",
                recommended_actions=["Halt all trading", "Close all positions", "Review risk management"],
                auto_executed_actions=["Emergency stop activated"],
            ))
        elif drawdown >= config.max_drawdown_threshold:
            alerts.append(CapitalProtectionAlert(
                type=AlertType.DRAWDOWN_WARNING,
                severity=Priority.HIGH,
                message=f"High drawdown of {drawdown:.2f}% detected. Risk reduction measures active.",
                recommended_actions=["Reduce position sizes", "Tighten stop losses"],
                auto_executed_actions=[f"Risk reduction level: {status.risk_reduction_level:.0f}%"],
            ))
        elif drawdown >= config.warning_drawdown_threshold:
            alerts.append(CapitalProtectionAlert(
                type=AlertType.DRAWDOWN_WARNING,
                severity=Priority.MEDIUM,
                message=f"Drawdown warning: {drawdown:.2f}% drawdown detected.",
                recommended_actions=["Monitor closely", "Consider reducing risk"],
            ))

        if limits.daily.breached:
            alerts.append(CapitalProtectionAlert(
                type=AlertType.EMERGENCY_STOP,
                severity=Priority.CRITICAL,
                message=f"Daily loss limit of {limits.daily.limit:.2f} exceeded.",
                recommended_actions=["Halt trading for today", "Review trading strategy"],
                auto_executed_actions=["Daily trading halted"],
            ))

        if limits.weekly.remaining <= limits.weekly.limit * 0.1:
            alerts.append(CapitalProtectionAlert(
                type=AlertType.LOSS_LIMIT_WARNING,
                severity=Priority.HIGH,
                message=(
                    f"Weekly loss limit nearly reached: {limits.weekly.current:.2f} "
                    f"of {limits.weekly.limit:.2f}"
                ),
                recommended_actions=["Reduce trading activity", "Review weekly performance"],
            ))

        if limits.monthly.breached:
            alerts.append(CapitalProtectionAlert(
                type=AlertType.LOSS_LIMIT_WARNING,
                severity=Priority.HIGH,
                message=f"Monthly loss limit of {limits.monthly.limit:.2f} exceeded.",
                recommended_actions=["Reduce trading activity", "Review monthly performance"],
            ))

        for alert in alerts:
            logger.warning(f"[{alert.severity.value}] {alert.message}")
        self._alerts.extend(alerts)
        return alerts

    def _execute_emergency_actions(
        self,
        status: DrawdownStatus,
        limits: LossLimits,
        positions: List[Position],
        now: datetime
    ) -> List[EmergencyAction]:
        config = self.config
        position_ids = [p.id for p in positions]
        actions = []

        if status.current_drawdown >= config.critical_drawdown_threshold and not self.emergency_mode_active:
            self.emergency_mode_active = True
            self.trading_halted = True
            self._halted_until = None
            period = self._current_period()
            if period is not None:
                period.emergency_measures_activated = True
            actions.append(EmergencyAction(
                type=EmergencyActionType.HALT_TRADING,
                description="Emergency stop activated due to critical drawdown",
                affected_positions=position_ids,
                details={"reason": "Critical drawdown threshold exceeded", "positions_count": len(positions)},
                executed_at=now,
            ))

        if limits.daily.breached and not self.trading_halted:
            self.trading_halted = True
            self._halted_until = limits.daily.reset_time
            actions.append(EmergencyAction(
                type=EmergencyActionType.HALT_TRADING,
                description="Daily trading halted due to loss limit exceeded",
                details={"reason": "Daily loss limit exceeded", "resume_time": limits.daily.reset_time.isoformat()},
                executed_at=now,
            ))

        if status.current_drawdown >= config.max_drawdown_threshold and status.risk_reduction_level > 0:
            actions.append(EmergencyAction(
                type=EmergencyActionType.REDUCE_POSITION_SIZES,
                description=f"Position sizes reduced by {status.risk_reduction_level:.0f}% due to drawdown",
                affected_positions=position_ids,
                details={
                    "reduction_level": status.risk_reduction_level,
                    "reduction_factor": 1 - status.risk_reduction_level / 100,
                },
                executed_at=now,
            ))

        for action in actions:
            logger.warning(f"Emergency action {action.type.value}: {action.description}")
        self._actions.extend(actions)
        return actions

    def _lift_expired_halt(self, now: datetime) -> None:
        if (self.trading_halted and not self.emergency_mode_active
                and self._halted_until is not None and now >= self._halted_until):
            self.trading_halted = False
            self._halted_until = None
            logger.info("Daily trading halt expired")

    # ------------------------------------------------------------------
    # Trading gate
    # ------------------------------------------------------------------

    def should_allow_trading(self, status: DrawdownStatus, limits: LossLimits) -> bool:
        if self.trading_halted or self.emergency_mode_active:
            return False
        if status.current_drawdown >= self.config.critical_drawdown_threshold:
            return False
        return not limits.daily.breached

    def is_trading_allowed(self) -> bool:
        """Gate for callers that do not have a fresh snapshot, e.g. sizing."""
        with self._lock:
            self._lift_expired_halt(datetime.now())
            return not (self.trading_halted or self.emergency_mode_active)

    def halt_reason(self) -> Optional[str]:
        with self._lock:
            self._lift_expired_halt(datetime.now())
            if self.emergency_mode_active:
                return "Trading halted: emergency mode after critical drawdown"
            if self.trading_halted:
                return "Trading halted: daily loss limit exceeded"
            return None

    def record_trade_result(self, pnl: float) -> int:
        """Update the losing streak with a closed trade's P&L; returns the streak."""
        with self._lock:
            if pnl < 0:
                self.consecutive_losses += 1
                if self.consecutive_losses == self.config.consecutive_loss_limit:
                    logger.warning(
                        f"{self.consecutive_losses} consecutive losses, position sizes reduced"
                    )
            else:
                self.consecutive_losses = 0
            return self.consecutive_losses

    def position_size_factor(self, status: Optional[DrawdownStatus] = None) -> float:
        """
        Multiplier for new position sizes: the drawdown risk reduction,
        times `position_size_reduction_factor` during a losing streak.
        """
        with self._lock:
            status = status or self._last_status
            factor = 1 - status.risk_reduction_level / 100
            if self.consecutive_losses >= self.config.consecutive_loss_limit:
                factor *= self.config.position_size_reduction_factor
            return max(0.0, factor)

    def calculate_position_size_adjustment(
        self, base_position_size: float, status: Optional[DrawdownStatus] = None
    ) -> float:
        return base_position_size * self.position_size_factor(status)

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def check_recovery_conditions(self, status: Optional[DrawdownStatus] = None) -> bool:
        """Emergency mode may end once drawdown and recovery progress are both back in range."""
        with self._lock:
            if not self.emergency_mode_active:
                return True
            status = status or self._last_status
            return (
                status.current_drawdown < self.config.recovery_threshold
                and status.recovery_progress > self.config.recovery_progress_required
            )

    def resume_normal_operations(self) -> None:
        with self._lock:
            self.emergency_mode_active = False
            self.trading_halted = False
            self._halted_until = None
            self.consecutive_losses = 0
            self._last_status.emergency_measures_active = False
            self._alerts.append(CapitalProtectionAlert(
                type=AlertType.RECOVERY,
                severity=Priority.LOW,
                message="Recovery conditions met. Normal operations resumed.",
                recommended_actions=["Monitor performance closely"],
                auto_executed_actions=["Emergency mode deactivated", "Trading resumed"],
            ))
        logger.info("Capital preservation: normal operations resumed")

    # ------------------------------------------------------------------
    # Reporting / config
    # ------------------------------------------------------------------

    @property
    def status(self) -> CapitalStatus:
        if self.emergency_mode_active:
            return CapitalStatus.EMERGENCY
        if self.trading_halted:
            return CapitalStatus.HALTED
        return CapitalStatus.NORMAL

    def get_drawdown_status(self) -> DrawdownStatus:
        with self._lock:
            return DrawdownStatus(**vars(self._last_status))

    def get_capital_preservation_stats(self) -> Dict[str, Any]:
        with self._lock:
            periods = list(self._periods)
            completed = [p for p in periods if not p.is_open]
            return {
                "total_drawdown_periods": len(periods),
                "average_drawdown_duration": (
                    sum(p.duration_days for p in completed) / len(completed) if completed else 0.0
                ),
                "max_historical_drawdown": max([p.max_drawdown_pct for p in periods] + [0.0]),
                "emergency_activations": sum(1 for p in periods if p.emergency_measures_activated),
                "recovery_rate": len(completed) / len(periods) * 100 if periods else 100.0,
                "consecutive_losses": self.consecutive_losses,
                "current_status": self.status.value,
            }

    def get_recent_alerts(self, limit: int = 10) -> List[CapitalProtectionAlert]:
        with self._lock:
            alerts = list(self._alerts)
        return alerts[-limit:] if limit > 0 else []

    def get_emergency_actions(self) -> List[EmergencyAction]:
        with self._lock:
            return list(self._actions)

    def clear_old_alerts(self, older_than_days: int = 7, now: Optional[datetime] = None) -> None:
        cutoff = (now or datetime.now()) - timedelta(days=older_than_days)
        with self._lock:
            kept = [a for a in self._alerts if a.timestamp > cutoff]
            self._alerts = deque(kept, maxlen=self.config.alert_limit)

    def update_config(self, **updates) -> CapitalProtectionConfig:
        with self._lock:
            new_config = merge_config(self.config, updates)
            if new_config.snapshot_limit != self.config.snapshot_limit:
                self._snapshots = deque(self._snapshots, maxlen=new_config.snapshot_limit)
            if new_config.alert_limit != self.config.alert_limit:
                self._alerts = deque(self._alerts, maxlen=new_config.alert_limit)
                self._actions = deque(self._actions, maxlen=new_config.alert_limit)
            self.config = new_config
        logger.info(f"Capital protection config updated: {sorted(updates)}")
        return new_config

    def get_config(self) -> CapitalProtectionConfig:
        with self._lock:
            return self.config
