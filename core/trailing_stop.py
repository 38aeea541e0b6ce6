"""
Trailing Stop Manager
=====================

Per-position stop-loss ratchet.

Key Principles:
1. Only trail once the position has earned it (minimum profit)
2. Widen the trail in volatile markets, never below the ATR floor
3. Respect structure: don't trail through nearby support/resistance
4. Lock breakeven once profit crosses the threshold - and never give it back
5. The stop only ever moves in the position's favour

Usage:
    manager = TrailingStopManager()
    result = manager.update_trailing_stop(position, config, market)
    if result.updated:
        order.stop = result.new_stop_loss
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Deque, Dict, List, Optional, Any
import logging
import threading

from .config import TrailingStopConfig
from .models import MarketConditions, Position, Side

logger = logging.getLogger(__name__)


class StopPhase(str, Enum):
    """Ratchet phase for a single position."""
    INACTIVE = "INACTIVE"     # Profit below the trailing threshold
    TRAILING = "TRAILING"     # Ratchet active
    BREAKEVEN = "BREAKEVEN"   # Stop floor locked at entry (+ fees); irreversible


class StopUpdateStatus(str, Enum):
    UPDATED = "UPDATED"
    UNCHANGED = "UNCHANGED"
    NOT_FOUND = "NOT_FOUND"


@dataclass
class TrailingStopResult:
    """Outcome of one ratchet evaluation."""
    new_stop_loss: float
    updated: bool
    trailing_distance: float
    breakeven_active: bool
    reason: str
    status: StopUpdateStatus = StopUpdateStatus.UNCHANGED
    phase: StopPhase = StopPhase.INACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "new_stop_loss": self.new_stop_loss,
            "updated": self.updated,
            "trailing_distance": self.trailing_distance,
            "breakeven_active": self.breakeven_active,
            "reason": self.reason,
            "status": self.status.value,
            "phase": self.phase.value,
        }


@dataclass
class TrailingStopUpdate:
    """Audit record for an accepted stop move."""
    position_id: str
    previous_stop_loss: float
    new_stop_loss: float
    reason: str
    timestamp: datetime = field(default_factory=datetime.now)
    breakeven_active: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position_id": self.position_id,
            "previous_stop_loss": self.previous_stop_loss,
            "new_stop_loss": self.new_stop_loss,
            "reason": self.reason,
            "timestamp": self.timestamp.isoformat(),
            "breakeven_active": self.breakeven_active,
        }


@dataclass
class StopLossSuggestion:
    """Advisory output of optimize_stop_loss; never applied automatically."""
    suggested_stop_loss: float
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "suggested_stop_loss": self.suggested_stop_loss,
            "reason": self.reason,
        }


@dataclass
class _PositionStopState:
    """Per-position entry of the keyed store."""
    lock: threading.Lock
    history: Deque[TrailingStopUpdate]
    phase: StopPhase = StopPhase.INACTIVE
    position: Optional[Position] = None    # set only for tracked positions


class TrailingStopManager:
    """
    Stop-loss ratchet with a bounded audit trail per position.

    State is a keyed store: position id -> (lock, history, phase).
    The store itself is guarded by one lock; each ratchet evaluation runs
    under the position's own lock so two concurrent ticks can never both
    pass the directional guard against the same previous stop.
    """

    def __init__(self, history_limit: int = 100):
        self.history_limit = history_limit
        self._states: Dict[str, _PositionStopState] = {}
        self._store_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Ratchet
    # ------------------------------------------------------------------

    def update_trailing_stop(
        self,
        position: Position,
        config: TrailingStopConfig,
        market_conditions: MarketConditions
    ) -> TrailingStopResult:
        """
        Evaluate the ratchet for one price update.

        On acceptance the new stop is written to `position.stop_loss` and an
        audit record is appended to the position's history.
        """
        state = self._state_for(position.id)
        with state.lock:
            return self._ratchet(position, state, config, market_conditions)

    def update_tracked_stop(
        self,
        position_id: str,
        current_price: float,
        config: TrailingStopConfig,
        market_conditions: MarketConditions
    ) -> TrailingStopResult:
        """Apply a price tick to a tracked position; unknown ids report NOT_FOUND."""
        with self._store_lock:
            state = self._states.get(position_id)

        if state is None or state.position is None:
            logger.warning(f"Trailing stop update for unknown position {position_id}")
            return TrailingStopResult(
                new_stop_loss=0.0,
                updated=False,
                trailing_distance=0.0,
                breakeven_active=False,
                reason=f"Position {position_id} not found",
                status=StopUpdateStatus.NOT_FOUND,
            )

        with state.lock:
            state.position.current_price = current_price
            return self._ratchet(state.position, state, config, market_conditions)

    def _ratchet(
        self,
        position: Position,
        state: _PositionStopState,
        config: TrailingStopConfig,
        market: MarketConditions
    ) -> TrailingStopResult:
        current_stop = position.stop_loss
        profit_pct = position.profit_pct
        distance = self._trailing_distance(position.entry_price, config, market)

        if profit_pct < config.min_profit_to_trail:
            return TrailingStopResult(
                new_stop_loss=current_stop,
                updated=False,
                trailing_distance=distance,
                breakeven_active=state.phase == StopPhase.BREAKEVEN,
                reason=(
                    f"Profit {profit_pct:.2f}% below minimum "
                    f"{config.min_profit_to_trail}% to start trailing"
                ),
                status=StopUpdateStatus.UNCHANGED,
                phase=state.phase,
            )

        candidate = self._candidate_stop(position, distance, config, market)

        breakeven_active = (
            state.phase == StopPhase.BREAKEVEN or profit_pct >= config.breakeven_threshold
        )
        if breakeven_active:
            breakeven_stop = self._breakeven_price(position, config)
            new_stop = self._more_favorable(candidate, breakeven_stop, position.side)
            if new_stop == breakeven_stop:
                reason = f"Breakeven stop activated at {profit_pct:.2f}% profit"
            else:
                reason = f"Breakeven locked, trailing stop beyond breakeven at {profit_pct:.2f}% profit"
        else:
            new_stop = candidate
            reason = f"Trailing stop updated, {profit_pct:.2f}% profit"

        state.phase = self._next_phase(state.phase, breakeven_active)

        if not self._is_better_stop(new_stop, current_stop, position.side):
            return TrailingStopResult(
                new_stop_loss=current_stop,
                updated=False,
                trailing_distance=distance,
                breakeven_active=breakeven_active,
                reason="Stop loss would move in unfavorable direction",
                status=StopUpdateStatus.UNCHANGED,
                phase=state.phase,
            )

        state.history.append(TrailingStopUpdate(
            position_id=position.id,
            previous_stop_loss=current_stop,
            new_stop_loss=new_stop,
            reason=reason,
            breakeven_active=breakeven_active,
        ))
        position.stop_loss = new_stop

        logger.info(
            f"{position.symbol} {position.side.value} stop {current_stop:.2f} -> {new_stop:.2f} "
            f"({state.phase.value})"
        )

        return TrailingStopResult(
            new_stop_loss=new_stop,
            updated=True,
            trailing_distance=distance,
            breakeven_active=breakeven_active,
            reason=reason,
            status=StopUpdateStatus.UPDATED,
            phase=state.phase,
        )

    # ------------------------------------------------------------------
    # Stop arithmetic
    # ------------------------------------------------------------------

    def _trailing_distance(
        self, entry_price: float, config: TrailingStopConfig, market: MarketConditions
    ) -> float:
        """Trailing distance in percent, widened for volatility and floored at the ATR distance."""
        distance = config.trailing_distance
        if config.volatility_adjustment:
            distance *= 1 + market.volatility * 0.5
            if entry_price > 0:
                atr_floor = config.atr_multiplier * (market.atr / entry_price * 100)
                distance = max(distance, atr_floor)
        return min(distance, config.max_trailing_distance)

    def _candidate_stop(
        self,
        position: Position,
        distance: float,
        config: TrailingStopConfig,
        market: MarketConditions
    ) -> float:
        current = position.current_price
        offset = config.level_offset_pct / 100

        if position.side == Side.LONG:
            stop = current * (1 - distance / 100)
            # Pull up toward support, staying just below it
            support = market.support_level
            if support and stop < support < current:
                stop = max(stop, support * (1 - offset))
        else:
            stop = current * (1 + distance / 100)
            resistance = market.resistance_level
            if resistance and current < resistance < stop:
                stop = min(stop, resistance * (1 + offset))

        return stop

    def _breakeven_price(self, position: Position, config: TrailingStopConfig) -> float:
        buffer = config.breakeven_buffer_pct / 100
        if position.side == Side.LONG:
            return position.entry_price * (1 + buffer)
        return position.entry_price * (1 - buffer)

    @staticmethod
    def _more_favorable(a: float, b: float, side: Side) -> float:
        return max(a, b) if side == Side.LONG else min(a, b)

    @staticmethod
    def _is_better_stop(new_stop: float, current_stop: float, side: Side) -> bool:
        """Check if new stop is tighter (better) than current stop."""
        if not current_stop or current_stop <= 0:
            return True
        if side == Side.LONG:
            return new_stop > current_stop  # Higher stop is better for longs
        return new_stop < current_stop      # Lower stop is better for shorts

    @staticmethod
    def _next_phase(phase: StopPhase, breakeven_active: bool) -> StopPhase:
        if phase == StopPhase.BREAKEVEN or breakeven_active:
            return StopPhase.BREAKEVEN
        return StopPhase.TRAILING

    # ------------------------------------------------------------------
    # Opening and advisory stops
    # ------------------------------------------------------------------

    def calculate_initial_stop_loss(
        self,
        entry_price: float,
        side: Side,
        config: TrailingStopConfig,
        market_conditions: MarketConditions
    ) -> float:
        """
        Opening stop: initial % widened for volatility, floored at the ATR
        distance and capped at `max_initial_distance`, so a LONG stop always
        stays above zero.
        """
        distance = config.initial_stop_loss
        if config.volatility_adjustment:
            distance *= 1 + market_conditions.volatility * 0.5

        if entry_price > 0:
            atr_distance = market_conditions.atr / entry_price * 100 * config.initial_atr_multiplier
            distance = max(distance, atr_distance)

        if distance > config.max_initial_distance:
            logger.warning(
                f"Opening stop distance {distance:.2f}% capped at {config.max_initial_distance}%"
            )
            distance = config.max_initial_distance

        if side == Side.LONG:
            return entry_price * (1 - distance / 100)
        return entry_price * (1 + distance / 100)

    def optimize_stop_loss(
        self,
        position: Position,
        config: TrailingStopConfig,
        market_conditions: MarketConditions
    ) -> StopLossSuggestion:
        """
        Suggest a better stop for current conditions without changing any state.

        Widens a stop that sits inside the ATR band in high volatility,
        otherwise snaps to a more protective support/resistance level.
        """
        current_stop = position.stop_loss
        current_price = position.current_price
        offset = config.level_offset_pct / 100

        if market_conditions.volatility > 0.5 and current_price > 0:
            min_distance = market_conditions.atr / current_price * 100 * config.atr_multiplier
            current_distance = abs(current_price - current_stop) / current_price * 100

            if current_distance < min_distance:
                if position.side == Side.LONG:
                    widened = current_price * (1 - min_distance / 100)
                else:
                    widened = current_price * (1 + min_distance / 100)
                return StopLossSuggestion(
                    suggested_stop_loss=widened,
                    reason=(
                        f"Stop loss widened due to high volatility "
                        f"({market_conditions.volatility * 100:.1f}%)"
                    ),
                )

        if position.side == Side.LONG and market_conditions.support_level:
            support_stop = market_conditions.support_level * (1 - offset)
            if current_stop < support_stop < current_price:
                return StopLossSuggestion(
                    suggested_stop_loss=support_stop,
                    reason=f"Stop loss moved to support level at {market_conditions.support_level}",
                )

        if position.side == Side.SHORT and market_conditions.resistance_level:
            resistance_stop = market_conditions.resistance_level * (1 + offset)
            if current_price < resistance_stop < current_stop:
                return StopLossSuggestion(
                    suggested_stop_loss=resistance_stop,
                    reason=f"Stop loss moved to resistance level at {market_conditions.resistance_level}",
                )

        return StopLossSuggestion(
            suggested_stop_loss=current_stop,
            reason="Current stop loss is optimal for market conditions",
        )

    # ------------------------------------------------------------------
    # Keyed store
    # ------------------------------------------------------------------

    def _state_for(self, position_id: str) -> _PositionStopState:
        with self._store_lock:
            state = self._states.get(position_id)
            if state is None:
                state = _PositionStopState(
                    lock=threading.Lock(),
                    history=deque(maxlen=self.history_limit),
                )
                self._states[position_id] = state
            return state

    def set_history_limit(self, history_limit: int) -> None:
        """Resize every audit trail, keeping the newest entries."""
        with self._store_lock:
            self.history_limit = history_limit
            states = list(self._states.values())
        for state in states:
            with state.lock:
                state.history = deque(state.history, maxlen=history_limit)

    def track_position(self, position: Position) -> None:
        """Register a live position so ticks can be applied by id."""
        state = self._state_for(position.id)
        with state.lock:
            state.position = position

    def release_position(self, position_id: str) -> bool:
        """Forget a closed position and its history. Returns False if unknown."""
        with self._store_lock:
            return self._states.pop(position_id, None) is not None

    def get_phase(self, position_id: str) -> Optional[StopPhase]:
        with self._store_lock:
            state = self._states.get(position_id)
        return state.phase if state else None

    def get_trailing_stop_history(self, position_id: str) -> List[TrailingStopUpdate]:
        """Audit trail for a position, oldest first (empty if unknown)."""
        with self._store_lock:
            state = self._states.get(position_id)
        if state is None:
            return []
        with state.lock:
            return list(state.history)

    def clear_trailing_stop_history(self, position_id: str) -> None:
        with self._store_lock:
            state = self._states.get(position_id)
        if state is not None:
            with state.lock:
                state.history.clear()

    def get_trailing_stop_statistics(self, position_id: str) -> Dict[str, float]:
        """Step sizes (% of previous stop) and breakeven activations for a position."""
        updates = self.get_trailing_stop_history(position_id)

        steps = [
            abs(u.new_stop_loss - u.previous_stop_loss) / u.previous_stop_loss * 100
            for u in updates
            if u.previous_stop_loss > 0
        ]
        if not steps:
            return {
                "total_updates": len(updates),
                "average_trailing_distance": 0.0,
                "max_trailing_distance": 0.0,
                "min_trailing_distance": 0.0,
                "breakeven_activations": sum(1 for u in updates if u.breakeven_active),
            }

        # Count transitions into breakeven, not every move made while in it
        activations = 0
        previous = False
        for update in updates:
            if update.breakeven_active and not previous:
                activations += 1
            previous = update.breakeven_active

        return {
            "total_updates": len(updates),
            "average_trailing_distance": sum(steps) / len(steps),
            "max_trailing_distance": max(steps),
            "min_trailing_distance": min(steps),
            "breakeven_activations": activations,
        }
