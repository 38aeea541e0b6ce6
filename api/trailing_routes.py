"""
RAMPART Trailing Stop API Routes
================================

API endpoints for per-position stop management.

Endpoints:
    POST   /trailing-stop/update          - Ratchet a position's stop
    POST   /trailing-stop/initial         - Opening stop for a new entry
    POST   /trailing-stop/optimize        - Advisory stop suggestion (no state change)
    POST   /trailing-stop/track           - Start tracking a position by id
    POST   /trailing-stop/{id}/tick       - Apply a price tick to a tracked position
    GET    /trailing-stop/{id}/history    - Audit trail and statistics
    DELETE /trailing-stop/{id}            - Release a position
"""

from fastapi import APIRouter, HTTPException
import logging

from api.models import (
    InitialStopRequest,
    PriceTickRequest,
    TrackPositionRequest,
    TrailingStopRequest,
)
from core.engine import RiskEngine
from core.models import Side
from core.trailing_stop import StopUpdateStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/trailing-stop", tags=["Trailing Stops"])

# Global instance (set by server.py)
risk_engine: RiskEngine = None


def get_engine() -> RiskEngine:
    """Get the risk engine instance."""
    global risk_engine
    if risk_engine is None:
        risk_engine = RiskEngine()
    return risk_engine


@router.post("/update")
async def update_trailing_stop(request: TrailingStopRequest):
    """
    Evaluate the ratchet for one position snapshot.

    Stop history accumulates per position id across calls.
    """
    engine = get_engine()
    position = request.position.to_core()
    config = request.config or engine.config.trailing_stop

    result = engine.trailing_stops.update_trailing_stop(position, config, request.market.to_core())
    return {"position": position.to_dict(), "result": result.to_dict()}


@router.post("/initial")
async def initial_stop(request: InitialStopRequest):
    """Opening stop: initial distance widened for volatility, floored at the ATR distance."""
    engine = get_engine()
    config = request.config or engine.config.trailing_stop
    stop = engine.trailing_stops.calculate_initial_stop_loss(
        request.entry_price, Side(request.side), config, request.market.to_core()
    )
    return {
        "entry_price": request.entry_price,
        "side": request.side,
        "stop_loss": stop,
        "distance_pct": abs(request.entry_price - stop) / request.entry_price * 100,
    }


@router.post("/optimize")
async def optimize_stop(request: TrailingStopRequest):
    """Suggest a better stop for current conditions. Never changes state."""
    engine = get_engine()
    config = request.config or engine.config.trailing_stop
    suggestion = engine.trailing_stops.optimize_stop_loss(
        request.position.to_core(), config, request.market.to_core()
    )
    return suggestion.to_dict()


@router.post("/track")
async def track_position(request: TrackPositionRequest):
    """Register a position so later ticks can be sent by id."""
    engine = get_engine()
    market = request.market.to_core() if request.market else None
    position = engine.track_position(request.position.to_core(), market)
    logger.info(f"Tracking {position.symbol} position {position.id}")
    return {"position": position.to_dict()}


@router.post("/{position_id}/tick")
async def price_tick(position_id: str, request: PriceTickRequest):
    """Apply a price tick to a tracked position."""
    engine = get_engine()
    result = engine.on_price_tick(position_id, request.current_price, request.market.to_core())
    if result.status == StopUpdateStatus.NOT_FOUND:
        raise HTTPException(status_code=404, detail=f"Position {position_id} is not tracked")
    return result.to_dict()


@router.get("/{position_id}/history")
async def stop_history(position_id: str):
    """Audit trail (oldest first) plus step statistics."""
    manager = get_engine().trailing_stops
    return {
        "position_id": position_id,
        "phase": (manager.get_phase(position_id) or "UNKNOWN"),
        "history": [u.to_dict() for u in manager.get_trailing_stop_history(position_id)],
        "statistics": manager.get_trailing_stop_statistics(position_id),
    }


@router.delete("/{position_id}")
async def release_position(position_id: str):
    """Forget a closed position and its history."""
    if not get_engine().close_position(position_id):
        raise HTTPException(status_code=404, detail=f"Position {position_id} not found")
    return {"position_id": position_id, "status": "released"}
