"""
RAMPART API Server
==================

FastAPI application for the RAMPART risk-decision engine.

Endpoints:
    GET   /health                 - Health check
    POST  /risk-reward/analyze    - Gate a trade proposal on reward/risk
    GET   /risk-reward/metrics    - Running RR statistics
    GET   /risk-reward/report     - RR performance report
    PATCH /config/risk-reward     - Update the RR policy
    POST  /position-size          - Size a trade
    PATCH /config/position-sizing - Update the sizing policy
    POST  /portfolio/analyze      - Portfolio risk report
    POST  /capital/monitor        - Drawdown and loss-limit check
    POST  /capital/trade-result   - Record a closed trade's P&L
    POST  /capital/resume         - Leave emergency mode once recovered
    GET   /capital/stats          - Capital preservation statistics
    *     /trailing-stop/...      - See api/trailing_routes.py
"""

from typing import Any, Dict
import logging
import os

from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from api import trailing_routes
from api.models import (
    CapitalMonitorRequest,
    ErrorResponse,
    HealthResponse,
    PortfolioRequest,
    PositionSizeRequestModel,
    TradeProposalRequest,
    TradeResultRequest,
)
from core.config import load_engine_config
from core.engine import RiskEngine

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

VERSION = "1.0.0"

# Initialize FastAPI
app = FastAPI(
    title="RAMPART API",
    description="Trade risk-decision engine",
    version=VERSION,
    docs_url="/docs",
    redoc_url="/redoc"
)

# CORS Middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, specify actual origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Initialize components
risk_engine = RiskEngine(load_engine_config(os.getenv("RISK_CONFIG_PATH") or None))
trailing_routes.risk_engine = risk_engine
app.include_router(trailing_routes.router)


@app.on_event("startup")
async def startup_event():
    """Initialize resources on startup."""
    logger.info("RAMPART API starting up...")
    logger.info(f"Min RR ratio {risk_engine.config.risk_reward.min_risk_reward_ratio}")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("RAMPART API shutting down...")


@app.exception_handler(ValidationError)
async def config_validation_handler(request: Request, exc: ValidationError):
    """Invalid configuration values are the caller's fault."""
    logger.warning(f"Rejected configuration: {exc}")
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error="Invalid configuration",
            detail=str(exc)
        ).model_dump(mode="json")
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error="Internal server error",
            detail=str(exc)
        ).model_dump(mode="json")
    )


@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "RAMPART API",
        "version": VERSION,
        "docs": "/docs",
        "health": "/health",
        "analyze": "/risk-reward/analyze"
    }


@app.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check():
    """
    Health check endpoint.

    Returns service status and version information.
    """
    return HealthResponse(status="ok", service="RAMPART", version=VERSION)


# =============================================================================
# RISK-REWARD
# =============================================================================

@app.post("/risk-reward/analyze", tags=["Risk-Reward"])
async def analyze_risk_reward(request: TradeProposalRequest):
    """
    Gate a trade proposal.

    Rejections are returned with `approved: false` and their reasons,
    not as HTTP errors.
    """
    logger.info(f"Analyzing {request.symbol} {request.side} @ {request.entry_price}")
    analysis = risk_engine.evaluate_trade(request.to_core(), request.market.to_core())
    return analysis.to_dict()


@app.get("/risk-reward/metrics", tags=["Risk-Reward"])
async def risk_reward_metrics():
    return risk_engine.risk_reward.get_performance_metrics().to_dict()


@app.get("/risk-reward/report", tags=["Risk-Reward"])
async def risk_reward_report():
    return risk_engine.risk_reward.generate_performance_report()


@app.patch("/config/risk-reward", tags=["Config"])
async def update_risk_reward_config(updates: Dict[str, Any] = Body(...)):
    """
    Partially update the reward/risk policy.

    Unknown fields and invalid values are rejected with 422 and the
    current policy stays in force.
    """
    try:
        config = risk_engine.risk_reward.update_config(**updates)
    except ValidationError:
        raise
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return config.model_dump()


# =============================================================================
# SIZING & PORTFOLIO
# =============================================================================

@app.post("/position-size", tags=["Sizing"])
async def position_size(request: PositionSizeRequestModel):
    result = risk_engine.size_position(request.to_core())
    return result.to_dict()


@app.patch("/config/position-sizing", tags=["Config"])
async def update_position_sizing_config(updates: Dict[str, Any] = Body(...)):
    """Partially update the sizing policy; invalid updates are rejected with 422."""
    try:
        config = risk_engine.sizing.update_config(**updates)
    except ValidationError:
        raise
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return config.model_dump()


@app.post("/portfolio/analyze", tags=["Portfolio"])
async def analyze_portfolio(request: PortfolioRequest):
    """Portfolio report plus its summary."""
    try:
        history = request.history_frame()
    except ValueError as e:
        raise HTTPException(status_code=422, detail=f"Invalid price history: {e}")

    manager = risk_engine.portfolio
    report = manager.analyze_portfolio_risk([p.to_core() for p in request.positions], history)
    return {
        "report": report.to_dict(),
        "summary": manager.get_portfolio_risk_summary(report).to_dict(),
    }

# =============================================================================
# CAPITAL PRESERVATION
# =============================================================================

@app.post("/capital/monitor", tags=["Capital"])
async def monitor_capital(request: CapitalMonitorRequest):
    """
    Snapshot the account and apply drawdown and loss-limit rules.

    A halt triggered here also blocks /position-size until it is lifted.
    """
    report = risk_engine.monitor_capital(
        request.balance,
        [p.to_core() for p in request.positions],
        request.daily_pnl,
        request.weekly_pnl,
        request.monthly_pnl,
    )
    return report.to_dict()


@app.post("/capital/trade-result", tags=["Capital"])
async def record_trade_result(request: TradeResultRequest):
    streak = risk_engine.record_trade_result(request.pnl)
    return {
        "consecutive_losses": streak,
        "position_size_factor": risk_engine.capital.position_size_factor(),
    }


@app.post("/capital/resume", tags=["Capital"])
async def resume_trading():
    if not risk_engine.resume_trading():
        raise HTTPException(status_code=409, detail="Recovery conditions not met")
    return risk_engine.capital.get_capital_preservation_stats()


@app.get("/capital/stats", tags=["Capital"])
async def capital_stats():
    capital = risk_engine.capital
    return {
        **capital.get_capital_preservation_stats(),
        "drawdown_status": capital.get_drawdown_status().to_dict(),
        "recent_alerts": [a.to_dict() for a in capital.get_recent_alerts()],
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
