"""
RAMPART API Entry Point
=======================

Starts the FastAPI server for the RAMPART risk-decision engine.

Usage:
    python run.py

Environment (.env is loaded if present):
    API_HOST           bind address (default 0.0.0.0)
    API_PORT           port (default 8001)
    RISK_CONFIG_PATH   JSON risk policy; defaults are used when unset
"""

import uvicorn
import os
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

if __name__ == "__main__":
    host = os.getenv("API_HOST", "0.0.0.0")
    port = int(os.getenv("API_PORT", "8001"))
    config_path = os.getenv("RISK_CONFIG_PATH") or "built-in defaults"

    print(f"""
    RAMPART API Server - trade risk decisions

    Starting server on http://{host}:{port}
    Risk policy: {config_path}

    Endpoints:
      - GET  /health                 Health check
      - POST /risk-reward/analyze    Gate a trade proposal
      - POST /position-size          Size a trade
      - POST /trailing-stop/update   Ratchet a stop
      - POST /portfolio/analyze      Portfolio risk report
      - POST /capital/monitor        Drawdown and loss limits
      - GET  /docs                   API documentation

    Press CTRL+C to stop
    """)

    uvicorn.run(
        "api.server:app",
        host=host,
        port=port,
        reload=True,
        log_level="info"
    )
