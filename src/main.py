"""
main.py

Entry point for the Project Budget & Earned Value API.

Wires the in-memory infrastructure into the FastAPI app, configures logging
from budget_config.yaml and starts uvicorn.

Usage
-----
    # Option 1: run directly (host/port/log level from budget_config.yaml)
    python main.py

    # Option 2: run via uvicorn CLI (recommended for development)
    uvicorn main:app --reload --port 8000

    # Use a different config file
    BUDGET_CONFIG_PATH=/etc/budget/config.yaml python main.py

Once running, open your browser at:
    http://localhost:8000/docs      ← Swagger UI  (try every endpoint interactively)
    http://localhost:8000/redoc     ← ReDoc
    http://localhost:8000/health    ← liveness check

Quick-start walkthrough (use Swagger UI or curl)
-------------------------------------------------
1.  POST  /api/v1/projects/{pid}/budget/baselines  create a DRAFT baseline (v1)
2.  POST  /api/v1/budget/baselines/{id}/approve  approve it
3.  POST  /api/v1/projects/{pid}/budget/actuals  record actual costs
4.  GET   /api/v1/projects/{pid}/budget  summary with variance and EV
5.  POST  /api/v1/projects/{pid}/budget/baselines  create v2 as a DRAFT
6.  POST  /api/v1/budget/baselines/{id2}/approve  v2 approved, v1 superseded
7.  GET   /api/v1/projects/{pid}/budget/cost-suggestion?period_start=..&period_end=..
          derived cost vs. recorded actuals

Acting user
-----------
Mutating endpoints read the acting user's UUID from the optional X-User-Id
header.  Without it the system user is recorded.
"""

import logging

import uvicorn

from api import app, get_uow
from config import get_config
from infrastructure import InMemoryUnitOfWork

config = get_config()

logging.basicConfig(
    level=getattr(logging, config.log_level, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Wire the concrete Unit of Work into the FastAPI dependency system.
# To swap databases, replace InMemoryUnitOfWork with your SQL implementation.
# ---------------------------------------------------------------------------

app.dependency_overrides[get_uow] = lambda: InMemoryUnitOfWork()


if __name__ == "__main__":
    logger.info(
        "Starting budget API on %s:%d (config version %s)",
        config.server_host, config.server_port, config.version,
    )
    uvicorn.run(
        "main:app",
        host=config.server_host,
        port=config.server_port,
        reload=True,          # auto-reload on file changes during development
        log_level=config.log_level.lower(),
    )
