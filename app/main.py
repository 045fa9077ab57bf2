"""
EditDesk - order workflow for a photo-editing team

The team leader creates orders and assigns them to editors.
Editors work through their own backlog.
Everyone sees live rollups of who has done what.

Run with:
    uvicorn app.main:app --reload
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.db.config import DeskConfig
from app.observability import (
    RequestContextMiddleware,
    check_health,
    get_logger,
    get_metrics,
    setup_logging,
)
from app.web.workspace import Workspace, seed_demo_data

setup_logging()
logger = get_logger(__name__)

# Front-end dev servers allowed to send the device cookie
DEV_ORIGINS = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the workspace on startup; stop every engine on shutdown."""
    config = DeskConfig.from_env()
    workspace = Workspace(config)
    app.state.workspace = workspace

    seeded = seed_demo_data(workspace) if config.auto_seed else 0

    logger.info(
        "EditDesk ready",
        roster_size=len(config.roster),
        cache_driver=config.cache_driver.value,
        seeded_orders=seeded,
    )

    yield

    workspace.close()
    logger.info("EditDesk stopped")


app = FastAPI(
    title="EditDesk",
    description="""
## Order Workflow for a Photo-Editing Team

### Roles

- **Team leader**: creates orders, sees every editor's rollup
- **Editor**: sees and works their own orders

### Order Lifecycle

```
pending → in-progress → completed
```

### Rollups

Every change to the order collection recomputes each editor's
assigned / completed / workload counts, monthly trend and recent
activity from the full order set.
    """,
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(RequestContextMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=DEV_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

from app.api.routes_session import router as session_router
from app.api.routes_orders import router as orders_router
from app.api.routes_stats import router as stats_router
app.include_router(session_router)
app.include_router(orders_router)
app.include_router(stats_router)


# ============================================================
# SYSTEM ENDPOINTS
# ============================================================

@app.get("/health", tags=["System"])
async def health():
    """Liveness only. See /health/detailed for engine states."""
    return {"status": "healthy", "service": "editdesk"}


@app.get("/health/detailed", tags=["System"])
async def health_detailed(request: Request):
    """Order store and per-session engine states. 503 if any engine is in ERROR."""
    result = check_health(workspace=request.app.state.workspace)
    return JSONResponse(
        status_code=200 if result.healthy else 503,
        content={
            "status": "healthy" if result.healthy else "unhealthy",
            "checks": result.checks,
            "duration_ms": result.duration_ms,
        },
    )


@app.get("/metrics", tags=["System"])
async def metrics():
    """Engine counters, request counters and latency percentiles."""
    return get_metrics().get_summary()
