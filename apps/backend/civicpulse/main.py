"""
CivicPulse API — Application entry point.

Bootstraps FastAPI, wires up middleware, registers route groups, and
manages the MongoDB + heatmap engine lifecycle.

Extension points:
  - Add new route groups with app.include_router() below
  - Add new middleware in the middleware block
  - Change startup behaviour in the lifespan context manager
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from civicpulse.core import database
from civicpulse.core.config import settings
from civicpulse.core.rate_limit import limiter
from civicpulse.routes.health import router as health_router
from civicpulse.routes.heatmap import router as heatmap_router
from civicpulse.routes.model import router as model_router
from civicpulse.routes.observations import router as observations_router
from civicpulse.routes.predictions import router as predictions_router
from civicpulse.services.engine import HeatmapEngine

# ─── Logging ───────────────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


# ─── Lifespan ──────────────────────────────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: connect MongoDB, start the engine (predictor + scheduler),
    replay persisted observations. Shutdown: notify subscribers, stop the
    scheduler, release model resources, close MongoDB.
    """
    logger.info("Starting CivicPulse API (env: %s)", settings.environment)
    await database.connect_to_mongo()
    engine: HeatmapEngine = app.state.engine
    engine.start()
    await engine.warm_start(database.get_db())
    yield
    logger.info("Shutting down CivicPulse API")
    await engine.shutdown()
    await database.close_mongo_connection()


# ─── App ───────────────────────────────────────────────────────────────────────
app = FastAPI(
    title="CivicPulse API",
    description=(
        "Geotagged civic-issue heatmap: ingestion, clustering, anomaly alerts, "
        "hotspot predictions and realtime viewport updates. "
        "Predictions are probabilistic, not guaranteed."
    ),
    version="0.1.0",
    lifespan=lifespan,
    # Disable docs in production to reduce attack surface
    docs_url="/docs" if settings.environment != "production" else None,
    redoc_url="/redoc" if settings.environment != "production" else None,
)

# The engine exists before startup so routes can resolve it even when the
# lifespan is not run (e.g. httpx ASGITransport in tests).
app.state.engine = HeatmapEngine()


# ─── Rate limiting ─────────────────────────────────────────────────────────────
# Routes opt-in with @limiter.limit(...) + request: Request parameter.
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# ─── Middleware ─────────────────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ─── Routes ────────────────────────────────────────────────────────────────────
app.include_router(health_router, prefix="/health", tags=["health"])
app.include_router(heatmap_router)
app.include_router(observations_router)
app.include_router(predictions_router)
app.include_router(model_router)


@app.get("/", tags=["root"])
async def root():
    """API root — basic metadata."""
    return {
        "name": "CivicPulse API",
        "version": "0.1.0",
        "status": "running",
        "environment": settings.environment,
        "docs": "/docs",
    }
