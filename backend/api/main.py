"""
MyInventory API — FastAPI Application Entry Point
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from core.config import get_settings

settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("MyInventory API starting up", version=settings.app_version, env=settings.app_env)
    yield
    logger.info("MyInventory API shutting down")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Retail loss, expiry and risk intelligence for store networks",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Import and register routers
from alerts.websocket import router as ws_router
from api.v1.routers import (
    anomalies,
    clusters,
    expiry,
    losses,
    ml,
    predictions,
    products,
    recommendations,
    risk_scoring,
    seasonality,
    stores,
)

app.include_router(stores.router)
app.include_router(products.router)
app.include_router(losses.router)
app.include_router(expiry.router)
app.include_router(risk_scoring.router)
app.include_router(clusters.router)
app.include_router(predictions.router)
app.include_router(anomalies.router)
app.include_router(recommendations.router)
app.include_router(seasonality.router)
app.include_router(ml.router)
app.include_router(ws_router)


@app.get("/health")
async def health_check():
    """Health check endpoint for load balancers."""
    return {"status": "healthy", "version": settings.app_version}
