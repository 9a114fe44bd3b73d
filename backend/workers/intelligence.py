"""
Intelligence Workers — scheduled risk, anomaly, recommendation, prediction,
seasonality and clustering jobs.

Every task is organization-scoped and dispatched per org by
workers.scheduler.dispatch_active_orgs. Each stage honours the org's ML
settings and is skipped when its section is disabled.

Schedule: See celery_app.py beat_schedule
"""

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from workers.celery_app import celery_app

logger = structlog.get_logger()


def _run_for_org(org_id: str, job: Callable[[AsyncSession, uuid.UUID], Awaitable[dict[str, Any]]]) -> dict:
    """Run an async job against a fresh engine bound to this worker process."""

    async def _run():
        from core.config import get_settings

        settings = get_settings()
        engine = create_async_engine(settings.database_url)
        try:
            async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            async with async_session() as db:
                return await job(db, uuid.UUID(org_id))
        finally:
            await engine.dispose()

    return asyncio.run(_run())


async def _section(db: AsyncSession, org_id: uuid.UUID, name: str) -> dict:
    from ml.settings import get_ml_settings

    return (await get_ml_settings(db, org_id))[name]


def _skipped(org_id: str, stage: str) -> dict:
    logger.info("intelligence.stage_disabled", org_id=org_id, stage=stage)
    return {"status": "skipped", "org_id": org_id, "reason": f"{stage}_disabled"}


@celery_app.task(
    name="workers.intelligence.refresh_risk_scores",
    bind=True,
    max_retries=2,
    default_retry_delay=120,
    acks_late=True,
)
def refresh_risk_scores(self, org_id: str):
    """Nightly: recompute risk scores, then publish any new alerts."""
    from redis.exceptions import RedisError

    run_id = self.request.id or "manual"
    logger.info("risk.refresh_task_started", org_id=org_id, run_id=run_id)

    async def _job(db: AsyncSession, oid: uuid.UUID) -> dict:
        from alerts.publisher import publish_risk_alerts
        from ml.risk_scoring import refresh_risk_scores as refresh

        result = await refresh(db, oid)
        published = 0
        try:
            published = await publish_risk_alerts(result["alerts"])
        except (RedisError, OSError) as exc:
            logger.warning("risk.publish_failed", org_id=org_id, error=str(exc))
        return {
            "status": "success",
            "org_id": org_id,
            "scores_updated": result["scores_updated"],
            "alerts_created": result["alerts_created"],
            "alerts_published": published,
        }

    try:
        return _run_for_org(org_id, _job)
    except Exception as exc:
        logger.error("risk.refresh_task_failed", org_id=org_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)


@celery_app.task(
    name="workers.intelligence.detect_anomalies",
    bind=True,
    max_retries=2,
    default_retry_delay=120,
    acks_late=True,
)
def detect_anomalies(self, org_id: str):
    """Every 6h: z-score sweep over store/product loss value and store expiry count."""

    async def _job(db: AsyncSession, oid: uuid.UUID) -> dict:
        from ml.anomaly import run_anomaly_sweep

        config = await _section(db, oid, "anomalies")
        if not config["enabled"]:
            return _skipped(org_id, "anomalies")
        result = await run_anomaly_sweep(db, oid, threshold=config["zscore_threshold"])
        return {"status": "success", "org_id": org_id, **result}

    try:
        return _run_for_org(org_id, _job)
    except Exception as exc:
        logger.error("anomalies.task_failed", org_id=org_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)


@celery_app.task(
    name="workers.intelligence.generate_recommendations",
    bind=True,
    max_retries=2,
    default_retry_delay=120,
    acks_late=True,
)
def generate_recommendations(self, org_id: str):
    async def _job(db: AsyncSession, oid: uuid.UUID) -> dict:
        from ml.recommendations import generate_recommendations as generate

        config = await _section(db, oid, "recommendations")
        if not (config["enabled"] and config["auto_generate"]):
            return _skipped(org_id, "recommendations")
        created = await generate(
            db,
            oid,
            min_confidence=config["min_confidence"],
            expiration_days=config["expiration_days"],
        )
        return {"status": "success", "org_id": org_id, "recommendations_created": len(created)}

    try:
        return _run_for_org(org_id, _job)
    except Exception as exc:
        logger.error("recommendations.task_failed", org_id=org_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)


@celery_app.task(
    name="workers.intelligence.expire_recommendations",
    bind=True,
    max_retries=2,
    default_retry_delay=60,
    acks_late=True,
)
def expire_recommendations(self, org_id: str):
    async def _job(db: AsyncSession, oid: uuid.UUID) -> dict:
        from ml.recommendations import expire_stale

        return {"status": "success", "org_id": org_id, "expired": await expire_stale(db, oid)}

    try:
        return _run_for_org(org_id, _job)
    except Exception as exc:
        logger.error("recommendations.expire_failed", org_id=org_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)


@celery_app.task(
    name="workers.intelligence.generate_predictions",
    bind=True,
    max_retries=2,
    default_retry_delay=120,
    acks_late=True,
)
def generate_predictions(self, org_id: str):
    """Daily: org-wide loss_amount and expiry_risk forecasts over the default horizon."""

    async def _job(db: AsyncSession, oid: uuid.UUID) -> dict:
        from core.config import get_settings
        from ml.forecast import generate_predictions as generate

        config = await _section(db, oid, "predictions")
        if not config["enabled"]:
            return _skipped(org_id, "predictions")
        horizon = get_settings().prediction_horizon_days
        created = {}
        for prediction_type in ("loss_amount", "expiry_risk"):
            rows = await generate(db, oid, prediction_type=prediction_type, horizon_days=horizon)
            created[prediction_type] = len(rows)
        return {"status": "success", "org_id": org_id, "predictions_created": created}

    try:
        return _run_for_org(org_id, _job)
    except Exception as exc:
        logger.error("predictions.task_failed", org_id=org_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)


@celery_app.task(
    name="workers.intelligence.evaluate_predictions",
    bind=True,
    max_retries=2,
    default_retry_delay=120,
    acks_late=True,
)
def evaluate_predictions(self, org_id: str):
    """Daily: fill actual_value/accuracy for predictions whose target date has passed."""

    async def _job(db: AsyncSession, oid: uuid.UUID) -> dict:
        from ml.forecast import evaluate_predictions as evaluate

        return {"status": "success", "org_id": org_id, "evaluated": await evaluate(db, oid)}

    try:
        return _run_for_org(org_id, _job)
    except Exception as exc:
        logger.error("predictions.evaluate_failed", org_id=org_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)


@celery_app.task(
    name="workers.intelligence.detect_seasonality",
    bind=True,
    max_retries=2,
    default_retry_delay=300,
    acks_late=True,
)
def detect_seasonality(self, org_id: str):
    async def _job(db: AsyncSession, oid: uuid.UUID) -> dict:
        from ml.seasonality import detect_patterns

        config = await _section(db, oid, "seasonality")
        if not (config["enabled"] and config["detect_patterns"]):
            return _skipped(org_id, "seasonality")
        patterns = await detect_patterns(db, oid, min_strength=config["min_pattern_strength"])
        return {"status": "success", "org_id": org_id, "patterns_detected": len(patterns)}

    try:
        return _run_for_org(org_id, _job)
    except Exception as exc:
        logger.error("seasonality.task_failed", org_id=org_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)


@celery_app.task(
    name="workers.intelligence.cluster_stores",
    bind=True,
    max_retries=2,
    default_retry_delay=300,
    acks_late=True,
)
def cluster_stores(self, org_id: str):
    """Weekly: re-cluster stores by loss profile."""

    async def _job(db: AsyncSession, oid: uuid.UUID) -> dict:
        from ml.clustering import run_clustering

        config = await _section(db, oid, "clustering")
        if not (config["enabled"] and config["auto_refresh"]):
            return _skipped(org_id, "clustering")
        run = await run_clustering(
            db,
            oid,
            cluster_type="store",
            n_clusters=config["default_num_clusters"],
            algorithm=config["algorithm"],
        )
        return {
            "status": run.status,
            "org_id": org_id,
            "run_id": str(run.run_id),
            "num_clusters": run.num_clusters,
            "total_members": run.total_members,
        }

    try:
        return _run_for_org(org_id, _job)
    except ValueError as exc:
        # Too few stores to cluster; retrying will not help.
        logger.warning("clustering.task_skipped", org_id=org_id, reason=str(exc))
        return {"status": "skipped", "org_id": org_id, "reason": str(exc)}
    except Exception as exc:
        logger.error("clustering.task_failed", org_id=org_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)
