"""
Loss Analysis Pipeline — runs every intelligence stage over imported losses.

Stages (each isolated; a failure is logged and reported in `errors`
without stopping the stages after it):
  1. Recommendations from the loss aggregates
  2. Store anomaly detection on loss value (z-score, threshold 2.0)
  3. Store clustering (3 clusters, needs ≥ 2 stores)
  4. Network loss-amount predictions (7 days)
"""

import uuid
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from ml.anomaly import detect_anomalies
from ml.clustering import run_clustering
from ml.forecast import generate_predictions
from ml.recommendations import generate_recommendations
from ml.settings import get_ml_settings
from retail.losses import load_loss_frame

logger = structlog.get_logger()

ANALYSIS_ZSCORE_THRESHOLD = 2.0
ANALYSIS_NUM_CLUSTERS = 3


async def analyze_imported_data(
    db: AsyncSession,
    org_id: uuid.UUID,
    import_job_id: uuid.UUID | None = None,
) -> dict[str, Any]:
    """
    Returns:
        {"records_analyzed", "recommendations_created", "anomalies_detected",
         "clusters_created", "predictions_created", "errors": [...]}
    """
    summary: dict[str, Any] = {
        "records_analyzed": 0,
        "recommendations_created": 0,
        "anomalies_detected": 0,
        "clusters_created": 0,
        "predictions_created": 0,
        "errors": [],
    }

    frame = await load_loss_frame(db, org_id, import_job_id=import_job_id)
    if frame.empty:
        summary["errors"].append("No loss records found for analysis")
        return summary
    summary["records_analyzed"] = len(frame)

    logger.info(
        "loss_analysis.start",
        org_id=str(org_id),
        import_job_id=str(import_job_id) if import_job_id else None,
        records=len(frame),
    )
    ml_settings = await get_ml_settings(db, org_id)

    try:
        recs = await generate_recommendations(
            db,
            org_id,
            min_confidence=ml_settings["recommendations"]["min_confidence"],
            expiration_days=ml_settings["recommendations"]["expiration_days"],
            import_job_id=import_job_id,
        )
        summary["recommendations_created"] = len(recs)
    except Exception as exc:  # noqa: BLE001
        await db.rollback()
        logger.error("loss_analysis.recommendations_failed", org_id=str(org_id), error=str(exc), exc_info=True)
        summary["errors"].append(f"recommendations: {exc}")

    try:
        anomalies = await detect_anomalies(
            db, org_id, "store", "loss_value", threshold=ANALYSIS_ZSCORE_THRESHOLD, lookback_days=90
        )
        summary["anomalies_detected"] = len(anomalies)
    except Exception as exc:  # noqa: BLE001
        await db.rollback()
        logger.error("loss_analysis.anomalies_failed", org_id=str(org_id), error=str(exc), exc_info=True)
        summary["errors"].append(f"anomalies: {exc}")

    if frame["store_id"].nunique() >= 2:
        try:
            run = await run_clustering(db, org_id, "store", ANALYSIS_NUM_CLUSTERS)
            summary["clusters_created"] = run.num_clusters or 0
        except Exception as exc:  # noqa: BLE001
            await db.rollback()
            logger.error("loss_analysis.clustering_failed", org_id=str(org_id), error=str(exc), exc_info=True)
            summary["errors"].append(f"clustering: {exc}")

    try:
        predictions = await generate_predictions(db, org_id, "loss_amount", horizon_days=7)
        summary["predictions_created"] = len(predictions)
    except Exception as exc:  # noqa: BLE001
        await db.rollback()
        logger.error("loss_analysis.predictions_failed", org_id=str(org_id), error=str(exc), exc_info=True)
        summary["errors"].append(f"predictions: {exc}")

    logger.info("loss_analysis.complete", org_id=str(org_id), **{k: v for k, v in summary.items() if k != "errors"})
    return summary
