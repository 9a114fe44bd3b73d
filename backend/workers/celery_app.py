"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "myinventory",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

DISPATCH_TASK = "workers.scheduler.dispatch_active_orgs"

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "workers.intelligence.*": {"queue": "ml"},
        "workers.scheduler.*": {"queue": "sync"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    # Every job fans out across active organizations via workers.scheduler.dispatch_active_orgs.
    beat_schedule={
        # ── Risk Scoring ───────────────────────────────────────────
        "refresh-risk-scores-nightly": {
            "task": DISPATCH_TASK,
            "schedule": crontab(hour=2, minute=0),
            "kwargs": {"task_name": "workers.intelligence.refresh_risk_scores"},
            "options": {"queue": "sync"},
        },
        # ── Anomalies ──────────────────────────────────────────────
        "detect-anomalies-6h": {
            "task": DISPATCH_TASK,
            "schedule": crontab(minute=0, hour="*/6"),
            "kwargs": {"task_name": "workers.intelligence.detect_anomalies"},
            "options": {"queue": "sync"},
        },
        # ── Recommendations ────────────────────────────────────────
        "generate-recommendations-daily": {
            "task": DISPATCH_TASK,
            "schedule": crontab(hour=3, minute=0),  # After risk refresh
            "kwargs": {"task_name": "workers.intelligence.generate_recommendations"},
            "options": {"queue": "sync"},
        },
        "expire-recommendations-hourly": {
            "task": DISPATCH_TASK,
            "schedule": crontab(minute=15),
            "kwargs": {"task_name": "workers.intelligence.expire_recommendations"},
            "options": {"queue": "sync"},
        },
        # ── Predictions ────────────────────────────────────────────
        "generate-predictions-daily": {
            "task": DISPATCH_TASK,
            "schedule": crontab(hour=4, minute=0),
            "kwargs": {"task_name": "workers.intelligence.generate_predictions"},
            "options": {"queue": "sync"},
        },
        "evaluate-predictions-daily": {
            "task": DISPATCH_TASK,
            "schedule": crontab(hour=5, minute=0),
            "kwargs": {"task_name": "workers.intelligence.evaluate_predictions"},
            "options": {"queue": "sync"},
        },
        # ── Seasonality & Clustering ───────────────────────────────
        "detect-seasonality-weekly": {
            "task": DISPATCH_TASK,
            "schedule": crontab(hour=3, minute=30, day_of_week="sunday"),
            "kwargs": {"task_name": "workers.intelligence.detect_seasonality"},
            "options": {"queue": "sync"},
        },
        "cluster-stores-weekly": {
            "task": DISPATCH_TASK,
            "schedule": crontab(hour=4, minute=30, day_of_week="sunday"),
            "kwargs": {"task_name": "workers.intelligence.cluster_stores"},
            "options": {"queue": "sync"},
        },
    },
)

# Auto-discover tasks
celery_app.autodiscover_tasks(["workers"])
