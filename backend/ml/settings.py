"""
Per-organization ML settings with defaults.

Stored as one JSON document in organization_settings.ml_settings; missing
sections/keys fall back to DEFAULT_ML_SETTINGS.
"""

import copy
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from db.models import OrganizationSettings

_settings = get_settings()

DEFAULT_ML_SETTINGS: dict[str, dict] = {
    "clustering": {
        "enabled": True,
        "auto_refresh": True,
        "refresh_interval_days": 7,
        "default_num_clusters": _settings.default_num_clusters,
        "algorithm": "kmeans",
    },
    "predictions": {
        "enabled": True,
        "horizon_days": [7, 14, 30],
        "confidence_level": 0.95,
        "auto_train": True,
        "min_training_samples": 100,
    },
    "seasonality": {
        "enabled": True,
        "detect_patterns": True,
        "min_pattern_strength": 0.3,
    },
    "recommendations": {
        "enabled": True,
        "auto_generate": True,
        "min_confidence": 0.7,
        "expiration_days": _settings.recommendation_expiration_days,
    },
    "anomalies": {
        "enabled": True,
        "zscore_threshold": _settings.anomaly_zscore_threshold,
        "auto_alert": True,
        "alert_severities": ["high", "critical"],
    },
}


def merge_ml_settings(stored: dict | None, update: dict | None = None) -> dict:
    """Defaults ← stored ← update, merged per section. Unknown sections are ignored."""
    merged = copy.deepcopy(DEFAULT_ML_SETTINGS)
    for layer in (stored or {}, update or {}):
        for section, values in layer.items():
            if section in merged and isinstance(values, dict):
                merged[section].update({k: v for k, v in values.items() if k in merged[section]})
    return merged


async def get_ml_settings(db: AsyncSession, org_id: uuid.UUID) -> dict:
    row = await db.get(OrganizationSettings, org_id)
    return merge_ml_settings(row.ml_settings if row else None)


async def update_ml_settings(db: AsyncSession, org_id: uuid.UUID, update: dict) -> dict:
    row = await db.get(OrganizationSettings, org_id)
    merged = merge_ml_settings(row.ml_settings if row else None, update)
    if row is None:
        db.add(OrganizationSettings(org_id=org_id, ml_settings=merged))
    else:
        row.ml_settings = merged
    await db.commit()
    return merged
