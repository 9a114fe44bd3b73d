"""
Risk Alert Publisher — pushes new risk alerts to Redis pub/sub.

Channel per organization: risk-alerts:{org_id}. The WebSocket endpoint in
alerts/websocket.py relays the channel to connected dashboards.
"""

import json

import redis.asyncio as aioredis
import structlog

from core.config import get_settings
from db.models import RiskAlert

logger = structlog.get_logger()


def channel_for(org_id) -> str:
    return f"risk-alerts:{org_id}"


def alert_message(alert: RiskAlert) -> str:
    return json.dumps(
        {
            "type": "risk_alert",
            "payload": {
                "alert_id": str(alert.alert_id),
                "alert_type": alert.alert_type,
                "severity": alert.severity,
                "title": alert.title,
                "entity_type": alert.entity_type,
                "entity_id": alert.entity_id,
                "entity_name": alert.entity_name,
                "current_score": alert.current_score,
                "previous_score": alert.previous_score,
                "store_id": str(alert.store_id) if alert.store_id else None,
                "created_at": alert.created_at.isoformat() if alert.created_at else None,
            },
        }
    )


async def publish_risk_alerts(alerts: list[RiskAlert]) -> int:
    """
    Publish alerts to Redis pub/sub for real-time WebSocket delivery.
    Returns number of subscribers notified.
    """
    if not alerts:
        return 0

    redis = aioredis.from_url(get_settings().redis_url)
    try:
        total_subs = 0
        for alert in alerts:
            total_subs += await redis.publish(channel_for(alert.org_id), alert_message(alert))
        logger.info("risk_alerts.published", count=len(alerts), subscribers=total_subs)
        return total_subs
    finally:
        await redis.aclose()
