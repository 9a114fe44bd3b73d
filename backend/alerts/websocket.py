"""
WebSocket endpoint for real-time risk alert delivery (Redis pub/sub).
"""

import asyncio

import redis.asyncio as aioredis
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from alerts.publisher import channel_for
from core.config import get_settings
from core.security import decode_access_token

settings = get_settings()
router = APIRouter()


async def authenticate_ws(token: str) -> dict | None:
    """Validate JWT token from WebSocket query param."""
    if settings.debug:
        return {
            "sub": "dev-user",
            "org_id": "00000000-0000-0000-0000-000000000001",
        }
    return decode_access_token(token)


@router.websocket("/ws/risk-alerts")
async def websocket_risk_alerts(websocket: WebSocket, token: str = Query(...)):
    """
    Stream risk alerts for the caller's organization.

    Connect: ws://host/ws/risk-alerts?token=<jwt>

    Messages sent to client:
        {"type": "risk_alert", "payload": {...}}
        {"type": "heartbeat", "payload": {}}
    """
    user = await authenticate_ws(token)
    if user is None or not user.get("org_id"):
        await websocket.close(code=4001, reason="Unauthorized")
        return

    await websocket.accept()

    channel = channel_for(user["org_id"])
    redis = aioredis.from_url(settings.redis_url)
    pubsub = redis.pubsub()
    await pubsub.subscribe(channel)

    try:

        async def listen_redis():
            async for message in pubsub.listen():
                if message["type"] == "message":
                    await websocket.send_text(message["data"].decode())

        async def send_heartbeat():
            while True:
                await asyncio.sleep(30)
                await websocket.send_json({"type": "heartbeat", "payload": {}})

        await asyncio.gather(listen_redis(), send_heartbeat())

    except WebSocketDisconnect:
        pass
    finally:
        await pubsub.unsubscribe(channel)
        await pubsub.aclose()
        await redis.aclose()
