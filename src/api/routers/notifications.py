"""Notification routes for the Segmentry API."""

import logging

from api.dependencies import get_services, is_admin_key, notification_ws_manager
from api.schemas import NotificationResponse
from fastapi import APIRouter, Header, HTTPException, Query, WebSocket, WebSocketDisconnect
from services.notification_service import NOTIFICATIONS_KEY

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Notifications"])
ws_router = APIRouter(tags=["Notifications"])


@router.get(
    "/notifications",
    response_model=list[NotificationResponse],
    summary="Recent notifications",
    description="Admin view requires the admin key; otherwise notifications visible to user_id.",
)
async def list_notifications(
    admin: bool = Query(default=False),
    user_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    x_admin_key: str | None = Header(default=None),
) -> list[dict]:
    services = get_services()
    if admin and not is_admin_key(services.config, x_admin_key):
        raise HTTPException(status_code=401, detail="Admin key required")
    notifications = await services.notifications.list_recent(admin=admin, user_id=user_id, limit=limit)
    return [n.to_dict() for n in notifications]


@ws_router.websocket("/ws/notifications")
async def websocket_notifications(websocket: WebSocket) -> None:
    """WebSocket endpoint pushing notifications to their audience."""
    services = get_services()
    user_id = websocket.query_params.get("user_id")
    wants_admin = websocket.query_params.get("admin", "").lower() in ("1", "true", "yes")
    provided = websocket.headers.get("x-admin-key") or websocket.query_params.get("key")
    is_admin = wants_admin and is_admin_key(services.config, provided)

    await notification_ws_manager.connect(NOTIFICATIONS_KEY, websocket, user_id=user_id, is_admin=is_admin)
    try:
        await websocket.send_json({"type": "connected", "admin": is_admin})
        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"Notification WebSocket error: {e}")
    finally:
        notification_ws_manager.disconnect(NOTIFICATIONS_KEY, websocket)
