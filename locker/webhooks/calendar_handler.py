# locker/webhooks/calendar_handler.py
"""Google Calendar push-notification receiver"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from locker.services.webhook.webhook_service import CalendarWebhookService

router = APIRouter()
logger = logging.getLogger(__name__)


def get_webhook_service(request: Request) -> CalendarWebhookService:
    return request.app.state.calendar_webhook_service


@router.post("/google")
def handle_google_notification(
        x_goog_channel_id: Optional[str] = Header(None),
        x_goog_resource_id: Optional[str] = Header(None),
        x_goog_channel_token: Optional[str] = Header(None),
        x_goog_resource_state: Optional[str] = Header(None),
        service: CalendarWebhookService = Depends(get_webhook_service),
):
    """Acknowledge the notification; fan-out failures are never surfaced to the sender."""
    if not x_goog_channel_id or not x_goog_resource_state:
        raise HTTPException(status_code=400, detail="Missing channel headers")

    if x_goog_resource_state == "sync":
        # Handshake sent right after a channel is opened
        logger.info(f"Watch channel {x_goog_channel_id} confirmed")
        return {"status": "ok"}

    receipt = service.handle_notification(x_goog_channel_id, x_goog_resource_id, x_goog_channel_token)
    logger.info(
        f"Notification on {x_goog_channel_id} ({x_goog_resource_state}): "
        f"{receipt.matched} matched, {receipt.dispatched} dispatched, {receipt.untrusted} untrusted"
    )
    return {"status": "ok"}
