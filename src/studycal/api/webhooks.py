"""Calendar push-notification receiver.

Google delivers channel notifications as an empty POST whose meaning lives
entirely in headers:

- ``X-Goog-Channel-ID``: the channel id chosen at registration.
- ``X-Goog-Resource-ID``: the provider's id for the watched resource.
- ``X-Goog-Resource-State``: ``sync`` for the handshake, ``exists`` otherwise.
- ``X-Goog-Channel-Token``: the verification token set at registration.

Accepted notifications and handshakes return 200; unknown or mismatched
channels return 404 so the provider stops retrying them.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import BaseModel

from studycal.errors import NotFoundError
from studycal.service import CalendarService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


class NotificationResponse(BaseModel):
    status: str
    sync: str | None = None


def get_service(request: Request) -> CalendarService:
    service = getattr(request.app.state, "calendar_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Calendar service is not available")
    return service


@router.post("/calendar", response_model=NotificationResponse)
async def receive_calendar_notification(
    channel_id: str = Header(alias="X-Goog-Channel-ID"),
    resource_id: str = Header(alias="X-Goog-Resource-ID"),
    resource_state: str = Header(alias="X-Goog-Resource-State"),
    channel_token: str | None = Header(default=None, alias="X-Goog-Channel-Token"),
    service: CalendarService = Depends(get_service),
) -> NotificationResponse:
    try:
        outcome = await service.handle_notification(
            channel_id, resource_id, resource_state, channel_token
        )
    except NotFoundError:
        logger.info("Rejected notification for channel %s (%s)", channel_id, resource_state)
        raise HTTPException(status_code=404, detail="Unknown watch channel")
    if outcome is None:
        return NotificationResponse(status="handshake")
    return NotificationResponse(status="accepted", sync=outcome.value)
