from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from channelplane.apps.api.deps import get_db
from channelplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from channelplane.apps.api.response import SuccessEnvelope, get_request_id, success_response
from channelplane.services.events import accept_event, verify_subscription
from channelplane.services.events.intake import SIGNATURE_HEADER


router = APIRouter(prefix="/webhooks", tags=["webhooks"], responses=DEFAULT_ERROR_RESPONSES)


class EventAcceptedResponse(BaseModel):
    accepted: bool
    job_id: str
    priority: str
    event_type: str


@router.get("/upstream", response_class=PlainTextResponse)
async def verify_upstream_subscription(
    mode: str | None = Query(default=None, alias="hub.mode"),
    token: str | None = Query(default=None, alias="hub.verify_token"),
    challenge: str | None = Query(default=None, alias="hub.challenge"),
) -> PlainTextResponse:
    return PlainTextResponse(verify_subscription(mode, token, challenge))


@router.post("/upstream", response_model=SuccessEnvelope[EventAcceptedResponse])
async def receive_upstream_event(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    # Acknowledge as soon as the job is durable; processing happens in the event worker.
    body = await request.body()
    accepted = await accept_event(
        db,
        body=body,
        signature=request.headers.get(SIGNATURE_HEADER),
        request_id=get_request_id(request),
    )
    payload = EventAcceptedResponse(
        accepted=True,
        job_id=accepted.job_id,
        priority=accepted.priority,
        event_type=accepted.event_type,
    )
    return success_response(request=request, data=payload)
