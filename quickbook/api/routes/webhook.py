"""
Inbound Event Endpoint.

Receives normalized messaging-platform events and returns the reply the
transport should send. Events missing the fields their type requires are
rejected here with 422 and never reach the Dedup Gate.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field, model_validator

from quickbook.core.conversation import (
    ConversationKey,
    EventRouter,
    EventType,
    TransportEvent,
    get_event_router,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/events", tags=["Events"])


class ConversationKeyModel(BaseModel):
    """Who is talking to which salon."""

    salon_id: str = Field(
        ...,
        min_length=1,
        description="Salon identifier",
        examples=["5f0c2d3e-8a9b-4c1d-9e2f-3a4b5c6d7e8f"],
    )
    customer_handle: str = Field(
        ...,
        min_length=1,
        max_length=255,
        description="Customer's messaging handle",
        examples=["+15551234567"],
    )


class InboundEventRequest(BaseModel):
    """Inbound transport event."""

    transport_event_id: str = Field(
        ...,
        min_length=1,
        max_length=255,
        description="Platform message id, used for deduplication",
        examples=["wamid.HBgLMTU1NTEyMzQ1NjcVAgASGBQzQTdGNEU"],
    )
    conversation_key: ConversationKeyModel
    type: EventType
    text: Optional[str] = Field(
        default=None,
        max_length=2000,
        description="Message text (text events)",
        examples=["Haircut tomorrow at 3pm"],
    )
    payload_id: Optional[str] = Field(
        default=None,
        max_length=255,
        description="Tapped button id (interactive replies)",
    )

    @model_validator(mode="after")
    def _require_fields_for_type(self) -> "InboundEventRequest":
        if self.type == EventType.TEXT and not (self.text and self.text.strip()):
            raise ValueError("text events require a non-empty 'text'")
        if self.type == EventType.INTERACTIVE_REPLY and not self.payload_id:
            raise ValueError("interactive replies require 'payload_id'")
        return self

    def to_event(self) -> TransportEvent:
        return TransportEvent(
            transport_event_id=self.transport_event_id,
            key=ConversationKey(
                salon_id=self.conversation_key.salon_id,
                customer_handle=self.conversation_key.customer_handle,
            ),
            type=self.type,
            text=self.text,
            payload_id=self.payload_id,
        )


class ReplyOptionModel(BaseModel):
    """Interactive button."""

    label: str
    payload_id: str


class ReplyResponse(BaseModel):
    """Reply descriptor for the transport."""

    kind: str = Field(..., description="text or interactive")
    body: str
    options: Optional[list[ReplyOptionModel]] = Field(
        default=None,
        max_length=3,
        description="Buttons (interactive replies only)",
    )


@router.post(
    "",
    response_model=ReplyResponse,
    response_model_exclude_none=True,
    status_code=status.HTTP_200_OK,
    summary="Handle an inbound event",
    description="Process one customer message or button tap and return the reply to send.",
    responses={
        200: {"description": "Reply descriptor"},
        422: {"description": "Malformed event"},
    },
)
async def handle_event(
    request: InboundEventRequest,
    event_router: EventRouter = Depends(get_event_router),
) -> ReplyResponse:
    """
    Process an inbound event.

    Redelivered events get the same reply as the first delivery and cause
    no new side effects.
    """
    event = request.to_event()
    logger.debug(f"Event {event.transport_event_id} ({event.type.value}) for {event.key}")

    reply = await event_router.handle(event)
    return ReplyResponse(**reply.to_dict())
