"""
Interactive Reply Decoder.

Payload ids emitted on interactive cards:

    slot_{slot_id}          slot_id = offer token + index into offered_slots
    confirm_{offer_token}
    cancel_{offer_token}

The offer token changes with every new card, so a button from an older
card, or from a conversation whose state expired, no longer resolves.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from quickbook.core.errors import InvalidPayload
from .models import ConversationState
from .state import ConversationPhase

logger = logging.getLogger(__name__)

SLOT_PREFIX = "slot_"
CONFIRM_PREFIX = "confirm_"
CANCEL_PREFIX = "cancel_"


class ActionType(str, Enum):
    SLOT_CHOICE = "slot_choice"
    CONFIRM = "confirm"
    CANCEL = "cancel"


@dataclass(frozen=True)
class DecodedAction:
    """A button tap resolved against the current conversation state."""

    type: ActionType
    slot_id: Optional[str] = None


def slot_payload(slot_id: str) -> str:
    return f"{SLOT_PREFIX}{slot_id}"


def confirm_payload(offer_token: str) -> str:
    return f"{CONFIRM_PREFIX}{offer_token}"


def cancel_payload(offer_token: str) -> str:
    return f"{CANCEL_PREFIX}{offer_token}"


def decode(payload_id: str, state: Optional[ConversationState]) -> DecodedAction:
    """
    Resolve a payload id against the options currently on offer.

    Args:
        payload_id: Opaque id from the tapped button
        state: Current conversation state (None if absent or expired)

    Returns:
        DecodedAction

    Raises:
        InvalidPayload: The id is malformed or matches nothing on offer
    """
    if not payload_id:
        raise InvalidPayload(payload_id, "empty payload")

    if state is None or state.offer_token is None:
        raise InvalidPayload(payload_id, "no options on offer")

    if payload_id.startswith(SLOT_PREFIX):
        slot_id = payload_id[len(SLOT_PREFIX):]
        if state.phase not in (
            ConversationPhase.AWAITING_SLOT_CHOICE,
            ConversationPhase.AWAITING_CONFIRMATION,
        ):
            raise InvalidPayload(payload_id, f"slot choice in phase {state.phase.value}")
        if state.find_slot(slot_id) is None:
            raise InvalidPayload(payload_id, "slot not on the current card")
        return DecodedAction(ActionType.SLOT_CHOICE, slot_id=slot_id)

    if payload_id.startswith(CONFIRM_PREFIX):
        _check_token(payload_id, payload_id[len(CONFIRM_PREFIX):], state)
        if state.phase != ConversationPhase.AWAITING_CONFIRMATION or state.selected_slot is None:
            raise InvalidPayload(payload_id, "nothing awaiting confirmation")
        return DecodedAction(ActionType.CONFIRM, slot_id=state.selected_slot_id)

    if payload_id.startswith(CANCEL_PREFIX):
        _check_token(payload_id, payload_id[len(CANCEL_PREFIX):], state)
        return DecodedAction(ActionType.CANCEL)

    raise InvalidPayload(payload_id, "unknown payload format")


def _check_token(payload_id: str, token: str, state: ConversationState) -> None:
    if token != state.offer_token:
        logger.debug(f"Stale token in {payload_id} (current {state.offer_token})")
        raise InvalidPayload(payload_id, "stale card")
