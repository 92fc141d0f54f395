"""Conversation state machine."""

from enum import Enum
from typing import Optional, Set


class ConversationPhase(str, Enum):
    """Phases of a booking conversation."""

    IDLE = "idle"
    AWAITING_SLOT_CHOICE = "awaiting_slot_choice"
    AWAITING_CONFIRMATION = "awaiting_confirmation"


class Trigger(str, Enum):
    """Outcomes of one turn that drive the phase forward."""

    INTENT_INCOMPLETE = "intent_incomplete"
    SLOTS_OFFERED = "slots_offered"
    NO_SLOTS = "no_slots"
    SLOT_CHOSEN = "slot_chosen"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    CONFLICT_REOFFERED = "conflict_reoffered"


# Valid phase transitions
VALID_TRANSITIONS: dict[ConversationPhase, Set[ConversationPhase]] = {
    ConversationPhase.IDLE: {
        ConversationPhase.IDLE,
        ConversationPhase.AWAITING_SLOT_CHOICE,
    },
    ConversationPhase.AWAITING_SLOT_CHOICE: {
        ConversationPhase.IDLE,
        ConversationPhase.AWAITING_SLOT_CHOICE,   # Text restarted the search
        ConversationPhase.AWAITING_CONFIRMATION,
    },
    ConversationPhase.AWAITING_CONFIRMATION: {
        ConversationPhase.IDLE,
        ConversationPhase.AWAITING_SLOT_CHOICE,
        ConversationPhase.AWAITING_CONFIRMATION,  # Another slot picked from the same card
    },
}


# (phase, trigger) -> next phase; None means the conversation ends
_TRANSITIONS: dict[tuple[ConversationPhase, Trigger], Optional[ConversationPhase]] = {}

for _phase in ConversationPhase:
    _TRANSITIONS[(_phase, Trigger.INTENT_INCOMPLETE)] = ConversationPhase.IDLE
    _TRANSITIONS[(_phase, Trigger.SLOTS_OFFERED)] = ConversationPhase.AWAITING_SLOT_CHOICE
    _TRANSITIONS[(_phase, Trigger.NO_SLOTS)] = ConversationPhase.IDLE
    _TRANSITIONS[(_phase, Trigger.CANCELLED)] = None

_TRANSITIONS[(ConversationPhase.AWAITING_SLOT_CHOICE, Trigger.SLOT_CHOSEN)] = (
    ConversationPhase.AWAITING_CONFIRMATION
)
_TRANSITIONS[(ConversationPhase.AWAITING_CONFIRMATION, Trigger.SLOT_CHOSEN)] = (
    ConversationPhase.AWAITING_CONFIRMATION
)
_TRANSITIONS[(ConversationPhase.AWAITING_CONFIRMATION, Trigger.CONFIRMED)] = None
_TRANSITIONS[(ConversationPhase.AWAITING_CONFIRMATION, Trigger.CONFLICT_REOFFERED)] = (
    ConversationPhase.AWAITING_SLOT_CHOICE
)


class InvalidTransition(ValueError):
    """Trigger is not allowed in the current phase."""

    def __init__(self, phase: ConversationPhase, trigger: Trigger):
        super().__init__(f"{trigger.value} not allowed in {phase.value}")
        self.phase = phase
        self.trigger = trigger


def can_transition(from_phase: ConversationPhase, to_phase: ConversationPhase) -> bool:
    """Check if transition is valid."""
    return to_phase in VALID_TRANSITIONS.get(from_phase, set())


def next_phase(phase: ConversationPhase, trigger: Trigger) -> Optional[ConversationPhase]:
    """
    Pure transition function.

    Returns:
        The next phase, or None when the conversation is finished and its
        state should be deleted

    Raises:
        InvalidTransition: The trigger cannot happen in this phase
    """
    try:
        return _TRANSITIONS[(phase, trigger)]
    except KeyError:
        raise InvalidTransition(phase, trigger) from None
