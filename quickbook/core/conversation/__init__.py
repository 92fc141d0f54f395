"""
Conversation orchestration.

Usage:
    from quickbook.core.conversation import get_event_router, TransportEvent

    router = await get_event_router()
    reply = await router.handle(event)
"""

from .state import ConversationPhase, Trigger, can_transition, next_phase
from .models import ConversationKey, ConversationState, OfferedSlot
from .events import EventType, TransportEvent
from .replies import ReplyDescriptor, ReplyKind, ReplyOption
from .store import ConversationStore, get_conversation_store
from .dedup import Admission, AdmissionDecision, DedupGate
from .decoder import ActionType, DecodedAction, decode
from .router import EventRouter, get_event_router

__all__ = [
    # State machine
    "ConversationPhase",
    "Trigger",
    "can_transition",
    "next_phase",
    # Models
    "ConversationKey",
    "ConversationState",
    "OfferedSlot",
    "EventType",
    "TransportEvent",
    "ReplyDescriptor",
    "ReplyKind",
    "ReplyOption",
    # Store
    "ConversationStore",
    "get_conversation_store",
    # Dedup
    "Admission",
    "AdmissionDecision",
    "DedupGate",
    # Decoder
    "ActionType",
    "DecodedAction",
    "decode",
    # Router
    "EventRouter",
    "get_event_router",
]
