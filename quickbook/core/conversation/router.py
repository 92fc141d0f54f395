"""
Event Router - main orchestrator of a booking conversation.

One inbound event in, one reply descriptor out:

    Dedup Gate -> per-conversation lock -> state read
        -> text: Intent Extractor -> Slot Finder -> offer card
        -> button: Reply Decoder -> choose / confirm (Booking Committer) / cancel
    -> state write -> ledger record

Every failure a customer can cause, and every transient backend failure,
ends in a reply; nothing propagates to the transport.
"""

import logging
from typing import Optional

from quickbook.config import settings
from quickbook.core.booking.committer import BookingCommitter
from quickbook.core.booking.repository import BookingRepository
from quickbook.core.errors import (
    IncompleteIntent,
    InvalidPayload,
    NoSlotsAvailable,
    OracleError,
    SlotConflict,
    StorageUnavailable,
)
from quickbook.core.intent.extractor import IntentExtractor, get_intent_extractor
from quickbook.core.intent.matching import detect_language
from quickbook.core.intent.types import BookingIntent, ExtractionContext
from quickbook.core.schedule.finder import SlotFinder, SlotSearchResult, TimePreference
from quickbook.core.schedule.model import SalonInfo, ServiceInfo
from .decoder import ActionType, cancel_payload, confirm_payload, decode, slot_payload
from .dedup import DedupGate
from .events import EventType, TransportEvent
from .models import ConversationState
from .replies import (
    ReplyDescriptor,
    ReplyOption,
    format_day,
    format_time,
    render,
    slot_label,
)
from .state import Trigger, next_phase
from .store import ConversationStore, get_conversation_store

logger = logging.getLogger(__name__)


class EventRouter:
    """
    Conversation state machine driver.

    Collaborators default to the application singletons; tests inject their own.
    """

    def __init__(
        self,
        repository: BookingRepository,
        store: Optional[ConversationStore] = None,
        gate: Optional[DedupGate] = None,
        extractor: Optional[IntentExtractor] = None,
        finder: Optional[SlotFinder] = None,
        committer: Optional[BookingCommitter] = None,
    ):
        self._repository = repository
        self._store = store
        self._gate = gate or DedupGate(repository)
        self._extractor = extractor
        self._finder = finder or SlotFinder(repository)
        self._committer = committer or BookingCommitter(repository)

    @property
    def gate(self) -> DedupGate:
        return self._gate

    async def _get_store(self) -> ConversationStore:
        if self._store is None:
            self._store = await get_conversation_store()
        return self._store

    async def _get_extractor(self) -> IntentExtractor:
        if self._extractor is None:
            self._extractor = await get_intent_extractor()
        return self._extractor

    async def handle(self, event: TransportEvent) -> ReplyDescriptor:
        """
        Process one inbound event.

        Args:
            event: Normalized transport event

        Returns:
            Reply for the customer (always, even on failure)
        """
        try:
            admission = await self._gate.admit(event.transport_event_id)
        except StorageUnavailable as e:
            logger.error(f"Dedup ledger unavailable for {event.transport_event_id}: {e}")
            return ReplyDescriptor.text(render("try_again", settings.default_language))

        if not admission.admitted:
            if admission.previous_reply:
                return ReplyDescriptor.from_dict(admission.previous_reply)
            return ReplyDescriptor.text(render("in_progress", settings.default_language))

        store = await self._get_store()
        try:
            async with store.lock(event.key):
                reply = await self._dispatch(event, store)
        except StorageUnavailable as e:
            logger.error(f"Storage unavailable handling {event.transport_event_id}: {e}")
            await self._gate.release(event.transport_event_id)
            return ReplyDescriptor.text(render("try_again", settings.default_language))
        except Exception as e:
            logger.exception(f"Unexpected error handling {event.transport_event_id}: {e}")
            await self._gate.release(event.transport_event_id)
            return ReplyDescriptor.text(render("try_again", settings.default_language))

        try:
            await self._gate.complete(event.transport_event_id, reply.to_dict())
        except StorageUnavailable as e:
            logger.error(f"Could not record {event.transport_event_id} in ledger: {e}")

        return reply

    async def _dispatch(self, event: TransportEvent, store: ConversationStore) -> ReplyDescriptor:
        state = await store.get(event.key)

        if event.type == EventType.TEXT:
            return await self._on_text(event, state, store)
        return await self._on_button(event, state, store)

    # === Text ===

    async def _on_text(
        self,
        event: TransportEvent,
        state: Optional[ConversationState],
        store: ConversationStore,
    ) -> ReplyDescriptor:
        """Extract or update the intent, then clarify or offer slots."""
        if state is None:
            state = ConversationState(
                salon_id=event.key.salon_id,
                customer_handle=event.key.customer_handle,
                pending_intent=BookingIntent(language=settings.default_language),
            )

        salon = await self._repository.get_salon(event.key.salon_id)
        if salon is None:
            logger.warning(f"Message for unknown salon {event.key.salon_id}")
            return ReplyDescriptor.text(render("no_slots", detect_language(event.text)))

        services = await self._repository.list_services(salon.id)
        context = ExtractionContext(
            known_services=services,
            prior_intent=state.pending_intent,
            today=salon.local_now().date(),
        )

        extractor = await self._get_extractor()
        try:
            intent = await extractor.extract(event.text, context)
        except OracleError as e:
            logger.warning(f"Intent extraction degraded for {event.key}: {e}")
            return ReplyDescriptor.text(render("restate", detect_language(event.text)))

        state.pending_intent = intent

        try:
            intent.require_complete()
        except IncompleteIntent as e:
            self._advance(state, Trigger.INTENT_INCOMPLETE)
            state.clear_offer()
            await store.put(event.key, state)
            return self._clarify(intent, e.missing, services)

        service = _find_service(services, intent.service_id)
        return await self._offer_slots(state, salon, service, store)

    def _clarify(
        self,
        intent: BookingIntent,
        missing: list[str],
        services: list[ServiceInfo],
    ) -> ReplyDescriptor:
        """Ask for the first missing piece of the intent."""
        language = intent.language
        if "service" in missing:
            listing = "".join(f"\n• {s.name}" for s in services)
            return ReplyDescriptor.text(
                render("ask_service", language, services=f"\n{listing}" if listing else "")
            )
        if "date" in missing:
            return ReplyDescriptor.text(
                render("ask_date", language, service=intent.service_name or "")
            )
        return ReplyDescriptor.text(
            render("ask_time", language, day=format_day(intent.preferred_date))
        )

    async def _offer_slots(
        self,
        state: ConversationState,
        salon: SalonInfo,
        service: Optional[ServiceInfo],
        store: ConversationStore,
        after_conflict: bool = False,
    ) -> ReplyDescriptor:
        """Search for slots and put a fresh card in front of the customer."""
        intent = state.pending_intent
        language = intent.language

        try:
            result = await self._search(salon, service, intent)
        except NoSlotsAvailable as e:
            logger.info(f"No slots for {state.key}: {e}")
            self._advance(state, Trigger.NO_SLOTS)
            state.clear_offer()
            await store.put(state.key, state)
            template = "no_slots_after_conflict" if after_conflict else "no_slots"
            return ReplyDescriptor.text(render(template, language))

        self._advance(state, Trigger.CONFLICT_REOFFERED if after_conflict else Trigger.SLOTS_OFFERED)
        offered = state.offer(result.candidates)
        await store.put(state.key, state)

        widened = result.widened
        day = format_day(intent.preferred_date)
        if after_conflict:
            body = render("slot_taken", language)
        elif widened:
            body = render("offer_widened", language, day=day)
        elif intent.preferred_time is not None:
            body = render(
                "offer", language,
                service=service.name, day=day, time=format_time(intent.preferred_time),
            )
        else:
            body = render("offer_flexible", language, service=service.name, day=day)

        options = [
            ReplyOption(
                label=slot_label(o.candidate, multi_day=widened or after_conflict),
                payload_id=slot_payload(o.slot_id),
            )
            for o in offered
        ]
        return ReplyDescriptor.interactive(body, options)

    async def _search(
        self,
        salon: SalonInfo,
        service: Optional[ServiceInfo],
        intent: BookingIntent,
    ) -> SlotSearchResult:
        """
        Run the slot search for a complete intent.

        Raises:
            NoSlotsAvailable: Nothing free on the requested day or the widened window
        """
        if service is None:
            raise NoSlotsAvailable(f"service {intent.service_id} is no longer offered")

        result = await self._finder.search(
            salon.id,
            service,
            intent.preferred_date,
            TimePreference(intent.preferred_time),
            now=salon.local_now(),
        )
        if not result.candidates:
            raise NoSlotsAvailable(
                f"nothing free for {service.name} from {intent.preferred_date}"
            )
        return result

    # === Buttons ===

    async def _on_button(
        self,
        event: TransportEvent,
        state: Optional[ConversationState],
        store: ConversationStore,
    ) -> ReplyDescriptor:
        """Resolve a tapped button against the current card."""
        language = state.pending_intent.language if state else settings.default_language

        try:
            action = decode(event.payload_id, state)
        except InvalidPayload as e:
            logger.info(f"Stale or unknown button for {event.key}: {e.reason}")
            return ReplyDescriptor.text(render("stale_option", language))

        if action.type == ActionType.CANCEL:
            self._advance(state, Trigger.CANCELLED)
            await store.delete(event.key)
            return ReplyDescriptor.text(render("cancelled", language))

        if action.type == ActionType.SLOT_CHOICE:
            state.selected_slot_id = action.slot_id
            self._advance(state, Trigger.SLOT_CHOSEN)
            await store.put(event.key, state)
            return self._confirmation_card(state)

        return await self._confirm(state, store)

    def _confirmation_card(self, state: ConversationState) -> ReplyDescriptor:
        candidate = state.selected_slot.candidate
        language = state.pending_intent.language
        body = render(
            "confirm_prompt", language,
            service=state.pending_intent.service_name or "",
            staff=candidate.staff_name,
            day=format_day(candidate.start_time),
            time=format_time(candidate.start_time),
        )
        return ReplyDescriptor.interactive(
            body,
            [
                ReplyOption(render("button_confirm", language), confirm_payload(state.offer_token)),
                ReplyOption(render("button_cancel", language), cancel_payload(state.offer_token)),
            ],
        )

    async def _confirm(self, state: ConversationState, store: ConversationStore) -> ReplyDescriptor:
        """Commit the selected slot, or re-offer if someone else got it first."""
        candidate = state.selected_slot.candidate
        language = state.pending_intent.language

        try:
            booking = await self._committer.commit(
                salon_id=state.salon_id,
                staff_id=candidate.staff_id,
                service_id=candidate.service_id,
                customer_handle=state.customer_handle,
                start_time=candidate.start_time,
                end_time=candidate.end_time,
            )
        except SlotConflict:
            salon = await self._repository.get_salon(state.salon_id)
            services = await self._repository.list_services(state.salon_id)
            if salon is None:
                raise StorageUnavailable(f"Salon {state.salon_id} disappeared mid-conversation")
            return await self._offer_slots(
                state, salon, _find_service(services, candidate.service_id), store,
                after_conflict=True,
            )

        self._advance(state, Trigger.CONFIRMED)
        await store.delete(state.key)
        return ReplyDescriptor.text(
            render(
                "booked", language,
                service=state.pending_intent.service_name or "",
                staff=candidate.staff_name,
                day=format_day(candidate.start_time),
                time=format_time(candidate.start_time),
                code=booking.booking_code,
            )
        )

    @staticmethod
    def _advance(state: ConversationState, trigger: Trigger) -> None:
        """Apply a trigger to the state's phase (terminal triggers leave it as is)."""
        target = next_phase(state.phase, trigger)
        logger.debug(
            f"Conversation {state.key}: {state.phase.value} --{trigger.value}--> "
            f"{target.value if target else 'closed'}"
        )
        if target is not None:
            state.phase = target


def _find_service(services: list[ServiceInfo], service_id: Optional[str]) -> Optional[ServiceInfo]:
    for service in services:
        if service.id == service_id:
            return service
    return None


# Singleton
_router: Optional[EventRouter] = None


async def get_event_router() -> EventRouter:
    """Get singleton EventRouter backed by the SQL repository."""
    global _router
    if _router is None:
        from quickbook.core.booking.sql_repository import SqlBookingRepository
        _router = EventRouter(SqlBookingRepository())
    return _router
