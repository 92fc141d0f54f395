"""End-to-end conversation tests for the event router."""

import asyncio
import pytest
from unittest.mock import AsyncMock
from datetime import datetime, timedelta, timezone

from quickbook.core.conversation.models import ConversationKey
from quickbook.core.conversation.replies import ReplyKind, render
from quickbook.core.conversation.router import EventRouter
from quickbook.core.conversation.state import ConversationPhase
from quickbook.core.conversation.store import ConversationStore
from quickbook.core.errors import StorageUnavailable
from quickbook.core.intent.extractor import IntentExtractor
from quickbook.core.schedule.model import WEEKDAYS
from quickbook.infra.claude import ClaudeClientError

from tests.factories import (
    SALON_ID,
    MockClaudeResponse,
    at,
    every_day,
    intent_json,
    make_repository,
    make_staff,
    tap_event,
    text_event,
    tomorrow,
)


CUSTOMER = "+15550001"
KEY = ConversationKey(SALON_ID, CUSTOMER)


class TestEventRouter:
    """Drive whole conversations through the router."""

    @pytest.fixture
    def mock_claude_client(self):
        """Create mock Claude client."""
        return AsyncMock()

    @pytest.fixture
    def repository(self):
        return make_repository()

    @pytest.fixture
    def store(self):
        return ConversationStore(ttl_seconds=600, lock_timeout_seconds=5)

    @pytest.fixture
    def router(self, repository, store, mock_claude_client):
        extractor = IntentExtractor(
            claude_client=mock_claude_client, timeout_seconds=0.5, max_attempts=2
        )
        return EventRouter(repository, store=store, extractor=extractor)

    def _model_says(self, mock_client, **fields):
        mock_client.generate.return_value = MockClaudeResponse(content=intent_json(**fields))

    def _haircut_tomorrow_at_3(self, mock_client):
        self._model_says(
            mock_client,
            serviceName="Haircut",
            date=tomorrow().isoformat(),
            time="15:00",
        )

    @pytest.mark.asyncio
    async def test_full_booking_flow(self, router, repository, store, mock_claude_client):
        """Test text -> offer -> choose -> confirm ends in one booking."""
        self._haircut_tomorrow_at_3(mock_claude_client)

        offer = await router.handle(text_event("m1", "Haircut tomorrow 3pm"))

        assert offer.kind == ReplyKind.INTERACTIVE
        assert [o.label for o in offer.options] == ["15:00 Anna", "14:00 Anna", "16:00 Anna"]

        card = await router.handle(tap_event("m2", offer.options[0].payload_id))

        assert card.kind == ReplyKind.INTERACTIVE
        assert len(card.options) == 2
        assert (await store.get(KEY)).phase == ConversationPhase.AWAITING_CONFIRMATION

        done = await router.handle(tap_event("m3", card.options[0].payload_id))

        assert done.kind == ReplyKind.TEXT
        assert done.body.startswith("You're booked!")
        assert len(repository.bookings) == 1
        booking = repository.bookings[0]
        assert booking.booking_code.startswith("BK-")
        assert done.body.endswith(f"Booking code: {booking.booking_code}")
        assert booking.staff_id == "staff-a"
        assert booking.start_time == at(tomorrow(), 15)
        assert booking.end_time == at(tomorrow(), 16)
        assert booking.customer_handle == CUSTOMER
        assert await store.get(KEY) is None

    @pytest.mark.asyncio
    async def test_redelivered_confirm_is_idempotent(self, router, repository, mock_claude_client):
        """Test a replayed event returns the same reply with no new booking."""
        self._haircut_tomorrow_at_3(mock_claude_client)
        offer = await router.handle(text_event("m1", "Haircut tomorrow 3pm"))
        card = await router.handle(tap_event("m2", offer.options[0].payload_id))
        confirm = tap_event("m3", card.options[0].payload_id)

        first = await router.handle(confirm)
        replay = await router.handle(confirm)

        assert replay == first
        assert len(repository.bookings) == 1

    @pytest.mark.asyncio
    async def test_redelivered_text_skips_extraction(self, router, mock_claude_client):
        self._haircut_tomorrow_at_3(mock_claude_client)
        event = text_event("m1", "Haircut tomorrow 3pm")

        first = await router.handle(event)
        replay = await router.handle(event)

        assert replay == first
        assert mock_claude_client.generate.call_count == 1

    @pytest.mark.asyncio
    async def test_redelivery_racing_first_delivery(self, router, repository, mock_claude_client):
        """Test a redelivery whose ledger read predates the first delivery's record."""
        self._haircut_tomorrow_at_3(mock_claude_client)
        event = text_event("m1", "Haircut tomorrow 3pm")
        first_done = asyncio.Event()
        real_get_event = repository.get_event
        reads = 0

        async def stale_first_read(event_id):
            nonlocal reads
            reads += 1
            record = await real_get_event(event_id)
            if reads == 1:
                await first_done.wait()
            return record

        repository.get_event = stale_first_read
        late = asyncio.create_task(router.handle(event))
        while reads == 0:
            await asyncio.sleep(0)

        first = await router.handle(event)
        first_done.set()
        replay = await late

        assert replay == first
        assert mock_claude_client.generate.call_count == 1

    @pytest.mark.asyncio
    async def test_race_for_last_slot(self, store, mock_claude_client):
        """Test two customers confirming the only slot: one booking, one re-offer."""
        repository = make_repository(
            staff=[make_staff("staff-a", "Anna", hours=every_day("15:00", "16:00"))]
        )
        extractor = IntentExtractor(claude_client=mock_claude_client, timeout_seconds=0.5)
        router = EventRouter(repository, store=store, extractor=extractor)
        self._haircut_tomorrow_at_3(mock_claude_client)

        confirms = []
        for handle in ("+1001", "+1002"):
            offer = await router.handle(text_event(f"t-{handle}", "Haircut tomorrow 3pm", handle))
            assert [o.label for o in offer.options] == ["15:00 Anna"]
            card = await router.handle(tap_event(f"s-{handle}", offer.options[0].payload_id, handle))
            confirms.append(tap_event(f"c-{handle}", card.options[0].payload_id, handle))

        replies = await asyncio.gather(*(router.handle(c) for c in confirms))

        assert len(repository.bookings) == 1
        booked = [r for r in replies if r.kind == ReplyKind.TEXT]
        reoffered = [r for r in replies if r.kind == ReplyKind.INTERACTIVE]
        assert len(booked) == 1
        assert len(reoffered) == 1
        assert reoffered[0].body == render("slot_taken", "en")
        assert reoffered[0].options

        winner = repository.bookings[0].customer_handle
        loser = "+1002" if winner == "+1001" else "+1001"
        state = await store.get(ConversationKey(SALON_ID, loser))
        assert state.phase == ConversationPhase.AWAITING_SLOT_CHOICE

    @pytest.mark.asyncio
    async def test_tap_after_expiry_is_stale(self, router, store, repository, mock_claude_client):
        self._haircut_tomorrow_at_3(mock_claude_client)
        offer = await router.handle(text_event("m1", "Haircut tomorrow 3pm"))
        store._in_memory_fallback[str(KEY)].expires_at = (
            datetime.now(timezone.utc) - timedelta(seconds=1)
        )

        reply = await router.handle(tap_event("m2", offer.options[0].payload_id))

        assert reply.kind == ReplyKind.TEXT
        assert reply.body == render("stale_option", "en")
        assert repository.bookings == []

    @pytest.mark.asyncio
    async def test_garbage_payload_is_stale(self, router):
        reply = await router.handle(tap_event("m1", "definitely_not_a_button"))

        assert reply.body == render("stale_option", "en")

    @pytest.mark.asyncio
    async def test_clarification_across_turns(self, router, mock_claude_client):
        """Test missing fields are asked for, then filled by the next message."""
        self._model_says(mock_claude_client, serviceName="Haircut")

        question = await router.handle(text_event("m1", "Haircut"))

        assert question.kind == ReplyKind.TEXT
        assert question.body == render("ask_date", "en", service="Haircut")

        self._model_says(mock_claude_client, date=tomorrow().isoformat(), time="15:00")
        offer = await router.handle(text_event("m2", "tomorrow at 3pm"))

        assert offer.kind == ReplyKind.INTERACTIVE
        assert offer.options[0].label == "15:00 Anna"

    @pytest.mark.asyncio
    async def test_unknown_service_lists_catalog(self, router, mock_claude_client):
        self._model_says(mock_claude_client, serviceName="Massage")

        reply = await router.handle(text_event("m1", "Massage please"))

        assert "• Haircut" in reply.body
        assert "• Manicure" in reply.body

    @pytest.mark.asyncio
    async def test_oracle_failure_asks_to_restate(self, router, store, mock_claude_client):
        mock_claude_client.generate.side_effect = ClaudeClientError("overloaded")

        reply = await router.handle(text_event("m1", "Стрижка завтра в 3"))

        assert reply.kind == ReplyKind.TEXT
        assert reply.body == render("restate", "ru")
        assert await store.get(KEY) is None

    @pytest.mark.asyncio
    async def test_text_during_confirmation_restarts_search(
        self, router, store, repository, mock_claude_client
    ):
        """Test new text mid-confirmation re-offers and retires the old buttons."""
        self._haircut_tomorrow_at_3(mock_claude_client)
        offer = await router.handle(text_event("m1", "Haircut tomorrow 3pm"))
        card = await router.handle(tap_event("m2", offer.options[0].payload_id))

        self._model_says(mock_claude_client, time="10:00")
        new_offer = await router.handle(text_event("m3", "actually 10am"))

        assert new_offer.kind == ReplyKind.INTERACTIVE
        assert new_offer.options[0].label == "10:00 Anna"
        assert (await store.get(KEY)).phase == ConversationPhase.AWAITING_SLOT_CHOICE

        stale = await router.handle(tap_event("m4", card.options[0].payload_id))

        assert stale.body == render("stale_option", "en")
        assert repository.bookings == []

    @pytest.mark.asyncio
    async def test_cancel(self, router, store, repository, mock_claude_client):
        self._haircut_tomorrow_at_3(mock_claude_client)
        offer = await router.handle(text_event("m1", "Haircut tomorrow 3pm"))
        card = await router.handle(tap_event("m2", offer.options[0].payload_id))

        reply = await router.handle(tap_event("m3", card.options[1].payload_id))

        assert reply.body == render("cancelled", "en")
        assert await store.get(KEY) is None
        assert repository.bookings == []

    @pytest.mark.asyncio
    async def test_no_slots(self, store, mock_claude_client):
        repository = make_repository(staff=[])
        extractor = IntentExtractor(claude_client=mock_claude_client, timeout_seconds=0.5)
        router = EventRouter(repository, store=store, extractor=extractor)
        self._haircut_tomorrow_at_3(mock_claude_client)

        reply = await router.handle(text_event("m1", "Haircut tomorrow 3pm"))

        assert reply.kind == ReplyKind.TEXT
        assert reply.body == render("no_slots", "en")
        assert (await store.get(KEY)).phase == ConversationPhase.IDLE

    @pytest.mark.asyncio
    async def test_storage_failure_is_not_recorded(self, router, repository, mock_claude_client):
        """Test a failed turn asks to retry and leaves the event re-processable."""
        self._haircut_tomorrow_at_3(mock_claude_client)
        original_get_salon = repository.get_salon
        repository.get_salon = AsyncMock(side_effect=StorageUnavailable("db down"))

        reply = await router.handle(text_event("m1", "Haircut tomorrow 3pm"))

        assert reply.body == render("try_again", "en")
        assert await repository.get_event("m1") is None

        repository.get_salon = original_get_salon
        retry = await router.handle(text_event("m1", "Haircut tomorrow 3pm"))

        assert retry.kind == ReplyKind.INTERACTIVE
        assert (await repository.get_event("m1")).reply == retry.to_dict()

    @pytest.mark.asyncio
    async def test_reselect_while_confirming(self, router, store, repository, mock_claude_client):
        """Test tapping another slot on the same card switches the selection."""
        self._haircut_tomorrow_at_3(mock_claude_client)
        offer = await router.handle(text_event("m1", "Haircut tomorrow 3pm"))
        await router.handle(tap_event("m2", offer.options[0].payload_id))

        card = await router.handle(tap_event("m3", offer.options[2].payload_id))
        await router.handle(tap_event("m4", card.options[0].payload_id))

        assert [b.start_time for b in repository.bookings] == [at(tomorrow(), 16)]

    @pytest.mark.asyncio
    async def test_conflict_without_alternatives(self, store, mock_claude_client):
        """Test losing the only slot says it was taken, not just that nothing is free."""
        day = tomorrow()
        hours = {WEEKDAYS[day.weekday()]: {"start": "15:00", "end": "16:00"}}
        repository = make_repository(staff=[make_staff("staff-a", "Anna", hours=hours)])
        extractor = IntentExtractor(claude_client=mock_claude_client, timeout_seconds=0.5)
        router = EventRouter(repository, store=store, extractor=extractor)
        self._haircut_tomorrow_at_3(mock_claude_client)
        offer = await router.handle(text_event("m1", "Haircut tomorrow 3pm"))
        card = await router.handle(tap_event("m2", offer.options[0].payload_id))
        await repository.insert_booking(
            SALON_ID, "staff-a", "svc-haircut", "+1999", at(day, 15), at(day, 16)
        )

        reply = await router.handle(tap_event("m3", card.options[0].payload_id))

        assert reply.kind == ReplyKind.TEXT
        assert reply.body == render("no_slots_after_conflict", "en")
        assert (await store.get(KEY)).phase == ConversationPhase.IDLE
        assert [b.customer_handle for b in repository.bookings] == ["+1999"]
