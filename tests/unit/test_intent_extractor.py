"""Tests for LLM intent extraction."""

import asyncio
import pytest
from unittest.mock import AsyncMock
from datetime import date, time

from quickbook.core.errors import IncompleteIntent, OracleError, OracleTimeout, OracleUnparsable
from quickbook.core.intent.extractor import IntentExtractor
from quickbook.core.intent.matching import detect_language, match_service, resolve_day_of_week
from quickbook.core.intent.types import BookingIntent, ExtractionContext
from quickbook.core.schedule.model import ServiceInfo
from quickbook.infra.claude import ClaudeClientError

from tests.factories import HAIRCUT, MANICURE, MockClaudeResponse, intent_json


TODAY = date(2024, 1, 15)  # Monday
CATALOG = [HAIRCUT, MANICURE, ServiceInfo("svc-beard", "Beard Trim", 30)]


class TestServiceMatching:
    """Test catalog matching."""

    def test_exact_case_insensitive(self):
        assert match_service("haircut", CATALOG) == HAIRCUT

    def test_containment(self):
        assert match_service("a quick manicure please", CATALOG) == MANICURE

    def test_keyword_overlap(self):
        assert match_service("trim my beard", CATALOG).id == "svc-beard"

    def test_no_match(self):
        assert match_service("massage", CATALOG) is None
        assert match_service(None, CATALOG) is None


class TestLanguageAndDays:
    """Test language detection and weekday resolution."""

    def test_detect_language(self):
        assert detect_language("Стрижка завтра в 3") == "ru"
        assert detect_language("תספורת מחר") == "he"
        assert detect_language("¿Corte mañana?") == "es"
        assert detect_language("Corte amanhã não") == "pt"
        assert detect_language("Haircut tomorrow") == "en"

    def test_weekday_next_occurrence(self):
        assert resolve_day_of_week("friday", TODAY) == date(2024, 1, 19)
        assert resolve_day_of_week("Monday", TODAY) == TODAY
        assert resolve_day_of_week("sunday", TODAY) == date(2024, 1, 21)
        assert resolve_day_of_week("someday", TODAY) is None


class TestBookingIntent:
    """Test intent completeness and merging."""

    def test_complete_requires_time_or_flexible(self):
        intent = BookingIntent(service_name="Haircut", service_id=HAIRCUT.id, preferred_date=TODAY)
        assert intent.missing_fields() == ["time"]

        intent.is_flexible = True
        assert intent.is_complete

    def test_require_complete_raises(self):
        with pytest.raises(IncompleteIntent) as exc_info:
            BookingIntent().require_complete()
        assert exc_info.value.missing == ["service", "date", "time"]

    def test_merge_keeps_prior_fields(self):
        prior = BookingIntent(service_name="Haircut", service_id=HAIRCUT.id)
        update = BookingIntent(preferred_date=TODAY, preferred_time=time(15, 0))

        merged = prior.merge(update)

        assert merged.service_id == HAIRCUT.id
        assert merged.preferred_date == TODAY
        assert merged.preferred_time == time(15, 0)

    def test_merge_new_time_replaces_flexible(self):
        prior = BookingIntent(is_flexible=True)
        merged = prior.merge(BookingIntent(preferred_time=time(10, 0)))

        assert merged.preferred_time == time(10, 0)
        assert not merged.is_flexible

    def test_dict_round_trip(self):
        intent = BookingIntent("Haircut", HAIRCUT.id, TODAY, time(15, 0), False, "es")
        assert BookingIntent.from_dict(intent.to_dict()) == intent


class TestIntentExtractor:
    """Test extraction against a mocked model."""

    @pytest.fixture
    def mock_claude_client(self):
        """Create mock Claude client."""
        return AsyncMock()

    @pytest.fixture
    def extractor(self, mock_claude_client):
        """Create extractor with mock client."""
        return IntentExtractor(
            claude_client=mock_claude_client, timeout_seconds=0.05, max_attempts=2
        )

    def _context(self, prior=None) -> ExtractionContext:
        return ExtractionContext(known_services=CATALOG, prior_intent=prior, today=TODAY)

    def _mock_response(self, mock_client, content: str):
        mock_client.generate.return_value = MockClaudeResponse(content=content)

    @pytest.mark.asyncio
    async def test_extract_complete(self, extractor, mock_claude_client):
        """Test a full request resolves the service and parses date and time."""
        self._mock_response(
            mock_claude_client,
            intent_json(serviceName="haircut", date="2024-01-16", time="15:00"),
        )

        intent = await extractor.extract("Haircut tomorrow 3pm", self._context())

        assert intent.service_id == HAIRCUT.id
        assert intent.service_name == "Haircut"
        assert intent.preferred_date == date(2024, 1, 16)
        assert intent.preferred_time == time(15, 0)
        assert intent.is_complete

    @pytest.mark.asyncio
    async def test_markdown_fences_stripped(self, extractor, mock_claude_client):
        """Test fenced JSON is accepted."""
        fenced = "```json\n" + intent_json(serviceName="Manicure") + "\n```"
        self._mock_response(mock_claude_client, fenced)

        intent = await extractor.extract("manicure", self._context())

        assert intent.service_id == MANICURE.id

    @pytest.mark.asyncio
    async def test_day_of_week_resolved(self, extractor, mock_claude_client):
        """Test a weekday without a date becomes the next such date."""
        self._mock_response(mock_claude_client, intent_json(dayOfWeek="friday", isFlexible=True))

        intent = await extractor.extract("friday any time", self._context())

        assert intent.preferred_date == date(2024, 1, 19)
        assert intent.is_flexible

    @pytest.mark.asyncio
    async def test_invalid_fields_left_unset(self, extractor, mock_claude_client):
        """Test malformed or past values are dropped rather than guessed."""
        self._mock_response(
            mock_claude_client,
            intent_json(serviceName="Massage", date="next week", time="3ish"),
        )

        intent = await extractor.extract("massage next week around 3", self._context())

        assert intent.service_id is None
        assert intent.preferred_date is None
        assert intent.preferred_time is None
        assert intent.missing_fields() == ["service", "date", "time"]

    @pytest.mark.asyncio
    async def test_past_date_dropped(self, extractor, mock_claude_client):
        self._mock_response(mock_claude_client, intent_json(date="2024-01-01"))

        intent = await extractor.extract("january first", self._context())

        assert intent.preferred_date is None

    @pytest.mark.asyncio
    async def test_missing_keys_are_unset(self, extractor, mock_claude_client):
        """Test fields absent from the output are treated as unset."""
        self._mock_response(mock_claude_client, '{"serviceName": "Haircut"}')

        intent = await extractor.extract("haircut", self._context())

        assert intent.service_id == HAIRCUT.id
        assert intent.preferred_date is None
        assert not intent.is_flexible

    @pytest.mark.asyncio
    async def test_unsupported_language_detected_from_text(self, extractor, mock_claude_client):
        self._mock_response(mock_claude_client, intent_json(language="xx"))

        intent = await extractor.extract("Стрижка завтра", self._context())

        assert intent.language == "ru"

    @pytest.mark.asyncio
    async def test_invalid_json_unparsable(self, extractor, mock_claude_client):
        """Test unusable output is retried once before giving up."""
        self._mock_response(mock_claude_client, "Sure! You want a haircut.")

        with pytest.raises(OracleUnparsable):
            await extractor.extract("haircut", self._context())

        assert mock_claude_client.generate.call_count == 2

    @pytest.mark.asyncio
    async def test_unparsable_then_valid_recovers(self, extractor, mock_claude_client):
        mock_claude_client.generate.side_effect = [
            MockClaudeResponse(content="Sure! a haircut"),
            MockClaudeResponse(content=intent_json(serviceName="Haircut", date="2024-01-16")),
        ]

        intent = await extractor.extract("haircut tomorrow", self._context())

        assert intent.service_id == HAIRCUT.id
        assert intent.preferred_date == date(2024, 1, 16)
        assert mock_claude_client.generate.call_count == 2

    @pytest.mark.asyncio
    async def test_non_object_unparsable(self, extractor, mock_claude_client):
        self._mock_response(mock_claude_client, '["Haircut"]')

        with pytest.raises(OracleUnparsable):
            await extractor.extract("haircut", self._context())

    @pytest.mark.asyncio
    async def test_wrong_type_drops_only_that_field(self, extractor, mock_claude_client):
        """Test a mistyped field is unset while the others survive."""
        self._mock_response(
            mock_claude_client,
            '{"serviceName": "Haircut", "date": "2024-01-16", "time": 1500, "isFlexible": "perhaps"}',
        )

        intent = await extractor.extract("haircut tomorrow at 3", self._context())

        assert intent.service_id == HAIRCUT.id
        assert intent.preferred_date == date(2024, 1, 16)
        assert intent.preferred_time is None
        assert not intent.is_flexible
        assert mock_claude_client.generate.call_count == 1

    @pytest.mark.asyncio
    async def test_timeout_after_single_retry(self, extractor, mock_claude_client):
        """Test two slow attempts end in OracleTimeout."""
        async def slow(**kwargs):
            await asyncio.sleep(1)

        mock_claude_client.generate.side_effect = slow

        with pytest.raises(OracleTimeout):
            await extractor.extract("haircut", self._context())

        assert mock_claude_client.generate.call_count == 2

    @pytest.mark.asyncio
    async def test_retry_recovers(self, extractor, mock_claude_client):
        """Test a timeout followed by an answer succeeds."""
        calls = {"n": 0}

        async def flaky(**kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                await asyncio.sleep(1)
            return MockClaudeResponse(content=intent_json(serviceName="Haircut"))

        mock_claude_client.generate.side_effect = flaky

        intent = await extractor.extract("haircut", self._context())

        assert intent.service_id == HAIRCUT.id
        assert calls["n"] == 2

    @pytest.mark.asyncio
    async def test_api_failure(self, extractor, mock_claude_client):
        mock_claude_client.generate.side_effect = ClaudeClientError("overloaded")

        with pytest.raises(OracleError) as exc_info:
            await extractor.extract("haircut", self._context())

        assert not isinstance(exc_info.value, OracleTimeout)

    @pytest.mark.asyncio
    async def test_empty_text_skips_model(self, extractor, mock_claude_client):
        prior = BookingIntent(service_name="Haircut", service_id=HAIRCUT.id)

        intent = await extractor.extract("   ", self._context(prior))

        assert intent == prior
        mock_claude_client.generate.assert_not_called()

    @pytest.mark.asyncio
    async def test_prompt_carries_catalog_and_prior(self, extractor, mock_claude_client):
        self._mock_response(mock_claude_client, intent_json())
        prior = BookingIntent(service_name="Haircut", service_id=HAIRCUT.id)

        await extractor.extract("tomorrow", self._context(prior))

        prompt = mock_claude_client.generate.call_args.kwargs["prompt"]
        assert "- Beard Trim" in prompt
        assert '"service_name": "Haircut"' in prompt
        assert "2024-01-15" in prompt

    @pytest.mark.asyncio
    async def test_incremental_merge_matches_single_message(self, extractor, mock_claude_client):
        """Test "Haircut" then "tomorrow at 3pm" equals both facts at once."""
        self._mock_response(mock_claude_client, intent_json(serviceName="Haircut"))
        first = await extractor.extract("Haircut", self._context())

        self._mock_response(mock_claude_client, intent_json(date="2024-01-16", time="15:00"))
        stepwise = await extractor.extract("tomorrow at 3pm", self._context(first))

        self._mock_response(
            mock_claude_client,
            intent_json(serviceName="Haircut", date="2024-01-16", time="15:00"),
        )
        at_once = await extractor.extract("Haircut tomorrow at 3pm", self._context())

        assert stepwise == at_once
        assert stepwise.is_complete
