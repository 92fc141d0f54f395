"""
LLM-based booking intent extraction.

Turns a free-text customer message into a BookingIntent, merging it into
the partial intent carried over from earlier turns. Model output is
untrusted: every field is validated on its own and anything that does not
validate is left unset.
"""

import asyncio
import json
import logging
import time
from datetime import date, time as time_type
from typing import Any, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    ValidationError,
    ValidationInfo,
    ValidatorFunctionWrapHandler,
    field_validator,
)

from quickbook.config import settings
from quickbook.core.errors import OracleError, OracleTimeout, OracleUnparsable
from quickbook.infra.claude import ClaudeClient, ClaudeClientError, get_claude_client
from .matching import detect_language, match_service, resolve_day_of_week
from .types import SUPPORTED_LANGUAGES, BookingIntent, ExtractionContext

logger = logging.getLogger(__name__)


SYSTEM_PROMPT = (
    "You extract salon booking requests into JSON. "
    "Never invent values the customer did not state."
)

EXTRACTION_PROMPT = """Extract the booking request from this customer message.

## What to Extract

- serviceName: The service the customer wants, using the closest name from the list below
- date: Date if mentioned (ISO format YYYY-MM-DD, relative to today: {today})
- time: Time if mentioned (24-hour format HH:MM, e.g., "3pm" -> "15:00")
- dayOfWeek: Weekday name in English if the customer named a weekday instead of a date
- language: Language of the message (one of: {languages})
- isFlexible: true if no exact time was given ("any time", "morning", "whenever")

## Services Offered

{services}

## Already Known From Earlier Messages

{prior}

## Message

"{message}"

## Response

Respond with ONLY valid JSON (use null for fields not mentioned):
{{
    "serviceName": "<name or null>",
    "date": "<YYYY-MM-DD or null>",
    "time": "<HH:MM or null>",
    "dayOfWeek": "<monday..sunday or null>",
    "language": "<code>",
    "isFlexible": <true/false>
}}"""


class ExtractedFields(BaseModel):
    """Raw model output. Unknown keys are dropped, absent or mistyped keys stay unset."""

    model_config = ConfigDict(extra="ignore")

    serviceName: Optional[str] = None
    date: Optional[str] = None
    time: Optional[str] = None
    dayOfWeek: Optional[str] = None
    language: Optional[str] = None
    isFlexible: Optional[bool] = None

    @field_validator("*", mode="wrap")
    @classmethod
    def unset_if_invalid(
        cls, value: Any, handler: ValidatorFunctionWrapHandler, info: ValidationInfo
    ) -> Any:
        """Validate each field on its own; a bad value leaves only that field unset."""
        try:
            return handler(value)
        except ValidationError:
            logger.warning(f"Dropping {info.field_name}={value!r} from intent output")
            return None


class IntentExtractor:
    """Bounded, validated wrapper around the intent model."""

    def __init__(
        self,
        claude_client: Optional[ClaudeClient] = None,
        timeout_seconds: Optional[float] = None,
        max_attempts: Optional[int] = None,
    ):
        """Initialize extractor.

        Args:
            claude_client: Optional Claude client (for testing)
            timeout_seconds: Bound on one model call (defaults to settings)
            max_attempts: Calls before giving up (defaults to settings)
        """
        self._client = claude_client
        self.timeout_seconds = timeout_seconds or settings.intent_timeout_seconds
        self.max_attempts = max_attempts or settings.intent_max_attempts

    async def _get_client(self) -> ClaudeClient:
        """Get or create Claude client."""
        if self._client is None:
            self._client = await get_claude_client()
        return self._client

    async def extract(self, text: str, context: ExtractionContext) -> BookingIntent:
        """
        Extract a booking intent and merge it into the prior one.

        Args:
            text: Customer message
            context: Known services, prior partial intent, today's date

        Returns:
            Merged BookingIntent (possibly still incomplete)

        Raises:
            OracleTimeout: Every attempt timed out
            OracleUnparsable: The model answered with something unusable
            OracleError: The model API kept failing
        """
        prior = context.prior_intent or BookingIntent(
            language=settings.default_language
        )
        text = text.strip()
        if not text:
            return prior

        today = context.today or date.today()
        prompt = self._build_prompt(text, today, context)

        fields = await self._extract_with_retry(prompt)
        extracted = self._validate(fields, text, today, context)

        merged = prior.merge(extracted)
        logger.debug(
            f"Extracted intent: service={merged.service_id}, date={merged.preferred_date}, "
            f"time={merged.preferred_time}, flexible={merged.is_flexible}, "
            f"missing={merged.missing_fields()}"
        )
        return merged

    async def _extract_with_retry(self, prompt: str) -> ExtractedFields:
        """Call the model and parse its answer, retrying slow or unusable attempts."""
        client = await self._get_client()
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_attempts + 1):
            start_time = time.time()
            try:
                response = await asyncio.wait_for(
                    client.generate(
                        prompt=prompt,
                        system_prompt=SYSTEM_PROMPT,
                        model=settings.claude_intent_model,
                        max_tokens=200,
                        temperature=0,
                        use_fallback_on_error=True,
                    ),
                    timeout=self.timeout_seconds,
                )
                logger.debug(
                    f"Intent model answered in {(time.time() - start_time) * 1000:.0f}ms "
                    f"(attempt {attempt})"
                )
                return self._parse_response(response.content)
            except asyncio.TimeoutError as e:
                logger.warning(
                    f"Intent extraction timed out after {self.timeout_seconds}s "
                    f"(attempt {attempt}/{self.max_attempts})"
                )
                last_error = e
            except OracleUnparsable as e:
                logger.warning(
                    f"Unusable intent output (attempt {attempt}/{self.max_attempts}): {e}"
                )
                last_error = e
            except ClaudeClientError as e:
                logger.warning(
                    f"Intent extraction failed (attempt {attempt}/{self.max_attempts}): {e}"
                )
                last_error = e

        if isinstance(last_error, asyncio.TimeoutError):
            raise OracleTimeout(
                f"Intent model did not answer within {self.timeout_seconds}s"
            )
        if isinstance(last_error, OracleUnparsable):
            raise last_error
        raise OracleError(f"Intent model unavailable: {last_error}")

    def _build_prompt(self, text: str, today: date, context: ExtractionContext) -> str:
        """Build extraction prompt."""
        services = "\n".join(f"- {s.name}" for s in context.known_services) or "- (none)"

        prior = "Nothing yet."
        if context.prior_intent is not None:
            known = {
                k: v for k, v in context.prior_intent.to_dict().items()
                if v not in (None, False) and k != "service_id"
            }
            if known:
                prior = json.dumps(known)

        return EXTRACTION_PROMPT.format(
            today=today.isoformat(),
            languages=", ".join(SUPPORTED_LANGUAGES),
            services=services,
            prior=prior,
            message=text,
        )

    def _parse_response(self, response: str) -> ExtractedFields:
        """Parse LLM JSON response."""
        # Clean markdown if present
        response = response.strip()
        if response.startswith("```"):
            lines = response.split("\n")
            lines = lines[1:]
            if lines and lines[-1].strip() == "```":
                lines = lines[:-1]
            response = "\n".join(lines)
        response = response.strip()

        try:
            data = json.loads(response)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse: {e}\nResponse: {response}")
            raise OracleUnparsable("Intent model returned invalid JSON") from e

        if not isinstance(data, dict):
            raise OracleUnparsable("Intent model returned a non-object")

        return ExtractedFields.model_validate(data)

    def _validate(
        self,
        fields: ExtractedFields,
        text: str,
        today: date,
        context: ExtractionContext,
    ) -> BookingIntent:
        """Check each extracted field independently; invalid ones stay unset."""
        service = match_service(fields.serviceName, context.known_services)
        if fields.serviceName and service is None:
            logger.info(f"Service '{fields.serviceName}' not in catalog")

        preferred_date = None
        if fields.date:
            try:
                preferred_date = date.fromisoformat(fields.date)
            except ValueError:
                logger.warning(f"Invalid date format: {fields.date}")
        if preferred_date is None:
            preferred_date = resolve_day_of_week(fields.dayOfWeek, today)
        if preferred_date is not None and preferred_date < today:
            logger.warning(f"Ignoring past date {preferred_date}")
            preferred_date = None

        preferred_time = None
        if fields.time:
            try:
                preferred_time = time_of_day(fields.time)
            except ValueError:
                logger.warning(f"Invalid time format: {fields.time}")

        language = (fields.language or "").lower()
        if language not in SUPPORTED_LANGUAGES:
            language = detect_language(text)

        return BookingIntent(
            service_name=service.name if service else None,
            service_id=service.id if service else None,
            preferred_date=preferred_date,
            preferred_time=preferred_time,
            is_flexible=bool(fields.isFlexible),
            language=language,
        )


def time_of_day(value: str) -> time_type:
    """Parse an "HH:MM" wall-clock time, dropping seconds."""
    parsed = time_type.fromisoformat(value.strip())
    return parsed.replace(second=0, microsecond=0, tzinfo=None)


# Singleton
_extractor: Optional[IntentExtractor] = None


async def get_intent_extractor() -> IntentExtractor:
    """Get singleton IntentExtractor."""
    global _extractor
    if _extractor is None:
        _extractor = IntentExtractor()
    return _extractor
