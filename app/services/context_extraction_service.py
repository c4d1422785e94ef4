"""
Transcript -> conversation context extraction using OpenAI.

Best-effort enrichment: every failure path logs and returns None so the
webhook that triggered it is never affected.
"""

import json
from datetime import UTC, date, datetime, timedelta
from typing import Any

import openai
from openai import AsyncOpenAI

from app.config import Settings, settings
from app.db.helpers import DatabaseError
from app.infrastructure.observability.logging import get_logger
from app.models.domain.call_domain import CallContext
from app.repositories.customer_context_repository import CustomerContextRepository

logger = get_logger(__name__)

TRANSCRIPT_CHAR_LIMIT = 2000
VALID_ENGAGEMENT_LEVELS = {"high", "medium", "low"}
VALID_TONES = {"gentle", "direct", "balanced"}


class ContextExtractionError(Exception):
    """Raised when the model response cannot be turned into a CallContext."""

    def __init__(self, message: str, recoverable: bool = True):
        super().__init__(message)
        self.recoverable = recoverable


def _system_prompt(today: date) -> str:
    tomorrow = today + timedelta(days=1)
    next_week = today + timedelta(days=7)
    return f"""You are analyzing a coaching call transcript to extract context and learning signals.

CURRENT DATE CONTEXT:
- Today: {today.isoformat()} ({today.strftime("%A")})
- Tomorrow: {tomorrow.isoformat()}
- Next week: ~{next_week.isoformat()}

EXTRACT:
1. mood: the customer's emotional state, one lowercase word, or null
2. events: upcoming events they mentioned, relative dates converted to YYYY-MM-DD
3. positiveSignals: exact phrases showing something resonated
4. energyLevel: one word ("tired", "excited", "neutral", "energetic", "low") or null
5. engagementLevel: "high", "medium", "low" or null
6. progressIndicators: mentions of actions taken or progress made
7. tonePreference: "gentle", "direct", "balanced" or null

RETURN VALID JSON:
{{
  "mood": "string or null",
  "events": [{{"title": "string", "date": "YYYY-MM-DD"}}],
  "positiveSignals": ["string"],
  "energyLevel": "string or null",
  "engagementLevel": "string or null",
  "progressIndicators": ["string"],
  "tonePreference": "string or null"
}}"""


def parse_context_payload(payload: Any) -> CallContext:
    """
    Validate the model's JSON into a CallContext.

    Raises:
        ContextExtractionError: payload shape is unusable
    """
    if not isinstance(payload, dict):
        raise ContextExtractionError("Context payload is not an object")

    mood = payload.get("mood")
    if mood is not None and (not isinstance(mood, str) or len(mood) > 50 or " " in mood.strip()):
        raise ContextExtractionError("Invalid mood value")

    raw_events = payload.get("events") or []
    if not isinstance(raw_events, list):
        raise ContextExtractionError("events must be a list")

    events = []
    for event in raw_events:
        if not isinstance(event, dict) or not isinstance(event.get("title"), str):
            raise ContextExtractionError("Invalid event entry")
        title = event["title"].strip()[:200]
        event_date = event.get("date")
        if event_date:
            try:
                event_date = date.fromisoformat(str(event_date)).isoformat()
            except ValueError as e:
                raise ContextExtractionError(f"Invalid event date: {event_date}") from e
        events.append({"title": title, "date": event_date or None})

    for list_field in ("positiveSignals", "progressIndicators"):
        if payload.get(list_field) is not None and not isinstance(payload[list_field], list):
            raise ContextExtractionError(f"{list_field} must be a list")

    engagement = payload.get("engagementLevel")
    if engagement is not None and engagement not in VALID_ENGAGEMENT_LEVELS:
        engagement = None

    tone = payload.get("tonePreference")
    if tone is not None and tone not in VALID_TONES:
        tone = None

    energy = payload.get("energyLevel")
    if energy is not None and (not isinstance(energy, str) or len(energy) > 20):
        energy = None

    return CallContext(
        mood=mood.strip().lower() if mood else None,
        upcoming_events=events,
        positive_signals=[str(s) for s in payload.get("positiveSignals") or []],
        energy_level=energy,
        engagement_level=engagement,
        progress_indicators=[str(s) for s in payload.get("progressIndicators") or []],
        tone_preference=tone,
    )


class ContextExtractor:
    """
    Extracts mood, events and learning signals from call transcripts.

    Built once with its configuration. Without an API key it is disabled and
    reports that a single time, at construction.
    """

    def __init__(self, config: Settings = settings, client: AsyncOpenAI | None = None):
        self.model = config.OPENAI_MODEL
        self.timeout = config.CONTEXT_EXTRACTION_TIMEOUT_SECONDS
        self.client = client

        if self.client is None and config.OPENAI_API_KEY:
            self.client = AsyncOpenAI(api_key=config.OPENAI_API_KEY, timeout=self.timeout)

        if self.client is None:
            logger.warning("OPENAI_API_KEY not set - context extraction disabled")
        else:
            logger.info("Context extractor initialized", model=self.model, timeout=self.timeout)

    @property
    def enabled(self) -> bool:
        return self.client is not None

    async def extract(self, transcript: str, *, today: date | None = None) -> CallContext | None:
        """Return extracted context, or None when disabled or on any failure."""
        if not self.enabled or not transcript or not transcript.strip():
            return None

        today = today or datetime.now(UTC).date()

        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": _system_prompt(today)},
                    {"role": "user", "content": transcript[:TRANSCRIPT_CHAR_LIMIT]},
                ],
                response_format={"type": "json_object"},
                temperature=0.3,
                max_tokens=300,
            )

            content = response.choices[0].message.content if response.choices else None
            if not content:
                logger.warning("Empty response from OpenAI context extraction")
                return None

            context = parse_context_payload(json.loads(content))
            logger.info(
                "Context extracted",
                transcript_length=len(transcript),
                mood=context.mood,
                events_count=len(context.upcoming_events),
            )
            return context

        except openai.APITimeoutError:
            logger.warning("OpenAI context extraction timed out", timeout=self.timeout)
        except openai.APIError as e:
            logger.error("OpenAI API error during context extraction", error=str(e))
        except json.JSONDecodeError as e:
            logger.error("OpenAI returned invalid JSON", error=str(e))
        except ContextExtractionError as e:
            logger.warning("Extracted context failed validation", error=str(e))
        return None

    async def enrich_customer(
        self, customer_id: int, transcript: str, *, call_duration: int | None = None
    ) -> bool:
        """
        Extract context from a transcript and merge it into the customer's record.

        Fire-and-forget helper: never raises.
        """
        try:
            context = await self.extract(transcript)
            if context is None:
                return False

            await CustomerContextRepository.merge_context(
                customer_id, context, call_duration=call_duration
            )
            return True

        except DatabaseError as e:
            logger.warning("Failed to store call context", customer_id=customer_id, error=str(e))
        except Exception as e:
            logger.error(
                "Unexpected error enriching call context",
                customer_id=customer_id,
                error=str(e),
                error_type=type(e).__name__,
            )
        return False


# Singleton instance for application use
context_extractor = ContextExtractor()
