"""
Per-customer conversation context stored as JSONB.

The merge rules live in ``merge_context_data`` so they can be exercised
without a database.
"""

from datetime import UTC, date, datetime
from typing import Any

import psycopg
from psycopg.types.json import Jsonb

from app.db.helpers import DatabaseError, execute_query, fetch_one
from app.infrastructure.observability.logging import get_logger
from app.models.domain.call_domain import CallContext

logger = get_logger(__name__)

MAX_UPCOMING_EVENTS = 5
MAX_SIGNAL_HISTORY = 10
MAX_MOOD_HISTORY = 7


def _event_date(event: dict[str, Any]) -> date | None:
    raw = event.get("date")
    if not raw:
        return None
    try:
        return date.fromisoformat(str(raw))
    except ValueError:
        return None


def merge_context_data(
    current: dict[str, Any] | None,
    context: CallContext,
    *,
    now: datetime | None = None,
    call_duration: int | None = None,
) -> dict[str, Any]:
    """
    Fold one call's extracted context into the stored context document.

    - current mood replaced when a new one was heard, mood history capped
    - upcoming events de-duplicated by (title, date), past ones dropped,
      sorted by date (undated last), capped
    - learning signal history capped to the most recent calls
    """
    now = now or datetime.now(UTC)
    today = now.date()
    merged = dict(current or {})

    if context.mood:
        merged["currentMood"] = context.mood
        mood_history = list(merged.get("moodHistory") or [])
        mood_history.append({"date": today.isoformat(), "mood": context.mood})
        merged["moodHistory"] = mood_history[-MAX_MOOD_HISTORY:]

    events_by_key: dict[tuple[str, str], dict[str, Any]] = {}
    for event in list(merged.get("upcomingEvents") or []) + list(context.upcoming_events):
        title = str(event.get("title") or "").strip()
        if not title:
            continue
        event_day = _event_date(event)
        if event_day is not None and event_day < today:
            continue
        key = (title.lower(), event_day.isoformat() if event_day else "")
        events_by_key[key] = {"title": title, "date": event_day.isoformat() if event_day else None}

    merged["upcomingEvents"] = sorted(
        events_by_key.values(),
        key=lambda event: (event["date"] is None, event["date"] or ""),
    )[:MAX_UPCOMING_EVENTS]

    signal = {
        "date": today.isoformat(),
        "positiveSignals": list(context.positive_signals),
        "energyLevel": context.energy_level,
        "engagementLevel": context.engagement_level,
        "progressIndicators": list(context.progress_indicators),
        "tonePreference": context.tone_preference,
        "callDuration": call_duration,
    }
    history = list(merged.get("learningHistory") or [])
    history.append(signal)
    merged["learningHistory"] = history[-MAX_SIGNAL_HISTORY:]

    if context.tone_preference:
        merged["effectiveTone"] = context.tone_preference

    merged["callCount"] = int(merged.get("callCount") or 0) + 1
    merged["lastUpdated"] = now.isoformat()
    return merged


def summarize_context(context_data: dict[str, Any] | None) -> str:
    """One-line summary of stored context for the call prompt."""
    if not context_data:
        return ""

    parts = []
    if context_data.get("currentMood"):
        parts.append(f"Current mood: {context_data['currentMood']}")

    events = context_data.get("upcomingEvents") or []
    if events:
        next_event = events[0]
        when = f" ({next_event['date']})" if next_event.get("date") else ""
        parts.append(f"Upcoming: {next_event['title']}{when}")

    if context_data.get("effectiveTone"):
        parts.append(f"They respond best to a {context_data['effectiveTone']} tone")

    return ". ".join(parts)


class CustomerContextRepository:
    @classmethod
    async def get_context(
        cls, customer_id: int, *, connection: psycopg.AsyncConnection | None = None
    ) -> dict[str, Any]:
        row = await fetch_one(
            "SELECT context_data FROM customer_context WHERE customer_id = %s",
            (customer_id,),
            connection=connection,
        )
        return dict(row["context_data"] or {}) if row else {}

    @classmethod
    async def merge_context(
        cls,
        customer_id: int,
        context: CallContext,
        *,
        call_duration: int | None = None,
        now: datetime | None = None,
        connection: psycopg.AsyncConnection | None = None,
    ) -> dict[str, Any]:
        """Read-merge-upsert the context document; returns the stored value."""
        current = await cls.get_context(customer_id, connection=connection)
        merged = merge_context_data(current, context, now=now, call_duration=call_duration)

        query = """
            INSERT INTO customer_context (customer_id, context_data, updated_at)
            VALUES (%s, %s, NOW())
            ON CONFLICT (customer_id)
            DO UPDATE SET context_data = EXCLUDED.context_data, updated_at = NOW()
        """
        await execute_query(query, (customer_id, Jsonb(merged)), connection=connection)

        logger.info(
            "Customer context updated",
            customer_id=customer_id,
            mood=merged.get("currentMood"),
            upcoming_events=len(merged["upcomingEvents"]),
        )
        return merged

    @classmethod
    async def get_context_summary(cls, customer_id: int) -> str:
        """Prompt summary; empty string when nothing is stored or the read fails."""
        try:
            return summarize_context(await cls.get_context(customer_id))
        except DatabaseError as e:
            logger.warning("Context summary unavailable", customer_id=customer_id, error=str(e))
            return ""
