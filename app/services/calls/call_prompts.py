"""
Conversation prompt and CallSpec construction for outbound calls.
"""

from datetime import UTC, datetime

from app.config import Settings, settings
from app.models.domain.call_domain import CallKind, CallSpec, CallTarget, ModelConfig, VoiceConfig
from app.services.scheduling.time_math import local_part_of_day, normalize_timezone

ASSISTANT_NAME = "Lulu"
MODEL_PROVIDER = "openai"
MODEL_ID = "gpt-4-turbo"
MODEL_TEMPERATURE = 0.8
VOICE_PROVIDER = "11labs"
SILENCE_TIMEOUT_SECONDS = 20

DAILY_GREETINGS = {
    "morning": "Good morning {name}! It's {assistant}, your confidence partner. How are you doing today?",
    "afternoon": "Hey {name}! It's {assistant}. Hope your day is going well. How are you doing?",
    "evening": "Evening {name}! It's {assistant}. How was your day?",
    "night": "Hey {name}! It's {assistant}. How are you doing tonight?",
}


def build_first_message(kind: CallKind, name: str, timezone: str | None, now: datetime) -> str:
    if kind == "welcome":
        return (
            f"Hey {name}! I'm {ASSISTANT_NAME}, your confidence partner. Welcome to your daily "
            "calls! Starting tomorrow, I'll call you every day to give you a quick confidence "
            "boost. These calls are short, just two or three minutes. See you tomorrow!"
        )

    template = DAILY_GREETINGS[local_part_of_day(now, timezone)]
    return template.format(name=name, assistant=ASSISTANT_NAME)


def build_system_prompt(
    kind: CallKind,
    name: str,
    *,
    goals: str | None = None,
    context_summary: str = "",
    part_of_day: str = "morning",
    max_duration_seconds: int = 150,
) -> str:
    """System prompt for the voice assistant, personalized per customer."""
    minutes = max(1, max_duration_seconds // 60)
    lines = [
        f"You are {ASSISTANT_NAME}, a warm and upbeat confidence coach on a short phone call "
        f"with {name}.",
        f"It is {part_of_day} for {name}. Keep the whole call under {minutes} minute(s).",
    ]

    if kind == "welcome":
        lines.append(
            "This is the welcome call. Introduce yourself, explain that you will call once a day "
            "for a quick confidence boost, and end the call kindly."
        )
    else:
        lines.append(
            "This is their daily call. Ask how they are, give one specific piece of "
            "encouragement tied to their goal, and close with energy."
        )

    if goals:
        lines.append(f"Their goal: {goals.strip()}")
    if context_summary:
        lines.append(f"Context from earlier calls: {context_summary}")

    lines.append(
        "If there is no response for several seconds, check in once, then wrap up politely."
    )
    return "\n".join(lines)


def build_call_spec(
    target: CallTarget,
    kind: CallKind,
    *,
    context_summary: str = "",
    now: datetime | None = None,
    config: Settings = settings,
) -> CallSpec:
    """Assemble the provider call spec for one customer and call kind."""
    now = now or datetime.now(UTC)
    timezone = normalize_timezone(target.timezone)
    max_duration = (
        config.WELCOME_MAX_DURATION_SECONDS if kind == "welcome" else config.DAILY_MAX_DURATION_SECONDS
    )

    system_prompt = build_system_prompt(
        kind,
        target.name,
        goals=target.goals,
        context_summary=context_summary,
        part_of_day=local_part_of_day(now, timezone),
        max_duration_seconds=max_duration,
    )

    return CallSpec(
        customer_id=target.id,
        customer_name=target.name,
        kind=kind,
        phone=target.phone,
        first_message=build_first_message(kind, target.name, timezone, now),
        model=ModelConfig(
            provider=MODEL_PROVIDER,
            model=MODEL_ID,
            temperature=MODEL_TEMPERATURE,
            system_prompt=system_prompt,
        ),
        voice=VoiceConfig(provider=VOICE_PROVIDER, voice_id=config.VAPI_VOICE_ID),
        max_duration_seconds=max_duration,
        callback_url=config.webhook_callback_url(),
        silence_timeout_seconds=SILENCE_TIMEOUT_SECONDS,
        metadata={"customer_id": target.id, "call_type": kind},
    )
