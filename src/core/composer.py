"""
DM Concierge - Response Composer.

Turns query results into the ordered DM units the dispatcher sends.
The LLM writes the prose; this module decides what it sees (at most two
items, as one structured line each) and what comes back out (split on the
delimiter, trimmed, empties dropped, capped).
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Sequence

from src.core.llm import LLMError, complete

if TYPE_CHECKING:
    from src.core.intent import IntentRecord
    from src.core.patterns import GreetingContext
    from src.data.models import RecommendationItem

logger = logging.getLogger(__name__)

MESSAGE_DELIMITER = "|||"
MAX_ITEMS = 2
MAX_MESSAGE_UNITS = 5           # opening + items + closing

NO_RESULTS_MESSAGE = (
    "I couldn't find something that fits that perfectly yet. "
    "Want to try a nearby neighborhood or shift the vibe a little?"
)
FRAMING_FALLBACK = "Here are a few that feel right."
CLOSING_PROMPT = "Want to refine this, or try a different direction?"


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

_FORMAT_PROMPT = f"""\
You are a calm New York City concierge writing Instagram DMs.
Format the recommendations below as separate messages, separated by {MESSAGE_DELIMITER}

- FIRST message: one calm framing line.
- For EACH recommendation, TWO messages:
  1. The details. Places: name, a short summary, why it fits, address, price tier.
     Events: name, a short summary, why it fits, date/time, price, link.
  2. A warm, editorial line (1-2 sentences) on why it is worth the trip: the room,
     the craft, the neighborhood, or a new corner of the city.
- LAST message: "{CLOSING_PROMPT}"
- 1-3 sentences per message. Never dense paragraphs.
- No labels ("Name:", "Event:", "Why you should go"). No emojis, no exclamation marks, no hype.
- Separate every message with {MESSAGE_DELIMITER}
"""

_GREETING_PROMPT = """\
You are a calm New York City concierge. Write ONE short, warm greeting line (one sentence)
for a returning user. Tone: unhurried friend. No emojis, no exclamation marks.
Only mention what is listed below. Output only the greeting text.
"""


# ---------------------------------------------------------------------------
# Item description
# ---------------------------------------------------------------------------


def describe_item(index: int, item: RecommendationItem) -> str:
    """One structured line per item, fed to the formatting call."""
    tags = ", ".join(item.tags) or "N/A"
    if item.kind == "event":
        when = item.starts_at or "N/A"
        return (
            f"{index}. Name: {item.name} | Category: {tags} | Location: {item.location or 'N/A'} "
            f"| Date: {when} | Price: {item.price_tier or 'N/A'} | Link: {item.link or 'N/A'}"
        )
    return (
        f"{index}. Name: {item.name} | Cuisine: {tags} | Address: {item.location or 'N/A'} "
        f"| Price: {item.price_tier or 'N/A'}"
    )


def _user_context(intent: IntentRecord) -> str:
    subject = intent.cuisine or intent.category or ("food" if intent.kind == "restaurant" else "something to do")
    where = intent.location_hint or "NYC"
    extras = [x for x in (intent.price_hint, intent.date_hint, intent.vibe) if x]
    suffix = f" ({', '.join(extras)})" if extras else ""
    return f'The user asked for: "{subject} in {where}"{suffix}.'


# ---------------------------------------------------------------------------
# Output handling
# ---------------------------------------------------------------------------


def split_messages(text: str) -> list[str]:
    """Split LLM output on the delimiter, trim, and drop empty units."""
    return [part.strip() for part in text.split(MESSAGE_DELIMITER) if part.strip()]


def _cap_units(messages: list[str]) -> list[str]:
    """Keep at most MAX_MESSAGE_UNITS, always keeping the closing unit."""
    if len(messages) <= MAX_MESSAGE_UNITS:
        return messages
    return messages[: MAX_MESSAGE_UNITS - 1] + [messages[-1]]


def no_results_messages() -> list[str]:
    return [NO_RESULTS_MESSAGE]


async def compose_messages(
    items: Sequence[RecommendationItem], intent: IntentRecord,
) -> list[str]:
    """Build the DM units for a set of recommendations.

    Raises LLMError if the formatting call fails; an empty item list
    never reaches the model.
    """
    if not items:
        return no_results_messages()

    chosen = list(items)[:MAX_ITEMS]
    item_lines = "\n".join(describe_item(i, item) for i, item in enumerate(chosen, start=1))
    user_message = f"{_user_context(intent)}\n\nRECOMMENDATIONS DATA:\n{item_lines}"

    text = await complete(
        system=_FORMAT_PROMPT,
        user_message=user_message,
        max_tokens=800,
    )
    text = (text or "").strip()
    logger.debug("LLM formatted response: %s", text)

    messages = split_messages(text)
    if not messages:
        logger.warning("Formatted response had no message units, using fallback")
        return [FRAMING_FALLBACK, CLOSING_PROMPT]

    return _cap_units(messages)


# ---------------------------------------------------------------------------
# Greeting
# ---------------------------------------------------------------------------


def _greeting_facts(context: GreetingContext) -> str:
    facts = []
    if context.top_location:
        facts.append(f"Often looks around {context.top_location}.")
    if context.top_cuisine:
        facts.append(f"Often asks for {context.top_cuisine}.")
    if context.current_cuisine:
        facts.append(f"Asking for {context.current_cuisine} right now.")
    else:
        facts.append("General request right now.")
    return " ".join(facts)


async def generate_greeting(context: GreetingContext | None) -> str | None:
    """Return one short greeting line, or None when there is nothing to say.

    The greeting is optional: failures are logged and yield None.
    """
    if context is None:
        return None

    try:
        text = await complete(
            system=_GREETING_PROMPT,
            user_message=_greeting_facts(context),
            max_tokens=60,
        )
    except LLMError as exc:
        logger.warning("Greeting generation failed: %s", exc)
        return None

    lines = [line.strip().strip('"') for line in (text or "").splitlines() if line.strip()]
    return lines[0] if lines else None
