"""
DM Concierge - Intent Classifier.

Turns one inbound DM plus the last few turns of the conversation into a
structured IntentRecord with a confidence score and a next action.

The language model does the extraction; this module owns the contract
around it:
  - the model's JSON is parsed leniently (code fences stripped, legacy
    key names accepted, anything malformed → canonical fallback)
  - confidence bands decide the action, whatever the model proposed
  - rejections ("no", "something else") always ask what to change
  - a "yes" to our own clarifying question confirms the gathered filters
  - a missing location never triggers the same question twice
"""

from __future__ import annotations

import json
import logging
import re
from datetime import date
from typing import TYPE_CHECKING, Any, Literal, Sequence

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from src.core.llm import LLMError, complete

if TYPE_CHECKING:
    from src.data.models import ConversationEntry

logger = logging.getLogger(__name__)

RECOMMEND_THRESHOLD = 0.7
CLARIFY_THRESHOLD = 0.4
FALLBACK_CONFIDENCE = 0.3
CONTEXT_TURNS = 3
CITYWIDE = "citywide"

FALLBACK_QUESTION = (
    "Hey, tell me what you're in the mood for. "
    "Food, something happening tonight, or just an idea?"
)
REJECTION_QUESTION = "Got it. What should I change: the area, the type of place, or the budget?"
LOCATION_QUESTION = "Any borough or neighborhood in mind? Citywide works too."
WHAT_QUESTION = "Are you thinking food, or something to do?"
ALTERNATE_QUESTION = "Tell me a little more: a cuisine, an activity, or a vibe you're after?"


# ---------------------------------------------------------------------------
# IntentRecord: shared contract with the query engine and the composer
# ---------------------------------------------------------------------------

_KIND_SYNONYMS = {
    "restaurant": "restaurant", "restaurants": "restaurant", "food": "restaurant",
    "place": "restaurant", "event": "event", "events": "event", "activity": "event",
    "unclear": "unclear", "unknown": "unclear",
}
_NULLISH = {"", "null", "none", "n/a", "na", "unknown"}


class IntentRecord(BaseModel):
    """Structured intent extracted from a DM.

    JSON example:
    {
        "kind": "restaurant",
        "cuisine": "sushi",
        "category": null,
        "location": "Brooklyn",
        "price": "cheap",
        "date": null,
        "vibe": "cozy",
        "confidence": 0.8,
        "action": "recommend",
        "clarifying_question": null
    }
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    kind: Literal["restaurant", "event", "unclear"] = Field(
        "unclear", validation_alias=AliasChoices("kind", "type"),
    )
    cuisine: str | None = None
    category: str | None = None
    location_hint: str | None = Field(
        None, validation_alias=AliasChoices("location_hint", "location", "borough"),
    )
    price_hint: str | None = Field(
        None, validation_alias=AliasChoices("price_hint", "price", "priceIntent"),
    )
    date_hint: str | None = Field(
        None, validation_alias=AliasChoices("date_hint", "date", "dateIntent"),
    )
    vibe: str | None = Field(None, validation_alias=AliasChoices("vibe", "vibeSignal"))
    confidence: float = Field(
        0.0, validation_alias=AliasChoices("confidence", "confidenceScore"),
    )
    action: Literal["recommend", "clarify", "direct"] = "direct"
    clarifying_question: str | None = Field(
        None, validation_alias=AliasChoices("clarifying_question", "clarifyingQuestion"),
    )

    @field_validator("kind", mode="before")
    @classmethod
    def normalize_kind(cls, v: Any) -> Any:
        if v is None:
            return "unclear"
        if isinstance(v, str):
            return _KIND_SYNONYMS.get(v.strip().lower(), v.strip().lower())
        return v

    @field_validator("action", mode="before")
    @classmethod
    def normalize_action(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator(
        "cuisine", "category", "location_hint", "price_hint", "date_hint",
        "vibe", "clarifying_question", mode="before",
    )
    @classmethod
    def blank_to_none(cls, v: Any) -> Any:
        if v is None:
            return None
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            v = str(v)
        if isinstance(v, str):
            v = v.strip()
            return None if v.lower() in _NULLISH else v
        return v

    @field_validator("confidence")
    @classmethod
    def clamp_confidence(cls, v: float) -> float:
        return min(max(v, 0.0), 1.0)

    def filters(self) -> dict[str, str]:
        """Filters gathered so far, in a stable order."""
        pairs = {
            "kind": self.kind if self.kind != "unclear" else None,
            "cuisine": self.cuisine,
            "category": self.category,
            "location": self.location_hint,
            "price": self.price_hint,
            "date": self.date_hint,
            "vibe": self.vibe,
        }
        return {k: v for k, v in pairs.items() if v}

    def has_concrete_filter(self) -> bool:
        return any((self.cuisine, self.category, self.price_hint, self.date_hint, self.vibe))

    def has_location_signal(self) -> bool:
        return bool(self.location_hint)


def fallback_intent() -> IntentRecord:
    """Canonical low-confidence intent used whenever classification fails."""
    return IntentRecord(
        kind="unclear",
        confidence=FALLBACK_CONFIDENCE,
        action="direct",
        clarifying_question=FALLBACK_QUESTION,
    )


# ---------------------------------------------------------------------------
# System prompt for LLM
# ---------------------------------------------------------------------------

_SYSTEM_PROMPT = """\
You are a calm, editorially-voiced New York City concierge living inside Instagram DMs.
Measured, observant, kind, understated. Never salesy. No hype, no all-caps, no emojis.

Today's date is {today}.

Your job: read the user's message (and the prior conversation, if any) and extract what they want.
Carry forward filters already gathered in the prior conversation unless the user changes them.

Return ONLY a JSON object with this schema:
{{"kind": "restaurant" | "event" | "unclear", "cuisine": string|null, "category": string|null, \
"location": string|null, "price": string|null, "date": string|null, "vibe": string|null, \
"confidence": number 0.0-1.0, "action": "recommend" | "clarify" | "direct", \
"clarifying_question": string|null}}

- "location" = borough or neighborhood. If the user says "New York", "anywhere", "I don't care",
  or stays broad after being asked, set location = "citywide".
- "price" = the user's words for budget ("cheap", "splurge") or a tier "$" to "$$$$".
- "vibe" = a mood word ("cozy", "lively", "date night"), only if stated.

Confidence:
- >= 0.7 → "recommend": you know the kind, at least one filter (cuisine/category/price/date/vibe)
  and any location, including "citywide".
- 0.4-0.69 → "clarify": ask exactly ONE short follow-up question. Never ask the same question twice in a row.
- < 0.4 → "direct": ask what they are in the mood for.

If the user says "no", "stop", "wrong" or "something else", set action = "direct" and ask what to change.
If the user says "yes" to your previous question, they confirmed the filters: action = "recommend", confidence >= 0.7.

No markdown, no explanation, no extra text. Just the JSON object.
"""


# ---------------------------------------------------------------------------
# Response Cleaning Functions
# ---------------------------------------------------------------------------

_FENCE_OPEN = re.compile(r"^```[a-zA-Z]*\s*")
_FENCE_CLOSE = re.compile(r"\s*```$")


def _clean_llm_response(raw_text: str) -> str:
    """Remove markdown code block delimiters from LLM's raw response."""
    cleaned_text = raw_text.strip()
    cleaned_text = _FENCE_OPEN.sub("", cleaned_text)
    cleaned_text = _FENCE_CLOSE.sub("", cleaned_text)
    return cleaned_text.strip()


def _parse_intent(raw_text: str) -> IntentRecord:
    """Parse cleaned model output. Raises ValueError on anything malformed."""
    if not raw_text:
        raise ValueError("empty response")
    data = json.loads(raw_text)
    if isinstance(data, list) and len(data) == 1:
        data = data[0]
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    return IntentRecord.model_validate(data)


# ---------------------------------------------------------------------------
# Prior context digest
# ---------------------------------------------------------------------------


def _entry_intent(entry: ConversationEntry) -> IntentRecord | None:
    try:
        return IntentRecord.model_validate(entry.parsed_intent or {})
    except ValidationError:
        return None


def build_context_digest(prior_context: Sequence[ConversationEntry]) -> str:
    """Serialize prior turns (given newest-first) into an oldest-first digest."""
    if not prior_context:
        return ""

    lines = []
    for entry in reversed(list(prior_context)[:CONTEXT_TURNS]):
        intent = _entry_intent(entry)
        filters = ", ".join(f"{k}={v}" for k, v in (intent.filters() if intent else {}).items())
        lines.append(
            f'User said: "{entry.raw_message}" -> Filters gathered so far: [{filters}] '
            f"-> Bot responded: {entry.bot_response or 'N/A'}"
        )
    return "PRIOR CONVERSATION CONTEXT (oldest first):\n" + "\n".join(lines)


# ---------------------------------------------------------------------------
# Contract enforcement
# ---------------------------------------------------------------------------

# Correction words count only at the start or right after a negating lead-in
# ("no, ...", "that's ...", "but ..."); "bus stop" or "nothing wrong" is a request.
_REJECTION_LEAD = r"(?:no|nope|nah|but|not|that[’']?s|that is|it[’']?s|it is)"
_REJECTION_WORDS = r"(?:stop|wrong|something else|not that|not this|not it|try again)"
_REJECTION_RE = re.compile(
    r"^\s*(no|nope|nah)\b(?!\s+(preference|pref|budget|limit|rush|worries|idea))"
    rf"|(?:^\s*|\b{_REJECTION_LEAD}[\s,]+(?:(?:all|totally|completely|just|so|still)\s+)?)"
    rf"{_REJECTION_WORDS}\b",
    re.IGNORECASE,
)
_AFFIRMATION_RE = re.compile(
    r"^\s*(yes|yeah|yea|yep|yup|sure|ok|okay|sounds good|perfect|correct|exactly|"
    r"please|do it|go ahead|that works|definitely|absolutely)\b",
    re.IGNORECASE,
)


def is_rejection(message: str) -> bool:
    return bool(_REJECTION_RE.search(message))


def is_affirmation(message: str) -> bool:
    return bool(_AFFIRMATION_RE.search(message)) and not is_rejection(message)


def _same_question(a: str | None, b: str | None) -> bool:
    if not a or not b:
        return False
    norm_a = " ".join(a.lower().split())
    norm_b = " ".join(b.lower().split())
    return norm_a == norm_b or norm_a in norm_b


def _carry_forward(current: IntentRecord, prior: IntentRecord) -> dict[str, Any]:
    """Fill filters missing on the current intent from the prior one."""
    update: dict[str, Any] = {}
    for field in ("cuisine", "category", "location_hint", "price_hint", "date_hint", "vibe"):
        if getattr(current, field) is None and getattr(prior, field) is not None:
            update[field] = getattr(prior, field)
    if current.kind == "unclear" and prior.kind != "unclear":
        update["kind"] = prior.kind
    return update


def _pick_clarifying_question(intent: IntentRecord, last_reply: str | None) -> str:
    candidates = [intent.clarifying_question]
    if intent.kind == "unclear" or not intent.has_concrete_filter():
        candidates.append(WHAT_QUESTION)
    if not intent.has_location_signal():
        candidates.append(LOCATION_QUESTION)
    candidates.extend([ALTERNATE_QUESTION, FALLBACK_QUESTION])
    for question in candidates:
        if question and not _same_question(question, last_reply):
            return question
    return FALLBACK_QUESTION


def enforce_contract(
    intent: IntentRecord,
    message: str,
    prior_context: Sequence[ConversationEntry] = (),
) -> IntentRecord:
    """Apply rejection, confirmation, loop-breaking and confidence banding.

    prior_context is newest-first. The result always satisfies:
    confidence >= 0.7 and kind != unclear  ⇔  action == "recommend".
    """
    newest = prior_context[0] if prior_context else None
    asked_last_turn = bool(newest and newest.clarifying_question_sent)
    last_reply = newest.bot_response if newest else None

    # A rejection needs something of ours to reject.
    if newest is not None and is_rejection(message):
        question = (
            intent.clarifying_question
            if intent.action == "direct" and intent.clarifying_question
            else REJECTION_QUESTION
        )
        return intent.model_copy(update={
            "action": "direct",
            "confidence": min(intent.confidence, CLARIFY_THRESHOLD - 0.01),
            "clarifying_question": question,
        })

    if asked_last_turn and is_affirmation(message):
        prior_intent = _entry_intent(newest)
        if prior_intent is not None:
            confirmed = intent.model_copy(update=_carry_forward(intent, prior_intent))
            if confirmed.kind != "unclear":
                logger.info("Affirmation confirmed prior filters: %s", confirmed.filters())
                return confirmed.model_copy(update={
                    "location_hint": confirmed.location_hint or CITYWIDE,
                    "confidence": max(confirmed.confidence, RECOMMEND_THRESHOLD),
                    "action": "recommend",
                    "clarifying_question": None,
                })

    location_defaulted = (
        asked_last_turn
        and intent.kind != "unclear"
        and intent.has_concrete_filter()
        and not intent.has_location_signal()
    )
    if location_defaulted:
        # Already asked once; stop asking and go citywide.
        intent = intent.model_copy(update={"location_hint": CITYWIDE})

    recommendable = (
        intent.kind != "unclear"
        and intent.has_concrete_filter()
        and intent.has_location_signal()
    )
    confidence = intent.confidence

    if confidence >= RECOMMEND_THRESHOLD:
        if recommendable:
            return intent.model_copy(update={"action": "recommend", "clarifying_question": None})
        confidence = RECOMMEND_THRESHOLD - 0.01

    if confidence >= CLARIFY_THRESHOLD:
        question = intent.clarifying_question
        if recommendable and (location_defaulted or _same_question(question, last_reply)):
            return intent.model_copy(update={
                "action": "recommend",
                "confidence": RECOMMEND_THRESHOLD,
                "clarifying_question": None,
            })
        return intent.model_copy(update={
            "action": "clarify",
            "confidence": confidence,
            "clarifying_question": _pick_clarifying_question(intent, last_reply),
        })

    return intent.model_copy(update={
        "action": "direct",
        "clarifying_question": intent.clarifying_question or FALLBACK_QUESTION,
    })


# ---------------------------------------------------------------------------
# Error Handling Functions
# ---------------------------------------------------------------------------


def _handle_json_decode_error(exc: json.JSONDecodeError, raw_text: str) -> None:
    """Log and handle JSON decoding errors from LLM response."""
    logger.error("Failed to parse LLM response as JSON: %s; raw: '%s'", exc, raw_text)


def _handle_llm_error(exc: LLMError) -> None:
    logger.warning("Intent classification call failed: %s", exc)


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------


async def classify_intent(
    message: str,
    prior_context: Sequence[ConversationEntry] = (),
) -> IntentRecord:
    """Classify a DM given up to 3 prior turns (newest-first).

    Never raises: any failure returns fallback_intent().
    """
    prior = list(prior_context)[:CONTEXT_TURNS]
    system_prompt = _SYSTEM_PROMPT.format(today=date.today().isoformat())
    digest = build_context_digest(prior)
    user_message = f'{digest}\n\nUSER MESSAGE:\n"{message}"' if digest else f'USER MESSAGE:\n"{message}"'

    raw_text = ""
    try:
        raw_text = await complete(
            system=system_prompt,
            user_message=user_message,
            max_tokens=512,
            json_output=True,
        )
        logger.debug("LLM raw intent response: %s", raw_text)
        intent = _parse_intent(_clean_llm_response(raw_text or ""))
    except json.JSONDecodeError as exc:
        _handle_json_decode_error(exc, raw_text)
        return fallback_intent()
    except (ValidationError, ValueError) as exc:
        logger.error("LLM intent response did not match the schema: %s; raw: '%s'", exc, raw_text)
        return fallback_intent()
    except LLMError as exc:
        _handle_llm_error(exc)
        return fallback_intent()
    except Exception as exc:
        logger.error("Unexpected error in classify_intent: %s", exc)
        return fallback_intent()

    intent = enforce_contract(intent, message, prior)
    logger.info(
        "Intent: kind=%s action=%s confidence=%.2f filters=%s",
        intent.kind, intent.action, intent.confidence, intent.filters(),
    )
    return intent
