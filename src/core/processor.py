"""
DM Concierge - Message Processor.

Runs one turn per inbound DM, strictly in order:
  rate-limit gate → recent history → profile → classify → greeting context
  → recommend / clarify / direct → deliver → log the turn

Transport-agnostic: the webhook hands over (user_key, text) and nothing
comes back. Every failure inside a turn ends in one calm apology, never in
an exception reaching the transport.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from src.core.dispatcher import MessageDispatcher
    from src.core.intent import IntentRecord
    from src.core.patterns import PatternTracker
    from src.core.rate_limiter import RateLimiter
    from src.core.recommend import RecommendationEngine
    from src.data.db import ConversationDB

logger = logging.getLogger(__name__)

THROTTLE_MESSAGE = "Give me a moment before we look again. Try again shortly."
APOLOGY_MESSAGE = "Something's shifting on my end. Give me one second."
GENERIC_PROMPT = "Hey, tell me what you're in the mood for."
WELCOME_MESSAGE = (
    "Hey, tell me what you're in the mood for. "
    "Food, something happening tonight, or just an idea?"
)
RESPONSE_SEPARATOR = " | "


@dataclass
class _Turn:
    """What a turn did so far; becomes the ConversationEntry."""

    intent: IntentRecord | None = None
    messages: list[str] = field(default_factory=list)
    recommendations: list[dict[str, Any]] = field(default_factory=list)
    question_sent: bool = False
    logged: bool = False


class MessageProcessor:
    """Orchestrates a turn across the gate, classifier, engine, composer and dispatcher."""

    def __init__(
        self,
        rate_limiter: RateLimiter,
        conversations: ConversationDB,
        tracker: PatternTracker,
        engine: RecommendationEngine,
        dispatcher: MessageDispatcher,
    ) -> None:
        self._rate_limiter = rate_limiter
        self._conversations = conversations
        self._tracker = tracker
        self._engine = engine
        self._dispatcher = dispatcher

    async def process_message(self, user_key: str, text: str) -> None:
        """Handle one inbound DM end to end. Never raises."""
        turn = _Turn()
        gate_passed = False
        try:
            decision = self._rate_limiter.check_and_consume(user_key)
            if not decision.allowed:
                # Denied turns are not logged.
                await self._dispatcher.deliver(user_key, [THROTTLE_MESSAGE])
                return
            gate_passed = True

            await self._run_turn(user_key, text, turn)
            self._log_turn(user_key, text, turn)
        except Exception:
            logger.exception("Turn failed for %s", user_key)
            await self._dispatcher.send_best_effort(user_key, APOLOGY_MESSAGE)
            if gate_passed and not turn.logged:
                self._log_failed_turn(user_key, text, turn)

    # ------------------------------------------------------------------
    # Turn steps
    # ------------------------------------------------------------------

    async def _run_turn(self, user_key: str, text: str, turn: _Turn) -> None:
        from src.core.composer import MAX_ITEMS, compose_messages, generate_greeting, no_results_messages
        from src.core.intent import CONTEXT_TURNS, classify_intent
        from src.core.patterns import build_greeting_context

        prior = self._conversations.recent(user_key, limit=CONTEXT_TURNS)
        profile = self._tracker.get_profile(user_key)

        intent = await classify_intent(text, prior)
        turn.intent = intent

        # After classification, so a superseded cuisine is never greeted.
        greeting_context = build_greeting_context(profile, intent)

        if intent.action == "recommend" and intent.kind != "unclear":
            items = await self._engine.query(intent)
            if not items:
                logger.info("No results for %s (%s)", user_key, intent.filters())
                turn.messages = no_results_messages()
                await self._dispatcher.deliver(user_key, turn.messages)
                return

            recommended = items[:MAX_ITEMS]
            messages = await compose_messages(recommended, intent)
            greeting = await generate_greeting(greeting_context)
            if greeting:
                messages = [greeting, *messages]

            turn.recommendations = [item.summary_ref() for item in recommended]
            turn.messages = messages
            await self._dispatcher.deliver(user_key, messages)
            self._tracker.record_success(user_key, intent)

        elif intent.action in ("clarify", "direct"):
            question = intent.clarifying_question or GENERIC_PROMPT
            turn.question_sent = True
            turn.messages = [question]
            await self._dispatcher.deliver(user_key, turn.messages)

        else:
            turn.messages = [WELCOME_MESSAGE]
            await self._dispatcher.deliver(user_key, turn.messages)

    def _log_turn(self, user_key: str, text: str, turn: _Turn) -> None:
        intent = turn.intent
        self._conversations.add_entry(
            user_key=user_key,
            raw_message=text,
            parsed_intent=intent.model_dump() if intent else {},
            confidence_score=intent.confidence if intent else 0.0,
            clarifying_question_sent=turn.question_sent,
            recommendations_returned=turn.recommendations,
            bot_response=RESPONSE_SEPARATOR.join(turn.messages),
        )
        turn.logged = True

    def _log_failed_turn(self, user_key: str, text: str, turn: _Turn) -> None:
        """Best-effort log of a failed turn with the apology as the reply."""
        turn.messages = [APOLOGY_MESSAGE]
        turn.question_sent = False
        try:
            self._log_turn(user_key, text, turn)
        except Exception as exc:
            logger.error("Could not log failed turn for %s: %s", user_key, exc)
