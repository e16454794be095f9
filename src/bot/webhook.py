"""
DM Concierge - Instagram Webhook.

The only inbound surface. Meta calls:
  GET  /api/webhook  subscription handshake (hub.challenge echo)
  POST /api/webhook  message events, signed with X-Hub-Signature-256
  GET  /api/debug    catalog counts and a few sample names, for operators

The POST handler acknowledges immediately and hands each text message to
MessageProcessor as a background task. Nothing in here knows about intents,
recommendations or pacing.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import sqlite3
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, AsyncIterator

from fastapi import BackgroundTasks, FastAPI, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse

from src.config import settings

if TYPE_CHECKING:
    from src.core.processor import MessageProcessor
    from src.data.db import Database, ItemDB

logger = logging.getLogger(__name__)

ACK_TEXT = "EVENT_RECEIVED"


# ---------------------------------------------------------------------------
# Signature + payload helpers
# ---------------------------------------------------------------------------


def verify_signature(raw_body: bytes, signature: str | None, app_secret: str) -> bool:
    """Check X-Hub-Signature-256 ("sha256=<hex hmac of the raw body>")."""
    if not signature or not app_secret:
        return False
    expected = "sha256=" + hmac.new(
        app_secret.encode("utf-8"), raw_body, hashlib.sha256,
    ).hexdigest()
    return hmac.compare_digest(signature, expected)


def extract_messages(payload: dict[str, Any]) -> list[tuple[str, str]]:
    """Pull (sender_id, text) pairs out of an Instagram webhook payload.

    Skips echoes of our own messages and anything without text
    (reactions, attachments, read receipts).
    """
    if payload.get("object") != "instagram":
        return []

    messages: list[tuple[str, str]] = []
    for entry in payload.get("entry") or []:
        for event in entry.get("messaging") or []:
            message = event.get("message") or {}
            if message.get("is_echo"):
                continue
            sender_id = (event.get("sender") or {}).get("id")
            text = message.get("text")
            if not sender_id or not text:
                continue
            messages.append((str(sender_id), text))
    return messages


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_processor(database: Database) -> MessageProcessor:
    """Wire the default components around one open Database."""
    from src.adapters.instagram_messenger import InstagramMessenger
    from src.core.dispatcher import MessageDispatcher
    from src.core.patterns import PatternTracker
    from src.core.processor import MessageProcessor
    from src.core.rate_limiter import RateLimiter
    from src.core.recommend import RecommendationEngine
    from src.data.db import ConversationDB, ItemDB, RateLimitDB, UserProfileDB

    return MessageProcessor(
        rate_limiter=RateLimiter(RateLimitDB(database)),
        conversations=ConversationDB(database),
        tracker=PatternTracker(UserProfileDB(database)),
        engine=RecommendationEngine(ItemDB(database)),
        dispatcher=MessageDispatcher(InstagramMessenger()),
    )


def create_app(
    processor: MessageProcessor | None = None,
    verify_token: str | None = None,
    app_secret: str | None = None,
    items: ItemDB | None = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        processor: Turn processor. Defaults to the full stack over
                   settings.DATABASE_PATH, opened for the app's lifetime.
        verify_token: Handshake token. Defaults to settings.VERIFY_TOKEN.
        app_secret: Signing secret. Defaults to settings.APP_SECRET; empty
                    disables signature checks.
        items: Catalog store behind /api/debug. Defaults to the one the
               default processor is built on; absent means 503.
    """
    verify_token = settings.VERIFY_TOKEN if verify_token is None else verify_token
    app_secret = settings.APP_SECRET if app_secret is None else app_secret

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        database: Database | None = None
        app.state.items = items
        if processor is None:
            from src.data.db import Database, ItemDB

            database = Database().open()
            app.state.processor = build_processor(database)
            if items is None:
                app.state.items = ItemDB(database)
        else:
            app.state.processor = processor
        logger.info("DM concierge webhook ready")
        try:
            yield
        finally:
            if database is not None:
                database.close()

    app = FastAPI(title="DM Concierge", lifespan=lifespan)

    @app.get("/")
    async def health() -> dict[str, str]:
        return {
            "status": "ok",
            "service": "DM Concierge",
            "description": "DM-native Instagram concierge for NYC recommendations",
        }

    @app.get("/api/debug")
    async def debug(request: Request) -> dict[str, Any]:
        catalog: ItemDB | None = request.app.state.items
        if catalog is None:
            raise HTTPException(status_code=503, detail="Catalog not configured")
        try:
            counts = catalog.counts()
            samples = {
                "places": [i.name for i in catalog.sample("place")],
                "events": [i.name for i in catalog.sample("event")],
            }
        except sqlite3.Error:
            logger.exception("Debug catalog read failed")
            raise HTTPException(status_code=500, detail="Catalog unavailable")
        return {"counts": counts, "samples": samples}

    @app.get("/api/webhook", response_class=PlainTextResponse)
    async def verify_webhook(
        mode: str | None = Query(None, alias="hub.mode"),
        token: str | None = Query(None, alias="hub.verify_token"),
        challenge: str | None = Query(None, alias="hub.challenge"),
    ) -> str:
        if mode == "subscribe" and verify_token and token == verify_token:
            logger.info("Webhook verified")
            return challenge or ""
        logger.warning("Webhook verification rejected (mode=%s)", mode)
        raise HTTPException(status_code=403, detail="Forbidden")

    @app.post("/api/webhook", response_class=PlainTextResponse)
    async def receive_webhook(request: Request, background_tasks: BackgroundTasks) -> str:
        raw_body = await request.body()

        if app_secret and not verify_signature(
            raw_body, request.headers.get("x-hub-signature-256"), app_secret,
        ):
            logger.error("Invalid webhook signature")
            raise HTTPException(status_code=401, detail="Invalid signature")

        try:
            payload = json.loads(raw_body or b"{}")
        except json.JSONDecodeError:
            logger.warning("Webhook body is not JSON")
            raise HTTPException(status_code=400, detail="Invalid JSON")

        if not isinstance(payload, dict):
            return ACK_TEXT

        turn_processor: MessageProcessor = request.app.state.processor
        for sender_id, text in extract_messages(payload):
            logger.info("Inbound DM from %s: %s", sender_id, text[:80])
            background_tasks.add_task(turn_processor.process_message, sender_id, text)

        return ACK_TEXT

    return app
