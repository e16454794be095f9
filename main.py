"""
DM Concierge - Entry Point.

Single entry point: `python main.py` serves the Instagram webhook.
"""

import logging

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

import uvicorn

from src.bot.webhook import create_app
from src.config import settings

logger = logging.getLogger(__name__)


def main() -> None:
    """Build the app and serve it."""
    logger.info("Starting DM concierge on port %d...", settings.PORT)
    uvicorn.run(create_app(), host="0.0.0.0", port=settings.PORT)


if __name__ == "__main__":
    main()
