import logging
from typing import Optional

from fastapi import FastAPI

# Use absolute package imports so uvicorn can resolve the module reliably.
from audio_relay_api.config import Settings
from audio_relay_api.provider import SourceProvider, YtDlpProvider
from audio_relay_api.relay import StreamAdapter
from audio_relay_api.routes.core import router as core_router

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, provider: Optional[SourceProvider] = None) -> FastAPI:
    """Build the relay app. Tests pass a fake provider; production uses yt-dlp."""
    settings = settings or Settings.from_env()

    app = FastAPI(title="Audio Relay API")
    app.state.settings = settings
    app.state.provider = provider or YtDlpProvider(settings)
    app.state.adapter = StreamAdapter(
        high_water_mark=settings.high_water_mark,
        low_water_mark=settings.low_water_mark,
    )
    app.include_router(core_router)

    logger.info("Number of cookies loaded: %d", len(settings.cookies))
    if settings.cookies:
        logger.info("Cookie names loaded: %s", ", ".join(c["name"] for c in settings.cookies))
    return app
