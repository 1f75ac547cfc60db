import dataclasses

import pytest
from fastapi.testclient import TestClient

from audio_relay_api.app import create_app
from audio_relay_api.config import Settings


@pytest.fixture
def settings():
    return Settings(
        high_water_mark=64 * 1024,
        resolve_timeout=2.0,
        open_timeout=2.0,
    )


@pytest.fixture
def make_client(settings):
    """Build a TestClient around a fake provider."""
    def _make(provider, raise_server_exceptions=True, **overrides):
        cfg = dataclasses.replace(settings, **overrides)
        app = create_app(cfg, provider=provider)
        return TestClient(app, raise_server_exceptions=raise_server_exceptions)
    return _make
