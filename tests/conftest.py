from __future__ import annotations

import os

import httpx
import pytest

# Set env before any textexpense imports (settings are created at import time).
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("GOOGLE_VISION_ENABLED", "false")
os.environ.setdefault("RECEIPT_AI_ENABLED", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")


@pytest.fixture
def make_settings(tmp_path):
    from textexpense.core.config import Settings

    def _make(**overrides):
        values = {"raster_temp_dir": tmp_path, "default_currency": "INR"}
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make


@pytest.fixture
def mock_client():
    clients: list[httpx.Client] = []

    def _make(handler) -> httpx.Client:
        client = httpx.Client(transport=httpx.MockTransport(handler))
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.close()

