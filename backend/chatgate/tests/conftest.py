"""Shared fixtures: a stub generation capability injected through create_app."""

import pytest
from fastapi.testclient import TestClient

from chatgate.core.config import Settings
from chatgate.main import create_app
from chatgate.tests.utils.stubs import StubSource

CHAT_URL = "/v1/chat/completions"


@pytest.fixture
def settings() -> Settings:
    return Settings(STREAM_CHUNK_DELAY_SECONDS=0.0)


@pytest.fixture
def stub_source() -> StubSource:
    return StubSource()


@pytest.fixture
def client(settings, stub_source):
    app = create_app(settings, capability_source=stub_source)
    with TestClient(app) as c:
        yield c
