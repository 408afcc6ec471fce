from __future__ import annotations

from typing import Iterator

import pytest

from agentrelay.core.config import Settings, get_settings
from agentrelay.core.correlation import CorrelationTracker
from agentrelay.schemas.identity import Identity, Tenant
from tests.helpers.stubs import RecordingHub


@pytest.fixture
def settings() -> Settings:
    return get_settings({"environment": "test"})


@pytest.fixture
def identity() -> Identity:
    return Identity(id=42, email="ana@example.com", display_name="Ana")


@pytest.fixture
def tenant() -> Tenant:
    return Tenant(id=7, name="North Division")


@pytest.fixture
def hub() -> RecordingHub:
    return RecordingHub()


@pytest.fixture
def correlation() -> Iterator[CorrelationTracker]:
    tracker = CorrelationTracker()
    yield tracker
    tracker.reset()
