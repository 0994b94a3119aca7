"""Shared fixtures."""

from __future__ import annotations

import pytest

from docstream.config import HostConfig
from tests.helpers import ScriptedService


@pytest.fixture
def config() -> HostConfig:
    return HostConfig()


@pytest.fixture
def service() -> ScriptedService:
    return ScriptedService()
