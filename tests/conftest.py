# tests/conftest.py
import os

import pytest

from app.core.config import GateConfig

from tests.x402_helpers import make_gate_config


@pytest.fixture(autouse=True)
def clean_gate_env(monkeypatch):
    """Keep X402_GATE_* variables from the developer's shell out of the tests."""
    for key in list(os.environ):
        if key.startswith("X402_GATE_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def gate_config() -> GateConfig:
    return make_gate_config()
