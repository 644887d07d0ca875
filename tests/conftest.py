"""Shared pytest fixtures."""

import os

import pytest


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer ESSAYCOACH_* variables out of the tests."""
    for name in list(os.environ):
        if name.startswith("ESSAYCOACH_"):
            monkeypatch.delenv(name, raising=False)
