"""
Root conftest for the markdeco test suite.

Strips MARKDECO_* variables from the environment before every test and
resets the cached ``get_settings()`` instance, so a developer's shell or
.env values never leak into the defaults the tests assert on.
"""

import os

import pytest

from markdeco.config import get_settings


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch: pytest.MonkeyPatch):
    for name in list(os.environ):
        if name.upper().startswith("MARKDECO_"):
            monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
