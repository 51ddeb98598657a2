"""Pytest configuration for all tests."""

import os

import pytest

# Settings come from RPI_* variables; keep the developer's shell out of tests
_RPI_ENV_PREFIX = "RPI_"


@pytest.fixture(autouse=True)
def clean_rpi_env(monkeypatch):
    for name in list(os.environ):
        if name.startswith(_RPI_ENV_PREFIX):
            monkeypatch.delenv(name, raising=False)
