"""Pytest config to ensure project root is on sys.path during test collection.

The service is laid out as top-level modules, so running pytest from another
working directory would otherwise fail with "No module named 'main'".
"""
import os
import sys

import pytest

_HERE = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(_HERE, ".."))

if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

import metrics  # noqa: E402
from config import Settings  # noqa: E402
from db_adapter import DatabaseClient  # noqa: E402


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset_all()
    yield
    metrics.reset_all()


@pytest.fixture
def settings():
    # rate limiting off unless a test turns it on
    return Settings(rate_limit_max=0)


@pytest.fixture
def db():
    client = DatabaseClient("sqlite://")
    client.create_schema()
    yield client
    client.dispose()
