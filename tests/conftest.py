"""Shared fixtures for collector tests."""

import pytest
from fastapi.testclient import TestClient

from tracetap.collector_app import create_app
from tracetap.config import CollectorConfig
from tracetap.models import LogEntry


@pytest.fixture
def config():
    return CollectorConfig(max_per_service=5, viewer_queue=100, log_level="warning")


@pytest.fixture
def app(config):
    return create_app(config)


@pytest.fixture
def collector(app):
    return app.state.collector


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def make_entry():
    def _make(message="hello", service="svc", level="INFO", trace_id="", **kwargs):
        return LogEntry(message=message, service=service, level=level, trace_id=trace_id, **kwargs)
    return _make
