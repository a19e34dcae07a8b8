"""
Shared pytest fixtures for the KPI compliance test suite.
"""

import os
from datetime import datetime, timezone

# Settings are read at import time; the sweeper must not start under test.
os.environ.setdefault("AUTOMATION_ENABLED", "false")
os.environ.setdefault("MAIL_TRANSPORT", "console")

import pytest

from kpi_compliance.api.v1.deps import reset_services
from kpi_compliance.automation.processor import KPITriggerProcessor
from kpi_compliance.core.log_store import clear_logs
from kpi_compliance.core.store import reset_store
from kpi_compliance.kpi import load_kpi_config, reset_config
from kpi_compliance.notifications.dispatcher import EmailDispatcher
from kpi_compliance.people.directory import register_employee

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)

OUTSTANDING = {
    "tat": 95, "major_negativity": 0, "quality": 0, "neighbor_check": 90,
    "negativity": 10, "app_usage": 90, "insufficiency": 0.5,
}
SATISFACTORY = {
    "tat": 92, "major_negativity": 0, "quality": 0.2, "neighbor_check": 86,
    "negativity": 16, "app_usage": 85, "insufficiency": 1.2,
}
NEED_IMPROVEMENT = {
    "tat": 91, "major_negativity": 1.6, "quality": 0.3, "neighbor_check": 81,
    "negativity": 21, "app_usage": 81, "insufficiency": 1.8,
}
ALL_BAD = {
    "tat": 80, "major_negativity": 3, "quality": 2, "neighbor_check": 70,
    "negativity": 30, "app_usage": 70, "insufficiency": 3,
}


class RecordingTransport:
    """Transport that keeps every message it was asked to send."""

    name = "recording"

    def __init__(self):
        self.sent = []

    def send(self, message):
        self.sent.append(message)
        return f"<msg-{len(self.sent)}@test>"


class FailingTransport:
    """Transport whose every delivery attempt raises."""

    name = "failing"

    def __init__(self):
        self.attempts = 0

    def send(self, message):
        self.attempts += 1
        raise ConnectionError("SMTP server unavailable")


@pytest.fixture(autouse=True)
def clean_state():
    """Empty store, file config, no cached services and an empty log buffer."""
    store = reset_store()
    reset_config()
    reset_services()
    clear_logs()
    yield store
    reset_store()
    reset_config()
    reset_services()


@pytest.fixture
def store(clean_state):
    return clean_state


@pytest.fixture
def config():
    """The rule config shipped in config/kpi_config.yaml."""
    return load_kpi_config()


@pytest.fixture
def staff(store):
    """One active employee for every role, keyed by role."""
    return {
        "fe": register_employee(store, "Ravi Kumar", "ravi@example.com", role="fe", employee_code="FE001"),
        "coordinator": register_employee(store, "Asha Coord", "asha@example.com", role="coordinator"),
        "manager": register_employee(store, "Manoj Manager", "manoj@example.com", role="manager"),
        "hod": register_employee(store, "Hema Head", "hema@example.com", role="hod"),
        "compliance": register_employee(store, "Cyrus Compliance", "cyrus@example.com", role="compliance"),
    }


@pytest.fixture
def fe(staff):
    """The field executive under evaluation."""
    return staff["fe"]


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def dispatcher(store, transport):
    """Dispatcher delivering through the recording transport, 3 retries."""
    return EmailDispatcher(store, transport=transport, max_retries=3)


@pytest.fixture
def failing_dispatcher(store):
    return EmailDispatcher(store, transport=FailingTransport(), max_retries=3)


@pytest.fixture
def processor(store, dispatcher):
    return KPITriggerProcessor(store, dispatcher)


@pytest.fixture
def client(store, dispatcher):
    """TestClient whose routes share the fixture store and recording dispatcher."""
    from fastapi.testclient import TestClient

    from kpi_compliance.api.v1.deps import get_dispatcher
    from kpi_compliance.main import app

    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    yield TestClient(app)
    app.dependency_overrides.clear()
