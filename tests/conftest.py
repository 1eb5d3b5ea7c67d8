from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from config import Settings
from database import MemoryStore
from main import create_app
from schemas import RegisterRequest, VisitorRegistration


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def make_user(app, role, email, name="Test User", department=None):
    identity = app.state.identity
    req = RegisterRequest(name=name, email=email, password="secret123", department=department)
    user = identity.register_user(req, role=role)
    return user, {"Authorization": f"Bearer {identity.issue_token(user)}"}


def visitor_details(**overrides):
    data = {
        "name": "Asha Rao",
        "contactNumber": "9876543210",
        "department": "CSE",
        "whomToMeet": "prof.x@rvce.edu.in",
        "purposeOfVisit": "Meeting",
    }
    data.update(overrides)
    return data


@pytest.fixture
def clock():
    # 12:00 in Asia/Kolkata
    return FakeClock(datetime(2026, 10, 17, 6, 30, tzinfo=timezone.utc))


@pytest.fixture
def settings():
    return Settings(jwt_secret="test-secret", timezone="Asia/Kolkata")


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def app(settings, store, clock):
    return create_app(settings, store, clock)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def workflow(app):
    return app.state.workflow


@pytest.fixture
def relay(app):
    return app.state.relay


@pytest.fixture
def host(app):
    return make_user(app, "host", "prof.x@rvce.edu.in", "Prof. X", department="CSE")


@pytest.fixture
def other_host(app):
    return make_user(app, "host", "prof.y@rvce.edu.in", "Prof. Y", department="ECE")


@pytest.fixture
def security(app):
    return make_user(app, "security", "gate1@rvce.edu.in", "Gate Officer")


@pytest.fixture
def admin(app):
    return make_user(app, "admin", "admin@rvce.edu.in", "Admin")


@pytest.fixture
def registered(workflow):
    return workflow.register(VisitorRegistration.model_validate(visitor_details()))
