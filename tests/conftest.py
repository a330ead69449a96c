"""
Pytest configuration for the Nutri-Vision backend tests
"""

import os
import sys

# Settings are read at import time; configure them BEFORE importing the app
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["JWT_SECRET"] = "test-secret-key"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["RATE_LIMIT_PER_WINDOW"] = "100000"
os.environ["SEED_DEMO_DATA"] = "false"
os.environ["ENVIRONMENT"] = "test"
os.environ["FRONTEND_URL"] = "https://app.nutrivision.test"

# Add parent directory to path to import app modules
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel

from nutrivision import identity
from nutrivision.db import AccountCRUD, engine
from nutrivision.main import app
from nutrivision.models import AccountKind, Operator
from nutrivision.security import create_access_token, hash_password


class RecordingTransport:
    """In-memory RealtimeTransport that records every delivery."""

    def __init__(self):
        self.rooms = {}
        self.deliveries = []   # (connection_id, event, data)
        self.user_events = []  # (user_id, event, data)

    def join_room(self, connection_id, room):
        self.rooms.setdefault(room, set()).add(connection_id)

    def leave_room(self, connection_id, room):
        self.rooms.get(room, set()).discard(connection_id)

    def emit_to_room(self, room, event, data, exclude=None):
        for connection_id in sorted(self.rooms.get(room, ())):
            if connection_id != exclude:
                self.deliveries.append((connection_id, event, data))

    def emit_to_user(self, user_id, event, data):
        self.user_events.append((user_id, event, data))

    def emit_to_connection(self, connection_id, event, data):
        self.deliveries.append((connection_id, event, data))

    def received(self, connection_id, event=None):
        return [
            data for cid, name, data in self.deliveries
            if cid == connection_id and (event is None or name == event)
        ]

    def events_for_user(self, user_id, event=None):
        return [
            data for uid, name, data in self.user_events
            if uid == user_id and (event is None or name == event)
        ]


@pytest.fixture
def db():
    """Fresh schema on the in-memory engine for every test."""
    SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)
    with Session(engine) as session:
        yield session
    SQLModel.metadata.drop_all(engine)


@pytest.fixture
def client(db):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def make_patient(db):
    def factory(name="Sam Rivera", email="sam@example.com", password="secret123"):
        return identity.register_patient(db, name, email, password)
    return factory


@pytest.fixture
def make_professional(db):
    def factory(name="Dr. Priya Sharma", email="priya@example.com", password="secret123", approved=True, rate=80.0):
        professional = identity.register_professional(
            db,
            password,
            name=name,
            email=email,
            qualification="MSc Clinical Nutrition",
            experience_years=6,
            specializations=["Clinical Nutrition"],
            consultation_rate=rate,
        )
        if approved:
            professional.is_approved = True
            db.add(professional)
            db.commit()
            db.refresh(professional)
        return professional, create_access_token(professional.id, AccountKind.PROFESSIONAL)
    return factory


@pytest.fixture
def make_operator(db):
    def factory(email="admin@example.com", password="admin-secret"):
        operator = AccountCRUD.create(db, Operator(
            name="Platform Admin", email=email, password_hash=hash_password(password)
        ))
        return operator, create_access_token(operator.id, AccountKind.OPERATOR)
    return factory