import os
import sqlite3
import tempfile
from datetime import datetime, timedelta, UTC
from types import SimpleNamespace

import pytest

TEST_JWT_SECRET = "test-signing-secret-for-boardroom-live-0123456789"

# Configure the app before anything imports boardroom.database.
os.environ["BOARDROOM_DATABASE_URL"] = "sqlite:///:memory:"
os.environ["BOARDROOM_LOG_DIR"] = tempfile.mkdtemp(prefix="boardroom-logs-")
os.environ.setdefault("BOARDROOM_ENV", "test")
os.environ["BOARDROOM_JWT_SECRET_KEY"] = TEST_JWT_SECRET

from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import boardroom.database as database
import boardroom.models  # noqa: F401  # Register every model on Base.metadata
from boardroom.auth.tokens import JWTTokenVerifier
from boardroom.database import Base, QueuedSession
from boardroom.main import app
from boardroom.models import (
    Company,
    CompanyMember,
    Decision,
    Meeting,
    MeetingStatus,
    MemberRole,
    User,
)
from boardroom.services.meeting_gateway import MeetingGateway, get_meeting_gateway
from boardroom.services.room_registry import RoomRegistry
from boardroom.utils.websocket_manager import WebSocketManager


@pytest.fixture
def anyio_backend():
    return "asyncio"


def make_token(
    subject,
    *,
    session_id="sess-1",
    expires_in=timedelta(minutes=5),
    secret=TEST_JWT_SECRET,
    **extra_claims,
):
    claims = {"exp": datetime.now(UTC) + expires_in}
    if subject is not None:
        claims["sub"] = subject
    if session_id is not None:
        claims["sid"] = session_id
    claims.update(extra_claims)
    return jwt.encode(claims, secret, algorithm="HS256")


@pytest.fixture
def token_factory():
    return make_token


@pytest.fixture
def session_factory():
    """A fresh in-memory database per test, shared across threadpool workers."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(
        autocommit=False, autoflush=False, bind=engine, class_=QueuedSession
    )
    try:
        yield factory
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def db_session(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


class BoardFactory:
    """Seeds companies, members, meetings and decisions; returns plain ids."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    def _save(self, instance):
        db = self._session_factory()
        try:
            db.add(instance)
            db.commit()
            return instance.id
        finally:
            db.close()

    def company(self, name="Acme Holdings"):
        return self._save(Company(name=name))

    def member(
        self,
        company_id,
        user_id,
        role=MemberRole.BOARD_MEMBER,
        first_name=None,
        last_name=None,
    ):
        db = self._session_factory()
        try:
            if db.get(User, user_id) is None:
                db.add(
                    User(
                        user_id=user_id,
                        email=f"{user_id}@example.com",
                        first_name=first_name,
                        last_name=last_name,
                    )
                )
                db.flush()
            member = CompanyMember(
                user_id=user_id, company_id=company_id, role=role.value
            )
            db.add(member)
            db.commit()
            return member.id
        finally:
            db.close()

    def meeting(self, company_id, status=MeetingStatus.SCHEDULED, title="Q3 Board Meeting"):
        return self._save(
            Meeting(company_id=company_id, title=title, status=status.value)
        )

    def decision(self, meeting_id, title="Approve annual budget", order_index=0):
        return self._save(
            Decision(meeting_id=meeting_id, title=title, order_index=order_index)
        )


@pytest.fixture
def board_factory(session_factory):
    return BoardFactory(session_factory)


@pytest.fixture
def board(board_factory):
    """One company with an owner and two board members, plus an outsider."""
    company_id = board_factory.company()
    other_company_id = board_factory.company("Globex Corp")
    board_factory.member(
        company_id, "owner-1", MemberRole.OWNER, first_name="Olivia", last_name="Owner"
    )
    member_id = board_factory.member(company_id, "member-1", first_name="Mel")
    board_factory.member(company_id, "member-2")
    board_factory.member(company_id, "observer-1", MemberRole.OBSERVER)
    board_factory.member(other_company_id, "outsider-1", MemberRole.OWNER)
    meeting_id = board_factory.meeting(company_id, MeetingStatus.IN_PROGRESS)
    decision_id = board_factory.decision(meeting_id)
    return SimpleNamespace(
        company_id=company_id,
        other_company_id=other_company_id,
        member_id=member_id,
        meeting_id=meeting_id,
        decision_id=decision_id,
    )


@pytest.fixture
def realtime_settings():
    return {"require_present_attendance": False, "enforce_status_transitions": True}


@pytest.fixture
def gateway(session_factory, realtime_settings):
    return MeetingGateway(
        token_verifier=JWTTokenVerifier(TEST_JWT_SECRET),
        session_factory=session_factory,
        connections=WebSocketManager(),
        registry=RoomRegistry(),
        settings=realtime_settings,
    )


class FakeSocket:
    """Stands in for a server-side WebSocket and records what was sent to it."""

    def __init__(self, token=None, headers=None):
        self.query_params = {"token": token} if token else {}
        self.headers = dict(headers or {})
        self.accepted = False
        self.sent = []

    async def accept(self):
        self.accepted = True

    async def send_json(self, message):
        self.sent.append(message)

    def of_type(self, message_type):
        return [message for message in self.sent if message["type"] == message_type]


@pytest.fixture
def fake_socket():
    return FakeSocket


@pytest.fixture
def connect_user(gateway):
    async def _connect(user_id, *, session_id="sess-1"):
        socket = FakeSocket(token=make_token(user_id, session_id=session_id))
        connection = await gateway.connections.connect(socket)
        assert await gateway.authenticate(connection)
        return connection, socket

    return _connect


@pytest.fixture
def send_event(gateway):
    """Dispatch one frame and return the reply sent back for its request id."""

    async def _send(connection, event_type, payload=None, request_id="req-1"):
        frame = {"type": event_type, "requestId": request_id}
        if payload is not None:
            frame["payload"] = payload
        await gateway.handle_message(connection, frame)
        replies = [
            message
            for message in connection.websocket.sent
            if message["type"] in {"ack", "error", "pong"}
            and message.get("requestId") == request_id
        ]
        assert replies, f"no reply for {event_type}"
        return replies[-1]

    return _send


@pytest.fixture
def client(gateway):
    app.dependency_overrides[get_meeting_gateway] = lambda: gateway
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.pop(get_meeting_gateway, None)


@pytest.fixture
def locked_commits(monkeypatch):
    """Arm the next ``count`` commits to fail the way a busy SQLite database does."""
    monkeypatch.setattr(
        database,
        "_sqlite_settings",
        {**database._get_sqlite_settings(), "write_retries": 3, "retry_backoff_ms": 1},
    )
    original_commit = Session.commit
    failures = []

    def _arm(count=1):
        remaining = [count]

        def _commit(self):
            if remaining[0] > 0:
                remaining[0] -= 1
                failures.append("locked")
                raise OperationalError(
                    "COMMIT", {}, sqlite3.OperationalError("database is locked")
                )
            return original_commit(self)

        monkeypatch.setattr(Session, "commit", _commit)
        return failures

    return _arm
