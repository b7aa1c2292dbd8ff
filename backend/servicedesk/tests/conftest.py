import os
os.environ["TESTING"] = "1"
os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
import pytest
from datetime import datetime, timezone
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import sys
from pathlib import Path

import uuid

sys.path.append(str(Path(__file__).resolve().parents[2]))

from servicedesk.main import app
from servicedesk.database import Base, get_db
from servicedesk import auth, models, notify
from servicedesk.services.case_lifecycle import CASE_VARIANTS

SQLALCHEMY_DATABASE_URL = os.environ["DATABASE_URL"]
engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False, "timeout": 30},
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base.metadata.drop_all(bind=engine)
Base.metadata.create_all(bind=engine)

def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()

app.dependency_overrides[get_db] = override_get_db


@pytest.fixture(autouse=True)
def reset_tables():
    db = TestingSessionLocal()
    for table in reversed(Base.metadata.sorted_tables):
        db.execute(table.delete())
    db.commit()
    db.close()
    notify.EMAIL_OUTBOX.clear()
    notify.CHAT_OUTBOX.clear()
    yield


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


def create_user(role: str = "USER", email: str | None = None):
    """
    purpose: insert a user with the given role and mint a bearer token for it
    outputs: tuple(detached User, authorization headers dict)
    """

    session = TestingSessionLocal()
    user = models.User(
        email=email or f"{role.lower()}-{uuid.uuid4()}@example.com",
        full_name=f"{role.title()} Person",
        role=role,
    )
    session.add(user)
    session.commit()
    session.refresh(user)
    session.expunge(user)
    session.close()
    token = auth.create_access_token({"sub": str(user.id)})
    return user, {"Authorization": f"Bearer {token}"}


def create_case(
    case_type: str,
    reporter_id,
    *,
    handler_id=None,
    status: str = "RECEIVED",
    created_at: datetime | None = None,
    title: str = "Printer on fire",
):
    session = TestingSessionLocal()
    variant = CASE_VARIANTS[case_type]
    case = variant.model(
        title=title,
        status=status,
        reporter_id=reporter_id,
        handler_id=handler_id,
        created_at=created_at or datetime.now(timezone.utc),
    )
    if status == "COMPLETED":
        case.end_date = datetime.now(timezone.utc)
    session.add(case)
    session.commit()
    case_id = case.id
    session.close()
    return case_id


def token_for(user) -> str:
    return auth.create_access_token({"sub": str(user.id)})
