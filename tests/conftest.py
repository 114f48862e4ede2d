"""Pytest configuration and fixtures"""
import os

# Settings are read at import time; point them at SQLite before importing agent_otp
os.environ["DATABASE_URL"] = "sqlite:///./test.db"
os.environ["REDIS_URL"] = ""
os.environ["WEBHOOK_URL"] = ""
os.environ["WEBHOOK_SECRET"] = ""

import time
from typing import Dict, Generator, List, Optional, Tuple

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from agent_otp.database import Base
from agent_otp.models import PermissionRequest, Policy
from agent_otp.services.audit_service import AuditService
from agent_otp.services.permission_service import PermissionService
from agent_otp.services.token_service import TokenService
from agent_otp.utils.timeutil import calculate_expires_at

TEST_DATABASE_URL = "sqlite:///./test.db"

engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class InMemoryCache:
    """TokenCache double with TTL bookkeeping"""

    def __init__(self):
        self.store: Dict[str, Tuple[str, float]] = {}
        self.ttls: Dict[str, int] = {}

    def get(self, key: str) -> Optional[str]:
        entry = self.store.get(key)
        if entry is None:
            return None
        value, deadline = entry
        if time.monotonic() >= deadline:
            del self.store[key]
            return None
        return value

    def set(self, key: str, value: str, ex: int) -> None:
        assert ex > 0, "cache TTL must be positive"
        self.store[key] = (value, time.monotonic() + ex)
        self.ttls[key] = ex

    def delete(self, key: str) -> None:
        self.store.pop(key, None)

    def clear(self) -> None:
        self.store.clear()


class BrokenCache:
    """TokenCache double whose every call fails, like an unreachable Redis"""

    def get(self, key: str) -> Optional[str]:
        raise ConnectionError("cache unavailable")

    def set(self, key: str, value: str, ex: int) -> None:
        raise ConnectionError("cache unavailable")

    def delete(self, key: str) -> None:
        raise ConnectionError("cache unavailable")


class RecordingNotifier:
    """Collects notifier calls instead of sending webhooks"""

    def __init__(self):
        self.events: List[Tuple[str, dict]] = []

    def __call__(self, event_type: str, payload: dict) -> None:
        self.events.append((event_type, payload))

    @property
    def event_types(self) -> List[str]:
        return [event for event, _ in self.events]


@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """Create a fresh database for each test"""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def cache() -> InMemoryCache:
    return InMemoryCache()


@pytest.fixture
def audit(db: Session) -> AuditService:
    return AuditService(db)


@pytest.fixture
def token_service(db: Session, cache: InMemoryCache, audit: AuditService) -> TokenService:
    return TokenService(db, cache, audit)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def permission_service(db: Session, cache: InMemoryCache, notifier: RecordingNotifier) -> PermissionService:
    return PermissionService(db, cache, notifier)


@pytest.fixture
def approved_request(db: Session) -> PermissionRequest:
    """An approved permission request that tokens can be issued against"""
    request = PermissionRequest(
        user_id="user-1",
        agent_id="agent-1",
        action="bank.transfer",
        scope={"amount": 50},
        context={},
        status="approved",
        decided_by="user",
        expires_at=calculate_expires_at(120),
    )
    db.add(request)
    db.commit()
    db.refresh(request)
    return request


@pytest.fixture
def make_policy(db: Session):
    """Factory for persisted policies"""

    def _make_policy(**overrides) -> Policy:
        data = {
            "user_id": "user-1",
            "name": "policy",
            "priority": 0,
            "conditions": {},
            "action": "require_approval",
            "is_active": True,
        }
        data.update(overrides)
        policy = Policy(**data)
        db.add(policy)
        db.commit()
        db.refresh(policy)
        return policy

    return _make_policy


@pytest.fixture
def sample_policy_data() -> dict:
    """Sample policy data for tests"""
    return {
        "name": "small transfers",
        "priority": 10,
        "conditions": {
            "action": {"equals": "bank.transfer"},
            "scope.amount": {"lessThanOrEqual": 100},
        },
        "action": "auto_approve",
        "scope_template": {"max_amount": 100},
    }


@pytest.fixture
def broken_cache() -> BrokenCache:
    return BrokenCache()
