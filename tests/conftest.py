"""Pytest fixtures for testing"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta, timezone
from typing import Generator, Iterable, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker

from community_lending.api.dependencies import get_clock
from community_lending.api.main import create_app
from community_lending.infrastructure.database.models import (
    Base,
    ContributionRecord,
    GroupMembershipRecord,
    MemberRecord,
)
from community_lending.infrastructure.database.session import (
    create_db_engine,
    create_session_factory,
    get_db,
    get_session_factory,
)
from community_lending.services.audit import BestEffortAuditWriter
from community_lending.services.loans import LoanService

NOW = datetime(2026, 6, 15, 12, 0, tzinfo=timezone.utc)
GROUP = "group-1"


class FrozenClock:
    """Time source tests can move forward explicitly"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class Seeder:
    """Writes member-store and contribution rows owned by external collaborators"""

    def __init__(self, db: Session):
        self.db = db

    def member(self, member_id: str, verified: bool = True, role: str = "user", suspended: bool = False) -> str:
        self.db.add(MemberRecord(id=member_id, is_verified=verified, role=role, is_suspended=suspended))
        self.db.commit()
        return member_id

    def membership(self, member_id: str, group_id: str = GROUP, role: str = "member") -> None:
        self.db.add(GroupMembershipRecord(member_id=member_id, group_id=group_id, role=role, joined_at=NOW))
        self.db.commit()

    def contributions(
        self,
        member_id: str,
        amounts: Iterable[int],
        start: datetime,
        interval_days: int,
        group_id: str = GROUP,
    ) -> None:
        for i, amount in enumerate(amounts):
            self.db.add(
                ContributionRecord(
                    member_id=member_id,
                    group_id=group_id,
                    amount=amount,
                    contributed_at=start + timedelta(days=i * interval_days),
                )
            )
        self.db.commit()

    def eligible_member(self, member_id: str = "alice", group_id: str = GROUP, now: Optional[datetime] = None) -> str:
        """Six contributions of 2,000 spread over four months: eligible up to 30,000"""
        now = now or NOW
        self.member(member_id)
        self.membership(member_id, group_id)
        self.contributions(member_id, [2000] * 6, start=now - timedelta(days=120), interval_days=24, group_id=group_id)
        return member_id

    def admin(self, admin_id: str = "admin") -> str:
        return self.member(admin_id, role="admin")

    def group_admin(self, admin_id: str = "treasurer", group_id: str = GROUP) -> str:
        self.member(admin_id)
        self.membership(admin_id, group_id, role="group_admin")
        return admin_id


@pytest.fixture
def engine():
    """In-memory database with a fresh schema per test"""
    engine = create_db_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker:
    return create_session_factory(engine)


@pytest.fixture
def db(session_factory: sessionmaker) -> Generator[Session, None, None]:
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(NOW)


@pytest.fixture
def side_channel(session_factory: sessionmaker) -> BestEffortAuditWriter:
    return BestEffortAuditWriter(session_factory)


@pytest.fixture
def seed(db: Session) -> Seeder:
    return Seeder(db)


@pytest.fixture
def admin(seed: Seeder) -> str:
    return seed.admin()


@pytest.fixture
def loan_service(db: Session, side_channel: BestEffortAuditWriter, clock: FrozenClock) -> LoanService:
    return LoanService(db, side_channel, clock=clock)


@pytest.fixture
def disbursed_loan(seed: Seeder, admin: str, loan_service: LoanService):
    """Factory: an eligible member's loan, approved at 0% and disbursed at the current clock time"""

    def create(member_id: str = "alice", amount: int = 12000, months: int = 6):
        seed.eligible_member(member_id)
        loan = loan_service.apply(member_id, GROUP, amount).loan
        loan_service.approve(loan.loan_id, admin, "0", months)
        loan, _ = loan_service.disburse(loan.loan_id, admin)
        return loan

    return create


@pytest.fixture
def client(session_factory: sessionmaker, clock: FrozenClock) -> Generator[TestClient, None, None]:
    """Create FastAPI test client with overridden dependencies"""

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app = create_app()
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_clock] = lambda: clock

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
