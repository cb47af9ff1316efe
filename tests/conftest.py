"""Pytest fixtures for testing"""

import pytest
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Generator
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, Session
from lending_core.domain.models import KycStatus, LoanState
from lending_core.infrastructure.clients.disbursement import StubDisbursementGateway
from lending_core.infrastructure.database.models import Base, Loan, User
from lending_core.services.lifecycle import LoanLifecycle


# Test database
TEST_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

TODAY = date(2025, 6, 2)


# pysqlite defers BEGIN until the first write, which breaks SAVEPOINT
# semantics; take over transaction control so nested transactions behave
# like they do on PostgreSQL.
@event.listens_for(engine, "connect")
def _disable_pysqlite_transactions(dbapi_connection, connection_record):
    dbapi_connection.isolation_level = None


@event.listens_for(engine, "begin")
def _emit_begin(conn):
    conn.exec_driver_sql("BEGIN")


class FixedClock:
    """Injectable business-date clock that tests can move forward"""

    def __init__(self, today: date = TODAY):
        self.today = today

    def __call__(self) -> date:
        return self.today

    def advance(self, days: int) -> None:
        self.today = self.today + timedelta(days=days)


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Create test database and session"""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def session_factory(db: Session) -> sessionmaker:
    """Open additional sessions against the same test database"""
    return TestingSessionLocal


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def lifecycle(db: Session, clock: FixedClock) -> LoanLifecycle:
    return LoanLifecycle(db, clock=clock)


@pytest.fixture
def gateway() -> StubDisbursementGateway:
    return StubDisbursementGateway()


@pytest.fixture
def make_user(db: Session) -> Callable[..., User]:
    """Factory for committed borrowers"""

    def _make_user(
        kyc_status: KycStatus = KycStatus.APPROVED,
        credit_limit_cents: int = 5_000_000,
        current_score: int = 600,
        account_age_days: int = 400,
    ) -> User:
        user = User(
            kyc_status=kyc_status,
            credit_limit_cents=credit_limit_cents,
            current_score=current_score,
            created_at=datetime.combine(TODAY, datetime.min.time(), tzinfo=timezone.utc)
            - timedelta(days=account_age_days),
        )
        db.add(user)
        db.commit()
        return user

    return _make_user


@pytest.fixture
def user(make_user) -> User:
    return make_user()


@pytest.fixture
def make_loan(
    db: Session, lifecycle: LoanLifecycle, gateway: StubDisbursementGateway
) -> Callable[..., Loan]:
    """
    Factory that originates a loan and walks it to the requested state
    through the real lifecycle operations.
    """

    def _make_loan(
        user: User,
        amount_cents: int = 1_000_000,
        term_days: int = 30,
        state: LoanState = LoanState.PENDING,
    ) -> Loan:
        loan = lifecycle.originate(user.id, amount_cents, term_days)
        if state is LoanState.PENDING:
            return loan

        lifecycle.approve(loan.id)
        if state is LoanState.APPROVED:
            return loan

        lifecycle.disburse(loan.id, gateway, idempotency_key=f"setup-{loan.id}")
        if state is LoanState.DISBURSED:
            return loan

        raise ValueError(f"make_loan cannot build state {state}")

    return _make_loan
