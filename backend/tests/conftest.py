import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("EXPIRATION_SWEEP_ENABLED", "false")
os.environ.setdefault("ADMIN_EXTERNAL_IDS", '["admin-1"]')

from datetime import date, time  # noqa: E402

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from lab_booking import models  # noqa: E402,F401
from lab_booking.core.security import create_access_token  # noqa: E402
from lab_booking.database import Base, get_db  # noqa: E402
from lab_booking.main import app  # noqa: E402
from lab_booking.models.booking import Booking, BookingStatus  # noqa: E402
from lab_booking.models.lab_computer import ComputerStatus, LabComputer  # noqa: E402
from lab_booking.models.user import User, UserRole  # noqa: E402
from lab_booking.services.expiration import BookingExpirationSweeper  # noqa: E402


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def admin(db):
    user = User(external_id="admin-1", name="Lab Admin", email="admin@lab.test", role=UserRole.ADMIN)
    db.add(user)
    await db.commit()
    return user


@pytest.fixture
async def student(db):
    user = User(external_id="student-1", name="Student One", email="student@lab.test")
    db.add(user)
    await db.commit()
    return user


@pytest.fixture
async def other_student(db):
    user = User(external_id="student-2", name="Student Two", email="student2@lab.test")
    db.add(user)
    await db.commit()
    return user


@pytest.fixture
async def computer(db):
    computer = LabComputer(name="R", location="Room 101", specifications="RTX 4090, 64GB RAM")
    db.add(computer)
    await db.commit()
    return computer


@pytest.fixture
async def second_computer(db):
    computer = LabComputer(name="S", location="Room 102", specifications="A100, 128GB RAM")
    db.add(computer)
    await db.commit()
    return computer


@pytest.fixture
def make_booking(db):
    """Insert a booking directly, bypassing the request validator."""

    async def _make(
        owner: User,
        computer: LabComputer,
        status: BookingStatus = BookingStatus.PENDING,
        start_date: date = date(2024, 6, 10),
        end_date: date = date(2024, 6, 10),
        start_time: time = time(9, 0),
        end_time: time = time(10, 0),
        reason: str = "test",
    ) -> Booking:
        booking = Booking(
            user_id=owner.external_id,
            computer_id=computer.id,
            computer=computer,
            requester=owner,
            start_date=start_date,
            end_date=end_date,
            start_time=start_time,
            end_time=end_time,
            reason=reason,
            status=status,
            rejection_reason="seeded" if status == BookingStatus.REJECTED else None,
        )
        db.add(booking)
        if status == BookingStatus.APPROVED:
            computer.status = ComputerStatus.BOOKED
        await db.commit()
        return booking

    return _make


@pytest.fixture
def sweeper(session_factory):
    return BookingExpirationSweeper(session_factory=session_factory)


@pytest.fixture
async def client(session_factory, sweeper):
    async def _get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    app.state.expiration_sweeper = sweeper
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    def _headers(external_id: str, name: str | None = None) -> dict:
        return {"Authorization": f"Bearer {create_access_token(external_id, name=name)}"}

    return _headers
