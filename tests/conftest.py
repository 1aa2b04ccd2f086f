"""
tests/conftest.py
Shared fixtures: a file-backed SQLite database per test, fake channel
sender and document service, seeded bookings/professionals/staff, and an
HTTP client bound to the app with the orchestrator swapped for the fakes.
"""

import os

# Settings are read at import time; these must exist before any app import.
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("APP_ENV", "test")

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional, Sequence

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config.database import Base, get_db
from services.documents.generator import GeneratedDocument
from services.notification.dispatcher import SendOutcome
from services.orchestration.orchestrator import Orchestrator, get_orchestrator
from shared.models.models import (
    Booking,
    BookingStatus,
    Customer,
    DocumentType,
    InternalStaff,
    Professional,
    TriggerType,
)

# Paris, the service location for every seeded booking
PARIS = (48.8566, 2.3522)
VERSAILLES = (48.8049, 2.1204)     # ~18km
MEAUX = (48.9601, 2.8788)          # ~40km
LYON = (45.7640, 4.8357)           # ~390km


# ── Fakes ─────────────────────────────────────────────────────

@dataclass
class SentMessage:
    channel: str
    to: str
    template_id: Optional[str]
    payload: dict
    attachments: tuple = ()


@dataclass
class RecordingSender:
    """ChannelSender that records every call. Addresses in `fail_for` fail; `delay` slows every send."""
    fail_for: set = field(default_factory=set)
    raise_for: set = field(default_factory=set)
    delay: float = 0.0
    sent: List[SentMessage] = field(default_factory=list)

    async def _record(self, message: SentMessage) -> SendOutcome:
        if self.delay:
            await asyncio.sleep(self.delay)
        self.sent.append(message)
        if message.to in self.raise_for:
            raise RuntimeError("provider exploded")
        if message.to in self.fail_for:
            return SendOutcome.failed("provider rejected message")
        return SendOutcome(delivered=True, provider_ref=f"ref-{len(self.sent)}")

    async def send_email(self, to, template_id, payload, attachments):
        return await self._record(SentMessage("EMAIL", to, template_id, payload, tuple(attachments)))

    async def send_sms(self, to, payload):
        return await self._record(SentMessage("SMS", to, None, payload))

    async def send_whatsapp(self, to, template_id, variables):
        return await self._record(SentMessage("WHATSAPP", to, template_id, variables))

    def to(self, address: str) -> List[SentMessage]:
        return [m for m in self.sent if m.to == address]

    def by_channel(self, channel: str) -> List[SentMessage]:
        return [m for m in self.sent if m.channel == channel]


@dataclass
class FakeDocuments:
    """Returns one small document of every type; records (booking_id, trigger) calls."""
    calls: list = field(default_factory=list)
    sizes: dict = field(default_factory=dict)
    error: Optional[Exception] = None

    async def generate_documents(self, booking_id, trigger) -> List[GeneratedDocument]:
        self.calls.append((booking_id, trigger))
        if self.error:
            raise self.error
        return [
            GeneratedDocument(
                type=doc_type,
                filename=f"{doc_type.value.lower()}.pdf",
                content=b"%PDF" + b"x" * self.sizes.get(doc_type, 16),
            )
            for doc_type in DocumentType
        ]


# ── Database ──────────────────────────────────────────────────

@pytest_asyncio.fixture
async def engine(tmp_path):
    # A file database so concurrent sessions really are separate connections
    test_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}",
        connect_args={"timeout": 30},
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncSession:
    async with session_factory() as session:
        yield session


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def documents() -> FakeDocuments:
    return FakeDocuments()


@pytest.fixture
def orchestrator(session_factory, sender, documents) -> Orchestrator:
    return Orchestrator(session_factory=session_factory, sender=sender, documents=documents)


# ── Seed helpers ──────────────────────────────────────────────

async def make_customer(db: AsyncSession, email="marie.durand@example.com", phone="+33611223344") -> Customer:
    customer = Customer(id=uuid.uuid4(), first_name="Marie", last_name="Durand", email=email, phone=phone)
    db.add(customer)
    await db.commit()
    return customer


async def make_booking(
    db: AsyncSession,
    customer: Customer,
    scheduled_in: timedelta = timedelta(days=10),
    location=PARIS,
    service_type="plumbing",
) -> Booking:
    booking = Booking(
        id=uuid.uuid4(),
        reference=f"BK-{uuid.uuid4().hex[:8].upper()}",
        customer_id=customer.id,
        status=BookingStatus.CONFIRMED,
        service_type=service_type,
        scheduled_at=datetime.now(timezone.utc) + scheduled_in,
        address="12 Rue de Rivoli",
        city="Paris",
        postal_code="75001",
        latitude=location[0] if location else None,
        longitude=location[1] if location else None,
        total_amount=Decimal("200.00"),
        currency="EUR",
        description="Kitchen sink leak",
    )
    db.add(booking)
    await db.commit()
    return booking


async def make_professional(
    db: AsyncSession,
    location=VERSAILLES,
    service_types: Sequence[str] = ("plumbing",),
    email: Optional[str] = None,
    phone: Optional[str] = "+33700000001",
    is_verified=True,
    is_available=True,
    max_distance_km: Optional[float] = None,
    first_name="Paul",
) -> Professional:
    professional_id = uuid.uuid4()
    professional = Professional(
        id=professional_id,
        first_name=first_name,
        last_name="Martin",
        email=email or f"pro-{professional_id.hex[:8]}@example.com",
        phone=phone,
        is_verified=is_verified,
        is_available=is_available,
        service_types=list(service_types),
        latitude=location[0],
        longitude=location[1],
        max_distance_km=max_distance_km,
    )
    db.add(professional)
    await db.commit()
    return professional


async def make_staff(
    db: AsyncSession,
    email="ops@example.com",
    department="operations",
    triggers=(TriggerType.BOOKING_CONFIRMED.value, TriggerType.PAYMENT_COMPLETED.value),
    is_active=True,
) -> InternalStaff:
    staff = InternalStaff(
        id=uuid.uuid4(),
        name=f"{department.title()} Team",
        email=email,
        department=department,
        is_active=is_active,
        subscribed_triggers=list(triggers),
    )
    db.add(staff)
    await db.commit()
    return staff


@pytest_asyncio.fixture
async def customer(db) -> Customer:
    return await make_customer(db)


@pytest_asyncio.fixture
async def booking(db, customer) -> Booking:
    return await make_booking(db, customer)


# ── HTTP ──────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def client(orchestrator, session_factory) -> AsyncClient:
    from main import app

    async def override_db():
        async with session_factory() as session:
            yield session
            await session.commit()

    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_db] = override_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
