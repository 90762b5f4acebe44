from datetime import date
from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool
from bookhive.db import Base
from bookhive import models
from bookhive.config import settings
from bookhive.actions.common import new_barcode
from bookhive.actions.requests import submit_borrow_request, process_borrow_request
from bookhive.email.client import EmailDeliveryError

TODAY = date(2026, 3, 2)

class RecordingMailer:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    async def send(self, *, to, subject, html=None, text=None):
        if self.fail:
            raise EmailDeliveryError("mail server unavailable")
        self.sent.append({"to": to, "subject": subject, "html": html, "text": text})
        return f"email_test_{len(self.sent)}"

    async def aclose(self):
        return None

@pytest.fixture(autouse=True)
def admin_jwt_secret(monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_JWT_SECRET", "test-signing-key-0123456789abcdef")
    return settings.ADMIN_JWT_SECRET

@pytest_asyncio.fixture
async def async_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:", echo=False, future=True,
        connect_args={"check_same_thread": False}, poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()

@pytest_asyncio.fixture
async def session_factory(async_engine):
    return async_sessionmaker(async_engine, expire_on_commit=False, class_=AsyncSession)

@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as s:
        try:
            yield s
        finally:
            await s.rollback()

@pytest.fixture
def mailer():
    return RecordingMailer()

@pytest.fixture
def failing_mailer():
    return RecordingMailer(fail=True)

@pytest.fixture
def make_book(session):
    async def _make(title: str = "Clean Code", authors=("Robert C. Martin",), copies: int = 1,
                    status: models.CopyStatus = models.CopyStatus.AVAILABLE):
        book = models.Book(title=title, authors=list(authors))
        session.add(book)
        await session.flush()
        copy_ids = []
        for _ in range(copies):
            c = models.Copy(book_id=book.id, barcode=new_barcode(), status=status)
            session.add(c)
            await session.flush()
            copy_ids.append(c.id)
        await session.commit()
        return book.id, copy_ids
    return _make

@pytest.fixture
def make_request(session):
    async def _make(items, duration: int = 14, email: str = "alice@example.com"):
        r = await submit_borrow_request(session, data={
            "requester_name": "Alice Reader",
            "email": email,
            "affiliation": "Student",
            "id_number": "S-1001",
            "pickup_location": "Main Desk",
            "desired_duration_days": duration,
            "requested_items": [
                {"book_id": book_id, "quantity": qty} for book_id, qty in items
            ],
        })
        assert r["ok"] is True, r
        return r["data"]["request"]["id"]
    return _make

@pytest.fixture
def make_loan(session, make_book, make_request, mailer):
    """Approve a one-book request and return (loan_id, copy_id)."""
    async def _make(duration: int = 14, issued: date = TODAY, email: Optional[str] = None):
        book_id, copy_ids = await make_book()
        request_id = await make_request([(book_id, 1)], duration=duration, email=email or "alice@example.com")
        r = await process_borrow_request(session, mailer, request_id=request_id, action="approved", today=issued)
        assert r["ok"] is True, r
        loan = r["data"]["loans"][0]
        return loan["id"], loan["copy_id"]
    return _make
