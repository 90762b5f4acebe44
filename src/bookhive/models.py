import enum, uuid
from datetime import date, datetime, timezone
from sqlalchemy import (
    String, Integer, Enum, ForeignKey, Text, JSON, Date, DateTime, UniqueConstraint
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from bookhive.db import Base

def _uuid() -> str:
    return str(uuid.uuid4())

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

def _enum(cls):
    # persist the lowercase value ("available"), not the member name
    return Enum(cls, native_enum=False, values_callable=lambda e: [m.value for m in e], length=20)

class CopyStatus(str, enum.Enum):
    AVAILABLE   = "available"
    BORROWED    = "borrowed"
    MAINTENANCE = "maintenance"
    LOST        = "lost"

class RequestStatus(str, enum.Enum):
    PENDING  = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"

class LoanStatus(str, enum.Enum):
    ACTIVE   = "active"
    OVERDUE  = "overdue"
    RETURNED = "returned"

class QueueStatus(str, enum.Enum):
    PENDING = "pending"
    SENT    = "sent"
    FAILED  = "failed"

OPEN_LOAN_STATUSES = (LoanStatus.ACTIVE, LoanStatus.OVERDUE)

class Level(Base):
    __tablename__ = "levels"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), onupdate=_utcnow)

class Category(Base):
    __tablename__ = "categories"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), onupdate=_utcnow)

class Book(Base):
    __tablename__ = "books"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    title: Mapped[str] = mapped_column(String, nullable=False, index=True)
    authors: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    description: Mapped[str | None] = mapped_column(Text)
    isbn: Mapped[str | None] = mapped_column(String, index=True)
    publisher: Mapped[str | None] = mapped_column(String)
    publication_year: Mapped[int | None] = mapped_column(Integer)
    edition: Mapped[str | None] = mapped_column(String)
    language: Mapped[str | None] = mapped_column(String)
    level_id: Mapped[str | None] = mapped_column(String, ForeignKey("levels.id", ondelete="SET NULL"))
    cover_path: Mapped[str | None] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), onupdate=_utcnow)
    copies = relationship("Copy", back_populates="book")

class BookCategory(Base):
    __tablename__ = "book_categories"
    __table_args__ = (UniqueConstraint("book_id", "category_id"),)
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    book_id: Mapped[str] = mapped_column(String, ForeignKey("books.id", ondelete="CASCADE"), nullable=False, index=True)
    category_id: Mapped[str] = mapped_column(String, ForeignKey("categories.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

class Copy(Base):
    __tablename__ = "copies"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    book_id: Mapped[str] = mapped_column(String, ForeignKey("books.id", ondelete="CASCADE"), nullable=False, index=True)
    barcode: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    status: Mapped[CopyStatus] = mapped_column(_enum(CopyStatus), default=CopyStatus.AVAILABLE, nullable=False)
    location: Mapped[str | None] = mapped_column(String)
    notes: Mapped[str | None] = mapped_column(Text)
    acquisition_date: Mapped[date | None] = mapped_column(Date)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), onupdate=_utcnow)
    book = relationship("Book", back_populates="copies")

class BorrowRequest(Base):
    __tablename__ = "borrow_requests"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    requester_name: Mapped[str] = mapped_column(String, nullable=False)
    email: Mapped[str] = mapped_column(String, nullable=False, index=True)
    phone: Mapped[str | None] = mapped_column(String)
    affiliation: Mapped[str] = mapped_column(String, nullable=False)
    id_number: Mapped[str] = mapped_column(String, nullable=False)
    membership_id: Mapped[str | None] = mapped_column(String)
    requested_items: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    desired_duration_days: Mapped[int] = mapped_column(Integer, nullable=False, default=14)
    pickup_location: Mapped[str] = mapped_column(String, nullable=False)
    purpose: Mapped[str | None] = mapped_column(Text)
    status: Mapped[RequestStatus] = mapped_column(_enum(RequestStatus), default=RequestStatus.PENDING, nullable=False)
    admin_notes: Mapped[str | None] = mapped_column(Text)
    approved_by: Mapped[str | None] = mapped_column(String)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), onupdate=_utcnow)

class Loan(Base):
    __tablename__ = "loans"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    borrow_request_id: Mapped[str | None] = mapped_column(String, ForeignKey("borrow_requests.id", ondelete="SET NULL"), index=True)
    copy_id: Mapped[str | None] = mapped_column(String, ForeignKey("copies.id", ondelete="SET NULL"), index=True)
    borrower_name: Mapped[str] = mapped_column(String, nullable=False)
    borrower_email: Mapped[str] = mapped_column(String, nullable=False)
    borrower_phone: Mapped[str | None] = mapped_column(String)
    issued_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    duration_days: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[LoanStatus] = mapped_column(_enum(LoanStatus), default=LoanStatus.ACTIVE, nullable=False, index=True)
    renewal_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    late_fee_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    issued_by: Mapped[str] = mapped_column(String, nullable=False)
    returned_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    returned_to: Mapped[str | None] = mapped_column(String)
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), onupdate=_utcnow)

class ActivityLog(Base):
    __tablename__ = "activity_log"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    actor: Mapped[str] = mapped_column(String, nullable=False, index=True)
    action: Mapped[str] = mapped_column(String, nullable=False)
    entity_type: Mapped[str | None] = mapped_column(String)
    entity_id: Mapped[str | None] = mapped_column(String, index=True)
    details: Mapped[dict | None] = mapped_column(JSON)
    ip_address: Mapped[str | None] = mapped_column(String)
    user_agent: Mapped[str | None] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, index=True)

class AdminSecret(Base):
    __tablename__ = "admin_secrets"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    key: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    value_hash: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), onupdate=_utcnow)

class NotificationQueue(Base):
    __tablename__ = "notifications_queue"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    type: Mapped[str] = mapped_column(String, nullable=False, default="email")
    to_email: Mapped[str] = mapped_column(String, nullable=False)
    subject: Mapped[str] = mapped_column(String, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[dict | None] = mapped_column(JSON)
    status: Mapped[QueueStatus] = mapped_column(_enum(QueueStatus), default=QueueStatus.PENDING, nullable=False, index=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
