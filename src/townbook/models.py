import enum, uuid
from datetime import datetime, date
from sqlalchemy import (
    String, Integer, Enum, ForeignKey, Text, Boolean, func, DateTime, Date, JSON, CheckConstraint
)
from sqlalchemy.orm import Mapped, mapped_column
from townbook.db import Base

class Role(str, enum.Enum):
    MEMBER = "MEMBER"
    LIBRARIAN = "LIBRARIAN"
    ADMIN = "ADMIN"

class ItemType(str, enum.Enum):
    BOOK = "BOOK"
    ROOM = "ROOM"

class ReservationStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    DECLINED = "DECLINED"
    CHECKED_IN = "CHECKED_IN"
    CHECKED_OUT = "CHECKED_OUT"
    RETURNED = "RETURNED"

class BookStatus(str, enum.Enum):
    AVAILABLE = "AVAILABLE"
    OUT_OF_STOCK = "OUT_OF_STOCK"

class NotificationType(str, enum.Enum):
    RESERVATION = "Reservation"
    ROOM = "Room"
    BOOK = "Book"
    SYSTEM = "System"

def _uuid() -> str:
    return str(uuid.uuid4())

class User(Base):
    __tablename__ = "user"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String, nullable=False)
    email: Mapped[str] = mapped_column(String, unique=True, index=True, nullable=False)
    role: Mapped[Role] = mapped_column(Enum(Role, native_enum=False), default=Role.MEMBER, nullable=False)
    api_token: Mapped[str] = mapped_column(String, unique=True, index=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    @property
    def is_librarian(self) -> bool:
        return self.role in (Role.LIBRARIAN, Role.ADMIN)

class Book(Base):
    __tablename__ = "book"
    __table_args__ = (
        CheckConstraint("total_copies >= 1", name="ck_book_total_copies"),
        CheckConstraint("available_copies >= 0 AND available_copies <= total_copies", name="ck_book_available_copies"),
    )
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    title: Mapped[str] = mapped_column(String, nullable=False, index=True)
    author: Mapped[str] = mapped_column(String, nullable=False)
    isbn: Mapped[str | None] = mapped_column(String, unique=True)
    genre: Mapped[str] = mapped_column(String, default="Other")
    location: Mapped[str] = mapped_column(String, nullable=False)
    total_copies: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    available_copies: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    reservation_ids: Mapped[list[str]] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    @property
    def status(self) -> BookStatus:
        return BookStatus.AVAILABLE if self.available_copies > 0 else BookStatus.OUT_OF_STOCK

class Room(Base):
    __tablename__ = "room"
    __table_args__ = (CheckConstraint("capacity >= 1", name="ck_room_capacity"),)
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String, nullable=False, index=True)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    location: Mapped[str] = mapped_column(String, nullable=False)
    amenities: Mapped[list[str]] = mapped_column(JSON, default=list)
    reservation_ids: Mapped[list[str]] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

class Reservation(Base):
    __tablename__ = "reservations"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("user.id", ondelete="RESTRICT"), nullable=False, index=True)
    type: Mapped[ItemType] = mapped_column(Enum(ItemType, native_enum=False), nullable=False)
    # polymorphic target, resolved through ``type``
    item_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    status: Mapped[ReservationStatus] = mapped_column(Enum(ReservationStatus, native_enum=False), default=ReservationStatus.PENDING, nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    start_time: Mapped[str | None] = mapped_column(String(5))
    end_time: Mapped[str | None] = mapped_column(String(5))
    notes: Mapped[str | None] = mapped_column(Text)
    approved_by: Mapped[str | None] = mapped_column(String, ForeignKey("user.id", ondelete="SET NULL"), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    returned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

class Notification(Base):
    __tablename__ = "notification"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("user.id", ondelete="CASCADE"), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[NotificationType] = mapped_column(Enum(NotificationType, native_enum=False), default=NotificationType.RESERVATION)
    read: Mapped[bool] = mapped_column(Boolean, default=False)
    related_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
