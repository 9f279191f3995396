from __future__ import annotations
import enum
import logging
import secrets
from typing import Optional, Dict, Any, List

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, or_, update, delete

from townbook.models import (
    Book, Room, User, Reservation, Notification,
    ItemType, Role, ReservationStatus
)
from townbook.locks import item_locks

logger = logging.getLogger(__name__)

class ErrorCode(str, enum.Enum):
    NOT_FOUND = "NOT_FOUND"
    INVALID_STATE = "INVALID_STATE"
    CONFLICT = "CONFLICT"
    OUT_OF_STOCK = "OUT_OF_STOCK"
    INVALID_REQUEST = "INVALID_REQUEST"
    EMAIL_EXISTS = "EMAIL_EXISTS"
    ISBN_EXISTS = "ISBN_EXISTS"
    INTERNAL_CONSISTENCY = "INTERNAL_CONSISTENCY"

ACTIVE_STATUSES = (
    ReservationStatus.PENDING, ReservationStatus.APPROVED,
    ReservationStatus.CHECKED_IN, ReservationStatus.CHECKED_OUT,
)

def _ok(msg: str, **data):    return {"ok": True,  "message": msg, **({"data": data} if data else {})}
def _err(msg: str, code="", **data): return {"ok": False, "message": msg, "code": code, **({"data": data} if data else {})}

def user_data(u: User) -> Dict[str, Any]:
    return {"user_id": u.id, "name": u.name, "email": u.email, "role": u.role.value}

def book_data(b: Book) -> Dict[str, Any]:
    return {
        "book_id": b.id, "title": b.title, "author": b.author, "isbn": b.isbn,
        "genre": b.genre, "location": b.location,
        "total_copies": b.total_copies, "available_copies": b.available_copies,
        "status": b.status.value,
    }

def room_data(r: Room) -> Dict[str, Any]:
    return {
        "room_id": r.id, "name": r.name, "capacity": r.capacity,
        "location": r.location, "amenities": list(r.amenities or []),
    }

def notification_data(n: Notification) -> Dict[str, Any]:
    return {
        "notification_id": n.id, "title": n.title, "message": n.message,
        "type": n.type.value, "read": n.read, "related_id": n.related_id,
        "created_at": n.created_at,
    }

# ---- users

async def register_user(session: AsyncSession, *, name: str, email: str, role: Role = Role.MEMBER) -> Dict[str, Any]:
    email_norm = (email or "").strip().lower()
    if not (name and email_norm):
        return _err("Name and email are required.", code=ErrorCode.INVALID_REQUEST)
    r = await session.execute(select(User).where(User.email == email_norm))
    if r.scalar_one_or_none():
        return _err("A user with that email already exists.", code=ErrorCode.EMAIL_EXISTS)
    user = User(name=name.strip(), email=email_norm, role=role, api_token=secrets.token_urlsafe(32))
    session.add(user)
    await session.commit()
    await session.refresh(user)
    logger.info("registered %s user %s", user.role.value, user.id)
    return _ok("User registered.", api_token=user.api_token, **user_data(user))

async def get_user_by_token(session: AsyncSession, token: str) -> Optional[User]:
    if not token:
        return None
    r = await session.execute(select(User).where(User.api_token == token))
    return r.scalar_one_or_none()

# ---- catalog

async def register_book(
    session: AsyncSession, *, title: str, author: str, location: str,
    total_copies: int = 1, isbn: Optional[str] = None, genre: Optional[str] = None,
) -> Dict[str, Any]:
    if not (title and author and location):
        return _err("Title, author and location are required.", code=ErrorCode.INVALID_REQUEST)
    if total_copies < 1:
        return _err("A book needs at least one copy.", code=ErrorCode.INVALID_REQUEST)
    if isbn:
        r = await session.execute(select(Book).where(Book.isbn == isbn))
        if r.scalar_one_or_none():
            return _err("A book with that ISBN already exists.", code=ErrorCode.ISBN_EXISTS)
    b = Book(
        title=title.strip(), author=author.strip(), location=location.strip(),
        isbn=isbn or None, genre=genre or "Other",
        total_copies=total_copies, available_copies=total_copies, reservation_ids=[],
    )
    session.add(b)
    await session.commit()
    await session.refresh(b)
    return _ok("Book registered.", **book_data(b))

async def register_room(
    session: AsyncSession, *, name: str, capacity: int, location: str,
    amenities: Optional[List[str]] = None,
) -> Dict[str, Any]:
    if not (name and location):
        return _err("Name and location are required.", code=ErrorCode.INVALID_REQUEST)
    if capacity < 1:
        return _err("Room capacity must be at least 1.", code=ErrorCode.INVALID_REQUEST)
    room = Room(name=name.strip(), capacity=capacity, location=location.strip(),
                amenities=list(amenities or []), reservation_ids=[])
    session.add(room)
    await session.commit()
    await session.refresh(room)
    return _ok("Room registered.", **room_data(room))

async def list_books(session: AsyncSession, *, search: Optional[str] = None) -> Dict[str, Any]:
    q = select(Book).order_by(Book.title)
    if search:
        t = f"%{search.strip()}%"
        q = q.where(or_(Book.title.ilike(t), Book.author.ilike(t), Book.isbn.ilike(t), Book.genre.ilike(t)))
    books = (await session.execute(q)).scalars().all()
    return _ok("Books listed.", items=[book_data(b) for b in books])

async def list_rooms(session: AsyncSession, *, search: Optional[str] = None) -> Dict[str, Any]:
    q = select(Room).order_by(Room.name)
    if search:
        t = f"%{search.strip()}%"
        q = q.where(or_(Room.name.ilike(t), Room.location.ilike(t)))
    rooms = (await session.execute(q)).scalars().all()
    return _ok("Rooms listed.", items=[room_data(r) for r in rooms])

async def get_book(session: AsyncSession, *, book_id: str) -> Dict[str, Any]:
    b = await session.get(Book, book_id)
    if not b:
        return _err("Book not found.", code=ErrorCode.NOT_FOUND)
    return _ok("Book found.", **book_data(b))

async def get_room(session: AsyncSession, *, room_id: str) -> Dict[str, Any]:
    room = await session.get(Room, room_id)
    if not room:
        return _err("Room not found.", code=ErrorCode.NOT_FOUND)
    return _ok("Room found.", **room_data(room))

def _text_fields(**fields) -> tuple[Dict[str, Any], Optional[Dict[str, Any]]]:
    values = {}
    for name, v in fields.items():
        if v is None:
            continue
        if not v.strip():
            return values, _err(f"{name.capitalize()} cannot be empty.", code=ErrorCode.INVALID_REQUEST)
        values[name] = v.strip()
    return values, None

async def update_book(
    session: AsyncSession, *, book_id: str,
    title: Optional[str] = None, author: Optional[str] = None, location: Optional[str] = None,
    genre: Optional[str] = None, isbn: Optional[str] = None, total_copies: Optional[int] = None,
) -> Dict[str, Any]:
    values, error = _text_fields(title=title, author=author, location=location, genre=genre)
    if error:
        return error
    async with item_locks.hold(book_id):
        b = await session.get(Book, book_id, populate_existing=True)
        if not b:
            return _err("Book not found.", code=ErrorCode.NOT_FOUND)
        if isbn is not None:
            isbn = isbn.strip() or None
            if isbn:
                r = await session.execute(select(Book.id).where(Book.isbn == isbn, Book.id != book_id))
                if r.first():
                    return _err("A book with that ISBN already exists.", code=ErrorCode.ISBN_EXISTS)
            values["isbn"] = isbn

        q = update(Book).where(Book.id == book_id)
        if total_copies is not None:
            held = b.total_copies - b.available_copies
            if total_copies < 1:
                return _err("A book needs at least one copy.", code=ErrorCode.INVALID_REQUEST)
            if total_copies < held:
                return _err(f"Total copies cannot be less than the copies currently held ({held}).",
                            code=ErrorCode.INVALID_REQUEST)
            # keep the number of held copies, move the free ones with the total
            values["total_copies"] = total_copies
            values["available_copies"] = Book.available_copies + (total_copies - Book.total_copies)
            q = q.where(Book.total_copies - Book.available_copies <= total_copies)
        if values:
            r = await session.execute(q.values(**values).execution_options(synchronize_session=False))
            if r.rowcount != 1:
                await session.rollback()
                return _err("Book stock changed while updating, try again.", code=ErrorCode.INVALID_STATE)
            await session.commit()
        b = await session.get(Book, book_id, populate_existing=True)
    logger.info("updated book %s (%s)", book_id, ", ".join(sorted(values)) or "no changes")
    return _ok("Book updated.", **book_data(b))

async def delete_book(session: AsyncSession, *, book_id: str) -> Dict[str, Any]:
    async with item_locks.hold(book_id):
        b = await session.get(Book, book_id)
        if not b:
            return _err("Book not found.", code=ErrorCode.NOT_FOUND)
        r = await session.execute(
            delete(Reservation)
            .where(Reservation.type == ItemType.BOOK, Reservation.item_id == book_id)
        )
        await session.delete(b)
        await session.commit()
    logger.info("deleted book %s with %d reservation(s)", book_id, r.rowcount)
    return _ok("Book removed successfully.", book_id=book_id, removed_reservations=r.rowcount)

async def update_room(
    session: AsyncSession, *, room_id: str,
    name: Optional[str] = None, location: Optional[str] = None,
    capacity: Optional[int] = None, amenities: Optional[List[str]] = None,
) -> Dict[str, Any]:
    values, error = _text_fields(name=name, location=location)
    if error:
        return error
    if capacity is not None:
        if capacity < 1:
            return _err("Room capacity must be at least 1.", code=ErrorCode.INVALID_REQUEST)
        values["capacity"] = capacity
    if amenities is not None:
        values["amenities"] = list(amenities)
    async with item_locks.hold(room_id):
        room = await session.get(Room, room_id)
        if not room:
            return _err("Room not found.", code=ErrorCode.NOT_FOUND)
        for k, v in values.items():
            setattr(room, k, v)
        await session.commit()
        await session.refresh(room)
    return _ok("Room updated.", **room_data(room))

async def delete_room(session: AsyncSession, *, room_id: str) -> Dict[str, Any]:
    async with item_locks.hold(room_id):
        room = await session.get(Room, room_id)
        if not room:
            return _err("Room not found.", code=ErrorCode.NOT_FOUND)
        r = await session.execute(
            delete(Reservation)
            .where(Reservation.type == ItemType.ROOM, Reservation.item_id == room_id)
        )
        await session.delete(room)
        await session.commit()
    logger.info("deleted room %s with %d reservation(s)", room_id, r.rowcount)
    return _ok("Room removed successfully.", room_id=room_id, removed_reservations=r.rowcount)

# ---- notifications inbox

async def list_notifications(session: AsyncSession, *, user_id: str) -> Dict[str, Any]:
    q = select(Notification).where(Notification.user_id == user_id).order_by(Notification.created_at.desc())
    items = (await session.execute(q)).scalars().all()
    return _ok("Notifications listed.", items=[notification_data(n) for n in items])

async def get_notification(session: AsyncSession, *, user_id: str, notification_id: str) -> Dict[str, Any]:
    r = await session.execute(
        select(Notification).where(Notification.id == notification_id, Notification.user_id == user_id)
    )
    n = r.scalar_one_or_none()
    if not n:
        return _err("Notification not found.", code=ErrorCode.NOT_FOUND)
    return _ok("Notification found.", **notification_data(n))

async def mark_notification_read(session: AsyncSession, *, user_id: str, notification_id: str) -> Dict[str, Any]:
    r = await session.execute(
        select(Notification).where(Notification.id == notification_id, Notification.user_id == user_id)
    )
    n = r.scalar_one_or_none()
    if not n:
        return _err("Notification not found.", code=ErrorCode.NOT_FOUND)
    n.read = True
    await session.commit()
    await session.refresh(n)
    return _ok("Notification marked as read.", **notification_data(n))

async def mark_all_notifications_read(session: AsyncSession, *, user_id: str) -> Dict[str, Any]:
    r = await session.execute(
        update(Notification)
        .where(Notification.user_id == user_id, Notification.read.is_(False))
        .values(read=True)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return _ok("All notifications marked as read.", updated=r.rowcount)

# ---- stats

async def library_stats(session: AsyncSession) -> Dict[str, Any]:
    total_books = (await session.execute(select(func.count()).select_from(Book))).scalar_one()
    total_rooms = (await session.execute(select(func.count()).select_from(Room))).scalar_one()
    total_users = (await session.execute(select(func.count()).select_from(User))).scalar_one()
    active = (await session.execute(
        select(func.count()).select_from(Reservation).where(Reservation.status.in_(ACTIVE_STATUSES))
    )).scalar_one()
    return _ok(
        "Library statistics.",
        total_books=int(total_books), total_rooms=int(total_rooms),
        total_users=int(total_users), active_reservations=int(active),
    )
