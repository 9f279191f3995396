from datetime import date
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from townbook.deps import get_session, get_current_user, require_librarian, get_notifier

from townbook.models import User, ItemType
from townbook.notify.dispatcher import Notifier
from townbook.schemas import (
    UserIn, UserOut, UserCreated,
    BookIn, BookUpdate, BookOut, RoomIn, RoomUpdate, RoomOut, AvailabilityOut,
    ReservationIn, ReservationOut,
    NotificationOut, StatsOut,
)

from townbook.actions import (
    ErrorCode,
    register_user, register_book, register_room,
    list_books, list_rooms, get_book, get_room,
    update_book, delete_book, update_room, delete_room,
    list_notifications, get_notification, mark_notification_read, mark_all_notifications_read,
    library_stats,
)
from townbook import reservations as rsv
from townbook.availability import BLOCKING_STATUSES

router = APIRouter()

_STATUS = {
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.INVALID_STATE: 400,
    ErrorCode.CONFLICT: 400,
    ErrorCode.OUT_OF_STOCK: 400,
    ErrorCode.INVALID_REQUEST: 400,
    ErrorCode.EMAIL_EXISTS: 409,
    ErrorCode.ISBN_EXISTS: 409,
    ErrorCode.INTERNAL_CONSISTENCY: 500,
}

def _check(r: dict) -> dict:
    if r["ok"]:
        return r.get("data") or {}
    status = _STATUS.get(r.get("code"), 400)
    detail = r["message"] if status < 500 else "Something went wrong"
    raise HTTPException(status_code=status, detail=detail)

def _reservation_out(d: dict) -> ReservationOut:
    return ReservationOut(id=d["reservation_id"], **d)

# ---- users

@router.post("/users", response_model=UserCreated, status_code=201)
async def http_register_user(payload: UserIn, session: AsyncSession = Depends(get_session)):
    d = _check(await register_user(session, name=payload.name, email=payload.email))
    return UserCreated(id=d["user_id"], **d)

@router.get("/users/me", response_model=UserOut)
async def http_me(user: User = Depends(get_current_user)):
    return UserOut(id=user.id, name=user.name, email=user.email, role=user.role.value)

# ---- books

@router.get("/books", response_model=list[BookOut])
async def http_list_books(q: str | None = None, session: AsyncSession = Depends(get_session)):
    d = _check(await list_books(session, search=q))
    return [BookOut(id=it["book_id"], **it) for it in d["items"]]

@router.post("/books", response_model=BookOut, status_code=201)
async def http_create_book(payload: BookIn, session: AsyncSession = Depends(get_session),
                           _: User = Depends(require_librarian)):
    d = _check(await register_book(
        session, title=payload.title, author=payload.author, location=payload.location,
        total_copies=payload.total_copies, isbn=payload.isbn, genre=payload.genre,
    ))
    return BookOut(id=d["book_id"], **d)

@router.get("/books/{book_id}", response_model=BookOut)
async def http_get_book(book_id: str, session: AsyncSession = Depends(get_session)):
    d = _check(await get_book(session, book_id=book_id))
    return BookOut(id=d["book_id"], **d)

@router.put("/books/{book_id}", response_model=BookOut)
async def http_update_book(book_id: str, payload: BookUpdate, session: AsyncSession = Depends(get_session),
                           _: User = Depends(require_librarian)):
    d = _check(await update_book(session, book_id=book_id, **payload.model_dump(exclude_unset=True)))
    return BookOut(id=d["book_id"], **d)

@router.delete("/books/{book_id}")
async def http_delete_book(book_id: str, session: AsyncSession = Depends(get_session),
                           _: User = Depends(require_librarian)):
    r = await delete_book(session, book_id=book_id)
    d = _check(r)
    return {"detail": r["message"], **d}

@router.get("/books/{book_id}/reservations", response_model=list[ReservationOut])
async def http_book_reservations(book_id: str, session: AsyncSession = Depends(get_session),
                                 _: User = Depends(require_librarian)):
    d = _check(await rsv.list_item_reservations(session, type=ItemType.BOOK, item_id=book_id))
    return [_reservation_out(it) for it in d["items"]]

# ---- rooms

@router.get("/rooms", response_model=list[RoomOut])
async def http_list_rooms(q: str | None = None, session: AsyncSession = Depends(get_session)):
    d = _check(await list_rooms(session, search=q))
    return [RoomOut(id=it["room_id"], **it) for it in d["items"]]

@router.post("/rooms", response_model=RoomOut, status_code=201)
async def http_create_room(payload: RoomIn, session: AsyncSession = Depends(get_session),
                           _: User = Depends(require_librarian)):
    d = _check(await register_room(
        session, name=payload.name, capacity=payload.capacity,
        location=payload.location, amenities=payload.amenities,
    ))
    return RoomOut(id=d["room_id"], **d)

@router.get("/rooms/{room_id}", response_model=RoomOut)
async def http_get_room(room_id: str, session: AsyncSession = Depends(get_session)):
    d = _check(await get_room(session, room_id=room_id))
    return RoomOut(id=d["room_id"], **d)

@router.put("/rooms/{room_id}", response_model=RoomOut)
async def http_update_room(room_id: str, payload: RoomUpdate, session: AsyncSession = Depends(get_session),
                           _: User = Depends(require_librarian)):
    d = _check(await update_room(session, room_id=room_id, **payload.model_dump(exclude_unset=True)))
    return RoomOut(id=d["room_id"], **d)

@router.delete("/rooms/{room_id}")
async def http_delete_room(room_id: str, session: AsyncSession = Depends(get_session),
                           _: User = Depends(require_librarian)):
    r = await delete_room(session, room_id=room_id)
    d = _check(r)
    return {"detail": r["message"], **d}

@router.get("/rooms/{room_id}/schedule", response_model=list[ReservationOut])
async def http_room_schedule(room_id: str, session: AsyncSession = Depends(get_session),
                             _: User = Depends(get_current_user)):
    d = _check(await rsv.list_item_reservations(
        session, type=ItemType.ROOM, item_id=room_id, statuses=BLOCKING_STATUSES,
    ))
    return [_reservation_out(it) for it in d["items"]]

@router.get("/rooms/{room_id}/availability", response_model=AvailabilityOut)
async def http_room_availability(room_id: str, start_date: date, end_date: date,
                                 start_time: str, end_time: str,
                                 session: AsyncSession = Depends(get_session)):
    d = _check(await rsv.check_availability(
        session, room_id=room_id, start_date=start_date, end_date=end_date,
        start_time=start_time, end_time=end_time,
    ))
    return AvailabilityOut(**d)

# ---- reservations

@router.get("/reservations", response_model=list[ReservationOut])
async def http_my_reservations(user: User = Depends(get_current_user),
                               session: AsyncSession = Depends(get_session)):
    d = _check(await rsv.list_user_reservations(session, user_id=user.id))
    return [_reservation_out(it) for it in d["items"]]

@router.post("/reservations", response_model=ReservationOut, status_code=201)
async def http_create_reservation(payload: ReservationIn,
                                  user: User = Depends(get_current_user),
                                  session: AsyncSession = Depends(get_session),
                                  notifier: Notifier = Depends(get_notifier)):
    d = _check(await rsv.create_reservation(
        session, user_id=user.id, type=payload.type, item_id=payload.item_id,
        start_date=payload.start_date, end_date=payload.end_date,
        start_time=payload.start_time, end_time=payload.end_time,
        notes=payload.notes, notifier=notifier,
    ))
    return _reservation_out(d)

@router.get("/reservations/{reservation_id}", response_model=ReservationOut)
async def http_get_reservation(reservation_id: str, user: User = Depends(get_current_user),
                               session: AsyncSession = Depends(get_session)):
    owner = None if user.is_librarian else user.id
    d = _check(await rsv.get_reservation(session, reservation_id=reservation_id, user_id=owner))
    return _reservation_out(d)

@router.put("/reservations/{reservation_id}/approve", response_model=ReservationOut)
async def http_approve(reservation_id: str, user: User = Depends(require_librarian),
                       session: AsyncSession = Depends(get_session),
                       notifier: Notifier = Depends(get_notifier)):
    d = _check(await rsv.approve(session, reservation_id=reservation_id, approver_id=user.id, notifier=notifier))
    return _reservation_out(d)

@router.put("/reservations/{reservation_id}/decline", response_model=ReservationOut)
async def http_decline(reservation_id: str, user: User = Depends(require_librarian),
                       session: AsyncSession = Depends(get_session),
                       notifier: Notifier = Depends(get_notifier)):
    d = _check(await rsv.decline(session, reservation_id=reservation_id, approver_id=user.id, notifier=notifier))
    return _reservation_out(d)

@router.put("/reservations/{reservation_id}/checkout", response_model=ReservationOut)
async def http_checkout(reservation_id: str, _: User = Depends(require_librarian),
                        session: AsyncSession = Depends(get_session),
                        notifier: Notifier = Depends(get_notifier)):
    d = _check(await rsv.checkout(session, reservation_id=reservation_id, notifier=notifier))
    return _reservation_out(d)

@router.put("/reservations/{reservation_id}/return", response_model=ReservationOut)
async def http_return(reservation_id: str, _: User = Depends(require_librarian),
                      session: AsyncSession = Depends(get_session),
                      notifier: Notifier = Depends(get_notifier)):
    d = _check(await rsv.return_reservation(session, reservation_id=reservation_id, notifier=notifier))
    return _reservation_out(d)

@router.put("/reservations/{reservation_id}/check-in", response_model=ReservationOut)
async def http_check_in(reservation_id: str, _: User = Depends(require_librarian),
                        session: AsyncSession = Depends(get_session),
                        notifier: Notifier = Depends(get_notifier)):
    d = _check(await rsv.check_in(session, reservation_id=reservation_id, notifier=notifier))
    return _reservation_out(d)

@router.put("/reservations/{reservation_id}/check-out", response_model=ReservationOut)
async def http_check_out(reservation_id: str, _: User = Depends(require_librarian),
                         session: AsyncSession = Depends(get_session),
                         notifier: Notifier = Depends(get_notifier)):
    d = _check(await rsv.check_out(session, reservation_id=reservation_id, notifier=notifier))
    return _reservation_out(d)

@router.delete("/reservations/{reservation_id}")
async def http_delete_reservation(reservation_id: str, user: User = Depends(get_current_user),
                                  session: AsyncSession = Depends(get_session)):
    owner = None if user.is_librarian else user.id
    r = await rsv.delete_reservation(session, reservation_id=reservation_id, owner_id=owner)
    d = _check(r)
    return {"detail": r["message"], **d}

# ---- notifications

@router.get("/notifications", response_model=list[NotificationOut])
async def http_notifications(user: User = Depends(get_current_user),
                             session: AsyncSession = Depends(get_session)):
    d = _check(await list_notifications(session, user_id=user.id))
    return [NotificationOut(id=it["notification_id"], **it) for it in d["items"]]

@router.put("/notifications/read-all")
async def http_notifications_read_all(user: User = Depends(get_current_user),
                                      session: AsyncSession = Depends(get_session)):
    r = await mark_all_notifications_read(session, user_id=user.id)
    d = _check(r)
    return {"detail": r["message"], **d}

@router.get("/notifications/{notification_id}", response_model=NotificationOut)
async def http_notification(notification_id: str, user: User = Depends(get_current_user),
                            session: AsyncSession = Depends(get_session)):
    d = _check(await get_notification(session, user_id=user.id, notification_id=notification_id))
    return NotificationOut(id=d["notification_id"], **d)

@router.put("/notifications/{notification_id}/read", response_model=NotificationOut)
async def http_notification_read(notification_id: str, user: User = Depends(get_current_user),
                                 session: AsyncSession = Depends(get_session)):
    d = _check(await mark_notification_read(session, user_id=user.id, notification_id=notification_id))
    return NotificationOut(id=d["notification_id"], **d)

# ---- stats

@router.get("/stats", response_model=StatsOut)
async def http_stats(_: User = Depends(require_librarian), session: AsyncSession = Depends(get_session)):
    return StatsOut(**_check(await library_stats(session)))
