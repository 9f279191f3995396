from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Optional, Dict, Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, and_

from townbook.actions import _ok, _err, ErrorCode
from townbook.availability import check_room_availability
from townbook.locks import item_locks
from townbook.models import (
    Book, Room, User, Reservation,
    ItemType, NotificationType, ReservationStatus, Role,
)
from townbook.notify.dispatcher import Notifier
from townbook.overlap import OverlapPolicy, TimeWindow, normalize_clock

logger = logging.getLogger(__name__)

_ITEM_MODELS = {ItemType.BOOK: Book, ItemType.ROOM: Room}

Effect = Callable[[AsyncSession, Reservation], Awaitable[Optional[Dict[str, Any]]]]

def _now() -> datetime:
    return datetime.now(timezone.utc)

def reservation_data(r: Reservation) -> Dict[str, Any]:
    return {
        "reservation_id": r.id,
        "user_id": r.user_id,
        "type": r.type.value,
        "item_id": r.item_id,
        "status": r.status.value,
        "start_date": r.start_date,
        "end_date": r.end_date,
        "start_time": r.start_time,
        "end_time": r.end_time,
        "notes": r.notes,
        "approved_by": r.approved_by,
        "approved_at": r.approved_at,
        "returned_at": r.returned_at,
    }

def _label(item) -> str:
    if isinstance(item, Book):
        return item.title
    if isinstance(item, Room):
        return item.name
    return "the item"

def _parse_type(value) -> Optional[ItemType]:
    if isinstance(value, ItemType):
        return value
    try:
        return ItemType(str(value or "").strip().upper())
    except ValueError:
        return None

def _room_window(start_date: date, end_date: date, start_time: Optional[str], end_time: Optional[str]):
    if not (start_time and end_time):
        return None, _err("Room reservations need a start and end time.", code=ErrorCode.INVALID_REQUEST)
    try:
        window = TimeWindow(start_date, end_date, normalize_clock(start_time), normalize_clock(end_time))
    except ValueError as e:
        return None, _err(str(e), code=ErrorCode.INVALID_REQUEST)
    if not window.is_valid():
        return None, _err("The reservation must end after it starts.", code=ErrorCode.INVALID_REQUEST)
    return window, None

# ---- availability

async def check_availability(
    session: AsyncSession, *, room_id: str, start_date: date, end_date: date,
    start_time: str, end_time: str, policy: Optional[OverlapPolicy] = None,
) -> Dict[str, Any]:
    room = await session.get(Room, room_id)
    if not room:
        return _err("Room not found.", code=ErrorCode.NOT_FOUND)
    window, error = _room_window(start_date, end_date, start_time, end_time)
    if error:
        return error
    available = await check_room_availability(
        session, room_id=room_id,
        start_date=window.start_date, end_date=window.end_date,
        start_time=window.start_time, end_time=window.end_time,
        policy=policy,
    )
    msg = "Room is available." if available else "Room is not available for the requested time slot."
    return _ok(msg, room_id=room_id, available=available)

# ---- create

async def create_reservation(
    session: AsyncSession, *, user_id: str, type, item_id: str,
    start_date: date, end_date: date,
    start_time: Optional[str] = None, end_time: Optional[str] = None,
    notes: Optional[str] = None,
    notifier: Optional[Notifier] = None, policy: Optional[OverlapPolicy] = None,
) -> Dict[str, Any]:
    item_type = _parse_type(type)
    if item_type is None:
        return _err("Reservation type must be BOOK or ROOM.", code=ErrorCode.INVALID_REQUEST)
    if end_date < start_date:
        return _err("The reservation must end after it starts.", code=ErrorCode.INVALID_REQUEST)
    if item_type is ItemType.ROOM:
        window, error = _room_window(start_date, end_date, start_time, end_time)
        if error:
            return error
        start_time, end_time = window.start_time, window.end_time
    else:
        # books are lent by the day
        start_time = end_time = None

    user = await session.get(User, user_id)
    if not user:
        return _err("User not found.", code=ErrorCode.NOT_FOUND)

    async with item_locks.hold(item_id):
        item = await session.get(_ITEM_MODELS[item_type], item_id)
        if not item:
            return _err("Item not found.", code=ErrorCode.NOT_FOUND)
        if item_type is ItemType.ROOM:
            available = await check_room_availability(
                session, room_id=item_id, start_date=start_date, end_date=end_date,
                start_time=start_time, end_time=end_time, policy=policy,
            )
            if not available:
                logger.info("room %s busy for %s %s-%s %s", item_id, start_date, start_time, end_date, end_time)
                return _err("Item is not available for the requested time slot.", code=ErrorCode.CONFLICT)
        res = Reservation(
            user_id=user_id, type=item_type, item_id=item_id,
            status=ReservationStatus.PENDING,
            start_date=start_date, end_date=end_date,
            start_time=start_time, end_time=end_time,
            notes=(notes or "").strip() or None,
        )
        session.add(res)
        await session.flush()
        item.reservation_ids = [*(item.reservation_ids or []), res.id]
        await session.commit()
        await session.refresh(res)
        label = _label(item)

    logger.info("reservation %s created by %s for %s %s", res.id, user_id, item_type.value, item_id)
    if notifier is not None:
        await notifier.notify_role(
            Role.LIBRARIAN, "New Reservation",
            f"{user.name} has requested to reserve {label}",
            type=NotificationType.ROOM if item_type is ItemType.ROOM else NotificationType.RESERVATION,
            related_id=res.id,
        )
    return _ok("Reservation created.", **reservation_data(res))

# ---- transitions

@dataclass(frozen=True)
class Transition:
    name: str
    source: ReservationStatus
    target: ReservationStatus
    wrong_state: str
    notice_title: str
    notice_verb: str
    room_only: bool = False

APPROVE = Transition("approve", ReservationStatus.PENDING, ReservationStatus.APPROVED,
                     "Reservation is not in pending state.", "Reservation Approved", "approved")
DECLINE = Transition("decline", ReservationStatus.PENDING, ReservationStatus.DECLINED,
                     "Reservation is not in pending state.", "Reservation Declined", "declined")
CHECKOUT = Transition("checkout", ReservationStatus.APPROVED, ReservationStatus.CHECKED_OUT,
                      "Reservation must be approved first.", "Reservation Checked Out", "checked out")
RETURN = Transition("return", ReservationStatus.CHECKED_OUT, ReservationStatus.RETURNED,
                    "Reservation must be checked out to return.", "Reservation Returned", "returned")
CHECK_IN = Transition("check_in", ReservationStatus.APPROVED, ReservationStatus.CHECKED_IN,
                      "Reservation must be approved first.", "Room Checked In", "checked in", room_only=True)
CHECK_OUT = Transition("check_out", ReservationStatus.CHECKED_IN, ReservationStatus.CHECKED_OUT,
                       "Room must be checked in to check out.", "Room Checked Out", "checked out", room_only=True)

async def _room_still_free(session: AsyncSession, reservation: Reservation, policy: Optional[OverlapPolicy]):
    if reservation.type is not ItemType.ROOM:
        return None
    available = await check_room_availability(
        session, room_id=reservation.item_id,
        start_date=reservation.start_date, end_date=reservation.end_date,
        start_time=reservation.start_time, end_time=reservation.end_time,
        policy=policy, exclude_id=reservation.id,
    )
    if not available:
        return _err("Room is not available for the requested time slot.", code=ErrorCode.CONFLICT)
    return None

async def _take_copy(session: AsyncSession, reservation: Reservation):
    if reservation.type is not ItemType.BOOK:
        return None
    if not await session.get(Book, reservation.item_id):
        return _err("Book not found.", code=ErrorCode.NOT_FOUND)
    r = await session.execute(
        update(Book)
        .where(and_(Book.id == reservation.item_id, Book.available_copies > 0))
        .values(available_copies=Book.available_copies - 1)
        .execution_options(synchronize_session=False)
    )
    if r.rowcount != 1:
        return _err("Book is currently out of stock.", code=ErrorCode.OUT_OF_STOCK)
    return None

async def _give_back_copy(session: AsyncSession, reservation: Reservation):
    if reservation.type is not ItemType.BOOK:
        return None
    r = await session.execute(
        update(Book)
        .where(and_(Book.id == reservation.item_id, Book.available_copies < Book.total_copies))
        .values(available_copies=Book.available_copies + 1)
        .execution_options(synchronize_session=False)
    )
    if r.rowcount != 1:
        logger.error(
            "book %s: returning reservation %s would push available_copies past total_copies",
            reservation.item_id, reservation.id,
        )
        return _err("Internal consistency error.", code=ErrorCode.INTERNAL_CONSISTENCY)
    return None

async def _apply(
    session: AsyncSession,
    t: Transition,
    *,
    reservation_id: str,
    values: Optional[Dict[str, Any]] = None,
    guard: Optional[Effect] = None,
    effect: Optional[Effect] = None,
    notifier: Optional[Notifier] = None,
) -> Dict[str, Any]:
    reservation = await session.get(Reservation, reservation_id)
    if not reservation:
        return _err("Reservation not found.", code=ErrorCode.NOT_FOUND)
    if t.room_only and reservation.type is not ItemType.ROOM:
        return _err("Only room reservations can be checked in or out.", code=ErrorCode.INVALID_STATE)
    item_type, item_id = reservation.type, reservation.item_id

    async with item_locks.hold(item_id):
        reservation = await session.get(Reservation, reservation_id, populate_existing=True)
        if not reservation:
            return _err("Reservation not found.", code=ErrorCode.NOT_FOUND)
        if reservation.status is not t.source:
            logger.warning("%s rejected for reservation %s in status %s", t.name, reservation_id, reservation.status.value)
            return _err(t.wrong_state, code=ErrorCode.INVALID_STATE)
        if guard is not None:
            error = await guard(session, reservation)
            if error:
                logger.warning("%s rejected for reservation %s: %s", t.name, reservation_id, error["code"])
                return error

        r = await session.execute(
            update(Reservation)
            .where(and_(Reservation.id == reservation_id, Reservation.status == t.source))
            .values(status=t.target, **(values or {}))
            .execution_options(synchronize_session=False)
        )
        if r.rowcount != 1:
            await session.rollback()
            logger.warning("%s lost the race for reservation %s", t.name, reservation_id)
            return _err(t.wrong_state, code=ErrorCode.INVALID_STATE)
        if effect is not None:
            error = await effect(session, reservation)
            if error:
                await session.rollback()
                logger.warning("%s rolled back for reservation %s: %s", t.name, reservation_id, error["code"])
                return error
        await session.commit()

        await session.refresh(reservation)
        item = await session.get(_ITEM_MODELS[item_type], item_id)
        if item is not None:
            await session.refresh(item)

    logger.info("reservation %s: %s -> %s", reservation_id, t.source.value, t.target.value)
    if notifier is not None:
        await notifier.notify(
            reservation.user_id, t.notice_title,
            f"Your reservation for {_label(item)} has been {t.notice_verb}",
            related_id=reservation_id,
        )
    return _ok(f"Reservation {t.notice_verb}.", **reservation_data(reservation))

async def approve(
    session: AsyncSession, *, reservation_id: str, approver_id: str,
    notifier: Optional[Notifier] = None, policy: Optional[OverlapPolicy] = None,
) -> Dict[str, Any]:
    async def guard(s: AsyncSession, reservation: Reservation):
        return await _room_still_free(s, reservation, policy)

    return await _apply(
        session, APPROVE, reservation_id=reservation_id,
        values={"approved_by": approver_id, "approved_at": _now()},
        guard=guard, effect=_take_copy, notifier=notifier,
    )

async def decline(
    session: AsyncSession, *, reservation_id: str, approver_id: str,
    notifier: Optional[Notifier] = None,
) -> Dict[str, Any]:
    return await _apply(
        session, DECLINE, reservation_id=reservation_id,
        values={"approved_by": approver_id, "approved_at": _now()},
        notifier=notifier,
    )

async def checkout(session: AsyncSession, *, reservation_id: str, notifier: Optional[Notifier] = None) -> Dict[str, Any]:
    return await _apply(session, CHECKOUT, reservation_id=reservation_id, notifier=notifier)

async def return_reservation(session: AsyncSession, *, reservation_id: str, notifier: Optional[Notifier] = None) -> Dict[str, Any]:
    return await _apply(
        session, RETURN, reservation_id=reservation_id,
        values={"returned_at": _now()},
        effect=_give_back_copy, notifier=notifier,
    )

async def check_in(session: AsyncSession, *, reservation_id: str, notifier: Optional[Notifier] = None) -> Dict[str, Any]:
    return await _apply(session, CHECK_IN, reservation_id=reservation_id, notifier=notifier)

async def check_out(session: AsyncSession, *, reservation_id: str, notifier: Optional[Notifier] = None) -> Dict[str, Any]:
    return await _apply(session, CHECK_OUT, reservation_id=reservation_id, notifier=notifier)

# ---- delete

async def delete_reservation(session: AsyncSession, *, reservation_id: str, owner_id: Optional[str] = None) -> Dict[str, Any]:
    # book stock is left untouched, also for APPROVED/CHECKED_OUT reservations
    reservation = await session.get(Reservation, reservation_id)
    if not reservation or (owner_id is not None and reservation.user_id != owner_id):
        return _err("Reservation not found.", code=ErrorCode.NOT_FOUND)
    item_type, item_id = reservation.type, reservation.item_id

    async with item_locks.hold(item_id):
        reservation = await session.get(Reservation, reservation_id, populate_existing=True)
        if not reservation:
            return _err("Reservation not found.", code=ErrorCode.NOT_FOUND)
        status = reservation.status
        item = await session.get(_ITEM_MODELS[item_type], item_id)
        if item is not None:
            item.reservation_ids = [x for x in (item.reservation_ids or []) if x != reservation_id]
        await session.delete(reservation)
        await session.commit()

    if item_type is ItemType.BOOK and status in (ReservationStatus.APPROVED, ReservationStatus.CHECKED_OUT):
        logger.warning("deleted %s book reservation %s without restoring stock of %s", status.value, reservation_id, item_id)
    else:
        logger.info("deleted reservation %s", reservation_id)
    return _ok("Reservation removed successfully.", reservation_id=reservation_id)

# ---- reads

async def list_user_reservations(session: AsyncSession, *, user_id: str) -> Dict[str, Any]:
    q = select(Reservation).where(Reservation.user_id == user_id).order_by(Reservation.created_at.desc())
    items = (await session.execute(q)).scalars().all()
    return _ok("Reservations listed.", items=[reservation_data(r) for r in items])

async def get_reservation(session: AsyncSession, *, reservation_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
    r = await session.get(Reservation, reservation_id)
    if not r or (user_id is not None and r.user_id != user_id):
        return _err("Reservation not found.", code=ErrorCode.NOT_FOUND)
    return _ok("Reservation found.", **reservation_data(r))

async def list_item_reservations(
    session: AsyncSession, *, type, item_id: str, statuses: Optional[tuple] = None,
) -> Dict[str, Any]:
    item_type = _parse_type(type)
    if item_type is None:
        return _err("Reservation type must be BOOK or ROOM.", code=ErrorCode.INVALID_REQUEST)
    if not await session.get(_ITEM_MODELS[item_type], item_id):
        return _err("Item not found.", code=ErrorCode.NOT_FOUND)
    q = select(Reservation).where(and_(Reservation.type == item_type, Reservation.item_id == item_id))
    if statuses:
        q = q.where(Reservation.status.in_(statuses))
    q = q.order_by(Reservation.start_date, Reservation.start_time)
    items = (await session.execute(q)).scalars().all()
    return _ok("Reservations listed.", items=[reservation_data(r) for r in items])
