import logging
from datetime import date
from typing import Optional

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from townbook.config import settings
from townbook.models import Reservation, ReservationStatus, ItemType
from townbook.overlap import OverlapPolicy, TimeWindow, windows_overlap

logger = logging.getLogger(__name__)

# statuses in which a room is held by someone
BLOCKING_STATUSES = (ReservationStatus.APPROVED, ReservationStatus.CHECKED_IN)

def default_policy() -> OverlapPolicy:
    return OverlapPolicy.from_setting(settings.ROOM_OVERLAP_POLICY)

async def find_room_conflicts(
    session: AsyncSession,
    *,
    room_id: str,
    window: TimeWindow,
    policy: Optional[OverlapPolicy] = None,
    exclude_id: Optional[str] = None,
) -> list[Reservation]:
    policy = policy or default_policy()
    q = select(Reservation).where(
        and_(
            Reservation.item_id == room_id,
            Reservation.type == ItemType.ROOM,
            Reservation.status.in_(BLOCKING_STATUSES),
        )
    )
    if exclude_id:
        q = q.where(Reservation.id != exclude_id)
    held = (await session.execute(q)).scalars().all()
    conflicts = [
        r for r in held
        if windows_overlap(
            TimeWindow(r.start_date, r.end_date, r.start_time or "00:00", r.end_time or "23:59"),
            window,
            policy,
        )
    ]
    if conflicts:
        logger.debug("room %s: %d conflict(s) under %s policy", room_id, len(conflicts), policy.value)
    return conflicts

async def check_room_availability(
    session: AsyncSession,
    *,
    room_id: str,
    start_date: date,
    end_date: date,
    start_time: str,
    end_time: str,
    policy: Optional[OverlapPolicy] = None,
    exclude_id: Optional[str] = None,
) -> bool:
    window = TimeWindow(start_date, end_date, start_time, end_time)
    conflicts = await find_room_conflicts(
        session, room_id=room_id, window=window, policy=policy, exclude_id=exclude_id
    )
    return not conflicts
