import logging
from typing import Optional, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from townbook.email.client import GraphMailer
from townbook.models import Notification, NotificationType, Role, User

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def notify(
        self,
        user_id: str,
        title: str,
        message: str,
        type: NotificationType = NotificationType.RESERVATION,
        related_id: Optional[str] = None,
    ) -> None: ...

    async def notify_role(
        self,
        role: Role,
        title: str,
        message: str,
        type: NotificationType = NotificationType.RESERVATION,
        related_id: Optional[str] = None,
    ) -> None: ...


# written after the triggering commit, in its own session; failures are logged and dropped
class NotificationDispatcher:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        mailer: Optional[GraphMailer] = None,
    ):
        self.session_factory = session_factory
        self.mailer = mailer

    async def notify(
        self,
        user_id: str,
        title: str,
        message: str,
        type: NotificationType = NotificationType.RESERVATION,
        related_id: Optional[str] = None,
    ) -> None:
        try:
            async with self.session_factory() as session:
                session.add(Notification(
                    user_id=user_id, title=title, message=message, type=type, related_id=related_id
                ))
                await session.commit()
                email = None
                if self.mailer is not None:
                    email = (await session.execute(select(User.email).where(User.id == user_id))).scalar_one_or_none()
        except Exception:
            logger.exception("Could not store notification %r for user %s", title, user_id)
            return
        if email:
            await self._mail(email, title, message)

    async def notify_role(
        self,
        role: Role,
        title: str,
        message: str,
        type: NotificationType = NotificationType.RESERVATION,
        related_id: Optional[str] = None,
    ) -> None:
        try:
            async with self.session_factory() as session:
                user_ids = (await session.execute(select(User.id).where(User.role == role))).scalars().all()
        except Exception:
            logger.exception("Could not resolve %s recipients for %r", role.value, title)
            return
        for user_id in user_ids:
            await self.notify(user_id, title, message, type=type, related_id=related_id)

    async def _mail(self, to_email: str, subject: str, body_text: str) -> None:
        try:
            await self.mailer.send_mail(to_email=to_email, subject=subject, body_text=body_text)
        except Exception:
            logger.exception("Could not e-mail notification %r to %s", subject, to_email)
