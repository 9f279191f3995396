from typing import AsyncGenerator, Optional
from fastapi import Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from townbook.actions import get_user_by_token
from townbook.config import settings
from townbook.db import SessionLocal
from townbook.email.client import GraphMailer
from townbook.models import User
from townbook.notify.dispatcher import NotificationDispatcher, Notifier

async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with SessionLocal() as session:
        yield session

_mailer: Optional[GraphMailer] = None

def get_notifier() -> Notifier:
    global _mailer
    if settings.NOTIFY_BY_EMAIL and _mailer is None:
        _mailer = GraphMailer.from_settings()
    return NotificationDispatcher(SessionLocal, mailer=_mailer if settings.NOTIFY_BY_EMAIL else None)

async def close_mailer() -> None:
    global _mailer
    if _mailer is not None:
        await _mailer.aclose()
        _mailer = None

async def get_current_user(
    authorization: str | None = Header(default=None),
    session: AsyncSession = Depends(get_session),
) -> User:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Not authenticated.", headers={"WWW-Authenticate": "Bearer"})
    user = await get_user_by_token(session, token.strip())
    if not user:
        raise HTTPException(status_code=401, detail="Invalid token.", headers={"WWW-Authenticate": "Bearer"})
    return user

async def require_librarian(user: User = Depends(get_current_user)) -> User:
    if not user.is_librarian:
        raise HTTPException(status_code=403, detail="Librarian role required.")
    return user
