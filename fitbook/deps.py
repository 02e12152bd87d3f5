from __future__ import annotations

from typing import Optional

from fastapi import BackgroundTasks, Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from .config import get_settings
from .context import RequestContext
from .database import get_db_session
from .models import User
from .notifications import Notifier, get_notifier
from .utils import utcnow


def get_db() -> Session:
    yield from get_db_session()


def require_token(authorization: Optional[str] = Header(default=None)) -> str:
    settings = get_settings()
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    token = authorization.split(" ", 1)[1].strip()
    if token != settings.api_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return token


def get_current_user(x_user_id: Optional[str] = Header(default=None), db: Session = Depends(get_db)) -> User:
    # Identity is established upstream; the caller forwards the authenticated user id
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing user identity")
    user = db.get(User, x_user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unknown user")
    return user


def require_staff(user: User = Depends(get_current_user)) -> User:
    if user.business_id is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Business staff only")
    return user


def get_context(
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    notifier: Notifier = Depends(get_notifier),
) -> RequestContext:
    return RequestContext(db=db, user=user, now=utcnow(), notifier=notifier, background=background_tasks)
