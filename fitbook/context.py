from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from fastapi import BackgroundTasks
from sqlalchemy.orm import Session

from .models import User
from .notifications import Notifier
from .utils import utcnow


@dataclass
class RequestContext:
    """Per-request state handed to every service call: session, acting user, clock and notifier."""

    db: Session
    user: User
    now: datetime = field(default_factory=utcnow)
    notifier: Optional[Notifier] = None
    background: Optional[BackgroundTasks] = None

    def staff_of(self, business_id: str) -> bool:
        return self.user.business_id is not None and self.user.business_id == business_id

    def dispatch(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        """Run a side effect after the response when serving HTTP, inline otherwise."""
        if self.background is not None:
            self.background.add_task(fn, *args, **kwargs)
        else:
            fn(*args, **kwargs)
