"""
Per-operation request context.

The acting user, the subject user, the deadline, the cancellation signal
and the audit metadata travel together as one explicit value. Inside a
transaction the context also carries the bound database session so every
call made through it joins the same transaction.
"""
from __future__ import annotations

import asyncio
import dataclasses
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

from scopeauth.features.rbac.errors import Cancelled

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession


@dataclass(frozen=True)
class RequestContext:
    actor_id: Optional[str] = None
    subject_id: Optional[str] = None
    # Absolute time.monotonic() value; None means no deadline
    deadline: Optional[float] = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event, compare=False)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    request_id: Optional[str] = None
    session: Optional["AsyncSession"] = field(default=None, compare=False, repr=False)

    @classmethod
    def for_actor(cls, actor_id: Optional[str], timeout: Optional[float] = None, **kwargs) -> "RequestContext":
        ctx = cls(actor_id=actor_id, **kwargs)
        if timeout:
            ctx = ctx.with_timeout(timeout)
        return ctx

    @classmethod
    def system(cls) -> "RequestContext":
        """Context for startup tasks that act on behalf of the service itself."""
        return cls(actor_id="system")

    def with_timeout(self, seconds: float) -> "RequestContext":
        deadline = time.monotonic() + seconds
        if self.deadline is not None:
            deadline = min(deadline, self.deadline)
        return dataclasses.replace(self, deadline=deadline)

    def with_subject(self, subject_id: str) -> "RequestContext":
        return dataclasses.replace(self, subject_id=subject_id)

    def bind(self, session: "AsyncSession") -> "RequestContext":
        return dataclasses.replace(self, session=session)

    @property
    def in_transaction(self) -> bool:
        return self.session is not None

    @property
    def cancelled(self) -> bool:
        if self.cancel_event.is_set():
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline

    def cancel(self) -> None:
        self.cancel_event.set()

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or None when unbounded."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def raise_if_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise Cancelled("operation cancelled", actor_id=self.actor_id)
        if self.deadline is not None and time.monotonic() >= self.deadline:
            raise Cancelled("deadline exceeded", actor_id=self.actor_id)
