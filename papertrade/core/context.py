"""Per-session account context.

An ``AccountContext`` is created when a user session starts and closed on
logout. It is passed explicitly to every ledger operation and owns the lock
that serializes order settlement against background price refreshes.
"""
import asyncio
from datetime import datetime
from typing import Optional
from uuid import uuid4

import structlog

from papertrade.core.errors import SessionClosedError, ValidationError

logger = structlog.get_logger(__name__)


class AccountContext:
    """Identity and session state for one account."""

    def __init__(self, account_id: str):
        account_id = (account_id or "").strip()
        if not account_id:
            raise ValidationError("Account id is required")
        self.account_id = account_id
        self.session_id = str(uuid4())
        self.created_at = datetime.utcnow()
        self.closed_at: Optional[datetime] = None
        self.lock = asyncio.Lock()
        self.logger = logger.bind(account_id=account_id, session_id=self.session_id)

    @classmethod
    def for_email(cls, email: str) -> "AccountContext":
        """Context keyed by a login email (case-insensitive)."""
        return cls((email or "").strip().lower())

    @classmethod
    def anonymous(cls) -> "AccountContext":
        """Context for a guest session with a generated id."""
        return cls(f"guest-{uuid4().hex[:12]}")

    @property
    def is_active(self) -> bool:
        return self.closed_at is None

    def ensure_active(self) -> None:
        if not self.is_active:
            raise SessionClosedError(f"Session for {self.account_id} is closed")

    def key(self, namespace: str) -> str:
        """Persistence key for one of this account's records."""
        return f"{namespace}:{self.account_id}"

    def close(self) -> None:
        """Tear the context down at logout."""
        if self.closed_at is None:
            self.closed_at = datetime.utcnow()
            self.logger.info("context.closed")

    def __repr__(self) -> str:
        state = "active" if self.is_active else "closed"
        return f"AccountContext(account_id={self.account_id!r}, {state})"
