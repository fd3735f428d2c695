from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from realmgate.service.errors import InvalidLockTimestampError, LockedError
from realmgate.storage.models import utcnow


def is_locked(entity: Any, now: Optional[datetime] = None) -> bool:
    """True when ``entity.locked_at`` is set at or before ``now``.

    A lock scheduled for the future does not block yet.
    """
    locked_at = getattr(entity, "locked_at", None)
    if locked_at is None:
        return False
    return locked_at <= (now or utcnow())


def ensure_unlocked(
    entity: Any, *, now: Optional[datetime] = None, kind: Optional[str] = None
) -> None:
    if entity is None:
        return
    if is_locked(entity, now):
        label = kind or type(entity).__name__.lower()
        raise LockedError(
            f"{label} is locked",
            detail={"entity": label, "id": getattr(entity, "id", None) or getattr(entity, "group_key", None)},
        )


def check_locked_at_constraint(
    locked_at: Optional[datetime], now: Optional[datetime] = None
) -> None:
    """Reject a caller-supplied lock timestamp that lies in the future."""
    if locked_at is None:
        return
    if locked_at > (now or utcnow()):
        raise InvalidLockTimestampError(
            "locked_at cannot be in the future",
            detail={"locked_at": locked_at.isoformat()},
        )
