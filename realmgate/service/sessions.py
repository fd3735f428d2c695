from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Optional

from realmgate.logging import get_logger
from realmgate.service.errors import MaxConcurrentSessionsError
from realmgate.storage.models import Client, Session, SessionInfo, User

logger = get_logger(__name__)

# Order matters: Edge and Opera embed "Chrome", Chrome embeds "Safari".
_BROWSERS = (
    ("Edge", re.compile(r"Edg(?:e|A|iOS)?/([\d.]+)")),
    ("Opera", re.compile(r"(?:OPR|Opera)/([\d.]+)")),
    ("Firefox", re.compile(r"(?:Firefox|FxiOS)/([\d.]+)")),
    ("Chrome", re.compile(r"(?:Chrome|CriOS)/([\d.]+)")),
    ("Safari", re.compile(r"Version/([\d.]+).*Safari/")),
    ("curl", re.compile(r"curl/([\d.]+)")),
)

_SYSTEMS = (
    ("iOS", re.compile(r"iPhone|iPad|iPod")),
    ("Android", re.compile(r"Android")),
    ("Windows", re.compile(r"Windows")),
    ("macOS", re.compile(r"Mac OS X|Macintosh")),
    ("ChromeOS", re.compile(r"CrOS")),
    ("Linux", re.compile(r"Linux")),
)

_BOT = re.compile(r"bot|crawler|spider|slurp", re.IGNORECASE)
_TABLET = re.compile(r"iPad|Tablet|(?:Android(?!.*Mobile))")
_MOBILE = re.compile(r"Mobile|iPhone|iPod|Android")


def parse_user_agent(
    user_agent: Optional[str],
    *,
    ip_address: str = "0.0.0.0",
    country_code: str = "XX",
) -> SessionInfo:
    """Build request metadata from a raw User-Agent header.

    Unknown agents leave browser fields empty; the device type is one of
    ``bot``, ``tablet``, ``mobile`` or ``desktop``.
    """
    info = SessionInfo(ip_address=ip_address, user_agent=user_agent, country_code=country_code)
    if not user_agent:
        return info
    for name, pattern in _BROWSERS:
        match = pattern.search(user_agent)
        if match:
            info.browser = name
            info.browser_version = match.group(1)
            break
    for name, pattern in _SYSTEMS:
        if pattern.search(user_agent):
            info.operating_system = name
            break
    if _BOT.search(user_agent):
        info.device_type = "bot"
    elif _TABLET.search(user_agent):
        info.device_type = "tablet"
    elif _MOBILE.search(user_agent):
        info.device_type = "mobile"
    else:
        info.device_type = "desktop"
    return info


def admit(tx: Any, client: Client, user: User, now: datetime) -> int:
    """Check the concurrent session ceiling for (user, client).

    Must run in the same transaction as the session insert, after
    ``tx.lock_pair``. Returns the number of live sessions.
    """
    active = tx.count_active_sessions(user.id, client.id, now)
    if active >= client.max_concurrent_sessions:
        logger.warning(
            "session_admission_denied",
            user_id=user.id,
            client_id=client.id,
            active=active,
            limit=client.max_concurrent_sessions,
        )
        raise MaxConcurrentSessionsError(
            "Maximum number of concurrent sessions reached",
            detail={"limit": client.max_concurrent_sessions},
        )
    return active


def open_session(
    tx: Any,
    client: Client,
    user: User,
    session_info: Optional[SessionInfo],
    refresh_token_id: Optional[str],
    now: datetime,
    *,
    admitted: bool = False,
) -> Session:
    """Insert a session expiring after the client's session lifetime.

    Admission runs first unless the caller already admitted the pair in this
    transaction.
    """
    if not admitted:
        admit(tx, client, user, now)
    session = Session.new(
        user.id,
        client.id,
        client.session_lifetime,
        session_info,
        refresh_token_id=refresh_token_id,
        now=now,
    )
    return tx.insert_session(session)
