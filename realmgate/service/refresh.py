from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from realmgate.logging import get_logger
from realmgate.storage.models import Client, Realm, RefreshToken, User

logger = get_logger(__name__)


class Rotation(str, Enum):
    ROTATE = "rotate"
    INCREMENT = "increment"


def plan_rotation(re_used_count: int, reuse_limit: int) -> Rotation:
    """Pick the transition for a presented refresh token.

    A token is reused in place until its count reaches the limit; the next
    presentation swaps it for a new id with a fresh count. A limit of 0
    rotates on every refresh.
    """
    if re_used_count >= reuse_limit:
        return Rotation.ROTATE
    return Rotation.INCREMENT


def effective_reuse_limit(client: Client, realm: Optional[Realm]) -> int:
    if client.refresh_token_reuse_limit is not None:
        return client.refresh_token_reuse_limit
    if realm is not None:
        return realm.refresh_token_reuse_limit
    return 0


def mint(tx: Any, user: User, client: Client) -> RefreshToken:
    token = RefreshToken.new(user.id, client.id, user.realm_id)
    return tx.insert_refresh_token(token)


def rotate(tx: Any, token: RefreshToken, reuse_limit: int) -> RefreshToken:
    """Apply one refresh to ``token`` inside the caller's transaction."""
    plan = plan_rotation(token.re_used_count, reuse_limit)
    if plan is Rotation.ROTATE:
        tx.delete_refresh_token(token.id)
        replacement = tx.insert_refresh_token(
            RefreshToken.new(token.user_id, token.client_id, token.realm_id)
        )
        logger.info(
            "refresh_token_rotated",
            previous_id=token.id,
            rotated_id=replacement.id,
            reuse_limit=reuse_limit,
        )
        return replacement
    token.re_used_count += 1
    updated = tx.update_refresh_token(token)
    logger.info(
        "refresh_token_reused",
        rotated_id=updated.id,
        re_used_count=updated.re_used_count,
        reuse_limit=reuse_limit,
    )
    return updated
