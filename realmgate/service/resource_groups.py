from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Mapping, NamedTuple, Optional, Tuple

from realmgate.logging import get_logger
from realmgate.service.errors import (
    BadRealmClientComboError,
    CannotRemoveOnlyDefaultError,
    GroupNotFoundError,
    ResourceNotFoundError,
    UserNotFoundError,
)
from realmgate.storage.models import (
    Client,
    Resource,
    ResourceGroup,
    User,
    UserIdIdentifier,
    new_id,
    utcnow,
)

logger = get_logger(__name__)


class DefaultDecision(NamedTuple):
    is_default: bool
    demote_others: bool


def resolve_default_flag(
    requested: Optional[bool], *, insert: bool, other_default_count: int
) -> DefaultDecision:
    """Decide the stored ``is_default`` of a group being written.

    ``other_default_count`` is the number of OTHER groups of the same
    (user, client) pair currently marked default, read in the same
    transaction as the write.

    ====================  ======  ======  ==========================
    requested             insert  others  outcome
    ====================  ======  ======  ==========================
    true                  any     any     true, demote the others
    false / None          true    0       forced true
    false / None          false   0       CannotRemoveOnlyDefault
    false / None          any     > 0     false
    ====================  ======  ======  ==========================
    """
    if requested:
        return DefaultDecision(is_default=True, demote_others=True)
    if other_default_count > 0:
        return DefaultDecision(is_default=False, demote_others=False)
    if insert:
        return DefaultDecision(is_default=True, demote_others=False)
    raise CannotRemoveOnlyDefaultError(
        "Cannot remove default status from the only default resource group; "
        "designate another group as default first"
    )


GroupWithResources = Tuple[ResourceGroup, List[Resource]]


class ResourceGroupService:
    """Writes to resource groups, keeping exactly one default per (user, client)."""

    def __init__(self, store: Any) -> None:
        self.store = store

    def _scope(self, tx: Any, realm_id: str, user_id: str, client_id: str) -> Tuple[User, Client]:
        client = tx.get_client(client_id)
        if client is None or client.realm_id != realm_id:
            raise BadRealmClientComboError(
                "client does not belong to realm",
                detail={"realm_id": realm_id, "client_id": client_id},
            )
        user = tx.get_user(realm_id, UserIdIdentifier(user_id))
        if user is None:
            raise UserNotFoundError("user not found", detail={"user_id": user_id})
        return user, client

    def _require_group(self, tx: Any, user_id: str, client_id: str, group_key: str) -> ResourceGroup:
        group = tx.get_group(user_id, client_id, group_key)
        if group is None:
            raise GroupNotFoundError("resource group not found", detail={"group_key": group_key})
        return group

    def _apply_default(
        self, tx: Any, group: ResourceGroup, requested: Optional[bool], *, insert: bool
    ) -> None:
        others = tx.count_other_defaults(group.user_id, group.client_id, group.group_key)
        decision = resolve_default_flag(requested, insert=insert, other_default_count=others)
        if decision.demote_others and others:
            tx.demote_other_groups(group.user_id, group.client_id, group.group_key)
            logger.info(
                "resource_group_defaults_demoted",
                user_id=group.user_id,
                client_id=group.client_id,
                group_key=group.group_key,
                demoted=others,
            )
        group.is_default = decision.is_default

    def create_group(
        self,
        realm_id: str,
        user_id: str,
        client_id: str,
        name: str,
        identifiers: Optional[Mapping[str, str]] = None,
        *,
        group_key: Optional[str] = None,
        description: Optional[str] = None,
        is_default: Optional[bool] = None,
        locked_at: Optional[datetime] = None,
    ) -> GroupWithResources:
        with self.store.transaction() as tx:
            tx.lock_pair(user_id, client_id)
            self._scope(tx, realm_id, user_id, client_id)
            group = ResourceGroup(
                group_key=group_key or new_id(),
                realm_id=realm_id,
                user_id=user_id,
                client_id=client_id,
                name=name,
                description=description,
                locked_at=locked_at,
            )
            self._apply_default(tx, group, is_default, insert=True)
            tx.insert_group(group)
            resources = [
                tx.insert_resource(
                    Resource(
                        id=new_id(),
                        user_id=user_id,
                        client_id=client_id,
                        group_key=group.group_key,
                        name=res_name,
                        value=value,
                        is_default=group.is_default,
                    )
                )
                for res_name, value in (identifiers or {}).items()
            ]
        logger.info(
            "resource_group_created",
            user_id=user_id,
            client_id=client_id,
            group_key=group.group_key,
            is_default=group.is_default,
        )
        return group, resources

    def update_group(
        self,
        realm_id: str,
        user_id: str,
        client_id: str,
        group_key: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        is_default: Optional[bool] = None,
        identifiers: Optional[Mapping[str, str]] = None,
        lock: Optional[bool] = None,
    ) -> GroupWithResources:
        """Update a group in place.

        An omitted ``is_default`` keeps the stored flag, which still passes
        through the default rules. ``lock=True`` keeps an existing lock
        timestamp; ``lock=False`` clears it. ``identifiers`` may only change
        values of resources the group already has.
        """
        with self.store.transaction() as tx:
            tx.lock_pair(user_id, client_id)
            self._scope(tx, realm_id, user_id, client_id)
            group = self._require_group(tx, user_id, client_id, group_key)
            if name is not None:
                group.name = name
            if description is not None:
                group.description = description
            if lock is True:
                group.locked_at = group.locked_at or utcnow()
            elif lock is False:
                group.locked_at = None
            requested = group.is_default if is_default is None else is_default
            self._apply_default(tx, group, requested, insert=False)
            group = tx.update_group(group)
            tx.set_group_resources_default(user_id, client_id, group_key, bool(group.is_default))

            resources = tx.list_resources(user_id, client_id, group_key)
            if identifiers:
                by_name: Dict[str, Resource] = {r.name: r for r in resources}
                missing = sorted(set(identifiers) - set(by_name))
                if missing:
                    raise ResourceNotFoundError(
                        "unknown identifiers for resource group",
                        detail={"group_key": group_key, "names": missing},
                    )
                for res_name, value in identifiers.items():
                    res = by_name[res_name]
                    res.value = value
                    tx.update_resource(res)
                resources = tx.list_resources(user_id, client_id, group_key)
        logger.info(
            "resource_group_updated",
            user_id=user_id,
            client_id=client_id,
            group_key=group_key,
            is_default=group.is_default,
            locked=group.locked_at is not None,
        )
        return group, resources

    def set_default(self, realm_id: str, user_id: str, client_id: str, group_key: str) -> ResourceGroup:
        group, _ = self.update_group(realm_id, user_id, client_id, group_key, is_default=True)
        return group

    def delete_group(self, realm_id: str, user_id: str, client_id: str, group_key: str) -> None:
        """Delete a group and its resources.

        When the deleted group was the default and others remain, the oldest
        remaining group becomes the default.
        """
        promoted = None
        with self.store.transaction() as tx:
            tx.lock_pair(user_id, client_id)
            self._scope(tx, realm_id, user_id, client_id)
            group = self._require_group(tx, user_id, client_id, group_key)
            tx.delete_group(user_id, client_id, group_key)
            if group.is_default:
                remaining = tx.list_groups(user_id, client_id)
                if remaining:
                    promoted = remaining[0]
                    self._apply_default(tx, promoted, True, insert=False)
                    tx.update_group(promoted)
                    tx.set_group_resources_default(user_id, client_id, promoted.group_key, True)
        logger.info(
            "resource_group_deleted",
            user_id=user_id,
            client_id=client_id,
            group_key=group_key,
            promoted_group_key=promoted.group_key if promoted else None,
        )

    def get_group(self, realm_id: str, user_id: str, client_id: str, group_key: str) -> GroupWithResources:
        with self.store.transaction() as tx:
            self._scope(tx, realm_id, user_id, client_id)
            group = self._require_group(tx, user_id, client_id, group_key)
            return group, tx.list_resources(user_id, client_id, group_key)

    def list_groups(self, realm_id: str, user_id: str, client_id: str) -> List[GroupWithResources]:
        with self.store.transaction() as tx:
            self._scope(tx, realm_id, user_id, client_id)
            return [
                (group, tx.list_resources(user_id, client_id, group.group_key))
                for group in tx.list_groups(user_id, client_id)
            ]

    def set_resource_lock(
        self,
        realm_id: str,
        user_id: str,
        client_id: str,
        resource_id: str,
        locked: bool,
        *,
        group_key: Optional[str] = None,
    ) -> Resource:
        """Lock or unlock one resource, optionally pinned to ``group_key``."""
        with self.store.transaction() as tx:
            self._scope(tx, realm_id, user_id, client_id)
            res = tx.get_resource(resource_id)
            if res is None or res.user_id != user_id or res.client_id != client_id:
                raise ResourceNotFoundError("resource not found", detail={"resource_id": resource_id})
            if group_key is not None and res.group_key != group_key:
                raise ResourceNotFoundError(
                    "resource not in resource group",
                    detail={"resource_id": resource_id, "group_key": group_key},
                )
            if locked:
                res.locked_at = res.locked_at or utcnow()
            else:
                res.locked_at = None
            res = tx.update_resource(res)
        logger.info("resource_lock_changed", resource_id=resource_id, locked=locked)
        return res
