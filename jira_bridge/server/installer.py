"""Registry mutations: the transactional update loop and install/uninstall flows."""

from __future__ import annotations

from typing import Callable

import structlog

from jira_bridge.server.enterprise import EnterpriseChecker
from jira_bridge.server.errors import (
    BridgeError,
    ConflictError,
    InstanceTypeMismatchError,
    InvalidInputError,
    LicensingError,
    NotFoundError,
)
from jira_bridge.server.host import WEBSOCKET_EVENT_INSTANCE_STATUS, HostPlatform
from jira_bridge.server.instances import BaseInstance, Instances, InstanceType
from jira_bridge.server.store import InstanceStore, UserStore
from jira_bridge.server.users import User, UserManager

logger = structlog.get_logger()

LICENSE_ERROR = (
    "You need a valid Professional, Enterprise or Enterprise Advanced license "
    "to install multiple Jira instances."
)

DEFAULT_MAX_ATTEMPTS = 5


def update_instances(
    store: InstanceStore,
    mutate: Callable[[Instances], Instances],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> Instances:
    """Load the registry, apply ``mutate``, and write the result back.

    Every attempt works on a freshly loaded snapshot. A lost write race is
    retried up to ``max_attempts`` times; an exception from ``mutate`` aborts
    with nothing written.
    """
    last_conflict: ConflictError | None = None
    for attempt in range(1, max(1, max_attempts) + 1):
        snapshot = store.load_instances()
        updated = mutate(snapshot)
        try:
            store.store_instances(updated)
        except ConflictError as exc:
            last_conflict = exc
            logger.info("instances_update_conflict", attempt=attempt, max_attempts=max_attempts)
            continue
        return updated
    assert last_conflict is not None
    raise last_conflict


class InstanceManager:
    def __init__(
        self,
        instance_store: InstanceStore,
        user_store: UserStore,
        users: UserManager,
        host: HostPlatform,
        enterprise: EnterpriseChecker,
        enable_autocomplete: bool = True,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self.instance_store = instance_store
        self.user_store = user_store
        self.users = users
        self.host = host
        self.enterprise = enterprise
        self.enable_autocomplete = enable_autocomplete
        self.max_attempts = max_attempts

    def install_instance(self, instance: BaseInstance) -> Instances:
        def mutate(instances: Instances) -> Instances:
            if (
                not self.enterprise.has_enterprise_features()
                and not instances.is_empty()
                and instance.instance_id not in instances
            ):
                raise LicensingError(LICENSE_ERROR)
            # Overwrites the same record on every retry.
            self.instance_store.store_instance(instance)
            previous = instances.get(instance.instance_id)
            common = instance.common()
            if previous is not None and previous.is_v2_legacy:
                common.is_v2_legacy = True
            elif common.is_v2_legacy and instances.get_v2_legacy() is not None:
                common.is_v2_legacy = False
            instances.set(common)
            return instances

        updated = update_instances(self.instance_store, mutate, self.max_attempts)
        logger.info(
            "instance_installed",
            instance_id=instance.instance_id,
            instance_type=str(instance.type),
            instance_count=len(updated),
        )
        self._instances_changed(updated)
        return updated

    def uninstall_instance(
        self, instance_id: str, instance_type: InstanceType
    ) -> BaseInstance | None:
        """Remove an instance and disconnect its users.

        Returns the removed record, or ``None`` when the record was already
        missing and only the registry entry had to be dropped.
        """
        removed: dict[str, BaseInstance | None] = {}

        def mutate(instances: Instances) -> Instances:
            removed.clear()
            if instance_id not in instances:
                raise NotFoundError(f"instance {instance_id!r} not found")
            try:
                record = self.instance_store.load_instance(instance_id)
            except NotFoundError:
                logger.warning("instance_record_missing", instance_id=instance_id)
                record = None
            if record is not None and record.type != instance_type:
                raise InstanceTypeMismatchError(
                    f"{instance_type} did not match instance {instance_id} type {record.type}"
                )
            removed["instance"] = record
            instances.delete(instance_id)
            return instances

        updated = update_instances(self.instance_store, mutate, self.max_attempts)
        instance = removed.get("instance")
        if instance is not None:
            self._disconnect_all(instance)
            self.instance_store.delete_instance(instance_id)

        logger.info(
            "instance_uninstalled",
            instance_id=instance_id,
            reconciled=instance is None,
            instance_count=len(updated),
        )
        self._instances_changed(updated)
        return instance

    def store_v2_legacy_instance(self, instance_id: str) -> Instances:
        def mutate(instances: Instances) -> Instances:
            instances.set_v2_legacy(instance_id)
            return instances

        return update_instances(self.instance_store, mutate, self.max_attempts)

    def set_instance_alias(self, instance_id: str, alias: str) -> Instances:
        alias = alias.strip()
        if not alias:
            raise InvalidInputError("alias must not be empty")

        def mutate(instances: Instances) -> Instances:
            instance = instances.get(instance_id)
            if instance is None:
                raise NotFoundError(f"instance {instance_id!r} not found")
            unique, holder = instances.is_alias_unique(instance_id, alias)
            if not unique:
                raise InvalidInputError(f"alias {alias!r} is already used by {holder}")
            instance.alias = alias
            return instances

        updated = update_instances(self.instance_store, mutate, self.max_attempts)
        # The full record carries the alias too; keep it in sync when present.
        try:
            record = self.instance_store.load_instance(instance_id)
        except NotFoundError:
            logger.warning("instance_record_missing", instance_id=instance_id)
        else:
            record.alias = alias
            self.instance_store.store_instance(record)
        self._instances_changed(updated)
        return updated

    def _disconnect_all(self, instance: BaseInstance) -> None:
        def disconnect(user: User) -> None:
            if not user.is_connected(instance.instance_id):
                return
            try:
                self.users.disconnect_user(instance.instance_id, user)
            except BridgeError as exc:
                logger.warning(
                    "uninstall_disconnect_failed",
                    instance_id=instance.instance_id,
                    host_user_id=user.host_user_id,
                    error=str(exc),
                )

        self.user_store.map_users(disconnect)

    def _instances_changed(self, instances: Instances) -> None:
        try:
            self.host.register_command(self.enable_autocomplete, len(instances) > 1)
        except Exception as exc:
            logger.error(
                "command_register_failed",
                error=str(exc),
                hint="re-activate the plugin to restore the /jira command",
            )
        self.host.publish_websocket_event(
            WEBSOCKET_EVENT_INSTANCE_STATUS, {"instances": instances.as_config_map()}
        )
