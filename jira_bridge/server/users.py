"""Per-user records: connected instances, default instance, and connections."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel, Field

from jira_bridge.server.errors import InvalidInputError, NotFoundError
from jira_bridge.server.models import JiraUser

if TYPE_CHECKING:
    from jira_bridge.server.instances import BaseInstance
    from jira_bridge.server.store import UserStore

logger = structlog.get_logger()


class SavedFieldValues(BaseModel):
    project_key: str = ""
    issue_type: str = ""


class Connection(BaseModel):
    """A user's credentials and preferences for one instance."""

    display_name: str = ""
    account_id: str = ""
    name: str = ""
    key: str = ""
    oauth_token: str = Field(default="", repr=False)
    saved_field_values: SavedFieldValues | None = None

    def jira_user(self) -> JiraUser:
        return JiraUser(
            account_id=self.account_id,
            name=self.name,
            key=self.key,
            display_name=self.display_name,
        )


class User(BaseModel):
    host_user_id: str = Field(min_length=1)
    connected_instances: list[str] = Field(default_factory=list)
    default_instance_id: str = ""

    def is_connected(self, instance_id: str) -> bool:
        return instance_id in self.connected_instances


class UserManager:
    """Connect, disconnect, and default-instance changes for host users."""

    def __init__(self, user_store: "UserStore") -> None:
        self.user_store = user_store

    def load_or_new(self, host_user_id: str) -> User:
        try:
            return self.user_store.load_user(host_user_id)
        except NotFoundError:
            return User(host_user_id=host_user_id)

    def connect_user(self, instance: "BaseInstance", host_user_id: str, connection: Connection) -> User:
        user = self.load_or_new(host_user_id)
        self.user_store.store_connection(instance.instance_id, host_user_id, connection)
        if not user.is_connected(instance.instance_id):
            user.connected_instances.append(instance.instance_id)
        if not user.default_instance_id:
            user.default_instance_id = instance.instance_id
        self.user_store.store_user(user)
        logger.info("user_connected", host_user_id=host_user_id, instance_id=instance.instance_id)
        return user

    def disconnect_user(self, instance_id: str, user: User) -> Connection | None:
        """Drop the user's connection to ``instance_id``; deletes the user once none remain."""
        try:
            connection = self.user_store.load_connection(instance_id, user.host_user_id)
        except NotFoundError:
            connection = None
        self.user_store.delete_connection(instance_id, user.host_user_id)

        user.connected_instances = [i for i in user.connected_instances if i != instance_id]
        if user.default_instance_id == instance_id:
            user.default_instance_id = ""
        if user.connected_instances:
            self.user_store.store_user(user)
        else:
            self.user_store.delete_user(user.host_user_id)
        logger.info("user_disconnected", host_user_id=user.host_user_id, instance_id=instance_id)
        return connection

    def set_default_instance(self, host_user_id: str, instance_id: str) -> User:
        user = self.user_store.load_user(host_user_id)
        if not user.is_connected(instance_id):
            raise InvalidInputError(
                f"you are not connected to {instance_id}; connect to it before making it the default"
            )
        user.default_instance_id = instance_id
        self.user_store.store_user(user)
        return user

    def update_user_defaults(
        self,
        host_user_id: str,
        instance_id: str,
        saved: SavedFieldValues | None = None,
    ) -> None:
        """Remember the instance (and project/issue type) the user last worked with.

        Best-effort: a missing user or connection is logged and ignored.
        """
        try:
            user = self.user_store.load_user(host_user_id)
            if not user.is_connected(instance_id):
                return
            if user.default_instance_id != instance_id:
                user.default_instance_id = instance_id
                self.user_store.store_user(user)
            if saved is not None:
                connection = self.user_store.load_connection(instance_id, host_user_id)
                connection.saved_field_values = saved
                self.user_store.store_connection(instance_id, host_user_id, connection)
        except NotFoundError as exc:
            logger.warning(
                "user_defaults_update_failed", host_user_id=host_user_id, error=str(exc)
            )
