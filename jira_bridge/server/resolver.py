"""Pick the instance a request targets when it does not name one unambiguously."""

from __future__ import annotations

from urllib.parse import urlsplit, urlunsplit

from jira_bridge.server.errors import AmbiguousInputError, InvalidInputError, NotFoundError
from jira_bridge.server.instances import BaseInstance, Instances
from jira_bridge.server.store import InstanceStore, UserStore
from jira_bridge.server.users import User

NOT_CONNECTED_ERROR = "your account is not connected to Jira. Please use `/jira connect`"
NO_DEFAULT_ERROR = (
    "default Jira instance not found, please run `/jira instance default <jiraURL>` to set one"
)


def normalize_instance_url(url: str) -> str:
    """Canonical instance ID: scheme added when missing, lowercase host, no trailing slash."""
    text = url.strip()
    if "://" not in text:
        text = "https://" + text
    parts = urlsplit(text)
    if not parts.hostname:
        raise InvalidInputError(f"invalid Jira URL {url!r}")
    path = parts.path.rstrip("/")
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, "", ""))


def resolve_user_instance_url(user: User, hint: str, instances: Instances) -> str:
    """explicit hint > alias > literal ID > valid default > sole connection > error."""
    if not user.connected_instances:
        raise NotFoundError(NOT_CONNECTED_ERROR)

    hint = hint.strip()
    if hint:
        aliased = instances.get_by_alias(hint)
        if aliased is not None:
            return aliased.instance_id
        normalized = normalize_instance_url(hint)
        aliased = instances.get_by_alias(normalized)
        if aliased is not None:
            return aliased.instance_id
        return normalized

    if user.default_instance_id and user.is_connected(user.default_instance_id):
        return user.default_instance_id
    if len(user.connected_instances) == 1:
        return user.connected_instances[0]
    raise AmbiguousInputError(NO_DEFAULT_ERROR, candidates=list(user.connected_instances))


class Resolver:
    def __init__(self, instance_store: InstanceStore, user_store: UserStore) -> None:
        self.instance_store = instance_store
        self.user_store = user_store

    def resolve_webhook_instance_url(self, hint: str = "") -> str:
        if hint.strip():
            return normalize_instance_url(hint)
        instances = self.instance_store.load_instances()
        if instances.is_empty():
            raise NotFoundError("no instances installed")
        legacy = instances.get_v2_legacy()
        if legacy is not None:
            return legacy.instance_id
        if len(instances) == 1:
            return instances.ids()[0]
        raise NotFoundError("specify a Jira instance")

    def resolve_user_instance_url(self, host_user_id: str, hint: str = "") -> tuple[User, str]:
        try:
            user = self.user_store.load_user(host_user_id)
        except NotFoundError as exc:
            raise NotFoundError(NOT_CONNECTED_ERROR) from exc
        instances = self.instance_store.load_instances()
        return user, resolve_user_instance_url(user, hint, instances)

    def load_user_instance(self, host_user_id: str, hint: str = "") -> tuple[User, BaseInstance]:
        user, instance_id = self.resolve_user_instance_url(host_user_id, hint)
        return user, self.instance_store.load_instance(instance_id)

    def user_instance_choices(self, host_user_id: str) -> list[str]:
        """Default instance first, then the other connected instances by alias or ID."""
        try:
            user = self.user_store.load_user(host_user_id)
        except NotFoundError:
            return []
        instances = self.instance_store.load_instances()
        choices = [user.default_instance_id] if user.default_instance_id else []
        for instance_id in user.connected_instances:
            if instance_id != user.default_instance_id:
                choices.append(instances.get_alias(instance_id) or instance_id)
        return choices

    def installed_instance_choices(self) -> list[tuple[str, str]]:
        """(item, help text) pairs; aliased instances show their ID as help text."""
        choices = []
        for instance in self.instance_store.load_instances():
            if instance.alias:
                choices.append((instance.alias, instance.instance_id))
            else:
                choices.append((instance.instance_id, ""))
        return choices
