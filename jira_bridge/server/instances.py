"""Installed upstream instances: identity records, the registry, and variants."""

from __future__ import annotations

from enum import StrEnum
from typing import Annotated, Any, ClassVar, Iterable, Literal, Type, Union

import requests
from pydantic import BaseModel, Field, TypeAdapter

from jira_bridge.server.client import CloudClient, JiraClient, ServerClient
from jira_bridge.server.errors import NotFoundError
from jira_bridge.shared.value_set import ValueSet


class InstanceType(StrEnum):
    SERVER = "server"
    CLOUD_OAUTH = "cloud-oauth"
    CLOUD_JWT = "cloud"


class InstanceCommon(BaseModel):
    """Identity of one installation; the only shape the registry holds."""

    instance_id: str = Field(min_length=1)
    type: InstanceType
    alias: str = ""
    is_v2_legacy: bool = False

    def get_id(self) -> str:
        return self.instance_id

    def common(self) -> "InstanceCommon":
        return InstanceCommon(
            instance_id=self.instance_id,
            type=self.type,
            alias=self.alias,
            is_v2_legacy=self.is_v2_legacy,
        )

    def as_config_map(self) -> dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "type": str(self.type),
            "alias": self.alias,
            "is_v2_legacy": self.is_v2_legacy,
        }


class Instances(ValueSet[InstanceCommon]):
    """Registry of installed instances.

    ``version`` is the store version the snapshot was loaded at and is used
    for the optimistic-concurrency check when it is written back.
    """

    def __init__(self, initial: Iterable[InstanceCommon] = (), version: int = 0) -> None:
        super().__init__(initial)
        self.version = version

    def get_v2_legacy(self) -> InstanceCommon | None:
        for instance in self:
            if instance.is_v2_legacy:
                return instance
        return None

    def set_v2_legacy(self, instance_id: str) -> None:
        instance = self.get(instance_id)
        if instance is None:
            raise NotFoundError(f"instance {instance_id!r} not found")
        previous = self.get_v2_legacy()
        if previous is not None:
            previous.is_v2_legacy = False
        instance.is_v2_legacy = True

    def get_alias(self, instance_id: str) -> str:
        instance = self.get(instance_id)
        return instance.alias if instance is not None else ""

    def get_by_alias(self, alias: str) -> InstanceCommon | None:
        if not alias:
            return None
        for instance in self:
            if instance.alias == alias:
                return instance
        return None

    def is_alias_unique(self, instance_id: str, alias: str) -> tuple[bool, str]:
        """Returns (False, holder_id) when another instance already uses ``alias``."""
        for instance in self:
            if instance.alias == alias and instance.instance_id != instance_id:
                return False, instance.instance_id
        return True, ""

    def as_config_map(self) -> list[dict[str, Any]]:
        return [instance.as_config_map() for instance in self]

    def to_payload(self) -> list[dict[str, Any]]:
        return [instance.model_dump(mode="json") for instance in self]

    @classmethod
    def from_payload(cls, payload: list[dict[str, Any]] | None, version: int = 0) -> "Instances":
        rows = [InstanceCommon.model_validate(row) for row in payload or []]
        instances = cls(rows, version=version)
        # A corrupted snapshot could carry several legacy flags; keep the first.
        seen_legacy = False
        for instance in instances:
            if instance.is_v2_legacy:
                instance.is_v2_legacy = not seen_legacy
                seen_legacy = True
        return instances


class BaseInstance(InstanceCommon):
    """Full instance record. Each variant knows how to talk to its deployment."""

    client_class: ClassVar[Type[JiraClient]]
    auth_scheme: ClassVar[str] = "Bearer"

    def get_jira_base_url(self) -> str:
        return self.instance_id

    def get_api_base_url(self) -> str:
        return self.instance_id

    def get_client(
        self,
        connection: Any,
        session: requests.Session | None = None,
        timeout_s: float = 15.0,
    ) -> JiraClient:
        token = getattr(connection, "oauth_token", "")
        return self.client_class(
            base_url=self.get_api_base_url(),
            auth_header=f"{self.auth_scheme} {token}" if token else None,
            session=session,
            timeout_s=timeout_s,
        )


class ServerInstance(BaseInstance):
    """Self-hosted deployment; users are addressed by username."""

    type: Literal["server"] = "server"
    client_class: ClassVar[Type[JiraClient]] = ServerClient


class CloudOAuthInstance(BaseInstance):
    """Cloud site reached through the OAuth gateway for its ``cloud_id``."""

    type: Literal["cloud-oauth"] = "cloud-oauth"
    cloud_id: str = Field(min_length=1)
    client_class: ClassVar[Type[JiraClient]] = CloudClient

    def get_api_base_url(self) -> str:
        return f"https://api.atlassian.com/ex/jira/{self.cloud_id}"


class CloudJWTInstance(BaseInstance):
    """Cloud site installed as an app; requests are signed per connection."""

    type: Literal["cloud"] = "cloud"
    client_key: str = ""
    client_class: ClassVar[Type[JiraClient]] = CloudClient
    auth_scheme: ClassVar[str] = "JWT"


Instance = Annotated[
    Union[ServerInstance, CloudOAuthInstance, CloudJWTInstance],
    Field(discriminator="type"),
]

_INSTANCE_ADAPTER: TypeAdapter[Instance] = TypeAdapter(Instance)


def instance_from_payload(payload: dict[str, Any]) -> BaseInstance:
    return _INSTANCE_ADAPTER.validate_python(payload)


def instance_to_payload(instance: BaseInstance) -> dict[str, Any]:
    return instance.model_dump(mode="json")
