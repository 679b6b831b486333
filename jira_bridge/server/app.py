"""Wiring for the bridge: settings, stores, collaborators, and services."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Mapping

import requests

from jira_bridge.server.enterprise import EnterpriseChecker, LicenseChecker
from jira_bridge.server.host import HostPlatform, InMemoryHostPlatform
from jira_bridge.server.installer import InstanceManager
from jira_bridge.server.instances import BaseInstance
from jira_bridge.server.issues import IssueService
from jira_bridge.server.resolver import Resolver
from jira_bridge.server.store import InstanceStore, KVStore, UserStore
from jira_bridge.server.users import Connection, User, UserManager
from jira_bridge.shared.settings import BridgeSettings


class BridgeApp:
    """Thin facade owning every service; one per process."""

    def __init__(
        self,
        db_path: str | Path = ":memory:",
        host: HostPlatform | None = None,
        session: requests.Session | None = None,
        settings: BridgeSettings | None = None,
        enterprise: EnterpriseChecker | None = None,
    ) -> None:
        self.settings = settings or BridgeSettings.from_env({})
        self.kv = KVStore(db_path)
        self.instance_store = InstanceStore(self.kv)
        self.user_store = UserStore(self.kv)
        self.enterprise = enterprise or LicenseChecker(
            license_sku=self.settings.license_sku,
            developer_mode=self.settings.developer_mode,
        )
        self.host = host or InMemoryHostPlatform(site_url=self.settings.site_url)
        self.users = UserManager(self.user_store)
        self.instances = InstanceManager(
            instance_store=self.instance_store,
            user_store=self.user_store,
            users=self.users,
            host=self.host,
            enterprise=self.enterprise,
            enable_autocomplete=self.settings.enable_autocomplete,
            max_attempts=self.settings.update_retries,
        )
        self.resolver = Resolver(self.instance_store, self.user_store)
        self.issues = IssueService(
            instance_store=self.instance_store,
            user_store=self.user_store,
            users=self.users,
            host=self.host,
            max_attachment_size=self.settings.max_attachment_size,
            http_timeout_s=self.settings.http_timeout_s,
            session=session,
        )

    def connect_user(self, instance_id: str, host_user_id: str, connection: Connection) -> User:
        instance = self.instance_store.load_instance(instance_id)
        return self.users.connect_user(instance, host_user_id, connection)

    def load_user_instance(self, host_user_id: str, hint: str = "") -> tuple[User, BaseInstance]:
        return self.resolver.load_user_instance(host_user_id, hint)

    def instance_status(self) -> dict[str, Any]:
        return {"instances": self.instance_store.load_instances().as_config_map()}

    def close(self) -> None:
        self.issues.close()
        self.kv.close()


def create_app(
    db_path: str | Path | None = None,
    host: HostPlatform | None = None,
    session: requests.Session | None = None,
    env: Mapping[str, str] | None = None,
) -> BridgeApp:
    """Build an app from environment settings; ``db_path`` overrides the configured file."""
    settings = BridgeSettings.from_env(env)
    if db_path is None:
        settings.ensure_directories()
        db_path = settings.sqlite_path
    return BridgeApp(db_path=db_path, host=host, session=session, settings=settings)
