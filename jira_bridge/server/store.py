"""SQLite-backed key-value store and the instance/user stores built on it."""

from __future__ import annotations

import json
import sqlite3
import threading
from pathlib import Path
from typing import Any, Callable

from jira_bridge.server.errors import ConflictError, NotFoundError
from jira_bridge.server.instances import (
    BaseInstance,
    Instances,
    instance_from_payload,
    instance_to_payload,
)
from jira_bridge.server.users import Connection, User

INSTANCES_KEY = "instances/v3"
INSTANCE_PREFIX = "instance/"
USER_PREFIX = "user/"
CONNECTION_PREFIX = "connection/"


class KVStore:
    """Versioned key-value rows with compare-and-set writes."""

    def __init__(self, db_path: Path | str = ":memory:") -> None:
        self.db_path = str(db_path)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._init_schema()

    def _init_schema(self) -> None:
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value_json TEXT NOT NULL,
                version INTEGER NOT NULL DEFAULT 1,
                updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
        self.conn.commit()

    def load(self, key: str) -> tuple[Any | None, int]:
        """Returns (value, version); a missing key is (None, 0)."""
        with self._lock:
            row = self.conn.execute(
                "SELECT value_json, version FROM kv WHERE key = ?", (key,)
            ).fetchone()
        if row is None:
            return None, 0
        return json.loads(row["value_json"]), int(row["version"])

    def set(self, key: str, value: Any) -> int:
        with self._lock:
            self.conn.execute(
                """
                INSERT INTO kv (key, value_json) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET
                  value_json=excluded.value_json,
                  version=kv.version + 1,
                  updated_at=CURRENT_TIMESTAMP
                """,
                (key, json.dumps(value)),
            )
            self.conn.commit()
            return self.load(key)[1]

    def compare_and_set(self, key: str, value: Any, expected_version: int) -> int:
        """Write only if the stored version still equals ``expected_version`` (0 = absent)."""
        payload = json.dumps(value)
        with self._lock:
            if expected_version == 0:
                cursor = self.conn.execute(
                    "INSERT INTO kv (key, value_json) VALUES (?, ?) ON CONFLICT(key) DO NOTHING",
                    (key, payload),
                )
            else:
                cursor = self.conn.execute(
                    """
                    UPDATE kv SET value_json = ?, version = version + 1,
                      updated_at = CURRENT_TIMESTAMP
                    WHERE key = ? AND version = ?
                    """,
                    (payload, key, expected_version),
                )
            self.conn.commit()
            if cursor.rowcount == 0:
                raise ConflictError(f"{key!r} was modified concurrently")
            return expected_version + 1

    def delete(self, key: str) -> None:
        with self._lock:
            self.conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            self.conn.commit()

    def keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT key FROM kv WHERE substr(key, 1, ?) = ? ORDER BY key",
                (len(prefix), prefix),
            ).fetchall()
        return [row["key"] for row in rows]

    def close(self) -> None:
        self.conn.close()


class InstanceStore:
    """Registry snapshot plus one full record per installed instance."""

    def __init__(self, kv: KVStore) -> None:
        self.kv = kv

    def load_instances(self) -> Instances:
        payload, version = self.kv.load(INSTANCES_KEY)
        return Instances.from_payload(payload, version=version)

    def store_instances(self, instances: Instances) -> None:
        """Optimistic-concurrency checked: raises ``ConflictError`` on a lost race."""
        instances.version = self.kv.compare_and_set(
            INSTANCES_KEY, instances.to_payload(), instances.version
        )

    def load_instance(self, instance_id: str) -> BaseInstance:
        payload, _version = self.kv.load(INSTANCE_PREFIX + instance_id)
        if payload is None:
            raise NotFoundError(f"instance {instance_id!r} not found")
        return instance_from_payload(payload)

    def store_instance(self, instance: BaseInstance) -> None:
        self.kv.set(INSTANCE_PREFIX + instance.instance_id, instance_to_payload(instance))

    def delete_instance(self, instance_id: str) -> None:
        self.kv.delete(INSTANCE_PREFIX + instance_id)


class UserStore:
    def __init__(self, kv: KVStore) -> None:
        self.kv = kv

    def load_user(self, host_user_id: str) -> User:
        payload, _version = self.kv.load(USER_PREFIX + host_user_id)
        if payload is None:
            raise NotFoundError(f"user {host_user_id!r} not found")
        return User.model_validate(payload)

    def store_user(self, user: User) -> None:
        self.kv.set(USER_PREFIX + user.host_user_id, user.model_dump(mode="json"))

    def delete_user(self, host_user_id: str) -> None:
        self.kv.delete(USER_PREFIX + host_user_id)

    def load_connection(self, instance_id: str, host_user_id: str) -> Connection:
        payload, _version = self.kv.load(_connection_key(instance_id, host_user_id))
        if payload is None:
            raise NotFoundError(
                f"connection for user {host_user_id!r} to instance {instance_id!r} not found"
            )
        return Connection.model_validate(payload)

    def store_connection(self, instance_id: str, host_user_id: str, connection: Connection) -> None:
        self.kv.set(_connection_key(instance_id, host_user_id), connection.model_dump(mode="json"))

    def delete_connection(self, instance_id: str, host_user_id: str) -> None:
        self.kv.delete(_connection_key(instance_id, host_user_id))

    def map_users(self, fn: Callable[[User], None]) -> None:
        """Apply ``fn`` to every stored user; the first exception stops the walk."""
        for key in self.kv.keys(USER_PREFIX):
            payload, _version = self.kv.load(key)
            if payload is None:
                continue
            fn(User.model_validate(payload))


def _connection_key(instance_id: str, host_user_id: str) -> str:
    return f"{CONNECTION_PREFIX}{instance_id}/{host_user_id}"
