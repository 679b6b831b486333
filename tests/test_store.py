from __future__ import annotations

from pathlib import Path

import pytest

from jira_bridge.server.errors import ConflictError, NotFoundError
from jira_bridge.server.instances import (
    CloudOAuthInstance,
    InstanceCommon,
    InstanceType,
    ServerInstance,
)
from jira_bridge.server.store import InstanceStore, KVStore, UserStore
from jira_bridge.server.users import Connection, SavedFieldValues, User


def test_kv_compare_and_set_insert_then_update() -> None:
    kv = KVStore()

    assert kv.load("k") == (None, 0)
    assert kv.compare_and_set("k", {"n": 1}, 0) == 1
    assert kv.compare_and_set("k", {"n": 2}, 1) == 2
    assert kv.load("k") == ({"n": 2}, 2)


def test_kv_compare_and_set_rejects_stale_version() -> None:
    kv = KVStore()
    kv.compare_and_set("k", [1], 0)

    with pytest.raises(ConflictError):
        kv.compare_and_set("k", [2], 0)
    with pytest.raises(ConflictError):
        kv.compare_and_set("k", [2], 7)

    assert kv.load("k") == ([1], 1)


def test_kv_set_bumps_version_and_delete_removes() -> None:
    kv = KVStore()
    assert kv.set("k", "a") == 1
    assert kv.set("k", "b") == 2

    kv.delete("k")

    assert kv.load("k") == (None, 0)


def test_kv_keys_by_prefix() -> None:
    kv = KVStore()
    for key in ("user/b", "user/a", "instance/x", "users_extra"):
        kv.set(key, 1)

    assert kv.keys("user/") == ["user/a", "user/b"]
    assert len(kv.keys()) == 4


def test_kv_persists_to_file(tmp_path: Path) -> None:
    path = tmp_path / "kv.sqlite"
    kv = KVStore(path)
    kv.set("k", {"v": True})
    kv.close()

    assert KVStore(path).load("k") == ({"v": True}, 1)


def test_instance_store_snapshot_versioning() -> None:
    store = InstanceStore(KVStore())

    first = store.load_instances()
    assert first.is_empty()
    assert first.version == 0

    first.set(InstanceCommon(instance_id="https://a", type=InstanceType.SERVER))
    store.store_instances(first)
    assert first.version == 1

    stale = store.load_instances()
    fresh = store.load_instances()
    fresh.set(InstanceCommon(instance_id="https://b", type=InstanceType.CLOUD_JWT))
    store.store_instances(fresh)

    with pytest.raises(ConflictError):
        store.store_instances(stale)
    assert store.load_instances().ids() == ["https://a", "https://b"]


def test_instance_store_records() -> None:
    store = InstanceStore(KVStore())
    instance = CloudOAuthInstance(instance_id="https://acme.atlassian.net", cloud_id="cid")

    store.store_instance(instance)
    loaded = store.load_instance("https://acme.atlassian.net")
    assert isinstance(loaded, CloudOAuthInstance)
    assert loaded.cloud_id == "cid"

    store.delete_instance("https://acme.atlassian.net")
    with pytest.raises(NotFoundError):
        store.load_instance("https://acme.atlassian.net")


def test_instance_records_do_not_collide_with_registry_key() -> None:
    kv = KVStore()
    store = InstanceStore(kv)
    store.store_instance(ServerInstance(instance_id="https://a"))
    store.store_instances(store.load_instances())

    assert kv.keys("instance/") == ["instance/https://a"]


def test_user_store_users_and_connections() -> None:
    store = UserStore(KVStore())
    with pytest.raises(NotFoundError):
        store.load_user("u1")

    store.store_user(User(host_user_id="u1", connected_instances=["https://a"], default_instance_id="https://a"))
    store.store_connection(
        "https://a",
        "u1",
        Connection(display_name="Ann", account_id="acc-1", saved_field_values=SavedFieldValues(project_key="OPS")),
    )

    assert store.load_user("u1").default_instance_id == "https://a"
    connection = store.load_connection("https://a", "u1")
    assert connection.account_id == "acc-1"
    assert connection.saved_field_values.project_key == "OPS"

    store.delete_connection("https://a", "u1")
    store.delete_user("u1")
    with pytest.raises(NotFoundError):
        store.load_connection("https://a", "u1")
    with pytest.raises(NotFoundError):
        store.load_user("u1")


def test_user_store_map_users_visits_every_user() -> None:
    store = UserStore(KVStore())
    for user_id in ("u2", "u1", "u3"):
        store.store_user(User(host_user_id=user_id))

    seen: list[str] = []
    store.map_users(lambda user: seen.append(user.host_user_id))

    assert seen == ["u1", "u2", "u3"]
