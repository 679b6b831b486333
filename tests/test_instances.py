from __future__ import annotations

import pytest

from jira_bridge.server.client import CloudClient, ServerClient
from jira_bridge.server.errors import NotFoundError
from jira_bridge.server.instances import (
    CloudJWTInstance,
    CloudOAuthInstance,
    InstanceCommon,
    Instances,
    InstanceType,
    ServerInstance,
    instance_from_payload,
    instance_to_payload,
)
from jira_bridge.server.users import Connection


def _common(instance_id: str, **kwargs) -> InstanceCommon:
    return InstanceCommon(instance_id=instance_id, type=InstanceType.SERVER, **kwargs)


def test_set_v2_legacy_moves_the_flag() -> None:
    instances = Instances([_common("https://a"), _common("https://b")])

    instances.set_v2_legacy("https://a")
    instances.set_v2_legacy("https://b")

    assert [i.instance_id for i in instances if i.is_v2_legacy] == ["https://b"]
    assert instances.get_v2_legacy().instance_id == "https://b"


def test_set_v2_legacy_unknown_id_changes_nothing() -> None:
    instances = Instances([_common("https://a", is_v2_legacy=True)])

    with pytest.raises(NotFoundError):
        instances.set_v2_legacy("https://missing")

    assert instances.get_v2_legacy().instance_id == "https://a"


def test_alias_lookups() -> None:
    instances = Instances([_common("https://a", alias="prod"), _common("https://b")])

    assert instances.get_alias("https://a") == "prod"
    assert instances.get_alias("https://b") == ""
    assert instances.get_alias("https://missing") == ""
    assert instances.get_by_alias("prod").instance_id == "https://a"
    assert instances.get_by_alias("") is None
    assert instances.is_alias_unique("https://b", "prod") == (False, "https://a")
    assert instances.is_alias_unique("https://a", "prod") == (True, "")
    assert instances.is_alias_unique("https://b", "staging") == (True, "")


def test_as_config_map_keeps_insertion_order() -> None:
    instances = Instances([_common("https://z"), _common("https://a", alias="main")])

    assert instances.as_config_map() == [
        {"instance_id": "https://z", "type": "server", "alias": "", "is_v2_legacy": False},
        {"instance_id": "https://a", "type": "server", "alias": "main", "is_v2_legacy": False},
    ]


def test_from_payload_keeps_only_first_legacy_flag() -> None:
    payload = [
        {"instance_id": "https://a", "type": "server", "is_v2_legacy": True},
        {"instance_id": "https://b", "type": "cloud", "is_v2_legacy": True},
    ]

    instances = Instances.from_payload(payload, version=4)

    assert instances.version == 4
    assert instances.ids() == ["https://a", "https://b"]
    assert instances.get_v2_legacy().instance_id == "https://a"
    assert not instances.get("https://b").is_v2_legacy


def test_from_payload_empty() -> None:
    assert Instances.from_payload(None).is_empty()


def test_instance_payload_round_trip_restores_variant() -> None:
    oauth = CloudOAuthInstance(instance_id="https://acme.atlassian.net", cloud_id="cid-1", alias="acme")

    restored = instance_from_payload(instance_to_payload(oauth))

    assert isinstance(restored, CloudOAuthInstance)
    assert restored == oauth
    assert restored.common() == InstanceCommon(
        instance_id="https://acme.atlassian.net", type=InstanceType.CLOUD_OAUTH, alias="acme"
    )


def test_instance_from_payload_picks_class_by_type() -> None:
    server = instance_from_payload({"instance_id": "https://jira.local", "type": "server"})
    jwt = instance_from_payload({"instance_id": "https://x.atlassian.net", "type": "cloud", "client_key": "k"})

    assert isinstance(server, ServerInstance)
    assert isinstance(jwt, CloudJWTInstance)
    assert jwt.client_key == "k"


def test_variants_build_their_own_clients() -> None:
    connection = Connection(oauth_token="tok")

    server_client = ServerInstance(instance_id="https://jira.local").get_client(connection)
    oauth_client = CloudOAuthInstance(instance_id="https://acme.atlassian.net", cloud_id="cid").get_client(connection)
    jwt_client = CloudJWTInstance(instance_id="https://x.atlassian.net").get_client(connection)

    assert isinstance(server_client, ServerClient)
    assert server_client.base_url == "https://jira.local"
    assert server_client.auth_header == "Bearer tok"
    assert isinstance(oauth_client, CloudClient)
    assert oauth_client.base_url == "https://api.atlassian.com/ex/jira/cid"
    assert isinstance(jwt_client, CloudClient)
    assert jwt_client.auth_header == "JWT tok"


def test_client_without_token_sends_no_auth_header() -> None:
    client = ServerInstance(instance_id="https://jira.local").get_client(Connection())
    assert client.auth_header is None


def test_oauth_token_hidden_from_repr() -> None:
    assert "secret" not in repr(Connection(oauth_token="secret"))
