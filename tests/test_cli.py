import json
import logging

import pytest
import structlog
from typer.testing import CliRunner

from jira_bridge.cli import app

SERVER = "https://jira.example.com"
CLOUD = "https://acme.atlassian.net"


@pytest.fixture
def invoke(tmp_path):
    runner = CliRunner()
    env = {
        "JIRA_BRIDGE_DATA_DIR": str(tmp_path / "data"),
        "JIRA_BRIDGE_SQLITE_PATH": str(tmp_path / "data" / "bridge.sqlite"),
        "JIRA_BRIDGE_DEVELOPER_MODE": "true",
        "JIRA_BRIDGE_LOG_LEVEL": "WARNING",
    }

    def _invoke(*args, **overrides):
        return runner.invoke(app, list(args), env={**env, **overrides})

    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield _invoke
    # Commands configure logging against the runner's temporary stderr.
    root.handlers = handlers
    root.setLevel(level)
    structlog.reset_defaults()


def test_install_and_list_instances(invoke):
    first = invoke("install", "JIRA.example.com/", "--type", "server")
    second = invoke("install", CLOUD, "--type", "cloud", "--alias", "acme")

    assert first.exit_code == 0, first.output
    assert f"Installed {SERVER} (1 installed)" in first.output
    assert second.exit_code == 0, second.output
    assert f"Installed {CLOUD} (2 installed)" in second.output

    listed = invoke("instances")
    assert listed.exit_code == 0, listed.output
    rows = json.loads(listed.stdout)
    assert [(row["instance_id"], row["type"], row["alias"]) for row in rows] == [
        (SERVER, "server", ""),
        (CLOUD, "cloud", "acme"),
    ]


def test_second_install_requires_license(invoke):
    assert invoke("install", SERVER, "--type", "server").exit_code == 0

    result = invoke("install", CLOUD, "--type", "cloud", JIRA_BRIDGE_DEVELOPER_MODE="false")

    assert result.exit_code == 1
    assert "Error: You need a valid Professional, Enterprise or Enterprise Advanced license" in result.output

    listed = invoke("instances")
    assert [row["instance_id"] for row in json.loads(listed.stdout)] == [SERVER]


def test_enterprise_license_allows_several_instances(invoke):
    invoke("install", SERVER, "--type", "server", JIRA_BRIDGE_DEVELOPER_MODE="false")

    result = invoke(
        "install",
        CLOUD,
        "--type",
        "cloud",
        JIRA_BRIDGE_DEVELOPER_MODE="false",
        JIRA_BRIDGE_LICENSE_SKU="enterprise",
    )

    assert result.exit_code == 0, result.output


def test_cloud_oauth_requires_cloud_id(invoke):
    result = invoke("install", CLOUD, "--type", "cloud-oauth")

    assert result.exit_code != 0
    assert "--cloud-id" in result.output

    ok = invoke("install", CLOUD, "--type", "cloud-oauth", "--cloud-id", "abc-123")
    assert ok.exit_code == 0, ok.output


def test_unknown_instance_type_is_rejected(invoke):
    result = invoke("install", SERVER, "--type", "datacenter")

    assert result.exit_code != 0
    assert "unknown instance type" in result.output


def test_duplicate_alias_is_rejected(invoke):
    invoke("install", SERVER, "--type", "server", "--alias", "main")

    result = invoke("install", CLOUD, "--type", "cloud", "--alias", "main")

    assert result.exit_code == 1
    assert f"alias 'main' is already used by {SERVER}" in result.output


def test_alias_and_legacy_commands(invoke):
    invoke("install", SERVER, "--type", "server")
    invoke("install", CLOUD, "--type", "cloud")

    aliased = invoke("alias", CLOUD, " acme ")
    legacy = invoke("set-legacy", SERVER)

    assert aliased.exit_code == 0, aliased.output
    assert f"{CLOUD} is now known as acme" in aliased.output
    assert legacy.exit_code == 0, legacy.output
    assert f"{SERVER} is now the legacy instance" in legacy.output

    rows = {row["instance_id"]: row for row in json.loads(invoke("instances").stdout)}
    assert rows[CLOUD]["alias"] == "acme"
    assert rows[SERVER]["is_v2_legacy"] is True
    assert rows[CLOUD]["is_v2_legacy"] is False


def test_resolve_webhook_instance(invoke):
    none_installed = invoke("resolve")
    assert none_installed.exit_code == 1
    assert "no instances installed" in none_installed.output

    invoke("install", SERVER, "--type", "server")
    invoke("install", CLOUD, "--type", "cloud")

    ambiguous = invoke("resolve")
    assert ambiguous.exit_code == 1

    invoke("set-legacy", CLOUD)
    assert invoke("resolve").stdout.strip() == CLOUD
    assert invoke("resolve", "JIRA.example.com/").stdout.strip() == SERVER


def test_uninstall(invoke):
    invoke("install", SERVER, "--type", "server")

    mismatch = invoke("uninstall", SERVER, "--type", "cloud")
    assert mismatch.exit_code == 1
    assert "did not match instance" in mismatch.output

    removed = invoke("uninstall", SERVER, "--type", "server")
    assert removed.exit_code == 0, removed.output
    assert f"Uninstalled {SERVER}" in removed.output
    assert json.loads(invoke("instances").stdout) == []

    missing = invoke("uninstall", SERVER, "--type", "server")
    assert missing.exit_code == 1


def test_byte_size_command():
    runner = CliRunner()

    ok = runner.invoke(app, ["byte-size", "1.5kb"])
    bad = runner.invoke(app, ["byte-size", "ten megs"])

    assert ok.exit_code == 0
    assert json.loads(ok.stdout) == {"bytes": 1536, "display": "1.5Kb"}
    assert bad.exit_code == 1
    assert "Error:" in bad.output
