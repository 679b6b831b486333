"""jira-bridge administration CLI."""

from __future__ import annotations

import json

import typer

from jira_bridge.server.app import BridgeApp, create_app
from jira_bridge.server.errors import BridgeError
from jira_bridge.server.instances import (
    BaseInstance,
    CloudJWTInstance,
    CloudOAuthInstance,
    InstanceType,
    ServerInstance,
)
from jira_bridge.server.resolver import normalize_instance_url
from jira_bridge.shared.byte_size import parse_byte_size
from jira_bridge.shared.logging import configure_logging
from jira_bridge.shared.settings import get_settings

INSTANCE_TYPES = {
    "server": InstanceType.SERVER,
    "cloud-oauth": InstanceType.CLOUD_OAUTH,
    "cloud-jwt": InstanceType.CLOUD_JWT,
    "cloud": InstanceType.CLOUD_JWT,
}

app = typer.Typer(add_completion=False, help="jira-bridge: multi-instance Jira bridge admin")


def _open_app() -> BridgeApp:
    settings = get_settings()
    configure_logging(level=settings.log_level, json_output=settings.log_json)
    return create_app(db_path=settings.sqlite_path)


def _fail(exc: Exception) -> None:
    typer.echo(f"Error: {exc}", err=True)
    raise typer.Exit(code=1) from exc


def _instance_type(value: str) -> InstanceType:
    try:
        return INSTANCE_TYPES[value.strip().lower()]
    except KeyError as exc:
        raise typer.BadParameter(
            f"unknown instance type {value!r}; expected one of: server, cloud-oauth, cloud-jwt"
        ) from exc


def _build_instance(url: str, instance_type: InstanceType, alias: str, cloud_id: str) -> BaseInstance:
    instance_id = normalize_instance_url(url)
    if instance_type == InstanceType.SERVER:
        return ServerInstance(instance_id=instance_id, alias=alias)
    if instance_type == InstanceType.CLOUD_OAUTH:
        if not cloud_id:
            raise typer.BadParameter("--cloud-id is required for cloud-oauth instances")
        return CloudOAuthInstance(instance_id=instance_id, alias=alias, cloud_id=cloud_id)
    return CloudJWTInstance(instance_id=instance_id, alias=alias)


@app.command()
def instances() -> None:
    """List installed instances as JSON, in install order."""
    bridge = _open_app()
    try:
        typer.echo(json.dumps(bridge.instance_status()["instances"], indent=2))
    finally:
        bridge.close()


@app.command()
def install(
    url: str,
    instance_type: str = typer.Option(..., "--type"),
    alias: str = typer.Option("", "--alias"),
    cloud_id: str = typer.Option("", "--cloud-id"),
) -> None:
    """Install (or update) an upstream instance."""
    kind = _instance_type(instance_type)
    bridge = _open_app()
    try:
        instance = _build_instance(url, kind, alias.strip(), cloud_id.strip())
        if instance.alias:
            unique, holder = bridge.instance_store.load_instances().is_alias_unique(
                instance.instance_id, instance.alias
            )
            if not unique:
                raise BridgeError(f"alias {instance.alias!r} is already used by {holder}")
        updated = bridge.instances.install_instance(instance)
        typer.echo(f"Installed {instance.instance_id} ({len(updated)} installed)")
    except BridgeError as exc:
        _fail(exc)
    finally:
        bridge.close()


@app.command()
def uninstall(url: str, instance_type: str = typer.Option(..., "--type")) -> None:
    """Uninstall an instance and disconnect its users."""
    kind = _instance_type(instance_type)
    bridge = _open_app()
    try:
        instance_id = normalize_instance_url(url)
        bridge.instances.uninstall_instance(instance_id, kind)
        typer.echo(f"Uninstalled {instance_id}")
    except BridgeError as exc:
        _fail(exc)
    finally:
        bridge.close()


@app.command("set-legacy")
def set_legacy(url: str) -> None:
    """Make an instance the target of webhooks that do not name one."""
    bridge = _open_app()
    try:
        instance_id = normalize_instance_url(url)
        bridge.instances.store_v2_legacy_instance(instance_id)
        typer.echo(f"{instance_id} is now the legacy instance")
    except BridgeError as exc:
        _fail(exc)
    finally:
        bridge.close()


@app.command()
def alias(url: str, name: str) -> None:
    """Give an installed instance a short alias."""
    bridge = _open_app()
    try:
        instance_id = normalize_instance_url(url)
        bridge.instances.set_instance_alias(instance_id, name)
        typer.echo(f"{instance_id} is now known as {name.strip()}")
    except BridgeError as exc:
        _fail(exc)
    finally:
        bridge.close()


@app.command()
def resolve(hint: str = typer.Argument("")) -> None:
    """Show which instance a webhook with this (possibly empty) URL targets."""
    bridge = _open_app()
    try:
        typer.echo(bridge.resolver.resolve_webhook_instance_url(hint))
    except BridgeError as exc:
        _fail(exc)
    finally:
        bridge.close()


@app.command("byte-size")
def byte_size(value: str) -> None:
    """Parse a size like "1.5Mb" and print the byte count and its rendering."""
    try:
        size = parse_byte_size(value)
    except ValueError as exc:
        _fail(exc)
        return
    typer.echo(json.dumps({"bytes": int(size), "display": str(size)}))


def main() -> None:
    app()


if __name__ == "__main__":
    main()
