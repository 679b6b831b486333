"""Runtime settings for the bridge, read from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from jira_bridge.server.errors import ConfigError
from jira_bridge.shared.byte_size import ByteSize, parse_byte_size

_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class BridgeSettings:
    """Filesystem locations, upstream limits, and licensing inputs."""

    data_dir: Path
    sqlite_path: Path
    site_url: str
    max_attachment_size: ByteSize
    http_timeout_s: float
    enable_autocomplete: bool
    license_sku: str | None
    developer_mode: bool
    update_retries: int
    log_level: str
    log_json: bool

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "BridgeSettings":
        source = os.environ if env is None else env
        data_dir = Path(source.get("JIRA_BRIDGE_DATA_DIR", "./data"))
        sqlite_path = Path(
            source.get("JIRA_BRIDGE_SQLITE_PATH", str(data_dir / "jira_bridge.sqlite"))
        )
        raw_size = source.get("JIRA_BRIDGE_MAX_ATTACHMENT_SIZE", "10Mb")
        try:
            max_attachment_size = parse_byte_size(raw_size)
        except ValueError as exc:
            raise ConfigError(
                f"JIRA_BRIDGE_MAX_ATTACHMENT_SIZE is not a byte size: {raw_size!r}"
            ) from exc

        return cls(
            data_dir=data_dir,
            sqlite_path=sqlite_path,
            site_url=source.get("JIRA_BRIDGE_SITE_URL", "http://localhost:8065").rstrip("/"),
            max_attachment_size=max_attachment_size,
            http_timeout_s=_number(source, "JIRA_BRIDGE_HTTP_TIMEOUT_S", "15", float),
            enable_autocomplete=_flag(source, "JIRA_BRIDGE_ENABLE_AUTOCOMPLETE", "true"),
            license_sku=(source.get("JIRA_BRIDGE_LICENSE_SKU") or "").strip() or None,
            developer_mode=_flag(source, "JIRA_BRIDGE_DEVELOPER_MODE", "false"),
            update_retries=max(1, _number(source, "JIRA_BRIDGE_UPDATE_RETRIES", "5", int)),
            log_level=source.get("JIRA_BRIDGE_LOG_LEVEL", "INFO").upper(),
            log_json=_flag(source, "JIRA_BRIDGE_LOG_JSON", "false"),
        )

    def ensure_directories(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.sqlite_path.parent.mkdir(parents=True, exist_ok=True)


def _flag(source: Mapping[str, str], name: str, default: str) -> bool:
    return source.get(name, default).strip().lower() in _TRUE_VALUES


def _number(source: Mapping[str, str], name: str, default: str, kind: type) -> Any:
    raw = source.get(name, default)
    try:
        return kind(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc


def get_settings(env: Mapping[str, str] | None = None) -> BridgeSettings:
    """Build settings and create the directories they point at."""

    settings = BridgeSettings.from_env(env)
    settings.ensure_directories()
    return settings
