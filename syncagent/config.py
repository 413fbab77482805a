"""Agent configuration: a small JSON document on the client machine."""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from syncagent.errors import ConfigError

CONFIG_ENV_VAR = "FOLDERSYNC_CONFIG"
_LOCALHOST_HOSTS = {"localhost", "127.0.0.1", "::1"}
_REQUIRED_KEYS = ("api_url", "api_key", "local_path", "device_name")


def default_config_path() -> Path:
    """Return the config path from ``FOLDERSYNC_CONFIG`` or ``~/.config/foldersync``."""
    override = os.environ.get(CONFIG_ENV_VAR)
    if override:
        return Path(override).expanduser()
    base = os.environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(base) / "foldersync" / "config.json"


@dataclass(frozen=True)
class AgentConfig:
    """Client configuration. Read-only once loaded."""

    api_url: str
    api_key: str
    local_path: Path
    device_name: str
    folder_id: str
    client_id: str | None = None
    sync_interval_seconds: float = 300.0
    debounce_seconds: float = 2.0
    max_concurrent_transfers: int = 4
    transfer_timeout_seconds: float = 300.0
    request_timeout_seconds: float = 30.0
    retry_attempts: int = 3
    retry_base_delay_seconds: float = 1.0

    def to_json(self) -> dict[str, Any]:
        data = asdict(self)
        data["local_path"] = str(self.local_path)
        return data


def split_api_url(api_url: str) -> tuple[str, str | None]:
    """Split ``https://host/api/sync/<folder_id>`` into base URL and folder id.

    A plain base URL returns ``(base, None)``.
    """
    normalized = api_url.strip().rstrip("/")
    marker = "/api/sync/"
    if marker in normalized:
        base, _, rest = normalized.partition(marker)
        folder_id = rest.split("/", 1)[0]
        return base, folder_id or None
    return normalized, None


def validate_server_url(server_url: str, allow_insecure_http: bool = False) -> str:
    """Validate server URL and enforce HTTPS for non-localhost hosts by default."""
    normalized = server_url.strip().rstrip("/")
    parsed = urlparse(normalized)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ConfigError("Server URL must include scheme and host (e.g. https://example.com)")

    hostname = parsed.hostname
    if parsed.scheme == "http" and not allow_insecure_http and hostname not in _LOCALHOST_HOSTS:
        raise ConfigError(
            "HTTPS is required for non-localhost servers. "
            "Use --allow-insecure-http only on trusted networks."
        )

    return normalized


def _from_mapping(data: dict[str, Any]) -> AgentConfig:
    missing = [key for key in _REQUIRED_KEYS if not data.get(key)]
    if missing:
        raise ConfigError(f"Config is missing required keys: {', '.join(missing)}")

    base_url, url_folder_id = split_api_url(str(data["api_url"]))
    folder_id = data.get("folder_id") or url_folder_id
    if not folder_id:
        raise ConfigError("Config must name a folder_id (or an api_url ending in /api/sync/<id>)")

    known = {f.name for f in fields(AgentConfig)}
    values = {key: value for key, value in data.items() if key in known}
    values.update(api_url=base_url, folder_id=folder_id, local_path=Path(data["local_path"]))
    try:
        config = AgentConfig(**values)
    except TypeError as exc:
        raise ConfigError(f"Invalid config: {exc}") from exc

    if config.max_concurrent_transfers < 1:
        raise ConfigError("max_concurrent_transfers must be at least 1")
    if config.retry_attempts < 1:
        raise ConfigError("retry_attempts must be at least 1")
    if config.debounce_seconds < 0 or config.sync_interval_seconds <= 0:
        raise ConfigError("debounce_seconds and sync_interval_seconds must be positive")
    return config


def load_config(path: Path) -> AgentConfig:
    """Load and validate the config file. Raises ConfigError on any problem."""
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ConfigError(
            f"No configuration found at {path}. Run 'foldersync setup' first."
        ) from exc
    except OSError as exc:
        raise ConfigError(f"Cannot read configuration {path}: {exc}") from exc

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid JSON in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration in {path} must be a JSON object")
    return _from_mapping(data)


def save_config(path: Path, config: AgentConfig) -> None:
    """Write the config file, creating its directory."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(config.to_json(), indent=2), encoding="utf-8")


def check_local_path(config: AgentConfig) -> Path:
    """Return the resolved sync root, or raise ConfigError when it is unusable."""
    root = config.local_path.expanduser()
    if not root.is_dir():
        raise ConfigError(f"local_path is not a directory: {root}")
    if not os.access(root, os.R_OK | os.W_OK | os.X_OK):
        raise ConfigError(f"local_path is not readable and writable: {root}")
    return root.resolve()
