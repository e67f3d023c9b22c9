from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from typing import Any

from .constants import AVATAR_MAX_CHARS


@dataclass(frozen=True)
class HubRuntimeConfig:
    config_path: str | None = None
    store_path: str | None = None
    configdir: str | None = None
    identity_path: str | None = None
    dest_name: str = "rrp.hub"
    announce_on_start: bool = True
    announce_period_s: float = 0.0
    hub_name: str = "rrp"
    max_name_chars: int = 64
    max_email_chars: int = 254
    max_avatar_chars: int = 256
    max_msg_body_bytes: int = 350
    enable_resource_transfer: bool = True
    max_resource_bytes: int = 8 * 1024 * 1024
    record_history: bool = True
    history_limit: int = 200
    max_stored_messages: int = 10000
    persist_interval_s: float = 2.0
    log_level: str = "INFO"
    log_rns_level: str = "WARNING"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
    log_datefmt: str | None = None


_LOGGING_KEYS = {
    "level": "log_level",
    "rns_level": "log_rns_level",
    "console": "log_console",
    "file": "log_file",
    "format": "log_format",
    "datefmt": "log_datefmt",
}

# Empty strings in the file mean "unset" for these keys.
_OPTIONAL_KEYS = ("configdir", "store_path", "log_file", "log_datefmt")


def load_toml(path: str) -> dict:
    import tomllib

    with open(path, "rb") as f:
        return tomllib.load(f)


def apply_config_data(cfg: HubRuntimeConfig, data: dict[str, Any]) -> HubRuntimeConfig:
    """Overlay values from a parsed TOML document onto ``cfg``.

    Keys may live at top level or under ``[hub]``; ``[logging]`` keys are
    mapped onto the ``log_*`` fields. Unknown keys are ignored.
    """
    if not isinstance(data, dict):
        return cfg

    hub = data.get("hub")
    if isinstance(hub, dict):
        data = {**data, **hub}

    log_table = data.get("logging")
    if isinstance(log_table, dict):
        mapped = {
            field: log_table[key] for key, field in _LOGGING_KEYS.items() if key in log_table
        }
        data = {**data, **mapped}

    allowed = set(asdict(cfg).keys())
    # This identifies where the file was loaded from; do not let the file override it.
    allowed.discard("config_path")
    updates = {k: v for k, v in data.items() if k in allowed}

    if "announce" in data and "announce_on_start" not in updates:
        updates["announce_on_start"] = bool(data["announce"])

    for key in _OPTIONAL_KEYS:
        if key in updates and updates[key] == "":
            updates[key] = None

    # Avatar references never exceed AVATAR_MAX_CHARS; 0 means the cap itself.
    avatar = updates.get("max_avatar_chars")
    if avatar is not None and not 0 < int(avatar) <= AVATAR_MAX_CHARS:
        updates["max_avatar_chars"] = AVATAR_MAX_CHARS

    return replace(cfg, **updates) if updates else cfg


def load_config_file(cfg: HubRuntimeConfig, path: str) -> HubRuntimeConfig:
    return apply_config_data(cfg, load_toml(path))
