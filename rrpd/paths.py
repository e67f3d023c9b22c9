from __future__ import annotations

import os
from pathlib import Path


def default_rrpd_dir() -> Path:
    override = os.environ.get("RRPD_HOME")
    if override:
        return Path(override)
    return Path.home() / ".rrpd"


def default_config_path() -> Path:
    return default_rrpd_dir() / "rrpd.toml"


def default_identity_path() -> Path:
    return default_rrpd_dir() / "hub_identity"


def default_store_path() -> Path:
    return default_rrpd_dir() / "store.toml"


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    try:
        # Best-effort tightening; may fail on some filesystems.
        os.chmod(path, 0o700)
    except Exception:
        pass


def tighten_file_mode(path: str | Path) -> None:
    try:
        os.chmod(path, 0o600)
    except Exception:
        pass
