from __future__ import annotations

import argparse
import os
import secrets
import sys
from dataclasses import replace
from pathlib import Path

import RNS

from .config import HubRuntimeConfig, load_config_file
from .logging_config import configure_logging
from .paths import (
    default_config_path,
    default_identity_path,
    default_store_path,
    ensure_private_dir,
    tighten_file_mode,
)
from .service import HubService
from .store import Snapshot, SnapshotStore


def _write_default_config(config_path: str, identity_path: str, store_path: str) -> None:
    cfg_dir = os.path.dirname(config_path)
    if cfg_dir:
        ensure_private_dir(Path(cfg_dir))

    content = f"""# rrpd configuration (TOML)
#
# This file was created on first run.
# Edit it, then start rrpd again.

[hub]

# Optional: Reticulum configuration directory.
# If left unset, Reticulum will choose its default (usually ~/.reticulum).
configdir = ""

# Where rrpd stores its persistent identity (Reticulum Identity file).
identity_path = {identity_path!r}

# Known users, message history and the admin secret.
# Maintained by rrpd; the admin secret is generated on first run.
store_path = {store_path!r}

# Destination name to host the hub on.
dest_name = "rrp.hub"

# Announcing (Reticulum destination announces)
#
# announce_on_start: send a single announce right after startup.
# announce_period_s: if >0, periodically re-announce.
announce_on_start = true
announce_period_s = 0.0

# Hub name carried in announces.
hub_name = "rrp"

# Identity limits for JOIN (Unicode characters). 0 disables a limit, except
# for avatars, which are always capped at 256 to keep join announces small.
max_name_chars = 64
max_email_chars = 254
max_avatar_chars = 256

# Maximum chat text size in UTF-8 bytes. Keep it small enough to fit the
# link MTU after envelope overhead; 350 suits the default Reticulum MTU of 500.
max_msg_body_bytes = 350

# Replies larger than one link packet (big rosters, history, admin listings)
# are sent as a Reticulum Resource, up to max_resource_bytes.
enable_resource_transfer = true
max_resource_bytes = 8388608

# Message history.
#
# record_history: append every routed chat (delivered or not) to the store.
# history_limit: newest entries returned to a client asking for its history.
# max_stored_messages: oldest entries are dropped beyond this (0 keeps all).
record_history = true
history_limit = 200
max_stored_messages = 10000

# Seconds to batch store changes before the background writer saves them.
persist_interval_s = 2.0

[logging]

# Log level for rrpd itself.
level = "INFO"

# Log level for Reticulum/RNS Python logging (if used by your install).
rns_level = "WARNING"

# Log to stderr (systemd/journald friendly).
console = true

# Optional file path for logs (leave empty to disable).
file = ""

# Log format and optional date format.
format = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
datefmt = ""
"""

    with open(config_path, "w", encoding="utf-8") as f:
        f.write(content)


def _ensure_first_run_files(config_path: str, identity_path: str, store_path: str) -> bool:
    created_any = False

    if not os.path.exists(config_path):
        _write_default_config(config_path, identity_path, store_path)
        created_any = True

    if not os.path.exists(identity_path):
        storage_dir = os.path.dirname(identity_path)
        if storage_dir:
            ensure_private_dir(Path(storage_dir))
        ident = RNS.Identity()
        ident.to_file(identity_path)
        tighten_file_mode(identity_path)
        created_any = True

    if store_path and not os.path.exists(store_path):
        storage_dir = os.path.dirname(store_path)
        if storage_dir:
            ensure_private_dir(Path(storage_dir))
        SnapshotStore(store_path).save(Snapshot(admin_secret=secrets.token_urlsafe(18)))
        tighten_file_mode(store_path)
        created_any = True

    return created_any


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="rrpd", description="Run an RRP presence hub daemon")

    p.add_argument(
        "--config",
        default=str(default_config_path()),
        help="Path to a TOML config file (created on first run)",
    )
    p.add_argument("--configdir", default=None, help="Reticulum config directory")

    p.add_argument(
        "--identity",
        default=str(default_identity_path()),
        help="Path to hub identity file (created on first run)",
    )
    p.add_argument(
        "--store",
        default=str(default_store_path()),
        help="Path to the user/history store TOML (created on first run)",
    )
    p.add_argument(
        "--dest-name", default=None, help="Destination app name (default: rrp.hub)"
    )

    p.add_argument(
        "--no-announce",
        action="store_true",
        help="Disable announce on start (does not affect periodic announce)",
    )
    p.add_argument(
        "--announce-period",
        type=float,
        default=None,
        help="Periodic announce interval seconds (0 disables)",
    )
    p.add_argument("--hub-name", default=None, help="Hub name in announces")

    p.add_argument(
        "--max-msg-body-bytes",
        type=int,
        default=None,
        help="Maximum chat text size in UTF-8 bytes",
    )
    p.add_argument(
        "--no-history",
        action="store_true",
        help="Do not record routed chats in the store",
    )

    p.add_argument(
        "--log-level",
        default=None,
        help="Logging level override (DEBUG, INFO, WARNING, ERROR). Default comes from config.",
    )
    p.add_argument(
        "--log-file",
        default=None,
        help="Log file path override (empty disables file logging). Default comes from config.",
    )

    return p


def build_config(args: argparse.Namespace) -> HubRuntimeConfig:
    """Defaults, then the config file, then command-line overrides."""
    cfg = HubRuntimeConfig(
        config_path=str(args.config),
        identity_path=str(args.identity),
        store_path=str(args.store),
    )
    if args.config and os.path.exists(str(args.config)):
        cfg = load_config_file(cfg, str(args.config))

    if args.configdir is not None:
        cfg = replace(cfg, configdir=args.configdir)
    if args.dest_name is not None:
        cfg = replace(cfg, dest_name=args.dest_name)

    if args.no_announce:
        cfg = replace(cfg, announce_on_start=False)
    if args.announce_period is not None:
        cfg = replace(cfg, announce_period_s=float(args.announce_period))
    if args.hub_name is not None:
        cfg = replace(cfg, hub_name=args.hub_name)

    if args.max_msg_body_bytes is not None:
        cfg = replace(cfg, max_msg_body_bytes=int(args.max_msg_body_bytes))
    if args.no_history:
        cfg = replace(cfg, record_history=False)

    if args.log_level is not None:
        cfg = replace(cfg, log_level=str(args.log_level))
    if args.log_file is not None:
        cfg = replace(cfg, log_file=str(args.log_file) if str(args.log_file) else None)

    return cfg


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)

    config_path = str(args.config)
    identity_path = str(args.identity)
    store_path = str(args.store)

    if _ensure_first_run_files(config_path, identity_path, store_path):
        print(
            "Created default rrpd files. Edit the configuration before starting:\n"
            f"- Config:   {config_path}\n"
            f"- Identity: {identity_path}\n"
            f"- Store:    {store_path} (contains the generated admin secret)\n"
            "\nThen re-run rrpd.",
            file=sys.stderr,
        )
        raise SystemExit(0)

    cfg = build_config(args)

    configure_logging(cfg, override_level=args.log_level, override_file=args.log_file)

    svc = HubService(cfg)
    svc.start()
    svc.run_forever()


if __name__ == "__main__":
    main()
