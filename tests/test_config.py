import logging

from rrpd.cli import _build_arg_parser, build_config
from rrpd.config import HubRuntimeConfig, apply_config_data, load_config_file
from rrpd.constants import AVATAR_MAX_CHARS
from rrpd.logging_config import parse_level


def test_hub_and_logging_tables_are_applied(tmp_path) -> None:
    path = tmp_path / "rrpd.toml"
    path.write_text(
        "[hub]\n"
        'hub_name = "lobby"\n'
        "max_msg_body_bytes = 200\n"
        'configdir = ""\n'
        'config_path = "/elsewhere.toml"\n'
        "unknown_key = 1\n"
        "[logging]\n"
        'level = "DEBUG"\n'
        'file = ""\n',
        encoding="utf-8",
    )

    cfg = load_config_file(HubRuntimeConfig(config_path=str(path)), str(path))

    assert cfg.hub_name == "lobby"
    assert cfg.max_msg_body_bytes == 200
    assert cfg.configdir is None
    assert cfg.config_path == str(path)
    assert cfg.log_level == "DEBUG"
    assert cfg.log_file is None


def test_legacy_announce_key() -> None:
    cfg = apply_config_data(HubRuntimeConfig(), {"announce": False})
    assert cfg.announce_on_start is False


def test_empty_data_keeps_defaults() -> None:
    base = HubRuntimeConfig()
    assert apply_config_data(base, {}) is base


def test_cli_flags_override_file(tmp_path) -> None:
    path = tmp_path / "rrpd.toml"
    path.write_text('[hub]\nhub_name = "from-file"\nrecord_history = true\n', encoding="utf-8")

    args = _build_arg_parser().parse_args(
        [
            "--config",
            str(path),
            "--identity",
            str(tmp_path / "id"),
            "--store",
            str(tmp_path / "store.toml"),
            "--hub-name",
            "from-cli",
            "--no-history",
            "--no-announce",
        ]
    )
    cfg = build_config(args)

    assert cfg.hub_name == "from-cli"
    assert cfg.record_history is False
    assert cfg.announce_on_start is False
    assert cfg.store_path == str(tmp_path / "store.toml")


def test_parse_level() -> None:
    assert parse_level("warn", logging.INFO) == logging.WARNING
    assert parse_level("15", logging.INFO) == 15
    assert parse_level("", logging.INFO) == logging.INFO
    assert parse_level("loud", logging.ERROR) == logging.ERROR


def test_avatar_limit_is_capped() -> None:
    assert HubRuntimeConfig().max_avatar_chars == AVATAR_MAX_CHARS
    assert apply_config_data(HubRuntimeConfig(), {"max_avatar_chars": 1024}).max_avatar_chars == (
        AVATAR_MAX_CHARS
    )
    assert apply_config_data(HubRuntimeConfig(), {"max_avatar_chars": 0}).max_avatar_chars == (
        AVATAR_MAX_CHARS
    )
    assert apply_config_data(HubRuntimeConfig(), {"max_avatar_chars": 80}).max_avatar_chars == 80


def test_transfer_and_persist_settings() -> None:
    cfg = apply_config_data(
        HubRuntimeConfig(),
        {"hub": {"enable_resource_transfer": False, "max_resource_bytes": 1000, "persist_interval_s": 0.5}},
    )
    assert cfg.enable_resource_transfer is False
    assert cfg.max_resource_bytes == 1000
    assert cfg.persist_interval_s == 0.5
