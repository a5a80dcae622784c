"""Tests for YAML configuration loading and the CLI overrides."""

import logging

import pytest

from sfu.config import DEFAULT_CONFIG_PATH, ServerConfig, load_config
from sfu.main import build_config, parse_args


def test_packaged_defaults() -> None:
    config = load_config(DEFAULT_CONFIG_PATH)

    assert config.listen_port == 3016
    assert config.ws_path == "/ws"
    assert config.media.worker.rtc_min_port == 10000
    assert config.media.worker.rtc_max_port == 10100
    assert [codec["mimeType"] for codec in config.media.router.media_codecs] == ["audio/opus", "video/VP8"]
    listen = config.media.web_rtc_transport.listen_ips[0]
    assert (listen.ip, listen.announced_ip) == ("0.0.0.0", "127.0.0.1")
    assert config.media.web_rtc_transport.max_incoming_bitrate == 1_500_000


def test_environment_variable_selects_file(tmp_path, monkeypatch) -> None:
    path = tmp_path / "sfu.yaml"
    path.write_text("listen_port: 4000\nadapter_timeout: 2\nmedia:\n  worker:\n    rtc_min_port: 20000\n    rtc_max_port: 20010\n")
    monkeypatch.setenv("SFU_CONFIG", str(path))

    config = load_config()

    assert config.listen_port == 4000
    assert config.adapter_timeout == 2.0
    assert config.media.worker.rtc_min_port == 20000
    # Sections not mentioned keep their defaults.
    assert config.media.web_rtc_transport.enable_tcp is True


def test_unknown_keys_are_ignored_with_warning(tmp_path, caplog) -> None:
    path = tmp_path / "sfu.yaml"
    path.write_text("listen_port: 4001\nturbo: true\n")

    with caplog.at_level(logging.WARNING, logger="sfu.config"):
        config = load_config(path)

    assert config.listen_port == 4001
    assert "turbo" in caplog.text


def test_non_mapping_document_is_rejected(tmp_path) -> None:
    path = tmp_path / "sfu.yaml"
    path.write_text("- just\n- a list\n")

    with pytest.raises(ValueError, match="mapping"):
        load_config(path)


def test_invalid_port_range_is_rejected() -> None:
    with pytest.raises(ValueError, match="port range"):
        ServerConfig.from_dict({"media": {"worker": {"rtc_min_port": 5000, "rtc_max_port": 4000}}})


def test_values_are_normalised() -> None:
    config = ServerConfig(ws_path="signal", adapter_timeout=0, queue_size=0)

    assert config.ws_path == "/signal"
    assert config.adapter_timeout > 0
    assert config.queue_size == 1


def test_cli_overrides(tmp_path) -> None:
    path = tmp_path / "sfu.yaml"
    path.write_text("listen_port: 4002\n")

    args = parse_args(["--config", str(path), "--host", "127.0.0.1", "--port", "5000", "--log-level", "debug"])
    config = build_config(args)

    assert config.listen_ip == "127.0.0.1"
    assert config.listen_port == 5000
    assert config.log_level == "debug"


def test_packaged_defaults_have_no_unknown_keys(caplog) -> None:
    with caplog.at_level(logging.WARNING, logger="sfu.config"):
        load_config(DEFAULT_CONFIG_PATH)

    assert "unknown" not in caplog.text


def test_worker_log_settings_are_not_accepted(caplog) -> None:
    with caplog.at_level(logging.WARNING, logger="sfu.config"):
        config = ServerConfig.from_dict({"media": {"worker": {"log_level": "debug"}}})

    assert "log_level" in caplog.text
    assert not hasattr(config.media.worker, "log_level")
