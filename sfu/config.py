"""
Server configuration.

Values come from a YAML document (the packaged ``configs/default.yaml`` unless
``SFU_CONFIG`` or an explicit path points elsewhere) and are mapped onto plain
dataclasses so the rest of the service never touches raw dictionaries.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

LOG = logging.getLogger(__name__)

CONFIG_DIR = Path(__file__).resolve().parent / "configs"
DEFAULT_CONFIG_PATH = CONFIG_DIR / "default.yaml"
ENV_CONFIG_VAR = "SFU_CONFIG"


def _default_media_codecs() -> List[Dict[str, Any]]:
    return [
        {"kind": "audio", "mimeType": "audio/opus", "clockRate": 48000, "channels": 2},
        {
            "kind": "video",
            "mimeType": "video/VP8",
            "clockRate": 90000,
            "parameters": {"x-google-start-bitrate": 1000},
        },
    ]


def _known_keys(cls, payload: Dict[str, Any], section: str) -> Dict[str, Any]:
    names = {item.name for item in fields(cls)}
    unknown = sorted(set(payload) - names)
    if unknown:
        LOG.warning("Ignoring unknown %s config keys: %s", section, ", ".join(unknown))
    return {key: value for key, value in payload.items() if key in names}


@dataclass
class ListenIp:
    ip: str = "0.0.0.0"
    announced_ip: Optional[str] = None

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ListenIp":
        return cls(**_known_keys(cls, payload or {}, "listen_ips"))


@dataclass
class WorkerSettings:
    rtc_min_port: int = 10000
    rtc_max_port: int = 10100

    def __post_init__(self) -> None:
        self.rtc_min_port = int(self.rtc_min_port)
        self.rtc_max_port = int(self.rtc_max_port)
        if not 0 < self.rtc_min_port <= self.rtc_max_port < 65536:
            raise ValueError(
                f"invalid RTC port range {self.rtc_min_port}-{self.rtc_max_port}"
            )

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "WorkerSettings":
        return cls(**_known_keys(cls, payload or {}, "media.worker"))


@dataclass
class RouterSettings:
    media_codecs: List[Dict[str, Any]] = field(default_factory=_default_media_codecs)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "RouterSettings":
        return cls(**_known_keys(cls, payload or {}, "media.router"))


@dataclass
class WebRtcTransportSettings:
    listen_ips: List[ListenIp] = field(
        default_factory=lambda: [ListenIp(ip="0.0.0.0", announced_ip="127.0.0.1")]
    )
    enable_udp: bool = True
    enable_tcp: bool = True
    prefer_udp: bool = True
    max_incoming_bitrate: Optional[int] = 1_500_000
    initial_available_outgoing_bitrate: int = 1_000_000

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "WebRtcTransportSettings":
        values = _known_keys(cls, payload or {}, "media.web_rtc_transport")
        if "listen_ips" in values:
            values["listen_ips"] = [ListenIp.from_dict(item) for item in values["listen_ips"] or []]
        return cls(**values)


@dataclass
class MediaSettings:
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    router: RouterSettings = field(default_factory=RouterSettings)
    web_rtc_transport: WebRtcTransportSettings = field(default_factory=WebRtcTransportSettings)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "MediaSettings":
        payload = payload or {}
        _known_keys(cls, payload, "media")
        return cls(
            worker=WorkerSettings.from_dict(payload.get("worker") or {}),
            router=RouterSettings.from_dict(payload.get("router") or {}),
            web_rtc_transport=WebRtcTransportSettings.from_dict(payload.get("web_rtc_transport") or {}),
        )


@dataclass
class ServerConfig:
    """Top level configuration for the signaling server."""

    listen_ip: str = "0.0.0.0"
    listen_port: int = 3016
    ws_path: str = "/ws"
    log_level: str = "INFO"
    adapter_timeout: float = 10.0
    queue_size: int = 256
    media: MediaSettings = field(default_factory=MediaSettings)

    def __post_init__(self) -> None:
        self.listen_port = int(self.listen_port)
        self.adapter_timeout = max(0.001, float(self.adapter_timeout))
        self.queue_size = max(1, int(self.queue_size))
        if not self.ws_path.startswith("/"):
            self.ws_path = "/" + self.ws_path

    @classmethod
    def from_dict(cls, payload: Optional[Dict[str, Any]]) -> "ServerConfig":
        values = _known_keys(cls, dict(payload or {}), "server")
        if "media" in values:
            values["media"] = MediaSettings.from_dict(values["media"])
        return cls(**values)


def load_config(path: Union[str, Path, None] = None) -> ServerConfig:
    """
    Load a :class:`ServerConfig` from YAML.

    Resolution order: explicit ``path``, then ``$SFU_CONFIG``, then the
    packaged defaults.
    """

    if path is None:
        env_path = os.environ.get(ENV_CONFIG_VAR)
        path = Path(env_path).expanduser() if env_path else DEFAULT_CONFIG_PATH
    config_path = Path(path)

    with config_path.open("r", encoding="utf-8") as handle:
        payload = yaml.safe_load(handle) or {}
    if not isinstance(payload, dict):
        raise ValueError(f"{config_path}: expected a mapping at the top level")

    LOG.debug("Loaded configuration from %s", config_path)
    return ServerConfig.from_dict(payload)


__all__ = [
    "DEFAULT_CONFIG_PATH",
    "ListenIp",
    "MediaSettings",
    "RouterSettings",
    "ServerConfig",
    "WebRtcTransportSettings",
    "WorkerSettings",
    "load_config",
]
