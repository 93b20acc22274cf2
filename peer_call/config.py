from __future__ import annotations

import argparse
import os
from dataclasses import dataclass
from typing import Sequence

from .models import derive_room_key

_ENV_PREFIX = "PEERCALL_"


@dataclass(frozen=True)
class CallConfig:
    # Room: either an explicit key, or the two shared phrases.
    room_key: str | None = None
    secret: str | None = None
    memory: str | None = None

    # Rendezvous store (MQTT broker).
    mqtt_host: str = "localhost"
    mqtt_port: int = 1883
    mqtt_username: str | None = None
    mqtt_password: str | None = None
    mqtt_keepalive: int = 15
    topic_prefix: str = "peercall"

    # ICE servers.
    stun_urls: tuple[str, ...] = ("stun:stun.l.google.com:19302",)
    turn_url: str | None = None
    turn_username: str | None = None
    turn_credential: str | None = None

    # Negotiation bounds (seconds).
    gathering_timeout: float = 10.0
    connect_timeout: float = 15.0
    read_timeout: float = 1.0

    # Local media.
    video_device_user: str = "/dev/video0"
    video_device_environment: str | None = None
    video_format: str | None = "v4l2"
    audio_device: str | None = "default"
    audio_format: str | None = "pulse"
    video_width: int = 1280
    video_height: int = 720

    # Remote media sink; None discards.
    record_path: str | None = None

    # Re-join backoff.
    reconnect_delay: float = 3.0
    max_reconnect_delay: float = 30.0

    health_port: int = 8081
    log_level: str = "INFO"
    json_logs: bool = False

    @property
    def has_turn_server(self) -> bool:
        return all([self.turn_url, self.turn_username, self.turn_credential])

    @property
    def video_devices(self) -> dict[str, str]:
        devices = {"user": self.video_device_user}
        if self.video_device_environment:
            devices["environment"] = self.video_device_environment
        return devices

    def resolve_room_key(self) -> str:
        if self.room_key:
            return self.room_key
        if self.secret and self.memory:
            return derive_room_key(self.secret, self.memory)
        raise ValueError("a room key, or both secret and memory, is required")

    @classmethod
    def from_env_and_args(cls, argv: Sequence[str] | None = None) -> CallConfig:
        parser = argparse.ArgumentParser(description="Two-party video call over a rendezvous store")
        parser.add_argument("--room", dest="room_key", default=None)
        parser.add_argument("--secret", default=None)
        parser.add_argument("--memory", default=None)
        parser.add_argument("--mqtt-host", default=None)
        parser.add_argument("--mqtt-port", type=int, default=None)
        parser.add_argument("--mqtt-username", default=None)
        parser.add_argument("--mqtt-password", default=None)
        parser.add_argument("--mqtt-keepalive", type=int, default=None)
        parser.add_argument("--topic-prefix", default=None)
        parser.add_argument("--stun-urls", default=None, help="comma-separated STUN URLs")
        parser.add_argument("--turn-url", default=None)
        parser.add_argument("--turn-username", default=None)
        parser.add_argument("--turn-credential", default=None)
        parser.add_argument("--gathering-timeout", type=float, default=None)
        parser.add_argument("--connect-timeout", type=float, default=None)
        parser.add_argument("--read-timeout", type=float, default=None)
        parser.add_argument("--video-device", dest="video_device_user", default=None)
        parser.add_argument("--video-device-environment", default=None)
        parser.add_argument("--video-format", default=None)
        parser.add_argument("--audio-device", default=None)
        parser.add_argument("--audio-format", default=None)
        parser.add_argument("--video-width", type=int, default=None)
        parser.add_argument("--video-height", type=int, default=None)
        parser.add_argument("--record", dest="record_path", default=None)
        parser.add_argument("--reconnect-delay", type=float, default=None)
        parser.add_argument("--max-reconnect-delay", type=float, default=None)
        parser.add_argument("--health-port", type=int, default=None)
        parser.add_argument("--log-level", default=None)
        parser.add_argument("--json-logs", action="store_true", default=None)
        args = parser.parse_args(argv)

        def _resolve(name: str, default, coerce: type = str):
            arg_val = getattr(args, name)
            if arg_val is not None:
                return arg_val
            env_key = _ENV_PREFIX + name.upper()
            env = os.environ.get(env_key)
            if env is not None:
                try:
                    return coerce(env)
                except (ValueError, TypeError) as exc:
                    raise ValueError(f"invalid value for {env_key}: {env!r}") from exc
            return default

        def _bool(value: str) -> bool:
            lowered = value.strip().lower()
            if lowered in ("1", "true", "yes", "on"):
                return True
            if lowered in ("0", "false", "no", "off", ""):
                return False
            raise ValueError(value)

        def _urls(value) -> tuple[str, ...]:
            if isinstance(value, tuple):
                return value
            return tuple(url.strip() for url in value.split(",") if url.strip())

        return cls(
            room_key=_resolve("room_key", cls.room_key),
            secret=_resolve("secret", cls.secret),
            memory=_resolve("memory", cls.memory),
            mqtt_host=_resolve("mqtt_host", cls.mqtt_host),
            mqtt_port=_resolve("mqtt_port", cls.mqtt_port, int),
            mqtt_username=_resolve("mqtt_username", cls.mqtt_username),
            mqtt_password=_resolve("mqtt_password", cls.mqtt_password),
            mqtt_keepalive=_resolve("mqtt_keepalive", cls.mqtt_keepalive, int),
            topic_prefix=_resolve("topic_prefix", cls.topic_prefix),
            stun_urls=_urls(_resolve("stun_urls", cls.stun_urls)),
            turn_url=_resolve("turn_url", cls.turn_url),
            turn_username=_resolve("turn_username", cls.turn_username),
            turn_credential=_resolve("turn_credential", cls.turn_credential),
            gathering_timeout=_resolve("gathering_timeout", cls.gathering_timeout, float),
            connect_timeout=_resolve("connect_timeout", cls.connect_timeout, float),
            read_timeout=_resolve("read_timeout", cls.read_timeout, float),
            video_device_user=_resolve("video_device_user", cls.video_device_user),
            video_device_environment=_resolve("video_device_environment", cls.video_device_environment),
            video_format=_resolve("video_format", cls.video_format) or None,
            audio_device=_resolve("audio_device", cls.audio_device) or None,
            audio_format=_resolve("audio_format", cls.audio_format) or None,
            video_width=_resolve("video_width", cls.video_width, int),
            video_height=_resolve("video_height", cls.video_height, int),
            record_path=_resolve("record_path", cls.record_path),
            reconnect_delay=_resolve("reconnect_delay", cls.reconnect_delay, float),
            max_reconnect_delay=_resolve("max_reconnect_delay", cls.max_reconnect_delay, float),
            health_port=_resolve("health_port", cls.health_port, int),
            log_level=_resolve("log_level", cls.log_level),
            json_logs=_resolve("json_logs", cls.json_logs, _bool),
        )
