"""
soqtt configuration.

Values come from command-line flags, falling back to environment variables,
optionally loaded from standard env files.

Priority (lowest -> highest):
1) built-in defaults
2) ~/.config/soqtt/.env (user install)
3) ./.env (project override)
4) process environment variables
5) command-line flags (always win)
"""

from __future__ import annotations

import os
import random
import sys
from dataclasses import dataclass
from importlib.metadata import PackageNotFoundError, version as _pkg_version
from pathlib import Path
from typing import Iterable, Optional
from urllib.parse import unquote, urlsplit

from dotenv import load_dotenv

from soqtt.topics import TopicPair, TopicSchemaError

DEFAULT_BROKER = "tcp://localhost:1883"
DEFAULT_TOPIC_PREFIX = "my_topic_prefix"
DEFAULT_MAX_MESSAGE_SIZE = 16 * 1024 * 1024

_PLAIN_SCHEMES = {"tcp": 1883, "mqtt": 1883}
_TLS_SCHEMES = {"ssl": 8883, "tls": 8883, "mqtts": 8883}

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


class ConfigError(ValueError):
    """Raised when configuration is missing or invalid."""


def package_version() -> str:
    try:
        return _pkg_version("soqtt")
    except PackageNotFoundError:
        return "0.0.0+dev"


def _env_paths() -> Iterable[Path]:
    if sys.platform == "win32":
        base = Path(os.environ.get("APPDATA", str(Path.home())))
    else:
        base = Path(os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config")))
    yield base / "soqtt" / ".env"

    yield Path(".env")


def _parse_int(key: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid integer for {key}: {raw!r}") from exc


def _parse_bool(key: str, raw: str) -> bool:
    v = raw.strip().lower()
    if v in _TRUE:
        return True
    if v in _FALSE:
        return False
    raise ConfigError(f"Invalid boolean for {key}: {raw!r}")


@dataclass(frozen=True, slots=True)
class BrokerAddress:
    host: str
    port: int
    tls: bool = False
    username: Optional[str] = None
    password: Optional[str] = None

    def __str__(self) -> str:
        scheme = "ssl" if self.tls else "tcp"
        return f"{scheme}://{self.host}:{self.port}"


def parse_broker_uri(raw: str) -> BrokerAddress:
    """
    Parse scheme://[user[:password]@]host[:port].

    A bare host[:port] is treated as tcp. Raises ConfigError on anything else.
    """
    if not raw or not raw.strip():
        raise ConfigError("Broker address must not be empty")
    raw = raw.strip()
    if "://" not in raw:
        raw = f"tcp://{raw}"

    parts = urlsplit(raw)
    scheme = parts.scheme.lower()
    if scheme in _PLAIN_SCHEMES:
        tls, default_port = False, _PLAIN_SCHEMES[scheme]
    elif scheme in _TLS_SCHEMES:
        tls, default_port = True, _TLS_SCHEMES[scheme]
    else:
        raise ConfigError(f"Unsupported broker scheme: {parts.scheme!r}")

    if parts.path not in ("", "/") or parts.query or parts.fragment:
        raise ConfigError(f"Broker address must not carry a path or query: {raw!r}")

    host = parts.hostname
    if not host:
        raise ConfigError(f"Missing broker host in {raw!r}")

    try:
        port = parts.port
    except ValueError as exc:
        raise ConfigError(f"Invalid broker port in {raw!r}") from exc
    if port is None:
        port = default_port
    if not (1 <= port <= 65535):
        raise ConfigError(f"Broker port out of range: {port}")

    username = unquote(parts.username) if parts.username else None
    password = unquote(parts.password) if parts.password is not None else None

    return BrokerAddress(host=host, port=port, tls=tls, username=username, password=password)


def random_client_id() -> str:
    return f"soqtt-{random.randint(0, 2**31 - 1)}"


@dataclass(frozen=True, slots=True)
class BridgeConfig:
    socket_path: str
    broker: BrokerAddress
    topics: TopicPair
    client_id: str
    max_message_size: int  # 0 disables the cap
    flush_trailing: bool
    version: str


def load_dotenv_files() -> None:
    """Fill missing env vars from the user and project .env files."""
    for p in _env_paths():
        if p.is_file():
            # never override the process environment
            load_dotenv(p, override=False)


def load_config(
    *,
    socket_path: Optional[str] = None,
    broker: Optional[str] = None,
    topic_prefix: Optional[str] = None,
    client_id: Optional[str] = None,
    max_message_size: Optional[int] = None,
    flush_trailing: Optional[bool] = None,
    dotenv_enabled: bool = True,
) -> BridgeConfig:
    """
    Build the bridge config from explicit values (CLI), then env vars, then defaults.

    Returns an immutable BridgeConfig. Raises ConfigError on failure.
    """
    if dotenv_enabled:
        load_dotenv_files()

    socket_path = socket_path or os.getenv("SOQTT_SOCKET", "")
    if not socket_path:
        raise ConfigError("Missing socket path (-s or SOQTT_SOCKET)")

    broker_addr = parse_broker_uri(broker or os.getenv("SOQTT_BROKER") or DEFAULT_BROKER)

    try:
        topics = TopicPair(topic_prefix or os.getenv("SOQTT_TOPIC") or DEFAULT_TOPIC_PREFIX)
    except TopicSchemaError as exc:
        raise ConfigError(str(exc)) from exc

    if max_message_size is None:
        raw = os.getenv("SOQTT_MAX_MESSAGE_SIZE")
        max_message_size = (
            _parse_int("SOQTT_MAX_MESSAGE_SIZE", raw) if raw else DEFAULT_MAX_MESSAGE_SIZE
        )
    if max_message_size < 0:
        raise ConfigError("max message size must be >= 0 (0 disables)")

    if flush_trailing is None:
        flush_trailing = _parse_bool("SOQTT_FLUSH_TRAILING", os.getenv("SOQTT_FLUSH_TRAILING", ""))

    return BridgeConfig(
        socket_path=socket_path,
        broker=broker_addr,
        topics=topics,
        client_id=client_id or os.getenv("SOQTT_CLIENT_ID") or random_client_id(),
        max_message_size=max_message_size,
        flush_trailing=flush_trailing,
        version=package_version(),
    )
