"""
soqtt entrypoint.

CLI:
  soqtt -s /path/to.sock [-b tcp://localhost:1883] [-t my_topic_prefix] [-v]
  soqtt -V   -> print version and exit
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import socket
import sys
import threading
from dataclasses import dataclass
from typing import Optional

from soqtt.broker import BrokerClient, BrokerError
from soqtt.config import (
    DEFAULT_BROKER,
    DEFAULT_MAX_MESSAGE_SIZE,
    DEFAULT_TOPIC_PREFIX,
    BridgeConfig,
    ConfigError,
    load_config,
    load_dotenv_files,
    package_version,
)
from soqtt.connection import open_unix_socket
from soqtt.log_config import configure_logging
from soqtt.relay import InboundRelay, OutboundRelay

logger = logging.getLogger(__name__)

DESCRIPTION = """\
soqtt links a unix socket to a MQTT topic.

The socket must send and receive text messages. Each message must be
ended by a newline ('\\n').
Write messages to my_topic_prefix/in to send them to the socket,
subscribe to messages at my_topic_prefix/out to receive messages
from the socket.
"""


def get_version_string() -> str:
    return package_version()


@dataclass
class Runtime:
    shutdown: threading.Event
    broker: Optional[BrokerClient] = None
    sock: Optional[socket.socket] = None
    outbound: Optional[OutboundRelay] = None


def _install_signal_handlers(rt: Runtime) -> None:
    def _handler(signum: int, frame) -> None:  # frame is unused, keep signature
        logger.info("Received signal %s; shutting down", signum)
        rt.shutdown.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def run_bridge(cfg: BridgeConfig, shutdown: Optional[threading.Event] = None) -> int:
    """
    Connect broker, open socket, start both relays, block until shutdown.
    Returns process exit code.
    """
    rt = Runtime(shutdown=shutdown or threading.Event())
    _install_signal_handlers(rt)

    logger.info("============================================================")
    logger.info("soqtt %s", cfg.version)
    logger.info("Socket: %s", cfg.socket_path)
    logger.info("Broker: %s (client id %s)", cfg.broker, cfg.client_id)
    logger.info("Inbound topic: %s", cfg.topics.inbound)
    logger.info("Outbound topic: %s", cfg.topics.outbound)
    logger.info("============================================================")

    # 1. Broker
    broker = BrokerClient(cfg.broker, cfg.client_id)
    try:
        broker.connect()
    except BrokerError as exc:
        logger.error("Failed to connect to broker: %s", exc)
        return 1
    rt.broker = broker

    # 2. Socket
    try:
        rt.sock = open_unix_socket(cfg.socket_path)
    except OSError as exc:
        logger.error("Failed to open socket %s: %s", cfg.socket_path, exc)
        _shutdown(rt)
        return 1

    # 3. Relays
    inbound = InboundRelay(rt.sock, broker, cfg.topics.inbound)
    try:
        inbound.start()
    except BrokerError as exc:
        logger.error("Failed to subscribe to MQTT topic: %s", exc)
        _shutdown(rt)
        return 1

    rt.outbound = OutboundRelay.from_socket(
        rt.sock,
        broker,
        cfg.topics.outbound,
        max_message_size=cfg.max_message_size,
        flush_trailing=cfg.flush_trailing,
    )
    rt.outbound.start()

    logger.info("Bridge running (shutdown via SIGINT/SIGTERM)")

    try:
        while not rt.shutdown.is_set():
            rt.shutdown.wait(0.5)
    finally:
        _shutdown(rt)

    return 0


def _shutdown(rt: Runtime) -> None:
    # no drain: relays are daemon threads and die with the process
    if rt.sock:
        try:
            rt.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        rt.sock.close()

    if rt.broker:
        try:
            rt.broker.disconnect()
        except Exception:
            logger.exception("Error disconnecting MQTT")
        logger.info("MQTT disconnected")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="soqtt",
        description=DESCRIPTION,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    p.add_argument("-s", dest="socket", metavar="PATH", help="Path to UNIX socket")
    p.add_argument(
        "-b",
        dest="broker",
        metavar="URI",
        help=f"MQTT broker to use (default {DEFAULT_BROKER})",
    )
    p.add_argument(
        "-t",
        dest="topic",
        metavar="PREFIX",
        help=f"MQTT topic prefix (default {DEFAULT_TOPIC_PREFIX})",
    )
    p.add_argument("-v", dest="verbose", action="store_true", help="Print more verbose messages")
    p.add_argument("-V", dest="version", action="store_true", help="Print version and exit")
    p.add_argument("--client-id", dest="client_id", help="MQTT client id (default soqtt-<random>)")
    p.add_argument(
        "--max-message-size",
        dest="max_message_size",
        type=int,
        metavar="BYTES",
        help=f"Drop socket lines longer than this; 0 disables (default {DEFAULT_MAX_MESSAGE_SIZE})",
    )
    p.add_argument(
        "--flush-trailing",
        dest="flush_trailing",
        action="store_true",
        default=None,
        help="Publish an unterminated last line when the socket closes",
    )
    return p


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(f"soqtt - version {get_version_string()}")
        raise SystemExit(0)

    load_dotenv_files()
    configure_logging(args.verbose)

    if not (args.socket or os.getenv("SOQTT_SOCKET")):
        parser.print_help(sys.stderr)
        raise SystemExit(1)

    try:
        cfg = load_config(
            socket_path=args.socket,
            broker=args.broker,
            topic_prefix=args.topic,
            client_id=args.client_id,
            max_message_size=args.max_message_size,
            flush_trailing=args.flush_trailing,
            dotenv_enabled=False,
        )
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        raise SystemExit(1)

    raise SystemExit(run_bridge(cfg))


if __name__ == "__main__":
    main()
