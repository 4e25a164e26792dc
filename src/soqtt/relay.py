"""
Relays between the stream socket and the broker.

OutboundRelay: socket -> <prefix>/out. Reassembles newline-delimited
messages from buffered line fragments and publishes each one.

InboundRelay: <prefix>/in -> socket. Writes every received payload back to
the socket, appending a newline when the payload does not end in one.

The two relays share the socket (one reads, one writes) and the broker
client; failures in one never reach the other.
"""

from __future__ import annotations

import logging
import socket
import threading
from typing import BinaryIO, Optional

from soqtt.broker import BrokerClient, BrokerError

logger = logging.getLogger(__name__)

NEWLINE = b"\n"
DEFAULT_CHUNK_SIZE = 4096


class OutboundRelay:
    """
    Read the socket, publish each complete line (without its newline).

    A line longer than chunk_size arrives as several fragments and is
    accumulated until its newline shows up. A non-EOF read error stops the
    relay. Unterminated trailing bytes at EOF are dropped unless
    flush_trailing is set.
    """

    def __init__(
        self,
        reader: BinaryIO,
        broker: BrokerClient,
        topic: str,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_message_size: int = 0,
        flush_trailing: bool = False,
        log: Optional[logging.Logger] = None,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be > 0")
        self._reader = reader
        self._broker = broker
        self.topic = topic
        self.chunk_size = chunk_size
        self.max_message_size = max_message_size
        self.flush_trailing = flush_trailing
        self._log = log or logger
        self._thread: Optional[threading.Thread] = None

    @classmethod
    def from_socket(cls, sock: socket.socket, broker: BrokerClient, topic: str, **kwargs) -> "OutboundRelay":
        return cls(sock.makefile("rb"), broker, topic, **kwargs)

    def start(self) -> threading.Thread:
        self._thread = threading.Thread(target=self.run, daemon=True, name="socket-reader")
        self._thread.start()
        return self._thread

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread:
            self._thread.join(timeout=timeout)

    def is_alive(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def _publish(self, message: bytes) -> bool:
        self._log.debug("MQTT <- Socket: %r", message)
        try:
            self._broker.publish(self.topic, message)
            return True
        except BrokerError as exc:
            self._log.error("Failure while publishing to MQTT: %s", exc)
            return False

    def run(self) -> int:
        """Relay until end-of-stream or a read error. Returns messages published."""
        buf = bytearray()
        skipping = False
        published = 0

        while True:
            try:
                chunk = self._reader.readline(self.chunk_size)
            except (OSError, ValueError) as exc:
                self._log.error("Failure while reading from socket: %s", exc)
                break

            if not chunk:
                if buf and not skipping:
                    if self.flush_trailing:
                        if self._publish(bytes(buf)):
                            published += 1
                    else:
                        self._log.debug("Dropping %d unterminated bytes at end of stream", len(buf))
                self._log.info("Socket closed")
                break

            complete = chunk.endswith(NEWLINE)
            if complete:
                chunk = chunk[:-1]

            if not skipping:
                buf += chunk
                if self.max_message_size and len(buf) > self.max_message_size:
                    self._log.warning(
                        "Dropping message longer than %d bytes", self.max_message_size
                    )
                    buf.clear()
                    skipping = True

            if complete:
                if skipping:
                    skipping = False
                elif self._publish(bytes(buf)):
                    published += 1
                buf.clear()

        self._log.info("Outbound relay stopped after %d messages", published)
        return published


class InboundRelay:
    """Subscribe to the inbound topic and write each payload to the socket."""

    def __init__(
        self,
        sock: socket.socket,
        broker: BrokerClient,
        topic: str,
        *,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self._sock = sock
        self._broker = broker
        self.topic = topic
        self._log = log or logger

    def start(self) -> None:
        """Subscribe once. BrokerError propagates: without it nothing reaches the socket."""
        self._broker.subscribe(self.topic, self.handle)

    def handle(self, payload: bytes) -> None:
        self._log.debug("MQTT -> Socket: %r", payload)
        data = payload if payload.endswith(NEWLINE) else payload + NEWLINE
        try:
            self._sock.sendall(data)
        except OSError as exc:
            self._log.error("Failed to write MQTT message to socket: %s", exc)
