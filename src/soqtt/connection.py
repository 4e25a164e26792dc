from __future__ import annotations

import logging
import socket
from typing import Optional

logger = logging.getLogger(__name__)


def open_unix_socket(path: str, *, log: Optional[logging.Logger] = None) -> socket.socket:
    """Connect to a UNIX stream socket as a client. OSError propagates."""
    log = log or logger
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        sock.connect(path)
    except OSError:
        sock.close()
        raise
    log.info("Connected to socket %s", path)
    return sock
