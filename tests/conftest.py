"""
Pytest configuration and shared fixtures
"""
import os
import socket
import sys
from unittest.mock import MagicMock

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))


SOQTT_ENV = [
    'SOQTT_SOCKET',
    'SOQTT_BROKER',
    'SOQTT_TOPIC',
    'SOQTT_CLIENT_ID',
    'SOQTT_MAX_MESSAGE_SIZE',
    'SOQTT_FLUSH_TRAILING',
    'SOQTT_LOG_LEVEL',
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the developer's environment out of config resolution"""
    for key in SOQTT_ENV:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def socket_pair():
    """Connected (bridge side, peer side) stream sockets"""
    bridge, peer = socket.socketpair()
    yield bridge, peer
    bridge.close()
    peer.close()


@pytest.fixture
def fake_broker():
    """Broker client double recording publishes"""
    broker = MagicMock()
    broker.published = []
    broker.publish.side_effect = lambda topic, payload: broker.published.append((topic, payload))
    return broker
