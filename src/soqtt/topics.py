"""
MQTT topic pair for the socket bridge.

Given a prefix P:
  P/in   broker -> socket
  P/out  socket -> broker

The suffixes are fixed; clients of the bridge depend on them.
"""

from __future__ import annotations

from dataclasses import dataclass

INBOUND_SUFFIX = "in"
OUTBOUND_SUFFIX = "out"

_FORBIDDEN_CHARS = ("+", "#", "\x00")


class TopicSchemaError(ValueError):
    """Raised when an invalid prefix is used to construct topics."""


def _validate_prefix(prefix: str) -> str:
    if not isinstance(prefix, str) or not prefix:
        raise TopicSchemaError("topic prefix must be a non-empty string")
    for ch in _FORBIDDEN_CHARS:
        if ch in prefix:
            raise TopicSchemaError(
                f"topic prefix {prefix!r} is invalid; wildcards and NUL are not allowed"
            )
    if prefix.endswith("/"):
        raise TopicSchemaError(f"topic prefix {prefix!r} must not end with '/'")
    return prefix


@dataclass(frozen=True, slots=True)
class TopicPair:
    """Inbound and outbound topics derived from one prefix."""

    prefix: str

    def __post_init__(self) -> None:
        _validate_prefix(self.prefix)

    @property
    def inbound(self) -> str:
        return f"{self.prefix}/{INBOUND_SUFFIX}"

    @property
    def outbound(self) -> str:
        return f"{self.prefix}/{OUTBOUND_SUFFIX}"
