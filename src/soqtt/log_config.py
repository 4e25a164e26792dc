"""
Resolve and apply the process log level.

-v wins; otherwise SOQTT_LOG_LEVEL env (name or number); otherwise INFO.
"""

from __future__ import annotations

import logging
import os

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _parse_level(raw: str) -> int:
    if not raw or not str(raw).strip():
        return logging.INFO
    raw = str(raw).strip().upper()
    if raw.isdigit():
        return int(raw)
    return int(getattr(logging, raw, logging.INFO))


def level_from_flag_or_env(verbose: bool) -> int:
    if verbose:
        return logging.DEBUG
    raw = os.environ.get("SOQTT_LOG_LEVEL", "").strip()
    return _parse_level(raw) if raw else logging.INFO


def configure_logging(verbose: bool = False) -> None:
    """Install the root handler once and set the root level."""
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    logging.getLogger().setLevel(level_from_flag_or_env(verbose))
