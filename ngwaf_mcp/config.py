"""config.py: Central configuration, environment variables, constants, logging.

Everything is read once at import time. Tests that need different values
patch the module attributes directly.
"""
from __future__ import annotations

import logging
import os
import sys

from . import __version__

__all__ = [
    "API_BASE",
    "DEFAULT_CORP",
    "DEFAULT_SITE",
    "HTTP_TIMEOUT_SECONDS",
    "HTTP_USER_AGENT",
    "LOG_LEVEL",
    "NGWAF_EMAIL",
    "NGWAF_TOKEN",
    "SERVER_NAME",
    "SERVER_VERSION",
    "configure_logging",
]

# ---------------------------------------------------------------------------
# Server identity
# ---------------------------------------------------------------------------

SERVER_NAME = "fastly-ngwaf-server"
SERVER_VERSION = __version__

# ---------------------------------------------------------------------------
# Remote API
# ---------------------------------------------------------------------------

API_BASE = os.environ.get(
    "FASTLY_NGWAF_API_BASE",
    "https://dashboard.signalsciences.net/api/v0",
)
HTTP_TIMEOUT_SECONDS = int(os.environ.get("FASTLY_NGWAF_HTTP_TIMEOUT_SECONDS", "30"))
HTTP_USER_AGENT = os.environ.get("FASTLY_NGWAF_HTTP_USER_AGENT", f"ngwaf-mcp-server/{SERVER_VERSION}")

# ---------------------------------------------------------------------------
# Startup session state (all optional)
# ---------------------------------------------------------------------------

NGWAF_EMAIL = os.environ.get("FASTLY_NGWAF_EMAIL", "")
NGWAF_TOKEN = os.environ.get("FASTLY_NGWAF_TOKEN", "")
DEFAULT_CORP = os.environ.get("FASTLY_NGWAF_DEFAULT_CORP", "")
DEFAULT_SITE = os.environ.get("FASTLY_NGWAF_DEFAULT_SITE", "")

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

LOG_LEVEL = os.environ.get("FASTLY_NGWAF_LOG_LEVEL", "INFO").upper()


def configure_logging(level: str = LOG_LEVEL) -> None:
    """Send all log output to stderr; stdout carries the MCP stdio stream."""
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
