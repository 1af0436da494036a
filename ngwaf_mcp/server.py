#!/usr/bin/env python3
"""Fastly NGWAF MCP Server: WAF management API exposed as MCP tools.

Architecture:
  Agent Session -> MCP client -> THIS SERVER -> Dispatcher -> NGWAFClient -> NGWAF API

Transport: stdio. Credentials and default corp/site may be supplied through
the environment (see ``config``); otherwise the first call must be
``set_credentials``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from . import config
from .client import NGWAFClient
from .dispatcher import Dispatcher, ToolResult
from .errors import NGWAFError
from .session import ContextStore, Session
from .tools import list_tools as registry_tools

logger = logging.getLogger("ngwaf.server")


class ToolCallError(Exception):
    """Raised out of ``call_tool`` so the MCP SDK reports ``isError: true``."""


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def initialize_from_env(
    session: Session,
    email: Optional[str] = None,
    token: Optional[str] = None,
    corp_name: Optional[str] = None,
    site_name: Optional[str] = None,
) -> Optional[dict]:
    """Pre-populate credentials and context. Never fatal.

    Returns the connection test result when credentials were installed and
    validated, else None.
    """
    email = config.NGWAF_EMAIL if email is None else email
    token = config.NGWAF_TOKEN if token is None else token
    corp_name = config.DEFAULT_CORP if corp_name is None else corp_name
    site_name = config.DEFAULT_SITE if site_name is None else site_name

    if corp_name:
        context = session.context.set_defaults(corp_name, site_name)
        logger.info(
            "Default context: Corp=%s, Site=%s",
            context.corp_name,
            context.site_name or "not set",
        )

    if not (email and token):
        return None

    session.set_credentials(email, token)
    try:
        connection = session.client.test_connection()
    except NGWAFError as exc:
        logger.error("[AUTH] Auto-authentication failed: %s", exc.message)
        return None
    logger.info(
        "[AUTH] Auto-authenticated as %s (%d corps available)",
        email,
        connection["corporationsCount"],
    )
    return connection


# ---------------------------------------------------------------------------
# MCP wiring
# ---------------------------------------------------------------------------

session = Session(NGWAFClient(), ContextStore())
dispatcher = Dispatcher(session)

app = Server(config.SERVER_NAME)


def _result_text(result: ToolResult) -> list[TextContent]:
    """Format a successful result as TextContent for the MCP tool response."""
    return [TextContent(type="text", text=json.dumps(result.ok, indent=2, default=str))]


@app.list_tools()
async def list_tools() -> list[Tool]:
    return registry_tools()


@app.call_tool(validate_input=False)
async def call_tool(name: str, arguments: Any) -> list[TextContent]:
    result = await dispatcher.dispatch(name, arguments)
    if result.is_error:
        raise ToolCallError(f"Error: {result.error}")
    return _result_text(result)


# ===================================================================
# ENTRY POINT
# ===================================================================


async def main():
    config.configure_logging()
    logger.info("[START] %s v%s", config.SERVER_NAME, config.SERVER_VERSION)
    await asyncio.to_thread(initialize_from_env, session)

    async with stdio_server() as (read_stream, write_stream):
        logger.info("Fastly NGWAF MCP Server running on stdio")
        await app.run(read_stream, write_stream, app.create_initialization_options())


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
