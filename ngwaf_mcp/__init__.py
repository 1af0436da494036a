"""ngwaf_mcp: MCP server for the Fastly Next-Gen WAF (Signal Sciences) management API.

Provides:
    - Session-scoped credentials and default corp/site context
    - A thin gateway client, one method per remote API operation
    - A static tool registry with argument validation
    - A dispatcher that turns every invocation into an ok/error envelope
"""

__version__ = "0.1.0"
