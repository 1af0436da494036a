"""Operation registry: tool names, input schemas, and argument validation.

The table below is static configuration. ``list_tools`` advertises it over
MCP; ``parse_arguments`` is the boundary check every invocation goes through
before a handler sees its arguments.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from mcp.types import Tool

from .errors import InvalidArgumentsError, UnknownOperationError


@dataclass(frozen=True)
class OperationSpec:
    name: str
    description: str
    properties: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    required: Tuple[str, ...] = ()

    @property
    def input_schema(self) -> Dict[str, Any]:
        schema: Dict[str, Any] = {"type": "object", "properties": dict(self.properties)}
        if self.required:
            schema["required"] = list(self.required)
        return schema

    def to_tool(self) -> Tool:
        return Tool(name=self.name, description=self.description, inputSchema=self.input_schema)


# ---------------------------------------------------------------------------
# Shared property definitions
# ---------------------------------------------------------------------------

_CORP = {"type": "string", "description": "Corporation name (uses context default if not provided)"}
_SITE = {"type": "string", "description": "Site name (uses context default if not provided)"}
_PAGE = {"type": "number", "description": "Page number"}
_LIMIT = {"type": "number", "description": "Results per page"}
_STRING_LIST = {"type": "array", "items": {"type": "string"}}


def _prop(type_: str, description: str, **extra: Any) -> Dict[str, Any]:
    return {"type": type_, "description": description, **extra}


def _enum(description: str, values: List[Any], type_: str = "string") -> Dict[str, Any]:
    return {"type": type_, "enum": values, "description": description}


def _action(*values: str) -> Dict[str, Any]:
    return _enum("Action to perform", list(values))


_SITE_SETTINGS = {
    "displayName": _prop("string", "Display name"),
    "agentLevel": _enum("Agent action level", ["block", "log", "off"]),
    "blockDurationSeconds": _prop("number", "Block duration in seconds"),
    "blockHTTPCode": _prop("number", "HTTP response code for blocked requests"),
    "blockRedirectURL": _prop("string", "Redirect URL for blocked requests"),
}

_RULE_BODY = {
    "enabled": _prop("boolean", "Whether rule is enabled"),
    "groupOperator": _enum("Condition group operator", ["all", "any"]),
    "conditions": _prop("array", "Rule conditions"),
    "actions": _prop("array", "Rule actions"),
    "reason": _prop("string", "Description of the rule"),
}

_CORP_RULE_BODY = {
    "type": _enum("Rule type", ["request", "signal"]),
    **_RULE_BODY,
    "signal": _prop("string", "Signal ID for exclusion rules"),
    "corpScope": _enum("Rule scope", ["global", "specificSites"]),
    "siteNames": {**_STRING_LIST, "description": "Site names for specific scope"},
}

_SITE_RULE_BODY = {
    "type": _enum("Rule type", ["request", "signal", "rateLimit"]),
    **_RULE_BODY,
    "signal": _prop("string", "Signal ID for exclusion/rate limit rules"),
    "thresholdCount": _prop("number", "Threshold count for rate limit rules"),
    "thresholdInterval": _prop("number", "Threshold interval for rate limit rules"),
    "blockDurationSeconds": _prop("number", "Block duration for rate limit rules"),
}

_RULE_REQUIRED = ("type", "groupOperator", "conditions", "actions")

_IP_LIST = {
    "corpName": _CORP,
    "siteName": _SITE,
    "action": _action("list", "add", "remove"),
    "ip": _prop("string", "IP address (for add action)"),
    "note": _prop("string", "Note for IP (for add action)"),
    "expires": _prop("string", "Expiration date (RFC3339 format)"),
    "entryId": _prop("string", "Entry ID (for remove action)"),
}


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

OPERATIONS: Tuple[OperationSpec, ...] = (
    # --- Session ---
    OperationSpec(
        "set_credentials",
        "Set Fastly NGWAF API credentials (email and access token)",
        {
            "email": _prop("string", "Your Fastly NGWAF email address"),
            "token": _prop("string", "Your Fastly NGWAF API access token"),
        },
        ("email", "token"),
    ),
    OperationSpec("test_connection", "Test the API connection and validate credentials"),
    OperationSpec(
        "set_context",
        "Set the default corporation and site context for subsequent operations",
        {
            "corpName": _prop("string", "Default corporation name"),
            "siteName": _prop("string", "Default site name"),
        },
        ("corpName",),
    ),
    OperationSpec("get_context", "Get the current context (corp and site names)"),
    OperationSpec(
        "discover_environment",
        "Discover available corporations and sites for the authenticated user",
        {"corpName": _prop("string", "Specific corporation to explore (optional)")},
    ),
    # --- Corps ---
    OperationSpec("list_corps", "List all corporations accessible to the authenticated user"),
    OperationSpec("get_corp", "Get details of a corporation", {"corpName": _CORP}),
    OperationSpec(
        "get_corp_overview",
        "Get attack overview for a corporation",
        {
            "corpName": _CORP,
            "from": _prop("string", 'Start date (e.g., "-7d")'),
            "until": _prop("string", 'End date (e.g., "-1d")'),
        },
    ),
    # --- Sites ---
    OperationSpec(
        "list_sites",
        "List sites in a corporation",
        {
            "corpName": _CORP,
            "query": _prop("string", "Search query to filter sites"),
            "page": _PAGE,
            "limit": _LIMIT,
        },
    ),
    OperationSpec("get_site", "Get details of a specific site", {"corpName": _CORP, "siteName": _SITE}),
    OperationSpec(
        "create_site",
        "Create a new site in a corporation",
        {"corpName": _CORP, "siteName": _prop("string", "Site name"), **_SITE_SETTINGS},
        ("siteName",),
    ),
    OperationSpec(
        "update_site",
        "Update site configuration",
        {"corpName": _CORP, "siteName": _SITE, **_SITE_SETTINGS},
    ),
    OperationSpec("delete_site", "Delete a site", {"corpName": _CORP, "siteName": _SITE}),
    # --- Rules ---
    OperationSpec(
        "list_corp_rules",
        "List rules at corporation level",
        {
            "corpName": _CORP,
            "type": _enum("Rule type", ["request", "signal"]),
            "page": _PAGE,
            "limit": _LIMIT,
        },
    ),
    OperationSpec(
        "list_site_rules",
        "List rules for a specific site",
        {
            "corpName": _CORP,
            "siteName": _SITE,
            "type": _enum("Rule type", ["request", "signal", "rateLimit"]),
            "page": _PAGE,
            "limit": _LIMIT,
        },
    ),
    OperationSpec(
        "create_corp_rule",
        "Create a corporation-level rule",
        {"corpName": _CORP, **_CORP_RULE_BODY},
        _RULE_REQUIRED,
    ),
    OperationSpec(
        "create_site_rule",
        "Create a site-level rule",
        {"corpName": _CORP, "siteName": _SITE, **_SITE_RULE_BODY},
        _RULE_REQUIRED,
    ),
    OperationSpec(
        "update_corp_rule",
        "Replace a corporation-level rule",
        {"corpName": _CORP, "ruleId": _prop("string", "Rule ID to update"), **_CORP_RULE_BODY},
        ("ruleId",) + _RULE_REQUIRED,
    ),
    OperationSpec(
        "update_site_rule",
        "Replace a site-level rule",
        {"corpName": _CORP, "siteName": _SITE, "ruleId": _prop("string", "Rule ID to update"), **_SITE_RULE_BODY},
        ("ruleId",) + _RULE_REQUIRED,
    ),
    OperationSpec(
        "delete_corp_rule",
        "Delete a corporation-level rule",
        {"corpName": _CORP, "ruleId": _prop("string", "Rule ID to delete")},
        ("ruleId",),
    ),
    OperationSpec(
        "delete_site_rule",
        "Delete a site-level rule",
        {"corpName": _CORP, "siteName": _SITE, "ruleId": _prop("string", "Rule ID to delete")},
        ("ruleId",),
    ),
    # --- Requests and events ---
    OperationSpec(
        "search_requests",
        "Search requests with advanced filtering",
        {
            "corpName": _CORP,
            "siteName": _SITE,
            "query": _prop("string", 'Search query (e.g., "tag:SQLI")'),
            "page": _PAGE,
            "limit": _LIMIT,
        },
    ),
    OperationSpec(
        "get_request",
        "Get a single request by ID",
        {"corpName": _CORP, "siteName": _SITE, "requestId": _prop("string", "Request ID")},
        ("requestId",),
    ),
    OperationSpec(
        "list_events",
        "List security events (attacks, blocks, etc.)",
        {
            "corpName": _CORP,
            "siteName": _SITE,
            "from": _prop("number", "Unix timestamp start"),
            "until": _prop("number", "Unix timestamp end"),
            "action": _enum("Filter by action", ["flagged", "info"]),
            "tag": _prop("string", "Filter by tag"),
            "ip": _prop("string", "Filter by IP address"),
        },
    ),
    OperationSpec(
        "get_event",
        "Get a single security event by ID",
        {"corpName": _CORP, "siteName": _SITE, "eventId": _prop("string", "Event ID")},
        ("eventId",),
    ),
    OperationSpec(
        "expire_event",
        "Manually expire an event (unblock IP)",
        {"corpName": _CORP, "siteName": _SITE, "eventId": _prop("string", "Event ID")},
        ("eventId",),
    ),
    # --- IP management ---
    OperationSpec(
        "get_suspicious_ips",
        "Get list of suspicious IP addresses",
        {
            "corpName": _CORP,
            "siteName": _SITE,
            "limit": _prop("number", "Maximum number of IPs to return"),
        },
    ),
    OperationSpec("manage_whitelist", "Manage IP whitelist (allowlist)", _IP_LIST, ("action",)),
    OperationSpec("manage_blacklist", "Manage IP blacklist (blocklist)", _IP_LIST, ("action",)),
    # --- Lists ---
    OperationSpec(
        "manage_lists",
        "Manage custom lists (IP, country, string, etc.)",
        {
            "corpName": _CORP,
            "siteName": _prop(
                "string",
                "Site name (optional for corp-level lists, uses context default if not provided)",
            ),
            "action": _action("list", "create", "update", "delete"),
            "listId": _prop("string", "List ID (for update/delete actions)"),
            "name": _prop("string", "List name (for create action)"),
            "type": _enum("List type", ["ip", "country", "string", "wildcard", "signal"]),
            "description": _prop("string", "List description"),
            "entries": {**_STRING_LIST, "description": "List entries"},
            "additions": {**_STRING_LIST, "description": "Entries to add (for update)"},
            "deletions": {**_STRING_LIST, "description": "Entries to remove (for update)"},
        },
        ("action",),
    ),
    # --- Alerts ---
    OperationSpec(
        "manage_alerts",
        "Manage alerts for monitoring attack patterns",
        {
            "corpName": _CORP,
            "siteName": _SITE,
            "action": _action("list", "create", "update", "delete"),
            "alertId": _prop("string", "Alert ID (for update/delete actions)"),
            "tagName": _prop("string", "Tag name to monitor"),
            "longName": _prop("string", "Alert description"),
            "interval": _enum("Time interval in minutes", [1, 10, 60], type_="number"),
            "threshold": _prop("number", "Threshold count"),
            "enabled": _prop("boolean", "Whether alert is enabled"),
            "action_type": _enum("Action when triggered", ["info", "flagged"]),
        },
        ("action",),
    ),
    # --- Integrations ---
    OperationSpec(
        "manage_integrations",
        "Manage notification integrations at corporation or site level",
        {
            "corpName": _CORP,
            "siteName": _prop(
                "string",
                "Site name (optional for corp-level integrations, uses context default if not provided)",
            ),
            "action": _action("list", "create"),
            "type": _prop("string", "Integration type (e.g., slack, mailingList, generic)"),
            "url": _prop("string", "Integration webhook URL or address"),
            "events": {**_STRING_LIST, "description": "Event types that trigger the integration"},
        },
        ("action",),
    ),
    # --- Analytics ---
    OperationSpec(
        "get_analytics",
        "Get analytics data (top attacks, timeseries, etc.)",
        {
            "corpName": _CORP,
            "siteName": _SITE,
            "type": _enum("Analytics type", ["top_attacks", "timeseries"]),
            "from": _prop("number", "Unix timestamp start"),
            "until": _prop("number", "Unix timestamp end"),
            "groupBy": _enum(
                "Group by field (for top attacks)",
                ["remoteCountryCode", "remoteIP", "path", "userAgent"],
            ),
            "tags": _prop("string", "Filter by tags (for timeseries)"),
            "rollup": _prop("number", "Rollup interval in seconds (for timeseries)"),
            "limit": _prop("number", "Maximum results"),
        },
        ("type",),
    ),
    # --- CloudWAF ---
    OperationSpec(
        "manage_cloudwaf",
        "Manage CloudWAF instances",
        {
            "corpName": _CORP,
            "action": _action("list", "create", "get", "update", "delete"),
            "deploymentId": _prop("string", "Deployment ID (for get/update/delete)"),
            "name": _prop("string", "Instance name"),
            "description": _prop("string", "Instance description"),
            "region": _prop("string", "AWS region"),
            "tlsMinVersion": _enum("Minimum TLS version", ["1.0", "1.2"]),
            "siteName": _prop("string", "Site name for configuration"),
            "domains": {**_STRING_LIST, "description": "Domains to protect"},
            "origin": _prop("string", "Origin server URL"),
        },
        ("action",),
    ),
    # --- Users ---
    OperationSpec(
        "manage_users",
        "Manage corporation users",
        {
            "corpName": _CORP,
            "action": _action("list", "get", "update", "invite", "delete"),
            "userEmail": _prop("string", "User email address"),
            "role": _enum("User role", ["owner", "admin", "user", "observer"]),
            "memberships": _prop("array", "Site memberships"),
        },
        ("action",),
    ),
)

REGISTRY: Dict[str, OperationSpec] = {spec.name: spec for spec in OPERATIONS}


def get_operation(name: str) -> OperationSpec:
    spec = REGISTRY.get(name)
    if spec is None:
        raise UnknownOperationError(name)
    return spec


def list_tools() -> List[Tool]:
    return [spec.to_tool() for spec in OPERATIONS]


# ---------------------------------------------------------------------------
# Argument validation
# ---------------------------------------------------------------------------


def _is_type(value: Any, type_: Optional[str]) -> bool:
    if type_ == "string":
        return isinstance(value, str)
    if type_ == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if type_ == "boolean":
        return isinstance(value, bool)
    if type_ == "array":
        return isinstance(value, list)
    if type_ == "object":
        return isinstance(value, dict)
    return True


def parse_arguments(spec: OperationSpec, args: Dict[str, Any]) -> Dict[str, Any]:
    """Check ``args`` against ``spec`` and return only declared, non-null values.

    Raises:
        InvalidArgumentsError: unknown name, wrong type, value outside enum,
            or a required argument missing
    """
    unknown = sorted(k for k in args if k not in spec.properties)
    if unknown:
        raise InvalidArgumentsError(f"Unknown argument(s) for {spec.name}: {', '.join(unknown)}")

    parsed: Dict[str, Any] = {}
    for key, value in args.items():
        if value is None:
            continue
        schema = spec.properties[key]
        type_ = schema.get("type")
        if not _is_type(value, type_):
            raise InvalidArgumentsError(f"Argument '{key}' for {spec.name} must be of type {type_}")
        items_type = (schema.get("items") or {}).get("type")
        if type_ == "array" and items_type and not all(_is_type(item, items_type) for item in value):
            raise InvalidArgumentsError(f"Argument '{key}' for {spec.name} must be a list of {items_type}")
        allowed = schema.get("enum")
        if allowed is not None and value not in allowed:
            choices = ", ".join(str(v) for v in allowed)
            raise InvalidArgumentsError(f"Argument '{key}' for {spec.name} must be one of: {choices}")
        parsed[key] = value

    missing = [name for name in spec.required if name not in parsed or parsed[name] == ""]
    if missing:
        raise InvalidArgumentsError(f"Missing required argument(s) for {spec.name}: {', '.join(missing)}")
    return parsed
