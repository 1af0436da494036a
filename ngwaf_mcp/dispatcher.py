"""Dispatcher: route a tool name plus argument bag to one gateway call.

Every invocation ends in a ``ToolResult``: ``{"ok": payload}`` or
``{"error": message}``. Nothing raised below this module escapes it.
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from .client import NGWAFClient, compact
from .errors import InvalidArgumentsError, NGWAFError, NotAuthenticatedError
from .session import Scope, Session, SiteScope
from .tools import get_operation, parse_arguments

logger = logging.getLogger("ngwaf.dispatcher")

Handler = Callable[[Session, Dict[str, Any]], Any]
# Composite-operation actions get the client, the context resolved once by
# their tool handler, and the parsed arguments.
ActionHandler = Callable[[NGWAFClient, Any, Dict[str, Any]], Any]


@dataclass(frozen=True)
class ToolResult:
    ok: Any = None
    error: Optional[str] = None
    code: str = ""

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_dict(self) -> Dict[str, Any]:
        if self.is_error:
            return {"error": self.error}
        return {"ok": self.ok}


def _tool_input_hash(arguments: Any) -> str:
    payload = json.dumps(arguments if isinstance(arguments, Mapping) else {}, sort_keys=True, default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _audit_tool_invocation(name: str, arguments: Any, result: ToolResult, *, latency_ms: int = 0) -> None:
    payload = {
        "invocation_id": f"mcpi-{uuid.uuid4().hex[:20]}",
        "tool_name": name,
        "input_hash": _tool_input_hash(arguments),
        "result_status": "error" if result.is_error else "success",
        "latency_ms": int(max(0, latency_ms)),
        "error_code": result.code,
    }
    logger.info("[AUDIT] %s", json.dumps(payload, sort_keys=True))


def _require(args: Dict[str, Any], action: str, *names: str) -> None:
    missing = [name for name in names if args.get(name) in (None, "")]
    if missing:
        raise InvalidArgumentsError(f"{', '.join(missing)} is required for action '{action}'")


def _select(
    handlers: Dict[str, ActionHandler],
    key: str,
    client: NGWAFClient,
    resolved: Any,
    args: Dict[str, Any],
) -> Any:
    value = args.get(key)
    handler = handlers.get(value)
    if handler is None:
        raise InvalidArgumentsError(
            f"Unsupported {key} '{value}'. Expected one of: {', '.join(handlers)}"
        )
    return handler(client, resolved, args)


# ---------------------------------------------------------------------------
# Session and context
# ---------------------------------------------------------------------------


def _set_credentials(session: Session, args: Dict[str, Any]) -> Dict[str, Any]:
    session.set_credentials(args["email"], args["token"])
    result: Dict[str, Any] = {"success": True, "authenticated": True}
    try:
        connection = session.client.test_connection()
    except NGWAFError as exc:
        logger.warning("[AUTH] credential validation failed for %s: %s", args["email"], exc.message)
        result.update(success=False, authenticated=False, error=exc.message)
        return result
    result["message"] = (
        f"Credentials set and validated successfully. "
        f"Access to {connection['corporationsCount']} corporations."
    )
    result["email"] = connection["email"]
    return result


def _test_connection(session: Session, args: Dict[str, Any]) -> Dict[str, Any]:
    return session.client.test_connection()


def _set_context(session: Session, args: Dict[str, Any]) -> Dict[str, Any]:
    context = session.context.set_defaults(args["corpName"], args.get("siteName"))
    return {"success": True, "context": context.as_dict()}


def _get_context(session: Session, args: Dict[str, Any]) -> Dict[str, Any]:
    return {"context": session.context.get_defaults().as_dict()}


def _discover_environment(session: Session, args: Dict[str, Any]) -> Dict[str, Any]:
    if args.get("corpName"):
        corp_name, _ = session.resolve(args)
        return {"corporation": corp_name, "sites": session.client.list_sites(corp_name)}
    return {"corporations": session.client.list_corps()}


# ---------------------------------------------------------------------------
# Corps and sites
# ---------------------------------------------------------------------------


def _list_corps(session: Session, args: Dict[str, Any]) -> Any:
    return session.client.list_corps()


def _get_corp(session: Session, args: Dict[str, Any]) -> Any:
    corp_name, _ = session.resolve(args)
    return session.client.get_corp(corp_name)


def _get_corp_overview(session: Session, args: Dict[str, Any]) -> Any:
    corp_name, _ = session.resolve(args)
    return session.client.get_corp_overview(corp_name, args.get("from"), args.get("until"))


def _list_sites(session: Session, args: Dict[str, Any]) -> Any:
    corp_name, _ = session.resolve(args)
    return session.client.list_sites(corp_name, args.get("query"), args.get("page"), args.get("limit"))


def _get_site(session: Session, args: Dict[str, Any]) -> Any:
    return session.client.get_site(*session.resolve_site(args))


def _site_settings(args: Dict[str, Any]) -> Dict[str, Any]:
    return compact(
        {
            "displayName": args.get("displayName"),
            "agentLevel": args.get("agentLevel"),
            "blockDurationSeconds": args.get("blockDurationSeconds"),
            "blockHTTPCode": args.get("blockHTTPCode"),
            "blockRedirectURL": args.get("blockRedirectURL"),
        }
    )


def _create_site(session: Session, args: Dict[str, Any]) -> Any:
    # siteName names the new site here, so it never comes from context
    corp_name, _ = session.resolve({"corpName": args.get("corpName")})
    site_data = {"name": args["siteName"], **_site_settings(args)}
    return session.client.create_site(corp_name, site_data)


def _update_site(session: Session, args: Dict[str, Any]) -> Any:
    corp_name, site_name = session.resolve_site(args)
    return session.client.update_site(corp_name, site_name, _site_settings(args))


def _delete_site(session: Session, args: Dict[str, Any]) -> Any:
    return session.client.delete_site(*session.resolve_site(args))


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

_CORP_RULE_FIELDS = ("type", "enabled", "groupOperator", "conditions", "actions", "reason", "signal", "corpScope", "siteNames")
_SITE_RULE_FIELDS = (
    "type",
    "enabled",
    "groupOperator",
    "conditions",
    "actions",
    "reason",
    "signal",
    "thresholdCount",
    "thresholdInterval",
    "blockDurationSeconds",
)


def _rule_data(args: Dict[str, Any], fields) -> Dict[str, Any]:
    return compact({name: args.get(name) for name in fields})


def _list_corp_rules(session: Session, args: Dict[str, Any]) -> Any:
    corp_name, _ = session.resolve(args)
    return session.client.list_corp_rules(corp_name, args.get("type"), args.get("page"), args.get("limit"))


def _list_site_rules(session: Session, args: Dict[str, Any]) -> Any:
    corp_name, site_name = session.resolve_site(args)
    return session.client.list_site_rules(
        corp_name, site_name, args.get("type"), args.get("page"), args.get("limit")
    )


def _create_corp_rule(session: Session, args: Dict[str, Any]) -> Any:
    corp_name, _ = session.resolve(args)
    return session.client.create_corp_rule(corp_name, _rule_data(args, _CORP_RULE_FIELDS))


def _create_site_rule(session: Session, args: Dict[str, Any]) -> Any:
    corp_name, site_name = session.resolve_site(args)
    return session.client.create_site_rule(corp_name, site_name, _rule_data(args, _SITE_RULE_FIELDS))


def _update_corp_rule(session: Session, args: Dict[str, Any]) -> Any:
    corp_name, _ = session.resolve(args)
    return session.client.update_corp_rule(corp_name, args["ruleId"], _rule_data(args, _CORP_RULE_FIELDS))


def _update_site_rule(session: Session, args: Dict[str, Any]) -> Any:
    corp_name, site_name = session.resolve_site(args)
    return session.client.update_site_rule(
        corp_name, site_name, args["ruleId"], _rule_data(args, _SITE_RULE_FIELDS)
    )


def _delete_corp_rule(session: Session, args: Dict[str, Any]) -> Any:
    corp_name, _ = session.resolve(args)
    return session.client.delete_corp_rule(corp_name, args["ruleId"])


def _delete_site_rule(session: Session, args: Dict[str, Any]) -> Any:
    corp_name, site_name = session.resolve_site(args)
    return session.client.delete_site_rule(corp_name, site_name, args["ruleId"])


# ---------------------------------------------------------------------------
# Requests and events
# ---------------------------------------------------------------------------


def _search_requests(session: Session, args: Dict[str, Any]) -> Any:
    corp_name, site_name = session.resolve_site(args)
    return session.client.search_requests(
        corp_name, site_name, args.get("query"), args.get("page"), args.get("limit")
    )


def _get_request(session: Session, args: Dict[str, Any]) -> Any:
    corp_name, site_name = session.resolve_site(args)
    return session.client.get_request(corp_name, site_name, args["requestId"])


def _list_events(session: Session, args: Dict[str, Any]) -> Any:
    corp_name, site_name = session.resolve_site(args)
    return session.client.list_events(
        corp_name,
        site_name,
        args.get("from"),
        args.get("until"),
        args.get("action"),
        args.get("tag"),
        args.get("ip"),
    )


def _get_event(session: Session, args: Dict[str, Any]) -> Any:
    corp_name, site_name = session.resolve_site(args)
    return session.client.get_event(corp_name, site_name, args["eventId"])


def _expire_event(session: Session, args: Dict[str, Any]) -> Any:
    corp_name, site_name = session.resolve_site(args)
    return session.client.expire_event(corp_name, site_name, args["eventId"])


# ---------------------------------------------------------------------------
# IP management
# ---------------------------------------------------------------------------


def _get_suspicious_ips(session: Session, args: Dict[str, Any]) -> Any:
    corp_name, site_name = session.resolve_site(args)
    return session.client.get_suspicious_ips(corp_name, site_name, args.get("limit"))


def _ip_data(args: Dict[str, Any]) -> Dict[str, Any]:
    return compact({"source": args.get("ip"), "note": args.get("note"), "expires": args.get("expires")})


def _manage_ip_list(list_name: str) -> Handler:
    def _list(client: NGWAFClient, site: Tuple[str, str], args: Dict[str, Any]) -> Any:
        return getattr(client, f"get_{list_name}")(*site)

    def _add(client: NGWAFClient, site: Tuple[str, str], args: Dict[str, Any]) -> Any:
        _require(args, "add", "ip")
        return getattr(client, f"add_to_{list_name}")(*site, _ip_data(args))

    def _remove(client: NGWAFClient, site: Tuple[str, str], args: Dict[str, Any]) -> Any:
        _require(args, "remove", "entryId")
        return getattr(client, f"remove_from_{list_name}")(*site, args["entryId"])

    actions = {"list": _list, "add": _add, "remove": _remove}

    def _manage(session: Session, args: Dict[str, Any]) -> Any:
        return _select(actions, "action", session.client, session.resolve_site(args), args)

    return _manage


# ---------------------------------------------------------------------------
# Lists (corp or site scoped)
# ---------------------------------------------------------------------------


def _lists_list(client: NGWAFClient, scope: Scope, args: Dict[str, Any]) -> Any:
    if isinstance(scope, SiteScope):
        return client.list_site_lists(scope.corp_name, scope.site_name)
    return client.list_corp_lists(scope.corp_name)


def _lists_create(client: NGWAFClient, scope: Scope, args: Dict[str, Any]) -> Any:
    _require(args, "create", "name", "type")
    list_data = compact(
        {
            "name": args.get("name"),
            "type": args.get("type"),
            "description": args.get("description"),
            "entries": args.get("entries"),
        }
    )
    if isinstance(scope, SiteScope):
        return client.create_site_list(scope.corp_name, scope.site_name, list_data)
    return client.create_corp_list(scope.corp_name, list_data)


def _lists_update(client: NGWAFClient, scope: Scope, args: Dict[str, Any]) -> Any:
    _require(args, "update", "listId")
    update_data = compact(
        {
            "description": args.get("description"),
            "entries": compact({"additions": args.get("additions"), "deletions": args.get("deletions")}),
        }
    )
    if isinstance(scope, SiteScope):
        return client.update_site_list(scope.corp_name, scope.site_name, args["listId"], update_data)
    return client.update_corp_list(scope.corp_name, args["listId"], update_data)


def _lists_delete(client: NGWAFClient, scope: Scope, args: Dict[str, Any]) -> Any:
    _require(args, "delete", "listId")
    if isinstance(scope, SiteScope):
        return client.delete_site_list(scope.corp_name, scope.site_name, args["listId"])
    return client.delete_corp_list(scope.corp_name, args["listId"])


_LIST_ACTIONS: Dict[str, ActionHandler] = {
    "list": _lists_list,
    "create": _lists_create,
    "update": _lists_update,
    "delete": _lists_delete,
}


def _manage_lists(session: Session, args: Dict[str, Any]) -> Any:
    return _select(_LIST_ACTIONS, "action", session.client, session.resolve_scope(args), args)


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


def _alert_data(args: Dict[str, Any]) -> Dict[str, Any]:
    return compact(
        {
            "tagName": args.get("tagName"),
            "longName": args.get("longName"),
            "interval": args.get("interval"),
            "threshold": args.get("threshold"),
            "enabled": args.get("enabled"),
            "action": args.get("action_type"),
        }
    )


def _alerts_list(client: NGWAFClient, site: Tuple[str, str], args: Dict[str, Any]) -> Any:
    return client.list_alerts(*site)


def _alerts_create(client: NGWAFClient, site: Tuple[str, str], args: Dict[str, Any]) -> Any:
    _require(args, "create", "tagName", "interval", "threshold")
    return client.create_alert(*site, _alert_data(args))


def _alerts_update(client: NGWAFClient, site: Tuple[str, str], args: Dict[str, Any]) -> Any:
    _require(args, "update", "alertId")
    return client.update_alert(*site, args["alertId"], _alert_data(args))


def _alerts_delete(client: NGWAFClient, site: Tuple[str, str], args: Dict[str, Any]) -> Any:
    _require(args, "delete", "alertId")
    return client.delete_alert(*site, args["alertId"])


_ALERT_ACTIONS: Dict[str, ActionHandler] = {
    "list": _alerts_list,
    "create": _alerts_create,
    "update": _alerts_update,
    "delete": _alerts_delete,
}


def _manage_alerts(session: Session, args: Dict[str, Any]) -> Any:
    return _select(_ALERT_ACTIONS, "action", session.client, session.resolve_site(args), args)


# ---------------------------------------------------------------------------
# Integrations (corp or site scoped)
# ---------------------------------------------------------------------------


def _integrations_list(client: NGWAFClient, scope: Scope, args: Dict[str, Any]) -> Any:
    if isinstance(scope, SiteScope):
        return client.list_site_integrations(scope.corp_name, scope.site_name)
    return client.list_corp_integrations(scope.corp_name)


def _integrations_create(client: NGWAFClient, scope: Scope, args: Dict[str, Any]) -> Any:
    _require(args, "create", "type", "url")
    integration_data = compact({"type": args.get("type"), "url": args.get("url"), "events": args.get("events")})
    if isinstance(scope, SiteScope):
        return client.create_site_integration(scope.corp_name, scope.site_name, integration_data)
    return client.create_corp_integration(scope.corp_name, integration_data)


_INTEGRATION_ACTIONS: Dict[str, ActionHandler] = {
    "list": _integrations_list,
    "create": _integrations_create,
}


def _manage_integrations(session: Session, args: Dict[str, Any]) -> Any:
    return _select(_INTEGRATION_ACTIONS, "action", session.client, session.resolve_scope(args), args)


# ---------------------------------------------------------------------------
# Analytics
# ---------------------------------------------------------------------------


def _top_attacks(client: NGWAFClient, site: Tuple[str, str], args: Dict[str, Any]) -> Any:
    return client.get_top_attacks(
        *site, args.get("from"), args.get("until"), args.get("groupBy"), args.get("limit")
    )


def _timeseries(client: NGWAFClient, site: Tuple[str, str], args: Dict[str, Any]) -> Any:
    _require(args, "timeseries", "from", "until")
    return client.get_timeseries_requests(*site, args["from"], args["until"], args.get("tags"), args.get("rollup"))


_ANALYTICS_TYPES: Dict[str, ActionHandler] = {
    "top_attacks": _top_attacks,
    "timeseries": _timeseries,
}


def _get_analytics(session: Session, args: Dict[str, Any]) -> Any:
    return _select(_ANALYTICS_TYPES, "type", session.client, session.resolve_site(args), args)


# ---------------------------------------------------------------------------
# CloudWAF
# ---------------------------------------------------------------------------


def _cloudwaf_settings(args: Dict[str, Any]) -> Dict[str, Any]:
    return compact(
        {
            "name": args.get("name"),
            "description": args.get("description"),
            "region": args.get("region"),
            "tlsMinVersion": args.get("tlsMinVersion"),
        }
    )


def _cloudwaf_list(client: NGWAFClient, corp_name: str, args: Dict[str, Any]) -> Any:
    return client.list_cloudwaf_instances(corp_name)


def _cloudwaf_create(client: NGWAFClient, corp_name: str, args: Dict[str, Any]) -> Any:
    route = compact(
        {
            "domains": args.get("domains"),
            "origin": args.get("origin"),
            "passHostHeader": False,
            "connectionPooling": True,
            "trustProxyHeaders": False,
        }
    )
    workspace = compact(
        {
            "siteName": args.get("siteName"),
            "instanceLocation": "direct",
            "listenerProtocols": ["https"],
            "routes": [route],
        }
    )
    instance_data = {**_cloudwaf_settings(args), "workspaceConfigs": [workspace]}
    return client.create_cloudwaf_instance(corp_name, instance_data)


def _cloudwaf_get(client: NGWAFClient, corp_name: str, args: Dict[str, Any]) -> Any:
    _require(args, "get", "deploymentId")
    return client.get_cloudwaf_instance(corp_name, args["deploymentId"])


def _cloudwaf_update(client: NGWAFClient, corp_name: str, args: Dict[str, Any]) -> Any:
    _require(args, "update", "deploymentId")
    return client.update_cloudwaf_instance(corp_name, args["deploymentId"], _cloudwaf_settings(args))


def _cloudwaf_delete(client: NGWAFClient, corp_name: str, args: Dict[str, Any]) -> Any:
    _require(args, "delete", "deploymentId")
    return client.delete_cloudwaf_instance(corp_name, args["deploymentId"])


_CLOUDWAF_ACTIONS: Dict[str, ActionHandler] = {
    "list": _cloudwaf_list,
    "create": _cloudwaf_create,
    "get": _cloudwaf_get,
    "update": _cloudwaf_update,
    "delete": _cloudwaf_delete,
}


def _manage_cloudwaf(session: Session, args: Dict[str, Any]) -> Any:
    # siteName is instance configuration here, not a scope
    corp_name, _ = session.resolve({"corpName": args.get("corpName")})
    return _select(_CLOUDWAF_ACTIONS, "action", session.client, corp_name, args)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


def _user_data(args: Dict[str, Any]) -> Dict[str, Any]:
    return compact({"role": args.get("role"), "memberships": args.get("memberships")})


def _users_list(client: NGWAFClient, corp_name: str, args: Dict[str, Any]) -> Any:
    return client.list_corp_users(corp_name)


def _users_get(client: NGWAFClient, corp_name: str, args: Dict[str, Any]) -> Any:
    _require(args, "get", "userEmail")
    return client.get_corp_user(corp_name, args["userEmail"])


def _users_update(client: NGWAFClient, corp_name: str, args: Dict[str, Any]) -> Any:
    _require(args, "update", "userEmail")
    return client.update_corp_user(corp_name, args["userEmail"], _user_data(args))


def _users_invite(client: NGWAFClient, corp_name: str, args: Dict[str, Any]) -> Any:
    _require(args, "invite", "userEmail")
    return client.invite_corp_user(corp_name, args["userEmail"], _user_data(args))


def _users_delete(client: NGWAFClient, corp_name: str, args: Dict[str, Any]) -> Any:
    _require(args, "delete", "userEmail")
    return client.delete_corp_user(corp_name, args["userEmail"])


_USER_ACTIONS: Dict[str, ActionHandler] = {
    "list": _users_list,
    "get": _users_get,
    "update": _users_update,
    "invite": _users_invite,
    "delete": _users_delete,
}


def _manage_users(session: Session, args: Dict[str, Any]) -> Any:
    corp_name, _ = session.resolve(args)
    return _select(_USER_ACTIONS, "action", session.client, corp_name, args)


# -------------------------------------------------------------------
# Handler dispatch map
# -------------------------------------------------------------------

_TOOL_HANDLERS: Dict[str, Handler] = {
    "set_credentials": _set_credentials,
    "test_connection": _test_connection,
    "set_context": _set_context,
    "get_context": _get_context,
    "discover_environment": _discover_environment,
    "list_corps": _list_corps,
    "get_corp": _get_corp,
    "get_corp_overview": _get_corp_overview,
    "list_sites": _list_sites,
    "get_site": _get_site,
    "create_site": _create_site,
    "update_site": _update_site,
    "delete_site": _delete_site,
    "list_corp_rules": _list_corp_rules,
    "list_site_rules": _list_site_rules,
    "create_corp_rule": _create_corp_rule,
    "create_site_rule": _create_site_rule,
    "update_corp_rule": _update_corp_rule,
    "update_site_rule": _update_site_rule,
    "delete_corp_rule": _delete_corp_rule,
    "delete_site_rule": _delete_site_rule,
    "search_requests": _search_requests,
    "get_request": _get_request,
    "list_events": _list_events,
    "get_event": _get_event,
    "expire_event": _expire_event,
    "get_suspicious_ips": _get_suspicious_ips,
    "manage_whitelist": _manage_ip_list("whitelist"),
    "manage_blacklist": _manage_ip_list("blacklist"),
    "manage_lists": _manage_lists,
    "manage_alerts": _manage_alerts,
    "manage_integrations": _manage_integrations,
    "get_analytics": _get_analytics,
    "manage_cloudwaf": _manage_cloudwaf,
    "manage_users": _manage_users,
}

# Tools callable before credentials exist.
_UNAUTHENTICATED_TOOLS = frozenset({"set_credentials"})


class Dispatcher:
    """Entry point for one session's tool invocations.

    Usage:
        dispatcher = Dispatcher(Session(NGWAFClient()))
        result = await dispatcher.dispatch("list_corps", {})
    """

    def __init__(self, session: Session):
        self.session = session

    def invoke(self, name: str, arguments: Any) -> Any:
        """Run one invocation synchronously, raising taxonomy errors."""
        if not isinstance(arguments, Mapping):
            raise InvalidArgumentsError("Invalid arguments provided.")
        spec = get_operation(name)
        handler = _TOOL_HANDLERS[spec.name]
        if spec.name not in _UNAUTHENTICATED_TOOLS and not self.session.authenticated:
            raise NotAuthenticatedError()
        args = parse_arguments(spec, dict(arguments))
        return handler(self.session, args)

    async def dispatch(self, name: str, arguments: Any) -> ToolResult:
        started = time.perf_counter()
        try:
            payload = await asyncio.to_thread(self.invoke, name, arguments)
            result = ToolResult(ok=payload)
        except NGWAFError as exc:
            result = ToolResult(error=exc.message, code=exc.code)
        except Exception as exc:
            logger.exception("tool call failed: %s", name)
            result = ToolResult(error=f"Tool '{name}' failed: {exc}", code="INTERNAL_ERROR")
        _audit_tool_invocation(
            name,
            arguments,
            result,
            latency_ms=int((time.perf_counter() - started) * 1000),
        )
        return result
