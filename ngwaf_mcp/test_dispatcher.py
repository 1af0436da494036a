"""Tests for dispatch: context resolution, corp/site routing, result envelopes."""

import asyncio
import http.client
import itertools
import logging

import pytest

from ngwaf_mcp.dispatcher import Dispatcher, ToolResult
from ngwaf_mcp.session import Context, Session


def _run(coro):
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _call(dispatcher: Dispatcher, name: str, args) -> ToolResult:
    return _run(dispatcher.dispatch(name, args))


# Operations needing a corp, with the minimum other arguments they require.
CORP_OPERATIONS = [
    ("get_corp", {}),
    ("get_corp_overview", {}),
    ("list_sites", {}),
    ("create_site", {"siteName": "new"}),
    ("get_site", {"siteName": "s"}),
    ("update_site", {"siteName": "s"}),
    ("delete_site", {"siteName": "s"}),
    ("list_corp_rules", {}),
    ("list_site_rules", {"siteName": "s"}),
    ("create_corp_rule", {"type": "request", "groupOperator": "all", "conditions": [], "actions": []}),
    ("delete_corp_rule", {"ruleId": "r1"}),
    ("search_requests", {"siteName": "s"}),
    ("list_events", {"siteName": "s"}),
    ("expire_event", {"siteName": "s", "eventId": "e1"}),
    ("get_suspicious_ips", {"siteName": "s"}),
    ("manage_whitelist", {"siteName": "s", "action": "list"}),
    ("manage_lists", {"action": "list"}),
    ("manage_alerts", {"siteName": "s", "action": "list"}),
    ("manage_integrations", {"action": "list"}),
    ("get_analytics", {"siteName": "s", "type": "top_attacks"}),
    ("manage_cloudwaf", {"action": "list"}),
    ("manage_users", {"action": "list"}),
]

# Operations that need a site, with the minimum other arguments they require.
SITE_OPERATIONS = [
    ("get_site", {}),
    ("update_site", {}),
    ("delete_site", {}),
    ("list_site_rules", {}),
    ("create_site_rule", {"type": "request", "groupOperator": "all", "conditions": [], "actions": []}),
    ("delete_site_rule", {"ruleId": "r1"}),
    ("search_requests", {}),
    ("get_request", {"requestId": "q1"}),
    ("list_events", {}),
    ("get_event", {"eventId": "e1"}),
    ("expire_event", {"eventId": "e1"}),
    ("get_suspicious_ips", {}),
    ("manage_whitelist", {"action": "list"}),
    ("manage_blacklist", {"action": "list"}),
    ("manage_alerts", {"action": "list"}),
    ("get_analytics", {"type": "top_attacks"}),
]


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


def test_set_credentials_validates_against_api(fake_api, anonymous_client):
    dispatcher = Dispatcher(Session(anonymous_client))
    fake_api.respond("GET", "/corps", body={"data": [{"name": "a"}, {"name": "b"}]})

    result = _call(dispatcher, "set_credentials", {"email": "a@b.com", "token": "t1"})

    payload = result.to_dict()["ok"]
    assert payload["success"] is True
    assert payload["authenticated"] is True
    assert "2 corporations" in payload["message"]
    assert payload["email"] == "a@b.com"
    assert fake_api.last["headers"]["X-api-token"] == "t1"
    assert dispatcher.session.authenticated


def test_set_credentials_reports_failed_validation(fake_api, anonymous_client):
    dispatcher = Dispatcher(Session(anonymous_client))
    fake_api.respond("GET", "/corps", status=401)

    result = _call(dispatcher, "set_credentials", {"email": "a@b.com", "token": "bad"})

    assert not result.is_error
    assert result.ok["success"] is False
    assert result.ok["error"].startswith("Invalid email or API token")


def test_operations_before_credentials_are_rejected(fake_api, anonymous_client):
    dispatcher = Dispatcher(Session(anonymous_client))

    for name, args in [("list_corps", {}), ("get_context", {}), ("test_connection", {})]:
        result = _call(dispatcher, name, args)
        assert result.code == "NOT_AUTHENTICATED"
        assert "set credentials first" in result.to_dict()["error"]
    assert fake_api.requests == []


def test_test_connection_401_is_invalid_credentials(fake_api, dispatcher):
    fake_api.respond("GET", "/corps", body={"message": "bad token"}, status=401)

    result = _call(dispatcher, "test_connection", {})

    assert result.code == "INVALID_CREDENTIALS"
    assert result.to_dict()["error"].startswith("Invalid email or API token")


# ---------------------------------------------------------------------------
# Envelope and registry failures
# ---------------------------------------------------------------------------


def test_unknown_tool(fake_api, dispatcher):
    result = _call(dispatcher, "not_a_real_tool", {})
    assert result.to_dict() == {"error": "Unknown tool: not_a_real_tool"}
    assert result.code == "UNKNOWN_OPERATION"


def test_unknown_tool_reported_even_without_credentials(fake_api, anonymous_client):
    result = _call(Dispatcher(Session(anonymous_client)), "not_a_real_tool", {})
    assert result.code == "UNKNOWN_OPERATION"


@pytest.mark.parametrize("bad_args", [None, [], "corpName=x"])
def test_non_mapping_arguments(fake_api, dispatcher, bad_args):
    result = _call(dispatcher, "list_corps", bad_args)
    assert result.to_dict() == {"error": "Invalid arguments provided."}
    assert result.code == "INVALID_ARGUMENTS"


def test_success_wraps_payload(fake_api, dispatcher):
    fake_api.respond("GET", "/corps", body={"data": [{"name": "a"}]})
    assert _call(dispatcher, "list_corps", {}).to_dict() == {"ok": {"data": [{"name": "a"}]}}


def test_remote_failure_is_relayed(fake_api, dispatcher):
    fake_api.respond("GET", "/corps/corp", body={"message": "Corp not found"}, status=404)
    result = _call(dispatcher, "get_corp", {"corpName": "corp"})
    assert result.to_dict() == {"error": "Corp not found"}
    assert result.code == "REMOTE_OPERATION_FAILED"


def test_unexpected_failure_never_escapes(fake_api, dispatcher, monkeypatch, caplog):
    def _boom(*_args, **_kwargs):
        raise ValueError("kaboom")

    monkeypatch.setattr(dispatcher.session.client, "list_corps", _boom)
    with caplog.at_level(logging.ERROR, logger="ngwaf.dispatcher"):
        result = _call(dispatcher, "list_corps", {})
    assert result.to_dict() == {"error": "Tool 'list_corps' failed: kaboom"}
    assert result.code == "INTERNAL_ERROR"
    assert "tool call failed: list_corps" in caplog.text


def test_audit_record_hashes_arguments(fake_api, anonymous_client, caplog):
    dispatcher = Dispatcher(Session(anonymous_client))
    with caplog.at_level(logging.INFO, logger="ngwaf.dispatcher"):
        _call(dispatcher, "set_credentials", {"email": "a@b.com", "token": "secret-token"})
    audit = [r.getMessage() for r in caplog.records if r.getMessage().startswith("[AUDIT]")]
    assert len(audit) == 1
    assert '"tool_name": "set_credentials"' in audit[0]
    assert "secret-token" not in caplog.text


# ---------------------------------------------------------------------------
# Context resolution
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("name, args", CORP_OPERATIONS)
def test_missing_organization(fake_api, dispatcher, name, args):
    result = _call(dispatcher, name, args)
    assert result.code == "MISSING_ORGANIZATION", result
    assert "Corporation name is required" in result.error
    assert fake_api.requests == []


@pytest.mark.parametrize("name, args", SITE_OPERATIONS)
def test_missing_site(fake_api, dispatcher, name, args):
    result = _call(dispatcher, name, {"corpName": "corp", **args})
    assert result.code == "MISSING_SITE", result
    assert "Site name is required" in result.error
    assert fake_api.requests == []


@pytest.mark.parametrize("name, args", SITE_OPERATIONS)
def test_stored_site_default_resolves(fake_api, dispatcher, name, args):
    _call(dispatcher, "set_context", {"corpName": "corp", "siteName": "www"})
    result = _call(dispatcher, name, args)
    assert not result.is_error, result
    assert fake_api.last["path"].startswith("/corps/corp/sites/www")


def test_stored_corp_default_and_explicit_override(fake_api, dispatcher):
    _call(dispatcher, "set_context", {"corpName": "default-corp"})

    _call(dispatcher, "list_sites", {})
    assert fake_api.last["path"] == "/corps/default-corp/sites"

    _call(dispatcher, "list_sites", {"corpName": "explicit"})
    assert fake_api.last["path"] == "/corps/explicit/sites"


def test_set_and_get_context(fake_api, dispatcher):
    result = _call(dispatcher, "set_context", {"corpName": "corp", "siteName": "www"})
    assert result.ok == {"success": True, "context": {"defaultCorpName": "corp", "defaultSiteName": "www"}}

    _call(dispatcher, "set_context", {"corpName": "corp"})
    assert _call(dispatcher, "get_context", {}).ok == {
        "context": {"defaultCorpName": "corp", "defaultSiteName": None}
    }
    assert fake_api.requests == []


def test_discover_environment(fake_api, dispatcher):
    fake_api.respond("GET", "/corps", body={"data": ["c1"]})
    fake_api.respond("GET", "/corps/c1/sites", body={"data": ["s1"]})

    assert _call(dispatcher, "discover_environment", {}).ok == {"corporations": {"data": ["c1"]}}
    assert _call(dispatcher, "discover_environment", {"corpName": "c1"}).ok == {
        "corporation": "c1",
        "sites": {"data": ["s1"]},
    }


# ---------------------------------------------------------------------------
# Corp/site bifurcation
# ---------------------------------------------------------------------------


def test_manage_lists_routes_by_scope(fake_api, dispatcher):
    _call(dispatcher, "manage_lists", {"corpName": "corp", "action": "list"})
    assert (fake_api.last["method"], fake_api.last["path"]) == ("GET", "/corps/corp/lists")

    _call(dispatcher, "manage_lists", {"corpName": "corp", "siteName": "www", "action": "list"})
    assert (fake_api.last["method"], fake_api.last["path"]) == ("GET", "/corps/corp/sites/www/lists")


def test_manage_lists_uses_stored_site_for_scope(fake_api, dispatcher):
    _call(dispatcher, "set_context", {"corpName": "corp", "siteName": "www"})
    _call(dispatcher, "manage_lists", {"action": "delete", "listId": "l1"})
    assert (fake_api.last["method"], fake_api.last["path"]) == ("DELETE", "/corps/corp/sites/www/lists/l1")


def test_manage_lists_bodies(fake_api, dispatcher):
    _call(
        dispatcher,
        "manage_lists",
        {"corpName": "corp", "action": "create", "name": "bad-ips", "type": "ip", "entries": ["1.2.3.4"]},
    )
    assert fake_api.last["method"] == "POST"
    assert fake_api.last["body"] == {"name": "bad-ips", "type": "ip", "entries": ["1.2.3.4"]}

    _call(
        dispatcher,
        "manage_lists",
        {"corpName": "corp", "siteName": "www", "action": "update", "listId": "l1", "additions": ["5.6.7.8"]},
    )
    assert (fake_api.last["method"], fake_api.last["path"]) == ("PATCH", "/corps/corp/sites/www/lists/l1")
    assert fake_api.last["body"] == {"entries": {"additions": ["5.6.7.8"]}}


def test_manage_integrations_routes_by_scope(fake_api, dispatcher):
    _call(dispatcher, "manage_integrations", {"corpName": "corp", "action": "create", "type": "slack", "url": "https://hooks"})
    assert (fake_api.last["method"], fake_api.last["path"]) == ("POST", "/corps/corp/integrations")
    assert fake_api.last["body"] == {"type": "slack", "url": "https://hooks"}

    _call(dispatcher, "manage_integrations", {"corpName": "corp", "siteName": "www", "action": "list"})
    assert fake_api.last["path"] == "/corps/corp/sites/www/integrations"


# ---------------------------------------------------------------------------
# Composite actions
# ---------------------------------------------------------------------------


def test_unrecognized_action_is_invalid(fake_api, dispatcher):
    result = _call(dispatcher, "manage_whitelist", {"corpName": "c", "siteName": "s", "action": "foo"})
    assert result.code == "INVALID_ARGUMENTS"
    assert "action" in result.error
    assert fake_api.requests == []


@pytest.mark.parametrize(
    "name, args, missing",
    [
        ("manage_whitelist", {"siteName": "s", "action": "add"}, "ip"),
        ("manage_blacklist", {"siteName": "s", "action": "remove"}, "entryId"),
        ("manage_lists", {"action": "update"}, "listId"),
        ("manage_lists", {"action": "create", "name": "n"}, "type"),
        ("manage_alerts", {"siteName": "s", "action": "delete"}, "alertId"),
        ("manage_cloudwaf", {"action": "get"}, "deploymentId"),
        ("manage_users", {"action": "invite"}, "userEmail"),
        ("get_analytics", {"siteName": "s", "type": "timeseries", "from": 1}, "until"),
    ],
)
def test_action_specific_requirements(fake_api, dispatcher, name, args, missing):
    result = _call(dispatcher, name, {"corpName": "corp", **args})
    assert result.code == "INVALID_ARGUMENTS"
    assert missing in result.error
    assert fake_api.requests == []


def test_whitelist_actions(fake_api, dispatcher):
    base = {"corpName": "corp", "siteName": "www"}

    _call(dispatcher, "manage_whitelist", {**base, "action": "add", "ip": "1.2.3.4", "note": "office"})
    assert (fake_api.last["method"], fake_api.last["path"]) == ("PUT", "/corps/corp/sites/www/whitelist")
    assert fake_api.last["body"] == {"source": "1.2.3.4", "note": "office"}

    result = _call(dispatcher, "manage_whitelist", {**base, "action": "remove", "entryId": "e1"})
    assert result.ok == {"success": True}
    assert fake_api.last["path"] == "/corps/corp/sites/www/whitelist/e1"


def test_alert_body_maps_action_type(fake_api, dispatcher):
    _call(
        dispatcher,
        "manage_alerts",
        {
            "corpName": "corp",
            "siteName": "www",
            "action": "create",
            "tagName": "SQLI",
            "interval": 10,
            "threshold": 50,
            "action_type": "flagged",
        },
    )
    assert fake_api.last["body"] == {"tagName": "SQLI", "interval": 10, "threshold": 50, "action": "flagged"}


def test_analytics_routes_by_type(fake_api, dispatcher):
    base = {"corpName": "corp", "siteName": "www"}
    _call(dispatcher, "get_analytics", {**base, "type": "timeseries", "from": 100, "until": 200})
    assert fake_api.last["path"] == "/corps/corp/sites/www/timeseries/requests"

    _call(dispatcher, "get_analytics", {**base, "type": "top_attacks", "limit": 5})
    assert fake_api.last["path"] == "/corps/corp/sites/www/top/attacks"
    assert fake_api.last["query"] == {"limit": ["5"]}


def test_cloudwaf_create_builds_workspace_config(fake_api, dispatcher):
    _call(
        dispatcher,
        "manage_cloudwaf",
        {
            "corpName": "corp",
            "action": "create",
            "name": "edge",
            "region": "us-east-1",
            "siteName": "www",
            "domains": ["example.com"],
            "origin": "https://origin.example.com",
        },
    )
    assert (fake_api.last["method"], fake_api.last["path"]) == ("POST", "/corps/corp/cloudwafInstances")
    assert fake_api.last["body"] == {
        "name": "edge",
        "region": "us-east-1",
        "workspaceConfigs": [
            {
                "siteName": "www",
                "instanceLocation": "direct",
                "listenerProtocols": ["https"],
                "routes": [
                    {
                        "domains": ["example.com"],
                        "origin": "https://origin.example.com",
                        "passHostHeader": False,
                        "connectionPooling": True,
                        "trustProxyHeaders": False,
                    }
                ],
            }
        ],
    }


def test_cloudwaf_site_name_is_not_a_scope(fake_api, dispatcher):
    _call(dispatcher, "manage_cloudwaf", {"corpName": "corp", "siteName": "www", "action": "list"})
    assert fake_api.last["path"] == "/corps/corp/cloudwafInstances"


def test_users_actions(fake_api, dispatcher):
    _call(dispatcher, "manage_users", {"corpName": "corp", "action": "update", "userEmail": "u@x.io", "role": "admin"})
    assert (fake_api.last["method"], fake_api.last["path"]) == ("PATCH", "/corps/corp/users/u%40x.io")
    assert fake_api.last["body"] == {"role": "admin"}


def test_create_site_never_takes_site_from_context(fake_api, dispatcher):
    _call(dispatcher, "set_context", {"corpName": "corp", "siteName": "existing"})
    _call(dispatcher, "create_site", {"siteName": "new", "agentLevel": "block"})
    assert (fake_api.last["method"], fake_api.last["path"]) == ("POST", "/corps/corp/sites")
    assert fake_api.last["body"] == {"name": "new", "agentLevel": "block"}


def test_concurrent_invocations_overlap(fake_api, dispatcher):
    async def _many():
        return await asyncio.gather(
            *(dispatcher.dispatch("get_corp", {"corpName": f"corp-{i}"}) for i in range(10))
        )

    results = _run(_many())
    assert all(not r.is_error for r in results)
    assert sorted(r["path"] for r in fake_api.requests) == sorted(f"/corps/corp-{i}" for i in range(10))


@pytest.mark.parametrize(
    "name, args, path",
    [
        ("manage_lists", {"action": "list"}, "/corps/corp-a/sites/site-a/lists"),
        ("manage_integrations", {"action": "list"}, "/corps/corp-a/sites/site-a/integrations"),
        ("manage_whitelist", {"action": "add", "ip": "1.2.3.4"}, "/corps/corp-a/sites/site-a/whitelist"),
        ("manage_alerts", {"action": "list"}, "/corps/corp-a/sites/site-a/alerts"),
        ("get_analytics", {"type": "top_attacks"}, "/corps/corp-a/sites/site-a/top/attacks"),
        ("manage_cloudwaf", {"action": "list"}, "/corps/corp-a/cloudwafInstances"),
        ("manage_users", {"action": "list"}, "/corps/corp-a/users"),
    ],
)
def test_composite_operations_read_context_once(fake_api, dispatcher, monkeypatch, name, args, path):
    # every read after the first sees a context switched by a concurrent set_context
    snapshots = itertools.chain([Context("corp-a", "site-a")], itertools.repeat(Context("corp-b")))
    monkeypatch.setattr(dispatcher.session.context, "get_defaults", lambda: next(snapshots))

    result = _call(dispatcher, name, args)

    assert not result.is_error, result
    assert fake_api.last["path"] == path


# ---------------------------------------------------------------------------
# Transport failures
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "exc, text",
    [
        (TimeoutError("timed out"), "timed out"),
        (http.client.RemoteDisconnected("Remote end closed connection without response"), "Remote end closed"),
    ],
)
def test_transport_failure_is_remote_operation_failed(fake_api, dispatcher, exc, text):
    fake_api.network_error = exc
    result = _call(dispatcher, "list_corps", {})
    assert result.code == "REMOTE_OPERATION_FAILED"
    assert text in result.error


def test_set_credentials_reports_dropped_connection(fake_api, anonymous_client):
    dispatcher = Dispatcher(Session(anonymous_client))
    fake_api.network_error = http.client.RemoteDisconnected("Remote end closed connection without response")

    result = _call(dispatcher, "set_credentials", {"email": "a@b.com", "token": "t1"})

    assert not result.is_error
    assert result.ok["success"] is False
    assert result.ok["authenticated"] is False
    assert result.ok["error"].startswith("API connection failed: Remote end closed")


def test_non_json_body_is_remote_operation_failed(fake_api, dispatcher):
    fake_api.respond("GET", "/corps", body=b"<html>gateway</html>")
    result = _call(dispatcher, "list_corps", {})
    assert result.to_dict() == {"error": "Invalid JSON response from API"}
    assert result.code == "REMOTE_OPERATION_FAILED"
