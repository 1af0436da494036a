"""Gateway client for the Fastly NGWAF (Signal Sciences) REST API.

One method per remote operation. Methods take already-resolved arguments,
build the path and query, issue exactly one HTTP call and return the decoded
JSON body. Deletions return ``{"success": True}``.
"""
from __future__ import annotations

import http.client
import json
import logging
import os
import ssl
import threading
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Dict, Optional

from . import config
from .errors import InvalidCredentialsError, NotAuthenticatedError, RemoteOperationFailedError
from .session import Credentials

logger = logging.getLogger("ngwaf.client")

SUCCESS = {"success": True}


def _build_ssl_context() -> Optional[ssl.SSLContext]:
    """Build an SSL context with certifi fallback for reliable HTTPS calls."""
    cert_file = str(os.environ.get("SSL_CERT_FILE", "") or "").strip()
    if cert_file:
        try:
            return ssl.create_default_context(cafile=cert_file)
        except Exception as exc:
            logger.warning("SSL_CERT_FILE %r is not usable: %s", cert_file, exc)

    try:
        import certifi

        return ssl.create_default_context(cafile=certifi.where())
    except Exception:
        try:
            return ssl.create_default_context()
        except Exception:
            return None


_SSL_CTX = _build_ssl_context()


def _urlopen(req: urllib.request.Request, timeout: int):
    if _SSL_CTX is not None:
        return urllib.request.urlopen(req, timeout=timeout, context=_SSL_CTX)
    return urllib.request.urlopen(req, timeout=timeout)


def _seg(value: Any) -> str:
    return urllib.parse.quote(str(value), safe="")


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def build_query(params: Dict[str, Any]) -> str:
    """Encode defined parameters only; None values never reach the wire."""
    present = [(k, _query_value(v)) for k, v in params.items() if v is not None]
    return urllib.parse.urlencode(present)


def compact(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


def _remote_message(raw: str) -> Optional[str]:
    try:
        parsed = json.loads(raw) if raw else {}
    except json.JSONDecodeError:
        return None
    if isinstance(parsed, dict):
        message = parsed.get("message")
        if message:
            return str(message)
    return None


class NGWAFClient:
    """HTTP client for the NGWAF management API.

    Usage:
        client = NGWAFClient()
        client.set_credentials("me@example.com", "token")
        client.list_sites("mycorp", limit=10)
    """

    def __init__(
        self,
        email: Optional[str] = None,
        token: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[int] = None,
    ):
        self.base_url = (base_url or config.API_BASE).rstrip("/")
        self.timeout = timeout or config.HTTP_TIMEOUT_SECONDS
        self._lock = threading.Lock()
        self._credentials: Optional[Credentials] = None
        if email and token:
            self.set_credentials(email, token)

    # -- authentication -----------------------------------------------------

    @property
    def credentials(self) -> Optional[Credentials]:
        return self._credentials

    def set_credentials(self, email: str, token: str) -> Credentials:
        credentials = Credentials(email, token)
        with self._lock:
            self._credentials = credentials
        return credentials

    def _headers(self, credentials: Credentials, has_body: bool) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "User-Agent": config.HTTP_USER_AGENT,
            "x-api-user": credentials.email,
            "x-api-token": credentials.token,
        }
        if has_body:
            headers["Content-Type"] = "application/json"
        return headers

    # -- transport ----------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        query: Optional[Dict[str, Any]] = None,
    ) -> Any:
        credentials = self._credentials
        if credentials is None:
            raise NotAuthenticatedError()

        url = f"{self.base_url}{path}"
        if query:
            encoded_qs = build_query(query)
            if encoded_qs:
                url = f"{url}?{encoded_qs}"
        body = json.dumps(payload).encode("utf-8") if payload is not None else None
        req = urllib.request.Request(
            url=url,
            method=method.upper(),
            headers=self._headers(credentials, body is not None),
            data=body,
        )
        logger.debug("%s %s", method.upper(), path)
        try:
            with _urlopen(req, timeout=self.timeout) as resp:
                status = getattr(resp, "status", None)
                text = resp.read().decode("utf-8", errors="replace")
        except urllib.error.HTTPError as exc:
            if exc.code == 401:
                raise InvalidCredentialsError() from exc
            raw = exc.read().decode("utf-8", errors="replace") if exc.fp is not None else ""
            message = _remote_message(raw) or f"Request failed with status code {exc.code}"
            raise RemoteOperationFailedError(message, status_code=exc.code) from exc
        except urllib.error.URLError as exc:
            raise RemoteOperationFailedError(str(exc.reason)) from exc
        except (OSError, http.client.HTTPException) as exc:
            # timeouts and dropped connections surface bare from getresponse()
            raise RemoteOperationFailedError(str(exc) or type(exc).__name__) from exc

        if not text:
            return dict(SUCCESS)
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise RemoteOperationFailedError("Invalid JSON response from API", status_code=status) from exc

    def _delete(self, path: str) -> Dict[str, Any]:
        self._request("DELETE", path)
        return dict(SUCCESS)

    # -- connection ---------------------------------------------------------

    def test_connection(self) -> Dict[str, Any]:
        try:
            response = self._request("GET", "/corps")
        except RemoteOperationFailedError as exc:
            raise RemoteOperationFailedError(
                f"API connection failed: {exc.message}", status_code=exc.status_code
            ) from exc
        corps = response.get("data") if isinstance(response, dict) else None
        return {
            "success": True,
            "authenticated": True,
            "corporationsCount": len(corps or []),
            "email": self._credentials.email if self._credentials else None,
        }

    # -- corps --------------------------------------------------------------

    def list_corps(self):
        return self._request("GET", "/corps")

    def get_corp(self, corp_name: str):
        return self._request("GET", f"/corps/{_seg(corp_name)}")

    def get_corp_overview(self, corp_name: str, from_: Optional[str] = None, until: Optional[str] = None):
        return self._request(
            "GET",
            f"/corps/{_seg(corp_name)}/reports/attacks",
            query={"from": from_, "until": until},
        )

    # -- sites --------------------------------------------------------------

    def list_sites(self, corp_name: str, query: Optional[str] = None, page=None, limit=None):
        return self._request(
            "GET",
            f"/corps/{_seg(corp_name)}/sites",
            query={"q": query, "page": page, "limit": limit},
        )

    def get_site(self, corp_name: str, site_name: str):
        return self._request("GET", f"/corps/{_seg(corp_name)}/sites/{_seg(site_name)}")

    def create_site(self, corp_name: str, site_data: Dict[str, Any]):
        return self._request("POST", f"/corps/{_seg(corp_name)}/sites", payload=site_data)

    def update_site(self, corp_name: str, site_name: str, site_data: Dict[str, Any]):
        return self._request("PATCH", f"/corps/{_seg(corp_name)}/sites/{_seg(site_name)}", payload=site_data)

    def delete_site(self, corp_name: str, site_name: str):
        return self._delete(f"/corps/{_seg(corp_name)}/sites/{_seg(site_name)}")

    # -- rules --------------------------------------------------------------

    def list_corp_rules(self, corp_name: str, rule_type: Optional[str] = None, page=None, limit=None):
        return self._request(
            "GET",
            f"/corps/{_seg(corp_name)}/rules",
            query={"type": rule_type, "page": page, "limit": limit},
        )

    def list_site_rules(self, corp_name: str, site_name: str, rule_type: Optional[str] = None, page=None, limit=None):
        return self._request(
            "GET",
            f"/corps/{_seg(corp_name)}/sites/{_seg(site_name)}/rules",
            query={"type": rule_type, "page": page, "limit": limit},
        )

    def create_corp_rule(self, corp_name: str, rule_data: Dict[str, Any]):
        return self._request("POST", f"/corps/{_seg(corp_name)}/rules", payload=rule_data)

    def create_site_rule(self, corp_name: str, site_name: str, rule_data: Dict[str, Any]):
        return self._request("POST", f"/corps/{_seg(corp_name)}/sites/{_seg(site_name)}/rules", payload=rule_data)

    def update_corp_rule(self, corp_name: str, rule_id: str, rule_data: Dict[str, Any]):
        return self._request("PUT", f"/corps/{_seg(corp_name)}/rules/{_seg(rule_id)}", payload=rule_data)

    def update_site_rule(self, corp_name: str, site_name: str, rule_id: str, rule_data: Dict[str, Any]):
        return self._request(
            "PUT",
            f"/corps/{_seg(corp_name)}/sites/{_seg(site_name)}/rules/{_seg(rule_id)}",
            payload=rule_data,
        )

    def delete_corp_rule(self, corp_name: str, rule_id: str):
        return self._delete(f"/corps/{_seg(corp_name)}/rules/{_seg(rule_id)}")

    def delete_site_rule(self, corp_name: str, site_name: str, rule_id: str):
        return self._delete(f"/corps/{_seg(corp_name)}/sites/{_seg(site_name)}/rules/{_seg(rule_id)}")

    # -- lists --------------------------------------------------------------

    def list_corp_lists(self, corp_name: str):
        return self._request("GET", f"/corps/{_seg(corp_name)}/lists")

    def list_site_lists(self, corp_name: str, site_name: str):
        return self._request("GET", f"/corps/{_seg(corp_name)}/sites/{_seg(site_name)}/lists")

    def create_corp_list(self, corp_name: str, list_data: Dict[str, Any]):
        return self._request("POST", f"/corps/{_seg(corp_name)}/lists", payload=list_data)

    def create_site_list(self, corp_name: str, site_name: str, list_data: Dict[str, Any]):
        return self._request("POST", f"/corps/{_seg(corp_name)}/sites/{_seg(site_name)}/lists", payload=list_data)

    def update_corp_list(self, corp_name: str, list_id: str, update_data: Dict[str, Any]):
        return self._request("PATCH", f"/corps/{_seg(corp_name)}/lists/{_seg(list_id)}", payload=update_data)

    def update_site_list(self, corp_name: str, site_name: str, list_id: str, update_data: Dict[str, Any]):
        return self._request(
            "PATCH",
            f"/corps/{_seg(corp_name)}/sites/{_seg(site_name)}/lists/{_seg(list_id)}",
            payload=update_data,
        )

    def delete_corp_list(self, corp_name: str, list_id: str):
        return self._delete(f"/corps/{_seg(corp_name)}/lists/{_seg(list_id)}")

    def delete_site_list(self, corp_name: str, site_name: str, list_id: str):
        return self._delete(f"/corps/{_seg(corp_name)}/sites/{_seg(site_name)}/lists/{_seg(list_id)}")

    # -- requests and events ------------------------------------------------

    def search_requests(self, corp_name: str, site_name: str, query: Optional[str] = None, page=None, limit=None):
        return self._request(
            "GET",
            f"/corps/{_seg(corp_name)}/sites/{_seg(site_name)}/requests",
            query={"q": query, "page": page, "limit": limit},
        )

    def get_request(self, corp_name: str, site_name: str, request_id: str):
        return self._request("GET", f"/corps/{_seg(corp_name)}/sites/{_seg(site_name)}/requests/{_seg(request_id)}")

    def list_events(
        self,
        corp_name: str,
        site_name: str,
        from_=None,
        until=None,
        action: Optional[str] = None,
        tag: Optional[str] = None,
        ip: Optional[str] = None,
    ):
        return self._request(
            "GET",
            f"/corps/{_seg(corp_name)}/sites/{_seg(site_name)}/events",
            query={"from": from_, "until": until, "action": action, "tag": tag, "ip": ip},
        )

    def get_event(self, corp_name: str, site_name: str, event_id: str):
        return self._request("GET", f"/corps/{_seg(corp_name)}/sites/{_seg(site_name)}/events/{_seg(event_id)}")

    def expire_event(self, corp_name: str, site_name: str, event_id: str):
        return self._request(
            "POST",
            f"/corps/{_seg(corp_name)}/sites/{_seg(site_name)}/events/{_seg(event_id)}/expire",
        )

    # -- IP management ------------------------------------------------------

    def get_suspicious_ips(self, corp_name: str, site_name: str, limit=None):
        return self._request(
            "GET",
            f"/corps/{_seg(corp_name)}/sites/{_seg(site_name)}/suspiciousIPs",
            query={"limit": limit},
        )

    def get_whitelist(self, corp_name: str, site_name: str):
        return self._request("GET", f"/corps/{_seg(corp_name)}/sites/{_seg(site_name)}/whitelist")

    def add_to_whitelist(self, corp_name: str, site_name: str, ip_data: Dict[str, Any]):
        return self._request("PUT", f"/corps/{_seg(corp_name)}/sites/{_seg(site_name)}/whitelist", payload=ip_data)

    def remove_from_whitelist(self, corp_name: str, site_name: str, entry_id: str):
        return self._delete(f"/corps/{_seg(corp_name)}/sites/{_seg(site_name)}/whitelist/{_seg(entry_id)}")

    def get_blacklist(self, corp_name: str, site_name: str):
        return self._request("GET", f"/corps/{_seg(corp_name)}/sites/{_seg(site_name)}/blacklist")

    def add_to_blacklist(self, corp_name: str, site_name: str, ip_data: Dict[str, Any]):
        return self._request("PUT", f"/corps/{_seg(corp_name)}/sites/{_seg(site_name)}/blacklist", payload=ip_data)

    def remove_from_blacklist(self, corp_name: str, site_name: str, entry_id: str):
        return self._delete(f"/corps/{_seg(corp_name)}/sites/{_seg(site_name)}/blacklist/{_seg(entry_id)}")

    # -- alerts -------------------------------------------------------------

    def list_alerts(self, corp_name: str, site_name: str):
        return self._request("GET", f"/corps/{_seg(corp_name)}/sites/{_seg(site_name)}/alerts")

    def create_alert(self, corp_name: str, site_name: str, alert_data: Dict[str, Any]):
        return self._request("POST", f"/corps/{_seg(corp_name)}/sites/{_seg(site_name)}/alerts", payload=alert_data)

    def update_alert(self, corp_name: str, site_name: str, alert_id: str, alert_data: Dict[str, Any]):
        return self._request(
            "PATCH",
            f"/corps/{_seg(corp_name)}/sites/{_seg(site_name)}/alerts/{_seg(alert_id)}",
            payload=alert_data,
        )

    def delete_alert(self, corp_name: str, site_name: str, alert_id: str):
        return self._delete(f"/corps/{_seg(corp_name)}/sites/{_seg(site_name)}/alerts/{_seg(alert_id)}")

    # -- integrations -------------------------------------------------------

    def list_corp_integrations(self, corp_name: str):
        return self._request("GET", f"/corps/{_seg(corp_name)}/integrations")

    def list_site_integrations(self, corp_name: str, site_name: str):
        return self._request("GET", f"/corps/{_seg(corp_name)}/sites/{_seg(site_name)}/integrations")

    def create_corp_integration(self, corp_name: str, integration_data: Dict[str, Any]):
        return self._request("POST", f"/corps/{_seg(corp_name)}/integrations", payload=integration_data)

    def create_site_integration(self, corp_name: str, site_name: str, integration_data: Dict[str, Any]):
        return self._request(
            "POST",
            f"/corps/{_seg(corp_name)}/sites/{_seg(site_name)}/integrations",
            payload=integration_data,
        )

    # -- analytics ----------------------------------------------------------

    def get_top_attacks(self, corp_name: str, site_name: str, from_=None, until=None, group_by=None, limit=None):
        return self._request(
            "GET",
            f"/corps/{_seg(corp_name)}/sites/{_seg(site_name)}/top/attacks",
            query={"from": from_, "until": until, "groupBy": group_by, "limit": limit},
        )

    def get_timeseries_requests(self, corp_name: str, site_name: str, from_, until, tags=None, rollup=None):
        return self._request(
            "GET",
            f"/corps/{_seg(corp_name)}/sites/{_seg(site_name)}/timeseries/requests",
            query={"from": from_, "until": until, "tags": tags, "rollup": rollup},
        )

    # -- CloudWAF -----------------------------------------------------------

    def list_cloudwaf_instances(self, corp_name: str):
        return self._request("GET", f"/corps/{_seg(corp_name)}/cloudwafInstances")

    def create_cloudwaf_instance(self, corp_name: str, instance_data: Dict[str, Any]):
        return self._request("POST", f"/corps/{_seg(corp_name)}/cloudwafInstances", payload=instance_data)

    def get_cloudwaf_instance(self, corp_name: str, deployment_id: str):
        return self._request("GET", f"/corps/{_seg(corp_name)}/cloudwafInstances/{_seg(deployment_id)}")

    def update_cloudwaf_instance(self, corp_name: str, deployment_id: str, instance_data: Dict[str, Any]):
        return self._request(
            "PUT",
            f"/corps/{_seg(corp_name)}/cloudwafInstances/{_seg(deployment_id)}",
            payload=instance_data,
        )

    def delete_cloudwaf_instance(self, corp_name: str, deployment_id: str):
        return self._delete(f"/corps/{_seg(corp_name)}/cloudwafInstances/{_seg(deployment_id)}")

    # -- users --------------------------------------------------------------

    def list_corp_users(self, corp_name: str):
        return self._request("GET", f"/corps/{_seg(corp_name)}/users")

    def get_corp_user(self, corp_name: str, user_email: str):
        return self._request("GET", f"/corps/{_seg(corp_name)}/users/{_seg(user_email)}")

    def update_corp_user(self, corp_name: str, user_email: str, user_data: Dict[str, Any]):
        return self._request("PATCH", f"/corps/{_seg(corp_name)}/users/{_seg(user_email)}", payload=user_data)

    def invite_corp_user(self, corp_name: str, user_email: str, user_data: Dict[str, Any]):
        return self._request(
            "POST",
            f"/corps/{_seg(corp_name)}/users/{_seg(user_email)}/invite",
            payload=user_data,
        )

    def delete_corp_user(self, corp_name: str, user_email: str):
        return self._delete(f"/corps/{_seg(corp_name)}/users/{_seg(user_email)}")
