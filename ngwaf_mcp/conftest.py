import io
import json
import urllib.error
import urllib.parse
import urllib.request

import pytest

from ngwaf_mcp.client import NGWAFClient
from ngwaf_mcp.dispatcher import Dispatcher
from ngwaf_mcp.session import Session

BASE_URL = "https://ngwaf.test/api/v0"
BASE_PATH = "/api/v0"


class _FakeResponse:
    def __init__(self, body: bytes, status: int = 200):
        self._body = body
        self.status = status

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def read(self):
        return self._body


class FakeApi:
    """Stands in for urllib.request.urlopen and records every request."""

    def __init__(self):
        self.requests = []
        self.routes = {}
        self.network_error = None

    def respond(self, method, path, body=None, status=200):
        self.routes[(method, path)] = (status, body)

    def __call__(self, req, timeout=0, context=None):
        parts = urllib.parse.urlsplit(req.full_url)
        path = parts.path[len(BASE_PATH):]
        self.requests.append(
            {
                "method": req.get_method(),
                "path": path,
                "query": urllib.parse.parse_qs(parts.query, keep_blank_values=True),
                "raw_query": parts.query,
                "headers": dict(req.header_items()),
                "body": json.loads(req.data.decode("utf-8")) if req.data else None,
                "timeout": timeout,
            }
        )
        if isinstance(self.network_error, BaseException):
            raise self.network_error
        if self.network_error is not None:
            raise urllib.error.URLError(self.network_error)

        status, body = self.routes.get((req.get_method(), path), (200, {"data": []}))
        if body is None:
            raw = b""
        elif isinstance(body, bytes):
            raw = body
        else:
            raw = json.dumps(body).encode("utf-8")
        if status >= 400:
            raise urllib.error.HTTPError(req.full_url, status, "error", {}, io.BytesIO(raw))
        return _FakeResponse(raw, status)

    @property
    def last(self):
        return self.requests[-1]


@pytest.fixture
def fake_api(monkeypatch):
    api = FakeApi()
    monkeypatch.setattr(urllib.request, "urlopen", api)
    return api


@pytest.fixture
def client():
    return NGWAFClient("a@b.com", "t1", base_url=BASE_URL)


@pytest.fixture
def anonymous_client():
    return NGWAFClient(base_url=BASE_URL)


@pytest.fixture
def session(client):
    return Session(client)


@pytest.fixture
def dispatcher(session):
    return Dispatcher(session)
