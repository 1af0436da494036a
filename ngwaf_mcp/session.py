"""Session state: credentials, default corp/site context, and context resolution.

A ``Session`` is the only mutable state in the server. Credentials and
context are frozen snapshots; setters swap the whole snapshot under a lock so
a reader never sees a half-written pair.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Optional, Tuple, Union

from .errors import MissingOrganizationError, MissingSiteError


@dataclass(frozen=True)
class Credentials:
    email: str
    token: str


@dataclass(frozen=True)
class Context:
    corp_name: Optional[str] = None
    site_name: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            "defaultCorpName": self.corp_name,
            "defaultSiteName": self.site_name,
        }


@dataclass(frozen=True)
class CorpScope:
    corp_name: str


@dataclass(frozen=True)
class SiteScope:
    corp_name: str
    site_name: str


Scope = Union[CorpScope, SiteScope]


# ---------------------------------------------------------------------------
# Context store
# ---------------------------------------------------------------------------


class ContextStore:
    """Process-lifetime default corp/site.

    ``set_defaults`` overwrites both fields; omitting ``site_name`` clears it.
    No validation happens here.
    """

    def __init__(self, corp_name: Optional[str] = None, site_name: Optional[str] = None):
        self._lock = threading.Lock()
        self._context = Context(corp_name or None, site_name or None)

    def set_defaults(self, corp_name: Optional[str], site_name: Optional[str] = None) -> Context:
        snapshot = Context(corp_name or None, site_name or None)
        with self._lock:
            self._context = snapshot
        return snapshot

    def get_defaults(self) -> Context:
        return self._context


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


def resolve_context(
    explicit_corp: Optional[str],
    explicit_site: Optional[str],
    defaults: Context,
) -> Tuple[str, Optional[str]]:
    """Merge explicit arguments with stored defaults.

    Explicit values always win. A corp is mandatory; an unresolved site comes
    back as None and callers that need one use ``require_site``.
    """
    corp_name = explicit_corp or defaults.corp_name
    site_name = explicit_site or defaults.site_name
    if not corp_name:
        raise MissingOrganizationError()
    return corp_name, site_name or None


def require_site(site_name: Optional[str]) -> str:
    if not site_name:
        raise MissingSiteError()
    return site_name


def resolve_scope(
    explicit_corp: Optional[str],
    explicit_site: Optional[str],
    defaults: Context,
) -> Scope:
    """Corp-or-site operations: a resolved site selects the site-level endpoint."""
    corp_name, site_name = resolve_context(explicit_corp, explicit_site, defaults)
    if site_name:
        return SiteScope(corp_name, site_name)
    return CorpScope(corp_name)


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class Session:
    """One logical caller session: a gateway client plus its context store.

    Credentials live on the client (it needs them on every request); the
    session only forwards to it.
    """

    def __init__(self, client, context: Optional[ContextStore] = None):
        self.client = client
        self.context = context or ContextStore()

    @property
    def authenticated(self) -> bool:
        return self.client.credentials is not None

    def set_credentials(self, email: str, token: str) -> Credentials:
        return self.client.set_credentials(email, token)

    def resolve(self, args: dict) -> Tuple[str, Optional[str]]:
        return resolve_context(args.get("corpName"), args.get("siteName"), self.context.get_defaults())

    def resolve_site(self, args: dict) -> Tuple[str, str]:
        corp_name, site_name = self.resolve(args)
        return corp_name, require_site(site_name)

    def resolve_scope(self, args: dict) -> Scope:
        return resolve_scope(args.get("corpName"), args.get("siteName"), self.context.get_defaults())
