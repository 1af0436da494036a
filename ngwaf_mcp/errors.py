"""Error taxonomy for tool invocations.

Every failure a tool call can end in is one of these. The dispatcher turns
them into ``{"error": message}`` envelopes and keeps ``code`` for the audit log.
"""
from __future__ import annotations

from typing import Optional


class NGWAFError(Exception):
    """Base exception for all tool invocation failures."""

    code = "INTERNAL_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotAuthenticatedError(NGWAFError):
    code = "NOT_AUTHENTICATED"

    def __init__(self, message: str = "Please set credentials first using the set_credentials tool."):
        super().__init__(message)


class InvalidCredentialsError(NGWAFError):
    code = "INVALID_CREDENTIALS"

    def __init__(self, message: str = "Invalid email or API token. Please check your credentials."):
        super().__init__(message)


class MissingOrganizationError(NGWAFError):
    code = "MISSING_ORGANIZATION"

    def __init__(
        self,
        message: str = "Corporation name is required. Please set context or provide corpName parameter.",
    ):
        super().__init__(message)


class MissingSiteError(NGWAFError):
    code = "MISSING_SITE"

    def __init__(
        self,
        message: str = "Site name is required. Please set context or provide siteName parameter.",
    ):
        super().__init__(message)


class UnknownOperationError(NGWAFError):
    code = "UNKNOWN_OPERATION"

    def __init__(self, name: str):
        super().__init__(f"Unknown tool: {name}")
        self.name = name


class InvalidArgumentsError(NGWAFError):
    code = "INVALID_ARGUMENTS"


class RemoteOperationFailedError(NGWAFError):
    """Non-2xx response or transport failure from the remote API.

    Attributes:
        status_code: HTTP status when a response was received, else None
    """

    code = "REMOTE_OPERATION_FAILED"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
