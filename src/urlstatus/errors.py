# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""URL Status exception hierarchy.

All package errors inherit from UrlStatusError, allowing callers to catch
the base class for any failure or specific subclasses for targeted handling.
"""

from __future__ import annotations


class UrlStatusError(Exception):
    """Base exception for all URL Status errors."""


class ConfigurationError(UrlStatusError):
    """Required settings (token, database, URL property) are absent."""


class MalformedURLError(UrlStatusError):
    """URL could not be parsed.  Callers fall back to permissive defaults."""


class LookupServiceError(UrlStatusError):
    """Remote record store query failed."""

    def __init__(self, message: str, *, status_code: int = 0) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthError(LookupServiceError):
    """Record store rejected the credentials (HTTP 401)."""

    def __init__(self, message: str = "Authentication failed.", *, status_code: int = 401) -> None:
        super().__init__(message, status_code=status_code)


class TransientNetworkError(LookupServiceError):
    """Connection, timeout, or other transport failure.  Not retried by the core."""
