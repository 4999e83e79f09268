# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Notion-backed Lookup Service.

Queries a Notion database whose URL property holds the stored URLs:

- existence: ``POST /databases/{id}/query`` with an OR filter of
  ``{"property": name, "url": {"equals": u}}`` (at most 100 URLs per request)
- full listing: the same endpoint without a filter, paginated by cursor
- delta listing: ``{"property": last_edited, "date": {"on_or_after": iso}}``
- token check: ``GET /users/me``
- settings helpers: ``POST /search`` (databases) and ``GET /databases/{id}``
  (URL and last-edited-time property names)

Credentials and database coordinates come from ``SettingsStore`` on every
request so a re-login takes effect without rebuilding the client.

Error mapping:
- 401 → ``AuthError``
- 429 and 5xx → ``TransientNetworkError`` (status code kept)
- any other non-2xx → ``LookupServiceError``
- ``httpx.TransportError`` (connect, read timeout, ...) → ``TransientNetworkError``
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import UTC, datetime
from types import TracebackType
from typing import Any

import httpx

from .config import Settings, SettingsStore
from .errors import AuthError, ConfigurationError, LookupServiceError, TransientNetworkError
from .lookup import PAGE_SIZE, Record, RecordPage, chunked

try:
    from importlib.metadata import version as _pkg_version

    _URLSTATUS_VERSION = _pkg_version("urlstatus")
except Exception:
    _URLSTATUS_VERSION = "unknown"

logger = logging.getLogger(__name__)

NOTION_VERSION = "2022-06-28"
USER_AGENT = f"urlstatus/{_URLSTATUS_VERSION}"
MAX_SEARCH_PAGES = 50
UNTITLED_DATABASE = "Untitled Database"


def _parse_time(value: Any) -> float | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return None


def _plain_title(title: Any) -> str:
    if isinstance(title, list):
        text = "".join(part.get("plain_text") or "" for part in title if isinstance(part, dict)).strip()
        if text:
            return text
    return UNTITLED_DATABASE


def to_iso(timestamp: float) -> str:
    """Epoch seconds → ISO-8601 UTC with millisecond precision (``...Z``)."""
    dt = datetime.fromtimestamp(timestamp, tz=UTC)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _record_from_page(page: dict[str, Any], property_name: str, last_edited_property: str) -> Record:
    properties = page.get("properties") or {}
    url_prop = properties.get(property_name) or {}
    url = url_prop.get("url") if isinstance(url_prop, dict) else None

    last_edited = None
    if last_edited_property:
        edited_prop = properties.get(last_edited_property) or {}
        if isinstance(edited_prop, dict):
            last_edited = _parse_time(edited_prop.get("last_edited_time"))
    if last_edited is None:
        last_edited = _parse_time(page.get("last_edited_time"))

    return Record(
        url=url or "",
        record_url=page.get("url") or "",
        record_id=page.get("id") or "",
        last_edited=last_edited,
    )


class NotionLookupService:
    """``LookupServiceProtocol`` over the Notion REST API.

    Pass *client* to reuse a pooled ``httpx.AsyncClient`` (tests pass one
    built on ``httpx.MockTransport``); otherwise one is created lazily and
    closed by ``aclose()``.
    """

    def __init__(self, settings_store: SettingsStore, *, client: httpx.AsyncClient | None = None) -> None:
        self._settings_store = settings_store
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> NotionLookupService:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # -- HTTP --

    def _get_client(self, settings: Settings) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=settings.request_timeout)
        return self._client

    async def _settings(self) -> Settings:
        settings = await self._settings_store.load()
        settings.require_configured()
        return settings

    async def _request(self, settings: Settings, method: str, path: str, body: dict[str, Any] | None = None) -> dict:
        url = settings.api_base_url.rstrip("/") + path
        headers = {
            "Authorization": f"Bearer {settings.integration_token}",
            "Notion-Version": NOTION_VERSION,
            "User-Agent": USER_AGENT,
        }
        client = self._get_client(settings)
        try:
            response = await client.request(method, url, headers=headers, json=body)
        except httpx.TransportError as e:
            logger.error("Record store request failed: %s %s: %s", method, path, e)
            raise TransientNetworkError(f"Network error: {e}") from e

        if response.status_code == 401:
            logger.error("Record store rejected credentials (401) for %s %s", method, path)
            raise AuthError()
        if response.is_success:
            try:
                return response.json()
            except ValueError as e:
                raise LookupServiceError(f"Invalid JSON from record store: {e}", status_code=response.status_code) from e

        message = f"Record store error: {response.status_code} {response.reason_phrase}"
        detail = response.text.strip()
        if detail:
            message = f"{message} - {detail[:200]}"
        logger.error("%s (%s %s)", message, method, path)
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientNetworkError(message, status_code=response.status_code)
        raise LookupServiceError(message, status_code=response.status_code)

    async def _query(self, settings: Settings, body: dict[str, Any]) -> dict:
        return await self._request(settings, "POST", f"/databases/{settings.database_id}/query", body)

    def _records(self, settings: Settings, data: dict) -> list[Record]:
        return [
            _record_from_page(page, settings.property_name, settings.last_edited_property_name)
            for page in data.get("results") or []
            if isinstance(page, dict)
        ]

    def _page(self, settings: Settings, data: dict) -> RecordPage:
        has_more = bool(data.get("has_more"))
        return RecordPage(
            records=self._records(settings, data),
            has_more=has_more,
            next_cursor=data.get("next_cursor") if has_more else None,
        )

    # -- LookupServiceProtocol --

    async def query_exists(self, urls: Sequence[str]) -> list[Record]:
        """Records whose URL property equals any of *urls*, one request per 100 URLs."""
        urls = list(dict.fromkeys(u for u in urls if u))
        if not urls:
            return []
        settings = await self._settings()
        found: list[Record] = []
        for chunk in chunked(urls):
            body = {
                "filter": {"or": [{"property": settings.property_name, "url": {"equals": u}} for u in chunk]},
                "page_size": PAGE_SIZE,
            }
            data = await self._query(settings, body)
            found.extend(r for r in self._records(settings, data) if r.url)
        logger.debug("query_exists: %d URLs → %d records", len(urls), len(found))
        return found

    async def query_all(self, cursor: str | None = None) -> RecordPage:
        settings = await self._settings()
        body: dict[str, Any] = {"page_size": PAGE_SIZE}
        if cursor:
            body["start_cursor"] = cursor
        return self._page(settings, await self._query(settings, body))

    async def query_modified_since(self, since: float, cursor: str | None = None) -> RecordPage:
        settings = await self._settings()
        if not settings.last_edited_property_name:
            raise LookupServiceError("last_edited_property_name is not configured")
        body: dict[str, Any] = {
            "page_size": PAGE_SIZE,
            "filter": {
                "property": settings.last_edited_property_name,
                "date": {"on_or_after": to_iso(since)},
            },
        }
        if cursor:
            body["start_cursor"] = cursor
        return self._page(settings, await self._query(settings, body))

    # -- Settings helpers (not part of the lookup protocol) --

    async def _token_settings(self) -> Settings:
        settings = await self._settings_store.load()
        if not settings.integration_token:
            raise AuthError("No integration token configured.")
        return settings

    async def verify_token(self) -> dict:
        """``GET /users/me`` with the stored token.  Returns the bot user object."""
        return await self._request(await self._token_settings(), "GET", "/users/me")

    async def list_databases(self) -> list[dict[str, str]]:
        """Databases shared with the integration, as ``{"id", "title"}`` dicts.

        ``POST /search`` filtered to databases, following cursors.
        """
        settings = await self._token_settings()
        databases: list[dict[str, str]] = []
        cursor: str | None = None
        for _ in range(MAX_SEARCH_PAGES):
            body: dict[str, Any] = {"filter": {"value": "database", "property": "object"}, "page_size": PAGE_SIZE}
            if cursor:
                body["start_cursor"] = cursor
            data = await self._request(settings, "POST", "/search", body)
            for db in data.get("results") or []:
                if isinstance(db, dict) and db.get("id"):
                    databases.append({"id": db["id"], "title": _plain_title(db.get("title"))})
            cursor = data.get("next_cursor") if data.get("has_more") else None
            if not cursor:
                break
        logger.debug("list_databases: %d databases", len(databases))
        return databases

    async def list_properties(self, database_id: str) -> dict[str, list[str]]:
        """Property names of *database_id* usable as URL and last-edited properties."""
        database_id = database_id.strip()
        if not database_id:
            raise ConfigurationError("database_id must not be empty")
        settings = await self._token_settings()
        data = await self._request(settings, "GET", f"/databases/{database_id}")
        found: dict[str, list[str]] = {"url": [], "last_edited_time": []}
        for name, prop in (data.get("properties") or {}).items():
            if isinstance(prop, dict) and prop.get("type") in found:
                found[prop["type"]].append(name)
        return found
