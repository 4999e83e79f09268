# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Classification engine: cache + rules + Lookup Service → one status per URL.

Two entry points:

- ``cache_only(url)``: passive navigation.  Never calls the Lookup Service.
- ``reconcile(url)``: manual refresh / auto-check.  Always asks the Lookup
  Service, even when the cache is conclusive, because delta sync cannot see
  remote deletions.

Cache evidence priority (first match wins):

1. GREEN on a variant of the URL → GREEN; variants not yet pointing at the
   canonical URL are backfilled.
2. ORANGE on any candidate URL, or GREEN on an ancestor → ORANGE.
3. Every candidate URL cached RED → RED.
4. Otherwise inconclusive: aggressive scan (if enabled) or GRAY.

Aggressive scan: an unexpired GREEN entry on the same host whose path starts
with a candidate URL's path counts as related.  This ignores the granularity of
the rule that owns the GREEN URL's domain, so it can report ORANGE at a
coarser level than that rule would.  This looser match is what aggressive
mode is for.

Every failure inside a classification becomes a GRAY result; nothing
escapes ``cache_only``/``reconcile``.  Concurrent classifications of the
same URL are dropped (return None), not queued.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from urllib.parse import SplitResult, urlsplit

from . import EXCLUDED_TEXT, ClassificationResult, Status
from .ancestors import generate_ancestors
from .cache import CacheEntry, ClassificationCache
from .config import Settings, SettingsStore
from .errors import AuthError, ConfigurationError, LookupServiceError
from .lookup import LookupServiceProtocol
from .rules import Disabled, Resolution, resolve_rule
from .status import StatusSink
from .variants import generate_variants

logger = logging.getLogger(__name__)

CHECKING_TEXT = "Checking with the database..."
UNCLEAR_TEXT = "Cached status unclear. Run a check against the database."
NO_URL_TEXT = "No URL available"
AUTH_FAILED_TEXT = "Authentication failed."
AUTH_REQUIRED_TEXT = "Authentication required. Log in again to resume checks."


def _unique(urls: list[str]) -> list[str]:
    return list(dict.fromkeys(u for u in urls if u))


# ---------------------------------------------------------------------------
# Internal: plan + cache verdict
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class _Plan:
    """Everything derived from the URL and settings before any I/O."""

    url: str
    settings: Settings
    resolution: Resolution
    variants: list[str]
    ancestors: list[str]

    @property
    def candidates(self) -> list[str]:
        return _unique(self.variants + self.ancestors)

    @property
    def allows_partials(self) -> bool:
        return self.resolution.allows_partials


@dataclass(slots=True)
class _CacheVerdict:
    green: CacheEntry | None = None
    green_url: str = ""
    orange: bool = False
    matching_urls: list[str] = field(default_factory=list)
    misses: int = 0

    @property
    def state(self) -> Status | None:
        """Conclusive state, or None when the cache is inconclusive."""
        if self.green is not None:
            return Status.GREEN
        if self.orange:
            return Status.ORANGE
        if self.misses == 0:
            return Status.RED
        return None


def _web_key(parsed: SplitResult) -> tuple:
    return (parsed.scheme.lower(), parsed.hostname, parsed.port, parsed.path or "/", parsed.query)


def _try_split(url: str) -> SplitResult | None:
    try:
        parsed = urlsplit(url)
        parsed.port  # noqa: B018 - raises ValueError on a bad port
    except ValueError:
        logger.warning("Skipping unparseable URL in aggressive scan: %s", url)
        return None
    return parsed


# ---------------------------------------------------------------------------
# ClassificationEngine
# ---------------------------------------------------------------------------


class ClassificationEngine:
    """Answers "what is the state of URL X" from cache and Lookup Service.

    Collaborators are injected so tests can supply in-memory fakes.
    """

    def __init__(
        self,
        cache: ClassificationCache,
        lookup: LookupServiceProtocol,
        settings_store: SettingsStore,
        *,
        sink: StatusSink | None = None,
    ) -> None:
        self._cache = cache
        self._lookup = lookup
        self._settings_store = settings_store
        self._sink = sink
        self._in_flight: set[str] = set()

    @property
    def in_flight(self) -> frozenset[str]:
        return frozenset(self._in_flight)

    @property
    def cache(self) -> ClassificationCache:
        return self._cache

    # -- Public API --

    async def cache_only(self, url: str) -> ClassificationResult | None:
        """Classify *url* from the cache alone."""
        return await self._run(url, reconcile=False)

    async def reconcile(self, url: str) -> ClassificationResult | None:
        """Classify *url* against the Lookup Service, updating the cache."""
        return await self._run(url, reconcile=True)

    async def clear_cache(self, url: str) -> bool:
        """Forget the cached entry for *url*.  Returns True when one existed."""
        removed = await self._cache.remove(url)
        logger.info("Cache entry for %s %s", url, "removed" if removed else "not present")
        return removed

    async def clear_all(self) -> int:
        """Forget every cached entry.  Returns the number removed."""
        return await self._cache.clear()

    # -- Orchestration --

    async def _run(self, url: str, *, reconcile: bool) -> ClassificationResult | None:
        mode = "reconcile" if reconcile else "cache-only"
        if not url:
            logger.warning("Empty URL, reporting GRAY")
            return await self._emit(ClassificationResult(url="", state=Status.GRAY, text=NO_URL_TEXT))

        if url in self._in_flight:
            logger.debug("[%s] Already classifying %s, dropping request", mode, url)
            return None
        self._in_flight.add(url)
        logger.debug("[%s] Starting classification of %s", mode, url)
        try:
            try:
                if reconcile:
                    result = await self._reconcile(url)
                else:
                    result = await self._cache_only(url)
            except ConfigurationError as e:
                logger.error("[%s] %s", mode, e)
                result = ClassificationResult(
                    url=url,
                    state=Status.GRAY,
                    error=str(e),
                    needs_authentication=await self._needs_authentication(),
                )
            except AuthError as e:
                await self._on_auth_failure(e)
                result = ClassificationResult(
                    url=url,
                    state=Status.GRAY,
                    text=AUTH_FAILED_TEXT,
                    error=str(e),
                    needs_authentication=True,
                )
            except LookupServiceError as e:
                logger.error("[%s] Lookup failed for %s: %s", mode, url, e)
                result = ClassificationResult(url=url, state=Status.GRAY, error=str(e))
            except Exception as e:
                logger.exception("[%s] Unexpected error classifying %s", mode, url)
                result = ClassificationResult(url=url, state=Status.GRAY, error=str(e) or type(e).__name__)
            logger.info("[%s] %s → %s", mode, url, result.state.value)
            return await self._emit(result)
        finally:
            self._in_flight.discard(url)

    async def _emit(self, result: ClassificationResult) -> ClassificationResult:
        if self._sink is not None:
            try:
                await self._sink.publish(result)
            except Exception:
                logger.exception("Status sink failed to publish result for %s", result.url)
        return result

    async def _needs_authentication(self) -> bool:
        try:
            return await self._settings_store.needs_authentication()
        except Exception:
            logger.exception("Cannot read re-authentication flag")
            return False

    async def _on_auth_failure(self, error: AuthError) -> None:
        logger.error("Authentication failed (%s); clearing credentials", error)
        try:
            await self._settings_store.clear_credentials()
            await self._settings_store.set_needs_authentication(True)
        except Exception:
            logger.exception("Failed to clear credentials after authentication failure")

    async def _prepare(self, url: str) -> _Plan | ClassificationResult:
        settings = await self._settings_store.load()
        settings.require_configured()
        if await self._settings_store.needs_authentication():
            logger.warning("Re-authentication required, not classifying %s", url)
            return ClassificationResult(url=url, state=Status.GRAY, text=AUTH_REQUIRED_TEXT, needs_authentication=True)
        self._cache.cache_duration = settings.cache_duration

        resolution = resolve_rule(url, settings.rules())
        if isinstance(resolution, Disabled):
            logger.info("URL excluded by domain rules: %s", url)
            return ClassificationResult(url=url, state=Status.GRAY, text=EXCLUDED_TEXT, domain_excluded=True)

        variants = generate_variants(url)
        ancestors = [] if resolution.match_only_self else generate_ancestors(url, resolution)
        ancestors = [a for a in _unique(ancestors) if a not in variants]
        logger.debug("Probing %s: variants=%s ancestors=%s", url, variants, ancestors)
        return _Plan(url=url, settings=settings, resolution=resolution, variants=variants, ancestors=ancestors)

    # -- Cache evidence --

    async def _read_cache(self, plan: _Plan) -> _CacheVerdict:
        entries = await self._cache.bulk_get(plan.candidates)
        variant_set = set(plan.variants)
        verdict = _CacheVerdict()
        for candidate_url, entry in entries.items():
            if entry is None:
                verdict.misses += 1
                continue
            if entry.status == Status.GREEN:
                if candidate_url in variant_set:
                    if verdict.green is None:
                        verdict.green = entry
                        verdict.green_url = candidate_url
                else:
                    verdict.orange = True
                    verdict.matching_urls.append(entry.canonical_url or candidate_url)
            elif entry.status == Status.ORANGE:
                verdict.orange = True
                verdict.matching_urls.extend(entry.matching_urls)
        verdict.matching_urls = _unique(verdict.matching_urls)
        logger.debug(
            "Cache verdict for %s: green=%s orange=%s misses=%d",
            plan.url,
            verdict.green is not None,
            verdict.orange,
            verdict.misses,
        )
        return verdict

    def _green_result(self, plan: _Plan, verdict: _CacheVerdict, **kwargs) -> ClassificationResult:
        assert verdict.green is not None
        return ClassificationResult(
            url=plan.url,
            state=Status.GREEN,
            canonical_url=verdict.green.canonical_url or verdict.green_url,
            record_url=verdict.green.record_url,
            **kwargs,
        )

    async def _backfill_variants(self, plan: _Plan, verdict: _CacheVerdict, canonical_url: str) -> None:
        assert verdict.green is not None
        current = await self._cache.bulk_get(plan.variants)
        stale = [
            v
            for v, entry in current.items()
            if entry is None or entry.status != Status.GREEN or entry.canonical_url != canonical_url
        ]
        if stale:
            await self._cache.put_many(
                stale,
                Status.GREEN,
                canonical_url=canonical_url,
                record_url=verdict.green.record_url,
            )
            logger.debug("Backfilled %d variants of %s", len(stale), plan.url)

    def _aggressive_matches(self, plan: _Plan, fresh: dict[str, CacheEntry]) -> list[str]:
        candidates = [p for p in (_try_split(u) for u in plan.candidates) if p is not None and p.hostname]
        matches: list[str] = []
        for key, entry in fresh.items():
            green_url = entry.canonical_url or key
            green = _try_split(green_url)
            if green is None or not green.hostname:
                continue
            for candidate in candidates:
                if (
                    candidate.hostname == green.hostname
                    and green.path.startswith(candidate.path)
                    and _web_key(candidate) != _web_key(green)
                ):
                    matches.append(green_url)
                    break
        return _unique(matches)

    # -- cache_only --

    async def _cache_only(self, url: str) -> ClassificationResult:
        plan = await self._prepare(url)
        if isinstance(plan, ClassificationResult):
            return plan

        verdict = await self._read_cache(plan)
        state = verdict.state

        if state == Status.GREEN:
            result = self._green_result(plan, verdict)
            await self._backfill_variants(plan, verdict, result.canonical_url)
            return result
        if state == Status.ORANGE:
            return ClassificationResult(url=url, state=Status.ORANGE, matching_urls=verdict.matching_urls)
        if state == Status.RED:
            return ClassificationResult(url=url, state=Status.RED)

        if not plan.settings.aggressive_caching_enabled:
            return ClassificationResult(url=url, state=Status.GRAY, text=UNCLEAR_TEXT)

        fresh = await self._cache.fresh_green_entries()
        matches = self._aggressive_matches(plan, fresh) if fresh and plan.allows_partials else []
        logger.debug("Aggressive scan of %d GREEN entries for %s: %d matches", len(fresh), url, len(matches))
        if matches:
            await self._cache.put(url, Status.ORANGE, matching_urls=matches)
            return ClassificationResult(url=url, state=Status.ORANGE, matching_urls=matches)
        await self._cache.put(url, Status.RED)
        return ClassificationResult(url=url, state=Status.RED)

    # -- reconcile --

    async def _provisional(self, plan: _Plan) -> ClassificationResult:
        verdict = await self._read_cache(plan)
        state = verdict.state
        if state == Status.GREEN:
            return self._green_result(plan, verdict, text=CHECKING_TEXT, provisional=True)
        if state == Status.ORANGE:
            return ClassificationResult(
                url=plan.url,
                state=Status.ORANGE,
                text=CHECKING_TEXT,
                matching_urls=verdict.matching_urls,
                provisional=True,
            )
        return ClassificationResult(
            url=plan.url,
            state=state or Status.GRAY,
            text=CHECKING_TEXT,
            provisional=True,
        )

    async def _reconcile(self, url: str) -> ClassificationResult:
        plan = await self._prepare(url)
        if isinstance(plan, ClassificationResult):
            return plan

        await self._emit(await self._provisional(plan))

        records = await self._lookup.query_exists(plan.variants)
        if records:
            first = records[0]
            canonical_url = first.url or plan.variants[0]
            await self._cache.put_many(
                plan.variants,
                Status.GREEN,
                canonical_url=canonical_url,
                record_url=first.record_url,
            )
            return ClassificationResult(
                url=url,
                state=Status.GREEN,
                canonical_url=canonical_url,
                record_url=first.record_url,
            )

        await self._cache.mark_red(plan.variants)

        if plan.ancestors and plan.allows_partials:
            found = [r for r in await self._lookup.query_exists(plan.ancestors) if r.url]
            if found:
                matching = _unique([r.url for r in found])
                await self._cache.put(url, Status.ORANGE, matching_urls=matching)
                for record in {r.url: r for r in found}.values():
                    await self._cache.put(
                        record.url,
                        Status.GREEN,
                        canonical_url=record.url,
                        record_url=record.record_url,
                    )
                return ClassificationResult(url=url, state=Status.ORANGE, matching_urls=matching)
            await self._cache.mark_red(plan.ancestors)

        await self._cache.put(url, Status.RED)
        return ClassificationResult(url=url, state=Status.RED)
