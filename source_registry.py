"""
source_registry.py
==================
Ordered collection of configured sources with a merged, de-duplicated
lookup of listings by package name.

  - Sources are queried concurrently, bounded by a fixed worker count.
  - At most one fetch is in flight per ``(name, source)``; concurrent
    callers await the same task.
  - Results are cached per name for ``cache_ttl`` seconds. ``invalidate``
    is the only way to drop them early.
  - A failing source is logged and recorded, never fatal to the lookup.
  - When two sources disagree on one version's dependencies, the
    higher-priority listing wins and a MetadataConflict is recorded.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from exceptions import DropperError, ExtractionError, ExtractionErrorKind, TransportError
from plugin_apis import PluginSource, SearchHit, Transport, fetch_with_retry
from plugin_extractors import PackageListing
from plugin_versions import VersionSpec, package_key

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    listings: List[PackageListing]
    expires_at: float


@dataclass
class MetadataConflict:
    """Two sources report different dependencies for the same version."""

    name: str
    version: VersionSpec
    winner: PackageListing
    loser: PackageListing

    def describe(self) -> str:
        def deps(listing: PackageListing) -> str:
            return ", ".join(str(d) for d in listing.dependencies) or "none"

        return (
            f"{self.name} {self.version}: {self.winner.source_id} declares [{deps(self.winner)}], "
            f"{self.loser.source_id} declares [{deps(self.loser)}]; using {self.winner.source_id}"
        )


@dataclass
class SourceFailure:
    name: str
    source_id: str
    error: DropperError

    @property
    def is_miss(self) -> bool:
        """The source simply does not host the package."""
        if isinstance(self.error, TransportError):
            return self.error.not_found
        if isinstance(self.error, ExtractionError):
            return self.error.kind is ExtractionErrorKind.EMPTY
        return False

    def describe(self) -> str:
        return f"{self.source_id}: {self.error}"


class SourceRegistry:
    """Merged listing lookup across all configured sources."""

    def __init__(
        self,
        sources: Sequence[PluginSource],
        transport: Transport,
        cache_ttl: float = 600.0,
        max_workers: int = 4,
        attempts: int = 3,
        backoff: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.sources: List[PluginSource] = sorted(sources, key=lambda s: s.priority)
        self.transport = transport
        self.cache_ttl = cache_ttl
        self.max_workers = max(1, max_workers)
        self.attempts = attempts
        self.backoff = backoff
        self._clock = clock
        self._cache: Dict[str, CacheEntry] = {}
        self._inflight: Dict[Tuple[str, str], asyncio.Task] = {}
        self._semaphore: Optional[asyncio.Semaphore] = None
        self.conflicts: List[MetadataConflict] = []
        self.failures: List[SourceFailure] = []

    @property
    def priorities(self) -> Dict[str, int]:
        return {s.source_id: s.priority for s in self.sources}

    # ── Fetching ──────────────────────────────

    async def _bounded_fetch(self, url: str) -> bytes:
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.max_workers)
        async with self._semaphore:
            return await self.transport.fetch(url)

    async def fetch(self, url: str) -> bytes:
        """Bounded, retrying fetch shared by every source."""
        return await fetch_with_retry(self._bounded_fetch, url, self.attempts, self.backoff)

    async def _query(self, name: str, source: PluginSource) -> List[PackageListing]:
        try:
            document = await source.fetch_document(name, self.fetch)
            listings = source.extractor.extract(document, name)
        except (TransportError, ExtractionError) as exc:
            self._record_failure(name, source, exc)
            return []
        except ValueError as exc:
            error = ExtractionError(ExtractionErrorKind.MALFORMED, source.source_id, str(exc))
            self._record_failure(name, source, error)
            return []
        logger.debug("[%s] %d listing(s) for %s", source.source_id, len(listings), name)
        return listings

    def _record_failure(self, name: str, source: PluginSource, error: DropperError) -> None:
        failure = SourceFailure(name, source.source_id, error)
        self.failures.append(failure)
        if failure.is_miss:
            logger.debug("[%s] has no listing for %s", source.source_id, name)
        else:
            logger.warning("[%s] lookup of %s failed: %s", source.source_id, name, error)

    async def _source_listings(self, name: str, source: PluginSource) -> List[PackageListing]:
        key = (package_key(name), source.source_id)
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._query(name, source))
            self._inflight[key] = task
            task.add_done_callback(lambda _t, k=key: self._inflight.pop(k, None))
        return await asyncio.shield(task)

    # ── Lookup ────────────────────────────────

    def cached(self, name: str) -> Optional[List[PackageListing]]:
        """Fresh cached listings for ``name``, or None."""
        entry = self._cache.get(package_key(name))
        if entry is None:
            return None
        if self._clock() > entry.expires_at:
            del self._cache[package_key(name)]
            return None
        return list(entry.listings)

    async def listings_for(self, name: str) -> List[PackageListing]:
        """Listings for ``name`` across all sources, priority order, de-duplicated."""
        hit = self.cached(name)
        if hit is not None:
            return hit

        results = await asyncio.gather(*(self._source_listings(name, s) for s in self.sources))

        # A concurrent caller may have merged the same results already
        hit = self.cached(name)
        if hit is not None:
            return hit

        merged = self._merge(name, results)
        self._cache[package_key(name)] = CacheEntry(merged, self._clock() + self.cache_ttl)
        return list(merged)

    def _merge(self, name: str, per_source: Sequence[List[PackageListing]]) -> List[PackageListing]:
        ordered = sorted(
            (listing for listings in per_source for listing in listings),
            key=lambda l: (self.priorities.get(l.source_id, len(self.sources)), l.confidence.rank),
        )
        merged: List[PackageListing] = []
        seen = set()
        authoritative: Dict[VersionSpec, PackageListing] = {}
        for listing in ordered:
            if listing.key in seen:
                continue
            seen.add(listing.key)
            merged.append(listing)
            if not self._declares_dependencies(listing.source_id):
                continue
            winner = authoritative.setdefault(listing.version, listing)
            if winner is not listing and winner.dependency_signature != listing.dependency_signature:
                conflict = MetadataConflict(name, listing.version, winner, listing)
                self.conflicts.append(conflict)
                logger.warning("Metadata conflict: %s", conflict.describe())
        return merged

    def _declares_dependencies(self, source_id: str) -> bool:
        for source in self.sources:
            if source.source_id == source_id:
                return source.extractor.declares_dependencies
        return True

    def failures_for(self, name: str) -> List[SourceFailure]:
        key = package_key(name)
        return [f for f in self.failures if package_key(f.name) == key]

    def invalidate(self, name: Optional[str] = None) -> None:
        """Drop cached listings for one name, or for every name."""
        if name is None:
            logger.debug("Invalidating the whole listing cache (%d names)", len(self._cache))
            self._cache.clear()
        else:
            self._cache.pop(package_key(name), None)

    # ── Search ────────────────────────────────

    async def search(self, query: str, limit: int = 20) -> List[SearchHit]:
        async def one(source: PluginSource) -> List[SearchHit]:
            try:
                return await source.search(query, self.fetch, limit)
            except (TransportError, ExtractionError) as exc:
                self._record_failure(query, source, exc)
            except (ValueError, AttributeError) as exc:
                error = ExtractionError(ExtractionErrorKind.MALFORMED, source.source_id, str(exc))
                self._record_failure(query, source, error)
            return []

        results = await asyncio.gather(*(one(s) for s in self.sources))
        hits = [hit for group in results for hit in group]
        hits.sort(key=lambda h: (self.priorities.get(h.source_id, 0), -h.downloads))
        return hits
