"""
version_index.py
================
Per-package catalogs of known versions, built from Source Registry listings.

A catalog lists one :class:`CatalogEntry` per distinct version, newest
first. Each entry holds the authoritative listing (highest-priority source,
then best confidence) plus the other sources' listings as download
fallbacks.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional

from exceptions import ResolutionError, ResolutionErrorKind
from plugin_extractors import Confidence, PackageListing
from plugin_versions import Constraint, VersionSpec, package_key

logger = logging.getLogger(__name__)


@dataclass
class CatalogEntry:
    version: VersionSpec
    listing: PackageListing
    alternates: List[PackageListing] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.listing.name

    @property
    def source_id(self) -> str:
        return self.listing.source_id

    @property
    def confidence(self) -> Confidence:
        return self.listing.confidence

    @property
    def listings(self) -> List[PackageListing]:
        """Authoritative listing first, then fallbacks in priority order."""
        return [self.listing] + self.alternates


class VersionIndex:
    """Ordered catalogs keyed by case-insensitive package name."""

    def __init__(
        self,
        listings: Iterable[PackageListing] = (),
        priorities: Optional[Mapping[str, int]] = None,
    ) -> None:
        self.priorities: Dict[str, int] = dict(priorities or {})
        self._catalogs: Dict[str, List[CatalogEntry]] = {}
        self._missing: Dict[str, str] = {}
        grouped: Dict[str, List[PackageListing]] = {}
        for listing in listings:
            grouped.setdefault(package_key(listing.name), []).append(listing)
        for key, group in grouped.items():
            self.add(key, group)

    # ── Construction ──────────────────────────

    def _rank(self, listing: PackageListing) -> tuple:
        return (self.priorities.get(listing.source_id, len(self.priorities)), listing.confidence.rank)

    def add(self, name: str, listings: Iterable[PackageListing], missing_detail: str = "") -> None:
        """Replace the catalog for ``name``. An empty ``listings`` marks it unknown."""
        key = package_key(name)
        by_version: Dict[VersionSpec, List[PackageListing]] = {}
        for listing in listings:
            by_version.setdefault(listing.version, []).append(listing)
        if not by_version:
            self._catalogs.pop(key, None)
            self._missing[key] = missing_detail
            return
        entries = []
        for version, group in by_version.items():
            group.sort(key=self._rank)
            entries.append(CatalogEntry(version, group[0], group[1:]))
        entries.sort(key=lambda e: e.version, reverse=True)
        self._catalogs[key] = entries
        self._missing.pop(key, None)

    @classmethod
    async def build(cls, registry, roots: Iterable[str]) -> "VersionIndex":
        """
        Query ``registry`` for every root name and, transitively, every
        declared dependency. Names are fetched concurrently per level.
        """
        index = cls(priorities=registry.priorities)
        seen = set()
        frontier = []
        for name in roots:
            if package_key(name) not in seen:
                seen.add(package_key(name))
                frontier.append(name)

        while frontier:
            results = await asyncio.gather(*(registry.listings_for(n) for n in frontier))
            next_frontier = []
            for name, listings in zip(frontier, results):
                detail = "; ".join(f.describe() for f in registry.failures_for(name))
                index.add(name, listings, missing_detail=detail)
                for listing in listings:
                    for dep in listing.dependencies:
                        if package_key(dep.name) not in seen:
                            seen.add(package_key(dep.name))
                            next_frontier.append(dep.name)
            frontier = next_frontier

        logger.debug("Version index built for %d package(s)", len(index._catalogs))
        return index

    # ── Queries ───────────────────────────────

    def names(self) -> List[str]:
        return [entries[0].name for entries in self._catalogs.values()]

    def has(self, name: str) -> bool:
        return package_key(name) in self._catalogs

    def catalog_for(self, name: str) -> List[CatalogEntry]:
        """Known versions of ``name``, newest first. Raises UNKNOWN_PACKAGE."""
        key = package_key(name)
        entries = self._catalogs.get(key)
        if not entries:
            raise ResolutionError(
                ResolutionErrorKind.UNKNOWN_PACKAGE, name, detail=self._missing.get(key, ""),
            )
        return list(entries)

    def versions(self, name: str) -> List[VersionSpec]:
        return [e.version for e in self.catalog_for(name)]

    def entry(self, name: str, version: VersionSpec) -> Optional[CatalogEntry]:
        for entry in self._catalogs.get(package_key(name), []):
            if entry.version == version:
                return entry
        return None

    def best_match(
        self,
        name: str,
        constraint: Constraint,
        exclude: Iterable[VersionSpec] = (),
        prefer: Optional[VersionSpec] = None,
    ) -> Optional[CatalogEntry]:
        """
        Newest version satisfying ``constraint``, or None (no match).

        Stable versions win over pre-releases unless the constraint names a
        pre-release or nothing stable qualifies. ``prefer`` (typically the
        installed version) is kept whenever it still qualifies.
        """
        excluded = set(exclude)
        candidates = [
            e for e in self.catalog_for(name)
            if e.version not in excluded and constraint.allows(e.version)
        ]
        if not candidates:
            return None
        if prefer is not None:
            for entry in candidates:
                if entry.version == prefer:
                    return entry
        if not constraint.mentions_prerelease:
            stable = [e for e in candidates if not e.version.is_prerelease]
            if stable:
                return stable[0]
        return candidates[0]
