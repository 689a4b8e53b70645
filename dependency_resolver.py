"""
dependency_resolver.py
======================
Turns a manifest plus a VersionIndex into a ResolvedSelection.

Work-queue constraint propagation with conflict-driven, depth-bounded
backtracking:

  1. Seed the queue with every manifest entry.
  2. Pop a requirement and add it to the requirements in force on its
     name. If their intersection is empty → Conflict. If the current
     selection still satisfies it → nothing to do. Otherwise (re)select
     the best match and enqueue that version's dependencies.
  3. On a Conflict / NoMatch / UnknownPackage, exclude the current version
     of the package that introduced the newest requirement on the failing
     name, retract everything that version required, and reselect it.
  4. Stop when the queue drains, or raise the first failure once
     backtracking is exhausted.

Resolution is pure and synchronous; all metadata must already be in the
index.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union

from exceptions import ResolutionError, ResolutionErrorKind
from plugin_extractors import Confidence, DependencySpec, PackageListing
from plugin_versions import Constraint, VersionSpec, format_specifier, package_key
from version_index import CatalogEntry, VersionIndex

logger = logging.getLogger(__name__)

MAX_BACKTRACK_DEPTH = 16
MAX_STEPS = 10_000


# ──────────────────────────────────────────────
#  Data Structures
# ──────────────────────────────────────────────

@dataclass(frozen=True)
class Requirement:
    """``required_by`` is None for manifest entries."""

    name: str
    constraint: Constraint
    required_by: Optional[str] = None
    required_by_version: Optional[VersionSpec] = None

    @property
    def is_root(self) -> bool:
        return self.required_by is None

    def __str__(self) -> str:
        origin = "manifest" if self.is_root else f"{self.required_by} {self.required_by_version}"
        return f"{origin} requires {format_specifier(self.name, self.constraint)}"


@dataclass
class Conflict:
    name: str
    requirements: List[Requirement]

    def describe(self) -> str:
        return f"{self.name}: " + "; ".join(str(r) for r in self.requirements)


@dataclass
class ResolvedPackage:
    entry: CatalogEntry
    required_by: List[str] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.entry.name

    @property
    def version(self) -> VersionSpec:
        return self.entry.version

    @property
    def source_id(self) -> str:
        return self.entry.source_id

    @property
    def listing(self) -> PackageListing:
        return self.entry.listing

    @property
    def confidence(self) -> Confidence:
        return self.entry.confidence


@dataclass
class ResolvedSelection:
    """One concrete version per package, keyed by lowercase name."""

    packages: Dict[str, ResolvedPackage] = field(default_factory=dict)
    conflicts: List[Conflict] = field(default_factory=list)

    def __contains__(self, name: str) -> bool:
        return package_key(name) in self.packages

    def __len__(self) -> int:
        return len(self.packages)

    def get(self, name: str) -> Optional[ResolvedPackage]:
        return self.packages.get(package_key(name))

    def versions(self) -> Dict[str, VersionSpec]:
        return {p.name: p.version for p in self.packages.values()}

    def dependencies_of(self, name: str) -> Set[str]:
        """Keys of the selected packages ``name`` depends on."""
        package = self.get(name)
        if package is None:
            return set()
        return {
            package_key(d.name) for d in package.listing.dependencies
            if package_key(d.name) in self.packages
        }

    def unreliable(self) -> List[ResolvedPackage]:
        return [p for p in self.packages.values() if p.confidence is not Confidence.EXACT]

    def unsatisfied(self) -> List[Tuple[ResolvedPackage, DependencySpec]]:
        """Declared dependencies not met inside this selection (empty when consistent)."""
        missing = []
        for package in self.packages.values():
            for dep in package.listing.dependencies:
                target = self.get(dep.name)
                if target is None or not dep.constraint.allows(target.version):
                    missing.append((package, dep))
        return missing


@dataclass(frozen=True)
class _Settle:
    """Queue marker: re-evaluate the selection for one name."""

    key: str


# ──────────────────────────────────────────────
#  Resolver
# ──────────────────────────────────────────────

class Resolver:
    def __init__(self, index: VersionIndex) -> None:
        self.index = index

    def resolve(
        self,
        manifest: Iterable,
        preferred: Optional[Mapping[str, VersionSpec]] = None,
    ) -> ResolvedSelection:
        """
        ``manifest`` holds ``(name, constraint)`` pairs or objects with
        ``name``/``constraint``. ``preferred`` maps names to versions to keep
        when they still satisfy every constraint.
        """
        roots = [_as_requirement(item) for item in manifest]
        prefer = {package_key(k): v for k, v in (preferred or {}).items()}
        return _ResolutionRun(self.index, prefer).run(roots)


def _as_requirement(item) -> Requirement:
    if isinstance(item, Requirement):
        return item
    if isinstance(item, tuple):
        name, constraint = item
    else:
        name, constraint = item.name, item.constraint
    return Requirement(name, constraint if constraint is not None else Constraint.latest())


class _ResolutionRun:
    """State for a single resolve() call."""

    def __init__(self, index: VersionIndex, preferred: Dict[str, VersionSpec]) -> None:
        self.index = index
        self.preferred = preferred
        self.queue: Deque[Union[Requirement, _Settle]] = deque()
        self.requirements: Dict[str, List[Requirement]] = {}
        self.selected: Dict[str, CatalogEntry] = {}
        self.excluded: Dict[str, Set[VersionSpec]] = {}
        self.conflicts: List[Conflict] = []
        self.backtracks = 0
        self.steps = 0
        self.first_error: Optional[ResolutionError] = None

    # ── Driver ────────────────────────────────

    def run(self, roots: List[Requirement]) -> ResolvedSelection:
        self._check_roots(roots)
        self.queue.extend(roots)
        while True:
            while self.queue:
                self.steps += 1
                if self.steps > MAX_STEPS:
                    raise self._finalize_error(ResolutionError(
                        ResolutionErrorKind.CONFLICT, roots[0].name if roots else "",
                        detail=f"resolution did not converge within {MAX_STEPS} steps",
                    ))
                item = self.queue.popleft()
                if isinstance(item, _Settle):
                    self._settle(item.key)
                elif self._is_live(item):
                    key = package_key(item.name)
                    self.requirements.setdefault(key, []).append(item)
                    self._settle(key)
            orphans = [k for k in self.selected if not self.requirements.get(k)]
            for key in orphans:
                self._deselect(key)
            pending = [k for k, reqs in self.requirements.items() if reqs and k not in self.selected]
            if not pending and not orphans:
                break
            self.queue.extend(_Settle(k) for k in pending)

        if self.backtracks:
            logger.info("Resolution needed %d backtrack(s)", self.backtracks)
        return self._selection()

    def _check_roots(self, roots: List[Requirement]) -> None:
        """Two manifest entries that can never agree fail immediately."""
        by_name: Dict[str, List[Requirement]] = {}
        for req in roots:
            by_name.setdefault(package_key(req.name), []).append(req)
        for reqs in by_name.values():
            if _combine(reqs) is None:
                conflict = Conflict(reqs[0].name, reqs)
                self.conflicts.append(conflict)
                raise ResolutionError(
                    ResolutionErrorKind.CONFLICT, reqs[0].name,
                    chain=reqs, conflicts=self.conflicts,
                    detail="the manifest requests incompatible versions",
                )

    def _is_live(self, req: Requirement) -> bool:
        if req.is_root:
            return True
        origin = self.selected.get(package_key(req.required_by))
        return origin is not None and origin.version == req.required_by_version

    # ── Selection ─────────────────────────────

    def _settle(self, key: str) -> None:
        reqs = self.requirements.get(key, [])
        current = self.selected.get(key)
        if not reqs:
            if current is not None:
                self._deselect(key)
            return

        name = reqs[0].name
        combined = _combine(reqs)
        if combined is None:
            conflict = Conflict(name, list(reqs))
            self.conflicts.append(conflict)
            logger.debug("Conflict on %s", conflict.describe())
            self._fail(key, ResolutionError(
                ResolutionErrorKind.CONFLICT, name, chain=reqs,
            ))
            return

        if current is not None and combined.allows(current.version):
            return
        if current is not None:
            self._deselect(key)
            # Retraction may have removed requirements on this name (cycles)
            reqs = self.requirements.get(key, [])
            if not reqs:
                return
            combined = _combine(reqs)

        try:
            entry = self.index.best_match(
                name, combined,
                exclude=self.excluded.get(key, ()),
                prefer=self.preferred.get(key),
            )
        except ResolutionError as exc:
            self._fail(key, ResolutionError(exc.kind, name, chain=reqs, detail=exc.detail))
            return
        if entry is None:
            self._fail(key, ResolutionError(
                ResolutionErrorKind.UNSATISFIABLE, name, combined, chain=reqs,
                detail=self._excluded_note(key),
            ))
            return
        self._select(key, entry)

    def _select(self, key: str, entry: CatalogEntry) -> None:
        self.selected[key] = entry
        logger.debug("Tentatively selected %s", entry.listing.describe())
        for dep in entry.listing.dependencies:
            self.queue.append(Requirement(dep.name, dep.constraint, entry.name, entry.version))

    def _deselect(self, key: str) -> None:
        """Drop a selection, retract what it required and prune orphans."""
        entry = self.selected.pop(key, None)
        if entry is None:
            return
        orphaned = []
        for dep_key, reqs in self.requirements.items():
            kept = [
                r for r in reqs
                if r.is_root
                or package_key(r.required_by) != key
                or r.required_by_version != entry.version
            ]
            if len(kept) != len(reqs):
                self.requirements[dep_key] = kept
                if not kept:
                    orphaned.append(dep_key)
        for dep_key in orphaned:
            self._deselect(dep_key)

    # ── Backtracking ──────────────────────────

    def _fail(self, key: str, error: ResolutionError) -> None:
        # A failure on a package we backtracked into belongs to the earlier chain
        if self.first_error is None or key not in self.excluded:
            self.first_error = error
        if not self._backtrack(key):
            raise self._finalize_error(self.first_error)

    def _backtrack(self, key: str) -> bool:
        if self.backtracks >= MAX_BACKTRACK_DEPTH:
            logger.debug("Backtracking limit (%d) reached", MAX_BACKTRACK_DEPTH)
            return False
        tried = set()
        for req in reversed(self.requirements.get(key, [])):
            if req.is_root:
                continue
            origin_key = package_key(req.required_by)
            if origin_key in tried:
                continue
            tried.add(origin_key)
            origin = self.selected.get(origin_key)
            if origin is None or origin.version != req.required_by_version:
                continue
            self.backtracks += 1
            logger.debug(
                "Backtracking: excluding %s %s (requires %s)",
                origin.name, origin.version, format_specifier(req.name, req.constraint),
            )
            self.excluded.setdefault(origin_key, set()).add(origin.version)
            self._deselect(origin_key)
            self.queue.appendleft(_Settle(key))
            self.queue.appendleft(_Settle(origin_key))
            return True
        return False

    def _excluded_note(self, key: str) -> str:
        excluded = self.excluded.get(key)
        if not excluded:
            return ""
        return "excluded after backtracking: " + ", ".join(str(v) for v in sorted(excluded))

    def _finalize_error(self, error: ResolutionError) -> ResolutionError:
        error.conflicts = list(self.conflicts)
        return error

    # ── Output ────────────────────────────────

    def _selection(self) -> ResolvedSelection:
        selection = ResolvedSelection(conflicts=list(self.conflicts))
        for key, entry in self.selected.items():
            origins = sorted({
                r.required_by or "manifest" for r in self.requirements.get(key, [])
            })
            selection.packages[key] = ResolvedPackage(entry, origins)
        return selection


def _combine(reqs: Iterable[Requirement]) -> Optional[Constraint]:
    combined: Optional[Constraint] = Constraint.latest()
    for req in reqs:
        combined = combined.intersect(req.constraint)
        if combined is None:
            return None
    return combined
