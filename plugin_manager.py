"""
plugin_manager.py
=================
High-level plugin lifecycle management.

Orchestrates:
  - Reconciling the install state with the plugins directory
  - Building the version index from every configured source
  - Resolving the manifest and diffing it against the install state
  - Executing the plan (install / upgrade / downgrade / remove)
  - Manifest edits for ``add`` and ``remove``
  - Search, cache refresh, cleanup, purge and JAR checks
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from dependency_resolver import ResolvedSelection, Resolver
from dropper_config import DropperConfig
from exceptions import ManifestError
from install_plan import PlanAction, build_plan, summarize_plan
from install_state import InstallRecord, InstallStateStore
from manifest import Manifest, ManifestEntry
from plugin_apis import AiohttpTransport, PluginSource, SearchHit, Transport, build_sources
from plugin_installer import Installer, ReconcileReport, RunSummary
from plugin_validator import PluginValidator, ValidationResult
from plugin_versions import VersionSpec, package_key
from source_registry import SourceRegistry
from version_index import VersionIndex

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────
#  Result Dataclasses
# ──────────────────────────────────────────────

@dataclass
class Result:
    """Unified result for plugin operations."""

    success: bool
    message: str
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, message: str, **details: Any) -> "Result":
        return cls(success=True, message=message, details=details)

    @classmethod
    def fail(cls, message: str, error: Optional[str] = None, **details: Any) -> "Result":
        return cls(success=False, message=message, error=error, details=details)


@dataclass
class SyncReport:
    """Everything one sync produced. ``summary`` is None for a dry run."""

    plan: List[PlanAction]
    selection: ResolvedSelection
    summary: Optional[RunSummary] = None
    reconcile: Optional[ReconcileReport] = None

    @property
    def dry_run(self) -> bool:
        return self.summary is None

    @property
    def success(self) -> bool:
        return self.summary is None or self.summary.success

    @property
    def exit_code(self) -> int:
        return 0 if self.summary is None else self.summary.exit_code


# ──────────────────────────────────────────────
#  Plugin Manager
# ──────────────────────────────────────────────

class PluginManager:
    """
    Manages the full plugin lifecycle for one server directory.

    Args:
        config:     Resolved configuration
        transport:  ``fetch(url) -> bytes`` capability (an aiohttp transport is
                    created, and closed by ``close()``, when omitted)
        sources:    Explicit source list (default: built from ``config``)
    """

    def __init__(
        self,
        config: DropperConfig,
        transport: Optional[Transport] = None,
        sources: Optional[List[PluginSource]] = None,
    ) -> None:
        self.config = config
        self._owns_transport = transport is None
        self.transport = transport or AiohttpTransport(timeout=config.timeout)
        self.sources = sources if sources is not None else build_sources(config)

        self.registry = SourceRegistry(
            self.sources,
            self.transport,
            cache_ttl=config.cache_ttl,
            max_workers=config.max_workers,
            backoff=config.backoff,
        )
        self.store = InstallStateStore(config.state_path)
        self.validator = PluginValidator(config.server_type, config.server_version, config.plugins_path)
        self.installer = Installer(
            config.plugins_path,
            self.store,
            self.transport,
            backup_dir=config.backup_path,
            max_workers=config.max_workers,
            backoff=config.backoff,
            validator=self.validator,
        )

        logger.debug(
            "PluginManager init: server=%s plugins=%s type=%s sources=%s",
            config.server_dir, config.plugins_path, config.server_type,
            ", ".join(s.source_id for s in self.sources),
        )

    async def close(self) -> None:
        if self._owns_transport:
            await self.transport.close()

    async def __aenter__(self) -> "PluginManager":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def manifest_path(self) -> Path:
        return Path(self.config.manifest_path)

    def load_manifest(self) -> Manifest:
        return Manifest.load(self.manifest_path)

    # ================================================================
    #  RESOLVE + PLAN
    # ================================================================

    async def prepare(
        self,
        manifest: Manifest,
        fresh: Iterable[str] = (),
        reconcile: bool = True,
    ) -> Tuple[List[PlanAction], ResolvedSelection, Optional[ReconcileReport]]:
        """
        Reconcile, build the index, resolve and diff against the state.

        Installed versions are kept when they still satisfy every constraint,
        except for the names in ``fresh``. Raises ResolutionError before
        anything on disk is touched.
        """
        report = self.installer.reconcile() if reconcile else None
        records = self.store.records()

        index = await VersionIndex.build(self.registry, manifest.names())
        skip = {package_key(name) for name in fresh}
        preferred: Dict[str, VersionSpec] = {
            key: record.version_spec for key, record in records.items() if key not in skip
        }
        selection = Resolver(index).resolve(manifest.requirements(), preferred)

        for conflict in selection.conflicts:
            logger.info("Resolved past conflict: %s", conflict.describe())
        for package in selection.unreliable():
            logger.warning(
                "%s %s comes from %s with %s version metadata",
                package.name, package.version, package.source_id, package.confidence.value,
            )
        for package, dep in selection.unsatisfied():
            logger.warning("%s %s: dependency %s is not satisfied", package.name, package.version, dep)

        plan = build_plan(selection, records)
        counts = summarize_plan(plan)
        logger.info(
            "Plan: %s",
            ", ".join(f"{count} {kind}" for kind, count in counts.items() if count) or "nothing to do",
        )
        return plan, selection, report

    async def apply(
        self,
        plan: List[PlanAction],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> RunSummary:
        return await self.installer.execute(plan, cancel_event)

    # ================================================================
    #  SYNC
    # ================================================================

    async def sync(
        self,
        manifest: Optional[Manifest] = None,
        *,
        dry_run: bool = False,
        fresh: Iterable[str] = (),
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Result:
        """
        Bring the plugins directory in line with the manifest.

        A dry run resolves and plans without reconciling or writing.
        """
        manifest = manifest if manifest is not None else self.load_manifest()
        plan, selection, reconcile = await self.prepare(manifest, fresh, reconcile=not dry_run)
        if dry_run:
            report = SyncReport(plan, selection)
            return Result.ok(f"{len(plan)} planned action(s)", report=report)
        summary = await self.apply(plan, cancel_event)
        return self._sync_result(SyncReport(plan, selection, summary, reconcile))

    @staticmethod
    def _sync_result(report: SyncReport) -> Result:
        summary = report.summary
        counts = ", ".join(f"{count} {key}" for key, count in summary.counts.items() if count)
        if summary.cancelled:
            return Result.fail(f"Cancelled ({counts})", error="cancelled", report=report)
        if summary.failed:
            names = ", ".join(o.action.name for o in summary.failed)
            return Result.fail(f"Finished with failures ({counts})", error=f"failed: {names}", report=report)
        if not summary.success:
            return Result.fail(f"Finished with skipped actions ({counts})", error="skipped", report=report)
        return Result.ok(f"Up to date ({counts or 'nothing to do'})", report=report)

    # ================================================================
    #  ADD / REMOVE / UPDATE
    # ================================================================

    async def add(
        self,
        specs: Iterable[str],
        *,
        dry_run: bool = False,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Result:
        """
        Add ``Name[@Constraint]`` entries to the manifest and sync.

        The manifest is saved only once the new set resolves.
        """
        manifest = self.load_manifest()
        added: List[str] = []
        for spec in specs:
            try:
                entry = ManifestEntry.parse(spec)
            except ValueError as exc:
                raise ManifestError(f"Invalid plugin specifier '{spec}': {exc}") from exc
            replaced = manifest.add(entry)
            logger.info("%s %s in %s", "Updated" if replaced else "Added", entry, manifest.path)
            added.append(entry.name)
        if not added:
            return Result.fail("Nothing to add", error="no plugin specifiers given")

        plan, selection, reconcile = await self.prepare(manifest, fresh=added, reconcile=not dry_run)
        if dry_run:
            return Result.ok(f"{len(plan)} planned action(s)", report=SyncReport(plan, selection))
        manifest.save()
        summary = await self.apply(plan, cancel_event)
        return self._sync_result(SyncReport(plan, selection, summary, reconcile))

    async def remove(
        self,
        names: Iterable[str],
        *,
        dry_run: bool = False,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Result:
        """Drop entries from the manifest and sync, removing orphaned dependencies too."""
        manifest = self.load_manifest()
        removed: List[str] = []
        for name in names:
            if manifest.remove(name):
                removed.append(name)
            else:
                logger.warning("'%s' is not in %s", name, manifest.path)
        if not removed:
            return Result.fail("Nothing to remove", error="none of the names are in the manifest")

        plan, selection, reconcile = await self.prepare(manifest, reconcile=not dry_run)
        if dry_run:
            return Result.ok(f"{len(plan)} planned action(s)", report=SyncReport(plan, selection))
        manifest.save()
        summary = await self.apply(plan, cancel_event)
        return self._sync_result(SyncReport(plan, selection, summary, reconcile))

    async def update(
        self,
        names: Optional[Iterable[str]] = None,
        *,
        dry_run: bool = False,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Result:
        """
        Re-resolve to the newest allowed versions.

        With ``names`` only those plugins lose their installed preference;
        without, every plugin does and the whole listing cache is dropped.
        """
        manifest = self.load_manifest()
        if names:
            fresh = list(names)
            for name in fresh:
                self.registry.invalidate(name)
        else:
            self.registry.invalidate()
            fresh = [r.name for r in self.store.records().values()] + manifest.names()
        return await self.sync(manifest, dry_run=dry_run, fresh=fresh, cancel_event=cancel_event)

    # ================================================================
    #  SEARCH / REFRESH
    # ================================================================

    async def search(self, query: str, limit: int = 20) -> List[SearchHit]:
        """Search every source; per-source failures are logged, not raised."""
        hits = await self.registry.search(query, limit)
        logger.debug("Search '%s': %d hit(s)", query, len(hits))
        return hits

    def refresh(self, names: Optional[Iterable[str]] = None) -> None:
        """Drop cached listings so the next lookup goes upstream."""
        if names is None:
            self.registry.invalidate()
            return
        for name in names:
            self.registry.invalidate(name)

    # ================================================================
    #  INSTALLED PLUGINS
    # ================================================================

    def list_installed(self) -> List[InstallRecord]:
        return sorted(self.store.records().values(), key=lambda r: r.key)

    def get_plugin(self, name: str) -> Optional[InstallRecord]:
        """Find an installed plugin by name (case-insensitive)."""
        return self.store.get(name)

    def check(self) -> List[ValidationResult]:
        """Validate every JAR in the plugins directory."""
        results = self.validator.validate_all()
        for result in results:
            for issue in result.issues:
                if issue.severity == "error":
                    logger.warning("%s: %s", result.plugin_name, issue.message)
        return results

    # ================================================================
    #  CLEAN / PURGE
    # ================================================================

    def clean(self, backups: bool = True) -> Result:
        """Delete partial downloads, leftover state temp files and (optionally) backups."""
        partials = self.installer.cleanup_partials() + self.store.cleanup_temp_files()
        removed_backups = 0
        backup_dir = Path(self.config.backup_path)
        if backups and backup_dir.is_dir():
            for backup in sorted(backup_dir.glob("*.jar")):
                try:
                    backup.unlink()
                    removed_backups += 1
                except OSError as exc:
                    logger.warning("Could not remove backup %s: %s", backup, exc)
        logger.info("Cleaned %d partial file(s) and %d backup(s)", partials, removed_backups)
        return Result.ok(
            f"Removed {partials} partial file(s) and {removed_backups} backup(s)",
            partials=partials,
            backups=removed_backups,
        )

    async def purge(self, cancel_event: Optional[asyncio.Event] = None) -> Result:
        """
        Remove every managed plugin, then the state file. The manifest is left alone.

        No reconcile here: a record whose JAR was edited still names a file to remove.
        """
        self.installer.cleanup_partials()
        self.store.cleanup_temp_files()
        plan = build_plan(ResolvedSelection(), self.store.records())
        summary = await self.apply(plan, cancel_event)
        if not summary.success:
            return self._sync_result(SyncReport(plan, ResolvedSelection(), summary))
        self.store.clear()
        return Result.ok(f"Purged {len(plan)} plugin(s)", report=SyncReport(plan, ResolvedSelection(), summary))
