"""
plugin_installer.py
===================
Executes an install plan against the plugins directory and the state store.

Per action::

    Pending → Fetching → Verifying → Writing → Committed
        └──────────────→ Failed{fetch | verification | write}
        └──────────────→ Skipped   (cancelled, or a dependency failed)

  - Downloads run concurrently (bounded by ``max_workers``), each retried
    with backoff and falling back to other sources' listings.
  - Commits run strictly in plan order; a commit never awaits, so writes
    to the plugins directory and the state file never interleave.
  - Artifacts are written to a ``.dropper-*.part`` temp file and renamed
    into place; the state file is updated right after, the same way.
  - Cancellation is checked only between actions.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

from exceptions import InstallError, InstallErrorKind, StateError, TransportError
from install_plan import ActionKind, PlanAction
from install_state import InstallRecord, InstallStateStore
from plugin_apis import Transport, fetch_with_retry
from plugin_extractors import PackageListing
from plugin_validator import (
    PluginValidator,
    content_fingerprint,
    file_fingerprint,
    fingerprint_matches,
)
from plugin_versions import package_key

logger = logging.getLogger(__name__)

PART_PREFIX = ".dropper-"
PART_SUFFIX = ".part"
FETCH_ATTEMPTS = 3


def safe_name(name: str) -> str:
    return "".join(c if c.isalnum() or c in "-_." else "-" for c in name)


def plugin_filename(name: str) -> str:
    """Stable JAR name per plugin, so an upgrade is one rename over the old file."""
    return f"{safe_name(name)}.jar"


# ──────────────────────────────────────────────
#  Outcomes
# ──────────────────────────────────────────────

class ActionState(Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    VERIFYING = "verifying"
    WRITING = "writing"
    COMMITTED = "committed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class ActionOutcome:
    action: PlanAction
    state: ActionState = ActionState.PENDING
    history: List[ActionState] = field(default_factory=lambda: [ActionState.PENDING])
    error: Optional[InstallError] = None
    reason: str = ""
    source_id: str = ""
    fingerprint: str = ""
    backup: Optional[str] = None

    def advance(self, state: ActionState) -> None:
        self.state = state
        self.history.append(state)

    def fail(self, error: InstallError) -> None:
        self.error = error
        self.reason = str(error)
        self.advance(ActionState.FAILED)
        logger.error("%s failed during %s: %s", self.action.describe(), error.phase, error.detail)

    def skip(self, reason: str) -> None:
        self.reason = reason
        self.advance(ActionState.SKIPPED)
        logger.warning("%s skipped: %s", self.action.describe(), reason)

    @property
    def succeeded(self) -> bool:
        return self.state is ActionState.COMMITTED


_COUNT_KEYS = {
    ActionKind.INSTALL: "installed",
    ActionKind.UPGRADE: "upgraded",
    ActionKind.DOWNGRADE: "downgraded",
    ActionKind.REMOVE: "removed",
    ActionKind.NOOP: "unchanged",
}


@dataclass
class RunSummary:
    """Structured result of one execution, rendered by the CLI."""

    outcomes: List[ActionOutcome] = field(default_factory=list)
    cancelled: bool = False

    @property
    def counts(self) -> Dict[str, int]:
        counts = {key: 0 for key in _COUNT_KEYS.values()}
        counts["failed"] = 0
        counts["skipped"] = 0
        for outcome in self.outcomes:
            if outcome.state is ActionState.FAILED:
                counts["failed"] += 1
            elif outcome.state is ActionState.SKIPPED:
                counts["skipped"] += 1
            elif outcome.succeeded:
                counts[_COUNT_KEYS[outcome.action.kind]] += 1
        return counts

    @property
    def failed(self) -> List[ActionOutcome]:
        return [o for o in self.outcomes if o.state is ActionState.FAILED]

    @property
    def skipped(self) -> List[ActionOutcome]:
        return [o for o in self.outcomes if o.state is ActionState.SKIPPED]

    @property
    def succeeded(self) -> List[ActionOutcome]:
        return [o for o in self.outcomes if o.succeeded]

    @property
    def success(self) -> bool:
        return all(o.succeeded for o in self.outcomes)

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 4


@dataclass
class ReconcileReport:
    removed_temp_files: int = 0
    dropped: List[str] = field(default_factory=list)


# ──────────────────────────────────────────────
#  Installer
# ──────────────────────────────────────────────

class Installer:
    """
    Applies plan actions. The only writer of the Install State Store.

    Args:
        plugins_dir:  The server's plugins directory
        store:        Install state store
        transport:    ``fetch(url) -> bytes`` capability
        backup_dir:   Where replaced / removed JARs are copied (None disables)
        max_workers:  Concurrent downloads
        attempts:     Fetch attempts per listing
        backoff:      Base delay (seconds) of the exponential backoff
        validator:    Artifact validator
    """

    def __init__(
        self,
        plugins_dir: str | Path,
        store: InstallStateStore,
        transport: Transport,
        backup_dir: Optional[str | Path] = None,
        max_workers: int = 4,
        attempts: int = FETCH_ATTEMPTS,
        backoff: float = 0.5,
        validator: Optional[PluginValidator] = None,
    ) -> None:
        self.plugins_dir = Path(plugins_dir)
        self.store = store
        self.transport = transport
        self.backup_dir = Path(backup_dir) if backup_dir else None
        self.max_workers = max(1, max_workers)
        self.attempts = attempts
        self.backoff = backoff
        self.validator = validator or PluginValidator("paper", "", self.plugins_dir)

    # ── Run ───────────────────────────────────

    async def execute(
        self,
        plan: List[PlanAction],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> RunSummary:
        summary = RunSummary(outcomes=[ActionOutcome(action) for action in plan])
        semaphore = asyncio.Semaphore(self.max_workers)
        downloads: Dict[int, asyncio.Task] = {}

        for index, outcome in enumerate(summary.outcomes):
            if outcome.action.kind is ActionKind.NOOP:
                outcome.advance(ActionState.COMMITTED)
            elif outcome.action.kind is not ActionKind.REMOVE:
                downloads[index] = asyncio.ensure_future(self._download(outcome, semaphore))

        def skip(index: int, outcome: ActionOutcome, reason: str) -> None:
            task = downloads.get(index)
            if task is not None:
                task.cancel()
            outcome.skip(reason)

        def cancelled() -> bool:
            if cancel_event is not None and cancel_event.is_set():
                summary.cancelled = True
            return summary.cancelled

        failed_keys: Set[str] = set()
        try:
            for index, outcome in enumerate(summary.outcomes):
                if outcome.state is not ActionState.PENDING and index not in downloads:
                    continue
                if cancelled():
                    skip(index, outcome, "cancelled")
                    continue

                blocked = self._failed_dependencies(outcome.action, failed_keys)
                if blocked:
                    skip(index, outcome, f"dependency failed: {', '.join(sorted(blocked))}")
                    failed_keys.add(outcome.action.key)
                    continue

                if outcome.action.kind is ActionKind.REMOVE:
                    self._commit_remove(outcome)
                else:
                    try:
                        data, listing, fingerprint = await downloads[index]
                    except InstallError as exc:
                        outcome.fail(exc)
                    else:
                        if cancelled():
                            outcome.skip("cancelled")
                            continue
                        self._commit_write(outcome, data, listing, fingerprint)

                if outcome.state is ActionState.FAILED:
                    failed_keys.add(outcome.action.key)
        finally:
            pending = [task for task in downloads.values() if not task.done()]
            for task in pending:
                task.cancel()
            await asyncio.gather(*downloads.values(), return_exceptions=True)

        counts = summary.counts
        logger.info(
            "Run finished: %s",
            ", ".join(f"{count} {key}" for key, count in counts.items() if count),
        )
        return summary

    @staticmethod
    def _failed_dependencies(action: PlanAction, failed_keys: Set[str]) -> Set[str]:
        if action.package is None or not failed_keys:
            return set()
        deps = {package_key(d.name) for d in action.package.listing.dependencies}
        return deps & failed_keys

    # ── Fetch + Verify ────────────────────────

    async def _download(
        self,
        outcome: ActionOutcome,
        semaphore: asyncio.Semaphore,
    ) -> Tuple[bytes, PackageListing, str]:
        """Fetch and verify, trying fallback listings in priority order."""
        action = outcome.action
        errors: List[str] = []
        last_kind = InstallErrorKind.FETCH
        async with semaphore:
            for listing in action.package.entry.listings:
                outcome.advance(ActionState.FETCHING)
                try:
                    data = await fetch_with_retry(
                        self.transport.fetch, listing.download_url, self.attempts, self.backoff,
                    )
                except TransportError as exc:
                    last_kind = InstallErrorKind.FETCH
                    errors.append(f"[{listing.source_id}] {exc}")
                    logger.warning("%s: download from %s failed: %s",
                                   action.name, listing.source_id, exc)
                    continue

                outcome.advance(ActionState.VERIFYING)
                try:
                    fingerprint = self._verify(action.name, listing, data)
                except InstallError as exc:
                    last_kind = exc.kind
                    errors.append(f"[{listing.source_id}] {exc.detail}")
                    logger.warning("%s: artifact from %s rejected: %s",
                                   action.name, listing.source_id, exc.detail)
                    continue
                return data, listing, fingerprint

        raise InstallError(last_kind, action.name, "; ".join(errors) or "no download listing")

    def _verify(self, name: str, listing: PackageListing, data: bytes) -> str:
        if not data:
            raise InstallError(InstallErrorKind.VERIFICATION, name, "downloaded artifact is empty")
        if listing.fingerprint:
            try:
                matches = fingerprint_matches(data, listing.fingerprint)
            except ValueError:
                logger.warning("%s: ignoring unsupported fingerprint %s", name, listing.fingerprint)
            else:
                if not matches:
                    algorithm = listing.fingerprint.split(":", 1)[0].lower()
                    raise InstallError(
                        InstallErrorKind.VERIFICATION, name,
                        f"fingerprint mismatch: expected {listing.fingerprint}, "
                        f"got {content_fingerprint(data, algorithm)}",
                    )
        try:
            result = self.validator.validate_artifact(data, name)
        except Exception as exc:
            # an artifact that cannot be inspected fails this action only
            logger.debug("%s: artifact inspection raised", name, exc_info=True)
            raise InstallError(
                InstallErrorKind.VERIFICATION, name, f"artifact could not be inspected: {exc}",
            ) from exc
        if not result.is_valid:
            raise InstallError(InstallErrorKind.VERIFICATION, name, "; ".join(result.errors))
        for warning in result.warnings:
            logger.warning("%s: %s", name, warning)
        return content_fingerprint(data)

    # ── Commit ────────────────────────────────

    def _commit_write(
        self,
        outcome: ActionOutcome,
        data: bytes,
        listing: PackageListing,
        fingerprint: str,
    ) -> None:
        action = outcome.action
        outcome.advance(ActionState.WRITING)
        filename = plugin_filename(action.name)
        dest = self.plugins_dir / filename
        old = action.record
        try:
            self.plugins_dir.mkdir(parents=True, exist_ok=True)
            if old is not None:
                outcome.backup = self._backup(self.plugins_dir / old.filename, old.name, old.version)
            elif dest.exists():
                outcome.backup = self._backup(dest, action.name, "unmanaged")
            self._atomic_write(dest, data)
            self.store.put(InstallRecord(
                name=action.name,
                version=str(action.new_version),
                source_id=listing.source_id,
                content_fingerprint=fingerprint,
                filename=filename,
            ))
            if old is not None and old.filename and old.filename != filename:
                stale = self.plugins_dir / old.filename
                # on a case-insensitive filesystem the old name may be the new file
                if stale.exists() and not os.path.samefile(stale, dest):
                    stale.unlink()
        except (OSError, StateError) as exc:
            outcome.fail(InstallError(InstallErrorKind.WRITE, action.name, str(exc)))
            return
        outcome.source_id = listing.source_id
        outcome.fingerprint = fingerprint
        outcome.advance(ActionState.COMMITTED)
        logger.info("%s (%s, %s)", action.describe(), listing.source_id, listing.confidence.value)

    def _commit_remove(self, outcome: ActionOutcome) -> None:
        action = outcome.action
        record = action.record
        outcome.advance(ActionState.WRITING)
        try:
            if record.filename:
                path = self.plugins_dir / record.filename
                if path.exists():
                    outcome.backup = self._backup(path, record.name, record.version)
                    path.unlink()
            self.store.delete(record.name)
        except (OSError, StateError) as exc:
            outcome.fail(InstallError(InstallErrorKind.WRITE, action.name, str(exc)))
            return
        outcome.advance(ActionState.COMMITTED)
        logger.info("%s", action.describe())

    def _atomic_write(self, dest: Path, data: bytes) -> None:
        tmp_path = None
        try:
            with tempfile.NamedTemporaryFile(
                "wb", dir=dest.parent, prefix=PART_PREFIX, suffix=PART_SUFFIX, delete=False,
            ) as fh:
                tmp_path = fh.name
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, dest)
        except OSError:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def _backup(self, jar_path: Path, name: str, version: str) -> Optional[str]:
        """Copy a JAR into the backup directory before it is replaced or removed."""
        if self.backup_dir is None or not jar_path.exists():
            return None
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        backup_path = self.backup_dir / f"{safe_name(name)}_{safe_name(version)}_{timestamp}.jar"
        shutil.copy2(str(jar_path), str(backup_path))
        logger.debug("Backed up plugin: %s → %s", jar_path, backup_path)
        return str(backup_path)

    # ── Reconcile ─────────────────────────────

    def cleanup_partials(self) -> int:
        """Delete ``.dropper-*.part`` files left by an interrupted write."""
        if not self.plugins_dir.is_dir():
            return 0
        removed = 0
        for leftover in self.plugins_dir.glob(f"{PART_PREFIX}*{PART_SUFFIX}"):
            try:
                leftover.unlink()
                removed += 1
            except OSError as exc:
                logger.warning("Could not remove partial download %s: %s", leftover, exc)
        if removed:
            logger.warning("Removed %d partial download(s)", removed)
        return removed

    def reconcile(self) -> ReconcileReport:
        """
        Bring the state store in line with the plugins directory: drop
        records whose file is gone or no longer matches its fingerprint.
        """
        report = ReconcileReport()
        report.removed_temp_files = self.cleanup_partials() + self.store.cleanup_temp_files()
        for record in self.store.records().values():
            path = self.plugins_dir / record.filename
            problem = ""
            if not record.filename or not path.is_file():
                problem = "file is missing"
            elif record.content_fingerprint:
                algorithm = record.content_fingerprint.split(":", 1)[0]
                try:
                    actual = file_fingerprint(path, algorithm)
                except (OSError, ValueError) as exc:
                    problem = f"file is unreadable ({exc})"
                else:
                    if actual != record.content_fingerprint:
                        problem = "file content changed"
            if problem:
                logger.warning("Dropping install record for %s %s: %s",
                               record.name, record.version, problem)
                self.store.delete(record.name)
                report.dropped.append(record.name)
        return report
