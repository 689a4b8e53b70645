"""
exceptions.py
=============
Error taxonomy for the resolution-and-acquisition pipeline.

Every error carries a ``kind`` plus enough context (package name, phase,
URL / HTTP status, constraint chain, fingerprints) for the CLI to print an
actionable message without a debug re-run.

Propagation:
  - ``ExtractionError``  – recovered locally by the Source Registry
  - ``TransportError``   – retried with backoff, then surfaced per action
  - ``ResolutionError``  – fatal to the run, raised before any disk write
  - ``InstallError``     – isolated to one plan action
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, List, Optional, Sequence

if TYPE_CHECKING:
    from plugin_versions import Constraint


class DropperError(Exception):
    """Base class for every error raised by dropper."""


# ──────────────────────────────────────────────
#  Upstream Documents
# ──────────────────────────────────────────────

class ParseError(DropperError):
    """An upstream body could not be parsed as JSON / HTML."""

    def __init__(self, schema: str, detail: str) -> None:
        super().__init__(f"Could not parse {schema} document: {detail}")
        self.schema = schema
        self.detail = detail


class ExtractionErrorKind(Enum):
    MALFORMED = "malformed"
    UNSUPPORTED = "unsupported"
    EMPTY = "empty"


class ExtractionError(DropperError):
    """A whole upstream document failed to yield listings."""

    def __init__(
        self,
        kind: ExtractionErrorKind,
        source_id: str,
        detail: str,
        *,
        url: str = "",
    ) -> None:
        where = f" ({url})" if url else ""
        super().__init__(f"[{source_id}] {kind.value} document{where}: {detail}")
        self.kind = kind
        self.source_id = source_id
        self.detail = detail
        self.url = url


class TransportError(DropperError):
    """Network / HTTP failure. ``status`` is None when the host was unreachable."""

    def __init__(self, url: str, status: Optional[int] = None, reason: str = "") -> None:
        if status is None:
            text = f"GET {url} failed: {reason or 'unreachable'}"
        else:
            text = f"GET {url} returned HTTP {status}"
            if reason:
                text += f" ({reason})"
        super().__init__(text)
        self.url = url
        self.status = status
        self.reason = reason

    @property
    def not_found(self) -> bool:
        return self.status == 404


# ──────────────────────────────────────────────
#  Resolution
# ──────────────────────────────────────────────

class ResolutionErrorKind(Enum):
    UNSATISFIABLE = "unsatisfiable"
    UNKNOWN_PACKAGE = "unknown-package"
    CONFLICT = "conflict"


class ResolutionError(DropperError):
    """
    The manifest cannot be turned into a consistent selection.

    ``chain`` holds the requirements that were in force on ``name`` when the
    failure was detected; ``conflicts`` every conflict seen during the run.
    """

    def __init__(
        self,
        kind: ResolutionErrorKind,
        name: str,
        constraint: Optional["Constraint"] = None,
        *,
        chain: Optional[Sequence] = None,
        conflicts: Optional[Sequence] = None,
        detail: str = "",
    ) -> None:
        self.kind = kind
        self.name = name
        self.constraint = constraint
        self.chain: List = list(chain or [])
        self.conflicts: List = list(conflicts or [])
        self.detail = detail
        super().__init__(self._render())

    def _render(self) -> str:
        if self.kind is ResolutionErrorKind.UNKNOWN_PACKAGE:
            head = f"No source has any listing for '{self.name}'"
        elif self.kind is ResolutionErrorKind.CONFLICT:
            head = f"Conflicting constraints on '{self.name}'"
        else:
            wanted = self.constraint.describe() if self.constraint is not None else "any version"
            head = f"No version of '{self.name}' satisfies {wanted}"
        lines = [head]
        if self.detail:
            lines.append(f"  {self.detail}")
        for req in self.chain:
            lines.append(f"  - {req}")
        return "\n".join(lines)


# ──────────────────────────────────────────────
#  Installation
# ──────────────────────────────────────────────

class InstallErrorKind(Enum):
    FETCH = "fetch"
    VERIFICATION = "verification"
    WRITE = "write"


class InstallError(DropperError):
    """Failure of a single plan action; never aborts sibling actions."""

    def __init__(self, kind: InstallErrorKind, name: str, detail: str) -> None:
        super().__init__(f"{name}: {kind.value} failed: {detail}")
        self.kind = kind
        self.name = name
        self.detail = detail

    @property
    def phase(self) -> str:
        return self.kind.value


# ──────────────────────────────────────────────
#  Local Files
# ──────────────────────────────────────────────

class ManifestError(DropperError):
    """The plugin manifest is unreadable or holds a malformed entry."""


class StateError(DropperError):
    """The persisted install state could not be read or written."""


class ConfigError(DropperError):
    """dropper.json is invalid."""
