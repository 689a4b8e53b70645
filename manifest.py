"""
manifest.py
===========
The human-written list of desired plugins.

Two formats:

``pkg.yml`` / ``pkg.yaml`` – a YAML mapping of name to constraint::

    WorldEdit: 6.1.9       # exact
    WorldGuard: 6.*        # newest 6.x
    Vault:                 # latest
    EssentialsX: ">=2.19"

(a YAML list of ``Name@Constraint`` strings is accepted too)

anything else – a text list, one ``Name[@Constraint]`` per line, ``#``
comments allowed.

Entry order is preserved and saving keeps the file's format.
"""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

import yaml

from exceptions import ManifestError
from plugin_versions import Constraint, format_specifier, package_key, parse_specifier

logger = logging.getLogger(__name__)

YAML_SUFFIXES = (".yml", ".yaml")
_LATEST_VALUES = {"", "~", "null", "*", "latest"}


@dataclass
class ManifestEntry:
    name: str
    constraint: Constraint = field(default_factory=Constraint.latest)

    @property
    def key(self) -> str:
        return package_key(self.name)

    @classmethod
    def parse(cls, text: str) -> "ManifestEntry":
        """Parse ``Name[@Constraint]``. Raises ValueError."""
        name, constraint = parse_specifier(text)
        return cls(name, constraint)

    def __str__(self) -> str:
        return format_specifier(self.name, self.constraint)


class Manifest:
    """Ordered manifest entries plus the file they came from."""

    def __init__(
        self,
        path: Optional[str | Path] = None,
        entries: Optional[List[ManifestEntry]] = None,
        style: Optional[str] = None,
    ) -> None:
        self.path = Path(path) if path else None
        self.entries: List[ManifestEntry] = list(entries or [])
        if style is None:
            is_yaml = self.path is not None and self.path.suffix.lower() in YAML_SUFFIXES
            style = "mapping" if is_yaml else "text"
        self.style = style              # "mapping" | "list" | "text"

    # ── Access ────────────────────────────────

    def __iter__(self) -> Iterator[ManifestEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, name: str) -> bool:
        return self.get(name) is not None

    def get(self, name: str) -> Optional[ManifestEntry]:
        key = package_key(name)
        for entry in self.entries:
            if entry.key == key:
                return entry
        return None

    def names(self) -> List[str]:
        return [e.name for e in self.entries]

    def requirements(self) -> List[Tuple[str, Constraint]]:
        return [(e.name, e.constraint) for e in self.entries]

    # ── Editing ───────────────────────────────

    def add(self, entry: ManifestEntry) -> bool:
        """Add an entry; an existing name has its constraint replaced in place. True if replaced."""
        for i, existing in enumerate(self.entries):
            if existing.key == entry.key:
                self.entries[i] = entry
                return True
        self.entries.append(entry)
        return False

    def remove(self, name: str) -> bool:
        key = package_key(name)
        before = len(self.entries)
        self.entries = [e for e in self.entries if e.key != key]
        return len(self.entries) != before

    # ── Loading ───────────────────────────────

    @classmethod
    def load(cls, path: str | Path) -> "Manifest":
        """Read a manifest. A missing file is an empty manifest."""
        path = Path(path)
        if not path.exists():
            logger.debug("No manifest at %s, starting empty", path)
            return cls(path)
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise ManifestError(f"{path}: {exc}") from exc
        if path.suffix.lower() in YAML_SUFFIXES:
            return cls._from_yaml(path, text)
        return cls._from_text(path, text)

    @classmethod
    def _from_text(cls, path: Path, text: str) -> "Manifest":
        manifest = cls(path, style="text")
        for lineno, line in enumerate(text.splitlines(), start=1):
            line = _strip_comment(line).strip()
            if not line:
                continue
            try:
                entry = ManifestEntry.parse(line)
            except ValueError as exc:
                raise ManifestError(f"{path}:{lineno}: {exc}") from exc
            manifest._add_unique(entry, f"{path}:{lineno}")
        return manifest

    @classmethod
    def _from_yaml(cls, path: Path, text: str) -> "Manifest":
        try:
            # BaseLoader keeps every scalar a string, so 6.10 stays "6.10"
            data = yaml.load(text, Loader=yaml.BaseLoader)
        except yaml.YAMLError as exc:
            mark = getattr(exc, "problem_mark", None)
            where = f":{mark.line + 1}" if mark is not None else ""
            raise ManifestError(f"{path}{where}: invalid YAML ({exc})") from exc

        if data is None or data == "":
            return cls(path, style="mapping")
        if isinstance(data, dict):
            manifest = cls(path, style="mapping")
            for name, value in data.items():
                manifest._add_unique(_entry_from_pair(path, name, value), f"{path}: key '{name}'")
            return manifest
        if isinstance(data, list):
            manifest = cls(path, style="list")
            for position, item in enumerate(data, start=1):
                where = f"{path}: item {position}"
                if isinstance(item, dict) and len(item) == 1:
                    (name, value), = item.items()
                    entry = _entry_from_pair(path, name, value)
                elif isinstance(item, str):
                    try:
                        entry = ManifestEntry.parse(item)
                    except ValueError as exc:
                        raise ManifestError(f"{where}: {exc}") from exc
                else:
                    raise ManifestError(f"{where}: expected 'Name@Constraint', got {item!r}")
                manifest._add_unique(entry, where)
            return manifest
        raise ManifestError(f"{path}: expected a mapping or a list of plugins")

    def _add_unique(self, entry: ManifestEntry, where: str) -> None:
        if entry.key in {e.key for e in self.entries}:
            raise ManifestError(f"{where}: duplicate entry for '{entry.name}'")
        self.entries.append(entry)

    # ── Saving ────────────────────────────────

    def render(self) -> str:
        if self.style == "mapping":
            data = {e.name: _constraint_text(e.constraint) for e in self.entries}
            return yaml.safe_dump(data, sort_keys=False, default_flow_style=False) if data else ""
        if self.style == "list":
            data = [str(e) for e in self.entries]
            return yaml.safe_dump(data, sort_keys=False, default_flow_style=False) if data else ""
        return "".join(f"{e}\n" for e in self.entries)

    def save(self, path: Optional[str | Path] = None) -> None:
        """Write atomically (temp file in the same directory, then rename)."""
        target = Path(path) if path else self.path
        if target is None:
            raise ManifestError("Manifest has no path to save to")
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = None
        try:
            with tempfile.NamedTemporaryFile(
                "w", encoding="utf-8", dir=target.parent,
                prefix=f".{target.name}-", suffix=".tmp", delete=False,
            ) as fh:
                tmp_path = fh.name
                fh.write(self.render())
            os.replace(tmp_path, target)
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise ManifestError(f"Could not write {target}: {exc}") from exc
        self.path = target
        logger.debug("Saved %d manifest entr(y/ies) to %s", len(self.entries), target)


def _entry_from_pair(path: Path, name, value) -> ManifestEntry:
    if not isinstance(name, str) or not name.strip():
        raise ManifestError(f"{path}: invalid plugin name {name!r}")
    if isinstance(value, (dict, list)):
        raise ManifestError(f"{path}: key '{name}': constraint must be a string, got {value!r}")
    text = (value or "").strip()
    try:
        constraint = Constraint.latest() if text.lower() in _LATEST_VALUES else Constraint.parse(text)
    except ValueError as exc:
        raise ManifestError(f"{path}: key '{name}': {exc}") from exc
    return ManifestEntry(name.strip(), constraint)


def _constraint_text(constraint: Constraint) -> str:
    text = str(constraint)
    return "*" if text.lower() in _LATEST_VALUES else text


def _strip_comment(line: str) -> str:
    """Drop a ``#`` comment unless the ``#`` sits inside a quoted version."""
    quoted = escaped = False
    for i, ch in enumerate(line):
        if escaped:
            escaped = False
        elif ch == "\\" and quoted:
            escaped = True
        elif ch == '"':
            quoted = not quoted
        elif ch == "#" and not quoted:
            return line[:i]
    return line
