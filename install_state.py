"""
install_state.py
================
Persisted record of what is currently installed.

Layout of the state file::

    {
      "format": 1,
      "last_updated": "2024-05-01T12:00:00+00:00",
      "packages": {
        "worldedit": {"name": "WorldEdit", "version": "7.2.15", "source_id": "modrinth",
                      "content_fingerprint": "sha256:…", "installed_at": "…",
                      "filename": "WorldEdit.jar"}
      }
    }

Every write goes to a temp file in the same directory, is fsync'd and then
renamed over the old file, so the state is always either the previous or
the next version. A missing file means nothing is installed.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

from exceptions import StateError
from plugin_versions import VersionSpec, package_key

logger = logging.getLogger(__name__)

STATE_FORMAT = 1
_TEMP_PREFIX = ".state-"
_TEMP_SUFFIX = ".tmp"


def utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


# ──────────────────────────────────────────────
#  Install Record
# ──────────────────────────────────────────────

@dataclass
class InstallRecord:
    """One installed plugin. Created, updated and deleted only by the Installer."""

    name: str
    version: str
    source_id: str
    content_fingerprint: str
    installed_at: str = field(default_factory=utc_now)
    filename: str = ""

    @property
    def key(self) -> str:
        return package_key(self.name)

    @property
    def version_spec(self) -> VersionSpec:
        return VersionSpec.parse(self.version)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "version": self.version,
            "source_id": self.source_id,
            "content_fingerprint": self.content_fingerprint,
            "installed_at": self.installed_at,
            "filename": self.filename,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "InstallRecord":
        return cls(
            name=data["name"],
            version=str(data.get("version", "")),
            source_id=data.get("source_id", ""),
            content_fingerprint=data.get("content_fingerprint", ""),
            installed_at=data.get("installed_at", ""),
            filename=data.get("filename", ""),
        )


# ──────────────────────────────────────────────
#  State Store
# ──────────────────────────────────────────────

class InstallStateStore:
    """Single-writer store for InstallRecords, keyed by lowercase name."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._records: Optional[Dict[str, InstallRecord]] = None

    def load(self) -> Dict[str, InstallRecord]:
        """(Re)read the state file. Raises StateError if it is unreadable."""
        if not self.path.exists():
            self._records = {}
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
            packages = data["packages"]
            records = {}
            for entry in packages.values():
                record = InstallRecord.from_dict(entry)
                records[record.key] = record
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
            raise StateError(f"Could not read install state {self.path}: {exc!r}") from exc
        self._records = records
        logger.debug("Loaded %d install record(s) from %s", len(records), self.path)
        return dict(records)

    def records(self) -> Dict[str, InstallRecord]:
        if self._records is None:
            self.load()
        return dict(self._records)

    def get(self, name: str) -> Optional[InstallRecord]:
        return self.records().get(package_key(name))

    def put(self, record: InstallRecord) -> None:
        records = self.records()
        records[record.key] = record
        self._write(records)

    def delete(self, name: str) -> None:
        records = self.records()
        if records.pop(package_key(name), None) is not None:
            self._write(records)

    def clear(self) -> None:
        """Forget every record and remove the state file."""
        self._records = {}
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise StateError(f"Could not remove {self.path}: {exc}") from exc

    def _write(self, records: Dict[str, InstallRecord]) -> None:
        data = {
            "format": STATE_FORMAT,
            "last_updated": utc_now(),
            "packages": {key: records[key].to_dict() for key in sorted(records)},
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = None
        try:
            with tempfile.NamedTemporaryFile(
                "w", encoding="utf-8", dir=self.path.parent,
                prefix=_TEMP_PREFIX, suffix=_TEMP_SUFFIX, delete=False,
            ) as fh:
                tmp_path = fh.name
                json.dump(data, fh, indent=2)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, self.path)
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise StateError(f"Could not write install state {self.path}: {exc}") from exc
        self._records = dict(records)

    def cleanup_temp_files(self) -> int:
        """Remove temp files left behind by an interrupted write."""
        if not self.path.parent.is_dir():
            return 0
        removed = 0
        for leftover in self.path.parent.glob(f"{_TEMP_PREFIX}*{_TEMP_SUFFIX}"):
            try:
                leftover.unlink()
                removed += 1
            except OSError as exc:
                logger.warning("Could not remove leftover state file %s: %s", leftover, exc)
        if removed:
            logger.warning("Removed %d leftover state temp file(s)", removed)
        return removed
