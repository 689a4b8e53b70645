"""
plugin_validator.py
===================
Artifact verification for downloaded and installed plugin JARs.

Checks:
  - Content fingerprints (sha256 / sha512 / sha1, ``"<algorithm>:<hex>"``)
  - Plugin file integrity (non-empty, valid JAR structure)
  - Descriptor presence and name (``plugin.yml`` and friends)
  - Server software compatibility (Paper vs Velocity vs Fabric, etc.)
  - Duplicate plugin detection and missing hard dependencies
"""

from __future__ import annotations

import hashlib
import io
import json
import logging
import zipfile
import zlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Optional, Union

import yaml

logger = logging.getLogger(__name__)

SUPPORTED_ALGORITHMS = ("sha256", "sha512", "sha1")
STORED_ALGORITHM = "sha256"


# ──────────────────────────────────────────────
#  Fingerprints
# ──────────────────────────────────────────────

def content_fingerprint(data: bytes, algorithm: str = STORED_ALGORITHM) -> str:
    return f"{algorithm}:{hashlib.new(algorithm, data).hexdigest()}"


def file_fingerprint(path: Union[str, Path], algorithm: str = STORED_ALGORITHM) -> str:
    digest = hashlib.new(algorithm)
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(65536), b""):
            digest.update(chunk)
    return f"{algorithm}:{digest.hexdigest()}"


def fingerprint_matches(data: bytes, declared: str) -> bool:
    """Check ``data`` against a declared fingerprint using its own algorithm."""
    algorithm, _, expected = declared.partition(":")
    algorithm = algorithm.lower()
    if algorithm not in SUPPORTED_ALGORITHMS or not expected:
        raise ValueError(f"Unsupported fingerprint: {declared!r}")
    return content_fingerprint(data, algorithm) == f"{algorithm}:{expected.strip().lower()}"


# ──────────────────────────────────────────────
#  Validation Results
# ──────────────────────────────────────────────

@dataclass
class ValidationIssue:
    """A single validation issue found during plugin checking."""
    severity: str  # "error", "warning", "info"
    message: str
    field: str = ""


@dataclass
class ValidationResult:
    """Aggregated result of all validation checks on a plugin."""
    plugin_name: str
    is_valid: bool = True
    issues: list[ValidationIssue] = field(default_factory=list)
    meta: Optional["PluginMeta"] = None

    def add_error(self, message: str, field_name: str = "") -> None:
        self.issues.append(ValidationIssue("error", message, field_name))
        self.is_valid = False

    def add_warning(self, message: str, field_name: str = "") -> None:
        self.issues.append(ValidationIssue("warning", message, field_name))

    def add_info(self, message: str, field_name: str = "") -> None:
        self.issues.append(ValidationIssue("info", message, field_name))

    @property
    def errors(self) -> list[str]:
        return [i.message for i in self.issues if i.severity == "error"]

    @property
    def warnings(self) -> list[str]:
        return [i.message for i in self.issues if i.severity == "warning"]


# ──────────────────────────────────────────────
#  Plugin Metadata Extraction
# ──────────────────────────────────────────────

@dataclass
class PluginMeta:
    """Extracted metadata from a plugin JAR file."""
    name: str = "Unknown"
    version: str = "Unknown"
    main_class: str = ""
    api_version: Optional[str] = None
    description: str = ""
    authors: list[str] = field(default_factory=list)
    depend: list[str] = field(default_factory=list)      # Hard dependencies
    soft_depend: list[str] = field(default_factory=list)  # Soft dependencies
    plugin_type: str = "bukkit"  # bukkit, bungeecord, velocity, fabric, forge


JarSource = Union[str, Path, bytes, IO[bytes]]

# What reading a damaged archive can raise besides BadZipFile
_ARCHIVE_ERRORS = (
    zipfile.BadZipFile, zlib.error, EOFError, OSError, ValueError, RuntimeError, NotImplementedError,
)


def _open_jar(source: JarSource) -> zipfile.ZipFile:
    if isinstance(source, bytes):
        return zipfile.ZipFile(io.BytesIO(source), "r")
    return zipfile.ZipFile(source, "r")


def extract_plugin_meta(source: JarSource) -> Optional[PluginMeta]:
    """
    Extract plugin metadata from a JAR (path or raw bytes).

    Checks for:
      - ``plugin.yml`` / ``paper-plugin.yml`` → Bukkit/Spigot/Paper plugin
      - ``bungee.yml``                        → BungeeCord plugin
      - ``velocity-plugin.json``              → Velocity plugin
      - ``fabric.mod.json``                   → Fabric mod
      - ``META-INF/mods.toml``                → Forge mod

    Returns None when the archive is unreadable or has no descriptor.
    """
    if isinstance(source, (str, Path)) and not Path(source).is_file():
        return None
    try:
        with _open_jar(source) as zf:
            names = set(zf.namelist())
            for descriptor in ("plugin.yml", "paper-plugin.yml"):
                if descriptor in names:
                    return _parse_bukkit_yml(zf.read(descriptor))
            if "bungee.yml" in names:
                return _parse_bukkit_yml(zf.read("bungee.yml"), plugin_type="bungeecord")
            if "velocity-plugin.json" in names:
                data = json.loads(zf.read("velocity-plugin.json"))
                return PluginMeta(
                    name=data.get("name") or data.get("id", "Unknown"),
                    version=str(data.get("version", "Unknown")),
                    main_class=data.get("main", ""),
                    description=data.get("description", ""),
                    authors=_ensure_list(data.get("authors", [])),
                    depend=[d.get("id", "") for d in data.get("dependencies", [])
                            if isinstance(d, dict) and not d.get("optional")],
                    plugin_type="velocity",
                )
            if "fabric.mod.json" in names:
                data = json.loads(zf.read("fabric.mod.json"))
                return PluginMeta(
                    name=data.get("name", data.get("id", "Unknown")),
                    version=str(data.get("version", "Unknown")),
                    plugin_type="fabric",
                )
            if any(n.endswith("mods.toml") for n in names):
                return PluginMeta(name="Forge Mod", plugin_type="forge")
    except _ARCHIVE_ERRORS + (KeyError,) as exc:
        logger.debug("Failed to read JAR metadata: %s", exc)
    return None


def _parse_bukkit_yml(content: bytes, plugin_type: str = "bukkit") -> PluginMeta:
    """Parse a plugin.yml / bungee.yml document into PluginMeta."""
    try:
        data = yaml.safe_load(content) or {}
    except yaml.YAMLError as exc:
        logger.warning("Failed to parse plugin YAML: %s", exc)
        return PluginMeta(plugin_type=plugin_type)
    if not isinstance(data, dict):
        return PluginMeta(plugin_type=plugin_type)
    api_version = data.get("api-version")
    return PluginMeta(
        name=str(data.get("name", "Unknown")),
        version=str(data.get("version", "Unknown")),
        main_class=str(data.get("main", "")),
        api_version=str(api_version) if api_version is not None else None,
        description=str(data.get("description", "")),
        authors=_ensure_list(data.get("authors", data.get("author", []))),
        depend=_ensure_list(data.get("depend", [])),
        soft_depend=_ensure_list(data.get("softdepend", [])),
        plugin_type=plugin_type,
    )


def _ensure_list(value) -> list:
    """Ensure a value is a list of strings."""
    if isinstance(value, list):
        return [str(v) for v in value]
    if isinstance(value, str):
        return [value]
    return []


# ──────────────────────────────────────────────
#  Validator
# ──────────────────────────────────────────────

_COMPATIBILITY = {
    "paper": ["bukkit"],
    "purpur": ["bukkit"],
    "folia": ["bukkit"],
    "spigot": ["bukkit"],
    "bukkit": ["bukkit"],
    "velocity": ["velocity"],
    "waterfall": ["bungeecord"],
}


class PluginValidator:
    """
    Validates plugin JARs against the current server configuration.

    Args:
        server_type:  Current server software (e.g. "paper")
        mc_version:   Current Minecraft version (e.g. "1.20.4"), may be empty
        plugins_dir:  Path to the server's plugins directory
    """

    def __init__(self, server_type: str, mc_version: str, plugins_dir: str | Path) -> None:
        self.server_type = server_type.lower()
        self.mc_version = mc_version
        self.plugins_dir = Path(plugins_dir)

    def validate_artifact(self, data: bytes, expected_name: str) -> ValidationResult:
        """
        Check a freshly downloaded artifact before it is written.

        Structural problems are errors; a missing or mismatched descriptor
        and server-type mismatches are warnings.
        """
        result = ValidationResult(plugin_name=expected_name)
        if not data:
            result.add_error("artifact is empty (0 bytes)")
            return result
        try:
            with _open_jar(data) as zf:
                bad = zf.testzip()
        except zipfile.BadZipFile:
            result.add_error("artifact is not a valid JAR/ZIP archive")
            return result
        except _ARCHIVE_ERRORS as exc:
            result.add_error(f"artifact is not a readable JAR: {exc}")
            return result
        if bad:
            result.add_error(f"corrupted entry inside JAR: {bad}")
            return result

        meta = extract_plugin_meta(data)
        result.meta = meta
        if meta is None:
            result.add_warning("no plugin descriptor (plugin.yml) found", field_name="descriptor")
            return result
        if meta.name.lower() != expected_name.lower():
            result.add_warning(
                f"descriptor names the plugin '{meta.name}', expected '{expected_name}'",
                field_name="name",
            )
        self._check_server_compatibility(meta, result)
        return result

    def validate(self, jar_path: str | Path) -> ValidationResult:
        """Run all checks on an installed plugin JAR."""
        jar_path = Path(jar_path)
        meta = extract_plugin_meta(jar_path)
        result = ValidationResult(plugin_name=meta.name if meta else jar_path.stem, meta=meta)

        self._check_jar_integrity(jar_path, result)
        if not result.is_valid:
            return result
        if meta is None:
            result.add_error("Could not extract plugin metadata from JAR file")
            return result

        self._check_server_compatibility(meta, result)
        self._check_mc_version(meta, result)
        self._check_duplicates(meta, jar_path, result)
        self._check_dependencies(meta, result)
        return result

    def validate_all(self) -> list[ValidationResult]:
        """Validate all JAR files in the plugins directory."""
        if not self.plugins_dir.exists():
            return []
        return [self.validate(jar) for jar in sorted(self.plugins_dir.glob("*.jar"))]

    # ── Individual Checks ───────────────────────

    def _check_jar_integrity(self, jar_path: Path, result: ValidationResult) -> None:
        """Verify the JAR file is a valid ZIP archive."""
        if not jar_path.exists():
            result.add_error(f"File not found: {jar_path}")
            return
        if jar_path.stat().st_size == 0:
            result.add_error("JAR file is empty (0 bytes)")
            return
        try:
            with zipfile.ZipFile(jar_path, "r") as zf:
                bad = zf.testzip()
                if bad:
                    result.add_warning(f"Corrupted file inside JAR: {bad}")
        except zipfile.BadZipFile:
            result.add_error("File is not a valid JAR/ZIP archive")
        except _ARCHIVE_ERRORS as exc:
            result.add_error(f"JAR could not be read: {exc}")

    def _check_server_compatibility(self, meta: PluginMeta, result: ValidationResult) -> None:
        allowed = _COMPATIBILITY.get(self.server_type, [])
        if allowed and meta.plugin_type not in allowed:
            result.add_warning(
                f"Plugin type '{meta.plugin_type}' is not compatible with "
                f"'{self.server_type}' server (expected: {', '.join(allowed)})",
                field_name="plugin_type",
            )

    def _check_mc_version(self, meta: PluginMeta, result: ValidationResult) -> None:
        """Warn when the plugin's api-version is newer than the server."""
        if not meta.api_version or not self.mc_version:
            return
        try:
            api_parts = [int(x) for x in meta.api_version.split(".")]
            mc_parts = [int(x) for x in self.mc_version.split(".")]
        except ValueError:
            result.add_info(f"Could not parse API version: {meta.api_version}")
            return
        if api_parts[:2] > mc_parts[:2]:
            result.add_warning(
                f"Plugin targets API version {meta.api_version}, "
                f"but server is running {self.mc_version}",
                field_name="api_version",
            )

    def _installed_names(self, exclude: Optional[Path] = None) -> dict[str, Path]:
        names = {}
        for jar_file in self.plugins_dir.glob("*.jar"):
            if jar_file == exclude:
                continue
            jar_meta = extract_plugin_meta(jar_file)
            if jar_meta:
                names[jar_meta.name.lower()] = jar_file
        return names

    def _check_duplicates(self, meta: PluginMeta, jar_path: Path, result: ValidationResult) -> None:
        other = self._installed_names(exclude=jar_path).get(meta.name.lower())
        if other is not None:
            result.add_warning(
                f"Duplicate plugin detected: '{meta.name}' also exists as {other.name}",
                field_name="duplicate",
            )

    def _check_dependencies(self, meta: PluginMeta, result: ValidationResult) -> None:
        if not meta.depend:
            return
        installed = self._installed_names()
        for dep in meta.depend:
            if dep.lower() not in installed:
                result.add_warning(
                    f"Required dependency '{dep}' not found in plugins directory",
                    field_name="depend",
                )
