"""
dropper_config.py
=================
Loads ``dropper.json`` into a :class:`DropperConfig`.

Example::

    {
      "paths":   {"server_dir": "/srv/mc", "manifest": "pkg.yml"},
      "server":  {"type": "paper", "version": "1.20.4"},
      "sources": [
        {"type": "index", "id": "local", "base_url": "file:///srv/repo/index.json"},
        {"type": "modrinth"},
        {"type": "hangar"}
      ],
      "cache_ttl": 600, "max_workers": 4, "timeout": 30, "backoff": 0.5
    }

The order of ``sources`` is their priority. A missing file means defaults.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List

from exceptions import ConfigError

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "dropper.json"
KNOWN_SOURCE_TYPES = ("modrinth", "hangar", "spiget", "bukkitdev", "index")
SERVER_TYPES = ("paper", "purpur", "spigot", "bukkit", "folia", "velocity", "waterfall")


@dataclass
class SourceConfig:
    type: str
    id: str = ""
    base_url: str = ""
    options: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.id:
            self.id = "spigotmc" if self.type == "spiget" else self.type

    @classmethod
    def from_dict(cls, data: Any) -> "SourceConfig":
        if not isinstance(data, dict) or "type" not in data:
            raise ConfigError(f"Source entry needs a 'type': {data!r}")
        kind = str(data["type"]).lower()
        if kind not in KNOWN_SOURCE_TYPES:
            raise ConfigError(
                f"Unknown source type '{kind}' (expected one of {', '.join(KNOWN_SOURCE_TYPES)})"
            )
        if kind == "index" and not data.get("base_url"):
            raise ConfigError("An 'index' source needs a 'base_url'")
        options = data.get("options") or {}
        if not isinstance(options, dict):
            raise ConfigError(f"Source options must be an object: {options!r}")
        return cls(
            type=kind,
            id=str(data.get("id") or ""),
            base_url=str(data.get("base_url") or ""),
            options=options,
        )

    def to_dict(self) -> dict:
        return {"type": self.type, "id": self.id, "base_url": self.base_url, "options": self.options}


def default_sources() -> List[SourceConfig]:
    return [
        SourceConfig("modrinth"),
        SourceConfig("hangar"),
        SourceConfig("spiget"),
        SourceConfig("bukkitdev"),
    ]


@dataclass
class DropperConfig:
    """Resolved settings for one run. Empty path fields fall back to server_dir."""

    server_dir: str = "."
    plugins_dir: str = ""
    manifest: str = ""
    state_file: str = ""
    backup_dir: str = ""
    server_type: str = "paper"
    server_version: str = ""
    sources: List[SourceConfig] = field(default_factory=default_sources)
    cache_ttl: float = 600.0
    max_workers: int = 4
    timeout: float = 30.0
    backoff: float = 0.5

    # ── Derived Paths ─────────────────────────

    def _under_server(self, value: str, default: str) -> str:
        path = value or default
        if os.path.isabs(path):
            return path
        return os.path.join(self.server_dir, path)

    @property
    def plugins_path(self) -> str:
        return self._under_server(self.plugins_dir, "plugins")

    @property
    def manifest_path(self) -> str:
        if self.manifest:
            return self._under_server(self.manifest, self.manifest)
        for candidate in ("pkg.yml", "pkg.yaml"):
            path = os.path.join(self.server_dir, candidate)
            if os.path.exists(path):
                return path
        return os.path.join(self.server_dir, "pkg.yml")

    @property
    def state_path(self) -> str:
        return self._under_server(self.state_file, os.path.join(".dropper", "state.json"))

    @property
    def backup_path(self) -> str:
        return self._under_server(self.backup_dir, os.path.join(".dropper", "backups"))

    # ── Loading ───────────────────────────────

    @classmethod
    def from_dict(cls, data: Any) -> "DropperConfig":
        if not isinstance(data, dict):
            raise ConfigError("Config root must be a JSON object")
        paths = data.get("paths") or {}
        server = data.get("server") or {}
        if not isinstance(paths, dict) or not isinstance(server, dict):
            raise ConfigError("'paths' and 'server' must be JSON objects")

        config = cls(
            server_dir=str(paths.get("server_dir") or "."),
            plugins_dir=str(paths.get("plugins_dir") or ""),
            manifest=str(paths.get("manifest") or ""),
            state_file=str(paths.get("state_file") or ""),
            backup_dir=str(paths.get("backup_dir") or ""),
            server_type=str(server.get("type") or "paper").lower(),
            server_version=str(server.get("version") or ""),
        )
        if "sources" in data:
            if not isinstance(data["sources"], list) or not data["sources"]:
                raise ConfigError("'sources' must be a non-empty list")
            config.sources = [SourceConfig.from_dict(entry) for entry in data["sources"]]
            ids = [s.id for s in config.sources]
            if len(ids) != len(set(ids)):
                raise ConfigError(f"Duplicate source ids: {ids}")

        config.cache_ttl = _number(data, "cache_ttl", config.cache_ttl, minimum=0)
        config.timeout = _number(data, "timeout", config.timeout, minimum=0.001)
        config.backoff = _number(data, "backoff", config.backoff, minimum=0)
        config.max_workers = int(_number(data, "max_workers", config.max_workers, minimum=1))
        config.validate()
        return config

    @classmethod
    def load(cls, path: str) -> "DropperConfig":
        if not os.path.exists(path):
            logger.debug("No config at %s, using defaults", path)
            return cls()
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as exc:
            raise ConfigError(f"{path}: invalid JSON ({exc})") from exc
        except OSError as exc:
            raise ConfigError(f"{path}: {exc}") from exc
        try:
            config = cls.from_dict(data)
        except ConfigError as exc:
            raise ConfigError(f"{path}: {exc}") from exc
        if not os.path.isabs(config.server_dir):
            config.server_dir = os.path.join(os.path.dirname(os.path.abspath(path)), config.server_dir)
        logger.debug("Loaded config from %s (%d sources)", path, len(config.sources))
        return config

    @classmethod
    def from_args(cls, args: Any) -> "DropperConfig":
        """Load the config file named on the command line, then apply flag overrides."""
        server_dir = getattr(args, "server_dir", None)
        path = getattr(args, "config", None) or os.path.join(server_dir or ".", CONFIG_FILENAME)
        config = cls.load(path)
        if server_dir:
            config.server_dir = server_dir
        if getattr(args, "manifest", None):
            config.manifest = os.path.abspath(args.manifest)
        return config

    def validate(self) -> None:
        if self.server_type not in SERVER_TYPES:
            raise ConfigError(
                f"Unknown server type '{self.server_type}' (expected one of {', '.join(SERVER_TYPES)})"
            )


def _number(data: Dict[str, Any], key: str, default: float, minimum: float) -> float:
    if key not in data:
        return default
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"'{key}' must be a number, got {value!r}")
    if value < minimum:
        raise ConfigError(f"'{key}' must be >= {minimum}, got {value!r}")
    return value


def source_options(config: DropperConfig, source: SourceConfig) -> Dict[str, Any]:
    """Per-source options with server-derived defaults filled in."""
    options = dict(source.options)
    if source.type == "modrinth":
        options.setdefault("loaders", _LOADERS.get(config.server_type, ["paper", "spigot", "bukkit"]))
        if config.server_version:
            options.setdefault("game_versions", [config.server_version])
    elif source.type == "hangar":
        options.setdefault("platform", _HANGAR_PLATFORMS.get(config.server_type, "PAPER"))
    return options


_LOADERS = {
    "paper": ["paper", "spigot", "bukkit"],
    "purpur": ["purpur", "paper", "spigot", "bukkit"],
    "folia": ["folia", "paper"],
    "spigot": ["spigot", "bukkit"],
    "bukkit": ["bukkit"],
    "velocity": ["velocity"],
    "waterfall": ["waterfall", "bungeecord"],
}

_HANGAR_PLATFORMS = {
    "velocity": "VELOCITY",
    "waterfall": "WATERFALL",
}
