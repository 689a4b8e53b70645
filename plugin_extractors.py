"""
plugin_extractors.py
====================
Per-upstream adapters that turn one raw response into ``PackageListing``
records.

Every extractor implements the same contract::

    extract(document, name) -> List[PackageListing]

A single bad record is skipped and counted; a document that cannot be
parsed at all (or has an unrecognised shape, or yields nothing) raises
``ExtractionError``. Every listing carries a confidence tier:

  - **Exact**      – strict schema field, structured version
  - **Inferred**   – strict field with an opaque version, or a heuristic
                     text match that still parsed structured
  - **Unreliable** – heuristic match that produced only opaque text
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urljoin

from exceptions import ExtractionError, ExtractionErrorKind, ParseError
from html_scraper import Node, parse_html
from plugin_versions import (
    Constraint,
    VersionSpec,
    find_version_in_text,
    format_specifier,
    package_key,
    parse_specifier,
)

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────
#  Listing Model
# ──────────────────────────────────────────────

class Confidence(Enum):
    EXACT = "exact"
    INFERRED = "inferred"
    UNRELIABLE = "unreliable"

    @property
    def rank(self) -> int:
        """0 is most trustworthy."""
        return _CONFIDENCE_RANK[self]


_CONFIDENCE_RANK = {
    Confidence.EXACT: 0,
    Confidence.INFERRED: 1,
    Confidence.UNRELIABLE: 2,
}


@dataclass(frozen=True)
class DependencySpec:
    name: str
    constraint: Constraint = field(default_factory=Constraint.latest)

    def __str__(self) -> str:
        return format_specifier(self.name, self.constraint)


@dataclass(frozen=True)
class PackageListing:
    """One source's claim about one version of a package. Immutable."""

    name: str
    version: VersionSpec
    source_id: str
    download_url: str
    dependencies: Tuple[DependencySpec, ...] = ()
    confidence: Confidence = Confidence.EXACT
    fingerprint: Optional[str] = None      # "<algorithm>:<hex>" declared upstream
    filename: Optional[str] = None
    page_url: str = ""

    @property
    def key(self) -> Tuple[str, VersionSpec, str]:
        return (package_key(self.name), self.version, self.source_id)

    @property
    def dependency_signature(self) -> frozenset:
        """Order-insensitive view of the declared dependencies."""
        return frozenset((package_key(d.name), d.constraint) for d in self.dependencies)

    def describe(self) -> str:
        return f"{self.name} {self.version} [{self.source_id}, {self.confidence.value}]"


@dataclass
class RawDocument:
    """One upstream response plus side documents fetched to resolve identifiers."""

    url: str
    body: bytes
    schema: str = "json"                                   # "json" | "html"
    related: Dict[str, bytes] = field(default_factory=dict)


def parse_document(body: bytes, schema: str) -> Any:
    """Parse a response body into JSON data or an HTML Node tree. Raises ParseError."""
    if schema == "json":
        try:
            return json.loads(body)
        except ValueError as exc:
            raise ParseError("json", str(exc)) from exc
    if schema == "html":
        return parse_html(body)
    raise ParseError(schema, "unsupported document schema")


def classify_confidence(version: VersionSpec, strict: bool) -> Confidence:
    if strict:
        return Confidence.EXACT if version.is_structured else Confidence.INFERRED
    return Confidence.INFERRED if version.is_structured else Confidence.UNRELIABLE


def _fingerprint(hashes: Dict[str, Any], algorithms: Iterable[str]) -> Optional[str]:
    for algorithm in algorithms:
        value = hashes.get(algorithm)
        if value:
            return f"{algorithm}:{str(value).strip().lower()}"
    return None


# ──────────────────────────────────────────────
#  Base Extractor
# ──────────────────────────────────────────────

_RECORD_ERRORS = (KeyError, TypeError, ValueError, AttributeError, IndexError)


class MetadataExtractor:
    """Base adapter. Subclasses implement ``records`` and ``to_listing``."""

    schema = "json"
    declares_dependencies = True

    def __init__(self, source_id: str) -> None:
        self.source_id = source_id
        self.last_skipped = 0
        self.total_skipped = 0

    def extract(self, document: RawDocument, name: str) -> List[PackageListing]:
        try:
            tree = parse_document(document.body, self.schema)
        except ParseError as exc:
            raise ExtractionError(
                ExtractionErrorKind.MALFORMED, self.source_id, exc.detail, url=document.url,
            ) from exc

        try:
            context = self.context_for(tree, document, name)
            records = list(self.records(tree, context))
        except ExtractionError:
            raise
        except _RECORD_ERRORS as exc:
            raise ExtractionError(
                ExtractionErrorKind.MALFORMED, self.source_id,
                f"unexpected document structure ({exc!r})", url=document.url,
            ) from exc

        listings: List[PackageListing] = []
        skipped = 0
        for record in records:
            try:
                listings.append(self.to_listing(record, context))
            except _RECORD_ERRORS as exc:
                skipped += 1
                logger.debug("[%s] skipping malformed record for %s: %r", self.source_id, name, exc)

        self.last_skipped = skipped
        self.total_skipped += skipped
        if skipped:
            logger.info(
                "[%s] %s: skipped %d malformed record(s), kept %d",
                self.source_id, name, skipped, len(listings),
            )
        if not listings:
            raise ExtractionError(
                ExtractionErrorKind.EMPTY, self.source_id,
                f"no usable listings for '{name}'", url=document.url,
            )
        return listings

    def context_for(self, tree: Any, document: RawDocument, name: str) -> Dict[str, Any]:
        return {"name": name, "url": document.url}

    def records(self, tree: Any, context: Dict[str, Any]) -> Iterable[Any]:
        raise NotImplementedError

    def to_listing(self, record: Any, context: Dict[str, Any]) -> PackageListing:
        raise NotImplementedError

    def _unsupported(self, context: Dict[str, Any], detail: str) -> ExtractionError:
        return ExtractionError(
            ExtractionErrorKind.UNSUPPORTED, self.source_id, detail, url=context["url"],
        )


# ──────────────────────────────────────────────
#  Modrinth
# ──────────────────────────────────────────────

class ModrinthExtractor(MetadataExtractor):
    """``/v2/project/{slug}/version`` plus the ``/dependencies`` side document."""

    def context_for(self, tree, document, name):
        context = super().context_for(tree, document, name)
        projects: Dict[str, str] = {}
        versions: Dict[str, Tuple[str, str]] = {}
        raw = document.related.get("dependencies")
        if raw:
            try:
                related = json.loads(raw)
            except ValueError:
                logger.debug("[%s] unreadable dependency document for %s", self.source_id, name)
                related = {}
            for project in related.get("projects") or []:
                projects[project["id"]] = project.get("slug") or project["id"]
            for version in related.get("versions") or []:
                versions[version["id"]] = (version.get("project_id", ""), version["version_number"])
        context["projects"] = projects
        context["versions"] = versions
        return context

    def records(self, tree, context):
        if not isinstance(tree, list):
            raise self._unsupported(context, "expected a list of versions")
        return tree

    def to_listing(self, record, context):
        version = VersionSpec.parse(record["version_number"])
        files = record["files"]
        primary = next((f for f in files if f.get("primary")), files[0])
        dependencies = [
            self._dependency(dep, context)
            for dep in record.get("dependencies") or []
            if dep.get("dependency_type") == "required"
        ]
        return PackageListing(
            name=context["name"],
            version=version,
            source_id=self.source_id,
            download_url=primary["url"],
            dependencies=tuple(dependencies),
            confidence=classify_confidence(version, strict=True),
            fingerprint=_fingerprint(primary.get("hashes") or {}, ("sha512", "sha1")),
            filename=primary.get("filename"),
        )

    def _dependency(self, dep: Dict[str, Any], context: Dict[str, Any]) -> DependencySpec:
        project_id = dep.get("project_id")
        constraint = Constraint.latest()
        version_id = dep.get("version_id")
        if version_id and version_id in context["versions"]:
            owner, number = context["versions"][version_id]
            project_id = project_id or owner
            constraint = Constraint.minimum(number)
        elif version_id:
            logger.debug(
                "[%s] %s: version %s missing from the dependency document, accepting any version",
                self.source_id, context["name"], version_id,
            )
        if not project_id:
            raise KeyError("project_id")
        # Without the side document the raw project id is the best name available
        return DependencySpec(context["projects"].get(project_id, project_id), constraint)


# ──────────────────────────────────────────────
#  Hangar (PaperMC)
# ──────────────────────────────────────────────

class HangarExtractor(MetadataExtractor):
    """``/api/v1/projects/{slug}/versions`` for one platform."""

    def __init__(self, source_id: str, platform: str = "PAPER") -> None:
        super().__init__(source_id)
        self.platform = platform.upper()

    def records(self, tree, context):
        if not isinstance(tree, dict) or not isinstance(tree.get("result"), list):
            raise self._unsupported(context, "expected a paginated 'result' list")
        return tree["result"]

    def to_listing(self, record, context):
        version = VersionSpec.parse(record["name"])
        download = record["downloads"][self.platform]
        url = download.get("downloadUrl") or download.get("externalUrl")
        if not url:
            raise KeyError("downloadUrl")
        file_info = download.get("fileInfo") or {}
        dependencies = [
            DependencySpec(dep["name"])
            for dep in (record.get("pluginDependencies") or {}).get(self.platform, [])
            if dep.get("required")
        ]
        return PackageListing(
            name=context["name"],
            version=version,
            source_id=self.source_id,
            download_url=urljoin(context["url"], url),
            dependencies=tuple(dependencies),
            confidence=classify_confidence(version, strict=True),
            fingerprint=_fingerprint({"sha256": file_info.get("sha256Hash")}, ("sha256",)),
            filename=file_info.get("name"),
        )


# ──────────────────────────────────────────────
#  SpigotMC (via Spiget)
# ──────────────────────────────────────────────

class SpigetExtractor(MetadataExtractor):
    """
    ``/v2/resources/{id}/versions``. The resource record found by the name
    search travels as the ``resource`` side document. Version names are
    free text and Spiget exposes no dependency metadata.
    """

    declares_dependencies = False

    def __init__(self, source_id: str, base_url: str = "https://api.spiget.org/v2") -> None:
        super().__init__(source_id)
        self.base_url = base_url.rstrip("/")

    def context_for(self, tree, document, name):
        context = super().context_for(tree, document, name)
        raw = document.related.get("resource")
        if not raw:
            raise self._unsupported(context, "missing resource record")
        resource = json.loads(raw)
        context["resource_id"] = str(resource["id"])
        context["page_url"] = f"https://www.spigotmc.org/resources/{resource['id']}/"
        return context

    def records(self, tree, context):
        if not isinstance(tree, list):
            raise self._unsupported(context, "expected a list of versions")
        return tree

    def to_listing(self, record, context):
        title = str(record["name"]).strip()
        if not title:
            raise ValueError("empty version name")
        version = VersionSpec.parse(find_version_in_text(title) or title)
        rid, vid = context["resource_id"], record["id"]
        return PackageListing(
            name=context["name"],
            version=version,
            source_id=self.source_id,
            download_url=f"{self.base_url}/resources/{rid}/versions/{vid}/download",
            confidence=classify_confidence(version, strict=False),
            page_url=context["page_url"],
        )


# ──────────────────────────────────────────────
#  BukkitDev (HTML scraping)
# ──────────────────────────────────────────────

class BukkitDevExtractor(MetadataExtractor):
    """
    Scrapes a project's file listing. The version is inferred from each
    file's title (``"WorldEdit 6.1.9"``), so nothing here is ever Exact.
    """

    schema = "html"
    declares_dependencies = False

    def __init__(
        self,
        source_id: str,
        list_selector: str = "table.project-file-listing",
        item_selector: str = "tr.project-file-list-item",
        title_selector: str = "a[data-action=file-link]",
    ) -> None:
        super().__init__(source_id)
        self.list_selector = list_selector
        self.item_selector = item_selector
        self.title_selector = title_selector

    def records(self, tree: Node, context):
        container = tree.select_one(self.list_selector)
        if container is None:
            raise self._unsupported(context, f"no element matches {self.list_selector!r}")
        return container.select(self.item_selector)

    def to_listing(self, record: Node, context):
        link = record.select_one(self.title_selector)
        if link is None:
            if record.tag != "a":
                raise KeyError(self.title_selector)
            link = record
        title = link.text()
        href = link.get("href")
        if not title or not href:
            raise ValueError("file row without title or link")
        version = VersionSpec.parse(find_version_in_text(title) or title)
        page_url = urljoin(context["url"], href)
        download_url = page_url if page_url.rstrip("/").endswith("/download") else (
            page_url.rstrip("/") + "/download"
        )
        return PackageListing(
            name=context["name"],
            version=version,
            source_id=self.source_id,
            download_url=download_url,
            confidence=classify_confidence(version, strict=False),
            page_url=page_url,
        )


# ──────────────────────────────────────────────
#  JSON Repository Index
# ──────────────────────────────────────────────

class IndexExtractor(MetadataExtractor):
    """
    Self-hosted (or local) repository index::

        {"plugins": {"WorldEdit": [{"version": "6.1.9", "url": "...",
                                    "sha256": "...", "depends": ["WorldGuard@>=6.0"]}]}}
    """

    def context_for(self, tree, document, name):
        context = super().context_for(tree, document, name)
        if not isinstance(tree, dict) or not isinstance(tree.get("plugins"), dict):
            raise self._unsupported(context, "expected a 'plugins' mapping")
        wanted = package_key(name)
        for key in tree["plugins"]:
            if package_key(key) == wanted:
                context["name"] = key
                break
        return context

    def records(self, tree, context):
        entries = tree["plugins"].get(context["name"], [])
        if not isinstance(entries, list):
            raise self._unsupported(context, f"entries for '{context['name']}' are not a list")
        return entries

    def to_listing(self, record, context):
        version = VersionSpec.parse(record["version"])
        dependencies = []
        for text in record.get("depends") or []:
            dep_name, constraint = parse_specifier(text)
            dependencies.append(DependencySpec(dep_name, constraint))
        return PackageListing(
            name=context["name"],
            version=version,
            source_id=self.source_id,
            download_url=urljoin(context["url"], record["url"]),
            dependencies=tuple(dependencies),
            confidence=classify_confidence(version, strict=True),
            fingerprint=_fingerprint(record, ("sha256", "sha512", "sha1")),
            filename=record.get("filename"),
        )
