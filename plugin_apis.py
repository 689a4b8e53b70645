"""
plugin_apis.py
==============
Transport + upstream sources for Minecraft plugin repositories.

Supported platforms:
  - **Modrinth**    – https://api.modrinth.com/v2
  - **Hangar**      – https://hangar.papermc.io/api/v1
  - **SpigotMC**    – https://api.spiget.org/v2 (Spiget mirror)
  - **BukkitDev**   – https://dev.bukkit.org (HTML scraping)
  - **Index**       – a JSON repository index (http(s) or file://)

Each source exposes:
  - fetch_document(name, fetch) → RawDocument for the package's versions
  - search(query, fetch)        → list of SearchHit
  - extractor                   → the MetadataExtractor for its documents

Sources never talk to the network directly; they are handed a ``fetch``
coroutine (``url → bytes``) so the Source Registry can bound concurrency
and retry in one place.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Sequence
from urllib.parse import quote, urlencode, urljoin, urlparse
from urllib.request import url2pathname

import aiohttp

from dropper_config import DropperConfig, SourceConfig, source_options
from exceptions import ConfigError, ExtractionError, ExtractionErrorKind, TransportError
from html_scraper import parse_html
from plugin_extractors import (
    BukkitDevExtractor,
    HangarExtractor,
    IndexExtractor,
    MetadataExtractor,
    ModrinthExtractor,
    RawDocument,
    SpigetExtractor,
)
from plugin_versions import package_key

logger = logging.getLogger(__name__)

Fetch = Callable[[str], Awaitable[bytes]]

USER_AGENT = "Dropper/1.0 (Minecraft plugin manager)"
DEFAULT_ATTEMPTS = 3


# ──────────────────────────────────────────────
#  Transport
# ──────────────────────────────────────────────

class Transport:
    """``fetch(url) -> bytes``, raising TransportError on any failure."""

    async def fetch(self, url: str) -> bytes:
        raise NotImplementedError

    async def close(self) -> None:
        return None

    async def __aenter__(self) -> "Transport":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


class AiohttpTransport(Transport):
    """aiohttp-backed transport. Also serves ``file://`` URLs and bare paths."""

    HEADERS = {"User-Agent": USER_AGENT}

    def __init__(
        self,
        timeout: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers=self.HEADERS)
            self._owns_session = True
        return self._session

    async def fetch(self, url: str) -> bytes:
        parsed = urlparse(url)
        if parsed.scheme in ("", "file"):
            return self._read_local(url, parsed)

        logger.debug("GET %s", url)
        try:
            async with self._get_session().get(
                url, timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                if resp.status < 200 or resp.status >= 300:
                    raise TransportError(url, resp.status, resp.reason or "")
                return await resp.read()
        except aiohttp.ClientError as exc:
            raise TransportError(url, None, str(exc) or type(exc).__name__) from exc
        except asyncio.TimeoutError as exc:
            raise TransportError(url, None, f"timed out after {self.timeout}s") from exc

    @staticmethod
    def _read_local(url: str, parsed) -> bytes:
        path = url2pathname(parsed.path) if parsed.scheme == "file" else url
        try:
            with open(path, "rb") as f:
                return f.read()
        except FileNotFoundError as exc:
            raise TransportError(url, 404, "file not found") from exc
        except OSError as exc:
            raise TransportError(url, None, str(exc)) from exc

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()


def is_retryable(exc: TransportError) -> bool:
    """Unreachable hosts, timeouts, 5xx, 408 and 429 are worth another attempt."""
    if exc.status is None:
        return True
    return exc.status >= 500 or exc.status in (408, 429)


async def fetch_with_retry(
    fetch: Fetch,
    url: str,
    attempts: int = DEFAULT_ATTEMPTS,
    backoff: float = 0.5,
) -> bytes:
    """
    Call ``fetch(url)`` up to ``attempts`` times with exponential backoff
    (``backoff``, ``2*backoff``, ...). The last TransportError propagates.
    """
    attempt = 1
    while True:
        try:
            return await fetch(url)
        except TransportError as exc:
            if attempt >= attempts or not is_retryable(exc):
                raise
            delay = backoff * (2 ** (attempt - 1))
            logger.debug("Attempt %d/%d for %s failed (%s); retrying in %.2fs",
                         attempt, attempts, url, exc, delay)
            await asyncio.sleep(delay)
            attempt += 1


# ──────────────────────────────────────────────
#  Common Data Structures
# ──────────────────────────────────────────────

@dataclass
class SearchHit:
    """Normalised search result returned by every source."""

    name: str                            # name to put in the manifest
    source_id: str
    title: str = ""
    page_url: str = ""
    description: str = ""
    downloads: int = 0


class PluginSource:
    """One configured upstream repository."""

    kind = ""

    def __init__(self, source_id: str, extractor: MetadataExtractor, priority: int = 0) -> None:
        self.source_id = source_id
        self.extractor = extractor
        self.priority = priority

    async def fetch_document(self, name: str, fetch: Fetch) -> RawDocument:
        raise NotImplementedError

    async def search(self, query: str, fetch: Fetch, limit: int = 20) -> List[SearchHit]:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.source_id} priority={self.priority}>"


# ──────────────────────────────────────────────
#  Modrinth
# ──────────────────────────────────────────────

class ModrinthSource(PluginSource):
    kind = "modrinth"
    BASE = "https://api.modrinth.com/v2"

    def __init__(
        self,
        source_id: str = "modrinth",
        base_url: str = "",
        priority: int = 0,
        loaders: Optional[Sequence[str]] = None,
        game_versions: Optional[Sequence[str]] = None,
    ) -> None:
        super().__init__(source_id, ModrinthExtractor(source_id), priority)
        self.base = (base_url or self.BASE).rstrip("/")
        self.loaders = list(loaders or [])
        self.game_versions = list(game_versions or [])

    def versions_url(self, name: str) -> str:
        params: Dict[str, str] = {}
        if self.loaders:
            params["loaders"] = json.dumps(self.loaders)
        if self.game_versions:
            params["game_versions"] = json.dumps(self.game_versions)
        url = f"{self.base}/project/{quote(name.lower())}/version"
        return f"{url}?{urlencode(params)}" if params else url

    async def fetch_document(self, name, fetch):
        url = self.versions_url(name)
        body = await fetch(url)
        related: Dict[str, bytes] = {}
        if _declares_required_dependencies(body):
            deps_url = f"{self.base}/project/{quote(name.lower())}/dependencies"
            try:
                related["dependencies"] = await fetch(deps_url)
            except TransportError as exc:
                logger.warning("[%s] could not resolve dependency ids for %s: %s",
                               self.source_id, name, exc)
        return RawDocument(url=url, body=body, schema="json", related=related)

    async def search(self, query, fetch, limit=20):
        params = {
            "query": query,
            "limit": str(limit),
            "facets": json.dumps([["project_type:plugin"]]),
        }
        data = json.loads(await fetch(f"{self.base}/search?{urlencode(params)}"))
        return [
            SearchHit(
                name=hit.get("slug", ""),
                source_id=self.source_id,
                title=hit.get("title", ""),
                page_url=f"https://modrinth.com/plugin/{hit.get('slug', '')}",
                description=hit.get("description", ""),
                downloads=int(hit.get("downloads", 0) or 0),
            )
            for hit in data.get("hits", [])
        ]


def _declares_required_dependencies(body: bytes) -> bool:
    try:
        versions = json.loads(body)
    except ValueError:
        return False
    if not isinstance(versions, list):
        return False
    return any(
        isinstance(v, dict) and any(
            isinstance(d, dict) and d.get("dependency_type") == "required"
            for d in v.get("dependencies") or []
        )
        for v in versions
    )


# ──────────────────────────────────────────────
#  Hangar (PaperMC)
# ──────────────────────────────────────────────

class HangarSource(PluginSource):
    kind = "hangar"
    BASE = "https://hangar.papermc.io/api/v1"

    def __init__(
        self,
        source_id: str = "hangar",
        base_url: str = "",
        priority: int = 0,
        platform: str = "PAPER",
    ) -> None:
        super().__init__(source_id, HangarExtractor(source_id, platform), priority)
        self.base = (base_url or self.BASE).rstrip("/")
        self.platform = platform.upper()

    async def fetch_document(self, name, fetch):
        params = urlencode({"limit": 25, "platform": self.platform})
        url = f"{self.base}/projects/{quote(name)}/versions?{params}"
        return RawDocument(url=url, body=await fetch(url), schema="json")

    async def search(self, query, fetch, limit=20):
        params = urlencode({"q": query, "limit": limit, "sort": "-downloads"})
        data = json.loads(await fetch(f"{self.base}/projects?{params}"))
        hits = []
        for project in data.get("result", []):
            namespace = project.get("namespace", {})
            owner, slug = namespace.get("owner", ""), namespace.get("slug", "")
            hits.append(SearchHit(
                name=slug,
                source_id=self.source_id,
                title=project.get("name", slug),
                page_url=f"https://hangar.papermc.io/{owner}/{slug}",
                description=project.get("description", ""),
                downloads=int(project.get("stats", {}).get("downloads", 0) or 0),
            ))
        return hits


# ──────────────────────────────────────────────
#  SpigotMC (via Spiget)
# ──────────────────────────────────────────────

class SpigetSource(PluginSource):
    kind = "spiget"
    BASE = "https://api.spiget.org/v2"

    def __init__(self, source_id: str = "spigotmc", base_url: str = "", priority: int = 0) -> None:
        base = (base_url or self.BASE).rstrip("/")
        super().__init__(source_id, SpigetExtractor(source_id, base), priority)
        self.base = base

    async def _search_resources(self, query: str, fetch: Fetch, size: int) -> list:
        params = urlencode({"field": "name", "size": size, "sort": "-downloads"})
        data = json.loads(await fetch(f"{self.base}/search/resources/{quote(query)}?{params}"))
        return data if isinstance(data, list) else []

    async def fetch_document(self, name, fetch):
        try:
            resources = await self._search_resources(name, fetch, 10)
        except TransportError as exc:
            # Spiget answers 404 when a search has no hits
            if exc.not_found:
                resources = []
            else:
                raise
        resource = _pick_resource(resources, name)
        if resource is None:
            raise ExtractionError(
                ExtractionErrorKind.EMPTY, self.source_id, f"no resource named '{name}'",
            )
        params = urlencode({"size": 50, "sort": "-releaseDate"})
        url = f"{self.base}/resources/{resource['id']}/versions?{params}"
        return RawDocument(
            url=url,
            body=await fetch(url),
            schema="json",
            related={"resource": json.dumps(resource).encode("utf-8")},
        )

    async def search(self, query, fetch, limit=20):
        hits = []
        for resource in await self._search_resources(query, fetch, limit):
            rid = resource.get("id", "")
            hits.append(SearchHit(
                name=resource.get("name", ""),
                source_id=self.source_id,
                title=resource.get("name", ""),
                page_url=f"https://www.spigotmc.org/resources/{rid}/",
                description=resource.get("tag", ""),
                downloads=int(resource.get("downloads", 0) or 0),
            ))
        return hits


def _pick_resource(resources: list, name: str) -> Optional[dict]:
    """Exact (case-insensitive) name match, else a title that starts with the name as a word."""
    wanted = package_key(name)
    candidates = [r for r in resources if isinstance(r, dict) and "id" in r]
    for resource in candidates:
        if package_key(str(resource.get("name", ""))) == wanted:
            return resource
    for resource in candidates:
        title = package_key(str(resource.get("name", "")))
        if title.startswith(wanted) and not title[len(wanted):len(wanted) + 1].isalnum():
            return resource
    return None


# ──────────────────────────────────────────────
#  BukkitDev (HTML)
# ──────────────────────────────────────────────

class BukkitDevSource(PluginSource):
    """
    Scrapes dev.bukkit.org. Search results use ``list_selector`` for the
    results container and ``item_selector`` for each result link.
    """

    kind = "bukkitdev"
    BASE = "https://dev.bukkit.org"

    def __init__(
        self,
        source_id: str = "bukkitdev",
        base_url: str = "",
        priority: int = 0,
        search_url: str = "",
        list_selector: str = ".listing",
        item_selector: str = "div.results-name > a",
        files_list_selector: str = "table.project-file-listing",
        files_item_selector: str = "tr.project-file-list-item",
        files_title_selector: str = "a[data-action=file-link]",
    ) -> None:
        extractor = BukkitDevExtractor(
            source_id, files_list_selector, files_item_selector, files_title_selector,
        )
        super().__init__(source_id, extractor, priority)
        self.base = (base_url or self.BASE).rstrip("/")
        self.search_url = search_url or f"{self.base}/search?search={{}}"
        self.list_selector = list_selector
        self.item_selector = item_selector

    @staticmethod
    def project_slug(name: str) -> str:
        return "-".join(name.strip().lower().split())

    async def fetch_document(self, name, fetch):
        url = f"{self.base}/projects/{quote(self.project_slug(name))}/files"
        return RawDocument(url=url, body=await fetch(url), schema="html")

    async def search(self, query, fetch, limit=20):
        url = self.search_url.replace("{}", quote(query))
        root = parse_html(await fetch(url))
        container = root.select_one(self.list_selector)
        if container is None:
            return []
        hits = []
        for link in container.select(self.item_selector)[:limit]:
            href = link.get("href") or ""
            if not href:
                continue
            page_url = urljoin(url, href)
            hits.append(SearchHit(
                name=page_url.rstrip("/").rsplit("/", 1)[-1],
                source_id=self.source_id,
                title=link.text(),
                page_url=page_url,
            ))
        return hits


# ──────────────────────────────────────────────
#  JSON Repository Index
# ──────────────────────────────────────────────

class IndexSource(PluginSource):
    kind = "index"

    def __init__(self, source_id: str = "index", base_url: str = "", priority: int = 0) -> None:
        if not base_url:
            raise ConfigError(f"Index source '{source_id}' needs a base_url")
        super().__init__(source_id, IndexExtractor(source_id), priority)
        if "://" not in base_url:
            base_url = "file://" + os.path.abspath(base_url)
        self.url = base_url

    async def fetch_document(self, name, fetch):
        return RawDocument(url=self.url, body=await fetch(self.url), schema="json")

    async def search(self, query, fetch, limit=20):
        data = json.loads(await fetch(self.url))
        wanted = package_key(query)
        return [
            SearchHit(name=name, source_id=self.source_id, title=name, page_url=self.url)
            for name in (data.get("plugins") or {})
            if wanted in package_key(name)
        ][:limit]


# ──────────────────────────────────────────────
#  Construction from Config
# ──────────────────────────────────────────────

SOURCE_TYPES = {
    "modrinth": ModrinthSource,
    "hangar": HangarSource,
    "spiget": SpigetSource,
    "bukkitdev": BukkitDevSource,
    "index": IndexSource,
}


def build_source(config: DropperConfig, entry: SourceConfig, priority: int) -> PluginSource:
    cls = SOURCE_TYPES.get(entry.type)
    if cls is None:
        raise ConfigError(f"Unknown source type '{entry.type}'")
    try:
        return cls(
            source_id=entry.id,
            base_url=entry.base_url,
            priority=priority,
            **source_options(config, entry),
        )
    except TypeError as exc:
        raise ConfigError(f"Invalid options for source '{entry.id}': {exc}") from exc


def build_sources(config: DropperConfig) -> List[PluginSource]:
    """Instantiate the configured sources; list order becomes priority (0 is highest)."""
    return [build_source(config, entry, i) for i, entry in enumerate(config.sources)]
