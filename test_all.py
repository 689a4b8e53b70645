#!/usr/bin/env python3
"""
test_all.py
===========
Test suite for Dropper.

Usage:
    pytest test_all.py -v
    pytest test_all.py -v -k resolver
"""

import asyncio
import hashlib
import io
import itertools
import json
import struct
import tempfile
import zipfile
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml
from rich.console import Console

from dependency_resolver import MAX_BACKTRACK_DEPTH, Requirement, Resolver
from dropper_config import DropperConfig, SourceConfig, source_options
from exceptions import (
    ConfigError,
    ExtractionError,
    ExtractionErrorKind,
    InstallErrorKind,
    ManifestError,
    ParseError,
    ResolutionError,
    ResolutionErrorKind,
    StateError,
    TransportError,
)
from html_scraper import parse_html, select
from install_plan import ActionKind, build_plan, dependency_depths, summarize_plan
from install_state import InstallRecord, InstallStateStore
from main import main, parse_args
from manifest import Manifest, ManifestEntry
from plugin_apis import (
    AiohttpTransport,
    BukkitDevSource,
    IndexSource,
    ModrinthSource,
    SpigetSource,
    Transport,
    build_sources,
    fetch_with_retry,
    is_retryable,
)
from plugin_extractors import (
    BukkitDevExtractor,
    Confidence,
    DependencySpec,
    HangarExtractor,
    IndexExtractor,
    ModrinthExtractor,
    PackageListing,
    RawDocument,
    SpigetExtractor,
    classify_confidence,
)
from plugin_installer import ActionState, Installer, plugin_filename
from plugin_manager import PluginManager
from plugin_validator import (
    PluginValidator,
    content_fingerprint,
    extract_plugin_meta,
    fingerprint_matches,
)
from plugin_versions import (
    Constraint,
    ConstraintKind,
    VersionSpec,
    find_version_in_text,
    format_specifier,
    parse_specifier,
)
from source_registry import SourceRegistry
from version_index import VersionIndex


REPO = "https://repo.example"
INDEX_URL = f"{REPO}/index.json"
MIRROR_URL = "https://mirror.example/index.json"


# ══════════════════════════════════════════════════════════════════════════════
#  FIXTURES
# ══════════════════════════════════════════════════════════════════════════════


@pytest.fixture
def temp_dir():
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def server_dir(temp_dir):
    """A server directory whose only source is the fake JSON index."""
    server = temp_dir / "server"
    server.mkdir()
    config = {
        "sources": [{"type": "index", "id": "repo", "base_url": INDEX_URL}],
        "backoff": 0,
        "max_workers": 2,
    }
    (server / "dropper.json").write_text(json.dumps(config))
    return server


def make_jar(name, version="1.0", depend=None, files=None):
    """Build plugin JAR bytes. Fixed timestamps keep the bytes deterministic."""
    if files is None:
        descriptor = {"name": name, "version": version, "main": f"com.example.{name}"}
        if depend:
            descriptor["depend"] = list(depend)
        files = {"plugin.yml": yaml.safe_dump(descriptor)}
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for path, content in files.items():
            zf.writestr(zipfile.ZipInfo(path, date_time=(1980, 1, 1, 0, 0, 0)), content)
    return buf.getvalue()


def make_corrupt_jar(name):
    """A JAR whose central directory is fine but whose deflate stream is garbage."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        descriptor = f"name: {name}\nversion: '1.0'\nmain: com.example.{name}\n" * 20
        zf.writestr(zipfile.ZipInfo("plugin.yml", date_time=(1980, 1, 1, 0, 0, 0)), descriptor,
                    compress_type=zipfile.ZIP_DEFLATED)
        info = zf.getinfo("plugin.yml")
    data = bytearray(buf.getvalue())
    offset = info.header_offset
    name_len, extra_len = struct.unpack("<HH", data[offset + 26:offset + 30])
    start = offset + 30 + name_len + extra_len
    # 0xff opens a deflate block of the reserved type
    data[start:start + info.compress_size] = b"\xff" * info.compress_size
    return bytes(data)


class FakeTransport(Transport):
    """
    In-memory upstream. ``responses`` maps a URL (or the URL without its
    query string) to bytes, an exception to raise, a callable, or a list
    consumed one item per call (the last item repeats).
    """

    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.calls = []

    async def fetch(self, url):
        self.calls.append(url)
        await asyncio.sleep(0)
        response = self.responses.get(url)
        if response is None:
            response = self.responses.get(url.split("?", 1)[0])
        if response is None:
            raise TransportError(url, 404, "Not Found")
        if isinstance(response, list):
            response = response.pop(0) if len(response) > 1 else response[0]
        if callable(response):
            response = response(url)
        if isinstance(response, Exception):
            raise response
        return response

    def count(self, url):
        return sum(1 for c in self.calls if c == url or c.split("?", 1)[0] == url)


def listing(name, version, source="repo", deps=(), url=None, confidence=Confidence.EXACT, fingerprint=None):
    dependencies = tuple(DependencySpec(*parse_specifier(d)) for d in deps)
    return PackageListing(
        name=name,
        version=VersionSpec.parse(version),
        source_id=source,
        download_url=url or f"{REPO}/files/{name}-{version}.jar",
        dependencies=dependencies,
        confidence=confidence,
        fingerprint=fingerprint,
    )


def serve(transport, *listings):
    """Register a JAR for each listing's download URL."""
    for item in listings:
        transport.responses[item.download_url] = make_jar(item.name, str(item.version))


def publish(transport, plugins, url=INDEX_URL):
    """Publish ``{name: [(version, [deps])]}`` as a JSON index plus artifacts."""
    base = url.rsplit("/", 1)[0]
    index = {"plugins": {}}
    for name, versions in plugins.items():
        entries = []
        for version, depends in versions:
            data = make_jar(name, version)
            path = f"files/{name}-{version}.jar"
            transport.responses[f"{base}/{path}"] = data
            entries.append({
                "version": version,
                "url": path,
                "sha256": hashlib.sha256(data).hexdigest(),
                "depends": list(depends),
            })
        index["plugins"][name] = entries
    transport.responses[url] = json.dumps(index).encode("utf-8")


def resolve(listings, manifest, preferred=None, priorities=None):
    index = VersionIndex(listings, priorities or {"repo": 0, "mirror": 1})
    return Resolver(index).resolve([parse_specifier(m) for m in manifest], preferred)


def plan_for(listings, manifest, state=None):
    return build_plan(resolve(listings, manifest), state or {})


def make_installer(temp_dir, transport, **kwargs):
    store = InstallStateStore(temp_dir / ".dropper" / "state.json")
    return Installer(temp_dir / "plugins", store, transport, backoff=0, **kwargs)


def make_manager(server_dir, transport):
    config = DropperConfig.load(str(server_dir / "dropper.json"))
    return PluginManager(config, transport=transport)


def quiet_console():
    return Console(file=io.StringIO(), width=200)


# ══════════════════════════════════════════════════════════════════════════════
#  1. VERSION TESTS
# ══════════════════════════════════════════════════════════════════════════════


def test_structured_version_parsing():
    """Leading v, any release length, qualifier after a separator or directly."""
    v = VersionSpec.parse("v7.2.15")
    assert v.is_structured
    assert v.release == (7, 2, 15)
    assert (v.major, v.minor, v.patch) == (7, 2, 15)
    assert v.qualifier is None

    snap = VersionSpec.parse("1.0-SNAPSHOT")
    assert snap.qualifier == "SNAPSHOT"
    assert snap.is_prerelease

    beta = VersionSpec.parse("2.0b3")
    assert beta.release == (2, 0)
    assert beta.qualifier == "b3"


def test_opaque_versions():
    for text in ("", "Unknown", "build #12"):
        v = VersionSpec.parse(text)
        assert v.is_opaque
        assert not v.is_prerelease
        assert str(v) == text


def test_version_ordering():
    expected = [
        "Unknown", "build #12",
        "1.0-SNAPSHOT", "1.0-alpha", "1.0-beta2", "1.0-rc1", "1.0",
        "1.0.1", "1.10", "2.0b3", "2.0",
    ]
    shuffled = list(reversed(expected))
    ordered = sorted(VersionSpec.parse(t) for t in shuffled)
    assert [str(v) for v in ordered] == expected


def test_version_equality_ignores_trailing_zeros_and_build_metadata():
    assert VersionSpec.parse("1.0") == VersionSpec.parse("1.0.0")
    assert VersionSpec.parse("v1.0") == VersionSpec.parse("1.0")
    assert VersionSpec.parse("1.2.3+build.5") == VersionSpec.parse("1.2.3")
    assert hash(VersionSpec.parse("1.0")) == hash(VersionSpec.parse("1.0.0"))


def test_structured_always_newer_than_opaque():
    assert VersionSpec.parse("0.1") > VersionSpec.parse("zzz")
    assert VersionSpec.parse("0.0.1-SNAPSHOT") > VersionSpec.parse("latest build")


def test_version_order_is_total_and_transitive():
    texts = ["1.0", "1.0.0", "1.0-rc1", "2.0b3", "10.0", "9.9.9", "Unknown", "abc", "1.10", "1.9"]
    versions = [VersionSpec.parse(t) for t in texts]
    for a, b in itertools.product(versions, repeat=2):
        assert [a < b, a == b, a > b].count(True) == 1
    for a, b, c in itertools.product(versions, repeat=3):
        if a < b and b < c:
            assert a < c


def test_find_version_in_text():
    assert find_version_in_text("WorldEdit 6.1.9 for Bukkit") == "6.1.9"
    assert find_version_in_text("worldedit-bukkit-7.2.0.jar") == "7.2.0"
    assert find_version_in_text("EssentialsX v2.19.0 (MC 1.16)") == "2.19.0"
    assert find_version_in_text("Nightly build") is None
    assert find_version_in_text("") is None


# ══════════════════════════════════════════════════════════════════════════════
#  2. CONSTRAINT TESTS
# ══════════════════════════════════════════════════════════════════════════════


def v(text):
    return VersionSpec.parse(text)


def test_constraint_latest_forms():
    for text in ("", "*", "latest", None):
        c = Constraint.parse(text)
        assert c.kind is ConstraintKind.LATEST
        assert c.allows(v("0.0.1"))
        assert c.allows(v("Unknown"))


def test_constraint_exact():
    for text in ("6.1.9", "=6.1.9", "==6.1.9"):
        c = Constraint.parse(text)
        assert c.kind is ConstraintKind.EXACT
        assert c.allows(v("6.1.9"))
        assert not c.allows(v("6.1.10"))


def test_constraint_minimum():
    assert Constraint.parse(">=1.2").kind is ConstraintKind.MINIMUM
    assert Constraint.parse("1.2+") == Constraint.parse(">=1.2")
    assert Constraint.parse(">=1.2").allows(v("1.2"))
    exclusive = Constraint.parse(">1.2")
    assert exclusive.kind is ConstraintKind.MINIMUM
    assert not exclusive.allows(v("1.2"))
    assert exclusive.allows(v("1.2.1"))


def test_constraint_ranges_and_wildcards():
    r = Constraint.parse(">=1.0,<2.0")
    assert r.kind is ConstraintKind.RANGE
    assert r.allows(v("1.9.9")) and not r.allows(v("2.0"))

    patch_wildcard = Constraint.parse("6.1.*")
    assert patch_wildcard.kind is ConstraintKind.RANGE
    assert patch_wildcard.allows(v("6.1.0"))
    assert patch_wildcard.allows(v("6.1.99"))
    assert not patch_wildcard.allows(v("6.2.0"))
    assert not patch_wildcard.allows(v("6.0.9"))

    minor_wildcard = Constraint.parse("6.*")
    assert minor_wildcard.allows(v("6.9"))
    assert not minor_wildcard.allows(v("7.0"))

    assert Constraint.parse("<=2.0").allows(v("2.0"))


def test_wildcards_shut_out_next_release_prereleases():
    patch_wildcard = Constraint.parse("6.1.*")
    assert not patch_wildcard.allows(v("6.2-SNAPSHOT"))
    assert not patch_wildcard.allows(v("6.2.0-rc1"))
    assert patch_wildcard.allows(v("6.1.5-SNAPSHOT"))
    assert not Constraint.parse("6.*").allows(v("7.0-beta2"))
    # an explicit exclusive bound still admits them
    assert Constraint.parse("<6.2").allows(v("6.2-SNAPSHOT"))
    assert Constraint.parse(">=6.2-SNAPSHOT").intersect(patch_wildcard) is None

    index = VersionIndex([listing("X", "6.2-SNAPSHOT"), listing("X", "6.0.5")], {"repo": 0})
    with pytest.raises(ResolutionError) as exc_info:
        Resolver(index).resolve([parse_specifier("X@6.1.*")])
    assert exc_info.value.kind is ResolutionErrorKind.UNSATISFIABLE



def test_constraint_parse_errors():
    for text in ("abc>=", ">=", ">=2.0,<1.0", "1.0,2.0", "a.*"):
        with pytest.raises(ValueError):
            Constraint.parse(text)


def test_constraint_round_trip():
    for text in (">=1.2", "6.1.*", ">=1.0,<2.0", "1.2.3", "*", ">1.0", "<=3.0", "1.2+", "6.*",
                 ">=6.1.3,6.1.*"):
        c = Constraint.parse(text)
        assert Constraint.parse(str(c)) == c
        assert Constraint.parse(c.canonical()) == c
    assert str(Constraint.parse("6.1.*")) == "6.1.*"
    assert Constraint.parse("6.1.*").canonical() == "6.1.*"
    narrowed = Constraint.parse("6.1.*").intersect(Constraint.parse(">=6.1.3"))
    assert narrowed.canonical() == ">=6.1.3,6.1.*"
    assert Constraint.parse(narrowed.canonical()) == narrowed


def test_constraint_round_trip_on_opaque_versions():
    built = [
        Constraint.exact("build 12"),
        Constraint.minimum("Release 1.2"),
        Constraint.minimum("b#7, final", inclusive=False),
        Constraint.exact('say "hi" \\o/'),
        Constraint.exact("latest"),
        Constraint.exact(""),
        Constraint.between(VersionSpec.parse("alpha <x>"), True, VersionSpec.parse("1.0+build5"), False),
    ]
    for c in built:
        text = str(c)
        assert Constraint.parse(text) == c, text
        name, parsed = parse_specifier(format_specifier("Odd@Name", c))
        assert (name, parsed) == ("Odd@Name", c)
    assert str(Constraint.exact("build 12")) == '"build 12"'
    assert Constraint.parse('>="Release 1.2"').allows(v("Release 1.3"))
    with pytest.raises(ValueError):
        Constraint.parse('"unterminated')



def test_constraint_intersection():
    assert Constraint.parse(">=1.0").intersect(Constraint.parse("<2.0")) == Constraint.parse(">=1.0,<2.0")
    assert Constraint.parse("<1.0").intersect(Constraint.parse(">=2.0")) is None
    assert Constraint.parse("1.0").intersect(Constraint.parse(">1.0")) is None
    narrowed = Constraint.parse("1.5").intersect(Constraint.parse(">=1.0,<2.0"))
    assert narrowed.kind is ConstraintKind.EXACT
    assert Constraint.latest().intersect(Constraint.parse("6.*")) == Constraint.parse("6.*")


def test_specifier_parsing():
    assert parse_specifier("WorldEdit@6.1.9") == ("WorldEdit", Constraint.exact("6.1.9"))
    name, constraint = parse_specifier("WorldEdit")
    assert name == "WorldEdit" and constraint.kind is ConstraintKind.LATEST
    assert parse_specifier("odd@name@>=1.0")[0] == "odd@name"
    with pytest.raises(ValueError):
        parse_specifier("@1.0")
    assert format_specifier("WorldEdit", Constraint.latest()) == "WorldEdit"
    assert format_specifier("WorldEdit", Constraint.parse("6.1.*")) == "WorldEdit@6.1.*"


# ══════════════════════════════════════════════════════════════════════════════
#  3. HTML SCRAPER TESTS
# ══════════════════════════════════════════════════════════════════════════════


SEARCH_PAGE = """<html><body>
<ul class="listing">
  <li><div class="results-name"><a href="/projects/worldedit">WorldEdit</a></div><p>Edit <b>worlds</b></p></li>
  <li><div class="results-name"><span><a href="/projects/nested">Nested</a></span></div></li>
  <li><div class="results-name"><a href="/projects/worldguard">  WorldGuard
  </a></div></li>
</ul>
<div class="listing-footer"><a href="/next">Next</a></div>
</body></html>"""


def test_child_and_descendant_combinators():
    root = parse_html(SEARCH_PAGE)
    children = select(root, ".listing div.results-name > a")
    assert [a.text() for a in children] == ["WorldEdit", "WorldGuard"]
    assert len(select(root, ".listing div.results-name a")) == 3


def test_class_and_attribute_selectors():
    root = parse_html(SEARCH_PAGE.encode("utf-8"))
    assert len(root.select(".listing")) == 1
    assert root.select_one("[href=/next]").text() == "Next"
    assert root.select_one('a[href="/projects/worldedit"]').get("href") == "/projects/worldedit"
    assert root.select_one("li p").text() == "Edit worlds"


def test_text_keeps_inline_element_order():
    root = parse_html('<div class="title">WorldEdit <b>7.2.0</b> for <i>Bukkit</i> 1.20</div>')
    assert root.select_one("div.title").text() == "WorldEdit 7.2.0 for Bukkit 1.20"
    assert root.select_one("b").text() == "7.2.0"


def test_comma_groups_keep_document_order():
    root = parse_html(SEARCH_PAGE)
    assert [n.tag for n in root.select("span, b")] == ["b", "span"]


def test_tolerates_stray_end_tags():
    root = parse_html("<div><p>one</div><p>two</p>")
    assert [p.text() for p in root.select("p")] == ["one", "two"]


def test_selector_and_document_errors():
    root = parse_html(SEARCH_PAGE)
    with pytest.raises(ValueError):
        root.select("a:hover")
    with pytest.raises(ParseError):
        parse_html(b"just text, no markup")


# ══════════════════════════════════════════════════════════════════════════════
#  4. EXTRACTOR TESTS
# ══════════════════════════════════════════════════════════════════════════════


MODRINTH_VERSIONS = [
    {
        "id": "v1",
        "version_number": "7.2.15",
        "files": [
            {"url": "https://cdn.modrinth.com/we-7.2.15.jar", "filename": "worldedit-bukkit-7.2.15.jar",
             "primary": True, "hashes": {"sha512": "ABC123", "sha1": "def"}},
        ],
        "dependencies": [
            {"project_id": "P1", "dependency_type": "required"},
            {"project_id": "P2", "dependency_type": "optional"},
        ],
    },
    {
        "id": "v2",
        "version_number": "7.2.14",
        "files": [{"url": "https://cdn.modrinth.com/we-7.2.14.jar", "hashes": {"sha1": "0a0b"}}],
        "dependencies": [{"version_id": "V9", "project_id": None, "dependency_type": "required"}],
    },
    {"id": "v3", "version_number": "7.2.13", "files": []},
]

MODRINTH_DEPENDENCIES = {
    "projects": [{"id": "P1", "slug": "worldguard"}, {"id": "P3", "slug": "fawe"}],
    "versions": [{"id": "V9", "project_id": "P3", "version_number": "2.5.0"}],
}


def test_modrinth_extractor():
    doc = RawDocument(
        url="https://api.modrinth.com/v2/project/worldedit/version",
        body=json.dumps(MODRINTH_VERSIONS).encode(),
        related={"dependencies": json.dumps(MODRINTH_DEPENDENCIES).encode()},
    )
    extractor = ModrinthExtractor("modrinth")
    listings = extractor.extract(doc, "worldedit")

    assert [str(l.version) for l in listings] == ["7.2.15", "7.2.14"]
    assert extractor.last_skipped == 1
    first, second = listings
    assert first.confidence is Confidence.EXACT
    assert first.fingerprint == "sha512:abc123"
    assert first.filename == "worldedit-bukkit-7.2.15.jar"
    assert first.dependencies == (DependencySpec("worldguard", Constraint.latest()),)
    assert second.fingerprint == "sha1:0a0b"
    assert second.dependencies == (DependencySpec("fawe", Constraint.minimum("2.5.0")),)


def test_modrinth_extractor_without_dependency_document():
    versions = MODRINTH_VERSIONS[:1] + [
        {
            "id": "v4",
            "version_number": "7.2.12",
            "files": [{"url": "https://cdn.modrinth.com/we-7.2.12.jar"}],
            "dependencies": [{"version_id": "V9", "project_id": "P3", "dependency_type": "required"}],
        },
    ]
    doc = RawDocument(
        url="https://api.modrinth.com/v2/project/worldedit/version",
        body=json.dumps(versions).encode(),
    )
    extractor = ModrinthExtractor("modrinth")
    listings = extractor.extract(doc, "worldedit")

    assert [str(l.version) for l in listings] == ["7.2.15", "7.2.12"]
    assert extractor.last_skipped == 0
    assert listings[0].dependencies == (DependencySpec("P1", Constraint.latest()),)
    assert listings[1].dependencies == (DependencySpec("P3", Constraint.latest()),)


def test_modrinth_document_errors():
    extractor = ModrinthExtractor("modrinth")
    cases = [
        (b"{not json", ExtractionErrorKind.MALFORMED),
        (b'{"error": "not_found"}', ExtractionErrorKind.UNSUPPORTED),
        (b"[]", ExtractionErrorKind.EMPTY),
    ]
    for body, kind in cases:
        with pytest.raises(ExtractionError) as exc_info:
            extractor.extract(RawDocument("https://api.modrinth.com/x", body), "worldedit")
        assert exc_info.value.kind is kind
        assert exc_info.value.source_id == "modrinth"


def test_hangar_extractor():
    payload = {"result": [
        {
            "name": "5.2.0",
            "downloads": {"PAPER": {
                "downloadUrl": "https://hangar.papermc.io/api/v1/projects/Maintenance/versions/5.2.0/PAPER/download",
                "fileInfo": {"name": "Maintenance-5.2.0.jar", "sha256Hash": "ABCDEF"},
            }},
            "pluginDependencies": {"PAPER": [
                {"name": "ProtocolLib", "required": True},
                {"name": "PlaceholderAPI", "required": False},
            ]},
        },
        {"name": "5.1.0", "downloads": {"VELOCITY": {"downloadUrl": "https://example.com/v.jar"}}},
        {"name": "5.0.0", "downloads": {"PAPER": {"externalUrl": "https://github.com/x/5.0.0.jar", "fileInfo": None}}},
    ]}
    extractor = HangarExtractor("hangar", "paper")
    listings = extractor.extract(
        RawDocument("https://hangar.papermc.io/api/v1/projects/Maintenance/versions", json.dumps(payload).encode()),
        "Maintenance",
    )
    assert [str(l.version) for l in listings] == ["5.2.0", "5.0.0"]
    assert extractor.last_skipped == 1
    assert listings[0].fingerprint == "sha256:abcdef"
    assert [d.name for d in listings[0].dependencies] == ["ProtocolLib"]
    assert listings[1].download_url == "https://github.com/x/5.0.0.jar"
    assert listings[1].fingerprint is None


def test_spiget_extractor_infers_versions_from_text():
    doc = RawDocument(
        url="https://api.spiget.org/v2/resources/13932/versions",
        body=json.dumps([{"id": 1, "name": "7.2.15"}, {"id": 2, "name": "Beta build"}, {"id": 3, "name": ""}]).encode(),
        related={"resource": json.dumps({"id": 13932, "name": "WorldEdit"}).encode()},
    )
    extractor = SpigetExtractor("spigotmc")
    listings = extractor.extract(doc, "WorldEdit")
    assert len(listings) == 2
    assert extractor.last_skipped == 1
    assert listings[0].confidence is Confidence.INFERRED
    assert listings[0].download_url == "https://api.spiget.org/v2/resources/13932/versions/1/download"
    assert listings[1].version.is_opaque
    assert listings[1].confidence is Confidence.UNRELIABLE
    assert not SpigetExtractor.declares_dependencies


def test_spiget_extractor_needs_resource():
    with pytest.raises(ExtractionError) as exc_info:
        SpigetExtractor("spigotmc").extract(RawDocument("u", b"[]"), "WorldEdit")
    assert exc_info.value.kind is ExtractionErrorKind.UNSUPPORTED


BUKKIT_FILES_PAGE = """<html><body>
<table class="listing project-file-listing">
  <thead><tr><th>Name</th></tr></thead>
  <tbody>
    <tr class="project-file-list-item"><td class="project-file-name"><div>
      <a data-action="file-link" href="/projects/worldedit/files/2431372">WorldEdit 6.1.9</a></div></td></tr>
    <tr class="project-file-list-item"><td><a data-action="file-link" href="/projects/worldedit/files/2000000">Nightly build</a></td></tr>
    <tr class="project-file-list-item"><td>no link here</td></tr>
  </tbody>
</table>
</body></html>"""


def test_bukkitdev_extractor():
    extractor = BukkitDevExtractor("bukkitdev")
    listings = extractor.extract(
        RawDocument("https://dev.bukkit.org/projects/worldedit/files", BUKKIT_FILES_PAGE.encode(), schema="html"),
        "WorldEdit",
    )
    assert len(listings) == 2
    assert extractor.last_skipped == 1
    first, second = listings
    assert str(first.version) == "6.1.9"
    assert first.confidence is Confidence.INFERRED
    assert first.download_url == "https://dev.bukkit.org/projects/worldedit/files/2431372/download"
    assert first.page_url == "https://dev.bukkit.org/projects/worldedit/files/2431372"
    assert second.confidence is Confidence.UNRELIABLE


def test_bukkitdev_extractor_unknown_layout():
    with pytest.raises(ExtractionError) as exc_info:
        BukkitDevExtractor("bukkitdev").extract(
            RawDocument("https://dev.bukkit.org/x", b"<html><body><p>Moved</p></body></html>", schema="html"),
            "WorldEdit",
        )
    assert exc_info.value.kind is ExtractionErrorKind.UNSUPPORTED


def test_index_extractor():
    index = {"plugins": {"WorldEdit": [
        {"version": "6.1.9", "url": "files/we-6.1.9.jar", "sha256": "ABC", "depends": ["WorldGuard@>=6.0"]},
        {"version": "7.0.0", "url": "https://cdn.example/we-7.jar"},
        {"url": "files/no-version.jar"},
    ]}}
    extractor = IndexExtractor("repo")
    listings = extractor.extract(RawDocument(INDEX_URL, json.dumps(index).encode()), "worldedit")
    assert [l.name for l in listings] == ["WorldEdit", "WorldEdit"]
    assert extractor.last_skipped == 1
    assert listings[0].download_url == f"{REPO}/files/we-6.1.9.jar"
    assert listings[0].fingerprint == "sha256:abc"
    assert listings[0].dependencies == (DependencySpec("WorldGuard", Constraint.parse(">=6.0")),)
    assert listings[1].download_url == "https://cdn.example/we-7.jar"

    with pytest.raises(ExtractionError) as exc_info:
        extractor.extract(RawDocument(INDEX_URL, json.dumps(index).encode()), "Ghost")
    assert exc_info.value.kind is ExtractionErrorKind.EMPTY


def test_classify_confidence():
    assert classify_confidence(v("1.0"), strict=True) is Confidence.EXACT
    assert classify_confidence(v("Unknown"), strict=True) is Confidence.INFERRED
    assert classify_confidence(v("1.0"), strict=False) is Confidence.INFERRED
    assert classify_confidence(v("Unknown"), strict=False) is Confidence.UNRELIABLE


# ══════════════════════════════════════════════════════════════════════════════
#  5. TRANSPORT & SOURCE TESTS
# ══════════════════════════════════════════════════════════════════════════════


def test_is_retryable():
    assert is_retryable(TransportError("u", None, "unreachable"))
    assert is_retryable(TransportError("u", 503))
    assert is_retryable(TransportError("u", 429))
    assert not is_retryable(TransportError("u", 404))
    assert not is_retryable(TransportError("u", 403))


@pytest.mark.asyncio
async def test_fetch_with_retry_gives_up_after_three_attempts():
    transport = FakeTransport({"https://x/a": TransportError("https://x/a", 503)})
    with pytest.raises(TransportError) as exc_info:
        await fetch_with_retry(transport.fetch, "https://x/a", attempts=3, backoff=0)
    assert exc_info.value.status == 503
    assert transport.count("https://x/a") == 3


@pytest.mark.asyncio
async def test_fetch_with_retry_recovers_and_skips_not_found():
    transport = FakeTransport({"https://x/a": [TransportError("https://x/a", None, "reset"), b"ok"]})
    assert await fetch_with_retry(transport.fetch, "https://x/a", backoff=0) == b"ok"
    assert transport.count("https://x/a") == 2

    with pytest.raises(TransportError):
        await fetch_with_retry(transport.fetch, "https://x/missing", backoff=0)
    assert transport.count("https://x/missing") == 1


@pytest.mark.asyncio
async def test_aiohttp_transport_reads_local_files(temp_dir):
    path = temp_dir / "index.json"
    path.write_bytes(b'{"plugins": {}}')
    transport = AiohttpTransport()
    try:
        assert await transport.fetch(str(path)) == b'{"plugins": {}}'
        assert await transport.fetch(path.as_uri()) == b'{"plugins": {}}'
        with pytest.raises(TransportError) as exc_info:
            await transport.fetch(str(temp_dir / "missing.json"))
        assert exc_info.value.not_found
    finally:
        await transport.close()


@pytest.mark.asyncio
async def test_modrinth_source_fetches_dependency_document():
    source = ModrinthSource(loaders=["paper"], game_versions=["1.20.4"])
    assert "loaders=" in source.versions_url("WorldEdit")
    base = "https://api.modrinth.com/v2/project/worldedit"
    transport = FakeTransport({
        f"{base}/version": json.dumps(MODRINTH_VERSIONS).encode(),
        f"{base}/dependencies": json.dumps(MODRINTH_DEPENDENCIES).encode(),
    })
    doc = await source.fetch_document("WorldEdit", transport.fetch)
    assert "dependencies" in doc.related
    listings = source.extractor.extract(doc, "WorldEdit")
    assert listings[0].dependencies[0].name == "worldguard"


@pytest.mark.asyncio
async def test_spiget_source_picks_resource_by_name():
    base = "https://api.spiget.org/v2"
    transport = FakeTransport({
        f"{base}/search/resources/WorldEdit": json.dumps([
            {"id": 1, "name": "WorldEditSUI"},
            {"id": 13932, "name": "WorldEdit", "downloads": 10},
        ]).encode(),
        f"{base}/resources/13932/versions": json.dumps([{"id": 5, "name": "7.2.15"}]).encode(),
    })
    source = SpigetSource()
    doc = await source.fetch_document("WorldEdit", transport.fetch)
    listings = source.extractor.extract(doc, "WorldEdit")
    assert listings[0].download_url == f"{base}/resources/13932/versions/5/download"


@pytest.mark.asyncio
async def test_spiget_source_missing_resource_is_empty():
    source = SpigetSource()
    with pytest.raises(ExtractionError) as exc_info:
        await source.fetch_document("Ghost", FakeTransport().fetch)
    assert exc_info.value.kind is ExtractionErrorKind.EMPTY


@pytest.mark.asyncio
async def test_bukkitdev_search_uses_listing_selectors():
    transport = FakeTransport({"https://dev.bukkit.org/search": SEARCH_PAGE.encode()})
    hits = await BukkitDevSource().search("world", transport.fetch)
    assert [h.name for h in hits] == ["worldedit", "worldguard"]
    assert hits[0].page_url == "https://dev.bukkit.org/projects/worldedit"
    assert transport.calls == ["https://dev.bukkit.org/search?search=world"]


def test_build_sources_follows_config_order():
    config = DropperConfig.from_dict({
        "server": {"type": "velocity", "version": "3.3.0"},
        "sources": [
            {"type": "index", "id": "local", "base_url": INDEX_URL},
            {"type": "hangar"},
            {"type": "modrinth"},
        ],
    })
    sources = build_sources(config)
    assert [(s.source_id, s.priority) for s in sources] == [("local", 0), ("hangar", 1), ("modrinth", 2)]
    assert sources[1].platform == "VELOCITY"
    assert sources[2].loaders == ["velocity"]
    assert sources[2].game_versions == ["3.3.0"]


# ══════════════════════════════════════════════════════════════════════════════
#  6. SOURCE REGISTRY TESTS
# ══════════════════════════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_registry_caches_until_ttl_and_invalidate():
    transport = FakeTransport()
    publish(transport, {"A": [("1.0", [])]})
    clock = [0.0]
    registry = SourceRegistry(
        [IndexSource("repo", INDEX_URL)], transport, cache_ttl=10, backoff=0, clock=lambda: clock[0],
    )
    await registry.listings_for("A")
    await registry.listings_for("a")
    assert transport.count(INDEX_URL) == 1

    clock[0] = 11
    await registry.listings_for("A")
    assert transport.count(INDEX_URL) == 2

    registry.invalidate("A")
    await registry.listings_for("A")
    assert transport.count(INDEX_URL) == 3

    registry.invalidate()
    assert registry.cached("A") is None


@pytest.mark.asyncio
async def test_registry_deduplicates_inflight_fetches():
    transport = FakeTransport()
    publish(transport, {"A": [("1.0", [])]})
    registry = SourceRegistry([IndexSource("repo", INDEX_URL)], transport, backoff=0)
    first, second = await asyncio.gather(registry.listings_for("A"), registry.listings_for("A"))
    assert first == second
    assert transport.count(INDEX_URL) == 1


@pytest.mark.asyncio
async def test_registry_tolerates_failing_source():
    transport = FakeTransport({INDEX_URL: TransportError(INDEX_URL, 500, "Internal Server Error")})
    publish(transport, {"A": [("1.0", [])]}, url=MIRROR_URL)
    registry = SourceRegistry(
        [IndexSource("repo", INDEX_URL, 0), IndexSource("mirror", MIRROR_URL, 1)], transport, backoff=0,
    )
    listings = await registry.listings_for("A")
    assert [l.source_id for l in listings] == ["mirror"]
    assert transport.count(INDEX_URL) == 3
    failures = registry.failures_for("A")
    assert [f.source_id for f in failures] == ["repo"]
    assert not failures[0].is_miss


@pytest.mark.asyncio
async def test_registry_records_metadata_conflicts_by_priority():
    transport = FakeTransport()
    publish(transport, {"A": [("1.0", ["B"])]})
    publish(transport, {"A": [("1.0", ["C"])]}, url=MIRROR_URL)
    registry = SourceRegistry(
        [IndexSource("mirror", MIRROR_URL, 1), IndexSource("repo", INDEX_URL, 0)], transport, backoff=0,
    )
    listings = await registry.listings_for("A")
    assert [l.source_id for l in listings] == ["repo", "mirror"]
    assert len(registry.conflicts) == 1
    conflict = registry.conflicts[0]
    assert conflict.winner.source_id == "repo"
    assert conflict.loser.source_id == "mirror"
    assert "using repo" in conflict.describe()

    index = VersionIndex(listings, registry.priorities)
    entry = index.catalog_for("A")[0]
    assert entry.source_id == "repo"
    assert [l.source_id for l in entry.listings] == ["repo", "mirror"]


@pytest.mark.asyncio
async def test_registry_search_skips_failing_sources():
    transport = FakeTransport({INDEX_URL: TransportError(INDEX_URL, 404)})
    publish(transport, {"WorldEdit": [("1.0", [])], "Vault": [("1.7", [])]}, url=MIRROR_URL)
    registry = SourceRegistry(
        [IndexSource("repo", INDEX_URL, 0), IndexSource("mirror", MIRROR_URL, 1)], transport, backoff=0,
    )
    hits = await registry.search("world")
    assert [(h.name, h.source_id) for h in hits] == [("WorldEdit", "mirror")]
    assert [f.source_id for f in registry.failures] == ["repo"]


# ══════════════════════════════════════════════════════════════════════════════
#  7. VERSION INDEX TESTS
# ══════════════════════════════════════════════════════════════════════════════


def test_catalog_is_newest_first_and_case_insensitive():
    index = VersionIndex([listing("WorldEdit", "6.1.9"), listing("WorldEdit", "7.0.0"), listing("WorldEdit", "6.2")])
    assert [str(x) for x in index.versions("worldedit")] == ["7.0.0", "6.2", "6.1.9"]
    assert index.has("WORLDEDIT")
    assert index.names() == ["WorldEdit"]


def test_best_match_prefers_stable_and_installed():
    index = VersionIndex([listing("A", "2.0-SNAPSHOT"), listing("A", "1.9"), listing("A", "1.8")])
    latest = Constraint.latest()
    assert str(index.best_match("A", latest).version) == "1.9"
    assert str(index.best_match("A", Constraint.parse(">=2.0-SNAPSHOT")).version) == "2.0-SNAPSHOT"
    assert str(index.best_match("A", Constraint.parse(">=2.0-SNAPSHOT,<3.0")).version) == "2.0-SNAPSHOT"
    assert str(index.best_match("A", latest, prefer=v("1.8")).version) == "1.8"
    assert str(index.best_match("A", latest, exclude=[v("1.9")]).version) == "1.8"
    assert index.best_match("A", Constraint.parse(">=3.0")) is None

    only_snapshots = VersionIndex([listing("B", "1.0-SNAPSHOT")])
    assert str(only_snapshots.best_match("B", latest).version) == "1.0-SNAPSHOT"


def test_unknown_package_raises():
    index = VersionIndex([listing("A", "1.0")])
    with pytest.raises(ResolutionError) as exc_info:
        index.catalog_for("Ghost")
    assert exc_info.value.kind is ResolutionErrorKind.UNKNOWN_PACKAGE


@pytest.mark.asyncio
async def test_index_build_follows_dependencies():
    transport = FakeTransport()
    publish(transport, {"A": [("1.0", ["B@>=1.0"])], "B": [("1.0", ["C"])], "C": [("1.0", [])]})
    registry = SourceRegistry([IndexSource("repo", INDEX_URL)], transport, backoff=0)
    index = await VersionIndex.build(registry, ["A", "Ghost"])
    assert index.has("B") and index.has("C")
    with pytest.raises(ResolutionError) as exc_info:
        index.catalog_for("Ghost")
    assert "repo" in exc_info.value.detail


# ══════════════════════════════════════════════════════════════════════════════
#  8. RESOLVER TESTS
# ══════════════════════════════════════════════════════════════════════════════


def test_exact_manifest_entry_selects_that_version():
    listings = [listing("WorldEdit", "6.1.9"), listing("WorldEdit", "7.0.0")]
    selection = resolve(listings, ["WorldEdit@6.1.9"])
    assert {k: str(v) for k, v in selection.versions().items()} == {"WorldEdit": "6.1.9"}
    plan = build_plan(selection, {})
    assert [a.describe() for a in plan] == ["Install WorldEdit 6.1.9"]


def test_unsatisfiable_dependency_is_reported():
    listings = [listing("A", "1.0", deps=["B@>=2.0"]), listing("B", "1.5")]
    with pytest.raises(ResolutionError) as exc_info:
        resolve(listings, ["A"])
    error = exc_info.value
    assert error.kind is ResolutionErrorKind.UNSATISFIABLE
    assert error.name == "B"
    assert any(req.required_by == "A" for req in error.chain)
    assert ">=2.0" in str(error)


def test_conflicting_manifest_entries_fail_immediately():
    listings = [listing("X", "1.0"), listing("X", "2.0")]
    with pytest.raises(ResolutionError) as exc_info:
        resolve(listings, ["X@1.0", "X@2.0"])
    assert exc_info.value.kind is ResolutionErrorKind.CONFLICT
    assert len(exc_info.value.chain) == 2


def test_conflicting_dependency_constraints_are_never_silently_picked():
    listings = [
        listing("A", "1.0", deps=["C@<2.0"]),
        listing("B", "1.0", deps=["C@>=2.0"]),
        listing("C", "1.0"),
        listing("C", "2.0"),
    ]
    with pytest.raises(ResolutionError) as exc_info:
        resolve(listings, ["A", "B"])
    error = exc_info.value
    assert error.kind is ResolutionErrorKind.CONFLICT
    assert error.name == "C"
    assert len(error.chain) == 2
    assert error.conflicts


def test_backtracking_picks_older_origin_version():
    listings = [
        listing("A", "2.0", deps=["B@>=2.0"]),
        listing("A", "1.0", deps=["B@>=1.0"]),
        listing("B", "1.5"),
    ]
    selection = resolve(listings, ["A"])
    assert {k: str(v) for k, v in selection.versions().items()} == {"A": "1.0", "B": "1.5"}


def test_backtracking_resolves_dependency_conflict():
    listings = [
        listing("A", "1.0", deps=["C@<2.0"]),
        listing("B", "1.0", deps=["C@>=2.0"]),
        listing("B", "0.9"),
        listing("C", "1.0"),
        listing("C", "2.0"),
    ]
    selection = resolve(listings, ["A", "B"])
    assert {k: str(v) for k, v in selection.versions().items()} == {"A": "1.0", "B": "0.9", "C": "1.0"}
    assert selection.conflicts
    assert selection.unsatisfied() == []


def test_resolution_is_transitively_closed():
    listings = [
        listing("A", "2.0", deps=["B@>=1.0", "C@1.*"]),
        listing("A", "1.0", deps=["B"]),
        listing("B", "1.0", deps=["D@>=2.0"]),
        listing("B", "1.5", deps=["D@>=1.0"]),
        listing("C", "1.0"),
        listing("C", "1.2", deps=["D@<3.0"]),
        listing("C", "2.0"),
        listing("D", "1.0"),
        listing("D", "2.0"),
        listing("D", "3.0"),
    ]
    selection = resolve(listings, ["A", "C@>=1.1"])
    versions = {k: str(v) for k, v in selection.versions().items()}
    assert versions == {"A": "2.0", "B": "1.5", "C": "1.2", "D": "2.0"}
    assert selection.unsatisfied() == []
    for package in selection.packages.values():
        for dep in package.listing.dependencies:
            assert dep.constraint.allows(selection.get(dep.name).version)


def test_cycles_terminate():
    listings = [listing("A", "1.0", deps=["B"]), listing("B", "1.0", deps=["A@>=1.0"])]
    selection = resolve(listings, ["A"])
    assert set(selection.versions()) == {"A", "B"}
    depths = dependency_depths(selection)
    assert set(depths) == {"a", "b"}


def test_unknown_dependency_is_reported():
    with pytest.raises(ResolutionError) as exc_info:
        resolve([listing("A", "1.0", deps=["Ghost"])], ["A"])
    assert exc_info.value.kind is ResolutionErrorKind.UNKNOWN_PACKAGE
    assert exc_info.value.name == "Ghost"


def test_preferred_version_is_kept_when_allowed():
    listings = [listing("A", "1.0"), listing("A", "2.0")]
    assert str(resolve(listings, ["A"], preferred={"A": v("1.0")}).get("a").version) == "1.0"
    assert str(resolve(listings, ["A@>=2.0"], preferred={"A": v("1.0")}).get("a").version) == "2.0"
    assert str(resolve(listings, ["A"]).get("a").version) == "2.0"


def test_names_are_case_insensitive_and_unreliable_flagged():
    listings = [
        listing("WorldEdit", "6.1.9", source="bukkitdev", confidence=Confidence.INFERRED),
        listing("Vault", "1.7"),
    ]
    selection = resolve(listings, ["worldedit", "VAULT"], priorities={"repo": 0, "bukkitdev": 1})
    assert "WORLDEDIT" in selection
    assert [p.name for p in selection.unreliable()] == ["WorldEdit"]


def test_requirement_and_backtrack_guard():
    req = Requirement("B", Constraint.parse(">=2.0"), "A", v("1.0"))
    assert not req.is_root
    assert str(req) == "A 1.0 requires B@>=2.0"
    assert MAX_BACKTRACK_DEPTH == 16


# ══════════════════════════════════════════════════════════════════════════════
#  9. INSTALL PLAN TESTS
# ══════════════════════════════════════════════════════════════════════════════


def record(name, version, filename=None, fingerprint="sha256:00"):
    return InstallRecord(name, version, "repo", fingerprint, filename=filename or f"{name}.jar")


def test_plan_classifies_actions():
    listings = [listing(n, ver) for n in ("A", "B", "C") for ver in ("1.0", "2.0")]
    state = {"a": record("A", "1.0"), "b": record("B", "2.0"), "c": record("C", "1.0")}
    plan = plan_for(listings, ["A@2.0", "B@1.0", "C@1.0"], state)
    kinds = {a.name: a.kind for a in plan}
    assert kinds == {"A": ActionKind.UPGRADE, "B": ActionKind.DOWNGRADE, "C": ActionKind.NOOP}
    assert summarize_plan(plan)["noop"] == 1


def test_removals_come_last():
    listings = [listing("A", "1.0"), listing("Z", "1.0")]
    plan = plan_for(listings, ["Z", "A"], {"x": record("X", "1.0")})
    assert [a.describe() for a in plan] == ["Install A 1.0", "Install Z 1.0", "Remove X 1.0"]


def test_plan_orders_dependencies_first():
    listings = [listing("A", "1.0", deps=["B"]), listing("B", "1.0", deps=["C"]), listing("C", "1.0")]
    plan = plan_for(listings, ["A"])
    assert [a.name for a in plan] == ["C", "B", "A"]
    assert [a.depth for a in plan] == [0, 1, 2]


def test_replanning_own_output_is_all_noop():
    listings = [listing("A", "1.0", deps=["B@>=1.0"]), listing("B", "1.2"), listing("E", "3.0")]
    selection = resolve(listings, ["A", "E"])
    state = {
        key: InstallRecord(p.name, str(p.version), p.source_id, "sha256:00", filename=plugin_filename(p.name))
        for key, p in selection.packages.items()
    }
    plan = build_plan(selection, state)
    assert plan and all(a.kind is ActionKind.NOOP for a in plan)


# ══════════════════════════════════════════════════════════════════════════════
#  10. INSTALL STATE TESTS
# ══════════════════════════════════════════════════════════════════════════════


def test_state_store_round_trip(temp_dir):
    path = temp_dir / ".dropper" / "state.json"
    store = InstallStateStore(path)
    assert store.records() == {}
    store.put(record("WorldEdit", "6.1.9"))
    store.put(record("Vault", "1.7"))
    store.delete("vault")

    data = json.loads(path.read_text())
    assert data["format"] == 1
    assert list(data["packages"]) == ["worldedit"]

    reloaded = InstallStateStore(path)
    assert reloaded.get("WORLDEDIT").version == "6.1.9"
    assert list(path.parent.glob(".state-*.tmp")) == []


def test_state_store_corrupt_file(temp_dir):
    path = temp_dir / "state.json"
    path.write_text("{not json")
    with pytest.raises(StateError):
        InstallStateStore(path).load()


def test_state_write_failure_keeps_previous_file(temp_dir):
    path = temp_dir / "state.json"
    store = InstallStateStore(path)
    store.put(record("A", "1.0"))
    before = path.read_text()
    with patch("install_state.os.replace", side_effect=OSError("disk full")):
        with pytest.raises(StateError):
            store.put(record("B", "1.0"))
    assert path.read_text() == before
    assert list(temp_dir.glob(".state-*.tmp")) == []
    assert InstallStateStore(path).get("B") is None


def test_state_leftovers_and_clear(temp_dir):
    path = temp_dir / "state.json"
    store = InstallStateStore(path)
    store.put(record("A", "1.0"))
    (temp_dir / ".state-abc123.tmp").write_text("{partial")
    assert store.cleanup_temp_files() == 1
    store.clear()
    assert not path.exists()
    assert store.records() == {}


# ══════════════════════════════════════════════════════════════════════════════
#  11. INSTALLER TESTS
# ══════════════════════════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_install_writes_artifact_and_record(temp_dir):
    transport = FakeTransport()
    a = listing("WorldEdit", "6.1.9")
    serve(transport, a)
    installer = make_installer(temp_dir, transport)
    summary = await installer.execute(plan_for([a], ["WorldEdit"]))

    assert summary.success and summary.exit_code == 0
    outcome = summary.outcomes[0]
    assert outcome.history == [
        ActionState.PENDING, ActionState.FETCHING, ActionState.VERIFYING,
        ActionState.WRITING, ActionState.COMMITTED,
    ]
    jar = temp_dir / "plugins" / "WorldEdit.jar"
    assert jar.read_bytes() == transport.responses[a.download_url]
    stored = installer.store.get("worldedit")
    assert stored.version == "6.1.9"
    assert stored.content_fingerprint == content_fingerprint(jar.read_bytes())
    assert list((temp_dir / "plugins").glob(".dropper-*.part")) == []


@pytest.mark.asyncio
async def test_upgrade_fetch_failure_is_isolated(temp_dir):
    transport = FakeTransport()
    x_old, x_new, y = listing("X", "1.0"), listing("X", "2.0"), listing("Y", "1.0")
    serve(transport, x_old, y)
    transport.responses[x_new.download_url] = TransportError(x_new.download_url, 503, "Service Unavailable")
    installer = make_installer(temp_dir, transport)
    await installer.execute(plan_for([x_old], ["X"]))
    old_bytes = (temp_dir / "plugins" / "X.jar").read_bytes()

    plan = plan_for([x_old, x_new, y], ["X", "Y"], installer.store.records())
    assert [a.kind for a in plan] == [ActionKind.UPGRADE, ActionKind.INSTALL]
    summary = await installer.execute(plan)

    assert transport.count(x_new.download_url) == 3
    failed = summary.failed
    assert len(failed) == 1 and failed[0].error.kind is InstallErrorKind.FETCH
    assert "503" in failed[0].reason
    assert summary.counts["installed"] == 1
    assert summary.counts["failed"] == 1
    assert not summary.success and summary.exit_code == 4
    assert installer.store.get("X").version == "1.0"
    assert (temp_dir / "plugins" / "X.jar").read_bytes() == old_bytes
    assert (temp_dir / "plugins" / "Y.jar").exists()


@pytest.mark.asyncio
async def test_remove_runs_after_installs(temp_dir):
    transport = FakeTransport()
    x, a = listing("X", "1.0"), listing("A", "1.0")
    serve(transport, x, a)
    installer = make_installer(temp_dir, transport, backup_dir=temp_dir / "backups")
    await installer.execute(plan_for([x], ["X"]))

    events = []
    put, delete = installer.store.put, installer.store.delete
    installer.store.put = lambda rec: (events.append(("put", rec.name)), put(rec))
    installer.store.delete = lambda name: (events.append(("delete", name)), delete(name))

    plan = plan_for([a], ["A"], installer.store.records())
    assert [p.kind for p in plan] == [ActionKind.INSTALL, ActionKind.REMOVE]
    summary = await installer.execute(plan)

    assert summary.success
    assert events == [("put", "A"), ("delete", "X")]
    assert not (temp_dir / "plugins" / "X.jar").exists()
    assert len(list((temp_dir / "backups").glob("X_1.0_*.jar"))) == 1
    assert summary.counts["removed"] == 1


@pytest.mark.asyncio
async def test_fallback_listing_from_other_source(temp_dir):
    transport = FakeTransport()
    primary = listing("A", "1.0", source="repo")
    mirror = listing("A", "1.0", source="mirror", url="https://mirror.example/A-1.0.jar")
    serve(transport, mirror)
    installer = make_installer(temp_dir, transport)
    summary = await installer.execute(plan_for([primary, mirror], ["A"]))

    assert summary.success
    assert transport.count(primary.download_url) == 1
    assert summary.outcomes[0].source_id == "mirror"
    assert installer.store.get("A").source_id == "mirror"


@pytest.mark.asyncio
async def test_fingerprint_mismatch_fails_verification(temp_dir):
    transport = FakeTransport()
    a = listing("A", "1.0", fingerprint="sha256:" + "0" * 64)
    serve(transport, a)
    installer = make_installer(temp_dir, transport)
    summary = await installer.execute(plan_for([a], ["A"]))

    outcome = summary.outcomes[0]
    assert outcome.state is ActionState.FAILED
    assert outcome.error.kind is InstallErrorKind.VERIFICATION
    assert "fingerprint mismatch" in outcome.reason
    assert not (temp_dir / "plugins" / "A.jar").exists()
    assert installer.store.get("A") is None


@pytest.mark.asyncio
async def test_declared_fingerprint_is_checked_with_its_algorithm(temp_dir):
    transport = FakeTransport()
    data = make_jar("A", "1.0")
    a = listing("A", "1.0", fingerprint="sha1:" + hashlib.sha1(data).hexdigest())
    transport.responses[a.download_url] = data
    installer = make_installer(temp_dir, transport)
    summary = await installer.execute(plan_for([a], ["A"]))
    assert summary.success
    assert installer.store.get("A").content_fingerprint.startswith("sha256:")


@pytest.mark.asyncio
async def test_non_jar_download_fails_verification(temp_dir):
    transport = FakeTransport()
    a = listing("A", "1.0")
    transport.responses[a.download_url] = b"<html>Cloudflare says no</html>"
    installer = make_installer(temp_dir, transport)
    summary = await installer.execute(plan_for([a], ["A"]))
    assert summary.outcomes[0].error.kind is InstallErrorKind.VERIFICATION


@pytest.mark.asyncio
async def test_corrupt_archive_fails_only_its_own_action(temp_dir):
    transport = FakeTransport()
    a, b = listing("A", "1.0"), listing("B", "1.0")
    serve(transport, b)
    transport.responses[a.download_url] = make_corrupt_jar("A")
    installer = make_installer(temp_dir, transport)
    summary = await installer.execute(plan_for([a, b], ["A", "B"]))

    states = {o.action.name: o.state for o in summary.outcomes}
    assert states == {"A": ActionState.FAILED, "B": ActionState.COMMITTED}
    failed = next(o for o in summary.outcomes if o.action.name == "A")
    assert failed.error.kind is InstallErrorKind.VERIFICATION
    assert summary.exit_code == 4
    assert (temp_dir / "plugins" / "B.jar").exists()
    assert not (temp_dir / "plugins" / "A.jar").exists()
    assert installer.store.get("A") is None


@pytest.mark.asyncio
async def test_validator_crash_is_reported_as_verification_failure(temp_dir):
    transport = FakeTransport()
    a = listing("A", "1.0")
    serve(transport, a)
    installer = make_installer(temp_dir, transport)
    with patch.object(installer.validator, "validate_artifact", side_effect=RuntimeError("boom")):
        summary = await installer.execute(plan_for([a], ["A"]))
    assert summary.outcomes[0].state is ActionState.FAILED
    assert summary.outcomes[0].error.kind is InstallErrorKind.VERIFICATION
    assert "boom" in summary.outcomes[0].error.detail


@pytest.mark.asyncio
async def test_dependents_of_failed_actions_are_skipped(temp_dir):
    transport = FakeTransport()
    a, b, c = listing("A", "1.0", deps=["B"]), listing("B", "1.0"), listing("C", "1.0")
    serve(transport, a, c)
    installer = make_installer(temp_dir, transport)
    summary = await installer.execute(plan_for([a, b, c], ["A", "C"]))

    states = {o.action.name: o.state for o in summary.outcomes}
    assert states == {"B": ActionState.FAILED, "C": ActionState.COMMITTED, "A": ActionState.SKIPPED}
    skipped = summary.skipped[0]
    assert skipped.reason.startswith("dependency failed")
    assert not (temp_dir / "plugins" / "A.jar").exists()


@pytest.mark.asyncio
async def test_cancel_before_start_skips_everything(temp_dir):
    transport = FakeTransport()
    a = listing("A", "1.0")
    serve(transport, a)
    installer = make_installer(temp_dir, transport)
    cancel = asyncio.Event()
    cancel.set()
    summary = await installer.execute(plan_for([a], ["A"]), cancel)
    assert summary.cancelled
    assert summary.counts["skipped"] == 1
    assert summary.exit_code == 4
    assert not (temp_dir / "plugins" / "A.jar").exists()


@pytest.mark.asyncio
async def test_cancel_is_honoured_between_actions(temp_dir):
    transport = FakeTransport()
    a, b = listing("A", "1.0"), listing("B", "1.0")
    serve(transport, a, b)
    installer = make_installer(temp_dir, transport)
    cancel = asyncio.Event()
    put = installer.store.put

    def put_then_cancel(rec):
        put(rec)
        cancel.set()

    installer.store.put = put_then_cancel
    summary = await installer.execute(plan_for([a, b], ["A", "B"]), cancel)

    states = [(o.action.name, o.state) for o in summary.outcomes]
    assert states == [("A", ActionState.COMMITTED), ("B", ActionState.SKIPPED)]
    assert summary.cancelled
    assert (temp_dir / "plugins" / "A.jar").exists()
    assert not (temp_dir / "plugins" / "B.jar").exists()


@pytest.mark.asyncio
async def test_write_failure_is_isolated(temp_dir):
    transport = FakeTransport()
    a = listing("A", "1.0")
    serve(transport, a)
    installer = make_installer(temp_dir, transport)
    with patch.object(installer, "_atomic_write", side_effect=OSError("No space left on device")):
        summary = await installer.execute(plan_for([a], ["A"]))
    assert summary.outcomes[0].error.kind is InstallErrorKind.WRITE
    assert installer.store.get("A") is None


@pytest.mark.asyncio
async def test_upgrade_replaces_stale_filename(temp_dir):
    transport = FakeTransport()
    x_new = listing("X", "2.0")
    serve(transport, x_new)
    plugins = temp_dir / "plugins"
    plugins.mkdir()
    legacy = plugins / "X-1.0-legacy.jar"
    legacy.write_bytes(make_jar("X", "1.0"))
    installer = make_installer(temp_dir, transport)
    installer.store.put(InstallRecord("X", "1.0", "repo", content_fingerprint(legacy.read_bytes()),
                                      filename=legacy.name))

    summary = await installer.execute(plan_for([x_new], ["X"], installer.store.records()))
    assert summary.success
    assert not legacy.exists()
    assert (plugins / "X.jar").exists()
    assert installer.store.get("X").filename == "X.jar"


@pytest.mark.asyncio
async def test_upgrade_changing_filename_case_keeps_new_jar(temp_dir):
    transport = FakeTransport()
    new = listing("WorldEdit", "2.0")
    serve(transport, new)
    plugins = temp_dir / "plugins"
    plugins.mkdir()
    old = plugins / "worldedit.jar"
    old.write_bytes(make_jar("WorldEdit", "1.0"))
    installer = make_installer(temp_dir, transport)
    installer.store.put(InstallRecord("worldedit", "1.0", "repo", content_fingerprint(old.read_bytes()),
                                      filename=old.name))

    def case_insensitive_samefile(a, b):
        return Path(a).parent == Path(b).parent and Path(a).name.lower() == Path(b).name.lower()

    with patch("plugin_installer.os.path.samefile", side_effect=case_insensitive_samefile):
        summary = await installer.execute(plan_for([new], ["WorldEdit"], installer.store.records()))
    assert summary.success
    assert summary.outcomes[0].action.kind is ActionKind.UPGRADE
    assert (plugins / "WorldEdit.jar").exists()
    assert old.exists()
    assert installer.store.get("WorldEdit").filename == "WorldEdit.jar"


@pytest.mark.asyncio
async def test_reconcile_repairs_state(temp_dir):
    transport = FakeTransport()
    a, b, c = listing("A", "1.0"), listing("B", "1.0"), listing("C", "1.0")
    serve(transport, a, b, c)
    installer = make_installer(temp_dir, transport)
    await installer.execute(plan_for([a, b, c], ["A", "B", "C"]))

    plugins = temp_dir / "plugins"
    (plugins / "A.jar").write_bytes(make_jar("A", "9.9-edited"))
    (plugins / "B.jar").unlink()
    (plugins / ".dropper-interrupted.part").write_bytes(b"half")
    (temp_dir / ".dropper" / ".state-leftover.tmp").write_text("{")

    report = installer.reconcile()
    assert sorted(report.dropped) == ["A", "B"]
    assert report.removed_temp_files == 2
    assert set(installer.store.records()) == {"c"}
    assert list(plugins.glob(".dropper-*.part")) == []


# ══════════════════════════════════════════════════════════════════════════════
#  12. VALIDATOR TESTS
# ══════════════════════════════════════════════════════════════════════════════


def test_extract_plugin_meta_from_bytes():
    meta = extract_plugin_meta(make_jar("WorldGuard", "7.0.9", depend=["WorldEdit"]))
    assert meta.name == "WorldGuard"
    assert meta.version == "7.0.9"
    assert meta.depend == ["WorldEdit"]
    assert extract_plugin_meta(b"not a zip") is None


def test_validate_artifact(temp_dir):
    validator = PluginValidator("paper", "1.20.4", temp_dir)
    mismatch = validator.validate_artifact(make_jar("Other"), "A")
    assert mismatch.is_valid
    assert any("Other" in w for w in mismatch.warnings)

    assert not validator.validate_artifact(b"junk", "A").is_valid
    assert not validator.validate_artifact(b"", "A").is_valid
    corrupt = validator.validate_artifact(make_corrupt_jar("A"), "A")
    assert not corrupt.is_valid
    assert "not a readable JAR" in corrupt.errors[0]

    velocity = make_jar("", files={"velocity-plugin.json": json.dumps({"id": "proxyplug", "version": "1.0"})})
    result = validator.validate_artifact(velocity, "proxyplug")
    assert result.is_valid
    assert any("not compatible" in w for w in result.warnings)


def test_validate_installed_jars(temp_dir):
    (temp_dir / "WorldGuard.jar").write_bytes(make_jar("WorldGuard", depend=["WorldEdit"]))
    (temp_dir / "Broken.jar").write_bytes(b"\x00\x01")
    results = {r.plugin_name: r for r in PluginValidator("paper", "", temp_dir).validate_all()}
    assert not results["Broken"].is_valid
    assert results["WorldGuard"].is_valid
    assert any("WorldEdit" in w for w in results["WorldGuard"].warnings)


def test_fingerprint_helpers():
    data = b"plugin bytes"
    assert fingerprint_matches(data, "sha1:" + hashlib.sha1(data).hexdigest().upper())
    assert not fingerprint_matches(data, "sha256:" + "0" * 64)
    with pytest.raises(ValueError):
        fingerprint_matches(data, "md5:abcd")


# ══════════════════════════════════════════════════════════════════════════════
#  13. MANIFEST TESTS
# ══════════════════════════════════════════════════════════════════════════════


PKG_YML = """\
WorldEdit: 6.1.9
WorldGuard: 6.*
Vault:
EssentialsX: ">=2.19"
LuckPerms: 5.10
"""


def test_yaml_manifest_mapping(temp_dir):
    path = temp_dir / "pkg.yml"
    path.write_text(PKG_YML)
    manifest = Manifest.load(path)
    assert manifest.style == "mapping"
    assert manifest.names() == ["WorldEdit", "WorldGuard", "Vault", "EssentialsX", "LuckPerms"]
    assert manifest.get("worldedit").constraint == Constraint.exact("6.1.9")
    assert manifest.get("WorldGuard").constraint == Constraint.parse(">=6,<7")
    assert manifest.get("Vault").constraint.kind is ConstraintKind.LATEST
    assert manifest.get("LuckPerms").constraint.lower.release == (5, 10)


def test_yaml_manifest_list_form(temp_dir):
    path = temp_dir / "pkg.yaml"
    path.write_text("- WorldEdit@6.1.9\n- Vault\n- EssentialsX: '>=2.19'\n")
    manifest = Manifest.load(path)
    assert manifest.style == "list"
    assert [str(e) for e in manifest] == ["WorldEdit@6.1.9", "Vault", "EssentialsX@>=2.19"]


def test_manifest_edit_and_save_keeps_format(temp_dir):
    path = temp_dir / "pkg.yml"
    path.write_text(PKG_YML)
    manifest = Manifest.load(path)
    assert manifest.add(ManifestEntry.parse("Vault@>=1.7"))
    assert not manifest.add(ManifestEntry.parse("Citizens"))
    assert manifest.remove("worldguard")
    assert not manifest.remove("NotThere")
    manifest.save()

    data = yaml.safe_load(path.read_text())
    assert data["LuckPerms"] == "5.10"
    assert data["Citizens"] == "*"
    reloaded = Manifest.load(path)
    assert reloaded.names() == ["WorldEdit", "Vault", "EssentialsX", "LuckPerms", "Citizens"]
    assert reloaded.requirements() == manifest.requirements()
    assert list(temp_dir.glob(".pkg.yml-*.tmp")) == []


def test_text_manifest(temp_dir):
    path = temp_dir / "plugins.txt"
    path.write_text("# plugins\nWorldEdit@6.1.9\nVault   # economy\n\nEssentialsX@>=2.19\n")
    manifest = Manifest.load(path)
    assert manifest.style == "text"
    assert manifest.names() == ["WorldEdit", "Vault", "EssentialsX"]
    manifest.save()
    assert path.read_text() == "WorldEdit@6.1.9\nVault\nEssentialsX@>=2.19\n"


def test_missing_manifest_is_empty(temp_dir):
    manifest = Manifest.load(temp_dir / "pkg.yml")
    assert len(manifest) == 0
    assert manifest.style == "mapping"


def test_malformed_manifests(temp_dir):
    cases = {
        "bad.txt": ("WorldEdit@6.1.9\nBad@>=\n", "bad.txt:2"),
        "dup.txt": ("Vault\nvault@1.0\n", "duplicate"),
        "nested.yml": ("WorldEdit:\n  nested: 1\n", "WorldEdit"),
        "broken.yml": ("A: [unclosed\n", "invalid YAML"),
        "scalar.yml": ("just a string\n", "mapping or a list"),
        "badrange.yml": ("A: '>=2.0,<1.0'\n", "key 'A'"),
    }
    for filename, (content, fragment) in cases.items():
        path = temp_dir / filename
        path.write_text(content)
        with pytest.raises(ManifestError) as exc_info:
            Manifest.load(path)
        assert fragment in str(exc_info.value), filename


# ══════════════════════════════════════════════════════════════════════════════
#  14. CONFIG TESTS
# ══════════════════════════════════════════════════════════════════════════════


def test_config_defaults(temp_dir):
    config = DropperConfig.load(str(temp_dir / "missing.json"))
    assert [s.type for s in config.sources] == ["modrinth", "hangar", "spiget", "bukkitdev"]
    assert config.sources[2].id == "spigotmc"
    assert config.cache_ttl == 600
    assert config.plugins_path.endswith("plugins")
    assert config.state_path.endswith(str(Path(".dropper") / "state.json"))


def test_config_load_resolves_paths(temp_dir):
    path = temp_dir / "dropper.json"
    path.write_text(json.dumps({
        "paths": {"server_dir": "srv", "plugins_dir": "/opt/plugins"},
        "server": {"type": "Purpur", "version": "1.20.4"},
        "cache_ttl": 30,
        "max_workers": 8,
    }))
    config = DropperConfig.load(str(path))
    assert config.server_dir == str(temp_dir / "srv")
    assert config.plugins_path == "/opt/plugins"
    assert config.server_type == "purpur"
    assert (config.cache_ttl, config.max_workers) == (30, 8)


def test_manifest_path_prefers_existing_yaml(temp_dir):
    config = DropperConfig(server_dir=str(temp_dir))
    assert config.manifest_path == str(temp_dir / "pkg.yml")
    (temp_dir / "pkg.yaml").write_text("")
    assert config.manifest_path == str(temp_dir / "pkg.yaml")


def test_config_errors(temp_dir):
    bad_values = [
        {"server": {"type": "forge"}},
        {"max_workers": 0},
        {"cache_ttl": "ten"},
        {"sources": []},
        {"sources": [{"type": "index"}]},
        {"sources": [{"type": "curseforge"}]},
        {"sources": [{"type": "modrinth"}, {"type": "modrinth"}]},
        {"sources": [{"type": "modrinth", "options": {"bogus": 1}}]},
    ]
    for data in bad_values:
        with pytest.raises(ConfigError):
            build_sources(DropperConfig.from_dict(data))

    path = temp_dir / "dropper.json"
    path.write_text("{not json")
    with pytest.raises(ConfigError):
        DropperConfig.load(str(path))


def test_source_options_follow_server_type():
    config = DropperConfig(server_type="waterfall", server_version="1.20")
    assert source_options(config, SourceConfig("hangar"))["platform"] == "WATERFALL"
    assert source_options(config, SourceConfig("modrinth"))["loaders"] == ["waterfall", "bungeecord"]
    explicit = SourceConfig("modrinth", options={"loaders": ["folia"]})
    assert source_options(config, explicit)["loaders"] == ["folia"]


# ══════════════════════════════════════════════════════════════════════════════
#  15. PLUGIN MANAGER TESTS
# ══════════════════════════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_sync_installs_manifest_and_is_idempotent(server_dir):
    transport = FakeTransport()
    publish(transport, {"A": [("1.0", ["B@>=2.0"])], "B": [("1.5", []), ("2.1", [])]})
    (server_dir / "pkg.yml").write_text("A:\n")

    async with make_manager(server_dir, transport) as manager:
        result = await manager.sync()
        assert result.success
        report = result.details["report"]
        assert [a.describe() for a in report.plan] == ["Install B 2.1", "Install A 1.0"]
        assert report.summary.counts["installed"] == 2
        assert {r.name: r.version for r in manager.list_installed()} == {"A": "1.0", "B": "2.1"}

    async with make_manager(server_dir, transport) as manager:
        again = await manager.sync()
    assert again.success
    assert all(a.kind is ActionKind.NOOP for a in again.details["report"].plan)
    assert transport.count(f"{REPO}/files/A-1.0.jar") == 1


@pytest.mark.asyncio
async def test_add_saves_manifest_only_when_resolvable(server_dir):
    transport = FakeTransport()
    publish(transport, {"A": [("1.0", []), ("2.0", [])]})
    manifest_path = server_dir / "pkg.yml"

    async with make_manager(server_dir, transport) as manager:
        with pytest.raises(ResolutionError):
            await manager.add(["Ghost"])
        assert not manifest_path.exists()

        result = await manager.add(["A@1.0"])
    assert result.success
    assert Manifest.load(manifest_path).get("A").constraint == Constraint.exact("1.0")
    assert (server_dir / "plugins" / "A.jar").exists()


@pytest.mark.asyncio
async def test_add_rejects_bad_specifier(server_dir):
    async with make_manager(server_dir, FakeTransport()) as manager:
        with pytest.raises(ManifestError):
            await manager.add(["A@>=2.0,<1.0"])


@pytest.mark.asyncio
async def test_remove_drops_plugin_and_orphans(server_dir):
    transport = FakeTransport()
    publish(transport, {"A": [("1.0", ["B"])], "B": [("1.0", [])], "C": [("1.0", [])]})
    (server_dir / "pkg.yml").write_text("A:\nC:\n")

    async with make_manager(server_dir, transport) as manager:
        await manager.sync()
        result = await manager.remove(["a"])
        missing = await manager.remove(["NotInstalled"])

    assert result.success
    kinds = [(a.name, a.kind) for a in result.details["report"].plan]
    assert kinds == [("C", ActionKind.NOOP), ("A", ActionKind.REMOVE), ("B", ActionKind.REMOVE)]
    assert Manifest.load(server_dir / "pkg.yml").names() == ["C"]
    assert sorted(p.name for p in (server_dir / "plugins").glob("*.jar")) == ["C.jar"]
    assert not missing.success


@pytest.mark.asyncio
async def test_update_moves_to_newest_allowed(server_dir):
    transport = FakeTransport()
    publish(transport, {"A": [("1.0", [])]})
    (server_dir / "pkg.yml").write_text("A:\n")
    async with make_manager(server_dir, transport) as manager:
        await manager.sync()

    publish(transport, {"A": [("1.0", []), ("1.1", [])]})
    async with make_manager(server_dir, transport) as manager:
        kept = await manager.sync()
        assert [a.kind for a in kept.details["report"].plan] == [ActionKind.NOOP]

        dry = await manager.update(dry_run=True)
        assert dry.details["report"].dry_run
        assert manager.get_plugin("A").version == "1.0"

        updated = await manager.update()
    assert [a.describe() for a in updated.details["report"].plan] == ["Upgrade A 1.0 -> 1.1"]
    assert updated.success


@pytest.mark.asyncio
async def test_purge_and_clean(server_dir):
    transport = FakeTransport()
    publish(transport, {"A": [("1.0", [])]})
    (server_dir / "pkg.yml").write_text("A:\n")
    async with make_manager(server_dir, transport) as manager:
        await manager.sync()
        purged = await manager.purge()
        assert purged.success
        assert not (server_dir / "plugins" / "A.jar").exists()
        assert not (server_dir / ".dropper" / "state.json").exists()
        assert (server_dir / "pkg.yml").exists()

        (server_dir / "plugins" / ".dropper-x.part").write_bytes(b"half")
        cleaned = manager.clean()
    assert cleaned.details == {"partials": 1, "backups": 1}
    assert list((server_dir / ".dropper" / "backups").glob("*.jar")) == []


@pytest.mark.asyncio
async def test_purge_removes_edited_and_missing_jars(server_dir):
    transport = FakeTransport()
    publish(transport, {"A": [("1.0", [])], "B": [("1.0", [])], "C": [("1.0", [])]})
    (server_dir / "pkg.yml").write_text("A:\nB:\nC:\n")
    plugins = server_dir / "plugins"
    async with make_manager(server_dir, transport) as manager:
        await manager.sync()
        (plugins / "A.jar").write_bytes(make_jar("A", "1.0-hand-patched"))
        (plugins / "B.jar").unlink()
        purged = await manager.purge()
    assert purged.success
    assert list(plugins.glob("*.jar")) == []
    assert not (server_dir / ".dropper" / "state.json").exists()


@pytest.mark.asyncio
async def test_search_and_check(server_dir):
    transport = FakeTransport()
    publish(transport, {"WorldEdit": [("7.2.15", [])], "Vault": [("1.7", [])]})
    (server_dir / "pkg.yml").write_text("WorldEdit:\n")
    async with make_manager(server_dir, transport) as manager:
        hits = await manager.search("edit")
        await manager.sync()
        results = manager.check()
    assert [h.name for h in hits] == ["WorldEdit"]
    assert [r.plugin_name for r in results] == ["WorldEdit"]
    assert results[0].is_valid


# ══════════════════════════════════════════════════════════════════════════════
#  16. CLI TESTS
# ══════════════════════════════════════════════════════════════════════════════


def test_parse_args_subcommands():
    args = parse_args(["--server-dir", "/srv", "-v", "add", "WorldEdit@6.1.9", "Vault"])
    assert args.command == "add"
    assert args.specs == ["WorldEdit@6.1.9", "Vault"]
    assert args.server_dir == "/srv" and args.verbose
    assert parse_args(["install"]).command == "install"
    with pytest.raises(SystemExit):
        parse_args([])


def test_cli_sync_list_and_plan(server_dir):
    transport = FakeTransport()
    publish(transport, {"WorldEdit": [("6.1.9", []), ("7.0.0", [])]})
    (server_dir / "pkg.yml").write_text("WorldEdit: 6.1.9\n")
    base = ["--server-dir", str(server_dir), "--quiet"]

    console = quiet_console()
    assert main(base + ["plan"], transport=transport, console=console) == 0
    assert "WorldEdit" in console.file.getvalue()
    assert not (server_dir / "plugins" / "WorldEdit.jar").exists()

    console = quiet_console()
    assert main(base + ["sync"], transport=transport, console=console) == 0
    assert "1 installed" in console.file.getvalue()

    console = quiet_console()
    assert main(base + ["list"], transport=transport, console=console) == 0
    assert "6.1.9" in console.file.getvalue()


def test_cli_exit_codes(server_dir):
    transport = FakeTransport()
    publish(transport, {"A": [("1.0", [])], "B": [("1.0", [])]})
    transport.responses[f"{REPO}/files/B-1.0.jar"] = TransportError(f"{REPO}/files/B-1.0.jar", 503)
    base = ["--server-dir", str(server_dir), "--quiet"]
    manifest = server_dir / "pkg.yml"

    manifest.write_text("Ghost:\n")
    console = quiet_console()
    assert main(base + ["sync"], transport=transport, console=console) == 2
    assert "Resolution failed" in console.file.getvalue()

    manifest.write_text("A:\n  nested: 1\n")
    assert main(base + ["sync"], transport=transport, console=quiet_console()) == 2

    manifest.write_text("A:\nB:\n")
    console = quiet_console()
    assert main(base + ["sync"], transport=transport, console=console) == 4
    assert "1 failed" in console.file.getvalue()

    assert main(base + ["purge"], transport=transport, console=quiet_console()) == 2
    assert main(base + ["purge", "--yes"], transport=transport, console=quiet_console()) == 0

    (server_dir / "dropper.json").write_text("{broken")
    assert main(base + ["list"], transport=transport, console=quiet_console()) == 2


if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
