"""
plugin_versions.py
==================
Version and constraint model shared by every stage of the pipeline.

Plugin authors version their releases however they like (``6.1.9``,
``v7.2.15``, ``2.0b3``, ``1.8.8-R0.1-SNAPSHOT``, ``build #12``), so a
:class:`VersionSpec` is either

  - **structured** – a release tuple plus optional qualifier, or
  - **opaque**     – the raw text, when nothing parses.

Total order:
  - structured vs structured → release tuple, then qualifier rank
  - opaque vs opaque         → lexical on the raw text
  - structured vs opaque     → structured is always newer

A :class:`Constraint` is a single interval over that order and has a
textual form used by the manifest and the CLI::

    WorldEdit            latest
    WorldEdit@6.1.9      exact
    WorldEdit@>=6.0      minimum (also 6.0+)
    WorldEdit@>=6,<7     range
    WorldEdit@6.1.*      newest patch of 6.1  (== >=6.1,<6.2)
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from functools import total_ordering
from typing import List, Optional, Tuple

# ──────────────────────────────────────────────
#  Version Parsing
# ──────────────────────────────────────────────

_VERSION_RE = re.compile(
    r"^[vV]?(?P<release>\d+(?:\.\d+)*)"
    r"(?:[-_.]?(?P<qualifier>[0-9A-Za-z][0-9A-Za-z.\-_]*))?$"
)

# Ordered lowest first; anything unmatched ranks just below a plain release.
_QUALIFIER_RANKS = (
    (re.compile(r"snapshot|dev|nightly"), 0),
    (re.compile(r"alpha|^a\d"), 1),
    (re.compile(r"beta|^b\d"), 2),
    (re.compile(r"pre"), 3),
    (re.compile(r"^rc|[^a-z]rc"), 4),
)
_OTHER_QUALIFIER_RANK = 5

_TEXT_VERSION_PREFIXED_RE = re.compile(
    r"(?<![\w.])[vV](\d+(?:\.\d+)+(?:[-_][0-9A-Za-z]+(?:[.-][0-9A-Za-z]+)*)?)"
)
_TEXT_VERSION_RE = re.compile(
    r"(?<![\w.])(\d+(?:\.\d+)+(?:[-_][0-9A-Za-z]+(?:[.-][0-9A-Za-z]+)*)?)"
)
_ARCHIVE_SUFFIX_RE = re.compile(r"\.(jar|zip)$", re.IGNORECASE)


def _qualifier_key(qualifier: Optional[str]) -> tuple:
    if qualifier is None:
        return (2,)
    lowered = qualifier.lower()
    rank = _OTHER_QUALIFIER_RANK
    for pattern, value in _QUALIFIER_RANKS:
        if pattern.search(lowered):
            rank = value
            break
    number = re.search(r"\d+", lowered)
    return (1, rank, int(number.group()) if number else 0, lowered)


@total_ordering
@dataclass(frozen=True, eq=False)
class VersionSpec:
    """A parsed version. Compare with ``<``/``==``; ``raw`` is kept for display."""

    raw: str
    release: Optional[Tuple[int, ...]] = None
    qualifier: Optional[str] = None

    @classmethod
    def parse(cls, text: object) -> "VersionSpec":
        raw = "" if text is None else str(text).strip()
        core = raw.partition("+")[0].strip()
        match = _VERSION_RE.match(core)
        if not match:
            return cls(raw=raw)
        release = tuple(int(part) for part in match.group("release").split("."))
        return cls(raw=raw, release=release, qualifier=match.group("qualifier"))

    @property
    def is_structured(self) -> bool:
        return self.release is not None

    @property
    def is_opaque(self) -> bool:
        return self.release is None

    @property
    def is_prerelease(self) -> bool:
        return self.release is not None and self.qualifier is not None

    @property
    def major(self) -> int:
        return self._component(0)

    @property
    def minor(self) -> int:
        return self._component(1)

    @property
    def patch(self) -> int:
        return self._component(2)

    def _component(self, index: int) -> int:
        if self.release is None or index >= len(self.release):
            return 0
        return self.release[index]

    def sort_key(self) -> tuple:
        if self.release is None:
            return (0, self.raw)
        release = list(self.release)
        while len(release) > 1 and release[-1] == 0:
            release.pop()
        return (1, tuple(release), _qualifier_key(self.qualifier))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, VersionSpec):
            return NotImplemented
        return self.sort_key() == other.sort_key()

    def __lt__(self, other: "VersionSpec") -> bool:
        if not isinstance(other, VersionSpec):
            return NotImplemented
        return self.sort_key() < other.sort_key()

    def __hash__(self) -> int:
        return hash(self.sort_key())

    def __str__(self) -> str:
        return self.raw

    def __repr__(self) -> str:
        return f"VersionSpec({self.raw!r})"


def find_version_in_text(text: str) -> Optional[str]:
    """
    Pull the first version-looking token out of free text.

    ``"WorldEdit 6.1.9 for Bukkit"`` → ``"6.1.9"``;
    ``"worldedit-bukkit-7.2.0.jar"`` → ``"7.2.0"``. Tokens written with a
    ``v`` prefix win over bare numbers (which are often Minecraft versions).
    """
    if not text:
        return None
    cleaned = _ARCHIVE_SUFFIX_RE.sub("", text.strip())
    for pattern in (_TEXT_VERSION_PREFIXED_RE, _TEXT_VERSION_RE):
        match = pattern.search(cleaned)
        if match:
            return match.group(1)
    return None


def package_key(name: str) -> str:
    """Case-insensitive key used for every name lookup."""
    return name.strip().lower()


# ──────────────────────────────────────────────
#  Constraints
# ──────────────────────────────────────────────

class ConstraintKind(Enum):
    EXACT = "exact"
    MINIMUM = "minimum"
    RANGE = "range"
    LATEST = "latest"


_COMPARATOR_RE = re.compile(r"^(>=|<=|==|=|>|<)?\s*(\S.*)$")
_LATEST_WORDS = {"", "*", "latest"}
# A bound containing any of these is written quoted
_UNSAFE_BOUND_CHARS = set('<>=*,"\\+@#')


@dataclass(frozen=True)
class Constraint:
    """
    An immutable interval over the VersionSpec order.

    ``stable_upper`` marks an exclusive upper bound that also shuts out the
    pre-releases of that bound: ``6.1.*`` admits ``6.1.9`` but never
    ``6.2-SNAPSHOT``, whereas a plain ``<6.2`` admits both.

    ``text`` preserves what the user typed (``6.1.*``) for display and
    serialization; it does not take part in equality.
    """

    kind: ConstraintKind
    lower: Optional[VersionSpec] = None
    lower_inclusive: bool = True
    upper: Optional[VersionSpec] = None
    upper_inclusive: bool = False
    stable_upper: bool = False
    text: str = field(default="", compare=False)

    # ── Construction ──────────────────────────

    @classmethod
    def between(
        cls,
        lower: Optional[VersionSpec],
        lower_inclusive: bool,
        upper: Optional[VersionSpec],
        upper_inclusive: bool,
        text: str = "",
        stable_upper: bool = False,
    ) -> "Constraint":
        """Build a constraint, deriving its kind from the bounds."""
        if lower is None:
            lower_inclusive = True
        if upper is None:
            upper_inclusive = False
        if upper is None or upper_inclusive:
            stable_upper = False
        if lower is None and upper is None:
            kind = ConstraintKind.LATEST
        elif (
            lower is not None and upper is not None and lower == upper
            and lower_inclusive and upper_inclusive
        ):
            kind = ConstraintKind.EXACT
        elif upper is None:
            kind = ConstraintKind.MINIMUM
        else:
            kind = ConstraintKind.RANGE
        return cls(kind, lower, lower_inclusive, upper, upper_inclusive, stable_upper, text)

    @classmethod
    def latest(cls) -> "Constraint":
        return cls(ConstraintKind.LATEST)

    @classmethod
    def exact(cls, version: VersionSpec | str) -> "Constraint":
        v = version if isinstance(version, VersionSpec) else VersionSpec.parse(version)
        return cls.between(v, True, v, True)

    @classmethod
    def minimum(cls, version: VersionSpec | str, inclusive: bool = True) -> "Constraint":
        v = version if isinstance(version, VersionSpec) else VersionSpec.parse(version)
        return cls.between(v, inclusive, None, False)

    @classmethod
    def wildcard(cls, prefix_text: str, text: str = "") -> "Constraint":
        """``6.1`` → newest patch of 6.1; ``6`` → newest minor of 6."""
        prefix = VersionSpec.parse(prefix_text)
        if not prefix.is_structured or prefix.qualifier is not None or "+" in prefix_text:
            raise ValueError(f"Invalid wildcard constraint: {(text or prefix_text + '.*')!r}")
        bumped = prefix.release[:-1] + (prefix.release[-1] + 1,)
        upper = VersionSpec.parse(".".join(str(p) for p in bumped))
        return cls.between(prefix, True, upper, False, text=text, stable_upper=True)

    @classmethod
    def parse(cls, text: Optional[str]) -> "Constraint":
        """
        Parse the textual form. Raises ValueError on malformed input.

        Versions that are not plain tokens (``"build 12"``) are written in
        double quotes, with ``\\`` escaping a quote or backslash.
        """
        raw = "" if text is None else str(text).strip()
        if raw.lower() in _LATEST_WORDS:
            return cls.between(None, True, None, False, text=raw)

        if raw.endswith("+") and "," not in raw and not raw.startswith('"'):
            return cls.between(_parse_bound(raw[:-1], raw), True, None, False, text=raw)

        parts = _split_parts(raw)
        result: Optional[Constraint] = cls.latest()
        for part in parts:
            if part.endswith(".*") and not part.startswith('"'):
                piece = cls.wildcard(part[:-2], text=raw)
            else:
                match = _COMPARATOR_RE.match(part)
                if not match:
                    raise ValueError(f"Invalid constraint: {raw!r}")
                op, version_text = match.group(1), match.group(2)
                version = _parse_bound(version_text, raw)
                if op in (None, "=", "=="):
                    if op is None and len(parts) > 1:
                        raise ValueError(f"Range parts need an operator: {raw!r}")
                    piece = cls.between(version, True, version, True)
                elif op == ">=":
                    piece = cls.between(version, True, None, False)
                elif op == ">":
                    piece = cls.between(version, False, None, False)
                elif op == "<=":
                    piece = cls.between(None, True, version, True)
                else:
                    piece = cls.between(None, True, version, False)
            result = result.intersect(piece) if result is not None else None
        if result is None:
            raise ValueError(f"Constraint can never be satisfied: {raw!r}")
        return cls.between(
            result.lower, result.lower_inclusive,
            result.upper, result.upper_inclusive,
            text=raw, stable_upper=result.stable_upper,
        )

    # ── Predicates ────────────────────────────

    def allows(self, version: VersionSpec) -> bool:
        if self.lower is not None:
            if version < self.lower or (version == self.lower and not self.lower_inclusive):
                return False
        if self.upper is not None:
            if version > self.upper or (version == self.upper and not self.upper_inclusive):
                return False
            if self.stable_upper and version.is_prerelease and _release_of(version) == self.upper:
                return False
        return True

    def intersect(self, other: "Constraint") -> Optional["Constraint"]:
        """Narrowest constraint allowed by both, or None when they never overlap."""
        lower, lower_inc = self.lower, self.lower_inclusive
        if other.lower is not None:
            if lower is None or other.lower > lower:
                lower, lower_inc = other.lower, other.lower_inclusive
            elif other.lower == lower:
                lower_inc = lower_inc and other.lower_inclusive

        upper, upper_inc, stable = self.upper, self.upper_inclusive, self.stable_upper
        if other.upper is not None:
            if upper is None or other.upper < upper:
                upper, upper_inc, stable = other.upper, other.upper_inclusive, other.stable_upper
            elif other.upper == upper:
                upper_inc = upper_inc and other.upper_inclusive
                stable = stable or other.stable_upper

        if lower is not None and upper is not None:
            if lower > upper or (lower == upper and not (lower_inc and upper_inc)):
                return None
            # everything from 6.2-SNAPSHOT up to a stable-only 6.2 is a 6.2 pre-release
            if stable and not upper_inc and lower.is_prerelease and _release_of(lower) == upper:
                return None
        if self == other:
            return self
        return Constraint.between(lower, lower_inc, upper, upper_inc, stable_upper=stable)

    @property
    def mentions_prerelease(self) -> bool:
        return any(b is not None and b.is_prerelease for b in (self.lower, self.upper))

    # ── Serialization ─────────────────────────

    def canonical(self) -> str:
        if self.kind is ConstraintKind.LATEST:
            return "*"
        if self.kind is ConstraintKind.EXACT:
            return _format_bound(self.lower)
        prefix = self._wildcard_prefix()
        parts = []
        if self.lower is not None and not (
            prefix is not None and self.lower_inclusive and self.lower == prefix
        ):
            parts.append(f"{'>=' if self.lower_inclusive else '>'}{_format_bound(self.lower)}")
        if prefix is not None:
            parts.append(f"{prefix}.*")
        elif self.upper is not None:
            parts.append(f"{'<=' if self.upper_inclusive else '<'}{_format_bound(self.upper)}")
        return ",".join(parts)

    def _wildcard_prefix(self) -> Optional[VersionSpec]:
        """The ``X.*`` prefix whose stable upper bound this constraint carries."""
        if not self.stable_upper or self.upper is None or self.upper.is_prerelease:
            return None
        if self.upper.release is None:
            return None
        release = list(self.upper.release)
        while len(release) > 1 and release[-1] == 0:
            release.pop()
        if release[-1] == 0:
            return None
        release[-1] -= 1
        return VersionSpec.parse(".".join(str(p) for p in release))

    def describe(self) -> str:
        return "any version" if self.kind is ConstraintKind.LATEST else str(self)

    def __str__(self) -> str:
        return self.text or self.canonical()


def _release_of(version: VersionSpec) -> VersionSpec:
    return VersionSpec(version.raw, version.release)


def _format_bound(version: VersionSpec) -> str:
    raw = version.raw
    bare = (
        raw
        and raw.lower() not in _LATEST_WORDS
        and not any(ch in _UNSAFE_BOUND_CHARS or ch.isspace() for ch in raw)
        and VersionSpec.parse(raw) == version
    )
    if bare:
        return raw
    escaped = raw.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _split_parts(raw: str) -> List[str]:
    """Split on commas outside double quotes."""
    parts: List[str] = []
    current: List[str] = []
    quoted = escaped = False
    for ch in raw:
        if escaped:
            escaped = False
        elif ch == "\\" and quoted:
            escaped = True
        elif ch == '"':
            quoted = not quoted
        elif ch == "," and not quoted:
            parts.append("".join(current).strip())
            current = []
            continue
        current.append(ch)
    if quoted:
        raise ValueError(f"Unterminated quote in constraint: {raw!r}")
    parts.append("".join(current).strip())
    return parts


def _parse_bound(text: str, whole: str) -> VersionSpec:
    text = text.strip()
    if text.startswith('"'):
        if len(text) < 2 or not text.endswith('"'):
            raise ValueError(f"Invalid quoted version in constraint: {whole!r}")
        return VersionSpec.parse(_unquote(text[1:-1], whole))
    if not text or any(ch in text for ch in '<>=*, "'):
        raise ValueError(f"Invalid version in constraint: {whole!r}")
    return VersionSpec.parse(text)


def _unquote(body: str, whole: str) -> str:
    out: List[str] = []
    chars = iter(body)
    for ch in chars:
        if ch == "\\":
            ch = next(chars, None)
            if ch is None:
                raise ValueError(f"Dangling escape in constraint: {whole!r}")
        elif ch == '"':
            raise ValueError(f"Unescaped quote in constraint: {whole!r}")
        out.append(ch)
    return "".join(out)


# ──────────────────────────────────────────────
#  Name@Constraint Specifiers
# ──────────────────────────────────────────────

def parse_specifier(text: str) -> Tuple[str, Constraint]:
    """Split ``Name@Constraint`` on the last ``@`` outside quotes. Raises ValueError."""
    raw = (text or "").strip()
    quote = raw.find('"')
    head = raw if quote < 0 else raw[:quote]
    name, sep, _ = head.rpartition("@")
    if sep:
        spec = raw[len(name) + 1:]
    else:
        name, spec = raw, ""
    name = name.strip()
    if not name:
        raise ValueError(f"Missing plugin name in {text!r}")
    return name, Constraint.parse(spec)


def format_specifier(name: str, constraint: Constraint) -> str:
    if constraint.kind is ConstraintKind.LATEST and not constraint.text:
        return name
    if constraint.kind is ConstraintKind.LATEST and constraint.text.lower() in _LATEST_WORDS:
        return name
    return f"{name}@{constraint}"
