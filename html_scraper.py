"""
html_scraper.py
===============
Minimal HTML document tree + CSS-subset selector used by scraped sources.

Supported selector syntax:
  - ``tag``, ``#id``, ``.class``, ``*``
  - ``[attr]`` and ``[attr=value]`` (value may be quoted)
  - compound selectors such as ``div.results-name``
  - descendant (``A B``) and child (``A > B``) combinators
  - comma groups (``a.download, a.button``)
"""

from __future__ import annotations

import re
from html.parser import HTMLParser
from typing import Dict, Iterator, List, Optional, Tuple, Union

from exceptions import ParseError

_VOID_ELEMENTS = {
    "area", "base", "br", "col", "embed", "hr", "img", "input",
    "link", "meta", "param", "source", "track", "wbr",
}


# ──────────────────────────────────────────────
#  Document Tree
# ──────────────────────────────────────────────

class Node:
    """One element of the parsed document."""

    def __init__(
        self,
        tag: str,
        attrs: Optional[Dict[str, str]] = None,
        parent: Optional["Node"] = None,
    ) -> None:
        self.tag = tag
        self.attrs: Dict[str, str] = attrs or {}
        self.parent = parent
        self.children: List["Node"] = []
        # text runs and child elements in document order
        self._content: List[Union[str, "Node"]] = []

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.attrs.get(name, default)

    @property
    def classes(self) -> List[str]:
        return self.attrs.get("class", "").split()

    def text(self) -> str:
        """Concatenated text of this node and its descendants, whitespace-collapsed."""
        parts: List[str] = []
        self._collect_text(parts)
        return " ".join(" ".join(parts).split())

    def _collect_text(self, parts: List[str]) -> None:
        for item in self._content:
            if isinstance(item, Node):
                item._collect_text(parts)
            else:
                parts.append(item)

    def append(self, child: "Node") -> None:
        self.children.append(child)
        self._content.append(child)

    def iter_descendants(self) -> Iterator["Node"]:
        for child in self.children:
            yield child
            yield from child.iter_descendants()

    def select(self, selector: str) -> List["Node"]:
        return select(self, selector)

    def select_one(self, selector: str) -> Optional["Node"]:
        found = select(self, selector)
        return found[0] if found else None

    def __repr__(self) -> str:
        return f"<Node {self.tag} {self.attrs}>"


class _TreeBuilder(HTMLParser):
    """Builds a Node tree, tolerating unclosed and stray end tags."""

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.root = Node("#document")
        self._current = self.root

    def handle_starttag(self, tag, attrs):
        node = Node(tag, {k: (v or "") for k, v in attrs}, self._current)
        self._current.append(node)
        if tag not in _VOID_ELEMENTS:
            self._current = node

    def handle_startendtag(self, tag, attrs):
        node = Node(tag, {k: (v or "") for k, v in attrs}, self._current)
        self._current.append(node)

    def handle_endtag(self, tag):
        node = self._current
        while node is not None and node.tag != tag:
            node = node.parent
        if node is not None and node.parent is not None:
            self._current = node.parent

    def handle_data(self, data):
        if data.strip():
            self._current._content.append(data.strip())


def parse_html(body: bytes | str) -> Node:
    """Parse an HTML body into a Node tree. Raises ParseError."""
    if isinstance(body, bytes):
        try:
            text = body.decode("utf-8")
        except UnicodeDecodeError:
            text = body.decode("latin-1")
    else:
        text = body
    if "<" not in text:
        raise ParseError("html", "no markup found")
    builder = _TreeBuilder()
    builder.feed(text)
    builder.close()
    return builder.root


# ──────────────────────────────────────────────
#  Selectors
# ──────────────────────────────────────────────

_TOKEN_RE = re.compile(
    r"""
    (?P<tag>[A-Za-z][A-Za-z0-9-]*|\*)
    | \#(?P<id>[\w-]+)
    | \.(?P<cls>[\w-]+)
    | \[\s*(?P<attr>[\w-]+)\s*(?:=\s*(?P<val>"[^"]*"|'[^']*'|[^\]\s]+)\s*)?\]
    """,
    re.VERBOSE,
)


class _Compound:
    __slots__ = ("tag", "ids", "classes", "attrs")

    def __init__(self) -> None:
        self.tag: Optional[str] = None
        self.ids: List[str] = []
        self.classes: List[str] = []
        self.attrs: List[Tuple[str, Optional[str]]] = []

    def matches(self, node: Node) -> bool:
        if self.tag and self.tag != "*" and node.tag != self.tag:
            return False
        if any(node.get("id") != ident for ident in self.ids):
            return False
        node_classes = node.classes
        if any(cls not in node_classes for cls in self.classes):
            return False
        for name, value in self.attrs:
            if name not in node.attrs:
                return False
            if value is not None and node.attrs[name] != value:
                return False
        return True


def _parse_compound(text: str, selector: str) -> _Compound:
    compound = _Compound()
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if not match:
            raise ValueError(f"Unsupported selector: {selector!r}")
        if match.group("tag"):
            compound.tag = match.group("tag").lower()
        elif match.group("id"):
            compound.ids.append(match.group("id"))
        elif match.group("cls"):
            compound.classes.append(match.group("cls"))
        else:
            value = match.group("val")
            if value is not None and value[:1] in "\"'":
                value = value[1:-1]
            compound.attrs.append((match.group("attr"), value))
        pos = match.end()
    return compound


def _parse_chain(selector: str) -> List[Tuple[str, _Compound]]:
    """Split one comma-free selector into (combinator, compound) steps."""
    spaced = re.sub(r"\s*>\s*", " > ", selector.strip())
    steps: List[Tuple[str, _Compound]] = []
    combinator = " "
    for token in spaced.split():
        if token == ">":
            combinator = ">"
            continue
        steps.append((combinator, _parse_compound(token, selector)))
        combinator = " "
    if not steps or combinator == ">":
        raise ValueError(f"Unsupported selector: {selector!r}")
    return steps


def _matches_chain(node: Node, steps: List[Tuple[str, _Compound]]) -> bool:
    combinator, compound = steps[-1]
    if not compound.matches(node):
        return False
    if len(steps) == 1:
        return True
    rest = steps[:-1]
    ancestor = node.parent
    if combinator == ">":
        return ancestor is not None and _matches_chain(ancestor, rest)
    while ancestor is not None:
        if _matches_chain(ancestor, rest):
            return True
        ancestor = ancestor.parent
    return False


def select(root: Node, selector: str) -> List[Node]:
    """
    Return every descendant of ``root`` matching ``selector``, in document order.

    Raises ValueError for selector syntax outside the supported subset.
    """
    chains = [_parse_chain(part) for part in selector.split(",") if part.strip()]
    if not chains:
        raise ValueError(f"Empty selector: {selector!r}")
    return [
        node for node in root.iter_descendants()
        if any(_matches_chain(node, chain) for chain in chains)
    ]
