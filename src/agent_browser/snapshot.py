"""Accessibility snapshots with element refs.

Turns a role/name-labelled tree (or an already rendered ARIA outline) into a
compact outline in which actionable nodes carry short-lived refs::

    - heading "Welcome" [ref=e1] [level=1]
    - button "Submit" [ref=e2]
    - button "Submit" [ref=e3] [nth=1]

Refs are numbered from ``e1`` on every call.  Each ref maps back to a
selector synthesised from the node's role and name; ``nth`` tells apart
nodes that share the same (role, name) pair.
"""

from __future__ import annotations

import re
import threading
from collections.abc import Mapping
from contextlib import contextmanager
from typing import Any, Iterator

from pydantic import BaseModel, Field

INTERACTIVE_ROLES = frozenset(
    {
        "button",
        "link",
        "textbox",
        "checkbox",
        "radio",
        "combobox",
        "listbox",
        "menuitem",
        "menuitemcheckbox",
        "menuitemradio",
        "option",
        "searchbox",
        "slider",
        "spinbutton",
        "switch",
        "tab",
        "treeitem",
    }
)

# Only meaningful when named.
CONTENT_ROLES = frozenset(
    {
        "heading",
        "cell",
        "gridcell",
        "columnheader",
        "rowheader",
        "listitem",
        "article",
        "region",
        "main",
        "navigation",
    }
)

STRUCTURAL_ROLES = frozenset(
    {
        "generic",
        "group",
        "list",
        "table",
        "row",
        "rowgroup",
        "grid",
        "treegrid",
        "menu",
        "menubar",
        "toolbar",
        "tablist",
        "tree",
        "directory",
        "document",
        "application",
        "presentation",
        "none",
    }
)

EMPTY_SENTINEL = "(empty)"
NO_INTERACTIVE_SENTINEL = "(no interactive elements)"

_ARIA_LINE_RE = re.compile(r'^(\s*-\s*)(\w+)(?:\s+"([^"]*)")?(.*)$')
_BARE_REF_RE = re.compile(r"^e\d+$")


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class RefData(BaseModel):
    selector: str
    role: str
    name: str = ""
    nth: int = 0


class SnapshotOptions(BaseModel):
    interactive: bool = False
    max_depth: int = 0
    compact: bool = False
    selector: str | None = None


class AXNode(BaseModel):
    """One node of the accessibility tree as reported by the page."""

    role: str = ""
    name: str = ""
    children: list[AXNode] = Field(default_factory=list)
    properties: dict[str, Any] | None = None


class EnhancedSnapshot(BaseModel):
    tree: str
    refs: dict[str, RefData] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Ref helpers
# ---------------------------------------------------------------------------


def build_selector(role: str, name: str) -> str:
    """Return the CSS selector a ref resolves to.

    Derived from role and name only, so same-named nodes share a selector and
    are told apart by ``nth``.
    """
    if name:
        escaped = name.replace('"', '\\"')
        return f'[role="{role}"][aria-label="{escaped}"]'
    return f'[role="{role}"]'


def parse_ref(selector: str) -> str | None:
    """Extract a ref id from ``@e3``, ``ref=e3`` or a bare ``e3``.

    Returns ``None`` when *selector* is not in ref form.
    """
    if selector.startswith("@"):
        return selector[1:]
    if selector.startswith("ref="):
        return selector[4:]
    if _BARE_REF_RE.match(selector):
        return selector
    return None


def is_ref(selector: str) -> bool:
    return parse_ref(selector) is not None


class _RefAllocator:
    """Hands out refs for one snapshot call and tracks (role, name) repeats."""

    def __init__(self) -> None:
        self.counter = 0
        self.refs: dict[str, RefData] = {}
        self._seen: dict[str, int] = {}

    def allocate(self, role: str, name: str) -> tuple[str, int]:
        self.counter += 1
        ref = f"e{self.counter}"
        key = f"{role}:{name}"
        nth = self._seen.get(key, 0)
        self._seen[key] = nth + 1
        self.refs[ref] = RefData(
            selector=build_selector(role, name), role=role, name=name, nth=nth
        )
        return ref, nth


def _should_have_ref(role: str, name: str) -> bool:
    return role in INTERACTIVE_ROLES or (role in CONTENT_ROLES and bool(name))


def _finish(lines: list[str], options: SnapshotOptions) -> str:
    tree = "\n".join(lines)
    if not tree:
        return NO_INTERACTIVE_SENTINEL if options.interactive else EMPTY_SENTINEL
    return tree.strip()


# ---------------------------------------------------------------------------
# Tree entry point
# ---------------------------------------------------------------------------


def build_snapshot(
    root: AXNode | Mapping[str, Any] | None,
    options: SnapshotOptions | None = None,
) -> EnhancedSnapshot:
    """Render *root* as an outline and build a fresh ref table.

    Parameters
    ----------
    root:
        Root of the accessibility tree, either an ``AXNode`` or the raw dict
        returned by the page script.  ``None`` renders as ``(empty)``.
    options:
        Filtering options; defaults to a full, unfiltered snapshot.

    Returns
    -------
    EnhancedSnapshot
        The outline text and the refs it mentions.
    """
    options = options or SnapshotOptions()
    if root is None:
        return EnhancedSnapshot(tree=EMPTY_SENTINEL)
    if not isinstance(root, AXNode):
        root = AXNode.model_validate(root)

    allocator = _RefAllocator()
    lines: list[str] = []
    _walk(root, 0, options, allocator, lines)
    return EnhancedSnapshot(tree=_finish(lines, options), refs=allocator.refs)


def _walk(
    node: AXNode,
    depth: int,
    options: SnapshotOptions,
    allocator: _RefAllocator,
    lines: list[str],
) -> None:
    if options.max_depth > 0 and depth > options.max_depth:
        return

    role = node.role.lower()
    name = node.name

    # Elided nodes still contribute their children, at the same depth.
    elide = (
        (options.interactive and role not in INTERACTIVE_ROLES)
        or (options.compact and role in STRUCTURAL_ROLES and not name)
        or (role in ("generic", "none") and not name)
    )
    if elide:
        for child in node.children:
            _walk(child, depth, options, allocator, lines)
        return

    line = f"{'  ' * depth}- {role}"
    if name:
        line += f' "{name}"'
    if _should_have_ref(role, name):
        ref, nth = allocator.allocate(role, name)
        line += f" [ref={ref}]"
        if nth > 0:
            line += f" [nth={nth}]"
    if role == "heading" and node.properties:
        level = node.properties.get("level")
        if isinstance(level, (int, float)) and not isinstance(level, bool):
            line += f" [level={int(level)}]"
    lines.append(line)

    for child in node.children:
        _walk(child, depth + 1, options, allocator, lines)


# ---------------------------------------------------------------------------
# Outline entry point
# ---------------------------------------------------------------------------


def process_aria_tree(
    aria_tree: str, options: SnapshotOptions | None = None
) -> EnhancedSnapshot:
    """Add refs to an already rendered ARIA outline, line by line.

    Uses the same classification and numbering rules as ``build_snapshot``.
    Depth and compact filtering are not applied; the outline's own
    indentation is kept as is.
    """
    options = options or SnapshotOptions()
    allocator = _RefAllocator()
    lines: list[str] = []
    for line in aria_tree.split("\n"):
        processed = _process_aria_line(line, options, allocator)
        if processed:
            lines.append(processed)
    return EnhancedSnapshot(tree=_finish(lines, options), refs=allocator.refs)


def _process_aria_line(
    line: str, options: SnapshotOptions, allocator: _RefAllocator
) -> str:
    match = _ARIA_LINE_RE.match(line)
    if match is None:
        # Text content or metadata.
        return "" if options.interactive else line

    prefix, role, name, suffix = match.groups()
    name = name or ""
    role_lower = role.lower()

    if options.interactive and role_lower not in INTERACTIVE_ROLES:
        return ""
    if not _should_have_ref(role_lower, name):
        return line

    ref, nth = allocator.allocate(role_lower, name)
    enhanced = f"{prefix}{role}"
    if name:
        enhanced += f' "{name}"'
    enhanced += f" [ref={ref}]"
    if nth > 0:
        enhanced += f" [nth={nth}]"
    return enhanced + suffix


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------


def snapshot_stats(snapshot: EnhancedSnapshot) -> dict[str, int]:
    """Rough size figures for a snapshot; tokens are estimated at 4 chars each."""
    tree = snapshot.tree
    return {
        "lines": len(tree.split("\n")),
        "chars": len(tree),
        "tokens": len(tree) // 4,
        "refs": len(snapshot.refs),
        "interactive": sum(
            1 for ref in snapshot.refs.values() if ref.role in INTERACTIVE_ROLES
        ),
    }


# ---------------------------------------------------------------------------
# Ref table
# ---------------------------------------------------------------------------


class RWLock:
    """Many concurrent readers or a single writer."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class RefTable:
    """The daemon's current ref -> ``RefData`` mapping.

    Replaced wholesale by every snapshot and read by every command that
    accepts a selector.
    """

    def __init__(self) -> None:
        self._lock = RWLock()
        self._refs: dict[str, RefData] = {}

    def replace(self, refs: Mapping[str, RefData]) -> None:
        with self._lock.write():
            self._refs = dict(refs)

    def clear(self) -> None:
        self.replace({})

    def get(self, ref: str) -> RefData | None:
        with self._lock.read():
            return self._refs.get(ref)

    def snapshot(self) -> dict[str, RefData]:
        """Return a copy of the current mapping."""
        with self._lock.read():
            return dict(self._refs)

    def lookup(self, selector: str) -> RefData | None:
        """Return the ``RefData`` for a ref-form *selector*, if known."""
        ref = parse_ref(selector)
        if ref is None:
            return None
        return self.get(ref)

    def resolve(self, selector: str) -> str:
        """Map a ref-form *selector* to its stored selector.

        Unknown refs and ordinary selectors come back unchanged.
        """
        data = self.lookup(selector)
        return data.selector if data is not None else selector

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._refs)
