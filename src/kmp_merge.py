"""kmp-migrate: merge required declarations into Gradle configuration files.

A merge only ever inserts lines. A declaration that is already present, under
any of its recognised spellings, is left alone, so merging the same
declarations twice leaves the file unchanged.
"""

from __future__ import annotations

import enum
import os
import re
import tempfile
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

SECTION_RE = re.compile(r"^\ufeff?\s*\[\[?\s*([^\[\]]+?)\s*\]\]?\s*(?:#.*)?$")
CATALOG_SECTIONS = ("versions", "libraries", "bundles", "plugins")
BLOCK_OPENER_RE = re.compile(r"^\ufeff?\s*([A-Za-z_][\w.]*)\s*\{")
IMPORT_RE = re.compile(r"^\ufeff?\s*import\s")
STRING_RE = re.compile(r'"(?:\\.|[^"\\])*"|\'(?:\\.|[^\'\\])*\'')


class MalformedDocumentError(ValueError):
    """A document lacks an anchor that cannot be safely created."""

    def __init__(self, anchor: str, reason: str, path: str | Path | None = None) -> None:
        self.anchor = anchor
        self.reason = reason
        self.path = path
        where = f"{path}: " if path else ""
        super().__init__(f"{where}cannot place declarations at {anchor} ({reason})")


class DocumentKind(enum.Enum):
    VERSION_CATALOG = "version-catalog"
    SETTINGS_SCRIPT = "settings-script"
    BUILD_SCRIPT = "build-script"


# Blocks Gradle only accepts ahead of every other statement.
_REQUIRED_FIRST = {
    DocumentKind.SETTINGS_SCRIPT: ("pluginManagement", "plugins"),
    DocumentKind.BUILD_SCRIPT: ("buildscript",),
}


@dataclass(frozen=True)
class Anchor:
    """Where a missing declaration is inserted.

    ``section``: directly under the ``[name]`` header of a version catalog.
    ``block``: directly under the line opening the top-level ``name {`` block.
    ``after``: directly after the last line matching the regex ``name``, or at
    the end of the document when no line matches.
    ``top``: the first position a statement may occupy.
    """

    kind: str
    name: str = ""

    @classmethod
    def section(cls, name: str) -> Anchor:
        return cls("section", name)

    @classmethod
    def block(cls, name: str) -> Anchor:
        return cls("block", name)

    @classmethod
    def after(cls, pattern: str) -> Anchor:
        return cls("after", pattern)

    @classmethod
    def top(cls) -> Anchor:
        return cls("top")

    def describe(self) -> str:
        if self.kind == "section":
            return f"[{self.name}]"
        if self.kind == "block":
            return f"{self.name} {{ }}"
        if self.kind == "after":
            return f"line matching {self.name!r}"
        return "top of document"


@dataclass(frozen=True)
class Fact:
    """A declaration that must appear in a document exactly once.

    ``patterns`` are searched line by line; any hit means the declaration (or
    one of its alias spellings) is already there.
    """

    key: str
    lines: tuple[str, ...]
    anchor: Anchor
    patterns: tuple[re.Pattern[str], ...]


def _code(line: str) -> str:
    """``line`` with string literals emptied and any ``//`` comment removed."""
    return STRING_RE.sub('""', line).split("//", 1)[0]


def _brace_delta(line: str) -> int:
    code = _code(line)
    return code.count("{") - code.count("}")


def _section_name(line: str) -> str | None:
    match = SECTION_RE.match(line)
    return match.group(1) if match else None


class Document:
    """An ordered list of lines plus what is needed to write them back."""

    def __init__(
        self,
        lines: list[str],
        kind: DocumentKind,
        *,
        newline: str = "\n",
        path: str | Path | None = None,
    ) -> None:
        self.lines = lines
        self.kind = kind
        self.newline = newline
        self.path = path

    @classmethod
    def parse(cls, text: str, kind: DocumentKind, *, path: str | Path | None = None) -> Document:
        if "\x00" in text:
            raise MalformedDocumentError("document", "binary content", path)
        newline = "\r\n" if "\r\n" in text else "\n"
        lines = re.split(r"\r?\n", text)
        if lines[-1] == "":
            lines.pop()
        return cls(lines, kind, newline=newline, path=path)

    def render(self) -> str:
        if not self.lines:
            return ""
        return self.newline.join(self.lines) + self.newline

    # ------------------------------------------------------------------
    # Presence
    # ------------------------------------------------------------------

    def _is_comment(self, line: str) -> bool:
        stripped = line.lstrip()
        if self.kind is DocumentKind.VERSION_CATALOG:
            return stripped.startswith("#")
        return stripped.startswith("//")

    def has(self, fact: Fact) -> bool:
        if fact.anchor.kind == "section":
            scope = self.section_lines(fact.anchor.name)
        else:
            scope = self.lines
        return any(
            pattern.search(line) for line in scope if not self._is_comment(line) for pattern in fact.patterns
        )

    # ------------------------------------------------------------------
    # Catalog sections
    # ------------------------------------------------------------------

    def section_index(self, name: str) -> int | None:
        found = [i for i, line in enumerate(self.lines) if _section_name(line) == name]
        if len(found) > 1:
            raise MalformedDocumentError(
                Anchor.section(name).describe(), f"section declared {len(found)} times", self.path
            )
        return found[0] if found else None

    def section_lines(self, name: str) -> list[str]:
        start = self.section_index(name)
        if start is None:
            return []
        end = start + 1
        while end < len(self.lines) and _section_name(self.lines[end]) is None:
            end += 1
        return self.lines[start + 1 : end]

    def _create_section(self, name: str) -> int:
        later = CATALOG_SECTIONS[CATALOG_SECTIONS.index(name) + 1 :] if name in CATALOG_SECTIONS else ()
        following = [i for i in (self.section_index(s) for s in later) if i is not None]
        if following:
            at = min(following)
            self.lines[at:at] = [f"[{name}]", ""]
            return at
        if self.lines and self.lines[-1].strip():
            self.lines.append("")
        self.lines.append(f"[{name}]")
        return len(self.lines) - 1

    # ------------------------------------------------------------------
    # Script blocks
    # ------------------------------------------------------------------

    def blocks(self) -> list[tuple[str, int, int]]:
        """Top-level ``name { ... }`` blocks as (name, first line, last line)."""
        found: list[tuple[str, int, int]] = []
        depth = 0
        opened: tuple[str, int] | None = None
        for i, line in enumerate(self.lines):
            if depth == 0:
                match = BLOCK_OPENER_RE.match(line)
                opened = (match.group(1), i) if match else None
            depth += _brace_delta(line)
            if depth < 0:
                raise MalformedDocumentError("top-level blocks", f"unbalanced '}}' at line {i + 1}", self.path)
            if depth == 0 and opened is not None:
                found.append((opened[0], opened[1], i))
                opened = None
        if depth != 0:
            raise MalformedDocumentError("top-level blocks", "unclosed '{'", self.path)
        return found

    def head(self) -> int:
        """Index of the first line a new statement may occupy."""
        at = 0
        required = _REQUIRED_FIRST.get(self.kind, ())
        if required:
            for name, _, last in self.blocks():
                if name in required:
                    at = max(at, last + 1)
        for i, line in enumerate(self.lines):
            if IMPORT_RE.match(line):
                at = max(at, i + 1)
        return at

    def _block_index(self, name: str) -> int:
        anchor = Anchor.block(name).describe()
        found = [(first, last) for block, first, last in self.blocks() if block == name]
        if len(found) > 1:
            raise MalformedDocumentError(anchor, f"block declared {len(found)} times", self.path)
        if found:
            first, last = found[0]
            if first == last:
                raise MalformedDocumentError(anchor, "block opens and closes on one line", self.path)
            return first
        return self._create_block(name)

    def _create_block(self, name: str) -> int:
        at = self.head()
        opener = f"{name} {{"
        new = [opener, "}"]
        if at < len(self.lines) and self.lines[at].strip():
            new.append("")
        if at > 0 and self.lines[at - 1].strip():
            new.insert(0, "")
        self.lines[at:at] = new
        return at + new.index(opener)

    def _statement_end(self, start: int, anchor: Anchor) -> int:
        """Last line of the statement starting at ``start``.

        A statement continues while parentheses are open or a line ends with
        ``,`` (Groovy argument lists without parentheses).
        """
        depth = 0
        for i in range(start, len(self.lines)):
            code = _code(self.lines[i]).rstrip()
            if i > start and not code.strip():
                continue
            depth += code.count("(") - code.count(")")
            if depth < 0:
                raise MalformedDocumentError(anchor.describe(), f"unbalanced ')' at line {i + 1}", self.path)
            if depth == 0 and not code.endswith(","):
                return i
        raise MalformedDocumentError(anchor.describe(), f"statement at line {start + 1} never ends", self.path)

    # ------------------------------------------------------------------
    # Insertion
    # ------------------------------------------------------------------

    def insertion_point(self, anchor: Anchor) -> int:
        """Resolve ``anchor`` against the current lines, creating it if needed."""
        if anchor.kind == "section":
            if self.kind is not DocumentKind.VERSION_CATALOG:
                raise ValueError(f"section anchors only apply to version catalogs, not {self.kind.value}")
            index = self.section_index(anchor.name)
            if index is None:
                index = self._create_section(anchor.name)
            return index + 1
        if anchor.kind == "block":
            return self._block_index(anchor.name) + 1
        if anchor.kind == "after":
            pattern = re.compile(anchor.name)
            matches = [i for i, line in enumerate(self.lines) if not self._is_comment(line) and pattern.search(line)]
            return self._statement_end(matches[-1], anchor) + 1 if matches else len(self.lines)
        if anchor.kind == "top":
            return self.head()
        raise ValueError(f"unknown anchor kind: {anchor.kind}")

    def apply(self, facts: Iterable[Fact]) -> list[str]:
        """Insert every missing fact, in order. Returns the keys inserted."""
        inserted: list[str] = []
        for fact in facts:
            if self.has(fact):
                continue
            at = self.insertion_point(fact.anchor)
            self.lines[at:at] = list(fact.lines)
            if not self.has(fact):
                raise ValueError(f"declaration for {fact.key!r} does not satisfy its own presence check")
            inserted.append(fact.key)
        return inserted


def merge(
    document: str | None,
    kind: DocumentKind,
    facts: Iterable[Fact],
    *,
    template: str | None = None,
    path: str | Path | None = None,
) -> str:
    """Return ``document`` with every fact in ``facts`` present.

    When ``document`` is None the merge starts from ``template`` (or from an
    empty document). If nothing has to be inserted the source text is
    returned untouched; otherwise the result ends with a single newline.
    """
    source = document if document is not None else (template or "")
    doc = Document.parse(source, kind, path=path)
    if not doc.apply(facts):
        return source
    return doc.render()


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


def read_document(path: Path) -> str:
    try:
        return path.read_bytes().decode("utf-8")
    except UnicodeDecodeError as exc:
        raise MalformedDocumentError("document", "not UTF-8 text", path) from exc


def _default_mode(path: Path) -> int:
    if path.exists():
        return path.stat().st_mode & 0o7777
    umask = os.umask(0)
    os.umask(umask)
    return 0o666 & ~umask


@contextmanager
def atomic_write(path: Path, mode: int | None = None) -> Iterator[BinaryIO]:
    """Yield a binary file that replaces ``path`` only if the block succeeds."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            yield f
        os.chmod(tmp, _default_mode(path) if mode is None else mode)
        os.replace(tmp, path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


def write_text_atomic(path: Path, content: str, mode: int | None = None) -> None:
    with atomic_write(path, mode) as f:
        f.write(content.encode("utf-8"))


def merge_file(
    path: Path,
    kind: DocumentKind,
    facts: Iterable[Fact],
    *,
    template: str | None = None,
) -> str:
    """Merge ``facts`` into the file at ``path``.

    Returns "created", "updated" or "unchanged".
    """
    existed = path.is_file()
    current = read_document(path) if existed else None
    merged = merge(current, kind, facts, template=template, path=path)
    if existed and merged == current:
        return "unchanged"
    write_text_atomic(path, merged)
    return "updated" if existed else "created"
