"""
A field-level editor for Homebrew formula files.

The formula is scanned line by line while tracking Ruby block nesting, so
every ``url``/``version``/``sha256`` field is located together with the block
it lives in. Edits replace the quoted value of one located field and leave
every other byte of the file untouched. A ``sha256`` inside
``resource "x" do ... end`` is therefore never confused with the formula's
own checksum, whichever order the two appear in.
"""

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

_FIELD_RE = re.compile(r'^\s*(?P<name>url|version|sha256|desc|homepage)\s+"(?P<value>[^"]*)"')
_INSTALL_RE = re.compile(r'\bbin\.install\s+"(?P<value>[^"]+)"')
_CLASS_RE = re.compile(r"^\s*class\s+(?P<name>[A-Z]\w*)(?:\s*<\s*(?P<parent>[\w:]+))?")
_MODULE_RE = re.compile(r"^\s*module\s+(?P<name>[A-Z][\w:]*)")
_DEF_RE = re.compile(r"^\s*def\s+(?:self\.)?(?P<name>[\w?!=]+)")
_RESOURCE_RE = re.compile(r'^\s*resource\s+"(?P<name>[^"]+)"\s+do\b')
_KEYWORD_RE = re.compile(
    r"^\s*(?:[@$]?\w+(?:\.\w+)*\s*(?:\|\||&&|[-+*/])?=\s*)?"
    r"(?P<name>if|unless|case|while|until|begin)\b"
)
_DO_RE = re.compile(r"\bdo(?:\s*\|[^|]*\|)?\s*$")
_LEADING_NAME_RE = re.compile(r"^\s*(?P<name>[\w.]+)")
_END_RE = re.compile(r"^\s*end\b")
_INLINE_END_RE = re.compile(r"\bend\s*$")
_HEREDOC_RE = re.compile(r"<<[~-]?([\"']?)(?P<tag>[A-Z_][A-Z0-9_]*)\1")


@dataclass(frozen=True)
class Field:
    """A quoted field value located in the formula text."""

    name: str
    value: str
    start: int
    end: int
    line: int
    scope: Tuple[str, ...]

    @property
    def block(self) -> Optional[str]:
        return self.scope[-1] if self.scope else None


@dataclass(frozen=True)
class Edit:
    field: Field
    value: str


def _split_code(line: str) -> Tuple[str, bool]:
    """Return the line without its trailing comment, and whether its strings are closed."""
    quote = None
    interpolation = 0
    i = 0
    while i < len(line):
        ch = line[i]
        if quote:
            if interpolation:
                if ch == "{":
                    interpolation += 1
                elif ch == "}":
                    interpolation -= 1
            elif ch == "\\":
                i += 2
                continue
            elif quote == '"' and line.startswith("#{", i):
                interpolation = 1
                i += 2
                continue
            elif ch == quote:
                quote = None
        elif ch == "#":
            return line[:i], True
        elif ch in "\"'":
            quote = ch
        i += 1
    return line, quote is None


class FormulaDocument:
    """Parsed view of a formula's text. Instances are immutable; edits return a new one."""

    def __init__(self, text: str):
        self.text = text
        self.fields: List[Field] = []
        self.install_targets: List[Field] = []
        self.blocks: List[Tuple[str, ...]] = []
        self.class_name: Optional[str] = None
        self.parent_class: Optional[str] = None
        self.problems: List[str] = []
        self._scan()

    @classmethod
    def parse(cls, text: str) -> "FormulaDocument":
        return cls(text)

    @classmethod
    def read(cls, path: Path) -> "FormulaDocument":
        return cls(Path(path).read_text(encoding="utf-8"))

    def _opener(self, code: str) -> Optional[str]:
        match = _CLASS_RE.match(code)
        if match:
            if self.class_name is None:
                self.class_name = match.group("name")
                self.parent_class = match.group("parent")
            return f"class:{match.group('name')}"
        match = _MODULE_RE.match(code)
        if match:
            return f"module:{match.group('name')}"
        match = _DEF_RE.match(code)
        if match:
            return f"def:{match.group('name')}"
        match = _RESOURCE_RE.match(code)
        if match:
            return f"resource:{match.group('name')}"
        match = _KEYWORD_RE.match(code)
        if match:
            return f"block:{match.group('name')}"
        if _DO_RE.search(code):
            leading = _LEADING_NAME_RE.match(code)
            return f"block:{leading.group('name') if leading else 'do'}"
        return None

    def _scan(self) -> None:
        stack: List[str] = []
        heredoc = None
        offset = 0

        for number, raw in enumerate(self.text.splitlines(keepends=True), 1):
            line_start = offset
            offset += len(raw)
            line = raw.rstrip("\r\n")

            if heredoc:
                if line.strip() == heredoc:
                    heredoc = None
                continue

            code, closed = _split_code(line)
            if not closed:
                self.problems.append(f"line {number}: unterminated string")
            if not code.strip():
                continue

            scope = tuple(stack)
            match = _FIELD_RE.match(code)
            if match:
                self.fields.append(Field(
                    name=match.group("name"),
                    value=match.group("value"),
                    start=line_start + match.start("value"),
                    end=line_start + match.end("value"),
                    line=number,
                    scope=scope,
                ))
            if "def:install" in scope:
                for match in _INSTALL_RE.finditer(code):
                    self.install_targets.append(Field(
                        name="install",
                        value=match.group("value"),
                        start=line_start + match.start("value"),
                        end=line_start + match.end("value"),
                        line=number,
                        scope=scope,
                    ))

            match = _HEREDOC_RE.search(code)
            if match:
                heredoc = match.group("tag")

            if _END_RE.match(code):
                if stack:
                    stack.pop()
                else:
                    self.problems.append(f"line {number}: 'end' without an open block")
                continue

            opened = self._opener(code)
            if opened and not _INLINE_END_RE.search(code.rstrip()):
                stack.append(opened)
                self.blocks.append(tuple(stack))

        if heredoc:
            self.problems.append(f"unterminated heredoc {heredoc}")
        if stack:
            self.problems.append(f"unclosed block(s): {', '.join(stack)}")

    # Queries

    @property
    def class_scope(self) -> Optional[Tuple[str, ...]]:
        if self.class_name is None:
            return None
        return (f"class:{self.class_name}",)

    @property
    def has_install_method(self) -> bool:
        scope = self.class_scope
        return scope is not None and scope + ("def:install",) in self.blocks

    def find(self, name: str, scope: Optional[Tuple[str, ...]] = None) -> List[Field]:
        return [
            field for field in self.fields
            if field.name == name and (scope is None or field.scope == scope)
        ]

    def primary(self, name: str) -> Optional[Field]:
        """First ``name`` field declared directly in the formula class body."""
        scope = self.class_scope
        if scope is None:
            return None
        found = self.find(name, scope)
        return found[0] if found else None

    def primary_checksum(self) -> Optional[Field]:
        """The ``sha256`` that belongs to the primary ``url``: same block, nearest after it."""
        url = self.primary("url")
        if url is None:
            return self.primary("sha256")
        candidates = self.find("sha256", url.scope)
        after = [field for field in candidates if field.start > url.start]
        if after:
            return after[0]
        return candidates[-1] if candidates else None

    def resource_names(self) -> List[str]:
        names = []
        for block in self.blocks:
            if block[-1].startswith("resource:") and block[:-1] == self.class_scope:
                names.append(block[-1].split(":", 1)[1])
        return names

    def resource_field(self, resource: str, name: str) -> Optional[Field]:
        scope = self.class_scope
        if scope is None:
            return None
        found = self.find(name, scope + (f"resource:{resource}",))
        return found[0] if found else None

    def syntax_problems(self) -> List[str]:
        return list(self.problems)

    # Editing

    def apply(self, edits: Iterable[Edit]) -> "FormulaDocument":
        """Return a new document with each edit's field value replaced."""
        ordered = sorted(edits, key=lambda edit: edit.field.start, reverse=True)
        text = self.text
        previous_start = None
        for edit in ordered:
            if previous_start is not None and edit.field.end > previous_start:
                raise ValueError(f"Overlapping edits at line {edit.field.line}")
            if '"' in edit.value or "\n" in edit.value:
                raise ValueError(f"Refusing to write {edit.value!r} into a quoted field")
            text = text[: edit.field.start] + edit.value + text[edit.field.end :]
            previous_start = edit.field.start
        return FormulaDocument(text)
