"""
Code Chunker

Splits a file into semantically bounded code units (classes, functions,
methods) that each fit a per-unit token ceiling. Oversized units are
subdivided; files that cannot be parsed degrade to fixed-size line windows.
"""

import ast
import re
from dataclasses import dataclass

import structlog

from .files import detect_language
from .models import CodeUnit, UnitKind
from .tokenizer import Tokenizer

logger = structlog.get_logger(__name__)


@dataclass
class _Span:
    """A line range (1-based, inclusive) before token fitting."""

    start: int
    end: int
    kind: UnitKind
    symbol: str | None = None
    parent: int | None = None  # index of the enclosing span


class Chunker:
    """Split file content into CodeUnits under a token ceiling."""

    # Declaration boundary patterns for languages without a bundled parser.
    # Each pattern captures the declared name as ``name``.
    BOUNDARY_PATTERNS: dict[str, list[tuple[re.Pattern[str], UnitKind]]] = {
        "javascript": [
            (re.compile(r"^\s*(export\s+)?(default\s+)?class\s+(?P<name>\w+)"), UnitKind.CLASS),
            (re.compile(r"^\s*(export\s+)?(async\s+)?function\s*\*?\s*(?P<name>\w+)"), UnitKind.FUNCTION),
            (re.compile(r"^\s*(export\s+)?(const|let|var)\s+(?P<name>\w+)\s*=\s*(async\s+)?(\(|function)"), UnitKind.FUNCTION),
        ],
        "typescript": [
            (re.compile(r"^\s*(export\s+)?(default\s+)?(abstract\s+)?class\s+(?P<name>\w+)"), UnitKind.CLASS),
            (re.compile(r"^\s*(export\s+)?interface\s+(?P<name>\w+)"), UnitKind.INTERFACE),
            (re.compile(r"^\s*(export\s+)?(const\s+)?enum\s+(?P<name>\w+)"), UnitKind.ENUM),
            (re.compile(r"^\s*(export\s+)?(async\s+)?function\s*\*?\s*(?P<name>\w+)"), UnitKind.FUNCTION),
            (re.compile(r"^\s*(export\s+)?(const|let|var)\s+(?P<name>\w+)\s*=\s*(async\s+)?(\(|function)"), UnitKind.FUNCTION),
        ],
        "go": [
            (re.compile(r"^\s*type\s+(?P<name>\w+)\s+interface\b"), UnitKind.INTERFACE),
            (re.compile(r"^\s*type\s+(?P<name>\w+)\s+struct\b"), UnitKind.CLASS),
            (re.compile(r"^\s*func\s+(\([^)]*\)\s*)?(?P<name>\w+)"), UnitKind.FUNCTION),
        ],
        "rust": [
            (re.compile(r"^\s*(pub(\([^)]*\))?\s+)?trait\s+(?P<name>\w+)"), UnitKind.INTERFACE),
            (re.compile(r"^\s*(pub(\([^)]*\))?\s+)?enum\s+(?P<name>\w+)"), UnitKind.ENUM),
            (re.compile(r"^\s*(pub(\([^)]*\))?\s+)?struct\s+(?P<name>\w+)"), UnitKind.CLASS),
            (re.compile(r"^\s*impl(<[^>]*>)?\s+(\w+\s+for\s+)?(?P<name>\w+)"), UnitKind.CLASS),
            (re.compile(r"^\s*(pub(\([^)]*\))?\s+)?(async\s+)?fn\s+(?P<name>\w+)"), UnitKind.FUNCTION),
        ],
        "java": [
            (re.compile(r"^\s*((public|private|protected|abstract|final|static)\s+)*interface\s+(?P<name>\w+)"), UnitKind.INTERFACE),
            (re.compile(r"^\s*((public|private|protected|abstract|final|static)\s+)*enum\s+(?P<name>\w+)"), UnitKind.ENUM),
            (re.compile(r"^\s*((public|private|protected|abstract|final|static)\s+)*class\s+(?P<name>\w+)"), UnitKind.CLASS),
            (re.compile(r"^\s*((public|private|protected|static|final|synchronized|abstract)\s+)+[\w<>\[\], ]+\s+(?P<name>\w+)\s*\("), UnitKind.METHOD),
        ],
        "csharp": [
            (re.compile(r"^\s*((public|private|protected|internal|static|partial)\s+)*interface\s+(?P<name>\w+)"), UnitKind.INTERFACE),
            (re.compile(r"^\s*((public|private|protected|internal)\s+)*enum\s+(?P<name>\w+)"), UnitKind.ENUM),
            (re.compile(r"^\s*((public|private|protected|internal|static|abstract|sealed|partial)\s+)*(class|record|struct)\s+(?P<name>\w+)"), UnitKind.CLASS),
            (re.compile(r"^\s*((public|private|protected|internal|static|virtual|override|async|abstract|sealed)\s+)+[\w<>\[\],? ]+\s+(?P<name>\w+)\s*\("), UnitKind.METHOD),
        ],
    }

    PREAMBLE_IMPORT = re.compile(r"^\s*(import|from|using|#include|package|use)\b")

    def __init__(
        self,
        tokenizer: Tokenizer | None = None,
        max_unit_tokens: int = 400,
        window_lines: int = 50,
    ):
        """
        Initialize chunker.

        Args:
            tokenizer: Token counter used for the ceiling
            max_unit_tokens: Per-unit token ceiling
            window_lines: Line count for fallback windows
        """
        if max_unit_tokens < 1:
            raise ValueError("max_unit_tokens must be at least 1")
        if window_lines < 1:
            raise ValueError("window_lines must be at least 1")
        self.tokenizer = tokenizer or Tokenizer()
        self.max_unit_tokens = max_unit_tokens
        self.window_lines = window_lines

    def chunk(self, file_path: str, text: str) -> list[CodeUnit]:
        """
        Split one file into code units.

        Strategy:
        1. Python: split on ast declarations
        2. Other known languages: split on declaration boundary patterns
        3. Otherwise (or on parse failure): fixed-size line windows
        Every unit is then fitted under the token ceiling.
        """
        if not text.strip():
            return []

        lines = text.splitlines()
        language = detect_language(file_path)

        spans: list[_Span] | None = None
        if language == "python":
            spans = self._python_spans(text, lines)
        elif language in self.BOUNDARY_PATTERNS:
            spans = self._pattern_spans(language, lines)

        if not spans:
            if language == "python":
                logger.debug("Falling back to line windows", file=file_path)
            spans = self._window_spans(len(lines))

        units: list[CodeUnit] = []
        first_unit_of_span: dict[int, str] = {}
        for index, span in enumerate(spans):
            parent_id = first_unit_of_span.get(span.parent) if span.parent is not None else None
            fitted = self._fit(file_path, language, lines, span, parent_id)
            if fitted:
                first_unit_of_span[index] = fitted[0].id
            units.extend(fitted)
        return units

    # ------------------------------------------------------------------
    # Span discovery
    # ------------------------------------------------------------------

    def _python_spans(self, text: str, lines: list[str]) -> list[_Span] | None:
        """Spans from the Python ast; None when the source does not parse."""
        try:
            tree = ast.parse(text)
        except (SyntaxError, ValueError):
            return None

        spans: list[_Span] = []
        self._python_body(tree.body, 1, len(lines), None, None, lines, spans)
        return spans

    def _python_body(
        self,
        nodes: list[ast.stmt],
        region_start: int,
        region_end: int,
        parent: int | None,
        owner: str | None,
        lines: list[str],
        spans: list[_Span],
    ) -> None:
        """Turn a statement list into spans, attaching gap lines to the next span."""
        cursor = region_start
        for position, node in enumerate(nodes):
            kind = self._python_kind(node, owner)
            node_start = min(
                [node.lineno] + [d.lineno for d in getattr(node, "decorator_list", [])]
            )
            start = min(cursor, node_start)
            end = node.end_lineno or node.lineno
            if position == len(nodes) - 1:
                end = max(end, region_end)
            symbol = getattr(node, "name", None)
            if symbol and owner:
                symbol = f"{owner}.{symbol}"

            previous = spans[-1] if spans else None
            mergeable = kind in (UnitKind.IMPORTS, UnitKind.BLOCK)
            if (
                mergeable
                and previous is not None
                and previous.kind == kind
                and previous.parent == parent
                and previous.end >= start - 1
            ):
                previous.end = end
            elif isinstance(node, ast.ClassDef) and self._too_big(lines, start, end):
                self._python_class(node, start, end, parent, symbol, lines, spans)
            else:
                spans.append(_Span(start, end, kind, symbol, parent))
            cursor = end + 1

    def _python_class(
        self,
        node: ast.ClassDef,
        start: int,
        end: int,
        parent: int | None,
        symbol: str | None,
        lines: list[str],
        spans: list[_Span],
    ) -> None:
        """Split an oversized class into a header span plus member spans."""
        members = [
            n for n in node.body
            if isinstance(n, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef))
        ]
        if not members:
            spans.append(_Span(start, end, UnitKind.CLASS, symbol, parent))
            return

        first_member = members[0]
        member_start = min(
            [first_member.lineno]
            + [d.lineno for d in getattr(first_member, "decorator_list", [])]
        )
        header_end = max(member_start - 1, start)
        spans.append(_Span(start, header_end, UnitKind.CLASS, symbol, parent))
        header_index = len(spans) - 1

        body = [n for n in node.body if (n.end_lineno or n.lineno) > header_end]
        self._python_body(body, header_end + 1, end, header_index, symbol, lines, spans)

    @staticmethod
    def _python_kind(node: ast.stmt, owner: str | None) -> UnitKind:
        if isinstance(node, (ast.Import, ast.ImportFrom)):
            return UnitKind.IMPORTS
        if isinstance(node, ast.ClassDef):
            return UnitKind.CLASS
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
            return UnitKind.METHOD if owner else UnitKind.FUNCTION
        return UnitKind.BLOCK

    def _pattern_spans(self, language: str, lines: list[str]) -> list[_Span] | None:
        """Spans from declaration boundary lines; None when nothing matches."""
        patterns = self.BOUNDARY_PATTERNS[language]
        boundaries: list[tuple[int, UnitKind, str | None, int]] = []

        for number, line in enumerate(lines, start=1):
            for pattern, kind in patterns:
                match = pattern.match(line)
                if match:
                    indent = len(line) - len(line.lstrip())
                    boundaries.append((number, kind, match.group("name"), indent))
                    break

        if not boundaries:
            return None

        spans: list[_Span] = []
        first_line = boundaries[0][0]
        if first_line > 1:
            preamble = lines[: first_line - 1]
            kind = (
                UnitKind.IMPORTS
                if any(self.PREAMBLE_IMPORT.match(line) for line in preamble)
                else UnitKind.BLOCK
            )
            spans.append(_Span(1, first_line - 1, kind))

        # Containers still open, as (indent, span index, name)
        containers: list[tuple[int, int, str | None]] = []
        container_kinds = (UnitKind.CLASS, UnitKind.INTERFACE, UnitKind.ENUM)

        for position, (number, kind, name, indent) in enumerate(boundaries):
            end = boundaries[position + 1][0] - 1 if position + 1 < len(boundaries) else len(lines)
            while containers and containers[-1][0] >= indent:
                containers.pop()
            parent = containers[-1][1] if containers else None
            if parent is not None and kind == UnitKind.FUNCTION:
                kind = UnitKind.METHOD
            owner = containers[-1][2] if containers else None
            symbol = f"{owner}.{name}" if owner and name else name
            spans.append(_Span(number, end, kind, symbol, parent))
            if kind in container_kinds:
                containers.append((indent, len(spans) - 1, name))

        return spans

    def _window_spans(self, line_count: int) -> list[_Span]:
        """Fixed-size line windows covering the file."""
        return [
            _Span(start, min(start + self.window_lines - 1, line_count), UnitKind.WINDOW)
            for start in range(1, line_count + 1, self.window_lines)
        ]

    # ------------------------------------------------------------------
    # Token fitting
    # ------------------------------------------------------------------

    def _too_big(self, lines: list[str], start: int, end: int) -> bool:
        text = "\n".join(lines[start - 1 : end])
        return self.tokenizer.count(text) > self.max_unit_tokens

    def _fit(
        self,
        file_path: str,
        language: str | None,
        lines: list[str],
        span: _Span,
        parent_id: str | None,
    ) -> list[CodeUnit]:
        """Build units for a span, subdividing until every unit fits the ceiling."""
        start, end = span.start, span.end
        # Drop leading and trailing blank lines
        while start < end and not lines[start - 1].strip():
            start += 1
        while end > start and not lines[end - 1].strip():
            end -= 1
        if not lines[start - 1 : end] or not any(l.strip() for l in lines[start - 1 : end]):
            return []

        pieces: list[tuple[int, int, str]] = []
        if end - start + 1 > self.window_lines and self._too_big(lines, start, end):
            for window_start in range(start, end + 1, self.window_lines):
                window_end = min(window_start + self.window_lines - 1, end)
                pieces.extend(self._split_range(lines, window_start, window_end))
        else:
            pieces.extend(self._split_range(lines, start, end))

        units: list[CodeUnit] = []
        for piece_start, piece_end, content in pieces:
            if not content.strip():
                continue
            units.append(
                CodeUnit(
                    file_path=file_path,
                    start_line=piece_start,
                    end_line=piece_end,
                    kind=span.kind,
                    content=content,
                    token_count=self.tokenizer.count(content),
                    symbol=span.symbol,
                    parent_id=parent_id,
                    language=language,
                )
            )
        return units

    def _split_range(self, lines: list[str], start: int, end: int) -> list[tuple[int, int, str]]:
        """Halve a line range until each part fits; split single long lines by tokens."""
        content = "\n".join(lines[start - 1 : end])
        if self.tokenizer.count(content) <= self.max_unit_tokens:
            return [(start, end, content)]
        if start == end:
            return [(start, end, piece) for piece in self._split_text(content)]
        middle = (start + end) // 2
        return self._split_range(lines, start, middle) + self._split_range(lines, middle + 1, end)

    def _split_text(self, text: str) -> list[str]:
        """Split one line into token-bounded pieces."""
        if self.tokenizer.count(text) <= self.max_unit_tokens:
            return [text] if text.strip() else []
        piece = self.tokenizer.truncate(text, self.max_unit_tokens)
        if (
            piece.strip()
            and text.startswith(piece)
            and self.tokenizer.count(piece) <= self.max_unit_tokens
        ):
            return [piece] + self._split_text(text[len(piece) :])
        middle = len(text) // 2
        return self._split_text(text[:middle]) + self._split_text(text[middle:])
