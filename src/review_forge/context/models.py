"""
Data models for context retrieval.

Defines the units of retrieval and budgeting shared by the chunker, the
dependency linker, both search methods and the strategy router.
"""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union

# Closed value union for metadata maps
MetadataValue = Union[str, int, float, bool, list[str]]
Metadata = dict[str, MetadataValue]


class UnitKind(str, Enum):
    """Syntactic kind of a code unit."""

    IMPORTS = "imports"
    CLASS = "class"
    INTERFACE = "interface"
    ENUM = "enum"
    FUNCTION = "function"
    METHOD = "method"
    BLOCK = "block"  # module-level statements between declarations
    WINDOW = "window"  # fixed-size line window (fallback)
    MATCH = "match"  # direct search match window


class RetrievalMethod(str, Enum):
    """Which search method produced a result."""

    VECTOR = "vector"
    DIRECT = "direct"
    HYBRID = "hybrid"


def make_unit_id(file_path: str, start_line: int, end_line: int, content: str) -> str:
    """Stable id for a unit: same path, range and content give the same id."""
    digest = hashlib.sha256()
    digest.update(file_path.encode("utf-8"))
    digest.update(f":{start_line}-{end_line}:".encode("utf-8"))
    digest.update(content.encode("utf-8"))
    return digest.hexdigest()[:32]


@dataclass
class CodeUnit:
    """A contiguous, addressable piece of one file."""

    file_path: str
    start_line: int
    end_line: int
    kind: UnitKind
    content: str
    token_count: int
    relevance_score: float = 0.0
    symbol: str | None = None  # declared name, e.g. "Parser.parse"
    parent_id: str | None = None
    dependency_ids: list[str] = field(default_factory=list)
    language: str | None = None
    id: str = ""

    def __post_init__(self) -> None:
        if self.end_line < self.start_line:
            raise ValueError(
                f"end_line {self.end_line} precedes start_line {self.start_line} "
                f"in {self.file_path}"
            )
        if not self.id:
            self.id = make_unit_id(
                self.file_path, self.start_line, self.end_line, self.content
            )

    @property
    def line_count(self) -> int:
        return self.end_line - self.start_line + 1

    @property
    def location(self) -> str:
        return f"{self.file_path}:{self.start_line}-{self.end_line}"

    def overlaps(self, other: "CodeUnit") -> bool:
        """True when both units are in the same file with intersecting lines."""
        return (
            self.file_path == other.file_path
            and self.start_line <= other.end_line
            and other.start_line <= self.end_line
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "filePath": self.file_path,
            "startLine": self.start_line,
            "endLine": self.end_line,
            "kind": self.kind.value,
            "tokenCount": self.token_count,
            "relevanceScore": round(self.relevance_score, 4),
            "symbol": self.symbol,
        }


def ranking_key(unit: CodeUnit, score: float) -> tuple[float, str, int]:
    """Score descending, then file path, then start line."""
    return (-score, unit.file_path, unit.start_line)


@dataclass
class UnitEmbedding:
    """Vector representation of an indexed CodeUnit."""

    id: str
    repository_path: str
    unit: CodeUnit
    vector: list[float]
    indexed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: Metadata = field(default_factory=dict)


@dataclass
class ScoredUnit:
    """A unit with the score assigned by the method that found it."""

    unit: CodeUnit
    score: float
    method: RetrievalMethod


@dataclass
class RetrievalResult:
    """Output of one search method, kept in deterministic ranked order."""

    query: str
    items: list[ScoredUnit] = field(default_factory=list)
    method: RetrievalMethod = RetrievalMethod.DIRECT
    truncated: bool = False
    truncation_reason: str | None = None

    def __post_init__(self) -> None:
        self.items.sort(key=lambda item: ranking_key(item.unit, item.score))

    @property
    def min_score(self) -> float:
        return min((i.score for i in self.items), default=0.0)

    @property
    def max_score(self) -> float:
        return max((i.score for i in self.items), default=0.0)

    @property
    def units(self) -> list[CodeUnit]:
        return [i.unit for i in self.items]

    def __len__(self) -> int:
        return len(self.items)


@dataclass
class FileContext:
    """A whole file selected into a context bundle."""

    path: str
    content: str
    token_count: int
    relevance_score: float = 0.0


@dataclass
class ContextBundle:
    """Final assembled context for one analysis.

    ``total_tokens`` never exceeds ``budget``: units that do not fit are
    skipped and the first skip sets ``truncated`` with a reason.
    """

    budget: int
    units: list[CodeUnit] = field(default_factory=list)
    files: list[FileContext] = field(default_factory=list)
    total_tokens: int = 0
    truncated: bool = False
    truncation_reason: str | None = None

    @property
    def remaining(self) -> int:
        return max(self.budget - self.total_tokens, 0)

    def contains(self, unit: CodeUnit) -> bool:
        """True if the unit, an overlapping unit or its whole file is already in."""
        if any(f.path == unit.file_path for f in self.files):
            return True
        return any(u.id == unit.id or u.overlaps(unit) for u in self.units)

    def add_unit(self, unit: CodeUnit) -> bool:
        """Add a unit if it fits; record the first budget skip."""
        if self.contains(unit):
            return False
        if self.total_tokens + unit.token_count > self.budget:
            self.mark_truncated(
                f"Unit {unit.location} ({unit.token_count} tokens) skipped: "
                f"context truncated to stay within {self.budget} token limit"
            )
            return False
        self.units.append(unit)
        self.total_tokens += unit.token_count
        return True

    def add_file(self, file: FileContext) -> bool:
        """
        Add a whole file if it fits; record the first budget skip.

        Units already taken from the same file are replaced by it, so their
        tokens count toward the fit.
        """
        if any(f.path == file.path for f in self.files):
            return False
        covered = [u for u in self.units if u.file_path == file.path]
        freed = sum(u.token_count for u in covered)
        if self.total_tokens - freed + file.token_count > self.budget:
            self.mark_truncated(
                f"File {file.path} ({file.token_count} tokens) skipped: "
                f"context truncated to stay within {self.budget} token limit"
            )
            return False
        if covered:
            self.units = [u for u in self.units if u.file_path != file.path]
        self.files.append(file)
        self.total_tokens += file.token_count - freed
        return True

    def mark_truncated(self, reason: str) -> None:
        """Set the truncated flag; only the first reason is kept."""
        if not self.truncated:
            self.truncated = True
            self.truncation_reason = reason

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "budget": self.budget,
            "totalTokens": self.total_tokens,
            "truncated": self.truncated,
            "truncationReason": self.truncation_reason,
            "units": [u.to_dict() for u in self.units],
            "files": [f.path for f in self.files],
        }
