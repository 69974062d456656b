"""
Direct Search

Filesystem-based retrieval with no embeddings: literal or regex search over
file contents, file lookup by name, tree listing and bounded file reads.

Unreadable files are skipped and counted, never raised. An empty result is
a successful search.
"""

import asyncio
import fnmatch
import os
import re
from dataclasses import dataclass, field, replace
from pathlib import Path

import structlog

from .files import SOURCE_EXTENSIONS, is_binary_file
from .models import CodeUnit, RetrievalMethod, RetrievalResult, ScoredUnit, UnitKind
from .tokenizer import Tokenizer

logger = structlog.get_logger(__name__)

DEFAULT_EXCLUDE_PATTERNS = ["*.min.js", "*.bundle.js", "*.map", "*.lock"]
DEFAULT_EXCLUDE_DIRECTORIES = ["node_modules", "bin", "obj", ".git", ".vs"]

KEYWORD_PATTERN = re.compile(r"\b[A-Za-z_][A-Za-z0-9_]*\b")
DECLARATION_PATTERN = re.compile(r"\b(class|interface|def|function|public|struct|enum|trait)\b")

MAX_TREE_ENTRIES = 100
MAX_TREE_CHILDREN = 20


def extract_keywords(query: str, limit: int = 20) -> list[str]:
    """Distinct identifiers longer than two characters, first occurrence order."""
    seen: set[str] = set()
    keywords: list[str] = []
    for word in KEYWORD_PATTERN.findall(query):
        lowered = word.lower()
        if len(word) <= 2 or lowered in seen:
            continue
        seen.add(lowered)
        keywords.append(word)
        if len(keywords) >= limit:
            break
    return keywords


def format_line(number: int, line: str) -> str:
    """Numbered line for display in search output."""
    return f"{number:5d}→{line}"


@dataclass
class DirectSearchOptions:
    """Filters and limits for direct search."""

    is_regex: bool = False
    case_sensitive: bool = False
    file_extensions: list[str] = field(default_factory=list)  # empty = all
    exclude_file_patterns: list[str] = field(
        default_factory=lambda: list(DEFAULT_EXCLUDE_PATTERNS)
    )
    include_directories: list[str] = field(default_factory=list)  # empty = all
    exclude_directories: list[str] = field(
        default_factory=lambda: list(DEFAULT_EXCLUDE_DIRECTORIES)
    )
    max_results: int = 100
    max_file_size_kb: int = 500
    context_lines: int = 2
    include_binary: bool = False
    include_hidden: bool = False


@dataclass
class SearchMatch:
    """One matching line with its symmetric context window."""

    file_path: str
    line_number: int
    line: str
    context_before: list[str] = field(default_factory=list)
    context_after: list[str] = field(default_factory=list)

    @property
    def window_start(self) -> int:
        return self.line_number - len(self.context_before)

    @property
    def window_end(self) -> int:
        return self.line_number + len(self.context_after)

    def formatted(self) -> str:
        lines = self.context_before + [self.line] + self.context_after
        return "\n".join(
            format_line(self.window_start + i, text) for i, text in enumerate(lines)
        )


@dataclass
class DirectSearchResult:
    """Outcome of a content search."""

    pattern: str
    matches: list[SearchMatch] = field(default_factory=list)
    files_searched: int = 0
    files_skipped: int = 0
    truncated: bool = False
    truncation_reason: str | None = None


@dataclass
class FindFilesResult:
    """Files whose names match a wildcard pattern, newest first."""

    pattern: str
    paths: list[str] = field(default_factory=list)
    truncated: bool = False
    truncation_reason: str | None = None


@dataclass
class TreeEntry:
    name: str
    path: str
    is_directory: bool
    children: list["TreeEntry"] = field(default_factory=list)


@dataclass
class TreeListing:
    """Directory structure down to a fixed depth."""

    root: str
    entries: list[TreeEntry] = field(default_factory=list)
    truncated: bool = False
    truncation_reason: str | None = None

    def render(self) -> str:
        out: list[str] = []

        def walk(entries: list[TreeEntry], depth: int) -> None:
            for entry in entries:
                suffix = "/" if entry.is_directory else ""
                out.append(f"{'  ' * depth}{entry.name}{suffix}")
                walk(entry.children, depth + 1)

        walk(self.entries, 0)
        return "\n".join(out)


@dataclass
class FileReadResult:
    """A bounded slice of one file."""

    file_path: str
    exists: bool
    content: str = ""
    start_line: int = 0
    end_line: int = 0
    total_lines: int = 0
    truncated: bool = False
    truncation_reason: str | None = None


class DirectSearch:
    """Text and pattern search over a repository checkout."""

    def __init__(self, tokenizer: Tokenizer | None = None, max_unit_tokens: int = 400):
        self.tokenizer = tokenizer or Tokenizer()
        self.max_unit_tokens = max_unit_tokens

    # ------------------------------------------------------------------
    # Content search
    # ------------------------------------------------------------------

    def search(
        self,
        repository_path: str,
        pattern: str,
        options: DirectSearchOptions | None = None,
    ) -> DirectSearchResult:
        """
        Search file contents for a literal string or regular expression.

        Args:
            repository_path: Root of the repository checkout
            pattern: Literal text, or a regex when ``options.is_regex``
            options: Filters and limits

        Returns:
            DirectSearchResult; truncated when max_results was reached

        Raises:
            ValueError: if ``pattern`` is not a valid regular expression
        """
        options = options or DirectSearchOptions()
        flags = 0 if options.case_sensitive else re.IGNORECASE
        try:
            compiled = re.compile(pattern if options.is_regex else re.escape(pattern), flags)
        except re.error as e:
            raise ValueError(f"Invalid search pattern {pattern!r}: {e}") from e

        result = DirectSearchResult(pattern=pattern)
        root = Path(repository_path)

        for file_path in self._iter_files(root, options):
            relative = file_path.relative_to(root).as_posix()
            try:
                if not options.include_binary and is_binary_file(file_path):
                    continue
                lines = file_path.read_text(encoding="utf-8", errors="replace").splitlines()
            except OSError as e:
                result.files_skipped += 1
                logger.debug("Skipping unreadable file", file=relative, error=str(e))
                continue

            result.files_searched += 1
            for index, line in enumerate(lines):
                if not compiled.search(line):
                    continue
                before = max(index - options.context_lines, 0)
                after = min(index + options.context_lines + 1, len(lines))
                result.matches.append(
                    SearchMatch(
                        file_path=relative,
                        line_number=index + 1,
                        line=line,
                        context_before=lines[before:index],
                        context_after=lines[index + 1 : after],
                    )
                )
                if len(result.matches) >= options.max_results:
                    result.truncated = True
                    result.truncation_reason = (
                        f"Reached maximum results limit of {options.max_results}"
                    )
                    return result

        return result

    async def retrieve(
        self,
        repository_path: str,
        query: str,
        k: int,
        options: DirectSearchOptions | None = None,
    ) -> RetrievalResult:
        """Keyword search turned into scored code units, best ``k`` first."""
        return await asyncio.to_thread(self._retrieve, repository_path, query, k, options)

    def _retrieve(
        self,
        repository_path: str,
        query: str,
        k: int,
        options: DirectSearchOptions | None,
    ) -> RetrievalResult:
        keywords = extract_keywords(query)
        if not keywords:
            return RetrievalResult(query=query, method=RetrievalMethod.DIRECT)

        options = replace(options or DirectSearchOptions(), is_regex=True)
        pattern = r"\b(?:" + "|".join(re.escape(word) for word in keywords) + r")\b"
        found = self.search(repository_path, pattern, options)

        # Merge overlapping windows within each file
        windows: dict[str, list[list[int]]] = {}
        texts: dict[tuple[str, int], str] = {}
        for match in found.matches:
            for offset, text in enumerate(
                match.context_before + [match.line] + match.context_after
            ):
                texts[(match.file_path, match.window_start + offset)] = text
            spans = windows.setdefault(match.file_path, [])
            if spans and match.window_start <= spans[-1][1] + 1:
                spans[-1][1] = max(spans[-1][1], match.window_end)
            else:
                spans.append([match.window_start, match.window_end])

        items: list[ScoredUnit] = []
        for file_path, spans in windows.items():
            for start, end in spans:
                content = "\n".join(texts.get((file_path, n), "") for n in range(start, end + 1))
                if self.tokenizer.count(content) > self.max_unit_tokens:
                    content = self.tokenizer.truncate(content, self.max_unit_tokens)
                    end = start + content.count("\n")
                score = self.relevance_score(file_path, content, keywords)
                unit = CodeUnit(
                    file_path=file_path,
                    start_line=start,
                    end_line=end,
                    kind=UnitKind.MATCH,
                    content=content,
                    token_count=self.tokenizer.count(content),
                    relevance_score=score,
                )
                items.append(ScoredUnit(unit=unit, score=score, method=RetrievalMethod.DIRECT))

        result = RetrievalResult(
            query=query,
            items=items,
            method=RetrievalMethod.DIRECT,
            truncated=found.truncated,
            truncation_reason=found.truncation_reason,
        )
        if len(result.items) > k:
            result.items = result.items[:k]
            result.truncated = True
            result.truncation_reason = result.truncation_reason or f"Kept top {k} matches"
        return result

    @staticmethod
    def relevance_score(file_path: str, content: str, keywords: list[str]) -> float:
        """Keyword coverage, boosted for source files and declarations, capped at 1.0."""
        if not keywords:
            return 0.0
        lowered = content.lower()
        score = sum(1 for k in keywords if k.lower() in lowered) / len(keywords)
        if Path(file_path).suffix.lower() in SOURCE_EXTENSIONS:
            score *= 1.2
        if DECLARATION_PATTERN.search(content):
            score *= 1.3
        return min(score, 1.0)

    # ------------------------------------------------------------------
    # Files and structure
    # ------------------------------------------------------------------

    def find_files(
        self,
        repository_path: str,
        name_pattern: str,
        options: DirectSearchOptions | None = None,
    ) -> FindFilesResult:
        """Files whose name matches a wildcard pattern, most recently modified first."""
        options = options or DirectSearchOptions()
        matcher = re.compile(
            fnmatch.translate(name_pattern), 0 if options.case_sensitive else re.IGNORECASE
        )
        root = Path(repository_path)
        found: list[tuple[float, str]] = []
        for file_path in self._iter_files(root, options):
            if not matcher.match(file_path.name):
                continue
            try:
                modified = file_path.stat().st_mtime
            except OSError:
                continue
            found.append((modified, file_path.relative_to(root).as_posix()))

        found.sort(key=lambda item: (-item[0], item[1]))
        result = FindFilesResult(pattern=name_pattern, paths=[p for _, p in found])
        if len(result.paths) > options.max_results:
            result.paths = result.paths[: options.max_results]
            result.truncated = True
            result.truncation_reason = f"Reached maximum results limit of {options.max_results}"
        return result

    def list_files(
        self, repository_path: str, options: DirectSearchOptions | None = None
    ) -> list[str]:
        """Repository-relative paths of every searchable file, in walk order."""
        root = Path(repository_path)
        if not root.is_dir():
            return []
        options = options or DirectSearchOptions()
        paths: list[str] = []
        for file_path in self._iter_files(root, options):
            relative = file_path.relative_to(root).as_posix()
            try:
                if not options.include_binary and is_binary_file(file_path):
                    continue
            except OSError as e:
                logger.debug("Skipping unreadable file", file=relative, error=str(e))
                continue
            paths.append(relative)
        return paths

    def list_tree(
        self,
        repository_path: str,
        root: str | None = None,
        depth: int = 3,
        options: DirectSearchOptions | None = None,
    ) -> TreeListing:
        """Directory structure under ``root`` down to ``depth`` levels."""
        options = options or DirectSearchOptions()
        base = Path(repository_path)
        start = base / root if root else base
        listing = TreeListing(root=root or ".")
        if not start.is_dir():
            listing.truncated = True
            listing.truncation_reason = "Directory not found"
            return listing

        def visible(entry: Path) -> bool:
            if not options.include_hidden and entry.name.startswith("."):
                return False
            if entry.is_dir():
                return entry.name not in options.exclude_directories
            return not any(
                fnmatch.fnmatch(entry.name, p) for p in options.exclude_file_patterns
            )

        def children_of(directory: Path, level: int) -> list[TreeEntry]:
            try:
                entries = sorted(
                    (e for e in directory.iterdir() if visible(e)),
                    key=lambda e: (not e.is_dir(), e.name.lower()),
                )
            except OSError:
                return []
            limit = MAX_TREE_ENTRIES if level == 0 else MAX_TREE_CHILDREN
            if len(entries) > limit:
                if not listing.truncated:
                    listing.truncated = True
                    listing.truncation_reason = (
                        "Too many files/directories to display"
                        if level == 0
                        else f"Directory {directory.relative_to(base).as_posix()} "
                        f"has more than {MAX_TREE_CHILDREN} entries"
                    )
                entries = entries[:limit]
            nodes = []
            for entry in entries:
                node = TreeEntry(
                    name=entry.name,
                    path=entry.relative_to(base).as_posix(),
                    is_directory=entry.is_dir(),
                )
                if node.is_directory and level + 1 < depth:
                    node.children = children_of(entry, level + 1)
                nodes.append(node)
            return nodes

        listing.entries = children_of(start, 0)
        return listing

    def read_file(
        self,
        repository_path: str,
        file_path: str,
        start_line: int | None = None,
        end_line: int | None = None,
        max_file_size_kb: int = 500,
    ) -> FileReadResult:
        """Read a file, or a 1-based inclusive line range of it."""
        base = Path(repository_path).resolve()
        target = (base / file_path).resolve()
        result = FileReadResult(file_path=file_path, exists=False)
        if not target.is_relative_to(base) or not target.is_file():
            result.truncated = True
            result.truncation_reason = "File not found"
            return result

        try:
            size = target.stat().st_size
            lines = target.read_text(encoding="utf-8", errors="replace").splitlines()
        except OSError as e:
            result.truncated = True
            result.truncation_reason = f"File could not be read: {e}"
            return result

        result.exists = True
        result.total_lines = len(lines)
        first = max(start_line or 1, 1)
        last = min(end_line or len(lines), len(lines))
        if first > len(lines):
            result.truncated = True
            result.truncation_reason = "Start line exceeds file length"
            return result

        if size > max_file_size_kb * 1024 and end_line is None:
            # Cap whole-file reads of large files at the size limit
            budget = max_file_size_kb * 1024
            kept = 0
            for index in range(first - 1, last):
                kept += len(lines[index]) + 1
                if kept > budget:
                    last = max(index, first)
                    break
            result.truncated = True
            result.truncation_reason = f"File exceeds {max_file_size_kb} KB limit"

        result.start_line = first
        result.end_line = last
        result.content = "\n".join(lines[first - 1 : last])
        return result

    def nearby_context(
        self, repository_path: str, file_path: str, line: int, radius: int = 10
    ) -> FileReadResult:
        """Lines around ``line`` within ``radius`` on each side."""
        return self.read_file(
            repository_path, file_path, max(line - radius, 1), line + radius
        )

    # ------------------------------------------------------------------
    # Walking
    # ------------------------------------------------------------------

    def _iter_files(self, root: Path, options: DirectSearchOptions):
        """Yield candidate files in deterministic order, honoring all filters."""
        extensions = {e.lower() if e.startswith(".") else f".{e.lower()}" for e in options.file_extensions}
        includes = [d.strip("/").replace("\\", "/") for d in options.include_directories]
        size_limit = options.max_file_size_kb * 1024

        for current, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(
                d
                for d in dirnames
                if d not in options.exclude_directories
                and (options.include_hidden or not d.startswith("."))
            )
            current_path = Path(current)
            relative_dir = current_path.relative_to(root).as_posix()
            for name in sorted(filenames):
                if not options.include_hidden and name.startswith("."):
                    continue
                if extensions and Path(name).suffix.lower() not in extensions:
                    continue
                if any(fnmatch.fnmatch(name, p) for p in options.exclude_file_patterns):
                    continue
                if includes:
                    relative = name if relative_dir == "." else f"{relative_dir}/{name}"
                    if not any(relative.startswith(d + "/") for d in includes):
                        continue
                file_path = current_path / name
                try:
                    if file_path.stat().st_size > size_limit:
                        continue
                except OSError:
                    continue
                yield file_path
