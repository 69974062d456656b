"""
Dependency Linker

Builds a reference graph between code units and expands a set of seed units
(the ones touched by a diff) into a budgeted context bundle.
"""

import re
from collections import Counter, defaultdict
from collections.abc import Iterable
from pathlib import PurePosixPath

import structlog

from .models import CodeUnit, ContextBundle, ranking_key

logger = structlog.get_logger(__name__)


class DependencyLinker:
    """Reference graph over code units from one or more files.

    Edges:
    - same-file sequential neighbours
    - parent/child nesting (class header to members)
    - import/using/include/require statements resolved to indexed files
    - identifier references matched to symbols declared in other files
    """

    IMPORT_PATTERNS = [
        re.compile(r"^\s*from\s+(?P<module>[\w.]+)\s+import\b", re.MULTILINE),
        re.compile(r"""^\s*import\s+(?:type\s+)?(?:[\w*{}\s,]+\s+from\s+)?['"](?P<module>[^'"]+)['"]""", re.MULTILINE),
        re.compile(r"^\s*import\s+(?:static\s+)?(?P<module>[\w.]+)", re.MULTILINE),
        re.compile(r"""require\(\s*['"](?P<module>[^'"]+)['"]\s*\)"""),
        re.compile(r"^\s*using\s+(?:static\s+)?(?P<module>[\w.]+)\s*;", re.MULTILINE),
        re.compile(r'^\s*#include\s+["<](?P<module>[^">]+)[">]', re.MULTILINE),
    ]
    IDENTIFIER = re.compile(r"\b[A-Za-z_][A-Za-z0-9_]*\b")

    # Names too common to carry a cross-file signal
    STOP_WORDS = frozenset(
        {
            "and", "not", "for", "the", "def", "class", "self", "return", "import",
            "from", "None", "True", "False", "async", "await", "with", "while",
            "elif", "else", "try", "except", "finally", "raise", "pass", "lambda",
            "yield", "global", "public", "private", "protected", "static", "void",
            "new", "this", "var", "let", "const", "function", "string", "int",
            "bool", "using", "namespace", "package", "func", "struct", "impl",
            "init", "main", "get", "set", "value", "name", "data", "result",
        }
    )

    # A symbol declared by more units than this is ambiguous and not linked
    MAX_DECLARATIONS = 5

    def __init__(self) -> None:
        self._units: dict[str, CodeUnit] = {}
        self._by_file: dict[str, list[CodeUnit]] = defaultdict(list)
        self._symbols: dict[str, set[str]] = defaultdict(set)
        self._edges: dict[str, set[str]] = defaultdict(set)

    def __len__(self) -> int:
        return len(self._units)

    def get(self, unit_id: str) -> CodeUnit | None:
        return self._units.get(unit_id)

    def units_for_file(self, file_path: str) -> list[CodeUnit]:
        return list(self._by_file.get(file_path, []))

    def has_file(self, file_path: str) -> bool:
        return file_path in self._by_file

    def add_units(self, units: Iterable[CodeUnit]) -> None:
        """Register units and the symbols they declare."""
        for unit in units:
            if unit.id in self._units:
                continue
            self._units[unit.id] = unit
            self._by_file[unit.file_path].append(unit)
            if unit.symbol:
                self._symbols[unit.symbol].add(unit.id)
                self._symbols[unit.symbol.rsplit(".", 1)[-1]].add(unit.id)

    def link(self) -> int:
        """(Re)build all edges. Returns the number of undirected edges."""
        self._edges = defaultdict(set)

        for file_units in self._by_file.values():
            file_units.sort(key=lambda u: (u.start_line, u.end_line))
            for previous, current in zip(file_units, file_units[1:]):
                self._connect(previous.id, current.id)
            for unit in file_units:
                if unit.parent_id and unit.parent_id in self._units:
                    self._connect(unit.parent_id, unit.id)

        for unit in self._units.values():
            targets = self._import_targets(unit) | self._reference_targets(unit)
            unit.dependency_ids = sorted(targets)
            for target in targets:
                self._connect(unit.id, target)

        edge_count = sum(len(v) for v in self._edges.values()) // 2
        logger.debug("Linked code units", units=len(self._units), edges=edge_count)
        return edge_count

    def neighbors(self, unit_id: str) -> list[str]:
        """Ids linked to ``unit_id`` in deterministic order."""
        return sorted(self._edges.get(unit_id, ()))

    def expand(
        self,
        seeds: Iterable[CodeUnit],
        hop_limit: int,
        token_budget: int,
    ) -> ContextBundle:
        """
        Expand seed units breadth-first into a budgeted bundle.

        Tier 0 holds the seeds, tier 1 their direct dependencies, tier 2 the
        next hop and so on up to ``hop_limit``. Within a tier, units are
        ordered by relevance (descending), then file path, then start line.
        Units that do not fit are skipped; the first skip marks the bundle
        truncated with a reason.

        Args:
            seeds: Units touched by the change
            hop_limit: Maximum dependency hops from a seed
            token_budget: Token budget for the returned bundle

        Returns:
            ContextBundle with total_tokens <= token_budget
        """
        bundle = ContextBundle(budget=token_budget)
        tier: dict[str, CodeUnit] = {}
        for seed in seeds:
            tier.setdefault(seed.id, seed)
        visited: set[str] = set(tier)

        hop = 0
        while tier and hop <= hop_limit:
            for unit in sorted(tier.values(), key=lambda u: ranking_key(u, u.relevance_score)):
                bundle.add_unit(unit)

            next_tier: dict[str, CodeUnit] = {}
            for unit_id in tier:
                for neighbor_id in self.neighbors(unit_id):
                    if neighbor_id in visited:
                        continue
                    visited.add(neighbor_id)
                    next_tier[neighbor_id] = self._units[neighbor_id]
            tier = next_tier
            hop += 1

        return bundle

    def find_related_files(self, changed_paths: list[str], limit: int = 10) -> list[str]:
        """Files linked to the first five changed files, most links first."""
        changed = set(changed_paths)
        counts: Counter[str] = Counter()
        for path in changed_paths[:5]:
            for unit in self._by_file.get(path, []):
                for neighbor_id in self._edges.get(unit.id, ()):
                    neighbor_path = self._units[neighbor_id].file_path
                    if neighbor_path not in changed:
                        counts[neighbor_path] += 1
        ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
        return [path for path, _ in ranked[:limit]]

    def _connect(self, a: str, b: str) -> None:
        if a == b:
            return
        self._edges[a].add(b)
        self._edges[b].add(a)

    def _import_targets(self, unit: CodeUnit) -> set[str]:
        """First unit of each indexed file an import statement resolves to."""
        targets: set[str] = set()
        for pattern in self.IMPORT_PATTERNS:
            for match in pattern.finditer(unit.content):
                target_file = self._resolve_module(match.group("module"), unit.file_path)
                if target_file and self._by_file[target_file]:
                    targets.add(self._by_file[target_file][0].id)
        return targets

    def _reference_targets(self, unit: CodeUnit) -> set[str]:
        """Units in other files declaring identifiers this unit mentions."""
        targets: set[str] = set()
        for name in set(self.IDENTIFIER.findall(unit.content)):
            if len(name) <= 2 or name in self.STOP_WORDS:
                continue
            declared = self._symbols.get(name)
            if not declared or len(declared) > self.MAX_DECLARATIONS:
                continue
            for target_id in declared:
                if self._units[target_id].file_path != unit.file_path:
                    targets.add(target_id)
        return targets

    def _resolve_module(self, module: str, importer: str) -> str | None:
        """Map an import string to an indexed file path, if any."""
        if module.startswith("."):
            base = PurePosixPath(importer).parent
            relative = module
            if "/" in module:
                candidate = str(base / module)
            else:
                # Python relative import: leading dots climb packages
                dots = len(relative) - len(relative.lstrip("."))
                for _ in range(dots - 1):
                    base = base.parent
                candidate = str(base / relative.lstrip(".").replace(".", "/"))
            suffix = _normalize(candidate)
        else:
            suffix = module.replace("\\", "/")
            if "/" not in suffix:
                suffix = suffix.replace(".", "/")
            suffix = _normalize(suffix)

        if not suffix:
            return None
        for path in sorted(self._by_file):
            stem = _normalize(str(PurePosixPath(path).with_suffix("")))
            if path == importer:
                continue
            if stem == suffix or stem.endswith("/" + suffix) or stem.endswith(suffix + "/__init__"):
                return path
        return None


def _normalize(path: str) -> str:
    """Collapse ``./`` and ``../`` segments and drop any extension."""
    parts: list[str] = []
    for part in path.replace("\\", "/").split("/"):
        if part in ("", "."):
            continue
        if part == "..":
            if parts:
                parts.pop()
            continue
        parts.append(part)
    if parts and "." in parts[-1]:
        parts[-1] = parts[-1].rsplit(".", 1)[0]
    return "/".join(parts)
