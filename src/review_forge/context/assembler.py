"""
Context Assembler

Turns a change set into a budgeted ContextBundle: units touched by the diff
seed a dependency-graph expansion, and routed retrieval fills the rest.
Files most linked to the change are then taken whole when they fit.
"""

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass

import structlog

from review_forge.policy import QueryPolicy
from review_forge.review.models import ChangeSet

from .chunker import Chunker
from .direct import DirectSearch, extract_keywords
from .linker import DependencyLinker
from .models import CodeUnit, ContextBundle, FileContext
from .router import QueryStrategyRouter, RoutedRetrieval

logger = structlog.get_logger(__name__)


@dataclass
class AssembledContext:
    """The bundle plus how retrieval was served."""

    bundle: ContextBundle
    retrieval: RoutedRetrieval | None
    seed_count: int
    candidate_count: int


class ContextAssembler:
    """Build the context bundle for one review run."""

    # Share of the budget spent on dependency-graph expansion from the diff
    GRAPH_SHARE = 0.6

    def __init__(
        self,
        chunker: Chunker,
        router: QueryStrategyRouter,
        direct: DirectSearch,
        max_related_files: int = 10,
    ):
        self.chunker = chunker
        self.router = router
        self.direct = direct
        self.max_related_files = max_related_files

    async def build(
        self,
        repository_path: str,
        change_set: ChangeSet,
        contents: Mapping[str, str],
        policy: QueryPolicy,
        budget: int,
        hop_limit: int = 2,
    ) -> AssembledContext:
        """
        Assemble context for a change set.

        Args:
            repository_path: Local checkout used for retrieval
            change_set: Files and hunks under review
            contents: New-side content of each changed file
            policy: Query policy for routed retrieval
            budget: Token budget for the bundle
            hop_limit: Dependency hops to follow from diff units

        Returns:
            AssembledContext whose bundle respects ``budget``

        Raises:
            RetrievalError: if routed retrieval fails with no fallback
        """
        linker = DependencyLinker()
        seeds: list[CodeUnit] = []

        for diff in change_set.reviewable_files:
            text = contents.get(diff.path)
            if not text:
                continue
            units = self.chunker.chunk(diff.path, text)
            linker.add_units(units)
            seeds.extend(_touched(units, diff.new_line_ranges(), diff.status == "added"))

        for seed in seeds:
            seed.relevance_score = 1.0

        query = self._build_query(change_set, seeds)
        routed: RoutedRetrieval | None = None
        related_contents: dict[str, str] = {}
        if query:
            routed = await self.router.retrieve(repository_path, query, policy)
            related_contents = await self._register_related(
                repository_path, change_set, routed, linker, policy
            )

        linker.link()
        graph = linker.expand(seeds, hop_limit, int(budget * self.GRAPH_SHARE))

        bundle = ContextBundle(budget=budget)
        for unit in graph.units:
            bundle.add_unit(unit)
        if graph.truncated and graph.truncation_reason:
            bundle.mark_truncated(graph.truncation_reason)

        if routed is not None:
            for item in routed.result.items:
                bundle.add_unit(item.unit)

        related = linker.find_related_files(change_set.paths, self.max_related_files)
        for path in related:
            content = related_contents.get(path)
            if content:
                bundle.add_file(self._whole_file(path, content, bundle))

        logger.info(
            "Context assembled",
            repository=repository_path,
            seeds=len(seeds),
            units=len(bundle.units),
            files=len(bundle.files),
            tokens=bundle.total_tokens,
            budget=budget,
            truncated=bundle.truncated,
        )
        return AssembledContext(
            bundle=bundle,
            retrieval=routed,
            seed_count=len(seeds),
            candidate_count=len(linker),
        )

    def _build_query(self, change_set: ChangeSet, seeds: list[CodeUnit]) -> str:
        """Identifiers from added lines and touched declarations."""
        words: list[str] = []
        for diff in change_set.reviewable_files:
            for hunk in diff.hunks:
                for line in hunk.content.splitlines():
                    if line.startswith("+") and not line.startswith("+++"):
                        words.append(line[1:])
        words.extend(seed.symbol for seed in seeds if seed.symbol)
        return " ".join(extract_keywords(" ".join(words)))

    async def _register_related(
        self,
        repository_path: str,
        change_set: ChangeSet,
        routed: RoutedRetrieval,
        linker: DependencyLinker,
        policy: QueryPolicy,
    ) -> dict[str, str]:
        """Chunk files that retrieval pointed at so the graph can reach them.

        Returns the content read for each such file.
        """
        changed = set(change_set.paths)
        related: list[str] = []
        for item in routed.result.items:
            path = item.unit.file_path
            if path not in changed and path not in related:
                related.append(path)
            if len(related) >= self.max_related_files:
                break

        contents: dict[str, str] = {}
        for path in related:
            read = await asyncio.to_thread(
                self.direct.read_file,
                repository_path,
                path,
                None,
                None,
                policy.max_file_size_kb,
            )
            if read.exists and read.content:
                contents[path] = read.content
                linker.add_units(self.chunker.chunk(path, read.content))
        return contents

    def _whole_file(self, path: str, content: str, bundle: ContextBundle) -> FileContext:
        """A related file, ranked with the best unit already taken from it."""
        relevance = max(
            (u.relevance_score for u in bundle.units if u.file_path == path), default=0.0
        )
        return FileContext(
            path=path,
            content=content,
            token_count=self.chunker.tokenizer.count(content),
            relevance_score=relevance,
        )


def _touched(
    units: list[CodeUnit], ranges: list[tuple[int, int]], whole_file: bool
) -> list[CodeUnit]:
    """Units overlapping any changed line range."""
    if whole_file or not ranges:
        return list(units) if whole_file else []
    return [
        unit
        for unit in units
        if any(unit.start_line <= end and start <= unit.end_line for start, end in ranges)
    ]
