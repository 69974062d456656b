"""
Review Splitter

Packs a change set and its context bundle into one or more completion
requests according to the repository's split policy.
"""

from typing import assert_never

import structlog

from review_forge.context.models import CodeUnit, ContextBundle, FileContext, ranking_key
from review_forge.context.tokenizer import Tokenizer
from review_forge.policy import ReviewSplitPolicy, ReviewStrategy

from .models import ChangeSet, DiffHunk, DiffPiece, FileDiff, ReviewRequest

logger = structlog.get_logger(__name__)


class ReviewSplitter:
    """Split a change set into bounded review requests."""

    def __init__(self, tokenizer: Tokenizer | None = None):
        self.tokenizer = tokenizer or Tokenizer()

    def split(
        self, change_set: ChangeSet, bundle: ContextBundle, policy: ReviewSplitPolicy
    ) -> list[ReviewRequest]:
        """
        Produce the requests for one review run.

        Strategies:
        - SINGLE: one request; context added by relevance until the request limit
        - PER_FILE: one request per file, each within max_tokens_per_file
        - BY_TOKEN_SIZE: greedy first-fit packing of per-file diff pieces
        - HYBRID: SINGLE when everything fits one request, else BY_TOKEN_SIZE
        """
        files = sorted(change_set.reviewable_files, key=lambda f: f.path)
        if not files:
            return []

        strategy = policy.strategy
        match strategy:
            case ReviewStrategy.SINGLE:
                requests = self._single(files, bundle, policy)
            case ReviewStrategy.PER_FILE:
                requests = self._per_file(files, bundle, policy)
            case ReviewStrategy.BY_TOKEN_SIZE:
                requests = self._by_token_size(files, bundle, policy)
            case ReviewStrategy.HYBRID:
                diff_tokens = sum(self._diff_tokens(f) for f in files)
                if diff_tokens + bundle.total_tokens <= policy.max_tokens_per_request:
                    requests = self._single(files, bundle, policy)
                else:
                    requests = self._by_token_size(files, bundle, policy)
            case _:
                assert_never(strategy)

        logger.info(
            "Split change set",
            strategy=strategy.value,
            files=len(files),
            requests=len(requests),
            tokens=[r.total_tokens for r in requests],
        )
        return requests

    def _single(
        self, files: list[FileDiff], bundle: ContextBundle, policy: ReviewSplitPolicy
    ) -> list[ReviewRequest]:
        request = ReviewRequest(index=0)
        for diff in files:
            request.pieces.extend(self._pieces(diff, None))
        self._attach_context(request, bundle, policy.max_tokens_per_request)
        return [request]

    def _per_file(
        self, files: list[FileDiff], bundle: ContextBundle, policy: ReviewSplitPolicy
    ) -> list[ReviewRequest]:
        requests: list[ReviewRequest] = []
        for index, diff in enumerate(files):
            text = self._diff_text(diff)
            tokens = self.tokenizer.count(text)
            truncated = tokens > policy.max_tokens_per_file
            if truncated:
                text = self.tokenizer.truncate(text, policy.max_tokens_per_file)
                tokens = self.tokenizer.count(text)
            request = ReviewRequest(
                index=index,
                pieces=[
                    DiffPiece(
                        file_path=diff.path,
                        text=text,
                        token_count=tokens,
                        hunks=list(diff.hunks),
                        truncated=truncated,
                    )
                ],
            )
            self._attach_context(request, bundle, policy.max_tokens_per_file)
            requests.append(request)
        return requests

    def _by_token_size(
        self, files: list[FileDiff], bundle: ContextBundle, policy: ReviewSplitPolicy
    ) -> list[ReviewRequest]:
        limit = policy.max_tokens_per_request
        requests: list[ReviewRequest] = []
        current = ReviewRequest(index=0)

        for diff in files:
            for piece in self._pieces(diff, min(policy.max_tokens_per_file, limit)):
                new_file = piece.file_path not in current.file_paths
                too_many_files = new_file and len(current.file_paths) >= policy.max_files_per_request
                if current.pieces and (
                    current.diff_tokens + piece.token_count > limit or too_many_files
                ):
                    requests.append(current)
                    current = ReviewRequest(index=len(requests))
                current.pieces.append(piece)
        if current.pieces:
            requests.append(current)

        for request in requests:
            self._attach_context(request, bundle, limit)
        return requests

    def _pieces(self, diff: FileDiff, cap: int | None) -> list[DiffPiece]:
        """A file's diff as one piece, or hunk groups each within ``cap`` tokens."""
        text = self._diff_text(diff)
        tokens = self.tokenizer.count(text)
        if cap is None or tokens <= cap or not diff.hunks:
            if cap is not None and tokens > cap:
                text = self.tokenizer.truncate(text, cap)
                return [DiffPiece(diff.path, text, self.tokenizer.count(text), truncated=True)]
            return [DiffPiece(diff.path, text, tokens, hunks=list(diff.hunks))]

        groups: list[list[DiffHunk]] = []
        current: list[DiffHunk] = []
        current_tokens = 0
        for hunk in diff.hunks:
            hunk_tokens = self.tokenizer.count(hunk.content)
            if current and current_tokens + hunk_tokens > cap:
                groups.append(current)
                current, current_tokens = [], 0
            current.append(hunk)
            current_tokens += hunk_tokens
        if current:
            groups.append(current)

        pieces: list[DiffPiece] = []
        for number, hunks in enumerate(groups, start=1):
            text = "\n".join(h.content for h in hunks)
            truncated = False
            if self.tokenizer.count(text) > cap:
                # A single hunk larger than the cap
                text = self.tokenizer.truncate(text, cap)
                truncated = True
            pieces.append(
                DiffPiece(
                    file_path=diff.path,
                    text=text,
                    token_count=self.tokenizer.count(text),
                    hunks=hunks,
                    part=number,
                    parts=len(groups),
                    truncated=truncated,
                )
            )
        return pieces

    def _attach_context(self, request: ReviewRequest, bundle: ContextBundle, limit: int) -> None:
        """Add context by relevance within the request's remaining headroom.

        Whole files and units are ranked together: relevance descending, then
        path, then start line. Anything that does not fit is dropped and
        counted, so excess context goes lowest relevance first.
        """
        headroom = limit - request.diff_tokens

        candidates: list[CodeUnit | FileContext] = [*bundle.files, *bundle.units]
        for item in sorted(candidates, key=_context_rank):
            if item.token_count > headroom:
                request.dropped_context += 1
            elif isinstance(item, FileContext):
                request.context_files.append(item)
                headroom -= item.token_count
            else:
                request.context_units.append(item)
                headroom -= item.token_count

    def _diff_text(self, diff: FileDiff) -> str:
        return diff.raw_diff or "\n".join(h.content for h in diff.hunks)

    def _diff_tokens(self, diff: FileDiff) -> int:
        return self.tokenizer.count(self._diff_text(diff))


def _context_rank(item: CodeUnit | FileContext) -> tuple[float, str, int]:
    if isinstance(item, FileContext):
        return (-item.relevance_score, item.path, 0)
    return ranking_key(item, item.relevance_score)
