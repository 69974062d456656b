"""
End-to-end tests for ReviewOrchestrator.

A real git checkout and direct search are used; the embedding service and
the completion API are replaced by fakes.
"""

import json
import subprocess
from pathlib import Path

import pytest

from review_forge.config import ServiceConfig
from review_forge.context.assembler import ContextAssembler
from review_forge.context.chunker import Chunker
from review_forge.context.direct import DirectSearch
from review_forge.context.router import QueryStrategyRouter
from review_forge.context.semantic import InMemoryVectorIndex, SemanticSearch
from review_forge.errors import ConfigurationError
from review_forge.policy import (
    ConfigurationProvider,
    RepositoryConfig,
    ReviewSplitPolicy,
    WebhookPolicy,
)
from review_forge.review.comments import InMemoryCommentHost
from review_forge.review.completion import CompletionResponse, PromptPayload
from review_forge.review.dispatcher import ReviewDispatcher
from review_forge.review.git_diff import LocalGitSource
from review_forge.review.models import ChangeSet, FileDiff
from review_forge.review.orchestrator import ReviewOrchestrator, _index_changes, build_orchestrator
from review_forge.review.reconciler import CommentReconciler
from review_forge.review.splitter import ReviewSplitter


class UnreachableEmbedder:
    async def embed(self, texts: list[str]) -> list[list[float]]:
        raise ConnectionError("embedding service down")


class WordCountEmbedder:
    """Counts a few words; enough for nearest-neighbour ordering."""

    WORDS = ["path", "load", "slug", "text", "isfile"]

    async def embed(self, texts: list[str]) -> list[list[float]]:
        return [[float(t.count(w)) + 0.01 for w in self.WORDS] for t in texts]


class CannedClient:
    """Completion client that always returns the same review."""

    def __init__(self) -> None:
        self.prompts: list[str] = []

    async def complete(self, payload: PromptPayload, timeout: float) -> CompletionResponse:
        self.prompts.append(payload.prompt)
        return CompletionResponse(
            text=json.dumps(
                {
                    "comments": [
                        {
                            "content": "isfile() rejects directories that exists() accepted",
                            "filePath": "app.py",
                            "lineNumber": 5,
                            "severity": "Warning",
                            "category": "BestPractices",
                        }
                    ],
                    "summary": "Behavior change in load().",
                }
            ),
            input_tokens=900,
            output_tokens=80,
        )


def git(repo_path: Path, *args: str) -> None:
    subprocess.run(["git", *args], cwd=repo_path, check=True, capture_output=True)


@pytest.fixture
def client() -> CannedClient:
    return CannedClient()


@pytest.fixture
def host() -> InMemoryCommentHost:
    return InMemoryCommentHost()


@pytest.fixture
def make_orchestrator(feature_branch: Path, tokenizer, client, host):
    """Build an orchestrator over the feature branch with a given configuration."""

    def _make(
        config: RepositoryConfig | None = None, root: Path | None = None
    ) -> ReviewOrchestrator:
        chunker = Chunker(tokenizer)
        direct = DirectSearch(tokenizer)
        semantic = SemanticSearch(UnreachableEmbedder(), InMemoryVectorIndex(), chunker)
        return ReviewOrchestrator(
            source=LocalGitSource(root or feature_branch.parent),
            configs=ConfigurationProvider(config),
            assembler=ContextAssembler(chunker, QueryStrategyRouter(semantic, direct), direct),
            splitter=ReviewSplitter(tokenizer),
            dispatcher=ReviewDispatcher(client),
            reconciler=CommentReconciler(host, bot_identity="review-bot"),
        )

    return _make


# =============================================================================
# INTEGRATION TESTS: run_review() + reconcile()
# =============================================================================


class TestRunReview:
    @pytest.mark.asyncio
    async def test_review_falls_back_to_direct_search(
        self, make_orchestrator, make_trigger, feature_branch, host
    ):
        orchestrator = make_orchestrator()

        outcome = await orchestrator.run_review(make_trigger())

        assert outcome.is_successful is True
        assert outcome.metadata.files_analyzed == 2
        assert outcome.metadata.tokens_used == 980
        assert outcome.metadata.context_tokens > 0
        extra = outcome.to_dict()["metadata"]
        assert extra["retrievalServedBy"] == "direct"
        assert extra["retrievalFellBack"] is True
        assert extra["retrievalCacheHit"] is False

        stats = await orchestrator.router.stats(str(feature_branch))
        assert stats.fallback_count == 1
        assert stats.vector_failures == 1

        [line_finding] = [f for f in outcome.findings if not f.is_summary]
        assert (line_finding.file_path, line_finding.line_number) == ("app.py", 5)

        posting = await orchestrator.reconcile(outcome)
        assert posting.posted == 2
        assert len(host.active()) == 2

    @pytest.mark.asyncio
    async def test_single_large_file_served_by_direct_search(
        self, temp_git_repo: Path, tokenizer, client, host, make_trigger
    ):
        source = "".join(f"def handler_{n}(event):\n    return event + {n}\n\n\n" for n in range(50))
        git(temp_git_repo, "checkout", "-b", "feature")
        (temp_git_repo / "handlers.py").write_text(source)
        git(temp_git_repo, "add", ".")
        git(temp_git_repo, "commit", "-m", "Add handlers")
        git(temp_git_repo, "checkout", "main")

        chunker = Chunker(tokenizer)
        assert len(chunker.chunk("handlers.py", source)) == 50

        direct = DirectSearch(tokenizer)
        semantic = SemanticSearch(UnreachableEmbedder(), InMemoryVectorIndex(), chunker)
        orchestrator = ReviewOrchestrator(
            source=LocalGitSource(temp_git_repo.parent),
            configs=ConfigurationProvider(),
            assembler=ContextAssembler(chunker, QueryStrategyRouter(semantic, direct), direct),
            splitter=ReviewSplitter(tokenizer),
            dispatcher=ReviewDispatcher(client),
            reconciler=CommentReconciler(host, bot_identity="review-bot"),
        )

        outcome = await orchestrator.run_review(make_trigger())

        assert outcome.is_successful is True
        assert outcome.metadata.extra["retrievalServedBy"] == "direct"
        stats = await orchestrator.router.stats(str(temp_git_repo))
        assert stats.fallback_count == 1
        assert stats.vector_calls == 0

    @pytest.mark.asyncio
    async def test_changed_files_indexed_before_retrieval(
        self, feature_branch: Path, tokenizer, client, host, make_trigger
    ):
        chunker = Chunker(tokenizer)
        direct = DirectSearch(tokenizer)
        index = InMemoryVectorIndex()
        semantic = SemanticSearch(WordCountEmbedder(), index, chunker)
        orchestrator = ReviewOrchestrator(
            source=LocalGitSource(feature_branch.parent),
            configs=ConfigurationProvider(),
            assembler=ContextAssembler(chunker, QueryStrategyRouter(semantic, direct), direct),
            splitter=ReviewSplitter(tokenizer),
            dispatcher=ReviewDispatcher(client),
            reconciler=CommentReconciler(host, bot_identity="review-bot"),
        )

        outcome = await orchestrator.run_review(make_trigger())

        assert outcome.is_successful is True
        assert outcome.metadata.extra["retrievalServedBy"] == "vector"
        assert {e.unit.file_path for e in index._points.values()} == {"app.py", "util.py"}
        stats = await orchestrator.router.stats(str(feature_branch))
        assert (stats.index_updates, stats.index_failures) == (1, 0)
        assert stats.is_vector_index_available is True
        assert stats.fallback_count == 0

    @pytest.mark.asyncio
    async def test_rerun_converges_and_hits_cache(
        self, make_orchestrator, make_trigger, feature_branch, host
    ):
        orchestrator = make_orchestrator()
        trigger = make_trigger()

        first = await orchestrator.run_review(trigger)
        await orchestrator.reconcile(first)
        second = await orchestrator.run_review(trigger)
        posting = await orchestrator.reconcile(second)

        assert first.request_id != second.request_id
        assert second.metadata.extra["retrievalCacheHit"] is True
        assert posting.deleted == 2
        assert {c.request_id for c in host.active()} == {second.request_id}

        stats = await orchestrator.router.stats(str(feature_branch))
        assert stats.fallback_count == 1
        assert (stats.cache_hits, stats.cache_misses) == (1, 1)

    @pytest.mark.asyncio
    async def test_command_focus_reaches_prompt(self, make_orchestrator, make_trigger, client):
        orchestrator = make_orchestrator()

        await orchestrator.run_review(make_trigger(comment="/review focus=security"))

        assert "Focus especially on: security" in client.prompts[0]

    @pytest.mark.asyncio
    async def test_split_policy_applied(self, make_orchestrator, make_trigger, client):
        orchestrator = make_orchestrator(
            RepositoryConfig(split=ReviewSplitPolicy(strategy="per_file"))
        )

        outcome = await orchestrator.run_review(make_trigger())

        assert len(client.prompts) == 2
        assert outcome.metadata.requests_issued == 2


# =============================================================================
# INTEGRATION TESTS: failures
# =============================================================================


class TestRunReviewFailures:
    @pytest.mark.asyncio
    async def test_missing_checkout_is_failed_outcome(
        self, make_orchestrator, make_trigger, tmp_path, client, host
    ):
        orchestrator = make_orchestrator(root=tmp_path / "nowhere")

        outcome = await orchestrator.run_review(make_trigger())

        assert outcome.is_successful is False
        assert "git diff" in outcome.error_message
        assert client.prompts == []

        posting = await orchestrator.reconcile(outcome)
        assert posting.skipped_reason == outcome.error_message
        assert host.active() == []

    @pytest.mark.asyncio
    async def test_disabled_repository(self, make_orchestrator, make_trigger, client):
        orchestrator = make_orchestrator(RepositoryConfig(enabled=False))

        outcome = await orchestrator.run_review(make_trigger())

        assert outcome.is_successful is False
        assert outcome.error_message == "Reviews are disabled for this repository"
        assert client.prompts == []

    @pytest.mark.asyncio
    async def test_diff_size_limit(self, make_orchestrator, make_trigger, client):
        orchestrator = make_orchestrator(
            RepositoryConfig(webhook=WebhookPolicy(max_diff_size_bytes=10))
        )

        outcome = await orchestrator.run_review(make_trigger())

        assert outcome.is_successful is False
        assert "exceeds the limit of 10 bytes" in outcome.error_message
        assert client.prompts == []

    @pytest.mark.asyncio
    async def test_invalid_configuration_raises(self, make_orchestrator, make_trigger, client):
        broken = RepositoryConfig.model_construct(
            split=ReviewSplitPolicy.model_construct(
                max_tokens_per_file=5_000, max_tokens_per_request=1_000
            )
        )
        orchestrator = make_orchestrator(broken)

        with pytest.raises(ConfigurationError):
            await orchestrator.run_review(make_trigger())
        assert client.prompts == []


# =============================================================================
# UNIT TESTS: build_orchestrator()
# =============================================================================


class TestBuildOrchestrator:
    def test_requires_api_key(self):
        with pytest.raises(ConfigurationError, match="ANTHROPIC_API_KEY"):
            build_orchestrator(ServiceConfig())

    def test_defaults_from_service_config(self, tmp_path: Path):
        config = ServiceConfig(
            anthropic_api_key="key",
            vector_backend="inmemory",
            repositories_root=tmp_path,
            max_context_tokens=1234,
            hop_limit=1,
            require_comment_trigger=False,
        )

        orchestrator = build_orchestrator(config)

        default = orchestrator.configs.default
        assert default.context_token_budget == 1234
        assert default.hop_limit == 1
        assert default.webhook.require_comment_trigger is False
        assert isinstance(orchestrator.reconciler.host, InMemoryCommentHost)
        assert isinstance(orchestrator.router.semantic.index, InMemoryVectorIndex)

    def test_repository_config_file(self, tmp_path: Path):
        config_file = tmp_path / "repos.json"
        config_file.write_text(json.dumps({"default": {"hop_limit": 0}}))
        config = ServiceConfig(
            anthropic_api_key="key",
            vector_backend="inmemory",
            repository_config_file=config_file,
        )

        orchestrator = build_orchestrator(config)

        assert orchestrator.configs.default.hop_limit == 0


# =============================================================================
# UNIT TESTS: _index_changes()
# =============================================================================


class TestIndexChanges:
    def test_renames_and_deletes_remove_old_paths(self, repository):
        change_set = ChangeSet(
            repository,
            42,
            "feature",
            "main",
            [
                FileDiff(path="app.py"),
                FileDiff(path="new.py", old_path="old.py", status="renamed"),
                FileDiff(path="gone.py", status="deleted"),
                FileDiff(path="logo.png", is_binary=True),
            ],
        )
        contents = {"app.py": "x = 1\n", "new.py": "y = 2\n"}

        assert _index_changes(change_set, contents) == {
            "app.py": "x = 1\n",
            "old.py": None,
            "new.py": "y = 2\n",
            "gone.py": None,
        }
