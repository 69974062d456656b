"""
Review Orchestrator

The two operations exposed upward: ``run_review`` turns a trigger into an
AnalysisOutcome, and ``reconcile`` publishes an outcome as annotations.
"""

import time
import uuid

import structlog
from qdrant_client import AsyncQdrantClient

from review_forge.config import ServiceConfig
from review_forge.context.assembler import ContextAssembler
from review_forge.context.chunker import Chunker
from review_forge.context.direct import DirectSearch
from review_forge.context.router import QueryStrategyRouter
from review_forge.context.semantic import (
    InMemoryVectorIndex,
    OllamaEmbedder,
    QdrantVectorIndex,
    SemanticSearch,
    VectorIndex,
)
from review_forge.context.tokenizer import Tokenizer
from review_forge.errors import ConfigurationError, RetrievalError, SourceHostError
from review_forge.policy import ConfigurationProvider, RepositoryConfig, WebhookPolicy

from .comments import AzureDevOpsCommentHost, CommentHost, InMemoryCommentHost
from .completion import AnthropicCompletionClient
from .dispatcher import ReviewDispatcher
from .git_diff import LocalGitSource, SourceHost
from .models import AnalysisOutcome, ChangeSet, OutcomeMetadata, PostingSummary
from .reconciler import CommentReconciler
from .splitter import ReviewSplitter
from .triggers import TriggerContext

logger = structlog.get_logger(__name__)


class ReviewOrchestrator:
    """Run reviews end to end for one process."""

    def __init__(
        self,
        source: SourceHost,
        configs: ConfigurationProvider,
        assembler: ContextAssembler,
        splitter: ReviewSplitter,
        dispatcher: ReviewDispatcher,
        reconciler: CommentReconciler,
    ):
        self.source = source
        self.configs = configs
        self.assembler = assembler
        self.splitter = splitter
        self.dispatcher = dispatcher
        self.reconciler = reconciler

    @property
    def router(self) -> QueryStrategyRouter:
        return self.assembler.router

    async def run_review(self, trigger: TriggerContext) -> AnalysisOutcome:
        """
        Review the pull request behind ``trigger``.

        Args:
            trigger: Resolved trigger (repository, pull request, event)

        Returns:
            AnalysisOutcome; unsuccessful with an error message on total failure

        Raises:
            ConfigurationError: if the repository's configuration is invalid
        """
        config = self.configs.validate(self.configs.effective(trigger.repository))
        if not config.enabled:
            return self._failed(trigger, "Reviews are disabled for this repository")

        started = time.perf_counter()
        log = logger.bind(
            repository=trigger.repository.key,
            pull_request=trigger.pull_request_id,
            trigger=trigger.trigger_key,
        )

        try:
            change_set = await self.source.get_change_set(trigger)
            diff_bytes = sum(len(f.raw_diff.encode("utf-8")) for f in change_set.files)
            if diff_bytes > config.webhook.max_diff_size_bytes:
                return self._failed(
                    trigger,
                    f"Diff of {diff_bytes} bytes exceeds the limit of "
                    f"{config.webhook.max_diff_size_bytes} bytes",
                )
            contents = await self.source.read_files(
                trigger, [f.path for f in change_set.reviewable_files]
            )
            repository_path = self.source.checkout_path(trigger.repository)
            await self.router.update_index(
                repository_path, _index_changes(change_set, contents), config.query
            )
            context = await self.assembler.build(
                repository_path,
                change_set,
                contents,
                config.query,
                config.context_token_budget,
                config.hop_limit,
            )
        except (SourceHostError, RetrievalError) as e:
            log.error("Review run failed before dispatch", error=str(e))
            return self._failed(trigger, str(e))

        requests = self.splitter.split(change_set, context.bundle, config.split)
        focus = trigger.command.parameters.get("focus") if trigger.command else None
        outcome = await self.dispatcher.dispatch(
            requests, config.split, change_set, trigger.trigger_key, focus
        )

        outcome.metadata.context_tokens = context.bundle.total_tokens
        outcome.metadata.context_truncated = context.bundle.truncated
        outcome.metadata.processing_ms = int((time.perf_counter() - started) * 1000)
        if context.retrieval is not None:
            outcome.metadata.extra["retrievalServedBy"] = context.retrieval.served_by.value
            outcome.metadata.extra["retrievalFellBack"] = context.retrieval.fell_back
            outcome.metadata.extra["retrievalCacheHit"] = context.retrieval.cache_hit

        log.info(
            "Review run finished",
            request_id=outcome.request_id,
            successful=outcome.is_successful,
            findings=len(outcome.findings),
        )
        return outcome

    async def reconcile(self, outcome: AnalysisOutcome) -> PostingSummary:
        """Publish ``outcome`` under its repository's comment policy."""
        config = self.configs.effective(outcome.repository)
        return await self.reconciler.reconcile(outcome, config.comments)

    @staticmethod
    def _failed(trigger: TriggerContext, message: str) -> AnalysisOutcome:
        return AnalysisOutcome(
            request_id=uuid.uuid4().hex,
            trigger_key=trigger.trigger_key,
            repository=trigger.repository,
            pull_request_id=trigger.pull_request_id,
            is_successful=False,
            metadata=OutcomeMetadata(),
            error_message=message,
        )


def _index_changes(change_set: ChangeSet, contents: dict[str, str]) -> dict[str, str | None]:
    """Vector index changes for a change set: new content, or None to remove."""
    changes: dict[str, str | None] = {}
    for diff in change_set.files:
        if diff.old_path and diff.old_path != diff.path:
            changes[diff.old_path] = None
        if diff.status == "deleted":
            changes[diff.path] = None
        elif diff.path in contents:
            changes[diff.path] = contents[diff.path]
    return changes


def build_orchestrator(
    config: ServiceConfig, configs: ConfigurationProvider | None = None
) -> ReviewOrchestrator:
    """
    Wire the production collaborators from service configuration.

    Raises:
        ConfigurationError: if no completion API key is configured
    """
    if not config.anthropic_api_key:
        raise ConfigurationError("ANTHROPIC_API_KEY is required to run reviews")

    if configs is None:
        configs = (
            ConfigurationProvider.from_file(config.repository_config_file)
            if config.repository_config_file
            else ConfigurationProvider(
                RepositoryConfig(
                    context_token_budget=config.max_context_tokens,
                    hop_limit=config.hop_limit,
                    webhook=WebhookPolicy(
                        require_comment_trigger=config.require_comment_trigger
                    ),
                )
            )
        )

    tokenizer = Tokenizer(config.tokenizer_profile)
    chunker = Chunker(tokenizer, max_unit_tokens=config.max_unit_tokens)
    direct = DirectSearch(tokenizer, max_unit_tokens=config.max_unit_tokens)

    index: VectorIndex
    if config.vector_backend == "inmemory":
        index = InMemoryVectorIndex()
    else:
        index = QdrantVectorIndex(
            AsyncQdrantClient(url=config.qdrant_url),
            collection=config.qdrant_collection,
            dimension=config.embedding_dimension,
        )
    semantic = SemanticSearch(
        OllamaEmbedder(config.ollama_url, config.embedding_model), index, chunker
    )
    router = QueryStrategyRouter(semantic, direct)

    host: CommentHost
    if config.azure_devops_url and config.azure_devops_token:
        host = AzureDevOpsCommentHost(config.azure_devops_url, config.azure_devops_token)
    else:
        logger.warning("No comment host configured; comments are kept in memory")
        host = InMemoryCommentHost()

    return ReviewOrchestrator(
        source=LocalGitSource(config.repositories_root),
        configs=configs,
        assembler=ContextAssembler(chunker, router, direct),
        splitter=ReviewSplitter(tokenizer),
        dispatcher=ReviewDispatcher(
            AnthropicCompletionClient(
                config.anthropic_api_key,
                model=config.completion_model,
                base_url=config.anthropic_base_url,
            ),
            model=config.completion_model,
            max_output_tokens=config.completion_max_tokens,
        ),
        reconciler=CommentReconciler(host, config.bot_identity, post_delay=0.5),
    )
