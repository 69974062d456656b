"""Per-repository review policy and effective-configuration lookup.

Policies are validated when built or assigned, so an invalid configuration is
rejected before a review run starts.
"""

import json
from enum import Enum
from pathlib import Path

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from review_forge.context.direct import (
    DEFAULT_EXCLUDE_DIRECTORIES,
    DEFAULT_EXCLUDE_PATTERNS,
    DirectSearchOptions,
)
from review_forge.errors import ConfigurationError
from review_forge.review.models import RepositoryRef, Severity

logger = structlog.get_logger(__name__)


class QueryStrategy(str, Enum):
    """How context retrieval picks between semantic and direct search."""

    VECTOR_ONLY = "vector_only"
    DIRECT_ONLY = "direct_only"
    HYBRID = "hybrid"
    DIRECT_FALLBACK = "direct_fallback"


class ReviewStrategy(str, Enum):
    """How a change set is packed into completion requests."""

    SINGLE = "single"
    PER_FILE = "per_file"
    BY_TOKEN_SIZE = "by_token_size"
    HYBRID = "hybrid"


class QueryPolicy(BaseModel):
    """Retrieval behavior for one repository."""

    model_config = ConfigDict(validate_assignment=True)

    strategy: QueryStrategy = QueryStrategy.DIRECT_FALLBACK
    enable_direct: bool = True
    enable_vector: bool = True
    max_results: int = Field(default=20, ge=1, le=500, description="Units per retrieval")
    max_direct_results: int = Field(default=100, ge=1, le=10_000)
    max_file_size_kb: int = Field(default=500, ge=1, le=10_240)
    context_lines: int = Field(default=5, ge=0, le=50)
    exclude_patterns: list[str] = Field(default_factory=lambda: list(DEFAULT_EXCLUDE_PATTERNS))
    exclude_directories: list[str] = Field(
        default_factory=lambda: list(DEFAULT_EXCLUDE_DIRECTORIES)
    )
    enable_caching: bool = True
    cache_ttl_seconds: float = Field(default=1800.0, gt=0)
    vector_latency_ceiling_seconds: float = Field(default=10.0, gt=0)

    @model_validator(mode="after")
    def check_methods(self) -> "QueryPolicy":
        if not (self.enable_direct or self.enable_vector):
            raise ValueError("at least one of direct or vector search must be enabled")
        if self.strategy == QueryStrategy.VECTOR_ONLY and not self.enable_vector:
            raise ValueError("vector_only strategy requires vector search enabled")
        if self.strategy == QueryStrategy.DIRECT_ONLY and not self.enable_direct:
            raise ValueError("direct_only strategy requires direct search enabled")
        return self

    def direct_options(self) -> DirectSearchOptions:
        """Direct search options derived from this policy."""
        return DirectSearchOptions(
            exclude_file_patterns=list(self.exclude_patterns),
            exclude_directories=list(self.exclude_directories),
            max_results=self.max_direct_results,
            max_file_size_kb=self.max_file_size_kb,
            context_lines=self.context_lines,
        )


class ReviewSplitPolicy(BaseModel):
    """How a change set is split into completion requests."""

    model_config = ConfigDict(validate_assignment=True)

    strategy: ReviewStrategy = ReviewStrategy.SINGLE
    max_files_per_request: int = Field(default=10, ge=1, le=100)
    max_tokens_per_request: int = Field(default=100_000, ge=1, le=1_000_000)
    max_tokens_per_file: int = Field(default=20_000, ge=1, le=1_000_000)
    include_summary_when_split: bool = True
    max_concurrent_requests: int = Field(default=3, ge=1, le=10)
    request_timeout_seconds: float = Field(default=300.0, gt=0, le=3600)

    @model_validator(mode="after")
    def check_token_limits(self) -> "ReviewSplitPolicy":
        if self.max_tokens_per_file > self.max_tokens_per_request:
            raise ValueError("max_tokens_per_file must not exceed max_tokens_per_request")
        return self


class CommentPolicy(BaseModel):
    """How findings are published as annotations."""

    model_config = ConfigDict(validate_assignment=True)

    enable_line_comments: bool = True
    enable_summary_comment: bool = True
    include_confidence_score: bool = False
    comment_prefix: str = Field(default="🤖 AI Code Review", max_length=100)
    max_comments_per_file: int = Field(default=10, ge=1, le=50)
    min_severity: Severity = Severity.INFO


class WebhookPolicy(BaseModel):
    """Which events start a review."""

    model_config = ConfigDict(validate_assignment=True)

    auto_review_on_create: bool = False
    auto_review_on_update: bool = True
    require_comment_trigger: bool = True
    allowed_trigger_users: list[str] = Field(default_factory=list)  # empty = anyone
    max_files_for_auto_review: int = Field(default=50, ge=1, le=1000)
    max_diff_size_bytes: int = Field(default=1_048_576, ge=1)


class RepositoryConfig(BaseModel):
    """Everything that shapes a review of one repository."""

    model_config = ConfigDict(validate_assignment=True)

    enabled: bool = True
    query: QueryPolicy = Field(default_factory=QueryPolicy)
    split: ReviewSplitPolicy = Field(default_factory=ReviewSplitPolicy)
    comments: CommentPolicy = Field(default_factory=CommentPolicy)
    webhook: WebhookPolicy = Field(default_factory=WebhookPolicy)
    context_token_budget: int = Field(default=8000, ge=1, le=1_000_000)
    hop_limit: int = Field(default=2, ge=0, le=5)


class ConfigurationProvider:
    """Scoped configurations with effective-configuration fallback.

    Lookup order for a repository: repository scope, project scope,
    organization scope, then the default configuration.
    """

    def __init__(self, default: RepositoryConfig | None = None):
        self.default = default or RepositoryConfig()
        self._scoped: dict[tuple[str, str | None, str | None], RepositoryConfig] = {}

    def register(
        self,
        config: RepositoryConfig,
        organization: str,
        project: str | None = None,
        repository: str | None = None,
    ) -> None:
        """Register a configuration for an organization, project or repository scope."""
        if repository and not project:
            raise ConfigurationError("A repository scope needs its project")
        self._scoped[(organization, project, repository)] = config

    def effective(self, repository: RepositoryRef) -> RepositoryConfig:
        """The most specific configuration that applies to ``repository``."""
        for key in (
            (repository.organization, repository.project, repository.name),
            (repository.organization, repository.project, None),
            (repository.organization, None, None),
        ):
            if key in self._scoped:
                return self._scoped[key]
        return self.default

    def validate(self, config: RepositoryConfig) -> RepositoryConfig:
        """Re-check every invariant; raises ConfigurationError on violation."""
        try:
            return RepositoryConfig.model_validate(config.model_dump())
        except ValidationError as e:
            raise ConfigurationError(str(e)) from e

    @classmethod
    def from_json(cls, text: str) -> "ConfigurationProvider":
        """
        Build a provider from a JSON document.

        Expected shape::

            {"default": {...},
             "scopes": [{"organization": "o", "project": "p", "repository": "r",
                         "config": {...}}]}

        Raises:
            ConfigurationError: if the document or any configuration is invalid
        """
        try:
            document = json.loads(text)
            provider = cls(RepositoryConfig.model_validate(document.get("default", {})))
            for scope in document.get("scopes", []):
                provider.register(
                    RepositoryConfig.model_validate(scope.get("config", {})),
                    organization=scope["organization"],
                    project=scope.get("project"),
                    repository=scope.get("repository"),
                )
        except (ValueError, KeyError, AttributeError) as e:
            # ValidationError and JSONDecodeError are both ValueErrors
            raise ConfigurationError(f"Invalid repository configuration: {e}") from e
        logger.info("Loaded repository configuration", scopes=len(provider._scoped))
        return provider

    @classmethod
    def from_file(cls, path: Path) -> "ConfigurationProvider":
        return cls.from_json(path.read_text(encoding="utf-8"))
