"""Service configuration for review-forge.

Process-level settings (endpoints, models, credentials, budgets) read from the
environment. Per-repository review behavior lives in ``review_forge.policy``.
"""

import os
from dataclasses import dataclass
from pathlib import Path


def _get_bool(name: str, default: bool) -> bool:
    """Read a boolean flag from the environment."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class ServiceConfig:
    """Review service configuration."""

    # Embedding endpoint (Ollama-compatible)
    ollama_url: str = "http://localhost:11434"
    embedding_model: str = "nomic-embed-text"
    embedding_dimension: int = 768

    # Vector index
    vector_backend: str = "qdrant"  # "qdrant" | "inmemory"
    qdrant_url: str = "http://localhost:6333"
    qdrant_collection: str = "code-embeddings"

    # Completion API (Anthropic Messages API)
    anthropic_api_key: str | None = None
    anthropic_base_url: str = "https://api.anthropic.com"
    completion_model: str = "claude-3-haiku-20240307"
    completion_max_tokens: int = 4000

    # Comment host (Azure DevOps)
    azure_devops_url: str | None = None  # e.g. https://dev.azure.com/contoso
    azure_devops_token: str | None = None
    bot_identity: str = "review-forge"

    # Context budgets
    tokenizer_profile: str = "code"
    max_unit_tokens: int = 400
    max_context_tokens: int = 8000
    hop_limit: int = 2

    # Local clones live under <repositories_root>/<repository name>
    repositories_root: Path = Path("/var/lib/review-forge/repos")
    repository_config_file: Path | None = None

    # Webhook gating
    require_comment_trigger: bool = True

    @classmethod
    def from_env(cls) -> "ServiceConfig":
        """Create configuration from environment variables."""
        config_file = os.getenv("REVIEW_FORGE_REPOSITORY_CONFIG")
        return cls(
            ollama_url=os.getenv("OLLAMA_URL", "http://localhost:11434"),
            embedding_model=os.getenv("EMBEDDING_MODEL", "nomic-embed-text"),
            embedding_dimension=int(os.getenv("EMBEDDING_DIMENSION", "768")),
            vector_backend=os.getenv("REVIEW_FORGE_VECTOR_BACKEND", "qdrant"),
            qdrant_url=os.getenv("QDRANT_URL", "http://localhost:6333"),
            qdrant_collection=os.getenv("QDRANT_COLLECTION", "code-embeddings"),
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY"),
            anthropic_base_url=os.getenv(
                "ANTHROPIC_BASE_URL", "https://api.anthropic.com"
            ),
            completion_model=os.getenv(
                "REVIEW_FORGE_MODEL", "claude-3-haiku-20240307"
            ),
            completion_max_tokens=int(os.getenv("REVIEW_FORGE_MAX_TOKENS", "4000")),
            azure_devops_url=os.getenv("AZURE_DEVOPS_URL"),
            azure_devops_token=os.getenv("AZURE_DEVOPS_TOKEN"),
            bot_identity=os.getenv("REVIEW_FORGE_BOT_IDENTITY", "review-forge"),
            tokenizer_profile=os.getenv("REVIEW_FORGE_TOKENIZER", "code"),
            max_unit_tokens=int(os.getenv("REVIEW_FORGE_MAX_UNIT_TOKENS", "400")),
            max_context_tokens=int(
                os.getenv("REVIEW_FORGE_MAX_CONTEXT_TOKENS", "8000")
            ),
            hop_limit=int(os.getenv("REVIEW_FORGE_HOP_LIMIT", "2")),
            repositories_root=Path(
                os.getenv("REVIEW_FORGE_REPOSITORIES_ROOT", "/var/lib/review-forge/repos")
            ),
            repository_config_file=Path(config_file) if config_file else None,
            require_comment_trigger=_get_bool("REVIEW_FORGE_REQUIRE_COMMENT", True),
        )
