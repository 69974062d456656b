"""Pytest configuration and fixtures for Review Forge tests."""

import subprocess
from pathlib import Path
from typing import Callable, Generator

import pytest

from review_forge.context.models import CodeUnit, UnitKind
from review_forge.context.tokenizer import Tokenizer
from review_forge.review.models import RepositoryRef
from review_forge.review.triggers import (
    CommentEvent,
    PullRequestAction,
    PullRequestEvent,
    RepositoryInfo,
    TriggerContext,
    parse_command,
)


@pytest.fixture
def tokenizer() -> Tokenizer:
    """Offline code tokenizer."""
    return Tokenizer("code")


@pytest.fixture
def repository() -> RepositoryRef:
    return RepositoryRef(organization="contoso", project="platform", name="service")


@pytest.fixture
def make_trigger(repository: RepositoryRef) -> Callable[..., TriggerContext]:
    """Factory for TriggerContexts; a ``comment`` makes it a command trigger."""

    def _make(
        pull_request_id: int = 42,
        source_ref: str = "refs/heads/feature",
        target_ref: str = "refs/heads/main",
        comment: str | None = None,
    ) -> TriggerContext:
        info = RepositoryInfo(
            organization=repository.organization,
            project=repository.project,
            name=repository.name,
        )
        if comment is None:
            event = PullRequestEvent(
                action=PullRequestAction.UPDATED,
                repository=info,
                pull_request_id=pull_request_id,
                source_ref=source_ref,
                target_ref=target_ref,
            )
            return TriggerContext.from_event(event)
        event = CommentEvent(
            repository=info,
            pull_request_id=pull_request_id,
            source_ref=source_ref,
            target_ref=target_ref,
            comment_id=1,
            content=comment,
            author="dev@contoso.com",
        )
        return TriggerContext.from_event(event, parse_command(comment))

    return _make


@pytest.fixture
def make_unit() -> Callable[..., CodeUnit]:
    """Factory for CodeUnits with a token count derived from the line span."""

    def _make(
        file_path: str = "src/app.py",
        start_line: int = 1,
        end_line: int = 10,
        token_count: int | None = None,
        content: str | None = None,
        kind: UnitKind = UnitKind.FUNCTION,
        symbol: str | None = None,
        relevance_score: float = 0.0,
    ) -> CodeUnit:
        return CodeUnit(
            file_path=file_path,
            start_line=start_line,
            end_line=end_line,
            kind=kind,
            content=content or f"# {file_path} {start_line}-{end_line}",
            token_count=token_count if token_count is not None else end_line - start_line + 1,
            symbol=symbol,
            relevance_score=relevance_score,
        )

    return _make


# =============================================================================
# GIT REPOSITORY FIXTURES
# =============================================================================


def git(repo_path: Path, *args: str) -> str:
    """Run a git command in ``repo_path`` and return stdout."""
    result = subprocess.run(
        ["git", *args], cwd=repo_path, check=True, capture_output=True, text=True
    )
    return result.stdout


@pytest.fixture
def temp_git_repo(tmp_path: Path) -> Generator[Path, None, None]:
    """
    Create a temporary git repository with a ``main`` branch.

    Yields:
        Path to the initialized git repository
    """
    repo_path = tmp_path / "repos" / "service"
    repo_path.mkdir(parents=True)

    git(repo_path, "init")
    git(repo_path, "symbolic-ref", "HEAD", "refs/heads/main")
    git(repo_path, "config", "user.email", "test@test.com")
    git(repo_path, "config", "user.name", "Test User")

    (repo_path / "app.py").write_text(
        "import os\n\n\ndef load(path):\n    return os.path.exists(path)\n"
    )
    git(repo_path, "add", ".")
    git(repo_path, "commit", "-m", "Initial commit")

    yield repo_path


@pytest.fixture
def feature_branch(temp_git_repo: Path) -> Path:
    """A ``feature`` branch that edits app.py and adds util.py; main stays checked out."""
    git(temp_git_repo, "checkout", "-b", "feature")
    (temp_git_repo / "app.py").write_text(
        "import os\n\n\ndef load(path):\n    return os.path.isfile(path)\n"
    )
    (temp_git_repo / "util.py").write_text("def slug(text):\n    return text.lower()\n")
    git(temp_git_repo, "add", ".")
    git(temp_git_repo, "commit", "-m", "Feature work")
    git(temp_git_repo, "checkout", "main")
    return temp_git_repo
