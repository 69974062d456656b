"""
Data models for review orchestration.

Defines the change set, the packed completion requests, findings, the merged
analysis outcome and the posting summary.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from review_forge.context.models import CodeUnit, FileContext, Metadata


class Severity(str, Enum):
    """How severe is a finding."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """Higher is more severe."""
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.INFO: 0,
    Severity.WARNING: 1,
    Severity.ERROR: 2,
    Severity.CRITICAL: 3,
}


class Category(str, Enum):
    """What a finding is about."""

    GENERAL = "general"
    CODE_QUALITY = "code_quality"
    SECURITY = "security"
    PERFORMANCE = "performance"
    DOCUMENTATION = "documentation"
    TESTING = "testing"
    BEST_PRACTICES = "best_practices"


@dataclass(frozen=True)
class RepositoryRef:
    """Identity of a repository on the source host."""

    organization: str
    project: str
    name: str

    @property
    def key(self) -> str:
        return f"{self.organization}/{self.project}/{self.name}"


# Rules of git check-ref-format, plus no leading dash so a ref is never read
# as a command line option.
_BAD_REF = re.compile(r"^[-/]|\.\.|@\{|//|/\.|[\x00-\x20\x7f~^:?*\[\\]|[/.]$|\.lock(/|$)")


def check_ref(ref: str) -> str:
    """
    Return ``ref`` unchanged if it is a well-formed git branch reference.

    Raises:
        ValueError: if the ref is empty, malformed or starts with a dash
    """
    if not ref or ref == "@" or ref.startswith(".") or _BAD_REF.search(ref):
        raise ValueError(f"Invalid git ref: {ref!r}")
    return ref


def check_repository_name(name: str) -> str:
    """Return ``name`` unchanged if it is usable as a single directory name."""
    if name in ("", ".", "..") or "/" in name or "\\" in name or name.startswith("-"):
        raise ValueError(f"Invalid repository name: {name!r}")
    return name


@dataclass
class DiffHunk:
    """A single hunk within a diff."""

    old_start: int
    old_count: int
    new_start: int
    new_count: int
    content: str
    header: str = ""

    @property
    def new_end(self) -> int:
        return self.new_start + max(self.new_count, 1) - 1


@dataclass
class FileDiff:
    """Diff for a single file."""

    path: str
    old_path: str | None = None  # For renames
    status: str = "modified"  # added, deleted, modified, renamed
    hunks: list[DiffHunk] = field(default_factory=list)
    lines_added: int = 0
    lines_deleted: int = 0
    is_binary: bool = False
    raw_diff: str = ""

    @property
    def total_lines_changed(self) -> int:
        """Total lines affected."""
        return self.lines_added + self.lines_deleted

    def new_line_ranges(self) -> list[tuple[int, int]]:
        """1-based inclusive line ranges touched on the new side."""
        return [(h.new_start, h.new_end) for h in self.hunks if h.new_count > 0]


@dataclass
class ChangeSet:
    """The files and hunks of one pull request."""

    repository: RepositoryRef
    pull_request_id: int
    source_ref: str
    target_ref: str
    files: list[FileDiff] = field(default_factory=list)

    @property
    def paths(self) -> list[str]:
        return [f.path for f in self.files]

    @property
    def total_lines_changed(self) -> int:
        return sum(f.total_lines_changed for f in self.files)

    @property
    def reviewable_files(self) -> list[FileDiff]:
        return [f for f in self.files if not f.is_binary and f.status != "deleted"]


@dataclass
class DiffPiece:
    """A reviewable slice of one file's diff (whole file or a hunk group)."""

    file_path: str
    text: str
    token_count: int
    hunks: list[DiffHunk] = field(default_factory=list)
    part: int = 1
    parts: int = 1
    truncated: bool = False


@dataclass
class ReviewRequest:
    """One bounded completion request."""

    index: int
    pieces: list[DiffPiece] = field(default_factory=list)
    context_units: list[CodeUnit] = field(default_factory=list)
    context_files: list[FileContext] = field(default_factory=list)
    dropped_context: int = 0

    @property
    def file_paths(self) -> list[str]:
        return list(dict.fromkeys(p.file_path for p in self.pieces))

    @property
    def diff_tokens(self) -> int:
        return sum(p.token_count for p in self.pieces)

    @property
    def context_tokens(self) -> int:
        return sum(u.token_count for u in self.context_units) + sum(
            f.token_count for f in self.context_files
        )

    @property
    def total_tokens(self) -> int:
        return self.diff_tokens + self.context_tokens


@dataclass
class Finding:
    """A single review comment produced by the completion API."""

    content: str
    severity: Severity = Severity.INFO
    category: Category = Category.GENERAL
    file_path: str | None = None
    line_number: int | None = None
    suggestion: str | None = None
    confidence: float | None = None
    is_summary: bool = False
    request_index: int | None = None

    @property
    def is_line_comment(self) -> bool:
        return self.file_path is not None and self.line_number is not None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "content": self.content,
            "severity": self.severity.value,
            "category": self.category.value,
            "filePath": self.file_path,
            "lineNumber": self.line_number,
            "suggestion": self.suggestion,
            "confidence": self.confidence,
            "isSummary": self.is_summary,
        }


@dataclass
class RequestResult:
    """Result of one completion request; failures are kept, not raised."""

    index: int
    success: bool
    findings: list[Finding] = field(default_factory=list)
    summary: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    duration_ms: int = 0
    error: str | None = None
    timed_out: bool = False


@dataclass
class OutcomeMetadata:
    """Accounting for one analysis run."""

    analyzed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    files_analyzed: int = 0
    lines_analyzed: int = 0
    tokens_used: int = 0
    processing_ms: int = 0
    model: str = ""
    requests_issued: int = 0
    requests_failed: int = 0
    estimated_cost_cents: float = 0.0
    context_tokens: int = 0
    context_truncated: bool = False
    extra: Metadata = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "analyzedAt": self.analyzed_at.isoformat(),
            "filesAnalyzed": self.files_analyzed,
            "linesAnalyzed": self.lines_analyzed,
            "tokensUsed": self.tokens_used,
            "processingMs": self.processing_ms,
            "model": self.model,
            "requestsIssued": self.requests_issued,
            "requestsFailed": self.requests_failed,
            "estimatedCostCents": round(self.estimated_cost_cents, 4),
            "contextTokens": self.context_tokens,
            "contextTruncated": self.context_truncated,
            **self.extra,
        }


@dataclass
class AnalysisOutcome:
    """Merged result of one review run. A re-run creates a new outcome."""

    request_id: str
    trigger_key: str
    repository: RepositoryRef
    pull_request_id: int
    is_successful: bool
    findings: list[Finding] = field(default_factory=list)
    metadata: OutcomeMetadata = field(default_factory=OutcomeMetadata)
    error_message: str | None = None
    request_results: list[RequestResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "requestId": self.request_id,
            "triggerKey": self.trigger_key,
            "repository": self.repository.key,
            "pullRequestId": self.pull_request_id,
            "isSuccessful": self.is_successful,
            "errorMessage": self.error_message,
            "findings": [f.to_dict() for f in self.findings],
            "metadata": self.metadata.to_dict(),
        }


@dataclass(frozen=True)
class TriggerTag:
    """Reconciliation key: annotations with the same tag form one active set.

    The key is the trigger identity plus the posting bot's identity; the
    repository and pull request locate where the annotations live.
    """

    repository: RepositoryRef
    pull_request_id: int
    trigger_key: str
    bot_identity: str


@dataclass
class FormattedComment:
    """An annotation ready to post."""

    content: str
    tag: TriggerTag
    request_id: str
    severity: Severity = Severity.INFO
    category: Category = Category.GENERAL
    file_path: str | None = None
    line_number: int | None = None
    is_summary: bool = False


@dataclass
class PostingSummary:
    """Per-item counts from one reconcile pass."""

    request_id: str
    deleted: int = 0
    delete_failures: int = 0
    posted: int = 0
    post_failures: int = 0
    suppressed: int = 0
    capped: int = 0
    posted_ids: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    skipped_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "requestId": self.request_id,
            "deleted": self.deleted,
            "deleteFailures": self.delete_failures,
            "posted": self.posted,
            "postFailures": self.post_failures,
            "suppressed": self.suppressed,
            "capped": self.capped,
            "skippedReason": self.skipped_reason,
        }
