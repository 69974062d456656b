"""
Error taxonomy for review-forge.

Component-local failures are absorbed where a fallback exists; only
configuration violations and total failures cross the outward boundary.
"""


class ReviewForgeError(Exception):
    """Base class for all review-forge errors."""


class ConfigurationError(ReviewForgeError):
    """Repository configuration violates an invariant. Raised before a run starts."""


class MethodUnavailableError(ReviewForgeError):
    """A retrieval method failed as a unit (index down, embedding call failed)."""

    def __init__(self, method: str, reason: str):
        super().__init__(f"{method} search unavailable: {reason}")
        self.method = method
        self.reason = reason


class RetrievalError(ReviewForgeError):
    """Retrieval failed and no fallback was configured."""


class CompletionError(ReviewForgeError):
    """The completion API returned an error or an unreadable response."""


class CommentHostError(ReviewForgeError):
    """The comment-posting API rejected a call."""


class SourceHostError(ReviewForgeError):
    """The change set or file content could not be read from the source host."""
