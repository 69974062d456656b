"""
Review orchestration: split, dispatch, merge and reconcile.
"""

from .models import (
    AnalysisOutcome,
    Category,
    ChangeSet,
    Finding,
    PostingSummary,
    RepositoryRef,
    ReviewRequest,
    Severity,
)

__all__ = [
    "AnalysisOutcome",
    "Category",
    "ChangeSet",
    "Finding",
    "PostingSummary",
    "RepositoryRef",
    "ReviewRequest",
    "Severity",
]
