"""
Webhook and statistics routes.

Provides a FastAPI router that turns Azure DevOps pull request service hooks
into review runs, plus per-repository retrieval statistics and index builds.
"""

from typing import Optional

import structlog
from fastapi import APIRouter, HTTPException, Request

from review_forge import __version__
from review_forge.errors import ConfigurationError, SourceHostError
from review_forge.review.models import RepositoryRef
from review_forge.review.orchestrator import ReviewOrchestrator
from review_forge.review.triggers import TriggerContext, decide, parse_webhook

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["reviews"])

# Global orchestrator instance (set by application)
_orchestrator: Optional[ReviewOrchestrator] = None


def set_orchestrator(orchestrator: Optional[ReviewOrchestrator]) -> None:
    """Set the global orchestrator instance."""
    global _orchestrator
    _orchestrator = orchestrator


def get_orchestrator() -> ReviewOrchestrator:
    if _orchestrator is None:
        raise HTTPException(status_code=503, detail="Review service not initialized")
    return _orchestrator


@router.post("/webhooks/review")
async def handle_review_webhook(request: Request):
    """
    Handle a pull request or pull request comment service hook.

    The event is parsed, gated by the repository's webhook policy, reviewed
    and reconciled. Ignored events answer 200 with the reason.
    """
    orchestrator = get_orchestrator()

    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Body is not JSON")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")

    try:
        event = parse_webhook(body)
    except ValueError as e:
        logger.error("Failed to parse webhook payload", error=str(e))
        raise HTTPException(status_code=400, detail="Invalid payload")

    if event is None:
        event_type = body.get("eventType")
        logger.info("Ignoring unsupported event", event_type=event_type)
        return {"status": "ignored", "reason": f"Event type '{event_type}' not handled"}

    config = orchestrator.configs.effective(event.repository.ref())
    if not config.enabled:
        return {"status": "ignored", "reason": "Reviews are disabled for this repository"}

    decision = decide(event, config.webhook)
    if not decision.should_run:
        logger.info(
            "Webhook did not trigger a review",
            repository=event.repository.ref().key,
            pull_request=event.pull_request_id,
            reason=decision.reason,
        )
        return {"status": "ignored", "reason": decision.reason}

    trigger = TriggerContext.from_event(event, decision.command)
    logger.info(
        "Review triggered",
        repository=trigger.repository.key,
        pull_request=trigger.pull_request_id,
        reason=decision.reason,
    )

    try:
        outcome = await orchestrator.run_review(trigger)
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail=str(e))

    posting = await orchestrator.reconcile(outcome)
    return {
        "status": "completed" if outcome.is_successful else "failed",
        "outcome": outcome.to_dict(),
        "posting": posting.to_dict(),
    }


@router.get("/repositories/{organization}/{project}/{name}/stats")
async def repository_stats(organization: str, project: str, name: str):
    """Retrieval statistics and strategy recommendation for one repository."""
    orchestrator = get_orchestrator()
    repository = RepositoryRef(organization=organization, project=project, name=name)
    try:
        path = orchestrator.source.checkout_path(repository)
    except SourceHostError as e:
        raise HTTPException(status_code=400, detail=str(e))
    stats = await orchestrator.router.stats(path)
    return {"repository": repository.key, **stats.to_dict()}


@router.post("/repositories/{organization}/{project}/{name}/index")
async def index_repository(organization: str, project: str, name: str):
    """Embed the repository checkout for vector search."""
    orchestrator = get_orchestrator()
    repository = RepositoryRef(organization=organization, project=project, name=name)
    try:
        path = orchestrator.source.checkout_path(repository)
    except SourceHostError as e:
        raise HTTPException(status_code=400, detail=str(e))
    config = orchestrator.configs.effective(repository)
    if not config.query.enable_vector:
        return {"repository": repository.key, "status": "skipped", "embeddings": 0}

    failures = (await orchestrator.router.stats(path)).index_failures
    written = await orchestrator.router.index_repository(path, config.query)
    failed = (await orchestrator.router.stats(path)).index_failures > failures
    return {
        "repository": repository.key,
        "status": "failed" if failed else "indexed",
        "embeddings": written,
    }


@router.get("/health")
async def health():
    return {
        "status": "ready" if _orchestrator is not None else "not_initialized",
        "version": __version__,
    }
