"""
Review triggers.

Webhook bodies are resolved once, at the boundary, into a closed tagged union
of pull-request and comment events. Everything downstream works with the
typed event and a TriggerContext.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, Literal, Union
from urllib.parse import urlparse

from pydantic import AfterValidator, BaseModel, Field, TypeAdapter

from review_forge.policy import WebhookPolicy

from .models import RepositoryRef, check_ref, check_repository_name

VALID_COMMANDS = frozenset({"review", "ai-review", "run-ai-review"})

COMMAND_LINE = re.compile(r"^/(?P<command>[\w-]+)(?:\s+(?P<params>.+))?$")
COMMAND_PARAM = re.compile(r"([\w-]+)=(\S+)")

PULL_REQUEST_EVENTS = {
    "git.pullrequest.created": "created",
    "git.pullrequest.updated": "updated",
    "git.pullrequest.merged": "merged",
}
COMMENT_EVENTS = frozenset(
    {"ms.vss-code.git-pullrequest-comment-event", "git.pullrequest.comment"}
)

GitRef = Annotated[str, AfterValidator(check_ref)]


class PullRequestAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    MERGED = "merged"


class RepositoryInfo(BaseModel):
    organization: str
    project: str
    name: Annotated[str, AfterValidator(check_repository_name)]

    def ref(self) -> RepositoryRef:
        return RepositoryRef(self.organization, self.project, self.name)


class PullRequestEvent(BaseModel):
    """A pull request was created, updated or merged."""

    kind: Literal["pull_request"] = "pull_request"
    action: PullRequestAction
    repository: RepositoryInfo
    pull_request_id: int = Field(gt=0)
    source_ref: GitRef
    target_ref: GitRef
    author: str | None = None
    changed_file_count: int | None = None


class CommentEvent(BaseModel):
    """A comment was posted on a pull request."""

    kind: Literal["comment"] = "comment"
    repository: RepositoryInfo
    pull_request_id: int = Field(gt=0)
    source_ref: GitRef
    target_ref: GitRef
    comment_id: int
    thread_id: int | None = None
    content: str
    author: str


TriggerEvent = Annotated[Union[PullRequestEvent, CommentEvent], Field(discriminator="kind")]
_event_adapter: TypeAdapter[PullRequestEvent | CommentEvent] = TypeAdapter(TriggerEvent)


@dataclass
class ReviewCommand:
    """A slash command found in a comment, e.g. ``/review focus=security``."""

    name: str
    parameters: dict[str, str] = field(default_factory=dict)


def parse_command(text: str) -> ReviewCommand | None:
    """Return the first recognised review command in ``text``, if any."""
    for raw in text.splitlines():
        match = COMMAND_LINE.match(raw.strip())
        if not match:
            continue
        name = match.group("command").lower()
        if name not in VALID_COMMANDS:
            continue
        params = dict(COMMAND_PARAM.findall(match.group("params") or ""))
        return ReviewCommand(name=name, parameters=params)
    return None


@dataclass
class TriggerContext:
    """Everything a review run needs to know about its trigger."""

    repository: RepositoryRef
    pull_request_id: int
    source_ref: GitRef
    target_ref: GitRef
    event: PullRequestEvent | CommentEvent
    command: ReviewCommand | None = None

    @property
    def trigger_key(self) -> str:
        """Stable identity of the logical trigger; re-runs share it."""
        origin = "command" if isinstance(self.event, CommentEvent) else "auto"
        return f"{self.repository.key}#pr{self.pull_request_id}:{origin}"

    @classmethod
    def from_event(
        cls, event: PullRequestEvent | CommentEvent, command: ReviewCommand | None = None
    ) -> "TriggerContext":
        return cls(
            repository=event.repository.ref(),
            pull_request_id=event.pull_request_id,
            source_ref=event.source_ref,
            target_ref=event.target_ref,
            event=event,
            command=command,
        )


@dataclass
class TriggerDecision:
    should_run: bool
    reason: str
    command: ReviewCommand | None = None


def parse_webhook(body: dict[str, Any]) -> PullRequestEvent | CommentEvent | None:
    """
    Resolve an Azure DevOps service-hook body into a typed trigger event.

    Returns:
        The event, or None for event types that never trigger a review

    Raises:
        ValueError: if a supported event type carries an invalid resource
    """
    event_type = body.get("eventType", "")
    resource = body.get("resource") or {}
    organization = _organization(body)

    if event_type in PULL_REQUEST_EVENTS:
        return _event_adapter.validate_python(
            {
                "kind": "pull_request",
                "action": PULL_REQUEST_EVENTS[event_type],
                **_pull_request_fields(resource, organization),
                "author": (resource.get("createdBy") or {}).get("uniqueName"),
                "changed_file_count": resource.get("changedFileCount"),
            }
        )

    if event_type in COMMENT_EVENTS:
        comment = resource.get("comment") or {}
        return _event_adapter.validate_python(
            {
                "kind": "comment",
                **_pull_request_fields(resource.get("pullRequest") or {}, organization),
                "comment_id": comment.get("id"),
                "thread_id": (resource.get("thread") or {}).get("id"),
                "content": comment.get("content", ""),
                "author": (comment.get("author") or {}).get("uniqueName", ""),
            }
        )

    return None


def decide(event: PullRequestEvent | CommentEvent, policy: WebhookPolicy) -> TriggerDecision:
    """Apply the repository's webhook policy to an event."""
    if isinstance(event, CommentEvent):
        command = parse_command(event.content)
        if command is None:
            return TriggerDecision(False, "Comment carries no review command")
        allowed = {u.lower() for u in policy.allowed_trigger_users}
        if allowed and event.author.lower() not in allowed:
            return TriggerDecision(False, f"User {event.author} may not trigger reviews")
        return TriggerDecision(True, f"Command /{command.name}", command)

    if event.action == PullRequestAction.MERGED:
        return TriggerDecision(False, "Merged pull requests are not reviewed")
    if policy.require_comment_trigger:
        return TriggerDecision(False, "Reviews start from a comment command")
    if event.action == PullRequestAction.CREATED and not policy.auto_review_on_create:
        return TriggerDecision(False, "Auto review on create is disabled")
    if event.action == PullRequestAction.UPDATED and not policy.auto_review_on_update:
        return TriggerDecision(False, "Auto review on update is disabled")
    if (
        event.changed_file_count is not None
        and event.changed_file_count > policy.max_files_for_auto_review
    ):
        return TriggerDecision(
            False,
            f"{event.changed_file_count} changed files exceed the auto review limit of "
            f"{policy.max_files_for_auto_review}",
        )
    return TriggerDecision(True, f"Pull request {event.action.value}")


def _pull_request_fields(resource: dict[str, Any], organization: str) -> dict[str, Any]:
    repository = resource.get("repository") or {}
    return {
        "repository": {
            "organization": organization,
            "project": (repository.get("project") or {}).get("name", ""),
            "name": repository.get("name", ""),
        },
        "pull_request_id": resource.get("pullRequestId"),
        "source_ref": resource.get("sourceRefName", ""),
        "target_ref": resource.get("targetRefName", ""),
    }


def _organization(body: dict[str, Any]) -> str:
    """Organization name from the hook's account container URL."""
    containers = body.get("resourceContainers") or {}
    base_url = (containers.get("account") or containers.get("collection") or {}).get(
        "baseUrl", ""
    )
    path = urlparse(base_url).path.strip("/")
    return path.split("/")[-1] if path else body.get("organization", "default")
