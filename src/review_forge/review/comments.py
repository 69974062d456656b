"""
Comment hosts.

Where annotations are listed, deleted and posted. The reconciler only sees
the CommentHost protocol; ids are opaque strings owned by each host.
"""

import itertools
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
import structlog

from review_forge.errors import CommentHostError

from .models import FormattedComment, TriggerTag

logger = structlog.get_logger(__name__)


class CommentHost(Protocol):
    """Protocol for the comment-posting API."""

    async def list_existing(self, tag: TriggerTag) -> list[str]:
        """Ids of active annotations carrying ``tag``."""
        ...

    async def delete(self, comment_id: str) -> None:
        """Remove (or resolve) one annotation.

        Raises:
            CommentHostError: if the host rejects the call
        """
        ...

    async def post(self, comment: FormattedComment) -> str:
        """Publish one annotation and return its id.

        Raises:
            CommentHostError: if the host rejects the call
        """
        ...


@dataclass
class StoredComment:
    id: str
    comment: FormattedComment


class InMemoryCommentHost:
    """Comment host held in process memory; useful for dry runs and tests."""

    def __init__(self) -> None:
        self._comments: dict[str, StoredComment] = {}
        self._ids = itertools.count(1)
        self.fail_deletes: set[str] = set()
        self.fail_post_contents: set[str] = set()

    async def list_existing(self, tag: TriggerTag) -> list[str]:
        return [c.id for c in self._comments.values() if c.comment.tag == tag]

    async def delete(self, comment_id: str) -> None:
        if comment_id in self.fail_deletes or comment_id not in self._comments:
            raise CommentHostError(f"Cannot delete comment {comment_id}")
        del self._comments[comment_id]

    async def post(self, comment: FormattedComment) -> str:
        if any(marker in comment.content for marker in self.fail_post_contents):
            raise CommentHostError("Comment rejected")
        comment_id = str(next(self._ids))
        self._comments[comment_id] = StoredComment(comment_id, comment)
        return comment_id

    def active(self, tag: TriggerTag | None = None) -> list[FormattedComment]:
        """Currently posted comments, optionally for one tag, in post order."""
        return [
            c.comment for c in self._comments.values() if tag is None or c.comment.tag == tag
        ]


class AzureDevOpsCommentHost:
    """Pull request threads on Azure DevOps.

    Each thread carries its trigger key and bot identity as thread
    properties. "Deleting" closes the thread, which is how the host hides
    resolved review threads.
    """

    API_VERSION = "7.1"
    TRIGGER_PROPERTY = "ReviewForge.TriggerKey"
    BOT_PROPERTY = "ReviewForge.Bot"
    REQUEST_PROPERTY = "ReviewForge.RequestId"

    def __init__(
        self,
        organization_url: str,
        token: str,
        client: httpx.AsyncClient | None = None,
    ):
        self.organization_url = organization_url.rstrip("/")
        self._client = client or httpx.AsyncClient(auth=httpx.BasicAuth("", token), timeout=30.0)

    def _threads_url(self, project: str, repository: str, pull_request_id: int) -> str:
        return (
            f"{self.organization_url}/{project}/_apis/git/repositories/{repository}"
            f"/pullRequests/{pull_request_id}/threads"
        )

    async def list_existing(self, tag: TriggerTag) -> list[str]:
        url = self._threads_url(tag.repository.project, tag.repository.name, tag.pull_request_id)
        body = await self._request("GET", url)
        ids: list[str] = []
        for thread in body.get("value", []):
            if thread.get("isDeleted") or thread.get("status") == "closed":
                continue
            properties = thread.get("properties") or {}
            if (
                _property(properties, self.TRIGGER_PROPERTY) == tag.trigger_key
                and _property(properties, self.BOT_PROPERTY) == tag.bot_identity
            ):
                ids.append(
                    f"{tag.repository.project}/{tag.repository.name}/"
                    f"{tag.pull_request_id}/{thread['id']}"
                )
        return ids

    async def delete(self, comment_id: str) -> None:
        try:
            project, repository, pull_request_id, thread_id = comment_id.split("/")
        except ValueError as e:
            raise CommentHostError(f"Malformed thread id {comment_id!r}") from e
        url = f"{self._threads_url(project, repository, int(pull_request_id))}/{thread_id}"
        await self._request("PATCH", url, json={"status": "closed"})

    async def post(self, comment: FormattedComment) -> str:
        tag = comment.tag
        thread: dict[str, Any] = {
            "comments": [{"parentCommentId": 0, "content": comment.content, "commentType": 1}],
            "status": "active",
            "properties": {
                self.TRIGGER_PROPERTY: _string(tag.trigger_key),
                self.BOT_PROPERTY: _string(tag.bot_identity),
                self.REQUEST_PROPERTY: _string(comment.request_id),
            },
        }
        if comment.file_path:
            thread["threadContext"] = {"filePath": "/" + comment.file_path.lstrip("/")}
            if comment.line_number:
                position = {"line": comment.line_number, "offset": 1}
                thread["threadContext"]["rightFileStart"] = position
                thread["threadContext"]["rightFileEnd"] = position

        url = self._threads_url(tag.repository.project, tag.repository.name, tag.pull_request_id)
        body = await self._request("POST", url, json=thread)
        return (
            f"{tag.repository.project}/{tag.repository.name}/{tag.pull_request_id}/{body['id']}"
        )

    async def _request(self, method: str, url: str, json: dict | None = None) -> dict:
        try:
            response = await self._client.request(
                method, url, params={"api-version": self.API_VERSION}, json=json
            )
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            raise CommentHostError(
                f"{method} {url} returned {e.response.status_code}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise CommentHostError(f"{method} {url} failed: {e}") from e

    async def aclose(self) -> None:
        await self._client.aclose()


def _string(value: str) -> dict[str, str]:
    return {"$type": "System.String", "$value": value}


def _property(properties: dict[str, Any], name: str) -> str | None:
    value = properties.get(name)
    if isinstance(value, dict):
        return value.get("$value")
    return value
