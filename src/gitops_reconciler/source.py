# ABOUTME: Source tracker that turns branch heads into content-addressed revisions
# ABOUTME: Retries an unreachable endpoint with bounded exponential backoff

"""Source Tracker: resolve the tracked branch to a new Revision, or report no change."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from gitops_reconciler.errors import SourceUnavailable
from gitops_reconciler.models import Revision

if TYPE_CHECKING:
    from gitops_reconciler.config import SourceEndpoint
    from gitops_reconciler.utils.client import SourceClient

logger = structlog.get_logger(__name__)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, SourceUnavailable) and exc.retryable


class SourceTracker:
    """
    Tracks one branch/path of one repository.

    poll() returns a Revision only when the content under the path filter
    differs from the last revision it returned. A commit that touches only
    files outside the path is "no change". The pointer never advances on
    failure.
    """

    def __init__(
        self,
        client: SourceClient,
        endpoint: SourceEndpoint,
        max_attempts: int = 5,
        backoff_min: float = 1.0,
        backoff_max: float = 30.0,
    ) -> None:
        self._client = client
        self._endpoint = endpoint
        self._max_attempts = max_attempts
        self._backoff_min = backoff_min
        self._backoff_max = backoff_max
        self._last: Revision | None = None

    @property
    def last_revision(self) -> Revision | None:
        return self._last

    def reset(self) -> None:
        """Forget the last returned revision so the next poll reports it again."""
        self._last = None

    async def fetch(self) -> Revision:
        """Resolve the branch head and snapshot its tree, retrying transient failures."""
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=self._backoff_min, min=self._backoff_min, max=self._backoff_max),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(
                        "Retrying source fetch",
                        attempt=attempt.retry_state.attempt_number,
                        repo=self._endpoint.repo,
                    )
                commit_id = await self._client.resolve_branch(self._endpoint.branch)
                files = await self._client.fetch_tree(commit_id, self._endpoint.path)
        return Revision.build(commit_id, self._endpoint.branch, self._endpoint.path, files)

    async def poll(self) -> Revision | None:
        """
        Return the latest revision if its content changed, else None.

        Raises:
            SourceUnavailable: When the endpoint stays unreachable after all
                retries, or answers with a non-retryable error.
        """
        revision = await self.fetch()

        if self._last is not None and revision.digest == self._last.digest:
            logger.debug("No source change", revision=revision.short_id, repo=self._endpoint.repo)
            return None

        logger.info(
            "New source revision",
            revision=revision.short_id,
            previous=self._last.short_id if self._last else None,
            files=len(revision.files),
        )
        self._last = revision
        return revision
