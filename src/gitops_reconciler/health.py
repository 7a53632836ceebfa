# ABOUTME: Declared per-kind health conditions and the bounded polling loop that waits on them
# ABOUTME: Cancellation is honoured between polls; the loop never waits past its deadline

"""Health checks for applied objects."""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Any

import structlog

from gitops_reconciler.errors import HealthCheckTimeout

if TYPE_CHECKING:
    from gitops_reconciler.config import HealthCheckSpec
    from gitops_reconciler.models import ObjectKey
    from gitops_reconciler.utils.client import TargetClient

logger = structlog.get_logger(__name__)

_MISSING = object()


def read_path(manifest: dict[str, Any], dotted: str) -> Any:
    node: Any = manifest
    for part in dotted.split("."):
        if not isinstance(node, dict) or part not in node:
            return _MISSING
        node = node[part]
    return node


def describe(check: HealthCheckSpec) -> str:
    if check.equals_field is not None:
        return f"{check.field} == {check.equals_field}"
    return f"{check.field} == {check.equals!r}"


def is_healthy(manifest: dict[str, Any], check: HealthCheckSpec) -> bool:
    """Evaluate one condition against a live manifest. Missing fields are unhealthy."""
    actual = read_path(manifest, check.field)
    if actual is _MISSING:
        return False
    if check.equals_field is not None:
        expected = read_path(manifest, check.equals_field)
        return expected is not _MISSING and actual == expected
    # Compare as strings so "True" in a policy document matches True on the object
    return actual == check.equals or str(actual) == str(check.equals)


class HealthChecker:
    """Polls a live object until its health condition holds or the deadline passes."""

    def __init__(self, client: TargetClient, request_timeout: float = 10.0) -> None:
        self._client = client
        self._request_timeout = request_timeout

    async def wait_healthy(
        self,
        key: ObjectKey,
        check: HealthCheckSpec,
        cancel_event: asyncio.Event | None = None,
    ) -> bool:
        """
        Wait until `key` satisfies `check`.

        Returns:
            True when healthy, False when cancellation was requested first.

        Raises:
            HealthCheckTimeout: When the condition did not hold by the deadline.
        """
        started = time.monotonic()
        deadline = started + check.timeout_seconds

        while True:
            if cancel_event is not None and cancel_event.is_set():
                return False

            try:
                manifest = await asyncio.wait_for(
                    self._client.get_object(key.kind, key.namespace, key.name),
                    timeout=self._request_timeout,
                )
            except Exception as e:  # noqa: BLE001 - any read failure just means "not healthy yet"
                logger.debug("Health poll failed", object=str(key), error=str(e))
                manifest = None

            if manifest is not None and is_healthy(manifest, check):
                logger.debug("Object healthy", object=str(key), waited=time.monotonic() - started)
                return True

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise HealthCheckTimeout(key, describe(check), time.monotonic() - started)
            await asyncio.sleep(min(check.poll_interval_seconds, remaining))
