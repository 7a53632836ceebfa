# ABOUTME: Observed-state reader fetching live objects through a bounded worker pool
# ABOUTME: Per-object failures are annotated, never fatal to the whole read

"""Observed-State Reader."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import structlog

from gitops_reconciler.compiler import managed_selector
from gitops_reconciler.models import ObjectKey, ObservedObject, ObservedSet

if TYPE_CHECKING:
    from collections.abc import Iterable

    from gitops_reconciler.utils.client import TargetClient

logger = structlog.get_logger(__name__)


def _describe_failure(exc: BaseException) -> str:
    if isinstance(exc, TimeoutError):
        return "timed out"
    return str(exc) or type(exc).__name__


class ObservedStateReader:
    """
    Reads the live state for exactly the keys it is asked about.

    Reads run concurrently, at most `max_workers` at a time, each bounded by
    `timeout`. All reads finish before observe() returns, so the diff never
    sees a half-merged result.
    """

    def __init__(
        self,
        client: TargetClient,
        environment: str,
        max_workers: int = 8,
        timeout: float = 10.0,
    ) -> None:
        self._client = client
        self._environment = environment
        self._max_workers = max_workers
        self._timeout = timeout

    async def observe(
        self,
        keys: Iterable[ObjectKey],
        prune_namespaces: Iterable[str] | None = None,
        kinds: Iterable[str] | None = None,
    ) -> ObservedSet:
        """
        Observe `keys`, plus managed objects in `prune_namespaces` when given.

        Args:
            keys: Identity keys to read.
            prune_namespaces: Namespaces to list for managed objects that are
                no longer declared. None skips discovery.
            kinds: Kinds to list during discovery (defaults to the kinds of `keys`).
        """
        keys = sorted(set(keys))
        result = ObservedSet()
        semaphore = asyncio.Semaphore(self._max_workers)

        async def read(key: ObjectKey) -> None:
            async with semaphore:
                try:
                    manifest = await asyncio.wait_for(
                        self._client.get_object(key.kind, key.namespace, key.name),
                        timeout=self._timeout,
                    )
                except Exception as e:  # noqa: BLE001 - recorded per object as an ObservationError
                    reason = _describe_failure(e)
                    logger.warning("Observation failed", object=str(key), error=reason)
                    result.errors[key] = reason
                    result.objects.pop(key, None)
                    return
            if manifest is None:
                result.missing.add(key)
                result.objects.pop(key, None)
            else:
                result.objects[key] = ObservedObject(key=key, manifest=manifest)

        async def discover(namespace: str, kind: str) -> None:
            async with semaphore:
                try:
                    items = await asyncio.wait_for(
                        self._client.list_objects(
                            kind,
                            namespace,
                            label_selector=managed_selector(self._environment),
                        ),
                        timeout=self._timeout,
                    )
                except Exception as e:  # noqa: BLE001 - a failed listing only withholds prune candidates
                    reason = _describe_failure(e)
                    logger.warning("Listing failed", namespace=namespace, kind=kind, error=reason)
                    result.warnings.append(f"could not list {kind} in {namespace}: {reason}")
                    return
            for item in items:
                self._merge_discovered(result, kind, namespace, item)

        tasks = [read(key) for key in keys]
        if prune_namespaces is not None:
            discover_kinds = sorted(set(kinds if kinds is not None else (k.kind for k in keys)))
            tasks.extend(
                discover(namespace, kind)
                for namespace in sorted(set(prune_namespaces))
                for kind in discover_kinds
            )

        await asyncio.gather(*tasks)

        logger.debug(
            "Observed state",
            requested=len(keys),
            found=len(result.objects),
            missing=len(result.missing),
            errors=len(result.errors),
        )
        return result

    @staticmethod
    def _merge_discovered(result: ObservedSet, kind: str, namespace: str, item: dict[str, Any]) -> None:
        name = (item.get("metadata") or {}).get("name")
        if not name:
            return
        key = ObjectKey(kind=kind, namespace=namespace, name=str(name))
        # A direct read of the same key wins over the listing.
        if key in result.objects or key in result.errors or key in result.missing:
            return
        result.objects[key] = ObservedObject(key=key, manifest=item)
