# ABOUTME: Sync executor applying a delta set under policy: approval gate, ordering, health
# ABOUTME: Creates/updates run first and concurrently; deletes only after they all succeeded

"""
Sync Executor.

=============================================================================
STATE MACHINE
=============================================================================

    Pending ──gate──> Blocked                 (approval required, none given)
       │
       └──> Applying ──> Succeeded            (every object applied or unchanged)
                    ├──> PartiallyFailed      (some object failed or could not be observed)
                    └──> Cancelled            (cancel seen before the delete phase)

=============================================================================
ORDERING
=============================================================================

1. creates + updates, concurrently; each checks for cancellation before it starts
2. health checks for what was written, bounded by each check's deadline
3. cancellation checkpoint
4. deletes, only if every create/update in step 1 succeeded

A write that was already issued is never abandoned. After a cancel, writes still
waiting for a worker are skipped and no delete runs.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import httpx
import structlog

from gitops_reconciler.errors import ApplyError, HealthCheckTimeout, TargetApiError
from gitops_reconciler.models import (
    DeltaKind,
    ObjectOutcome,
    ObjectResult,
    SyncPhase,
    SyncResult,
    SyncStatus,
    utcnow,
)

if TYPE_CHECKING:
    from gitops_reconciler.config import SyncPolicy
    from gitops_reconciler.health import HealthChecker
    from gitops_reconciler.models import Approval, Delta, DeltaSet, DesiredSet
    from gitops_reconciler.utils.client import TargetClient
    from gitops_reconciler.utils.logging import AuditLogger

logger = structlog.get_logger(__name__)

WRITE_KINDS = (DeltaKind.CREATE, DeltaKind.UPDATE)


def overall_status(objects: list[ObjectResult]) -> SyncStatus:
    """
    Collapse per-object results into one status.

    Precedence: OutOfSync (something pending did not land) > Degraded
    (landed but unhealthy) > Unknown (could not observe) > Synced.
    """
    if any(
        o.outcome == ObjectOutcome.FAILED
        or (o.outcome == ObjectOutcome.SKIPPED and o.action != DeltaKind.UNKNOWN)
        for o in objects
    ):
        return SyncStatus.OUT_OF_SYNC
    if any(o.healthy is False for o in objects):
        return SyncStatus.DEGRADED
    if any(o.action == DeltaKind.UNKNOWN for o in objects):
        return SyncStatus.UNKNOWN
    return SyncStatus.SYNCED


def settled_phase(objects: list[ObjectResult]) -> SyncPhase:
    """Final phase of a pass that ran to the end: any failed or unobservable object makes it partial."""
    if any(o.outcome == ObjectOutcome.FAILED or o.action == DeltaKind.UNKNOWN for o in objects):
        return SyncPhase.PARTIALLY_FAILED
    return SyncPhase.SUCCEEDED


class SyncExecutor:
    """Applies one delta set for one scope."""

    def __init__(
        self,
        client: TargetClient,
        policy: SyncPolicy,
        health_checker: HealthChecker,
        audit_logger: AuditLogger | None = None,
        max_workers: int = 8,
        apply_timeout: float = 30.0,
    ) -> None:
        self._client = client
        self._policy = policy
        self._health = health_checker
        self._audit = audit_logger
        self._max_workers = max_workers
        self._apply_timeout = apply_timeout

    def requires_approval(self, deltas: DeltaSet) -> bool:
        return any(self._policy.requires_approval_for(d.key.namespace) for d in deltas.pending)

    async def execute(
        self,
        scope: str,
        desired: DesiredSet,
        deltas: DeltaSet,
        *,
        approval: Approval | None = None,
        cancel_event: asyncio.Event | None = None,
        trigger: str = "interval",
        dry_run: bool = False,
    ) -> SyncResult:
        """Run one pass. Never raises for per-object failures; they land in the result."""
        result = SyncResult(scope=scope, revision_id=desired.revision_id, trigger=trigger)
        log = logger.bind(scope=scope, revision=desired.revision_id[:8])
        cancel_event = cancel_event or asyncio.Event()

        for delta in deltas.unknown:
            result.objects.append(
                ObjectResult(delta.key, delta.kind, ObjectOutcome.SKIPPED, reason=delta.reason)
            )

        pending = deltas.pending
        if not pending:
            return self._finish(result, settled_phase(result.objects), "nothing to apply")

        if self.requires_approval(deltas) and (
            approval is None or approval.revision_id != desired.revision_id
        ):
            for delta in pending:
                result.objects.append(
                    ObjectResult(delta.key, delta.kind, ObjectOutcome.SKIPPED, "awaiting manual approval")
                )
            log.info("Sync blocked pending approval", pending=len(pending))
            if self._audit:
                self._audit.sync_blocked(scope, "manual approval required", len(pending))
            return self._finish(result, SyncPhase.BLOCKED, "awaiting manual approval")

        if dry_run:
            for delta in pending:
                result.objects.append(
                    ObjectResult(delta.key, delta.kind, ObjectOutcome.SKIPPED, "dry run")
                )
            return self._finish(result, SyncPhase.PENDING, "dry run")

        result.phase = SyncPhase.APPLYING
        log.info("Applying changes", pending=len(pending))
        semaphore = asyncio.Semaphore(self._max_workers)

        # Phase 1: creates and updates
        writes = [d for d in pending if d.kind in WRITE_KINDS]
        write_results = list(
            await asyncio.gather(
                *(self._apply_one(scope, d, semaphore, cancel_event) for d in writes)
            )
        )

        # Phase 2: health of what was written
        write_results = list(
            await asyncio.gather(*(self._check_health(r, cancel_event) for r in write_results))
        )
        result.objects.extend(write_results)

        deletes = [d for d in pending if d.kind == DeltaKind.DELETE]

        # Checkpoint: nothing has been deleted yet
        if cancel_event.is_set():
            for delta in deletes:
                result.objects.append(
                    ObjectResult(delta.key, delta.kind, ObjectOutcome.SKIPPED, "cancelled before prune")
                )
            log.info("Sync cancelled before delete phase", skipped_deletes=len(deletes))
            return self._finish(result, SyncPhase.CANCELLED, "cancelled")

        # Phase 3: deletes, only once every write landed
        failed_writes = [r for r in write_results if r.outcome == ObjectOutcome.FAILED]
        if deletes and failed_writes:
            reason = f"prune deferred: {len(failed_writes)} create/update failed"
            for delta in deletes:
                result.objects.append(ObjectResult(delta.key, delta.kind, ObjectOutcome.SKIPPED, reason))
        elif deletes:
            result.objects.extend(
                await asyncio.gather(*(self._apply_one(scope, d, semaphore) for d in deletes))
            )

        return self._finish(result, settled_phase(result.objects), "")

    def report(
        self,
        scope: str,
        desired: DesiredSet,
        deltas: DeltaSet,
        *,
        reason: str,
        trigger: str = "interval",
    ) -> SyncResult:
        """Describe what a pass would change without touching the target."""
        result = SyncResult(scope=scope, revision_id=desired.revision_id, trigger=trigger)
        for delta in deltas.unknown:
            result.objects.append(
                ObjectResult(delta.key, delta.kind, ObjectOutcome.SKIPPED, reason=delta.reason)
            )
        pending = deltas.pending
        for delta in pending:
            result.objects.append(ObjectResult(delta.key, delta.kind, ObjectOutcome.SKIPPED, reason))
        if not pending:
            return self._finish(result, settled_phase(result.objects), "nothing to apply")
        return self._finish(result, SyncPhase.PENDING, reason)

    async def _apply_one(
        self,
        scope: str,
        delta: Delta,
        semaphore: asyncio.Semaphore,
        cancel_event: asyncio.Event | None = None,
    ) -> ObjectResult:
        async with semaphore:
            if cancel_event is not None and cancel_event.is_set():
                return ObjectResult(delta.key, delta.kind, ObjectOutcome.SKIPPED, "cancelled before apply")
            try:
                await asyncio.wait_for(self._write(delta), timeout=self._apply_timeout)
            except TimeoutError:
                error = ApplyError(delta.key, delta.kind.value, f"timed out after {self._apply_timeout:g}s")
            except (TargetApiError, httpx.HTTPError) as e:
                error = ApplyError(delta.key, delta.kind.value, str(e) or type(e).__name__)
            except Exception as e:  # noqa: BLE001 - recorded per object as an ApplyError
                logger.exception("Unexpected apply error", scope=scope, object=str(delta.key))
                error = ApplyError(delta.key, delta.kind.value, f"{type(e).__name__}: {e}")
            else:
                logger.info("Applied", scope=scope, action=delta.kind.value, object=str(delta.key))
                if self._audit:
                    self._audit.object_applied(scope, delta)
                return ObjectResult(delta.key, delta.kind, ObjectOutcome.APPLIED)

        logger.warning("Apply failed", scope=scope, error=str(error))
        if self._audit:
            self._audit.object_failed(scope, delta, str(error))
        return ObjectResult(delta.key, delta.kind, ObjectOutcome.FAILED, reason=str(error))

    async def _write(self, delta: Delta) -> None:
        if delta.kind == DeltaKind.CREATE and delta.desired is not None:
            await self._client.create_object(delta.desired.manifest)
        elif delta.kind == DeltaKind.UPDATE and delta.desired is not None:
            await self._client.update_object(delta.desired.manifest)
        elif delta.kind == DeltaKind.DELETE:
            await self._client.delete_object(delta.key.kind, delta.key.namespace, delta.key.name)
        else:
            raise ValueError(f"cannot apply {delta.kind.value} for {delta.key}")

    async def _check_health(self, applied: ObjectResult, cancel_event: asyncio.Event) -> ObjectResult:
        if applied.outcome != ObjectOutcome.APPLIED:
            return applied
        check = self._policy.health_check_for(applied.key.kind)
        if check is None:
            return applied
        try:
            healthy = await self._health.wait_healthy(applied.key, check, cancel_event)
        except HealthCheckTimeout as e:
            logger.warning("Object degraded", object=str(applied.key), error=str(e))
            return ObjectResult(applied.key, applied.action, applied.outcome, reason=str(e), healthy=False)
        # Cancelled while waiting: health is simply not known
        return ObjectResult(applied.key, applied.action, applied.outcome, healthy=True if healthy else None)

    @staticmethod
    def _finish(result: SyncResult, phase: SyncPhase, message: str) -> SyncResult:
        result.phase = phase
        result.status = overall_status(result.objects)
        result.message = message
        result.finished_at = utcnow()
        logger.info(
            "Sync finished",
            scope=result.scope,
            phase=phase.value,
            status=result.status.value,
            applied=len(result.applied),
            failed=len(result.failed),
        )
        return result
