# ABOUTME: Per-scope reconciliation controller and the manager running all scopes
# ABOUTME: One loop per scope: poll, compile, observe, diff, apply, strictly in that order

"""
Scope controller and manager.

=============================================================================
OWNERSHIP
=============================================================================

Each ScopeController owns its ScopeState: revision pointer, last good
desired set, history, approval and lock. Nothing in it is shared with other
scopes, so scopes reconcile fully in parallel without coordination.

=============================================================================
ONE CYCLE
=============================================================================

    lock ──> poll source ──> compile (new revision only)
         ──> observe ──> diff ──> execute ──> record ──> unlock

- Source unavailable: the previous revision and desired set stay in use.
- Compile failure: the last good desired set stays in use.
- Nothing compiled yet: the cycle ends with status Unknown.

The drift monitor and operator actions take the same lock, so only one
pass per scope mutates the target at a time.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

from gitops_reconciler.compiler import DesiredStateCompiler
from gitops_reconciler.diff import compute_diff
from gitops_reconciler.drift import DriftMonitor
from gitops_reconciler.errors import CompileError, ReconcilerError, SourceUnavailable
from gitops_reconciler.executor import SyncExecutor
from gitops_reconciler.health import HealthChecker
from gitops_reconciler.models import Approval, SyncPhase, SyncResult, SyncStatus, utcnow
from gitops_reconciler.observer import ObservedStateReader
from gitops_reconciler.source import SourceTracker
from gitops_reconciler.utils.client import SourceClient, TargetClient
from gitops_reconciler.utils.logging import set_correlation_id

if TYPE_CHECKING:
    from collections.abc import Callable

    from gitops_reconciler.config import ControllerSettings, ScopeConfig
    from gitops_reconciler.models import DeltaSet, DesiredSet, DriftReport, Revision
    from gitops_reconciler.utils.logging import AuditLogger

logger = structlog.get_logger(__name__)

APPLIED_PHASES = frozenset({SyncPhase.SUCCEEDED, SyncPhase.PARTIALLY_FAILED, SyncPhase.CANCELLED})


@dataclass
class ScopeState:
    """Everything one scope remembers between cycles."""

    history_limit: int = 50
    revision: Revision | None = None
    desired: DesiredSet | None = None
    compile_error: str | None = None
    source_error: str | None = None
    approval: Approval | None = None
    last_drift: DriftReport | None = None
    # Namespaces and kinds ever declared, so pruning still finds objects
    # whose whole kind or namespace was removed from the source
    known_namespaces: set[str] = field(default_factory=set)
    known_kinds: set[str] = field(default_factory=set)
    history: deque[SyncResult] = field(init=False)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    def __post_init__(self) -> None:
        self.history = deque(maxlen=self.history_limit)

    @property
    def last_result(self) -> SyncResult | None:
        return self.history[-1] if self.history else None

    @property
    def syncing(self) -> bool:
        return self.lock.locked()


class ScopeController:
    """Reconciles one scope: one source path, one environment, one target."""

    def __init__(
        self,
        config: ScopeConfig,
        source_client: SourceClient,
        target_client: TargetClient,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        self.config = config
        self.state = ScopeState(history_limit=config.history_limit)
        self._audit = audit_logger
        self._tracker = SourceTracker(
            source_client,
            config.source,
            max_attempts=config.source_retry_attempts,
        )
        self._compiler = DesiredStateCompiler(default_namespace=config.target.default_namespace)
        self._observer = ObservedStateReader(
            target_client,
            config.environment,
            max_workers=config.max_workers,
            timeout=config.observe_timeout,
        )
        self._executor = SyncExecutor(
            target_client,
            config.policy,
            HealthChecker(target_client, request_timeout=config.observe_timeout),
            audit_logger=audit_logger,
            max_workers=config.max_workers,
            apply_timeout=config.apply_timeout,
        )
        self.drift_monitor = DriftMonitor(self, audit_logger=audit_logger)

    @property
    def name(self) -> str:
        return self.config.name

    # -------------------------------------------------------------------------
    # PIPELINE STEPS
    # -------------------------------------------------------------------------

    async def _refresh_desired(self) -> None:
        try:
            revision = await self._tracker.poll()
        except SourceUnavailable as e:
            self.state.source_error = str(e)
            logger.warning("Source unavailable; keeping previous revision", error=str(e))
            return
        self.state.source_error = None

        if revision is None:
            return
        self.state.revision = revision

        try:
            desired = self._compiler.compile(revision, self.config.environment)
        except CompileError as e:
            self.state.compile_error = str(e)
            logger.error(
                "Compile failed; keeping last good desired state",
                revision=revision.short_id,
                error=str(e),
            )
            if self._audit:
                self._audit.compile_failed(self.name, revision.id, str(e))
            return

        self.state.compile_error = None
        self.state.desired = desired
        self.state.known_namespaces.update(desired.namespaces())
        self.state.known_kinds.update(desired.kinds())

    async def observe_and_diff(self, desired: DesiredSet) -> DeltaSet:
        """Observe the live counterparts of `desired` and classify every key."""
        policy = self.config.policy
        prune_namespaces = None
        if policy.prune:
            prune_namespaces = self.state.known_namespaces | set(desired.namespaces())
        observed = await self._observer.observe(
            desired.keys(),
            prune_namespaces=prune_namespaces,
            kinds=self.state.known_kinds | set(desired.kinds()),
        )
        for warning in observed.warnings:
            logger.warning("Observation incomplete", detail=warning)
        return compute_diff(
            desired,
            observed,
            prune=policy.prune,
            managed_fields=policy.managed_fields,
            unordered_fields=policy.unordered_fields,
        )

    async def _apply(
        self,
        desired: DesiredSet,
        deltas: DeltaSet,
        *,
        trigger: str,
        dry_run: bool = False,
    ) -> SyncResult:
        approval = self.state.approval
        result = await self._executor.execute(
            self.name,
            desired,
            deltas,
            approval=approval,
            cancel_event=self.state.cancel_event,
            trigger=trigger,
            dry_run=dry_run,
        )
        if (
            approval is not None
            and approval.revision_id == desired.revision_id
            and result.phase in APPLIED_PHASES
            and self._executor.requires_approval(deltas)
        ):
            logger.info("Approval consumed", revision=approval.revision_id[:8])
            self.state.approval = None
        return result

    def requires_approval(self, deltas: DeltaSet) -> bool:
        return self._executor.requires_approval(deltas)

    def _record(self, result: SyncResult) -> SyncResult:
        self.state.history.append(result)
        return result

    def _no_desired_state(self, trigger: str) -> SyncResult:
        reason = self.state.compile_error or self.state.source_error or "no revision fetched yet"
        result = SyncResult(
            scope=self.name,
            revision_id=self.state.revision.id if self.state.revision else None,
            phase=SyncPhase.PENDING,
            status=SyncStatus.UNKNOWN,
            trigger=trigger,
            message=f"no desired state: {reason}",
            finished_at=utcnow(),
        )
        logger.warning("No desired state to reconcile", reason=reason)
        return result

    # -------------------------------------------------------------------------
    # OPERATIONS
    # -------------------------------------------------------------------------

    async def reconcile_once(
        self,
        trigger: str = "interval",
        force: bool = False,
        dry_run: bool = False,
    ) -> SyncResult:
        """
        Run one full cycle under the scope lock.

        Args:
            trigger: Recorded on the result ("interval", "manual", ...).
            force: Apply even when automated sync is off.
            dry_run: Compute everything, apply nothing.
        """
        async with self.state.lock:
            set_correlation_id("")
            with structlog.contextvars.bound_contextvars(scope=self.name):
                self.state.cancel_event.clear()
                await self._refresh_desired()

                desired = self.state.desired
                if desired is None:
                    return self._record(self._no_desired_state(trigger))

                deltas = await self.observe_and_diff(desired)

                if not self.config.policy.automated and not force and not dry_run:
                    result = self._executor.report(
                        self.name,
                        desired,
                        deltas,
                        reason="automated sync disabled",
                        trigger=trigger,
                    )
                else:
                    result = await self._apply(desired, deltas, trigger=trigger, dry_run=dry_run)
                return self._record(result)

    async def heal(self, desired: DesiredSet) -> SyncResult | None:
        """
        Correct drift from an already compiled desired set.

        Returns None when a sync holds the lock; that sync corrects the drift.
        """
        if self.state.lock.locked():
            return None
        async with self.state.lock:
            with structlog.contextvars.bound_contextvars(scope=self.name):
                self.state.cancel_event.clear()
                deltas = await self.observe_and_diff(desired)
                result = await self._apply(desired, deltas, trigger="self-heal")
                return self._record(result)

    async def force_sync(self, dry_run: bool = False) -> SyncResult:
        """Reconcile now, even when automated sync is disabled."""
        return await self.reconcile_once(trigger="manual", force=True, dry_run=dry_run)

    def approve(self, revision_id: str | None = None, approved_by: str = "operator") -> Approval:
        """
        Record an approval for `revision_id` (default: the current desired revision).

        The approval takes effect on the next pass and is consumed by it.

        Raises:
            ReconcilerError: If nothing has been compiled yet.
        """
        if revision_id is None:
            if self.state.desired is None:
                raise ReconcilerError(f"scope '{self.name}' has no compiled revision to approve")
            revision_id = self.state.desired.revision_id

        approval = Approval(revision_id=revision_id, approved_by=approved_by)
        self.state.approval = approval
        logger.info("Sync approved", scope=self.name, revision=revision_id[:8], approved_by=approved_by)
        return approval

    def cancel(self) -> bool:
        """Request cancellation of the running pass. False when nothing is running."""
        if not self.state.syncing:
            return False
        self.state.cancel_event.set()
        logger.info("Cancellation requested", scope=self.name)
        return True

    def history(self, limit: int | None = None) -> list[SyncResult]:
        """Recorded results, newest first."""
        results = list(reversed(self.state.history))
        return results[:limit] if limit is not None else results

    async def preview(self) -> DeltaSet:
        """
        Observe and diff against the last compiled desired state without applying.

        Raises:
            ReconcilerError: If nothing has been compiled yet.
        """
        desired = self.state.desired
        if desired is None:
            raise ReconcilerError(f"scope '{self.name}' has no compiled desired state yet")
        return await self.observe_and_diff(desired)

    def status(self) -> dict[str, Any]:
        """Point-in-time snapshot for the operator surface."""
        state = self.state
        last = state.last_result
        policy = self.config.policy
        return {
            "scope": self.name,
            "environment": self.config.environment,
            "source": f"{self.config.source.repo}@{self.config.source.branch}:{self.config.source.path or '/'}",
            "revision": state.revision.id if state.revision else None,
            "desired_revision": state.desired.revision_id if state.desired else None,
            "desired_objects": len(state.desired) if state.desired else 0,
            "status": last.status.value if last else SyncStatus.UNKNOWN.value,
            "phase": last.phase.value if last else None,
            "last_sync": last.summary() if last else None,
            "syncing": state.syncing,
            "compile_error": state.compile_error,
            "source_error": state.source_error,
            "approval": (
                {"revision": state.approval.revision_id, "approved_by": state.approval.approved_by}
                if state.approval
                else None
            ),
            "drift": (
                {
                    "drifted": state.last_drift.drifted,
                    "objects": len(state.last_drift.deltas),
                    "healed": state.last_drift.healed,
                    "detected_at": state.last_drift.detected_at.isoformat(),
                }
                if state.last_drift
                else None
            ),
            "policy": {
                "automated": policy.automated,
                "prune": policy.prune,
                "self_heal": policy.self_heal,
                "manual_approval_required": policy.manual_approval_required,
            },
        }

    # -------------------------------------------------------------------------
    # LOOP
    # -------------------------------------------------------------------------

    async def run(self, stop_event: asyncio.Event) -> None:
        """Reconcile every `sync_interval` seconds until `stop_event` is set."""
        logger.info("Scope loop started", scope=self.name, interval=self.config.sync_interval)
        while not stop_event.is_set():
            try:
                await self.reconcile_once()
            except Exception:  # noqa: BLE001 - one bad cycle must not end the scope's loop
                logger.exception("Reconciliation cycle failed", scope=self.name)
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(stop_event.wait(), timeout=self.config.sync_interval)
        logger.info("Scope loop stopped", scope=self.name)


# =============================================================================
# MANAGER
# =============================================================================

def default_clients(config: ScopeConfig) -> tuple[SourceClient, TargetClient]:
    return (
        SourceClient(config.source, timeout=config.fetch_timeout),
        TargetClient(config.target, timeout=config.apply_timeout),
    )


class ReconcilerManager:
    """
    Runs every configured scope.

    Each scope gets its own clients, its own controller, one sync loop and
    one drift loop.
    """

    def __init__(
        self,
        settings: ControllerSettings,
        audit_logger: AuditLogger | None = None,
        client_factory: Callable[[ScopeConfig], tuple[SourceClient, TargetClient]] = default_clients,
    ) -> None:
        self._settings = settings
        self._audit = audit_logger
        self._client_factory = client_factory
        self._controllers: dict[str, ScopeController] = {}
        self._tasks: list[asyncio.Task[None]] = []
        self._stop_event = asyncio.Event()
        self._stack = contextlib.AsyncExitStack()

    @property
    def scopes(self) -> list[str]:
        return sorted(self._controllers)

    def get(self, name: str) -> ScopeController | None:
        return self._controllers.get(name)

    async def start(self, run_loops: bool = True) -> None:
        """Open clients and build a controller per scope, then start the loops."""
        self._stop_event.clear()
        for config in self._settings.scopes:
            source_client, target_client = self._client_factory(config)
            await self._stack.enter_async_context(source_client)
            await self._stack.enter_async_context(target_client)
            controller = ScopeController(config, source_client, target_client, self._audit)
            self._controllers[config.name] = controller
            logger.info(
                "Scope configured",
                scope=config.name,
                environment=config.environment,
                target=config.target.url,
            )

        if not run_loops:
            return
        for name, controller in self._controllers.items():
            self._tasks.append(
                asyncio.create_task(controller.run(self._stop_event), name=f"sync:{name}")
            )
            self._tasks.append(
                asyncio.create_task(
                    controller.drift_monitor.run(self._stop_event), name=f"drift:{name}"
                )
            )

    async def stop(self) -> None:
        """Stop the loops, cancelling running passes at their next checkpoint, then close clients."""
        self._stop_event.set()
        for controller in self._controllers.values():
            controller.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks)
            self._tasks.clear()
        await self._stack.aclose()
        self._stack = contextlib.AsyncExitStack()
        logger.info("Reconciler stopped", scopes=len(self._controllers))
