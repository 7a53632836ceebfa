# ABOUTME: Drift monitor re-checking the live state against the last compiled desired set
# ABOUTME: Reports drift, and with self-heal corrects it without recompiling

"""Drift Monitor."""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING

import structlog

from gitops_reconciler.models import DeltaKind, DriftReport, SyncPhase
from gitops_reconciler.utils.logging import set_correlation_id

if TYPE_CHECKING:
    from gitops_reconciler.controller import ScopeController
    from gitops_reconciler.utils.logging import AuditLogger

logger = structlog.get_logger(__name__)


class DriftMonitor:
    """
    Periodic observe + diff for one scope, independent of source activity.

    Differences found while a sync holds the scope lock are that sync's
    business and are not reported. An observation failure counts as drift:
    the object cannot be shown to match.
    """

    def __init__(self, controller: ScopeController, audit_logger: AuditLogger | None = None) -> None:
        self._controller = controller
        self._audit = audit_logger

    async def check(self) -> DriftReport | None:
        """
        Run one drift check.

        Returns:
            The report, or None when skipped (sync active, nothing compiled yet).
        """
        controller = self._controller
        state = controller.state
        desired = state.desired
        if desired is None or state.syncing:
            logger.debug("Drift check skipped", scope=controller.name, syncing=state.syncing)
            return None

        deltas = await controller.observe_and_diff(desired)
        if state.syncing:
            # A sync started while we observed; its result supersedes ours
            return None

        drift = tuple(d for d in deltas if d.pending or d.kind == DeltaKind.UNKNOWN)
        if not drift:
            report = DriftReport(scope=controller.name, revision_id=desired.revision_id, deltas=())
            state.last_drift = report
            logger.debug("No drift", scope=controller.name)
            return report

        logger.warning(
            "Drift detected",
            scope=controller.name,
            revision=desired.revision_id[:8],
            objects=[d.describe() for d in drift],
        )
        if self._audit:
            self._audit.drift_detected(controller.name, desired.revision_id, [str(d.key) for d in drift])

        healed = False
        if controller.config.policy.self_heal:
            result = await controller.heal(desired)
            healed = result is not None and result.phase == SyncPhase.SUCCEEDED
            logger.info(
                "Self-heal pass finished",
                scope=controller.name,
                phase=result.phase.value if result else None,
                healed=healed,
            )

        report = DriftReport(
            scope=controller.name,
            revision_id=desired.revision_id,
            deltas=drift,
            healed=healed,
        )
        state.last_drift = report
        return report

    async def run(self, stop_event: asyncio.Event) -> None:
        """Check every `drift_interval` seconds until `stop_event` is set."""
        interval = self._controller.config.policy.drift_interval
        while not stop_event.is_set():
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            if stop_event.is_set():
                break
            set_correlation_id("")
            try:
                await self.check()
            except Exception:  # noqa: BLE001 - a failed check is retried next interval
                logger.exception("Drift check failed", scope=self._controller.name)
