# ABOUTME: FastMCP server initialization and main entry point
# ABOUTME: Runs the reconciliation loops and exposes status, preview and operator actions

"""GitOps Reconciler MCP Server - operator surface for the reconciliation loops."""

from __future__ import annotations

import sys
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import structlog
import yaml
from mcp.server.fastmcp import Context, FastMCP
from pydantic import BaseModel, Field

from gitops_reconciler.config import ControllerSettings, load_settings
from gitops_reconciler.controller import ReconcilerManager, ScopeController
from gitops_reconciler.errors import ReconcilerError
from gitops_reconciler.models import DeltaKind, SyncResult
from gitops_reconciler.utils.logging import AuditLogger, configure_logging, set_correlation_id
from gitops_reconciler.utils.safety import ConfirmationRequired, SafetyGuard, mask_sensitive

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from gitops_reconciler.models import Delta

MCPContext = Context[Any, Any]
logger = structlog.get_logger(__name__)

# Global state (initialized in lifespan)
_settings: ControllerSettings | None = None
_manager: ReconcilerManager | None = None
_safety_guard: SafetyGuard | None = None
_audit_logger: AuditLogger | None = None


@asynccontextmanager
async def lifespan(_server: FastMCP) -> AsyncIterator[dict[str, Any]]:
    """Manage server lifecycle: load config, start scope loops, stop them on shutdown."""
    global _settings, _manager, _safety_guard, _audit_logger

    _settings = load_settings()
    configure_logging(level=_settings.log_level, json_output=_settings.json_logs, stream=sys.stderr)
    logger.info("Starting GitOps reconciler", server=_settings.server_name, scopes=len(_settings.scopes))

    _safety_guard = SafetyGuard(_settings.security)
    _audit_logger = AuditLogger(_settings.security.audit_log)
    _manager = ReconcilerManager(_settings, audit_logger=_audit_logger)
    await _manager.start()

    try:
        yield {"settings": _settings, "manager": _manager}
    finally:
        await _manager.stop()
        _manager = None
        logger.info("GitOps reconciler stopped")


mcp = FastMCP("gitops-reconciler", lifespan=lifespan)


def get_manager() -> ReconcilerManager:
    """Get the running reconciler manager."""
    if not _manager:
        raise RuntimeError("Server not initialized")
    return _manager


def get_controller(name: str) -> ScopeController:
    """Get the controller for a scope."""
    controller = get_manager().get(name)
    if controller is None:
        available = get_manager().scopes
        raise ValueError(f"Unknown scope '{name}'. Available: {available}")
    return controller


def get_settings() -> ControllerSettings:
    """Get server settings."""
    if not _settings:
        raise RuntimeError("Server not initialized")
    return _settings


def get_safety_guard() -> SafetyGuard:
    """Get safety guard."""
    if not _safety_guard:
        raise RuntimeError("Server not initialized")
    return _safety_guard


def get_audit_logger() -> AuditLogger:
    """Get audit logger."""
    if not _audit_logger:
        raise RuntimeError("Server not initialized")
    return _audit_logger


def _request_id(ctx: MCPContext) -> str:
    return str(ctx.request_id) if hasattr(ctx, "request_id") else ""


def _format_result(result: SyncResult, verbose: bool = True) -> list[str]:
    started = result.started_at.strftime("%Y-%m-%d %H:%M:%S")
    lines = [
        f"[{started}] {result.phase.value} / {result.status.value} "
        f"revision={(result.revision_id or '-')[:8]} trigger={result.trigger}"
        + (f" ({result.message})" if result.message else "")
    ]
    if verbose:
        lines.extend(f"    {o.describe()}" for o in result.objects)
    return lines


def _format_delta(delta: Delta, show_manifests: bool, mask: bool) -> list[str]:
    lines = [f"  {delta.describe()}"]
    if show_manifests and delta.desired is not None and delta.kind in (DeltaKind.CREATE, DeltaKind.UPDATE):
        manifest = mask_sensitive(delta.desired.manifest) if mask else delta.desired.manifest
        rendered = yaml.safe_dump(manifest, sort_keys=True, default_flow_style=False)
        lines.extend(f"      {line}" for line in rendered.splitlines())
    return lines


async def _pending_deletes(controller: ScopeController) -> list[str] | None:
    """Objects a sync of `controller` would delete now, None if that cannot be known."""
    if controller.state.desired is None:
        return None
    try:
        deltas = await controller.preview()
    except ReconcilerError as e:
        logger.warning("Prune preview failed", scope=controller.name, error=str(e))
        return None
    return [str(d.key) for d in deltas.by_kind(DeltaKind.DELETE)]


# =============================================================================
# TIER 1: Read Operations (Always Available)
# =============================================================================


class ListScopesParams(BaseModel):
    """Parameters for list_scopes tool."""

    status: str | None = Field(
        default=None,
        description="Filter by sync status (Synced, OutOfSync, Degraded, Unknown)",
    )


@mcp.tool()
async def list_scopes(params: ListScopesParams, ctx: MCPContext) -> str:
    """
    List managed scopes with their current sync status.

    Use this for an overview of every environment the reconciler manages
    or to find scopes that are out of sync or degraded.
    """
    set_correlation_id(_request_id(ctx))

    blocked = get_safety_guard().check_query("list_scopes")
    if blocked:
        get_audit_logger().operator_refused("list_scopes", "all", blocked.reason)
        return blocked.format_message()

    manager = get_manager()
    statuses = [get_controller(name).status() for name in manager.scopes]
    if params.status:
        statuses = [s for s in statuses if s["status"] == params.status]

    get_audit_logger().operator_query("list_scopes", f"status={params.status}")

    if not statuses:
        return "No scopes found matching the specified filters."

    lines = [f"Found {len(statuses)} scope(s):", ""]
    for s in statuses:
        marker = "[OK]" if s["status"] == "Synced" else "[!]"
        revision = (s["desired_revision"] or "-")[:8]
        extra = " syncing" if s["syncing"] else ""
        if s["compile_error"]:
            extra += " compile-error"
        lines.append(
            f"- {s['scope']} [{s['environment']}] status={s['status']} {marker} "
            f"revision={revision}{extra}"
        )
    return "\n".join(lines)


class GetScopeStatusParams(BaseModel):
    """Parameters for get_scope_status tool."""

    name: str = Field(description="Scope name")


@mcp.tool()
async def get_scope_status(params: GetScopeStatusParams, ctx: MCPContext) -> str:
    """
    Get detailed status for one scope.

    Shows the tracked source, current and desired revisions, the last sync
    result, errors that are holding the scope on an older state, pending
    approvals and the latest drift report.
    """
    set_correlation_id(_request_id(ctx))

    blocked = get_safety_guard().check_query("get_scope_status")
    if blocked:
        get_audit_logger().operator_refused("get_scope_status", params.name, blocked.reason)
        return blocked.format_message()

    try:
        controller = get_controller(params.name)
    except ValueError as e:
        return str(e)

    s = controller.status()
    get_audit_logger().operator_query("get_scope_status", params.name)

    policy = s["policy"]
    lines = [
        f"Scope: {s['scope']}",
        f"Environment: {s['environment']}",
        f"Source: {s['source']}",
        f"Revision: {s['revision'] or '-'}",
        f"Desired revision: {s['desired_revision'] or '-'} ({s['desired_objects']} objects)",
        f"Status: {s['status']}",
        f"Phase: {s['phase'] or '-'}",
        f"Syncing: {s['syncing']}",
        "",
        "Policy:",
        f"  automated={policy['automated']} prune={policy['prune']} "
        f"selfHeal={policy['self_heal']} manualApproval={policy['manual_approval_required']}",
    ]

    if s["compile_error"]:
        lines.extend(["", f"Compile error (serving last good state): {s['compile_error']}"])
    if s["source_error"]:
        lines.extend(["", f"Source unavailable: {s['source_error']}"])
    if s["approval"]:
        approval = s["approval"]
        lines.extend(
            ["", f"Approval pending use: revision {approval['revision'][:8]} by {approval['approved_by']}"]
        )

    last = controller.state.last_result
    if last:
        lines.extend(["", "Last sync:"])
        lines.extend(f"  {line}" for line in _format_result(last))

    if s["drift"]:
        drift = s["drift"]
        lines.extend(
            [
                "",
                f"Drift: {'yes' if drift['drifted'] else 'no'} "
                f"({drift['objects']} objects, healed={drift['healed']}, at {drift['detected_at']})",
            ]
        )

    return "\n".join(lines)


class GetSyncHistoryParams(BaseModel):
    """Parameters for get_sync_history tool."""

    name: str = Field(description="Scope name")
    limit: int = Field(default=10, ge=1, le=100, description="Maximum entries to return")
    verbose: bool = Field(default=False, description="Include per-object results")


@mcp.tool()
async def get_sync_history(params: GetSyncHistoryParams, ctx: MCPContext) -> str:
    """
    Get recent sync results for a scope, newest first.

    Every attempt is recorded, including blocked, cancelled and partially
    failed ones, with a reason for every object that was not applied.
    """
    set_correlation_id(_request_id(ctx))

    blocked = get_safety_guard().check_query("get_sync_history")
    if blocked:
        get_audit_logger().operator_refused("get_sync_history", params.name, blocked.reason)
        return blocked.format_message()

    try:
        controller = get_controller(params.name)
    except ValueError as e:
        return str(e)

    results = controller.history(params.limit)
    get_audit_logger().operator_query("get_sync_history", params.name)

    if not results:
        return f"No sync history for '{params.name}'"

    lines = [f"Sync history for '{params.name}' ({len(results)} entries):", ""]
    for result in results:
        lines.extend(_format_result(result, verbose=params.verbose))
    return "\n".join(lines)


class PreviewSyncParams(BaseModel):
    """Parameters for preview_sync tool."""

    name: str = Field(description="Scope name")
    show_unchanged: bool = Field(default=False, description="Also list objects with no changes")
    show_manifests: bool = Field(default=False, description="Include desired manifests of creates/updates")


@mcp.tool()
async def preview_sync(params: PreviewSyncParams, ctx: MCPContext) -> str:
    """
    Preview what a sync would change, without applying anything.

    Observes the live state now and diffs it against the last compiled
    desired state. Secret values are masked.
    """
    set_correlation_id(_request_id(ctx))

    blocked = get_safety_guard().check_query("preview_sync")
    if blocked:
        get_audit_logger().operator_refused("preview_sync", params.name, blocked.reason)
        return blocked.format_message()

    try:
        controller = get_controller(params.name)
        deltas = await controller.preview()
    except (ReconcilerError, ValueError) as e:
        get_audit_logger().operator_error("preview_sync", params.name, str(e))
        return str(e)

    get_audit_logger().operator_query("preview_sync", params.name)

    summary = deltas.summary()
    lines = [
        f"Preview for '{params.name}' at revision "
        f"{controller.state.desired.revision_id[:8] if controller.state.desired else '-'}:",
        "  " + " ".join(f"{kind}={count}" for kind, count in summary.items()),
        "",
    ]

    shown = [d for d in deltas if params.show_unchanged or d.kind != DeltaKind.UNCHANGED]
    if not shown:
        lines.append("No changes. Live state matches the desired state.")
        return "\n".join(lines)

    mask = get_safety_guard().mask_secrets
    for delta in shown:
        lines.extend(_format_delta(delta, params.show_manifests, mask))

    if controller.requires_approval(deltas):
        lines.extend(["", "These changes require manual approval (approve_sync)."])
    return "\n".join(lines)


class GetDriftReportParams(BaseModel):
    """Parameters for get_drift_report tool."""

    name: str = Field(description="Scope name")


@mcp.tool()
async def get_drift_report(params: GetDriftReportParams, ctx: MCPContext) -> str:
    """
    Get the latest drift report for a scope.

    Drift is a difference between the live state and the desired state that
    was found outside a sync, e.g. a manual edit in the target environment.
    """
    set_correlation_id(_request_id(ctx))

    blocked = get_safety_guard().check_query("get_drift_report")
    if blocked:
        get_audit_logger().operator_refused("get_drift_report", params.name, blocked.reason)
        return blocked.format_message()

    try:
        controller = get_controller(params.name)
    except ValueError as e:
        return str(e)

    get_audit_logger().operator_query("get_drift_report", params.name)

    report = controller.state.last_drift
    if report is None:
        return f"No drift check has completed for '{params.name}' yet"

    detected = report.detected_at.strftime("%Y-%m-%d %H:%M:%S")
    if not report.drifted:
        return f"No drift for '{params.name}' (checked {detected}, revision {report.revision_id[:8]})"

    lines = [
        f"Drift for '{params.name}' detected {detected} at revision {report.revision_id[:8]}:",
        f"Self-healed: {report.healed}",
        "",
    ]
    lines.extend(f"  {d.describe()}" for d in report.deltas)
    return "\n".join(lines)


# =============================================================================
# TIER 2: Operator Actions (Require MCP_READ_ONLY=false)
# =============================================================================


class ForceSyncParams(BaseModel):
    """Parameters for force_sync tool."""

    name: str = Field(description="Scope name")
    dry_run: bool = Field(default=True, description="Preview only (default: true for safety)")
    confirm: bool = Field(default=False, description="Must be true to sync a pruning scope")
    confirm_name: str | None = Field(
        default=None, description="Type the scope name to confirm a pruning sync"
    )


@mcp.tool()
async def force_sync(params: ForceSyncParams, ctx: MCPContext) -> str:
    """
    Run a reconciliation pass now, even if automated sync is disabled.

    By default runs in dry-run mode showing what would change. Set
    dry_run=false to apply. On scopes whose policy prunes, a real sync may
    DELETE objects and requires confirm=true and confirm_name=<scope>.
    """
    set_correlation_id(_request_id(ctx))

    try:
        controller = get_controller(params.name)
    except ValueError as e:
        return str(e)

    if controller.config.policy.prune and not params.dry_run:
        blocked = get_safety_guard().check_pruning_sync(
            params.name,
            None,
            confirmed=params.confirm,
            confirm_name=params.confirm_name,
        )
        if blocked:
            if isinstance(blocked, ConfirmationRequired):
                # Preview only once the confirmation is all that is missing
                blocked.pending_deletes = await _pending_deletes(controller)
                blocked.details = {
                    "environment": controller.config.environment,
                    "target": controller.config.target.url,
                    "preview": f"force_sync(name='{params.name}', dry_run=true)",
                }
                get_audit_logger().operator_refused("force_sync", params.name, "confirmation required")
            else:
                get_audit_logger().operator_refused("force_sync", params.name, blocked.reason)
            return blocked.format_message()
    else:
        blocked = get_safety_guard().check_action("force_sync")
        if blocked:
            get_audit_logger().operator_refused("force_sync", params.name, blocked.reason)
            return blocked.format_message()

    mode = "[DRY-RUN] " if params.dry_run else ""
    await ctx.report_progress(0, 1, f"{mode}Syncing {params.name}")

    try:
        result = await controller.force_sync(dry_run=params.dry_run)
    except ReconcilerError as e:
        get_audit_logger().operator_error("force_sync", params.name, str(e))
        return str(e)

    await ctx.report_progress(1, 1, "Sync finished")

    get_audit_logger().operator_action(
        "force_sync",
        params.name,
        "dry_run" if params.dry_run else result.phase.value,
        {"revision": result.revision_id, "summary": result.summary()},
    )

    lines = [f"{mode}Sync of '{params.name}' finished:", ""]
    lines.extend(_format_result(result))
    if params.dry_run and result.skipped:
        lines.extend(["", f"To apply: force_sync(name='{params.name}', dry_run=false)"])
    return "\n".join(lines)


class ApproveSyncParams(BaseModel):
    """Parameters for approve_sync tool."""

    name: str = Field(description="Scope name")
    revision: str | None = Field(
        default=None, description="Revision to approve (default: the current desired revision)"
    )
    approved_by: str = Field(default="operator", description="Who is approving")


@mcp.tool()
async def approve_sync(params: ApproveSyncParams, ctx: MCPContext) -> str:
    """
    Approve a revision of a scope that requires manual approval.

    The approval is used by the next pass, which moves the scope from
    Blocked to Applying, and is consumed by it.
    """
    set_correlation_id(_request_id(ctx))

    blocked = get_safety_guard().check_action("approve_sync")
    if blocked:
        get_audit_logger().operator_refused("approve_sync", params.name, blocked.reason)
        return blocked.format_message()

    try:
        controller = get_controller(params.name)
        approval = controller.approve(params.revision, approved_by=params.approved_by)
    except (ReconcilerError, ValueError) as e:
        get_audit_logger().operator_error("approve_sync", params.name, str(e))
        return str(e)

    get_audit_logger().operator_action(
        "approve_sync",
        params.name,
        "approved",
        {"revision": approval.revision_id, "approved_by": approval.approved_by},
    )
    return (
        f"Revision {approval.revision_id[:8]} of '{params.name}' approved by {approval.approved_by}.\n\n"
        f"It will be applied on the next sync interval. Use get_scope_status to monitor progress."
    )


class CancelSyncParams(BaseModel):
    """Parameters for cancel_sync tool."""

    name: str = Field(description="Scope name")


@mcp.tool()
async def cancel_sync(params: CancelSyncParams, ctx: MCPContext) -> str:
    """
    Cancel a sync that is in progress.

    Creates and updates already issued are allowed to finish; deletes that
    have not started are skipped.
    """
    set_correlation_id(_request_id(ctx))

    blocked = get_safety_guard().check_action("cancel_sync")
    if blocked:
        get_audit_logger().operator_refused("cancel_sync", params.name, blocked.reason)
        return blocked.format_message()

    try:
        controller = get_controller(params.name)
    except ValueError as e:
        return str(e)

    if not controller.cancel():
        return f"No sync in progress for '{params.name}'"

    get_audit_logger().operator_action("cancel_sync", params.name, "requested")
    return (
        f"Cancellation requested for '{params.name}'.\n\n"
        f"Use get_sync_history to see which objects were skipped."
    )


# =============================================================================
# MCP RESOURCES
# =============================================================================


@mcp.resource("reconciler://scopes")
async def get_scopes_resource() -> str:
    """Get information about configured scopes."""
    scopes = get_settings().scopes

    if not scopes:
        return "No scopes configured"

    lines = ["Configured Scopes:", ""]
    for scope in scopes:
        lines.append(
            f"- {scope.name}: {scope.source.repo}@{scope.source.branch} -> "
            f"{scope.environment} ({scope.target.url})"
        )
    return "\n".join(lines)


@mcp.resource("reconciler://security")
async def get_security_resource() -> str:
    """Get current security settings."""
    sec = get_settings().security

    return (
        "Security Settings:\n"
        f"  Read-only mode: {sec.read_only}\n"
        f"  Destructive operations disabled: {sec.disable_destructive}\n"
        f"  Secret masking: {sec.mask_secrets}\n"
        f"  Rate limit: {sec.rate_limit_calls} calls per {sec.rate_limit_window}s"
    )


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================


def main() -> None:
    """Run the GitOps reconciler MCP server."""
    configure_logging(level="INFO", stream=sys.stderr)
    logger.info("GitOps reconciler starting")

    try:
        mcp.run()
    except KeyboardInterrupt:
        logger.info("Server interrupted")
        sys.exit(0)
    except Exception as e:
        logger.error("Server error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
