# ABOUTME: Structured logging with correlation IDs for the GitOps reconciler
# ABOUTME: Audit trail of object writes, blocked passes, drift and operator actions

"""
Logging for the reconciliation loops and the MCP surface.

Every reconciliation cycle, drift check and operator request runs under
its own correlation ID, and the scope loops bind ``scope`` with
structlog.contextvars, so the lines of one cycle can be pulled out of a
stream in which several scopes reconcile at once:

    {"correlation_id": "a1b2c3d4", "scope": "web-prod", "event": "New source revision", ...}
    {"correlation_id": "a1b2c3d4", "scope": "web-prod", "event": "Applied", "object": "Deployment/prod/web"}
    {"correlation_id": "a1b2c3d4", "scope": "web-prod", "event": "Sync finished", "status": "Synced"}

Scopes run as separate asyncio tasks; the ContextVar keeps one task's ID
invisible to the others.
"""

from __future__ import annotations

import json
import logging
import uuid
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, TextIO

import structlog

if TYPE_CHECKING:
    from collections.abc import MutableMapping
    from pathlib import Path

    from gitops_reconciler.models import Delta


# =============================================================================
# CORRELATION ID MANAGEMENT
# =============================================================================

correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")


def get_correlation_id() -> str:
    """
    Get the current correlation ID, generating one if none is set.

    Code running outside a cycle or request (startup, shutdown) still gets an
    ID so its logs remain correlatable.

    Returns:
        8-character correlation ID string.
    """
    cid = correlation_id.get()
    if not cid:
        cid = str(uuid.uuid4())[:8]
        correlation_id.set(cid)
    return cid


def set_correlation_id(cid: str) -> None:
    """
    Set the correlation ID for the current context.

    Passing "" makes the next get_correlation_id() generate a fresh ID;
    the reconciliation loop does this at the start of every cycle.
    """
    correlation_id.set(cid)


def add_correlation_id(
    logger: structlog.types.WrappedLogger,  # noqa: ARG001 - Required by structlog Processor API
    method_name: str,  # noqa: ARG001 - Required by structlog Processor API
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """structlog processor adding the correlation ID to every event."""
    event_dict["correlation_id"] = get_correlation_id()
    return event_dict


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
    stream: TextIO | None = None,
) -> None:
    """
    Configure structured logging. Call once at startup.

    PROCESSOR PIPELINE:
    -------------------
    1. merge_contextvars: fields bound with structlog.contextvars (e.g. scope)
    2. add_log_level: "level" field
    3. TimeStamper: ISO-8601 timestamp
    4. add_correlation_id: cycle/request correlation ID
    5. Renderer: JSON lines or colored console output

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL.
        json_output: JSON lines for log aggregators; colored text otherwise.
        stream: Where to write (default stdout). The MCP stdio transport owns
            stdout, so the server passes stderr.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_correlation_id,
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=True,
    )


# =============================================================================
# AUDIT LOGGER
# =============================================================================


class AuditLogger:
    """
    Append-only record of what the reconciler and its operators did.

    Each entry is one JSON object:

        {"timestamp": "2024-01-15T10:30:00+00:00", "correlation_id": "abc12345",
         "scope": "web-prod", "action": "update", "target": "Deployment/prod/web",
         "result": "applied"}

        {"timestamp": "2024-01-15T10:31:00+00:00", "correlation_id": "def67890",
         "scope": "web-prod", "action": "sync", "target": "web-prod",
         "result": "blocked", "details": {"reason": "manual approval required", "pending": 3}}

    Entries come from two places. The reconciliation loops record every
    object they write, every pass held for approval, drift and compile
    failures. The MCP tools record operator queries and actions, including
    the refused ones.

    With MCP_AUDIT_LOG set, entries are appended to that file; otherwise
    they go through structlog as "audit" events.
    """

    def __init__(self, log_path: Path | None = None) -> None:
        self._log_path = log_path
        self._logger = structlog.get_logger("audit")

    def log(
        self,
        action: str,
        target: str,
        result: str,
        details: dict[str, Any] | None = None,
        scope: str | None = None,
    ) -> None:
        """
        Record one auditable action.

        Args:
            action: What was done ("update", "approve_sync", "drift", ...)
            target: What it was done to (object key or scope name)
            result: "applied", "blocked", "error", "detected", ...
            details: Optional extra context
            scope: Scope the action belongs to, when there is one
        """
        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "correlation_id": get_correlation_id(),
        }
        if scope:
            entry["scope"] = scope
        entry.update(action=action, target=target, result=result)
        if details:
            entry["details"] = details

        if self._log_path:
            with self._log_path.open("a") as f:
                f.write(json.dumps(entry, default=str) + "\n")
        else:
            self._logger.info("audit", **{k: v for k, v in entry.items() if k != "timestamp"})

    # -------------------------------------------------------------------------
    # RECONCILIATION EVENTS
    # -------------------------------------------------------------------------

    def object_applied(self, scope: str, delta: Delta) -> None:
        """Record a create, update or delete issued to the target."""
        self.log(delta.kind.value.lower(), str(delta.key), "applied", scope=scope)

    def object_failed(self, scope: str, delta: Delta, error: str) -> None:
        self.log(delta.kind.value.lower(), str(delta.key), "error", {"error": error}, scope=scope)

    def sync_blocked(self, scope: str, reason: str, pending: int) -> None:
        """Record a pass held back before any write."""
        self.log("sync", scope, "blocked", {"reason": reason, "pending": pending}, scope=scope)

    def drift_detected(self, scope: str, revision_id: str, keys: list[str]) -> None:
        self.log("drift", scope, "detected", {"revision": revision_id, "objects": keys}, scope=scope)

    def compile_failed(self, scope: str, revision_id: str, error: str) -> None:
        self.log("compile", scope, "error", {"revision": revision_id, "error": error}, scope=scope)

    # -------------------------------------------------------------------------
    # OPERATOR EVENTS
    # -------------------------------------------------------------------------

    def operator_query(self, tool: str, target: str) -> None:
        """Record a successful read-only MCP tool call."""
        self.log(tool, target, "success")

    def operator_action(
        self,
        tool: str,
        scope: str,
        result: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Record a state-changing MCP tool call.

        Example:
            audit_logger.operator_action("approve_sync", "web-prod", "approved", {"revision": "3f2a..."})
        """
        self.log(tool, scope, result, details, scope=scope)

    def operator_refused(self, tool: str, target: str, reason: str) -> None:
        """Record a tool call stopped by the safety guard."""
        self.log(tool, target, "blocked", {"reason": reason})

    def operator_error(self, tool: str, target: str, error: str) -> None:
        self.log(tool, target, "error", {"error": error})
