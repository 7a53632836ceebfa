# ABOUTME: Guards for the operator surface of the reconciler
# ABOUTME: Gates manual syncs by mode, rate and prune confirmation, and masks secrets in rendered manifests

"""Operator-facing safety checks and manifest masking."""

from __future__ import annotations

import re
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from gitops_reconciler.config import SecuritySettings

logger = structlog.get_logger(__name__)

MASK = "***MASKED***"

# Free text such as error messages or annotations
_TEXT_PATTERNS = [
    (re.compile(r"((?:token|password|secret|api[_-]?key)[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), rf"\1{MASK}"),
    (re.compile(r"(bearer\s+)[^\s\"']+", re.I), rf"\1{MASK}"),
]

# Mapping keys whose value is masked wherever they appear. Excludes "key":
# secretKeyRef.key and toleration keys are names.
SENSITIVE_KEYS = frozenset(
    {"token", "password", "secret", "api_key", "apikey", "api-key", "authorization", "credentials"}
)

SECRET_KINDS = frozenset({"Secret"})
SECRET_PAYLOAD_KEYS = frozenset({"data", "stringData"})

_SENSITIVE_ENV_NAME = re.compile(r"(PASSWORD|PASSWD|TOKEN|SECRET|API_?KEY|CREDENTIAL)", re.I)


def _mask_env_entry(entry: dict[str, Any]) -> dict[str, Any]:
    """Mask the literal value of a container env var with a sensitive name."""
    if "value" in entry and _SENSITIVE_ENV_NAME.search(str(entry.get("name", ""))):
        return {**entry, "value": MASK}
    return entry


def mask_sensitive(data: Any) -> Any:
    """
    Return a copy of `data` with secret-looking values masked.

    Secret payloads keep their entry names so an operator can still see
    which keys changed. Applied only to rendered output; the manifests the
    diff engine compares are never masked.
    """
    if isinstance(data, str):
        for pattern, replacement in _TEXT_PATTERNS:
            data = pattern.sub(replacement, data)
        return data

    if isinstance(data, list):
        return [mask_sensitive(item) for item in data]

    if not isinstance(data, dict):
        return data

    is_secret = data.get("kind") in SECRET_KINDS
    masked: dict[str, Any] = {}
    for k, v in data.items():
        if str(k).lower() in SENSITIVE_KEYS:
            masked[k] = MASK
        elif is_secret and k in SECRET_PAYLOAD_KEYS and isinstance(v, dict):
            masked[k] = {name: MASK for name in v}
        elif k == "env" and isinstance(v, list):
            masked[k] = [
                mask_sensitive(_mask_env_entry(item)) if isinstance(item, dict) else item for item in v
            ]
        else:
            masked[k] = mask_sensitive(v)
    return masked


@dataclass
class OperationBlocked:
    """An operator action refused by the security settings."""

    operation: str
    reason: str
    setting: str
    retry_after: float | None = None

    def format_message(self) -> str:
        lines = [
            f"OPERATION BLOCKED: {self.operation}",
            f"Reason: {self.reason}",
            f"Setting: {self.setting}",
        ]
        if self.retry_after is not None:
            lines.append(f"Retry in: {self.retry_after:.0f}s")
        else:
            lines.append(f"To enable: Set {self.setting}=false in server configuration")
        return "\n".join(lines)


@dataclass
class ConfirmationRequired:
    """
    A pruning sync that needs the operator to name the scope.

    `pending_deletes` is None when the scope has not been observed yet and
    the objects a prune would remove are not known.
    """

    operation: str
    scope: str
    pending_deletes: list[str] | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def format_message(self) -> str:
        lines = [
            f"CONFIRMATION REQUIRED: {self.operation}",
            "",
            f"Scope: {self.scope}",
            "Impact: Live objects no longer declared in Git will be DELETED",
        ]
        for key, value in self.details.items():
            lines.append(f"{key}: {value}")

        lines.append("")
        if self.pending_deletes is None:
            lines.append("Pending deletes: unknown until the scope has been observed")
        elif not self.pending_deletes:
            lines.append("Pending deletes: none right now")
        else:
            lines.append(f"Pending deletes ({len(self.pending_deletes)}):")
            lines.extend(f"  - {key}" for key in self.pending_deletes)

        lines.extend(["", f"To proceed, set confirm=true AND confirm_name='{self.scope}'"])
        return "\n".join(lines)


class RateLimiter:
    """Sliding-window call counter per key."""

    def __init__(self, max_calls: int = 100, window_seconds: int = 60) -> None:
        self._max_calls = max_calls
        self._window = window_seconds
        self._calls: dict[str, deque[float]] = defaultdict(deque)

    def _expire(self, key: str, now: float) -> deque[float]:
        calls = self._calls[key]
        while calls and now - calls[0] >= self._window:
            calls.popleft()
        return calls

    def check(self, key: str) -> bool:
        """Record a call under `key` and return False when over the limit."""
        now = time.monotonic()
        calls = self._expire(key, now)
        if len(calls) >= self._max_calls:
            logger.warning("Rate limit exceeded", key=key, calls=len(calls))
            return False
        calls.append(now)
        return True

    def retry_after(self, key: str) -> float:
        """Seconds until the oldest call under `key` leaves the window."""
        now = time.monotonic()
        calls = self._expire(key, now)
        if len(calls) < self._max_calls:
            return 0.0
        return max(0.0, self._window - (now - calls[0]))

    def reset(self, key: str | None = None) -> None:
        if key:
            self._calls.pop(key, None)
        else:
            self._calls.clear()


class SafetyGuard:
    """Decides whether an operator request may run."""

    def __init__(self, settings: SecuritySettings) -> None:
        self._settings = settings
        self._rate_limiter = RateLimiter(
            max_calls=settings.rate_limit_calls,
            window_seconds=settings.rate_limit_window,
        )

    @property
    def mask_secrets(self) -> bool:
        return self._settings.mask_secrets

    def _rate_limited(self, operation: str, key: str) -> OperationBlocked | None:
        if self._rate_limiter.check(key):
            return None
        return OperationBlocked(
            operation=operation,
            reason="Rate limit exceeded",
            setting="MCP_RATE_LIMIT_CALLS",
            retry_after=self._rate_limiter.retry_after(key),
        )

    def check_query(self, operation: str) -> OperationBlocked | None:
        """Queries are only rate limited; read-only mode allows them."""
        return self._rate_limited(operation, f"query:{operation}")

    def check_action(self, operation: str) -> OperationBlocked | None:
        """Check a state-changing action such as approving or cancelling a sync."""
        if self._settings.read_only:
            return OperationBlocked(
                operation=operation,
                reason="Server is running in read-only mode",
                setting="MCP_READ_ONLY",
            )
        return self._rate_limited(operation, f"action:{operation}")

    def check_pruning_sync(
        self,
        scope: str,
        pending_deletes: list[str] | None,
        confirmed: bool = False,
        confirm_name: str | None = None,
    ) -> OperationBlocked | ConfirmationRequired | None:
        """
        Check a manual sync of a scope whose policy prunes.

        Args:
            scope: Scope name the operator has to repeat in confirm_name
            pending_deletes: Objects the sync would delete, None if unknown
            confirmed: Whether the caller set confirm=true
            confirm_name: Scope name typed by the caller

        Returns:
            OperationBlocked if refused outright, ConfirmationRequired if
            the caller has to confirm, None if the sync may run
        """
        operation = "sync_with_prune"
        blocked = self.check_action(operation)
        if blocked:
            return blocked

        if self._settings.disable_destructive:
            return OperationBlocked(
                operation=operation,
                reason="Pruning syncs are disabled",
                setting="MCP_DISABLE_DESTRUCTIVE",
            )

        if not confirmed or confirm_name != scope:
            return ConfirmationRequired(operation=operation, scope=scope, pending_deletes=pending_deletes)

        return None
