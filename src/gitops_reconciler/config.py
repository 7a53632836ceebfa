# ABOUTME: Configuration management for the GitOps reconciler
# ABOUTME: Handles environment variables, policy documents, and per-scope settings

"""
Configuration management using pydantic-settings.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

This module owns every knob the reconciler exposes. It:

1. READS environment variables (RECONCILER_*, MCP_*)
2. LOADS an optional YAML policy document describing the managed scopes
3. VALIDATES everything up front so a bad setting fails at startup, not
   halfway through a sync

=============================================================================
WHAT IS A SCOPE?
=============================================================================

A scope is one (source, environment, target) triple:

    source:  which repository/branch/path to read desired state from
    environment: which overlay to compile ("staging", "production", ...)
    target:  which cluster API to reconcile against

Each scope gets its own reconciliation loop, its own clients and its own
state. Nothing mutable is shared between scopes.

=============================================================================
ARCHITECTURE
=============================================================================

    SourceEndpoint  -> where desired state lives
    TargetEndpoint  -> where observed state lives
    HealthCheckSpec -> per-kind readiness condition
    SyncPolicy      -> automated / prune / selfHeal / manual approval
    ScopeConfig     -> one scope: the four above plus timeouts
    SecuritySettings (MCP_ prefix)     -> what operators may trigger
    ControllerSettings (RECONCILER_)  -> top-level container

=============================================================================
ENVIRONMENT VARIABLE MAPPING
=============================================================================

    RECONCILER_POLICY_FILE   -> YAML policy document with a `scopes:` list
    RECONCILER_SCOPES        -> JSON array of scopes (alternative to the file)
    RECONCILER_LOG_LEVEL     -> DEBUG, INFO, WARNING, ERROR, CRITICAL
    RECONCILER_JSON_LOGS     -> Emit JSON log lines
    RECONCILER_ENV_FILE      -> Optional .env file read by load_settings()

    MCP_READ_ONLY            -> Block force_sync/approve/cancel (default: true)
    MCP_DISABLE_DESTRUCTIVE  -> Block syncs that may prune (default: true)
    MCP_AUDIT_LOG            -> Path to the JSON-lines audit log
    MCP_MASK_SECRETS         -> Mask secrets in rendered output (default: true)
    MCP_RATE_LIMIT_CALLS     -> Max operator calls per window (default: 100)
    MCP_RATE_LIMIT_WINDOW    -> Rate limit window in seconds (default: 60)
"""

# =============================================================================
# IMPORTS
# =============================================================================

from __future__ import annotations

import os
from pathlib import Path  # noqa: TC003 - Required at runtime for Pydantic
from typing import Annotated, Any

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, SettingsConfigDict

from gitops_reconciler.errors import ConfigError

# =============================================================================
# ENDPOINTS
# =============================================================================


def _normalize_url(v: str) -> str:
    """Add https:// when the scheme is missing and strip trailing slashes."""
    if not v.startswith(("http://", "https://")):
        v = f"https://{v}"
    return v.rstrip("/")


class SourceEndpoint(BaseModel):
    """
    Version-control endpoint a scope reads its desired state from.

    The endpoint is read-only: the reconciler only ever resolves a branch
    head and fetches the file tree under `path` for that commit.

    USAGE EXAMPLE:
    --------------
        source = SourceEndpoint(
            url="https://git.example.com",
            repo="platform/deploy",
            branch="main",
            path="apps/web",
        )
    """

    model_config = ConfigDict(extra="ignore")

    url: str = Field(description="Version-control API base URL")
    repo: str = Field(description="Repository identifier, e.g. 'team/deploy'")
    branch: str = Field(default="main", description="Branch to track")
    path: str = Field(default="", description="Path filter inside the repository")
    token: SecretStr = Field(default=SecretStr(""), description="API token")
    # SecretStr keeps the token out of logs and reprs.

    insecure: bool = Field(default=False, description="Skip TLS verification")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        return _normalize_url(v)

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        # "apps/web/" and "/apps/web" both mean "apps/web"
        return v.strip("/")


class TargetEndpoint(BaseModel):
    """
    Target-environment API a scope reconciles against.

    Objects are addressed by (kind, namespace, name). Documents that do not
    declare a namespace land in `default_namespace`.
    """

    model_config = ConfigDict(extra="ignore")

    url: str = Field(description="Target API base URL")
    token: SecretStr = Field(default=SecretStr(""), description="API token")
    insecure: bool = Field(default=False, description="Skip TLS verification")
    default_namespace: str = Field(default="default", description="Namespace for unscoped documents")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        return _normalize_url(v)


# =============================================================================
# POLICY
# =============================================================================


class _PolicyModel(BaseModel):
    # Policy documents are written in camelCase (selfHeal, driftInterval);
    # Python code uses snake_case. populate_by_name accepts both.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class HealthCheckSpec(_PolicyModel):
    """
    Readiness condition for every object of one kind.

    The condition compares a dotted field path on the live object either to
    a literal (`equals`) or to another field of the same object
    (`equalsField`). Exactly one of the two must be set.

    Example (policy document):
        - kind: Deployment
          field: status.readyReplicas
          equalsField: spec.replicas
          timeoutSeconds: 120
    """

    kind: str
    field: str
    equals: Any = None
    equals_field: str | None = None
    timeout_seconds: float = Field(default=60.0, gt=0)
    poll_interval_seconds: float = Field(default=2.0, gt=0)

    @field_validator("equals_field")
    @classmethod
    def validate_equals_field(cls, v: str | None) -> str | None:
        if v is not None and not v.strip():
            raise ValueError("equalsField must not be empty")
        return v

    @model_validator(mode="after")
    def validate_condition(self) -> HealthCheckSpec:
        if (self.equals is None) == (self.equals_field is None):
            raise ValueError("exactly one of 'equals' or 'equalsField' must be set")
        return self


class SyncPolicy(_PolicyModel):
    """
    How a scope reacts to differences between desired and observed state.

    OPTIONS:
    --------
    automated:
        Apply changes on every tick. When false, differences are only
        reported until an operator forces a sync.

    prune:
        Delete live objects that carry the managed labels but are no longer
        declared. Deletions always run after creates/updates succeeded.

    self_heal:
        When the drift monitor finds a difference outside a sync, correct it
        immediately from the last compiled desired set.

    manual_approval_required / manual_approval_namespaces:
        Hold every change touching the listed namespaces (all namespaces when
        the list is empty) until an approval for the revision is recorded.
        Overrides `automated`.

    managed_fields:
        Dotted paths compared even when the desired document omits them.

    unordered_fields:
        Dotted paths of lists compared as multisets instead of sequences.
    """

    automated: bool = True
    prune: bool = False
    self_heal: bool = False
    manual_approval_required: bool = False
    manual_approval_namespaces: list[str] = Field(default_factory=list)
    drift_interval: float = Field(default=180.0, gt=0)
    managed_fields: list[str] = Field(default_factory=list)
    unordered_fields: list[str] = Field(default_factory=list)
    health_checks: list[HealthCheckSpec] = Field(default_factory=list)

    def requires_approval_for(self, namespace: str) -> bool:
        if not self.manual_approval_required:
            return False
        return not self.manual_approval_namespaces or namespace in self.manual_approval_namespaces

    def health_check_for(self, kind: str) -> HealthCheckSpec | None:
        for check in self.health_checks:
            if check.kind == kind:
                return check
        return None


# =============================================================================
# SCOPE
# =============================================================================


class ScopeConfig(_PolicyModel):
    """
    One managed scope.

    Timeouts apply per external call: one fetch, one object read, one object
    write. A timeout fails that call only, never the whole cycle.
    """

    name: str = Field(pattern=r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
    environment: str
    source: SourceEndpoint
    target: TargetEndpoint
    policy: SyncPolicy = Field(default_factory=SyncPolicy)

    sync_interval: float = Field(default=60.0, gt=0)
    fetch_timeout: float = Field(default=30.0, gt=0)
    observe_timeout: float = Field(default=10.0, gt=0)
    apply_timeout: float = Field(default=30.0, gt=0)
    max_workers: int = Field(default=8, ge=1, le=64)
    source_retry_attempts: int = Field(default=5, ge=1)
    history_limit: int = Field(default=50, ge=1)


def _duplicate_names(scopes: list[ScopeConfig]) -> list[str]:
    names = [s.name for s in scopes]
    return sorted({n for n in names if names.count(n) > 1})


# =============================================================================
# SECURITY SETTINGS
# =============================================================================


class SecuritySettings(BaseSettings):
    """
    What operators may trigger through the MCP surface.

    The reconciliation loops themselves are governed by each scope's
    SyncPolicy; these settings only gate manual actions:

    Layer 1: MCP_READ_ONLY=true (default)
        force_sync, approve_sync and cancel_sync are refused.

    Layer 2: MCP_DISABLE_DESTRUCTIVE=true (default)
        force_sync on a scope whose policy prunes is refused.

    Layer 3: Confirmation
        Pruning syncs need confirm=true AND confirm_name=<scope>.

    Layer 4: Rate limiting
    """

    model_config = SettingsConfigDict(env_prefix="MCP_")

    read_only: bool = Field(default=True, description="Block operator write actions when true")
    disable_destructive: bool = Field(default=True, description="Block pruning syncs when true")
    audit_log: Path | None = Field(default=None, description="Path to audit log file")
    mask_secrets: bool = Field(default=True, description="Mask sensitive values in output")
    rate_limit_calls: int = Field(default=100, description="Maximum operator calls per window")
    rate_limit_window: int = Field(default=60, description="Rate limit window in seconds")


# =============================================================================
# MAIN SETTINGS
# =============================================================================


class ControllerSettings(BaseSettings):
    """
    Top-level configuration container.

    USAGE:
    ------
        settings = load_settings()
        for scope in settings.scopes:
            print(scope.name, scope.environment)
    """

    model_config = SettingsConfigDict(
        env_prefix="RECONCILER_",
        env_nested_delimiter="__",
        extra="ignore",
        populate_by_name=True,
    )

    scopes: list[ScopeConfig] = Field(default_factory=list, description="Managed scopes")
    policy_file: Path | None = Field(default=None, description="YAML policy document")

    server_name: str = Field(default="gitops-reconciler", description="MCP server name")
    log_level: Annotated[str, Field(pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")] = Field(
        default="INFO",
        description="Logging level",
    )
    json_logs: bool = Field(default=False, description="Emit JSON log lines")

    security: SecuritySettings = Field(default_factory=SecuritySettings)

    def get_scope(self, name: str) -> ScopeConfig | None:
        for scope in self.scopes:
            if scope.name == name:
                return scope
        return None

    @model_validator(mode="after")
    def validate_unique_scopes(self) -> ControllerSettings:
        duplicates = _duplicate_names(self.scopes)
        if duplicates:
            raise ValueError(f"duplicate scope names: {duplicates}")
        return self


# =============================================================================
# LOADERS
# =============================================================================


def load_policy_document(path: Path) -> list[ScopeConfig]:
    """
    Load scopes from a YAML policy document.

    Document shape:

        scopes:
          - name: web-prod
            environment: production
            source: {url: ..., repo: ..., branch: main, path: apps/web}
            target: {url: ...}
            policy:
              automated: true
              prune: true
              selfHeal: true
              healthChecks:
                - {kind: Deployment, field: status.readyReplicas, equalsField: spec.replicas}

    Raises:
        ConfigError: If the file is unreadable, not YAML, or does not validate.
    """
    try:
        raw = yaml.safe_load(path.read_text())
    except OSError as e:
        raise ConfigError(f"cannot read policy document {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"policy document {path} is not valid YAML: {e}") from e

    if raw is None:
        return []
    if not isinstance(raw, dict) or not isinstance(raw.get("scopes", []), list):
        raise ConfigError(f"policy document {path} must be a mapping with a 'scopes' list")

    try:
        return [ScopeConfig.model_validate(item) for item in raw.get("scopes", [])]
    except ValidationError as e:
        raise ConfigError(f"invalid scope in {path}: {e}") from e


def load_settings() -> ControllerSettings:
    """
    Load settings from the environment and the optional policy document.

    Scopes from RECONCILER_SCOPES and from the policy document are combined;
    a name defined in both is a configuration error.

    Raises:
        pydantic.ValidationError: If environment values are invalid.
        ConfigError: If the policy document is invalid.
    """
    settings = ControllerSettings(_env_file=os.environ.get("RECONCILER_ENV_FILE"))  # type: ignore[call-arg]
    if settings.policy_file is None:
        return settings

    scopes = [*settings.scopes, *load_policy_document(settings.policy_file)]
    duplicates = _duplicate_names(scopes)
    if duplicates:
        raise ConfigError(f"duplicate scope names: {duplicates}")
    return settings.model_copy(update={"scopes": scopes})
