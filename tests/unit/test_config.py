# ABOUTME: Unit tests for configuration management
# ABOUTME: Tests endpoints, sync policies, scopes, settings loading and the policy document

import os
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import SecretStr, ValidationError

from gitops_reconciler.config import (
    ControllerSettings,
    HealthCheckSpec,
    ScopeConfig,
    SecuritySettings,
    SourceEndpoint,
    SyncPolicy,
    TargetEndpoint,
    load_policy_document,
    load_settings,
)
from gitops_reconciler.errors import ConfigError

POLICY_DOCUMENT = """\
scopes:
  - name: web-prod
    environment: production
    source:
      url: git.example.com/
      repo: platform/deploy
      path: /apps/web/
    target:
      url: https://prod.example.com
    syncInterval: 30
    policy:
      automated: true
      prune: true
      selfHeal: true
      driftInterval: 120
      manualApprovalRequired: true
      manualApprovalNamespaces: [production]
      unorderedFields: [spec.template.spec.containers.ports]
      healthChecks:
        - kind: Deployment
          field: status.readyReplicas
          equalsField: spec.replicas
          timeoutSeconds: 90
"""


@pytest.mark.unit
class TestEndpoints:
    """Tests for SourceEndpoint and TargetEndpoint."""

    def test_url_validation_adds_https(self):
        """Test that URL without scheme gets https added."""
        endpoint = SourceEndpoint(url="git.example.com", repo="team/deploy")
        assert endpoint.url == "https://git.example.com"

    def test_url_validation_preserves_http(self):
        """Test that explicit http scheme is preserved."""
        endpoint = TargetEndpoint(url="http://target.local")
        assert endpoint.url == "http://target.local"

    def test_url_validation_removes_trailing_slash(self):
        """Test that trailing slash is removed from URL."""
        endpoint = TargetEndpoint(url="https://target.example.com/")
        assert endpoint.url == "https://target.example.com"

    def test_path_is_stripped(self):
        """Test that leading and trailing slashes are removed from the path filter."""
        endpoint = SourceEndpoint(url="https://git.example.com", repo="r", path="/apps/web/")
        assert endpoint.path == "apps/web"

    def test_defaults(self):
        """Test endpoint defaults."""
        source = SourceEndpoint(url="https://git.example.com", repo="r")
        target = TargetEndpoint(url="https://target.example.com")

        assert source.branch == "main"
        assert source.path == ""
        assert source.insecure is False
        assert target.default_namespace == "default"

    def test_token_is_secret(self):
        """Test that tokens do not leak through repr."""
        endpoint = TargetEndpoint(url="https://target.example.com", token=SecretStr("hunter2"))
        assert "hunter2" not in repr(endpoint)
        assert endpoint.token.get_secret_value() == "hunter2"


@pytest.mark.unit
class TestHealthCheckSpec:
    """Tests for HealthCheckSpec validation."""

    def test_equals_literal(self):
        """Test a literal condition."""
        check = HealthCheckSpec(kind="Job", field="status.succeeded", equals=1)
        assert check.equals == 1
        assert check.timeout_seconds == 60.0

    def test_equals_field_from_camel_case(self):
        """Test that camelCase keys from a policy document are accepted."""
        check = HealthCheckSpec.model_validate(
            {"kind": "Deployment", "field": "status.readyReplicas", "equalsField": "spec.replicas"}
        )
        assert check.equals_field == "spec.replicas"

    def test_requires_exactly_one_condition(self):
        """Test that neither or both of equals/equalsField is rejected."""
        with pytest.raises(ValidationError):
            HealthCheckSpec(kind="Deployment", field="status.readyReplicas")
        with pytest.raises(ValidationError):
            HealthCheckSpec(kind="Deployment", field="x", equals=1, equals_field="y")


@pytest.mark.unit
class TestSyncPolicy:
    """Tests for SyncPolicy."""

    def test_defaults(self):
        """Test default policy."""
        policy = SyncPolicy()

        assert policy.automated is True
        assert policy.prune is False
        assert policy.self_heal is False
        assert policy.manual_approval_required is False
        assert policy.drift_interval == 180.0

    def test_requires_approval_all_namespaces(self):
        """Test that an empty namespace list gates every namespace."""
        policy = SyncPolicy(manual_approval_required=True)
        assert policy.requires_approval_for("anything") is True

    def test_requires_approval_listed_namespaces(self):
        """Test that only listed namespaces are gated."""
        policy = SyncPolicy(manual_approval_required=True, manual_approval_namespaces=["production"])

        assert policy.requires_approval_for("production") is True
        assert policy.requires_approval_for("staging") is False

    def test_no_approval_when_disabled(self):
        """Test that namespaces are ignored when approval is off."""
        policy = SyncPolicy(manual_approval_namespaces=["production"])
        assert policy.requires_approval_for("production") is False

    def test_health_check_for(self):
        """Test looking up the health check for a kind."""
        check = HealthCheckSpec(kind="Deployment", field="status.readyReplicas", equals_field="spec.replicas")
        policy = SyncPolicy(health_checks=[check])

        assert policy.health_check_for("Deployment") is check
        assert policy.health_check_for("Service") is None

    def test_unknown_field_rejected(self):
        """Test that a typo in a policy document is an error, not a silent default."""
        with pytest.raises(ValidationError):
            SyncPolicy.model_validate({"selfHeall": True})


@pytest.mark.unit
class TestScopeConfig:
    """Tests for ScopeConfig."""

    def test_name_pattern(self, source_endpoint, target_endpoint):
        """Test that scope names must be DNS-label-like."""
        with pytest.raises(ValidationError):
            ScopeConfig(name="Web_Prod", environment="production", source=source_endpoint, target=target_endpoint)

    def test_defaults(self, source_endpoint, target_endpoint):
        """Test scope defaults."""
        scope = ScopeConfig(name="web", environment="production", source=source_endpoint, target=target_endpoint)

        assert scope.sync_interval == 60.0
        assert scope.max_workers == 8
        assert scope.history_limit == 50
        assert scope.policy == SyncPolicy()

    def test_max_workers_bounds(self, source_endpoint, target_endpoint):
        """Test that the worker pool size is bounded."""
        with pytest.raises(ValidationError):
            ScopeConfig(
                name="web", environment="p", source=source_endpoint, target=target_endpoint, max_workers=0
            )


@pytest.mark.unit
class TestSecuritySettings:
    """Tests for SecuritySettings configuration."""

    def test_defaults(self):
        """Test default security settings."""
        settings = SecuritySettings()

        assert settings.read_only is True
        assert settings.disable_destructive is True
        assert settings.audit_log is None
        assert settings.mask_secrets is True
        assert settings.rate_limit_calls == 100
        assert settings.rate_limit_window == 60

    def test_env_prefix(self):
        """Test environment variable prefix."""
        with patch.dict(os.environ, {"MCP_READ_ONLY": "false"}):
            settings = SecuritySettings()
            assert settings.read_only is False


@pytest.mark.unit
class TestControllerSettings:
    """Tests for ControllerSettings."""

    def test_defaults(self):
        """Test default settings."""
        settings = ControllerSettings()

        assert settings.scopes == []
        assert settings.log_level == "INFO"
        assert settings.server_name == "gitops-reconciler"
        assert settings.json_logs is False

    def test_invalid_log_level(self):
        """Test that an unknown log level is rejected."""
        with pytest.raises(ValidationError):
            ControllerSettings(log_level="LOUD")

    def test_get_scope(self, make_scope):
        """Test looking up a scope by name."""
        settings = ControllerSettings(scopes=[make_scope("web-prod"), make_scope("web-stage", "staging")])

        assert settings.get_scope("web-stage").environment == "staging"
        assert settings.get_scope("missing") is None

    def test_duplicate_scope_names(self, make_scope):
        """Test that two scopes with one name are rejected."""
        with pytest.raises(ValidationError, match="duplicate scope names"):
            ControllerSettings(scopes=[make_scope("web"), make_scope("web")])

    def test_scopes_from_env(self):
        """Test scopes given as JSON in the environment."""
        scopes = (
            '[{"name": "web", "environment": "production",'
            ' "source": {"url": "https://git.example.com", "repo": "r"},'
            ' "target": {"url": "https://target.example.com"}}]'
        )
        with patch.dict(os.environ, {"RECONCILER_SCOPES": scopes}):
            settings = ControllerSettings()

        assert [s.name for s in settings.scopes] == ["web"]


@pytest.mark.unit
class TestPolicyDocument:
    """Tests for loading the YAML policy document."""

    def test_load(self, tmp_path: Path):
        """Test a complete policy document."""
        path = tmp_path / "policy.yaml"
        path.write_text(POLICY_DOCUMENT)

        scopes = load_policy_document(path)

        assert len(scopes) == 1
        scope = scopes[0]
        assert scope.name == "web-prod"
        assert scope.sync_interval == 30
        assert scope.source.url == "https://git.example.com"
        assert scope.source.path == "apps/web"
        assert scope.policy.prune is True
        assert scope.policy.self_heal is True
        assert scope.policy.drift_interval == 120
        assert scope.policy.requires_approval_for("production") is True
        assert scope.policy.unordered_fields == ["spec.template.spec.containers.ports"]
        assert scope.policy.health_check_for("Deployment").timeout_seconds == 90

    def test_empty_document(self, tmp_path: Path):
        """Test that an empty document means no scopes."""
        path = tmp_path / "policy.yaml"
        path.write_text("")
        assert load_policy_document(path) == []

    def test_missing_file(self, tmp_path: Path):
        """Test that an unreadable file is a ConfigError."""
        with pytest.raises(ConfigError, match="cannot read"):
            load_policy_document(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path: Path):
        """Test that broken YAML is a ConfigError."""
        path = tmp_path / "policy.yaml"
        path.write_text("scopes: [unclosed")
        with pytest.raises(ConfigError, match="not valid YAML"):
            load_policy_document(path)

    def test_wrong_shape(self, tmp_path: Path):
        """Test that a document without a scopes list is rejected."""
        path = tmp_path / "policy.yaml"
        path.write_text("scopes: web")
        with pytest.raises(ConfigError, match="'scopes' list"):
            load_policy_document(path)

    def test_invalid_scope(self, tmp_path: Path):
        """Test that a scope that does not validate is a ConfigError."""
        path = tmp_path / "policy.yaml"
        path.write_text("scopes:\n  - name: web\n")
        with pytest.raises(ConfigError, match="invalid scope"):
            load_policy_document(path)

    def test_load_settings_merges_policy_file(self, tmp_path: Path):
        """Test that load_settings reads scopes from RECONCILER_POLICY_FILE."""
        path = tmp_path / "policy.yaml"
        path.write_text(POLICY_DOCUMENT)

        with patch.dict(os.environ, {"RECONCILER_POLICY_FILE": str(path)}):
            settings = load_settings()

        assert [s.name for s in settings.scopes] == ["web-prod"]

    def test_load_settings_duplicate_across_sources(self, tmp_path: Path):
        """Test that a scope defined in both the environment and the file is rejected."""
        path = tmp_path / "policy.yaml"
        path.write_text(POLICY_DOCUMENT)
        scopes = (
            '[{"name": "web-prod", "environment": "production",'
            ' "source": {"url": "https://git.example.com", "repo": "r"},'
            ' "target": {"url": "https://target.example.com"}}]'
        )

        with patch.dict(os.environ, {"RECONCILER_POLICY_FILE": str(path), "RECONCILER_SCOPES": scopes}):
            with pytest.raises(ConfigError, match="duplicate scope names"):
                load_settings()
