# ABOUTME: Pytest fixtures and configuration for GitOps reconciler tests
# ABOUTME: Provides settings, an in-memory target environment and a fake source

from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import SecretStr

from gitops_reconciler.config import (
    ScopeConfig,
    SecuritySettings,
    SourceEndpoint,
    SyncPolicy,
    TargetEndpoint,
)
from gitops_reconciler.utils.safety import SafetyGuard

from fakes import WEB_DEPLOYMENT, WEB_SERVICE, FakeSource, FakeTarget

# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def fake_source() -> FakeSource:
    return FakeSource({"apps/web/base/web.yaml": WEB_DEPLOYMENT, "apps/web/base/service.yaml": WEB_SERVICE})


@pytest.fixture
def fake_target() -> FakeTarget:
    return FakeTarget()


@pytest.fixture
def source_endpoint() -> SourceEndpoint:
    return SourceEndpoint(
        url="https://git.example.com",
        repo="platform/deploy",
        branch="main",
        path="apps/web",
        token=SecretStr("source-token"),
    )


@pytest.fixture
def target_endpoint() -> TargetEndpoint:
    return TargetEndpoint(
        url="https://target.example.com",
        token=SecretStr("target-token"),
        insecure=True,
    )


@pytest.fixture
def make_scope(
    source_endpoint: SourceEndpoint,
    target_endpoint: TargetEndpoint,
) -> Callable[..., ScopeConfig]:
    """Build a ScopeConfig; keyword arguments are SyncPolicy fields."""

    def factory(name: str = "web-prod", environment: str = "production", **policy: Any) -> ScopeConfig:
        return ScopeConfig(
            name=name,
            environment=environment,
            source=source_endpoint,
            target=target_endpoint,
            policy=SyncPolicy(**policy),
            sync_interval=0.05,
            source_retry_attempts=1,
        )

    return factory


@pytest.fixture
def mock_security_settings() -> SecuritySettings:
    """Create security settings for testing."""
    return SecuritySettings(
        read_only=False,
        disable_destructive=False,
        audit_log=None,
        mask_secrets=True,
        rate_limit_calls=100,
        rate_limit_window=60,
    )


@pytest.fixture
def read_only_security_settings() -> SecuritySettings:
    """Create read-only security settings for testing."""
    return SecuritySettings(
        read_only=True,
        disable_destructive=True,
        audit_log=None,
        mask_secrets=True,
        rate_limit_calls=100,
        rate_limit_window=60,
    )


@pytest.fixture
def safety_guard(mock_security_settings: SecuritySettings) -> SafetyGuard:
    """Create a safety guard for testing."""
    return SafetyGuard(mock_security_settings)


@pytest.fixture
def read_only_safety_guard(read_only_security_settings: SecuritySettings) -> SafetyGuard:
    """Create a read-only safety guard for testing."""
    return SafetyGuard(read_only_security_settings)


@pytest.fixture
def mock_context() -> MagicMock:
    """Create a mock MCP context."""
    ctx = MagicMock()
    ctx.request_id = "test-request-123"
    ctx.report_progress = AsyncMock()
    return ctx

