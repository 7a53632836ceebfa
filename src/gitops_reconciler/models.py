# ABOUTME: Core data model for the reconciliation pipeline
# ABOUTME: Revisions, desired/observed objects, deltas and sync results

"""
Data model shared by every pipeline stage.

=============================================================================
LIFECYCLE
=============================================================================

    Revision ──compile──> DesiredSet ──┐
                                       ├──diff──> DeltaSet ──apply──> SyncResult
    target API ──observe──> ObservedSet┘

- Revision and DesiredSet are immutable snapshots; a scope keeps the last
  good DesiredSet until a newer revision compiles cleanly.
- ObservedSet is rebuilt every cycle and never mutated by the diff.
- DeltaSet is computed fresh each cycle and never persisted.
- SyncResult is the only thing kept in history.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterator


def canonical_json(data: Any) -> str:
    """Deterministic JSON form used for hashing and byte-identical comparison."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def utcnow() -> datetime:
    return datetime.now(UTC)


# =============================================================================
# IDENTITY
# =============================================================================


@dataclass(frozen=True, order=True)
class ObjectKey:
    """Identity of a managed object: unique within one compiled revision."""

    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}"

    @classmethod
    def from_manifest(cls, manifest: dict[str, Any], default_namespace: str = "default") -> ObjectKey:
        metadata = manifest.get("metadata") or {}
        return cls(
            kind=str(manifest.get("kind", "")),
            namespace=str(metadata.get("namespace") or default_namespace),
            name=str(metadata.get("name", "")),
        )


# =============================================================================
# SOURCE SNAPSHOT
# =============================================================================


@dataclass(frozen=True)
class Revision:
    """
    Point-in-time snapshot of the declared configuration tree.

    ``id`` is the commit identifier reported by the source; ``digest`` covers
    only the files under the tracked path, so two commits that do not touch
    that path share a digest.
    """

    id: str
    branch: str
    path: str
    files: tuple[tuple[str, str], ...]
    digest: str

    @classmethod
    def build(cls, revision_id: str, branch: str, path: str, files: dict[str, str]) -> Revision:
        ordered = tuple(sorted(files.items()))
        hasher = hashlib.sha256()
        for file_path, content in ordered:
            hasher.update(file_path.encode())
            hasher.update(b"\0")
            hasher.update(content.encode())
            hasher.update(b"\0")
        return cls(
            id=revision_id,
            branch=branch,
            path=path,
            files=ordered,
            digest=hasher.hexdigest(),
        )

    @property
    def short_id(self) -> str:
        return self.id[:8]

    def file_map(self) -> dict[str, str]:
        return dict(self.files)


# =============================================================================
# DESIRED AND OBSERVED STATE
# =============================================================================


@dataclass(frozen=True)
class DesiredObject:
    """A fully resolved target object."""

    key: ObjectKey
    manifest: dict[str, Any]

    def canonical(self) -> str:
        return canonical_json(self.manifest)


@dataclass(frozen=True)
class DesiredSet:
    """The compiled, flat, key-sorted desired state for one environment."""

    revision_id: str
    environment: str
    objects: tuple[DesiredObject, ...]

    def __post_init__(self) -> None:
        ordered = tuple(sorted(self.objects, key=lambda o: o.key))
        object.__setattr__(self, "objects", ordered)
        object.__setattr__(self, "_index", {o.key: o for o in ordered})

    def __len__(self) -> int:
        return len(self.objects)

    def __iter__(self) -> Iterator[DesiredObject]:
        return iter(self.objects)

    def get(self, key: ObjectKey) -> DesiredObject | None:
        return self._index.get(key)  # type: ignore[attr-defined]

    def keys(self) -> list[ObjectKey]:
        return [o.key for o in self.objects]

    def namespaces(self) -> list[str]:
        return sorted({o.key.namespace for o in self.objects})

    def kinds(self) -> list[str]:
        return sorted({o.key.kind for o in self.objects})

    def canonical(self) -> str:
        return "\n".join(f"{o.key}\t{o.canonical()}" for o in self.objects)

    @property
    def digest(self) -> str:
        return hashlib.sha256(self.canonical().encode()).hexdigest()


@dataclass(frozen=True)
class ObservedObject:
    """Live counterpart of a desired object."""

    key: ObjectKey
    manifest: dict[str, Any]
    observed_at: datetime = field(default_factory=utcnow)


@dataclass
class ObservedSet:
    """Result of one observation pass, including per-object failures."""

    objects: dict[ObjectKey, ObservedObject] = field(default_factory=dict)
    missing: set[ObjectKey] = field(default_factory=set)
    errors: dict[ObjectKey, str] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    def get(self, key: ObjectKey) -> ObservedObject | None:
        return self.objects.get(key)


# =============================================================================
# DELTAS
# =============================================================================


class DeltaKind(str, Enum):
    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"
    UNCHANGED = "Unchanged"
    UNKNOWN = "Unknown"


PENDING_KINDS = frozenset({DeltaKind.CREATE, DeltaKind.UPDATE, DeltaKind.DELETE})


@dataclass(frozen=True)
class Delta:
    """Classification of one identity key for one cycle."""

    kind: DeltaKind
    key: ObjectKey
    desired: DesiredObject | None = None
    observed: ObservedObject | None = None
    changed_fields: tuple[str, ...] = ()
    reason: str = ""

    @property
    def pending(self) -> bool:
        return self.kind in PENDING_KINDS

    def describe(self) -> str:
        marker = {
            DeltaKind.CREATE: "+",
            DeltaKind.UPDATE: "~",
            DeltaKind.DELETE: "-",
            DeltaKind.UNKNOWN: "?",
        }.get(self.kind, "=")
        line = f"{marker} {self.key}"
        if self.changed_fields:
            line += f" ({', '.join(self.changed_fields)})"
        if self.reason:
            line += f" [{self.reason}]"
        return line


@dataclass(frozen=True)
class DeltaSet:
    deltas: tuple[Delta, ...] = ()

    def __iter__(self) -> Iterator[Delta]:
        return iter(self.deltas)

    def __len__(self) -> int:
        return len(self.deltas)

    @property
    def pending(self) -> list[Delta]:
        return [d for d in self.deltas if d.pending]

    @property
    def unknown(self) -> list[Delta]:
        return [d for d in self.deltas if d.kind == DeltaKind.UNKNOWN]

    def by_kind(self, kind: DeltaKind) -> list[Delta]:
        return [d for d in self.deltas if d.kind == kind]

    @property
    def is_empty(self) -> bool:
        """True when nothing needs doing and nothing is in doubt."""
        return not self.pending and not self.unknown

    def summary(self) -> dict[str, int]:
        counts = {kind.value: 0 for kind in DeltaKind}
        for delta in self.deltas:
            counts[delta.kind.value] += 1
        return counts


# =============================================================================
# SYNC RESULTS
# =============================================================================


class SyncPhase(str, Enum):
    PENDING = "Pending"
    APPLYING = "Applying"
    SUCCEEDED = "Succeeded"
    PARTIALLY_FAILED = "PartiallyFailed"
    BLOCKED = "Blocked"
    CANCELLED = "Cancelled"


class SyncStatus(str, Enum):
    SYNCED = "Synced"
    OUT_OF_SYNC = "OutOfSync"
    DEGRADED = "Degraded"
    UNKNOWN = "Unknown"


class ObjectOutcome(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class ObjectResult:
    key: ObjectKey
    action: DeltaKind
    outcome: ObjectOutcome
    reason: str = ""
    healthy: bool | None = None

    def describe(self) -> str:
        line = f"{self.outcome.value:<8} {self.action.value:<9} {self.key}"
        if self.healthy is False:
            line += " (degraded)"
        if self.reason:
            line += f": {self.reason}"
        return line


@dataclass
class SyncResult:
    """Outcome of one reconciliation attempt for one scope."""

    scope: str
    revision_id: str | None
    phase: SyncPhase = SyncPhase.PENDING
    status: SyncStatus = SyncStatus.UNKNOWN
    objects: list[ObjectResult] = field(default_factory=list)
    trigger: str = "interval"
    message: str = ""
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None

    def _with(self, outcome: ObjectOutcome) -> list[ObjectResult]:
        return [o for o in self.objects if o.outcome == outcome]

    @property
    def applied(self) -> list[ObjectResult]:
        return self._with(ObjectOutcome.APPLIED)

    @property
    def failed(self) -> list[ObjectResult]:
        return self._with(ObjectOutcome.FAILED)

    @property
    def skipped(self) -> list[ObjectResult]:
        return self._with(ObjectOutcome.SKIPPED)

    @property
    def degraded(self) -> list[ObjectResult]:
        return [o for o in self.objects if o.healthy is False]

    def summary(self) -> dict[str, Any]:
        return {
            "scope": self.scope,
            "revision": self.revision_id,
            "phase": self.phase.value,
            "status": self.status.value,
            "trigger": self.trigger,
            "applied": len(self.applied),
            "failed": len(self.failed),
            "skipped": len(self.skipped),
            "degraded": len(self.degraded),
            "message": self.message,
        }


@dataclass(frozen=True)
class Approval:
    """Operator approval unblocking one revision of a gated scope."""

    revision_id: str
    approved_by: str = "operator"
    approved_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class DriftReport:
    scope: str
    revision_id: str
    deltas: tuple[Delta, ...]
    detected_at: datetime = field(default_factory=utcnow)
    healed: bool = False

    @property
    def drifted(self) -> bool:
        return bool(self.deltas)
