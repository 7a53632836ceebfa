# ABOUTME: Pure diff engine classifying every identity key as create/update/delete/unchanged
# ABOUTME: Normalized comparison that ignores server-managed and undeclared fields

"""
Diff Engine.

compute_diff() is a pure function of (desired, observed, options): it never
performs I/O and never mutates its inputs, so the sync loop and the drift
monitor can both call it.

Comparison rules:

- Only fields present in the desired document are compared. A field the
  environment adds on its own (defaults, status, bookkeeping metadata) is
  never drift, unless its dotted path is listed in `managed_fields`; those
  paths are owned entirely and compared exactly.
- Mapping comparison is order-independent.
- Lists are sequences: same length, element by element. Paths listed in
  `unordered_fields` compare as multisets instead.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from gitops_reconciler.models import Delta, DeltaKind, DeltaSet, ObjectKey

if TYPE_CHECKING:
    from collections.abc import Iterable

    from gitops_reconciler.models import DesiredSet, ObservedSet

IGNORED_FIELDS = frozenset(
    {
        "status",
        "metadata.uid",
        "metadata.resourceVersion",
        "metadata.generation",
        "metadata.creationTimestamp",
        "metadata.managedFields",
        "metadata.selfLink",
    }
)

_MISSING = object()


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def _strip_indices(path: str) -> str:
    """'spec.containers[0].ports' -> 'spec.containers.ports' for option lookups."""
    out: list[str] = []
    depth = 0
    for ch in path:
        if ch == "[":
            depth += 1
        elif ch == "]":
            depth -= 1
        elif depth == 0:
            out.append(ch)
    return "".join(out)


def _scalar_equal(desired: Any, live: Any) -> bool:
    # True == 1 in Python; a bool never equals a number here
    if isinstance(desired, bool) or isinstance(live, bool):
        return type(desired) is type(live) and desired == live
    return bool(desired == live)


def _lookup(manifest: Any, dotted: str) -> Any:
    node = manifest
    for part in dotted.split("."):
        if not isinstance(node, dict) or part not in node:
            return _MISSING
        node = node[part]
    return node


class _Comparator:
    def __init__(self, unordered_fields: Iterable[str]) -> None:
        self._unordered = frozenset(unordered_fields)

    def compare(self, desired: Any, live: Any, path: str, out: list[str]) -> None:
        if _strip_indices(path) in IGNORED_FIELDS:
            return

        if isinstance(desired, dict):
            if not isinstance(live, dict):
                out.append(path)
                return
            for key in sorted(desired):
                child = _join(path, str(key))
                if _strip_indices(child) in IGNORED_FIELDS:
                    continue
                if key not in live:
                    if desired[key] is not None:
                        out.append(child)
                    continue
                self.compare(desired[key], live[key], child, out)
            return

        if isinstance(desired, list):
            if not isinstance(live, list) or len(desired) != len(live):
                out.append(path)
                return
            if _strip_indices(path) in self._unordered:
                if not self._multiset_equal(desired, live, path):
                    out.append(path)
                return
            for index, (d_item, l_item) in enumerate(zip(desired, live, strict=True)):
                self.compare(d_item, l_item, f"{path}[{index}]", out)
            return

        if not _scalar_equal(desired, live):
            out.append(path)

    def _multiset_equal(self, desired: list[Any], live: list[Any], path: str) -> bool:
        # Augmenting-path matching; a live element may cover more than one desired element
        fits = [[j for j, l_item in enumerate(live) if self._covers(d_item, l_item, path)] for d_item in desired]
        owner: dict[int, int] = {}

        def claim(i: int, visited: set[int]) -> bool:
            for j in fits[i]:
                if j in visited:
                    continue
                visited.add(j)
                if j not in owner or claim(owner[j], visited):
                    owner[j] = i
                    return True
            return False

        return all(claim(i, set()) for i in range(len(desired)))

    def _covers(self, desired: Any, live: Any, path: str) -> bool:
        diffs: list[str] = []
        self.compare(desired, live, f"{path}[]", diffs)
        return not diffs

    @staticmethod
    def exact_equal(desired: Any, live: Any) -> bool:
        if isinstance(desired, dict) and isinstance(live, dict):
            return desired.keys() == live.keys() and all(
                _Comparator.exact_equal(desired[k], live[k]) for k in desired
            )
        if isinstance(desired, list) and isinstance(live, list):
            return len(desired) == len(live) and all(
                _Comparator.exact_equal(d, l) for d, l in zip(desired, live, strict=True)
            )
        return _scalar_equal(desired, live)


def changed_fields(
    desired: dict[str, Any],
    live: dict[str, Any],
    managed_fields: Iterable[str] = (),
    unordered_fields: Iterable[str] = (),
) -> tuple[str, ...]:
    """
    Dotted paths at which `live` differs from `desired`.

    Example:
        >>> changed_fields({"spec": {"replicas": 3}}, {"spec": {"replicas": 2, "paused": False}})
        ('spec.replicas',)
    """
    comparator = _Comparator(unordered_fields)
    out: list[str] = []
    comparator.compare(desired, live, "", out)

    for managed in sorted(set(managed_fields)):
        wanted = _lookup(desired, managed)
        actual = _lookup(live, managed)
        if wanted is _MISSING and actual is _MISSING:
            continue
        if wanted is _MISSING or actual is _MISSING or not comparator.exact_equal(wanted, actual):
            if not any(managed == f or f.startswith(f"{managed}.") for f in out):
                out.append(managed)

    seen: set[str] = set()
    unique: list[str] = []
    for field in out:
        if field not in seen:
            seen.add(field)
            unique.append(field)
    return tuple(unique)


def compute_diff(
    desired: DesiredSet,
    observed: ObservedSet,
    *,
    prune: bool,
    managed_fields: Iterable[str] = (),
    unordered_fields: Iterable[str] = (),
) -> DeltaSet:
    """
    Classify every identity key present in either set.

    - desired only                     -> Create
    - both, normalized fields differ   -> Update (with changed fields)
    - both, no difference              -> Unchanged
    - observed only, prune             -> Delete
    - observed only, no prune          -> Unchanged (deletion suppressed)
    - observation failed               -> Unknown (never Unchanged)
    """
    managed = tuple(managed_fields)
    unordered = tuple(unordered_fields)

    keys: set[ObjectKey] = set(desired.keys())
    keys.update(observed.objects)
    keys.update(observed.errors)

    deltas: list[Delta] = []
    for key in sorted(keys):
        wanted = desired.get(key)
        live = observed.get(key)

        if key in observed.errors:
            deltas.append(
                Delta(DeltaKind.UNKNOWN, key, desired=wanted, reason=observed.errors[key])
            )
        elif wanted is not None and live is None:
            deltas.append(Delta(DeltaKind.CREATE, key, desired=wanted))
        elif wanted is not None and live is not None:
            fields = changed_fields(wanted.manifest, live.manifest, managed, unordered)
            kind = DeltaKind.UPDATE if fields else DeltaKind.UNCHANGED
            deltas.append(Delta(kind, key, desired=wanted, observed=live, changed_fields=fields))
        elif live is not None:
            if prune:
                deltas.append(Delta(DeltaKind.DELETE, key, observed=live, reason="no longer declared"))
            else:
                deltas.append(
                    Delta(
                        DeltaKind.UNCHANGED,
                        key,
                        observed=live,
                        reason="not declared; pruning disabled",
                    )
                )

    return DeltaSet(tuple(deltas))
