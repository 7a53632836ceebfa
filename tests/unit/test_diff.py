# ABOUTME: Unit tests for the diff engine
# ABOUTME: Tests delta classification, normalization rules and list comparison options

import copy

import pytest

from gitops_reconciler.diff import changed_fields, compute_diff
from gitops_reconciler.models import (
    DeltaKind,
    DesiredObject,
    DesiredSet,
    ObjectKey,
    ObservedObject,
    ObservedSet,
)

WEB = ObjectKey("Deployment", "apps", "web")
API = ObjectKey("Deployment", "apps", "api")
OLD = ObjectKey("Service", "apps", "old")


def manifest(key: ObjectKey, **spec) -> dict:
    return {"kind": key.kind, "metadata": {"name": key.name, "namespace": key.namespace}, "spec": spec}


def desired_set(*manifests: dict) -> DesiredSet:
    return DesiredSet(
        "c1",
        "production",
        tuple(DesiredObject(ObjectKey.from_manifest(m), m) for m in manifests),
    )


def observed_set(*manifests: dict, errors: dict | None = None) -> ObservedSet:
    observed = ObservedSet()
    for m in manifests:
        key = ObjectKey.from_manifest(m)
        observed.objects[key] = ObservedObject(key, m)
    observed.errors.update(errors or {})
    return observed


def live_copy(m: dict) -> dict:
    live = copy.deepcopy(m)
    live["metadata"].update(uid="1234", resourceVersion="77", creationTimestamp="2024-01-01T00:00:00Z")
    live["status"] = {"readyReplicas": 1}
    return live


@pytest.mark.unit
class TestComputeDiff:
    """Tests for compute_diff classification."""

    def test_desired_only_is_create(self):
        """Test that an object missing from the environment is created."""
        deltas = compute_diff(desired_set(manifest(WEB, replicas=1)), observed_set(), prune=False)

        assert [(d.kind, d.key) for d in deltas] == [(DeltaKind.CREATE, WEB)]

    def test_identical_is_unchanged(self):
        """Test that server-added fields alone are not a difference."""
        m = manifest(WEB, replicas=1)

        deltas = compute_diff(desired_set(m), observed_set(live_copy(m)), prune=False)

        assert deltas.by_kind(DeltaKind.UNCHANGED)[0].key == WEB
        assert deltas.is_empty

    def test_replicas_change_is_update(self):
        """Test that a changed field is reported with its path."""
        live = live_copy(manifest(WEB, replicas=1))

        deltas = compute_diff(desired_set(manifest(WEB, replicas=3)), observed_set(live), prune=False)

        (delta,) = deltas.pending
        assert delta.kind == DeltaKind.UPDATE
        assert delta.changed_fields == ("spec.replicas",)
        assert delta.observed.manifest is live

    def test_observed_only_with_prune_is_delete(self):
        """Test that an undeclared managed object is deleted when pruning."""
        deltas = compute_diff(desired_set(), observed_set(manifest(OLD)), prune=True)

        (delta,) = deltas.pending
        assert delta.kind == DeltaKind.DELETE
        assert delta.reason == "no longer declared"

    def test_observed_only_without_prune_is_unchanged(self):
        """Test that deletion is suppressed when pruning is off."""
        deltas = compute_diff(desired_set(), observed_set(manifest(OLD)), prune=False)

        (delta,) = list(deltas)
        assert delta.kind == DeltaKind.UNCHANGED
        assert "pruning disabled" in delta.reason
        assert deltas.pending == []

    def test_observation_error_is_unknown(self):
        """Test that a failed read is never reported as in sync or missing."""
        deltas = compute_diff(
            desired_set(manifest(WEB, replicas=1)),
            observed_set(errors={WEB: "timed out"}),
            prune=True,
        )

        (delta,) = list(deltas)
        assert delta.kind == DeltaKind.UNKNOWN
        assert delta.reason == "timed out"
        assert delta.desired is not None

    def test_every_key_classified_once_in_order(self):
        """Test that the union of keys is classified exactly once, sorted."""
        deltas = compute_diff(
            desired_set(manifest(WEB, replicas=2), manifest(API, replicas=1)),
            observed_set(live_copy(manifest(WEB, replicas=1)), manifest(OLD)),
            prune=True,
        )

        assert [d.key for d in deltas] == sorted([WEB, API, OLD])
        assert deltas.summary() == {"Create": 1, "Update": 1, "Delete": 1, "Unchanged": 0, "Unknown": 0}

    def test_pure_function(self):
        """Test that inputs are not modified and repeated calls agree."""
        desired = desired_set(manifest(WEB, replicas=2))
        observed = observed_set(live_copy(manifest(WEB, replicas=1)))
        before = desired.canonical()

        first = compute_diff(desired, observed, prune=True)
        second = compute_diff(desired, observed, prune=True)

        assert [d.describe() for d in first] == [d.describe() for d in second]
        assert desired.canonical() == before


@pytest.mark.unit
class TestChangedFields:
    """Tests for changed_fields normalization."""

    def test_ignores_status_and_bookkeeping(self):
        """Test that status and server-managed metadata are ignored."""
        desired = {"metadata": {"name": "web", "resourceVersion": "1"}, "status": {"phase": "Running"}}
        live = {"metadata": {"name": "web", "resourceVersion": "9"}, "status": {"phase": "Pending"}}

        assert changed_fields(desired, live) == ()

    def test_undeclared_live_fields_ignored(self):
        """Test that defaults the environment adds are not drift."""
        assert changed_fields({"spec": {"replicas": 1}}, {"spec": {"replicas": 1, "paused": False}}) == ()

    def test_missing_declared_field(self):
        """Test that a declared field absent from the live object is a change."""
        assert changed_fields({"spec": {"replicas": 1}}, {"spec": {}}) == ("spec.replicas",)

    def test_declared_null_missing_live_is_equal(self):
        """Test that an explicit null matches an absent field."""
        assert changed_fields({"spec": {"selector": None}}, {"spec": {}}) == ()

    def test_mapping_order_irrelevant(self):
        """Test that key order in mappings does not matter."""
        assert changed_fields({"a": 1, "b": 2}, {"b": 2, "a": 1}) == ()

    def test_bool_is_not_int(self):
        """Test that True and 1 are different values."""
        assert changed_fields({"spec": {"paused": True}}, {"spec": {"paused": 1}}) == ("spec.paused",)

    def test_type_change(self):
        """Test that a mapping replaced by a scalar is a change."""
        assert changed_fields({"spec": {"template": {"a": 1}}}, {"spec": {"template": "x"}}) == ("spec.template",)

    def test_ordered_list_reorder_is_change(self):
        """Test that lists compare element by element by default."""
        desired = {"spec": {"ports": [{"port": 80}, {"port": 443}]}}
        live = {"spec": {"ports": [{"port": 443}, {"port": 80}]}}

        assert changed_fields(desired, live) == ("spec.ports[0].port", "spec.ports[1].port")

    def test_list_length_change(self):
        """Test that a list of different length is reported at the list path."""
        assert changed_fields({"spec": {"args": ["a"]}}, {"spec": {"args": ["a", "b"]}}) == ("spec.args",)

    def test_unordered_list_reorder_is_equal(self):
        """Test that unordered paths compare as multisets."""
        desired = {"spec": {"ports": [{"port": 80}, {"port": 443}]}}
        live = {"spec": {"ports": [{"port": 443, "protocol": "TCP"}, {"port": 80}]}}

        assert changed_fields(desired, live, unordered_fields=["spec.ports"]) == ()

    def test_unordered_list_content_change(self):
        """Test that an unordered list with a different element is a change."""
        desired = {"spec": {"ports": [{"port": 80}, {"port": 443}]}}
        live = {"spec": {"ports": [{"port": 8080}, {"port": 80}]}}

        assert changed_fields(desired, live, unordered_fields=["spec.ports"]) == ("spec.ports",)

    def test_unordered_match_reassigns_live_elements(self):
        """Test that a live element covering two desired ones goes to the one that needs it."""
        desired = {"spec": {"rules": [{"a": 1}, {"a": 1, "b": 2}]}}
        live = {"spec": {"rules": [{"a": 1, "b": 2}, {"a": 1, "b": 3}]}}

        assert changed_fields(desired, live, unordered_fields=["spec.rules"]) == ()

    def test_unordered_match_needs_one_live_element_each(self):
        """Test that two desired elements cannot share a single live element."""
        desired = {"spec": {"rules": [{"a": 1, "b": 2}, {"a": 1, "b": 2}]}}
        live = {"spec": {"rules": [{"a": 1, "b": 2}, {"a": 1, "b": 3}]}}

        assert changed_fields(desired, live, unordered_fields=["spec.rules"]) == ("spec.rules",)

    def test_unordered_nested_path_strips_indices(self):
        """Test that unordered paths inside lists are matched without indices."""
        desired = {"spec": {"containers": [{"ports": [1, 2]}]}}
        live = {"spec": {"containers": [{"ports": [2, 1]}]}}

        assert changed_fields(desired, live) == ("spec.containers[0].ports[0]", "spec.containers[0].ports[1]")
        assert changed_fields(desired, live, unordered_fields=["spec.containers.ports"]) == ()

    def test_managed_field_compared_exactly(self):
        """Test that an owned field must match exactly, extra live keys included."""
        desired = {"metadata": {"annotations": {"team": "web"}}}
        live = {"metadata": {"annotations": {"team": "web", "added": "by-hand"}}}

        assert changed_fields(desired, live) == ()
        assert changed_fields(desired, live, managed_fields=["metadata.annotations"]) == ("metadata.annotations",)

    def test_managed_field_removed_from_desired(self):
        """Test that an owned field present only on the live object is drift."""
        desired = {"spec": {}}
        live = {"spec": {"paused": True}}

        assert changed_fields(desired, live, managed_fields=["spec.paused"]) == ("spec.paused",)

    def test_managed_field_absent_on_both(self):
        """Test that an owned field absent everywhere is not drift."""
        assert changed_fields({"spec": {}}, {"spec": {}}, managed_fields=["spec.paused"]) == ()

    def test_managed_field_not_duplicated(self):
        """Test that a managed path already reported is not listed twice."""
        changed = changed_fields({"spec": {"replicas": 2}}, {"spec": {"replicas": 1}}, managed_fields=["spec"])

        assert changed == ("spec.replicas",)
