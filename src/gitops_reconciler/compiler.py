# ABOUTME: Desired-state compiler expanding base documents and environment overlays
# ABOUTME: Produces a deterministic, key-sorted desired set or fails with CompileError

"""
Desired-State Compiler.

=============================================================================
REPOSITORY LAYOUT
=============================================================================

Paths are relative to the tracked path filter:

    base/*.yaml                      base documents
    overlays/<environment>/*.yaml    overlays for one environment

Inside an overlay directory, a document with `kind: Overlay` is a
composition document; every other document is an extra object that exists
only in that environment.

=============================================================================
COMPOSITION DOCUMENT
=============================================================================

    kind: Overlay
    resources: [base/web.yaml]          # base files to include
    namespace: production               # namespace override for all of them
    nameSuffix: -prod                   # rename all of them
    commonLabels: {tier: prod}          # labels merged into all of them
    patches:
      - target: {kind: Deployment, name: web}
        replicas: 3
        images: [{name: nginx, newTag: "1.25"}]

=============================================================================
CONFLICTS
=============================================================================

Every overlay-level setting and every patch is first turned into a list of
field assignments per base object, then checked, then applied. Two
assignments to the same field with different values fail the compile. Two
renames of the same object fail even when they agree. Nothing is adopted
unless the whole revision compiles.
"""

from __future__ import annotations

import copy
import posixpath
from dataclasses import dataclass
from typing import Any

import structlog
import yaml

from gitops_reconciler.errors import CompileError
from gitops_reconciler.models import DesiredObject, DesiredSet, ObjectKey, Revision

logger = structlog.get_logger(__name__)

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "gitops-reconciler"
ENVIRONMENT_LABEL = "gitops-reconciler/environment"

OVERLAY_KIND = "Overlay"
YAML_SUFFIXES = (".yaml", ".yml")


class _ManifestLoader(yaml.SafeLoader):
    """SafeLoader that keeps timestamps as the strings the API server stores."""


_ManifestLoader.add_constructor(
    "tag:yaml.org,2002:timestamp",
    lambda loader, node: loader.construct_scalar(node),
)

_JSON_SCALARS = (str, int, float, bool, type(None))


def managed_selector(environment: str) -> str:
    """Label selector matching every object this reconciler manages for `environment`."""
    return f"{MANAGED_BY_LABEL}={MANAGED_BY_VALUE},{ENVIRONMENT_LABEL}={environment}"


@dataclass(frozen=True)
class _Assignment:
    """One field-level change requested by an overlay, with its origin."""

    field: str
    value: Any
    source: str
    rename: bool = False


@dataclass
class _SourceDocument:
    path: str
    index: int
    manifest: dict[str, Any]

    @property
    def origin(self) -> str:
        return f"{self.path}#{self.index}"


class DesiredStateCompiler:
    """
    Compiles a Revision for one environment into a DesiredSet.

    The compiler is stateless; compile() is a pure function of its inputs.
    """

    def __init__(self, default_namespace: str = "default") -> None:
        self._default_namespace = default_namespace

    # =========================================================================
    # ENTRY POINT
    # =========================================================================

    def compile(self, revision: Revision, environment: str) -> DesiredSet:
        """
        Resolve base documents and the environment's overlays.

        Raises:
            CompileError: On malformed documents, unknown environments,
                conflicting patches or duplicate identities.
        """
        files = self._relative_files(revision)
        base_docs = self._load_dir(files, "base")
        has_overlays = any(p.startswith("overlays/") for p in files)

        if not has_overlays:
            objects = [self._finalize(doc.manifest, doc.origin, environment) for doc in base_docs]
            return self._build_set(revision, environment, objects)

        overlay_dir = f"overlays/{environment}"
        if not any(p.startswith(f"{overlay_dir}/") for p in files):
            raise CompileError(overlay_dir, f"no overlay for environment '{environment}'")

        overlay_docs = self._load_dir(files, overlay_dir)
        compositions = [d for d in overlay_docs if d.manifest.get("kind") == OVERLAY_KIND]
        extras = [d for d in overlay_docs if d.manifest.get("kind") != OVERLAY_KIND]

        # Base documents are only part of an environment when an overlay includes them.
        included: dict[str, _SourceDocument] = {}
        assignments: dict[str, list[_Assignment]] = {}
        for composition in compositions:
            members = self._resolve_resources(composition, base_docs, files)
            for doc in members:
                included.setdefault(doc.origin, doc)
            for origin, assignment in self._composition_assignments(composition, members):
                assignments.setdefault(origin, []).append(assignment)

        objects: list[DesiredObject] = []
        for origin in sorted(included):
            doc = included[origin]
            manifest = self._apply_assignments(doc, assignments.get(origin, []))
            objects.append(self._finalize(manifest, origin, environment))
        for doc in extras:
            objects.append(self._finalize(doc.manifest, doc.origin, environment))

        return self._build_set(revision, environment, objects)

    # =========================================================================
    # LOADING
    # =========================================================================

    @staticmethod
    def _relative_files(revision: Revision) -> dict[str, str]:
        root = revision.path.strip("/")
        relative: dict[str, str] = {}
        for path, content in revision.files:
            if root:
                if not path.startswith(f"{root}/"):
                    continue
                path = path[len(root) + 1 :]
            relative[path] = content
        return relative

    def _load_dir(self, files: dict[str, str], directory: str) -> list[_SourceDocument]:
        docs: list[_SourceDocument] = []
        for path in sorted(files):
            if posixpath.dirname(path) != directory or not path.endswith(YAML_SUFFIXES):
                continue
            docs.extend(self._parse_file(path, files[path]))
        return docs

    @staticmethod
    def _parse_file(path: str, content: str) -> list[_SourceDocument]:
        try:
            raw_docs = list(yaml.load_all(content, Loader=_ManifestLoader))  # noqa: S506 - SafeLoader subclass
        except yaml.YAMLError as e:
            raise CompileError(path, f"invalid YAML: {e}") from e

        docs: list[_SourceDocument] = []
        for index, raw in enumerate(raw_docs):
            if raw is None:
                continue
            if not isinstance(raw, dict):
                raise CompileError(f"{path}#{index}", "document is not a mapping")
            _check_json_compatible(raw, f"{path}#{index}", "")
            docs.append(_SourceDocument(path=path, index=index, manifest=raw))
        return docs

    # =========================================================================
    # COMPOSITION
    # =========================================================================

    def _resolve_resources(
        self,
        composition: _SourceDocument,
        base_docs: list[_SourceDocument],
        files: dict[str, str],
    ) -> list[_SourceDocument]:
        resources = composition.manifest.get("resources")
        if resources is None:
            return list(base_docs)
        if not isinstance(resources, list) or not all(isinstance(r, str) for r in resources):
            raise CompileError(composition.origin, "'resources' must be a list of paths")

        selected: list[_SourceDocument] = []
        for resource in resources:
            path = posixpath.normpath(resource.strip("/"))
            if path not in files:
                raise CompileError(composition.origin, f"resource '{resource}' not found")
            matches = [d for d in base_docs if d.path == path]
            if not matches:
                raise CompileError(composition.origin, f"resource '{resource}' is not a base document")
            selected.extend(matches)
        return selected

    def _composition_assignments(
        self,
        composition: _SourceDocument,
        members: list[_SourceDocument],
    ) -> list[tuple[str, _Assignment]]:
        manifest = composition.manifest
        origin = composition.origin
        result: list[tuple[str, _Assignment]] = []

        # Overlay-wide settings apply to every included resource.
        for doc in members:
            result.extend((doc.origin, a) for a in self._patch_assignments(manifest, doc, origin))

        patches = manifest.get("patches") or []
        if not isinstance(patches, list):
            raise CompileError(origin, "'patches' must be a list")
        for position, patch in enumerate(patches):
            patch_origin = f"{origin}/patches[{position}]"
            if not isinstance(patch, dict):
                raise CompileError(patch_origin, "patch is not a mapping")
            targets = self._match_targets(patch.get("target"), members, patch_origin)
            for doc in targets:
                result.extend((doc.origin, a) for a in self._patch_assignments(patch, doc, patch_origin))
        return result

    @staticmethod
    def _match_targets(
        target: Any,
        members: list[_SourceDocument],
        origin: str,
    ) -> list[_SourceDocument]:
        if target is None:
            return list(members)
        if not isinstance(target, dict):
            raise CompileError(origin, "'target' must be a mapping")

        def matches(doc: _SourceDocument) -> bool:
            metadata = doc.manifest.get("metadata") or {}
            if "kind" in target and doc.manifest.get("kind") != target["kind"]:
                return False
            if "name" in target and metadata.get("name") != target["name"]:
                return False
            return not ("namespace" in target and metadata.get("namespace") != target["namespace"])

        selected = [d for d in members if matches(d)]
        if not selected:
            raise CompileError(origin, f"patch target {target} matches no resource")
        return selected

    def _patch_assignments(
        self,
        patch: dict[str, Any],
        doc: _SourceDocument,
        origin: str,
    ) -> list[_Assignment]:
        assignments: list[_Assignment] = []
        metadata = doc.manifest.get("metadata") or {}

        if "nameSuffix" in patch:
            suffix = patch["nameSuffix"]
            if not isinstance(suffix, str) or not suffix:
                raise CompileError(origin, "'nameSuffix' must be a non-empty string")
            new_name = f"{metadata.get('name', '')}{suffix}"
            assignments.append(_Assignment("metadata.name", new_name, origin, rename=True))

        if "namespace" in patch:
            namespace = patch["namespace"]
            if not isinstance(namespace, str) or not namespace:
                raise CompileError(origin, "'namespace' must be a non-empty string")
            assignments.append(_Assignment("metadata.namespace", namespace, origin))

        if "replicas" in patch:
            replicas = patch["replicas"]
            if not isinstance(replicas, int) or isinstance(replicas, bool) or replicas < 0:
                raise CompileError(origin, "'replicas' must be a non-negative integer")
            assignments.append(_Assignment("spec.replicas", replicas, origin))

        labels = patch.get("commonLabels")
        if labels is not None:
            if not isinstance(labels, dict):
                raise CompileError(origin, "'commonLabels' must be a mapping")
            for key in sorted(labels):
                assignments.append(_Assignment(f"metadata.labels.{key}", str(labels[key]), origin))

        images = patch.get("images")
        if images is not None:
            if not isinstance(images, list):
                raise CompileError(origin, "'images' must be a list")
            for image in images:
                if not isinstance(image, dict) or not image.get("name") or "newTag" not in image:
                    raise CompileError(origin, "each image needs 'name' and 'newTag'")
                assignments.append(_Assignment(f"image:{image['name']}", str(image["newTag"]), origin))

        return assignments

    @staticmethod
    def _check_conflicts(doc: _SourceDocument, assignments: list[_Assignment]) -> None:
        seen: dict[str, _Assignment] = {}
        for assignment in assignments:
            previous = seen.get(assignment.field)
            if previous is None:
                seen[assignment.field] = assignment
                continue
            if assignment.rename and previous.rename:
                raise CompileError(
                    assignment.source,
                    f"{doc.origin} is renamed by both {previous.source} and {assignment.source}",
                )
            if previous.value != assignment.value:
                raise CompileError(
                    assignment.source,
                    f"conflicting values for {assignment.field} on {doc.origin}: "
                    f"{previous.value!r} ({previous.source}) vs {assignment.value!r}",
                )

    def _apply_assignments(self, doc: _SourceDocument, assignments: list[_Assignment]) -> dict[str, Any]:
        self._check_conflicts(doc, assignments)
        manifest = copy.deepcopy(doc.manifest)

        for assignment in assignments:
            if assignment.field.startswith("image:"):
                name = assignment.field.split(":", 1)[1]
                if not _retag_images(manifest, name, assignment.value):
                    raise CompileError(
                        assignment.source,
                        f"no container in {doc.origin} uses image '{name}'",
                    )
                continue
            _set_path(manifest, assignment.field.split("."), assignment.value, assignment.source)
        return manifest

    # =========================================================================
    # FINALIZATION
    # =========================================================================

    def _finalize(self, manifest: dict[str, Any], origin: str, environment: str) -> DesiredObject:
        manifest = copy.deepcopy(manifest)
        kind = manifest.get("kind")
        if not isinstance(kind, str) or not kind:
            raise CompileError(origin, "missing 'kind'")

        metadata = manifest.get("metadata")
        if not isinstance(metadata, dict):
            raise CompileError(origin, "missing 'metadata'")
        name = metadata.get("name")
        if not isinstance(name, str) or not name:
            raise CompileError(origin, "missing 'metadata.name'")
        namespace = metadata.get("namespace") or self._default_namespace
        if not isinstance(namespace, str):
            raise CompileError(origin, "'metadata.namespace' must be a string")
        metadata["namespace"] = namespace

        labels = metadata.get("labels") or {}
        if not isinstance(labels, dict):
            raise CompileError(origin, "'metadata.labels' must be a mapping")
        labels[MANAGED_BY_LABEL] = MANAGED_BY_VALUE
        labels[ENVIRONMENT_LABEL] = environment
        metadata["labels"] = labels

        return DesiredObject(key=ObjectKey(kind=kind, namespace=namespace, name=name), manifest=manifest)

    @staticmethod
    def _build_set(revision: Revision, environment: str, objects: list[DesiredObject]) -> DesiredSet:
        seen: set[ObjectKey] = set()
        for obj in objects:
            if obj.key in seen:
                raise CompileError(str(obj.key), "duplicate object identity after composition")
            seen.add(obj.key)

        desired = DesiredSet(revision_id=revision.id, environment=environment, objects=tuple(objects))
        logger.info(
            "Compiled desired state",
            revision=revision.short_id,
            environment=environment,
            objects=len(desired),
        )
        return desired


def _check_json_compatible(value: Any, origin: str, path: str) -> None:
    """Reject values the API server cannot store, such as !!binary or !!set nodes and non-string keys."""
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise CompileError(origin, f"non-string key {key!r} at '{path or '.'}'")
            _check_json_compatible(item, origin, f"{path}.{key}" if path else key)
    elif isinstance(value, list):
        for i, item in enumerate(value):
            _check_json_compatible(item, origin, f"{path}[{i}]")
    elif not isinstance(value, _JSON_SCALARS):
        raise CompileError(origin, f"unsupported {type(value).__name__} value at '{path}'")


def _set_path(manifest: dict[str, Any], parts: list[str], value: Any, origin: str) -> None:
    node = manifest
    # metadata.labels.<key> may contain dots in the label key
    if parts[:2] == ["metadata", "labels"] and len(parts) > 3:
        parts = ["metadata", "labels", ".".join(parts[2:])]
    for part in parts[:-1]:
        child = node.get(part)
        if child is None:
            child = {}
            node[part] = child
        if not isinstance(child, dict):
            raise CompileError(origin, f"cannot set '{'.'.join(parts)}': '{part}' is not a mapping")
        node = child
    node[parts[-1]] = value


def _split_image(image: str) -> tuple[str, str | None]:
    """Split 'registry:5000/repo/name:tag' into ('registry:5000/repo/name', 'tag')."""
    if "@" in image:
        image = image.split("@", 1)[0]
    slash = image.rfind("/")
    colon = image.rfind(":")
    if colon > slash:
        return image[:colon], image[colon + 1 :]
    return image, None


def _containers(manifest: dict[str, Any]) -> list[dict[str, Any]]:
    spec = manifest.get("spec") or {}
    pod_spec = ((spec.get("template") or {}).get("spec")) or spec
    found: list[dict[str, Any]] = []
    for key in ("initContainers", "containers"):
        for container in pod_spec.get(key) or []:
            if isinstance(container, dict):
                found.append(container)
    return found


def _retag_images(manifest: dict[str, Any], name: str, tag: str) -> bool:
    changed = False
    for container in _containers(manifest):
        image = container.get("image")
        if not isinstance(image, str):
            continue
        repository, _ = _split_image(image)
        if repository == name:
            container["image"] = f"{repository}:{tag}"
            changed = True
    return changed
