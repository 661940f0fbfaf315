"""Module for computing the difference between desired and live resources.

A diff is an ordered list of `ResourceDiff` entries, one per resource that is
either desired or owned. Entries are ordered so that applying them in sequence
never creates a resource before the resources it depends on: Namespaces and
CustomResourceDefinitions first, then configuration, then Services, then
workloads. Removals come last, in the reverse order.
"""

from collections.abc import Generator, Iterable
from dataclasses import dataclass, field
import difflib
from enum import StrEnum
import itertools
import logging
from typing import Any

from mashumaro import DataClassDictMixin
from mashumaro.config import BaseConfig
import yaml

from .exceptions import DiffError
from .manifest import (
    CLUSTER_SCOPED_KINDS,
    DesiredState,
    LiveState,
    NamedResource,
    owner_of,
    with_ownership,
)

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "compute_diff",
    "has_changes",
    "tiers",
    "DiffAction",
    "FieldChange",
    "ResourceDiff",
]

_TRUNCATE = "[Diff truncated by kube-sync]\n"

# Creation dependency order of well known kinds. Kinds not listed here, such as
# custom resources, are created after all of these.
KIND_ORDER = [
    "Namespace",
    "CustomResourceDefinition",
    "NetworkPolicy",
    "ResourceQuota",
    "LimitRange",
    "PodSecurityPolicy",
    "PodDisruptionBudget",
    "ServiceAccount",
    "Secret",
    "ConfigMap",
    "StorageClass",
    "PersistentVolume",
    "PersistentVolumeClaim",
    "ClusterRole",
    "ClusterRoleBinding",
    "Role",
    "RoleBinding",
    "Service",
    "DaemonSet",
    "Pod",
    "ReplicationController",
    "ReplicaSet",
    "Deployment",
    "HorizontalPodAutoscaler",
    "StatefulSet",
    "Job",
    "CronJob",
    "IngressClass",
    "Ingress",
    "APIService",
]
_KIND_RANK = {kind: rank for rank, kind in enumerate(KIND_ORDER)}

# Fields set by the cluster that never take part in a comparison
IGNORED_FIELDS = {"status"}
IGNORED_METADATA_FIELDS = {
    "resourceVersion",
    "uid",
    "creationTimestamp",
    "generation",
    "managedFields",
    "selfLink",
}


class DiffAction(StrEnum):
    """The action needed to converge one resource."""

    ADD = "Add"
    """The resource is desired and absent from the target."""

    REMOVE = "Remove"
    """The resource is owned and no longer desired."""

    UPDATE = "Update"
    """The resource exists and some desired fields differ."""

    NOOP = "NoOp"
    """The resource already matches."""


@dataclass
class FieldChange(DataClassDictMixin):
    """A single field that differs between the desired and live object."""

    path: str
    """Dotted path of the field, e.g. `spec.replicas`."""

    old: Any = None
    """The live value, or None when absent."""

    new: Any = None
    """The desired value, or None when removed."""

    def __str__(self) -> str:
        return f"{self.path}: {self.old!r} -> {self.new!r}"


@dataclass
class ResourceDiff(DataClassDictMixin):
    """The difference for one resource."""

    resource: NamedResource
    """Identity of the resource."""

    api_version: str
    """The apiVersion of the resource."""

    action: DiffAction
    """The action needed to converge the resource."""

    changes: list[FieldChange] = field(default_factory=list)
    """Fields that differ, for updates."""

    desired: dict[str, Any] | None = None
    """The desired object, carrying the ownership labels."""

    live: dict[str, Any] | None = None
    """The live object as last observed."""

    conflict_owner: str | None = None
    """The owner of the live object when it belongs to another Application."""

    @property
    def rank(self) -> int:
        """Creation dependency rank of the resource kind."""
        return kind_rank(self.resource.kind)

    def __str__(self) -> str:
        return f"{self.action} {self.resource}"

    class Config(BaseConfig):
        omit_none = True
        omit_default = True


def kind_rank(kind: str) -> int:
    """Return the creation dependency rank of a kind."""
    return _KIND_RANK.get(kind, len(KIND_ORDER))


def resource_id(
    obj: dict[str, Any], default_namespace: str | None = None
) -> NamedResource:
    """Return the identity of a manifest, raising DiffError when malformed."""
    if not isinstance(obj, dict):
        raise DiffError(f"Manifest is not a mapping: {obj!r}")
    if not isinstance(obj.get("apiVersion"), str) or not obj["apiVersion"]:
        raise DiffError(f"Manifest missing apiVersion: {obj}")
    if not isinstance(kind := obj.get("kind"), str) or not kind:
        raise DiffError(f"Manifest missing kind: {obj}")
    metadata = obj.get("metadata")
    if not isinstance(metadata, dict) or not metadata.get("name"):
        raise DiffError(f"Manifest {kind} missing metadata.name: {obj}")
    namespace: str | None = None
    if kind not in CLUSTER_SCOPED_KINDS:
        namespace = metadata.get("namespace") or default_namespace
    return NamedResource(kind=kind, namespace=namespace, name=str(metadata["name"]))


def _child_path(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def _compare(desired: Any, live: Any, path: str, changes: list[FieldChange]) -> None:
    """Compare the fields present in desired against live, recording changes."""
    if isinstance(desired, dict):
        if not isinstance(live, dict):
            changes.append(FieldChange(path=path, old=live, new=desired))
            return
        for key, value in desired.items():
            if not path and key in IGNORED_FIELDS:
                continue
            if path == "metadata" and key in IGNORED_METADATA_FIELDS:
                continue
            _compare(value, live.get(key), _child_path(path, key), changes)
        return
    if isinstance(desired, list):
        if not isinstance(live, list) or len(live) != len(desired):
            changes.append(FieldChange(path=path, old=live, new=desired))
            return
        for index, (desired_item, live_item) in enumerate(zip(desired, live)):
            _compare(desired_item, live_item, f"{path}[{index}]", changes)
        return
    if desired != live:
        changes.append(FieldChange(path=path, old=live, new=desired))


def field_changes(desired: dict[str, Any], live: dict[str, Any]) -> list[FieldChange]:
    """Return the desired fields whose live value differs."""
    changes: list[FieldChange] = []
    _compare(desired, live, "", changes)
    return changes


def compute_diff(desired: DesiredState, live: LiveState) -> list[ResourceDiff]:
    """Compute the ordered diff that converges live state onto desired state.

    Only resources carrying the ownership label of this Application are
    candidates for removal. A desired resource found live with another
    owner is reported as an update with `conflict_owner` set so that the
    apply step can refuse it.
    """
    desired_diffs: list[tuple[int, int, ResourceDiff]] = []
    desired_ids: set[NamedResource] = set()
    for index, obj in enumerate(desired.resources):
        rid = resource_id(obj, default_namespace=desired.namespace)
        if rid in desired_ids:
            raise DiffError(f"Duplicate resource {rid} in desired state")
        desired_ids.add(rid)
        labeled = with_ownership(obj, live.owner)
        live_obj = live.resources.get(rid)
        if live_obj is None:
            diff = ResourceDiff(
                resource=rid,
                api_version=obj["apiVersion"],
                action=DiffAction.ADD,
                desired=labeled,
            )
        elif (owner := owner_of(live_obj)) and owner != live.owner:
            diff = ResourceDiff(
                resource=rid,
                api_version=obj["apiVersion"],
                action=DiffAction.UPDATE,
                desired=labeled,
                live=live_obj,
                conflict_owner=owner,
            )
        else:
            changes = field_changes(labeled, live_obj)
            diff = ResourceDiff(
                resource=rid,
                api_version=obj["apiVersion"],
                action=DiffAction.UPDATE if changes else DiffAction.NOOP,
                changes=changes,
                desired=labeled,
                live=live_obj,
            )
        desired_diffs.append((kind_rank(rid.kind), index, diff))

    remove_diffs: list[tuple[int, int, ResourceDiff]] = []
    for index, rid in enumerate(live.owned()):
        if rid in desired_ids:
            continue
        live_obj = live.resources[rid]
        remove_diffs.append(
            (
                kind_rank(rid.kind),
                index,
                ResourceDiff(
                    resource=rid,
                    api_version=live_obj.get("apiVersion", ""),
                    action=DiffAction.REMOVE,
                    live=live_obj,
                ),
            )
        )

    desired_diffs.sort(key=lambda item: (item[0], item[1]))
    remove_diffs.sort(key=lambda item: (item[0], item[1]), reverse=True)
    result = [diff for _, _, diff in itertools.chain(desired_diffs, remove_diffs)]
    _LOGGER.debug(
        "Computed diff for %s: %s",
        live.owner,
        ", ".join(f"{diff}" for diff in result if diff.action != DiffAction.NOOP),
    )
    return result


def has_changes(diffs: Iterable[ResourceDiff]) -> bool:
    """Return True if any entry requires an action."""
    return any(diff.action != DiffAction.NOOP for diff in diffs)


def tiers(diffs: list[ResourceDiff]) -> list[list[ResourceDiff]]:
    """Group consecutive entries that can be applied concurrently.

    Entries of the same kind rank and the same direction (create/update or
    remove) form one tier. NoOp entries are dropped.
    """
    result: list[list[ResourceDiff]] = []
    actionable = [diff for diff in diffs if diff.action != DiffAction.NOOP]
    for _, group in itertools.groupby(
        actionable, key=lambda diff: (diff.action == DiffAction.REMOVE, diff.rank)
    ):
        result.append(list(group))
    return result


def _strip(obj: dict[str, Any] | None) -> list[str]:
    """Return the comparable YAML lines of an object."""
    if not obj:
        return []
    content = {k: v for k, v in obj.items() if k not in IGNORED_FIELDS}
    if isinstance(metadata := content.get("metadata"), dict):
        content["metadata"] = {
            k: v for k, v in metadata.items() if k not in IGNORED_METADATA_FIELDS
        }
    return yaml.dump(content, sort_keys=False).splitlines(keepends=True)


def perform_unified_diff(
    diffs: Iterable[ResourceDiff], n: int = 3, limit_bytes: int = 0
) -> Generator[str, None, None]:
    """Generate a unified text diff of the live and desired objects."""
    size = 0
    for diff in diffs:
        if diff.action == DiffAction.NOOP:
            continue
        label = f"{diff.resource}"
        if diff.conflict_owner:
            yield f"# {label} is owned by {diff.conflict_owner}\n"
        live = _strip(diff.live)
        if diff.action == DiffAction.UPDATE and diff.live and diff.desired:
            # Only the desired fields are managed so show the live object
            # with the desired fields merged in.
            desired = _strip(merge(diff.live, diff.desired))
        else:
            desired = _strip(diff.desired)
        for line in difflib.unified_diff(
            a=live, b=desired, fromfile=f"live {label}", tofile=f"desired {label}", n=n
        ):
            size += len(line)
            if limit_bytes and size > limit_bytes:
                yield _TRUNCATE
                return
            yield line


def merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge desired fields onto a live object.

    Nested mappings are merged, lists and scalars are replaced.
    """
    result = base.copy()
    for key, override_value in override.items():
        base_value = result.get(key)
        if isinstance(base_value, dict) and isinstance(override_value, dict):
            result[key] = merge(base_value, override_value)
        else:
            result[key] = override_value
    return result
