"""Resource references and ownership links kept by the cluster cache.

The cache is lightweight: it keeps only resource references and ownership
references. It may also be configured to keep custom metadata and the whole
body of selected resources. Manifests are plain dictionaries as decoded from
JSON or YAML.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, MutableMapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Optional

ENDPOINTS_KIND = "Endpoints"
SERVICE_KIND = "Service"
SECRET_KIND = "Secret"
SERVICE_ACCOUNT_KIND = "ServiceAccount"
STATEFUL_SET_KIND = "StatefulSet"
REPLICA_SET_KIND = "ReplicaSet"
PERSISTENT_VOLUME_CLAIM_KIND = "PersistentVolumeClaim"


def group_from_api_version(api_version: str) -> str:
    """Return the API group of an ``apiVersion`` string ("" for the core group)."""
    group, sep, _ = api_version.rpartition("/")
    return group if sep else ""


@dataclass(frozen=True)
class GroupKind:
    """An API group together with a kind."""

    group: str
    kind: str

    def __str__(self) -> str:
        return f"{self.kind}.{self.group}" if self.group else self.kind


@dataclass(frozen=True)
class ResourceKey:
    """Identifies a resource by group, kind, namespace and name."""

    group: str
    kind: str
    namespace: str
    name: str

    def group_kind(self) -> GroupKind:
        return GroupKind(self.group, self.kind)

    def __str__(self) -> str:
        return f"{self.group}/{self.kind}/{self.namespace}/{self.name}"


@dataclass(frozen=True)
class ObjectReference:
    """Reference to a live object."""

    api_version: str = ""
    kind: str = ""
    namespace: str = ""
    name: str = ""
    uid: str = ""

    def group(self) -> str:
        return group_from_api_version(self.api_version)


@dataclass
class OwnerReference:
    """Reference from a resource to one of its owners."""

    api_version: str = ""
    kind: str = ""
    name: str = ""
    uid: str = ""


def _metadata(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    return obj.get("metadata") or {}


def get_resource_key(obj: Mapping[str, Any]) -> ResourceKey:
    """Build the resource key of a manifest."""
    meta = _metadata(obj)
    return ResourceKey(
        group_from_api_version(obj.get("apiVersion") or ""),
        obj.get("kind") or "",
        meta.get("namespace") or "",
        meta.get("name") or "",
    )


def get_object_ref(obj: Mapping[str, Any]) -> ObjectReference:
    """Build an object reference pointing at a manifest."""
    meta = _metadata(obj)
    return ObjectReference(
        api_version=obj.get("apiVersion") or "",
        kind=obj.get("kind") or "",
        namespace=meta.get("namespace") or "",
        name=meta.get("name") or "",
        uid=str(meta.get("uid") or ""),
    )


ChildAction = Callable[
    [Optional[Exception], "Resource", Mapping[ResourceKey, "Resource"]], None
]


@dataclass
class Resource:
    """A cached resource: its reference, owners and optional extra data."""

    ref: ObjectReference = field(default_factory=ObjectReference)
    resource_version: str = ""
    owner_refs: list[OwnerReference] = field(default_factory=list)
    creation_timestamp: Optional[datetime] = None
    info: Any = None
    resource: Optional[MutableMapping[str, Any]] = None
    is_inferred_parent_of: Optional[Callable[[ResourceKey], bool]] = field(
        default=None, compare=False, repr=False
    )

    def resource_key(self) -> ResourceKey:
        return ResourceKey(self.ref.group(), self.ref.kind, self.ref.namespace, self.ref.name)

    def is_parent_of(self, child: Resource) -> bool:
        """Tell whether this resource owns ``child``.

        Owner references without a UID that match this resource by kind,
        API version and name get the UID filled in.
        """
        for i, owner_ref in enumerate(child.owner_refs):
            if (
                owner_ref.uid == ""
                and self.ref.kind == owner_ref.kind
                and self.ref.api_version == owner_ref.api_version
                and self.ref.name == owner_ref.name
            ):
                child.owner_refs[i] = replace(owner_ref, uid=self.ref.uid)
                return True
            if self.ref.uid == owner_ref.uid:
                return True
        return False

    def set_owner_ref(self, ref: OwnerReference, add: bool) -> None:
        """Add or remove an owner reference, matched by UID."""
        index = next(
            (i for i, item in enumerate(self.owner_refs) if item.uid == ref.uid), None
        )
        present = index is not None
        if add and not present:
            self.owner_refs.append(ref)
        elif not add and present:
            del self.owner_refs[index]

    def to_owner_ref(self) -> OwnerReference:
        return OwnerReference(
            api_version=self.ref.api_version,
            kind=self.ref.kind,
            name=self.ref.name,
            uid=self.ref.uid,
        )

    def iterate_children(
        self,
        ns: Mapping[ResourceKey, Resource],
        parents: set[ResourceKey] | frozenset[ResourceKey],
        action: ChildAction,
    ) -> None:
        """Call ``action`` for every descendant of this resource in ``ns``.

        A child that is also one of ``parents`` is reported to ``action`` with
        an error instead of being descended into.
        """
        for child_key, child in ns.items():
            if not self.is_parent_of(child):
                continue
            if child_key in parents:
                error = ValueError(
                    f"circular dependency detected. {child_key} is child and parent "
                    f"of {self.resource_key()}"
                )
                action(error, child, ns)
            else:
                action(None, child, ns)
                child.iterate_children(ns, set(parents) | {self.resource_key()}, action)


def top_level_resource(r: Resource) -> bool:
    """Return True if the resource has no owners."""
    return not r.owner_refs


def resource_of_group_kind(group: str, kind: str) -> Callable[[Resource], bool]:
    """Return a predicate matching resources of the given group and kind."""

    def predicate(r: Resource) -> bool:
        key = r.resource_key()
        return key.group == group and key.kind == kind

    return predicate