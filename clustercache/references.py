"""Owner references that Kubernetes does not record but that can be inferred."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any, Optional

from clustercache.resource import (
    ENDPOINTS_KIND,
    PERSISTENT_VOLUME_CLAIM_KIND,
    SECRET_KIND,
    SERVICE_ACCOUNT_KIND,
    SERVICE_KIND,
    STATEFUL_SET_KIND,
    OwnerReference,
    Resource,
    ResourceKey,
    group_from_api_version,
)

log = logging.getLogger(__name__)

SERVICE_ACCOUNT_TOKEN_TYPE = "kubernetes.io/service-account-token"
SERVICE_ACCOUNT_NAME_ANNOTATION = "kubernetes.io/service-account.name"
SERVICE_ACCOUNT_UID_ANNOTATION = "kubernetes.io/service-account.uid"
OLM_OPERATOR_GROUP_ANNOTATION = "olm.operatorGroup"


def might_have_inferred_owner(r: Resource) -> bool:
    """Return True if the resource may have owners that are only inferred."""
    return r.ref.group() == "" and r.ref.kind == PERSISTENT_VOLUME_CLAIM_KIND


def _metadata(un: Mapping[str, Any]) -> Mapping[str, Any]:
    return un.get("metadata") or {}


def _owner_references(un: Mapping[str, Any]) -> list[OwnerReference]:
    return [
        OwnerReference(
            api_version=ref.get("apiVersion") or "",
            kind=ref.get("kind") or "",
            name=ref.get("name") or "",
            uid=str(ref.get("uid") or ""),
        )
        for ref in _metadata(un).get("ownerReferences") or []
    ]


def resolve_resource_references(
    un: Mapping[str, Any],
) -> tuple[list[OwnerReference], Optional[Callable[[ResourceKey], bool]]]:
    """Return the owner references of a manifest, inferred ones included,
    and, for resources that are inferred parents, a predicate over child keys."""
    owner_refs = _owner_references(un)
    is_inferred_parent_of: Optional[Callable[[ResourceKey], bool]] = None
    group = group_from_api_version(un.get("apiVersion") or "")
    kind = un.get("kind") or ""
    meta = _metadata(un)
    annotations = meta.get("annotations") or {}

    if group == "" and kind == ENDPOINTS_KIND and not owner_refs:
        owner_refs.append(
            OwnerReference(api_version="v1", kind=SERVICE_KIND, name=meta.get("name") or "")
        )
    elif group == "operators.coreos.com" and kind == "ClusterServiceVersion":
        operator_group = annotations.get(OLM_OPERATOR_GROUP_ANNOTATION) or ""
        if operator_group:
            owner_refs.append(
                OwnerReference(
                    api_version="operators.coreos.com/v1",
                    kind="OperatorGroup",
                    name=operator_group,
                )
            )
    elif kind == SECRET_KIND and group == "":
        is_token, ref = is_service_account_token_secret(un)
        if is_token:
            owner_refs.append(ref)
    elif group in ("apps", "extensions") and kind == STATEFUL_SET_KIND:
        try:
            is_inferred_parent_of = is_stateful_set_child(un)
        except ValueError:
            log.exception(
                "Failed to extract StatefulSet %s/%s PVC references",
                meta.get("namespace") or "",
                meta.get("name") or "",
            )

    return owner_refs, is_inferred_parent_of


def is_stateful_set_child(un: Mapping[str, Any]) -> Callable[[ResourceKey], bool]:
    """Return a predicate telling whether a key names a PVC made from one of
    the StatefulSet's volume claim templates.

    Raises ValueError if the manifest's volume claim templates are malformed.
    """
    spec = un.get("spec")
    if spec is None:
        spec = {}
    if not isinstance(spec, Mapping):
        raise ValueError("StatefulSet spec is not an object")
    templates = spec.get("volumeClaimTemplates")
    if templates is None:
        templates = []
    if not isinstance(templates, list):
        raise ValueError("StatefulSet volumeClaimTemplates is not a list")

    template_names = []
    for template in templates:
        if not isinstance(template, Mapping):
            raise ValueError("StatefulSet volume claim template is not an object")
        meta = template.get("metadata") or {}
        if not isinstance(meta, Mapping):
            raise ValueError("volume claim template metadata is not an object")
        name = meta.get("name") or ""
        if not isinstance(name, str):
            raise ValueError("volume claim template name is not a string")
        template_names.append(name)

    sts_name = _metadata(un).get("name") or ""
    prefixes = tuple(f"{name}-{sts_name}-" for name in template_names)

    def is_child(key: ResourceKey) -> bool:
        return (
            key.kind == PERSISTENT_VOLUME_CLAIM_KIND
            and key.group == ""
            and bool(prefixes)
            and key.name.startswith(prefixes)
        )

    return is_child


def is_service_account_token_secret(un: Mapping[str, Any]) -> tuple[bool, OwnerReference]:
    """Tell whether a Secret is a service account token, and return the
    reference to its service account."""
    ref = OwnerReference(api_version="v1", kind=SERVICE_ACCOUNT_KIND)
    secret_type = un.get("type")
    if not isinstance(secret_type, str) or secret_type != SERVICE_ACCOUNT_TOKEN_TYPE:
        return False, ref

    annotations = _metadata(un).get("annotations")
    if annotations is None:
        return False, ref

    if SERVICE_ACCOUNT_UID_ANNOTATION in annotations and SERVICE_ACCOUNT_NAME_ANNOTATION in annotations:
        ref.name = annotations[SERVICE_ACCOUNT_NAME_ANNOTATION] or ""
        ref.uid = str(annotations[SERVICE_ACCOUNT_UID_ANNOTATION] or "")
    return ref.name != "" and ref.uid != "", ref