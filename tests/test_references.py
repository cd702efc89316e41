import pytest

from clustercache.references import (
    is_service_account_token_secret,
    is_stateful_set_child,
    might_have_inferred_owner,
    resolve_resource_references,
)
from clustercache.resource import ObjectReference, OwnerReference, Resource, ResourceKey


def sa_token_manifest(annotations=None, obj_type="kubernetes.io/service-account-token"):
    meta = {"name": "default-token-123", "namespace": "default", "uid": "345"}
    if annotations is not None:
        meta["annotations"] = annotations
    return {"apiVersion": "v1", "kind": "Secret", "metadata": meta, "type": obj_type}


def sts(templates):
    return {
        "apiVersion": "apps/v1",
        "kind": "StatefulSet",
        "metadata": {"name": "web", "namespace": "default", "uid": "123"},
        "spec": {"volumeClaimTemplates": templates},
    }


def test_might_have_inferred_owner():
    pvc = Resource(ref=ObjectReference(api_version="v1", kind="PersistentVolumeClaim"))
    pod = Resource(ref=ObjectReference(api_version="v1", kind="Pod"))
    assert might_have_inferred_owner(pvc)
    assert not might_have_inferred_owner(pod)


def test_endpoints_owned_by_service():
    refs, inferred = resolve_resource_references(
        {"apiVersion": "v1", "kind": "Endpoints", "metadata": {"name": "helm-guestbook"}}
    )
    assert refs == [OwnerReference(api_version="v1", kind="Service", name="helm-guestbook")]
    assert inferred is None


def test_endpoints_with_owners_unchanged():
    owner = {"apiVersion": "v1", "kind": "Other", "name": "x", "uid": "9"}
    refs, _ = resolve_resource_references(
        {"apiVersion": "v1", "kind": "Endpoints",
         "metadata": {"name": "helm-guestbook", "ownerReferences": [owner]}}
    )
    assert refs == [OwnerReference("v1", "Other", "x", "9")]


def test_cluster_service_version_operator_group():
    refs, _ = resolve_resource_references(
        {"apiVersion": "operators.coreos.com/v1alpha1", "kind": "ClusterServiceVersion",
         "metadata": {"name": "csv", "annotations": {"olm.operatorGroup": "og"}}}
    )
    assert refs == [OwnerReference("operators.coreos.com/v1", "OperatorGroup", "og", "")]


def test_cluster_service_version_without_annotation():
    refs, _ = resolve_resource_references(
        {"apiVersion": "operators.coreos.com/v1alpha1", "kind": "ClusterServiceVersion",
         "metadata": {"name": "csv"}}
    )
    assert refs == []


def test_service_account_token_secret():
    manifest = sa_token_manifest({
        "kubernetes.io/service-account.name": "default",
        "kubernetes.io/service-account.uid": "123",
    })
    ok, ref = is_service_account_token_secret(manifest)
    assert ok
    assert ref == OwnerReference("v1", "ServiceAccount", "default", "123")
    refs, _ = resolve_resource_references(manifest)
    assert refs == [ref]


def test_secret_of_other_type():
    ok, _ = is_service_account_token_secret(sa_token_manifest({}, obj_type="Opaque"))
    assert not ok


def test_secret_without_annotations():
    ok, ref = is_service_account_token_secret(sa_token_manifest())
    assert not ok
    assert ref.name == ""
    assert resolve_resource_references(sa_token_manifest())[0] == []


def test_secret_with_partial_annotations():
    ok, _ = is_service_account_token_secret(
        sa_token_manifest({"kubernetes.io/service-account.name": "default"})
    )
    assert not ok


def test_stateful_set_child_matching():
    predicate = is_stateful_set_child(sts([{"metadata": {"name": "www"}}]))
    assert predicate(ResourceKey("", "PersistentVolumeClaim", "default", "www-web-0"))
    assert not predicate(ResourceKey("", "PersistentVolumeClaim", "default", "www1-web-0"))
    assert not predicate(ResourceKey("", "Pod", "default", "www-web-0"))


def test_stateful_set_resolves_inferred_predicate():
    refs, inferred = resolve_resource_references(sts([{"metadata": {"name": "www"}}]))
    assert refs == []
    assert inferred(ResourceKey("", "PersistentVolumeClaim", "default", "www-web-0"))


def test_stateful_set_without_templates():
    predicate = is_stateful_set_child(sts([]))
    assert not predicate(ResourceKey("", "PersistentVolumeClaim", "default", "www-web-0"))


def test_stateful_set_malformed_templates():
    with pytest.raises(ValueError):
        is_stateful_set_child(sts("not-a-list"))
    refs, inferred = resolve_resource_references(sts("not-a-list"))
    assert inferred is None
    assert refs == []