import pytest

from clustercache.resource import (
    GroupKind,
    ObjectReference,
    OwnerReference,
    Resource,
    ResourceKey,
    get_object_ref,
    get_resource_key,
    group_from_api_version,
    resource_of_group_kind,
    top_level_resource,
)


def pod_manifest():
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {
            "name": "helm-guestbook-pod",
            "namespace": "default",
            "uid": "1",
            "resourceVersion": "123",
        },
    }


def make(api_version, kind, name, uid, owners=(), namespace="default"):
    return Resource(
        ref=ObjectReference(
            api_version=api_version, kind=kind, namespace=namespace, name=name, uid=uid
        ),
        owner_refs=[OwnerReference(*o) for o in owners],
    )


@pytest.fixture
def pod():
    return make("v1", "Pod", "helm-guestbook-pod", "1",
                [("apps/v1", "ReplicaSet", "helm-guestbook-rs", "2")])


@pytest.fixture
def rs():
    return make("apps/v1", "ReplicaSet", "helm-guestbook-rs", "2",
                [("apps/v1beta1", "Deployment", "helm-guestbook", "3")])


@pytest.fixture
def deploy():
    return make("apps/v1", "Deployment", "helm-guestbook", "3")


def test_group_from_api_version():
    assert group_from_api_version("apps/v1") == "apps"
    assert group_from_api_version("v1") == ""
    assert group_from_api_version("operators.coreos.com/v1") == "operators.coreos.com"


def test_get_resource_key():
    assert get_resource_key(pod_manifest()) == ResourceKey("", "Pod", "default", "helm-guestbook-pod")


def test_get_object_ref():
    ref = get_object_ref(pod_manifest())
    assert ref == ObjectReference(
        api_version="v1", kind="Pod", namespace="default", name="helm-guestbook-pod", uid="1"
    )
    assert ref.group() == ""


def test_resource_key_from_ref(deploy):
    key = deploy.resource_key()
    assert key == ResourceKey("apps", "Deployment", "default", "helm-guestbook")
    assert key.group_kind() == GroupKind("apps", "Deployment")


def test_resource_key_str():
    assert str(ResourceKey("apps", "Deployment", "default", "helm-guestbook")) == (
        "apps/Deployment/default/helm-guestbook"
    )


def test_group_kind_str():
    assert str(GroupKind("", "Pod")) == "Pod"
    assert str(GroupKind("apps", "Deployment")) == "Deployment.apps"


def test_is_parent_of(pod, rs, deploy):
    assert rs.is_parent_of(pod)
    assert not deploy.is_parent_of(pod)


def test_is_parent_of_same_kind_different_group_and_uid(pod):
    invalid = make("somecrd.io/v1", "ReplicaSet", "helm-guestbook-rs", "123")
    assert not invalid.is_parent_of(pod)


def test_is_parent_of_backfills_uid():
    service = make("v1", "Service", "helm-guestbook", "4")
    endpoints = make("v1", "Endpoints", "helm-guestbook", "",
                     [("v1", "Service", "helm-guestbook", "")])
    other = make("v1", "Endpoints", "not-matching-name", "",
                 [("v1", "Service", "not-matching-name", "")])
    assert service.is_parent_of(endpoints)
    assert endpoints.owner_refs[0].uid == service.ref.uid
    assert not service.is_parent_of(other)


def test_set_owner_ref_add_and_remove(pod, deploy):
    ref = deploy.to_owner_ref()
    pod.set_owner_ref(ref, True)
    pod.set_owner_ref(ref, True)
    assert pod.owner_refs.count(ref) == 1
    assert len(pod.owner_refs) == 2
    pod.set_owner_ref(ref, False)
    assert ref not in pod.owner_refs
    assert len(pod.owner_refs) == 1
    pod.set_owner_ref(ref, False)
    assert len(pod.owner_refs) == 1


def test_to_owner_ref(deploy):
    assert deploy.to_owner_ref() == OwnerReference(
        api_version="apps/v1", kind="Deployment", name="helm-guestbook", uid="3"
    )


def test_iterate_children(pod, rs, deploy):
    deploy.ref = ObjectReference("apps/v1beta1", "Deployment", "default", "helm-guestbook", "3")
    ns = {r.resource_key(): r for r in (pod, rs, deploy)}
    seen = []

    def action(err, child, namespace_resources):
        assert err is None
        assert namespace_resources is ns
        seen.append(child)

    deploy.iterate_children(ns, {deploy.resource_key()}, action)
    assert seen == [rs, pod]


def test_iterate_children_detects_cycle():
    a = make("v1", "ConfigMap", "a", "10", [("v1", "ConfigMap", "b", "11")])
    b = make("v1", "ConfigMap", "b", "11", [("v1", "ConfigMap", "a", "10")])
    ns = {a.resource_key(): a, b.resource_key(): b}
    events = []
    a.iterate_children(ns, set(), lambda err, child, _: events.append((err, child)))
    assert [child for _, child in events] == [b, a]
    assert events[0][0] is None
    assert isinstance(events[1][0], ValueError)
    assert "circular dependency detected" in str(events[1][0])


def test_resource_equality_ignores_inferred_predicate(deploy):
    other = make("apps/v1", "Deployment", "helm-guestbook", "3")
    other.is_inferred_parent_of = lambda key: True
    assert other == deploy


def test_top_level_resource(pod, deploy):
    assert top_level_resource(deploy)
    assert not top_level_resource(pod)


def test_resource_of_group_kind(pod, deploy):
    predicate = resource_of_group_kind("apps", "Deployment")
    assert predicate(deploy)
    assert not predicate(pod)
    assert resource_of_group_kind("", "Pod")(pod)