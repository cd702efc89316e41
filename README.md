# clustercache

`clustercache` keeps a lightweight, in-memory picture of a Kubernetes
cluster. For every resource it stores a reference and its ownership
references; on request it also keeps custom metadata and the full manifest of
selected resources. The cache is filled by listing every API once and is then
kept current by watching each API in a background thread, so lookups need no
further API calls.

Manifests are plain dictionaries, as decoded from JSON or YAML.

## Modules

| Module | Contents |
| --- | --- |
| `clustercache.resource` | `ResourceKey`, `GroupKind`, `ObjectReference`, `OwnerReference`, `Resource`, the predicates `top_level_resource` and `resource_of_group_kind`, and helpers `get_resource_key`, `get_object_ref`, `group_from_api_version` |
| `clustercache.references` | inferred owner references (`resolve_resource_references` and friends) |
| `clustercache.kubectl` | `Kubectl`, the default cluster client, plus `Config`, `APIResourceInfo`, `EventType`, `WatchEvent`, `ClusterInfo`, `NotFoundError` |
| `clustercache.settings` | `Settings`, `NoopSettings` and the `set_*` option functions |
| `clustercache.cluster` | `ClusterCache` and `skip_app_requeuing` |
| `clustercache.agent` | `AgentSettings` and `split_yaml` for loading manifests from a git checkout |

## What the cache gives you

- **Ownership trees.** `ClusterCache.iterate_hierarchy(key, action)` calls
  `action(resource, namespace_resources)` for a resource and for each of its
  descendants. When several children share one UID (for example the same
  ReplicaSet served under two API groups), the one with the smallest key is
  picked, so the result is stable. Owner references that Kubernetes leaves out
  are inferred:
  - an `Endpoints` object without owners belongs to the `Service` of the same
    name;
  - a `Secret` of type `kubernetes.io/service-account-token` belongs to the
    `ServiceAccount` named in its annotations;
  - a `PersistentVolumeClaim` whose name starts with
    `<template>-<statefulset>-` belongs to that `StatefulSet`;
  - an OLM `ClusterServiceVersion` with an `olm.operatorGroup` annotation
    belongs to that `OperatorGroup`.
- **Queries.** `ClusterCache.find_resources(namespace, *predicates)` returns
  the resources of a namespace (or of the whole cluster when `namespace` is
  `""`) that match every predicate.
- **Managed objects.** `ClusterCache.get_managed_live_objs(target_objs,
  is_managed)` returns the cached manifests of top-level resources for which
  `is_managed` is true, plus the live object for each target manifest. Objects
  that are not cached are fetched from the server; objects that are gone are
  left out. In namespaced mode a target in an unmanaged namespace, or a
  cluster-level target while cluster resources are off, raises `ValueError`.
- **Change notifications.** `ClusterCache.on_resource_updated(handler)` and
  `ClusterCache.on_event(handler)` register callbacks and return a function
  that removes the callback. A resource-updated handler receives
  `(new, old, namespace_resources)`; `new` is `None` on deletion and `old` is
  `None` on creation. `MODIFIED` events of `Endpoints` are passed to event
  handlers but do not update the cache.
- **Namespaced mode.** `set_namespaces` limits the cache to some namespaces;
  `set_cluster_resources(True)` adds cluster-level resources back.
- **API information.** `is_namespaced(group_kind)` answers from the discovered
  APIs and raises `NotFoundError` for unknown ones. `get_server_version`,
  `get_api_groups` and `get_open_api_schema` return what the last sync found.
  When a CustomResourceDefinition is added or removed, the cache starts or
  stops the matching watch, updates its API groups and reloads the OpenAPI
  schema.

## Syncing

`ClusterCache.ensure_synced()` builds the cache if it has never been built,
if 24 hours (the resync timeout) have passed, or if the last attempt failed
more than 10 seconds ago. If the last attempt failed, the error is raised
again. Each watch is restarted every 10 minutes and, after an error, retried
every second until the cache is invalidated.

`ClusterCache.get_cluster_info()` returns a `ClusterInfo` with the server
address, the Kubernetes version, the number of resources and APIs, the API
groups, and the time and error of the last sync.

## Talking to a cluster

By default the cache uses `clustercache.kubectl.Kubectl`, which runs the
`kubectl` command line tool (`Kubectl(binary="kubectl")`). `Config` tells it
where to go: `host`, `kubeconfig`, `context` and `insecure_skip_tls_verify`
become the matching `kubectl` flags. Lists are read page by page with
`Kubectl.list_page_size` items per page (500), and watches read the server's
event stream from `kubectl get --raw`. A "not found" answer raises
`NotFoundError`; other failures raise `RuntimeError`.

`Kubectl.convert_to_version` only copies objects that are already in the
requested API version and raises `ValueError` otherwise; the cache then
fetches the object from the server in the wanted version.

Any object with the same methods can be given with `set_kubectl`:
`get_server_version`, `get_api_groups`, `load_open_api_schema`,
`get_api_resources`, `list_resources`, `watch`, `get_resource` and
`convert_to_version`.

## Example

```python
from clustercache.cluster import ClusterCache
from clustercache.kubectl import Config
from clustercache.resource import group_from_api_version, top_level_resource
from clustercache.settings import set_namespaces, set_populate_resource_info_handler


def populate(un, is_root):
    # Mark extensions resources and keep the manifest of labelled ones.
    group = group_from_api_version(un.get("apiVersion", ""))
    info = ["deprecated"] if group == "extensions" else None
    labels = un.get("metadata", {}).get("labels") or {}
    return info, "acme.io/my-label" in labels


cache = ClusterCache(
    Config(context="my-cluster"),
    set_namespaces(["default", "kube-system"]),
    set_populate_resource_info_handler(populate),
)
cache.ensure_synced()

for root in cache.find_resources("default", top_level_resource).values():
    cache.iterate_hierarchy(
        root.resource_key(),
        lambda resource, _ns: print(resource.ref, resource.info),
    )
```

Following changes:

```python
def report(new_res, old_res, _namespace_resources):
    if new_res is None:
        print(f"{old_res.ref} deleted")
    elif old_res is None:
        print(f"{new_res.ref} created")
    else:
        print(f"{new_res.ref} updated")


unsubscribe = cache.on_resource_updated(report)
...
unsubscribe()
```

## Settings

Pass option functions to `ClusterCache(config, ...)`, or to
`ClusterCache.invalidate(...)` to change them later. `invalidate` also stops
all watches and drops the sync state, so the next `ensure_synced` rebuilds the
cache.

| Option | Effect |
| --- | --- |
| `set_kubectl` | replace the cluster client |
| `set_populate_resource_info_handler` | `handler(manifest, is_root)` returns `(info, keep_manifest)` for each resource |
| `set_settings` | set `Settings(resource_health_override, resources_filter)`; the filter's `is_excluded_resource(group, kind, cluster)` hides APIs from the cache |
| `set_namespaces` | limit the cache to these namespaces |
| `set_cluster_resources` | include cluster-level resources in namespaced mode |
| `set_config` | point the cache at a different cluster |
| `set_list_page_size` | store a page size on the cache (the default client pages by its own `list_page_size`) |
| `set_list_page_buffer_size` | store a prefetch size on the cache (the default client does not prefetch) |
| `set_list_semaphore` | object with `acquire`/`release` limiting concurrent lists (50 by default); several caches may share one |
| `set_resync_timeout` | how long a successful sync stays valid, as a `timedelta` |
| `set_logger` | the logger for the cache and the default client |

## Loading manifests from git

`clustercache.agent.AgentSettings(repo_path, paths=["."])` reads the `.json`,
`.yml` and `.yaml` files under the given paths of a git checkout.
`parse_manifests()` returns the manifests and the output of
`git rev-parse HEAD`, and writes the annotation
`gitops-agent.argoproj.io/gc-mark` on each manifest. The mark comes from
`get_gc_mark(key)`, a SHA-256 of the repository path, the paths and the
resource's group, kind and name; comparing it with the mark on a live resource
tells whether these settings produced it. `split_yaml(data)` splits a
multi-document YAML or JSON text into manifests and raises `ValueError` on
bad input.

## What it does not do

The package reads cluster state; it does not change it. There is no command
line program, no long-running agent, no HTTP endpoint to trigger work, and
nothing that applies, prunes or diffs manifests against the cluster.
`AgentSettings` prepares manifests, but sending them to the cluster is left to
the caller. The health override in `Settings` is stored but not used for any
health assessment.