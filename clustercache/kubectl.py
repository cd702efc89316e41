"""Access to the Kubernetes API through the ``kubectl`` command line tool."""

from __future__ import annotations

import copy
import json
import logging
import subprocess
from collections.abc import Iterator, MutableMapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Protocol
from urllib.parse import urlencode

from clustercache.resource import GroupKind, group_from_api_version

DEFAULT_LIST_PAGE_SIZE = 500

Manifest = MutableMapping[str, Any]


class NotFoundError(LookupError):
    """The requested resource or API does not exist on the server."""


@dataclass
class Config:
    """How to reach a cluster."""

    host: str = ""
    kubeconfig: str = ""
    context: str = ""
    insecure_skip_tls_verify: bool = False


def _config_args(config: Config) -> list[str]:
    args = []
    if config.kubeconfig:
        args += ["--kubeconfig", config.kubeconfig]
    if config.context:
        args += ["--context", config.context]
    if config.host:
        args += ["--server", config.host]
    if config.insecure_skip_tls_verify:
        args.append("--insecure-skip-tls-verify")
    return args


@dataclass(frozen=True)
class APIResourceInfo:
    """A listable and watchable API resource served by the cluster."""

    group_kind: GroupKind
    version: str
    resource: str
    namespaced: bool


def _api_version(api: APIResourceInfo) -> str:
    group = api.group_kind.group
    return f"{group}/{api.version}" if group else api.version


def _collection_path(api: APIResourceInfo, namespace: str) -> str:
    group = api.group_kind.group
    path = f"/apis/{group}/{api.version}" if group else f"/api/{api.version}"
    if namespace:
        path += f"/namespaces/{namespace}"
    return f"{path}/{api.resource}"


class EventType(str, Enum):
    """Kind of change reported by a watch."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    BOOKMARK = "BOOKMARK"
    ERROR = "ERROR"


@dataclass
class WatchEvent:
    """A single change reported by a watch."""

    type: EventType
    object: Manifest


@dataclass
class ClusterInfo:
    """Statistics of a cluster cache."""

    server: str = ""
    k8s_version: str = ""
    resources_count: int = 0
    apis_count: int = 0
    last_cache_sync_time: Optional[datetime] = None
    sync_error: Optional[Exception] = None
    api_groups: list[dict[str, Any]] = field(default_factory=list)


class _ResourceFilter(Protocol):
    def is_excluded_resource(self, group: str, kind: str, cluster: str) -> bool: ...


def _is_not_found(message: str) -> bool:
    return "(NotFound)" in message or "could not find the requested resource" in message


def _fill_type(obj: Manifest, api: APIResourceInfo) -> Manifest:
    obj.setdefault("apiVersion", _api_version(api))
    obj.setdefault("kind", api.group_kind.kind)
    return obj


class Kubectl:
    """Runs ``kubectl`` to query the cluster described by a :class:`Config`."""

    def __init__(self, binary: str = "kubectl", log: Optional[logging.Logger] = None) -> None:
        self.binary = binary
        self.log = log or logging.getLogger("clustercache")
        self.list_page_size = DEFAULT_LIST_PAGE_SIZE

    def _command(self, config: Config, args: list[str]) -> list[str]:
        return [self.binary, *_config_args(config), *args]

    def _run(self, config: Config, *args: str) -> str:
        cmd = self._command(config, list(args))
        self.log.debug("running %s", " ".join(cmd))
        proc = subprocess.run(cmd, capture_output=True, text=True, check=False)
        if proc.returncode != 0:
            message = (proc.stderr or "").strip() or (
                f"{cmd[0]} exited with status {proc.returncode}"
            )
            if _is_not_found(message):
                raise NotFoundError(message)
            raise RuntimeError(message)
        return proc.stdout

    def _get_raw(self, config: Config, path: str) -> dict[str, Any]:
        return json.loads(self._run(config, "get", "--raw", path))

    def get_server_version(self, config: Config) -> str:
        """Return the server version as ``major.minor``."""
        data = json.loads(self._run(config, "version", "-o", "json"))
        server = data.get("serverVersion")
        if not server:
            raise RuntimeError("server version is not reported")
        return f"{server.get('major', '')}.{server.get('minor', '')}"

    def get_api_groups(self, config: Config) -> list[dict[str, Any]]:
        """Return the API groups served by the cluster, the core group first."""
        core_versions = self._get_raw(config, "/api").get("versions") or []
        groups: list[dict[str, Any]] = []
        if core_versions:
            versions = [{"groupVersion": v, "version": v} for v in core_versions]
            groups.append(
                {"name": "", "versions": versions, "preferredVersion": versions[0]}
            )
        groups.extend(self._get_raw(config, "/apis").get("groups") or [])
        return groups

    def load_open_api_schema(self, config: Config) -> dict[str, Any]:
        """Return the OpenAPI v2 document of the cluster."""
        return self._get_raw(config, "/openapi/v2")

    def get_api_resources(
        self, config: Config, resource_filter: _ResourceFilter
    ) -> list[APIResourceInfo]:
        """Return the listable and watchable resources of every preferred API version."""
        result: list[APIResourceInfo] = []
        seen: set[GroupKind] = set()
        for group in self.get_api_groups(config):
            preferred = group.get("preferredVersion") or {}
            group_version = preferred.get("groupVersion") or ""
            if not group_version:
                continue
            group_name = group.get("name") or ""
            version = preferred.get("version") or group_version.rpartition("/")[2]
            path = f"/apis/{group_version}" if group_name else f"/api/{group_version}"
            try:
                listing = self._get_raw(config, path)
            except NotFoundError:
                self.log.debug("API %s is not served", group_version)
                continue
            for res in listing.get("resources") or []:
                name = res.get("name") or ""
                verbs = res.get("verbs") or []
                if "/" in name or "list" not in verbs or "watch" not in verbs:
                    continue
                gk = GroupKind(res.get("group") or group_name, res.get("kind") or "")
                if gk in seen:
                    continue
                if resource_filter.is_excluded_resource(gk.group, gk.kind, config.host):
                    continue
                seen.add(gk)
                result.append(
                    APIResourceInfo(
                        group_kind=gk,
                        version=res.get("version") or version,
                        resource=name,
                        namespaced=bool(res.get("namespaced")),
                    )
                )
        return result

    def list_resources(
        self, config: Config, api: APIResourceInfo, namespace: str
    ) -> tuple[list[Manifest], str]:
        """List all objects of an API page by page.

        Returns the objects and the resource version of the list.
        """
        path = _collection_path(api, namespace)
        items: list[Manifest] = []
        resource_version = ""
        token = ""
        while True:
            query = {"limit": str(self.list_page_size)}
            if token:
                query["continue"] = token
            page = self._get_raw(config, f"{path}?{urlencode(query)}")
            meta = page.get("metadata") or {}
            resource_version = meta.get("resourceVersion") or resource_version
            items.extend(_fill_type(item, api) for item in page.get("items") or [])
            token = meta.get("continue") or ""
            if not token:
                return items, resource_version

    def watch(
        self, config: Config, api: APIResourceInfo, namespace: str, resource_version: str
    ) -> Iterator[WatchEvent]:
        """Yield changes of an API starting after ``resource_version``.

        Bookmarks are not yielded. The generator ends when the server closes
        the watch; closing the generator stops it.
        """
        query = {"watch": "1", "allowWatchBookmarks": "true"}
        if resource_version:
            query["resourceVersion"] = resource_version
        path = f"{_collection_path(api, namespace)}?{urlencode(query)}"
        cmd = self._command(config, ["get", "--raw", path])
        self.log.debug("running %s", " ".join(cmd))
        proc = subprocess.Popen(
            cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True
        )
        try:
            for line in proc.stdout:
                line = line.strip()
                if not line:
                    continue
                data = json.loads(line)
                event_type = EventType(data.get("type"))
                obj = data.get("object") or {}
                if event_type is EventType.ERROR:
                    message = obj.get("message") or "watch failed"
                    if obj.get("code") == 404:
                        raise NotFoundError(message)
                    raise RuntimeError(message)
                if event_type is EventType.BOOKMARK:
                    continue
                yield WatchEvent(event_type, _fill_type(obj, api))
            status = proc.wait()
            if status != 0:
                message = (proc.stderr.read() or "").strip() or (
                    f"{cmd[0]} exited with status {status}"
                )
                if _is_not_found(message):
                    raise NotFoundError(message)
                raise RuntimeError(message)
        finally:
            if proc.poll() is None:
                proc.terminate()
                proc.wait()

    def get_resource(
        self, config: Config, api_version: str, kind: str, name: str, namespace: str
    ) -> Manifest:
        """Fetch one object from the server."""
        group = group_from_api_version(api_version)
        version = api_version.rpartition("/")[2]
        target = f"{kind}.{version}.{group}" if group else kind
        args = ["get", target, name, "-o", "json"]
        if namespace:
            args += ["-n", namespace]
        return json.loads(self._run(config, *args))

    def convert_to_version(self, obj: Manifest, group: str, version: str) -> Manifest:
        """Return a copy of ``obj`` in the given API version.

        Raises ValueError if the object is in another version, so that callers
        fall back to fetching it from the server.
        """
        current = obj.get("apiVersion") or ""
        target = f"{group}/{version}" if group else version
        if current != target:
            raise ValueError(
                f"cannot convert {obj.get('kind') or ''} from {current!r} to {target!r}"
            )
        return copy.deepcopy(obj)