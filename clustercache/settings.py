"""Cache customizations and the option functions that apply them."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Optional

from clustercache.kubectl import Config, Kubectl

UpdateSettingsFunc = Callable[[Any], None]


class NoopSettings:
    """Health override and resource filter that change nothing."""

    def get_resource_health(self, obj: Any) -> Optional[Any]:
        return None

    def is_excluded_resource(self, group: str, kind: str, cluster: str) -> bool:
        return False


@dataclass
class Settings:
    """Caching customizations."""

    resource_health_override: Any = field(default_factory=NoopSettings)
    resources_filter: Any = field(default_factory=NoopSettings)


def set_kubectl(kubectl: Kubectl) -> UpdateSettingsFunc:
    """Replace the client used to talk to the cluster."""

    def apply(cache: Any) -> None:
        cache.kubectl = kubectl

    return apply


def set_populate_resource_info_handler(handler: Callable[..., Any]) -> UpdateSettingsFunc:
    """Set the handler that populates resource info."""

    def apply(cache: Any) -> None:
        cache.populate_resource_info_handler = handler

    return apply


def set_settings(settings: Settings) -> UpdateSettingsFunc:
    """Replace the caching settings."""

    def apply(cache: Any) -> None:
        cache.settings = Settings(settings.resource_health_override, settings.resources_filter)

    return apply


def set_namespaces(namespaces: Optional[Iterable[str]]) -> UpdateSettingsFunc:
    """Set the monitored namespaces; none means the whole cluster."""

    def apply(cache: Any) -> None:
        cache.namespaces = list(namespaces or [])

    return apply


def set_cluster_resources(val: bool) -> UpdateSettingsFunc:
    """Tell whether cluster level resources are included in namespaced mode."""

    def apply(cache: Any) -> None:
        cache.cluster_resources = val

    return apply


def set_config(config: Config) -> UpdateSettingsFunc:
    """Replace the cluster connection settings."""

    def apply(cache: Any) -> None:
        cache.config = config

    return apply


def set_list_page_size(size: int) -> UpdateSettingsFunc:
    """Set the page size of list requests."""

    def apply(cache: Any) -> None:
        cache.list_page_size = size

    return apply


def set_list_page_buffer_size(size: int) -> UpdateSettingsFunc:
    """Set the number of list pages to prefetch."""

    def apply(cache: Any) -> None:
        cache.list_page_buffer_size = size

    return apply


def set_list_semaphore(semaphore: Any) -> UpdateSettingsFunc:
    """Set the semaphore limiting concurrent list operations.

    Taking an object rather than a number lets several caches share one.
    """

    def apply(cache: Any) -> None:
        cache.list_semaphore = semaphore

    return apply


def set_resync_timeout(timeout: timedelta) -> UpdateSettingsFunc:
    """Set how long a successful sync stays valid."""

    def apply(cache: Any) -> None:
        with cache.sync_status.lock:
            cache.sync_status.resync_timeout = timeout

    return apply


def set_logger(log: logging.Logger) -> UpdateSettingsFunc:
    """Set the logger of the cache and of its kubectl client."""

    def apply(cache: Any) -> None:
        cache.log = log
        kubectl = getattr(cache, "kubectl", None)
        if isinstance(kubectl, Kubectl):
            kubectl.log = log

    return apply