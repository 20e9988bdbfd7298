from __future__ import annotations

import base64
import logging
import os
from collections.abc import Callable, Mapping
from typing import Any

from kubernetes.client import CoreV1Api

from asterisk_config.src.discovery import Discoverer
from asterisk_config.src.errors import ConfigError, ResourceNotFound, UnsupportedQuery
from asterisk_config.src.kube import (
    CONFIG_MAP,
    ENDPOINTS,
    RESOURCE_KINDS,
    SECRET,
    SERVICE,
    ResourceKind,
    read_resource,
)
from asterisk_config.src.watches import WatchRegistry

LOGGER = logging.getLogger(__name__)

_NETWORK_FACTS: dict[str, str] = {
    "hostname": "hostname",
    "privateipv4": "private_ipv4",
    "privatev4": "private_ipv4",
    "publicipv4": "public_ipv4",
    "publicv4": "public_ipv4",
    "publicipv6": "public_ipv6",
    "publicv6": "public_ipv6",
}


class Resolver:
    """Template-facing view of cluster state for one render cycle.

    Every lookup performed before :meth:`mark_first_render_complete` arms a
    watch for the looked-up ``(kind, namespace)`` so later changes wake the
    supervisor.  A resolver and its watch registry are built fresh for each
    cycle and closed when the cycle is superseded.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        discoverer: Discoverer,
        watches: WatchRegistry,
        default_namespace: str = "",
        api_timeout_seconds: float = 10.0,
        env_overrides: Mapping[str, str] | None = None,
    ) -> None:
        self.core_api = core_api
        self.discoverer = discoverer
        self.watches = watches
        self.default_namespace = default_namespace
        self.api_timeout_seconds = api_timeout_seconds
        self.env_overrides = dict(env_overrides or {})
        self.first_render_completed = False

    def mark_first_render_complete(self) -> None:
        self.first_render_completed = True

    def raise_for_watch_failure(self) -> None:
        failure = self.watches.failure()
        if failure is not None:
            raise failure

    def close(self) -> None:
        self.watches.close()

    def namespace(self, namespace: str | None = None) -> str:
        resolved = namespace or self.default_namespace
        if not resolved:
            raise ConfigError("failed to determine namespace: none given and POD_NAMESPACE unset")
        return resolved

    def _learn(self, kind: ResourceKind, namespace: str) -> None:
        if self.first_render_completed:
            return
        if self.watches.ensure_watch(kind, namespace):
            LOGGER.debug("Learned dependency on %s in namespace %s", kind.name, namespace)

    def get(self, kind: str | ResourceKind, name: str, namespace: str | None = None) -> Any:
        """Return the named object, arming a watch for its kind during the learn pass.

        A missing object still arms the watch so its later creation triggers a
        re-render.
        """
        if isinstance(kind, str):
            try:
                kind = RESOURCE_KINDS[kind]
            except KeyError as exc:
                raise UnsupportedQuery(f"unsupported resource kind {kind!r}") from exc
        resolved_namespace = self.namespace(namespace)
        try:
            obj = read_resource(
                self.core_api, kind, name, resolved_namespace, self.api_timeout_seconds
            )
        except ResourceNotFound:
            self._learn(kind, resolved_namespace)
            raise
        self._learn(kind, resolved_namespace)
        return obj

    def config_map(self, name: str, namespace: str | None = None) -> Any:
        return self.get(CONFIG_MAP, name, namespace)

    def service(self, name: str, namespace: str | None = None) -> Any:
        return self.get(SERVICE, name, namespace)

    def endpoints(self, name: str, namespace: str | None = None) -> Any:
        return self.get(ENDPOINTS, name, namespace)

    def secret(self, name: str, namespace: str | None = None) -> Any:
        return self.get(SECRET, name, namespace)

    def secret_value(self, name: str, key: str, namespace: str | None = None) -> str:
        """Return one decoded value of a Secret as text."""
        data = getattr(self.secret(name, namespace), "data", None) or {}
        if key not in data:
            raise ResourceNotFound("Secret key", f"{name}[{key}]", self.namespace(namespace))
        return base64.b64decode(data[key]).decode("utf-8")

    def endpoint_ips(self, name: str, namespace: str | None = None) -> list[str]:
        """Return the ready addresses of every subset of a Service's Endpoints."""
        endpoints = self.endpoints(name, namespace)
        ips: list[str] = []
        for subset in getattr(endpoints, "subsets", None) or []:
            for address in getattr(subset, "addresses", None) or []:
                ip = getattr(address, "ip", None)
                if ip:
                    ips.append(ip)
        return ips

    def network(self, kind: str) -> str:
        fact = _NETWORK_FACTS.get(kind.strip().lower())
        if fact is None:
            raise UnsupportedQuery(f"unhandled network query {kind!r}")
        return getattr(self.discoverer, fact)()

    def env(self, name: str, default: str = "") -> str:
        if name in self.env_overrides:
            return self.env_overrides[name]
        return os.environ.get(name, default)

    def template_functions(self) -> dict[str, Callable[..., Any]]:
        """The complete set of functions templates may call."""
        return {
            "config_map": self.config_map,
            "service": self.service,
            "endpoints": self.endpoints,
            "endpoint_ips": self.endpoint_ips,
            "secret": self.secret,
            "secret_value": self.secret_value,
            "network": self.network,
            "env": self.env,
        }

