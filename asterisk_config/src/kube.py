from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiException, CoreV1Api
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError as Urllib3HTTPError
from urllib3.exceptions import MaxRetryError, TimeoutError as Urllib3TimeoutError

from asterisk_config.src.errors import KubeAPIError, KubeAPITimeout, ResourceNotFound, SourceError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceKind:
    """CoreV1 method names used to read and watch one resource kind."""

    name: str
    read_method: str
    list_method: str


CONFIG_MAP = ResourceKind("ConfigMap", "read_namespaced_config_map", "list_namespaced_config_map")
SERVICE = ResourceKind("Service", "read_namespaced_service", "list_namespaced_service")
ENDPOINTS = ResourceKind("Endpoints", "read_namespaced_endpoints", "list_namespaced_endpoints")
SECRET = ResourceKind("Secret", "read_namespaced_secret", "list_namespaced_secret")

RESOURCE_KINDS: dict[str, ResourceKind] = {
    kind.name: kind for kind in (CONFIG_MAP, SERVICE, ENDPOINTS, SECRET)
}


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_core_client() -> CoreV1Api:
    """Return a CoreV1 API client using the active kube configuration."""
    return client.CoreV1Api()


def read_resource(
    core_api: CoreV1Api,
    kind: ResourceKind,
    name: str,
    namespace: str,
    timeout_seconds: float,
) -> Any:
    """Read one namespaced object, translating client failures to sidecar errors."""
    reader = getattr(core_api, kind.read_method)
    try:
        return reader(name=name, namespace=namespace, _request_timeout=timeout_seconds)
    except ApiException as exc:
        if exc.status == 404:
            raise ResourceNotFound(kind.name, name, namespace) from exc
        raise KubeAPIError(
            f"failed to read {kind.name} {namespace}/{name}: {exc.status} {exc.reason}",
            status=exc.status,
        ) from exc
    except (Urllib3TimeoutError, MaxRetryError) as exc:
        raise KubeAPITimeout(
            f"timed out reading {kind.name} {namespace}/{name} after {timeout_seconds}s"
        ) from exc
    except Urllib3HTTPError as exc:
        raise KubeAPIError(f"failed to read {kind.name} {namespace}/{name}: {exc}") from exc


def current_resource_version(
    core_api: CoreV1Api,
    kind: ResourceKind,
    namespace: str,
    timeout_seconds: float,
    field_selector: str | None = None,
) -> str | None:
    """Return the collection ``resourceVersion`` a watch should start from.

    Starting a watch from the list's ``resourceVersion`` skips the synthetic
    ``ADDED`` events the API server replays for objects that already exist.
    """
    lister = getattr(core_api, kind.list_method)
    kwargs: dict[str, Any] = {"namespace": namespace, "limit": 1, "_request_timeout": timeout_seconds}
    if field_selector:
        kwargs["field_selector"] = field_selector
    try:
        listing = lister(**kwargs)
    except ApiException as exc:
        raise KubeAPIError(
            f"failed to list {kind.name} in {namespace}: {exc.status} {exc.reason}",
            status=exc.status,
        ) from exc
    except (Urllib3TimeoutError, MaxRetryError) as exc:
        raise KubeAPITimeout(
            f"timed out listing {kind.name} in {namespace} after {timeout_seconds}s"
        ) from exc
    return getattr(getattr(listing, "metadata", None), "resource_version", None)


def read_secret_payload(
    core_api: CoreV1Api,
    namespace: str,
    name: str,
    key: str,
    timeout_seconds: float,
) -> bytes:
    """Return the decoded bytes stored under *key* in a Secret."""
    secret = read_resource(core_api, SECRET, name, namespace, timeout_seconds)
    data = getattr(secret, "data", None) or {}
    encoded = data.get(key)
    if encoded is None:
        raise SourceError(f"secret {namespace}/{name} has no key {key!r}")
    try:
        return base64.b64decode(encoded, validate=True)
    except ValueError as exc:
        raise SourceError(f"secret {namespace}/{name} key {key!r} is not valid base64") from exc
