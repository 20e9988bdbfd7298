from __future__ import annotations

import base64
import threading
from collections.abc import Iterator
from types import SimpleNamespace
from typing import Any
from unittest.mock import patch

import pytest
from kubernetes.client import ApiException


class FakeCoreApi:
    """In-memory stand-in for the CoreV1Api methods the sidecar calls."""

    def __init__(self, objects: dict[tuple[str, str, str], Any] | None = None) -> None:
        self.objects: dict[tuple[str, str, str], Any] = dict(objects or {})
        self.reads: list[tuple[str, str, str]] = []
        self.lists: list[tuple[str, str, dict[str, Any]]] = []
        self.resource_version = "100"
        self.read_error: Exception | None = None
        self.list_error: Exception | None = None

    def add(self, kind: str, namespace: str, name: str, obj: Any) -> None:
        self.objects[(kind, namespace, name)] = obj

    def _read(self, kind: str, name: str, namespace: str) -> Any:
        self.reads.append((kind, namespace, name))
        if self.read_error is not None:
            raise self.read_error
        try:
            return self.objects[(kind, namespace, name)]
        except KeyError:
            raise ApiException(status=404, reason="Not Found") from None

    def _list(self, kind: str, namespace: str, kwargs: dict[str, Any]) -> SimpleNamespace:
        self.lists.append((kind, namespace, kwargs))
        if self.list_error is not None:
            raise self.list_error
        return SimpleNamespace(
            metadata=SimpleNamespace(resource_version=self.resource_version), items=[]
        )

    def read_namespaced_config_map(self, name: str, namespace: str, **kwargs: Any) -> Any:
        return self._read("ConfigMap", name, namespace)

    def read_namespaced_service(self, name: str, namespace: str, **kwargs: Any) -> Any:
        return self._read("Service", name, namespace)

    def read_namespaced_endpoints(self, name: str, namespace: str, **kwargs: Any) -> Any:
        return self._read("Endpoints", name, namespace)

    def read_namespaced_secret(self, name: str, namespace: str, **kwargs: Any) -> Any:
        return self._read("Secret", name, namespace)

    def list_namespaced_config_map(self, namespace: str, **kwargs: Any) -> Any:
        return self._list("ConfigMap", namespace, kwargs)

    def list_namespaced_service(self, namespace: str, **kwargs: Any) -> Any:
        return self._list("Service", namespace, kwargs)

    def list_namespaced_endpoints(self, namespace: str, **kwargs: Any) -> Any:
        return self._list("Endpoints", namespace, kwargs)

    def list_namespaced_secret(self, namespace: str, **kwargs: Any) -> Any:
        return self._list("Secret", namespace, kwargs)


class FakeWatch:
    """Replays scripted events, then blocks like a quiet stream until stopped."""

    def __init__(self, events: list[dict[str, Any]] | None = None, block: bool = True) -> None:
        self.events = list(events or [])
        self.block = block
        self.stream_kwargs: list[dict[str, Any]] = []
        self.stopped = threading.Event()

    def stream(self, func: Any, **kwargs: Any) -> Iterator[dict[str, Any]]:
        self.stream_kwargs.append(kwargs)
        yield from self.events
        if self.block:
            self.stopped.wait(timeout=5)

    def stop(self) -> None:
        self.stopped.set()


class FakeWatchFactory:
    """Hands out :class:`FakeWatch` instances; scripted ones first, then quiet ones."""

    def __init__(self) -> None:
        self.scripted: list[FakeWatch] = []
        self.created: list[FakeWatch] = []
        self._lock = threading.Lock()

    def __call__(self) -> FakeWatch:
        with self._lock:
            fake = self.scripted.pop(0) if self.scripted else FakeWatch()
            self.created.append(fake)
            return fake


def endpoints(*ips: str) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(name="svc"),
        subsets=[SimpleNamespace(addresses=[SimpleNamespace(ip=ip) for ip in ips])],
    )


def secret(data: dict[str, bytes]) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(name="secret"),
        data={key: base64.b64encode(value).decode("ascii") for key, value in data.items()},
    )


@pytest.fixture
def core_api() -> FakeCoreApi:
    return FakeCoreApi()


@pytest.fixture
def fake_watches() -> Iterator[FakeWatchFactory]:
    factory = FakeWatchFactory()
    with patch("asterisk_config.src.watches.watch.Watch", factory):
        yield factory
        for fake in factory.created:
            fake.stop()
