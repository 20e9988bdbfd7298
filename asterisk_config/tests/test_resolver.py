from __future__ import annotations

import threading
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from asterisk_config.src.errors import (
    ConfigError,
    ResourceNotFound,
    UnsupportedQuery,
    WatchFailedError,
)
from asterisk_config.src.resolver import Resolver
from asterisk_config.src.watches import ChangeSignal, WatchKey, WatchRegistry

from conftest import FakeCoreApi, FakeWatchFactory, endpoints, secret


def _fake_discoverer() -> SimpleNamespace:
    return SimpleNamespace(
        hostname=lambda: "node-1",
        private_ipv4=lambda: "10.0.0.5",
        public_ipv4=lambda: "203.0.113.7",
        public_ipv6=lambda: "2001:db8::7",
    )


def _resolver(core_api: FakeCoreApi, namespace: str = "voice", **kwargs: object) -> Resolver:
    watches = WatchRegistry(
        core_api=core_api, changes=ChangeSignal(), stop_event=threading.Event()
    )
    return Resolver(
        core_api=core_api,
        discoverer=_fake_discoverer(),
        watches=watches,
        default_namespace=namespace,
        **kwargs,
    )


@pytest.fixture
def resolver(core_api: FakeCoreApi, fake_watches: FakeWatchFactory):
    resolver = _resolver(core_api)
    yield resolver
    resolver.close()


def test_endpoint_ips_flattens_subsets(core_api: FakeCoreApi, resolver: Resolver) -> None:
    core_api.add(
        "Endpoints",
        "voice",
        "rtp",
        SimpleNamespace(
            subsets=[
                SimpleNamespace(addresses=[SimpleNamespace(ip="10.0.0.1")]),
                SimpleNamespace(
                    addresses=[SimpleNamespace(ip="10.0.0.2"), SimpleNamespace(ip="10.0.0.3")]
                ),
                SimpleNamespace(addresses=None),
            ]
        ),
    )

    assert resolver.endpoint_ips("rtp") == ["10.0.0.1", "10.0.0.2", "10.0.0.3"]


def test_endpoint_ips_without_subsets(core_api: FakeCoreApi, resolver: Resolver) -> None:
    core_api.add("Endpoints", "voice", "rtp", SimpleNamespace(subsets=None))

    assert resolver.endpoint_ips("rtp") == []


def test_lookup_arms_watch_for_kind_and_namespace(
    core_api: FakeCoreApi, resolver: Resolver
) -> None:
    core_api.add("Endpoints", "voice", "a", endpoints("10.0.0.1"))
    core_api.add("Endpoints", "voice", "b", endpoints("10.0.0.2"))

    resolver.endpoint_ips("a")
    resolver.endpoint_ips("b")

    assert resolver.watches.keys() == [WatchKey("Endpoints", "voice")]


def test_explicit_namespace_overrides_default(core_api: FakeCoreApi, resolver: Resolver) -> None:
    core_api.add("ConfigMap", "other", "cm", SimpleNamespace(data={"k": "v"}))

    assert resolver.config_map("cm", "other").data == {"k": "v"}
    assert resolver.watches.keys() == [WatchKey("ConfigMap", "other")]


def test_missing_object_still_arms_watch(core_api: FakeCoreApi, resolver: Resolver) -> None:
    with pytest.raises(ResourceNotFound):
        resolver.service("not-yet")

    assert resolver.watches.keys() == [WatchKey("Service", "voice")]


def test_no_watches_armed_after_first_render(core_api: FakeCoreApi, resolver: Resolver) -> None:
    core_api.add("ConfigMap", "voice", "cm", SimpleNamespace(data={}))
    resolver.mark_first_render_complete()

    resolver.config_map("cm")

    assert resolver.watches.keys() == []


def test_get_accepts_kind_names(core_api: FakeCoreApi, resolver: Resolver) -> None:
    core_api.add("Service", "voice", "sip", SimpleNamespace(spec="x"))

    assert resolver.get("Service", "sip").spec == "x"


def test_get_rejects_unknown_kind(resolver: Resolver) -> None:
    with pytest.raises(UnsupportedQuery, match="Pod"):
        resolver.get("Pod", "asterisk-0")


def test_missing_namespace_is_config_error(
    core_api: FakeCoreApi, fake_watches: FakeWatchFactory
) -> None:
    resolver = _resolver(core_api, namespace="")

    with pytest.raises(ConfigError, match="namespace"):
        resolver.config_map("cm")

    assert core_api.reads == []
    resolver.close()


def test_secret_value_decodes(core_api: FakeCoreApi, resolver: Resolver) -> None:
    core_api.add("Secret", "voice", "trunk", secret({"password": b"hunter2"}))

    assert resolver.secret_value("trunk", "password") == "hunter2"


def test_secret_value_missing_key(core_api: FakeCoreApi, resolver: Resolver) -> None:
    core_api.add("Secret", "voice", "trunk", secret({"password": b"hunter2"}))

    with pytest.raises(ResourceNotFound, match="trunk\\[username\\]"):
        resolver.secret_value("trunk", "username")


@pytest.mark.parametrize(
    ("query", "expected"),
    [
        ("hostname", "node-1"),
        ("privateipv4", "10.0.0.5"),
        ("privatev4", "10.0.0.5"),
        ("publicipv4", "203.0.113.7"),
        ("publicv4", "203.0.113.7"),
        ("publicipv6", "2001:db8::7"),
        ("PublicV6", "2001:db8::7"),
    ],
)
def test_network_queries(resolver: Resolver, query: str, expected: str) -> None:
    assert resolver.network(query) == expected


def test_network_rejects_unknown_query(resolver: Resolver) -> None:
    with pytest.raises(UnsupportedQuery, match="unhandled network query 'gateway'"):
        resolver.network("gateway")


def test_env_prefers_overrides(
    core_api: FakeCoreApi, fake_watches: FakeWatchFactory, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("ARI_AUTOSECRET", "from-env")
    monkeypatch.setenv("SIP_DOMAIN", "example.com")
    resolver = _resolver(core_api, env_overrides={"ARI_AUTOSECRET": "generated"})

    assert resolver.env("ARI_AUTOSECRET") == "generated"
    assert resolver.env("SIP_DOMAIN") == "example.com"
    assert resolver.env("UNSET_VARIABLE_FOR_TEST", "fallback") == "fallback"
    resolver.close()


def test_template_functions_are_the_documented_set(resolver: Resolver) -> None:
    assert set(resolver.template_functions()) == {
        "config_map",
        "service",
        "endpoints",
        "endpoint_ips",
        "secret",
        "secret_value",
        "network",
        "env",
    }


def test_raise_for_watch_failure() -> None:
    watches = MagicMock()
    watches.failure.return_value = None
    resolver = Resolver(core_api=MagicMock(), discoverer=_fake_discoverer(), watches=watches)
    resolver.raise_for_watch_failure()

    watches.failure.return_value = WatchFailedError("watch for Endpoints/voice failed")
    with pytest.raises(WatchFailedError):
        resolver.raise_for_watch_failure()
