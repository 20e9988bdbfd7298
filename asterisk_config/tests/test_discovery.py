from __future__ import annotations

from unittest.mock import patch

import httpx
import pytest

from asterisk_config.src.discovery import (
    AWSDiscoverer,
    AzureDiscoverer,
    DigitalOceanDiscoverer,
    Discoverer,
    GCPDiscoverer,
    get_discoverer,
)
from asterisk_config.src.errors import DiscoveryError


def _client(routes: dict[str, httpx.Response], seen: list[httpx.Request] | None = None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        url = f"{request.url.scheme}://{request.url.host}{request.url.path}".rstrip("/")
        route = routes.get(url)
        if route is None:
            return httpx.Response(404)
        return httpx.Response(route.status_code, headers=route.headers, content=route.content)

    return httpx.Client(transport=httpx.MockTransport(handler))


@pytest.mark.parametrize(
    ("cloud", "expected"),
    [
        ("", Discoverer),
        ("aws", AWSDiscoverer),
        ("AWS", AWSDiscoverer),
        ("azure", AzureDiscoverer),
        ("gcp", GCPDiscoverer),
        ("digitalocean", DigitalOceanDiscoverer),
        ("do", DigitalOceanDiscoverer),
        ("openstack", Discoverer),
    ],
)
def test_get_discoverer(cloud: str, expected: type[Discoverer]) -> None:
    assert type(get_discoverer(cloud, client=_client({}))) is expected


def test_generic_public_addresses_use_ipify() -> None:
    discoverer = Discoverer(
        client=_client(
            {
                "https://api.ipify.org": httpx.Response(200, text="203.0.113.7\n"),
                "https://api6.ipify.org": httpx.Response(200, text="2001:db8::7"),
            }
        )
    )

    assert discoverer.public_ipv4() == "203.0.113.7"
    assert discoverer.public_ipv6() == "2001:db8::7"


def test_generic_hostname() -> None:
    with patch("asterisk_config.src.discovery.socket.gethostname", return_value="node-1"):
        assert Discoverer(client=_client({})).hostname() == "node-1"


def test_successful_answers_are_cached() -> None:
    seen: list[httpx.Request] = []
    discoverer = Discoverer(
        client=_client({"https://api.ipify.org": httpx.Response(200, text="203.0.113.7")}, seen)
    )

    discoverer.public_ipv4()
    discoverer.public_ipv4()

    assert len(seen) == 1


def test_failures_are_not_cached() -> None:
    seen: list[httpx.Request] = []
    discoverer = Discoverer(client=_client({}, seen))

    for _ in range(2):
        with pytest.raises(DiscoveryError, match="publicipv4"):
            discoverer.public_ipv4()

    assert len(seen) == 2


def test_wrong_address_family_is_rejected() -> None:
    discoverer = Discoverer(
        client=_client({"https://api6.ipify.org": httpx.Response(200, text="203.0.113.7")})
    )

    with pytest.raises(DiscoveryError, match="IPv6"):
        discoverer.public_ipv6()


def test_aws_uses_imdsv2_token() -> None:
    seen: list[httpx.Request] = []
    discoverer = AWSDiscoverer(
        client=_client(
            {
                "http://169.254.169.254/latest/api/token": httpx.Response(200, text="tok"),
                "http://169.254.169.254/latest/meta-data/local-ipv4": httpx.Response(
                    200, text="10.0.0.5"
                ),
            },
            seen,
        )
    )

    assert discoverer.private_ipv4() == "10.0.0.5"
    assert seen[0].method == "PUT"
    assert seen[1].headers["X-aws-ec2-metadata-token"] == "tok"


def test_gcp_sends_metadata_flavor() -> None:
    seen: list[httpx.Request] = []
    base = "http://metadata.google.internal/computeMetadata/v1/instance"
    discoverer = GCPDiscoverer(
        client=_client(
            {
                f"{base}/network-interfaces/0/access-configs/0/external-ip": httpx.Response(
                    200, text="203.0.113.9"
                )
            },
            seen,
        )
    )

    assert discoverer.public_ipv4() == "203.0.113.9"
    assert seen[0].headers["Metadata-Flavor"] == "Google"


def test_azure_reads_instance_metadata() -> None:
    metadata = {
        "compute": {"name": "vm-1"},
        "network": {
            "interface": [
                {
                    "ipv4": {
                        "ipAddress": [
                            {"privateIpAddress": "10.1.0.4", "publicIpAddress": "203.0.113.4"}
                        ]
                    },
                    "ipv6": {"ipAddress": []},
                }
            ]
        },
    }
    discoverer = AzureDiscoverer(
        client=_client(
            {"http://169.254.169.254/metadata/instance": httpx.Response(200, json=metadata)}
        )
    )

    assert discoverer.hostname() == "vm-1"
    assert discoverer.private_ipv4() == "10.1.0.4"
    assert discoverer.public_ipv4() == "203.0.113.4"
    with pytest.raises(DiscoveryError):
        discoverer.public_ipv6()


def test_digitalocean_public_ipv4() -> None:
    discoverer = DigitalOceanDiscoverer(
        client=_client(
            {
                "http://169.254.169.254/metadata/v1/interfaces/public/0/ipv4/address": (
                    httpx.Response(200, text="198.51.100.2")
                )
            }
        )
    )

    assert discoverer.public_ipv4() == "198.51.100.2"
