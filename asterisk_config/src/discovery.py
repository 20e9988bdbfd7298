from __future__ import annotations

import ipaddress
import logging
import socket
import threading
from collections.abc import Callable
from typing import Any

import httpx

from asterisk_config.src.errors import DiscoveryError

LOGGER = logging.getLogger(__name__)

METADATA_TIMEOUT_SECONDS = 2.0


class Discoverer:
    """Network facts about the node the pod runs on.

    The generic implementation uses the local resolver for the hostname, the
    default-route source address for the private IPv4 address, and ipify for
    public addresses.  Cloud subclasses override the individual lookups with
    their instance metadata services.  Successful answers are cached for the
    lifetime of the discoverer; failures are not.
    """

    provider = "generic"

    def __init__(self, client: httpx.Client | None = None) -> None:
        self.client = client or httpx.Client(timeout=METADATA_TIMEOUT_SECONDS)
        self._cache: dict[str, str] = {}
        self._cache_lock = threading.Lock()

    def _cached(self, fact: str, lookup: Callable[[], str]) -> str:
        with self._cache_lock:
            if fact in self._cache:
                return self._cache[fact]
        try:
            value = lookup().strip()
        except (httpx.HTTPError, OSError, ValueError) as exc:
            raise DiscoveryError(f"{self.provider}: failed to discover {fact}: {exc}") from exc
        if not value:
            raise DiscoveryError(f"{self.provider}: {fact} is not available")
        with self._cache_lock:
            self._cache[fact] = value
        return value

    def _get_text(self, url: str, headers: dict[str, str] | None = None) -> str:
        response = self.client.get(url, headers=headers)
        response.raise_for_status()
        return response.text

    @staticmethod
    def _address(value: str, version: int) -> str:
        try:
            parsed = ipaddress.ip_address(value.strip())
        except ValueError as exc:
            raise DiscoveryError(f"invalid IPv{version} address {value!r}") from exc
        if parsed.version != version:
            raise DiscoveryError(f"expected an IPv{version} address, got {value!r}")
        return str(parsed)

    def hostname(self) -> str:
        return self._cached("hostname", self._lookup_hostname)

    def private_ipv4(self) -> str:
        return self._address(self._cached("privateipv4", self._lookup_private_ipv4), 4)

    def public_ipv4(self) -> str:
        return self._address(self._cached("publicipv4", self._lookup_public_ipv4), 4)

    def public_ipv6(self) -> str:
        return self._address(self._cached("publicipv6", self._lookup_public_ipv6), 6)

    def _lookup_hostname(self) -> str:
        return socket.gethostname()

    def _lookup_private_ipv4(self) -> str:
        # Connecting a UDP socket sends nothing; it only selects the outbound interface.
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect(("8.8.8.8", 53))
            return str(sock.getsockname()[0])

    def _lookup_public_ipv4(self) -> str:
        return self._get_text("https://api.ipify.org")

    def _lookup_public_ipv6(self) -> str:
        return self._get_text("https://api6.ipify.org")


class AWSDiscoverer(Discoverer):
    """EC2 instance metadata (IMDSv2)."""

    provider = "aws"
    base_url = "http://169.254.169.254/latest"

    def _token_headers(self) -> dict[str, str]:
        response = self.client.put(
            f"{self.base_url}/api/token",
            headers={"X-aws-ec2-metadata-token-ttl-seconds": "300"},
        )
        response.raise_for_status()
        return {"X-aws-ec2-metadata-token": response.text}

    def _meta(self, path: str) -> str:
        return self._get_text(f"{self.base_url}/meta-data/{path}", headers=self._token_headers())

    def _lookup_hostname(self) -> str:
        return self._meta("local-hostname")

    def _lookup_private_ipv4(self) -> str:
        return self._meta("local-ipv4")

    def _lookup_public_ipv4(self) -> str:
        return self._meta("public-ipv4")

    def _lookup_public_ipv6(self) -> str:
        return self._meta("ipv6")


class GCPDiscoverer(Discoverer):
    """Google Compute Engine metadata server."""

    provider = "gcp"
    base_url = "http://metadata.google.internal/computeMetadata/v1/instance"
    headers = {"Metadata-Flavor": "Google"}

    def _meta(self, path: str) -> str:
        return self._get_text(f"{self.base_url}/{path}", headers=self.headers)

    def _lookup_hostname(self) -> str:
        return self._meta("hostname")

    def _lookup_private_ipv4(self) -> str:
        return self._meta("network-interfaces/0/ip")

    def _lookup_public_ipv4(self) -> str:
        return self._meta("network-interfaces/0/access-configs/0/external-ip")

    def _lookup_public_ipv6(self) -> str:
        return next(iter(self._meta("network-interfaces/0/ipv6s").splitlines()), "")


class AzureDiscoverer(Discoverer):
    """Azure Instance Metadata Service."""

    provider = "azure"
    url = "http://169.254.169.254/metadata/instance?api-version=2021-02-01"
    headers = {"Metadata": "true"}

    def _instance(self) -> dict[str, Any]:
        response = self.client.get(self.url, headers=self.headers)
        response.raise_for_status()
        return response.json()

    def _interface(self) -> dict[str, Any]:
        interfaces = self._instance().get("network", {}).get("interface", [])
        if not interfaces:
            raise DiscoveryError("azure: no network interfaces in instance metadata")
        return interfaces[0]

    def _lookup_hostname(self) -> str:
        return str(self._instance().get("compute", {}).get("name", ""))

    def _lookup_private_ipv4(self) -> str:
        addresses = self._interface().get("ipv4", {}).get("ipAddress", [])
        return str(addresses[0].get("privateIpAddress", "")) if addresses else ""

    def _lookup_public_ipv4(self) -> str:
        addresses = self._interface().get("ipv4", {}).get("ipAddress", [])
        return str(addresses[0].get("publicIpAddress", "")) if addresses else ""

    def _lookup_public_ipv6(self) -> str:
        addresses = self._interface().get("ipv6", {}).get("ipAddress", [])
        return str(addresses[0].get("publicIpAddress", "")) if addresses else ""


class DigitalOceanDiscoverer(Discoverer):
    """DigitalOcean droplet metadata."""

    provider = "digitalocean"
    base_url = "http://169.254.169.254/metadata/v1"

    def _meta(self, path: str) -> str:
        return self._get_text(f"{self.base_url}/{path}")

    def _lookup_hostname(self) -> str:
        return self._meta("hostname")

    def _lookup_private_ipv4(self) -> str:
        return self._meta("interfaces/private/0/ipv4/address")

    def _lookup_public_ipv4(self) -> str:
        return self._meta("interfaces/public/0/ipv4/address")

    def _lookup_public_ipv6(self) -> str:
        return self._meta("interfaces/public/0/ipv6/address")


_DISCOVERERS: dict[str, type[Discoverer]] = {
    "": Discoverer,
    "aws": AWSDiscoverer,
    "azure": AzureDiscoverer,
    "digitalocean": DigitalOceanDiscoverer,
    "do": DigitalOceanDiscoverer,
    "gcp": GCPDiscoverer,
}


def get_discoverer(cloud: str, client: httpx.Client | None = None) -> Discoverer:
    """Return the discoverer for *cloud*, falling back to the generic one."""
    cloud = cloud.strip().lower()
    discoverer_class = _DISCOVERERS.get(cloud)
    if discoverer_class is None:
        LOGGER.warning("Unhandled cloud %r; using generic network discovery", cloud)
        discoverer_class = Discoverer
    return discoverer_class(client=client)
