"""Fabric common connection profile (YAML) loading and endpoint resolution."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit, urlunsplit

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from loan_client.exceptions import ProfileError

_SCHEME_MAP = {"grpcs": "https", "grpc": "http", "https": "https", "http": "http"}


class TLSCACerts(BaseModel):
    """Trust anchors for a peer's TLS certificate."""

    model_config = ConfigDict(extra="ignore")
    pem: str | None = None
    path: str | None = None


class PeerConfig(BaseModel):
    """One peer entry of the profile."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)
    url: str
    tls_ca_certs: TLSCACerts | None = Field(default=None, alias="tlsCACerts")
    grpc_options: dict[str, Any] = Field(default_factory=dict, alias="grpcOptions")

    @property
    def hostname_override(self) -> str | None:
        for key in ("ssl-target-name-override", "hostnameOverride"):
            value = self.grpc_options.get(key)
            if isinstance(value, str) and value:
                return value
        return None


class OrganizationConfig(BaseModel):
    """Organization entry: MSP id and the peers it owns."""

    model_config = ConfigDict(extra="ignore")
    mspid: str
    peers: list[str] = Field(default_factory=list)


class ClientSection(BaseModel):
    model_config = ConfigDict(extra="ignore")
    organization: str


class ConnectionProfile(BaseModel):
    """
    Network topology as seen by one client organization.

    Unknown sections (certificate authorities, orderers, ...) are ignored;
    the client only needs the gateway peers of its own organization.
    """

    model_config = ConfigDict(extra="ignore")
    name: str
    client: ClientSection
    organizations: dict[str, OrganizationConfig]
    peers: dict[str, PeerConfig]

    @property
    def organization(self) -> OrganizationConfig:
        org = self.organizations.get(self.client.organization)
        if org is None:
            raise ProfileError(
                f"Client organization '{self.client.organization}' is not defined in profile",
                details={"profile": self.name},
            )
        return org


@dataclass(frozen=True)
class GatewayEndpoint:
    """Where and how to reach the gateway peer."""

    peer_name: str
    url: str
    tls_ca_pem: str | None
    server_hostname: str | None

    @property
    def uses_tls(self) -> bool:
        return self.url.startswith("https://")


def load_connection_profile(path: Path) -> ConnectionProfile:
    """Read and validate a connection profile.

    ``tlsCACerts.path`` entries are resolved relative to the profile file and
    their contents inlined as ``pem``.

    Raises:
        ProfileError: If the file is missing, not YAML, or incomplete.
    """
    if not path.is_file():
        raise ProfileError(f"Connection profile not found: {path}", details={"path": str(path)})

    try:
        raw = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        raise ProfileError(
            f"Connection profile is not valid YAML: {path}", details={"path": str(path)}
        ) from exc
    if not isinstance(raw, dict):
        raise ProfileError(f"Invalid connection profile: {path}", details={"path": str(path)})

    try:
        profile = ConnectionProfile.model_validate(raw)
    except ValidationError as exc:
        raise ProfileError(
            f"Connection profile is incomplete: {path}",
            details={"path": str(path), "errors": exc.errors(include_url=False)},
        ) from exc

    for peer_name, peer in profile.peers.items():
        tls = peer.tls_ca_certs
        if tls is None or tls.pem or not tls.path:
            continue
        ca_path = Path(tls.path)
        if not ca_path.is_absolute():
            ca_path = path.parent / ca_path
        if not ca_path.is_file():
            raise ProfileError(
                f"TLS CA certificate for peer '{peer_name}' not found: {ca_path}",
                details={"peer": peer_name, "path": str(ca_path)},
            )
        tls.pem = ca_path.read_text()

    return profile


def _rewrite_url(url: str, *, as_localhost: bool) -> tuple[str, str]:
    parts = urlsplit(url)
    scheme = _SCHEME_MAP.get(parts.scheme)
    if scheme is None or not parts.hostname:
        msg = f"Unsupported peer URL: {url}"
        raise ProfileError(msg, details={"url": url})
    host = "localhost" if as_localhost else parts.hostname
    netloc = f"{host}:{parts.port}" if parts.port else host
    return urlunsplit((scheme, netloc, parts.path.rstrip("/"), "", "")), parts.hostname


def gateway_endpoint(profile: ConnectionProfile, *, as_localhost: bool) -> GatewayEndpoint:
    """Resolve the gateway endpoint: the first peer of the client organization.

    When ``as_localhost`` is set the peer host is replaced by ``localhost``
    and the original (or overridden) host name is kept for TLS verification.

    Raises:
        ProfileError: If the organization has no usable peer.
    """
    org = profile.organization
    for peer_name in org.peers:
        peer = profile.peers.get(peer_name)
        if peer is None:
            continue
        url, original_host = _rewrite_url(peer.url, as_localhost=as_localhost)
        server_hostname = peer.hostname_override
        if server_hostname is None and as_localhost:
            server_hostname = original_host
        return GatewayEndpoint(
            peer_name=peer_name,
            url=url,
            tls_ca_pem=peer.tls_ca_certs.pem if peer.tls_ca_certs else None,
            server_hostname=server_hostname,
        )
    raise ProfileError(
        f"No peers defined for organization '{profile.client.organization}'",
        details={"profile": profile.name},
    )
