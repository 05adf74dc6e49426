"""
Gateway sessions: authenticated connections to a ledger network.

A ``Gateway`` is opened with one identity against the gateway peer named by
a connection profile. Channels are resolved from it as ``Network`` objects
and contracts from those as ``Contract`` handles.

Usage::

    async with await connect(profile, identity, options) as gateway:
        network = await gateway.get_network("mychannel")
        contract = network.get_contract("loan")
        await contract.submit_transaction("ApplyForLoan", "loan1", ...)
"""

from __future__ import annotations

import ssl
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import httpx

from loan_client.contract import Contract
from loan_client.exceptions import LedgerConnectionError, NetworkNotFound
from loan_client.logging import get_logger
from loan_client.profile import GatewayEndpoint, gateway_endpoint
from loan_client.signing import RequestSigner
from loan_client.transactions import TransactionClient

if TYPE_CHECKING:
    from types import TracebackType

    from loan_client.identity import X509Identity
    from loan_client.profile import ConnectionProfile


@dataclass(frozen=True)
class ConnectOptions:
    """Per-session connection settings.

    ``discovery_as_localhost`` maps the discovered peer host to
    ``localhost``, which is what a locally port-forwarded test network
    needs. ``transport`` replaces the network transport entirely and is
    meant for embedding and tests.
    """

    discovery_as_localhost: bool = True
    request_timeout_seconds: float = 30.0
    commit_timeout_seconds: float = 300.0
    transport: httpx.AsyncBaseTransport | None = None


class SessionState(Enum):
    """Lifecycle of a gateway session."""

    NEW = "new"
    OPEN = "open"
    CLOSED = "closed"


def _tls_verify(endpoint: GatewayEndpoint) -> ssl.SSLContext | bool:
    if not endpoint.uses_tls:
        return False
    if endpoint.tls_ca_pem is None:
        return True
    try:
        return ssl.create_default_context(cadata=endpoint.tls_ca_pem)
    except ssl.SSLError as exc:
        raise LedgerConnectionError(
            f"TLS CA certificate for peer '{endpoint.peer_name}' is invalid",
            error="TLS_CONFIGURATION_INVALID",
            details={"peer": endpoint.peer_name},
        ) from exc


class Network:
    """A channel resolved within an open gateway session."""

    def __init__(self, gateway: Gateway, name: str) -> None:
        self._gateway = gateway
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    def get_contract(self, name: str) -> Contract:
        """Return a handle for contract ``name``.

        No remote call is made; an unknown contract only surfaces on the
        first transaction.
        """
        return Contract(
            channel_name=self._name,
            chaincode_name=name,
            _client=self._gateway.transaction_client,
        )

    def __repr__(self) -> str:
        return f"Network(name={self._name!r})"


class Gateway:
    """
    Authenticated session with the gateway peer.

    ``close()`` is idempotent and may be called on a session that never
    opened or failed to open. The session is owned by a single flow and
    must not be shared between concurrent callers.
    """

    def __init__(
        self,
        profile: ConnectionProfile,
        identity: X509Identity,
        options: ConnectOptions | None = None,
    ) -> None:
        self._profile = profile
        self._identity = identity
        self._options = options or ConnectOptions()
        self._state = SessionState.NEW
        self._http: httpx.AsyncClient | None = None
        self._signer: RequestSigner | None = None
        self._transactions: TransactionClient | None = None
        self._endpoint: GatewayEndpoint | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def endpoint(self) -> GatewayEndpoint | None:
        return self._endpoint

    @property
    def transaction_client(self) -> TransactionClient:
        if self._state is not SessionState.OPEN or self._transactions is None:
            raise LedgerConnectionError("Gateway session is not open", error="SESSION_NOT_OPEN")
        return self._transactions

    async def open(self) -> Gateway:
        """
        Connect to the gateway peer and authenticate.

        Returns:
            This gateway, now open.

        Raises:
            ProfileError: If no gateway peer can be resolved from the profile.
            CredentialError: If the identity's key material is unusable.
            LedgerConnectionError: On transport, TLS or authentication failure.
        """
        logger = get_logger(__name__)
        if self._state is not SessionState.NEW:
            raise LedgerConnectionError(
                f"Gateway session cannot be opened from state '{self._state.value}'",
                error="SESSION_NOT_OPEN",
            )

        endpoint = gateway_endpoint(
            self._profile, as_localhost=self._options.discovery_as_localhost
        )
        signer = RequestSigner(self._identity)

        client_kwargs: dict[str, Any] = {
            "base_url": endpoint.url,
            "timeout": httpx.Timeout(self._options.request_timeout_seconds),
        }
        if self._options.transport is not None:
            client_kwargs["transport"] = self._options.transport
        else:
            client_kwargs["verify"] = _tls_verify(endpoint)
        http = httpx.AsyncClient(**client_kwargs)

        extensions: dict[str, Any] = (
            {"sni_hostname": endpoint.server_hostname} if endpoint.server_hostname else {}
        )
        log_context = {"peer": endpoint.peer_name, "url": endpoint.url, "msp_id": signer.msp_id}

        try:
            response = await http.get(
                "/channels",
                headers=signer.auth_header({"action": "connect"}),
                extensions=extensions,
            )
        except httpx.HTTPError as exc:
            await http.aclose()
            logger.warning("Gateway connection failed", extra={**log_context, "error": str(exc)})
            raise LedgerConnectionError(
                f"Cannot connect to gateway peer '{endpoint.peer_name}' at {endpoint.url}",
                details=log_context,
            ) from exc

        if response.status_code in (401, 403):
            await http.aclose()
            logger.warning("Gateway rejected identity", extra=log_context)
            raise LedgerConnectionError(
                "Gateway rejected the client identity",
                error="AUTHENTICATION_FAILED",
                details={**log_context, "status_code": response.status_code},
            )
        if response.status_code != 200:
            await http.aclose()
            logger.warning(
                "Gateway handshake failed",
                extra={**log_context, "status_code": response.status_code},
            )
            raise LedgerConnectionError(
                f"Gateway handshake failed with status {response.status_code}",
                details={**log_context, "status_code": response.status_code},
            )

        self._http = http
        self._signer = signer
        self._endpoint = endpoint
        self._transactions = TransactionClient(
            http,
            signer,
            commit_timeout_seconds=self._options.commit_timeout_seconds,
            server_hostname=endpoint.server_hostname,
        )
        self._state = SessionState.OPEN
        logger.info("Gateway connected", extra=log_context)
        return self

    async def get_network(self, name: str) -> Network:
        """
        Resolve channel ``name``.

        Raises:
            NetworkNotFound: If the channel does not exist or the identity
                is not a member of it.
            LedgerConnectionError: If the session is not open or the gateway
                cannot be reached.
        """
        logger = get_logger(__name__)
        if self._state is not SessionState.OPEN or self._http is None or self._signer is None:
            raise LedgerConnectionError("Gateway session is not open", error="SESSION_NOT_OPEN")

        extensions: dict[str, Any] = {}
        if self._endpoint is not None and self._endpoint.server_hostname:
            extensions["sni_hostname"] = self._endpoint.server_hostname

        try:
            response = await self._http.get(
                f"/channels/{quote(name, safe='')}",
                headers=self._signer.auth_header({"action": "get_network", "channel": name}),
                extensions=extensions,
            )
        except httpx.HTTPError as exc:
            raise LedgerConnectionError(
                f"Cannot reach gateway while resolving channel '{name}'",
                details={"channel": name},
            ) from exc

        if response.status_code in (403, 404):
            logger.warning(
                "Channel not found",
                extra={"channel": name, "status_code": response.status_code},
            )
            raise NetworkNotFound(f"Channel '{name}' not found", details={"channel": name})
        if response.status_code != 200:
            raise LedgerConnectionError(
                f"Gateway returned status {response.status_code} for channel '{name}'",
                details={"channel": name, "status_code": response.status_code},
            )

        logger.debug("Resolved channel", extra={"channel": name})
        return Network(self, name)

    async def close(self) -> None:
        """Release the session. Safe to call repeatedly."""
        if self._state is SessionState.CLOSED:
            return
        self._state = SessionState.CLOSED
        self._transactions = None
        http, self._http = self._http, None
        if http is not None:
            await http.aclose()
            get_logger(__name__).info("Gateway closed")

    async def __aenter__(self) -> Gateway:
        if self._state is SessionState.NEW:
            await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f"Gateway(profile={self._profile.name!r}, state={self._state.value!r})"


async def connect(
    profile: ConnectionProfile,
    identity: X509Identity,
    options: ConnectOptions | None = None,
) -> Gateway:
    """Open and return a gateway session. The caller must ``close()`` it."""
    return await Gateway(profile, identity, options).open()
