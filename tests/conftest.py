"""Shared fixtures."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest
import yaml

from loan_client.config import Settings, clear_settings_cache, load_settings
from loan_client.gateway import ConnectOptions, Gateway, connect
from loan_client.identity import X509Identity
from loan_client.profile import ConnectionProfile, load_connection_profile
from tests.helpers import FakeLedgerGateway, write_connection_profile, write_credential_bundle

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

    from loan_client.contract import Contract


@pytest.fixture(autouse=True)
def _clear_config_cache() -> None:
    """Clear config cache between tests."""
    clear_settings_cache()


@pytest.fixture()
def credential_path(tmp_path: Path) -> Path:
    """MSP directory with one certificate and exactly one key."""
    return write_credential_bundle(tmp_path / "msp")


@pytest.fixture()
def identity(credential_path: Path) -> X509Identity:
    return X509Identity(
        msp_id="Org1MSP",
        certificate=(credential_path / "signcerts" / "cert.pem").read_bytes(),
        private_key=(credential_path / "keystore" / "priv_sk").read_bytes(),
    )


@pytest.fixture()
def profile_path(tmp_path: Path) -> Path:
    return write_connection_profile(tmp_path / "connection-org1.yaml")


@pytest.fixture()
def connection_profile(profile_path: Path) -> ConnectionProfile:
    return load_connection_profile(profile_path)


@pytest.fixture()
def ledger() -> FakeLedgerGateway:
    return FakeLedgerGateway()


@pytest.fixture()
def connect_options(ledger: FakeLedgerGateway) -> ConnectOptions:
    return ConnectOptions(
        discovery_as_localhost=True,
        request_timeout_seconds=5,
        commit_timeout_seconds=5,
        transport=ledger.transport,
    )


@pytest.fixture()
async def gateway(
    connection_profile: ConnectionProfile,
    identity: X509Identity,
    connect_options: ConnectOptions,
) -> AsyncIterator[Gateway]:
    """Open session against the fake ledger."""
    session = await connect(connection_profile, identity, connect_options)
    yield session
    await session.close()


@pytest.fixture()
async def contract(gateway: Gateway) -> Contract:
    network = await gateway.get_network("mychannel")
    return network.get_contract("loan")


@pytest.fixture()
def config_data(credential_path: Path, profile_path: Path) -> dict[str, Any]:
    return {
        "gateway": {
            "connection_profile": str(profile_path),
            "discovery_as_localhost": True,
            "request_timeout_seconds": 5,
            "commit_timeout_seconds": 5,
        },
        "identity": {
            "wallet_dir": "wallet",
            "credential_path": str(credential_path),
            "alias": "appUser",
            "msp_id": "Org1MSP",
        },
        "logging": {"level": "INFO", "directory": None},
        "loan": {
            "loan_id": "loan1",
            "applicant_name": "John Doe",
            "amount": "5000",
            "term_months": 12,
            "interest_rate": "5.5",
            "repayment": "1000",
        },
        "retry": {"max_submit_attempts": 1},
    }


@pytest.fixture()
def config_path(tmp_path: Path, config_data: dict[str, Any]) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(config_data))
    return path


@pytest.fixture()
def settings(config_path: Path) -> Settings:
    return load_settings(config_path)
