"""Entry point for the loan ledger client.

Usage::

    LOAN_CLIENT_CONFIG_PATH=config.yaml python -m loan_client

Provisions the wallet identity if needed, connects to the gateway, drives
the configured loan through apply, approve and repay, then logs the
outstanding balance. Any failure exits with status 1.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import TYPE_CHECKING

from loan_client.config import get_settings, resolve_network_names
from loan_client.exceptions import LedgerClientError
from loan_client.flow import LoanFlow, LoanRequest, default_policies
from loan_client.gateway import ConnectOptions, Gateway
from loan_client.identity import FileSystemWallet
from loan_client.logging import get_logger, setup_logging
from loan_client.profile import load_connection_profile
from loan_client.provisioning import ensure_identity

if TYPE_CHECKING:
    from collections.abc import Mapping

    import httpx

    from loan_client.config import Settings


async def run_client(
    settings: Settings,
    *,
    environ: Mapping[str, str] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> int:
    """Run the whole client once and return the process exit status."""
    logger = get_logger("main")
    names = resolve_network_names(environ)

    stage = "populate wallet contents"
    try:
        wallet = FileSystemWallet(settings.identity.wallet_dir)
        identity = ensure_identity(
            wallet,
            Path(settings.identity.credential_path),
            settings.identity.alias,
            settings.identity.msp_id,
        )

        stage = "load connection profile"
        profile = load_connection_profile(Path(settings.gateway.connection_profile))
        options = ConnectOptions(
            discovery_as_localhost=settings.gateway.discovery_as_localhost,
            request_timeout_seconds=settings.gateway.request_timeout_seconds,
            commit_timeout_seconds=settings.gateway.commit_timeout_seconds,
            transport=transport,
        )

        stage = "connect to gateway"
        async with Gateway(profile, identity, options) as gateway:
            stage = "get network"
            network = await gateway.get_network(names.channel_name)
            contract = network.get_contract(names.chaincode_name)

            flow = LoanFlow(
                contract,
                LoanRequest.from_config(settings.loan),
                default_policies(settings.retry.max_submit_attempts),
            )
            result = await flow.run()
    except (LedgerClientError, OSError, ValueError) as exc:
        logger.error("Failed to %s: %s", stage, exc)
        return 1

    if not result.succeeded:
        # LoanFlow has already logged the failed step.
        return 1

    if result.loan is not None:
        logger.info(
            "Outstanding Balance: %s",
            result.loan.outstanding,
            extra={"loan_id": result.loan.loan_id, "status": result.loan.status.value},
        )
    return 0


def main() -> None:
    """Sync entry point."""
    try:
        settings = get_settings()
    except (OSError, ValueError) as exc:
        raise SystemExit(f"Failed to load configuration: {exc}") from exc

    setup_logging(settings.logging.level, settings.logging.directory)
    exit_code = asyncio.run(run_client(settings))
    if exit_code != 0:
        raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
