"""Submit and evaluate protocol against the peer gateway.

Two operation kinds share the same contract handle:

1. submit: a state-changing transaction. The gateway endorses it, sends
   it for ordering and only answers once the commit (or rejection) is
   known, so the call is a synchronous, consensus-backed write.
2. evaluate: a read-only query answered from one peer's current state.
   It is not ordered and may lag a very recent commit made by another
   client.

This layer never retries. Resubmitting a non-idempotent transaction could
apply its side effects twice, so that decision belongs to the caller.
"""

from __future__ import annotations

import base64
import binascii
import time
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import httpx

from loan_client.exceptions import (
    LedgerClientError,
    LedgerConnectionError,
    QueryError,
    TransactionRejected,
    TransactionTimeout,
)
from loan_client.logging import get_logger

if TYPE_CHECKING:
    from loan_client.contract import Contract
    from loan_client.signing import RequestSigner

VALID_STATUS = "VALID"
_TIMEOUT_STATUS_CODES = frozenset({408, 504})


def _json_body(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {"message": response.text}
    return body if isinstance(body, dict) else {"message": str(body)}


def _decode_result(
    body: dict[str, Any],
    error_cls: type[LedgerClientError],
    details: dict[str, Any],
) -> bytes:
    encoded = body.get("result")
    if encoded is None:
        return b""
    if not isinstance(encoded, str):
        raise error_cls("Gateway returned a non-string result", details=details)
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise error_cls("Gateway returned a result that is not base64", details=details) from exc


class TransactionClient:
    """
    Sends signed transaction proposals to the gateway of one session.

    Instances are created by ``Gateway`` and shared by every ``Contract``
    obtained from it.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        signer: RequestSigner,
        *,
        commit_timeout_seconds: float,
        server_hostname: str | None = None,
    ) -> None:
        self._http = http
        self._signer = signer
        self._commit_timeout = commit_timeout_seconds
        self._extensions: dict[str, Any] = (
            {"sni_hostname": server_hostname} if server_hostname else {}
        )

    @staticmethod
    def _path(contract: Contract, operation: str) -> str:
        channel = quote(contract.channel_name, safe="")
        chaincode = quote(contract.chaincode_name, safe="")
        return f"/channels/{channel}/chaincodes/{chaincode}/{operation}"

    def _proposal(
        self,
        action: str,
        contract: Contract,
        transaction: str,
        args: tuple[object, ...],
    ) -> tuple[str, dict[str, Any]]:
        tx_id, nonce = self._signer.new_transaction_id()
        proposal = {
            "action": action,
            "tx_id": tx_id,
            "nonce": nonce,
            "channel": contract.channel_name,
            "chaincode": contract.chaincode_name,
            "transaction": transaction,
            "args": [str(arg) for arg in args],
        }
        return tx_id, proposal

    async def submit(self, contract: Contract, transaction: str, *args: object) -> bytes:
        """
        Submit a transaction and wait for its commit.

        Args:
            contract: Handle naming the channel and chaincode.
            transaction: Contract function name, e.g. "ApplyForLoan".
            *args: Function arguments, sent as strings.

        Returns:
            The raw result bytes returned by the contract.

        Raises:
            TransactionRejected: Endorsement or validation failed.
            TransactionTimeout: The commit was not observed in time; the
                transaction may or may not have been committed.
            LedgerConnectionError: The gateway could not be reached at all.
        """
        logger = get_logger(__name__)
        tx_id, proposal = self._proposal("submit", contract, transaction, args)
        details = {
            "tx_id": tx_id,
            "transaction": transaction,
            "channel": contract.channel_name,
            "chaincode": contract.chaincode_name,
        }
        started = time.monotonic()

        try:
            response = await self._http.post(
                self._path(contract, "submit"),
                json={"token": self._signer.sign(proposal)},
                timeout=self._commit_timeout,
                extensions=self._extensions,
            )
        except (httpx.ConnectError, httpx.ConnectTimeout) as exc:
            logger.warning("Gateway connection failed on submit", extra={**details, "error": str(exc)})
            raise LedgerConnectionError(
                "Cannot connect to the gateway", details=details
            ) from exc
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            logger.warning(
                "Submit outcome unknown", extra={**details, "error": str(exc)}
            )
            raise TransactionTimeout(
                f"No commit observed for {transaction} (tx {tx_id})", details=details
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "Submit outcome unknown", extra={**details, "error": str(exc)}
            )
            raise TransactionTimeout(
                f"Outcome of {transaction} (tx {tx_id}) unknown: {exc}",
                error="OUTCOME_UNKNOWN",
                details=details,
            ) from exc

        if response.status_code in _TIMEOUT_STATUS_CODES:
            body = _json_body(response)
            logger.warning(
                "Gateway reported commit timeout",
                extra={**details, "status_code": response.status_code},
            )
            raise TransactionTimeout(
                body.get("message") or f"Commit timeout for {transaction} (tx {tx_id})",
                details={**details, "gateway": body},
            )

        if response.status_code != 200:
            body = _json_body(response)
            logger.warning(
                "Transaction rejected",
                extra={**details, "status_code": response.status_code, "error": body.get("error")},
            )
            raise TransactionRejected(
                body.get("message") or f"{transaction} was rejected",
                error=body.get("error") or None,
                details={**details, "status_code": response.status_code, "gateway": body},
            )

        body = _json_body(response)
        validation = body.get("status", VALID_STATUS)
        if validation != VALID_STATUS:
            logger.warning(
                "Transaction invalidated at commit", extra={**details, "validation": validation}
            )
            raise TransactionRejected(
                f"{transaction} was invalidated at commit: {validation}",
                error=str(validation),
                details={**details, "validation": validation},
            )

        result = _decode_result(body, TransactionRejected, details)
        logger.info(
            "Transaction committed",
            extra={**details, "duration_ms": round((time.monotonic() - started) * 1000)},
        )
        return result

    async def evaluate(self, contract: Contract, transaction: str, *args: object) -> bytes:
        """
        Evaluate a read-only transaction on one peer.

        Raises:
            QueryError: On any failure, including unknown keys reported by
                the contract and unreachable gateways.
        """
        logger = get_logger(__name__)
        tx_id, proposal = self._proposal("evaluate", contract, transaction, args)
        details = {
            "tx_id": tx_id,
            "transaction": transaction,
            "channel": contract.channel_name,
            "chaincode": contract.chaincode_name,
        }

        try:
            response = await self._http.post(
                self._path(contract, "evaluate"),
                json={"token": self._signer.sign(proposal)},
                extensions=self._extensions,
            )
        except httpx.HTTPError as exc:
            logger.warning("Gateway request failed on evaluate", extra={**details, "error": str(exc)})
            raise QueryError(f"{transaction} query could not be sent", details=details) from exc

        if response.status_code != 200:
            body = _json_body(response)
            logger.warning(
                "Query failed",
                extra={**details, "status_code": response.status_code, "error": body.get("error")},
            )
            raise QueryError(
                body.get("message") or f"{transaction} query failed",
                error=body.get("error") or None,
                details={**details, "status_code": response.status_code, "gateway": body},
            )

        result = _decode_result(_json_body(response), QueryError, details)
        logger.debug("Query evaluated", extra=details)
        return result
