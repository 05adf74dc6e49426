"""Contract handle: a chaincode name resolved within a channel."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from loan_client.transactions import TransactionClient


@dataclass(frozen=True)
class Contract:
    """
    Names one smart contract on one channel.

    Holds no state beyond the two names, so a handle can be reused for any
    number of sequential calls while its session stays open. It is not meant
    for concurrent use by several callers.
    """

    channel_name: str
    chaincode_name: str
    _client: TransactionClient = field(repr=False, compare=False)

    async def submit_transaction(self, name: str, *args: object) -> bytes:
        """Submit a state-changing transaction and wait for its commit."""
        return await self._client.submit(self, name, *args)

    async def evaluate_transaction(self, name: str, *args: object) -> bytes:
        """Evaluate a read-only query against the contract."""
        return await self._client.evaluate(self, name, *args)
