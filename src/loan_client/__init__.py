"""Loan ledger client: drives a loan's lifecycle on a permissioned ledger."""

from loan_client.contract import Contract
from loan_client.flow import FlowResult, FlowState, LoanFlow, LoanRequest, StepPolicy
from loan_client.gateway import ConnectOptions, Gateway, Network, connect
from loan_client.identity import FileSystemWallet, InMemoryWallet, X509Identity
from loan_client.loan import Loan, LoanStatus
from loan_client.provisioning import ensure_identity, populate_wallet

__version__ = "0.1.0"

__all__ = [
    "ConnectOptions",
    "Contract",
    "FileSystemWallet",
    "FlowResult",
    "FlowState",
    "Gateway",
    "InMemoryWallet",
    "Loan",
    "LoanFlow",
    "LoanRequest",
    "LoanStatus",
    "Network",
    "StepPolicy",
    "X509Identity",
    "connect",
    "ensure_identity",
    "populate_wallet",
]
