"""Loan lifecycle flow: apply, approve, repay, then read the balance back.

The flow is a small state machine::

    START -> APPLIED -> APPROVED -> REPAID -> QUERIED -> DONE
      \\________\\__________\\__________\\_________\\-> FAILED

The first error moves it to FAILED and every remaining step is skipped.
Each step finishes (commit or failure) before the next one starts.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING

from loan_client import loan as loan_codec
from loan_client.exceptions import LedgerClientError, QueryError, TransactionTimeout
from loan_client.logging import get_logger

if TYPE_CHECKING:
    from loan_client.config import LoanConfig
    from loan_client.contract import Contract
    from loan_client.loan import Loan

APPLY_FOR_LOAN = "ApplyForLoan"
APPROVE_LOAN = "ApproveLoan"
MAKE_REPAYMENT = "MakeRepayment"
CHECK_LOAN_BALANCE = "CheckLoanBalance"

APPROVED_STATUS = "Approved"


class FlowState(Enum):
    """States of the loan lifecycle flow."""

    START = "start"
    APPLIED = "applied"
    APPROVED = "approved"
    REPAID = "repaid"
    QUERIED = "queried"
    DONE = "done"
    FAILED = "failed"


class Step(Enum):
    """Steps of the flow, in execution order."""

    APPLY = "apply"
    APPROVE = "approve"
    REPAY = "repay"
    QUERY = "query"


STEP_TARGETS: dict[Step, FlowState] = {
    Step.APPLY: FlowState.APPLIED,
    Step.APPROVE: FlowState.APPROVED,
    Step.REPAY: FlowState.REPAID,
    Step.QUERY: FlowState.QUERIED,
}

STEP_DESCRIPTIONS: dict[Step, str] = {
    Step.APPLY: "apply for loan",
    Step.APPROVE: "approve loan",
    Step.REPAY: "make repayment for loan",
    Step.QUERY: "get loan balance",
}

STEP_MESSAGES: dict[Step, str] = {
    Step.APPLY: "Loan successfully applied",
    Step.APPROVE: "Loan status updated to Approved",
    Step.REPAY: "Repayment recorded. Outstanding balance updated.",
    Step.QUERY: "Loan balance retrieved",
}


@dataclass(frozen=True)
class StepPolicy:
    """Whether and how often a step may be re-sent after an ambiguous outcome.

    Only ``TransactionTimeout`` is ever retried. A non-idempotent step is
    re-sent only after a pre-check query shows the previous attempt did not
    commit.
    """

    idempotent: bool
    max_attempts: int = 1

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            msg = f"max_attempts must be >= 1, got {self.max_attempts}"
            raise ValueError(msg)


def default_policies(max_attempts: int = 1) -> dict[Step, StepPolicy]:
    """Policies for every submitted step with the same attempt budget.

    The balance query is read once and never retried.
    """
    return {
        Step.APPLY: StepPolicy(idempotent=False, max_attempts=max_attempts),
        Step.APPROVE: StepPolicy(idempotent=True, max_attempts=max_attempts),
        Step.REPAY: StepPolicy(idempotent=False, max_attempts=max_attempts),
    }


@dataclass(frozen=True)
class LoanRequest:
    """Inputs of one lifecycle run."""

    loan_id: str
    applicant_name: str
    amount: Decimal
    term_months: int
    interest_rate: Decimal
    repayment: Decimal

    @classmethod
    def from_config(cls, config: LoanConfig) -> LoanRequest:
        return cls(
            loan_id=config.loan_id,
            applicant_name=config.applicant_name,
            amount=config.amount,
            term_months=config.term_months,
            interest_rate=config.interest_rate,
            repayment=config.repayment,
        )


@dataclass
class FlowResult:
    """Outcome of a flow run."""

    state: FlowState
    transitions: list[FlowState] = field(default_factory=list)
    completed: list[Step] = field(default_factory=list)
    loan: Loan | None = None
    failed_step: Step | None = None
    error: LedgerClientError | None = None

    @property
    def succeeded(self) -> bool:
        return self.state is FlowState.DONE

    @property
    def failure_message(self) -> str | None:
        """Human-readable message naming the failed step, if any."""
        if self.failed_step is None or self.error is None:
            return None
        return f"Failed to {STEP_DESCRIPTIONS[self.failed_step]}: {self.error.message}"


# Returns True if the previous attempt committed, False if it did not,
# None if that cannot be determined.
Confirmation = Callable[[], Awaitable[bool | None]]


class LoanFlow:
    """
    Drives one loan through its lifecycle over a contract handle.

    The handle's session is owned by the caller, which closes it once the
    flow has finished.
    """

    def __init__(
        self,
        contract: Contract,
        request: LoanRequest,
        policies: Mapping[Step, StepPolicy] | None = None,
    ) -> None:
        self._contract = contract
        self._request = request
        self._policies = {**default_policies(), **(policies or {})}
        self._state = FlowState.START
        self._transitions: list[FlowState] = [FlowState.START]

    @property
    def state(self) -> FlowState:
        return self._state

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(self) -> FlowResult:
        """Run every step in order, stopping at the first failure."""
        if self._state is not FlowState.START:
            msg = f"Flow already ran (state={self._state.value})"
            raise RuntimeError(msg)

        handlers: list[tuple[Step, Callable[[], Awaitable[Loan | None]]]] = [
            (Step.APPLY, self._apply),
            (Step.APPROVE, self._approve),
            (Step.REPAY, self._repay),
            (Step.QUERY, self._query),
        ]
        completed: list[Step] = []
        loan: Loan | None = None
        logger = get_logger(__name__)

        logger.info("Loan flow starting (loan_id=%s)", self._request.loan_id)

        for step, handler in handlers:
            try:
                outcome = await handler()
            except LedgerClientError as exc:
                self._move_to(FlowState.FAILED)
                logger.error(
                    "Failed to %s: %s",
                    STEP_DESCRIPTIONS[step],
                    exc.message,
                    extra={"step": step.value, "error_code": exc.error},
                )
                return FlowResult(
                    state=self._state,
                    transitions=list(self._transitions),
                    completed=completed,
                    loan=loan,
                    failed_step=step,
                    error=exc,
                )

            if outcome is not None:
                loan = outcome
            completed.append(step)
            self._move_to(STEP_TARGETS[step])
            logger.info(STEP_MESSAGES[step], extra={"step": step.value})

        self._move_to(FlowState.DONE)
        return FlowResult(
            state=self._state,
            transitions=list(self._transitions),
            completed=completed,
            loan=loan,
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _apply(self) -> None:
        req = self._request
        await self._submit(
            Step.APPLY,
            APPLY_FOR_LOAN,
            (req.loan_id, req.applicant_name, req.amount, req.term_months, req.interest_rate),
            confirm=self._loan_exists,
        )

    async def _approve(self) -> None:
        await self._submit(
            Step.APPROVE,
            APPROVE_LOAN,
            (self._request.loan_id, APPROVED_STATUS),
        )

    async def _repay(self) -> None:
        confirm: Confirmation | None = None
        if self._policies[Step.REPAY].max_attempts > 1:
            baseline = len((await self._fetch_loan()).repayments)

            async def repayment_recorded() -> bool | None:
                try:
                    current = await self._fetch_loan()
                except QueryError:
                    return None
                return len(current.repayments) > baseline

            confirm = repayment_recorded

        await self._submit(
            Step.REPAY,
            MAKE_REPAYMENT,
            (self._request.loan_id, self._request.repayment),
            confirm=confirm,
        )

    async def _query(self) -> Loan:
        return await self._fetch_loan()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _move_to(self, state: FlowState) -> None:
        self._state = state
        self._transitions.append(state)

    async def _fetch_loan(self) -> Loan:
        payload = await self._contract.evaluate_transaction(
            CHECK_LOAN_BALANCE, self._request.loan_id
        )
        return loan_codec.decode(payload)

    async def _loan_exists(self) -> bool | None:
        try:
            await self._contract.evaluate_transaction(CHECK_LOAN_BALANCE, self._request.loan_id)
        except QueryError as exc:
            # Only an explicit not-found answer proves the apply did not commit.
            if exc.details.get("status_code") == 404:
                return False
            return None
        return True

    async def _submit(
        self,
        step: Step,
        transaction: str,
        args: tuple[object, ...],
        confirm: Confirmation | None = None,
    ) -> bytes:
        """Submit ``transaction``, re-sending after a timeout only when safe."""
        logger = get_logger(__name__)
        policy = self._policies[step]
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._contract.submit_transaction(transaction, *args)
            except TransactionTimeout as exc:
                if attempt >= policy.max_attempts:
                    raise
                if not policy.idempotent:
                    if confirm is None:
                        raise
                    committed = await confirm()
                    if committed is None:
                        raise
                    if committed:
                        logger.info(
                            "%s from tx %s was committed despite the timeout",
                            transaction,
                            exc.tx_id,
                        )
                        return b""
                logger.warning(
                    "Resubmitting %s after timeout (attempt %d of %d)",
                    transaction,
                    attempt + 1,
                    policy.max_attempts,
                    extra={"tx_id": exc.tx_id, "step": step.value},
                )
