"""Loan record as stored by the loan contract, and its JSON codec."""

from __future__ import annotations

import json
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from loan_client.exceptions import MalformedRecord


class LoanStatus(str, Enum):
    """Lifecycle states of a loan on the ledger."""

    APPLIED = "Applied"
    APPROVED = "Approved"
    REPAYING = "Repaying"
    CLOSED = "Closed"
    REJECTED = "Rejected"


class Loan(BaseModel):
    """
    Client-side mirror of the ledger's loan entity.

    The client never mutates a loan directly; it only requests changes
    through named transactions and reads the current value back. Unknown
    fields are ignored so newer contract versions can add data.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)

    loan_id: str = Field(alias="LoanID")
    applicant_name: str = Field(alias="ApplicantName")
    loan_amount: Decimal = Field(alias="LoanAmount")
    term_months: int = Field(alias="TermMonths")
    interest_rate: Decimal = Field(alias="InterestRate")
    outstanding: Decimal = Field(alias="Outstanding")
    status: LoanStatus = Field(alias="Status")
    repayments: list[Decimal] = Field(default_factory=list, alias="Repayments")

    @field_validator("repayments", mode="before")
    @classmethod
    def _null_history_is_empty(cls, value: object) -> object:
        # The contract serializes an empty history as null.
        return [] if value is None else value


def _json_number(value: Decimal) -> int | float:
    return int(value) if value == value.to_integral_value() else float(value)


def _to_wire(value: Any) -> Any:
    if isinstance(value, Decimal):
        return _json_number(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, list):
        return [_to_wire(item) for item in value]
    if isinstance(value, dict):
        return {key: _to_wire(item) for key, item in value.items()}
    return value


def decode(payload: bytes) -> Loan:
    """Decode a JSON loan record returned by the contract.

    Numbers are parsed straight into ``Decimal`` so balances keep exact
    values.

    Raises:
        MalformedRecord: If the payload is not JSON, not an object, lacks a
            required field, or carries a value of the wrong type.
    """
    try:
        raw = json.loads(payload, parse_float=Decimal)
    except ValueError as exc:
        raise MalformedRecord("Loan record is not valid JSON") from exc

    if not isinstance(raw, dict):
        raise MalformedRecord(
            "Loan record must be a JSON object", details={"type": type(raw).__name__}
        )

    try:
        return Loan.model_validate(raw)
    except ValidationError as exc:
        errors = exc.errors(include_url=False, include_input=False)
        fields = sorted({".".join(str(part) for part in err["loc"]) for err in errors})
        raise MalformedRecord(
            f"Loan record does not match schema: {', '.join(fields)}",
            details={"fields": fields, "errors": errors},
        ) from exc


def encode(loan: Loan) -> bytes:
    """Encode a loan in the contract's wire format."""
    return json.dumps(_to_wire(loan.model_dump(by_alias=True))).encode("utf-8")
