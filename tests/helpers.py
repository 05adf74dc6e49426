"""Shared test helpers: credential bundles, profiles and an in-memory gateway."""

from __future__ import annotations

import base64
import hashlib
import json
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from urllib.parse import unquote

import httpx
import yaml
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID
from joserfc import jws
from joserfc.jwk import ECKey

from loan_client.identity import X509Identity
from loan_client.loan import Loan, LoanStatus, encode

if TYPE_CHECKING:
    from pathlib import Path

PEER_HOST = "peer0.org1.example.com"
PEER_URL = f"grpcs://{PEER_HOST}:7051"


def generate_credentials(
    common_name: str = "User1@org1.example.com",
) -> tuple[bytes, bytes]:
    """Create a self-signed P-256 certificate and its key -> (cert_pem, key_pem)."""
    private_key = ec.generate_private_key(ec.SECP256R1())
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(UTC)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=365))
        .sign(private_key, hashes.SHA256())
    )
    cert_pem = certificate.public_bytes(serialization.Encoding.PEM)
    key_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return cert_pem, key_pem


def make_identity(msp_id: str = "Org1MSP") -> X509Identity:
    cert_pem, key_pem = generate_credentials()
    return X509Identity(msp_id=msp_id, certificate=cert_pem, private_key=key_pem)


def write_credential_bundle(
    msp_dir: Path,
    *,
    key_files: int = 1,
    cert_pem: bytes | None = None,
    key_pem: bytes | None = None,
) -> Path:
    """Write an MSP directory with ``signcerts/cert.pem`` and ``key_files`` keys."""
    if cert_pem is None or key_pem is None:
        cert_pem, key_pem = generate_credentials()
    (msp_dir / "signcerts").mkdir(parents=True, exist_ok=True)
    (msp_dir / "signcerts" / "cert.pem").write_bytes(cert_pem)
    keystore = msp_dir / "keystore"
    keystore.mkdir(parents=True, exist_ok=True)
    for index in range(key_files):
        name = "priv_sk" if index == 0 else f"priv_sk_{index}"
        if index == 0:
            (keystore / name).write_bytes(key_pem)
        else:
            _, extra_key = generate_credentials()
            (keystore / name).write_bytes(extra_key)
    return msp_dir


def connection_profile_dict(peer_url: str = PEER_URL) -> dict[str, Any]:
    cert_pem, _ = generate_credentials(PEER_HOST)
    return {
        "name": "test-network-org1",
        "version": "1.0.0",
        "client": {"organization": "Org1", "connection": {"timeout": {"peer": {"endorser": "300"}}}},
        "organizations": {
            "Org1": {
                "mspid": "Org1MSP",
                "peers": [PEER_HOST],
                "certificateAuthorities": ["ca.org1.example.com"],
            }
        },
        "peers": {
            PEER_HOST: {
                "url": peer_url,
                "tlsCACerts": {"pem": cert_pem.decode()},
                "grpcOptions": {
                    "ssl-target-name-override": PEER_HOST,
                    "hostnameOverride": PEER_HOST,
                },
            }
        },
        "certificateAuthorities": {
            "ca.org1.example.com": {"url": "https://localhost:7054", "caName": "ca-org1"}
        },
    }


def write_connection_profile(path: Path, peer_url: str = PEER_URL) -> Path:
    path.write_text(yaml.safe_dump(connection_profile_dict(peer_url)))
    return path


def _b64url_decode(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def decode_unverified(token: str) -> tuple[dict[str, Any], dict[str, Any]]:
    """Split a compact JWS into (header, payload) without checking the signature."""
    parts = token.split(".")
    if len(parts) != 3:
        msg = "Invalid JWS format: expected 3 dot-separated parts"
        raise ValueError(msg)
    return json.loads(_b64url_decode(parts[0])), json.loads(_b64url_decode(parts[1]))


def _verify_token(token: str) -> dict[str, Any]:
    """Verify a token the way a gateway does, with joserfc's default size limits.

    The signer's certificate comes from the ``creator`` claim and must match
    the ``x5t#S256`` thumbprint in the protected header.
    """
    header, claims = decode_unverified(token)
    der = base64.b64decode(claims["creator"])
    thumbprint = base64.urlsafe_b64encode(hashlib.sha256(der).digest()).rstrip(b"=").decode()
    if header.get("x5t#S256") != thumbprint:
        msg = "Certificate thumbprint mismatch"
        raise ValueError(msg)
    certificate = x509.load_der_x509_certificate(der)
    public_pem = certificate.public_key().public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
    )
    key = ECKey.import_key(public_pem)
    obj = jws.deserialize_compact(token, key, algorithms=[header["alg"]])
    payload: dict[str, Any] = json.loads(obj.payload)
    return payload


def _error(status_code: int, error: str, message: str) -> httpx.Response:
    return httpx.Response(
        status_code, json={"error": error, "message": message, "details": {}}
    )


_SUBMIT_OR_EVALUATE = re.compile(
    r"^/channels/(?P<channel>[^/]+)/chaincodes/(?P<chaincode>[^/]+)/(?P<op>submit|evaluate)$"
)
_CHANNEL = re.compile(r"^/channels/(?P<channel>[^/]+)$")


@dataclass
class FakeLedgerGateway:
    """
    In-memory gateway peer hosting the loan contract.

    Faults can be queued per transaction name in ``faults``:

    - ``"reject"``: endorsement failure (HTTP 400)
    - ``"invalid"``: commits nothing, reports MVCC_READ_CONFLICT
    - ``"timeout"``: nothing committed, gateway answers 504
    - ``"timeout_after_commit"``: state changes, gateway answers 504
    """

    channels: set[str] = field(default_factory=lambda: {"mychannel"})
    chaincodes: set[str] = field(default_factory=lambda: {"loan"})
    loans: dict[str, Loan] = field(default_factory=dict)
    faults: dict[str, list[str]] = field(default_factory=dict)
    raw_results: dict[str, bytes] = field(default_factory=dict)
    reject_identity: bool = False
    requests: list[httpx.Request] = field(default_factory=list)
    submissions: list[dict[str, Any]] = field(default_factory=list)
    evaluations: list[dict[str, Any]] = field(default_factory=list)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def queue_fault(self, transaction: str, kind: str) -> None:
        self.faults.setdefault(transaction, []).append(kind)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.raw_path.decode("ascii").split("?", 1)[0]

        if request.method == "GET":
            payload = self._authenticate(request.headers.get("Authorization", ""))
            if payload is None:
                return _error(401, "UNAUTHORIZED", "Identity not accepted")
            if path == "/channels":
                return httpx.Response(200, json={"channels": sorted(self.channels)})
            match = _CHANNEL.match(path)
            if match and unquote(match["channel"]) in self.channels:
                return httpx.Response(200, json={"name": unquote(match["channel"])})
            return _error(404, "CHANNEL_NOT_FOUND", f"channel {path} not found")

        match = _SUBMIT_OR_EVALUATE.match(path)
        if request.method != "POST" or match is None:
            return _error(404, "NOT_FOUND", f"no route for {request.method} {path}")

        token = json.loads(request.content)["token"]
        payload = self._authenticate(f"Bearer {token}")
        if payload is None:
            return _error(401, "UNAUTHORIZED", "Identity not accepted")
        chaincode = unquote(match["chaincode"])
        if unquote(match["channel"]) not in self.channels:
            return _error(404, "CHANNEL_NOT_FOUND", "channel not found")
        if chaincode not in self.chaincodes:
            return _error(404, "CHAINCODE_NOT_FOUND", f"chaincode {chaincode} not found")

        if match["op"] == "submit":
            self.submissions.append(payload)
            return self._submit(payload)
        self.evaluations.append(payload)
        return self._evaluate(payload)

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    def _authenticate(self, authorization: str) -> dict[str, Any] | None:
        if self.reject_identity or not authorization.startswith("Bearer "):
            return None
        return _verify_token(authorization.removeprefix("Bearer "))

    def _submit(self, payload: dict[str, Any]) -> httpx.Response:
        name = payload["transaction"]
        args: list[str] = payload["args"]
        queued = self.faults.get(name)
        fault = queued.pop(0) if queued else None

        if fault == "reject":
            return _error(400, "ENDORSEMENT_FAILURE", f"{name} endorsement failed")
        if fault == "invalid":
            return httpx.Response(200, json={"tx_id": payload["tx_id"], "status": "MVCC_READ_CONFLICT"})
        if fault == "timeout":
            return _error(504, "COMMIT_TIMEOUT", "timed out waiting for commit")

        handlers = {
            "ApplyForLoan": self._apply_for_loan,
            "ApproveLoan": self._approve_loan,
            "MakeRepayment": self._make_repayment,
        }
        handler = handlers.get(name)
        if handler is None:
            return _error(400, "ENDORSEMENT_FAILURE", f"unknown function {name}")
        failure = handler(*args)
        if failure is not None:
            return _error(400, "ENDORSEMENT_FAILURE", failure)

        if fault == "timeout_after_commit":
            return _error(504, "COMMIT_TIMEOUT", "timed out waiting for commit")
        return httpx.Response(
            200, json={"tx_id": payload["tx_id"], "status": "VALID", "result": ""}
        )

    def _evaluate(self, payload: dict[str, Any]) -> httpx.Response:
        if payload["transaction"] != "CheckLoanBalance":
            return _error(400, "EVALUATE_FAILED", f"unknown function {payload['transaction']}")
        loan_id = payload["args"][0]
        if loan_id in self.raw_results:
            body = self.raw_results[loan_id]
        elif loan_id in self.loans:
            body = encode(self.loans[loan_id])
        else:
            return _error(404, "LOAN_NOT_FOUND", f"loan {loan_id} does not exist")
        return httpx.Response(200, json={"result": base64.b64encode(body).decode()})

    def _apply_for_loan(
        self, loan_id: str, name: str, amount: str, term: str, rate: str
    ) -> str | None:
        if loan_id in self.loans:
            return f"loan {loan_id} already exists"
        self.loans[loan_id] = Loan(
            loan_id=loan_id,
            applicant_name=name,
            loan_amount=Decimal(amount),
            term_months=int(term),
            interest_rate=Decimal(rate),
            outstanding=Decimal(amount),
            status=LoanStatus.APPLIED,
            repayments=[],
        )
        return None

    def _approve_loan(self, loan_id: str, status: str) -> str | None:
        loan = self.loans.get(loan_id)
        if loan is None:
            return f"loan {loan_id} does not exist"
        self.loans[loan_id] = loan.model_copy(update={"status": LoanStatus(status)})
        return None

    def _make_repayment(self, loan_id: str, amount: str) -> str | None:
        loan = self.loans.get(loan_id)
        if loan is None:
            return f"loan {loan_id} does not exist"
        if loan.status not in (LoanStatus.APPROVED, LoanStatus.REPAYING):
            return f"loan {loan_id} is not approved"
        paid = Decimal(amount)
        if paid <= 0 or paid > loan.outstanding:
            return f"invalid repayment amount {amount}"
        outstanding = loan.outstanding - paid
        self.loans[loan_id] = loan.model_copy(
            update={
                "outstanding": outstanding,
                "repayments": [*loan.repayments, paid],
                "status": LoanStatus.CLOSED if outstanding == 0 else LoanStatus.REPAYING,
            }
        )
        return None
