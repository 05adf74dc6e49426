"""
X.509 credential handling, transaction ids and request signing.

Every request to the peer gateway carries a compact JWS (ES256/ES384)
signed with the identity's EC private key. The identity's certificate
travels in the signed ``creator`` claim and the protected header names it
by its SHA-256 thumbprint (``x5t#S256``). The protected header stays
under the 512-byte limit JOSE libraries apply by default.
"""

from __future__ import annotations

import base64
import hashlib
import json
import os
import time
from typing import TYPE_CHECKING, Any

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from joserfc import jws
from joserfc.jwk import ECKey

from loan_client.exceptions import CredentialError

if TYPE_CHECKING:
    from loan_client.identity import X509Identity

NONCE_SIZE = 24

_CURVE_ALGORITHMS: dict[str, str] = {
    "secp256r1": "ES256",
    "secp384r1": "ES384",
}


def load_certificate(pem: bytes) -> x509.Certificate:
    """Parse a PEM-encoded X.509 certificate.

    Raises:
        CredentialError: If the bytes are not a PEM certificate.
    """
    try:
        return x509.load_pem_x509_certificate(pem)
    except ValueError as exc:
        raise CredentialError("Certificate is not a valid PEM X.509 certificate") from exc


def load_ec_private_key(pem: bytes) -> ec.EllipticCurvePrivateKey:
    """Parse a PEM-encoded, unencrypted EC private key.

    Raises:
        CredentialError: If the key cannot be parsed or is not an EC key.
    """
    try:
        private_key = serialization.load_pem_private_key(pem, password=None)
    except (ValueError, TypeError) as exc:
        raise CredentialError("Private key is not a valid unencrypted PEM key") from exc
    if not isinstance(private_key, ec.EllipticCurvePrivateKey):
        msg = f"Expected EC private key, got {type(private_key).__name__}"
        raise CredentialError(msg)
    return private_key


def certificate_matches_key(
    certificate: x509.Certificate,
    private_key: ec.EllipticCurvePrivateKey,
) -> bool:
    """Return True if the certificate was issued for this private key."""
    spki = serialization.PublicFormat.SubjectPublicKeyInfo
    der = serialization.Encoding.DER
    return certificate.public_key().public_bytes(der, spki) == private_key.public_key().public_bytes(
        der, spki
    )


def certificate_to_creator(certificate: x509.Certificate) -> str:
    """Standard base64 of the DER certificate, sent as the ``creator`` claim."""
    der = certificate.public_bytes(serialization.Encoding.DER)
    return base64.b64encode(der).decode("ascii")


def certificate_thumbprint(certificate: x509.Certificate) -> str:
    """Unpadded base64url SHA-256 of the DER certificate (RFC 7515 ``x5t#S256``)."""
    digest = certificate.fingerprint(hashes.SHA256())
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def new_transaction_id(certificate: bytes) -> tuple[str, str]:
    """Create a transaction id the way Fabric SDKs do.

    ``tx_id = hex(sha256(nonce || creator_certificate))`` with a fresh
    random nonce.

    Returns:
        Tuple of (tx_id, base64 nonce).
    """
    nonce = os.urandom(NONCE_SIZE)
    tx_id = hashlib.sha256(nonce + certificate).hexdigest()
    return tx_id, base64.b64encode(nonce).decode("ascii")


class RequestSigner:
    """
    Signs gateway requests on behalf of one X.509 identity.

    The private key is validated against the certificate once, at
    construction, so a mismatched bundle fails before any network call.
    """

    def __init__(self, identity: X509Identity) -> None:
        self._msp_id = identity.msp_id
        self._certificate_pem = identity.certificate

        certificate = load_certificate(identity.certificate)
        private_key = load_ec_private_key(identity.private_key)
        if not certificate_matches_key(certificate, private_key):
            raise CredentialError("Private key does not match the certificate")

        algorithm = _CURVE_ALGORITHMS.get(private_key.curve.name)
        if algorithm is None:
            msg = f"Unsupported EC curve: {private_key.curve.name}"
            raise CredentialError(msg)

        self._algorithm = algorithm
        self._creator = certificate_to_creator(certificate)
        self._thumbprint = certificate_thumbprint(certificate)
        self._key = ECKey.import_key(identity.private_key)

    @property
    def msp_id(self) -> str:
        return self._msp_id

    @property
    def algorithm(self) -> str:
        return self._algorithm

    def new_transaction_id(self) -> tuple[str, str]:
        """Transaction id bound to this signer's certificate."""
        return new_transaction_id(self._certificate_pem)

    def sign(self, payload: dict[str, Any]) -> str:
        """
        Create a JWS compact serialization token.

        ``mspid``, ``creator`` and ``iat`` are added to the payload before signing.

        Args:
            payload: Request payload. Must include an "action" field.

        Returns:
            JWS compact serialization string (header.payload.signature)
        """
        claims = {
            **payload,
            "mspid": self._msp_id,
            "creator": self._creator,
            "iat": int(time.time()),
        }
        protected = {"alg": self._algorithm, "typ": "JWT", "x5t#S256": self._thumbprint}
        payload_bytes = json.dumps(claims, separators=(",", ":"), sort_keys=True).encode()
        return jws.serialize_compact(
            protected, payload_bytes, self._key, algorithms=[self._algorithm]
        )

    def auth_header(self, payload: dict[str, Any]) -> dict[str, str]:
        """Authorization header with a signed token for ``payload``."""
        return {"Authorization": f"Bearer {self.sign(payload)}"}
