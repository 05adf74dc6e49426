"""Provisioning a wallet identity from an MSP credential bundle."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from loan_client.exceptions import AmbiguousKeyMaterial, CredentialError
from loan_client.identity import Wallet, X509Identity
from loan_client.logging import get_logger
from loan_client.signing import certificate_matches_key, load_certificate, load_ec_private_key

SIGNCERT_RELATIVE_PATH = Path("signcerts") / "cert.pem"
KEYSTORE_DIRNAME = "keystore"


@dataclass(frozen=True)
class CredentialBundle:
    """Certificate and private key read from an MSP directory."""

    certificate: bytes
    private_key: bytes
    key_path: Path


def find_private_key_file(keystore_dir: Path) -> Path:
    """Return the single key file in ``keystore_dir``.

    A keystore must hold exactly one active key.

    Raises:
        FileNotFoundError: If the keystore directory does not exist.
        AmbiguousKeyMaterial: If the directory holds zero or more than one file.
    """
    if not keystore_dir.is_dir():
        msg = f"Keystore directory not found: {keystore_dir}"
        raise FileNotFoundError(msg)

    files = sorted(p for p in keystore_dir.iterdir() if p.is_file())
    if len(files) != 1:
        raise AmbiguousKeyMaterial(
            f"Keystore folder should contain exactly one file, found {len(files)}",
            details={"keystore": str(keystore_dir), "count": len(files)},
        )
    return files[0]


def read_credential_bundle(credential_path: Path) -> CredentialBundle:
    """Read and validate the certificate and private key of an MSP directory.

    Expected layout::

        <credential_path>/signcerts/cert.pem
        <credential_path>/keystore/<exactly one key file>

    Raises:
        FileNotFoundError: If the certificate or keystore is missing.
        AmbiguousKeyMaterial: If the keystore does not hold exactly one file.
        CredentialError: If the PEM material is invalid or mismatched.
    """
    cert_path = credential_path / SIGNCERT_RELATIVE_PATH
    if not cert_path.is_file():
        msg = f"Certificate not found: {cert_path}"
        raise FileNotFoundError(msg)
    certificate = cert_path.read_bytes()

    key_path = find_private_key_file(credential_path / KEYSTORE_DIRNAME)
    private_key = key_path.read_bytes()

    parsed_cert = load_certificate(certificate)
    parsed_key = load_ec_private_key(private_key)
    if not certificate_matches_key(parsed_cert, parsed_key):
        raise CredentialError(
            "Private key in keystore does not match the signing certificate",
            details={"certificate": str(cert_path), "key": str(key_path)},
        )

    return CredentialBundle(certificate=certificate, private_key=private_key, key_path=key_path)


def populate_wallet(
    wallet: Wallet,
    credential_path: Path,
    alias: str,
    msp_id: str,
) -> X509Identity:
    """Bind the bundle's credentials to ``alias`` and store them in ``wallet``.

    Calling this again with an unchanged bundle is a no-op.

    Raises:
        IdentityConflict: If ``alias`` already holds a different identity.
    """
    logger = get_logger(__name__)
    bundle = read_credential_bundle(credential_path)
    identity = X509Identity(
        msp_id=msp_id,
        certificate=bundle.certificate,
        private_key=bundle.private_key,
    )
    wallet.put(alias, identity)
    logger.info(
        "Wallet populated",
        extra={"alias": alias, "msp_id": msp_id, "key_file": bundle.key_path.name},
    )
    return identity


def ensure_identity(
    wallet: Wallet,
    credential_path: Path,
    alias: str,
    msp_id: str,
) -> X509Identity:
    """Return the identity for ``alias``, provisioning it on first use."""
    if wallet.exists(alias):
        return wallet.load(alias)
    return populate_wallet(wallet, credential_path, alias, msp_id)
