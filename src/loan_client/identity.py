"""Wallets holding X.509 identities keyed by alias."""

from __future__ import annotations

import contextlib
import json
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from threading import RLock
from typing import Any, Protocol

from loan_client.exceptions import IdentityConflict, IdentityNotFound
from loan_client.logging import get_logger

IDENTITY_FILE_SUFFIX = ".id"
IDENTITY_TYPE = "X.509"
IDENTITY_VERSION = 1


@dataclass(frozen=True)
class X509Identity:
    """Certificate and private key bound to an organization's MSP.

    Both PEM documents are kept as raw bytes exactly as read from the
    credential bundle.
    """

    msp_id: str
    certificate: bytes
    private_key: bytes

    def __repr__(self) -> str:
        # Never render key material.
        return f"X509Identity(msp_id={self.msp_id!r})"

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the file-system wallet JSON layout."""
        return {
            "type": IDENTITY_TYPE,
            "version": IDENTITY_VERSION,
            "mspId": self.msp_id,
            "credentials": {
                "certificate": self.certificate.decode("utf-8"),
                "privateKey": self.private_key.decode("utf-8"),
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> X509Identity:
        """Build an identity from the file-system wallet JSON layout.

        Raises:
            ValueError: If the document is not an X.509 identity.
        """
        if data.get("type") != IDENTITY_TYPE:
            msg = f"Unsupported identity type: {data.get('type')!r}"
            raise ValueError(msg)
        credentials = data.get("credentials")
        if not isinstance(credentials, dict):
            msg = "Identity document has no credentials"
            raise ValueError(msg)
        try:
            return cls(
                msp_id=str(data["mspId"]),
                certificate=str(credentials["certificate"]).encode("utf-8"),
                private_key=str(credentials["privateKey"]).encode("utf-8"),
            )
        except KeyError as exc:
            msg = f"Identity document missing field: {exc.args[0]}"
            raise ValueError(msg) from exc


class Wallet(Protocol):
    """Storage contract shared by all wallet implementations."""

    def exists(self, alias: str) -> bool: ...

    def put(self, alias: str, identity: X509Identity) -> None: ...

    def load(self, alias: str) -> X509Identity: ...

    def list(self) -> list[str]: ...


def _check_alias(alias: str) -> None:
    if not alias or alias in {".", ".."} or "/" in alias or "\\" in alias:
        msg = f"Invalid identity alias: {alias!r}"
        raise ValueError(msg)


class InMemoryWallet:
    """Wallet kept in process memory. Same semantics as the file-system wallet."""

    def __init__(self) -> None:
        self._lock = RLock()
        self._identities: dict[str, X509Identity] = {}

    def exists(self, alias: str) -> bool:
        with self._lock:
            return alias in self._identities

    def put(self, alias: str, identity: X509Identity) -> None:
        _check_alias(alias)
        with self._lock:
            current = self._identities.get(alias)
            if current is not None:
                if current == identity:
                    return
                raise IdentityConflict(
                    f"Alias '{alias}' is already bound to a different identity",
                    details={"alias": alias},
                )
            self._identities[alias] = identity

    def load(self, alias: str) -> X509Identity:
        with self._lock:
            identity = self._identities.get(alias)
        if identity is None:
            raise IdentityNotFound(
                f"No identity stored for alias '{alias}'", details={"alias": alias}
            )
        return identity

    def list(self) -> list[str]:
        with self._lock:
            return sorted(self._identities)


class FileSystemWallet:
    """
    Wallet that stores one JSON document per alias in a directory.

    Files are named ``<alias>.id``. Writes go to a temporary file that is
    fsynced and atomically renamed into place, so a crash never leaves a
    half-written identity behind.
    """

    def __init__(self, directory: Path | str) -> None:
        self._lock = RLock()
        self._directory = Path(directory)
        self._directory.mkdir(parents=True, exist_ok=True)

    @property
    def directory(self) -> Path:
        return self._directory

    def _path_for(self, alias: str) -> Path:
        _check_alias(alias)
        return self._directory / f"{alias}{IDENTITY_FILE_SUFFIX}"

    def exists(self, alias: str) -> bool:
        """Return True if an identity file exists for ``alias``."""
        return self._path_for(alias).is_file()

    def put(self, alias: str, identity: X509Identity) -> None:
        """Store ``identity`` under ``alias``.

        Storing an identity equal to the one already present is a no-op.

        Raises:
            IdentityConflict: If ``alias`` is bound to a different identity.
        """
        logger = get_logger(__name__)
        path = self._path_for(alias)

        with self._lock:
            if path.is_file():
                if self._read(alias, path) == identity:
                    logger.debug("Identity already stored", extra={"alias": alias})
                    return
                raise IdentityConflict(
                    f"Alias '{alias}' is already bound to a different identity",
                    details={"alias": alias, "path": str(path)},
                )

            payload = json.dumps(identity.to_dict(), indent=2).encode("utf-8")
            fd, tmp_name = tempfile.mkstemp(
                dir=self._directory, prefix=f".{alias}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "wb") as fh:
                    fh.write(payload)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                with contextlib.suppress(FileNotFoundError):
                    os.unlink(tmp_name)
                raise

        logger.info(
            "Stored identity",
            extra={"alias": alias, "msp_id": identity.msp_id, "path": str(path)},
        )

    def load(self, alias: str) -> X509Identity:
        """Load the identity stored under ``alias``.

        Raises:
            IdentityNotFound: If no identity is stored for ``alias``.
        """
        path = self._path_for(alias)
        with self._lock:
            if not path.is_file():
                raise IdentityNotFound(
                    f"No identity stored for alias '{alias}'",
                    details={"alias": alias, "path": str(path)},
                )
            return self._read(alias, path)

    def list(self) -> list[str]:
        """Return the aliases of all stored identities, sorted."""
        return sorted(
            p.name[: -len(IDENTITY_FILE_SUFFIX)]
            for p in self._directory.glob(f"*{IDENTITY_FILE_SUFFIX}")
            if p.is_file()
        )

    @staticmethod
    def _read(alias: str, path: Path) -> X509Identity:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            msg = f"Identity file for alias '{alias}' is not valid JSON: {path}"
            raise ValueError(msg) from exc
        if not isinstance(data, dict):
            msg = f"Identity file for alias '{alias}' is not a JSON object: {path}"
            raise ValueError(msg)
        return X509Identity.from_dict(data)
