"""
Configuration loading for the ledger client.

Loads configuration from YAML with ZERO defaults: every value in
``config.yaml`` must be explicitly specified or startup fails. The only
values taken from the environment are the channel and chaincode names.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml
from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from collections.abc import Mapping

CONFIG_PATH_ENV_VAR = "LOAN_CLIENT_CONFIG_PATH"
DEFAULT_CONFIG_FILENAME = "config.yaml"

CHANNEL_NAME_ENV_VAR = "CHANNEL_NAME"
CHAINCODE_NAME_ENV_VAR = "CHAINCODE_NAME"
DEFAULT_CHANNEL_NAME = "mychannel"
DEFAULT_CHAINCODE_NAME = "loan"


class GatewayConfig(BaseModel):
    """Connection settings for the peer gateway."""

    model_config = ConfigDict(extra="forbid")
    connection_profile: str
    discovery_as_localhost: bool
    request_timeout_seconds: float = Field(gt=0)
    commit_timeout_seconds: float = Field(gt=0)


class IdentityConfig(BaseModel):
    """Wallet location and the identity the client acts as."""

    model_config = ConfigDict(extra="forbid")
    wallet_dir: str
    credential_path: str
    alias: str = Field(min_length=1)
    msp_id: str = Field(min_length=1)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(extra="forbid")
    level: str
    directory: str | None


class LoanConfig(BaseModel):
    """Parameters of the loan driven through its lifecycle."""

    model_config = ConfigDict(extra="forbid")
    loan_id: str = Field(min_length=1)
    applicant_name: str
    amount: Decimal = Field(gt=0)
    term_months: int = Field(gt=0)
    interest_rate: Decimal = Field(ge=0)
    repayment: Decimal = Field(gt=0)


class RetryConfig(BaseModel):
    """Resubmission budget for transactions with an ambiguous outcome."""

    model_config = ConfigDict(extra="forbid")
    max_submit_attempts: int = Field(ge=1)


class Settings(BaseModel):
    """
    Root configuration container.

    All fields are REQUIRED. No defaults exist.
    Missing fields cause immediate startup failure.
    """

    model_config = ConfigDict(extra="forbid")
    gateway: GatewayConfig
    identity: IdentityConfig
    logging: LoggingConfig
    loan: LoanConfig
    retry: RetryConfig


@dataclass(frozen=True)
class NetworkNames:
    """Channel and chaincode the client talks to."""

    channel_name: str
    chaincode_name: str


def resolve_network_names(environ: Mapping[str, str] | None = None) -> NetworkNames:
    """Read channel and chaincode names from the environment.

    Unset or empty variables fall back to ``mychannel`` and ``loan``.
    """
    env = os.environ if environ is None else environ
    return NetworkNames(
        channel_name=env.get(CHANNEL_NAME_ENV_VAR) or DEFAULT_CHANNEL_NAME,
        chaincode_name=env.get(CHAINCODE_NAME_ENV_VAR) or DEFAULT_CHAINCODE_NAME,
    )


def get_config_path() -> Path:
    """Determine configuration file path.

    Uses ``LOAN_CLIENT_CONFIG_PATH`` when set, otherwise ``config.yaml`` in
    the current working directory.
    """
    override = os.environ.get(CONFIG_PATH_ENV_VAR)
    if override:
        return Path(override)
    return Path.cwd() / DEFAULT_CONFIG_FILENAME


def _resolve_relative(base_dir: Path, value: str) -> str:
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = base_dir / path
    return str(path.resolve())


def load_settings(config_path: Path | None = None) -> Settings:
    """Load and validate Settings from a YAML file.

    Relative paths inside the file are resolved against the directory that
    contains the config file, not the working directory.

    Args:
        config_path: Explicit path to config.yaml. Falls back to
                     ``get_config_path()``.

    Returns:
        Validated Settings.

    Raises:
        FileNotFoundError: If the config file does not exist.
        ValueError: If the file is not a YAML mapping.
        pydantic.ValidationError: If any value is missing or invalid.
    """
    if config_path is None:
        config_path = get_config_path()

    if not config_path.exists():
        msg = f"Config file not found: {config_path}"
        raise FileNotFoundError(msg)

    raw: Any = yaml.safe_load(config_path.read_text())
    if not isinstance(raw, dict):
        msg = f"Invalid config file: {config_path}"
        raise ValueError(msg)

    settings = Settings(**raw)
    base_dir = config_path.resolve().parent

    gateway = settings.gateway.model_copy(
        update={
            "connection_profile": _resolve_relative(base_dir, settings.gateway.connection_profile)
        }
    )
    identity = settings.identity.model_copy(
        update={
            "wallet_dir": _resolve_relative(base_dir, settings.identity.wallet_dir),
            "credential_path": _resolve_relative(base_dir, settings.identity.credential_path),
        }
    )
    log_config = settings.logging
    if log_config.directory is not None:
        log_config = log_config.model_copy(
            update={"directory": _resolve_relative(base_dir, log_config.directory)}
        )

    return settings.model_copy(
        update={"gateway": gateway, "identity": identity, "logging": log_config}
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings once per process from ``get_config_path()``."""
    return load_settings()


def clear_settings_cache() -> None:
    """Forget cached settings so the next ``get_settings()`` reloads."""
    get_settings.cache_clear()
