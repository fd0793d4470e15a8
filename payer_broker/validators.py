"""Validation utilities for the Payer Data Broker.

Database compatibility checks run when the engine is first initialized;
the remaining helpers guard configuration values and request input.
"""
import re
import logging
from typing import Iterable, List, Optional

import asyncpg

from .constants import (
    AUTHORIZATION_TOKEN_BYTES,
    CREDENTIAL_KEY_HEX_LENGTH,
    DATA_TYPES,
    DATABASE_REQUIREMENTS,
)

logger = logging.getLogger(__name__)

_HEX_KEY_PATTERN = re.compile(r'^[0-9a-fA-F]+$')
_TOKEN_PATTERN = re.compile(r'^[0-9a-f]{%d}$' % (AUTHORIZATION_TOKEN_BYTES * 2))
_PAYER_CODE_PATTERN = re.compile(r"^[A-Z0-9_]{2,50}$")


def parse_postgresql_version(version_string: str) -> Optional[float]:
    """Parse PostgreSQL version from version() output.

    Args:
        version_string: Output from SELECT version()

    Returns:
        Float version number (e.g., 16.1 -> 16.1) or None if parsing fails
    """
    # Example: "PostgreSQL 16.1 on x86_64-pc-linux-gnu, compiled by..."
    match = re.search(r'PostgreSQL (\d+(?:\.\d+)?)', version_string)
    if match:
        return float(match.group(1))
    return None


async def validate_postgresql_version_async(connection: asyncpg.Connection) -> None:
    """Validate PostgreSQL version meets minimum requirements.

    Args:
        connection: AsyncPG database connection

    Raises:
        RuntimeError: If version is below minimum requirement
    """
    version_string = await connection.fetchval("SELECT version()")
    version = parse_postgresql_version(version_string)

    if version is None:
        logger.warning(f"Could not parse PostgreSQL version from: {version_string}")
        raise RuntimeError("Unable to determine PostgreSQL version")

    min_version = float(DATABASE_REQUIREMENTS["min_postgresql_version"])
    if version < min_version:
        raise RuntimeError(
            f"PostgreSQL {min_version}+ required, but found {version}. "
            f"Please upgrade your PostgreSQL installation."
        )

    logger.info(f"PostgreSQL version {version} meets requirement (>= {min_version})")


async def validate_extensions_async(connection: asyncpg.Connection) -> None:
    """Validate required PostgreSQL extensions are installed.

    Raises:
        RuntimeError: If any required extension is missing
    """
    missing = []
    for ext_name in DATABASE_REQUIREMENTS["required_extensions"]:
        exists = await connection.fetchval(
            "SELECT EXISTS(SELECT 1 FROM pg_extension WHERE extname = $1)",
            ext_name
        )
        if not exists:
            missing.append(ext_name)

    if missing:
        raise RuntimeError(
            f"Required PostgreSQL extensions not installed: {', '.join(missing)}. "
            f"Please install them with: CREATE EXTENSION IF NOT EXISTS <extension_name>;"
        )


async def validate_database_compatibility_async(connection: asyncpg.Connection) -> None:
    """Perform full database compatibility validation."""
    logger.info("Validating database compatibility...")
    await validate_postgresql_version_async(connection)
    await validate_extensions_async(connection)
    logger.info("Database compatibility validation passed")


# Vault key and secret storage

def validate_secret_arn(arn: Optional[str]) -> bool:
    """Validate AWS secret ARN format.

    Args:
        arn: AWS SSM Parameter Store or Secrets Manager ARN

    Returns:
        True if valid ARN format or None, False otherwise
    """
    if arn is None:
        return True

    # arn:aws:ssm:region:account-id:parameter/path
    ssm_pattern = re.compile(
        r'^arn:aws:ssm:[a-z0-9-]+:\d{12}:parameter/[\w/\-._]+$'
    )

    # arn:aws:secretsmanager:region:account-id:secret:name-abcdef
    secrets_pattern = re.compile(
        r'^arn:aws:secretsmanager:[a-z0-9-]+:\d{12}:secret:[\w/\-._]+-[A-Za-z0-9]+$'
    )

    return bool(ssm_pattern.match(arn) or secrets_pattern.match(arn))


def sanitize_secret_arn_for_logging(arn: Optional[str]) -> Optional[str]:
    """Sanitize secret ARN for safe logging.

    Removes account ID from ARN to prevent information disclosure.
    """
    if not arn:
        return arn
    return re.sub(r':\d{12}:', ':****:', arn)


def validate_encryption_key(key: Optional[str]) -> bool:
    """Check that a vault key is a 64 character hex string (256 bits)."""
    if not key:
        return False
    return len(key) == CREDENTIAL_KEY_HEX_LENGTH and bool(_HEX_KEY_PATTERN.match(key))


# Request input

def validate_token_format(token: Optional[str]) -> bool:
    """Authorization link tokens are 64 lowercase hex characters."""
    return bool(token) and bool(_TOKEN_PATTERN.match(token))


def validate_scopes(scopes: Iterable[str]) -> List[str]:
    """Normalize a scope list, rejecting unknown or empty input.

    Returns:
        De-duplicated scopes in first-seen order

    Raises:
        ValueError: If the list is empty or names an unknown scope
    """
    normalized: List[str] = []
    for scope in scopes:
        value = getattr(scope, "value", scope)
        if value not in DATA_TYPES:
            raise ValueError(f"Unknown scope: {value}")
        if value not in normalized:
            normalized.append(value)

    if not normalized:
        raise ValueError("At least one scope is required")
    return normalized


def normalize_payer_code(code: str) -> str:
    """Upper-case a payer code and check it is a registry-style identifier.

    Raises:
        ValueError: If the code is not 2-50 letters, digits or underscores
    """
    normalized = (code or "").strip().upper()
    if not _PAYER_CODE_PATTERN.match(normalized):
        raise ValueError(f"Invalid payer code: {code!r}")
    return normalized
