"""
Snowflake database connection management.

Provides the connection config and a context manager for Snowflake
operations. Application code goes through AssessmentRepository, which
handles the translation between domain models and database rows.
"""

import base64
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Generator, Optional, Protocol

import snowflake.connector
from cryptography.hazmat.primitives import serialization

logger = logging.getLogger(__name__)


class SnowflakeConnectionError(Exception):
    """Raised when Snowflake connection fails."""
    pass


class SnowflakeConnection(Protocol):
    """The slice of a DB-API connection the repositories use."""

    def cursor(self): ...
    def commit(self) -> None: ...
    def rollback(self) -> None: ...


@dataclass
class SnowflakeConfig:
    """Configuration for Snowflake connection."""
    account: str
    user: str
    password: Optional[str] = None
    private_key_path: Optional[str] = None
    private_key_base64: Optional[str] = None
    database: str = "KALA_KAUSHAL"
    schema: str = "ASSESSMENTS"
    warehouse: str = "COMPUTE_WH"
    role: Optional[str] = None


def _load_private_key(pem_data: bytes) -> bytes:
    """
    Convert a PEM private key into the DER bytes snowflake-connector expects.
    """
    private_key = serialization.load_pem_private_key(pem_data, password=None)

    return private_key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    )


def _connect_params(config: SnowflakeConfig) -> dict:
    params = {
        'account': config.account,
        'user': config.user,
        'database': config.database,
        'schema': config.schema,
        'warehouse': config.warehouse,
        'role': config.role,
        'client_session_keep_alive': True,
    }

    if config.private_key_path:
        logger.info("Using key-pair authentication for Snowflake")
        with open(config.private_key_path, 'rb') as key_file:
            params['private_key'] = _load_private_key(key_file.read())
    elif config.private_key_base64:
        logger.info("Using key-pair authentication for Snowflake (inline key)")
        params['private_key'] = _load_private_key(base64.b64decode(config.private_key_base64))
    elif config.password:
        logger.info("Using password authentication for Snowflake")
        params['password'] = config.password
    else:
        raise SnowflakeConnectionError(
            "Either password or a private key must be provided"
        )

    return params


@contextmanager
def get_snowflake_connection(config: SnowflakeConfig) -> Generator[SnowflakeConnection, None, None]:
    """
    Provide Snowflake connection with automatic cleanup.

    Supports password and key-pair authentication (key file or base64 key).

    Usage:
        with get_snowflake_connection(config) as conn:
            repo = AssessmentRepository(conn)
    """
    try:
        conn = snowflake.connector.connect(**_connect_params(config))
    except snowflake.connector.errors.DatabaseError as e:
        logger.error(
            "Snowflake connection failed",
            extra={"error": str(e), "account": config.account}
        )
        raise SnowflakeConnectionError(f"Database connection failed: {e}") from e

    logger.debug(
        "Established Snowflake connection",
        extra={
            "account": config.account,
            "database": config.database,
            "schema": config.schema,
        }
    )

    try:
        yield conn
    finally:
        try:
            conn.close()
            logger.debug("Closed Snowflake connection")
        except snowflake.connector.errors.Error as e:
            logger.warning(
                "Error closing Snowflake connection",
                extra={"error": str(e)}
            )
