"""
Snowflake database connection management.

snowflake-connector-python is synchronous. SnowflakeDatabase keeps one
lazily opened connection per process and runs each unit of work in a
worker thread, committing on success and rolling back on failure, so
repositories can expose async methods without blocking the event loop.

Using the repository pattern means most code never touches this module
directly - it goes through the repositories, which handle the translation
between domain models and database rows.
"""

import asyncio
import base64
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SnowflakeConnectionError(Exception):
    """Raised when Snowflake connection fails."""
    pass


@dataclass
class SnowflakeConfig:
    """Configuration for Snowflake connection."""
    account: str
    user: str
    password: Optional[str] = None
    private_key_path: Optional[str] = None
    private_key_base64: Optional[str] = None
    database: str = "FRAMECHAT"
    schema: str = "PUBLIC"
    warehouse: str = "COMPUTE_WH"
    role: Optional[str] = None


def _der_private_key(pem_bytes: bytes) -> bytes:
    """
    Convert a PEM private key to the DER/PKCS8 bytes Snowflake expects.

    Snowflake requires the private key as a bytes object, not a file path.
    """
    from cryptography.hazmat.backends import default_backend
    from cryptography.hazmat.primitives import serialization

    private_key = serialization.load_pem_private_key(
        pem_bytes,
        password=None,  # No password on the key
        backend=default_backend()
    )

    return private_key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    )


def _load_private_key(key_path: str) -> bytes:
    """Load private key from file for key-pair authentication."""
    with open(key_path, 'rb') as key_file:
        return _der_private_key(key_file.read())


def _load_private_key_from_base64(encoded: str) -> bytes:
    """Load a base64-encoded PEM key (for deployments without a key file)."""
    return _der_private_key(base64.b64decode(encoded))


def build_connect_params(config: SnowflakeConfig) -> dict:
    """
    Build connector arguments.

    Key-pair auth wins over password auth when both are configured.
    """
    connect_params = {
        'account': config.account,
        'user': config.user,
        'database': config.database,
        'schema': config.schema,
        'warehouse': config.warehouse,
        'client_session_keep_alive': True,
    }
    if config.role:
        connect_params['role'] = config.role

    if config.private_key_path:
        logger.info("Using key-pair authentication for Snowflake")
        connect_params['private_key'] = _load_private_key(config.private_key_path)
    elif config.private_key_base64:
        logger.info("Using base64 key-pair authentication for Snowflake")
        connect_params['private_key'] = _load_private_key_from_base64(config.private_key_base64)
    elif config.password:
        logger.info("Using password authentication for Snowflake")
        connect_params['password'] = config.password
    else:
        raise SnowflakeConnectionError(
            "Either password or a private key must be provided"
        )

    return connect_params


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS videos (
        video_id VARCHAR(36) PRIMARY KEY,
        user_id VARCHAR(255) NOT NULL,
        title VARCHAR(500) NOT NULL,
        description VARCHAR,
        url VARCHAR NOT NULL DEFAULT '',
        thumbnail_url VARCHAR,
        frame_urls VARIANT,
        duration_seconds FLOAT,
        is_processed BOOLEAN DEFAULT FALSE,
        is_removed BOOLEAN DEFAULT FALSE,
        created_at TIMESTAMP_TZ DEFAULT CURRENT_TIMESTAMP()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS frame_analyses (
        analysis_id VARCHAR(36) PRIMARY KEY,
        video_id VARCHAR(36) NOT NULL,
        position INTEGER NOT NULL,
        frame_url VARCHAR NOT NULL,
        description VARCHAR NOT NULL,
        created_at TIMESTAMP_TZ DEFAULT CURRENT_TIMESTAMP(),
        updated_at TIMESTAMP_TZ DEFAULT CURRENT_TIMESTAMP(),
        UNIQUE (video_id, position, frame_url)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS conversations (
        conversation_id VARCHAR(36) PRIMARY KEY,
        video_id VARCHAR(36) NOT NULL,
        user_id VARCHAR(255) NOT NULL,
        created_at TIMESTAMP_TZ DEFAULT CURRENT_TIMESTAMP(),
        UNIQUE (video_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        message_id VARCHAR(36) PRIMARY KEY,
        conversation_id VARCHAR(36) NOT NULL,
        role VARCHAR(20) NOT NULL,
        content VARCHAR NOT NULL,
        created_at TIMESTAMP_TZ DEFAULT CURRENT_TIMESTAMP(),
        sequence_number INTEGER AUTOINCREMENT
    )
    """,
]


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

class SnowflakeDatabase:
    """
    Process-wide Snowflake access.

    One connection, opened on first use. The connector isn't safe for
    concurrent use of a single connection, so units of work are
    serialized with a lock.
    """

    def __init__(self, config: SnowflakeConfig) -> None:
        self._config = config
        self._conn = None
        self._lock = threading.Lock()

    def _connect(self):
        import snowflake.connector

        try:
            conn = snowflake.connector.connect(**build_connect_params(self._config))
        except snowflake.connector.errors.DatabaseError as e:
            logger.error(
                "Snowflake connection failed",
                extra={"error": str(e), "account": self._config.account}
            )
            raise SnowflakeConnectionError(f"Database connection failed: {e}") from e

        logger.info(
            "Established Snowflake connection",
            extra={
                "account": self._config.account,
                "database": self._config.database,
                "schema": self._config.schema,
            }
        )
        return conn

    def _run_sync(self, work: Callable[..., T]) -> T:
        with self._lock:
            if self._conn is None or self._conn.is_closed():
                self._conn = self._connect()

            cursor = self._conn.cursor()
            try:
                result = work(cursor)
                self._conn.commit()
                return result
            except Exception:
                self._conn.rollback()
                raise
            finally:
                cursor.close()

    async def run(self, work: Callable[..., T]) -> T:
        """
        Run work(cursor) in a worker thread inside one transaction.

        Commits if work returns, rolls back if it raises.
        """
        return await asyncio.to_thread(self._run_sync, work)

    async def ping(self) -> None:
        """Round-trip a trivial query. Raises if the database is unreachable."""
        await self.run(lambda cursor: cursor.execute("SELECT 1"))

    async def ensure_schema(self) -> None:
        def create(cursor) -> None:
            for statement in SCHEMA_STATEMENTS:
                cursor.execute(statement)

        await self.run(create)
        logger.info("Snowflake schema ready")

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                try:
                    self._conn.close()
                    logger.debug("Closed Snowflake connection")
                except Exception as e:
                    logger.warning(
                        "Error closing Snowflake connection",
                        extra={"error": str(e)}
                    )
                self._conn = None
