"""Database module for managing connections to CockroachDB / PostgreSQL.

This module handles:
- Database connection pool initialization
- Schema management
- Connection lifecycle
"""

import logging
import ssl
from typing import Optional, Dict, Any
import backoff
import asyncpg
from urllib.parse import urlparse, parse_qs

from .exceptions import DatabaseError, DatabaseSchemaError, DatabaseNotInitializedError
from .lib.schema_manager import SchemaManager

logger = logging.getLogger(__name__)

_pool: Optional[asyncpg.Pool] = None
_schema_manager: Optional[SchemaManager] = None

def _get_ssl_context() -> ssl.SSLContext:
    """Create SSL context for CockroachDB Cloud connections."""
    ssl_context = ssl.create_default_context()
    ssl_context.verify_mode = ssl.CERT_REQUIRED
    ssl_context.check_hostname = True
    return ssl_context

def _get_connection_kwargs(db_url: str) -> Dict[str, Any]:
    """Get connection kwargs from database URL.

    TLS is on unless the URL asks for ``sslmode=disable``.

    Args:
        db_url: Database connection URL

    Returns:
        Dict of connection parameters
    """
    params = parse_qs(urlparse(db_url).query)
    sslmode = params.get('sslmode', ['require'])[0]

    return {
        'ssl': False if sslmode == 'disable' else _get_ssl_context(),
        'server_settings': {
            'statement_timeout': '300000',  # 5 minutes
        }
    }

def _database_name(db_url: str) -> str:
    parsed = urlparse(db_url)
    db_name = parsed.path.strip('/')
    if not db_name:
        params = parse_qs(parsed.query)
        db_name = params.get('database', ['defaultdb'])[0]
    return db_name

@backoff.on_exception(
    backoff.expo,
    (asyncpg.exceptions.PostgresConnectionError, asyncpg.exceptions.CannotConnectNowError, OSError),
    max_tries=5
)
async def create_database_if_not_exists(db_url: str) -> None:
    """Create the database if it doesn't exist.

    Args:
        db_url: Database connection URL

    Raises:
        Exception: If database creation fails after retries
    """
    db_name = _database_name(db_url)
    parsed = urlparse(db_url)
    base_url = parsed._replace(path='/defaultdb').geturl()
    logger.info(f"Connecting to defaultdb to create {db_name} if needed")

    try:
        conn = await asyncpg.connect(base_url, **_get_connection_kwargs(base_url))
    except asyncpg.exceptions.InvalidCatalogNameError:
        # Plain PostgreSQL has no defaultdb; assume the target database exists
        logger.debug("defaultdb not available, skipping database creation")
        return

    try:
        exists = await conn.fetchval(
            'SELECT EXISTS(SELECT 1 FROM pg_database WHERE datname = $1)',
            db_name
        )
        if not exists:
            await conn.execute(f'CREATE DATABASE "{db_name}"')
            logger.info(f"Created database {db_name}")
    finally:
        await conn.close()

@backoff.on_exception(
    backoff.expo,
    (asyncpg.exceptions.PostgresConnectionError, asyncpg.exceptions.CannotConnectNowError, OSError),
    max_tries=5
)
async def init_db(db_url: Optional[str] = None, force_recreate: bool = False) -> asyncpg.Pool:
    """Initialize the database connection pool and schema.

    Args:
        db_url: Optional database URL. If not provided, will use settings.
        force_recreate: If True, drop and recreate all tables

    Returns:
        The initialized connection pool

    Raises:
        ValueError: If database URL is not provided
        DatabaseSchemaError: If the schema cannot be applied
    """
    global _pool, _schema_manager

    if _pool is not None and not force_recreate:
        return _pool

    try:
        url = db_url
        if not url:
            # Import here to avoid circular imports
            from config import load_config
            url = load_config().get('db_url')
        if not url:
            raise ValueError("Database URL not provided")

        await create_database_if_not_exists(url)

        _pool = await asyncpg.create_pool(
            url,
            min_size=2,          # Minimum idle connections
            max_size=20,         # Maximum connections
            max_queries=10000,   # Reset connection after this many queries
            max_inactive_connection_lifetime=300.0,  # 5 minutes
            command_timeout=60.0,  # 1 minute command timeout
            **_get_connection_kwargs(url)
        )

        _schema_manager = SchemaManager(_pool)

        if force_recreate:
            logger.info("Force recreate requested. Dropping schema...")
            async with _pool.acquire() as conn:
                await _schema_manager.drop_all(conn)

        await _schema_manager.initialize()
        return _pool

    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

async def get_pool() -> asyncpg.Pool:
    """Get the database connection pool.

    Returns:
        The connection pool

    Raises:
        DatabaseNotInitializedError: If pool hasn't been initialized
    """
    if not _pool:
        await init_db()
    if not _pool:
        raise DatabaseNotInitializedError("Failed to initialize database pool")
    return _pool

async def close() -> None:
    """Close the database connection pool."""
    global _pool, _schema_manager

    if _pool:
        await _pool.close()
        _pool = None
        _schema_manager = None

# Export public interface
__all__ = [
    'init_db',
    'get_pool',
    'close',
    'DatabaseError',
    'DatabaseSchemaError',
    'DatabaseNotInitializedError',
]
