"""Database schema management module.

This module handles database schema versioning, validation, and migrations.
Tables are created with their unique and check constraints, followed by
their (optionally partial) indexes. Later versions apply raw SQL migrations.
"""
import importlib
import logging
from pathlib import Path
from typing import Dict, Any, Optional

from ..exceptions import DatabaseSchemaError

logger = logging.getLogger(__name__)

SCHEMA_DIR = Path(__file__).resolve().parent.parent / 'schema'
SCHEMA_PACKAGE = 'database.schema'

class SchemaManager:
    """Manages database schema versioning and migrations."""

    def __init__(self, pool, schema_dir: Optional[str] = None) -> None:
        """Initialize schema manager.

        Args:
            pool: Database connection pool
            schema_dir: Directory containing schema version files
        """
        self.pool = pool
        self._schema_dir = Path(schema_dir) if schema_dir else SCHEMA_DIR
        self.current_version = 0
        self._schema_files = {}

    async def initialize(self) -> None:
        """Initialize schema management.

        Creates schema version table if it doesn't exist and runs any pending migrations.

        Raises:
            DatabaseSchemaError: If schema initialization fails or no valid schema files are found
        """
        try:
            async with self.pool.acquire() as conn:
                await conn.execute('''
                    CREATE TABLE IF NOT EXISTS schema_version (
                        version INT8 PRIMARY KEY,
                        applied_at TIMESTAMP NOT NULL DEFAULT now()
                    )
                ''')

                row = await conn.fetchrow(
                    'SELECT version FROM schema_version ORDER BY version DESC LIMIT 1'
                )
                self.current_version = row['version'] if row else 0

            schema_files = self._load_schema_files()
            if not schema_files:
                logger.error("No valid schema files found in schema directory")
                raise DatabaseSchemaError("No valid schema files found in schema directory")

            await self._apply_migrations(schema_files)

        except DatabaseSchemaError:
            raise
        except Exception as e:
            logger.error(f"Schema initialization failed: {e}")
            raise DatabaseSchemaError(f"Failed to initialize schema: {e}")

    def _load_schema_files(self) -> Dict[int, Dict[str, Any]]:
        """Load all schema version files.

        Returns:
            Dict mapping version numbers to schema definitions
        """
        schema_files = {}

        if not self._schema_dir.exists():
            return schema_files

        for file in self._schema_dir.glob('v*.py'):
            try:
                version = int(file.stem[1:])  # Extract number from vX.py
            except ValueError:
                logger.warning(f"Invalid schema filename: {file}")
                continue

            try:
                module = importlib.import_module(f"{SCHEMA_PACKAGE}.{file.stem}")
            except ImportError as e:
                logger.error(f"Failed to import schema {file}: {e}")
                continue

            if not hasattr(module, 'schema'):
                raise DatabaseSchemaError(
                    f"Schema file {file} missing 'schema' definition"
                )

            schema = module.schema
            if schema['version'] != version:
                raise DatabaseSchemaError(
                    f"Schema version mismatch in {file}: "
                    f"Expected v{version}, got v{schema['version']}"
                )

            schema_files[version] = schema

        self._schema_files = dict(sorted(schema_files.items()))
        return self._schema_files

    async def _apply_migrations(self, schema_files: Dict[int, Dict[str, Any]]) -> None:
        """Apply any pending schema migrations.

        Args:
            schema_files: Dict mapping version numbers to schema definitions
        """
        if not schema_files:
            return

        latest_version = max(schema_files.keys())
        if self.current_version >= latest_version:
            logger.info("Schema is up to date")
            return

        logger.info(
            f"Updating schema from version {self.current_version} to {latest_version}"
        )

        try:
            async with self.pool.acquire() as conn:
                # Fresh install creates the latest schema directly
                if self.current_version == 0:
                    await self._create_fresh_schema(conn, schema_files[latest_version])
                else:
                    for version in range(self.current_version + 1, latest_version + 1):
                        if version in schema_files:
                            await self._apply_version_migrations(conn, schema_files[version])
                            await conn.execute(
                                'INSERT INTO schema_version (version) VALUES ($1)',
                                version
                            )
                            logger.info(f"Successfully migrated to version {version}")
            self.current_version = latest_version

        except Exception as e:
            logger.error(f"Schema migration failed: {e}")
            raise DatabaseSchemaError(f"Failed to apply schema migrations: {e}")

    async def _create_fresh_schema(self, conn, schema: Dict[str, Any]) -> None:
        """Create a fresh schema installation.

        Args:
            conn: Database connection
            schema: Latest schema definition
        """
        await self.drop_all(conn, keep_version=True)

        # Tables first, then their indexes
        for table in schema.get('tables', []):
            await self._create_table(conn, table)

        for table in schema.get('tables', []):
            await self._create_indexes(conn, table)

        await conn.execute(
            'INSERT INTO schema_version (version) VALUES ($1)',
            schema['version']
        )
        logger.info(f"Successfully created fresh schema version {schema['version']}")

    async def _apply_version_migrations(self, conn, schema: Dict[str, Any]) -> None:
        """Apply migrations for a specific version.

        Args:
            conn: Database connection
            schema: Schema definition for this version
        """
        for migration in schema.get('migrations', []):
            try:
                await conn.execute(migration)
            except Exception as e:
                if 'already exists' not in str(e):
                    raise
                logger.debug(f"Skipping existing object: {str(e)}")

    async def drop_all(self, conn, keep_version: bool = False) -> None:
        """Drop all existing tables in the database.

        Args:
            conn: Database connection
            keep_version: Leave the schema_version table in place
        """
        tables = await conn.fetch('''
            SELECT table_name
            FROM information_schema.tables
            WHERE table_schema = 'public'
            AND table_type = 'BASE TABLE'
            ORDER BY table_name DESC
        ''')

        for table in tables:
            name = table['table_name']
            if keep_version and name == 'schema_version':
                continue
            await conn.execute(f'DROP TABLE IF EXISTS {name} CASCADE')
            logger.info(f"Dropped table {name}")

        if not keep_version:
            self.current_version = 0

    async def _create_table(self, conn, table: Dict[str, Any]) -> None:
        """Create a single table with its column, unique and check constraints.

        Args:
            conn: Database connection
            table: Table definition dictionary
        """
        columns = []
        constraints = []

        for col in table['columns']:
            col_def = f"{col['name']} {col['type']}"

            if col.get('primary_key'):
                constraints.append(f"PRIMARY KEY ({col['name']})")
            elif col.get('unique'):
                constraints.append(f"UNIQUE ({col['name']})")

            if 'default' in col:
                col_def += f" DEFAULT {col['default']}"

            if col.get('nullable') is False:
                col_def += " NOT NULL"

            columns.append(col_def)

        for unique in table.get('unique', []):
            constraints.append(f"UNIQUE ({', '.join(unique)})")

        for check in table.get('checks', []):
            constraints.append(f"CONSTRAINT {check['name']} CHECK ({check['expression']})")

        table_def = ', '.join(columns + constraints)

        try:
            await conn.execute(f'''
                CREATE TABLE {table['name']} (
                    {table_def}
                )
            ''')
            logger.info(f"Created table {table['name']}")
        except Exception as e:
            if 'already exists' not in str(e):
                raise
            logger.debug(f"Table {table['name']} already exists")

    async def _create_indexes(self, conn, table: Dict[str, Any]) -> None:
        """Create the indexes declared for a table.

        Args:
            conn: Database connection
            table: Table definition dictionary
        """
        try:
            for idx in table.get('indexes', []):
                unique = 'UNIQUE ' if idx.get('unique') else ''
                where = f" WHERE {idx['where']}" if 'where' in idx else ''
                await conn.execute(f'''
                    CREATE {unique}INDEX {idx['name']}
                    ON {table['name']}({', '.join(idx['columns'])})
                    {where}
                ''')
                logger.info(f"Created index {idx['name']} on {table['name']}")
        except Exception as e:
            if 'already exists' not in str(e):
                raise
            logger.debug(f"Index already exists: {str(e)}")
