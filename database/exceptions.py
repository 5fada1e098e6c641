"""Database exceptions."""


class DatabaseError(Exception):
    """Base exception for database errors."""
    pass


class DatabaseSchemaError(DatabaseError):
    """Raised when the schema cannot be loaded or migrated."""
    pass


class DatabaseNotInitializedError(DatabaseError):
    """Raised when the pool is requested before init_db succeeded."""
    pass
