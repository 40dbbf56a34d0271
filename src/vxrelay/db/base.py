"""
Database base configuration and utilities.

This module provides the foundation for the tunnel registry using Peewee ORM
with a SQLite backend.

Components:
    - db: Global SQLite database instance
    - BaseModel: Base class for all vxrelay database models
    - initialize_database: Database setup function
    - close_database: Connection teardown
"""

import os

import peewee

from vxrelay.utils.logger import get_logger

logger = get_logger(__name__)


# =============================================================================
# Database Instance
# =============================================================================

# Global database instance - path set via initialize_database()
db = peewee.SqliteDatabase(None)


# =============================================================================
# Base Model
# =============================================================================


class BaseModel(peewee.Model):
    """
    Base model for all vxrelay database models.

    All models inherit from this class to share the database connection.
    """

    class Meta:
        database = db


# =============================================================================
# Database Lifecycle
# =============================================================================


def initialize_database(db_path: str) -> None:
    """
    Connect to the database and create tables.

    Args:
        db_path: Path to the SQLite database file.

    Raises:
        peewee.OperationalError: If database connection fails.
    """
    # Import models here to avoid circular imports
    from vxrelay.db.tunnel import Tunnel

    logger.debug(f"Initializing database at: {db_path}")

    db_dir = os.path.dirname(db_path)
    if db_dir:
        os.makedirs(db_dir, exist_ok=True)

    try:
        if not db.is_closed():
            db.close()
        # WAL keeps readers unblocked while a writer holds the insert lock
        db.init(db_path, pragmas={"journal_mode": "wal", "busy_timeout": 5000})
        db.connect(reuse_if_open=True)
        db.create_tables([Tunnel], safe=True)

        _run_migrations()

        logger.info(f"Database initialized: {db_path}")
        logger.debug(f"Database contains {Tunnel.select().count()} tunnels")

    except peewee.OperationalError as e:
        logger.error(f"Failed to initialize database '{db_path}': {e}")
        raise


def _run_migrations() -> None:
    """Add any missing columns to existing tables."""
    from playhouse.migrate import SqliteMigrator, migrate

    migrator = SqliteMigrator(db)

    cursor = db.execute_sql("PRAGMA table_info(tunnels)")
    existing_columns = {row[1] for row in cursor.fetchall()}

    migrations = []
    if "error_message" not in existing_columns:
        migrations.append(
            migrator.add_column("tunnels", "error_message", peewee.TextField(null=True))
        )

    if migrations:
        migrate(*migrations)
        logger.info(f"Ran {len(migrations)} database migration(s)")


def close_database() -> None:
    """Close the database connection if open."""
    if not db.is_closed():
        db.close()
        logger.debug("Database connection closed")
