"""
Database schema setup for pgkeeper.

Simple table creation without Alembic; safe to run from several workers.
"""

import logging
from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError
from pgkeeper import db

logger = logging.getLogger(__name__)


def init_database_schema(app):
    """
    Create any missing tables.

    Another worker may create the same tables concurrently; that is logged
    and ignored.
    """
    with app.app_context():
        inspector = inspect(db.engine)
        existing_tables = set(inspector.get_table_names())
        missing = [
            table for name, table in db.metadata.tables.items()
            if name not in existing_tables
        ]

        if not missing:
            return

        logger.info(f"Creating tables: {', '.join(table.name for table in missing)}")
        try:
            db.metadata.create_all(db.engine, tables=missing, checkfirst=True)
            logger.info("Database schema created successfully")
        except SQLAlchemyError as e:
            logger.error(f"Failed to create database schema: {e}")
