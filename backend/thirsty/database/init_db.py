"""
Database initialization.

Creates the ledger, grant, dedup, premium flag and audit tables if they do
not exist. Existing tables are not modified.

Usage:
    python -m thirsty.database.init_db

Environment variables:
    DATABASE_URL: PostgreSQL connection string
"""

import logging
from typing import List, Optional

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from thirsty.db_base import Base
# Import all models to register them with Base.metadata
import thirsty.models
from thirsty.database.session import get_engine

logger = logging.getLogger(__name__)


def init_database(engine: Optional[Engine] = None) -> List[str]:
    """
    Create all tables on the given engine (defaults to the app engine).

    Returns:
        Names of the tables present after the run
    """
    engine = engine or get_engine()

    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        logger.info("Database connection successful")
    except SQLAlchemyError as e:
        logger.error("Failed to connect to database", extra={"error": str(e)})
        raise

    table_names = sorted(Base.metadata.tables.keys())
    logger.info("Tables to create/verify", extra={"tables": table_names})

    Base.metadata.create_all(bind=engine)

    existing = set(inspect(engine).get_table_names())
    for table_name in table_names:
        logger.info(
            "Table status",
            extra={"table": table_name, "exists": table_name in existing},
        )
    return [name for name in table_names if name in existing]


def main():
    logging.basicConfig(level=logging.INFO)
    init_database()
    logger.info("Database initialization complete")


if __name__ == "__main__":
    main()
