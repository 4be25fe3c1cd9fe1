"""
External Database Source

Reads the rows to import from the legacy database with SQLAlchemy.
Any SQLAlchemy-supported URL works (mysql+pymysql://, postgresql://,
sqlite:///...); the matching driver must be installed separately.
"""

import logging
from typing import Any

from sqlalchemy import Engine, create_engine, text
from sqlalchemy.exc import ArgumentError, SQLAlchemyError

from db2cms_import.errors import SetupError

logger = logging.getLogger(__name__)


class ExternalSource:
    """Runs the configured query against the external database."""

    def __init__(self, database_url: str, query: str) -> None:
        """
        Initialize the source.

        Args:
            database_url: SQLAlchemy URL of the external database
            query: SQL query; may reference the bound parameter :post_type
        """
        self.database_url = database_url
        self.query = query
        self._engine: Engine | None = None

    def _get_engine(self) -> Engine:
        if self._engine is None:
            try:
                self._engine = create_engine(self.database_url, pool_pre_ping=True)
            except (ArgumentError, ImportError) as e:
                raise SetupError(f"Invalid source database URL: {e}") from e
        return self._engine

    def fetch_rows(self, post_type: str) -> list[dict[str, Any]]:
        """
        Execute the query and return its rows as mappings.

        Args:
            post_type: Target content kind, bound as :post_type when the
                query references it

        Returns:
            Rows in source order

        Raises:
            SetupError: If the database cannot be reached or the query fails
        """
        statement = text(self.query)
        params = {"post_type": post_type} if "post_type" in statement.compile().params else {}

        try:
            with self._get_engine().connect() as conn:
                result = conn.execute(statement, params)
                rows = [dict(row) for row in result.mappings()]
        except SQLAlchemyError as e:
            raise SetupError(f"Failed to query the source database: {e}") from e

        logger.info(f"Fetched {len(rows)} rows from the source database")
        return rows

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
