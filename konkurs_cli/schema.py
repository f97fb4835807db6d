"""Schema detection and table existence checks."""

from dataclasses import dataclass
from typing import List, Tuple

from konkurs_cli.db import execute_query


# Tables required for collection and reconciliation
REQUIRED_TABLES: List[Tuple[str, str]] = [
    ("public", "companies"),
    ("public", "address_history"),
    ("public", "sync_watermarks"),
    ("public", "sync_runs"),
]

# Reference tables (seeded by init-schema)
REFERENCE_TABLES: List[Tuple[str, str]] = [
    ("public", "kommuner"),
]


@dataclass
class TableStatus:
    """Status of a single table."""
    schema: str
    table: str
    exists: bool

    @property
    def full_name(self) -> str:
        """Return fully qualified table name."""
        return f"{self.schema}.{self.table}"


@dataclass
class SchemaStatus:
    """Overall schema status report."""
    required_tables: List[TableStatus]
    reference_tables: List[TableStatus]

    @property
    def ready(self) -> bool:
        """Check if all required tables exist."""
        return all(t.exists for t in self.required_tables)

    @property
    def missing_tables(self) -> List[str]:
        """Get list of missing required and reference tables."""
        return [
            t.full_name
            for t in self.required_tables + self.reference_tables
            if not t.exists
        ]


def check_table_exists(schema: str, table: str, test: bool = False) -> bool:
    """Check if a specific table exists.

    Args:
        schema: Schema name.
        table: Table name.
        test: If True, use test database.

    Returns:
        True if table exists, False otherwise.
    """
    query = """
        SELECT EXISTS (
            SELECT FROM information_schema.tables
            WHERE table_schema = %s
            AND table_name = %s
        )
    """
    result = execute_query(query, (schema, table), test=test)
    return result[0]["exists"] if result else False


def check_tables(
    tables: List[Tuple[str, str]],
    test: bool = False
) -> List[TableStatus]:
    """Check existence of multiple tables."""
    return [
        TableStatus(
            schema=schema,
            table=table,
            exists=check_table_exists(schema, table, test=test)
        )
        for schema, table in tables
    ]


def get_schema_status(test: bool = False) -> SchemaStatus:
    """Get schema status report.

    Args:
        test: If True, use test database.

    Returns:
        SchemaStatus with status of all tables.
    """
    return SchemaStatus(
        required_tables=check_tables(REQUIRED_TABLES, test=test),
        reference_tables=check_tables(REFERENCE_TABLES, test=test),
    )


def require_tables(test: bool = False) -> SchemaStatus:
    """Check that the collection tables exist and raise if not.

    Raises:
        RuntimeError: If required tables are missing.
    """
    status = get_schema_status(test=test)

    if not status.ready:
        raise RuntimeError(
            f"Registry tables are not yet created in the database.\n"
            f"Missing tables: {', '.join(status.missing_tables)}\n\n"
            f"Please run: konkurs-cli init-schema"
        )

    return status
