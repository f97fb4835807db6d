"""PostgreSQL storage for companies, address history and sync watermarks."""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, Generator, Iterable, List, Optional
from uuid import uuid4

import psycopg2
import psycopg2.errors
from psycopg2.extensions import TransactionRollbackError
from psycopg2.extras import RealDictCursor
from psycopg2.pool import ThreadedConnectionPool

from konkurs_cli.db import APPLICATION_NAME, DEFAULT_CONNECT_TIMEOUT, get_database_url, transaction
from konkurs_cli.registry.models import (
    AddressHistoryRecord,
    AddressKind,
    CompanyStatus,
    Kommune,
    NormalizedAddress,
    NormalizedEntity,
    StoredCompany,
    SyncCoverage,
    SyncWatermark,
)
from konkurs_cli.registry.reconcile import (
    CloseAddress,
    CreateCompany,
    Mutation,
    OpenAddress,
    UpdateCompany,
)

logger = logging.getLogger(__name__)


REGISTRY_TABLES = [
    "kommuner",
    "companies",
    "address_history",
    "sync_watermarks",
    "sync_runs",
]

# Row lock wait before an entity transaction gives up with a conflict.
LOCK_TIMEOUT = "5s"


class RepositoryError(Exception):
    """Base exception for repository errors."""
    pass


@dataclass
class PersistenceConflict(RepositoryError):
    """A constraint or lock conflict rolled back an entity transaction."""
    organization_number: str
    detail: str

    def __str__(self) -> str:
        return f"Persistence conflict for {self.organization_number}: {self.detail}"


def create_registry_tables(test: bool = False) -> List[str]:
    """Create registry tables if they don't exist.

    This is idempotent - tables are only created if missing.

    Args:
        test: If True, use test database.

    Returns:
        List of tables that were created.
    """
    with transaction(test=test) as conn:
        cursor = conn.cursor()
        cursor.execute("""
            SELECT table_name FROM information_schema.tables
            WHERE table_schema = 'public' AND table_name = ANY(%s)
        """, (REGISTRY_TABLES,))
        existing = {row[0] for row in cursor.fetchall()}

        # Municipality reference data
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS kommuner (
                number          TEXT PRIMARY KEY,
                name            TEXT NOT NULL,
                county          TEXT NOT NULL DEFAULT '',
                region          TEXT NOT NULL DEFAULT '',
                priority        TEXT NOT NULL DEFAULT 'low'
                                CHECK (priority IN ('high', 'medium', 'low')),
                postal_codes    TEXT[] NOT NULL DEFAULT '{}'
            )
        """)

        # Companies (never deleted, only status transitions)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS companies (
                id                      UUID PRIMARY KEY,
                organization_number     TEXT NOT NULL UNIQUE,
                name                    TEXT NOT NULL DEFAULT '',
                legal_form              TEXT NOT NULL DEFAULT '',
                status                  TEXT NOT NULL DEFAULT 'active'
                                        CHECK (status IN ('active', 'bankrupt', 'dissolved')),
                registration_date       DATE,
                current_address         TEXT NOT NULL DEFAULT '',
                current_postal_code     TEXT NOT NULL DEFAULT '',
                current_kommune_number  TEXT NOT NULL DEFAULT '',
                current_kommune_name    TEXT NOT NULL DEFAULT '',
                last_synced_at          TIMESTAMPTZ,
                created_at              TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at              TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_companies_kommune
            ON companies(current_kommune_number)
        """)

        # Address history (valid-time intervals per company and kind)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS address_history (
                id                  UUID PRIMARY KEY,
                company_id          UUID NOT NULL REFERENCES companies(id) ON DELETE CASCADE,
                organization_number TEXT NOT NULL,
                address_kind        TEXT NOT NULL CHECK (address_kind IN ('business', 'mailing')),
                address             TEXT NOT NULL DEFAULT '',
                postal_code         TEXT NOT NULL DEFAULT '',
                postal_city         TEXT NOT NULL DEFAULT '',
                kommune_number      TEXT NOT NULL DEFAULT '',
                kommune_name        TEXT NOT NULL DEFAULT '',
                valid_from          TIMESTAMPTZ NOT NULL,
                valid_to            TIMESTAMPTZ,
                is_current          BOOLEAN NOT NULL DEFAULT TRUE,
                created_at          TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                CONSTRAINT address_history_current_is_open
                    CHECK (is_current = (valid_to IS NULL)),
                CONSTRAINT address_history_interval_order
                    CHECK (valid_to IS NULL OR valid_to >= valid_from)
            )
        """)
        cursor.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS uq_address_history_one_current
            ON address_history(company_id, address_kind) WHERE is_current
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_address_history_org_current
            ON address_history(organization_number, is_current)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_address_history_kommune
            ON address_history(kommune_number)
        """)

        # One row per kommune: latest successful sync and resume cursor
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS sync_watermarks (
                kommune_number  TEXT PRIMARY KEY,
                last_synced_at  TIMESTAMPTZ,
                covered_through DATE,
                cursor_filter   TEXT,
                cursor_page     INTEGER,
                updated_at      TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
        """)

        # Append-only log of completed kommune collections
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS sync_runs (
                id              UUID PRIMARY KEY,
                kommune_number  TEXT NOT NULL,
                covered_from    DATE NOT NULL,
                covered_to      DATE NOT NULL,
                completed_at    TIMESTAMPTZ NOT NULL,
                entities_seen   INTEGER NOT NULL DEFAULT 0,
                new_count       INTEGER NOT NULL DEFAULT 0,
                updated_count   INTEGER NOT NULL DEFAULT 0,
                moved_count     INTEGER NOT NULL DEFAULT 0,
                unchanged_count INTEGER NOT NULL DEFAULT 0,
                CHECK (covered_to >= covered_from)
            )
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_sync_runs_kommune
            ON sync_runs(kommune_number, covered_from)
        """)
        cursor.close()

    return [t for t in REGISTRY_TABLES if t not in existing]


def _row_to_company(row: Dict[str, Any]) -> StoredCompany:
    return StoredCompany(
        id=str(row["id"]),
        organization_number=row["organization_number"],
        name=row["name"],
        legal_form=row["legal_form"],
        status=CompanyStatus(row["status"]),
        registration_date=row["registration_date"],
        current_address=row["current_address"],
        current_postal_code=row["current_postal_code"],
        current_kommune_number=row["current_kommune_number"],
        current_kommune_name=row["current_kommune_name"],
        last_synced_at=row["last_synced_at"],
        created_at=row["created_at"],
    )


def _row_to_history(row: Dict[str, Any]) -> AddressHistoryRecord:
    return AddressHistoryRecord(
        id=str(row["id"]),
        company_id=str(row["company_id"]),
        organization_number=row["organization_number"],
        kind=AddressKind(row["address_kind"]),
        address=NormalizedAddress(
            line=row["address"],
            postal_code=row["postal_code"],
            municipality_code=row["kommune_number"],
            municipality_name=row["kommune_name"],
            postal_city=row["postal_city"],
        ),
        valid_from=row["valid_from"],
        valid_to=row["valid_to"],
        is_current=row["is_current"],
    )


def _company_params(entity: NormalizedEntity) -> Dict[str, Any]:
    primary = entity.primary_address or NormalizedAddress()
    return {
        "name": entity.name,
        "legal_form": entity.legal_form,
        "status": entity.status.value,
        "registration_date": entity.registration_date,
        "current_address": primary.line,
        "current_postal_code": primary.postal_code,
        "current_kommune_number": primary.municipality_code,
        "current_kommune_name": primary.municipality_name,
    }


class PostgresEntityTransaction:
    """Reads and writes of one entity inside one database transaction."""

    def __init__(self, conn, organization_number: str):
        self.conn = conn
        self.organization_number = organization_number
        self.company_id: Optional[str] = None

    def load_company(self, organization_number: str) -> Optional[StoredCompany]:
        """Load the company and lock its row until the transaction ends."""
        with self.conn.cursor(cursor_factory=RealDictCursor) as cursor:
            cursor.execute("""
                SELECT * FROM companies WHERE organization_number = %s FOR UPDATE
            """, (organization_number,))
            row = cursor.fetchone()
        if not row:
            return None
        company = _row_to_company(row)
        self.company_id = company.id
        return company

    def load_current_addresses(self, company_id: str) -> List[AddressHistoryRecord]:
        with self.conn.cursor(cursor_factory=RealDictCursor) as cursor:
            cursor.execute("""
                SELECT * FROM address_history
                WHERE company_id = %s AND is_current
                ORDER BY address_kind, valid_from
                FOR UPDATE
            """, (company_id,))
            return [_row_to_history(row) for row in cursor.fetchall()]

    def apply(self, mutations: List[Mutation]) -> None:
        """Apply mutations in order."""
        with self.conn.cursor() as cursor:
            for mutation in mutations:
                if isinstance(mutation, CreateCompany):
                    self._create_company(cursor, mutation)
                elif isinstance(mutation, UpdateCompany):
                    self._update_company(cursor, mutation)
                elif isinstance(mutation, CloseAddress):
                    self._close_address(cursor, mutation)
                elif isinstance(mutation, OpenAddress):
                    self._open_address(cursor, mutation)
                else:
                    raise RepositoryError(f"Unknown mutation: {mutation!r}")

    def _create_company(self, cursor, mutation: CreateCompany) -> None:
        params = _company_params(mutation.entity)
        params.update({
            "id": str(uuid4()),
            "organization_number": mutation.entity.organization_number,
            "synced_at": mutation.synced_at,
        })
        cursor.execute("""
            INSERT INTO companies (
                id, organization_number, name, legal_form, status,
                registration_date, current_address, current_postal_code,
                current_kommune_number, current_kommune_name,
                last_synced_at, created_at, updated_at
            ) VALUES (
                %(id)s, %(organization_number)s, %(name)s, %(legal_form)s, %(status)s,
                %(registration_date)s, %(current_address)s, %(current_postal_code)s,
                %(current_kommune_number)s, %(current_kommune_name)s,
                %(synced_at)s, NOW(), NOW()
            )
            ON CONFLICT (organization_number) DO NOTHING
            RETURNING id
        """, params)
        row = cursor.fetchone()
        if not row:
            raise PersistenceConflict(
                self.organization_number, "company was created by a concurrent writer"
            )
        self.company_id = str(row[0])

    def _update_company(self, cursor, mutation: UpdateCompany) -> None:
        params = _company_params(mutation.entity)
        params.update({"id": mutation.company_id, "synced_at": mutation.synced_at})
        cursor.execute("""
            UPDATE companies SET
                name = %(name)s,
                legal_form = %(legal_form)s,
                status = %(status)s,
                registration_date = %(registration_date)s,
                current_address = %(current_address)s,
                current_postal_code = %(current_postal_code)s,
                current_kommune_number = %(current_kommune_number)s,
                current_kommune_name = %(current_kommune_name)s,
                last_synced_at = %(synced_at)s,
                updated_at = NOW()
            WHERE id = %(id)s
        """, params)
        self.company_id = mutation.company_id

    def _close_address(self, cursor, mutation: CloseAddress) -> None:
        cursor.execute("""
            UPDATE address_history
            SET valid_to = %s, is_current = FALSE
            WHERE id = %s AND is_current
            RETURNING id
        """, (mutation.valid_to, mutation.record_id))
        if not cursor.fetchone():
            raise PersistenceConflict(
                self.organization_number,
                f"address row {mutation.record_id} is no longer current",
            )

    def _open_address(self, cursor, mutation: OpenAddress) -> None:
        if self.company_id is None:
            raise RepositoryError("Address opened before the company row exists")
        address = mutation.address
        cursor.execute("""
            INSERT INTO address_history (
                id, company_id, organization_number, address_kind, address,
                postal_code, postal_city, kommune_number, kommune_name,
                valid_from, valid_to, is_current
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, NULL, TRUE)
        """, (
            str(uuid4()),
            self.company_id,
            self.organization_number,
            mutation.kind.value,
            address.line,
            address.postal_code,
            address.postal_city,
            address.municipality_code,
            address.municipality_name,
            mutation.valid_from,
        ))


class PostgresRepository:
    """Entity repository backed by PostgreSQL.

    Connections come from a thread-safe pool so collector workers can
    reconcile concurrently; every entity gets its own transaction.
    """

    def __init__(self, test: bool = False, max_connections: int = 5):
        self.test = test
        self.max_connections = max_connections
        self._pool: Optional[ThreadedConnectionPool] = None

    @property
    def pool(self) -> ThreadedConnectionPool:
        if self._pool is None:
            self._pool = ThreadedConnectionPool(
                1,
                self.max_connections,
                get_database_url(test=self.test),
                connect_timeout=DEFAULT_CONNECT_TIMEOUT,
                application_name=APPLICATION_NAME,
            )
        return self._pool

    def close(self) -> None:
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None

    @contextmanager
    def _connection(self) -> Generator:
        conn = self.pool.getconn()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self.pool.putconn(conn)

    @contextmanager
    def entity_transaction(self, organization_number: str) -> Generator[PostgresEntityTransaction, None, None]:
        """Open a transaction scoped to one organization number.

        Raises:
            PersistenceConflict: On constraint, lock or serialization
                failures; the transaction is rolled back.
        """
        try:
            with self._connection() as conn:
                with conn.cursor() as cursor:
                    cursor.execute("SET LOCAL lock_timeout = %s", (LOCK_TIMEOUT,))
                yield PostgresEntityTransaction(conn, organization_number)
        except (
            psycopg2.IntegrityError,
            psycopg2.errors.LockNotAvailable,
            TransactionRollbackError,
        ) as e:
            raise PersistenceConflict(organization_number, str(e).strip()) from e

    def get_company(self, organization_number: str) -> Optional[StoredCompany]:
        with self._connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                cursor.execute(
                    "SELECT * FROM companies WHERE organization_number = %s",
                    (organization_number,),
                )
                row = cursor.fetchone()
        return _row_to_company(row) if row else None

    def get_address_history(
        self,
        organization_number: str,
        kind: Optional[AddressKind] = None,
        valid_at: Optional[datetime] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[AddressHistoryRecord]:
        """Get address history rows, oldest first.

        Args:
            organization_number: Company to look up.
            kind: Only rows of this address kind.
            valid_at: Only rows whose [from, to) interval contains this moment.
            since: Only rows still valid at or after this moment.
            until: Only rows that started before this moment.

        Returns:
            List of AddressHistoryRecord ordered by kind and start.
        """
        query = "SELECT * FROM address_history WHERE organization_number = %s"
        params: List[Any] = [organization_number]

        if kind:
            query += " AND address_kind = %s"
            params.append(kind.value)
        if valid_at:
            query += " AND valid_from <= %s AND (valid_to IS NULL OR valid_to > %s)"
            params.extend([valid_at, valid_at])
        if since:
            query += " AND (valid_to IS NULL OR valid_to > %s)"
            params.append(since)
        if until:
            query += " AND valid_from < %s"
            params.append(until)

        query += " ORDER BY address_kind, valid_from, created_at"

        with self._connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                cursor.execute(query, params)
                return [_row_to_history(row) for row in cursor.fetchall()]

    def get_watermark(self, kommune_number: str) -> Optional[SyncWatermark]:
        with self._connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                cursor.execute(
                    "SELECT * FROM sync_watermarks WHERE kommune_number = %s",
                    (kommune_number,),
                )
                row = cursor.fetchone()
        if not row:
            return None
        return SyncWatermark(**row)

    def save_cursor(self, kommune_number: str, cursor_filter: str, cursor_page: int) -> None:
        """Record the last fully persisted page of a filter.

        Within one filter the page only moves forward.
        """
        with self._connection() as conn:
            with conn.cursor() as cursor:
                cursor.execute("""
                    INSERT INTO sync_watermarks (kommune_number, cursor_filter, cursor_page, updated_at)
                    VALUES (%s, %s, %s, NOW())
                    ON CONFLICT (kommune_number) DO UPDATE SET
                        cursor_page = CASE
                            WHEN sync_watermarks.cursor_filter = EXCLUDED.cursor_filter
                            THEN GREATEST(sync_watermarks.cursor_page, EXCLUDED.cursor_page)
                            ELSE EXCLUDED.cursor_page
                        END,
                        cursor_filter = EXCLUDED.cursor_filter,
                        updated_at = NOW()
                """, (kommune_number, cursor_filter, cursor_page))

    def complete_sync(
        self,
        kommune_number: str,
        synced_at: datetime,
        covered_from: date,
        covered_to: date,
        counts: Optional[Dict[str, int]] = None,
    ) -> None:
        """Advance the watermark and log the covered range, atomically.

        The timestamp and covered-through date never move backwards; the
        resume cursor is cleared.
        """
        counts = counts or {}
        with self._connection() as conn:
            with conn.cursor() as cursor:
                cursor.execute("""
                    INSERT INTO sync_watermarks (
                        kommune_number, last_synced_at, covered_through,
                        cursor_filter, cursor_page, updated_at
                    ) VALUES (%s, %s, %s, NULL, NULL, NOW())
                    ON CONFLICT (kommune_number) DO UPDATE SET
                        last_synced_at = GREATEST(sync_watermarks.last_synced_at, EXCLUDED.last_synced_at),
                        covered_through = GREATEST(sync_watermarks.covered_through, EXCLUDED.covered_through),
                        cursor_filter = NULL,
                        cursor_page = NULL,
                        updated_at = NOW()
                """, (kommune_number, synced_at, covered_to))
                cursor.execute("""
                    INSERT INTO sync_runs (
                        id, kommune_number, covered_from, covered_to, completed_at,
                        entities_seen, new_count, updated_count, moved_count, unchanged_count
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """, (
                    str(uuid4()),
                    kommune_number,
                    covered_from,
                    covered_to,
                    synced_at,
                    counts.get("seen", 0),
                    counts.get("new", 0),
                    counts.get("updated", 0),
                    counts.get("moved", 0),
                    counts.get("unchanged", 0),
                ))

    def list_sync_coverage(self, kommune_number: str) -> List[SyncCoverage]:
        with self._connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                cursor.execute("""
                    SELECT kommune_number, covered_from, covered_to, completed_at
                    FROM sync_runs
                    WHERE kommune_number = %s
                    ORDER BY covered_from, completed_at
                """, (kommune_number,))
                return [SyncCoverage(**row) for row in cursor.fetchall()]

    def get_postal_codes(self, kommune_number: str) -> List[str]:
        """Postal codes known for a kommune: reference codes plus observed ones."""
        with self._connection() as conn:
            with conn.cursor() as cursor:
                cursor.execute("""
                    SELECT unnest(postal_codes) FROM kommuner WHERE number = %s
                    UNION
                    SELECT DISTINCT postal_code FROM address_history
                    WHERE kommune_number = %s AND address_kind = 'business'
                    AND postal_code <> ''
                """, (kommune_number, kommune_number))
                return sorted(row[0] for row in cursor.fetchall())

    def seed_kommuner(self, kommuner: Iterable[Kommune]) -> int:
        """Insert or refresh the kommune reference rows.

        Returns:
            Number of rows written.
        """
        count = 0
        with self._connection() as conn:
            with conn.cursor() as cursor:
                for kommune in kommuner:
                    cursor.execute("""
                        INSERT INTO kommuner (number, name, county, region, priority, postal_codes)
                        VALUES (%s, %s, %s, %s, %s, %s)
                        ON CONFLICT (number) DO UPDATE SET
                            name = EXCLUDED.name,
                            county = EXCLUDED.county,
                            region = EXCLUDED.region,
                            priority = EXCLUDED.priority,
                            postal_codes = CASE
                                WHEN cardinality(EXCLUDED.postal_codes) > 0
                                THEN EXCLUDED.postal_codes
                                ELSE kommuner.postal_codes
                            END
                    """, (
                        kommune.number,
                        kommune.name,
                        kommune.county,
                        kommune.region,
                        kommune.priority.value,
                        list(kommune.postal_codes),
                    ))
                    count += 1
        return count

    def get_statistics(self) -> Dict[str, int]:
        """Row counts for the status overview."""
        with self._connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                cursor.execute("""
                    SELECT
                        (SELECT COUNT(*) FROM companies) AS companies,
                        (SELECT COUNT(*) FROM companies WHERE status = 'bankrupt') AS bankrupt,
                        (SELECT COUNT(*) FROM address_history) AS address_rows,
                        (SELECT COUNT(*) FROM address_history WHERE is_current) AS current_addresses,
                        (SELECT COUNT(*) FROM sync_watermarks WHERE last_synced_at IS NOT NULL) AS synced_kommuner
                """)
                return dict(cursor.fetchone())
