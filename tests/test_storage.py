"""Tests for the PostgreSQL repository.

Skipped when the test database is not reachable.
"""

import random
from datetime import date, timedelta

import pytest

from konkurs_cli.db import transaction
from konkurs_cli.registry.models import AddressKind, Classification, Kommune
from konkurs_cli.registry.normalize import normalize_entity
from konkurs_cli.registry.reconcile import OpenAddress, reconcile
from konkurs_cli.registry.storage import (
    PersistenceConflict,
    PostgresRepository,
    create_registry_tables,
)


@pytest.fixture(scope="module")
def pg_repo(db_available):
    """Repository on the test database with registry tables created."""
    if not db_available:
        pytest.skip("Test database not available")
    create_registry_tables(test=True)
    repository = PostgresRepository(test=True, max_connections=2)
    yield repository
    repository.close()


@pytest.fixture
def org_number(pg_repo):
    """Unused organization number, removed again after the test."""
    org = str(random.randint(800000000, 899999999))
    yield org
    with transaction(test=True) as conn:
        with conn.cursor() as cursor:
            cursor.execute("DELETE FROM address_history WHERE organization_number = %s", (org,))
            cursor.execute("DELETE FROM companies WHERE organization_number = %s", (org,))


@pytest.fixture
def kommune_number(pg_repo):
    """Unused kommune number, removed again after the test."""
    number = str(random.randint(9100, 9999))
    yield number
    with transaction(test=True) as conn:
        with conn.cursor() as cursor:
            cursor.execute("DELETE FROM sync_runs WHERE kommune_number = %s", (number,))
            cursor.execute("DELETE FROM sync_watermarks WHERE kommune_number = %s", (number,))
            cursor.execute("DELETE FROM kommuner WHERE number = %s", (number,))


class TestSchema:
    """Tests for table creation."""

    def test_create_is_idempotent(self, pg_repo):
        """Test table creation is idempotent."""
        assert create_registry_tables(test=True) == []


class TestReconcileRoundTrip:
    """Tests for reconciliation against PostgreSQL."""

    def test_new_then_moved(self, pg_repo, org_number, raw_entity, fixed_now):
        """Test a new entity followed by a move."""
        first = reconcile(pg_repo, normalize_entity(raw_entity(org_number)), now=fixed_now)
        assert first.classification == Classification.NEW

        later = fixed_now + timedelta(days=30)
        moved = normalize_entity(raw_entity(
            org_number, line="Side St 2", postal="4950", kommune="4201", kommune_name="RISØR"
        ))
        second = reconcile(pg_repo, moved, now=later)
        assert second.classification == Classification.MOVED

        rows = pg_repo.get_address_history(org_number, kind=AddressKind.BUSINESS)
        assert [r.address.line for r in rows] == ["Main St 1", "Side St 2"]
        assert rows[0].valid_to == later
        assert rows[0].is_current is False
        assert rows[1].is_current is True

        company = pg_repo.get_company(org_number)
        assert company.current_kommune_number == "4201"
        assert company.last_synced_at == later

    def test_idempotent(self, pg_repo, org_number, raw_entity, fixed_now):
        """Test reconciling unchanged data adds no rows."""
        reconcile(pg_repo, normalize_entity(raw_entity(org_number)), now=fixed_now)
        result = reconcile(pg_repo, normalize_entity(raw_entity(org_number)), now=fixed_now + timedelta(hours=1))

        assert result.classification == Classification.UNCHANGED
        assert len(pg_repo.get_address_history(org_number)) == 1

    def test_valid_at(self, pg_repo, org_number, raw_entity, fixed_now):
        """Test the valid_at history lookup."""
        reconcile(pg_repo, normalize_entity(raw_entity(org_number)), now=fixed_now)
        reconcile(pg_repo, normalize_entity(raw_entity(org_number, line="Main St 2")),
                  now=fixed_now + timedelta(days=10))

        rows = pg_repo.get_address_history(org_number, valid_at=fixed_now + timedelta(days=1))
        assert [r.address.line for r in rows] == ["Main St 1"]

    def test_second_current_row_is_conflict(self, pg_repo, org_number, raw_entity, fixed_now):
        """Test the unique index rejects a second current row."""
        reconcile(pg_repo, normalize_entity(raw_entity(org_number)), now=fixed_now)
        address = pg_repo.get_address_history(org_number)[0].address

        with pytest.raises(PersistenceConflict):
            with pg_repo.entity_transaction(org_number) as tx:
                tx.load_company(org_number)
                tx.apply([OpenAddress(AddressKind.BUSINESS, address, fixed_now)])

        assert len(pg_repo.get_address_history(org_number)) == 1


class TestWatermarks:
    """Tests for watermark bookkeeping."""

    def test_cursor_then_complete(self, pg_repo, kommune_number, fixed_now):
        """Test the cursor is cleared when a sync completes."""
        pg_repo.save_cursor(kommune_number, "f1", 2)
        pg_repo.save_cursor(kommune_number, "f1", 1)
        assert pg_repo.get_watermark(kommune_number).cursor_page == 2

        pg_repo.complete_sync(kommune_number, fixed_now, date(2024, 5, 1), date(2024, 6, 1), {"seen": 3})
        watermark = pg_repo.get_watermark(kommune_number)

        assert watermark.cursor_page is None
        assert watermark.last_synced_at == fixed_now
        assert watermark.covered_through == date(2024, 6, 1)

    def test_watermark_is_monotonic(self, pg_repo, kommune_number, fixed_now):
        """Test the watermark never moves backwards."""
        pg_repo.complete_sync(kommune_number, fixed_now, date(2024, 5, 1), date(2024, 6, 1))
        pg_repo.complete_sync(kommune_number, fixed_now - timedelta(days=3), date(2024, 1, 1), date(2024, 1, 31))

        watermark = pg_repo.get_watermark(kommune_number)
        assert watermark.last_synced_at == fixed_now
        assert watermark.covered_through == date(2024, 6, 1)
        assert [c.covered_from for c in pg_repo.list_sync_coverage(kommune_number)] == [
            date(2024, 1, 1), date(2024, 5, 1),
        ]

    def test_postal_codes_from_reference(self, pg_repo, kommune_number):
        """Test postal codes come from reference data."""
        pg_repo.seed_kommuner([Kommune(kommune_number, "TEST", postal_codes=("9990", "9991"))])
        assert pg_repo.get_postal_codes(kommune_number) == ["9990", "9991"]
