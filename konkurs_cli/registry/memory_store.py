"""In-memory entity repository.

Mirrors PostgresRepository, including its conflict behaviour, for dry runs
and tests. Writes of one entity transaction are staged and only become
visible on commit.
"""

import threading
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import replace
from datetime import date, datetime, timezone
from typing import Dict, Generator, Iterable, List, Optional
from uuid import uuid4

from konkurs_cli.registry.models import (
    AddressHistoryRecord,
    AddressKind,
    CompanyStatus,
    Kommune,
    NormalizedAddress,
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
from konkurs_cli.registry.storage import PersistenceConflict, RepositoryError


class MemoryEntityTransaction:
    """Staged reads and writes of one entity."""

    def __init__(self, repository: "InMemoryRepository", organization_number: str):
        self.repository = repository
        self.organization_number = organization_number
        self.company: Optional[StoredCompany] = None
        self.created = False
        self.history_updates: Dict[str, AddressHistoryRecord] = {}
        self.history_inserts: List[AddressHistoryRecord] = []

    def load_company(self, organization_number: str) -> Optional[StoredCompany]:
        stored = self.repository.companies.get(organization_number)
        self.company = replace(stored) if stored else None
        return self.company

    def load_current_addresses(self, company_id: str) -> List[AddressHistoryRecord]:
        return [
            replace(row)
            for row in self.repository.history.get(self.organization_number, [])
            if row.is_current
        ]

    def apply(self, mutations: List[Mutation]) -> None:
        for mutation in mutations:
            if isinstance(mutation, CreateCompany):
                self._set_company(StoredCompany(
                    id=str(uuid4()),
                    organization_number=mutation.entity.organization_number,
                    created_at=mutation.synced_at,
                ), mutation.entity, mutation.synced_at)
                self.created = True
            elif isinstance(mutation, UpdateCompany):
                if self.company is None or self.company.id != mutation.company_id:
                    raise RepositoryError(f"Unknown company id {mutation.company_id}")
                self._set_company(self.company, mutation.entity, mutation.synced_at)
            elif isinstance(mutation, CloseAddress):
                self._close(mutation)
            elif isinstance(mutation, OpenAddress):
                if self.company is None:
                    raise RepositoryError("Address opened before the company row exists")
                self.history_inserts.append(AddressHistoryRecord(
                    id=str(uuid4()),
                    company_id=self.company.id,
                    organization_number=self.organization_number,
                    kind=mutation.kind,
                    address=mutation.address,
                    valid_from=mutation.valid_from,
                ))
            else:
                raise RepositoryError(f"Unknown mutation: {mutation!r}")

    def _set_company(self, company: StoredCompany, entity, synced_at: datetime) -> None:
        primary = entity.primary_address or NormalizedAddress()
        self.company = replace(
            company,
            name=entity.name,
            legal_form=entity.legal_form,
            status=entity.status,
            registration_date=entity.registration_date,
            current_address=primary.line,
            current_postal_code=primary.postal_code,
            current_kommune_number=primary.municipality_code,
            current_kommune_name=primary.municipality_name,
            last_synced_at=synced_at,
        )

    def _close(self, mutation: CloseAddress) -> None:
        for row in self.repository.history.get(self.organization_number, []):
            if row.id == mutation.record_id:
                if not row.is_current:
                    break
                self.history_updates[row.id] = replace(
                    row, valid_to=mutation.valid_to, is_current=False
                )
                return
        raise PersistenceConflict(
            self.organization_number,
            f"address row {mutation.record_id} is no longer current",
        )

    def commit(self) -> None:
        """Publish staged writes, enforcing the one-current-row constraint."""
        repo = self.repository
        if self.company is None:
            return
        if self.created and self.organization_number in repo.companies:
            raise PersistenceConflict(
                self.organization_number, "company was created by a concurrent writer"
            )

        rows = [self.history_updates.get(row.id, row) for row in repo.history.get(self.organization_number, [])]
        rows.extend(self.history_inserts)

        current_kinds = [row.kind for row in rows if row.is_current]
        if len(current_kinds) != len(set(current_kinds)):
            raise PersistenceConflict(
                self.organization_number,
                "duplicate key value violates unique constraint uq_address_history_one_current",
            )

        repo.companies[self.organization_number] = self.company
        repo.history[self.organization_number] = rows


class InMemoryRepository:
    """Entity repository held in process memory."""

    def __init__(self):
        self.companies: Dict[str, StoredCompany] = {}
        self.history: Dict[str, List[AddressHistoryRecord]] = {}
        self.watermarks: Dict[str, SyncWatermark] = {}
        self.sync_runs: List[dict] = []
        self.kommuner: Dict[str, Kommune] = {}
        self._lock = threading.RLock()
        self._entity_locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)

    def close(self) -> None:
        pass

    @contextmanager
    def entity_transaction(self, organization_number: str) -> Generator[MemoryEntityTransaction, None, None]:
        with self._lock:
            entity_lock = self._entity_locks[organization_number]
        with entity_lock:
            tx = MemoryEntityTransaction(self, organization_number)
            yield tx
            with self._lock:
                tx.commit()

    def get_company(self, organization_number: str) -> Optional[StoredCompany]:
        company = self.companies.get(organization_number)
        return replace(company) if company else None

    def get_address_history(
        self,
        organization_number: str,
        kind: Optional[AddressKind] = None,
        valid_at: Optional[datetime] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[AddressHistoryRecord]:
        rows = []
        for row in self.history.get(organization_number, []):
            if kind and row.kind != kind:
                continue
            if valid_at and not row.covers(valid_at):
                continue
            if since and row.valid_to is not None and row.valid_to <= since:
                continue
            if until and row.valid_from >= until:
                continue
            rows.append(replace(row))
        kind_order = {k: i for i, k in enumerate(AddressKind)}
        return sorted(rows, key=lambda r: (kind_order[r.kind], r.valid_from))

    def get_watermark(self, kommune_number: str) -> Optional[SyncWatermark]:
        watermark = self.watermarks.get(kommune_number)
        return replace(watermark) if watermark else None

    def save_cursor(self, kommune_number: str, cursor_filter: str, cursor_page: int) -> None:
        with self._lock:
            watermark = self.watermarks.get(kommune_number) or SyncWatermark(kommune_number)
            if watermark.cursor_filter == cursor_filter and watermark.cursor_page is not None:
                cursor_page = max(watermark.cursor_page, cursor_page)
            watermark.cursor_filter = cursor_filter
            watermark.cursor_page = cursor_page
            watermark.updated_at = datetime.now(timezone.utc)
            self.watermarks[kommune_number] = watermark

    def complete_sync(
        self,
        kommune_number: str,
        synced_at: datetime,
        covered_from: date,
        covered_to: date,
        counts: Optional[Dict[str, int]] = None,
    ) -> None:
        if covered_to < covered_from:
            raise RepositoryError(f"Covered range ends before it starts: {covered_from}..{covered_to}")
        with self._lock:
            watermark = self.watermarks.get(kommune_number) or SyncWatermark(kommune_number)
            if watermark.last_synced_at is None or synced_at > watermark.last_synced_at:
                watermark.last_synced_at = synced_at
            if watermark.covered_through is None or covered_to > watermark.covered_through:
                watermark.covered_through = covered_to
            watermark.cursor_filter = None
            watermark.cursor_page = None
            watermark.updated_at = synced_at
            self.watermarks[kommune_number] = watermark
            self.sync_runs.append({
                "kommune_number": kommune_number,
                "covered_from": covered_from,
                "covered_to": covered_to,
                "completed_at": synced_at,
                **(counts or {}),
            })

    def list_sync_coverage(self, kommune_number: str) -> List[SyncCoverage]:
        runs = [
            SyncCoverage(
                kommune_number=run["kommune_number"],
                covered_from=run["covered_from"],
                covered_to=run["covered_to"],
                completed_at=run["completed_at"],
            )
            for run in self.sync_runs
            if run["kommune_number"] == kommune_number
        ]
        return sorted(runs, key=lambda c: c.covered_from)

    def get_postal_codes(self, kommune_number: str) -> List[str]:
        codes = set()
        kommune = self.kommuner.get(kommune_number)
        if kommune:
            codes.update(kommune.postal_codes)
        for rows in self.history.values():
            for row in rows:
                if (
                    row.kind == AddressKind.BUSINESS
                    and row.address.municipality_code == kommune_number
                    and row.address.postal_code
                ):
                    codes.add(row.address.postal_code)
        return sorted(codes)

    def seed_kommuner(self, kommuner: Iterable[Kommune]) -> int:
        count = 0
        with self._lock:
            for kommune in kommuner:
                existing = self.kommuner.get(kommune.number)
                if existing and not kommune.postal_codes:
                    kommune = replace(kommune, postal_codes=existing.postal_codes)
                self.kommuner[kommune.number] = kommune
                count += 1
        return count

    def get_statistics(self) -> Dict[str, int]:
        rows = [row for history in self.history.values() for row in history]
        return {
            "companies": len(self.companies),
            "bankrupt": sum(1 for c in self.companies.values() if c.status == CompanyStatus.BANKRUPT),
            "address_rows": len(rows),
            "current_addresses": sum(1 for row in rows if row.is_current),
            "synced_kommuner": sum(1 for w in self.watermarks.values() if w.last_synced_at),
        }
