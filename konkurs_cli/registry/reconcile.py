"""Diff and reconciliation of incoming entities against stored state.

``diff_entity`` is pure: given the incoming entity, the stored company and
its current address-history rows it returns a classification and the
ordered list of mutations that keep the history invariants intact.
``reconcile`` applies that list inside one entity-scoped repository
transaction.

History invariants, per (entity, address kind):
- at most one row is current, and the current row has no end;
- closed rows have an end and their [start, end) intervals never overlap.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timezone
from typing import Dict, List, Optional, Union

from konkurs_cli.registry.models import (
    AddressHistoryRecord,
    AddressKind,
    Classification,
    NormalizedAddress,
    NormalizedEntity,
    StoredCompany,
)
from konkurs_cli.registry.normalize import addresses_identical

logger = logging.getLogger(__name__)


@dataclass
class InvariantViolation(Exception):
    """A mutation set would break the address-history invariants.

    Never repaired automatically; the entity is skipped and logged for
    manual inspection.
    """
    organization_number: str
    kind: Optional[AddressKind]
    reason: str

    def __str__(self) -> str:
        kind = self.kind.value if self.kind else "-"
        return f"Invariant violation for {self.organization_number} ({kind}): {self.reason}"


@dataclass
class CreateCompany:
    entity: NormalizedEntity
    synced_at: datetime


@dataclass
class UpdateCompany:
    company_id: str
    entity: NormalizedEntity
    synced_at: datetime


@dataclass
class CloseAddress:
    record_id: str
    kind: AddressKind
    valid_to: datetime


@dataclass
class OpenAddress:
    kind: AddressKind
    address: NormalizedAddress
    valid_from: datetime


Mutation = Union[CreateCompany, UpdateCompany, CloseAddress, OpenAddress]


@dataclass
class ReconciliationResult:
    """Outcome of reconciling one entity."""
    organization_number: str
    classification: Classification
    address_changes: Dict[AddressKind, Classification] = field(default_factory=dict)
    changed_fields: List[str] = field(default_factory=list)
    mutations: List[Mutation] = field(default_factory=list)

    @property
    def moved(self) -> bool:
        return self.classification == Classification.MOVED


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _history_start(entity: NormalizedEntity, now: datetime) -> datetime:
    if entity.registration_date is None:
        return now
    return datetime.combine(entity.registration_date, time.min, tzinfo=timezone.utc)


def _changed_fields(incoming: NormalizedEntity, stored: StoredCompany) -> List[str]:
    changed = []
    if incoming.name != stored.name:
        changed.append("name")
    if incoming.legal_form != stored.legal_form:
        changed.append("legal_form")
    if incoming.status != stored.status:
        changed.append("status")
    if incoming.registration_date != stored.registration_date:
        changed.append("registration_date")
    return changed


def _current_by_kind(
    organization_number: str,
    current_rows: List[AddressHistoryRecord],
) -> Dict[AddressKind, AddressHistoryRecord]:
    by_kind: Dict[AddressKind, AddressHistoryRecord] = {}
    for row in current_rows:
        if not row.is_current or row.valid_to is not None:
            raise InvariantViolation(
                organization_number, row.kind,
                f"row {row.id} is listed as current but is closed",
            )
        if row.kind in by_kind:
            raise InvariantViolation(
                organization_number, row.kind, "more than one current row",
            )
        by_kind[row.kind] = row
    return by_kind


def diff_entity(
    incoming: NormalizedEntity,
    stored: Optional[StoredCompany],
    current_rows: List[AddressHistoryRecord],
    now: datetime,
) -> ReconciliationResult:
    """Classify an incoming entity and compute its mutations.

    Args:
        incoming: Normalized entity from the registry.
        stored: Stored company, or None if never seen.
        current_rows: Stored current address rows of the company.
        now: Observation time; used for closing and opening rows.

    Returns:
        ReconciliationResult with mutations in apply order.

    Raises:
        InvariantViolation: If stored state or the computed mutations
            break the history invariants.
    """
    org = incoming.organization_number

    if stored is None:
        start = _history_start(incoming, now)
        mutations: List[Mutation] = [CreateCompany(incoming, now)]
        changes = {}
        for kind in AddressKind:
            address = incoming.addresses.get(kind)
            if address is not None:
                mutations.append(OpenAddress(kind, address, start))
                changes[kind] = Classification.NEW
        return ReconciliationResult(org, Classification.NEW, changes, [], mutations)

    current = _current_by_kind(org, current_rows)
    changed = _changed_fields(incoming, stored)
    mutations = [UpdateCompany(stored.id, incoming, now)]
    changes: Dict[AddressKind, Classification] = {}

    # Kinds are independent: each one is closed and reopened on its own.
    for kind in AddressKind:
        row = current.get(kind)
        address = incoming.addresses.get(kind)

        if row is None and address is None:
            continue
        if row is not None and address is not None and addresses_identical(row.address, address):
            changes[kind] = Classification.UNCHANGED
            continue

        if row is not None:
            if now < row.valid_from:
                raise InvariantViolation(
                    org, kind,
                    f"closing row {row.id} at {now.isoformat()} precedes its start "
                    f"{row.valid_from.isoformat()}",
                )
            mutations.append(CloseAddress(row.id, kind, now))
        if address is not None:
            mutations.append(OpenAddress(kind, address, now))

        if row is not None and address is not None and (
            row.address.municipality_code != address.municipality_code
        ):
            changes[kind] = Classification.MOVED
        else:
            changes[kind] = Classification.UPDATED

    if Classification.MOVED in changes.values():
        classification = Classification.MOVED
    elif Classification.UPDATED in changes.values() or changed:
        classification = Classification.UPDATED
    else:
        classification = Classification.UNCHANGED

    result = ReconciliationResult(org, classification, changes, changed, mutations)
    check_invariants(org, current_rows, result.mutations)
    return result


def check_invariants(
    organization_number: str,
    current_rows: List[AddressHistoryRecord],
    mutations: List[Mutation],
) -> None:
    """Verify that applying mutations leaves at most one current row per kind.

    Raises:
        InvariantViolation: On a would-be double-current row or an
            interval that would end before it starts.
    """
    current = _current_by_kind(organization_number, current_rows)
    open_kinds = {kind: kind in current for kind in AddressKind}
    rows_by_id = {row.id: row for row in current_rows}

    for mutation in mutations:
        if isinstance(mutation, CloseAddress):
            row = rows_by_id.get(mutation.record_id)
            if row is None or not open_kinds[mutation.kind]:
                raise InvariantViolation(
                    organization_number, mutation.kind,
                    f"close of row {mutation.record_id} which is not current",
                )
            if mutation.valid_to < row.valid_from:
                raise InvariantViolation(
                    organization_number, mutation.kind,
                    "interval would end before it starts",
                )
            open_kinds[mutation.kind] = False
        elif isinstance(mutation, OpenAddress):
            if open_kinds[mutation.kind]:
                raise InvariantViolation(
                    organization_number, mutation.kind,
                    "opening a row while another is still current",
                )
            open_kinds[mutation.kind] = True


def reconcile(repository, incoming: NormalizedEntity, now: Optional[datetime] = None) -> ReconciliationResult:
    """Reconcile one entity inside its own repository transaction.

    The stored company is read with a row lock, so a concurrent writer for
    the same organization number waits and then sees this write.

    Args:
        repository: Entity repository (PostgreSQL or in-memory).
        incoming: Normalized entity.
        now: Observation time (defaults to current UTC time).

    Returns:
        ReconciliationResult.

    Raises:
        InvariantViolation: Nothing is written for the entity.
        PersistenceConflict: The transaction was rolled back.
    """
    now = now or utcnow()
    org = incoming.organization_number

    with repository.entity_transaction(org) as tx:
        stored = tx.load_company(org)
        current_rows = tx.load_current_addresses(stored.id) if stored else []
        result = diff_entity(incoming, stored, current_rows, now)
        tx.apply(result.mutations)

    logger.debug(
        "Reconciled %s: %s %s",
        org, result.classification.value,
        {kind.value: c.value for kind, c in result.address_changes.items()},
    )
    return result
