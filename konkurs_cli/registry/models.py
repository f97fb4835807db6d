"""Data models for registry collection and address-history reconciliation."""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum


# Bumped whenever the raw payload mapping in brreg_client changes shape.
RAW_SCHEMA_VERSION = 1


class AddressKind(Enum):
    """Kind of registered address tracked in address history."""
    BUSINESS = "business"
    MAILING = "mailing"


class CompanyStatus(Enum):
    """Lifecycle status of a registered entity."""
    ACTIVE = "active"
    BANKRUPT = "bankrupt"
    DISSOLVED = "dissolved"


class Classification(Enum):
    """Outcome of reconciling one incoming record."""
    NEW = "new"
    UPDATED = "updated"
    MOVED = "moved"
    UNCHANGED = "unchanged"


class PriorityTier(Enum):
    """Collection priority of a municipality."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass
class RawAddress:
    """Address block exactly as delivered by the registry.

    Every field may be missing upstream; defaulting happens in the
    normalizer, not here.
    """
    address_lines: List[str] = field(default_factory=list)
    postal_code: Optional[str] = None
    postal_city: Optional[str] = None
    municipality_code: Optional[str] = None
    municipality_name: Optional[str] = None
    country_code: Optional[str] = None


@dataclass
class RawEntity:
    """Registry entity payload (versioned)."""
    organization_number: str
    name: Optional[str] = None
    legal_form: Optional[str] = None
    registration_date: Optional[str] = None
    bankrupt: bool = False
    under_liquidation: bool = False
    under_forced_liquidation: bool = False
    deletion_date: Optional[str] = None
    business_address: Optional[RawAddress] = None
    mailing_address: Optional[RawAddress] = None
    schema_version: int = RAW_SCHEMA_VERSION
    raw_payload: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class NormalizedAddress:
    """Canonical address used for comparison and storage.

    All fields are strings, never None. Two addresses are identical
    iff their identity tuples match exactly.
    """
    line: str = ""
    postal_code: str = ""
    municipality_code: str = ""
    municipality_name: str = ""
    postal_city: str = ""

    def identity(self) -> Tuple[str, str, str, str]:
        """Return the fields that define address equality."""
        return (self.line, self.postal_code, self.municipality_code, self.municipality_name)

    def is_empty(self) -> bool:
        """Check if the address carries no information at all."""
        return not any(self.identity())

    def format_oneline(self) -> str:
        """Format address as single line for display."""
        parts = []
        if self.line:
            parts.append(self.line)
        if self.postal_code or self.postal_city:
            parts.append(f"{self.postal_code} {self.postal_city}".strip())
        return ", ".join(parts) if parts else "(no address)"


@dataclass
class NormalizedEntity:
    """Incoming entity after normalization, ready for reconciliation."""
    organization_number: str
    name: str = ""
    legal_form: str = ""
    status: CompanyStatus = CompanyStatus.ACTIVE
    registration_date: Optional[date] = None
    addresses: Dict[AddressKind, NormalizedAddress] = field(default_factory=dict)

    @property
    def primary_address(self) -> Optional[NormalizedAddress]:
        """Business address, falling back to the mailing address."""
        return self.addresses.get(AddressKind.BUSINESS) or self.addresses.get(AddressKind.MAILING)


@dataclass
class StoredCompany:
    """Company row as held by the repository."""
    id: str
    organization_number: str
    name: str = ""
    legal_form: str = ""
    status: CompanyStatus = CompanyStatus.ACTIVE
    registration_date: Optional[date] = None
    current_address: str = ""
    current_postal_code: str = ""
    current_kommune_number: str = ""
    current_kommune_name: str = ""
    last_synced_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


@dataclass
class AddressHistoryRecord:
    """One validity interval of an entity's address for one kind."""
    id: str
    company_id: str
    organization_number: str
    kind: AddressKind
    address: NormalizedAddress
    valid_from: datetime
    valid_to: Optional[datetime] = None
    is_current: bool = True

    def covers(self, moment: datetime) -> bool:
        """Check if the record was valid at the given moment ([from, to))."""
        if moment < self.valid_from:
            return False
        return self.valid_to is None or moment < self.valid_to


@dataclass
class Kommune:
    """Municipality reference entry."""
    number: str
    name: str
    county: str = ""
    region: str = ""
    priority: PriorityTier = PriorityTier.LOW
    postal_codes: Tuple[str, ...] = ()


@dataclass
class SyncWatermark:
    """Last successful collection point for one municipality."""
    kommune_number: str
    last_synced_at: Optional[datetime] = None
    covered_through: Optional[date] = None
    cursor_filter: Optional[str] = None
    cursor_page: Optional[int] = None
    updated_at: Optional[datetime] = None


@dataclass
class SyncCoverage:
    """A completed collection and the calendar days it covers."""
    kommune_number: str
    covered_from: date
    covered_to: date
    completed_at: Optional[datetime] = None


@dataclass(frozen=True)
class RegistryFilter:
    """Query filter for one paginated registry listing."""
    kommune_number: Optional[str] = None
    postal_code: Optional[str] = None
    since: Optional[date] = None
    until: Optional[date] = None
    page: int = 0
    page_size: int = 1000

    def key(self) -> str:
        """Stable identifier of the filter, ignoring the page number."""
        return "|".join([
            self.kommune_number or "",
            self.postal_code or "",
            self.since.isoformat() if self.since else "",
            self.until.isoformat() if self.until else "",
            str(self.page_size),
        ])


@dataclass
class RegistryPage:
    """One page of registry results."""
    entities: List[RawEntity]
    page: int
    has_more: bool
    total_available: int
    total_pages: int = 0
    ceiling_reached: bool = False
