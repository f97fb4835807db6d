"""Registry collection and address-history reconciliation engine."""

from konkurs_cli.registry.models import (
    AddressHistoryRecord,
    AddressKind,
    Classification,
    CompanyStatus,
    Kommune,
    NormalizedAddress,
    NormalizedEntity,
    PriorityTier,
    RawAddress,
    RawEntity,
    RegistryFilter,
    RegistryPage,
    StoredCompany,
    SyncCoverage,
    SyncWatermark,
)

__all__ = [
    "AddressHistoryRecord",
    "AddressKind",
    "Classification",
    "CompanyStatus",
    "Kommune",
    "NormalizedAddress",
    "NormalizedEntity",
    "PriorityTier",
    "RawAddress",
    "RawEntity",
    "RegistryFilter",
    "RegistryPage",
    "StoredCompany",
    "SyncCoverage",
    "SyncWatermark",
]
