"""Address formatting and entity normalization.

All defaulting of missing registry fields happens here. Downstream code can
rely on normalized strings never being None, so address equality is total.
"""

from datetime import date, datetime
from typing import Dict, Optional

from konkurs_cli.registry.models import (
    AddressKind,
    CompanyStatus,
    NormalizedAddress,
    NormalizedEntity,
    RawAddress,
    RawEntity,
)


# Organisation form of a bankruptcy estate (konkursbo).
BANKRUPTCY_ESTATE_FORM = "KBO"


def _clean(value: Optional[str]) -> str:
    if value is None:
        return ""
    return " ".join(str(value).split())


def normalize_municipality_code(code: Optional[str]) -> str:
    """Normalize a kommune number to four digits.

    Args:
        code: Raw kommune number, possibly missing leading zeros.

    Returns:
        Four-digit code, or the cleaned input if it is not numeric.
    """
    cleaned = _clean(code)
    if cleaned.isdigit() and len(cleaned) < 4:
        return cleaned.zfill(4)
    return cleaned


def format_address_line(lines) -> str:
    """Join street lines into one comma-separated line."""
    if not lines:
        return ""
    return ", ".join(part for part in (_clean(line) for line in lines) if part)


def normalize_address(raw: Optional[RawAddress]) -> NormalizedAddress:
    """Turn a raw address block into its canonical form.

    Args:
        raw: Address as delivered by the registry, or None.

    Returns:
        NormalizedAddress; an empty one if raw is None.
    """
    if raw is None:
        return NormalizedAddress()

    return NormalizedAddress(
        line=format_address_line(raw.address_lines),
        postal_code=_clean(raw.postal_code),
        municipality_code=normalize_municipality_code(raw.municipality_code),
        municipality_name=_clean(raw.municipality_name),
        postal_city=_clean(raw.postal_city),
    )


def addresses_identical(a: NormalizedAddress, b: NormalizedAddress) -> bool:
    """Exact, case-sensitive comparison of the four identity fields."""
    return a.identity() == b.identity()


def parse_date(value: Optional[str]) -> Optional[date]:
    """Parse a registry date (YYYY-MM-DD, optionally with a time part)."""
    if not value:
        return None
    try:
        return datetime.strptime(value[:10], "%Y-%m-%d").date()
    except (ValueError, TypeError):
        return None


def derive_status(raw: RawEntity) -> CompanyStatus:
    """Derive lifecycle status from the registry flags.

    A bankruptcy flag or a konkursbo legal form wins over dissolution
    markers.
    """
    if raw.bankrupt or (raw.legal_form or "").upper() == BANKRUPTCY_ESTATE_FORM:
        return CompanyStatus.BANKRUPT
    if raw.deletion_date or raw.under_liquidation or raw.under_forced_liquidation:
        return CompanyStatus.DISSOLVED
    return CompanyStatus.ACTIVE


def normalize_entity(raw: RawEntity) -> NormalizedEntity:
    """Normalize a raw registry entity.

    Only address kinds carrying at least one identity field are kept; an
    entity with neither address is still a valid entity.

    Args:
        raw: Parsed registry entity.

    Returns:
        NormalizedEntity.
    """
    addresses: Dict[AddressKind, NormalizedAddress] = {}
    for kind, raw_address in (
        (AddressKind.BUSINESS, raw.business_address),
        (AddressKind.MAILING, raw.mailing_address),
    ):
        normalized = normalize_address(raw_address)
        if not normalized.is_empty():
            addresses[kind] = normalized

    return NormalizedEntity(
        organization_number=_clean(raw.organization_number).replace(" ", ""),
        name=_clean(raw.name),
        legal_form=_clean(raw.legal_form),
        status=derive_status(raw),
        registration_date=parse_date(raw.registration_date),
        addresses=addresses,
    )
