"""Enhetsregisteret (Brønnøysundregistrene) API client.

Official API Documentation:
- Base URL: https://data.brreg.no/enhetsregisteret/api
- Listing endpoint: /enheter (HAL JSON, ``_embedded.enheter`` + ``page``)
- The API is public and free to use, no authentication required
- A single filter can only be paged through its first 10,000 results;
  requests past that ceiling are rejected upstream

Environment Variables:
- BRREG_API_BASE_URL: Override default API base URL (optional)
- BRREG_REQUEST_TIMEOUT: Request timeout in seconds (default: 30)
- BRREG_PAGE_SIZE: Entities per page, at most 1000 (default: 1000)
- BRREG_REQUESTS_PER_SECOND: Shared request rate (default: 5)
- BRREG_MAX_RETRIES: Retries for unavailable upstream (default: 3)
- BRREG_BACKOFF_SECONDS: First retry delay, doubled per attempt (default: 1.0)
"""

import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import requests
from requests.exceptions import RequestException, Timeout

from konkurs_cli.registry.models import (
    RawAddress,
    RawEntity,
    RegistryFilter,
    RegistryPage,
)
from konkurs_cli.registry.ratelimit import TokenBucket

logger = logging.getLogger(__name__)


# Default configuration
DEFAULT_BRREG_API_BASE_URL = "https://data.brreg.no/enhetsregisteret/api"
DEFAULT_TIMEOUT = 30
DEFAULT_REQUESTS_PER_SECOND = 5.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_SECONDS = 1.0
MAX_PAGE_SIZE = 1000
RESULT_CEILING = 10000
USER_AGENT = "konkurs-cli/0.1.0"


class RegistryClientError(Exception):
    """Base exception for registry client errors."""
    pass


class UpstreamUnavailable(RegistryClientError):
    """Raised on network errors, timeouts and 5xx/429 responses."""
    pass


class UpstreamRejected(RegistryClientError):
    """Raised when the registry rejects the request itself (4xx)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RegistryParseError(UpstreamUnavailable):
    """Raised when a response cannot be parsed."""
    pass


@dataclass
class BrregConfig:
    """Registry client settings."""
    base_url: str = DEFAULT_BRREG_API_BASE_URL
    timeout: int = DEFAULT_TIMEOUT
    page_size: int = MAX_PAGE_SIZE
    requests_per_second: float = DEFAULT_REQUESTS_PER_SECOND
    max_retries: int = DEFAULT_MAX_RETRIES
    backoff_seconds: float = DEFAULT_BACKOFF_SECONDS


def _env_number(name: str, default, cast):
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ValueError(f"Invalid value for {name}: {raw!r}")


def get_brreg_config() -> BrregConfig:
    """Get registry API configuration from environment.

    Returns:
        BrregConfig with defaults for unset variables.
    """
    page_size = _env_number("BRREG_PAGE_SIZE", MAX_PAGE_SIZE, int)
    return BrregConfig(
        base_url=os.environ.get("BRREG_API_BASE_URL", DEFAULT_BRREG_API_BASE_URL),
        timeout=_env_number("BRREG_REQUEST_TIMEOUT", DEFAULT_TIMEOUT, int),
        page_size=max(1, min(page_size, MAX_PAGE_SIZE)),
        requests_per_second=_env_number(
            "BRREG_REQUESTS_PER_SECOND", DEFAULT_REQUESTS_PER_SECOND, float
        ),
        max_retries=_env_number("BRREG_MAX_RETRIES", DEFAULT_MAX_RETRIES, int),
        backoff_seconds=_env_number("BRREG_BACKOFF_SECONDS", DEFAULT_BACKOFF_SECONDS, float),
    )


def is_ceiling_reached(page_size: int, page: int) -> bool:
    """Check if fetching the page after ``page`` would cross the result ceiling."""
    return page_size * (page + 2) > RESULT_CEILING


def build_query_params(flt: RegistryFilter) -> Dict[str, Any]:
    """Build listing query parameters for a filter.

    Args:
        flt: Registry filter.

    Returns:
        Dict of query parameters.

    Raises:
        ValueError: If the filter is malformed.
    """
    if not 1 <= flt.page_size <= MAX_PAGE_SIZE:
        raise ValueError(f"Invalid page size: {flt.page_size} (must be 1..{MAX_PAGE_SIZE})")
    if flt.page < 0:
        raise ValueError(f"Invalid page: {flt.page} (must be >= 0)")
    if flt.page_size * (flt.page + 1) > RESULT_CEILING:
        raise ValueError(
            f"Page {flt.page} with size {flt.page_size} is past the "
            f"{RESULT_CEILING} result ceiling"
        )
    if flt.since and flt.until and flt.since > flt.until:
        raise ValueError(f"Invalid date range: {flt.since} is after {flt.until}")

    params: Dict[str, Any] = {"size": flt.page_size, "page": flt.page}

    if flt.kommune_number:
        kommune = flt.kommune_number.strip()
        if not (kommune.isdigit() and len(kommune) == 4):
            raise ValueError(f"Invalid kommune number: {kommune} (must be 4 digits)")
        params["kommunenummer"] = kommune

    if flt.postal_code:
        params["forretningsadresse.postnummer"] = flt.postal_code.strip()

    if flt.since:
        params["fraRegistreringsdatoEnhetsregisteret"] = flt.since.isoformat()
    if flt.until:
        params["tilRegistreringsdatoEnhetsregisteret"] = flt.until.isoformat()

    # Stable ordering keeps page boundaries consistent between requests.
    params["sort"] = "organisasjonsnummer,asc"
    return params


def _extract_address(addr_data: Optional[Dict[str, Any]]) -> Optional[RawAddress]:
    """Extract address from a registry address block."""
    if not addr_data or not isinstance(addr_data, dict):
        return None

    lines = addr_data.get("adresse") or []
    if isinstance(lines, str):
        lines = [lines]

    return RawAddress(
        address_lines=[str(line) for line in lines if line is not None],
        postal_code=addr_data.get("postnummer"),
        postal_city=addr_data.get("poststed"),
        municipality_code=addr_data.get("kommunenummer"),
        municipality_name=addr_data.get("kommune"),
        country_code=addr_data.get("landkode"),
    )


def parse_raw_entity(data: Dict[str, Any]) -> RawEntity:
    """Map one registry entity payload onto the raw entity schema.

    Args:
        data: Entity JSON object.

    Returns:
        RawEntity.

    Raises:
        RegistryParseError: If the payload has no organization number.
    """
    if not isinstance(data, dict):
        raise RegistryParseError(f"Entity payload is not an object: {type(data).__name__}")

    org_number = data.get("organisasjonsnummer") or data.get("organizationNumber")
    if not org_number:
        raise RegistryParseError("Entity payload has no organisasjonsnummer")

    org_form = data.get("organisasjonsform") or {}
    if isinstance(org_form, dict):
        legal_form = org_form.get("kode")
    else:
        legal_form = str(org_form)

    return RawEntity(
        organization_number=str(org_number),
        name=data.get("navn"),
        legal_form=legal_form,
        registration_date=data.get("registreringsdatoEnhetsregisteret"),
        bankrupt=bool(data.get("konkurs", False)),
        under_liquidation=bool(data.get("underAvvikling", False)),
        under_forced_liquidation=bool(
            data.get("underTvangsavviklingEllerTvangsopplosning", False)
        ),
        deletion_date=data.get("slettedato"),
        business_address=_extract_address(data.get("forretningsadresse")),
        mailing_address=_extract_address(data.get("postadresse")),
        raw_payload=data,
    )


def parse_page(data: Dict[str, Any], flt: RegistryFilter) -> RegistryPage:
    """Parse a listing response into a RegistryPage.

    Accepts both the HAL shape (``_embedded.enheter``) and a flat
    ``entities`` list.

    Args:
        data: Decoded response body.
        flt: Filter the page was requested with.

    Returns:
        RegistryPage with pagination and ceiling flags computed.
    """
    if not isinstance(data, dict):
        raise RegistryParseError("Listing response is not an object")

    if "entities" in data:
        items = data.get("entities") or []
    else:
        items = (data.get("_embedded") or {}).get("enheter") or []

    entities: List[RawEntity] = [parse_raw_entity(item) for item in items]

    page_info = data.get("page") or {}
    total_pages = int(page_info.get("totalPages") or 0)
    total_elements = int(page_info.get("totalElements") or len(entities))
    number = int(page_info.get("number", flt.page) or 0)

    more_upstream = bool(entities) and number < total_pages - 1
    ceiling = more_upstream and is_ceiling_reached(flt.page_size, number)

    return RegistryPage(
        entities=entities,
        page=number,
        has_more=more_upstream and not ceiling,
        total_available=total_elements,
        total_pages=total_pages,
        ceiling_reached=ceiling,
    )


class BrregClient:
    """Fetches pages of entities from the registry.

    The client performs no retries itself; callers use
    :func:`fetch_with_backoff`. Every request takes a token from the
    shared limiter first.
    """

    def __init__(
        self,
        config: Optional[BrregConfig] = None,
        limiter: Optional[TokenBucket] = None,
        session: Optional[requests.Session] = None,
    ):
        self.config = config or get_brreg_config()
        self.limiter = limiter or TokenBucket(self.config.requests_per_second)
        self.session = session or requests.Session()
        self.session.headers.update({
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
        })

    @property
    def listing_url(self) -> str:
        return f"{self.config.base_url.rstrip('/')}/enheter"

    def make_filter(self, **kwargs) -> RegistryFilter:
        """Build a filter using the configured page size."""
        kwargs.setdefault("page_size", self.config.page_size)
        return RegistryFilter(**kwargs)

    def fetch_page(self, flt: RegistryFilter) -> RegistryPage:
        """Fetch one page of entities.

        Args:
            flt: Filter including page number and size.

        Returns:
            RegistryPage.

        Raises:
            UpstreamRejected: On a malformed filter or a 4xx response.
            UpstreamUnavailable: On network errors, timeouts, 5xx or 429.
            RegistryParseError: If the response cannot be parsed.
        """
        try:
            params = build_query_params(flt)
        except ValueError as e:
            raise UpstreamRejected(str(e))

        self.limiter.acquire()
        logger.debug("GET %s params=%s", self.listing_url, params)

        try:
            response = self.session.get(
                self.listing_url, params=params, timeout=self.config.timeout
            )
        except Timeout:
            raise UpstreamUnavailable(
                f"Request to registry timed out after {self.config.timeout} seconds"
            )
        except RequestException as e:
            raise UpstreamUnavailable(f"Failed to connect to registry: {e}")

        if response.status_code == 429 or response.status_code >= 500:
            raise UpstreamUnavailable(
                f"Registry returned status {response.status_code}: {response.text[:200]}"
            )
        if 400 <= response.status_code < 500:
            raise UpstreamRejected(
                f"Registry rejected request with status {response.status_code}: "
                f"{response.text[:200]}",
                status_code=response.status_code,
            )
        if response.status_code != 200:
            raise UpstreamUnavailable(
                f"Registry returned unexpected status {response.status_code}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise RegistryParseError(f"Failed to parse registry response: {e}")

        return parse_page(data, flt)

    def close(self) -> None:
        self.session.close()


def fetch_with_backoff(
    fetch: Callable[[RegistryFilter], RegistryPage],
    flt: RegistryFilter,
    max_retries: int = DEFAULT_MAX_RETRIES,
    backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> RegistryPage:
    """Call ``fetch`` and retry unavailable-upstream failures.

    Delays grow exponentially: backoff, 2*backoff, 4*backoff... A rejected
    request is never retried.

    Args:
        fetch: Single-attempt page fetch (usually ``BrregClient.fetch_page``).
        flt: Filter to fetch.
        max_retries: Retries after the first attempt.
        backoff_seconds: Delay before the first retry.
        sleep: Sleep function.

    Returns:
        RegistryPage.

    Raises:
        UpstreamUnavailable: When every attempt failed.
        UpstreamRejected: Immediately on rejection.
    """
    attempt = 0
    while True:
        try:
            return fetch(flt)
        except UpstreamRejected:
            raise
        except UpstreamUnavailable as e:
            if attempt >= max_retries:
                logger.warning(
                    "Giving up on page %d of %s after %d attempts: %s",
                    flt.page, flt.key(), attempt + 1, e,
                )
                raise
            delay = backoff_seconds * (2 ** attempt)
            attempt += 1
            logger.warning(
                "Registry unavailable (%s), retry %d/%d in %.1fs",
                e, attempt, max_retries, delay,
            )
            sleep(delay)
