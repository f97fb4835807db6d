"""Kommune-scoped bulk collection.

Each kommune is collected as one unit: pages are fetched in order, every
entity is reconciled in its own transaction, and the kommune's sync
watermark advances only when the whole kommune completed cleanly.

State machine per kommune::

    INIT -> FETCHING <-> RECONCILING -> WATERMARK_COMMIT -> DONE

Any state may end in FAILED. A failure in one kommune is logged and
recorded in its stats; the run then moves on to the next kommune.
"""

import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional

from konkurs_cli import kommuner as kommune_reference
from konkurs_cli.registry.brreg_client import BrregClient, fetch_with_backoff, is_ceiling_reached
from konkurs_cli.registry.models import (
    Classification,
    Kommune,
    RegistryFilter,
    RegistryPage,
)
from konkurs_cli.registry.normalize import normalize_entity
from konkurs_cli.registry.reconcile import InvariantViolation, ReconciliationResult, reconcile, utcnow
from konkurs_cli.registry.storage import PersistenceConflict

logger = logging.getLogger(__name__)


DEFAULT_WORKERS = 1
MAX_WORKERS = 4

SCOPE_ALL = "all"
SCOPE_PRIORITY = "priority"
SCOPE_KOMMUNE = "kommune"
SCOPES = (SCOPE_ALL, SCOPE_PRIORITY, SCOPE_KOMMUNE)


class CollectorState(Enum):
    INIT = "init"
    FETCHING = "fetching"
    RECONCILING = "reconciling"
    WATERMARK_COMMIT = "watermark_commit"
    DONE = "done"
    FAILED = "failed"


def get_collector_workers() -> int:
    """Get worker count from COLLECTOR_WORKERS, bounded to 1..MAX_WORKERS."""
    raw = os.environ.get("COLLECTOR_WORKERS")
    if raw is None or raw.strip() == "":
        return DEFAULT_WORKERS
    try:
        workers = int(raw)
    except ValueError:
        raise ValueError(f"Invalid value for COLLECTOR_WORKERS: {raw!r}")
    return max(1, min(workers, MAX_WORKERS))


@dataclass
class KommuneStats:
    """Collection statistics for one kommune."""
    kommune_number: str
    kommune_name: str = ""
    state: CollectorState = CollectorState.INIT
    seen: int = 0
    new: int = 0
    updated: int = 0
    moved: int = 0
    unchanged: int = 0
    errors: int = 0
    pages: int = 0
    elapsed_seconds: float = 0.0
    ceiling_reached: bool = False
    watermark_advanced: bool = False
    covered_from: Optional[date] = None
    covered_to: Optional[date] = None
    error: Optional[str] = None

    @property
    def processed(self) -> int:
        return self.new + self.updated + self.moved + self.unchanged

    @property
    def success(self) -> bool:
        return self.state == CollectorState.DONE and self.errors == 0 and not self.ceiling_reached

    def record(self, result: ReconciliationResult) -> None:
        if result.classification == Classification.NEW:
            self.new += 1
        elif result.classification == Classification.MOVED:
            self.moved += 1
        elif result.classification == Classification.UPDATED:
            self.updated += 1
        else:
            self.unchanged += 1

    def counts(self) -> Dict[str, int]:
        return {
            "seen": self.seen,
            "new": self.new,
            "updated": self.updated,
            "moved": self.moved,
            "unchanged": self.unchanged,
        }


@dataclass
class RunStats:
    """Aggregate statistics for one collection run."""
    kommuner: List[KommuneStats] = field(default_factory=list)
    started_at: Optional[datetime] = None
    elapsed_seconds: float = 0.0
    cancelled: bool = False
    skipped: List[str] = field(default_factory=list)

    def _sum(self, name: str) -> int:
        return sum(getattr(k, name) for k in self.kommuner)

    @property
    def seen(self) -> int:
        return self._sum("seen")

    @property
    def processed(self) -> int:
        return self._sum("processed")

    @property
    def new(self) -> int:
        return self._sum("new")

    @property
    def updated(self) -> int:
        return self._sum("updated")

    @property
    def moved(self) -> int:
        return self._sum("moved")

    @property
    def unchanged(self) -> int:
        return self._sum("unchanged")

    @property
    def errors(self) -> int:
        return self._sum("errors")

    @property
    def failed_kommuner(self) -> List[str]:
        return [k.kommune_number for k in self.kommuner if not k.success]

    @property
    def success(self) -> bool:
        return not self.cancelled and all(k.success for k in self.kommuner)

    def get(self, kommune_number: str) -> Optional[KommuneStats]:
        for stats in self.kommuner:
            if stats.kommune_number == kommune_number:
                return stats
        return None


@dataclass
class ProgressEvent:
    """Progress notification delivered to the caller's callback."""
    event: str
    kommune_number: Optional[str] = None
    state: Optional[CollectorState] = None
    page: Optional[int] = None
    message: str = ""
    stats: Optional[KommuneStats] = None


ProgressCallback = Callable[[ProgressEvent], None]


@dataclass
class FilterPass:
    """Outcome of paging through one filter."""
    ceiling_reached: bool = False
    total_available: int = 0
    accounted: int = 0


class BulkCollector:
    """Collects kommuner through the registry client into a repository.

    Args:
        repository: PostgresRepository or InMemoryRepository.
        client: Registry client; its limiter paces every worker.
        workers: Concurrent kommune streams (pages within one kommune are
            always sequential).
        progress: Optional callback, may be called from worker threads.
        stop_event: Checked before each kommune starts.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        repository,
        client: BrregClient,
        workers: int = DEFAULT_WORKERS,
        progress: Optional[ProgressCallback] = None,
        stop_event: Optional[threading.Event] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if not 1 <= workers <= MAX_WORKERS:
            raise ValueError(f"Workers must be between 1 and {MAX_WORKERS}, got {workers}")
        self.repository = repository
        self.client = client
        self.workers = workers
        self.progress = progress
        self.stop_event = stop_event or threading.Event()
        self.clock = clock
        self.sleep = sleep
        self._progress_lock = threading.Lock()

    def _emit(self, event: ProgressEvent) -> None:
        if self.progress is None:
            return
        with self._progress_lock:
            self.progress(event)

    def _set_state(self, stats: KommuneStats, state: CollectorState, **kwargs) -> None:
        stats.state = state
        self._emit(ProgressEvent("state", stats.kommune_number, state, stats=stats, **kwargs))

    def run(
        self,
        kommuner: List[Kommune],
        since: Optional[date] = None,
        until: Optional[date] = None,
        incremental: bool = False,
    ) -> RunStats:
        """Collect a list of kommuner.

        Args:
            kommuner: Kommuner in processing order.
            since: Only entities registered on or after this date.
            until: Only entities registered on or before this date.
            incremental: Start each kommune the day after its watermark.

        Returns:
            RunStats with one KommuneStats per started kommune.
        """
        run = RunStats(started_at=self.clock())
        started = time.monotonic()
        self._emit(ProgressEvent("run_started", message=f"{len(kommuner)} kommuner"))

        def collect(kommune: Kommune) -> Optional[KommuneStats]:
            if self.stop_event.is_set():
                return None
            return self.collect_kommune(kommune, since=since, until=until, incremental=incremental)

        if self.workers == 1:
            results = []
            for kommune in kommuner:
                results.append(collect(kommune))
        else:
            with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="collector") as pool:
                results = list(pool.map(collect, kommuner))

        for kommune, stats in zip(kommuner, results):
            if stats is None:
                run.skipped.append(kommune.number)
            else:
                run.kommuner.append(stats)

        run.cancelled = bool(run.skipped)
        run.elapsed_seconds = time.monotonic() - started
        if run.cancelled:
            logger.warning("Run stopped, %d kommuner not started", len(run.skipped))
        self._emit(ProgressEvent("run_finished", message=f"{run.processed} processed, {run.errors} errors"))
        return run

    def _incremental_since(self, kommune_number: str) -> Optional[date]:
        watermark = self.repository.get_watermark(kommune_number)
        if watermark is None or watermark.covered_through is None:
            return None
        return min(watermark.covered_through + timedelta(days=1), self.clock().date())

    def collect_kommune(
        self,
        kommune: Kommune,
        since: Optional[date] = None,
        until: Optional[date] = None,
        incremental: bool = False,
    ) -> KommuneStats:
        """Collect one kommune as a unit.

        Never raises for upstream or repository failures; they are
        recorded on the returned stats.

        Args:
            kommune: Kommune to collect.
            since: Registration-date lower bound.
            until: Registration-date upper bound.
            incremental: Replace ``since`` with the day after the watermark.
        """
        stats = KommuneStats(kommune.number, kommune.name)
        started = time.monotonic()
        synced_at = self.clock()
        self._emit(ProgressEvent("kommune_started", kommune.number, stats.state, stats=stats))

        try:
            if incremental:
                since = self._incremental_since(kommune.number)
            base = self.client.make_filter(kommune_number=kommune.number, since=since, until=until)
            base_pass = self._collect_filter(base, stats)
            if base_pass.ceiling_reached:
                self._collect_by_postal_code(base, base_pass.total_available, stats)

            if stats.errors or stats.ceiling_reached:
                logger.warning(
                    "Kommune %s finished with %d errors%s; watermark not advanced",
                    kommune.number, stats.errors,
                    ", unresolved result ceiling" if stats.ceiling_reached else "",
                )
            else:
                self._set_state(stats, CollectorState.WATERMARK_COMMIT)
                covered_from, covered_to = self._covered_range(kommune.number, since, until, synced_at)
                self.repository.complete_sync(
                    kommune.number, synced_at, covered_from, covered_to, stats.counts()
                )
                stats.watermark_advanced = True
                stats.covered_from, stats.covered_to = covered_from, covered_to
            self._set_state(stats, CollectorState.DONE)
        except Exception as e:
            stats.errors += 1
            stats.error = str(e)
            logger.error("Collection of kommune %s failed: %s", kommune.number, e, exc_info=True)
            self._set_state(stats, CollectorState.FAILED, message=str(e))
        finally:
            stats.elapsed_seconds = time.monotonic() - started

        self._emit(ProgressEvent("kommune_finished", kommune.number, stats.state, stats=stats))
        return stats

    def _covered_range(self, kommune_number: str, since: Optional[date], until: Optional[date], synced_at: datetime):
        today = synced_at.date()
        covered_to = min(until, today) if until else today
        if since:
            covered_from = since
        else:
            # An unfiltered snapshot covers everything since the last watermark.
            watermark = self.repository.get_watermark(kommune_number)
            if watermark and watermark.covered_through:
                covered_from = watermark.covered_through + timedelta(days=1)
            else:
                covered_from = today
        return min(covered_from, covered_to), covered_to

    def _resume_page(self, base: RegistryFilter) -> int:
        watermark = self.repository.get_watermark(base.kommune_number)
        if watermark and watermark.cursor_filter == base.key() and watermark.cursor_page is not None:
            if is_ceiling_reached(base.page_size, watermark.cursor_page):
                logger.info(
                    "Cursor for %s is at the result ceiling; starting from page 0",
                    base.key(),
                )
                return 0
            logger.info(
                "Resuming kommune %s filter %s after page %d",
                base.kommune_number, base.key(), watermark.cursor_page,
            )
            return watermark.cursor_page + 1
        return 0

    def _fetch(self, flt: RegistryFilter) -> RegistryPage:
        config = self.client.config
        return fetch_with_backoff(
            self.client.fetch_page,
            flt,
            max_retries=config.max_retries,
            backoff_seconds=config.backoff_seconds,
            sleep=self.sleep,
        )

    def _collect_filter(self, base: RegistryFilter, stats: KommuneStats) -> FilterPass:
        """Page through one filter.

        Pages skipped by a resumed cursor count as accounted for, since a
        previous run reconciled them in full.

        Returns:
            FilterPass; ``ceiling_reached`` is set if pagination stopped at
            the result ceiling.
        """
        page_number = self._resume_page(base)
        result = FilterPass(accounted=page_number * base.page_size)
        # The cursor never moves past a page that had errors.
        clean = True
        while True:
            self._set_state(stats, CollectorState.FETCHING, page=page_number)
            page = self._fetch(replace(base, page=page_number))
            stats.pages += 1
            result.accounted += len(page.entities)
            result.total_available = page.total_available

            self._set_state(stats, CollectorState.RECONCILING, page=page_number)
            page_errors = self._reconcile_page(page, stats)
            clean = clean and page_errors == 0
            # A cursor on the ceiling page would resume past the ceiling.
            if clean and not page.ceiling_reached:
                self.repository.save_cursor(base.kommune_number, base.key(), page_number)

            self._emit(ProgressEvent(
                "page", stats.kommune_number, stats.state, page=page_number,
                message=f"{len(page.entities)} entities, {page_errors} errors",
                stats=stats,
            ))

            if page.ceiling_reached:
                logger.warning(
                    "Result ceiling reached for %s at page %d (%d available)",
                    base.key(), page_number, page.total_available,
                )
                result.ceiling_reached = True
                return result
            if not page.has_more:
                return result
            page_number += 1

    def _collect_by_postal_code(self, base: RegistryFilter, total_available: int, stats: KommuneStats) -> None:
        """Collect a kommune past the result ceiling, one postal code at a time.

        The ceiling stays unresolved unless the narrowed filters together
        account for every entity the unnarrowed filter reported.
        """
        postal_codes = self.repository.get_postal_codes(base.kommune_number)
        if not postal_codes:
            logger.warning(
                "No postal codes known for kommune %s; cannot narrow past the result ceiling",
                base.kommune_number,
            )
            stats.ceiling_reached = True
            return

        logger.info(
            "Narrowing kommune %s to %d postal codes", base.kommune_number, len(postal_codes)
        )
        accounted = 0
        for postal_code in postal_codes:
            narrowed = self._collect_filter(replace(base, postal_code=postal_code), stats)
            accounted += narrowed.accounted
            if narrowed.ceiling_reached:
                stats.ceiling_reached = True

        if accounted < total_available:
            logger.warning(
                "Postal codes of kommune %s account for %d of %d entities",
                base.kommune_number, accounted, total_available,
            )
            stats.ceiling_reached = True

    def _reconcile_page(self, page: RegistryPage, stats: KommuneStats) -> int:
        errors = 0
        for raw in page.entities:
            stats.seen += 1
            try:
                result = reconcile(self.repository, normalize_entity(raw), now=self.clock())
            except InvariantViolation as e:
                errors += 1
                logger.error("%s; entity skipped for manual inspection", e)
            except PersistenceConflict as e:
                errors += 1
                logger.warning("%s; will be retried next run", e)
            else:
                stats.record(result)
        stats.errors += errors
        return errors


def select_kommuner(scope: str, kommune_number: Optional[str] = None) -> List[Kommune]:
    """Resolve a run scope to kommuner in processing order.

    Raises:
        ValueError: On an unknown scope or a missing/invalid kommune number.
    """
    if scope == SCOPE_ALL:
        return kommune_reference.get_all_kommuner()
    if scope == SCOPE_PRIORITY:
        return kommune_reference.get_high_priority_kommuner()
    if scope == SCOPE_KOMMUNE:
        if not kommune_number:
            raise ValueError("A kommune number is required for scope 'kommune'")
        number = kommune_number.strip().zfill(4)
        if not (number.isdigit() and len(number) == 4):
            raise ValueError(f"Invalid kommune number: {kommune_number}")
        return [kommune_reference.get_kommune(number) or Kommune(number=number, name="")]
    raise ValueError(f"Unknown scope: {scope} (expected one of {', '.join(SCOPES)})")


def run_collection(
    repository,
    client: BrregClient,
    scope: str = SCOPE_ALL,
    kommune_number: Optional[str] = None,
    since: Optional[date] = None,
    until: Optional[date] = None,
    incremental: bool = False,
    workers: int = DEFAULT_WORKERS,
    progress: Optional[ProgressCallback] = None,
    stop_event: Optional[threading.Event] = None,
) -> RunStats:
    """Run a collection over a scope.

    Args:
        repository: Target repository.
        client: Registry client.
        scope: "all", "priority" or "kommune".
        kommune_number: Required for scope "kommune".
        since: Registration-date lower bound.
        until: Registration-date upper bound.
        incremental: Derive ``since`` per kommune from its watermark.
        workers: Concurrent kommune streams.
        progress: Optional progress callback.
        stop_event: Set to stop before the next kommune.

    Returns:
        RunStats.
    """
    if since and until and since > until:
        raise ValueError(f"Invalid date range: {since} is after {until}")
    if incremental and since:
        raise ValueError("--since cannot be combined with incremental collection")

    kommuner = select_kommuner(scope, kommune_number)
    collector = BulkCollector(
        repository, client, workers=workers, progress=progress, stop_event=stop_event
    )
    logger.info("Collecting %d kommuner (scope=%s, workers=%d)", len(kommuner), scope, workers)
    return collector.run(kommuner, since=since, until=until, incremental=incremental)
