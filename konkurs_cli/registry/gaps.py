"""Coverage gap analysis and backfill planning.

Coverage is counted in whole UTC calendar days. A day is covered when a
completed kommune collection (a ``sync_runs`` row) includes it. Runs of
missing days become gaps, each classified by how recent and how large it
is, and a plan turns the gaps into bounded collection windows.
"""

import logging
import math
import os
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Callable, List, Optional, Set, Tuple

from konkurs_cli import kommuner as kommune_reference
from konkurs_cli.registry.brreg_client import DEFAULT_REQUESTS_PER_SECOND, MAX_PAGE_SIZE
from konkurs_cli.registry.models import Kommune, SyncCoverage
from konkurs_cli.registry.reconcile import utcnow

logger = logging.getLogger(__name__)


DEFAULT_LOOKBACK_DAYS = 365
RECENT_DAYS = 7
MAX_PHASE_DAYS = 31

# Estimated registry records per missing day
RECENT_RECORDS_PER_DAY = 3
HISTORICAL_RECORDS_PER_DAY = 2

QUICK_FILL_MAX_DAYS = 7
COMPLETE_FILL_MAX_DAYS = 90


class GapPriority(Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


_PRIORITY_RANK = {
    GapPriority.CRITICAL: 0,
    GapPriority.HIGH: 1,
    GapPriority.MEDIUM: 2,
    GapPriority.LOW: 3,
}


class FillStrategy(Enum):
    QUICK_FILL = "quick-fill"
    COMPLETE_FILL = "complete-fill"
    STRATEGIC_FILL = "strategic-fill"


def get_lookback_days() -> int:
    """Get analysis window for kommuner without history (GAP_LOOKBACK_DAYS)."""
    raw = os.environ.get("GAP_LOOKBACK_DAYS")
    if raw is None or raw.strip() == "":
        return DEFAULT_LOOKBACK_DAYS
    try:
        days = int(raw)
    except ValueError:
        raise ValueError(f"Invalid value for GAP_LOOKBACK_DAYS: {raw!r}")
    if days < 1:
        raise ValueError(f"Invalid value for GAP_LOOKBACK_DAYS: {raw!r} (must be >= 1)")
    return days


@dataclass
class CoverageGap:
    """Contiguous run of days with no completed collection."""
    start: date
    end: date
    size_days: int
    priority: GapPriority
    estimated_records: int


@dataclass
class CoverageReport:
    """Coverage of one kommune between its earliest data date and today."""
    kommune_number: str
    start: date
    end: date
    total_days: int
    covered_days: int
    coverage_percent: float
    gaps: List[CoverageGap] = field(default_factory=list)
    last_synced_at: Optional[datetime] = None

    @property
    def missing_days(self) -> int:
        return self.total_days - self.covered_days


@dataclass
class PlanPhase:
    """One collection window of a backfill plan."""
    number: int
    start: date
    end: date
    priority: GapPriority
    estimated_records: int
    estimated_api_calls: int
    estimated_seconds: float

    @property
    def size_days(self) -> int:
        return (self.end - self.start).days + 1

    @property
    def description(self) -> str:
        return f"{self.priority.value} fill {self.start.isoformat()}..{self.end.isoformat()} ({self.size_days} days)"


@dataclass
class BackfillPlan:
    """Advisory backfill plan for one kommune."""
    kommune_number: str
    strategy: FillStrategy
    phases: List[PlanPhase]
    report: CoverageReport
    notes: List[str] = field(default_factory=list)

    @property
    def total_api_calls(self) -> int:
        return sum(p.estimated_api_calls for p in self.phases)

    @property
    def total_records(self) -> int:
        return sum(p.estimated_records for p in self.phases)

    @property
    def estimated_seconds(self) -> float:
        return sum(p.estimated_seconds for p in self.phases)

    @property
    def scheduled_days(self) -> int:
        return sum(p.size_days for p in self.phases)


@dataclass
class PhaseResult:
    phase: PlanPhase
    success: bool
    seen: int = 0
    new: int = 0
    updated: int = 0
    errors: int = 0
    duration_seconds: float = 0.0
    error: Optional[str] = None


@dataclass
class ExecutionResult:
    kommune_number: str
    phase_results: List[PhaseResult] = field(default_factory=list)
    total_phases: int = 0
    cancelled: bool = False

    @property
    def phases_completed(self) -> int:
        return sum(1 for r in self.phase_results if r.success)

    @property
    def success(self) -> bool:
        return (
            not self.cancelled
            and len(self.phase_results) == self.total_phases
            and all(r.success for r in self.phase_results)
        )

    @property
    def total_seen(self) -> int:
        return sum(r.seen for r in self.phase_results)

    @property
    def total_errors(self) -> int:
        return sum(r.errors for r in self.phase_results)


@dataclass
class PlanProgress:
    """Progress notification for plan execution."""
    phase: int
    total_phases: int
    description: str
    overall_percent: float
    result: Optional[PhaseResult] = None


def covered_days(coverages: List[SyncCoverage], start: date, end: date) -> Set[date]:
    """Collect the days in [start, end] included in any coverage range."""
    days: Set[date] = set()
    for coverage in coverages:
        day = max(coverage.covered_from, start)
        last = min(coverage.covered_to, end)
        while day <= last:
            days.add(day)
            day += timedelta(days=1)
    return days


def find_missing_ranges(covered: Set[date], start: date, end: date) -> List[Tuple[date, date]]:
    """Merge uncovered days in [start, end] into inclusive ranges."""
    ranges = []
    gap_start = None
    day = start
    while day <= end:
        if day in covered:
            if gap_start is not None:
                ranges.append((gap_start, day - timedelta(days=1)))
                gap_start = None
        elif gap_start is None:
            gap_start = day
        day += timedelta(days=1)
    if gap_start is not None:
        ranges.append((gap_start, end))
    return ranges


def classify_gap(start: date, end: date, today: date) -> GapPriority:
    """Classify a gap: touching the last 7 days is critical, else by size."""
    if end >= today - timedelta(days=RECENT_DAYS - 1):
        return GapPriority.CRITICAL
    size = (end - start).days + 1
    if size < 30:
        return GapPriority.HIGH
    if size < 90:
        return GapPriority.MEDIUM
    return GapPriority.LOW


def estimate_records(start: date, end: date, today: date) -> int:
    size = (end - start).days + 1
    per_day = RECENT_RECORDS_PER_DAY if end >= today else HISTORICAL_RECORDS_PER_DAY
    return size * per_day


def analyze_gaps(
    kommune_number: str,
    repository,
    today: Optional[date] = None,
    lookback_days: Optional[int] = None,
) -> CoverageReport:
    """Compute coverage and gaps for one kommune.

    The analysis window runs from the earliest covered day (or
    ``lookback_days`` back when there is no history) through today.

    Args:
        kommune_number: Four-digit kommune number.
        repository: Repository exposing sync coverage.
        today: Analysis end date (defaults to current UTC date).
        lookback_days: Window for kommuner without history.

    Returns:
        CoverageReport with gaps oldest first.
    """
    today = today or utcnow().date()
    coverages = repository.list_sync_coverage(kommune_number)
    watermark = repository.get_watermark(kommune_number)

    if coverages:
        start = min(min(c.covered_from for c in coverages), today)
    else:
        days = lookback_days or get_lookback_days()
        start = today - timedelta(days=days - 1)

    covered = covered_days(coverages, start, today)
    total = (today - start).days + 1

    gaps = [
        CoverageGap(
            start=gap_start,
            end=gap_end,
            size_days=(gap_end - gap_start).days + 1,
            priority=classify_gap(gap_start, gap_end, today),
            estimated_records=estimate_records(gap_start, gap_end, today),
        )
        for gap_start, gap_end in find_missing_ranges(covered, start, today)
    ]

    percent = 100.0 if len(covered) == total else round(len(covered) / total * 100, 1)
    logger.debug(
        "Kommune %s: %d/%d days covered, %d gaps", kommune_number, len(covered), total, len(gaps)
    )
    return CoverageReport(
        kommune_number=kommune_number,
        start=start,
        end=today,
        total_days=total,
        covered_days=len(covered),
        coverage_percent=percent,
        gaps=gaps,
        last_synced_at=watermark.last_synced_at if watermark else None,
    )


def choose_strategy(missing_days: int) -> FillStrategy:
    if missing_days <= QUICK_FILL_MAX_DAYS:
        return FillStrategy.QUICK_FILL
    if missing_days <= COMPLETE_FILL_MAX_DAYS:
        return FillStrategy.COMPLETE_FILL
    return FillStrategy.STRATEGIC_FILL


def split_window(start: date, end: date, max_days: int = MAX_PHASE_DAYS) -> List[Tuple[date, date]]:
    """Split an inclusive date range into windows of at most max_days, newest first."""
    windows = []
    window_end = end
    while window_end >= start:
        window_start = max(start, window_end - timedelta(days=max_days - 1))
        windows.append((window_start, window_end))
        window_end = window_start - timedelta(days=1)
    return windows


def create_plan(
    kommune_number: str,
    repository,
    today: Optional[date] = None,
    page_size: int = MAX_PAGE_SIZE,
    requests_per_second: float = DEFAULT_REQUESTS_PER_SECOND,
    report: Optional[CoverageReport] = None,
) -> BackfillPlan:
    """Create a phased backfill plan from the kommune's gaps.

    Gaps are scheduled critical first, newest first within a priority.
    Strategic fills schedule only critical and high gaps plus the most
    recent gap, and note the remainder for off-peak scheduling.

    Args:
        kommune_number: Four-digit kommune number.
        repository: Repository exposing sync coverage.
        today: Plan date (defaults to current UTC date).
        page_size: Registry page size used for API call estimates.
        requests_per_second: Limiter rate used for duration estimates.
        report: Existing coverage report to plan from.

    Returns:
        BackfillPlan. Planning never mutates anything.
    """
    report = report or analyze_gaps(kommune_number, repository, today=today)
    strategy = choose_strategy(report.missing_days)

    ordered = sorted(report.gaps, key=lambda g: (_PRIORITY_RANK[g.priority], -g.end.toordinal()))
    if strategy == FillStrategy.STRATEGIC_FILL:
        most_recent = max(report.gaps, key=lambda g: g.end)
        selected = [
            g for g in ordered
            if g.priority in (GapPriority.CRITICAL, GapPriority.HIGH) or g is most_recent
        ]
    else:
        selected = ordered

    phases: List[PlanPhase] = []
    for gap in selected:
        for window_start, window_end in split_window(gap.start, gap.end):
            days = (window_end - window_start).days + 1
            records = math.ceil(gap.estimated_records * days / gap.size_days)
            api_calls = max(1, math.ceil(records / page_size))
            phases.append(PlanPhase(
                number=len(phases) + 1,
                start=window_start,
                end=window_end,
                priority=gap.priority,
                estimated_records=records,
                estimated_api_calls=api_calls,
                estimated_seconds=api_calls / requests_per_second,
            ))

    notes = []
    if not report.gaps:
        notes.append("Coverage is complete; nothing to backfill.")
    skipped = [g for g in report.gaps if g not in selected]
    if skipped:
        notes.append(
            f"{len(skipped)} lower-priority gaps ({sum(g.size_days for g in skipped)} days) "
            f"are not scheduled; run them off-peak."
        )

    return BackfillPlan(
        kommune_number=kommune_number,
        strategy=strategy,
        phases=phases,
        report=report,
        notes=notes,
    )


def execute_plan(
    plan: BackfillPlan,
    collector,
    progress_callback: Optional[Callable[[PlanProgress], None]] = None,
) -> ExecutionResult:
    """Run each plan phase as a date-bounded kommune collection.

    A failed phase is recorded and the next phase still runs. The
    collector's stop event is checked before every phase.

    Args:
        plan: Plan from create_plan.
        collector: BulkCollector to collect with.
        progress_callback: Called before and after each phase.

    Returns:
        ExecutionResult with one PhaseResult per executed phase.
    """
    kommune = kommune_reference.get_kommune(plan.kommune_number) or Kommune(
        number=plan.kommune_number, name=""
    )
    result = ExecutionResult(kommune_number=plan.kommune_number, total_phases=len(plan.phases))
    total = len(plan.phases)

    for index, phase in enumerate(plan.phases):
        if collector.stop_event.is_set():
            result.cancelled = True
            logger.warning("Plan for %s stopped before phase %d", plan.kommune_number, phase.number)
            break

        if progress_callback:
            progress_callback(PlanProgress(phase.number, total, phase.description, index / total * 100))

        stats = collector.collect_kommune(kommune, since=phase.start, until=phase.end)
        phase_result = PhaseResult(
            phase=phase,
            success=stats.success,
            seen=stats.seen,
            new=stats.new,
            updated=stats.updated + stats.moved,
            errors=stats.errors,
            duration_seconds=stats.elapsed_seconds,
            error=stats.error,
        )
        result.phase_results.append(phase_result)

        if progress_callback:
            progress_callback(PlanProgress(
                phase.number, total, phase.description, (index + 1) / total * 100, phase_result
            ))

    return result
