"""Tests for kommune-scoped bulk collection."""

import threading
from datetime import date

import pytest

from konkurs_cli.registry.collector import (
    MAX_WORKERS,
    SCOPE_ALL,
    SCOPE_KOMMUNE,
    SCOPE_PRIORITY,
    BulkCollector,
    CollectorState,
    get_collector_workers,
    run_collection,
    select_kommuner,
)
from konkurs_cli.registry.models import Kommune
from konkurs_cli.registry.reconcile import InvariantViolation
from konkurs_cli.registry.storage import PersistenceConflict

OSLO = Kommune("0301", "OSLO")
RISOR = Kommune("4201", "RISØR")
STAVANGER = Kommune("1103", "STAVANGER")


@pytest.fixture
def collector_for(memory_repo, fixed_now):
    """Build a collector over the in-memory repository with a fixed clock."""
    def build(client, **kwargs):
        return BulkCollector(memory_repo, client, clock=lambda: fixed_now, sleep=lambda s: None, **kwargs)
    return build


class TestCollectKommune:
    """Tests for single-kommune collection."""

    def test_clean_kommune_advances_watermark(self, memory_repo, collector_for, fake_client,
                                              raw_entity, page_builder, fixed_now):
        """Test a clean kommune advances its watermark."""
        client = fake_client({"0301": [
            page_builder([raw_entity("900000001"), raw_entity("900000002")], total_pages=2),
            page_builder([raw_entity("900000003")], page=1, total_pages=2),
        ]})
        stats = collector_for(client).collect_kommune(OSLO)

        assert stats.state == CollectorState.DONE
        assert stats.success
        assert stats.seen == 3
        assert stats.new == 3
        assert stats.pages == 2
        assert stats.watermark_advanced

        watermark = memory_repo.get_watermark("0301")
        assert watermark.last_synced_at == fixed_now
        assert watermark.covered_through == fixed_now.date()
        assert watermark.cursor_page is None
        assert memory_repo.sync_runs[0]["new"] == 3

    def test_second_run_is_unchanged(self, collector_for, fake_client, raw_entity, page_builder):
        """Test a repeat run classifies every entity as unchanged."""
        client = fake_client({"0301": [page_builder([raw_entity("900000001")])]})
        collector = collector_for(client)
        collector.collect_kommune(OSLO)
        stats = collector.collect_kommune(OSLO)

        assert stats.unchanged == 1
        assert stats.new == 0

    def test_upstream_failure_fails_kommune(self, memory_repo, collector_for, fake_client,
                                           raw_entity, page_builder, unavailable):
        """Test an upstream failure leaves the kommune failed."""
        client = fake_client({"0301": [
            page_builder([raw_entity("900000001"), raw_entity("900000002")], total_pages=2),
            unavailable,
        ]})
        stats = collector_for(client).collect_kommune(OSLO)

        assert stats.state == CollectorState.FAILED
        assert stats.errors == 1
        assert stats.new == 2
        assert not stats.watermark_advanced
        watermark = memory_repo.get_watermark("0301")
        assert watermark.last_synced_at is None
        assert watermark.cursor_page == 0

    def test_retries_transient_failure(self, collector_for, fake_client, raw_entity,
                                       page_builder, unavailable):
        """Test a transient failure is retried."""
        client = fake_client({"0301": [unavailable]}, max_retries=2)
        page = page_builder([raw_entity("900000001")])
        calls = []

        def flaky(flt):
            calls.append(flt)
            if len(calls) == 1:
                raise unavailable
            return page

        client.fetch_page = flaky
        stats = collector_for(client).collect_kommune(OSLO)

        assert len(calls) == 2
        assert stats.success

    def test_resumes_after_cursor(self, memory_repo, collector_for, fake_client, raw_entity, page_builder):
        """Test collection resumes after the stored cursor."""
        client = fake_client({"0301": [
            page_builder([raw_entity("900000001"), raw_entity("900000002")], total_pages=2),
            page_builder([raw_entity("900000003")], page=1, total_pages=2),
        ]})
        base = client.make_filter(kommune_number="0301", since=None, until=None)
        memory_repo.save_cursor("0301", base.key(), 0)

        stats = collector_for(client).collect_kommune(OSLO)

        assert [r.page for r in client.requests] == [1]
        assert stats.seen == 1
        assert stats.success

    def test_cursor_for_other_filter_is_ignored(self, memory_repo, collector_for, fake_client,
                                                raw_entity, page_builder):
        """Test a cursor for a different filter is not used."""
        client = fake_client({"0301": [page_builder([raw_entity("900000001")])]})
        memory_repo.save_cursor("0301", "0301||2024-01-01||2", 4)

        collector_for(client).collect_kommune(OSLO)

        assert [r.page for r in client.requests] == [0]

    def test_entity_conflict_blocks_watermark(self, memory_repo, collector_for, fake_client,
                                              raw_entity, page_builder, monkeypatch):
        """Test persistence conflicts block the watermark."""
        client = fake_client({"0301": [page_builder([raw_entity("900000001"), raw_entity("900000002")])]})

        def conflicting(repository, entity, now=None):
            raise PersistenceConflict(entity.organization_number, "could not obtain lock")

        monkeypatch.setattr("konkurs_cli.registry.collector.reconcile", conflicting)
        stats = collector_for(client).collect_kommune(OSLO)

        assert stats.state == CollectorState.DONE
        assert stats.errors == 2
        assert stats.seen == 2
        assert stats.processed == 0
        assert not stats.success
        assert memory_repo.get_watermark("0301") is None

    def test_invariant_violation_skips_entity(self, collector_for, fake_client, raw_entity,
                                              page_builder, monkeypatch):
        """Test an invariant violation skips only that entity."""
        from konkurs_cli.registry import collector as collector_module

        real_reconcile = collector_module.reconcile

        def picky(repository, entity, now=None):
            if entity.organization_number == "900000002":
                raise InvariantViolation(entity.organization_number, None, "more than one current row")
            return real_reconcile(repository, entity, now=now)

        monkeypatch.setattr(collector_module, "reconcile", picky)
        client = fake_client({"0301": [page_builder([raw_entity("900000001"), raw_entity("900000002")])]})
        stats = collector_for(client).collect_kommune(OSLO)

        assert stats.new == 1
        assert stats.errors == 1
        assert not stats.watermark_advanced

    def test_ceiling_narrows_by_postal_code(self, memory_repo, collector_for, fake_client,
                                           raw_entity, page_builder):
        """Test the result ceiling falls back to postal codes."""
        memory_repo.seed_kommuner([Kommune("0301", "OSLO", postal_codes=("0150", "0151"))])
        client = fake_client({
            "0301": [page_builder([raw_entity("900000001", line=None)], ceiling=True)],
            "0301/0150": [page_builder([raw_entity("900000002", postal="0150")])],
            "0301/0151": [page_builder([raw_entity("900000003", postal="0151")])],
        })
        stats = collector_for(client).collect_kommune(OSLO)

        assert [r.postal_code for r in client.requests] == [None, "0150", "0151"]
        assert stats.seen == 3
        assert not stats.ceiling_reached
        assert stats.watermark_advanced

    def test_postal_code_shortfall_blocks_watermark(self, memory_repo, collector_for, fake_client,
                                                    raw_entity, page_builder):
        """Test narrowing that finds fewer entities than reported keeps the ceiling unresolved."""
        memory_repo.seed_kommuner([Kommune("0301", "OSLO", postal_codes=("0150",))])
        client = fake_client({
            "0301": [page_builder([raw_entity("900000001", line=None)], total_pages=20, ceiling=True)],
            "0301/0150": [page_builder([raw_entity("900000002", postal="0150")])],
        })
        stats = collector_for(client).collect_kommune(OSLO)

        assert stats.state == CollectorState.DONE
        assert stats.errors == 0
        assert stats.ceiling_reached
        assert not stats.watermark_advanced
        assert memory_repo.get_watermark("0301").last_synced_at is None

    def test_ceiling_page_is_not_a_resume_point(self, memory_repo, collector_for, fake_client,
                                                raw_entity, page_builder):
        """Test a rerun after an unresolved ceiling does not request pages past it."""
        pages = [
            page_builder([raw_entity(f"9000000{i:02d}", line=None)], page=i,
                         total_pages=20, page_size=1000, ceiling=(i == 9))
            for i in range(10)
        ]
        client = fake_client({"0301": pages}, page_size=1000)
        collector = collector_for(client)

        first = collector.collect_kommune(OSLO)

        assert first.ceiling_reached
        assert memory_repo.get_watermark("0301").cursor_page == 8

        second = collector.collect_kommune(OSLO)

        assert second.state == CollectorState.DONE
        assert second.error is None
        assert [r.page for r in client.requests] == list(range(10)) + [9]

    def test_cursor_at_ceiling_restarts_from_first_page(self, memory_repo, collector_for, fake_client,
                                                        raw_entity, page_builder):
        """Test a stored cursor on the ceiling page is discarded."""
        client = fake_client({"0301": [page_builder([raw_entity("900000001")], page_size=1000)]},
                             page_size=1000)
        base = client.make_filter(kommune_number="0301", since=None, until=None)
        memory_repo.save_cursor("0301", base.key(), 9)

        stats = collector_for(client).collect_kommune(OSLO)

        assert [r.page for r in client.requests] == [0]
        assert stats.success

    def test_unresolved_ceiling_blocks_watermark(self, memory_repo, collector_for, fake_client,
                                                 raw_entity, page_builder):
        """Test an unresolved ceiling blocks the watermark."""
        client = fake_client({
            "0301": [page_builder([raw_entity("900000001", line=None)], total_pages=20, ceiling=True)],
        })
        stats = collector_for(client).collect_kommune(OSLO)

        assert stats.ceiling_reached
        assert stats.errors == 0
        assert not stats.success
        assert not stats.watermark_advanced
        assert memory_repo.get_watermark("0301").last_synced_at is None

    def test_covered_range_with_dates(self, collector_for, fake_client, fixed_now):
        """Test the covered range is clamped to today."""
        stats = collector_for(fake_client()).collect_kommune(
            OSLO, since=date(2024, 5, 1), until=date(2024, 12, 31)
        )

        assert stats.covered_from == date(2024, 5, 1)
        assert stats.covered_to == fixed_now.date()


class TestRun:
    """Tests for multi-kommune runs."""

    def test_failure_in_one_kommune_does_not_stop_the_run(self, memory_repo, collector_for, fake_client,
                                                         raw_entity, page_builder, unavailable):
        """Test one failed kommune does not stop the others."""
        client = fake_client({
            "0301": [page_builder([raw_entity("900000001")])],
            "4201": [unavailable],
            "1103": [page_builder([raw_entity("900000003", kommune="1103")])],
        })
        run = collector_for(client).run([OSLO, RISOR, STAVANGER])

        assert run.get("0301").processed > 0
        assert run.get("1103").processed > 0
        assert run.get("4201").errors > 0
        assert run.failed_kommuner == ["4201"]
        assert not run.success
        assert memory_repo.get_watermark("0301").last_synced_at is not None
        assert memory_repo.get_watermark("1103").last_synced_at is not None
        assert memory_repo.get_watermark("4201") is None

    def test_parallel_workers_keep_order(self, collector_for, fake_client, raw_entity, page_builder):
        """Test parallel runs report kommuner in input order."""
        client = fake_client({
            "0301": [page_builder([raw_entity("900000001")])],
            "4201": [page_builder([raw_entity("900000002", kommune="4201")])],
            "1103": [page_builder([raw_entity("900000003", kommune="1103")])],
        })
        run = collector_for(client, workers=2).run([OSLO, RISOR, STAVANGER])

        assert [k.kommune_number for k in run.kommuner] == ["0301", "4201", "1103"]
        assert run.new == 3
        assert run.success

    def test_stop_event_skips_remaining_kommuner(self, collector_for, fake_client):
        """Test the stop event skips kommuner not yet started."""
        stop = threading.Event()

        def on_progress(event):
            if event.event == "kommune_finished":
                stop.set()

        run = collector_for(fake_client(), progress=on_progress, stop_event=stop).run(
            [OSLO, RISOR, STAVANGER]
        )

        assert [k.kommune_number for k in run.kommuner] == ["0301"]
        assert run.skipped == ["4201", "1103"]
        assert run.cancelled
        assert not run.success

    def test_incremental_starts_after_watermark(self, memory_repo, collector_for, fake_client, fixed_now):
        """Test incremental runs start the day after the watermark."""
        memory_repo.complete_sync("0301", fixed_now, date(2024, 5, 1), date(2024, 5, 20))
        client = fake_client()

        run = collector_for(client).run([OSLO, RISOR], incremental=True)

        since_by_kommune = {r.kommune_number: r.since for r in client.requests}
        assert since_by_kommune == {"0301": date(2024, 5, 21), "4201": None}
        assert run.get("0301").covered_from == date(2024, 5, 21)
        assert memory_repo.get_watermark("0301").covered_through == fixed_now.date()

    @pytest.mark.parametrize("workers", [1, 2])
    def test_watermark_lookup_failure_fails_only_that_kommune(self, memory_repo, collector_for, fake_client,
                                                              raw_entity, page_builder, monkeypatch, workers):
        """Test a repository error while resolving an incremental start is isolated to its kommune."""
        real_get_watermark = memory_repo.get_watermark

        def flaky_get_watermark(kommune_number):
            if kommune_number == "4201":
                raise RuntimeError("connection reset by peer")
            return real_get_watermark(kommune_number)

        monkeypatch.setattr(memory_repo, "get_watermark", flaky_get_watermark)
        client = fake_client({
            "0301": [page_builder([raw_entity("900000001")])],
            "1103": [page_builder([raw_entity("900000003", kommune="1103")])],
        })

        run = collector_for(client, workers=workers).run([OSLO, RISOR, STAVANGER], incremental=True)

        assert [k.kommune_number for k in run.kommuner] == ["0301", "4201", "1103"]
        assert run.failed_kommuner == ["4201"]
        assert run.get("4201").state == CollectorState.FAILED
        assert "connection reset" in run.get("4201").error
        assert run.get("0301").success
        assert run.get("1103").success

    def test_invalid_worker_count(self, memory_repo, fake_client):
        """Test worker counts outside the range are rejected."""
        with pytest.raises(ValueError, match="Workers"):
            BulkCollector(memory_repo, fake_client(), workers=MAX_WORKERS + 1)


class TestScopes:
    """Tests for scope resolution and run validation."""

    def test_select_all(self):
        """Test the all scope returns every kommune."""
        assert len(select_kommuner(SCOPE_ALL)) > 50

    def test_select_priority(self):
        """Test the priority scope returns high-priority kommuner."""
        kommuner = select_kommuner(SCOPE_PRIORITY)
        assert kommuner
        assert all(k.priority.value == "high" for k in kommuner)

    def test_select_single_pads_number(self):
        """Test a single kommune number is zero-filled."""
        [kommune] = select_kommuner(SCOPE_KOMMUNE, "301")
        assert kommune.number == "0301"

    def test_select_unknown_number_still_collects(self):
        """Test an unlisted kommune number is still collected."""
        [kommune] = select_kommuner(SCOPE_KOMMUNE, "9999")
        assert kommune.number == "9999"

    @pytest.mark.parametrize("scope,number,message", [
        (SCOPE_KOMMUNE, None, "required"),
        (SCOPE_KOMMUNE, "03A1", "Invalid kommune number"),
        ("county", None, "Unknown scope"),
    ])
    def test_select_errors(self, scope, number, message):
        """Test scope selection errors."""
        with pytest.raises(ValueError, match=message):
            select_kommuner(scope, number)

    def test_run_rejects_inverted_dates(self, memory_repo, fake_client):
        """Test run_collection rejects since after until."""
        with pytest.raises(ValueError, match="Invalid date range"):
            run_collection(memory_repo, fake_client(), scope=SCOPE_KOMMUNE, kommune_number="0301",
                           since=date(2024, 2, 1), until=date(2024, 1, 1))

    def test_run_rejects_incremental_with_since(self, memory_repo, fake_client):
        """Test run_collection rejects incremental with since."""
        with pytest.raises(ValueError, match="incremental"):
            run_collection(memory_repo, fake_client(), scope=SCOPE_KOMMUNE, kommune_number="0301",
                           since=date(2024, 1, 1), incremental=True)

    def test_run_single_kommune(self, memory_repo, fake_client, raw_entity, page_builder):
        """Test run_collection over a single kommune."""
        client = fake_client({"0301": [page_builder([raw_entity("900000001")])]})
        run = run_collection(memory_repo, client, scope=SCOPE_KOMMUNE, kommune_number="0301")

        assert run.success
        assert memory_repo.get_company("900000001") is not None


class TestWorkerConfig:
    """Tests for COLLECTOR_WORKERS."""

    def test_default(self, monkeypatch):
        """Test the default worker count."""
        monkeypatch.delenv("COLLECTOR_WORKERS", raising=False)
        assert get_collector_workers() == 1

    def test_clamped(self, monkeypatch):
        """Test COLLECTOR_WORKERS is clamped."""
        monkeypatch.setenv("COLLECTOR_WORKERS", "16")
        assert get_collector_workers() == MAX_WORKERS

    def test_invalid(self, monkeypatch):
        """Test a non-numeric COLLECTOR_WORKERS is rejected."""
        monkeypatch.setenv("COLLECTOR_WORKERS", "many")
        with pytest.raises(ValueError, match="COLLECTOR_WORKERS"):
            get_collector_workers()
