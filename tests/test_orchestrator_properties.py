"""Property-based and scenario tests for sync orchestration.

**Property 16: After a quiet cycle the target mirrors the source**
**Property 17: The watermark only moves after a successful reconcile**
**Property 18: Rows deleted mid-cycle end up absent**
**Property 19: One cycle per table at a time**
**Property 20: Expired history is recovered by a full resync**
"""

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from unittest.mock import patch

import pytest
import structlog
from hypothesis import given, settings
from hypothesis import strategies as st

from ctsync.errors import (
    CycleCancelledError,
    CycleFailedError,
    CycleInProgressError,
    CycleTimeoutError,
    HistoryExpiredError,
    SchemaMismatchError,
    TransientSourceError,
    UnregisteredTableError,
)
from ctsync.models.table import ColumnSpec, ColumnType, TrackedTable
from ctsync.source.memory import InMemoryChangeTrackingSource
from ctsync.storage.ledger import InMemoryVersionLedger
from ctsync.storage.target import InMemoryTargetTable
from ctsync.sync.models import CycleState
from ctsync.sync.orchestrator import TRANSITIONS, CancellationToken, SyncOrchestrator

COLUMNS = (
    ColumnSpec(name="ID", type=ColumnType.INTEGER),
    ColumnSpec(name="Birthday", type=ColumnType.DATETIME),
    ColumnSpec(name="FavouriteCake", type=ColumnType.STRING),
)
MY_TABLE = TrackedTable(name="MyTable", primary_key=("ID",), columns=COLUMNS)
OTHER_TABLE = TrackedTable(name="OtherTable", primary_key=("ID",), columns=COLUMNS)


class HookedSource(InMemoryChangeTrackingSource):
    """In-memory source that can run a callback right after a change query.

    The callback simulates writers racing with the cycle between the feed
    query and staging.
    """

    def __init__(self) -> None:
        super().__init__()
        self.after_query = None

    def query_changes(self, table_name, since_version, upto_version):
        changes = super().query_changes(table_name, since_version, upto_version)
        hook, self.after_query = self.after_query, None
        if hook is not None:
            hook()
        return changes


@dataclass
class Harness:
    source: HookedSource
    ledger: InMemoryVersionLedger
    target: InMemoryTargetTable
    other_target: InMemoryTargetTable
    orchestrator: SyncOrchestrator

    def watermark(self, table_name: str = "MyTable") -> int:
        return self.ledger.get_last_version(table_name)


def build(source: HookedSource | None = None, register: bool = True, **kwargs: Any) -> Harness:
    source = source or HookedSource()
    source.create_table("MyTable", ["ID"])
    source.create_table("OtherTable", ["ID"])
    ledger = InMemoryVersionLedger(allowed_tables=["MyTable", "OtherTable"])
    target = InMemoryTargetTable(MY_TABLE)
    other_target = InMemoryTargetTable(OTHER_TABLE)
    kwargs.setdefault("timeout_seconds", None)
    orchestrator = SyncOrchestrator(
        source=source,
        ledger=ledger,
        targets={"MyTable": target, "OtherTable": other_target},
        **kwargs,
    )
    if register:
        orchestrator.register_table("MyTable")
        orchestrator.register_table("OtherTable")
    return Harness(source, ledger, target, other_target, orchestrator)


def expected_rows(source: InMemoryChangeTrackingSource, table_name: str = "MyTable") -> dict:
    """Destination image of the current source rows."""
    return {
        (row["ID"],): {
            "ID": row["ID"],
            "Birthday": row.get("Birthday") or datetime(1900, 1, 1),
            "FavouriteCake": row.get("FavouriteCake") or "",
        }
        for row in source.read_all_rows(table_name)
    }


def failed(exc_info) -> tuple[CycleState | None, Exception]:
    error = exc_info.value
    assert isinstance(error, CycleFailedError)
    assert error.__cause__ is error.cause
    assert error.report.final_state is CycleState.FAILED
    assert not error.report.success
    return error.report.failed_stage, error.cause


class TestScenarios:
    """Worked end-to-end scenarios on the MyTable example."""

    def run_first_scenario(self, harness: Harness) -> None:
        source = harness.source
        source.insert(
            "MyTable",
            {"ID": 1, "Name": "Bob", "Birthday": datetime(1990, 3, 23), "FavouriteCake": "Chocolate"},
        )
        source.insert(
            "MyTable",
            {"ID": 2, "Name": "Jane", "Birthday": datetime(1985, 7, 3), "FavouriteCake": "Banana"},
        )
        source.insert(
            "MyTable",
            {"ID": 3, "Name": "Ada", "Birthday": datetime(1987, 1, 4), "FavouriteCake": "Sponge"},
        )
        source.update("MyTable", 2, {"FavouriteCake": "Cream"})
        source.delete("MyTable", 1)

    def test_first_cycle(self) -> None:
        harness = build()
        assert harness.watermark() == 0
        self.run_first_scenario(harness)

        report = harness.orchestrator.run_cycle("MyTable")

        assert report.success
        assert (report.from_version, report.to_version) == (0, 5)
        assert harness.target.rows() == {
            (2,): {"ID": 2, "Birthday": datetime(1985, 7, 3), "FavouriteCake": "Cream"},
            (3,): {"ID": 3, "Birthday": datetime(1987, 1, 4), "FavouriteCake": "Sponge"},
        }
        assert harness.watermark() == 5
        assert report.inserted == 2
        # ID=1 was inserted and deleted inside the range; its delete is a no-op
        assert report.unchanged == 1

    def test_second_cycle(self) -> None:
        harness = build()
        self.run_first_scenario(harness)
        harness.orchestrator.run_cycle("MyTable")

        source = harness.source
        source.update("MyTable", 2, {"Birthday": datetime(1989, 10, 1)})
        source.insert(
            "MyTable",
            {"ID": 4, "Name": "Mary", "Birthday": datetime(1991, 10, 11), "FavouriteCake": "Banana"},
            {"ID": 5, "Name": "Jude", "Birthday": datetime(1978, 9, 25), "FavouriteCake": "Pannacotta"},
        )
        source.delete("MyTable", 3)

        report = harness.orchestrator.run_cycle("MyTable")

        rows = harness.target.rows()
        assert set(rows) == {(2,), (4,), (5,)}
        assert rows[(2,)] == {"ID": 2, "Birthday": datetime(1989, 10, 1), "FavouriteCake": "Cream"}
        assert rows[(4,)]["FavouriteCake"] == "Banana"
        assert rows[(5,)]["Birthday"] == datetime(1978, 9, 25)
        assert all("Name" not in row for row in rows.values())
        assert (report.inserted, report.updated, report.deleted) == (2, 1, 1)
        assert harness.watermark() == 8

    def test_quiet_cycle_keeps_watermark(self) -> None:
        harness = build()
        report = harness.orchestrator.run_cycle("MyTable")

        assert report.success
        assert report.total_changes == 0
        assert harness.watermark() == 0


mutation_strategy = st.one_of(
    st.tuples(st.just("insert"), st.integers(1, 6), st.one_of(st.none(), st.text(max_size=8))),
    st.tuples(st.just("update"), st.integers(1, 6), st.one_of(st.none(), st.text(max_size=8))),
    st.tuples(st.just("delete"), st.integers(1, 6), st.none()),
    st.tuples(st.just("sync"), st.none(), st.none()),
)


def apply_mutation(harness: Harness, action: str, key: int | None, cake: str | None) -> None:
    source = harness.source
    if action == "sync":
        harness.orchestrator.run_cycle("MyTable")
        return
    exists = source.read_current_row("MyTable", key) is not None
    if action == "insert" and not exists:
        source.insert("MyTable", {"ID": key, "Name": "x", "FavouriteCake": cake})
    elif action == "update" and exists:
        source.update("MyTable", key, {"FavouriteCake": cake})
    elif action == "delete" and exists:
        source.delete("MyTable", key)


class TestConvergence:
    """Property 16: After a quiet cycle the target mirrors the source."""

    @given(script=st.lists(mutation_strategy, max_size=30))
    @settings(max_examples=60, deadline=None)
    def test_target_converges(self, script) -> None:
        harness = build()
        for action, key, cake in script:
            apply_mutation(harness, action, key, cake)

        harness.orchestrator.run_cycle("MyTable")

        assert harness.target.rows() == expected_rows(harness.source)
        assert harness.watermark() == harness.source.current_global_version()

    @given(script=st.lists(mutation_strategy, max_size=20))
    @settings(max_examples=30, deadline=None)
    def test_watermark_is_monotonic(self, script) -> None:
        harness = build()
        seen = [harness.watermark()]
        for action, key, cake in script:
            apply_mutation(harness, action, key, cake)
            seen.append(harness.watermark())

        assert seen == sorted(seen)

    def test_tables_sync_independently(self) -> None:
        harness = build()
        harness.source.insert("MyTable", {"ID": 1, "FavouriteCake": "Sponge"})
        harness.source.insert("OtherTable", {"ID": 7, "FavouriteCake": "Cream"})

        harness.orchestrator.run_cycle("OtherTable")

        assert harness.target.rows() == {}
        assert set(harness.other_target.rows()) == {(7,)}
        assert harness.watermark("MyTable") == 0
        assert harness.watermark("OtherTable") == 2


class TestCrashSafety:
    """Property 17: The watermark only moves after a successful reconcile."""

    def test_failed_commit_is_retried_safely(self) -> None:
        harness = build()
        harness.source.insert("MyTable", {"ID": 1, "FavouriteCake": "Sponge"})
        harness.source.insert("MyTable", {"ID": 2, "FavouriteCake": "Banana"})

        with patch.object(
            harness.ledger, "set_last_version", side_effect=RuntimeError("connection lost")
        ):
            with pytest.raises(CycleFailedError) as exc_info:
                harness.orchestrator.run_cycle("MyTable")

        stage, cause = failed(exc_info)
        assert stage is CycleState.COMMIT_WATERMARK
        assert isinstance(cause, RuntimeError)
        assert harness.watermark() == 0
        # The reconcile already landed; replaying the range must be harmless
        assert set(harness.target.rows()) == {(1,), (2,)}

        harness.source.delete("MyTable", 1)
        report = harness.orchestrator.run_cycle("MyTable")

        assert report.success
        assert harness.target.rows() == expected_rows(harness.source)
        assert harness.watermark() == 3

    def test_source_failure_leaves_everything_untouched(self) -> None:
        harness = build()
        harness.source.insert("MyTable", {"ID": 1})

        with patch.object(
            harness.source, "query_changes", side_effect=TransientSourceError("deadlock victim")
        ):
            with pytest.raises(CycleFailedError) as exc_info:
                harness.orchestrator.run_cycle("MyTable")

        stage, cause = failed(exc_info)
        assert stage is CycleState.FETCH_CHANGES
        assert exc_info.value.retryable
        assert harness.target.rows() == {}
        assert harness.watermark() == 0

    def test_schema_mismatch_aborts_batch(self) -> None:
        harness = build()
        harness.source.insert("MyTable", {"ID": 1, "FavouriteCake": "Sponge"})
        harness.source.insert("MyTable", {"ID": 2, "Birthday": "yesterday"})

        with pytest.raises(CycleFailedError) as exc_info:
            harness.orchestrator.run_cycle("MyTable")

        stage, cause = failed(exc_info)
        assert stage is CycleState.RECONCILE
        assert isinstance(cause, SchemaMismatchError)
        assert not exc_info.value.retryable
        assert harness.target.rows() == {}
        assert harness.watermark() == 0

    def test_unregistered_table_fails_at_read_watermark(self) -> None:
        harness = build(register=False)

        with pytest.raises(CycleFailedError) as exc_info:
            harness.orchestrator.run_cycle("MyTable")

        stage, cause = failed(exc_info)
        assert stage is CycleState.READ_WATERMARK
        assert isinstance(cause, UnregisteredTableError)

    def test_unknown_table(self) -> None:
        harness = build()
        with pytest.raises(UnregisteredTableError):
            harness.orchestrator.run_cycle("NoSuchTable")

    def test_commit_only_follows_reconcile(self) -> None:
        reaching_commit = [
            state for state, targets in TRANSITIONS.items() if CycleState.COMMIT_WATERMARK in targets
        ]
        assert reaching_commit == [CycleState.RECONCILE]

        for state, targets in TRANSITIONS.items():
            if state not in (CycleState.IDLE, CycleState.FAILED):
                assert CycleState.FAILED in targets


class TestRaces:
    """Property 18: Rows deleted mid-cycle end up absent."""

    def test_insert_deleted_before_staging_is_demoted(self) -> None:
        harness = build()
        harness.source.insert("MyTable", {"ID": 1, "FavouriteCake": "Sponge"})
        harness.source.after_query = lambda: harness.source.delete("MyTable", 1)

        report = harness.orchestrator.run_cycle("MyTable")

        assert report.rows_demoted == 1
        assert report.to_version == 1
        assert harness.target.rows() == {}
        assert harness.watermark() == 1

        harness.orchestrator.run_cycle("MyTable")
        assert harness.target.rows() == {}
        assert harness.watermark() == 2

    def test_update_deleted_before_staging_removes_target_row(self) -> None:
        harness = build()
        harness.source.insert("MyTable", {"ID": 1, "FavouriteCake": "Sponge"})
        harness.orchestrator.run_cycle("MyTable")
        harness.source.update("MyTable", 1, {"FavouriteCake": "Cream"})
        harness.source.after_query = lambda: harness.source.delete("MyTable", 1)

        report = harness.orchestrator.run_cycle("MyTable")

        assert report.deleted == 1
        assert harness.target.rows() == {}

    def test_changes_after_capture_are_deferred(self) -> None:
        harness = build()
        harness.source.insert("MyTable", {"ID": 1})
        harness.source.after_query = lambda: harness.source.insert("MyTable", {"ID": 2})

        report = harness.orchestrator.run_cycle("MyTable")

        assert report.to_version == 1
        assert set(harness.target.rows()) == {(1,)}

        report = harness.orchestrator.run_cycle("MyTable")
        assert report.from_version == 1
        assert set(harness.target.rows()) == {(1,), (2,)}


class TestConcurrencyControl:
    """Property 19: One cycle per table at a time."""

    def test_busy_table_rejects_second_cycle(self) -> None:
        harness = build()
        harness.source.insert("MyTable", {"ID": 1})
        started = threading.Event()
        release = threading.Event()

        def block() -> None:
            started.set()
            release.wait(5)

        harness.source.after_query = block
        errors: list[Exception] = []

        def run() -> None:
            try:
                harness.orchestrator.run_cycle("MyTable")
            except Exception as e:
                errors.append(e)

        worker = threading.Thread(target=run)
        worker.start()
        try:
            assert started.wait(5)
            with pytest.raises(CycleInProgressError):
                harness.orchestrator.run_cycle("MyTable")

            # Other tables are not blocked
            assert harness.orchestrator.run_cycle("OtherTable").success
        finally:
            release.set()
            worker.join(5)

        assert errors == []
        assert set(harness.target.rows()) == {(1,)}

    def test_cancel_before_start(self) -> None:
        harness = build()
        harness.source.insert("MyTable", {"ID": 1})
        token = CancellationToken()
        token.cancel()

        with pytest.raises(CycleFailedError) as exc_info:
            harness.orchestrator.run_cycle("MyTable", cancel_token=token)

        stage, cause = failed(exc_info)
        assert stage is CycleState.READ_WATERMARK
        assert isinstance(cause, CycleCancelledError)
        assert harness.watermark() == 0

    def test_cancel_between_stages(self) -> None:
        harness = build()
        harness.source.insert("MyTable", {"ID": 1})
        token = CancellationToken()
        harness.source.after_query = token.cancel

        with pytest.raises(CycleFailedError) as exc_info:
            harness.orchestrator.run_cycle("MyTable", cancel_token=token)

        stage, _ = failed(exc_info)
        assert stage is CycleState.STAGE
        assert harness.target.rows() == {}
        assert harness.watermark() == 0

    def test_hung_source_times_out(self) -> None:
        release = threading.Event()
        harness = build()

        def hang(*args, **kwargs):
            release.wait(5)
            return []

        try:
            with patch.object(harness.source, "query_changes", side_effect=hang):
                with pytest.raises(CycleFailedError) as exc_info:
                    harness.orchestrator.run_cycle("MyTable", timeout_seconds=0.2)
        finally:
            release.set()

        stage, cause = failed(exc_info)
        assert stage is CycleState.FETCH_CHANGES
        assert isinstance(cause, CycleTimeoutError)
        assert exc_info.value.retryable
        assert harness.watermark() == 0

    def test_hung_source_times_out_registration(self) -> None:
        release = threading.Event()
        harness = build(register=False, timeout_seconds=0.2)

        def hang():
            release.wait(5)
            return 0

        try:
            with patch.object(harness.source, "current_global_version", side_effect=hang):
                with pytest.raises(CycleTimeoutError):
                    harness.orchestrator.register_table("MyTable", initial_load=True)
        finally:
            release.set()

        assert not harness.ledger.is_registered("MyTable")
        assert harness.target.rows() == {}

    def test_bounded_calls_keep_cycle_log_context(self) -> None:
        seen: list[dict] = []
        harness = build(timeout_seconds=5.0)
        harness.source.insert("MyTable", {"ID": 1})
        harness.source.after_query = lambda: seen.append(structlog.contextvars.get_contextvars())

        report = harness.orchestrator.run_cycle("MyTable")

        assert report.success
        (context,) = seen
        assert context["table_name"] == "MyTable"
        assert "cycle_id" in context


class TestRecovery:
    """Property 20: Expired history is recovered by a full resync."""

    def test_full_resync_after_cleanup(self) -> None:
        harness = build()
        source = harness.source
        source.insert("MyTable", {"ID": 1, "FavouriteCake": "Sponge"})
        source.insert("MyTable", {"ID": 2, "FavouriteCake": "Banana"})
        source.delete("MyTable", 1)
        source.cleanup("MyTable", 3)

        with pytest.raises(CycleFailedError) as exc_info:
            harness.orchestrator.run_cycle("MyTable")

        stage, cause = failed(exc_info)
        assert stage is CycleState.FETCH_CHANGES
        assert isinstance(cause, HistoryExpiredError)
        assert cause.requires_full_resync
        assert not exc_info.value.retryable

        report = harness.orchestrator.full_resync("MyTable")

        assert report.success
        assert (report.from_version, report.to_version) == (0, 3)
        assert harness.target.rows() == expected_rows(source)
        assert harness.watermark() == 3

        source.insert("MyTable", {"ID": 3})
        assert harness.orchestrator.run_cycle("MyTable").success
        assert harness.target.rows() == expected_rows(source)

    def test_full_resync_replaces_stale_rows(self) -> None:
        harness = build()
        harness.source.insert("MyTable", {"ID": 1})
        harness.orchestrator.run_cycle("MyTable")
        with harness.target.transaction() as txn:
            txn.insert({"ID": 99, "Birthday": datetime(2000, 1, 1), "FavouriteCake": "Stale"})

        report = harness.orchestrator.full_resync("MyTable")

        assert report.deleted == 2
        assert set(harness.target.rows()) == {(1,)}

    def test_full_resync_registers_new_table(self) -> None:
        harness = build(register=False)
        harness.source.insert("MyTable", {"ID": 1})

        report = harness.orchestrator.full_resync("MyTable")

        assert report.from_version is None
        assert harness.watermark() == 1
        assert set(harness.target.rows()) == {(1,)}

    def test_failed_resync_keeps_target(self) -> None:
        harness = build()
        harness.source.insert("MyTable", {"ID": 1})
        harness.orchestrator.run_cycle("MyTable")
        harness.source.insert("MyTable", {"ID": 2, "Birthday": "not a date"})

        with pytest.raises(CycleFailedError) as exc_info:
            harness.orchestrator.full_resync("MyTable")

        assert exc_info.value.report.failed_stage is None
        assert isinstance(exc_info.value.cause, SchemaMismatchError)
        assert set(harness.target.rows()) == {(1,)}
        assert harness.watermark() == 1

    def test_register_with_initial_load(self) -> None:
        harness = build(register=False)
        harness.source.insert("MyTable", {"ID": 1, "Name": "Bob", "FavouriteCake": "Sponge"})
        harness.source.insert("MyTable", {"ID": 2, "Name": "Jane"})

        mark = harness.orchestrator.register_table("MyTable", initial_load=True)

        assert mark.version == 2
        assert harness.target.rows() == expected_rows(harness.source)

        harness.source.insert("MyTable", {"ID": 3})
        again = harness.orchestrator.register_table("MyTable", initial_load=True)
        assert again.version == 2
        assert set(harness.target.rows()) == {(1,), (2,)}

    def test_register_without_load_starts_from_now(self) -> None:
        harness = build(register=False)
        harness.source.insert("MyTable", {"ID": 1})

        mark = harness.orchestrator.register_table("MyTable")
        harness.orchestrator.run_cycle("MyTable")

        assert mark.version == 1
        assert harness.target.rows() == {}
