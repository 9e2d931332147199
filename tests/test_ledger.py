from datetime import date

import pytest

from attendance_tracker.exceptions import StorageError
from attendance_tracker.ledger import AttendanceLedger, report_filename
from attendance_tracker.storage import MemoryStore

from conftest import FailingStore


def test_mark_present_twice_keeps_one_record(ledger):
    first = ledger.mark_present("Alice")
    second = ledger.mark_present("Alice")

    assert first.inserted is True
    assert first.record.time == "09:00:00"
    assert second.inserted is False
    assert [record.name for record in ledger.records()] == ["Alice"]
    assert ledger.store.read("attendance") == [{"name": "Alice", "time": "09:00:00"}]


def test_mark_present_skips_name_already_persisted_by_another_session(clock):
    store = MemoryStore()
    AttendanceLedger(store, clock=clock).mark_present("Alice")
    other = AttendanceLedger(MemoryStore(), clock=clock)
    other.store = store

    result = other.mark_present("Alice")

    assert result.inserted is False
    assert result.record.name == "Alice"
    assert "Alice" in other.names
    assert len(store.read("attendance")) == 1


def test_write_resyncs_cache_with_entries_from_other_sessions(clock):
    store = MemoryStore()
    first = AttendanceLedger(store, clock=clock)
    second = AttendanceLedger(store, clock=clock)

    first.mark_present("Alice")
    second.mark_present("Bob")

    assert second.names == {"Alice", "Bob"}
    assert [item["name"] for item in store.read("attendance")] == ["Alice", "Bob"]


def test_list_absent_keeps_roster_order(ledger):
    ledger.mark_present("Alice")

    assert ledger.list_absent(["Alice", "Bob", "Carol"]) == ["Bob", "Carol"]


def test_absent_and_present_cover_the_roster(ledger):
    roster_names = ["Alice", "Bob", "Carol", "Dan"]
    for name in ("Dan", "Bob"):
        ledger.mark_present(name)

    absent = set(ledger.list_absent(roster_names))
    present = {record.name for record in ledger.records()}

    assert absent | present == set(roster_names)
    assert not absent & present


def test_clear_empties_ledger(ledger):
    ledger.mark_present("Alice")
    ledger.mark_present("Bob")

    ledger.clear()

    assert ledger.records() == []
    assert ledger.list_absent(["Alice", "Bob"]) == ["Alice", "Bob"]
    assert ledger.mark_present("Alice").inserted is True


def test_export_report_lists_present_then_absent(ledger):
    ledger.mark_present("Bob")

    report = ledger.export_report(["Alice", "Bob"])

    assert report == (
        "📋 Attendance Report\n"
        "\n"
        "Present:\n"
        "✔ Bob at 09:00:00\n"
        "\n"
        "Absent:\n"
        "✘ Alice\n"
    )


def test_report_filename_uses_month_day_year():
    assert report_filename(date(2024, 3, 7)) == "Attendance-3-7-2024.txt"


def test_write_failure_keeps_record_in_memory(clock):
    store = FailingStore(fail_write=True)
    ledger = AttendanceLedger(store, clock=clock)

    result = ledger.mark_present("Alice")
    again = ledger.mark_present("Alice")

    assert result.inserted is True
    assert again.inserted is False
    assert "Alice" in ledger.names
    assert "write failed" in ledger.last_error


def test_unsaved_records_are_written_once_storage_recovers(clock):
    store = FailingStore(fail_write=True)
    ledger = AttendanceLedger(store, clock=clock)
    ledger.mark_present("Alice")

    store.fail_write = False
    ledger.mark_present("Bob")

    assert [item["name"] for item in store.inner.read("attendance")] == ["Alice", "Bob"]
    assert ledger.last_error is None


def test_read_failure_does_not_raise(clock):
    store = FailingStore(fail_read=True, fail_write=True)
    ledger = AttendanceLedger(store, clock=clock)

    assert ledger.mark_present("Alice").inserted is True
    assert ledger.list_absent(["Alice", "Bob"]) == ["Bob"]


def test_clear_failure_propagates_and_keeps_cache(clock):
    store = FailingStore(fail_write=False, fail_clear=True)
    ledger = AttendanceLedger(store, clock=clock)
    ledger.mark_present("Alice")

    with pytest.raises(StorageError):
        ledger.clear()
    assert "Alice" in ledger.names


def test_malformed_entries_are_ignored(clock):
    store = MemoryStore({"attendance": [{"name": "Alice", "time": "08:00:00"}, {"time": "x"}, "junk", {"name": "Alice"}]})

    ledger = AttendanceLedger(store, clock=clock)

    assert [(r.name, r.time) for r in ledger.records()] == [("Alice", "08:00:00")]
