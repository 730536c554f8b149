import asyncio
import logging

import pytest

from benchtimer.crud.tickets import get_ticket
from benchtimer.crud.time_entries import list_ticket_entries
from benchtimer.schemas.timer import ConflictKind, TimerErrorCode, TimerState
from benchtimer.services.local_storage import ACTIVE_TIMER_KEY, JsonFileTimerStorage, MemoryTimerStorage
from benchtimer.services.registry import TimerManagerRegistry
from benchtimer.services.timer import TimerLifecycleManager


def run(coro):
    return asyncio.run(coro)


def flag_of(store, ticket_id):
    return run(store.get_timer_flag(ticket_id))


def entries_of(db, ticket_id):
    db.expire_all()
    return list_ticket_entries(db, ticket_id)


@pytest.fixture()
def manager(store, clock, shop):
    return TimerLifecycleManager("tech", store, MemoryTimerStorage(), clock=clock)


def test_start_then_stop_writes_one_rounded_entry(manager, store, clock, shop):
    started = run(manager.start("T1", "R-1001", "Ada Lovelace"))
    assert started.ok
    assert started.state is TimerState.RUNNING
    assert started.session.ticket_id == "T1"
    assert flag_of(store, "T1").is_running is True

    clock.advance(125)
    assert manager.elapsed_display() == "00:02:05"

    stopped = run(manager.stop("Replaced cracked screen"))
    assert stopped.ok
    assert stopped.state is TimerState.IDLE
    assert stopped.entry.duration_minutes == 2
    assert stopped.entry.description == "Replaced cracked screen"
    assert stopped.entry.user_id == "tech"

    flag = flag_of(store, "T1")
    assert flag.is_running is False
    assert flag.started_at is None
    assert flag.total_minutes == 2
    assert manager.session is None
    assert [e.duration_minutes for e in entries_of(shop, "T1")] == [2]


def test_sixty_five_seconds_bill_one_minute(manager, store, clock):
    run(manager.start("T1"))
    clock.advance(65)
    stopped = run(manager.stop("Replaced screen"))
    assert stopped.entry.duration_minutes == 1
    assert flag_of(store, "T1").is_running is False


def test_pause_freezes_elapsed_and_resume_continues(manager, store, clock):
    run(manager.start("T1"))
    clock.advance(60)

    paused = manager.pause()
    assert paused.ok
    assert paused.state is TimerState.PAUSED
    assert paused.session.accumulated_seconds == 60
    # Pausing is local; the ticket still shows a running timer.
    assert flag_of(store, "T1").is_running is True

    clock.advance(300)
    assert manager.elapsed_seconds() == 60

    resumed = run(manager.resume())
    assert resumed.ok
    assert resumed.state is TimerState.RUNNING
    clock.advance(30)
    assert manager.elapsed_seconds() == 90

    stopped = run(manager.stop("Diagnosed board"))
    # 90 seconds rounds half-up to two minutes.
    assert stopped.entry.duration_minutes == 2


def test_elapsed_never_decreases_across_transitions(manager, clock):
    run(manager.start("T1"))
    samples = []
    for step in range(6):
        clock.advance(17)
        samples.append(manager.elapsed_seconds())
        if step == 1:
            manager.pause()
        if step == 3:
            run(manager.resume())
    assert samples == sorted(samples)
    assert samples[-1] > samples[0]


def test_zero_elapsed_stop_still_records_and_clears(manager, store, shop):
    run(manager.start("T1"))
    stopped = run(manager.stop("Quick look"))
    assert stopped.ok
    assert stopped.entry.duration_minutes == 0
    assert flag_of(store, "T1").is_running is False
    assert len(entries_of(shop, "T1")) == 1


def test_second_ticket_is_refused_while_a_timer_exists(manager, store):
    run(manager.start("T1", "R-1001"))
    result = run(manager.start("T2"))
    assert not result.ok
    assert result.error.code is TimerErrorCode.ALREADY_RUNNING_ELSEWHERE
    assert "R-1001" in result.error.message
    assert manager.session.ticket_id == "T1"
    assert flag_of(store, "T2").is_running is False

    manager.pause()
    still_refused = run(manager.start("T2"))
    assert still_refused.error.code is TimerErrorCode.ALREADY_RUNNING_ELSEWHERE


def test_start_on_running_ticket_is_a_noop(manager, clock):
    first = run(manager.start("T1"))
    clock.advance(40)
    again = run(manager.start("T1"))
    assert again.ok
    assert again.session == first.session
    assert again.elapsed_seconds == 40


def test_start_on_paused_ticket_resumes_it(manager, clock):
    run(manager.start("T1"))
    clock.advance(50)
    manager.pause()
    clock.advance(600)
    result = run(manager.start("T1"))
    assert result.ok
    assert result.state is TimerState.RUNNING
    assert result.session.accumulated_seconds == 50


def test_server_flag_blocks_other_operator(manager, store, clock, shop):
    run(manager.start("T1"))
    other = TimerLifecycleManager("boss", store, MemoryTimerStorage(), clock=clock)
    blocked = run(other.start("T1"))
    assert not blocked.ok
    assert blocked.error.code is TimerErrorCode.SERVER_TIMER_ACTIVE
    assert blocked.flag.is_running is True
    assert other.session is None


def test_override_requires_privilege(manager, store, clock):
    admin = TimerLifecycleManager("boss", store, MemoryTimerStorage(), clock=clock)
    run(admin.start("T1"))

    denied = run(manager.start("T1", override=True))
    assert denied.error.code is TimerErrorCode.UNAUTHORIZED
    assert manager.session is None

    admin.clear_local()
    clock.advance(10)
    taken = run(admin.start("T1", override=True))
    assert taken.ok
    assert flag_of(store, "T1").started_at == clock.now


def test_stop_requires_work_notes(manager, shop, store):
    run(manager.start("T1"))
    before = manager.session
    result = run(manager.stop("   "))
    assert not result.ok
    assert result.error.code is TimerErrorCode.MISSING_WORK_NOTES
    assert result.state is TimerState.RUNNING
    assert manager.session == before
    assert flag_of(store, "T1").is_running is True
    assert entries_of(shop, "T1") == []


def test_stop_without_session(manager):
    result = run(manager.stop("Nothing here"))
    assert result.error.code is TimerErrorCode.NO_ACTIVE_TIMER
    assert result.state is TimerState.IDLE


def test_failed_entry_write_leaves_everything_in_place(manager, store, clock, shop):
    run(manager.start("T1"))
    clock.advance(300)
    before = manager.session

    store.fail_on.add("create_time_entry")
    failed = run(manager.stop("Swapped battery"))
    assert not failed.ok
    assert failed.error.code is TimerErrorCode.PERSISTENCE_FAILURE
    assert failed.error.retryable is True
    assert failed.state is TimerState.RUNNING
    assert manager.session == before
    assert flag_of(store, "T1").is_running is True
    assert entries_of(shop, "T1") == []

    store.fail_on.clear()
    retried = run(manager.stop("Swapped battery"))
    assert retried.ok
    assert retried.entry.duration_minutes == 5
    assert len(entries_of(shop, "T1")) == 1


def test_stop_retry_after_flag_failure_does_not_bill_twice(manager, store, clock, shop):
    run(manager.start("T1"))
    clock.advance(120)

    store.fail_on.add("release_timer_flag")
    failed = run(manager.stop("Cleaned fan"))
    assert failed.error.code is TimerErrorCode.PERSISTENCE_FAILURE
    assert manager.session is not None
    assert len(entries_of(shop, "T1")) == 1

    store.fail_on.clear()
    clock.advance(60)
    retried = run(manager.stop("Cleaned fan"))
    assert retried.ok
    entries = entries_of(shop, "T1")
    assert len(entries) == 1
    assert retried.entry.id == entries[0].id
    assert flag_of(store, "T1").is_running is False


def test_start_failure_reports_persistence_error(manager, store):
    store.fail_on.add("set_timer_flag")
    result = run(manager.start("T1"))
    assert result.error.code is TimerErrorCode.PERSISTENCE_FAILURE
    assert manager.session is None
    assert manager.state is TimerState.IDLE


def test_start_survives_status_update_failure(manager, store):
    store.fail_on.add("mark_in_progress")
    result = run(manager.start("T1"))
    assert result.ok
    assert flag_of(store, "T1").is_running is True


def test_start_moves_new_ticket_in_progress(manager, shop):
    run(manager.start("T1"))
    shop.expire_all()
    assert get_ticket(shop, "T1").status == "in_progress"


def test_lost_local_state_is_detected_and_recovered(manager, store, clock):
    original = run(manager.start("T1", "R-1001", "Ada Lovelace")).session
    clock.advance(200)

    # Same operator on a device with empty local storage.
    fresh = TimerLifecycleManager("tech", store, MemoryTimerStorage(), clock=clock)
    status = run(fresh.get_status("T1"))
    assert not status.ok
    assert status.state is TimerState.CONFLICTED
    assert status.conflict.kind is ConflictKind.SERVER_ONLY
    assert status.conflict.authoritative == "server"
    assert "recover_timer" in status.conflict.remediation

    recovered = run(fresh.recover_timer("T1"))
    assert recovered.ok
    assert recovered.session.session_id == original.session_id
    assert recovered.session.started_at_wall_clock == original.started_at_wall_clock
    assert recovered.session.ticket_number == "R-1001"
    assert recovered.elapsed_seconds == 200

    again = run(fresh.recover_timer("T1"))
    assert again.session == recovered.session
    assert run(fresh.get_status("T1")).ok


def test_recover_without_server_timer(manager):
    result = run(manager.recover_timer("T2"))
    assert result.error.code is TimerErrorCode.NOTHING_TO_RECOVER
    assert manager.session is None


def test_recover_refuses_when_other_ticket_is_local(manager, store, clock):
    admin = TimerLifecycleManager("boss", store, MemoryTimerStorage(), clock=clock)
    run(admin.start("T2"))
    run(manager.start("T1"))
    result = run(manager.recover_timer("T2"))
    assert result.error.code is TimerErrorCode.ALREADY_RUNNING_ELSEWHERE
    assert manager.session.ticket_id == "T1"


def test_cleared_server_flag_shows_local_only_conflict(manager, store, clock):
    run(manager.start("T1"))
    admin = TimerLifecycleManager("boss", store, MemoryTimerStorage(), clock=clock)
    cleared = run(admin.clear_server_flag("T1"))
    assert cleared.ok
    assert cleared.flag.is_running is False

    status = run(manager.get_status())
    assert status.state is TimerState.CONFLICTED
    assert status.conflict.kind is ConflictKind.LOCAL_ONLY
    assert status.conflict.authoritative == "local"
    # Detection alone never rewrites either side.
    assert manager.session is not None
    assert flag_of(store, "T1").is_running is False

    manager.pause()
    resumed = run(manager.resume())
    assert resumed.error.code is TimerErrorCode.CONFLICTED
    assert resumed.conflict.authoritative == "server"
    assert manager.session.is_running is False


def test_clear_local_keeps_server_flag(manager, store):
    run(manager.start("T1"))
    result = manager.clear_local()
    assert result.ok
    assert result.state is TimerState.IDLE
    assert flag_of(store, "T1").is_running is True
    status = run(manager.get_status("T1"))
    assert status.conflict.kind is ConflictKind.SERVER_ONLY


def test_clear_server_flag_requires_privilege(manager, store):
    run(manager.start("T1"))
    result = run(manager.clear_server_flag("T1"))
    assert result.error.code is TimerErrorCode.UNAUTHORIZED
    assert flag_of(store, "T1").is_running is True


def test_pause_and_resume_edge_cases(manager):
    assert manager.pause().error.code is TimerErrorCode.NO_ACTIVE_TIMER
    assert run(manager.resume()).error.code is TimerErrorCode.NO_ACTIVE_TIMER

    run(manager.start("T1"))
    assert run(manager.resume()).ok
    manager.pause()
    twice = manager.pause()
    assert twice.error.code is TimerErrorCode.NO_ACTIVE_TIMER
    assert twice.state is TimerState.PAUSED


def test_idle_status(manager):
    status = run(manager.get_status())
    assert status.ok
    assert status.state is TimerState.IDLE
    assert status.session is None


def test_session_survives_manager_restart(store, clock, shop, tmp_path):
    path = tmp_path / "tech.json"
    first = TimerLifecycleManager("tech", store, JsonFileTimerStorage(path), clock=clock)
    run(first.start("T1"))
    clock.advance(45)
    first.pause()

    second = TimerLifecycleManager("tech", store, JsonFileTimerStorage(path), clock=clock)
    assert second.session == first.session
    assert second.state is TimerState.PAUSED
    assert second.elapsed_seconds() == 45


def test_invalid_local_record_is_discarded(store, clock, shop):
    storage = MemoryTimerStorage()
    storage.set(ACTIVE_TIMER_KEY, {"ticketId": "T1", "accumulatedSeconds": -4})
    manager = TimerLifecycleManager("tech", store, storage, clock=clock)
    assert manager.session is None
    assert storage.get(ACTIVE_TIMER_KEY) is None


def test_local_record_uses_camel_case_keys(manager, clock):
    storage = manager._storage
    run(manager.start("T1", "R-1001"))
    record = storage.get(ACTIVE_TIMER_KEY)
    assert record["ticketId"] == "T1"
    assert record["ticketNumber"] == "R-1001"
    assert record["isRunning"] is True
    assert record["accumulatedSeconds"] == 0
    assert record["sessionId"] == flag_of(manager._store, "T1").session_key


def test_active_timers_report_elapsed_minutes(manager, store, clock):
    run(manager.start("T1", "R-1001"))
    clock.advance(25 * 3600)
    active = run(store.list_active_timers())
    assert [(t.ticket_id, t.ticket_number) for t in active] == [("T1", "R-1001")]
    assert active[0].elapsed_minutes == 25 * 60


def test_restart_within_the_same_second_keeps_both_intervals(manager, store, clock, shop):
    run(manager.start("T1"))
    first = run(manager.stop("Checked charger"))
    assert first.ok

    # Same wall-clock second as the first interval.
    second_start = run(manager.start("T1"))
    assert second_start.session.session_id != first.entry.session_key
    clock.advance(1800)
    second = run(manager.stop("Reflowed charging port"))
    assert second.ok
    assert second.entry.id != first.entry.id
    assert second.entry.duration_minutes == 30
    assert second.entry.description == "Reflowed charging port"

    entries = entries_of(shop, "T1")
    assert sorted(e.duration_minutes for e in entries) == [0, 30]
    assert flag_of(store, "T1").total_minutes == 30


def test_start_stores_session_key_with_flag(manager, store):
    started = run(manager.start("T1"))
    flag = flag_of(store, "T1")
    assert flag.session_key == started.session.session_id
    assert started.flag.session_key == flag.session_key


def test_two_tabs_cannot_start_different_tickets_at_once(store, clock, shop):
    registry = TimerManagerRegistry(store, clock=clock)
    first_tab = registry.open_manager("tech")
    second_tab = registry.open_manager("tech")

    async def both():
        return await asyncio.gather(first_tab.start("T1"), second_tab.start("T2"))

    results = run(both())
    assert sorted(r.ok for r in results) == [False, True]
    refused = next(r for r in results if not r.ok)
    assert refused.error.code is TimerErrorCode.ALREADY_RUNNING_ELSEWHERE
    running = [t for t in ("T1", "T2") if flag_of(store, t).is_running]
    assert len(running) == 1
    registry.close()


def test_registry_shares_one_lock_per_operator(store):
    registry = TimerManagerRegistry(store)
    assert registry.lock_for("tech") is registry.lock_for("tech")
    assert registry.lock_for("tech") is not registry.lock_for("boss")
    assert registry.open_manager("tech")._lock is registry.lock_for("tech")
    registry.close()


def test_stop_leaves_a_flag_set_by_a_later_interval(manager, store, clock, shop):
    run(manager.start("T1"))
    clock.advance(600)

    admin = TimerLifecycleManager("boss", store, MemoryTimerStorage(), clock=clock)
    assert run(admin.clear_server_flag("T1", reason="left running overnight")).ok
    restarted = run(admin.start("T1"))
    assert restarted.ok

    clock.advance(60)
    stopped = run(manager.stop("Replaced keyboard"))
    assert stopped.ok
    assert stopped.entry.duration_minutes == 11
    assert manager.session is None

    flag = flag_of(store, "T1")
    assert flag.is_running is True
    assert flag.session_key == restarted.session.session_id
    assert run(admin.get_status("T1")).ok


def test_unknown_ticket_is_not_retryable(manager, store):
    result = run(manager.start("T404"))
    assert not result.ok
    assert result.error.code is TimerErrorCode.TICKET_NOT_FOUND
    assert result.error.retryable is False
    assert "T404" in result.error.message
    assert manager.session is None

    status = run(manager.get_status("T404"))
    assert status.error.code is TimerErrorCode.TICKET_NOT_FOUND


def test_clearing_a_flag_logs_reason_and_discarded_time(manager, store, clock, caplog):
    run(manager.start("T1"))
    started_at = clock.now
    clock.advance(5400)

    admin = TimerLifecycleManager("boss", store, MemoryTimerStorage(), clock=clock)
    with caplog.at_level(logging.INFO, logger="benchtimer.timer"):
        result = run(admin.clear_server_flag("T1", reason="Tech went home"))
    assert result.ok

    records = [r for r in caplog.records if r.getMessage() == "timer.server_flag_cleared"]
    assert len(records) == 1
    data = records[0].extra_data
    assert data["operator"] == "boss"
    assert data["ticket_id"] == "T1"
    assert data["reason"] == "Tech went home"
    assert data["timer_started_at"] == started_at.isoformat().replace("+00:00", "Z")
    assert data["discarded_seconds"] == 5400


def test_clearing_an_idle_flag_discards_nothing(store, clock, shop, caplog):
    admin = TimerLifecycleManager("boss", store, MemoryTimerStorage(), clock=clock)
    with caplog.at_level(logging.INFO, logger="benchtimer.timer"):
        assert run(admin.clear_server_flag("T2")).ok
    record = next(r for r in caplog.records if r.getMessage() == "timer.server_flag_cleared")
    assert record.extra_data["reason"] is None
    assert record.extra_data["timer_started_at"] is None
    assert record.extra_data["discarded_seconds"] == 0


def test_recover_assigns_a_key_to_a_flag_without_one(manager, store, clock, shop):
    run(store.set_timer_flag("T1", True, clock.now))
    assert flag_of(store, "T1").session_key is None
    clock.advance(120)

    recovered = run(manager.recover_timer("T1"))
    assert recovered.ok
    key = flag_of(store, "T1").session_key
    assert key is not None
    assert recovered.session.session_id == key

    stopped = run(manager.stop("Finished cleanup"))
    assert stopped.entry.session_key == key
    assert flag_of(store, "T1").is_running is False


def test_stop_releases_a_flag_that_has_no_key(manager, store, clock, shop):
    run(manager.start("T1"))
    # Flag rewritten the way older releases stored it.
    run(store.set_timer_flag("T1", True, clock.now))
    clock.advance(90)
    stopped = run(manager.stop("Updated firmware"))
    assert stopped.ok
    assert flag_of(store, "T1").is_running is False
