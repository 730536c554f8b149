import asyncio
import logging

from benchtimer.services.channel import TimerChannelHub
from benchtimer.services.local_storage import ACTIVE_TIMER_KEY, JsonFileTimerStorage, MemoryTimerStorage
from benchtimer.services.registry import TimerManagerRegistry, channel_name
from benchtimer.schemas.timer import TimerErrorCode, TimerState


def test_channel_delivers_to_peers_only():
    hub = TimerChannelHub()
    first = hub.open("timer:tech")
    second = hub.open("timer:tech")
    elsewhere = hub.open("timer:boss")
    seen = {"first": [], "second": [], "elsewhere": []}
    first.subscribe(seen["first"].append)
    second.subscribe(seen["second"].append)
    elsewhere.subscribe(seen["elsewhere"].append)

    reached = first.post({"type": "ping"})

    assert reached == 1
    assert seen["first"] == []
    assert seen["elsewhere"] == []
    assert seen["second"][0]["type"] == "ping"
    assert seen["second"][0]["sender"] == first.id


def test_closed_channel_detaches():
    hub = TimerChannelHub()
    first = hub.open("timer:tech")
    second = hub.open("timer:tech")
    assert hub.subscriber_count("timer:tech") == 2
    second.close()
    assert hub.subscriber_count("timer:tech") == 1
    assert first.post({"type": "ping"}) == 0


def test_broken_listener_does_not_starve_others(caplog):
    hub = TimerChannelHub()
    sender = hub.open("timer:tech")
    receiver = hub.open("timer:tech")
    received = []

    def broken(_message):
        raise RuntimeError("boom")

    receiver.subscribe(broken)
    receiver.subscribe(received.append)
    with caplog.at_level(logging.ERROR, logger="benchtimer.channel"):
        sender.post({"type": "ping"})
    assert len(received) == 1
    assert any(r.getMessage() == "channel.listener_failed" for r in caplog.records)


def test_unsubscribe_stops_delivery():
    hub = TimerChannelHub()
    sender = hub.open("x")
    receiver = hub.open("x")
    received = []
    unsubscribe = receiver.subscribe(received.append)
    unsubscribe()
    sender.post({"type": "ping"})
    assert received == []


def test_memory_storage_hands_out_copies():
    storage = MemoryTimerStorage()
    record = {"ticketId": "T1"}
    storage.set(ACTIVE_TIMER_KEY, record)
    record["ticketId"] = "changed"
    loaded = storage.get(ACTIVE_TIMER_KEY)
    loaded["ticketId"] = "mutated"
    assert storage.get(ACTIVE_TIMER_KEY) == {"ticketId": "T1"}
    storage.remove(ACTIVE_TIMER_KEY)
    assert storage.get(ACTIVE_TIMER_KEY) is None


def test_json_storage_persists_and_cleans_up(tmp_path):
    path = tmp_path / "state" / "tech.json"
    storage = JsonFileTimerStorage(path)
    storage.set(ACTIVE_TIMER_KEY, {"ticketId": "T1", "isRunning": True})
    assert path.exists()
    assert JsonFileTimerStorage(path).get(ACTIVE_TIMER_KEY) == {"ticketId": "T1", "isRunning": True}

    storage.remove(ACTIVE_TIMER_KEY)
    assert not path.exists()
    assert storage.get(ACTIVE_TIMER_KEY) is None


def test_json_storage_tolerates_corrupt_file(tmp_path, caplog):
    path = tmp_path / "tech.json"
    path.write_text("{not json", encoding="utf-8")
    storage = JsonFileTimerStorage(path)
    with caplog.at_level(logging.WARNING, logger="benchtimer.local_storage"):
        assert storage.get(ACTIVE_TIMER_KEY) is None
    assert any(r.getMessage() == "local_storage.corrupt" for r in caplog.records)

    storage.set(ACTIVE_TIMER_KEY, {"ticketId": "T2"})
    assert storage.get(ACTIVE_TIMER_KEY) == {"ticketId": "T2"}


def test_registry_reuses_manager_per_operator(store):
    registry = TimerManagerRegistry(store)
    assert registry.get("tech") is registry.get("tech")
    assert registry.get("tech") is not registry.get("boss")
    assert registry.hub.subscriber_count(channel_name("tech")) == 1
    registry.close()
    assert registry.hub.subscriber_count(channel_name("tech")) == 0


def test_registry_sanitizes_storage_file_names(store, tmp_path):
    registry = TimerManagerRegistry(store, storage_dir=tmp_path)
    storage = registry.storage_for("../tech@shop")
    assert isinstance(storage, JsonFileTimerStorage)
    assert storage.path.parent == tmp_path
    assert storage.path.name == ".._tech_shop.json"


def test_change_in_one_tab_reaches_the_other(store, clock, shop):
    registry = TimerManagerRegistry(store, clock=clock)
    tab_a = registry.open_manager("tech")
    tab_b = registry.open_manager("tech")

    asyncio.run(tab_a.start("T1", "R-1001"))
    assert tab_b.session == tab_a.session
    assert tab_b.state is TimerState.RUNNING

    # The other tab sees the timer and refuses a second one.
    refused = asyncio.run(tab_b.start("T2"))
    assert refused.error.code is TimerErrorCode.ALREADY_RUNNING_ELSEWHERE

    clock.advance(90)
    tab_b.pause()
    assert tab_a.state is TimerState.PAUSED
    assert tab_a.elapsed_seconds() == 90

    stopped = asyncio.run(tab_a.stop("Reflowed solder"))
    assert stopped.ok
    assert tab_b.session is None
    assert tab_b.state is TimerState.IDLE

    tab_a.close()
    tab_b.close()


def test_other_operators_are_not_notified(store, clock, shop):
    registry = TimerManagerRegistry(store, clock=clock)
    tech = registry.open_manager("tech")
    boss = registry.open_manager("boss")
    asyncio.run(tech.start("T1"))
    assert boss.session is None
