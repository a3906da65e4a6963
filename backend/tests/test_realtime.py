import threading
import time
import warnings
from pathlib import Path

import pytest

from crm_admin import realtime
from crm_admin.query import Filter, QueryOptions
from crm_admin.realtime import ConnectionState, RealtimeManager


class FakeListenerSource:
    """Stands in for FirestoreManager.create_listener."""

    def __init__(self):
        self.callbacks = []
        self.unsubscribed = 0

    def create_listener(self, collection, callback, options=None):
        self.callbacks.append(callback)

        def unsubscribe():
            self.unsubscribed += 1
        return unsubscribe


class FakeScheduler:
    def __init__(self):
        self.scheduled = []

    def __call__(self, delay, fn):
        handle = FakeHandle(delay, fn)
        self.scheduled.append(handle)
        return handle

    @property
    def delays(self):
        return [h.delay for h in self.scheduled]

    def run_all(self):
        for handle in self.scheduled:
            if not handle.cancelled:
                handle.fn()


class FakeHandle:
    def __init__(self, delay, fn):
        self.delay = delay
        self.fn = fn
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


@pytest.fixture()
def source():
    return FakeListenerSource()


@pytest.fixture()
def scheduler():
    return FakeScheduler()


@pytest.fixture()
def rt(source, scheduler):
    return RealtimeManager(source, max_reconnect_attempts=5, base_delay=2.0, schedule=scheduler)


def test_data_marks_connected(rt, source):
    received = []
    rt.subscribe("leads", lambda data, err: received.append((data, err)))
    assert rt.get_connection_status()["state"] == "disconnected"

    source.callbacks[0]([{"id": "a"}], None)

    assert rt.connection_state is ConnectionState.CONNECTED
    assert received == [([{"id": "a"}], None)]


def test_reconnect_backoff_then_failed(rt, source, scheduler):
    errors = []
    rt.subscribe("leads", lambda data, err: errors.append(err))
    boom = RuntimeError("stream broken")

    for _ in range(5):
        source.callbacks[0](None, boom)
        assert rt.connection_state is ConnectionState.ERROR

    assert scheduler.delays == [2.0, 4.0, 8.0, 16.0, 32.0]

    source.callbacks[0](None, boom)
    assert rt.connection_state is ConnectionState.FAILED
    assert len(scheduler.scheduled) == 5
    assert len(errors) == 6


def test_timer_moves_error_to_reconnecting(rt, source, scheduler):
    rt.subscribe("leads", lambda data, err: None)
    source.callbacks[0](None, RuntimeError("x"))
    scheduler.run_all()
    assert rt.connection_state is ConnectionState.RECONNECTING


def test_successful_delivery_resets_reconnect_counter(rt, source, scheduler):
    rt.subscribe("leads", lambda data, err: None)
    source.callbacks[0](None, RuntimeError("x"))
    source.callbacks[0](None, RuntimeError("x"))
    source.callbacks[0]([], None)

    assert rt.reconnect_attempts == 0
    scheduler.run_all()
    # stale timers don't override a live connection
    assert rt.connection_state is ConnectionState.CONNECTED

    source.callbacks[0](None, RuntimeError("x"))
    assert scheduler.delays[-1] == 2.0


def test_duplicate_subscription_returns_existing_handle(rt, source):
    options = QueryOptions(filters=[Filter(field="status", value="newLead")])
    first = rt.subscribe("leads", lambda d, e: None, options)
    second = rt.subscribe("leads", lambda d, e: None, QueryOptions(filters=[Filter(field="status", value="newLead")]))

    assert first is second
    assert len(source.callbacks) == 1


def test_unsubscribe_and_unsubscribe_all(rt, source, scheduler):
    options = QueryOptions(limit=5)
    rt.subscribe("leads", lambda d, e: None, options)
    rt.subscribe("users", lambda d, e: None)
    source.callbacks[0](None, RuntimeError("x"))

    assert rt.unsubscribe("leads", QueryOptions(limit=5)) is True
    assert rt.unsubscribe("leads", QueryOptions(limit=5)) is False
    assert rt.get_connection_status()["active_listeners"] == 1

    rt.unsubscribe_all()
    assert source.unsubscribed == 2
    assert rt.get_connection_status()["active_listeners"] == 0
    assert all(h.cancelled for h in scheduler.scheduled)


def test_status_lists_listeners(rt):
    rt.subscribe("leads", lambda d, e: None)
    status = rt.get_connection_status()
    assert status["listeners"][0]["collection"] == "leads"
    assert status["listeners"][0]["age"] >= 0


def test_flapping_connection_does_not_accumulate_timers(rt, source, scheduler):
    rt.subscribe("leads", lambda d, e: None)
    for _ in range(1000):
        source.callbacks[0](None, RuntimeError("flap"))
        source.callbacks[0]([], None)

    assert len(rt._pending) <= rt.max_reconnect_attempts
    assert sum(not h.cancelled for h in scheduler.scheduled) == 0


def test_concurrent_duplicate_subscribes_attach_one_listener(scheduler):
    class SlowSource(FakeListenerSource):
        def create_listener(self, collection, callback, options=None):
            time.sleep(0.05)
            return super().create_listener(collection, callback, options)

    source = SlowSource()
    rt = RealtimeManager(source, schedule=scheduler)
    handles = []

    threads = [threading.Thread(target=lambda: handles.append(rt.subscribe("leads", lambda d, e: None)))
               for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(5)

    assert len(source.callbacks) == 1
    assert all(h is handles[0] for h in handles)
    rt.unsubscribe_all()
    assert source.unsubscribed == 1


def test_module_compiles_without_warnings():
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        compile(Path(realtime.__file__).read_text(), realtime.__file__, "exec")
