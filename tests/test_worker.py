from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

import pytest

import crony


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeTimerEvent(threading.Event):
    """Cancellation event whose waits advance a fake clock instead of sleeping."""

    def __init__(self, clock: FakeClock, cancel_after_waits: Optional[int] = None):
        super().__init__()
        self.clock = clock
        self.waits: List[float] = []
        self.cancel_after_waits = cancel_after_waits

    def wait(self, timeout: Optional[float] = None) -> bool:
        if self.is_set():
            return True
        self.waits.append(timeout)
        if self.cancel_after_waits is not None and len(self.waits) >= self.cancel_after_waits:
            self.set()
            return True
        self.clock.advance(timeout)
        return self.is_set()


def test_worker_fires_in_order_until_cancelled() -> None:
    clock = FakeClock(datetime(2024, 1, 1, 0, 0, 30))
    cancel = FakeTimerEvent(clock)
    events: List[crony.ExecutionEvent] = []

    def callback(event: crony.ExecutionEvent) -> None:
        events.append(event)
        assert clock() == event.started_at
        if len(events) == 3:
            cancel.set()

    worker = crony.ScheduleWorker(crony.parse("*/15 * * * *"), callback, cancel_event=cancel, clock=clock)
    worker.run()

    assert [event.started_at for event in events] == [
        datetime(2024, 1, 1, 0, 15),
        datetime(2024, 1, 1, 0, 30),
        datetime(2024, 1, 1, 0, 45),
    ]
    assert [event.next_execution_at for event in events] == [
        datetime(2024, 1, 1, 0, 30),
        datetime(2024, 1, 1, 0, 45),
        datetime(2024, 1, 1, 1, 0),
    ]
    assert cancel.waits == [870.0, 900.0, 900.0]
    assert worker.fired == 3
    assert worker.state is crony.WorkerState.STOPPED


def test_worker_skips_sleep_when_occurrence_already_passed() -> None:
    start = datetime(2024, 1, 1, 0, 0, 30)
    calls = {"count": 0}

    def clock() -> datetime:
        # The first call anchors the schedule; afterwards time has run far ahead.
        calls["count"] += 1
        return start if calls["count"] == 1 else start + timedelta(days=1)

    cancel = threading.Event()
    fired: List[datetime] = []

    def callback(event: crony.ExecutionEvent) -> None:
        fired.append(event.started_at)
        if len(fired) == 2:
            cancel.set()

    crony.ScheduleWorker(crony.parse("* * * * *"), callback, cancel_event=cancel, clock=clock).run()
    assert fired == [datetime(2024, 1, 1, 0, 1), datetime(2024, 1, 1, 0, 2)]


def test_cancelled_worker_never_fires() -> None:
    cancel = threading.Event()
    cancel.set()
    called: List[crony.ExecutionEvent] = []
    worker = crony.ScheduleWorker(
        crony.parse("* * * * *"),
        called.append,
        cancel_event=cancel,
        clock=FakeClock(datetime(2024, 1, 1)),
    )
    worker.run()
    assert called == []
    assert worker.fired == 0
    assert worker.state is crony.WorkerState.STOPPED


def test_cancel_during_sleep_prevents_callback() -> None:
    clock = FakeClock(datetime(2024, 1, 1, 0, 0, 30))
    cancel = FakeTimerEvent(clock, cancel_after_waits=2)
    called: List[crony.ExecutionEvent] = []
    worker = crony.ScheduleWorker(crony.parse("*/15 * * * *"), called.append, cancel_event=cancel, clock=clock)
    worker.run()
    assert len(called) == 1
    assert len(cancel.waits) == 2


def test_cancel_wakes_real_sleeping_thread() -> None:
    called: List[crony.ExecutionEvent] = []
    cancel = threading.Event()
    worker = crony.start_worker(
        crony.parse("0 0 1 1 *"),
        called.append,
        cancel,
        clock=lambda: datetime(2024, 3, 15, 10, 0),
        name="yearly",
    )
    assert worker.is_alive()
    cancel.set()
    worker.join(timeout=5)
    assert not worker.is_alive()
    assert called == []
    assert worker.state is crony.WorkerState.STOPPED


def test_cancel_from_callback_does_not_double_fire() -> None:
    clock = FakeClock(datetime(2024, 1, 1))
    cancel = FakeTimerEvent(clock)
    called: List[crony.ExecutionEvent] = []

    def callback(event: crony.ExecutionEvent) -> None:
        called.append(event)
        cancel.set()

    worker = crony.ScheduleWorker(crony.parse("* * * * *"), callback, cancel_event=cancel, clock=clock)
    worker.run()
    assert len(called) == 1
    assert worker.fired == 1


def test_failing_callback_is_reported_and_loop_continues() -> None:
    clock = FakeClock(datetime(2024, 1, 1))
    cancel = FakeTimerEvent(clock)
    errors: List[Tuple[Exception, crony.ExecutionEvent]] = []
    seen: List[datetime] = []

    def callback(event: crony.ExecutionEvent) -> None:
        seen.append(event.started_at)
        if len(seen) == 3:
            cancel.set()
        if len(seen) == 1:
            raise RuntimeError("boom")

    worker = crony.ScheduleWorker(
        crony.parse("0 * * * *"),
        callback,
        cancel_event=cancel,
        clock=clock,
        on_error=lambda exc, event: errors.append((exc, event)),
    )
    worker.run()

    assert len(seen) == 3
    assert worker.failures == 1
    assert len(errors) == 1
    exc, event = errors[0]
    assert isinstance(exc, RuntimeError)
    assert event.started_at == datetime(2024, 1, 1, 1, 0)


def test_worker_cannot_start_twice() -> None:
    cancel = threading.Event()
    cancel.set()
    worker = crony.start_worker(crony.parse("* * * * *"), lambda event: None, cancel)
    worker.join(timeout=5)
    with pytest.raises(RuntimeError, match="already started"):
        worker.start()


def test_default_clock_uses_worker_offset() -> None:
    tz = crony.parse_utc_offset("+05:30", "utc_offset")
    worker = crony.ScheduleWorker(crony.parse("* * * * *"), lambda event: None, utc_offset=tz)
    assert worker.clock().utcoffset() == timedelta(hours=5, minutes=30)
    assert worker.name == "* * * * *"
