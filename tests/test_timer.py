import asyncio

import pytest

from probe_lib import CancelToken, StreamCancelled, Timer, run_with_timers


def test_marks_are_first_call_wins():
    t = Timer()
    t.mark_ttfb()
    first = t.ttfb_ms
    t.mark_ttfb()
    assert t.ttfb_ms == first

    t.mark_first_event()
    evt = t.first_event_ms
    t.mark_first_event()
    assert t.first_event_ms == evt


def test_snapshot_stops_timer_and_is_stable():
    t = Timer()
    t.mark_ttfb()
    t.mark_first_event()
    s1 = t.snapshot()
    s2 = t.snapshot()
    assert s1 == s2
    assert s1.end_ms == s1.start_ms + s1.total_ms
    assert 0 <= s1.ttfb_ms <= s1.first_event_ms <= s1.total_ms


def test_marks_after_stop_are_ignored():
    t = Timer()
    total = t.stop()
    t.mark_ttfb()
    t.mark_first_event()
    snap = t.snapshot()
    assert snap.ttfb_ms is None
    assert snap.first_event_ms is None
    assert snap.total_ms == total == t.stop()


def test_timings_dict_omits_missing_marks():
    snap = Timer().snapshot()
    d = snap.to_dict()
    assert set(d) == {"startMs", "endMs", "totalMs"}


@pytest.mark.asyncio
async def test_first_cancel_reason_wins():
    token = CancelToken()

    async def body():
        await asyncio.sleep(5)

    with pytest.raises(StreamCancelled) as exc_info:
        await run_with_timers(token, body(), [(20, "FIRST"), (60, "SECOND")])
    assert exc_info.value.reason == "FIRST"
    assert token.reason == "FIRST"
    assert token.cancel("LATE") is False
    assert token.reason == "FIRST"


@pytest.mark.asyncio
async def test_timer_after_completion_has_no_effect():
    token = CancelToken()

    async def body():
        return None

    await run_with_timers(token, body(), [(10, "REQUEST_TIMEOUT")])
    await asyncio.sleep(0.05)
    assert token.cancelled is False
    assert token.cancel("LATE") is False


@pytest.mark.asyncio
async def test_disarmed_timer_never_fires():
    token = CancelToken()

    async def body():
        token.disarm("FIRST_BYTE_TIMEOUT")
        await asyncio.sleep(0.1)

    await run_with_timers(token, body(), [(20, "FIRST_BYTE_TIMEOUT")])
    assert token.reason is None
    assert not token.armed("FIRST_BYTE_TIMEOUT")


@pytest.mark.asyncio
async def test_outside_cancellation_propagates():
    token = CancelToken()

    async def body():
        await asyncio.sleep(5)

    outer = asyncio.ensure_future(run_with_timers(token, body(), [(5_000, "REQUEST_TIMEOUT")]))
    await asyncio.sleep(0.01)
    outer.cancel()
    with pytest.raises(asyncio.CancelledError):
        await outer
    assert token.reason is None
