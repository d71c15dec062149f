import asyncio

from conftest import FakeSession
from panelplay.lib.errors import PlayerConnectionError, PlayerTimeout
from panelplay.lib.session import EVENTS, SessionState
from panelplay.lib.state import PlaybackState, Status, Target

R1 = Target("r1", "Lofi", "http://x/stream")
R2 = Target("r2", "Synthwave", "http://y/stream")


def _session():
    session = FakeSession()
    events = []
    for event in EVENTS:
        session.connect(event, lambda *args, event=event: events.append((event, *args)))
    return session, events


def test_start_is_refused_while_starting():
    session, events = _session()

    async def scenario():
        session.open_gate = asyncio.Event()
        first = asyncio.ensure_future(session.start(R1))
        await asyncio.sleep(0)
        assert session.state is SessionState.STARTING
        second = await session.start(R2)
        session.open_gate.set()
        return await first, second

    assert asyncio.run(scenario()) == (True, False)
    assert session.target == R1
    assert events == [("session_started", R1)]


def test_stop_during_start_closes_the_late_handle():
    session, events = _session()

    async def scenario():
        session.open_gate = asyncio.Event()
        starting = asyncio.ensure_future(session.start(R1))
        await asyncio.sleep(0)
        await session.stop()
        session.open_gate.set()
        return await starting

    assert asyncio.run(scenario()) is False
    assert session.state is SessionState.IDLE
    assert session.closed == session.opened
    assert not session.opened[0].valid
    assert events == []
    assert session.reconciler.state == PlaybackState.stopped()


def test_cancelled_start_returns_to_idle():
    session, _ = _session()

    async def scenario():
        session.open_gate = asyncio.Event()
        starting = asyncio.ensure_future(session.start(R1))
        await asyncio.sleep(0)
        starting.cancel()
        await asyncio.gather(starting, return_exceptions=True)

    asyncio.run(scenario())
    assert session.state is SessionState.IDLE
    assert session.target is None


def test_open_failure_emits_reason():
    session, events = _session()
    session.open_error = PlayerTimeout("no socket")

    assert asyncio.run(session.start(R1)) is False
    assert events == [("session_failed", "timeout")]
    assert session.state is SessionState.IDLE


def test_unexpected_open_error_returns_to_idle():
    session, events = _session()
    session.open_error = RuntimeError("int() argument must be a number, not 'NoneType'")

    async def scenario():
        first = await session.start(R1)
        session.open_error = None
        return first, await session.start(R1)

    assert asyncio.run(scenario()) == (False, True)
    assert events == [("session_failed", "error"), ("session_started", R1)]
    assert session.ready


def test_stop_while_subscribing_releases_late_tokens():
    session, events = _session()

    async def scenario():
        session.subscribe_gate = asyncio.Event()
        starting = asyncio.ensure_future(session.start(R1))
        await asyncio.sleep(0)
        await session.stop()
        session.subscribe_gate.set()
        return await starting

    assert asyncio.run(scenario()) is False
    assert session.state is SessionState.IDLE
    assert [token.active for token in session.tokens] == [False]
    assert ("session_started", R1) not in events
    assert session.reconciler.state == PlaybackState.stopped()


def test_stop_releases_subscriptions_once():
    session, _ = _session()

    async def scenario():
        await session.start(R1)
        await session.stop()
        await session.stop()

    asyncio.run(scenario())
    assert [token.active for token in session.tokens] == [False]


def test_subscribe_failure_still_reaches_ready():
    session, events = _session()
    session.subscribe_error = PlayerConnectionError("observer refused")

    assert asyncio.run(session.start(R1)) is True
    assert session.ready
    assert events == [("session_started", R1)]


def test_toggle_result_after_stop_is_dropped():
    session, events = _session()

    async def scenario():
        await session.start(R1)
        session.toggle_gate = asyncio.Event()
        toggling = asyncio.ensure_future(session.toggle_pause())
        await asyncio.sleep(0)
        await session.stop()
        session.toggle_gate.set()
        return await toggling

    assert asyncio.run(scenario()) is None
    assert session.reconciler.state == PlaybackState.stopped()
    assert ("play_state_changed", True) not in events


def test_toggle_applies_local_state():
    session, events = _session()

    async def scenario():
        await session.start(R1)
        return await session.toggle_pause(), await session.toggle_pause()

    assert asyncio.run(scenario()) == (True, False)
    assert session.reconciler.state == PlaybackState(Status.PLAYING, "r1")
    assert events[1:] == [("play_state_changed", True), ("play_state_changed", False)]


def test_toggle_does_not_repeat_a_notified_change():
    session, events = _session()

    async def scenario():
        await session.start(R1)
        # the player's notification lands before the command reply
        session.reconciler.apply_notification({"status": Status.PAUSED}, session._generation)
        return await session.toggle_pause()

    assert asyncio.run(scenario()) is True
    assert [e for e in events if e[0] == "play_state_changed"] == []
    assert session.reconciler.state.status is Status.PAUSED


def test_volume_is_clamped_to_percent_range():
    session, _ = _session()

    async def scenario():
        await session.set_volume(30)  # idle, ignored
        await session.start(R1)
        for level in (-5, 42.7, 300):
            await session.set_volume(level)

    asyncio.run(scenario())
    assert session.volumes == [0, 42, 100]


def test_listener_errors_are_contained():
    session, events = _session()

    def broken(target):
        raise RuntimeError("listener bug")

    session.connect("session_started", broken)
    assert asyncio.run(session.start(R1)) is True
    assert events == [("session_started", R1)]


def test_disconnected_listener_stops_receiving():
    session = FakeSession()
    seen = []
    token = session.connect("playback_stopped", lambda: seen.append(1))

    async def scenario():
        await session.start(R1)
        token.release()
        await session.stop()

    asyncio.run(scenario())
    assert seen == []


def test_status_reports_target_and_playback():
    session, _ = _session()
    asyncio.run(session.start(R1))
    status = session.get_status()
    assert status["state"] == "ready"
    assert status["target"] == {"id": "r1", "name": "Lofi", "url": "http://x/stream"}
    assert status["playback"]["status"] == "Playing"
