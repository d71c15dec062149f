import asyncio

from conftest import FakeBus, wait_for
from panelplay.lib.notify import Notifier
from panelplay.lib.retry import RetryPolicy
from panelplay.lib.session import EVENTS, SessionState
from panelplay.lib.state import PlaybackState, Status
from panelplay.players.mpris import MprisSession, has_artist_and_title, parse_metadata


def _session(bus, **kwargs):
    session = MprisSession(transport=bus, notifier=Notifier(enabled=False),
                           retry=RetryPolicy(3, 0.0), **kwargs)
    events = []
    for event in EVENTS:
        session.connect(event, lambda *args, event=event: events.append((event, *args)))
    return session, events


def test_parse_metadata_takes_first_non_blank_artist():
    meta = parse_metadata({
        "xesam:artist": ["", "Bonobo", "Jordan Rakei"],
        "xesam:title": "Kerala",
        "mpris:trackid": "/com/spotify/track/abc",
    })
    assert meta == {"track_id": "/com/spotify/track/abc", "artist": "Bonobo", "title": "Kerala"}
    assert parse_metadata(None) == {"track_id": None, "artist": None, "title": None}
    assert not has_artist_and_title(parse_metadata({"xesam:title": "   "}))


def test_player_appearing_starts_the_session():
    bus = FakeBus()
    session, events = _session(bus)

    async def scenario():
        await session.activate()
        await wait_for(lambda: session.reconciler.state.artist == "Tycho")
        return session.reconciler.state

    state = asyncio.run(scenario())
    assert session.state is SessionState.READY
    assert state == PlaybackState(Status.PLAYING, "spotify:track:1", "Tycho", "Awake")
    assert state.label == "Tycho - Awake"
    assert events[0][0] == "session_started"


def test_empty_metadata_falls_back_to_placeholders():
    bus = FakeBus()
    bus.props["Metadata"] = {"xesam:artist": [""], "xesam:title": ""}
    session, _ = _session(bus)

    async def scenario():
        await session.activate()
        await wait_for(lambda: bus.metadata_fetches == 3)
        await asyncio.sleep(0.01)
        return session.reconciler.state

    state = asyncio.run(scenario())
    assert bus.metadata_fetches == 3
    assert state.status is Status.PLAYING
    assert state.label == "Unknown Artist - Unknown Title"


def test_properties_changed_updates_state_and_emits():
    bus = FakeBus()
    session, events = _session(bus)

    async def scenario():
        await session.activate()
        await wait_for(lambda: session.reconciler.state.title == "Awake")
        bus.emit({"PlaybackStatus": "Paused"})
        bus.emit({"Metadata": {"mpris:trackid": "spotify:track:2",
                               "xesam:artist": ["Bonobo"], "xesam:title": "Kerala"}})
        bus.emit({"PlaybackStatus": "Playing"}, interface="org.mpris.MediaPlayer2")
        return session.reconciler.state

    state = asyncio.run(scenario())
    assert state == PlaybackState(Status.PAUSED, "spotify:track:2", "Bonobo", "Kerala")
    assert ("play_state_changed", True) in events


def test_vanish_clears_state_synchronously():
    bus = FakeBus()
    session, events = _session(bus)

    async def scenario():
        await session.activate()
        await wait_for(lambda: session.ready)
        handle = session.handle
        bus.vanish()
        # no await between vanish and the checks
        assert session.state is SessionState.IDLE
        assert session.reconciler.state == PlaybackState.stopped()
        assert not handle.valid
        await asyncio.sleep(0.01)

    asyncio.run(scenario())
    assert events[-1] == ("playback_stopped",)
    assert bus.handlers == []


def test_stop_releases_subscription_but_leaves_player_running():
    bus = FakeBus()
    session, _ = _session(bus)

    async def scenario():
        await session.activate()
        await wait_for(lambda: session.ready)
        await session.stop()

    asyncio.run(scenario())
    assert bus.handlers == []
    assert "Quit" not in bus.calls
    assert session.reconciler.state == PlaybackState.stopped()


def test_toggle_reads_back_playback_status():
    bus = FakeBus()
    session, events = _session(bus)

    async def scenario():
        await session.activate()
        await wait_for(lambda: session.ready)
        return await session.toggle_pause()

    assert asyncio.run(scenario()) is True
    assert "PlayPause" in bus.calls
    assert session.reconciler.state.status is Status.PAUSED


def test_volume_steps_are_clamped():
    bus = FakeBus()
    bus.props["Volume"] = 0.95
    session, _ = _session(bus)

    async def scenario():
        await session.activate()
        await wait_for(lambda: session.ready)
        up = await session.adjust_volume(1)
        down = await session.adjust_volume(-1)
        return up, down

    up, down = asyncio.run(scenario())
    assert up == 1.0
    assert round(down, 2) == 0.9


def test_volume_control_can_be_disabled():
    bus = FakeBus()
    session, _ = _session(bus, enable_volume=False)

    async def scenario():
        await session.activate()
        await wait_for(lambda: session.ready)
        await session.set_volume(80)
        return await session.adjust_volume(1)

    assert asyncio.run(scenario()) is None
    assert not any(call[0] == "Set" for call in bus.calls if isinstance(call, tuple))


def test_next_and_previous_need_a_ready_session():
    bus = FakeBus(owner=None)
    session, _ = _session(bus)

    async def scenario():
        await session.activate()
        assert await session.next_track() is False
        bus.owner = ":1.50"
        bus.on_appear(bus.owner)
        await wait_for(lambda: session.ready)
        assert await session.next_track() is True
        assert await session.previous() is True

    asyncio.run(scenario())
    assert bus.calls[-2:] == ["Next", "Previous"]


def test_dispose_releases_the_name_watch():
    bus = FakeBus()
    session, _ = _session(bus)

    async def scenario():
        await session.activate()
        await wait_for(lambda: session.ready)
        await session.dispose()

    asyncio.run(scenario())
    assert bus.closed
    assert session.state is SessionState.IDLE


def test_reattach_after_stop_while_player_stays():
    bus = FakeBus()
    session, events = _session(bus)

    async def scenario():
        await session.activate()
        await wait_for(lambda: session.ready)
        await session.stop()
        # no NameOwnerChanged arrives, the player never left
        assert session.state is SessionState.IDLE
        assert await session.reattach() is True
        await wait_for(lambda: session.reconciler.state.title == "Awake")
        assert await session.reattach() is True

        bus.owner = None
        await session.stop()
        return await session.reattach()

    assert asyncio.run(scenario()) is False
    assert session.state is SessionState.IDLE
    assert [e for e in events if e[0] == "session_started"] == [
        ("session_started", session._target()), ("session_started", session._target())]
