import asyncio
import json
import shutil
import tempfile

import pytest

from panelplay.lib.bus import PLAYER_IFACE
from panelplay.lib.config import reload_config
from panelplay.lib.notify import Notifier
from panelplay.lib.session import PlayerSession
from panelplay.lib.state import PlayerHandle
from panelplay.lib.transport import SubscriptionToken

TEST_CONFIG = {
    "radio": {"start_timeout": 1.0},
    "spotify": {"rebuild_debounce": 0.05, "launch": ["spotify"]},
    "transport": {"timeout": 0.5},
    "retry": {"attempts": 3, "delay": 0.01},
    "notifications": {"enabled": False},
    # never write settings files under ~ from tests
    "settings": {"path": None},
}


@pytest.fixture(autouse=True)
def test_config(tmp_path, monkeypatch):
    # kept out of tmp_path itself so tests that chdir there see no CWD config
    path = tmp_path / "panelplay-test" / "config.json"
    path.parent.mkdir()
    path.write_text(json.dumps(TEST_CONFIG))
    monkeypatch.setenv("PANELPLAY_CONFIG", str(path))
    monkeypatch.delenv("NOTIFY_SOCKET", raising=False)
    monkeypatch.delenv("WATCHDOG_USEC", raising=False)
    reload_config()
    yield path
    monkeypatch.delenv("PANELPLAY_CONFIG")
    reload_config()


@pytest.fixture
def sock_dir():
    # tmp_path can exceed the Unix socket path limit
    d = tempfile.mkdtemp(prefix="pp-")
    yield d
    shutil.rmtree(d, ignore_errors=True)


async def wait_for(predicate, timeout=2.0):
    """Poll ``predicate`` until it is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class FakeMpv:
    """Enough of mpv's JSON IPC to drive a session."""

    def __init__(self, path):
        self.path = path
        self.properties = {"pause": False, "volume": 50, "media-title": "Night Drive"}
        self.commands = []
        self.observers = []
        self.delay = 0.0
        self.raw_reply = None
        self.noise = False
        self.server = None

    async def start(self):
        self.server = await asyncio.start_unix_server(self._client, path=self.path)
        return self

    def close(self):
        for writer in self.observers:
            writer.close()
        self.observers.clear()
        if self.server is not None:
            self.server.close()

    def crash(self):
        """Drop every observer connection, like mpv exiting."""
        self.close()

    async def push(self, name, value):
        self.properties[name] = value
        event = {"event": "property-change", "id": 1, "name": name, "data": value}
        for writer in list(self.observers):
            writer.write(json.dumps(event).encode() + b"\n")
            await writer.drain()

    async def _client(self, reader, writer):
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                command = json.loads(line)["command"]
                self.commands.append(command)
                if self.delay:
                    await asyncio.sleep(self.delay)
                if self.raw_reply is not None:
                    writer.write(self.raw_reply)
                    await writer.drain()
                    continue
                if self.noise:
                    writer.write(b'{"event": "playback-restart"}\n')
                reply = await self._handle(command, writer)
                writer.write(json.dumps(reply).encode() + b"\n")
                await writer.drain()
        except (ConnectionError, OSError):
            pass
        finally:
            if writer not in self.observers:
                writer.close()

    async def _handle(self, command, writer):
        verb = command[0]
        if verb == "observe_property":
            if writer not in self.observers:
                self.observers.append(writer)
            return {"error": "success"}
        if verb == "cycle":
            self.properties[command[1]] = not self.properties[command[1]]
            await self.push(command[1], self.properties[command[1]])
            return {"error": "success"}
        if verb == "get_property":
            if command[1] not in self.properties:
                return {"error": "property unavailable"}
            return {"data": self.properties[command[1]], "error": "success"}
        if verb == "set_property":
            self.properties[command[1]] = command[2]
            return {"error": "success"}
        return {"error": "invalid parameter"}


class FakeProcess:
    def __init__(self, argv, server=None):
        self.argv = list(argv)
        self.server = server
        self.pid = 4242
        self.returncode = None
        self.kills = 0
        self._exited = asyncio.Event()

    def kill(self):
        self.kills += 1
        self.returncode = -9
        if self.server is not None:
            self.server.close()
        self._exited.set()

    def terminate(self):
        self.kill()

    async def wait(self):
        await self._exited.wait()
        return self.returncode


@pytest.fixture
def mpv_launcher(monkeypatch):
    """Replace process spawning with an in-process fake mpv per launch."""
    launched = []
    options = {"serve": True}

    async def fake_exec(*argv, **kwargs):
        path = next(a.split("=", 1)[1] for a in argv if a.startswith("--input-ipc-server="))
        server = await FakeMpv(path).start() if options["serve"] else None
        proc = FakeProcess(argv, server)
        launched.append(proc)
        return proc

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_exec)
    return launched, options


class FakeBus:
    """Stands in for BusTransport: one MPRIS player on a pretend bus."""

    def __init__(self, bus_name="org.mpris.MediaPlayer2.spotify", owner=":1.42"):
        self.bus_name = bus_name
        self.owner = owner
        self.props = {
            "PlaybackStatus": "Playing",
            "Metadata": {
                "mpris:trackid": "spotify:track:1",
                "xesam:artist": ["Tycho"],
                "xesam:title": "Awake",
            },
            "Volume": 0.5,
        }
        self.calls = []
        self.handlers = []
        self.metadata_fetches = 0
        self.on_appear = None
        self.on_vanish = None
        self.closed = False

    async def connect(self):
        return self

    async def name_owner(self):
        return self.owner

    async def get_property(self, interface, name):
        if name == "Metadata":
            self.metadata_fetches += 1
        return self.props[name]

    async def set_property(self, interface, name, value):
        self.calls.append(("Set", name, value.value))
        self.props[name] = value.value

    async def call_method(self, interface, member):
        self.calls.append(member)
        if member == "PlayPause":
            playing = self.props["PlaybackStatus"] == "Playing"
            self.props["PlaybackStatus"] = "Paused" if playing else "Playing"

    async def subscribe_notifications(self, predicate, handler):
        entry = (predicate, handler)
        self.handlers.append(entry)
        return SubscriptionToken("fake-props", release=lambda: self.handlers.remove(entry))

    async def unsubscribe(self, token):
        token.release()

    async def watch_name(self, on_appear, on_vanish):
        self.on_appear, self.on_vanish = on_appear, on_vanish
        if self.owner:
            on_appear(self.owner)
        return SubscriptionToken("fake-watch")

    async def close(self):
        self.closed = True

    def emit(self, changed, interface=PLAYER_IFACE):
        for predicate, handler in list(self.handlers):
            if predicate(interface):
                handler(changed)

    def vanish(self):
        self.owner = None
        self.on_vanish()


class FakeSession(PlayerSession):
    """A session whose player is a few flags, with gates to hold it mid-call."""

    id = "fake"

    def __init__(self, **kwargs):
        super().__init__(notifier=Notifier(enabled=False), **kwargs)
        self.open_gate = None
        self.open_error = None
        self.toggle_gate = None
        self.subscribe_error = None
        self.subscribe_gate = None
        self.opened, self.closed, self.volumes = [], [], []
        self.tokens = []
        self.paused = False

    async def _open(self, target):
        if self.open_gate is not None:
            await self.open_gate.wait()
        if self.open_error is not None:
            raise self.open_error
        handle = PlayerHandle("fake", target.id)
        self.opened.append(handle)
        return handle

    async def _close(self, handle):
        self.closed.append(handle)

    async def _subscribe(self):
        if self.subscribe_gate is not None:
            await self.subscribe_gate.wait()
        if self.subscribe_error is not None:
            raise self.subscribe_error
        token = SubscriptionToken("fake-events")
        self.tokens.append(token)
        return [token]

    async def _toggle(self):
        if self.toggle_gate is not None:
            await self.toggle_gate.wait()
        self.paused = not self.paused
        return self.paused

    async def _set_volume(self, level):
        self.volumes.append(level)
