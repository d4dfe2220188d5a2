"""Fakes for the media/RTC/relay collaborators of the flashroom core."""
import asyncio

import pytest

from flash_call import CallNegotiator
from flash_config import Settings
from flash_errors import ChannelError


async def settle(rounds: int = 10):
    """Let scheduled callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeTrack:
    def __init__(self, kind):
        self.kind = kind
        self.stopped = False

    def stop(self):
        self.stopped = True


class FakeConnection:
    def __init__(self, ice_servers, remote_gate=None):
        self.ice_servers = ice_servers
        self.local_description = None
        self.remote_description = None
        self.tracks = []
        self.applied = []  # (candidate, remote description at the time)
        self.closed = False
        self.remote_gate = remote_gate
        self._on_candidate = None
        self._on_track = None

    def on_candidate(self, callback):
        self._on_candidate = callback

    def on_track(self, callback):
        self._on_track = callback

    def add_track(self, track):
        self.tracks.append(track)

    async def create_offer(self):
        return {'type': 'offer', 'sdp': f'v=0 offer from {id(self)}'}

    async def create_answer(self):
        return {'type': 'answer', 'sdp': f'v=0 answer from {id(self)}'}

    async def set_local_description(self, description):
        self.local_description = description

    async def set_remote_description(self, description):
        if self.remote_gate is not None:
            await self.remote_gate.wait()
        if 'garbage' in description['sdp']:
            raise ValueError('cannot parse sdp')
        self.remote_description = description

    async def add_ice_candidate(self, candidate):
        if candidate.get('candidate') == 'candidate:broken':
            raise ValueError('bad candidate')
        self.applied.append((candidate, self.remote_description))

    async def close(self):
        self.closed = True

    # test hooks
    def discover(self, candidate):
        self._on_candidate(candidate)

    def receive_track(self, track):
        self._on_track(track)


class FakeConnections:
    """Connection factory remembering what it built."""

    def __init__(self):
        self.made = []
        self.remote_gate = None

    def __call__(self, ice_servers):
        conn = FakeConnection(ice_servers, remote_gate=self.remote_gate)
        self.made.append(conn)
        return conn

    @property
    def last(self):
        return self.made[-1]


class FakeCapture:
    def __init__(self):
        self.gate = None
        self.error = None
        self.handed_out = []

    async def acquire(self):
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        tracks = [FakeTrack('audio'), FakeTrack('video')]
        self.handed_out.extend(tracks)
        return tracks


class FakeOutput:
    def __init__(self):
        self.bound = []
        self.clears = 0

    def bind(self, track):
        self.bound.append(track)

    async def clear(self):
        self.bound = []
        self.clears += 1


class Signals:
    """Records what the negotiator relays to the peer."""

    def __init__(self):
        self.sent = []

    async def __call__(self, event, data):
        self.sent.append((event, data))

    def of(self, event):
        return [data for name, data in self.sent if name == event]


class FakeChannel:
    def __init__(self):
        self.sent = []
        self.closed = False
        self.broken = False
        self._inbound = asyncio.Queue()

    async def emit(self, event, data):
        if self.broken:
            raise ChannelError('relay connection lost: test')
        self.sent.append((event, data))

    def push(self, event, data):
        self._inbound.put_nowait((event, data))

    def drop(self):
        self._inbound.put_nowait(None)

    async def events(self):
        while True:
            item = await self._inbound.get()
            if item is None:
                raise ChannelError('relay connection lost: test')
            if item == 'closed':
                return
            yield item

    async def close(self):
        self.closed = True
        self._inbound.put_nowait('closed')

    def of(self, event):
        return [data for name, data in self.sent if name == event]


def make_opener(channel, connection_id='abc123'):
    calls = []

    async def opener(address, timeout):
        calls.append(address)
        return channel, connection_id

    opener.calls = calls
    return opener


@pytest.fixture
def test_settings():
    return Settings(ICE_SERVERS=['stun:stun.test:3478'], TYPING_IDLE_MS=50)


@pytest.fixture
def signals():
    return Signals()


@pytest.fixture
def capture():
    return FakeCapture()


@pytest.fixture
def output():
    return FakeOutput()


@pytest.fixture
def connections():
    return FakeConnections()


@pytest.fixture
def negotiator(signals, capture, output, connections):
    return CallNegotiator(signals, capture, output, ice_servers=['stun:stun.test:3478'],
                          connection_factory=connections)


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def collaborators(capture, output, connections):
    return {'capture': capture, 'output': output, 'connection_factory': connections}
