import asyncio, json

import pytest
from aiortc import RTCSessionDescription
from aiortc.exceptions import InvalidStateError
from websockets.asyncio.client import connect
from websockets.asyncio.server import serve
from websockets.exceptions import ConnectionClosed

from relay import Relay


class FakeSocket:
    """Server-side stand-in for a websockets connection."""

    def __init__(self, name):
        self.remote_address = (name, 0)
        self.sent = []
        self.closed = False

    async def send(self, text):
        if self.closed:
            raise ConnectionClosed(None, None)
        self.sent.append(json.loads(text))


class FakePeerConnection:
    """Just enough of aiortc's RTCPeerConnection for the coordinator."""

    def __init__(self):
        self.localDescription = None
        self.remoteDescription = None
        self.connectionState = 'new'
        self.candidates = []
        self.tracks = []
        self.channels = []
        self.handlers = {}
        self.closed = False

    def on(self, event):
        def register(fn):
            self.handlers[event] = fn
            return fn
        return register

    def addTrack(self, track):
        self.tracks.append(track)

    def createDataChannel(self, label, **kwargs):
        self.channels.append(label)

    async def createOffer(self):
        return RTCSessionDescription(sdp='v=0 offer', type='offer')

    async def createAnswer(self):
        if self.remoteDescription is None:
            raise InvalidStateError('no remote offer')
        return RTCSessionDescription(sdp='v=0 answer', type='answer')

    async def setLocalDescription(self, desc):
        self.localDescription = desc

    async def setRemoteDescription(self, desc):
        self.remoteDescription = desc

    async def addIceCandidate(self, candidate):
        if self.remoteDescription is None:
            raise InvalidStateError('no remote description')
        self.candidates.append(candidate)

    async def close(self):
        self.closed = True


class RawClient:
    """Speaks the relay protocol directly, for relay tests."""

    def __init__(self, ws):
        self.ws = ws

    async def send(self, **msg):
        await self.ws.send(json.dumps(msg))

    async def recv(self, timeout=2.0):
        return json.loads(await asyncio.wait_for(self.ws.recv(), timeout))

    async def recv_type(self, kind, timeout=2.0):
        while True:
            msg = await self.recv(timeout)
            if msg['type'] == kind:
                return msg

    async def join(self, room, user):
        await self.send(type='join', room=room, user=user, key='00' * 32)
        assert await self.recv() == {'type': 'joined', 'room': room}

    async def assert_silent(self, timeout=0.2):
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(self.ws.recv(), timeout)

    async def close(self):
        await self.ws.close()


@pytest.fixture
def relay():
    return Relay()


@pytest.fixture
async def relay_url(relay):
    async with serve(relay.handle, '127.0.0.1', 0) as server:
        port = server.sockets[0].getsockname()[1]
        yield f'ws://127.0.0.1:{port}'


@pytest.fixture
async def raw_client(relay_url):
    clients = []

    async def open_client():
        client = RawClient(await connect(relay_url))
        clients.append(client)
        return client

    yield open_client
    for client in clients:
        await client.close()


@pytest.fixture
def fake_pc():
    created = []

    def factory():
        pc = FakePeerConnection()
        created.append(pc)
        return pc

    factory.created = created
    return factory


@pytest.fixture
def wait_for():
    async def wait(predicate, timeout=2.0):
        loop = asyncio.get_running_loop()
        end = loop.time() + timeout
        while not predicate():
            if loop.time() > end:
                raise AssertionError('condition not reached')
            await asyncio.sleep(0.01)
    return wait
