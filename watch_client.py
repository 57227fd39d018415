"""Headless watchroom client.

Speaks the same relay protocol as the browser app: joins a room, negotiates
a WebRTC call through the relay and keeps a YouTube player in step with the
room host.

Usage:
    # Host:
    client = WatchClient(nick='alice', player=HeadlessPlayer('dQw4w9WgXcQ'))
    await client.connect('ABCD')
    await client.start_call()
    await client.change_video('https://youtu.be/dQw4w9WgXcQ')

    # Viewer:
    client = WatchClient(nick='bob', player=HeadlessPlayer())
    await client.connect('ABCD')
    client.wait_for_offer()
    event = await client.receive()  # blocks until something happens
"""
import asyncio, json, logging, os, time
from dataclasses import dataclass, field
from typing import Optional

from aiortc.contrib.media import MediaPlayer
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed

from negotiation import NegotiationCoordinator, State, default_peer_connection
from playback import HeadlessPlayer, PlaybackSynchronizer, RECONCILE_INTERVAL

logger = logging.getLogger(__name__)

DEFAULT_URL = os.getenv('SIGNAL_SERVER_URL', 'ws://localhost:3001')


class MediaUnavailable(Exception):
    """Local camera/microphone (or file) could not be opened."""


def generate_room_key() -> str:
    """256-bit key material for the join envelope, hex encoded.

    The relay accepts it but nothing encrypts with it."""
    return AESGCM.generate_key(256).hex()


@dataclass
class Event:
    type: str  # 'joined', 'peer-joined', 'peer-left', 'state', 'sync', 'track', 'error'
    text: str = ''
    data: dict = field(default_factory=dict)
    ts: float = field(default_factory=lambda: time.time() * 1000)


class WatchClient:
    def __init__(self, nick: str = 'watcher', url: str = DEFAULT_URL, player=None,
                 pc_factory=default_peer_connection, deadline: float = 30.0,
                 sync_interval: float = RECONCILE_INTERVAL):
        self.nick = nick
        self.url = url
        self.room: Optional[str] = None
        self.room_key: Optional[str] = None
        self.ws = None
        self._reader: Optional[asyncio.Task] = None
        self._events: asyncio.Queue = asyncio.Queue()
        self._joined = asyncio.Event()
        self.remote_tracks: list = []

        self.player = player if player is not None else HeadlessPlayer()
        self.coordinator = NegotiationCoordinator(
            send=self._send_signal, pc_factory=pc_factory, deadline=deadline,
            on_track=self._on_track, on_failure=self._on_failure,
            on_state=self._on_state)
        self.sync = PlaybackSynchronizer(self.player, self._send_sync, interval=sync_interval)
        if hasattr(self.player, 'on_state_change'):
            self.player.on_state_change = self._on_player_state

    # ============ PUBLIC API ============

    async def connect(self, room: str):
        """Open the relay connection and join a room."""
        self.room = room
        self.room_key = generate_room_key()
        self.ws = await connect(self.url)
        self._reader = asyncio.ensure_future(self._read_loop())
        await self._send_raw({'type': 'join', 'room': room, 'user': self.nick,
                              'key': self.room_key})

    async def wait_joined(self, timeout: float = 10.0):
        await asyncio.wait_for(self._joined.wait(), timeout)

    async def start_call(self):
        """Become the host: send an offer and publish playback."""
        await self.coordinator.start_call()
        self.sync.set_host(True)

    def wait_for_offer(self):
        self.sync.set_host(False)
        self.coordinator.wait_for_offer()

    async def change_video(self, text: str):
        return await self.sync.change_video(text)

    async def sync_now(self):
        await self.sync.sync_now()

    def open_media(self, file: str, format: str = None, options: dict = None):
        """Open a local capture device or file and offer its tracks."""
        try:
            media = MediaPlayer(file, format=format, options=options or {})
        except Exception as e:  # av raises a family of errors for missing devices
            raise MediaUnavailable(f'could not open {file}: {e}') from e
        for track in (media.audio, media.video):
            if track is not None:
                self.coordinator.attach_media(track)
        return media

    async def receive(self, timeout: float = None) -> Event:
        """Receive next event. Blocks until one arrives."""
        if timeout:
            return await asyncio.wait_for(self._events.get(), timeout)
        return await self._events.get()

    def has_events(self) -> bool:
        return not self._events.empty()

    @property
    def joined(self) -> bool:
        return self._joined.is_set()

    @property
    def negotiated(self) -> bool:
        return self.coordinator.state is State.NEGOTIATED

    async def close(self):
        self.sync.close()
        if self.ws is not None:
            await self.ws.close()
        if self._reader is not None:
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        await self.coordinator.reset()

    # ============ RELAY ============

    async def _send_raw(self, msg: dict):
        if self.ws is None:
            return
        try:
            await self.ws.send(json.dumps(msg))
        except ConnectionClosed:
            logger.debug('relay closed, dropping %s', msg.get('type'))

    async def _send_signal(self, payload: dict):
        await self._send_raw({'type': 'signal', 'room': self.room, 'user': self.nick,
                              'payload': payload})

    async def _send_sync(self, msg: dict):
        await self._send_raw({'type': 'yt-sync', 'room': self.room, **msg})

    async def _read_loop(self):
        try:
            async for raw in self.ws:
                await self._handle_raw(raw)
        except ConnectionClosed:
            pass
        finally:
            logger.info('relay connection closed')
            self._joined.clear()
            self.sync.close()
            await self.coordinator.reset()

    async def _handle_raw(self, raw):
        try:
            msg = json.loads(raw)
        except ValueError as e:
            logger.warning('undecodable frame from relay: %s', e)
            return
        if not isinstance(msg, dict):
            return
        msg_type = msg.get('type', '')

        if msg_type == 'joined':
            self._joined.set()
            self.coordinator.on_joined()
            await self._events.put(Event('joined', f'joined room {msg.get("room")}', msg))
        elif msg_type == 'signal':
            await self.coordinator.handle_signal(msg.get('from', '?'), msg.get('payload') or {})
        elif msg_type == 'yt-sync':
            self.sync.apply(msg)
            await self._events.put(Event('sync', msg.get('action', ''), msg))
        elif msg_type == 'peer-joined':
            await self._events.put(Event('peer-joined', f"{msg.get('user', '?')} joined", msg))
        elif msg_type == 'peer-left':
            await self.coordinator.hangup()
            await self._events.put(Event('peer-left', f"{msg.get('user', '?')} left", msg))
        elif msg_type == 'error':
            logger.warning('relay error: %s', msg.get('message'))
            await self._events.put(Event('error', msg.get('message', ''), msg))
        else:
            logger.debug('ignoring %r from relay', msg_type)

    # ============ CALLBACKS ============

    def _on_state(self, state: State):
        self._events.put_nowait(Event('state', state.value))

    def _on_track(self, track):
        self.remote_tracks.append(track)
        self._events.put_nowait(Event('track', track.kind))

    def _on_failure(self, exc: Exception):
        self._events.put_nowait(Event('error', str(exc)))

    def _on_player_state(self, state: int):
        if self.sync.is_host:
            asyncio.ensure_future(self.sync.on_state_change(state))
