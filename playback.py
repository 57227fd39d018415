"""YouTube playback sync between a host and a viewer.

The host publishes transport changes and, while playing, a corrective seek
every few seconds. The viewer applies whatever arrives; nothing is
acknowledged, so drift is only ever bounded by the next correction.
"""
import asyncio, logging, re, time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

# YT.PlayerState values
UNSTARTED, ENDED, PLAYING, PAUSED, BUFFERING, CUED = -1, 0, 1, 2, 3, 5

RECONCILE_INTERVAL = 5.0

_URL_ID = re.compile(
    r'(?:youtube\.com/(?:[^/\n\s]+/\S+/|(?:v|e(?:mbed)?|shorts)/|.*[?&]v=)|youtu\.be/)([\w-]{11})',
    re.ASCII)
_BARE_ID = re.compile(r'[\w-]{11}', re.ASCII)


def extract_video_id(text: str) -> Optional[str]:
    """Video id from a YouTube URL or a bare 11-character id, else None."""
    text = (text or '').strip()
    m = _URL_ID.search(text)
    if m:
        return m.group(1)
    if _BARE_ID.fullmatch(text):
        return text
    return None


@dataclass
class PlaybackState:
    video_id: Optional[str] = None
    status: str = 'paused'
    position: float = 0.0
    is_host: bool = False


class HeadlessPlayer:
    """Stand-in for the embedded player: tracks state and a monotonic clock."""

    def __init__(self, video_id: str = None, clock=time.monotonic):
        self.video_id = video_id
        self.state = CUED if video_id else UNSTARTED
        self._clock = clock
        self._offset = 0.0
        self._started: Optional[float] = None
        self.calls: list = []
        self.on_state_change: Optional[Callable[[int], None]] = None

    def _transition(self, state):
        if state == self.state:
            return
        self.state = state
        if self.on_state_change:
            self.on_state_change(state)

    def current_time(self) -> float:
        if self._started is None:
            return self._offset
        return self._offset + (self._clock() - self._started)

    def play(self):
        self.calls.append(('play',))
        if self.state != PLAYING:
            self._started = self._clock()
            self._transition(PLAYING)

    def pause(self):
        self.calls.append(('pause',))
        if self.state == PLAYING:
            self._offset = self.current_time()
            self._started = None
            self._transition(PAUSED)

    def seek_to(self, seconds: float):
        self.calls.append(('seek', seconds))
        self._offset = max(0.0, float(seconds))
        if self._started is not None:
            self._started = self._clock()

    def load(self, video_id: str):
        self.calls.append(('load', video_id))
        self.video_id = video_id
        self._offset = 0.0
        self._started = self._clock()
        self._transition(PLAYING)


class PlaybackSynchronizer:
    def __init__(self, player, send: Callable[[dict], Awaitable[None]],
                 interval: float = RECONCILE_INTERVAL):
        self.player = player
        self._send = send
        self.interval = interval
        self.auto_apply = True
        self.state = PlaybackState(video_id=getattr(player, 'video_id', None))
        self._reconcile_task: Optional[asyncio.Task] = None

    @property
    def is_host(self) -> bool:
        return self.state.is_host

    def set_host(self, is_host: bool):
        self.state.is_host = is_host
        if is_host:
            if self._reconcile_task is None or self._reconcile_task.done():
                self._reconcile_task = asyncio.ensure_future(self._reconcile())
        else:
            self._stop_reconcile()

    def close(self):
        self.state.is_host = False
        self._stop_reconcile()

    # ============ HOST ============

    async def on_state_change(self, state: int):
        if not self.is_host:
            return
        if state == PLAYING:
            self.state.status = 'playing'
            await self._emit({'action': 'play'})
        elif state == PAUSED:
            self.state.status = 'paused'
            await self._emit({'action': 'pause'})
        elif state == BUFFERING:
            await self.sync_now()

    async def change_video(self, text: str) -> Optional[str]:
        video_id = extract_video_id(text)
        if video_id is None:
            logger.debug('no video id in %r', text)
            return None
        self.state.video_id = video_id
        self.state.position = 0.0
        if self.is_host:
            await self._emit({'action': 'load', 'videoId': video_id})
        self.player.load(video_id)
        return video_id

    async def sync_now(self):
        if not self.is_host:
            return
        t = self.player.current_time()
        self.state.position = t
        await self._emit({'action': 'seek', 'time': t})

    async def _emit(self, msg: dict):
        await self._send(msg)

    async def _reconcile(self):
        try:
            while self.is_host:
                await asyncio.sleep(self.interval)
                if self.is_host and self.player.state == PLAYING:
                    await self.sync_now()
                    logger.debug('auto-synced video to %.2fs', self.state.position)
        except asyncio.CancelledError:
            pass

    def _stop_reconcile(self):
        task, self._reconcile_task = self._reconcile_task, None
        if task is not None:
            task.cancel()

    # ============ VIEWER ============

    def apply(self, msg: dict):
        """Apply a relayed yt-sync message to the local player."""
        if not self.auto_apply:
            logger.debug('sync disabled, ignoring %s', msg.get('action'))
            return
        action = msg.get('action')
        if action == 'play':
            self.state.status = 'playing'
            if self.player.state != PLAYING:
                self.player.play()
        elif action == 'pause':
            self.state.status = 'paused'
            if self.player.state == PLAYING:
                self.player.pause()
        elif action == 'seek' and msg.get('time') is not None:
            self.state.position = msg['time']
            self.player.seek_to(msg['time'])
        elif action == 'load' and msg.get('videoId'):
            self.state.video_id = msg['videoId']
            self.state.position = 0.0
            self.player.load(msg['videoId'])
        else:
            logger.debug('ignoring sync message %r', msg)
