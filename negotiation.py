"""Offer/answer/ICE state machine for one side of a watchroom call.

The relay is a blind pipe, so everything that keeps negotiation consistent
lives here: one offer in flight at a time, remote candidates held back until
a remote description exists, and a deadline on the waiting states.

    idle -> joined -> offering ------------------> negotiated   (host)
                   -> awaiting-offer -> answering -> negotiated (responder)
"""
import asyncio, enum, logging
from typing import Awaitable, Callable, Optional

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.exceptions import InternalError, InvalidAccessError, InvalidStateError
from aiortc.sdp import candidate_from_sdp

logger = logging.getLogger(__name__)

DEFAULT_ICE_SERVERS = ['stun:stun.l.google.com:19302']
DEFAULT_DEADLINE = 30.0

# aiortc raises these (plus ValueError on unparsable SDP) for out-of-state calls
_NEGOTIATION_ERRORS = (InvalidStateError, InvalidAccessError, InternalError, ValueError)


class State(str, enum.Enum):
    IDLE = 'idle'
    JOINED = 'joined'
    OFFERING = 'offering'
    AWAITING_OFFER = 'awaiting-offer'
    ANSWERING = 'answering'
    NEGOTIATED = 'negotiated'


class Role(str, enum.Enum):
    HOST = 'host'
    RESPONDER = 'responder'


class NegotiationError(Exception):
    pass


class NegotiationTimeout(NegotiationError):
    pass


def default_peer_connection(ice_servers=None):
    urls = DEFAULT_ICE_SERVERS if ice_servers is None else ice_servers
    config = RTCConfiguration(iceServers=[RTCIceServer(urls=[u]) for u in urls])
    return RTCPeerConnection(config)


def description_to_json(desc) -> dict:
    return {'type': desc.type, 'sdp': desc.sdp}


def candidate_from_json(data: dict):
    """Build an aiortc candidate from the browser's RTCIceCandidate JSON.

    Returns None for the empty end-of-candidates marker."""
    line = (data.get('candidate') or '').strip()
    if not line:
        return None
    if line.startswith('candidate:'):
        line = line[len('candidate:'):]
    if len(line.split()) < 8:
        raise ValueError(f'truncated candidate {line!r}')
    candidate = candidate_from_sdp(line)
    candidate.sdpMid = data.get('sdpMid')
    candidate.sdpMLineIndex = data.get('sdpMLineIndex')
    return candidate


class NegotiationCoordinator:
    def __init__(self, send: Callable[[dict], Awaitable[None]],
                 pc_factory: Callable[[], object] = default_peer_connection,
                 deadline: Optional[float] = DEFAULT_DEADLINE,
                 on_track: Callable = None,
                 on_failure: Callable[[Exception], None] = None,
                 on_state: Callable[['State'], None] = None):
        self._send = send
        self._pc_factory = pc_factory
        self.deadline = deadline
        self.on_track = on_track
        self.on_failure = on_failure
        self.on_state = on_state
        self.state = State.IDLE
        self.role: Optional[Role] = None
        self.pc = None
        self.remote_peer: Optional[str] = None
        self._tracks: list = []
        self._pending_candidates: list = []
        self._deadline_task: Optional[asyncio.Task] = None

    # ============ TRANSITIONS ============

    def _set_state(self, state: State):
        if state is self.state:
            return
        logger.debug('negotiation %s -> %s', self.state.value, state.value)
        self.state = state
        if self.on_state:
            self.on_state(state)

    def on_joined(self):
        if self.state is State.IDLE:
            self._set_state(State.JOINED)

    def attach_media(self, track):
        """Add a local track; may be called before or after joining."""
        self._tracks.append(track)
        if self.pc is not None and self.state in (State.JOINED, State.AWAITING_OFFER):
            self.pc.addTrack(track)

    async def start_call(self):
        """Send an offer as the host."""
        if self.state in (State.OFFERING, State.ANSWERING):
            raise NegotiationError(f'negotiation already in flight ({self.state.value})')
        if self.state not in (State.JOINED, State.AWAITING_OFFER):
            raise NegotiationError(f'cannot start a call while {self.state.value}')

        self.role = Role.HOST
        self._cancel_deadline()
        self._set_state(State.OFFERING)
        pc = self._ensure_pc()
        if not self._tracks:
            # aiortc cannot offer without media or a data channel
            pc.createDataChannel('watchroom', ordered=True)
        try:
            offer = await pc.createOffer()
            await pc.setLocalDescription(offer)
        except _NEGOTIATION_ERRORS:
            if pc is not self.pc:
                return  # reset or hung up while gathering; pc is already closed
            await self._discard(State.JOINED)
            raise
        if pc is not self.pc:
            return  # torn down while gathering
        await self._send({'sdp': description_to_json(pc.localDescription)})
        logger.info('sent offer')
        if self.state is State.OFFERING:
            self._arm_deadline()

    def wait_for_offer(self):
        if self.state is not State.JOINED:
            raise NegotiationError(f'cannot wait for an offer while {self.state.value}')
        self.role = Role.RESPONDER
        self._set_state(State.AWAITING_OFFER)
        self._arm_deadline()

    async def handle_signal(self, sender: str, payload: dict):
        """Apply one relayed signal payload. Mismatches are logged and dropped."""
        if self.state is State.IDLE:
            logger.debug('dropping signal from %s before join', sender)
            return
        try:
            if payload.get('sdp'):
                await self._handle_description(sender, payload['sdp'])
            elif payload.get('candidate') is not None:
                await self._handle_candidate(payload['candidate'])
            else:
                logger.debug('ignoring empty signal from %s', sender)
        except _NEGOTIATION_ERRORS + (KeyError, TypeError, AttributeError) as e:
            logger.warning('discarding signal from %s in state %s: %s',
                           sender, self.state.value, e)

    async def hangup(self):
        """The remote peer went away; keep the relay session."""
        if self.state is State.IDLE:
            return
        await self._discard(State.JOINED)

    async def reset(self):
        """The relay connection is gone."""
        await self._discard(State.IDLE)

    # ============ INTERNALS ============

    async def _handle_description(self, sender: str, sdp: dict):
        kind = sdp['type']
        if kind == 'offer':
            if self.state not in (State.JOINED, State.AWAITING_OFFER):
                logger.warning('ignoring offer from %s while %s', sender, self.state.value)
                return
            self.role = Role.RESPONDER
            self.remote_peer = sender
            self._cancel_deadline()
            pc = self._ensure_pc()
            try:
                await pc.setRemoteDescription(RTCSessionDescription(sdp=sdp['sdp'], type='offer'))
                await self._flush_candidates()
                self._set_state(State.ANSWERING)
                answer = await pc.createAnswer()
                await pc.setLocalDescription(answer)
            except _NEGOTIATION_ERRORS + (KeyError, TypeError) as e:
                if pc is self.pc:
                    await self._discard(State.JOINED)
                    if self.on_failure:
                        self.on_failure(NegotiationError(f'could not answer offer from {sender}: {e}'))
                raise
            if pc is not self.pc:
                return
            await self._send({'sdp': description_to_json(pc.localDescription)})
            logger.info('answered offer from %s', sender)
            self._set_state(State.NEGOTIATED)
        elif kind == 'answer':
            if self.state is not State.OFFERING:
                logger.warning('ignoring answer from %s while %s', sender, self.state.value)
                return
            self.remote_peer = sender
            await self.pc.setRemoteDescription(RTCSessionDescription(sdp=sdp['sdp'], type='answer'))
            self._cancel_deadline()
            await self._flush_candidates()
            logger.info('received answer from %s', sender)
            self._set_state(State.NEGOTIATED)
        else:
            logger.warning('ignoring sdp of type %r from %s', kind, sender)

    async def _handle_candidate(self, data: dict):
        candidate = candidate_from_json(data)
        if candidate is None:
            return
        if self.pc is None or self.pc.remoteDescription is None:
            self._pending_candidates.append(candidate)
            logger.debug('buffered candidate (%d pending)', len(self._pending_candidates))
            return
        await self.pc.addIceCandidate(candidate)

    async def _flush_candidates(self):
        pending, self._pending_candidates = self._pending_candidates, []
        for candidate in pending:
            await self.pc.addIceCandidate(candidate)
        if pending:
            logger.debug('applied %d buffered candidates', len(pending))

    def _ensure_pc(self):
        if self.pc is not None:
            return self.pc
        pc = self._pc_factory()
        for track in self._tracks:
            pc.addTrack(track)

        @pc.on('track')
        def on_track(track):
            logger.info('remote %s track', track.kind)
            if self.on_track:
                self.on_track(track)

        @pc.on('connectionstatechange')
        def on_conn():
            logger.debug('connection: %s', pc.connectionState)

        self.pc = pc
        return pc

    async def _discard(self, state: State):
        self._cancel_deadline()
        pc, self.pc = self.pc, None
        self._pending_candidates = []
        self.role = None
        self.remote_peer = None
        self._set_state(state)
        if pc is not None:
            await pc.close()

    def _arm_deadline(self):
        self._cancel_deadline()
        if self.deadline:
            self._deadline_task = asyncio.ensure_future(self._expire(self.state, self.deadline))

    def _cancel_deadline(self):
        task, self._deadline_task = self._deadline_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _expire(self, state: State, delay: float):
        await asyncio.sleep(delay)
        if self.state is not state:
            return
        self._deadline_task = None
        logger.warning('no progress after %.1fs in %s, giving up', delay, state.value)
        await self._discard(State.JOINED)
        if self.on_failure:
            self.on_failure(NegotiationTimeout(f'timed out in {state.value}'))
