"""Wire envelopes for the watchroom relay.

Every frame is one JSON object with a `type` discriminant. Inbound frames
parse into one of Join, Signal or YtSync; anything else raises
MalformedEnvelope so the relay can report it to the sender.
"""
import json, math
from dataclasses import dataclass
from typing import Optional

SYNC_ACTIONS = ('play', 'pause', 'seek', 'load')


class ProtocolError(Exception):
    pass


class MalformedEnvelope(ProtocolError):
    pass


@dataclass
class Join:
    room: str
    user: str
    key: str


@dataclass
class Signal:
    payload: dict
    room: str = ''
    user: str = ''

    @property
    def sdp_type(self) -> Optional[str]:
        sdp = self.payload.get('sdp')
        if isinstance(sdp, dict):
            return sdp.get('type')
        return None


@dataclass
class YtSync:
    action: str
    room: str = ''
    time: Optional[float] = None
    video_id: Optional[str] = None


def _text(data: dict, name: str) -> str:
    value = data.get(name)
    if not isinstance(value, str) or not value:
        raise MalformedEnvelope(f'{data.get("type")}: missing {name}')
    return value


def parse_envelope(raw):
    """Decode one inbound frame into Join, Signal or YtSync."""
    try:
        data = json.loads(raw)
    except (TypeError, ValueError, RecursionError) as e:
        raise MalformedEnvelope(f'invalid JSON: {e}') from e
    if not isinstance(data, dict):
        raise MalformedEnvelope('envelope must be a JSON object')

    kind = data.get('type')
    if kind == 'join':
        return Join(room=_text(data, 'room'), user=_text(data, 'user'),
                    key=_text(data, 'key'))
    elif kind == 'signal':
        payload = data.get('payload')
        if not isinstance(payload, dict):
            raise MalformedEnvelope('signal: payload must be an object')
        return Signal(payload=payload, room=data.get('room') or '',
                      user=data.get('user') or '')
    elif kind == 'yt-sync':
        action = data.get('action')
        if action not in SYNC_ACTIONS:
            raise MalformedEnvelope(f'yt-sync: unknown action {action!r}')
        t = data.get('time')
        if t is not None and (isinstance(t, bool) or not isinstance(t, (int, float))):
            raise MalformedEnvelope('yt-sync: time must be a number')
        if isinstance(t, float) and not math.isfinite(t):
            raise MalformedEnvelope('yt-sync: time must be finite')
        video_id = data.get('videoId')
        if action == 'load' and not isinstance(video_id, str):
            raise MalformedEnvelope('yt-sync: load needs a videoId')
        return YtSync(action=action, room=data.get('room') or '',
                      time=t, video_id=video_id)
    elif kind is None:
        raise MalformedEnvelope('missing type')
    raise MalformedEnvelope(f'unknown message type: {kind}')


# ============ OUTBOUND ============

def encode(msg: dict) -> str:
    return json.dumps(msg)


def joined(room: str) -> str:
    return encode({'type': 'joined', 'room': room})


def relayed_signal(sender: str, payload: dict) -> str:
    return encode({'type': 'signal', 'from': sender, 'payload': payload})


def relayed_sync(msg: YtSync) -> str:
    out = {'type': 'yt-sync', 'action': msg.action}
    if msg.time is not None:
        out['time'] = msg.time
    if msg.video_id is not None:
        out['videoId'] = msg.video_id
    return encode(out)


def peer_joined(user: str) -> str:
    return encode({'type': 'peer-joined', 'user': user})


def peer_left(user: str) -> str:
    return encode({'type': 'peer-left', 'user': user})


def error(message: str) -> str:
    return encode({'type': 'error', 'message': message})
