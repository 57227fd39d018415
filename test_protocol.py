import json

import pytest

import protocol
from protocol import Join, MalformedEnvelope, Signal, YtSync


def test_parse_join():
    msg = protocol.parse_envelope(json.dumps(
        {'type': 'join', 'room': 'ABCD', 'user': 'alice', 'key': 'ab' * 32}))
    assert msg == Join(room='ABCD', user='alice', key='ab' * 32)


def test_parse_signal_reads_sdp_type():
    msg = protocol.parse_envelope(json.dumps(
        {'type': 'signal', 'room': 'ABCD', 'user': 'alice',
         'payload': {'sdp': {'type': 'offer', 'sdp': 'v=0'}}}))
    assert isinstance(msg, Signal)
    assert msg.sdp_type == 'offer'
    assert Signal(payload={'candidate': {'candidate': ''}}).sdp_type is None


def test_parse_yt_sync():
    msg = protocol.parse_envelope(b'{"type": "yt-sync", "room": "ABCD", "action": "seek", "time": 42.5}')
    assert msg == YtSync(action='seek', room='ABCD', time=42.5)


@pytest.mark.parametrize('raw', [
    'not json',
    '[1, 2]',
    '{"room": "ABCD"}',
    '{"type": "dance"}',
    '{"type": "join", "room": "ABCD", "user": "alice"}',
    '{"type": "join", "room": "", "user": "alice", "key": "00"}',
    '{"type": "signal", "payload": "offer"}',
    '{"type": "yt-sync", "action": "rewind"}',
    '{"type": "yt-sync", "action": "seek", "time": "soon"}',
    '{"type": "yt-sync", "action": "load"}',
    '{"type": "yt-sync", "action": "seek", "time": NaN}',
    '{"type": "yt-sync", "action": "seek", "time": Infinity}',
])
def test_malformed_envelopes(raw):
    with pytest.raises(MalformedEnvelope):
        protocol.parse_envelope(raw)


def test_relayed_sync_omits_absent_fields():
    assert json.loads(protocol.relayed_sync(YtSync(action='play'))) == \
        {'type': 'yt-sync', 'action': 'play'}
    assert json.loads(protocol.relayed_sync(YtSync(action='load', video_id='dQw4w9WgXcQ'))) == \
        {'type': 'yt-sync', 'action': 'load', 'videoId': 'dQw4w9WgXcQ'}


def test_relayed_signal_is_tagged_with_sender():
    payload = {'candidate': {'candidate': 'candidate:1 1 UDP 1 10.0.0.1 9 typ host'}}
    assert json.loads(protocol.relayed_signal('alice', payload)) == \
        {'type': 'signal', 'from': 'alice', 'payload': payload}


def test_deeply_nested_json_is_malformed():
    with pytest.raises(MalformedEnvelope):
        protocol.parse_envelope('[' * 100000)
