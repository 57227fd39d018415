"""Relay scenarios over real WebSocket connections."""

OFFER = {'type': 'offer', 'sdp': 'v=0\r\no=- 1 1 IN IP4 0.0.0.0\r\n'}
ANSWER = {'type': 'answer', 'sdp': 'v=0\r\no=- 2 1 IN IP4 0.0.0.0\r\n'}


async def test_offer_answer_between_two_clients(raw_client):
    a, b = await raw_client(), await raw_client()
    await a.join('ABCD', 'alice')
    await b.join('ABCD', 'bob')
    assert await a.recv() == {'type': 'peer-joined', 'user': 'bob'}

    await a.send(type='signal', room='ABCD', user='alice', payload={'sdp': OFFER})
    assert await b.recv() == {'type': 'signal', 'from': 'alice', 'payload': {'sdp': OFFER}}
    await b.assert_silent()

    await b.send(type='signal', room='ABCD', user='bob', payload={'sdp': ANSWER})
    assert await a.recv() == {'type': 'signal', 'from': 'bob', 'payload': {'sdp': ANSWER}}
    await a.assert_silent()


async def test_load_reaches_the_viewer(raw_client):
    host, viewer = await raw_client(), await raw_client()
    await host.join('ABCD', 'alice')
    await viewer.join('ABCD', 'bob')

    await host.send(type='yt-sync', room='ABCD', action='load', videoId='dQw4w9WgXcQ')

    assert await viewer.recv() == {'type': 'yt-sync', 'action': 'load', 'videoId': 'dQw4w9WgXcQ'}


async def test_malformed_frame_gets_one_error(raw_client):
    a, b = await raw_client(), await raw_client()
    await a.join('ABCD', 'alice')
    await b.join('ABCD', 'bob')
    await a.recv_type('peer-joined')

    await a.ws.send('this is not json')

    reply = await a.recv()
    assert reply['type'] == 'error'
    await a.assert_silent()
    await b.assert_silent()

    # connection is still usable
    await a.send(type='yt-sync', room='ABCD', action='play')
    assert await b.recv() == {'type': 'yt-sync', 'action': 'play'}


async def test_deeply_nested_frame_keeps_connection(raw_client):
    a, b = await raw_client(), await raw_client()
    await a.join('ABCD', 'alice')
    await b.join('ABCD', 'bob')
    await a.recv_type('peer-joined')

    await a.ws.send('[' * 100000)

    reply = await a.recv()
    assert reply['type'] == 'error'
    await a.send(type='yt-sync', room='ABCD', action='pause')
    assert await b.recv() == {'type': 'yt-sync', 'action': 'pause'}


async def test_disconnected_peer_is_evicted(raw_client, relay, wait_for):
    a, b = await raw_client(), await raw_client()
    await a.join('ABCD', 'alice')
    await b.join('ABCD', 'bob')

    await a.close()

    assert await b.recv() == {'type': 'peer-left', 'user': 'alice'}
    await wait_for(lambda: [s.user for s in relay.registry.members('ABCD')] == ['bob'])

    await b.send(type='yt-sync', room='ABCD', action='seek', time=3.0)
    await b.assert_silent()

    await b.close()
    await wait_for(lambda: 'ABCD' not in relay.registry)


async def test_full_room_rejects_third_client(raw_client, relay):
    a, b, c = await raw_client(), await raw_client(), await raw_client()
    await a.join('ABCD', 'alice')
    await b.join('ABCD', 'bob')

    await c.send(type='join', room='ABCD', user='carol', key='00' * 32)

    assert await c.recv() == {'type': 'error', 'message': 'room ABCD is full'}
    assert len(relay.registry.members('ABCD')) == 2
