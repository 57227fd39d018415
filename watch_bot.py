#!/usr/bin/env python3
"""watchroom bot: headless host or viewer that joins a relay room.

Three modes:
  1. Relay, host and viewer all in-process (demo/test):
     python3 watch_bot.py --demo

  2. Bot hosts a room and drives a headless player:
     python3 watch_bot.py --host --room ABCD --video dQw4w9WgXcQ

  3. Bot joins a room as a viewer and prints what it applies:
     python3 watch_bot.py --join --room ABCD
"""
import argparse, asyncio, logging, os
from negotiation import NegotiationError, default_peer_connection
from playback import HeadlessPlayer
from relay import Relay
from watch_client import DEFAULT_URL, WatchClient
from websockets.asyncio.server import serve

DEMO_VIDEO = 'dQw4w9WgXcQ'


def _local_pc():
    # no STUN: both ends are on this machine
    return default_peer_connection(ice_servers=[])


async def print_events(client, stop_on=None):
    while True:
        event = await client.receive()
        if event.type == 'sync':
            print(f'  [{client.nick}] sync {event.text} {event.data.get("time", event.data.get("videoId", ""))}')
        else:
            print(f'  [{client.nick}] {event.type}: {event.text}')
        if stop_on and event.type in stop_on:
            return event


async def demo(interval):
    """Host and viewer in one process, talking through a local relay."""
    relay = Relay()
    async with serve(relay.handle, '127.0.0.1', 0) as server:
        port = server.sockets[0].getsockname()[1]
        url = f'ws://127.0.0.1:{port}'
        print(f'[demo] relay on {url}')

        alice = WatchClient(nick='alice', url=url, player=HeadlessPlayer(DEMO_VIDEO),
                            pc_factory=_local_pc, sync_interval=interval)
        bob = WatchClient(nick='bob', url=url, player=HeadlessPlayer(),
                          pc_factory=_local_pc)
        await alice.connect('DEMO')
        await alice.wait_joined()
        await bob.connect('DEMO')
        await bob.wait_joined()
        bob.wait_for_offer()

        viewer = asyncio.ensure_future(print_events(bob))
        await alice.start_call()
        for _ in range(40):
            await asyncio.sleep(0.25)
            if alice.negotiated and bob.negotiated:
                break
        if not (alice.negotiated and bob.negotiated):
            print('[demo] FAILED to negotiate')
        else:
            print('[demo] Negotiated!\n')

        await alice.change_video(f'https://www.youtube.com/watch?v={DEMO_VIDEO}')
        alice.player.pause()
        await asyncio.sleep(0.5)
        alice.player.play()
        await asyncio.sleep(interval * 3 + 0.5)

        print(f'\n[demo] viewer at {bob.player.current_time():.2f}s, '
              f'host at {alice.player.current_time():.2f}s')
        viewer.cancel()
        await alice.close()
        await bob.close()
    print('[demo] Done.')


async def host_mode(url, room, nick, video):
    """Bot hosts the call and plays a video for the room."""
    client = WatchClient(nick=nick, url=url, player=HeadlessPlayer(video))
    await client.connect(room)
    await client.wait_joined()
    print(f'Joined room {room} as {nick}. Offering...')

    try:
        await client.start_call()
        await client.change_video(video)
        while True:
            event = await print_events(client, stop_on={'peer-joined', 'error'})
            if event.type == 'peer-joined' or event.text.startswith('timed out'):
                # re-offer to a newcomer, or after the previous offer timed out
                await client.coordinator.hangup()
                await client.start_call()
    except NegotiationError as e:
        print(f'Could not start call: {e}')
    except (KeyboardInterrupt, asyncio.CancelledError):
        pass
    finally:
        await client.close()


async def join_mode(url, room, nick, no_sync):
    """Bot joins a room as viewer."""
    client = WatchClient(nick=nick, url=url, player=HeadlessPlayer())
    client.sync.auto_apply = not no_sync
    await client.connect(room)
    await client.wait_joined()
    client.wait_for_offer()
    print(f'Joined room {room} as {nick}. Waiting for an offer...')

    try:
        await print_events(client)
    except (KeyboardInterrupt, asyncio.CancelledError):
        pass
    finally:
        await client.close()


def main():
    p = argparse.ArgumentParser()
    p.add_argument('--demo', action='store_true', help='Relay, host and viewer in one process')
    p.add_argument('--host', action='store_true', help='Bot hosts the call and playback')
    p.add_argument('--join', action='store_true', help='Bot joins as viewer')
    p.add_argument('--url', default=DEFAULT_URL)
    p.add_argument('--room', default='ABCD')
    p.add_argument('--nick', default='watch-bot')
    p.add_argument('--video', default=DEMO_VIDEO)
    p.add_argument('--interval', type=float, default=1.0, help='demo reconcile interval')
    p.add_argument('--no-sync', action='store_true', help='viewer ignores incoming sync')
    p.add_argument('--log-level', default=os.getenv('LOG_LEVEL', 'WARNING'))
    args = p.parse_args()
    logging.basicConfig(level=args.log_level.upper())

    if args.demo:
        asyncio.run(demo(args.interval))
    elif args.host:
        asyncio.run(host_mode(args.url, args.room, args.nick, args.video))
    elif args.join:
        asyncio.run(join_mode(args.url, args.room, args.nick, args.no_sync))
    else:
        print('Usage: watch_bot.py --demo | --host | --join')
        print('  --demo: Relay, host and viewer in one process')
        print('  --host: Bot hosts the call and playback')
        print('  --join: Bot joins as a viewer')

if __name__ == '__main__':
    try:
        main()
    except KeyboardInterrupt:
        pass
