#!/usr/bin/env python3
"""WebSocket relay for watchroom.

Relays WebRTC signaling and YouTube sync envelopes between the members of a
room. The relay never looks inside a signal payload beyond noting who sent
the room's first offer."""

import argparse, asyncio, logging, os

from websockets.asyncio.server import serve
from websockets.exceptions import ConnectionClosed

import protocol
from protocol import Join, MalformedEnvelope, Signal, YtSync
from rooms import RoomRegistry, Session

logger = logging.getLogger(__name__)

DEFAULT_PORT = 3001
DEFAULT_MAX_PEERS = 2


class Relay:
    def __init__(self, registry: RoomRegistry = None, max_peers: int = DEFAULT_MAX_PEERS,
                 single_host: bool = True):
        self.registry = registry if registry is not None else RoomRegistry()
        self.max_peers = max_peers
        self.single_host = single_host
        self._sessions: dict = {}  # ws -> Session

    def session_for(self, ws):
        return self._sessions.get(ws)

    async def handle(self, ws):
        """Handle one WebSocket connection."""
        peer = ws.remote_address
        logger.debug('connection from %s', peer)
        try:
            async for raw in ws:
                try:
                    await self.dispatch(ws, raw)
                except ConnectionClosed:
                    raise
                except Exception as e:
                    # a bad frame never closes the sender's connection
                    logger.exception('failed to handle frame from %s', peer)
                    await self._reply(ws, protocol.error(f'could not handle message: {e}'))
        except ConnectionClosed:
            pass
        finally:
            await self.disconnect(ws)
            logger.debug('connection from %s closed', peer)

    async def dispatch(self, ws, raw):
        try:
            msg = protocol.parse_envelope(raw)
        except MalformedEnvelope as e:
            logger.info('malformed envelope from %s: %s', ws.remote_address, e)
            await self._reply(ws, protocol.error(str(e)))
            return

        if isinstance(msg, Join):
            await self._join(ws, msg)
            return

        session = self._sessions.get(ws)
        if session is None:
            logger.debug('dropping %s from connection without a session', type(msg).__name__)
            return

        if isinstance(msg, Signal):
            await self._signal(session, msg)
        elif isinstance(msg, YtSync):
            await self._broadcast(session, protocol.relayed_sync(msg))

    async def disconnect(self, ws):
        session = self._sessions.pop(ws, None)
        if session is None:
            return
        self.registry.unregister(session)
        logger.info('%s left room %s', session.user, session.room)
        await self._broadcast(session, protocol.peer_left(session.user))

    async def _join(self, ws, msg: Join):
        if ws in self._sessions:
            await self._reply(ws, protocol.error(
                f'already joined room {self._sessions[ws].room}'))
            return
        if self.max_peers and len(self.registry.members(msg.room)) >= self.max_peers:
            logger.info('rejecting %s: room %s is full', msg.user, msg.room)
            await self._reply(ws, protocol.error(f'room {msg.room} is full'))
            return

        session = Session(ws=ws, user=msg.user, room=msg.room, key=msg.key)
        self._sessions[ws] = session
        self.registry.register(msg.room, session)
        logger.info('%s joined room %s (%d members)', msg.user, msg.room,
                    len(self.registry.members(msg.room)))
        await self._reply(ws, protocol.joined(msg.room))
        await self._broadcast(session, protocol.peer_joined(msg.user))

    async def _signal(self, session: Session, msg: Signal):
        if msg.sdp_type == 'offer':
            claimed = self.registry.claim_host(session)
            if not claimed and self.single_host:
                host = self.registry.host_of(session.room)
                await self._reply(session.ws, protocol.error(
                    f'{host.user} is already hosting room {session.room}'))
                return
        await self._broadcast(session, protocol.relayed_signal(session.user, msg.payload))

    async def _broadcast(self, sender: Session, text: str):
        peers = self.registry.peers_except(sender.room, sender)
        if peers:
            await asyncio.gather(*(self._deliver(p, text) for p in peers))

    async def _deliver(self, session: Session, text: str):
        try:
            await session.ws.send(text)
        except ConnectionClosed:
            logger.debug('peer %s in room %s already closed', session.user, session.room)

    async def _reply(self, ws, text: str):
        try:
            await ws.send(text)
        except ConnectionClosed:
            pass


def parse_args(argv=None):
    p = argparse.ArgumentParser(description='watchroom signaling and sync relay')
    p.add_argument('--host', default=os.getenv('HOST', '0.0.0.0'))
    p.add_argument('--port', type=int, default=int(os.getenv('PORT', DEFAULT_PORT)))
    p.add_argument('--max-peers', type=int, default=DEFAULT_MAX_PEERS,
                   help='members allowed per room (0 for no cap)')
    p.add_argument('--allow-multiple-hosts', action='store_true',
                   help='relay offers from any member, not only the room host')
    p.add_argument('--log-level', default=os.getenv('LOG_LEVEL', 'INFO'))
    return p.parse_args(argv)


async def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(),
                        format='%(asctime)s %(name)s %(levelname)s %(message)s')
    relay = Relay(max_peers=args.max_peers, single_host=not args.allow_multiple_hosts)
    async with serve(relay.handle, args.host, args.port):
        print(f'watchroom relay on ws://{args.host}:{args.port}')
        await asyncio.Future()  # run forever


def cli():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass

if __name__ == '__main__':
    cli()
