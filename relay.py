#!/usr/bin/env python3
"""Development relay for flashroom.

Keeps rooms and their recent history in RAM, fans chat out to the room and
forwards call signaling to the other members without looking inside it.
Frames are JSON `{"event": ..., "data": ...}`.
"""

import asyncio, json, logging, sys, time, uuid
from collections import defaultdict, deque

import websockets

from flash_config import settings

logger = logging.getLogger(__name__)

SIGNALING = ('offer', 'answer', 'ice-candidate')


class Peer:
    def __init__(self, ws):
        self.ws = ws
        self.id = uuid.uuid4().hex[:8]
        self.nick = None
        self.room = None

    async def send(self, event, data):
        try:
            await self.ws.send(json.dumps({'event': event, 'data': data}))
        except websockets.ConnectionClosed:
            pass  # its own handler cleans up


class Relay:
    def __init__(self, history_limit: int = settings.HISTORY_LIMIT):
        self.rooms = defaultdict(set)  # room_id -> set of Peer
        self.history = defaultdict(lambda: deque(maxlen=history_limit))

    async def broadcast(self, room, event, data, exclude=None):
        for peer in list(self.rooms.get(room, ())):
            if peer is not exclude:
                await peer.send(event, data)

    async def handle(self, ws):
        """Handle one WebSocket connection."""
        peer = Peer(ws)
        await peer.send('connected', {'id': peer.id})
        try:
            async for raw in ws:
                try:
                    frame = json.loads(raw)
                    event, data = frame['event'], frame.get('data')
                except (ValueError, KeyError, TypeError):
                    logger.warning('bad frame from %s', peer.id)
                    continue
                await self.dispatch(peer, event, data)
        except websockets.ConnectionClosedError:
            pass
        finally:
            await self.leave(peer)

    async def dispatch(self, peer, event, data):
        fields = data if isinstance(data, dict) else {}
        if event == 'join-room':
            await self.join(peer, fields)
        elif peer.room is None:
            return
        elif event == 'send-message':
            text = fields.get('text')
            if not isinstance(text, str) or not text.strip():
                return
            msg = {'id': f'{peer.id}-{uuid.uuid4().hex}', 'nick': peer.nick,
                   'text': text, 'timestamp': time.time() * 1000}
            self.history[peer.room].append(msg)
            await self.broadcast(peer.room, 'new-message', msg)
        elif event == 'typing':
            typing = bool(fields.get('typing'))
            await self.broadcast(peer.room, 'typing',
                                 {'id': peer.id, 'nick': peer.nick, 'typing': typing}, exclude=peer)
        elif event in SIGNALING:
            await self.broadcast(peer.room, event, data, exclude=peer)

    async def join(self, peer, data):
        await self.leave(peer)
        peer.nick = str(data.get('nick') or 'anon')
        peer.room = str(data.get('roomId') or settings.DEFAULT_ROOM)
        self.rooms[peer.room].add(peer)
        logger.info('%s (%s) joined %s', peer.nick, peer.id, peer.room)
        await peer.send('room-history', list(self.history[peer.room]))
        await self.broadcast(peer.room, 'user-joined', {'id': peer.id, 'nick': peer.nick}, exclude=peer)

    async def leave(self, peer):
        room = peer.room
        if room is None:
            return
        peer.room = None
        self.rooms[room].discard(peer)
        if not self.rooms[room]:
            del self.rooms[room]
            self.history.pop(room, None)
        else:
            await self.broadcast(room, 'user-left', {'id': peer.id, 'nick': peer.nick})


async def serve(host='0.0.0.0', port=3001, relay=None):
    relay = relay or Relay()
    return await websockets.serve(relay.handle, host, port)


async def main(port=None):
    port = port or (int(sys.argv[1]) if len(sys.argv) > 1 else 3001)
    server = await serve('0.0.0.0', port)
    logger.info('flashroom relay on ws://0.0.0.0:%d', port)
    async with server:
        await asyncio.Future()  # run forever

if __name__ == '__main__':
    logging.basicConfig(level=settings.LOG_LEVEL, format='%(asctime)s - %(levelname)s - %(message)s')
    asyncio.run(main())
