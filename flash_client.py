"""Room session manager: relay channel, inbound routing, user actions.

All state of one session lives in a SessionContext that every operation
receives explicitly:

    ctx = SessionContext()
    await connect(ctx, 'ws://localhost:3001')
    await join_room(ctx, 'alice', 'main')
    asyncio.ensure_future(pump(ctx))       # inbound events
    await send_message(ctx, 'hi')
    await leave_room(ctx)

FlashClient wraps one context plus its pump task for scripts and the CLI:

    client = FlashClient(render=my_render)
    await client.join('alice', 'main')
    await client.send('hello')
    await client.start_call()
"""
import asyncio, enum, json, logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

import websockets

from flash_call import BlackholeOutput, CallNegotiator, CallSnapshot, DeviceCapture
from flash_config import Settings, settings as default_settings
from flash_errors import ChannelError, ValidationError
from flash_log import Message, MessageLog, is_self_authored, system_message
from flash_typing import TypingDebouncer, TypingTracker

logger = logging.getLogger(__name__)

SIGNALING_EVENTS = ('offer', 'answer', 'ice-candidate')


class SessionStatus(enum.Enum):
    DISCONNECTED = 'disconnected'
    CONNECTED = 'connected'


# ============ CHANNEL ============

def encode_frame(event: str, data) -> str:
    return json.dumps({'event': event, 'data': data})


def decode_frame(raw) -> tuple[str, object]:
    try:
        frame = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ValueError(f'not JSON: {e}') from e
    if not isinstance(frame, dict) or not isinstance(frame.get('event'), str):
        raise ValueError('frame has no event name')
    return frame['event'], frame.get('data')


class RelayChannel:
    """One websocket to the relay carrying `{event, data}` JSON frames."""

    def __init__(self, ws):
        self.ws = ws

    @classmethod
    async def open(cls, address: str, timeout: float = 10.0) -> tuple['RelayChannel', str]:
        """Connect and wait for the relay's greeting. Returns (channel, connection id)."""
        try:
            ws = await asyncio.wait_for(websockets.connect(address), timeout)
        except (OSError, asyncio.TimeoutError, websockets.WebSocketException) as e:
            raise ChannelError(f'cannot reach relay at {address}: {e}') from e
        channel = cls(ws)
        try:
            event, data = decode_frame(await asyncio.wait_for(ws.recv(), timeout))
        except (ValueError, asyncio.TimeoutError, websockets.WebSocketException) as e:
            await channel.close()
            raise ChannelError(f'no greeting from relay: {e}') from e
        if event != 'connected' or not isinstance(data, dict) or not data.get('id'):
            await channel.close()
            raise ChannelError(f'unexpected greeting from relay: {event!r}')
        return channel, str(data['id'])

    async def emit(self, event: str, data):
        try:
            await self.ws.send(encode_frame(event, data))
        except websockets.ConnectionClosed as e:
            raise ChannelError(f'relay connection lost: {e}') from e

    async def events(self):
        """Yield (event, data) until the relay closes the socket."""
        try:
            async for raw in self.ws:
                try:
                    yield decode_frame(raw)
                except ValueError as e:
                    logger.warning('bad frame from relay: %s', e)
        except websockets.ConnectionClosedError as e:
            raise ChannelError(f'relay connection lost: {e}') from e

    async def close(self):
        await self.ws.close()


Opener = Callable[[str, float], Awaitable[tuple]]


# ============ SESSION ============

@dataclass
class SessionContext:
    settings: Settings = field(default_factory=lambda: default_settings)
    capture: Optional[object] = None
    output: Optional[object] = None
    connection_factory: Optional[Callable] = None
    status: SessionStatus = SessionStatus.DISCONNECTED
    channel: Optional[RelayChannel] = None
    connection_id: Optional[str] = None
    nick: Optional[str] = None
    room_id: Optional[str] = None
    error: Optional[ChannelError] = None
    log: MessageLog = field(default_factory=MessageLog)
    typing: TypingTracker = field(default_factory=TypingTracker)
    listeners: list = field(default_factory=list)
    tasks: set = field(default_factory=set)

    def __post_init__(self):
        self.debouncer = TypingDebouncer(
            lambda typing: emit(self, 'typing', {'typing': typing}),
            idle=self.settings.TYPING_IDLE_MS / 1000)
        self.call = CallNegotiator(
            lambda event, data: emit(self, event, data),
            self.capture or DeviceCapture(),
            self.output or BlackholeOutput(),
            ice_servers=self.settings.ICE_SERVERS,
            connection_factory=self.connection_factory)

    @property
    def connected(self) -> bool:
        return self.status is SessionStatus.CONNECTED


def _notify(ctx: SessionContext, reason: str):
    for listener in list(ctx.listeners):
        try:
            listener(ctx, reason)
        except Exception:
            logger.exception('listener failed on %s', reason)


def _channel_lost(ctx: SessionContext, error: ChannelError):
    logger.warning('%s', error)
    ctx.error = error
    ctx.status = SessionStatus.DISCONNECTED
    _notify(ctx, 'disconnected')


async def emit(ctx: SessionContext, event: str, data) -> bool:
    if not ctx.connected or ctx.channel is None:
        logger.debug('not connected, dropping %s', event)
        return False
    try:
        await ctx.channel.emit(event, data)
    except ChannelError as e:
        _channel_lost(ctx, e)
        return False
    return True


def validate_nick(nick) -> str:
    nick = (nick or '').strip()
    if not nick:
        raise ValidationError('Enter a nickname first')
    return nick


async def connect(ctx: SessionContext, address: Optional[str] = None,
                  opener: Optional[Opener] = None):
    if ctx.connected:
        return
    address = address or ctx.settings.RELAY_URL
    channel, connection_id = await (opener or RelayChannel.open)(
        address, ctx.settings.CONNECT_TIMEOUT)
    ctx.channel, ctx.connection_id = channel, connection_id
    ctx.status, ctx.error = SessionStatus.CONNECTED, None
    logger.info('connected to %s as %s', address, connection_id)
    _notify(ctx, 'connected')


async def join_room(ctx: SessionContext, nick: str, room_id: str = ''):
    nick = validate_nick(nick)
    if not ctx.connected:
        raise ChannelError('not connected to a relay')
    room_id = (room_id or '').strip() or ctx.settings.DEFAULT_ROOM
    ctx.nick, ctx.room_id = nick, room_id
    await emit(ctx, 'join-room', {'roomId': room_id, 'nick': nick})


async def send_message(ctx: SessionContext, text: str) -> bool:
    """Send a chat line. Blank text or no channel: nothing happens."""
    if not text or not text.strip() or not ctx.connected:
        return False
    if not await emit(ctx, 'send-message', {'text': text}):
        return False
    await ctx.debouncer.flush()
    return True


async def keystroke(ctx: SessionContext):
    if ctx.connected:
        await ctx.debouncer.keystroke()


async def leave_room(ctx: SessionContext):
    if ctx.channel is None and not ctx.connected:
        return
    ctx.debouncer.cancel()
    await ctx.call.end_call()
    channel, ctx.channel = ctx.channel, None
    ctx.status = SessionStatus.DISCONNECTED
    if channel is not None:
        await channel.close()
    for task in list(ctx.tasks):
        task.cancel()
    ctx.log.clear()
    ctx.typing.clear()
    ctx.connection_id = ctx.room_id = None
    logger.info('left room')
    _notify(ctx, 'left')


# ============ INBOUND ============

def _nick_of(data) -> Optional[str]:
    if isinstance(data, dict) and isinstance(data.get('nick'), str):
        return data['nick']
    return None


async def _on_history(ctx, data):
    if not isinstance(data, list):
        logger.warning('room-history: expected a list, got %s', type(data).__name__)
        return
    entries = []
    for raw in data:
        try:
            entries.append(Message.from_dict(raw))
        except ValueError as e:
            logger.warning('room-history: skipping entry: %s', e)
    ctx.log.replace(entries)


async def _on_new_message(ctx, data):
    try:
        ctx.log.append(Message.from_dict(data))
    except ValueError as e:
        logger.warning('new-message: %s', e)


async def _on_user_joined(ctx, data):
    nick = _nick_of(data)
    if nick is None:
        logger.warning('user-joined without nick: %r', data)
        return
    ctx.log.append(system_message(f'{nick} joined the room'))


async def _on_user_left(ctx, data):
    nick = _nick_of(data)
    if nick is None:
        logger.warning('user-left without nick: %r', data)
        return
    if isinstance(data.get('id'), str):
        ctx.typing.discard(data['id'])
    ctx.log.append(system_message(f'{nick} left the room'))


async def _on_typing(ctx, data):
    if (not isinstance(data, dict) or not isinstance(data.get('id'), str)
            or not isinstance(data.get('nick'), str)):
        logger.warning('typing: malformed payload %r', data)
        return
    ctx.typing.set_typing(data['id'], data['nick'], bool(data.get('typing')))


async def _on_offer(ctx, data):
    await ctx.call.on_remote_offer(data)


async def _on_answer(ctx, data):
    await ctx.call.on_remote_answer(data)


async def _on_candidate(ctx, data):
    await ctx.call.on_remote_candidate(data)


HANDLERS = {
    'room-history': _on_history,
    'new-message': _on_new_message,
    'user-joined': _on_user_joined,
    'user-left': _on_user_left,
    'typing': _on_typing,
    'offer': _on_offer,
    'answer': _on_answer,
    'ice-candidate': _on_candidate,
}


async def handle_event(ctx: SessionContext, event: str, data):
    handler = HANDLERS.get(event)
    if handler is None:
        logger.debug('ignoring relay event %s', event)
        return
    await handler(ctx, data)
    _notify(ctx, event)


def _spawn(ctx: SessionContext, coro):
    task = asyncio.ensure_future(coro)
    ctx.tasks.add(task)
    task.add_done_callback(ctx.tasks.discard)
    return task


async def pump(ctx: SessionContext):
    """Route inbound events until the channel goes away.

    Signaling handlers suspend on description work, so each runs as its
    own task; a candidate arriving meanwhile is handled (and buffered)
    instead of waiting behind the offer.
    """
    channel = ctx.channel
    if channel is None:
        return
    try:
        async for event, data in channel.events():
            if event in SIGNALING_EVENTS:
                _spawn(ctx, handle_event(ctx, event, data))
            else:
                await handle_event(ctx, event, data)
    except ChannelError as e:
        if ctx.channel is channel:
            _channel_lost(ctx, e)
        return
    if ctx.channel is channel and ctx.connected:
        _channel_lost(ctx, ChannelError('relay closed the connection'))


# ============ VIEW ============

@dataclass(frozen=True)
class MessageView:
    message: Message
    mine: bool

    @property
    def system(self) -> bool:
        return self.message.is_system


@dataclass(frozen=True)
class RoomView:
    connected: bool
    nick: Optional[str]
    room_id: Optional[str]
    connection_id: Optional[str]
    messages: tuple
    typing: tuple
    call: CallSnapshot
    error: Optional[str] = None


def snapshot(ctx: SessionContext) -> RoomView:
    return RoomView(
        connected=ctx.connected,
        nick=ctx.nick,
        room_id=ctx.room_id,
        connection_id=ctx.connection_id,
        messages=tuple(MessageView(m, is_self_authored(m, ctx.connection_id)) for m in ctx.log),
        typing=tuple(ctx.typing.names()),
        call=ctx.call.snapshot(),
        error=str(ctx.error) if ctx.error else None,
    )


@dataclass(frozen=True)
class Actions:
    join: Callable
    send: Callable
    keystroke: Callable
    start_call: Callable
    end_call: Callable
    leave: Callable


Render = Callable[[RoomView, Actions], None]


class FlashClient:
    def __init__(self, settings: Optional[Settings] = None, render: Optional[Render] = None,
                 opener: Optional[Opener] = None, **collaborators):
        self.ctx = SessionContext(settings=settings or default_settings, **collaborators)
        self._opener = opener
        self._pump_task: Optional[asyncio.Task] = None
        self.actions = Actions(join=self.join, send=self.send, keystroke=self.keystroke,
                               start_call=self.start_call, end_call=self.end_call,
                               leave=self.leave)
        if render is not None:
            self.ctx.listeners.append(lambda ctx, reason: render(snapshot(ctx), self.actions))

    async def join(self, nick: str, room: str = '', address: Optional[str] = None):
        validate_nick(nick)
        await connect(self.ctx, address, self._opener)
        if self._pump_task is None or self._pump_task.done():
            self._pump_task = asyncio.ensure_future(pump(self.ctx))
        await join_room(self.ctx, nick, room)

    async def send(self, text: str) -> bool:
        return await send_message(self.ctx, text)

    async def keystroke(self):
        await keystroke(self.ctx)

    async def start_call(self) -> bool:
        return await self.ctx.call.start_call()

    async def end_call(self):
        await self.ctx.call.end_call()

    async def leave(self):
        await leave_room(self.ctx)
        task, self._pump_task = self._pump_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def view(self) -> RoomView:
        return snapshot(self.ctx)

    async def wait_for(self, predicate: Callable[[RoomView], bool], timeout: float = 5.0) -> RoomView:
        """Poll the view until predicate holds."""
        async def poll():
            while not predicate(self.view()):
                await asyncio.sleep(0.02)
        await asyncio.wait_for(poll(), timeout)
        return self.view()

    @property
    def connected(self) -> bool:
        return self.ctx.connected
