"""Two-party audio/video call negotiation.

The CallNegotiator drives one RTC peer connection through offer/answer and
trickled ICE candidates, with every signaling payload travelling over the
room relay:

    caller: IDLE -> CREATING -> OFFERING -> ACTIVE
    callee: IDLE -> ANSWERING_PENDING -> ACTIVE
    both:   ... -> CLOSING -> IDLE

Candidates from the peer regularly arrive before the description they
belong to has been applied, so they are buffered per connection and
replayed in order as soon as the remote description is set.

Every await is a point where the relay loop may run other handlers (a
candidate, a second offer, end_call).  An epoch counter bumped by
end_call() lets a suspended step notice that its call is gone and release
what it obtained instead of resurrecting it.
"""
import asyncio, enum, logging, sys
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Protocol

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.contrib.media import MediaBlackhole, MediaPlayer
from aiortc.sdp import SessionDescription, candidate_from_sdp, candidate_to_sdp

from flash_config import settings
from flash_errors import MediaAcquisitionError, SignalingError

logger = logging.getLogger(__name__)

Signal = Callable[[str, dict], Awaitable[None]]


class CallState(enum.Enum):
    IDLE = 'idle'
    CREATING = 'creating'
    OFFERING = 'offering'
    ANSWERING_PENDING = 'answering-pending'
    ACTIVE = 'active'
    CLOSING = 'closing'


class Role(enum.Enum):
    CALLER = 'caller'
    CALLEE = 'callee'


# States from which a remote offer starts (or restarts) the callee path.
OFFER_ACCEPTING = (CallState.IDLE, CallState.ANSWERING_PENDING, CallState.ACTIVE)


# ============ COLLABORATORS ============

class PeerConnection(Protocol):
    local_description: Optional[dict]
    remote_description: Optional[dict]

    def on_candidate(self, callback: Callable[[dict], None]) -> None: ...
    def on_track(self, callback: Callable[[Any], None]) -> None: ...
    def add_track(self, track) -> None: ...
    async def create_offer(self) -> dict: ...
    async def create_answer(self) -> dict: ...
    async def set_local_description(self, description: dict) -> None: ...
    async def set_remote_description(self, description: dict) -> None: ...
    async def add_ice_candidate(self, candidate: dict) -> None: ...
    async def close(self) -> None: ...


class MediaCapture(Protocol):
    async def acquire(self) -> list: ...


class RemoteOutput(Protocol):
    def bind(self, track) -> None: ...
    async def clear(self) -> None: ...


def _desc_dict(desc) -> Optional[dict]:
    if desc is None:
        return None
    return {'type': desc.type, 'sdp': desc.sdp}


class AiortcConnection:
    """PeerConnection backed by aiortc.

    aiortc gathers all of its candidates inside setLocalDescription instead
    of firing an icecandidate event per candidate, so once the local
    description is set each gathered candidate is handed to the candidate
    observer in the browser's RTCIceCandidateInit shape.
    """

    def __init__(self, ice_servers: list[str]):
        self.pc = RTCPeerConnection(RTCConfiguration(iceServers=[
            RTCIceServer(urls=list(ice_servers))
        ]))
        self._on_candidate: Optional[Callable[[dict], None]] = None

        @self.pc.on('connectionstatechange')
        def on_conn():
            logger.info('peer connection: %s', self.pc.connectionState)

    def on_candidate(self, callback):
        self._on_candidate = callback

    def on_track(self, callback):
        @self.pc.on('track')
        def on_track(track):
            callback(track)

    def add_track(self, track):
        self.pc.addTrack(track)

    @property
    def local_description(self) -> Optional[dict]:
        return _desc_dict(self.pc.localDescription)

    @property
    def remote_description(self) -> Optional[dict]:
        return _desc_dict(self.pc.remoteDescription)

    async def create_offer(self) -> dict:
        return _desc_dict(await self.pc.createOffer())

    async def create_answer(self) -> dict:
        return _desc_dict(await self.pc.createAnswer())

    async def set_local_description(self, description: dict):
        await self.pc.setLocalDescription(
            RTCSessionDescription(sdp=description['sdp'], type=description['type']))
        self._trickle()

    async def set_remote_description(self, description: dict):
        await self.pc.setRemoteDescription(
            RTCSessionDescription(sdp=description['sdp'], type=description['type']))

    async def add_ice_candidate(self, candidate: dict):
        line = candidate.get('candidate') or ''
        if line.startswith('candidate:'):
            line = line[len('candidate:'):]
        if not line.strip():
            return  # end-of-candidates marker
        ice = candidate_from_sdp(line)
        ice.sdpMid = candidate.get('sdpMid')
        ice.sdpMLineIndex = candidate.get('sdpMLineIndex')
        await self.pc.addIceCandidate(ice)

    async def close(self):
        await self.pc.close()

    def _trickle(self):
        if self._on_candidate is None or self.pc.localDescription is None:
            return
        parsed = SessionDescription.parse(self.pc.localDescription.sdp)
        for index, media in enumerate(parsed.media):
            for ice in media.ice_candidates:
                self._on_candidate({
                    'candidate': 'candidate:' + candidate_to_sdp(ice),
                    'sdpMid': media.rtp.muxId,
                    'sdpMLineIndex': index,
                })


def _default_devices():
    if sys.platform == 'darwin':
        return ('default:none', 'avfoundation'), ('none:default', 'avfoundation')
    if sys.platform == 'win32':
        return ('video=Integrated Camera', 'dshow'), ('audio=Microphone', 'dshow')
    return ('/dev/video0', 'v4l2'), ('default', 'pulse')


class DeviceCapture:
    """Camera + microphone through ffmpeg (aiortc MediaPlayer)."""

    def __init__(self, video: Optional[str] = None, video_format: Optional[str] = None,
                 audio: Optional[str] = None, audio_format: Optional[str] = None,
                 options: Optional[dict] = None):
        (dv, dvf), (da, daf) = _default_devices()
        self.video, self.video_format = video or dv, video_format or dvf
        self.audio, self.audio_format = audio or da, audio_format or daf
        self.options = options or {'framerate': '30', 'video_size': '640x480'}

    def _open(self) -> list:
        tracks = []
        if self.video:
            player = MediaPlayer(self.video, format=self.video_format, options=self.options)
            if player.video:
                tracks.append(player.video)
        if self.audio:
            player = MediaPlayer(self.audio, format=self.audio_format)
            if player.audio:
                tracks.append(player.audio)
        return tracks

    async def acquire(self) -> list:
        try:
            # Opening a device blocks inside ffmpeg
            tracks = await asyncio.to_thread(self._open)
        except Exception as e:
            raise MediaAcquisitionError(f'cannot open capture device: {e}') from e
        if not tracks:
            raise MediaAcquisitionError('no audio or video track available')
        return tracks


class BlackholeOutput:
    """Consumes remote tracks so their receivers keep running."""

    def __init__(self):
        self.tracks: list = []
        self._sinks: list[MediaBlackhole] = []

    def bind(self, track):
        sink = MediaBlackhole()
        sink.addTrack(track)
        self.tracks.append(track)
        self._sinks.append(sink)
        asyncio.ensure_future(sink.start())
        logger.info('remote %s track bound', track.kind)

    async def clear(self):
        sinks, self._sinks = self._sinks, []
        self.tracks = []
        for sink in sinks:
            await sink.stop()


# ============ NEGOTIATOR ============

@dataclass
class CallSession:
    connection: PeerConnection
    role: Role
    local_description: Optional[dict] = None
    remote_description: Optional[dict] = None
    pending_candidates: list = field(default_factory=list)
    remote_ready: bool = False  # remote description set and buffer replayed
    local_tracks: list = field(default_factory=list)
    remote_tracks: list = field(default_factory=list)


@dataclass(frozen=True)
class CallSnapshot:
    state: CallState
    role: Optional[Role] = None
    local_description: Optional[dict] = None
    remote_description: Optional[dict] = None
    pending_candidates: int = 0
    remote_tracks: int = 0

    @property
    def in_call(self) -> bool:
        return self.state is not CallState.IDLE


def parse_description(payload, kind: str) -> dict:
    if not isinstance(payload, dict):
        raise SignalingError(f'{kind}: expected an object, got {type(payload).__name__}')
    sdp = payload.get('sdp')
    if not isinstance(sdp, str) or not sdp.strip():
        raise SignalingError(f'{kind}: missing sdp')
    desc_type = payload.get('type', kind)
    if desc_type != kind:
        raise SignalingError(f'{kind}: got description of type {desc_type!r}')
    return {'type': kind, 'sdp': sdp}


def parse_candidate(payload) -> dict:
    if not isinstance(payload, dict) or not isinstance(payload.get('candidate'), str):
        raise SignalingError(f'ice-candidate: malformed payload {payload!r}')
    return payload


def _stop_tracks(tracks):
    for track in tracks:
        try:
            track.stop()
        except Exception as e:
            logger.warning('failed to stop %s track: %s', getattr(track, 'kind', '?'), e)


class CallNegotiator:
    def __init__(self, signal: Signal, capture: MediaCapture, output: RemoteOutput,
                 ice_servers: Optional[list[str]] = None,
                 connection_factory: Optional[Callable[[list[str]], PeerConnection]] = None):
        if ice_servers is None:
            ice_servers = settings.ICE_SERVERS
        if not ice_servers:
            raise ValueError('at least one ICE server is required')
        self.ice_servers = list(ice_servers)
        self._signal = signal
        self._capture = capture
        self._output = output
        self._connection_factory = connection_factory or AiortcConnection
        self.state = CallState.IDLE
        self.session: Optional[CallSession] = None
        self._epoch = 0
        self._busy = False  # a remote description is being applied

    def snapshot(self) -> CallSnapshot:
        s = self.session
        if s is None:
            return CallSnapshot(state=self.state)
        return CallSnapshot(state=self.state, role=s.role,
                            local_description=s.local_description,
                            remote_description=s.remote_description,
                            pending_candidates=len(s.pending_candidates),
                            remote_tracks=len(s.remote_tracks))

    def _set_state(self, state: CallState):
        if state is not self.state:
            logger.debug('call %s -> %s', self.state.value, state.value)
            self.state = state

    def _open_session(self, role: Role, epoch: int) -> CallSession:
        connection = self._connection_factory(self.ice_servers)
        session = CallSession(connection=connection, role=role)
        # Both observers live as long as the connection; the epoch keeps a
        # closed call's stragglers from leaking into the next one.
        connection.on_candidate(
            lambda candidate: asyncio.ensure_future(self._relay_candidate(epoch, candidate)))
        connection.on_track(lambda track: self._bind_remote(epoch, session, track))
        self.session = session
        return session

    async def _relay_candidate(self, epoch: int, candidate: dict):
        if epoch != self._epoch:
            return
        await self._signal('ice-candidate', candidate)

    def _bind_remote(self, epoch: int, session: CallSession, track):
        if epoch != self._epoch:
            return
        session.remote_tracks.append(track)
        self._output.bind(track)

    # ---- caller ----

    async def start_call(self) -> bool:
        """Capture media and send an offer. Returns False when not started."""
        if self.state is not CallState.IDLE:
            logger.info('start_call ignored while %s', self.state.value)
            return False
        epoch = self._epoch
        self._set_state(CallState.CREATING)
        try:
            tracks = await self._capture.acquire()
        except Exception as e:
            if epoch != self._epoch:
                return False  # already hung up
            self._set_state(CallState.IDLE)
            if isinstance(e, MediaAcquisitionError):
                raise
            raise MediaAcquisitionError(f'cannot acquire media: {e}') from e
        if epoch != self._epoch:
            logger.info('call ended while capturing media, releasing %d tracks', len(tracks))
            _stop_tracks(tracks)
            return False

        session = self._open_session(Role.CALLER, epoch)
        session.local_tracks = list(tracks)
        connection = session.connection
        try:
            for track in tracks:
                connection.add_track(track)
            offer = await connection.create_offer()
            if epoch != self._epoch:
                return False
            await connection.set_local_description(offer)
        except Exception:
            logger.exception('could not create local offer')
            if epoch == self._epoch:
                await self.end_call()
            return False
        if epoch != self._epoch:
            return False

        session.local_description = connection.local_description or offer
        self._set_state(CallState.OFFERING)
        await self._signal('offer', session.local_description)
        return True

    async def on_remote_answer(self, payload):
        session = self.session
        if self.state is not CallState.OFFERING or session is None or self._busy:
            logger.debug('stray answer ignored while %s', self.state.value)
            return
        try:
            answer = parse_description(payload, 'answer')
        except SignalingError as e:
            logger.warning('%s', e)
            return
        epoch = self._epoch
        self._busy = True
        try:
            try:
                await session.connection.set_remote_description(answer)
            except Exception as e:
                logger.warning('remote answer rejected: %s', e)
                return
            if epoch != self._epoch:
                return
            session.remote_description = answer
            await self._replay_candidates(session, epoch)
            if epoch != self._epoch:
                return
            self._set_state(CallState.ACTIVE)
        finally:
            if epoch == self._epoch:
                self._busy = False

    # ---- callee ----

    async def on_remote_offer(self, payload):
        if self._busy or self.state not in OFFER_ACCEPTING:
            logger.info('offer ignored while %s', self.state.value)
            return
        try:
            offer = parse_description(payload, 'offer')
        except SignalingError as e:
            logger.warning('%s', e)
            return
        epoch = self._epoch
        self._busy = True
        try:
            self._set_state(CallState.ANSWERING_PENDING)
            session = self.session or self._open_session(Role.CALLEE, epoch)
            session.role = Role.CALLEE
            connection = session.connection
            try:
                await connection.set_remote_description(offer)
            except Exception as e:
                logger.warning('remote offer rejected: %s', e)
                return
            if epoch != self._epoch:
                return
            session.remote_description = offer
            await self._replay_candidates(session, epoch)
            if epoch != self._epoch:
                return
            try:
                answer = await connection.create_answer()
                if epoch != self._epoch:
                    return
                await connection.set_local_description(answer)
            except Exception as e:
                logger.warning('could not answer remote offer: %s', e)
                return
            if epoch != self._epoch:
                return
            session.local_description = connection.local_description or answer
            self._set_state(CallState.ACTIVE)
            await self._signal('answer', session.local_description)
        finally:
            if epoch == self._epoch:
                self._busy = False

    # ---- candidates ----

    async def on_remote_candidate(self, payload):
        session = self.session
        if session is None:
            logger.debug('candidate without a connection, discarded')
            return
        try:
            candidate = parse_candidate(payload)
        except SignalingError as e:
            logger.warning('%s', e)
            return
        if not session.remote_ready:
            session.pending_candidates.append(candidate)
            return
        await self._apply_candidate(session, candidate)

    async def _replay_candidates(self, session: CallSession, epoch: int):
        # Candidates that land while we are awaiting go to the back of the
        # buffer, so arrival order is kept until it is empty.
        while session.pending_candidates:
            candidate = session.pending_candidates.pop(0)
            await self._apply_candidate(session, candidate)
            if epoch != self._epoch:
                return
        session.remote_ready = True

    async def _apply_candidate(self, session: CallSession, candidate: dict):
        try:
            await session.connection.add_ice_candidate(candidate)
        except Exception as e:
            logger.warning('error adding ICE candidate: %s', e)

    # ---- teardown ----

    async def end_call(self):
        if self.state in (CallState.IDLE, CallState.CLOSING):
            return
        self._epoch += 1
        self._busy = False
        session, self.session = self.session, None
        self._set_state(CallState.CLOSING)
        if session is not None:
            try:
                await session.connection.close()
            except Exception as e:
                logger.warning('error closing peer connection: %s', e)
            _stop_tracks(session.local_tracks)
        await self._output.clear()
        self._set_state(CallState.IDLE)
        logger.info('call ended')
