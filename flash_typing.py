"""Who-is-typing tracking, plus the sender-side debounce of our own signal."""
import asyncio, logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class TypingTracker:
    """participant id -> nick of everyone currently typing.

    Entries only go away on an explicit typing=false or user-left; there is
    no timeout, so a peer that vanishes mid-burst stays listed until then.
    """

    def __init__(self):
        self._typing: dict[str, str] = {}

    def set_typing(self, participant_id: str, nick: str, is_typing: bool):
        if is_typing:
            self._typing[participant_id] = nick
        else:
            self._typing.pop(participant_id, None)

    def discard(self, participant_id: str):
        self._typing.pop(participant_id, None)

    def clear(self):
        self._typing.clear()

    def names(self) -> list[str]:
        return list(self._typing.values())

    def snapshot(self) -> dict[str, str]:
        return dict(self._typing)

    def __contains__(self, participant_id) -> bool:
        return participant_id in self._typing

    def __len__(self) -> int:
        return len(self._typing)


class TypingDebouncer:
    """Turns raw keystrokes into typing=true/false signals.

    true goes out on the first keystroke of a burst only; exactly one
    trailing false follows, either `idle` seconds after the last keystroke
    or right away on flush(), whichever happens first.
    """

    def __init__(self, emit: Callable[[bool], Awaitable[None]], idle: float = 0.8):
        self._emit = emit
        self.idle = idle
        self.typing = False
        self._timer: Optional[asyncio.TimerHandle] = None

    async def keystroke(self):
        self._reset_timer()
        self._timer = asyncio.get_running_loop().call_later(self.idle, self._expire)
        if not self.typing:
            self.typing = True
            await self._emit(True)

    async def flush(self):
        """Message sent: stop signaling now."""
        self._reset_timer()
        self.typing = False
        await self._emit(False)

    def cancel(self):
        """Forget the burst without telling anyone (channel is going away)."""
        self._reset_timer()
        self.typing = False

    def _reset_timer(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _expire(self):
        self._timer = None
        if not self.typing:
            return
        self.typing = False
        asyncio.ensure_future(self._send_idle())

    async def _send_idle(self):
        try:
            await self._emit(False)
        except Exception as e:
            logger.warning('typing=false not delivered: %s', e)
