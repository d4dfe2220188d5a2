"""Ephemeral, ordered chat log kept in RAM for the lifetime of a session."""
import time, uuid
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional

SYSTEM_NICK = 'System'


@dataclass(frozen=True)
class Message:
    id: str
    nick: str
    text: str
    timestamp: Optional[float] = None  # ms since epoch, when the relay sent one

    @classmethod
    def from_dict(cls, data: dict) -> 'Message':
        """Build from the relay's `{id, nick, text, timestamp?}` shape."""
        if not isinstance(data, dict):
            raise ValueError(f'message must be an object, got {type(data).__name__}')
        msg_id, nick, text = data.get('id'), data.get('nick'), data.get('text')
        if not isinstance(msg_id, str) or not msg_id:
            raise ValueError('message id missing')
        if not isinstance(nick, str) or not isinstance(text, str):
            raise ValueError(f'message {msg_id}: nick/text must be strings')
        ts = data.get('timestamp')
        if ts is not None and not isinstance(ts, (int, float)):
            ts = None
        return cls(id=msg_id, nick=nick, text=text, timestamp=ts)

    def to_dict(self) -> dict:
        d = {'id': self.id, 'nick': self.nick, 'text': self.text}
        if self.timestamp is not None:
            d['timestamp'] = self.timestamp
        return d

    @property
    def is_system(self) -> bool:
        return self.nick == SYSTEM_NICK


def system_message(text: str) -> Message:
    return Message(id='sys-' + uuid.uuid4().hex, nick=SYSTEM_NICK, text=text,
                   timestamp=time.time() * 1000)


def is_self_authored(message: Message, connection_id: Optional[str]) -> bool:
    """True when the relay stamped the message id with our connection id."""
    if not connection_id:
        return False
    return message.id.startswith(connection_id)


class MessageLog:
    """Append-only list of messages in arrival order.

    Redelivered ids are not deduplicated: the relay may deliver a message
    twice and it will then show up twice.
    """

    def __init__(self):
        self._entries: list[Message] = []

    def append(self, entry: Message):
        self._entries.append(entry)

    def replace(self, entries: Iterable[Message]):
        self._entries = list(entries)

    def clear(self):
        self._entries = []

    @property
    def entries(self) -> tuple[Message, ...]:
        return tuple(self._entries)

    def __iter__(self) -> Iterator[Message]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self._entries)
