import asyncio

from flash_typing import TypingDebouncer, TypingTracker


def test_true_then_false_leaves_tracker_empty():
    t = TypingTracker()
    t.set_typing('p1', 'bob', True)
    t.set_typing('p1', 'bob', False)
    assert len(t) == 0
    assert t.names() == []


def test_repeated_true_is_one_entry():
    t = TypingTracker()
    for _ in range(5):
        t.set_typing('p1', 'bob', True)
    assert t.snapshot() == {'p1': 'bob'}


def test_repeated_false_is_harmless():
    t = TypingTracker()
    t.set_typing('p1', 'bob', False)
    t.set_typing('p1', 'bob', False)
    assert len(t) == 0


def test_true_overwrites_name():
    t = TypingTracker()
    t.set_typing('p1', 'bob', True)
    t.set_typing('p1', 'robert', True)
    assert t.names() == ['robert']


def test_entries_do_not_expire():
    t = TypingTracker()
    t.set_typing('p1', 'bob', True)
    t.set_typing('p2', 'carol', True)
    t.discard('p1')
    assert 'p1' not in t and 'p2' in t
    t.clear()
    assert len(t) == 0


class Emitted:
    def __init__(self):
        self.signals = []

    async def __call__(self, typing):
        self.signals.append(typing)


async def test_burst_emits_true_once_then_trailing_false():
    emitted = Emitted()
    d = TypingDebouncer(emitted, idle=0.1)
    for _ in range(5):
        await d.keystroke()
        await asyncio.sleep(0.01)
    assert emitted.signals == [True]
    await asyncio.sleep(0.25)
    assert emitted.signals == [True, False]
    assert not d.typing


async def test_keystrokes_push_the_deadline():
    emitted = Emitted()
    d = TypingDebouncer(emitted, idle=0.15)
    for _ in range(6):
        await d.keystroke()
        await asyncio.sleep(0.05)
    assert emitted.signals == [True]
    await asyncio.sleep(0.3)
    assert emitted.signals == [True, False]


async def test_flush_sends_false_immediately_and_only_once():
    emitted = Emitted()
    d = TypingDebouncer(emitted, idle=0.05)
    await d.keystroke()
    await d.flush()
    assert emitted.signals == [True, False]
    await asyncio.sleep(0.1)
    assert emitted.signals == [True, False]


async def test_new_burst_after_idle_signals_again():
    emitted = Emitted()
    d = TypingDebouncer(emitted, idle=0.03)
    await d.keystroke()
    await asyncio.sleep(0.08)
    await d.keystroke()
    assert emitted.signals == [True, False, True]
    d.cancel()
    await asyncio.sleep(0.08)
    assert emitted.signals == [True, False, True]
