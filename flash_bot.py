#!/usr/bin/env python3
"""flashroom terminal client.

  Join a room and chat (one line per message):
     python3 flash_bot.py --nick alice --room main

  Join and immediately start a video call with whoever is in the room:
     python3 flash_bot.py --nick alice --call

  Run the development relay:
     python3 flash_bot.py --relay-server --port 3001

Commands while chatting: /call, /hangup, /quit
"""
import asyncio, argparse, logging, sys

import relay
from flash_call import DeviceCapture
from flash_client import Actions, FlashClient, RoomView
from flash_config import settings
from flash_errors import FlashError, MediaAcquisitionError

SHOWN_MESSAGES = 20


def render_text(view: RoomView) -> str:
    """Plain-text rendering of a room view."""
    if not view.connected:
        return f'(disconnected{": " + view.error if view.error else ""})'
    lines = [f'== {view.room_id} as {view.nick} ==']
    for item in view.messages[-SHOWN_MESSAGES:]:
        m = item.message
        if item.system:
            lines.append(f'  * {m.text}')
        elif item.mine:
            lines.append(f'  [me] {m.text}')
        else:
            lines.append(f'  <{m.nick}> {m.text}')
    if view.typing:
        lines.append(f'  {", ".join(view.typing)} typing...')
    if view.call.in_call:
        role = view.call.role.value if view.call.role else '-'
        lines.append(f'  call: {view.call.state.value} ({role})')
    return '\n'.join(lines)


def print_view(view: RoomView, actions: Actions):
    print(render_text(view), flush=True)


async def chat(args):
    capture = DeviceCapture(video=args.device, video_format=args.device_format,
                            audio=args.audio_device, audio_format=args.audio_format)
    client = FlashClient(render=print_view, capture=capture)
    actions = client.actions
    try:
        await actions.join(args.nick, args.room, args.relay)
    except FlashError as e:
        print(f'cannot join: {e}')
        return 1

    if args.call:
        await start_call(actions)

    try:
        while client.connected:
            line = await asyncio.to_thread(sys.stdin.readline)
            if not line:
                break
            line = line.rstrip('\n')
            if line == '/quit':
                break
            elif line == '/call':
                await start_call(actions)
            elif line == '/hangup':
                await actions.end_call()
            else:
                await actions.send(line)
    except KeyboardInterrupt:
        pass
    finally:
        await actions.leave()
    return 0


async def start_call(actions: Actions):
    try:
        if not await actions.start_call():
            print('a call is already in progress')
    except MediaAcquisitionError as e:
        print(f'cannot start call: {e}')


def main():
    p = argparse.ArgumentParser()
    p.add_argument('--relay', default=settings.RELAY_URL, help='relay websocket url')
    p.add_argument('--room', default=settings.DEFAULT_ROOM)
    p.add_argument('--nick', default='')
    p.add_argument('--call', action='store_true', help='start a call after joining')
    p.add_argument('--device', help='camera device (ffmpeg input)')
    p.add_argument('--device-format', help='camera ffmpeg format, e.g. v4l2')
    p.add_argument('--audio-device', help='microphone device (ffmpeg input)')
    p.add_argument('--audio-format', help='microphone ffmpeg format, e.g. pulse')
    p.add_argument('--relay-server', action='store_true', help='run the development relay')
    p.add_argument('--port', type=int, default=3001)
    p.add_argument('--log-level', default=settings.LOG_LEVEL)
    args = p.parse_args()

    logging.basicConfig(level=args.log_level.upper(),
                        format='%(asctime)s - %(levelname)s - %(message)s')

    if args.relay_server:
        asyncio.run(relay.main(args.port))
        return 0
    if not args.nick.strip():
        print('Enter a nickname first (--nick)')
        return 2
    return asyncio.run(chat(args))

if __name__ == '__main__':
    sys.exit(main())
