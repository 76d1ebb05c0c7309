"""
studenthub-msg - command line entry point for Student Hub messaging

Usage:
    studenthub-msg relay [--host HOST] [--port PORT] [--seed]
    studenthub-msg send --as <user_id> --to <user_id> <message>
    studenthub-msg listen --as <user_id>

Example:
    studenthub-msg send --as rahul --to priya "Is the room near Napier Town still free?"
"""

import argparse
import asyncio
import sys

import aiohttp

from . import settings
from .client import EventBridge, RelayClient
from .protocol import SendMessage
from .relay import main as run_relay

SEND_TIMEOUT = 10


async def find_or_create_conversation(server_url: str, user1: str, user2: str) -> dict:
    """Ask the relay for the conversation between two users."""
    async with aiohttp.ClientSession() as session:
        async with session.post(
            f"{server_url}/api/conversations",
            json={"user1Id": user1, "user2Id": user2},
        ) as resp:
            data = await resp.json()
            if resp.status != 200:
                raise RuntimeError(data.get("error", f"HTTP {resp.status}"))
            return data


async def send(user_id: str, to_user: str, text: str) -> bool:
    """Send one message and wait for the relay's acknowledgement."""
    conf = settings.get_settings()
    conversation = await find_or_create_conversation(
        settings.get_server_url(conf), user_id, to_user
    )

    loop = asyncio.get_running_loop()
    acked = loop.create_future()
    bridge = EventBridge(
        message_sent=lambda m: acked.done() or acked.set_result(m),
        error=lambda e: acked.done() or acked.set_exception(RuntimeError(e.message)),
    )

    async with RelayClient(settings.get_relay_url(conf), bridge,
                           policy=settings.get_reconnect_policy(conf)) as client:
        client.connect(user_id)
        await client.send_message(SendMessage(
            conversation_id=conversation["id"],
            sender_id=user_id,
            content=text,
        ))
        message = await asyncio.wait_for(acked, SEND_TIMEOUT)

    print(f"✓ Sent to @{to_user} (id: {message.id})")
    return True


async def listen(user_id: str):
    """Print incoming messages until interrupted."""
    conf = settings.get_settings()
    stopped = asyncio.Event()

    def on_message(message):
        stamp = message.created_at.strftime("%H:%M")
        print(f"[{stamp}] @{message.sender_id}: {message.content}")

    def on_status(status):
        print(f"-- {status}", file=sys.stderr)
        if status == "gave up":
            stopped.set()

    bridge = EventBridge(message_received=on_message, status_changed=on_status)
    async with RelayClient(settings.get_relay_url(conf), bridge,
                           policy=settings.get_reconnect_policy(conf),
                           ping_interval=settings.get_ping_interval(conf)) as client:
        client.connect(user_id)
        await stopped.wait()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="studenthub-msg", description=__doc__,
                                     formatter_class=argparse.RawDescriptionHelpFormatter)
    commands = parser.add_subparsers(dest="command", required=True)

    relay = commands.add_parser("relay", help="run the relay server")
    relay.add_argument("--host")
    relay.add_argument("--port", type=int)
    relay.add_argument("--seed", action="store_true", default=None,
                       help="load demo users on startup")

    send_cmd = commands.add_parser("send", help="send a message")
    send_cmd.add_argument("--as", dest="user_id", required=True)
    send_cmd.add_argument("--to", dest="to_user", required=True)
    send_cmd.add_argument("text")

    listen_cmd = commands.add_parser("listen", help="print incoming messages")
    listen_cmd.add_argument("--as", dest="user_id", required=True)

    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    if args.command == "relay":
        run_relay(host=args.host, port=args.port, seed=args.seed)
        return 0

    settings.setup_logging(settings.get_log_level())
    try:
        if args.command == "send":
            asyncio.run(send(args.user_id, args.to_user, args.text))
        elif args.command == "listen":
            asyncio.run(listen(args.user_id))
    except KeyboardInterrupt:
        return 0
    except (aiohttp.ClientError, asyncio.TimeoutError, RuntimeError) as e:
        print(f"Relay error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
