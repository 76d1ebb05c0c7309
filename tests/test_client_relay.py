"""Real websockets clients talking to a live aiohttp relay."""

import asyncio

from conftest import eventually
from studenthub_msg.client import EventBridge, RelayClient
from studenthub_msg.protocol import SendMessage
from studenthub_msg.relay import RELAY_KEY


class Inbox:
    def __init__(self):
        self.received = []
        self.acked = []
        self.invalidated = []

    def bridge(self):
        return EventBridge(
            invalidate=self.invalidated.append,
            message_received=self.received.append,
            message_sent=self.acked.append,
        )


async def test_two_clients_exchange_messages(aiohttp_server, app, store, conversation):
    server = await aiohttp_server(app)
    url = f"ws://{server.host}:{server.port}/ws"
    registry = app[RELAY_KEY].registry
    rahul, priya = Inbox(), Inbox()

    async with RelayClient(url, rahul.bridge()) as sender, \
            RelayClient(url, priya.bridge()) as recipient:
        sender.connect("u1")
        recipient.connect("u2")
        await sender.wait_open(timeout=5)
        await recipient.wait_open(timeout=5)
        await eventually(lambda: registry.is_online("u1") and registry.is_online("u2"))

        await sender.send_message(SendMessage(conversation.id, "u1", "Is the room still free?"))
        await eventually(lambda: rahul.acked and priya.received)

        assert priya.received[0].content == "Is the room still free?"
        assert rahul.acked[0] == priya.received[0]
        assert ("/api/users", "u2", "conversations") in priya.invalidated

    await eventually(lambda: len(registry) == 0)
    assert [m.content for m in store.list_messages(conversation.id)] == ["Is the room still free?"]


async def test_message_queued_before_connect_reaches_offline_store(aiohttp_server, app, store, conversation):
    server = await aiohttp_server(app)
    inbox = Inbox()
    client = RelayClient(f"ws://{server.host}:{server.port}/ws", inbox.bridge())

    await client.send_message({"conversationId": conversation.id, "senderId": "u1",
                               "content": "Sent while offline"})
    client.connect("u1")
    await eventually(lambda: inbox.acked)
    await client.disconnect()

    assert [m.content for m in store.list_messages(conversation.id)] == ["Sent while offline"]


async def test_relay_restart_triggers_reconnect(aiohttp_server, app):
    server = await aiohttp_server(app)
    url = f"ws://{server.host}:{server.port}/ws"
    registry = app[RELAY_KEY].registry
    statuses = []

    async def quick_sleep(delay):
        await asyncio.sleep(0.01)

    client = RelayClient(url, EventBridge(status_changed=statuses.append), sleep=quick_sleep)
    client.connect("u1")
    await client.wait_open(timeout=5)
    await eventually(lambda: registry.is_online("u1"))

    connection = registry.lookup("u1")
    await connection.ws.close(code=1011)

    await eventually(lambda: any(s.startswith("reconnecting") for s in statuses))
    await eventually(lambda: client.is_connected()
                     and registry.lookup("u1") not in (None, connection))
    await client.disconnect()
