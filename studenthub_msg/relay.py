"""
WebSocket relay server for Student Hub messaging.

Clients connect to ``/ws?userId=<id>``. Each ``send_message`` envelope is
stored first, then forwarded to the other participant if they are online,
and finally acknowledged to the sender. Offline recipients pick the message
up through the REST endpoints on their next fetch.

Usage:
    studenthub-msg relay
    PORT=9000 STUDENTHUB_SEED=1 studenthub-msg relay
"""

import json
import logging
from typing import Optional

from aiohttp import web, WSMsgType

from . import settings
from .errors import InvalidPayload, InvalidSender, MessagingError
from .protocol import (
    ErrorEnvelope, MessageSent, NewMessage, Ping, Pong, SendMessage, parse_inbound,
)
from .registry import Connection, ConnectionRegistry
from .store import ConversationStore, Message

log = logging.getLogger(__name__)

# === CONFIG ===

HEARTBEAT = 30  # seconds between protocol-level pings from the server


class RelayServer:
    """Routes envelopes between connected users and the conversation store."""

    def __init__(self, store: ConversationStore, registry: Optional[ConnectionRegistry] = None):
        self.store = store
        self.registry = registry if registry is not None else ConnectionRegistry()

    async def send(self, ws: web.WebSocketResponse, envelope) -> bool:
        """Send an envelope if the socket is still open."""
        if ws.closed:
            return False
        try:
            await ws.send_json(envelope.to_dict())
        except ConnectionResetError as exc:
            log.info("Send failed, socket closing: %s", exc)
            return False
        return True

    async def route_message(self, connection: Connection, envelope: SendMessage) -> bool:
        """Store, forward and acknowledge a message. Returns True if delivered."""
        if envelope.sender_id != connection.user_id:
            raise InvalidSender(
                f"Connection for {connection.user_id} cannot send as {envelope.sender_id}"
            )

        message: Message = self.store.append_message(
            envelope.conversation_id,
            envelope.sender_id,
            envelope.content,
            envelope.message_type,
        )
        conversation = self.store.get_conversation(message.conversation_id)
        recipient_id = conversation.other_participant(message.sender_id)

        delivered = False
        recipient = self.registry.lookup(recipient_id)
        if recipient and recipient.is_open:
            try:
                delivered = await self.send(recipient.ws, NewMessage(message))
            except Exception:
                log.exception("Forwarding message %s to %s failed", message.id, recipient_id)
        if not delivered:
            log.debug("Recipient %s offline, message %s stored only", recipient_id, message.id)

        await self.send(connection.ws, MessageSent(message))
        return delivered

    async def handle_frame(self, connection: Connection, raw):
        """Process one inbound frame. Failures never close the connection."""
        try:
            envelope = parse_inbound(raw)
            if isinstance(envelope, Ping):
                await self.send(connection.ws, Pong())
            elif isinstance(envelope, SendMessage):
                await self.route_message(connection, envelope)
        except MessagingError as exc:
            log.warning("Dropped envelope from %s: %s", connection.user_id, exc)
            await self.send(connection.ws, ErrorEnvelope(exc.code, str(exc)))
        except Exception:
            log.exception("Failed to process envelope from %s", connection.user_id)
            await self.send(connection.ws, ErrorEnvelope("internal_error", "Internal error"))

    async def serve(self, request: web.Request) -> web.WebSocketResponse:
        """Run one relay connection from handshake to close."""
        user_id = request.query.get("userId", "").strip()
        if not user_id:
            raise InvalidPayload("userId query parameter is required")

        ws = web.WebSocketResponse(heartbeat=HEARTBEAT)
        await ws.prepare(request)

        connection = Connection(user_id=user_id, ws=ws)
        self.registry.register(user_id, connection)
        log.info("%s connected (%d online)", user_id, len(self.registry))

        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await self.handle_frame(connection, msg.data)
                elif msg.type == WSMsgType.BINARY:
                    await self.send(ws, ErrorEnvelope(
                        InvalidPayload.code, "Binary frames are not supported"
                    ))
                elif msg.type == WSMsgType.ERROR:
                    log.warning("WebSocket error for %s: %s", user_id, ws.exception())
        finally:
            self.registry.unregister(user_id, connection)
            log.info("%s disconnected (%d online)", user_id, len(self.registry))

        return ws


RELAY_KEY = web.AppKey("relay", RelayServer)


# === HTTP HANDLERS ===

@web.middleware
async def error_middleware(request: web.Request, handler):
    """Render messaging failures as JSON error bodies."""
    try:
        return await handler(request)
    except MessagingError as exc:
        return web.json_response({"error": str(exc)}, status=exc.status)


async def read_json(request: web.Request) -> dict:
    try:
        data = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise InvalidPayload("Request body must be JSON") from exc
    if not isinstance(data, dict):
        raise InvalidPayload("Request body must be a JSON object")
    return data


async def handle_status(request: web.Request) -> web.Response:
    """Return relay status."""
    registry = request.app[RELAY_KEY].registry
    return web.json_response({
        "status": "ok",
        "users_online": len(registry),
        "users": registry.list_users(),
    })


async def handle_create_conversation(request: web.Request) -> web.Response:
    """Find or create the conversation between two users."""
    data = await read_json(request)
    user1 = data.get("user1Id")
    user2 = data.get("user2Id")
    if not isinstance(user1, str) or not isinstance(user2, str):
        raise InvalidPayload("user1Id and user2Id are required")

    conversation = request.app[RELAY_KEY].store.find_or_create_conversation(user1, user2)
    return web.json_response(conversation.to_dict())


async def handle_conversation_messages(request: web.Request) -> web.Response:
    store = request.app[RELAY_KEY].store
    messages = store.list_messages(request.match_info["conversation_id"])
    return web.json_response([m.to_dict() for m in messages])


async def handle_user_conversations(request: web.Request) -> web.Response:
    store = request.app[RELAY_KEY].store
    conversations = store.list_conversations(request.match_info["user_id"])
    return web.json_response([c.to_dict() for c in conversations])


async def handle_user(request: web.Request) -> web.Response:
    user = request.app[RELAY_KEY].store.get_user(request.match_info["user_id"])
    return web.json_response(user.to_dict())


# === WEBSOCKET HANDLER ===

async def handle_websocket(request: web.Request) -> web.WebSocketResponse:
    """Handle WebSocket connections."""
    return await request.app[RELAY_KEY].serve(request)


# === APP ===

def create_app(store: Optional[ConversationStore] = None,
               registry: Optional[ConnectionRegistry] = None,
               seed: bool = False) -> web.Application:
    """Create aiohttp application."""
    store = store if store is not None else ConversationStore()
    if seed:
        store.seed_sample_users()

    app = web.Application(middlewares=[error_middleware])
    app[RELAY_KEY] = RelayServer(store, registry)

    app.router.add_get("/", handle_status)
    app.router.add_get("/status", handle_status)
    app.router.add_get("/ws", handle_websocket)
    app.router.add_post("/api/conversations", handle_create_conversation)
    app.router.add_get("/api/conversations/{conversation_id}/messages",
                       handle_conversation_messages)
    app.router.add_get("/api/users/{user_id}", handle_user)
    app.router.add_get("/api/users/{user_id}/conversations", handle_user_conversations)

    return app


def main(host: Optional[str] = None, port: Optional[int] = None, seed: Optional[bool] = None):
    """Run the relay server."""
    conf = settings.get_settings()
    settings.setup_logging(settings.get_log_level(conf))

    host = host or settings.get_host(conf)
    port = port or settings.get_port(conf)
    seed = settings.is_seed_enabled(conf) if seed is None else seed

    app = create_app(seed=seed)
    log.info("Starting relay server on %s:%d", host, port)
    web.run_app(app, host=host, port=port)
