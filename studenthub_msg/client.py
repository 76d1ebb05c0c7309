"""
Relay client for Student Hub messaging.

Keeps one WebSocket connection to the relay for the signed-in user:
reconnects with exponential backoff after unexpected closes, queues
envelopes while offline, pings the relay periodically and hands inbound
events to the UI data layer through an EventBridge.

Usage:
    async with RelayClient(get_relay_url(), bridge) as client:
        client.connect("user-id")
        await client.wait_open(timeout=5)
        await client.send_message({"conversationId": cid, "senderId": "user-id",
                                   "content": "Is the room still available?"})
"""

import asyncio
import contextlib
import json
import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Union
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from .errors import InvalidPayload
from .protocol import (
    ErrorEnvelope, MessageSent, NewMessage, Ping, Pong, SendMessage,
    parse_inbound, parse_outbound,
)
from .settings import DEFAULT_PING_INTERVAL, ReconnectPolicy

log = logging.getLogger(__name__)

NORMAL_CLOSURE = 1000


class State(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"


def _ignore(*args):
    pass


@dataclass
class EventBridge:
    """Callbacks into the UI data layer."""
    invalidate: Callable = _ignore        # query key tuple
    message_received: Callable = _ignore  # Message
    message_sent: Callable = _ignore      # Message
    error: Callable = _ignore             # ErrorEnvelope
    status_changed: Callable = _ignore    # str


def conversations_key(user_id: str) -> tuple:
    return ("/api/users", user_id, "conversations")


def messages_key(conversation_id: str) -> tuple:
    return ("/api/conversations", conversation_id, "messages")


class RelayClient:
    """WebSocket client for relay server."""

    def __init__(self, url: str, bridge: Optional[EventBridge] = None,
                 policy: Optional[ReconnectPolicy] = None,
                 ping_interval: float = DEFAULT_PING_INTERVAL,
                 connect: Optional[Callable] = None,
                 sleep: Optional[Callable] = None):
        self.url = url
        self.bridge = bridge or EventBridge()
        self.policy = policy or ReconnectPolicy()
        self.ping_interval = ping_interval
        self._connect = connect or websockets.connect
        self._sleep = sleep or asyncio.sleep

        self.user_id: Optional[str] = None
        self.state = State.DISCONNECTED
        self.reconnect_attempts = 0
        self.gave_up = False
        self.queue: deque = deque()

        self._ws = None
        self._task: Optional[asyncio.Task] = None
        self._heartbeat: Optional[asyncio.Task] = None
        self._backing_off = False
        self._opened = asyncio.Event()

    async def __aenter__(self) -> "RelayClient":
        return self

    async def __aexit__(self, *exc_info):
        await self.disconnect()

    # --- PUBLIC API ---

    def connect(self, user_id: str):
        """Start connecting as `user_id`. Must be called from the event loop."""
        if self.state is State.OPEN:
            return
        running = self._task is not None and not self._task.done()
        if running and user_id == self.user_id and not self._backing_off:
            return
        if running:
            # a retry for another user, or a backoff wait, is replaced
            self._task.cancel()
            self._stop_heartbeat()

        self.user_id = user_id
        self.reconnect_attempts = 0
        self.gave_up = False
        self._backing_off = False
        self._task = asyncio.get_running_loop().create_task(self._run(user_id))

    async def send_message(self, envelope: Union[SendMessage, Ping, dict]) -> bool:
        """Send now if connected, otherwise queue. Returns True if sent."""
        payload = self._payload(envelope)

        if self.state is State.OPEN and self._ws is not None:
            try:
                await self._ws.send(json.dumps(payload))
                return True
            except ConnectionClosed:
                log.warning("Relay closed while sending, message queued")

        self.queue.append(payload)
        log.debug("Relay not connected, message queued (%d pending)", len(self.queue))
        return False

    async def disconnect(self):
        """Close the connection on purpose; no reconnect follows."""
        self.user_id = None
        self._stop_heartbeat()
        self.queue.clear()

        ws = self._ws
        if ws is not None:
            await ws.close(NORMAL_CLOSURE, "User disconnected")

        task, self._task = self._task, None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        self._ws = None
        self._opened.clear()
        self.state = State.DISCONNECTED
        self._set_status("disconnected")

    async def wait_open(self, timeout: Optional[float] = None):
        await asyncio.wait_for(self._opened.wait(), timeout)

    async def wait_stopped(self):
        """Wait until the connection loop ends (normal close, give-up or disconnect)."""
        if self._task:
            await self._task

    def is_connected(self) -> bool:
        return self.state is State.OPEN

    # --- CONNECTION LOOP ---

    def _url_for(self, user_id: str) -> str:
        sep = "&" if "?" in self.url else "?"
        return f"{self.url}{sep}{urlencode({'userId': user_id})}"

    async def _run(self, user_id: str):
        while self.user_id == user_id:
            code = await self._session(user_id)
            if self.user_id != user_id or code == NORMAL_CLOSURE:
                break

            if self.reconnect_attempts >= self.policy.max_attempts:
                log.error("Max reconnection attempts reached")
                self.gave_up = True
                self._set_status("gave up")
                break

            self.reconnect_attempts += 1
            delay = self.policy.delay_for(self.reconnect_attempts)
            log.info("Reconnecting in %.1fs (attempt %d)", delay, self.reconnect_attempts)
            self._set_status(f"reconnecting in {delay:g}s")
            self._backing_off = True
            try:
                await self._sleep(delay)
            finally:
                self._backing_off = False

        self.state = State.DISCONNECTED

    async def _session(self, user_id: str) -> Optional[int]:
        """One connection lifetime. Returns the close code, None if never opened."""
        self.state = State.CONNECTING
        self._set_status("connecting")
        try:
            ws = await self._connect(self._url_for(user_id))
        except (OSError, InvalidHandshake, asyncio.TimeoutError) as exc:
            log.warning("Failed to connect to %s: %s", self.url, exc)
            self.state = State.DISCONNECTED
            return None

        self._ws = ws
        try:
            self.reconnect_attempts = 0
            self._start_heartbeat()
            await self._flush_queue()

            self.state = State.OPEN
            self._opened.set()
            self._set_status("connected")
            log.info("Connected to relay as %s", user_id)

            async for raw in ws:
                self._dispatch(raw)
        except ConnectionClosed:
            pass
        except asyncio.CancelledError:
            await ws.close(NORMAL_CLOSURE, "Connection replaced")
            raise
        finally:
            if self._ws is ws:
                self._stop_heartbeat()
                self._ws = None
                self._opened.clear()
                self.state = State.DISCONNECTED

        log.info("Relay connection closed (code %s)", ws.close_code)
        if self.user_id is not None:
            self._set_status("disconnected")
        return ws.close_code

    async def _flush_queue(self):
        # sends issued during the flush land at the tail and go out in turn
        while self.queue and self._ws is not None:
            await self._ws.send(json.dumps(self.queue[0]))
            self.queue.popleft()

    # --- HEARTBEAT ---

    def _start_heartbeat(self):
        self._stop_heartbeat()
        self._heartbeat = asyncio.get_running_loop().create_task(self._ping_loop())

    def _stop_heartbeat(self):
        if self._heartbeat:
            self._heartbeat.cancel()
            self._heartbeat = None

    async def _ping_loop(self):
        ping = json.dumps(Ping().to_dict())
        while True:
            await asyncio.sleep(self.ping_interval)
            ws = self._ws
            if ws is None or self.state is not State.OPEN:
                continue
            try:
                await ws.send(ping)
            except ConnectionClosed:
                return

    # --- INBOUND ---

    def _dispatch(self, raw):
        try:
            envelope = parse_outbound(raw)
        except InvalidPayload as exc:
            log.warning("Ignoring relay frame: %s", exc)
            return

        try:
            if isinstance(envelope, NewMessage):
                message = envelope.message
                self.bridge.invalidate(conversations_key(self.user_id))
                self.bridge.invalidate(messages_key(message.conversation_id))
                self.bridge.message_received(message)
            elif isinstance(envelope, MessageSent):
                self.bridge.invalidate(messages_key(envelope.message.conversation_id))
                self.bridge.message_sent(envelope.message)
            elif isinstance(envelope, Pong):
                pass
            elif isinstance(envelope, ErrorEnvelope):
                log.warning("Relay error %s: %s", envelope.code, envelope.message)
                self.bridge.error(envelope)
        except Exception:
            log.exception("Relay event handler failed for %s", envelope.type)

    # --- HELPERS ---

    @staticmethod
    def _payload(envelope) -> dict:
        if isinstance(envelope, (SendMessage, Ping)):
            return envelope.to_dict()
        if isinstance(envelope, dict):
            if "conversationId" in envelope and "type" not in envelope:
                return SendMessage.from_dict(envelope).to_dict()
            if not envelope.get("type"):
                raise InvalidPayload("Envelope needs a 'type'")
            return parse_inbound(envelope).to_dict()
        raise InvalidPayload(f"Cannot send {type(envelope).__name__}")

    def _set_status(self, status: str):
        try:
            self.bridge.status_changed(status)
        except Exception:
            log.exception("Status handler failed")
