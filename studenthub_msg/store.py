"""
In-memory conversation store.

Holds the user directory, conversations (one per unordered pair of users)
and the messages of each conversation. Every mutation goes through a single
lock so the store can be shared with code running outside the relay's loop.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from .errors import InvalidPayload, InvalidSender, NotFound

log = logging.getLogger(__name__)

USER_TYPES = ("student", "room_owner", "tiffin_provider")
MESSAGE_TYPES = ("text", "image", "file")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(ts: datetime) -> str:
    return ts.isoformat().replace("+00:00", "Z")


def new_id() -> str:
    return str(uuid.uuid4())


# === DATA STRUCTURES ===

@dataclass
class User:
    """Directory entry for a person who can take part in conversations."""
    id: str
    name: str
    email: str
    user_type: str = "student"
    college: Optional[str] = None
    phone_number: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "userType": self.user_type,
            "college": self.college,
            "phoneNumber": self.phone_number,
            "createdAt": isoformat(self.created_at),
        }


@dataclass
class Conversation:
    """Thread between exactly two users."""
    id: str
    user1_id: str
    user2_id: str
    created_at: datetime = field(default_factory=utcnow)
    last_message_at: datetime = field(default_factory=utcnow)

    @property
    def participants(self) -> tuple:
        return (self.user1_id, self.user2_id)

    def has_participant(self, user_id: str) -> bool:
        return user_id in self.participants

    def other_participant(self, user_id: str) -> str:
        """Return whichever participant is not `user_id`."""
        if user_id == self.user1_id:
            return self.user2_id
        if user_id == self.user2_id:
            return self.user1_id
        raise InvalidSender(f"{user_id} is not part of conversation {self.id}")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user1Id": self.user1_id,
            "user2Id": self.user2_id,
            "lastMessageAt": isoformat(self.last_message_at),
            "createdAt": isoformat(self.created_at),
        }


@dataclass(frozen=True)
class Message:
    """A single immutable message in a conversation."""
    id: str
    conversation_id: str
    sender_id: str
    content: str
    message_type: str = "text"
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "conversationId": self.conversation_id,
            "senderId": self.sender_id,
            "content": self.content,
            "messageType": self.message_type,
            "createdAt": isoformat(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        """Rebuild a message from its wire form."""
        try:
            created = datetime.fromisoformat(data["createdAt"].replace("Z", "+00:00"))
            return cls(
                id=data["id"],
                conversation_id=data["conversationId"],
                sender_id=data["senderId"],
                content=data["content"],
                message_type=data.get("messageType") or "text",
                created_at=created,
            )
        except (KeyError, TypeError, AttributeError, ValueError) as exc:
            raise InvalidPayload(f"Malformed message: {exc}") from exc


def pair_key(user_a: str, user_b: str) -> tuple:
    """Normalized key for an unordered pair of users."""
    return (min(user_a, user_b), max(user_a, user_b))


# === STORE ===

class ConversationStore:
    """Conversations, messages and users kept in process memory."""

    def __init__(self):
        self._lock = threading.RLock()
        self._users: dict[str, User] = {}
        self._conversations: dict[str, Conversation] = {}
        self._by_pair: dict[tuple, str] = {}
        self._messages: dict[str, list[Message]] = {}

    # --- USERS ---

    def add_user(self, name: str, email: str, user_type: str = "student",
                 college: Optional[str] = None, phone_number: Optional[str] = None,
                 user_id: Optional[str] = None) -> User:
        if user_type not in USER_TYPES:
            raise InvalidPayload(f"Unknown user type: {user_type}")
        if not name or not email:
            raise InvalidPayload("Name and email are required")

        with self._lock:
            if self.get_user_by_email(email):
                raise InvalidPayload(f"Email already registered: {email}")
            user = User(
                id=user_id or new_id(),
                name=name,
                email=email,
                user_type=user_type,
                college=college,
                phone_number=phone_number,
            )
            self._users[user.id] = user
            return user

    def get_user(self, user_id: str) -> User:
        user = self._users.get(user_id)
        if not user:
            raise NotFound(f"User not found: {user_id}")
        return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        return next((u for u in self._users.values() if u.email == email), None)

    def seed_sample_users(self) -> list[User]:
        """Load the demo accounts used by the local development setup."""
        samples = [
            ("Rahul Sharma", "rahul@example.com", "student", "Jabalpur Engineering College"),
            ("Priya Patel", "priya@example.com", "room_owner", None),
            ("Annapurna Tiffin Service", "annapurna@example.com", "tiffin_provider", None),
        ]
        seeded = []
        for name, email, user_type, college in samples:
            existing = self.get_user_by_email(email)
            if existing:
                seeded.append(existing)
                continue
            seeded.append(self.add_user(name, email, user_type, college=college))
        log.info("Seeded %d sample users", len(seeded))
        return seeded

    # --- CONVERSATIONS ---

    def get_conversation(self, conversation_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if not conversation:
            raise NotFound(f"Conversation not found: {conversation_id}")
        return conversation

    def find_or_create_conversation(self, user_a: str, user_b: str) -> Conversation:
        """Return the conversation for the pair, creating it on first use."""
        if not user_a or not user_b:
            raise InvalidPayload("Both participants are required")
        if user_a == user_b:
            raise InvalidPayload("A conversation needs two different users")

        key = pair_key(user_a, user_b)
        with self._lock:
            existing = self._by_pair.get(key)
            if existing:
                return self._conversations[existing]

            conversation = Conversation(id=new_id(), user1_id=user_a, user2_id=user_b)
            self._conversations[conversation.id] = conversation
            self._by_pair[key] = conversation.id
            self._messages[conversation.id] = []
            log.debug("Created conversation %s for %s/%s", conversation.id, user_a, user_b)
            return conversation

    def list_conversations(self, user_id: str) -> list[Conversation]:
        """Conversations of `user_id`, most recently active first."""
        with self._lock:
            found = [c for c in self._conversations.values() if c.has_participant(user_id)]
        return sorted(found, key=lambda c: c.last_message_at, reverse=True)

    # --- MESSAGES ---

    def append_message(self, conversation_id: str, sender_id: str, content: str,
                       message_type: str = "text") -> Message:
        if not isinstance(content, str) or not content.strip():
            raise InvalidPayload("Message content must be non-empty text")
        message_type = message_type or "text"
        if message_type not in MESSAGE_TYPES:
            raise InvalidPayload(f"Unknown message type: {message_type}")

        with self._lock:
            conversation = self.get_conversation(conversation_id)
            if not conversation.has_participant(sender_id):
                raise InvalidSender(
                    f"{sender_id} is not part of conversation {conversation_id}"
                )

            messages = self._messages[conversation_id]
            created = utcnow()
            # wall clock may step back; keep the thread ordered
            if messages and created < messages[-1].created_at:
                created = messages[-1].created_at

            message = Message(
                id=new_id(),
                conversation_id=conversation_id,
                sender_id=sender_id,
                content=content,
                message_type=message_type,
                created_at=created,
            )
            messages.append(message)
            conversation.last_message_at = created
            return message

    def list_messages(self, conversation_id: str) -> list[Message]:
        with self._lock:
            self.get_conversation(conversation_id)
            return list(self._messages[conversation_id])
