"""
Real-time messaging for Student Hub Jabalpur.

Contents
--------
- store
    In-memory users, conversations (one per pair of users) and messages.
- registry
    Online user id -> live relay connection.
- protocol
    Typed relay envelopes and their JSON encoding.
- relay
    aiohttp application: the ``/ws`` relay and the conversation REST endpoints.
- client
    Reconnecting relay client with an outbound queue and heartbeat.
- settings
    YAML/environment configuration and logging setup.
"""

__version__ = "0.1.0"
