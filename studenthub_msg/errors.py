"""Error taxonomy shared by the store, the relay and the REST layer."""


class MessagingError(Exception):
    """Base class for messaging failures."""
    code = "messaging_error"
    status = 400


class NotFound(MessagingError):
    """Referenced conversation or user does not exist."""
    code = "not_found"
    status = 404


class InvalidPayload(MessagingError):
    """Envelope or request body is malformed."""
    code = "invalid_payload"
    status = 400


class InvalidSender(MessagingError):
    """Sender is not allowed to post into the conversation."""
    code = "invalid_sender"
    status = 400
