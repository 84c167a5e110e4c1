"""Error taxonomy for the chat delivery core.

Routes translate these into HTTP / WebSocket error responses, see
``vibely.routes.error_handlers``.
"""


class ChatError(Exception):
    """Base class for every error raised by the chat core."""

    code = "chat_error"

    def __init__(self, detail: str = ""):
        super().__init__(detail)
        self.detail = detail or self.__class__.__name__


class InvalidInput(ChatError):
    """Caller-side precondition violation; never reaches the store."""

    code = "invalid_input"


class PersistenceFailure(ChatError):
    """A store write or read failed (network, permission, backend)."""

    code = "persistence_failure"


class SubscriptionFailure(ChatError):
    """The real-time listener errored; a new ``open()`` is required."""

    code = "subscription_failure"


class NotAuthenticated(ChatError):
    """No resolvable caller identity."""

    code = "not_authenticated"


class SessionClosed(ChatError):
    code = "session_closed"


class ConversationNotFound(ChatError):
    code = "conversation_not_found"
