"""
ConversationSession: one live subscription and every write for one conversation.

States: DETACHED (no conversation id yet) → LISTENING → CLOSED.
There is no way back from LISTENING to DETACHED: once the conversation has an
id it keeps it for the life of the session. When the listener fails the
session stays LISTENING with ``error`` set and no subscription; calling
``open()`` again resumes it.

All session state is mutated on the loop that opened the session. Store
callbacks from other threads are handed over with call_soon_threadsafe.
"""

from typing import Callable, Dict, List, Optional
from datetime import timedelta
from enum import Enum
import asyncio, logging

from vibely.models.chat import Conversation, Message, MessageKind, utc_now
from vibely.services.message_store import MessageStore, Subscription
from vibely.services.reconciler import StatusReconciler
from vibely.utils.errors import (
    ChatError,
    InvalidInput,
    NotAuthenticated,
    SessionClosed,
    SubscriptionFailure,
)

logger = logging.getLogger(__name__)

MessagesListener = Callable[[List[Message], List[Message]], None]
ErrorListener = Callable[[ChatError], None]


class SessionState(str, Enum):
    detached = "detached"
    listening = "listening"
    closed = "closed"


class ConversationSession:

    def __init__(self, store: MessageStore, viewer_id: Optional[str], peer_id: Optional[str] = None,
                 avatars: Optional[Dict[str, Optional[str]]] = None,
                 loop: Optional[asyncio.AbstractEventLoop] = None):
        self.store = store
        self.viewer_id = viewer_id
        self.peer_id = peer_id
        self.avatars = avatars or {}

        self.state = SessionState.detached
        self.conversation_id: Optional[str] = None
        # Client-local placeholder until the first send persists it
        self.pending_conversation: Optional[Conversation] = None
        self.messages: List[Message] = []
        self.draft: str = ""
        self.foreground = False
        self.error: Optional[ChatError] = None

        self._loop = loop
        self._subscription: Optional[Subscription] = None
        self._reconciler: Optional[StatusReconciler] = None
        self._generation = 0
        self._last_timestamp = None
        self._create_lock = asyncio.Lock()
        self._message_listeners: List[MessagesListener] = []
        self._error_listeners: List[ErrorListener] = []

    # ==================== Lifecycle ====================

    def open(self, conversation_id: Optional[str] = None) -> "ConversationSession":
        if self.state is SessionState.closed:
            raise SessionClosed("Session is closed")
        if self._loop is None:
            self._loop = asyncio.get_running_loop()

        if conversation_id is None:
            if self.conversation_id is not None:
                raise InvalidInput("Session already has a conversation")
            if not self.viewer_id or not self.peer_id:
                raise InvalidInput("A new conversation needs both the viewer and the peer")
            if self.peer_id == self.viewer_id:
                raise InvalidInput("You cannot start a conversation with yourself")
            self.pending_conversation = Conversation(
                participants=[self.viewer_id, self.peer_id], avatars=self.avatars
            )
            self.messages = []
            logger.info(f"Session detached: {self.viewer_id} -> {self.peer_id}")
            return self

        if self.conversation_id not in (None, conversation_id):
            raise InvalidInput("Session is bound to a different conversation")
        if self._subscription is not None and self._subscription.active:
            return self

        had_id = self.conversation_id is not None
        self.conversation_id = conversation_id
        try:
            self._listen(conversation_id)
        except SubscriptionFailure:
            if not had_id:
                self.conversation_id = None
                self.state = SessionState.detached
            raise
        self.pending_conversation = None
        return self

    def close(self) -> None:
        if self.state is SessionState.closed:
            return
        self.state = SessionState.closed
        self._generation += 1
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
        if self._reconciler is not None:
            self._reconciler.stop()
        self._message_listeners.clear()
        self._error_listeners.clear()
        logger.info(f"Session closed for conversation {self.conversation_id}")

    async def delete(self) -> None:
        """Delete the whole conversation (cascading to its messages) and close."""
        if self.state is SessionState.closed:
            raise SessionClosed("Session is closed")
        conversation_id = self.conversation_id
        if conversation_id is not None:
            await self.store.delete_conversation(conversation_id)
        self.close()

    def _listen(self, conversation_id: str) -> None:
        self._generation += 1
        generation = self._generation
        self.state = SessionState.listening
        self.error = None

        if self._reconciler is None and self.viewer_id:
            self._reconciler = StatusReconciler(self.store, conversation_id, self.viewer_id, loop=self._loop)

        self._subscription = self.store.subscribe(
            conversation_id,
            lambda messages: self._marshal(self._apply_snapshot, generation, messages),
            lambda exc: self._marshal(self._apply_error, generation, exc),
        )
        logger.info(f"Session listening to conversation {conversation_id} as {self.viewer_id}")

    def _marshal(self, fn, *args) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is self._loop:
            fn(*args)
        else:
            self._loop.call_soon_threadsafe(fn, *args)

    @property
    def needs_reopen(self) -> bool:
        """Listening in name only: the listener failed and was torn down."""
        return self.state is SessionState.listening and self._subscription is None

    # ==================== Sending ====================

    def set_draft(self, text: str) -> None:
        self.draft = text

    def _next_timestamp(self):
        now = utc_now()
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return now

    async def send(self, text: Optional[str] = None, kind: MessageKind = MessageKind.text) -> Message:
        """
        Send ``text`` (the current draft when omitted).

        The first send of a detached session creates the conversation together
        with the message and starts listening. The draft is cleared only on
        success, and only if it was not edited while the write was in flight.
        """
        if self.state is SessionState.closed:
            raise SessionClosed("Session is closed")
        if text is None:
            text = self.draft
        if not isinstance(text, str) or not text.strip():
            raise InvalidInput("Message text is empty")
        if not self.viewer_id:
            raise NotAuthenticated("No signed-in user")
        if self.conversation_id is None and self.pending_conversation is None:
            raise InvalidInput("Session is not open")

        message = Message(
            text=text,
            sender_id=self.viewer_id,
            timestamp=self._next_timestamp(),
            kind=kind,
        )

        if self.conversation_id is None:
            async with self._create_lock:
                if self.state is SessionState.closed:
                    raise SessionClosed("Session is closed")
                if self.conversation_id is None:
                    await self._send_first(message)
                    self._clear_draft(text)
                    return message

        await self.store.append_message(self.conversation_id, message)
        self._clear_draft(text)
        return message

    async def _send_first(self, message: Message) -> None:
        conversation_id = await self.store.create_conversation(self.pending_conversation, message)

        if self.state is SessionState.closed:
            logger.info(f"Conversation {conversation_id} created after its session closed")
            return

        self.conversation_id = conversation_id
        self.pending_conversation = None
        try:
            self._listen(conversation_id)
        except SubscriptionFailure as e:
            # The conversation exists; the caller reopens to get updates
            self.error = e
            self._notify_error(e)

    def _clear_draft(self, sent_text: str) -> None:
        if self.state is not SessionState.closed and self.draft == sent_text:
            self.draft = ""

    # ==================== Snapshots ====================

    def set_foreground(self, active: bool) -> None:
        self.foreground = active
        if active and self.state is SessionState.listening:
            self._reconcile()

    def _apply_snapshot(self, generation: int, incoming: List[Message]) -> None:
        if self.state is not SessionState.listening or generation != self._generation:
            return

        previous = {m.id: m for m in self.messages}
        merged = []
        advanced = []
        for message in incoming:
            seen_before = previous.get(message.id)
            if seen_before is not None:
                if seen_before.status.rank > message.status.rank:
                    # Stale snapshot; statuses never move backwards for this observer
                    message = message.with_status(seen_before.status)
                elif message.status.rank > seen_before.status.rank:
                    advanced.append(message)
            merged.append(message)

        self.messages = merged
        for listener in list(self._message_listeners):
            listener(list(merged), advanced)
        self._reconcile()

    def _apply_error(self, generation: int, exc: Exception) -> None:
        if self.state is not SessionState.listening or generation != self._generation:
            return

        error = exc if isinstance(exc, ChatError) else SubscriptionFailure(str(exc))
        logger.error(f"Listener for {self.conversation_id} failed: {error.detail}")
        self.error = error
        # Keep the last good message list; a new open() is needed to resume
        self._generation += 1
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
        self._notify_error(error)

    def _reconcile(self) -> None:
        if self._reconciler is not None:
            self._reconciler.reconcile(self.messages, foreground=self.foreground)

    async def settle(self) -> None:
        """Wait for outstanding status writes."""
        if self._reconciler is not None:
            await self._reconciler.drain()

    # ==================== Observers ====================

    def add_listener(self, on_messages: MessagesListener,
                     on_error: Optional[ErrorListener] = None) -> Callable[[], None]:
        """
        ``on_messages(messages, advanced)`` runs after every snapshot with the
        full ordered list and the messages whose status moved forward.
        Returns a callable that removes the listener.
        """
        self._message_listeners.append(on_messages)
        if on_error:
            self._error_listeners.append(on_error)

        def _remove():
            if on_messages in self._message_listeners:
                self._message_listeners.remove(on_messages)
            if on_error and on_error in self._error_listeners:
                self._error_listeners.remove(on_error)

        return _remove

    def _notify_error(self, error: ChatError) -> None:
        for listener in list(self._error_listeners):
            listener(error)
