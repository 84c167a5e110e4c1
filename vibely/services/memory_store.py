"""
InMemoryMessageStore: dict-backed MessageStore.

Snapshots are delivered synchronously, on the writer's thread, after every
change. Used with STORE_BACKEND=memory and throughout the tests, which can
make individual operations fail with ``fail_on()``.
"""

from typing import Dict, List, Optional, Tuple
import threading, uuid, logging

from vibely.models.chat import Conversation, LastMessage, Message, MessageStatus
from vibely.services.message_store import (
    ErrorCallback,
    MessageStore,
    SnapshotCallback,
    Subscription,
    order_messages,
)
from vibely.utils.errors import PersistenceFailure

logger = logging.getLogger(__name__)


class InMemoryMessageStore(MessageStore):

    def __init__(self):
        self._lock = threading.RLock()
        self._conversations: Dict[str, Conversation] = {}
        self._messages: Dict[str, Dict[str, Message]] = {}
        self._subscribers: Dict[str, List[Tuple[Subscription, SnapshotCallback]]] = {}
        self._failures: Dict[str, int] = {}
        # (operation, args) for every call, in order
        self.calls: List[Tuple[str, tuple]] = []

    # ------------------------------------------------------------------
    # Test hooks
    # ------------------------------------------------------------------

    def fail_on(self, operation: str, times: int = 1) -> None:
        """Make the next ``times`` calls of ``operation`` raise PersistenceFailure."""
        with self._lock:
            self._failures[operation] = times

    def calls_of(self, operation: str) -> List[tuple]:
        return [args for op, args in self.calls if op == operation]

    def subscriber_count(self, conversation_id: str) -> int:
        with self._lock:
            return sum(1 for sub, _ in self._subscribers.get(conversation_id, []) if sub.active)

    def messages_of(self, conversation_id: str) -> List[Message]:
        with self._lock:
            return order_messages(self._messages.get(conversation_id, {}).values())

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _record(self, operation: str, *args) -> None:
        with self._lock:
            self.calls.append((operation, args))
            remaining = self._failures.get(operation, 0)
            if remaining:
                self._failures[operation] = remaining - 1
                raise PersistenceFailure(f"{operation} failed (injected)")

    def _publish(self, conversation_id: str) -> None:
        with self._lock:
            snapshot = order_messages(self._messages.get(conversation_id, {}).values())
            targets = [cb for sub, cb in self._subscribers.get(conversation_id, []) if sub.active]
        for callback in targets:
            callback(list(snapshot))

    # ------------------------------------------------------------------
    # MessageStore
    # ------------------------------------------------------------------

    def subscribe(
        self,
        conversation_id: str,
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
        order_field: str = "timestamp",
    ) -> Subscription:
        self._record("subscribe", conversation_id)

        def _remove():
            with self._lock:
                entries = self._subscribers.get(conversation_id, [])
                self._subscribers[conversation_id] = [e for e in entries if e[0] is not subscription]

        subscription = Subscription(_remove)
        with self._lock:
            self._subscribers.setdefault(conversation_id, []).append((subscription, on_snapshot))

        # Listeners fire once with the current state as soon as they attach
        self._publish(conversation_id)
        return subscription

    async def append_message(self, conversation_id: str, message: Message) -> None:
        self._record("append_message", conversation_id, message)
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                raise PersistenceFailure(f"Conversation {conversation_id} not found")
            self._messages[conversation_id][message.id] = message
            conversation.last_message = LastMessage.from_message(message)
        self._publish(conversation_id)

    async def create_conversation(self, conversation: Conversation, first_message: Message) -> str:
        self._record("create_conversation", conversation, first_message)
        conversation_id = uuid.uuid4().hex[:20]
        stored = conversation.model_copy(
            update={"id": conversation_id, "last_message": LastMessage.from_message(first_message)}
        )
        with self._lock:
            self._conversations[conversation_id] = stored
            self._messages[conversation_id] = {first_message.id: first_message}
        logger.info(f"Created conversation {conversation_id}")
        return conversation_id

    async def update_message_status(
        self, conversation_id: str, message_id: str, status: MessageStatus
    ) -> None:
        self._record("update_message_status", conversation_id, message_id, status)
        with self._lock:
            message = self._messages.get(conversation_id, {}).get(message_id)
            if message is None:
                raise PersistenceFailure(f"Message {message_id} not found")
            if not message.status.advances_to(status):
                # Repeated or stale receipt, nothing changes
                return
            self._messages[conversation_id][message_id] = message.with_status(status)
        self._publish(conversation_id)

    async def delete_conversation(self, conversation_id: str) -> None:
        self._record("delete_conversation", conversation_id)
        with self._lock:
            self._conversations.pop(conversation_id, None)
            self._messages.pop(conversation_id, None)
        self._publish(conversation_id)

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        self._record("get_conversation", conversation_id)
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            return conversation.model_copy(deep=True) if conversation else None

    async def list_conversations(self, user_id: str) -> List[Conversation]:
        self._record("list_conversations", user_id)
        with self._lock:
            mine = [c.model_copy(deep=True) for c in self._conversations.values() if user_id in c.participants]
        mine.sort(key=lambda c: c.last_message.timestamp, reverse=True)
        return mine

    async def find_conversation(self, participants: List[str]) -> Optional[Conversation]:
        self._record("find_conversation", tuple(participants))
        wanted = set(participants)
        with self._lock:
            for conversation in self._conversations.values():
                if set(conversation.participants) == wanted:
                    return conversation.model_copy(deep=True)
        return None

    async def purge_user(self, user_id: str) -> int:
        self._record("purge_user", user_id)
        deleted = 0
        touched = []
        with self._lock:
            for conversation_id, conversation in list(self._conversations.items()):
                if user_id not in conversation.participants:
                    continue
                messages = self._messages[conversation_id]
                for message_id in [mid for mid, m in messages.items() if m.sender_id == user_id]:
                    del messages[message_id]
                    deleted += 1
                if not messages:
                    del self._conversations[conversation_id]
                    del self._messages[conversation_id]
                else:
                    newest = order_messages(messages.values())[-1]
                    conversation.last_message = LastMessage.from_message(newest)
                touched.append(conversation_id)
        for conversation_id in touched:
            self._publish(conversation_id)
        return deleted
