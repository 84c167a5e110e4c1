"""
MessageStore: the narrow interface the chat core needs from a backing store.

Implementations:
  FirestoreMessageStore  Cloud Firestore (vibely.services.firestore_store)
  InMemoryMessageStore   process-local dicts (vibely.services.memory_store)

subscribe() is synchronous and hands every change to ``on_snapshot`` as the
full ordered message list, never a diff. Callbacks may arrive on any thread;
the caller marshals them onto its own loop.
"""

from abc import ABC, abstractmethod
from typing import Callable, Iterable, List, Optional
import threading

from vibely.models.chat import Conversation, Message, MessageStatus

SnapshotCallback = Callable[[List[Message]], None]
ErrorCallback = Callable[[Exception], None]


def order_messages(messages: Iterable[Message]) -> List[Message]:
    """Ascending send timestamp, ties broken by message id."""
    return sorted(messages, key=lambda m: m.sort_key())


class Subscription:
    """Cancellable handle returned by MessageStore.subscribe()."""

    def __init__(self, cancel: Callable[[], None]):
        self._cancel = cancel
        self._lock = threading.Lock()
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        with self._lock:
            if not self._active:
                return
            self._active = False
        self._cancel()


class MessageStore(ABC):

    @abstractmethod
    def subscribe(
        self,
        conversation_id: str,
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
        order_field: str = "timestamp",
    ) -> Subscription:
        ...

    @abstractmethod
    async def append_message(self, conversation_id: str, message: Message) -> None:
        """Persist ``message`` and refresh the conversation's lastMessage summary."""
        ...

    @abstractmethod
    async def create_conversation(self, conversation: Conversation, first_message: Message) -> str:
        """Atomically persist the conversation together with its first message."""
        ...

    @abstractmethod
    async def update_message_status(
        self, conversation_id: str, message_id: str, status: MessageStatus
    ) -> None:
        ...

    @abstractmethod
    async def delete_conversation(self, conversation_id: str) -> None:
        """Delete the conversation and, best-effort, every message in it."""
        ...

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        ...

    @abstractmethod
    async def list_conversations(self, user_id: str) -> List[Conversation]:
        """Conversations containing ``user_id``, newest last message first."""
        ...

    @abstractmethod
    async def find_conversation(self, participants: List[str]) -> Optional[Conversation]:
        ...

    @abstractmethod
    async def purge_user(self, user_id: str) -> int:
        """
        Account deletion cascade: delete every message ``user_id`` sent.
        Conversations left without messages are deleted too.
        Returns the number of messages deleted.
        """
        ...
