"""
StatusReconciler: advances inbound messages sent → delivered → seen.

There is no acknowledgement protocol: receiving a snapshot is the delivery
ack, and a snapshot processed while the conversation is in the foreground is
the read receipt. Only the receiving side (sender_id != viewer_id) ever
writes a status.

Writes are fire-and-forget tasks on the owning loop. A write that is still
pending (or already succeeded but not yet reflected in a snapshot) is never
issued twice; a failed write is forgotten, so the next snapshot derives it
again.
"""

from typing import Dict, Iterable, List, Optional, Set, Tuple
import asyncio, logging

from vibely.models.chat import Message, MessageStatus
from vibely.services.message_store import MessageStore
from vibely.utils.errors import ChatError

logger = logging.getLogger(__name__)

Transition = Tuple[str, MessageStatus]


def next_status(message: Message, viewer_id: str, foreground: bool) -> Optional[MessageStatus]:
    """The status ``viewer_id`` should write for ``message``, if any."""
    if message.sender_id == viewer_id:
        return None
    if message.status is MessageStatus.sent:
        return MessageStatus.delivered
    if message.status is MessageStatus.delivered and foreground:
        return MessageStatus.seen
    return None


class StatusReconciler:

    def __init__(self, store: MessageStore, conversation_id: str, viewer_id: str,
                 loop: Optional[asyncio.AbstractEventLoop] = None):
        self.store = store
        self.conversation_id = conversation_id
        self.viewer_id = viewer_id
        self._loop = loop
        self._issued: Dict[str, MessageStatus] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._stopped = False

    def plan(self, messages: Iterable[Message], foreground: bool) -> List[Transition]:
        transitions = []
        for message in messages:
            target = next_status(message, self.viewer_id, foreground)
            if target is None or self._issued.get(message.id) is target:
                continue
            transitions.append((message.id, target))
        return transitions

    def reconcile(self, messages: List[Message], foreground: bool) -> List[Transition]:
        """Run one pass over a snapshot. Returns the writes issued by this pass."""
        if self._stopped:
            return []

        self._forget_settled(messages)
        transitions = self.plan(messages, foreground)

        loop = self._loop or asyncio.get_running_loop()
        for message_id, status in transitions:
            self._issued[message_id] = status
            task = loop.create_task(self._write(message_id, status))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        if transitions:
            logger.debug(f"[{self.conversation_id}] {self.viewer_id} issued {len(transitions)} status writes")
        return transitions

    def _forget_settled(self, messages: List[Message]) -> None:
        current = {m.id: m.status for m in messages}
        for message_id, status in list(self._issued.items()):
            observed = current.get(message_id)
            if observed is None or observed.rank >= status.rank:
                del self._issued[message_id]

    async def _write(self, message_id: str, status: MessageStatus) -> None:
        try:
            await self.store.update_message_status(self.conversation_id, message_id, status)
        except ChatError as e:
            logger.warning(f"Status write {message_id} -> {status.value} failed: {e.detail}")
            self._release(message_id, status)
        except Exception as e:
            logger.error(f"Status write {message_id} -> {status.value} failed: {str(e)}", exc_info=True)
            self._release(message_id, status)

    def _release(self, message_id: str, status: MessageStatus) -> None:
        # Still un-advanced server side, the next snapshot retries it
        if self._issued.get(message_id) is status:
            del self._issued[message_id]

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait until no status write is in flight, including ones issued meanwhile."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def stop(self) -> None:
        """No new writes after this; in-flight ones are left to finish."""
        self._stopped = True
