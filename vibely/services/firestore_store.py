from google.cloud import firestore
from google.cloud.firestore import FieldFilter
from google.cloud.firestore_v1.field_path import FieldPath
from google.api_core import exceptions as google_exceptions
from pydantic import ValidationError
from typing import List, Optional
import asyncio, functools, logging

from vibely.models.chat import Conversation, LastMessage, Message, MessageStatus
from vibely.services.message_store import (
    ErrorCallback,
    MessageStore,
    SnapshotCallback,
    Subscription,
    order_messages,
)
from vibely.utils.errors import PersistenceFailure, SubscriptionFailure

logger = logging.getLogger(__name__)


class FirestoreMessageStore(MessageStore):
    """
    chats/{conversationId}                 participants, avatars, lastMessage, createdAt
    chats/{conversationId}/messages/{id}   text, senderId, timestamp, kind, status
    """

    def __init__(self, db, chats_collection: str = "chats", messages_subcollection: str = "messages"):
        self.db = db
        self.chats = db.collection(chats_collection)
        self.messages_subcollection = messages_subcollection

    def _chat_ref(self, conversation_id: str):
        return self.chats.document(conversation_id)

    def _messages_ref(self, conversation_id: str):
        return self._chat_ref(conversation_id).collection(self.messages_subcollection)

    async def _run(self, action: str, fn, *args, **kwargs):
        # The Firestore client is blocking; keep it off the event loop
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))
        except google_exceptions.GoogleAPIError as e:
            logger.error(f"Firestore {action} failed: {str(e)}", exc_info=True)
            raise PersistenceFailure(f"Error during {action}: {str(e)}") from e

    # ==================== Listener ====================

    def subscribe(
        self,
        conversation_id: str,
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
        order_field: str = "timestamp",
    ) -> Subscription:
        query = self._messages_ref(conversation_id) \
            .order_by(order_field) \
            .order_by(FieldPath.document_id())

        def _handle(docs, changes, read_time):
            try:
                messages = [Message.from_firestore(doc.id, doc.to_dict()) for doc in docs]
            except (KeyError, ValidationError) as e:
                logger.error(f"Undecodable snapshot for conversation {conversation_id}: {str(e)}")
                if on_error:
                    on_error(SubscriptionFailure(f"Malformed message in {conversation_id}: {str(e)}"))
                return
            on_snapshot(order_messages(messages))

        try:
            watch = query.on_snapshot(_handle)
        except google_exceptions.GoogleAPIError as e:
            logger.error(f"Could not attach listener to {conversation_id}: {str(e)}")
            raise SubscriptionFailure(f"Error subscribing to {conversation_id}: {str(e)}") from e

        logger.info(f"Listening to conversation {conversation_id}")
        return Subscription(watch.unsubscribe)

    # ==================== Writes ====================

    async def append_message(self, conversation_id: str, message: Message) -> None:
        chat_ref = self._chat_ref(conversation_id)
        batch = self.db.batch()
        batch.set(self._messages_ref(conversation_id).document(message.id), message.to_firestore())
        # update() fails the whole batch when the chat document is gone
        batch.update(chat_ref, {"lastMessage": LastMessage.from_message(message).to_firestore()})
        await self._run("append message", batch.commit)

    async def create_conversation(self, conversation: Conversation, first_message: Message) -> str:
        chat_ref = self.chats.document()
        data = conversation.to_firestore()
        data["lastMessage"] = LastMessage.from_message(first_message).to_firestore()
        data["createdAt"] = firestore.SERVER_TIMESTAMP

        batch = self.db.batch()
        batch.set(chat_ref, data)
        batch.set(chat_ref.collection(self.messages_subcollection).document(first_message.id),
                  first_message.to_firestore())
        await self._run("create conversation", batch.commit)

        logger.info(f"Created conversation {chat_ref.id}")
        return chat_ref.id

    async def update_message_status(
        self, conversation_id: str, message_id: str, status: MessageStatus
    ) -> None:
        message_ref = self._messages_ref(conversation_id).document(message_id)
        await self._run("status update", message_ref.update, {"status": status.value})

    async def delete_conversation(self, conversation_id: str) -> None:
        await self._run("delete conversation", self._delete_conversation_sync, conversation_id)

    def _delete_conversation_sync(self, conversation_id: str) -> None:
        failed = []
        for doc in self._messages_ref(conversation_id).stream():
            try:
                doc.reference.delete()
            except google_exceptions.GoogleAPIError as e:
                failed.append(doc.id)
                logger.warning(f"Could not delete message {doc.id}: {str(e)}")

        if failed:
            logger.warning(f"Conversation {conversation_id}: {len(failed)} messages left behind")

        self._chat_ref(conversation_id).delete()
        logger.info(f"Deleted conversation {conversation_id}")

    # ==================== Reads ====================

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        doc = await self._run("fetch conversation", self._chat_ref(conversation_id).get)
        if not doc.exists:
            return None
        return Conversation.from_firestore(doc.id, doc.to_dict())

    async def list_conversations(self, user_id: str) -> List[Conversation]:
        query = self.chats \
            .where(filter=FieldFilter("participants", "array_contains", user_id)) \
            .order_by("lastMessage.timestamp", direction=firestore.Query.DESCENDING)
        docs = await self._run("list conversations", lambda: list(query.stream()))
        return [Conversation.from_firestore(doc.id, doc.to_dict()) for doc in docs]

    async def find_conversation(self, participants: List[str]) -> Optional[Conversation]:
        query = self.chats.where(filter=FieldFilter("participants", "array_contains", participants[0]))
        docs = await self._run("find conversation", lambda: list(query.stream()))

        wanted = set(participants)
        for doc in docs:
            data = doc.to_dict()
            if set(data.get("participants", [])) == wanted:
                return Conversation.from_firestore(doc.id, data)
        return None

    async def purge_user(self, user_id: str) -> int:
        return await self._run("purge user", self._purge_user_sync, user_id)

    def _purge_user_sync(self, user_id: str) -> int:
        deleted = 0
        chats = self.chats.where(filter=FieldFilter("participants", "array_contains", user_id)).stream()

        for chat_doc in chats:
            messages_ref = chat_doc.reference.collection(self.messages_subcollection)

            for message_doc in messages_ref.where(filter=FieldFilter("senderId", "==", user_id)).stream():
                message_doc.reference.delete()
                deleted += 1

            newest = list(messages_ref.order_by("timestamp", direction=firestore.Query.DESCENDING)
                          .limit(1).stream())
            if not newest:
                chat_doc.reference.delete()
                logger.info(f"Deleted emptied conversation {chat_doc.id}")
                continue

            message = Message.from_firestore(newest[0].id, newest[0].to_dict())
            chat_doc.reference.update({"lastMessage": LastMessage.from_message(message).to_firestore()})

        logger.info(f"Purged {deleted} messages sent by {user_id}")
        return deleted
