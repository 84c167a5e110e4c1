# vibely/routes/chat_socket_route.py
#
# One ConversationSession per WebSocket. Everything the session emits goes
# through a single queue so frames reach the client in the order produced.

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from typing import List, Optional
import asyncio, json, logging

from vibely.models.chat import Message
from vibely.routes.error_handlers import error_frame
from vibely.routes.firebase_auth import get_socket_user
from vibely.services.chat_session import ConversationSession
from vibely.services.message_store import MessageStore
from vibely.services.store_factory import get_message_store
from vibely.utils.errors import ChatError, ConversationNotFound, InvalidInput, NotAuthenticated

logger = logging.getLogger(__name__)

router = APIRouter()


def snapshot_frame(session: ConversationSession, messages: List[Message], advanced: List[Message]) -> dict:
    return {
        "type": "snapshot",
        "conversation_id": session.conversation_id,
        "messages": [m.to_wire() for m in messages],
        "advanced": [m.id for m in advanced],
    }


def state_frame(session: ConversationSession) -> dict:
    return {
        "type": "state",
        "state": session.state.value,
        "conversation_id": session.conversation_id,
        "needs_reopen": session.needs_reopen,
    }


async def _pump(websocket: WebSocket, outbox: asyncio.Queue):
    while True:
        frame = await outbox.get()
        try:
            await websocket.send_json(frame)
        finally:
            outbox.task_done()


async def _handle_frame(session: ConversationSession, frame: dict, outbox: asyncio.Queue) -> bool:
    """Apply one client frame. Returns False when the socket should close."""
    kind = frame.get("type")

    if kind in ("draft", "send"):
        text = frame.get("text")
        if text is not None and not isinstance(text, str):
            raise InvalidInput("Frame text must be a string")

    if kind == "draft":
        session.set_draft(text or "")

    elif kind == "send":
        was_detached = session.conversation_id is None
        message = await session.send(text)
        outbox.put_nowait({"type": "sent", "message_id": message.id, "draft": session.draft})
        if was_detached and session.conversation_id is not None:
            outbox.put_nowait(state_frame(session))

    elif kind == "foreground":
        session.set_foreground(bool(frame.get("active")))

    elif kind == "reopen":
        if session.conversation_id is None:
            raise InvalidInput("Nothing to reopen before the first message")
        session.open(session.conversation_id)
        outbox.put_nowait(state_frame(session))

    elif kind == "delete":
        await session.delete()
        outbox.put_nowait(state_frame(session))
        return False

    else:
        raise InvalidInput(f"Unknown frame type: {kind!r}")

    return True


@router.websocket("/ws")
async def conversation_socket(
    websocket: WebSocket,
    conversation_id: Optional[str] = Query(None),
    peer_id: Optional[str] = Query(None),
    user: Optional[dict] = Depends(get_socket_user),
    store: MessageStore = Depends(get_message_store),
):
    await websocket.accept()

    if not user:
        await websocket.send_json(error_frame(NotAuthenticated("Invalid authentication credentials")))
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    user_id = user['uid']

    if conversation_id:
        conversation = await store.get_conversation(conversation_id)
        if conversation is None:
            await websocket.send_json(error_frame(ConversationNotFound("Conversation not found")))
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return
        if user_id not in conversation.participants:
            await websocket.send_json(error_frame(NotAuthenticated("You are not a participant in this conversation")))
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

    elif peer_id and peer_id != user_id:
        # Reuse the chat these two already share
        existing = await store.find_conversation([user_id, peer_id])
        if existing is not None:
            conversation_id = existing.id

    outbox: asyncio.Queue = asyncio.Queue()
    session = ConversationSession(store, user_id, peer_id=peer_id)

    def on_error(error: ChatError):
        outbox.put_nowait(error_frame(error))
        # Client sends {"type": "reopen"} to resume
        outbox.put_nowait(state_frame(session))

    session.add_listener(
        lambda messages, advanced: outbox.put_nowait(snapshot_frame(session, messages, advanced)),
        on_error,
    )

    try:
        session.open(conversation_id)
    except ChatError as e:
        await websocket.send_json(error_frame(e))
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        session.close()
        return

    await websocket.send_json(state_frame(session))
    pump = asyncio.create_task(_pump(websocket, outbox))

    try:
        keep_open = True
        while keep_open:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
                if not isinstance(frame, dict):
                    raise ValueError("frame must be a JSON object")
                keep_open = await _handle_frame(session, frame, outbox)
            except ValueError as e:
                outbox.put_nowait(error_frame(InvalidInput(f"Malformed frame: {str(e)}")))
            except ChatError as e:
                # Draft stays as it was so the client can retry
                outbox.put_nowait(error_frame(e, draft=session.draft))

        await outbox.join()
        await websocket.close()

    except WebSocketDisconnect:
        logger.info(f"Socket closed by {user_id} for conversation {session.conversation_id}")

    finally:
        session.close()
        pump.cancel()
