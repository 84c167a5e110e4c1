# vibely/routes/chat_route.py

from fastapi import APIRouter, HTTPException, status, Depends
from typing import List
import logging

from vibely.models.chat import (
    ConversationListItem,
    ConversationLookupRequest,
    ConversationLookupResponse,
    MoodRequest,
    MoodResponse,
)
from vibely.routes.firebase_auth import get_current_user
from vibely.services.message_store import MessageStore
from vibely.services.mood_service import MoodDetector, MoodDetectorUnavailable, get_mood_detector, mood_level
from vibely.services.profile_cache import ProfileCache
from vibely.services.store_factory import get_message_store, get_profile_cache
from vibely.utils.errors import ChatError, ConversationNotFound

logger = logging.getLogger(__name__)

router = APIRouter()


async def _participant_conversation(store: MessageStore, conversation_id: str, user_id: str):
    conversation = await store.get_conversation(conversation_id)
    if conversation is None:
        raise ConversationNotFound("Conversation not found")
    if user_id not in conversation.participants:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You are not a participant in this conversation"
        )
    return conversation

# ==================== Conversation Routes ====================

@router.get("/conversations", response_model=List[ConversationListItem])
async def get_user_conversations(
    current_user: dict = Depends(get_current_user),
    store: MessageStore = Depends(get_message_store),
    profiles: ProfileCache = Depends(get_profile_cache),
):
    """Chats the caller belongs to, newest message first"""
    user_id = current_user['uid']
    conversations = await store.list_conversations(user_id)

    peers = {c.id: c.peer_of(user_id) for c in conversations}
    await profiles.load(p for p in peers.values() if p)

    items = []
    for conversation in conversations:
        other_user_id = peers[conversation.id]
        if not other_user_id:
            continue

        last = conversation.last_message
        items.append(ConversationListItem(
            conversation_id=conversation.id,
            other_user_id=other_user_id,
            other_user_name=profiles.resolve_display_name(other_user_id),
            other_user_avatar=conversation.avatars.get(other_user_id) or profiles.avatar_url(other_user_id),
            last_message=last.text if last else None,
            last_message_time=last.timestamp.isoformat() if last else None,
            is_last_message_mine=bool(last and last.sender_id == user_id)
        ))

    return items


@router.post("/conversations/lookup", response_model=ConversationLookupResponse)
async def lookup_conversation(
    request: ConversationLookupRequest,
    current_user: dict = Depends(get_current_user),
    store: MessageStore = Depends(get_message_store),
    profiles: ProfileCache = Depends(get_profile_cache),
):
    """
    Find the existing chat with ``peer_id``.
    A missing chat is not an error: the client opens a detached session and
    the first message creates it.
    """
    user_id = current_user['uid']
    if request.peer_id == user_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="You cannot start a conversation with yourself"
        )

    conversation = await store.find_conversation([user_id, request.peer_id])
    await profiles.load([request.peer_id])

    return ConversationLookupResponse(
        conversation_id=conversation.id if conversation else None,
        exists=conversation is not None,
        peer_name=profiles.resolve_display_name(request.peer_id)
    )


@router.get("/conversations/{conversation_id}")
async def get_conversation_details(
    conversation_id: str,
    current_user: dict = Depends(get_current_user),
    store: MessageStore = Depends(get_message_store),
):
    conversation = await _participant_conversation(store, conversation_id, current_user['uid'])
    return {
        "conversation_id": conversation.id,
        **conversation.model_dump(mode="json", exclude={"id"})
    }


@router.delete("/conversations/{conversation_id}")
async def delete_conversation(
    conversation_id: str,
    current_user: dict = Depends(get_current_user),
    store: MessageStore = Depends(get_message_store),
):
    """Delete a chat for both participants, messages included"""
    await _participant_conversation(store, conversation_id, current_user['uid'])
    await store.delete_conversation(conversation_id)
    logger.info(f"Conversation {conversation_id} deleted by {current_user['uid']}")

    return {
        "message": "Conversation deleted successfully",
        "conversation_id": conversation_id,
    }


@router.delete("/account")
async def purge_account_messages(
    current_user: dict = Depends(get_current_user),
    store: MessageStore = Depends(get_message_store),
    profiles: ProfileCache = Depends(get_profile_cache),
):
    """Account deletion: remove every message the caller sent"""
    user_id = current_user['uid']
    deleted = await store.purge_user(user_id)
    profiles.invalidate(user_id)

    return {"success": True, "deleted_messages": deleted}

# ==================== Mood Detection ====================

@router.post("/mood", response_model=MoodResponse)
async def detect_mood(
    request: MoodRequest,
    current_user: dict = Depends(get_current_user),
    detector: MoodDetector = Depends(get_mood_detector),
):
    try:
        mood = await detector.detect(request.message)
    except MoodDetectorUnavailable as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    except ChatError:
        raise
    except Exception as e:
        logger.error(f"Gemini mood detection failed: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Error detecting mood: {str(e)}"
        )

    return MoodResponse(mood=mood, level=mood_level(mood))

# ==================== Health Check ====================

@router.get("/health")
async def chat_health_check():
    """Check if chat service is running"""
    return {
        "status": "healthy",
        "service": "chat",
        "message": "Chat service is running"
    }
