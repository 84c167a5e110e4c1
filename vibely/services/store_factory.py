from typing import Optional
import logging

from vibely.config.settings import settings
from vibely.services.message_store import MessageStore
from vibely.services.memory_store import InMemoryMessageStore
from vibely.services.profile_cache import ProfileCache, firestore_profile_fetcher, static_profile_fetcher

logger = logging.getLogger(__name__)

_store: Optional[MessageStore] = None
_profile_cache: Optional[ProfileCache] = None


def get_message_store() -> MessageStore:
    global _store
    if _store is None:
        if settings.STORE_BACKEND == "memory":
            _store = InMemoryMessageStore()
        else:
            from vibely.database.connection import init_firebase
            from vibely.services.firestore_store import FirestoreMessageStore

            _store = FirestoreMessageStore(
                init_firebase(),
                chats_collection=settings.CHATS_COLLECTION,
                messages_subcollection=settings.MESSAGES_SUBCOLLECTION,
            )
        logger.info(f"Message store backend: {settings.STORE_BACKEND}")
    return _store


def get_profile_cache() -> ProfileCache:
    global _profile_cache
    if _profile_cache is None:
        if settings.STORE_BACKEND == "memory":
            _profile_cache = ProfileCache(static_profile_fetcher({}))
        else:
            from vibely.database.connection import init_firebase

            _profile_cache = ProfileCache(firestore_profile_fetcher(init_firebase(), settings.USERS_COLLECTION))
    return _profile_cache
