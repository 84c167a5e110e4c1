from typing import Callable, Dict, Iterable, Optional
import asyncio, logging

logger = logging.getLogger(__name__)

UNKNOWN_USER = "Unknown User"

ProfileFetcher = Callable[[list], Dict[str, dict]]


def firestore_profile_fetcher(db, users_collection: str = "users") -> ProfileFetcher:
    """Bulk-fetch user documents with a single get_all round trip."""

    def _fetch(user_ids: list) -> Dict[str, dict]:
        refs = [db.collection(users_collection).document(uid) for uid in user_ids]
        return {doc.id: doc.to_dict() for doc in db.get_all(refs) if doc.exists}

    return _fetch


def static_profile_fetcher(profiles: Dict[str, dict]) -> ProfileFetcher:
    def _fetch(user_ids: list) -> Dict[str, dict]:
        return {uid: profiles[uid] for uid in user_ids if uid in profiles}

    return _fetch


class ProfileCache:
    """
    Read-through cache of user profiles, keyed by user id.

    load() fills it in bulk; resolve_display_name() and avatar_url() are
    plain lookups that never hit the backend.
    """

    def __init__(self, fetcher: ProfileFetcher):
        self._fetcher = fetcher
        self._profiles: Dict[str, dict] = {}

    async def load(self, user_ids: Iterable[str]) -> None:
        missing = sorted({uid for uid in user_ids if uid and uid not in self._profiles})
        if not missing:
            return

        loop = asyncio.get_running_loop()
        fetched = await loop.run_in_executor(None, self._fetcher, missing)
        self._profiles.update(fetched)
        logger.info(f"Loaded {len(fetched)}/{len(missing)} user profiles")

    def resolve_display_name(self, user_id: str) -> str:
        profile = self._profiles.get(user_id) or {}
        return profile.get("username") or profile.get("full_name") or UNKNOWN_USER

    def avatar_url(self, user_id: str) -> Optional[str]:
        profile = self._profiles.get(user_id) or {}
        return profile.get("avatarURL") or profile.get("avatar")

    def invalidate(self, user_id: str) -> None:
        self._profiles.pop(user_id, None)
