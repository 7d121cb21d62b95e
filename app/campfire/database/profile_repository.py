import logging
from typing import Optional, Dict, Any, List

from pymongo.collection import Collection
from pymongo.database import Database

from configs.config import get_config

logger = logging.getLogger(__name__)
cfg = get_config()


class ProfileRepository:
    """Repository for participant profiles (display name + admin flag).

    Identities themselves live with the external identity provider; this
    collection only mirrors what the game needs about a user id.
    """

    def __init__(self, db: Database):
        self._db = db
        self._collection: Collection = self._db[cfg.PROFILES_COLLECTION]

    def upsert_profile(
        self,
        user_id: str,
        username: Optional[str] = None,
        is_admin: Optional[bool] = None,
    ) -> Dict[str, Any]:
        """Create or update a profile, leaving unspecified fields untouched."""
        update_fields: Dict[str, Any] = {}
        if username is not None:
            update_fields["username"] = username
        if is_admin is not None:
            update_fields["is_admin"] = is_admin

        update: Dict[str, Any] = {
            "$setOnInsert": {"id": user_id},
        }
        if update_fields:
            update["$set"] = update_fields
        self._collection.update_one({"id": user_id}, update, upsert=True)
        return self.get_profile(user_id)

    def get_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Fetch a profile by user id."""
        profile = self._collection.find_one({"id": user_id})
        if profile:
            profile.pop("_id", None)
            profile.setdefault("username", None)
            profile.setdefault("is_admin", False)
        return profile

    def get_profiles(self, user_ids: List[str]) -> List[Dict[str, Any]]:
        """Fetch every profile whose id is in *user_ids*."""
        if not user_ids:
            return []
        profiles = []
        for profile in self._collection.find({"id": {"$in": user_ids}}):
            profile.pop("_id", None)
            profiles.append(profile)
        return profiles

    def is_admin(self, user_id: str) -> bool:
        profile = self.get_profile(user_id)
        return bool(profile and profile.get("is_admin"))
