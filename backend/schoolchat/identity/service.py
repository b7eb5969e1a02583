"""UserDirectory: profile cache used to resolve display names and avatars.

Profiles are pushed by the identity system (``PUT /users/{id}``). A missing
profile is normal; callers fall back to a placeholder name.
"""
import logging
from typing import Dict, Optional, Sequence

from schoolchat.database import Database, utcnow
from schoolchat.identity.schemas import UserProfile, UserProfileIn

logger = logging.getLogger(__name__)

_COLUMNS = ["id", "display_name", "avatar_url", "role", "updated_at"]


class UserDirectory:
    def __init__(self, db: Database) -> None:
        self._db = db

    def upsert_user(self, user_id: str, profile: UserProfileIn) -> UserProfile:
        self._db.execute(
            """
            INSERT INTO users (id, display_name, avatar_url, role, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
              display_name = excluded.display_name,
              avatar_url   = excluded.avatar_url,
              role         = excluded.role,
              updated_at   = excluded.updated_at
            """,
            [user_id, profile.display_name, profile.avatar_url, profile.role.value, utcnow()],
        )
        logger.debug("[UserDirectory] Upserted profile %s", user_id)
        return self.get_user(user_id)

    def get_user(self, user_id: str) -> Optional[UserProfile]:
        row = self._db.fetchone(
            "SELECT " + ", ".join(_COLUMNS) + " FROM users WHERE id = ?", [user_id]
        )
        return UserProfile(**dict(zip(_COLUMNS, row))) if row else None

    def get_users(self, user_ids: Sequence[str]) -> Dict[str, UserProfile]:
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            return {}
        rows = self._db.fetchall(
            "SELECT " + ", ".join(_COLUMNS) + f" FROM users WHERE id IN ({', '.join('?' for _ in ids)})",
            ids,
        )
        profiles = (UserProfile(**dict(zip(_COLUMNS, r))) for r in rows)
        return {p.id: p for p in profiles}
