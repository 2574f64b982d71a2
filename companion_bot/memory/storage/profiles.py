from __future__ import annotations

from typing import List, Optional

from ...context.models import UserProfile
from ...errors import ContextStoreError
from .utils import _dump_list, _row_to_user_profile, _sqlite_memory_connection

_USER_COLUMNS = """
    user_id, username, display_name, interests, personality, recent_topics,
    interaction_count, last_seen, preferred_response_style, timezone, language,
    bio, goals, preferences, notes
"""


def _user_params(profile: UserProfile) -> tuple:
    return (
        profile.user_id,
        profile.username,
        profile.display_name,
        _dump_list(profile.interests),
        _dump_list(profile.personality),
        _dump_list(profile.recent_topics),
        int(profile.interaction_count),
        int(profile.last_seen),
        profile.preferred_response_style,
        profile.timezone,
        profile.language,
        profile.bio,
        profile.goals,
        profile.preferences,
        profile.notes,
    )


class MemoryProfilesMixin:
    async def get_user_profile(self, user_id: str) -> Optional[UserProfile]:
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(
                f"SELECT {_USER_COLUMNS} FROM user_profiles WHERE user_id = ?",
                (str(user_id),),
            ) as cursor:
                row = await cursor.fetchone()
        return _row_to_user_profile(row) if row is not None else None

    async def create_user_profile(self, profile: UserProfile) -> UserProfile:
        """Insert the profile unless the key already exists; returns the stored row."""
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute(
                f"""
                INSERT INTO user_profiles ({_USER_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO NOTHING
                """,
                _user_params(profile),
            )
            await db.commit()
            async with db.execute(
                f"SELECT {_USER_COLUMNS} FROM user_profiles WHERE user_id = ?",
                (profile.user_id,),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            raise ContextStoreError(f"User profile {profile.user_id} vanished after insert")
        return _row_to_user_profile(row)

    async def update_user_profile(self, profile: UserProfile) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute(
                f"""
                INSERT INTO user_profiles ({_USER_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    username = excluded.username,
                    display_name = excluded.display_name,
                    interests = excluded.interests,
                    personality = excluded.personality,
                    recent_topics = excluded.recent_topics,
                    interaction_count = MAX(user_profiles.interaction_count, excluded.interaction_count),
                    last_seen = excluded.last_seen,
                    preferred_response_style = excluded.preferred_response_style,
                    timezone = excluded.timezone,
                    language = excluded.language,
                    bio = excluded.bio,
                    goals = excluded.goals,
                    preferences = excluded.preferences,
                    notes = excluded.notes,
                    updated_at = CURRENT_TIMESTAMP
                """,
                _user_params(profile),
            )
            await db.commit()

    async def delete_user_profile(self, user_id: str) -> bool:
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.execute("DELETE FROM user_profiles WHERE user_id = ?", (str(user_id),))
            await db.commit()
            return cursor.rowcount > 0

    async def list_user_profiles(self, limit: int = 100) -> List[UserProfile]:
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(
                f"SELECT {_USER_COLUMNS} FROM user_profiles ORDER BY last_seen DESC LIMIT ?",
                (max(1, int(limit)),),
            ) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_user_profile(row) for row in rows]
