"""Persistence of computed style profiles.

Profiles live in one row per (user, preference type, target identifier)
and are replaced wholesale on every recomputation.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any

from tonelearn.core.config import Settings, get_settings
from tonelearn.core.exceptions import DatabaseError
from tonelearn.db.supabase import SupabaseClient

logger = logging.getLogger(__name__)

# Preference types
PREFERENCE_AGGREGATE = "aggregate"
PREFERENCE_CATEGORY = "category"
PREFERENCE_STYLE = "style"

AGGREGATE_TARGET = "aggregate"


class ProfileStore(ABC):
    """Keyed upsert/read of persisted profiles."""

    @abstractmethod
    async def upsert_profile(
        self,
        user_id: str,
        preference_type: str,
        target_identifier: str,
        profile_data: dict[str, Any],
        emails_analyzed: int,
    ) -> None:
        """Replace the profile stored under the key."""

    @abstractmethod
    async def load_profile(
        self, user_id: str, preference_type: str, target_identifier: str
    ) -> dict[str, Any] | None:
        """Return ``profile_data`` for the key, or None."""

    @abstractmethod
    async def delete_profiles(
        self, user_id: str, preference_types: list[str] | None = None
    ) -> None:
        """Delete a user's profiles, optionally limited to some types."""

    @abstractmethod
    async def list_profiles(self, user_id: str) -> list[dict[str, Any]]:
        """Return key columns and ``emails_analyzed`` for each of a user's profiles."""


class SupabaseProfileStore(ProfileStore):
    """Profile store on the ``tone_preferences`` table."""

    def __init__(self, db: SupabaseClient, config: Settings | None = None) -> None:
        self._db = db
        self._table = (config or get_settings()).PROFILE_TABLE

    async def upsert_profile(
        self,
        user_id: str,
        preference_type: str,
        target_identifier: str,
        profile_data: dict[str, Any],
        emails_analyzed: int,
    ) -> None:
        row = {
            "user_id": user_id,
            "preference_type": preference_type,
            "target_identifier": target_identifier,
            "profile_data": profile_data,
            "emails_analyzed": emails_analyzed,
        }
        try:
            query = self._db.get_client().table(self._table).upsert(
                row, on_conflict="user_id,preference_type,target_identifier"
            )
            await asyncio.to_thread(query.execute)
        except Exception as e:
            logger.exception(
                "Failed to store profile",
                extra={
                    "user_id": user_id,
                    "preference_type": preference_type,
                    "target_identifier": target_identifier,
                },
            )
            raise DatabaseError(f"Failed to store profile: {e}") from e

        logger.info(
            "Stored %s profile for %s (%d emails)",
            preference_type,
            target_identifier,
            emails_analyzed,
            extra={"user_id": user_id},
        )

    async def load_profile(
        self, user_id: str, preference_type: str, target_identifier: str
    ) -> dict[str, Any] | None:
        try:
            query = (
                self._db.get_client()
                .table(self._table)
                .select("profile_data")
                .eq("user_id", user_id)
                .eq("preference_type", preference_type)
                .eq("target_identifier", target_identifier)
                .limit(1)
            )
            response = await asyncio.to_thread(query.execute)
        except Exception as e:
            raise DatabaseError(f"Failed to load profile: {e}") from e
        rows = response.data or []
        if not rows:
            return None
        return rows[0].get("profile_data")

    async def delete_profiles(
        self, user_id: str, preference_types: list[str] | None = None
    ) -> None:
        try:
            query = self._db.get_client().table(self._table).delete().eq("user_id", user_id)
            if preference_types:
                query = query.in_("preference_type", preference_types)
            await asyncio.to_thread(query.execute)
        except Exception as e:
            raise DatabaseError(f"Failed to delete profiles: {e}") from e

    async def list_profiles(self, user_id: str) -> list[dict[str, Any]]:
        try:
            query = (
                self._db.get_client()
                .table(self._table)
                .select("preference_type,target_identifier,emails_analyzed")
                .eq("user_id", user_id)
            )
            response = await asyncio.to_thread(query.execute)
        except Exception as e:
            raise DatabaseError(f"Failed to list profiles: {e}") from e
        return list(response.data or [])
