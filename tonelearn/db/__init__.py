"""Database clients for tone learning."""

from tonelearn.db.profile_store import ProfileStore, SupabaseProfileStore
from tonelearn.db.supabase import SupabaseClient

__all__ = ["ProfileStore", "SupabaseClient", "SupabaseProfileStore"]
