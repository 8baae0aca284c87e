"""Supabase client handle shared by the index and profile store."""

import logging

from supabase import Client, create_client

from tonelearn.core.config import Settings, get_settings
from tonelearn.core.exceptions import DatabaseError

logger = logging.getLogger(__name__)


class SupabaseClient:
    """Lazily-initialized Supabase client owned by whoever constructs it.

    One instance is created at startup and passed into each component
    that needs database access. Tests pass a fake ``Client`` directly.
    """

    def __init__(self, config: Settings | None = None, client: Client | None = None) -> None:
        """Initialize the handle.

        Args:
            config: Settings with SUPABASE_URL and service role key.
            client: Pre-built client to use instead of creating one.
        """
        self._config = config or get_settings()
        self._client: Client | None = client

    @property
    def is_initialized(self) -> bool:
        """Whether the underlying client has been created."""
        return self._client is not None

    def get_client(self) -> Client:
        """Get or create the Supabase client. Safe to call repeatedly.

        Returns:
            Initialized Supabase client.

        Raises:
            DatabaseError: If client initialization fails.
        """
        if self._client is None:
            try:
                self._client = create_client(
                    self._config.SUPABASE_URL,
                    self._config.SUPABASE_SERVICE_ROLE_KEY.get_secret_value(),
                )
                logger.info("Supabase client initialized successfully")
            except Exception as e:
                logger.exception("Failed to initialize Supabase client")
                raise DatabaseError(f"Failed to initialize database connection: {e}") from e
        return self._client

    def reset_client(self) -> None:
        """Drop the client so the next call re-creates it."""
        self._client = None
