"""
Supabase database client management.
Provides the persistence collaborator used by scheduled jobs.

Features:
- Singleton client wrapper
- Async query execution with per-call deadlines
- Activity logging for automated state changes
"""
import asyncio
import logging
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Optional

from supabase import create_client, Client

from .config import settings
from .exceptions import DatabaseError


logger = logging.getLogger(__name__)

# Postgres unique_violation
UNIQUE_VIOLATION_CODE = "23505"


class SupabaseClient:
    """
    Singleton wrapper for Supabase client.
    Provides methods for common database operations.
    """

    _instance: Optional["SupabaseClient"] = None
    _client: Optional[Client] = None

    def __new__(cls) -> "SupabaseClient":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if self._client is None:
            self._client = create_client(
                settings.supabase_url,
                settings.supabase_key
            )

    @property
    def client(self) -> Client:
        """Get the Supabase client instance."""
        if self._client is None:
            raise RuntimeError("Supabase client not initialized")
        return self._client

    def log_activity(
        self,
        action: str,
        entity_type: str,
        entity_id: str,
        actor: str = "SYSTEM",
        metadata: Optional[dict] = None
    ) -> dict:
        """Record an automated action in the activity log."""
        entry = {
            "user_id": actor,
            "action": action,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "user_agent": "System Scheduler",
            "metadata": metadata or {},
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        response = self.client.table("activity_logs").insert(entry).execute()
        return response.data[0] if response.data else {}


@lru_cache
def get_supabase_client() -> SupabaseClient:
    """Get the singleton Supabase client instance."""
    return SupabaseClient()


async def run_query(
    query: Any,
    *,
    table: Optional[str] = None,
    operation: Optional[str] = None,
    timeout: Optional[float] = None
) -> Any:
    """
    Execute a built Supabase query without blocking the event loop.

    The supabase client is synchronous, so the call runs in a worker thread
    and is bounded by ``db_timeout_seconds``. Accepts either a query builder
    (anything with ``execute()``) or a plain callable.

    Raises:
        DatabaseError: on timeout or any client error
    """
    call = query.execute if hasattr(query, "execute") else query
    deadline = timeout if timeout is not None else settings.db_timeout_seconds

    try:
        return await asyncio.wait_for(asyncio.to_thread(call), timeout=deadline)
    except asyncio.TimeoutError as e:
        raise DatabaseError(
            f"Query exceeded {deadline}s deadline",
            table=table,
            operation=operation,
            original_error="timeout"
        ) from e
    except DatabaseError:
        raise
    except Exception as e:
        if is_unique_violation(e):
            raise
        raise DatabaseError(
            f"Query failed: {e}",
            table=table,
            operation=operation,
            original_error=str(e)
        ) from e


def is_unique_violation(error: BaseException) -> bool:
    """Check whether a PostgREST error is a unique-constraint violation."""
    code = getattr(error, "code", None)
    if code == UNIQUE_VIOLATION_CODE:
        return True
    return UNIQUE_VIOLATION_CODE in str(error) and "duplicate key" in str(error)
