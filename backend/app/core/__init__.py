# Core modules - Database, Config, Exceptions
from .database import get_supabase_client, run_query
from .config import settings
from .exceptions import (
    SchedulerException,
    ConfigurationError,
    DatabaseError,
    SettlementError,
)

__all__ = [
    "get_supabase_client",
    "run_query",
    "settings",
    "SchedulerException",
    "ConfigurationError",
    "DatabaseError",
    "SettlementError",
]
