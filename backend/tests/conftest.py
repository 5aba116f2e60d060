"""
Pytest fixtures and configuration for Ticketing Scheduler tests.

Provides:
- Mock Supabase client for isolated testing
- Test client with a test scheduler attached
- Time freezing utilities
- Sample data factories
"""
import pytest
from contextlib import ExitStack
from datetime import datetime, timedelta, timezone
from typing import Generator, Dict, Any, Optional, List, Callable
from unittest.mock import patch
from uuid import uuid4

from fastapi.testclient import TestClient
from freezegun import freeze_time

# Import the FastAPI app
from app.main import app


# Modules that resolve the database client by name
DB_CLIENT_PATCH_TARGETS = [
    "app.core.database.get_supabase_client",
    "app.services.candidates.get_supabase_client",
    "app.services.notifications.get_supabase_client",
    "app.services.escalation.get_supabase_client",
    "app.services.payment_monitor.get_supabase_client",
]


# ==========================================
# MOCK SUPABASE RESPONSE & TABLE
# ==========================================

class MockSupabaseResponse:
    """Mock response from Supabase operations."""

    def __init__(self, data: list = None, error: dict = None, count: int = None):
        self.data = data or []
        self.error = error
        self.count = count if count is not None else len(self.data)

    def execute(self):
        return self


class MockUniqueViolation(Exception):
    """Mimics the PostgREST error raised on a unique index conflict."""

    def __init__(self, message: str):
        super().__init__(message)
        self.code = "23505"


def _comparable(value: Any) -> Any:
    """Parse ISO timestamps so comparisons are chronological."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return value


class MockSupabaseTable:
    """Mock Supabase table operations."""

    # Columns carrying a unique index
    UNIQUE_COLUMNS = {
        "notifications": "dedup_key",
        "event_registrations": "payment_id",
    }

    def __init__(self, table_name: str, store: "MockSupabaseClient"):
        self.table_name = table_name
        self.store = store
        self.mock_data = store.mock_data
        self._filters = []
        self._select_fields = "*"
        self._order_by: List[tuple] = []
        self._limit = None
        self._insert_rows = None
        self._update_data = None
        self._delete = False

    def select(self, fields: str = "*", count: str = None):
        self._select_fields = fields
        return self

    def eq(self, column: str, value: Any):
        self._filters.append(("eq", column, value))
        return self

    def neq(self, column: str, value: Any):
        self._filters.append(("neq", column, value))
        return self

    def in_(self, column: str, values: list):
        self._filters.append(("in", column, list(values)))
        return self

    def gt(self, column: str, value: Any):
        self._filters.append(("gt", column, value))
        return self

    def gte(self, column: str, value: Any):
        """Greater than or equal filter."""
        self._filters.append(("gte", column, value))
        return self

    def lt(self, column: str, value: Any):
        self._filters.append(("lt", column, value))
        return self

    def lte(self, column: str, value: Any):
        """Less than or equal filter."""
        self._filters.append(("lte", column, value))
        return self

    def is_(self, column: str, value: Any):
        """IS filter (for null checks)."""
        self._filters.append(("is", column, value))
        return self

    def order(self, column: str, desc: bool = False, nullsfirst: bool = False):
        self._order_by.append((column, desc, nullsfirst))
        return self

    def limit(self, count: int):
        self._limit = count
        return self

    def insert(self, data: Any):
        """Mock insert operation - returns self for chaining."""
        self._insert_rows = data if isinstance(data, list) else [data]
        return self

    def update(self, data: dict):
        """Mock update operation - returns self for chaining."""
        self._update_data = data
        return self

    def delete(self):
        """Mock delete operation - returns self for chaining."""
        self._delete = True
        return self

    def _matches(self, row: dict) -> bool:
        for op, column, value in self._filters:
            actual = row.get(column)
            if op == "eq" and actual != value:
                return False
            if op == "neq" and actual == value:
                return False
            if op == "in" and actual not in value:
                return False
            if op == "is":
                expected = None if value in (None, "null") else value
                if actual is not expected and actual != expected:
                    return False
            if op in ("gt", "gte", "lt", "lte"):
                if actual is None:
                    return False
                left, right = _comparable(actual), _comparable(value)
                if op == "gt" and not left > right:
                    return False
                if op == "gte" and not left >= right:
                    return False
                if op == "lt" and not left < right:
                    return False
                if op == "lte" and not left <= right:
                    return False
        return True

    def _do_insert(self) -> MockSupabaseResponse:
        rows = self.mock_data.setdefault(self.table_name, [])
        unique_column = self.UNIQUE_COLUMNS.get(self.table_name)
        inserted = []

        for item in self._insert_rows:
            row = dict(item)
            self.store.check_failure(self.table_name, "insert", row)

            if unique_column and row.get(unique_column) is not None:
                if any(r.get(unique_column) == row[unique_column] for r in rows):
                    raise MockUniqueViolation(
                        f'duplicate key value violates unique constraint "{self.table_name}_{unique_column}_key"'
                    )

            row.setdefault("id", str(uuid4()))
            row.setdefault("created_at", datetime.now(timezone.utc).isoformat())
            rows.append(row)
            inserted.append(dict(row))

        return MockSupabaseResponse(inserted)

    def execute(self):
        """Execute the query and return results."""
        self.store.queries.append((self.table_name, self._operation))

        if self._insert_rows is not None:
            return self._do_insert()

        results = [r for r in self.mock_data.get(self.table_name, []) if self._matches(r)]

        # Handle update
        if self._update_data is not None:
            for result in results:
                self.store.check_failure(self.table_name, "update", result)
            for result in results:
                result.update(self._update_data)
            return MockSupabaseResponse([dict(r) for r in results])

        # Handle delete
        if self._delete:
            table = self.mock_data.get(self.table_name, [])
            self.mock_data[self.table_name] = [r for r in table if r not in results]
            return MockSupabaseResponse([dict(r) for r in results])

        # Apply ordering, last key first so earlier keys dominate
        for column, desc, nullsfirst in reversed(self._order_by):
            results.sort(
                key=lambda x: (
                    (x.get(column) is None) != (nullsfirst != desc),
                    str(_comparable(x.get(column)) or "")
                ),
                reverse=desc
            )

        total_count = len(results)
        if self._limit:
            results = results[:self._limit]

        return MockSupabaseResponse([dict(r) for r in results], count=total_count)

    @property
    def _operation(self) -> str:
        if self._insert_rows is not None:
            return "insert"
        if self._update_data is not None:
            return "update"
        if self._delete:
            return "delete"
        return "select"


class MockSupabaseClientInner:
    """Mock inner Supabase client (the actual client with table() method)."""

    def __init__(self, store: "MockSupabaseClient"):
        self.store = store

    def table(self, table_name: str) -> MockSupabaseTable:
        return MockSupabaseTable(table_name, self.store)


class MockSupabaseClient:
    """
    Mock Supabase client wrapper (matches SupabaseClient class structure).
    This has a .client property that provides the actual table operations.
    """

    def __init__(self):
        self.mock_data: Dict[str, list] = {
            "events": [],
            "event_registrations": [],
            "users": [],
            "escalations": [],
            "activity_logs": [],
            "notifications": [],
            "payments": [],
        }
        self.queries: List[tuple] = []
        self._failures: List[tuple] = []
        # The .client property that services expect
        self.client = MockSupabaseClientInner(self)

    def fail_when(self, table: str, operation: str, predicate: Callable[[dict], bool]) -> None:
        """Make writes matching ``predicate`` raise, simulating a database fault."""
        self._failures.append((table, operation, predicate))

    def check_failure(self, table: str, operation: str, row: dict) -> None:
        for fail_table, fail_operation, predicate in self._failures:
            if fail_table == table and fail_operation == operation and predicate(row):
                raise RuntimeError(f"simulated {operation} failure on {table}")

    def log_activity(
        self,
        action: str,
        entity_type: str,
        entity_id: str,
        actor: str = "SYSTEM",
        metadata: Optional[dict] = None
    ) -> dict:
        """Mock activity log."""
        entry = {
            "id": str(uuid4()),
            "user_id": actor,
            "action": action,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "metadata": metadata or {},
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        self.mock_data["activity_logs"].append(entry)
        return entry

    def clear(self):
        """Clear all mock data."""
        for key in self.mock_data:
            self.mock_data[key] = []


# ==========================================
# FIXTURES
# ==========================================

@pytest.fixture(scope="function")
def fresh_mock_client():
    """Function-scoped fresh mock client (clean for each test)."""
    return MockSupabaseClient()


@pytest.fixture(scope="function")
def mock_data(fresh_mock_client) -> Dict[str, list]:
    """Access to the mock data store for direct manipulation."""
    return fresh_mock_client.mock_data


@pytest.fixture(scope="function")
def patched_db(fresh_mock_client) -> Generator[MockSupabaseClient, None, None]:
    """Route every get_supabase_client() call to the fresh mock client."""
    with ExitStack() as stack:
        for target in DB_CLIENT_PATCH_TARGETS:
            stack.enter_context(patch(target, return_value=fresh_mock_client))
        yield fresh_mock_client


@pytest.fixture(scope="function")
def job_scheduler():
    """Scheduler with two trivial tasks and no real jobs."""
    from app.services.scheduler import JobScheduler

    scheduler = JobScheduler()

    async def ok_task():
        return {"processed": 1}

    async def broken_task():
        raise RuntimeError("boom")

    scheduler.register("ok_task", "every 5m", ok_task, description="Always succeeds")
    scheduler.register("broken_task", "0 * * * *", broken_task, description="Always fails")
    return scheduler


@pytest.fixture(scope="function")
def client(patched_db, job_scheduler) -> Generator[TestClient, None, None]:
    """
    Create test client with mocked Supabase and a test scheduler.

    The lifespan picks up ``job_scheduler`` instead of building the
    production registry.
    """
    with patch("app.services.scheduler._scheduler", job_scheduler):
        with TestClient(app) as test_client:
            yield test_client


# ==========================================
# TIME FIXTURES
# ==========================================

# Monday 2024-06-10 08:00 UTC: one hour before the H-1 reminder run
H1_NOW = datetime(2024, 6, 10, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def h1_now() -> datetime:
    return H1_NOW


@pytest.fixture
def frozen_h1_morning():
    """Freeze time at 2024-06-10 08:00 UTC."""
    with freeze_time(H1_NOW):
        yield H1_NOW


# ==========================================
# SAMPLE DATA FACTORIES
# ==========================================

@pytest.fixture
def create_event(mock_data):
    """Factory fixture to create events."""
    def _create(
        event_date: datetime,
        title: str = "Tech Conference",
        status: str = "APPROVED",
        is_published: bool = True,
        created_at: Optional[datetime] = None,
        **extra
    ) -> Dict[str, Any]:
        event = {
            "id": str(uuid4()),
            "title": title,
            "event_date": event_date.isoformat(),
            "event_time": event_date.strftime("%H:%M"),
            "location": "Jakarta Convention Center",
            "is_published": is_published,
            "status": status,
            "created_at": (created_at or event_date - timedelta(days=30)).isoformat(),
            **extra,
        }
        mock_data["events"].append(event)
        return event

    return _create


@pytest.fixture
def create_registration(mock_data):
    """Factory fixture to create event registrations."""
    def _create(event_id: str, status: str = "ACTIVE", participant_id: Optional[str] = None) -> Dict[str, Any]:
        registration = {
            "id": str(uuid4()),
            "event_id": event_id,
            "participant_id": participant_id or str(uuid4()),
            "status": status,
        }
        mock_data["event_registrations"].append(registration)
        return registration

    return _create


@pytest.fixture
def create_user(mock_data):
    """Factory fixture to create users."""
    def _create(
        role: str,
        is_active: bool = True,
        created_at: Optional[datetime] = None,
        **extra
    ) -> Dict[str, Any]:
        user_id = str(uuid4())
        user = {
            "id": user_id,
            "full_name": f"{role.title()} {user_id[:4]}",
            "email": f"{user_id[:8]}@example.com",
            "role": role,
            "is_active": is_active,
            "created_at": (created_at or datetime(2024, 1, 1, tzinfo=timezone.utc)).isoformat(),
            **extra,
        }
        mock_data["users"].append(user)
        return user

    return _create


@pytest.fixture
def create_escalation(mock_data):
    """Factory fixture to create escalation cases."""
    def _create(
        created_at: datetime,
        escalation_level: int = 0,
        status: str = "OPEN",
        last_escalated_at: Optional[datetime] = None,
        entity_type: str = "EVENT",
        **extra
    ) -> Dict[str, Any]:
        case = {
            "id": str(uuid4()),
            "entity_type": entity_type,
            "entity_id": str(uuid4()),
            "status": status,
            "escalation_level": escalation_level,
            "reason": "Auto escalation: Event pending for more than 24 hours",
            "created_at": created_at.isoformat(),
            "last_escalated_at": last_escalated_at.isoformat() if last_escalated_at else None,
            **extra,
        }
        mock_data["escalations"].append(case)
        return case

    return _create


@pytest.fixture
def create_payment(mock_data):
    """Factory fixture to create payment records."""
    def _create(
        reference: str,
        created_at: datetime,
        amount: str = "150000",
        status: str = "PENDING",
        user_id: Optional[str] = None,
        event_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        payment = {
            "id": str(uuid4()),
            "payment_reference": reference,
            "user_id": user_id or str(uuid4()),
            "event_id": event_id or str(uuid4()),
            "amount": amount,
            "payment_status": status,
            "created_at": created_at.isoformat(),
        }
        mock_data["payments"].append(payment)
        return payment

    return _create


# ==========================================
# MARKERS
# ==========================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (isolated, fast)")
    config.addinivalue_line("markers", "integration: Integration tests (mocked database)")
    config.addinivalue_line("markers", "e2e: End-to-end tests (full workflow)")
