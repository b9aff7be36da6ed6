"""
Pytest configuration.

Adds the project root to the Python path so tests can import domain,
repositories, services and api, and provides an in-memory stand-in for the
Supabase client that the repositories talk to.
"""

import copy
import operator
import sys
import threading
from collections import defaultdict
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

# Add the project root to the Python path
# so tests can import domain, repositories, etc.
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from postgrest.exceptions import APIError  # noqa: E402

from repositories import offer_repository, sale_repository, seller_repository  # noqa: E402
from services.config import get_settings  # noqa: E402


class FakeResponse:
    def __init__(self, data: List[Dict[str, Any]]) -> None:
        self.data = data
        self.error = None
        self.count = len(data)


class FakeQuery:
    """Chainable query builder covering the PostgREST calls the repositories make."""

    def __init__(self, db: "FakeSupabase", table: str) -> None:
        self.db = db
        self.table = table
        self.action = "select"
        self.payload: Any = None
        self.filters: List[Tuple[str, Callable[[Any, Any], bool], Any]] = []
        self.order_by: Optional[Tuple[str, bool]] = None
        self.row_limit: Optional[int] = None

    def select(self, *columns: str, **kwargs: Any) -> "FakeQuery":
        self.action = "select"
        return self

    def insert(self, payload: Any) -> "FakeQuery":
        self.action = "insert"
        self.payload = payload
        return self

    def update(self, payload: Dict[str, Any]) -> "FakeQuery":
        self.action = "update"
        self.payload = payload
        return self

    def eq(self, column: str, value: Any) -> "FakeQuery":
        self.filters.append((column, operator.eq, value))
        return self

    def gte(self, column: str, value: Any) -> "FakeQuery":
        self.filters.append((column, operator.ge, value))
        return self

    def lte(self, column: str, value: Any) -> "FakeQuery":
        self.filters.append((column, operator.le, value))
        return self

    def order(self, column: str, desc: bool = False) -> "FakeQuery":
        self.order_by = (column, desc)
        return self

    def limit(self, count: int) -> "FakeQuery":
        self.row_limit = count
        return self

    def matches(self, row: Dict[str, Any]) -> bool:
        for column, op, value in self.filters:
            current = row.get(column)
            if current is None or not op(current, value):
                return False
        return True

    def execute(self) -> FakeResponse:
        return self.db.execute(self)


class FakeSupabase:
    """
    In-memory tables with the unique constraints from sql/schema.sql.

    Each execute() is atomic, like a single statement against Postgres; a
    lookup followed by an insert is not.
    """

    UNIQUE_COLUMNS = {
        "sales": "payment_transaction_id",
        "offers": "slug",
        "sellers": "seller_id",
    }

    def __init__(self) -> None:
        self.tables: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self.inserts: Dict[str, int] = defaultdict(int)
        self._lock = threading.Lock()

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def seed(self, table: str, *rows: Dict[str, Any]) -> None:
        self.tables[table].extend(copy.deepcopy(list(rows)))

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return copy.deepcopy(self.tables[table])

    def execute(self, query: FakeQuery) -> FakeResponse:
        with self._lock:
            rows = self.tables[query.table]

            if query.action == "insert":
                payloads = query.payload if isinstance(query.payload, list) else [query.payload]
                unique = self.UNIQUE_COLUMNS.get(query.table)
                for payload in payloads:
                    if unique and any(row.get(unique) == payload.get(unique) for row in rows):
                        raise APIError({
                            "message": f'duplicate key value violates unique constraint "{query.table}_{unique}_key"',
                            "code": "23505",
                            "hint": "",
                            "details": f"Key ({unique})=({payload.get(unique)}) already exists.",
                        })
                    rows.append(copy.deepcopy(payload))
                    self.inserts[query.table] += 1
                return FakeResponse(copy.deepcopy(payloads))

            matched = [row for row in rows if query.matches(row)]

            if query.action == "update":
                for row in matched:
                    row.update(copy.deepcopy(query.payload))
                return FakeResponse(copy.deepcopy(matched))

            if query.order_by is not None:
                column, desc = query.order_by
                matched = sorted(matched, key=lambda row: row.get(column), reverse=desc)
            if query.row_limit is not None:
                matched = matched[: query.row_limit]
            return FakeResponse(copy.deepcopy(matched))


@pytest.fixture
def fake_db(monkeypatch: pytest.MonkeyPatch) -> FakeSupabase:
    """Route every repository to a fresh in-memory database."""

    db = FakeSupabase()
    for module in (sale_repository, offer_repository, seller_repository):
        monkeypatch.setattr(module, "get_supabase", lambda: db)
    return db


@pytest.fixture(autouse=True)
def settings_env(monkeypatch: pytest.MonkeyPatch):
    """Pin configuration to known values and reset the settings cache around each test."""

    for name in (
        "SKIP_WEBHOOK_VALIDATION",
        "PLATFORM_FEE_RATE",
        "DISPATCH_TIMEOUT_SECONDS",
        "ATTRIBUTION_CURRENCY",
        "AD_CONVERSION_API_URL",
        "CHECKOUT_BASE_URL",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
