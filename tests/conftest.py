"""
Taskify Test Suite — Shared fixtures and configuration.

The remote store is an in-memory PostgREST fake served through
httpx.MockTransport; the change feed is an InMemoryChangeHub. Nothing here
touches the network, Redis or the filesystem outside tmp_path.

Run:  pytest tests/ -v
"""

from __future__ import annotations

import itertools
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import pytest

from taskify.engine.context import UserContext, clear_user_context
from taskify.sync.notices import NoticeLog
from taskify.sync.remote import RestClient, task_adapter
from taskify.sync.tasks import TaskProvider
from taskify.sync.teams import TeamProvider
from taskify.sync.transports import InMemoryChangeHub

BASE_URL = "http://remote.test/rest/v1"
NOW = datetime(2024, 5, 15, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Global state isolation
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_globals(monkeypatch):
    """Reset config, identity and the log queue singleton between tests."""
    import taskify.engine.config as cfg_mod
    import taskify.engine.logging as log_mod

    monkeypatch.delenv("TASKIFY_REMOTE_URL", raising=False)
    monkeypatch.delenv("TASKIFY_API_KEY", raising=False)
    cfg_mod._config = None
    clear_user_context()
    yield
    log_mod.shutdown_logging()
    cfg_mod._config = None
    logging.getLogger("taskify").setLevel(logging.NOTSET)
    clear_user_context()


# ---------------------------------------------------------------------------
# In-memory PostgREST
# ---------------------------------------------------------------------------

def _iso(value: datetime) -> str:
    return value.isoformat()


class FakePostgrest:
    """
    Minimal PostgREST: ``GET/POST/PATCH/DELETE /{table}`` and
    ``POST /rpc/{fn}``, with eq / in / is filters and ``order``.

    ``fail(method, table, status)`` queues error responses;
    ``disconnect(method, table)`` queues transport errors.
    """

    DEFAULTS = {
        "tasks": {"description": "", "priority": "medium", "status": "todo"},
        "team_members": {"role": "member"},
    }
    TIMESTAMPS = {
        "tasks": ("created_at", "updated_at"),
        "teams": ("created_at",),
        "team_members": ("joined_at",),
    }

    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {
            "tasks": [], "teams": [], "team_members": [], "profiles": [],
        }
        self.rpc_results: Dict[str, Any] = {"generate_team_join_code": "JOIN1234"}
        self.calls: List[Tuple[str, str, Dict[str, str], Any]] = []
        self._failures: List[Tuple[str, str, Any]] = []
        self._ids = itertools.count(1)
        self._clock = itertools.count(0)

    # ── Test controls ──

    def seed(self, table: str, *rows: Dict[str, Any]) -> None:
        self.tables.setdefault(table, []).extend(dict(r) for r in rows)

    def fail(self, method: str, table: str, status: int = 400, body: Optional[Dict[str, Any]] = None, times: int = 1) -> None:
        payload = body if body is not None else {"message": f"forced {status}", "code": "TEST"}
        for _ in range(times):
            self._failures.append((method, table, (status, payload)))

    def disconnect(self, method: str, table: str, times: int = 1) -> None:
        for _ in range(times):
            self._failures.append((method, table, None))

    def calls_to(self, method: str, table: Optional[str] = None) -> List[Tuple[str, str, Dict[str, str], Any]]:
        return [c for c in self.calls if c[0] == method and (table is None or c[1] == table)]

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return [dict(r) for r in self.tables.get(table, [])]

    # ── Transport ──

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.split("/rest/v1/", 1)[1]
        params = dict(request.url.params.multi_items())
        body = json.loads(request.content) if request.content else None
        self.calls.append((request.method, path, params, body))

        for i, (method, table, outcome) in enumerate(self._failures):
            if method == request.method and table == path:
                del self._failures[i]
                if outcome is None:
                    raise httpx.ConnectError("connection refused", request=request)
                status, payload = outcome
                return httpx.Response(status, json=payload)

        if path.startswith("rpc/"):
            return httpx.Response(200, json=self.rpc_results.get(path[4:]))
        if request.method == "GET":
            return httpx.Response(200, json=self._select(path, params))
        if request.method == "POST":
            return httpx.Response(201, json=[self._insert(path, body)])
        if request.method == "PATCH":
            for row in self._match(path, params):
                row.update(body)
            return httpx.Response(204)
        if request.method == "DELETE":
            doomed = {id(r) for r in self._match(path, params)}
            self.tables[path] = [r for r in self.tables[path] if id(r) not in doomed]
            return httpx.Response(204)
        return httpx.Response(405, json={"message": "method not allowed"})

    def _select(self, table: str, params: Dict[str, str]) -> List[Dict[str, Any]]:
        rows = [dict(r) for r in self._match(table, params)]
        order = params.get("order")
        if order:
            column, _, direction = order.partition(".")
            rows.sort(key=lambda r: str(r.get(column) or ""), reverse=direction == "desc")
        columns = params.get("select", "*")
        if columns != "*":
            keep = columns.split(",")
            rows = [{k: r.get(k) for k in keep} for r in rows]
        return rows

    def _insert(self, table: str, body: Dict[str, Any]) -> Dict[str, Any]:
        stamp = _iso(NOW + timedelta(seconds=next(self._clock)))
        row = {**self.DEFAULTS.get(table, {}), **body}
        row.setdefault("id", f"{table[:4]}-{next(self._ids)}")
        for column in self.TIMESTAMPS.get(table, ()):
            row.setdefault(column, stamp)
        self.tables.setdefault(table, []).append(row)
        return dict(row)

    def _match(self, table: str, params: Dict[str, str]) -> List[Dict[str, Any]]:
        filters = {k: v for k, v in params.items() if k not in ("select", "order")}
        return [r for r in self.tables.get(table, []) if all(_matches(r.get(c), f) for c, f in filters.items())]


def _matches(value: Any, expression: str) -> bool:
    op, _, operand = expression.partition(".")
    if op == "eq":
        return value is not None and str(value) == operand
    if op == "neq":
        return str(value) != operand
    if op == "is":
        return value is None if operand == "null" else str(value).lower() == operand
    if op == "in":
        items = [i.strip().strip('"') for i in operand.strip("()").split(",") if i.strip()]
        return value is not None and str(value) in items
    raise AssertionError(f"unsupported filter {expression!r}")


# ---------------------------------------------------------------------------
# Row / record factories
# ---------------------------------------------------------------------------

def make_task_row(task_id: str, **overrides: Any) -> Dict[str, Any]:
    row = {
        "id": task_id,
        "title": f"Task {task_id}",
        "description": "",
        "priority": "medium",
        "status": "todo",
        "due_date": _iso(NOW + timedelta(days=1)),
        "created_at": _iso(NOW - timedelta(days=2)),
        "updated_at": _iso(NOW - timedelta(days=2)),
        "created_by": "u1",
        "assigned_to": None,
        "team_id": None,
    }
    row.update(overrides)
    return row


@pytest.fixture
def task_row() -> Callable[..., Dict[str, Any]]:
    return make_task_row


async def _no_sleep(_delay: float) -> None:
    return None


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

@pytest.fixture
def user() -> UserContext:
    return UserContext(id="u1", email="u1@example.com", name="User One", access_token="jwt-u1")


@pytest.fixture
def other_user() -> UserContext:
    return UserContext(id="u2", email="u2@example.com", name="User Two")


@pytest.fixture
def fake() -> FakePostgrest:
    return FakePostgrest()


@pytest.fixture
def client(fake) -> RestClient:
    return RestClient(
        BASE_URL,
        "anon-key",
        access_token="jwt-u1",
        retry_count=0,
        transport=httpx.MockTransport(fake),
        sleep=_no_sleep,
    )


@pytest.fixture
def hub() -> InMemoryChangeHub:
    return InMemoryChangeHub()


@pytest.fixture
def notices() -> NoticeLog:
    return NoticeLog()


@pytest.fixture
def task_provider(client, hub, user, notices) -> TaskProvider:
    return TaskProvider(
        task_adapter(client),
        hub,
        identity=lambda: user,
        notices=notices,
        clock=lambda: NOW,
    )


@pytest.fixture
def team_provider(client, hub, user, notices) -> TeamProvider:
    return TeamProvider(client, hub, identity=lambda: user, notices=notices)


@pytest.fixture
def now() -> datetime:
    return NOW
