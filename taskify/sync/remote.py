"""
Remote Sync Adapter — PostgREST-style table access over httpx.

Pipeline (per call):
    1. Check the circuit breaker (fail fast while the remote is known down)
    2. Encode filters / order into PostgREST query parameters
    3. Execute via httpx.AsyncClient (one pooled client per session)
    4. Retry with backoff on transport errors, 5xx and 429. Inserts and RPCs
       retry only when the request cannot have reached the server (connect
       errors, 429)
    5. Map failures: unreachable -> RemoteUnavailableError, refused -> RemoteRejectedError
    6. Log the call (structured, when a log queue is present)

RemoteSyncAdapter sits on top of RestClient and owns the translation between
wire rows and records for one table.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import string
import time
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Generic,
    Iterable,
    List,
    Mapping,
    NamedTuple,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
    Union,
)

import httpx

from taskify.engine.errors import RemoteRejectedError, RemoteUnavailableError
from taskify.engine.logging import AsyncLogQueue, log_remote_call, push_entry
from taskify.sync import translate
from taskify.sync.models import MemberProfile, Patch, Task, Team, TeamMember

logger = logging.getLogger("taskify.sync.remote")

E = TypeVar("E")


# ---------------------------------------------------------------------------
# Filter encoding
# ---------------------------------------------------------------------------

class Op(NamedTuple):
    """An explicit PostgREST operator, e.g. ``Op("neq", "completed")``."""

    operator: str
    value: Any


def _scalar(value: Any) -> str:
    if isinstance(value, Enum):
        value = value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _quote(value: Any) -> str:
    text = _scalar(value)
    if any(ch in text for ch in ',()"'):
        return '"' + text.replace('"', '\\"') + '"'
    return text


def encode_filters(filters: Optional[Mapping[str, Any]]) -> List[Tuple[str, str]]:
    """
    Encode ``{column: value}`` scope filters as PostgREST query params.

        "u1"            -> eq.u1
        None            -> is.null
        True / False    -> is.true / is.false
        ["a", "b"]      -> in.(a,b)
        Op("neq", "x")  -> neq.x
    """
    params: List[Tuple[str, str]] = []
    for column, value in (filters or {}).items():
        if isinstance(value, Op):
            params.append((column, f"{value.operator}.{_scalar(value.value)}"))
        elif value is None:
            params.append((column, "is.null"))
        elif isinstance(value, bool):
            params.append((column, f"is.{_scalar(value)}"))
        elif isinstance(value, (list, tuple, set, frozenset)):
            params.append((column, "in.(" + ",".join(_quote(v) for v in value) + ")"))
        else:
            params.append((column, f"eq.{_scalar(value)}"))
    return params


# ---------------------------------------------------------------------------
# Circuit Breaker
# ---------------------------------------------------------------------------

class CircuitBreaker:
    """
    Circuit breaker for the remote store.

    States:
        CLOSED  → requests flow normally
        OPEN    → requests fail fast (no outbound call)
        HALF    → single trial request allowed; success → CLOSED, fail → OPEN
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self._failure_threshold = failure_threshold
        self._recovery_timeout = recovery_timeout
        self._clock = clock
        self._state = self.CLOSED
        self._failure_count = 0
        self._last_failure_time = 0.0

    @property
    def state(self) -> str:
        if self._state == self.OPEN:
            if self._clock() - self._last_failure_time >= self._recovery_timeout:
                self._state = self.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        return self.state != self.OPEN

    def record_success(self) -> None:
        self._failure_count = 0
        self._state = self.CLOSED

    def record_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_time = self._clock()
        if self._state == self.HALF_OPEN or self._failure_count >= self._failure_threshold:
            if self._state != self.OPEN:
                logger.warning(
                    f"Circuit breaker OPEN for '{self.name}': "
                    f"{self._failure_count} consecutive failures"
                )
            self._state = self.OPEN


# ---------------------------------------------------------------------------
# REST client
# ---------------------------------------------------------------------------

# Failures where the request never reached the server.
_NOT_SENT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)


class RestClient:
    """
    Thin async client for a PostgREST endpoint (``{base_url}/{table}``).

    Owns one httpx.AsyncClient; close it with ``aclose()`` when the session ends.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        *,
        access_token: Optional[str] = None,
        timeout: float = 15.0,
        retry_count: int = 2,
        retry_delay: float = 0.5,
        backoff: str = "exponential",
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        log_queue: Optional[AsyncLogQueue] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        headers = {"Accept": "application/json"}
        if api_key:
            headers["apikey"] = api_key
        bearer = access_token or api_key
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"

        self._base_url = base_url.rstrip("/")
        self._retry_count = retry_count
        self._retry_delay = retry_delay
        self._backoff = backoff
        self._log_queue = log_queue
        self._sleep = sleep
        self._breaker = CircuitBreaker(
            name=self._base_url,
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
        )
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout, connect=10.0),
            transport=transport,
        )

    @classmethod
    def from_config(cls, config: Any, access_token: Optional[str] = None, **kwargs: Any) -> "RestClient":
        """Build from a RemoteConfig."""
        return cls(
            config.base_url,
            config.api_key,
            access_token=access_token,
            timeout=config.timeout,
            retry_count=config.retry_count,
            retry_delay=config.retry_delay,
            backoff=config.backoff,
            failure_threshold=config.failure_threshold,
            recovery_timeout=config.recovery_timeout,
            **kwargs,
        )

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def is_closed(self) -> bool:
        return self._client.is_closed

    async def aclose(self) -> None:
        await self._client.aclose()

    # ── Table operations ──

    async def select(
        self,
        table: str,
        filters: Optional[Mapping[str, Any]] = None,
        order: Optional[str] = None,
        columns: str = "*",
    ) -> List[Dict[str, Any]]:
        params = [("select", columns), *encode_filters(filters)]
        if order:
            params.append(("order", order))
        response = await self._request("GET", table, table=table, params=params)
        body = self._json(response, table)
        if not isinstance(body, list):
            raise RemoteRejectedError(
                f"Expected a list of rows from '{table}'",
                table=table, operation="select",
            )
        return body

    async def insert(self, table: str, row: Mapping[str, Any]) -> Dict[str, Any]:
        response = await self._request(
            "POST", table, table=table,
            idempotent=False,
            json=dict(row),
            headers={"Prefer": "return=representation"},
        )
        body = self._json(response, table)
        if isinstance(body, list):
            body = body[0] if body else None
        if not isinstance(body, dict):
            raise RemoteRejectedError(
                f"Insert into '{table}' returned no row",
                table=table, operation="insert",
            )
        return body

    async def update(
        self,
        table: str,
        match: Mapping[str, Any],
        values: Mapping[str, Any],
    ) -> None:
        await self._request(
            "PATCH", table, table=table,
            params=encode_filters(match),
            json=dict(values),
            headers={"Prefer": "return=minimal"},
        )

    async def delete(self, table: str, match: Mapping[str, Any]) -> None:
        await self._request(
            "DELETE", table, table=table,
            params=encode_filters(match),
            headers={"Prefer": "return=minimal"},
        )

    async def rpc(
        self,
        function: str,
        params: Optional[Mapping[str, Any]] = None,
        *,
        idempotent: bool = False,
    ) -> Any:
        """Call a remote function. Pass ``idempotent=True`` for read-only functions."""
        response = await self._request(
            "POST", f"rpc/{function}", table=f"rpc:{function}",
            idempotent=idempotent, json=dict(params or {}),
        )
        if not response.content:
            return None
        return self._json(response, function)

    # ── Transport ──

    async def _request(
        self,
        method: str,
        path: str,
        *,
        table: str,
        idempotent: bool = True,
        params: Optional[Sequence[Tuple[str, str]]] = None,
        json: Optional[Any] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> httpx.Response:
        start_time = time.monotonic()
        url = f"{self._base_url}/{path}"

        if not self._breaker.allow_request():
            self._log_call(table, method, url, 503, start_time, False, 0, "Circuit open")
            raise RemoteUnavailableError(
                f"Remote store unavailable (circuit open) for '{table}'",
                table=table, operation=method,
            )

        last_error = ""
        last_status = 0
        attempts = 0

        for attempt in range(self._retry_count + 1):
            attempts = attempt + 1
            try:
                response = await self._client.request(
                    method, path, params=params, json=json, headers=headers,
                )
            except httpx.TransportError as e:
                last_error = f"{type(e).__name__}: {e}"
                last_status = 0
                retryable = idempotent or isinstance(e, _NOT_SENT_ERRORS)
            else:
                last_status = response.status_code
                if response.status_code < 400:
                    self._breaker.record_success()
                    self._log_call(table, method, url, response.status_code, start_time, True, attempts)
                    return response
                if response.status_code < 500 and response.status_code != 429:
                    # Remote answered and refused: not a health problem.
                    self._breaker.record_success()
                    self._log_call(
                        table, method, url, response.status_code, start_time, False, attempts,
                        f"HTTP {response.status_code}",
                    )
                    raise self._rejected(response, table, method)
                last_error = f"HTTP {response.status_code}"
                # 429 is refused before the request is processed.
                retryable = idempotent or response.status_code == 429

            self._breaker.record_failure()
            if not retryable:
                if attempt < self._retry_count:
                    logger.warning(
                        f"Remote {method} '{table}' failed ({last_error}) after it may have "
                        f"been applied, not retrying"
                    )
                break
            if attempt < self._retry_count and self._breaker.allow_request():
                delay = self._calc_delay(attempt)
                logger.info(
                    f"Remote {method} '{table}' failed ({last_error}), retrying in {delay}s "
                    f"(attempt {attempt + 1}/{self._retry_count})"
                )
                await self._sleep(delay)
                continue
            break

        self._log_call(table, method, url, last_status, start_time, False, attempts, last_error)
        raise RemoteUnavailableError(
            f"Remote {method} '{table}' failed after {attempts} attempt(s): {last_error}",
            table=table, operation=method,
            status_code=last_status or None,
        )

    def _calc_delay(self, attempt: int) -> float:
        if self._backoff == "exponential":
            return self._retry_delay * (2 ** attempt)
        if self._backoff == "linear":
            return self._retry_delay * (attempt + 1)
        return self._retry_delay

    @staticmethod
    def _rejected(response: httpx.Response, table: str, method: str) -> RemoteRejectedError:
        try:
            body = response.json()
        except ValueError:
            body = {"message": response.text}
        if not isinstance(body, dict):
            body = {"message": str(body)}
        message = body.get("message") or f"HTTP {response.status_code}"
        return RemoteRejectedError(
            f"Remote rejected {method} '{table}': {message}",
            table=table,
            operation=method,
            status_code=response.status_code,
            code=body.get("code"),
            details=body.get("details") or body.get("hint"),
        )

    @staticmethod
    def _json(response: httpx.Response, table: str) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise RemoteRejectedError(
                f"Invalid JSON from '{table}'", table=table, operation="decode",
            ) from e

    def _log_call(
        self,
        table: str,
        method: str,
        url: str,
        status_code: int,
        start_time: float,
        success: bool,
        attempts: int,
        error: Optional[str] = None,
    ) -> None:
        duration_ms = (time.monotonic() - start_time) * 1000
        push_entry(
            self._log_queue,
            log_remote_call(table, method, url, status_code, duration_ms, success, attempts, error),
        )


# ---------------------------------------------------------------------------
# Table mappings + adapter
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TableMapping(Generic[E]):
    """How one record type is stored remotely."""

    table: str
    from_row: Callable[[Mapping[str, Any]], E]
    to_row: Callable[[Mapping[str, Any]], Dict[str, Any]]
    field_map: Mapping[str, str]
    order: Optional[str] = None
    required: Tuple[str, ...] = ()


TASKS = TableMapping(
    table="tasks",
    from_row=translate.task_from_row,
    to_row=translate.task_to_row,
    field_map=translate.TASK_FIELDS,
    order="created_at.desc",
    required=("title", "due_date", "created_by"),
)

TEAMS = TableMapping(
    table="teams",
    from_row=translate.team_from_row,
    to_row=translate.team_to_row,
    field_map=translate.TEAM_FIELDS,
    order="created_at.asc",
    required=("name", "created_by", "join_code"),
)

TEAM_MEMBERS = TableMapping(
    table="team_members",
    from_row=translate.member_from_row,
    to_row=translate.member_to_row,
    field_map=translate.MEMBER_FIELDS,
    order="joined_at.asc",
    required=("team_id", "user_id"),
)


PatchLike = Union[Patch, Mapping[str, Any]]


class RemoteSyncAdapter(Generic[E]):
    """
    CRUD for one table, translating rows to records on the way in and
    record fields to rows on the way out.
    """

    def __init__(self, client: RestClient, mapping: TableMapping[E]):
        self._client = client
        self._mapping = mapping

    @property
    def table(self) -> str:
        return self._mapping.table

    async def fetch_all(self, scope_filters: Optional[Mapping[str, Any]] = None) -> List[E]:
        """All rows in scope, in the remote's order, translated to records."""
        rows = await self._client.select(
            self._mapping.table, filters=scope_filters, order=self._mapping.order,
        )
        return [self._mapping.from_row(row) for row in rows]

    async def create(self, fields: Mapping[str, Any]) -> E:
        """
        Insert a record. The server assigns id and timestamps; any ``id``,
        ``created_at`` or ``updated_at`` in ``fields`` is not sent.
        """
        missing = [name for name in self._mapping.required if fields.get(name) in (None, "")]
        if missing:
            raise RemoteRejectedError(
                f"Missing required field(s) for '{self.table}': {', '.join(missing)}",
                table=self.table, operation="create", missing=missing,
            )
        payload = {
            k: v for k, v in fields.items()
            if k not in ("id", "created_at", "updated_at")
        }
        row = await self._client.insert(self.table, self._mapping.to_row(payload))
        return self._mapping.from_row(row)

    async def update(self, entity_id: str, patch: PatchLike) -> None:
        """Send only the supplied fields; explicit None clears a column."""
        changes = patch.changes() if isinstance(patch, Patch) else dict(patch)
        if not changes:
            logger.debug(f"Empty update for {self.table}/{entity_id}, nothing sent")
            return
        row = translate.patch_to_row(changes, self._mapping.field_map)
        await self._client.update(self.table, {"id": entity_id}, row)

    async def delete(self, entity_id: str) -> None:
        """Delete by id. Deleting a missing row is not an error here."""
        await self._client.delete(self.table, {"id": entity_id})


def task_adapter(client: RestClient, order: Optional[str] = None) -> RemoteSyncAdapter[Task]:
    mapping = TASKS
    if order:
        mapping = replace(mapping, order=order)
    return RemoteSyncAdapter(client, mapping)


def team_adapter(client: RestClient) -> RemoteSyncAdapter[Team]:
    return RemoteSyncAdapter(client, TEAMS)


def team_member_adapter(client: RestClient) -> RemoteSyncAdapter[TeamMember]:
    return RemoteSyncAdapter(client, TEAM_MEMBERS)


async def fetch_profiles(client: RestClient, user_ids: Iterable[str]) -> Dict[str, MemberProfile]:
    """Display fields for a set of users, keyed by user id, in one query."""
    ids = sorted(set(user_ids))
    if not ids:
        return {}
    rows = await client.select(
        "profiles", filters={"id": ids}, columns="id,name,email,avatar",
    )
    return {str(row["id"]): translate.profile_from_row(row) for row in rows if row.get("id")}


JOIN_CODE_ALPHABET = string.ascii_uppercase + string.digits


def random_join_code(length: int = 8) -> str:
    return "".join(secrets.choice(JOIN_CODE_ALPHABET) for _ in range(length))


async def generate_join_code(client: RestClient) -> str:
    """Ask the remote for a unique join code; fall back to a random one."""
    code = await client.rpc("generate_team_join_code", idempotent=True)
    if isinstance(code, str) and code:
        return code
    return random_join_code()
