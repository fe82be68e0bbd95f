"""Unit tests for taskify.sync.remote — filter encoding, RestClient retries, breaker, adapters."""

from datetime import datetime, timezone

import httpx
import pytest

from taskify.engine.errors import RemoteRejectedError, RemoteUnavailableError
from taskify.sync.models import TaskPatch, TaskStatus
from taskify.sync.remote import (
    CircuitBreaker,
    Op,
    RestClient,
    encode_filters,
    fetch_profiles,
    generate_join_code,
    task_adapter,
    team_adapter,
)

BASE_URL = "http://remote.test/rest/v1"


class _Sleeps:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class _Queue:
    def __init__(self):
        self.entries = []

    def push(self, entry):
        self.entries.append(entry)
        return True


def _client(fake, **kwargs):
    kwargs.setdefault("retry_count", 2)
    return RestClient(BASE_URL, "anon-key", transport=httpx.MockTransport(fake), **kwargs)


class TestEncodeFilters:
    def test_scalars(self):
        assert encode_filters({"created_by": "u1"}) == [("created_by", "eq.u1")]

    def test_null_and_bool(self):
        assert encode_filters({"team_id": None, "archived": False}) == [
            ("team_id", "is.null"), ("archived", "is.false"),
        ]

    def test_in_list_quotes_reserved(self):
        assert encode_filters({"id": ["a", "b,c"]}) == [("id", 'in.(a,"b,c")')]

    def test_enum_and_datetime(self):
        when = datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert encode_filters({"status": TaskStatus.REVIEW, "due_date": Op("lt", when)}) == [
            ("status", "eq.review"), ("due_date", "lt.2024-01-01T00:00:00+00:00"),
        ]

    def test_empty(self):
        assert encode_filters(None) == []


class TestCircuitBreaker:
    def test_opens_after_threshold(self):
        now = [0.0]
        cb = CircuitBreaker("x", failure_threshold=2, recovery_timeout=10, clock=lambda: now[0])
        cb.record_failure()
        assert cb.allow_request() is True
        cb.record_failure()
        assert cb.state == CircuitBreaker.OPEN
        assert cb.allow_request() is False

    def test_half_open_after_timeout(self):
        now = [0.0]
        cb = CircuitBreaker("x", failure_threshold=1, recovery_timeout=10, clock=lambda: now[0])
        cb.record_failure()
        now[0] = 10.0
        assert cb.state == CircuitBreaker.HALF_OPEN
        cb.record_failure()
        assert cb.state == CircuitBreaker.OPEN
        now[0] = 25.0
        cb.record_success()
        assert cb.state == CircuitBreaker.CLOSED


class TestRestClient:
    @pytest.mark.asyncio
    async def test_select_sends_auth_and_params(self):
        seen = {}

        def handler(request):
            seen["headers"] = request.headers
            seen["params"] = list(request.url.params.multi_items())
            return httpx.Response(200, json=[{"id": "t1"}])

        client = RestClient(
            BASE_URL, "anon-key", access_token="jwt", transport=httpx.MockTransport(handler),
        )
        rows = await client.select("tasks", {"created_by": "u1"}, order="created_at.desc")
        await client.aclose()
        assert rows == [{"id": "t1"}]
        assert seen["headers"]["apikey"] == "anon-key"
        assert seen["headers"]["authorization"] == "Bearer jwt"
        assert seen["params"] == [
            ("select", "*"), ("created_by", "eq.u1"), ("order", "created_at.desc"),
        ]
        assert client.is_closed

    @pytest.mark.asyncio
    async def test_retries_server_errors(self, fake):
        sleeps = _Sleeps()
        fake.fail("GET", "tasks", status=503)
        fake.fail("GET", "tasks", status=429)
        client = _client(fake, sleep=sleeps)
        assert await client.select("tasks") == []
        assert sleeps.delays == [0.5, 1.0]
        assert len(fake.calls_to("GET", "tasks")) == 3

    @pytest.mark.asyncio
    async def test_exhausted_transport_errors(self, fake):
        sleeps = _Sleeps()
        queue = _Queue()
        fake.disconnect("GET", "tasks", times=3)
        client = _client(fake, sleep=sleeps, backoff="linear", log_queue=queue)
        with pytest.raises(RemoteUnavailableError) as exc_info:
            await client.select("tasks")
        assert exc_info.value.is_transient
        assert "3 attempt(s)" in exc_info.value.message
        assert sleeps.delays == [0.5, 1.0]
        assert queue.entries[-1].data["success"] is False
        assert queue.entries[-1].data["attempts"] == 3

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, fake):
        fake.fail("POST", "tasks", status=409, body={"message": "duplicate", "code": "23505", "details": "id"})
        client = _client(fake, sleep=_Sleeps())
        with pytest.raises(RemoteRejectedError) as exc_info:
            await client.insert("tasks", {"title": "x"})
        err = exc_info.value
        assert err.status_code == 409
        assert err.code == "23505"
        assert err.details == "id"
        assert len(fake.calls_to("POST", "tasks")) == 1
        assert client.breaker.state == CircuitBreaker.CLOSED

    @pytest.mark.asyncio
    async def test_insert_not_retried_after_lost_response(self, fake):
        def handler(request):
            response = fake(request)
            if request.method == "POST":
                raise httpx.ReadTimeout("response lost", request=request)
            return response

        client = RestClient(BASE_URL, retry_count=2, transport=httpx.MockTransport(handler), sleep=_Sleeps())
        with pytest.raises(RemoteUnavailableError):
            await task_adapter(client).create({
                "title": "Once", "due_date": datetime(2024, 6, 1, tzinfo=timezone.utc), "created_by": "u1",
            })
        assert len(fake.calls_to("POST", "tasks")) == 1
        assert len(fake.rows("tasks")) == 1

    @pytest.mark.asyncio
    async def test_insert_not_retried_on_server_error(self, fake):
        fake.fail("POST", "tasks", status=502)
        client = _client(fake, sleep=_Sleeps())
        with pytest.raises(RemoteUnavailableError):
            await client.insert("tasks", {"title": "x"})
        assert len(fake.calls_to("POST", "tasks")) == 1

    @pytest.mark.asyncio
    async def test_insert_retried_when_never_sent(self, fake):
        sleeps = _Sleeps()
        fake.disconnect("POST", "tasks")
        fake.fail("POST", "tasks", status=429)
        client = _client(fake, sleep=sleeps)
        row = await client.insert("tasks", {"title": "x"})
        assert row["title"] == "x"
        assert len(fake.calls_to("POST", "tasks")) == 3
        assert len(fake.rows("tasks")) == 1
        assert sleeps.delays == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_circuit_open_fails_fast(self, fake):
        fake.fail("GET", "tasks", status=500, times=2)
        client = _client(fake, retry_count=0, failure_threshold=2)
        for _ in range(2):
            with pytest.raises(RemoteUnavailableError):
                await client.select("tasks")
        with pytest.raises(RemoteUnavailableError, match="circuit open"):
            await client.select("tasks")
        assert len(fake.calls_to("GET", "tasks")) == 2

    @pytest.mark.asyncio
    async def test_non_list_select_rejected(self):
        client = RestClient(BASE_URL, transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"id": 1})))
        with pytest.raises(RemoteRejectedError, match="list of rows"):
            await client.select("tasks")

    @pytest.mark.asyncio
    async def test_update_and_delete_encode_match(self, fake):
        client = _client(fake)
        await client.update("tasks", {"id": "t1"}, {"title": "x"})
        await client.delete("team_members", {"team_id": "team-1", "user_id": "u1"})
        assert fake.calls[0] == ("PATCH", "tasks", {"id": "eq.t1"}, {"title": "x"})
        assert fake.calls[1][2] == {"team_id": "eq.team-1", "user_id": "eq.u1"}

    @pytest.mark.asyncio
    async def test_generate_join_code(self, fake):
        client = _client(fake)
        assert await generate_join_code(client) == "JOIN1234"
        fake.rpc_results["generate_team_join_code"] = None
        code = await generate_join_code(client)
        assert len(code) == 8
        assert code.isalnum() and code.upper() == code


class TestRemoteSyncAdapter:
    @pytest.mark.asyncio
    async def test_fetch_all_translates_in_order(self, fake, client, task_row):
        fake.seed(
            "tasks",
            task_row("t1", created_at="2024-05-01T00:00:00+00:00", updated_at="2024-05-01T00:00:00+00:00"),
            task_row("t2", created_at="2024-05-03T00:00:00+00:00", updated_at="2024-05-03T00:00:00+00:00"),
        )
        tasks = await task_adapter(client).fetch_all({"created_by": "u1"})
        assert [t.id for t in tasks] == ["t2", "t1"]

    @pytest.mark.asyncio
    async def test_custom_order(self, fake, client, task_row):
        fake.seed("tasks", task_row("t1"))
        await task_adapter(client, order="due_date.asc").fetch_all()
        assert fake.calls[0][2]["order"] == "due_date.asc"

    @pytest.mark.asyncio
    async def test_malformed_row_rejected(self, fake, client, task_row):
        fake.seed("tasks", task_row("t1", status="archived"))
        with pytest.raises(RemoteRejectedError):
            await task_adapter(client).fetch_all()

    @pytest.mark.asyncio
    async def test_create_strips_server_fields(self, fake, client):
        created = await task_adapter(client).create({
            "id": "tmp-1", "title": "Ship", "due_date": datetime(2024, 6, 1, tzinfo=timezone.utc),
            "created_by": "u1", "created_at": datetime(2024, 5, 1, tzinfo=timezone.utc),
            "assigned_to": None,
        })
        body = fake.calls_to("POST", "tasks")[0][3]
        assert "id" not in body and "created_at" not in body and "assigned_to" not in body
        assert created.id.startswith("task-")
        assert created.status == TaskStatus.TODO

    @pytest.mark.asyncio
    async def test_create_missing_required(self, fake, client):
        with pytest.raises(RemoteRejectedError) as exc_info:
            await team_adapter(client).create({"name": "Core", "created_by": "u1"})
        assert exc_info.value.context["missing"] == ["join_code"]
        assert fake.calls == []

    @pytest.mark.asyncio
    async def test_update_sends_only_supplied_fields(self, fake, client):
        await task_adapter(client).update("t1", TaskPatch(assigned_to=None, status="review"))
        body = fake.calls_to("PATCH", "tasks")[0][3]
        assert body == {"assigned_to": None, "status": "review"}

    @pytest.mark.asyncio
    async def test_empty_update_sends_nothing(self, fake, client):
        await task_adapter(client).update("t1", {})
        assert fake.calls == []

    @pytest.mark.asyncio
    async def test_delete_missing_row_ok(self, fake, client):
        await task_adapter(client).delete("nope")
        assert fake.calls_to("DELETE", "tasks")[0][2] == {"id": "eq.nope"}


class TestFetchProfiles:
    @pytest.mark.asyncio
    async def test_single_query(self, fake, client):
        fake.seed("profiles", {"id": "u1", "name": "Ada", "email": "a@x.io"}, {"id": "u3", "name": "Cy"})
        profiles = await fetch_profiles(client, ["u3", "u1", "u1", "u9"])
        assert set(profiles) == {"u1", "u3"}
        assert profiles["u1"].name == "Ada"
        assert len(fake.calls) == 1
        assert fake.calls[0][2]["id"] == "in.(u1,u3,u9)"

    @pytest.mark.asyncio
    async def test_no_ids_no_query(self, fake, client):
        assert await fetch_profiles(client, []) == {}
        assert fake.calls == []
