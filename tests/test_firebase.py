"""Tests for the Realtime Database REST client."""

import json

import httpx
import pytest

from anchorwatch.errors import (
    AuthenticationError,
    PermissionDeniedError,
    QuotaExceededError,
    RemoteStoreError,
    RemoteUnavailableError,
)
from anchorwatch.remote.firebase import REFRESH_URL, SIGN_UP_URL, RealtimeDatabaseStore

DB_URL = "https://boat-test.firebaseio.com"

SIGN_UP = {"localId": "uid-1", "idToken": "id-1", "refreshToken": "refresh-1", "expiresIn": "3600"}


class Recorder:
    """MockTransport handler that answers sign-up and delegates database calls."""

    def __init__(self, database=None) -> None:
        self.requests: list[httpx.Request] = []
        self.database = database or (lambda request: httpx.Response(200, json=None))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        if url.startswith(SIGN_UP_URL):
            return httpx.Response(200, json=SIGN_UP)
        if url.startswith(REFRESH_URL):
            return httpx.Response(
                200,
                json={"user_id": "uid-1", "id_token": "id-2", "refresh_token": "refresh-2"},
            )
        return self.database(request)


def _store(handler) -> RealtimeDatabaseStore:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RealtimeDatabaseStore(DB_URL, "api-key", client=client)


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_anonymous_sign_up(self):
        recorder = Recorder()
        store = _store(recorder)

        assert await store.ensure_authenticated() == "uid-1"
        assert await store.ensure_authenticated() == "uid-1"

        sign_ups = [r for r in recorder.requests if str(r.url).startswith(SIGN_UP_URL)]
        assert len(sign_ups) == 1
        assert sign_ups[0].url.params["key"] == "api-key"
        assert json.loads(sign_ups[0].content) == {"returnSecureToken": True}

    @pytest.mark.asyncio
    async def test_sign_up_rejected(self):
        store = _store(lambda request: httpx.Response(400, json={"error": "nope"}))
        with pytest.raises(AuthenticationError):
            await store.ensure_authenticated()

    @pytest.mark.asyncio
    async def test_refresh_uses_form_data(self):
        recorder = Recorder()
        store = _store(recorder)
        await store.ensure_authenticated()

        await store.refresh_credentials()

        refresh = recorder.requests[-1]
        assert str(refresh.url).startswith(REFRESH_URL)
        assert refresh.headers["content-type"] == "application/x-www-form-urlencoded"
        assert b"grant_type=refresh_token" in refresh.content
        assert b"refresh_token=refresh-1" in refresh.content

        await store.read("a")
        assert recorder.requests[-1].url.params["auth"] == "id-2"


class TestRequests:
    @pytest.mark.asyncio
    async def test_read_sends_auth(self):
        def database(request):
            assert request.method == "GET"
            assert request.url.path == "/sessions/ABC.json"
            return httpx.Response(200, json={"isActive": True})

        recorder = Recorder(database)
        store = _store(recorder)

        assert await store.read("sessions/ABC") == {"isActive": True}
        assert recorder.requests[-1].url.params["auth"] == "id-1"

    @pytest.mark.asyncio
    async def test_write_none_sends_null(self):
        recorder = Recorder()
        store = _store(recorder)

        await store.write("sessions/ABC/alarm", None)

        request = recorder.requests[-1]
        assert request.method == "PUT"
        assert request.content == b"null"

    @pytest.mark.asyncio
    async def test_update_is_patch(self):
        recorder = Recorder()
        store = _store(recorder)

        await store.update("sessions/ABC", {"monitoringActive": True})

        request = recorder.requests[-1]
        assert request.method == "PATCH"
        assert json.loads(request.content) == {"monitoringActive": True}

    @pytest.mark.asyncio
    async def test_remove_is_delete(self):
        recorder = Recorder()
        store = _store(recorder)
        await store.remove("deviceSessions/uid-1")
        assert recorder.requests[-1].method == "DELETE"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("status", "body", "error"),
        [
            (401, "Unauthorized", PermissionDeniedError),
            (403, "Permission denied", PermissionDeniedError),
            (429, "Too many", QuotaExceededError),
            (400, "RESOURCE_EXHAUSTED", QuotaExceededError),
            (503, "Unavailable", RemoteUnavailableError),
            (400, "Bad path", RemoteStoreError),
        ],
    )
    async def test_status_mapping(self, status, body, error):
        store = _store(Recorder(lambda request: httpx.Response(status, text=body)))
        with pytest.raises(error):
            await store.read("sessions")

    @pytest.mark.asyncio
    async def test_connection_error_is_unavailable(self):
        def database(request):
            raise httpx.ConnectError("no route", request=request)

        store = _store(Recorder(database))
        with pytest.raises(RemoteUnavailableError):
            await store.read("sessions")


def _sse(*events: tuple[str, object]) -> bytes:
    lines = []
    for event, data in events:
        lines.append(f"event: {event}\ndata: {json.dumps(data)}\n\n")
    return "".join(lines).encode()


class TestWatch:
    @pytest.mark.asyncio
    async def test_put_and_patch_events(self):
        body = _sse(
            ("put", {"path": "/", "data": {"isActive": True}}),
            ("keep-alive", None),
            ("patch", {"path": "/", "data": {"monitoringActive": True}}),
            ("put", {"path": "/alarm", "data": {"id": "e1"}}),
        )

        def database(request):
            assert request.headers["accept"] == "text/event-stream"
            return httpx.Response(200, content=body)

        store = _store(Recorder(database))
        values = [v async for v in store.watch("sessions/ABC")]

        assert values == [
            {"isActive": True},
            {"isActive": True, "monitoringActive": True},
            {"isActive": True, "monitoringActive": True, "alarm": {"id": "e1"}},
        ]

    @pytest.mark.asyncio
    async def test_cancel_event_is_permission_error(self):
        body = _sse(("put", {"path": "/", "data": None}), ("cancel", None))
        store = _store(Recorder(lambda request: httpx.Response(200, content=body)))

        values = []
        with pytest.raises(PermissionDeniedError):
            async for value in store.watch("sessions/ABC"):
                values.append(value)
        assert values == [None]

    @pytest.mark.asyncio
    async def test_rejected_stream(self):
        store = _store(Recorder(lambda request: httpx.Response(401, text="denied")))
        with pytest.raises(PermissionDeniedError):
            async for _ in store.watch("sessions/ABC"):
                pass
