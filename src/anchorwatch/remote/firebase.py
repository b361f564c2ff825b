"""Realtime Database client over the REST and streaming APIs.

Authentication is anonymous: the first call signs up a new anonymous user
through the identity REST endpoint and later calls refresh its ID token
when it expires or when the database rejects it.
"""

import copy
import json
import logging
import time
from collections.abc import AsyncIterator
from typing import Any

import httpx

from anchorwatch.errors import (
    AuthenticationError,
    PermissionDeniedError,
    QuotaExceededError,
    RemoteStoreError,
    RemoteUnavailableError,
)
from anchorwatch.remote.base import RemoteStore, join_path, set_at, split_path

logger = logging.getLogger(__name__)

SIGN_UP_URL = "https://identitytoolkit.googleapis.com/v1/accounts:signUp"
REFRESH_URL = "https://securetoken.googleapis.com/v1/token"

# Refresh this many seconds before the ID token actually expires.
_EXPIRY_MARGIN = 60

_QUOTA_MARKERS = ("RESOURCE_EXHAUSTED", "QUOTA_EXCEEDED")


def _raise_for_status(response: httpx.Response, what: str) -> None:
    if response.is_success:
        return
    body = response.text
    if response.status_code == 429 or any(m in body for m in _QUOTA_MARKERS):
        raise QuotaExceededError(f"{what}: quota exceeded")
    if response.status_code in (401, 403):
        raise PermissionDeniedError(f"{what}: permission denied (HTTP {response.status_code})")
    if response.status_code >= 500:
        raise RemoteUnavailableError(f"{what}: HTTP {response.status_code}")
    raise RemoteStoreError(f"{what}: HTTP {response.status_code}: {body[:200]}")


class RealtimeDatabaseStore(RemoteStore):
    def __init__(
        self,
        database_url: str,
        api_key: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        self.database_url = database_url.rstrip("/")
        self.api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._uid: str | None = None
        self._id_token: str | None = None
        self._refresh_token: str | None = None
        self._expires_at = 0.0

    @property
    def uid(self) -> str | None:
        return self._uid

    # Authentication

    async def ensure_authenticated(self) -> str:
        if self._uid is None or self._refresh_token is None:
            await self._sign_up()
        elif time.monotonic() >= self._expires_at:
            await self.refresh_credentials()
        if self._uid is None:
            raise AuthenticationError("No identity after sign-in")
        return self._uid

    async def _sign_up(self) -> None:
        try:
            response = await self._client.post(
                SIGN_UP_URL, params={"key": self.api_key}, json={"returnSecureToken": True}
            )
        except httpx.TransportError as e:
            raise RemoteUnavailableError(f"Anonymous sign-in failed: {e}") from e
        if not response.is_success:
            raise AuthenticationError(f"Anonymous sign-in failed (HTTP {response.status_code})")
        data = response.json()
        self._uid = data["localId"]
        self._store_token(data["idToken"], data["refreshToken"], data.get("expiresIn", "3600"))
        logger.info("Signed in anonymously as %s", self._uid)

    async def refresh_credentials(self) -> None:
        if self._refresh_token is None:
            await self._sign_up()
            return
        try:
            response = await self._client.post(
                REFRESH_URL,
                params={"key": self.api_key},
                data={"grant_type": "refresh_token", "refresh_token": self._refresh_token},
            )
        except httpx.TransportError as e:
            raise RemoteUnavailableError(f"Token refresh failed: {e}") from e
        if not response.is_success:
            raise AuthenticationError(f"Token refresh failed (HTTP {response.status_code})")
        data = response.json()
        self._uid = data.get("user_id", self._uid)
        self._store_token(data["id_token"], data["refresh_token"], data.get("expires_in", "3600"))
        logger.debug("ID token refreshed")

    def _store_token(self, id_token: str, refresh_token: str, expires_in: str) -> None:
        self._id_token = id_token
        self._refresh_token = refresh_token
        self._expires_at = time.monotonic() + int(expires_in) - _EXPIRY_MARGIN

    # Data

    def _url(self, path: str) -> str:
        return f"{self.database_url}/{join_path(path)}.json"

    async def _request(self, method: str, path: str, body: Any = None) -> Any:
        await self.ensure_authenticated()
        kwargs: dict[str, Any] = {"params": {"auth": self._id_token}}
        if method in ("PUT", "PATCH"):
            # PUT null is how a node is deleted, so always send a JSON body
            kwargs["content"] = json.dumps(body)
            kwargs["headers"] = {"Content-Type": "application/json"}
        try:
            response = await self._client.request(method, self._url(path), **kwargs)
        except httpx.TransportError as e:
            raise RemoteUnavailableError(f"{method} {path}: {e}") from e
        _raise_for_status(response, f"{method} {path}")
        return response.json() if response.content else None

    async def read(self, path: str) -> Any:
        return await self._request("GET", path)

    async def write(self, path: str, value: Any) -> None:
        await self._request("PUT", path, value)

    async def update(self, path: str, fields: dict[str, Any]) -> None:
        await self._request("PATCH", path, fields)

    async def remove(self, path: str) -> None:
        await self._request("DELETE", path)

    async def watch(self, path: str) -> AsyncIterator[Any]:
        """Follow the server-sent event stream for ``path``.

        ``put`` replaces the node at the event's path and ``patch`` merges
        children into it; each yields the whole watched value.
        """
        await self.ensure_authenticated()
        snapshot: Any = None
        headers = {"Accept": "text/event-stream"}
        params = {"auth": self._id_token}
        try:
            async with self._client.stream(
                "GET", self._url(path), headers=headers, params=params, timeout=None
            ) as response:
                if not response.is_success:
                    await response.aread()
                    _raise_for_status(response, f"WATCH {path}")
                event = None
                async for line in response.aiter_lines():
                    if line.startswith("event:"):
                        event = line[6:].strip()
                        continue
                    if not line.startswith("data:"):
                        continue
                    data = line[5:].strip()
                    if event in ("cancel", "auth_revoked"):
                        raise PermissionDeniedError(f"WATCH {path}: {event}")
                    if event not in ("put", "patch"):
                        continue
                    message = json.loads(data)
                    parts = split_path(message.get("path", "/"))
                    if event == "put":
                        snapshot = set_at(snapshot, parts, message.get("data"))
                    else:
                        for key, value in (message.get("data") or {}).items():
                            snapshot = set_at(snapshot, parts + split_path(key), value)
                    yield copy.deepcopy(snapshot)
        except httpx.TransportError as e:
            raise RemoteUnavailableError(f"WATCH {path}: {e}") from e

    async def close(self) -> None:
        await self._client.aclose()
