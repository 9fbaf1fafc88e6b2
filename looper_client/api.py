"""Async HTTP client for the looper server's REST API.

Thin, typed wrapper around :class:`httpx.AsyncClient`.  It knows the
endpoint paths and request bodies and nothing about the replica: callers get
parsed JSON (or the ``Location`` of a created resource) back and decide what
to do with it.

Usage::

    async with LooperApiClient(base_url="http://localhost:8000") as api:
        synths = await api.fetch_synths()
        location = await api.create_synth("Deepmind 13")
        synth = await api.fetch(location)

The long-poll request gets a read timeout of the poll window plus
``request_timeout_seconds`` so the server can hold it open for the whole
window.
"""
from __future__ import annotations

import logging
import types

import httpx

from looper_client.config import settings
from looper_client.errors import EntityCreationError, ProtocolError
from looper_client.models import (
    ChainPatch,
    ChainPost,
    SongPatchBody,
    SongSnapshot,
    SynthPost,
    TakePatch,
    TakePost,
    TakeType,
)

logger = logging.getLogger(__name__)

JSONObject = dict[str, object]


class LooperApiClient:
    """Async client for every endpoint the replica depends on.

    Args:
        base_url: Server root (e.g. ``"http://localhost:8000"``).  Defaults
                  to ``settings.base_url``.
        timeout: Timeout in seconds for ordinary requests.
        transport: Optional httpx transport, used by tests to fake the server.
    """

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or settings.base_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.request_timeout_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    # ------------------------------------------------------------------
    # Async context manager
    # ------------------------------------------------------------------

    async def __aenter__(self) -> LooperApiClient:
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
        )
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _require_client(self) -> httpx.AsyncClient:
        """Return the underlying client or raise if not inside context manager."""
        if self._client is None:
            raise RuntimeError("LooperApiClient must be used as an async context manager.")
        return self._client

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def fetch_synths(self) -> list[JSONObject]:
        """``GET /api/synths`` — the full tree."""
        return _expect_list(await self._get_json("/api/synths"))

    async def fetch(self, location: str) -> JSONObject:
        """``GET <Location>`` — one entity returned by a create call."""
        data = await self._get_json(location)
        if not isinstance(data, dict):
            raise ProtocolError(f"Expected an object from {location}, got {type(data).__name__}")
        return data

    async def fetch_song(self) -> SongSnapshot:
        """``GET /api/song``."""
        data = await self._get_json("/api/song")
        if not isinstance(data, dict):
            raise ProtocolError("Expected an object from /api/song")
        return SongSnapshot(**data)  # type: ignore[typeddict-item]

    async def poll_updates(self, since: int, seconds: int) -> list[JSONObject]:
        """``GET /api/updates`` — long-poll for log entries with id >= *since*.

        The server holds the request for up to *seconds* and answers with an
        empty list if nothing happened.
        """
        response = await self._require_client().get(
            "/api/updates",
            params={"since": since, "seconds": seconds},
            timeout=httpx.Timeout(self.timeout, read=seconds + self.timeout),
        )
        response.raise_for_status()
        return _expect_list(_decode(response))

    # ------------------------------------------------------------------
    # Creates: each returns the Location of the new resource
    # ------------------------------------------------------------------

    async def create_synth(self, name: str) -> str:
        body: SynthPost = {"name": name}
        return await self._post_created("/api/synths", body, what="synth")

    async def create_chain(self, synth_id: int, name: str) -> str:
        body: ChainPost = {"name": name}
        return await self._post_created(
            f"/api/synths/{synth_id}/chains", body, what="chain"
        )

    async def create_take(
        self,
        synth_id: int,
        chain_id: int,
        name: str,
        take_type: TakeType = TakeType.AUDIO,
    ) -> str:
        body: TakePost = {"name": name, "type": take_type.value}
        return await self._post_created(
            f"/api/synths/{synth_id}/chains/{chain_id}/takes", body, what="take"
        )

    # ------------------------------------------------------------------
    # Patches and commands
    # ------------------------------------------------------------------

    async def rename_synth(self, synth_id: int, name: str) -> None:
        await self._send("PATCH", f"/api/synths/{synth_id}", {"id": synth_id, "name": name})

    async def patch_chains(self, synth_id: int, patches: list[ChainPatch]) -> None:
        await self._send("PATCH", f"/api/synths/{synth_id}/chains", _dump(patches))

    async def patch_takes(
        self, synth_id: int, chain_id: int, patches: list[TakePatch]
    ) -> None:
        await self._send(
            "PATCH", f"/api/synths/{synth_id}/chains/{chain_id}/takes", _dump(patches)
        )

    async def finish_recording(self, synth_id: int, chain_id: int, take_id: int) -> None:
        await self._send(
            "POST",
            f"/api/synths/{synth_id}/chains/{chain_id}/takes/{take_id}/finish_recording",
        )

    async def patch_song(self, loop_length: float, beats: int) -> None:
        body: SongPatchBody = {"loop_length": loop_length, "beats": beats}
        await self._send("PATCH", "/api/song", body)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _get_json(self, path: str) -> object:
        response = await self._require_client().get(path)
        response.raise_for_status()
        return _decode(response)

    async def _send(self, method: str, path: str, body: object = None) -> None:
        logger.debug("📡 %s %s", method, path)
        response = await self._require_client().request(method, path, json=body)
        response.raise_for_status()

    async def _post_created(self, path: str, body: object, what: str) -> str:
        response = await self._require_client().post(path, json=body)
        if response.status_code != 201:
            logger.error("❌ Creating %s failed: HTTP %d", what, response.status_code)
            raise EntityCreationError(what, response.status_code)
        location = response.headers.get("Location")
        if not location:
            raise ProtocolError(f"201 for new {what} carried no Location header")
        logger.info("✅ Created %s at %s", what, location)
        return location


def _dump(patches: list[ChainPatch] | list[TakePatch]) -> list[JSONObject]:
    return [p.model_dump(mode="json", exclude_unset=True) for p in patches]


def _decode(response: httpx.Response) -> object:
    """Parse a JSON body; anything else (e.g. a proxy error page) is a ProtocolError."""
    try:
        return response.json()
    except ValueError as exc:
        raise ProtocolError(
            f"Non-JSON response from {response.request.url.path}: {exc}"
        ) from exc


def _expect_list(data: object) -> list[JSONObject]:
    if not isinstance(data, list):
        raise ProtocolError(f"Expected a JSON array, got {type(data).__name__}")
    return data
