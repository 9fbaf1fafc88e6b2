"""Shared fixtures for the looper client tests.

No network: every HTTP call goes through ``FakeLooperServer``, an in-process
``httpx.MockTransport`` handler that serves a small tree, records every
request, and replays queued update batches.

Run the suite:
    pytest tests/ -v
"""
from __future__ import annotations

import json
import logging
from collections.abc import Iterable

import httpx
import pytest

from looper_client.api import LooperApiClient
from looper_client.state import ReplicaContext


def pytest_configure(config: pytest.Config) -> None:
    logging.getLogger("httpcore").setLevel(logging.CRITICAL)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


# ---------------------------------------------------------------------------
# Wire-format builders
# ---------------------------------------------------------------------------


def make_take(
    take_id: int,
    name: str,
    take_type: str = "Midi",
    muted: bool = False,
    associated: Iterable[int] = (),
    state: str = "Finished",
) -> dict[str, object]:
    """Return a complete Take object as ``GET /api/synths`` serialises it."""
    return {
        "id": take_id,
        "name": name,
        "type": take_type,
        "state": state,
        "muted": muted,
        "muted_scheduled": False,
        "associated_midi_takes": list(associated),
        "playing_since": None,
        "duration": None,
    }


def make_chain(
    chain_id: int,
    name: str,
    takes: list[dict[str, object]] | None = None,
    echo: bool = False,
    midi: bool = True,
) -> dict[str, object]:
    return {"id": chain_id, "name": name, "midi": midi, "echo": echo, "takes": takes or []}


def make_synth(
    synth_id: int, name: str, chains: list[dict[str, object]] | None = None
) -> dict[str, object]:
    return {"id": synth_id, "name": name, "chains": chains or []}


def sample_tree() -> list[dict[str, object]]:
    """Two synths; the "Pad" chain has two audio takes sharing MIDI take 1.

    - take 0 "Flausch": audio, muted, associated MIDI [1]
    - take 3 "gefiltertes Flausch": audio, unmuted, associated MIDI [1, 2]
    - takes 1 and 2: MIDI, both muted
    """
    return [
        make_synth(
            0,
            "Deepmind 13",
            [
                make_chain(
                    0,
                    "Pad",
                    [
                        make_take(0, "Flausch", "Audio", muted=True, associated=[1]),
                        make_take(3, "gefiltertes Flausch", "Audio", associated=[1, 2]),
                        make_take(1, "Flausch (MIDI)", muted=True),
                        make_take(2, "Filter controller", muted=True),
                    ],
                ),
                make_chain(1, "Lead", echo=True),
                make_chain(2, "Bass"),
            ],
        ),
        make_synth(1, "Guitar", [make_chain(0, "Distorted", midi=False)]),
    ]


# ---------------------------------------------------------------------------
# Fake server
# ---------------------------------------------------------------------------


class FakeLooperServer:
    """Minimal stand-in for the looper REST API.

    Attributes tests may tweak:
        create_status: status code returned by every POST create.
        fail_writes: answer PATCH / command POSTs with HTTP 500.
        update_batches: queued ``/api/updates`` responses, served in order;
                        an empty list is served once the queue is drained.
    """

    def __init__(self, synths: list[dict[str, object]] | None = None) -> None:
        self.synths = synths if synths is not None else sample_tree()
        self.song: dict[str, object] = {"transport_position": 1.5, "loop_length": 8.0}
        self.update_batches: list[list[dict[str, object]]] = []
        self.requests: list[httpx.Request] = []
        self.created: dict[str, dict[str, object]] = {}
        self.create_status = 201
        self.fail_writes = False
        self._next_id = 100

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def client(self) -> LooperApiClient:
        return LooperApiClient(base_url="http://looper.test", transport=self.transport())

    def bodies(self, method: str, path: str) -> list[object]:
        """JSON bodies of every recorded request to ``method path``."""
        return [
            json.loads(r.content)
            for r in self.requests
            if r.method == method and r.url.path == path and r.content
        ]

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        method, path = request.method, request.url.path

        if method == "GET":
            if path == "/api/synths":
                return httpx.Response(200, json=self.synths)
            if path == "/api/song":
                return httpx.Response(200, json=self.song)
            if path == "/api/updates":
                batch = self.update_batches.pop(0) if self.update_batches else []
                return httpx.Response(200, json=batch)
            if path in self.created:
                return httpx.Response(200, json=self.created[path])
            return httpx.Response(404, json={"error": "not found"})

        if method == "POST" and path.endswith(("/synths", "/chains", "/takes")):
            if self.create_status != 201:
                return httpx.Response(self.create_status)
            body = json.loads(request.content)
            new_id = self._next_id
            self._next_id += 1
            location = f"{path}/{new_id}"
            if path.endswith("/synths"):
                entity = make_synth(new_id, body["name"])
            elif path.endswith("/chains"):
                entity = make_chain(new_id, body["name"])
            else:
                entity = make_take(new_id, body["name"], body["type"], state="Waiting")
            self.created[location] = entity
            return httpx.Response(201, headers={"Location": location})

        if self.fail_writes:
            return httpx.Response(500)
        return httpx.Response(200)


@pytest.fixture
def server() -> FakeLooperServer:
    return FakeLooperServer()


@pytest.fixture
def context() -> ReplicaContext:
    """A replica loaded with ``sample_tree()``."""
    ctx = ReplicaContext()
    ctx.tree.load(sample_tree())
    return ctx
