"""Tests for looper_client/actions.py.

Coverage:
- local state changes before the request is even sent
- each action produces the right request body
- create flows: success upserts the confirmed entity, failure alerts and raises
- create placeholders are visible in flight and gone once the request settles
- mute actions that change nothing send nothing
- unknown ids are rejected before any request
- failed fire-and-forget requests are logged, not raised
"""
from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from unittest.mock import AsyncMock

import httpx
import pytest

from conftest import FakeLooperServer
from looper_client.actions import LocalActionGateway
from looper_client.api import LooperApiClient
from looper_client.errors import EntityCreationError, EntityNotFoundError
from looper_client.models import TakeType
from looper_client.state import ReplicaContext


@pytest.fixture
async def api(server: FakeLooperServer) -> AsyncIterator[LooperApiClient]:
    async with server.client() as client:
        yield client


@pytest.fixture
def alerts() -> list[str]:
    return []


@pytest.fixture
def gateway(
    context: ReplicaContext, api: LooperApiClient, alerts: list[str]
) -> LocalActionGateway:
    return LocalActionGateway(context, api, alert=alerts.append)


# ---------------------------------------------------------------------------
# Mute actions
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_audio_unmute_is_local_first(
    gateway: LocalActionGateway, context: ReplicaContext, server: FakeLooperServer
) -> None:
    gateway.set_take_audio_mute(0, 0, 0, False)

    # Replica already updated; request still in flight.
    assert context.tree.take(0, 0, 0).muted is False
    assert context.tree.take(0, 0, 1).muted is False
    assert gateway.pending == 1

    await gateway.drain()

    assert gateway.pending == 0
    assert server.bodies("PATCH", "/api/synths/0/chains/0/takes") == [
        [{"id": 0, "muted": False}, {"id": 1, "muted": False}]
    ]


@pytest.mark.anyio
async def test_midi_mute_sends_coupled_batch(
    gateway: LocalActionGateway, context: ReplicaContext, server: FakeLooperServer
) -> None:
    context.tree.take(0, 0, 1).muted = False
    context.tree.take(0, 0, 0).muted = False

    batch = gateway.set_take_midi_mute(0, 0, 1, True)
    await gateway.drain()

    assert context.tree.take(0, 0, 0).muted is True
    assert context.tree.take(0, 0, 3).muted is True
    assert [p.id for p in batch] == [1, 0, 3]
    assert server.bodies("PATCH", "/api/synths/0/chains/0/takes") == [
        [{"id": 1, "muted": True}, {"id": 0, "muted": True}, {"id": 3, "muted": True}]
    ]


@pytest.mark.anyio
async def test_toggles_round_trip(gateway: LocalActionGateway, context: ReplicaContext) -> None:
    gateway.toggle_take_audio_mute(0, 0, 3)
    assert context.tree.take(0, 0, 3).muted is True
    gateway.toggle_take_midi_mute(0, 0, 3)
    assert context.tree.take(0, 0, 1).muted is False
    await gateway.drain()


@pytest.mark.anyio
async def test_unknown_take_is_rejected_before_request(
    gateway: LocalActionGateway, server: FakeLooperServer
) -> None:
    with pytest.raises(EntityNotFoundError):
        gateway.set_take_audio_mute(0, 0, 99, True)
    assert gateway.pending == 0
    assert server.requests == []


# ---------------------------------------------------------------------------
# Echo and other commands
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_set_chain_echo_sends_every_chain(
    gateway: LocalActionGateway, context: ReplicaContext, server: FakeLooperServer
) -> None:
    gateway.set_chain_echo(0, 2, True)
    await gateway.drain()

    assert [c.echo for c in context.tree.synth(0).chains] == [False, False, True]
    assert server.bodies("PATCH", "/api/synths/0/chains") == [
        [{"id": 0, "echo": False}, {"id": 1, "echo": False}, {"id": 2, "echo": True}]
    ]


@pytest.mark.anyio
async def test_finish_recording(gateway: LocalActionGateway, server: FakeLooperServer) -> None:
    gateway.finish_recording(0, 0, 3)
    await gateway.drain()
    assert len(server.calls("POST", "/api/synths/0/chains/0/takes/3/finish_recording")) == 1


@pytest.mark.anyio
async def test_set_loop_length(
    gateway: LocalActionGateway, context: ReplicaContext, server: FakeLooperServer
) -> None:
    gateway.set_loop_length(4.0, 8)
    assert context.song.loop_length == 4.0
    await gateway.drain()
    assert server.bodies("PATCH", "/api/song") == [{"loop_length": 4.0, "beats": 8}]


@pytest.mark.anyio
async def test_rename_synth(
    gateway: LocalActionGateway, context: ReplicaContext, server: FakeLooperServer
) -> None:
    gateway.rename_synth(1, "Strat")
    assert context.tree.synth(1).name == "Strat"
    await gateway.drain()
    assert server.bodies("PATCH", "/api/synths/1") == [{"id": 1, "name": "Strat"}]


def test_toggle_selected_is_local_only(context: ReplicaContext) -> None:
    chain = context.tree.chain(0, 1)
    assert LocalActionGateway.toggle_selected(chain) is True
    assert LocalActionGateway.toggle_selected(chain) is False


@pytest.mark.anyio
async def test_failed_request_keeps_optimistic_state(
    gateway: LocalActionGateway,
    context: ReplicaContext,
    server: FakeLooperServer,
    caplog: pytest.LogCaptureFixture,
) -> None:
    server.fail_writes = True
    with caplog.at_level(logging.WARNING, logger="looper_client.actions"):
        gateway.set_chain_echo(0, 0, True)
        await gateway.drain()

    assert context.tree.chain(0, 0).echo is True
    assert "failed" in caplog.text


# ---------------------------------------------------------------------------
# Creates
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_create_synth_upserts_confirmed_entity(
    gateway: LocalActionGateway, context: ReplicaContext
) -> None:
    synth = await gateway.create_synth("Juno")

    assert synth.id == 100
    assert context.tree.synths[-1] is synth
    assert synth.name == "Juno"


@pytest.mark.anyio
async def test_create_chain_sets_parent(
    gateway: LocalActionGateway, context: ReplicaContext
) -> None:
    chain = await gateway.create_chain(1, "Clean")

    assert chain.synth_id == 1
    assert chain.selected is False
    assert context.tree.chain(1, 100) is chain


@pytest.mark.anyio
async def test_create_take(gateway: LocalActionGateway, server: FakeLooperServer) -> None:
    take = await gateway.create_take(0, 2, "Groove", TakeType.AUDIO)

    assert take.type == TakeType.AUDIO
    assert take.state == "Waiting"
    assert take.chain_id == 2
    assert server.bodies("POST", "/api/synths/0/chains/2/takes") == [
        {"name": "Groove", "type": "Audio"}
    ]


@pytest.mark.anyio
async def test_create_then_stream_echo_is_noop(
    gateway: LocalActionGateway, context: ReplicaContext, server: FakeLooperServer
) -> None:
    synth = await gateway.create_synth("Juno")
    before = [s.model_dump() for s in context.tree.synths]

    context.tree.apply([server.created["/api/synths/100"]])

    assert [s.model_dump() for s in context.tree.synths] == before
    assert context.tree.synth(100) is synth


@pytest.mark.anyio
async def test_create_failure_alerts_and_raises(
    gateway: LocalActionGateway,
    context: ReplicaContext,
    server: FakeLooperServer,
    alerts: list[str],
) -> None:
    server.create_status = 500

    with pytest.raises(EntityCreationError):
        await gateway.create_chain(0, "Broken")

    assert alerts == ["Could not create chain (HTTP 500)"]
    assert len(context.tree.synth(0).chains) == 3


@pytest.mark.anyio
async def test_create_in_unknown_parent_is_rejected(
    gateway: LocalActionGateway, server: FakeLooperServer
) -> None:
    with pytest.raises(EntityNotFoundError):
        await gateway.create_take(7, 0, "Nowhere")
    assert server.requests == []


# ---------------------------------------------------------------------------
# Create placeholders
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_create_shows_placeholder_while_in_flight(
    gateway: LocalActionGateway,
    context: ReplicaContext,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    seen: list[tuple[int, str]] = []
    create = gateway.api.create_synth

    async def _observe(name: str) -> str:
        seen.extend((s.id, s.name) for s in context.tree.synths)
        return await create(name)

    monkeypatch.setattr(gateway.api, "create_synth", _observe)

    synth = await gateway.create_synth("Juno")

    assert (-1, "Juno") in seen
    assert [s.id for s in context.tree.synths] == [0, 1, 100]
    assert context.tree.synths[-1] is synth


@pytest.mark.anyio
async def test_take_placeholder_is_superseded_by_confirmed_take(
    gateway: LocalActionGateway,
    context: ReplicaContext,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    seen: list[tuple[int, str, TakeType | None]] = []
    create = gateway.api.create_take

    async def _observe(*args: object) -> str:
        seen.extend((t.id, t.name, t.type) for t in context.tree.chain(0, 2).takes)
        return await create(*args)  # type: ignore[arg-type]

    monkeypatch.setattr(gateway.api, "create_take", _observe)

    await gateway.create_take(0, 2, "Groove", TakeType.MIDI)

    assert seen == [(-1, "Groove", TakeType.MIDI)]
    assert [t.id for t in context.tree.chain(0, 2).takes] == [100]


@pytest.mark.anyio
async def test_placeholders_get_distinct_ids(
    gateway: LocalActionGateway,
    context: ReplicaContext,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    seen: list[list[int]] = []
    create = gateway.api.create_chain

    async def _observe(synth_id: int, name: str) -> str:
        seen.append([c.id for c in context.tree.synth(synth_id).chains])
        return await create(synth_id, name)

    monkeypatch.setattr(gateway.api, "create_chain", _observe)

    await gateway.create_chain(1, "Clean")
    await gateway.create_chain(1, "Fuzz")

    assert seen == [[0, -1], [0, 100, -2]]


@pytest.mark.anyio
async def test_rejected_create_removes_placeholder_before_alert(
    context: ReplicaContext, api: LooperApiClient, server: FakeLooperServer
) -> None:
    at_alert: list[list[int]] = []
    gateway = LocalActionGateway(
        context,
        api,
        alert=lambda message: at_alert.append([c.id for c in context.tree.synth(0).chains]),
    )
    server.create_status = 409

    with pytest.raises(EntityCreationError):
        await gateway.create_chain(0, "Broken")

    assert at_alert == [[0, 1, 2]]
    assert [c.id for c in context.tree.synth(0).chains] == [0, 1, 2]


@pytest.mark.anyio
async def test_create_network_error_removes_placeholder(
    gateway: LocalActionGateway,
    context: ReplicaContext,
    alerts: list[str],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(
        gateway.api, "fetch", AsyncMock(side_effect=httpx.ConnectError("connection reset"))
    )

    with pytest.raises(httpx.ConnectError):
        await gateway.create_take(0, 0, "Lost")

    assert [t.id for t in context.tree.chain(0, 0).takes] == [0, 3, 1, 2]
    assert alerts == []


# ---------------------------------------------------------------------------
# Empty batches
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_midi_mute_without_midi_takes_sends_nothing(
    gateway: LocalActionGateway, context: ReplicaContext, server: FakeLooperServer
) -> None:
    context.tree.take(0, 0, 0).associated_midi_takes = []

    batch = gateway.set_take_midi_mute(0, 0, 0, True)
    await gateway.drain()

    assert batch == []
    assert gateway.pending == 0
    assert server.calls("PATCH", "/api/synths/0/chains/0/takes") == []
