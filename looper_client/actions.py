"""Local action gateway — optimistic edits plus the matching server requests.

Every user action goes through here.  The pattern is always the same:

1. Mutate the replica synchronously (through ``invariants`` where a rule
   applies), so the view reflects the action immediately.
2. Fire the server request as a background task and return without waiting.

Outgoing requests are never retried, deduplicated or rolled back.  If one
fails the optimistic state stands until the update stream says otherwise;
the poller is the only repair mechanism.

Creates need a server-assigned id, so they are awaited.  A placeholder with
a negative local id is inserted first so the view shows the new entity at
once.  It is removed once the request settles.  On success the confirmed
entity is fetched from ``Location`` and upserted through the reconciler,
which makes the later echo from the update stream a no-op.  A non-201 answer
removes the placeholder, reports the failure through the blocking ``alert``
callback and raises ``EntityCreationError``.

Mute actions that change nothing (an audio take without MIDI takes, for
instance) send no request.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine

from looper_client import invariants
from looper_client.api import JSONObject, LooperApiClient
from looper_client.errors import EntityCreationError
from looper_client.models import Chain, ChainPatch, Synth, Take, TakePatch, TakeType
from looper_client.state import ReplicaContext

logger = logging.getLogger(__name__)

AlertCallback = Callable[[str], None]

# Server ids are never negative, so local placeholders count down from -1.
PLACEHOLDER_ID_START = -1


def _log_alert(message: str) -> None:
    logger.error("❌ %s", message)


class LocalActionGateway:
    """Applies user actions to the replica and forwards them to the server.

    Args:
        context: The replica shared with the poller.
        api: Open ``LooperApiClient``.
        alert: Called with a human-readable message when a create fails.
               Defaults to logging at error level.
    """

    def __init__(
        self,
        context: ReplicaContext,
        api: LooperApiClient,
        alert: AlertCallback | None = None,
    ) -> None:
        self.context = context
        self.api = api
        self.alert = alert or _log_alert
        self._pending: set[asyncio.Task[None]] = set()
        self._next_placeholder_id = PLACEHOLDER_ID_START

    # ------------------------------------------------------------------
    # Creates
    # ------------------------------------------------------------------

    async def create_synth(self, name: str) -> Synth:
        tree = self.context.tree
        placeholder = self._reserve_placeholder_id()
        tree.upsert_synth({"id": placeholder, "name": name})
        data = await self._create(
            self.api.create_synth(name), discard=lambda: tree.discard_synth(placeholder)
        )
        return tree.upsert_synth(data)

    async def create_chain(self, synth_id: int, name: str) -> Chain:
        tree = self.context.tree
        tree.synth(synth_id)
        placeholder = self._reserve_placeholder_id()
        tree.upsert_chain(synth_id, {"id": placeholder, "name": name})
        data = await self._create(
            self.api.create_chain(synth_id, name),
            discard=lambda: tree.discard_chain(synth_id, placeholder),
        )
        return tree.upsert_chain(synth_id, data)

    async def create_take(
        self,
        synth_id: int,
        chain_id: int,
        name: str,
        take_type: TakeType = TakeType.AUDIO,
    ) -> Take:
        """Create a take; for ``Audio`` the server adds its MIDI companion.

        The companion arrives through the update stream.
        """
        tree = self.context.tree
        tree.chain(synth_id, chain_id)
        placeholder = self._reserve_placeholder_id()
        tree.upsert_take(
            synth_id, chain_id, {"id": placeholder, "name": name, "type": take_type.value}
        )
        data = await self._create(
            self.api.create_take(synth_id, chain_id, name, take_type),
            discard=lambda: tree.discard_take(synth_id, chain_id, placeholder),
        )
        return tree.upsert_take(synth_id, chain_id, data)

    # ------------------------------------------------------------------
    # Mute coupling
    # ------------------------------------------------------------------

    def set_take_audio_mute(
        self, synth_id: int, chain_id: int, take_id: int, state: bool
    ) -> list[TakePatch]:
        chain, take = self._chain_and_take(synth_id, chain_id, take_id)
        batch = invariants.set_take_audio_mute(chain, take, state)
        self._patch_takes(synth_id, chain_id, batch)
        return batch

    def set_take_midi_mute(
        self, synth_id: int, chain_id: int, take_id: int, state: bool
    ) -> list[TakePatch]:
        chain, take = self._chain_and_take(synth_id, chain_id, take_id)
        batch = invariants.set_take_midi_mute(chain, take, state)
        self._patch_takes(synth_id, chain_id, batch)
        return batch

    def toggle_take_audio_mute(self, synth_id: int, chain_id: int, take_id: int) -> list[TakePatch]:
        chain, take = self._chain_and_take(synth_id, chain_id, take_id)
        batch = invariants.toggle_take_audio_mute(chain, take)
        self._patch_takes(synth_id, chain_id, batch)
        return batch

    def toggle_take_midi_mute(self, synth_id: int, chain_id: int, take_id: int) -> list[TakePatch]:
        chain, take = self._chain_and_take(synth_id, chain_id, take_id)
        batch = invariants.toggle_take_midi_mute(chain, take)
        self._patch_takes(synth_id, chain_id, batch)
        return batch

    # ------------------------------------------------------------------
    # Echo exclusivity
    # ------------------------------------------------------------------

    def set_chain_echo(self, synth_id: int, chain_id: int, state: bool) -> list[ChainPatch]:
        synth = self.context.tree.synth(synth_id)
        chain = self.context.tree.chain(synth_id, chain_id)
        batch = invariants.set_chain_echo(synth, chain, state)
        self._fire(self.api.patch_chains(synth_id, batch), f"echo synth={synth_id}")
        return batch

    # ------------------------------------------------------------------
    # Other commands
    # ------------------------------------------------------------------

    def finish_recording(self, synth_id: int, chain_id: int, take_id: int) -> None:
        self.context.tree.take(synth_id, chain_id, take_id)
        self._fire(
            self.api.finish_recording(synth_id, chain_id, take_id),
            f"finish take={synth_id}/{chain_id}/{take_id}",
        )

    def set_loop_length(self, loop_length: float, beats: int) -> None:
        self.context.song.loop_length = loop_length
        self._fire(self.api.patch_song(loop_length, beats), "loop length")

    def rename_synth(self, synth_id: int, name: str) -> None:
        self.context.tree.synth(synth_id).name = name
        self._fire(self.api.rename_synth(synth_id, name), f"rename synth={synth_id}")

    @staticmethod
    def toggle_selected(entity: Chain | Take) -> bool:
        """Flip the transient selection flag; never sent to the server."""
        entity.selected = not entity.selected
        return entity.selected

    async def drain(self) -> None:
        """Wait for every in-flight request (shutdown, tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._pending)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _chain_and_take(self, synth_id: int, chain_id: int, take_id: int) -> tuple[Chain, Take]:
        chain = self.context.tree.chain(synth_id, chain_id)
        return chain, self.context.tree.take(synth_id, chain_id, take_id)

    def _patch_takes(self, synth_id: int, chain_id: int, batch: list[TakePatch]) -> None:
        if not batch:
            return
        self._fire(
            self.api.patch_takes(synth_id, chain_id, batch),
            f"mute chain={synth_id}/{chain_id}",
        )

    def _reserve_placeholder_id(self) -> int:
        placeholder = self._next_placeholder_id
        self._next_placeholder_id -= 1
        return placeholder

    async def _create(self, request: Awaitable[str], discard: Callable[[], None]) -> JSONObject:
        """Await a create and its confirming fetch, dropping the placeholder either way."""
        try:
            try:
                location = await request
                return await self.api.fetch(location)
            finally:
                discard()
        except EntityCreationError as exc:
            self.alert(str(exc))
            raise

    def _fire(self, request: Coroutine[object, object, None], description: str) -> None:
        task = asyncio.create_task(request, name=description)
        self._pending.add(task)
        task.add_done_callback(self._request_done)

    def _request_done(self, task: asyncio.Task[None]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("⚠️  Request '%s' failed: %s", task.get_name(), exc)
