"""Long-poll update loop — keeps the replica in step with the server.

The server keeps an append-only update log.  ``UpdatePoller`` holds a cursor
(``ReplicaContext.next_update_id``) and repeatedly asks for every entry with
``id >= cursor``; the server holds the request open for up to
``poll_window_seconds`` and answers with an empty list on timeout.

Per entry, in the order received:

1. Entries without an integer ``id`` are skipped.
2. The cursor moves to ``max(cursor, id + 1)`` *before* the payload is
   applied, so one poisoned entry can never stall the loop.
3. ``action.synths`` is reconciled into the tree, then every synth it
   touched is held to a single echo chain (the one the delta last switched
   on wins).  Any exception is logged and the entry's effect is lost; later
   entries still apply.
4. ``action.song`` updates the loop length always, and the transport
   offset only when the round-trip took at least
   ``staleness_threshold_seconds``.  A faster answer is assumed to come from
   a cache and its timestamp is not trusted.

Public surface:
- ``UpdatePoller.run()``       — the long-running coroutine (until ``stop()``)
- ``UpdatePoller.poll_once()`` — one request + apply, handy in tests
- ``UpdatePoller.apply_batch()`` — apply already-fetched entries
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

import httpx

from looper_client.api import JSONObject, LooperApiClient
from looper_client.config import settings
from looper_client.errors import EntityNotFoundError, ProtocolError
from looper_client.invariants import echo_winners, find_violations, restore_echo_exclusivity
from looper_client.models import SongUpdate
from looper_client.state import ReplicaContext

logger = logging.getLogger(__name__)

BatchListener = Callable[[ReplicaContext, list[JSONObject]], None]


class UpdatePoller:
    """Drives the inbound half of the replica.

    Args:
        context: Replica to update; its cursor should already reflect the
                 initial full fetch (normally ``0``).
        api: Open ``LooperApiClient``.
        window_seconds: Long-poll hold requested from the server.
        staleness_threshold: Minimum round-trip, in seconds, for song
                             timestamps to be trusted.
        error_backoff: Delay after a failed poll request.
        clock: Monotonic time source; injectable for tests.
    """

    def __init__(
        self,
        context: ReplicaContext,
        api: LooperApiClient,
        window_seconds: int | None = None,
        staleness_threshold: float | None = None,
        error_backoff: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.context = context
        self.api = api
        self.window_seconds = (
            window_seconds if window_seconds is not None else settings.poll_window_seconds
        )
        self.staleness_threshold = (
            staleness_threshold
            if staleness_threshold is not None
            else settings.staleness_threshold_seconds
        )
        self.error_backoff = (
            error_backoff if error_backoff is not None else settings.poll_error_backoff_seconds
        )
        self._clock = clock
        self._stop = asyncio.Event()
        self._listeners: list[BatchListener] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def stop(self) -> None:
        """Ask ``run()`` to return; an in-flight long-poll is abandoned."""
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def add_listener(self, listener: BatchListener) -> None:
        """Call *listener* after every applied batch (including empty ones).

        An exception from *listener* is logged; it never stops the loop.
        """
        self._listeners.append(listener)

    async def run(self) -> None:
        """Poll and apply until ``stop()`` is called or the task is cancelled.

        A failing request is logged and retried after ``error_backoff``; the
        cursor is untouched, so nothing is lost.
        """
        logger.info(
            "✅ Update poller started (since=%d, window=%ds)",
            self.context.next_update_id,
            self.window_seconds,
        )
        try:
            while not self.stopped:
                try:
                    finished = await self._until_stopped(self.poll_once())
                except (httpx.HTTPError, ProtocolError) as exc:
                    logger.warning("⚠️  Poll request failed: %s", exc)
                    await self._until_stopped(asyncio.sleep(self.error_backoff))
                    continue
                if not finished:
                    break
        except asyncio.CancelledError:
            logger.info("✅ Update poller stopped cleanly (cancelled)")
            raise
        logger.info("✅ Update poller stopped at cursor %d", self.context.next_update_id)

    # ------------------------------------------------------------------
    # One iteration
    # ------------------------------------------------------------------

    async def poll_once(self) -> int:
        """Fetch one batch, apply it and return the number of entries received."""
        begin = self._clock()
        entries = await self.api.poll_updates(self.context.next_update_id, self.window_seconds)
        end = self._clock()
        self.apply_batch(entries, duration=end - begin, now=end)
        return len(entries)

    def apply_batch(
        self,
        entries: list[JSONObject],
        duration: float,
        now: float | None = None,
    ) -> None:
        """Apply *entries* in received order.

        Must not await: the whole batch lands before any local action can
        observe the tree.
        """
        now = self._clock() if now is None else now
        trust_timestamps = duration >= self.staleness_threshold
        touched_synths = False

        for entry in entries:
            update_id = entry.get("id") if isinstance(entry, dict) else None
            if not isinstance(update_id, int) or isinstance(update_id, bool):
                logger.warning("⚠️  Skipping update entry without integer id: %r", entry)
                continue
            self.context.advance_cursor(update_id)

            action = entry.get("action")
            if not isinstance(action, dict):
                logger.warning("⚠️  Update %d has no action object", update_id)
                continue

            synths = action.get("synths")
            if synths is not None:
                touched_synths = True
                try:
                    self.context.tree.apply(synths)  # type: ignore[arg-type]
                    self._restore_echo(synths)
                except Exception:  # noqa: BLE001
                    logger.exception("❌ Failed to apply synths delta of update %d", update_id)

            song = action.get("song")
            if song is not None:
                try:
                    self.context.song.apply_update(
                        SongUpdate.model_validate(song), now, trust_timestamps
                    )
                except Exception:  # noqa: BLE001
                    logger.exception("❌ Failed to apply song delta of update %d", update_id)

        if touched_synths:
            for problem in find_violations(self.context.tree.synths):
                logger.warning("⚠️  Inconsistent replica: %s", problem)

        if entries:
            logger.debug(
                "📡 Applied %d update(s) in %.3fs, cursor=%d",
                len(entries),
                duration,
                self.context.next_update_id,
            )
        for listener in list(self._listeners):
            try:
                listener(self.context, entries)
            except Exception:  # noqa: BLE001
                logger.exception("❌ Batch listener %r failed", listener)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _restore_echo(self, synths: object) -> None:
        """Hold every synth touched by *synths* to a single echo chain."""
        for synth_id, preferred in echo_winners(synths).items():
            try:
                synth = self.context.tree.synth(synth_id)
            except EntityNotFoundError:
                continue
            restore_echo_exclusivity(synth, preferred)

    async def _until_stopped(self, coro: object) -> bool:
        """Await *coro* unless ``stop()`` fires first.

        Returns ``True`` when *coro* completed and ``False`` when it was
        abandoned because of a stop request.  Exceptions from *coro*
        propagate.
        """
        work = asyncio.ensure_future(coro)  # type: ignore[arg-type]
        stop = asyncio.ensure_future(self._stop.wait())
        try:
            done, _ = await asyncio.wait({work, stop}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            stop.cancel()
            raise
        if work in done:
            stop.cancel()
            work.result()
            return True
        work.cancel()
        try:
            await work
        except asyncio.CancelledError:
            pass
        return False
