"""Replica context shared by the poller, the clock and the action gateway.

One ``ReplicaContext`` per connection replaces module-level app state: it
owns the entity tree, the song state and the update cursor.  All mutation
happens on a single asyncio event loop and no mutating method awaits, so
there is no locking.
"""
from __future__ import annotations

import dataclasses
import logging

from looper_client.models import SongSnapshot, SongUpdate
from looper_client.tree import EntityTree

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class SongState:
    """Loop length and the local estimate of the server's transport clock.

    ``transport_offset`` is the server transport position minus the local
    monotonic clock at the moment it was received, so the current position
    is ``now + transport_offset`` (wrapped to the loop length).
    """

    loop_length: float | None = None
    song_position: float | None = None
    transport_offset: float | None = None

    def set_transport_position(self, position: float, now: float) -> None:
        self.transport_offset = position - now

    def transport_position_at(self, now: float) -> float | None:
        """Project the transport position for local time *now*."""
        if self.transport_offset is None:
            return None
        position = now + self.transport_offset
        if self.loop_length:
            position %= self.loop_length
        return position

    def apply_snapshot(self, snapshot: SongSnapshot, now: float) -> None:
        """Seed from ``GET /api/song``."""
        if "loop_length" in snapshot:
            self.loop_length = snapshot["loop_length"]
        if "transport_position" in snapshot:
            self.set_transport_position(snapshot["transport_position"], now)

    def apply_update(self, update: SongUpdate, now: float, trust_timestamps: bool) -> None:
        """Apply a ``song`` delta from the update stream.

        Loop length is always taken.  Timestamps are only taken when
        *trust_timestamps* is set by the caller's staleness check.
        """
        if update.loop_length is not None:
            self.loop_length = update.loop_length
        if not trust_timestamps:
            if update.transport_position is not None:
                logger.debug("⏱️  Ignoring transport position from a fast (stale) response")
            return
        if update.transport_position is not None:
            self.set_transport_position(update.transport_position, now)
        if update.song_position is not None:
            self.song_position = update.song_position


@dataclasses.dataclass
class ReplicaContext:
    """Everything the client knows about the server, in one place."""

    tree: EntityTree = dataclasses.field(default_factory=EntityTree)
    song: SongState = dataclasses.field(default_factory=SongState)
    next_update_id: int = 0

    def advance_cursor(self, update_id: int) -> None:
        """Move the cursor past *update_id*; never moves it backwards."""
        self.next_update_id = max(self.next_update_id, update_id + 1)
