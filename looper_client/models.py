"""Domain models for the looper replica.

Two families of types live here:

- **Entities** (``Synth`` → ``Chain`` → ``Take``) — the mutable local replica.
  Ownership flows strictly parent → child through the ``chains`` / ``takes``
  lists.  ``Chain.synth_id`` and ``Take.chain_id`` are non-owning parent ids
  resolved by lookup in ``EntityTree``; they are never sent over the wire.
- **Patches** (``SynthPatch`` → ``ChainPatch`` → ``TakePatch``) — sparse,
  identity-keyed partial updates.  A field that is absent from the JSON is
  *not* in ``model_fields_set``; a field present with ``null`` is.  The
  reconciler only copies fields that are present, which is what makes the
  merge sparse.
"""
from __future__ import annotations

from enum import Enum

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, StrictInt
from typing_extensions import TypedDict


class TakeType(str, Enum):
    """Kind of recording held by a take."""

    AUDIO = "Audio"
    MIDI = "Midi"


# Scalar wire fields eligible for copy, per entity level.
TAKE_FIELDS: tuple[str, ...] = (
    "name",
    "type",
    "state",
    "muted",
    "muted_scheduled",
    "associated_midi_takes",
    "playing_since",
    "duration",
)
CHAIN_FIELDS: tuple[str, ...] = ("name", "midi", "echo")
SYNTH_FIELDS: tuple[str, ...] = ("name",)


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


class Take(BaseModel):
    """A single audio or MIDI recording slot, owned by its chain.

    ``state`` is opaque (``Waiting``, ``Recording``, ``Finished``, … as
    reported by the server).  ``associated_midi_takes`` only carries meaning
    for audio takes: it lists the ids of MIDI takes in the same chain whose
    mute state is coupled to this take.
    """

    id: int
    name: str = ""
    type: TakeType | None = None
    state: str | None = None
    muted: bool = False
    muted_scheduled: bool = False
    associated_midi_takes: list[int] = []
    playing_since: float | None = None
    duration: float | None = None
    selected: bool = False
    chain_id: int | None = None

    def is_audio(self) -> bool:
        return self.type == TakeType.AUDIO

    def is_midi(self) -> bool:
        return self.type == TakeType.MIDI


class Chain(BaseModel):
    """A recording group within a synth; owns its takes."""

    id: int
    name: str = ""
    midi: bool = False
    echo: bool = False
    takes: list[Take] = []
    selected: bool = False
    synth_id: int | None = None


class Synth(BaseModel):
    """Top-level instrument grouping; owns its chains."""

    id: int
    name: str = ""
    chains: list[Chain] = []


# ---------------------------------------------------------------------------
# Patches
# ---------------------------------------------------------------------------


class EntityPatch(BaseModel):
    """Common shape of every patch level: an identity plus a delete marker.

    The server serialises the marker as ``deleted``; both spellings
    are accepted.  Unknown keys are ignored so newer servers can add fields.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: StrictInt
    delete: bool | None = Field(
        default=None,
        validation_alias=AliasChoices("delete", "deleted"),
    )


class TakePatch(EntityPatch):
    name: str | None = None
    type: TakeType | None = None
    state: str | None = None
    muted: bool | None = None
    muted_scheduled: bool | None = None
    associated_midi_takes: list[int] | None = None
    playing_since: float | None = None
    duration: float | None = None


class ChainPatch(EntityPatch):
    name: str | None = None
    midi: bool | None = None
    echo: bool | None = None
    takes: list[TakePatch] | None = None


class SynthPatch(EntityPatch):
    name: str | None = None
    chains: list[ChainPatch] | None = None


class SongUpdate(BaseModel):
    """``song`` sub-payload of an update-log entry.

    All positions are in seconds.  ``transport_position`` and
    ``song_position`` are server timestamps and are only trusted when the
    poll round-trip was long enough (see ``UpdatePoller``).
    """

    model_config = ConfigDict(extra="ignore")

    song_position: float | None = None
    transport_position: float | None = None
    loop_length: float | None = None


# ---------------------------------------------------------------------------
# Request payload contracts
# ---------------------------------------------------------------------------


class SynthPost(TypedDict):
    """Body of ``POST /api/synths``."""

    name: str


class ChainPost(TypedDict):
    """Body of ``POST /api/synths/{id}/chains``."""

    name: str


class TakePost(TypedDict):
    """Body of ``POST /api/synths/{sid}/chains/{cid}/takes``.

    For an ``Audio`` take the server also creates the MIDI take that records
    alongside it and lists it in ``associated_midi_takes``.
    """

    name: str
    type: str


class SongPatchBody(TypedDict):
    """Body of ``PATCH /api/song``. Loop length is in seconds."""

    loop_length: float
    beats: int


class SongSnapshot(TypedDict, total=False):
    """Response of ``GET /api/song``."""

    transport_position: float
    loop_length: float
