"""Cross-entity consistency rules and the outgoing patches that carry them.

Mute coupling (per chain)
-------------------------
An audio take plays its own recording and, through its associated MIDI
takes, the synth it was recorded from.  ``muted`` on the audio take controls
the audio path; the MIDI path is muted only when *every* associated MIDI take
is muted.

- Unmuting an audio take unmutes its associated MIDI takes too, so the take
  becomes fully audible.
- Muting the last unmuted MIDI take of an audio take mutes the audio take as
  well.  Unmuting a MIDI take never unmutes the audio take's own flag.

Echo exclusivity (per synth)
----------------------------
At most one chain per synth monitors its input.  Turning echo on for one
chain turns it off for all its siblings, locally and immediately.  The
outgoing patch lists every chain of the synth because the server does not
enforce exclusivity itself.

Inbound deltas are held to the same rule: after each ``synths`` delta the
poller calls ``restore_echo_exclusivity`` for every synth it touched, keeping
the chain the delta last switched on.  That repair is local and sends nothing.

Every ``set_*`` function mutates the tree synchronously and returns the patch
items to send.  None of them await, so no poll result can interleave with a
half-applied rule.
"""
from __future__ import annotations

import logging

from looper_client.models import Chain, ChainPatch, Synth, Take, TakePatch

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Read projections
# ---------------------------------------------------------------------------


def get_take_audio_mute(take: Take) -> bool:
    """True when the take's own audio path is muted."""
    return take.muted


def get_take_midi_mute(chain: Chain, take: Take) -> bool:
    """True when all associated MIDI takes are muted (vacuously for none)."""
    return all(midi.muted for midi in associated_midi_takes(chain, take))


def associated_midi_takes(chain: Chain, take: Take) -> list[Take]:
    """Resolve ``take.associated_midi_takes`` against the chain's takes.

    Ids that are not (yet) present in the chain are skipped; the next poll
    will bring them in.
    """
    by_id = {t.id: t for t in chain.takes}
    return [by_id[i] for i in take.associated_midi_takes if i in by_id]


# ---------------------------------------------------------------------------
# Mute coupling
# ---------------------------------------------------------------------------


def set_take_audio_mute(chain: Chain, take: Take, state: bool) -> list[TakePatch]:
    """Set the audio mute of *take* and restore mute coupling.

    Returns one batch: the take itself followed by each associated MIDI
    take, all with their resulting ``muted`` value.
    """
    take.muted = state
    midi_takes = associated_midi_takes(chain, take)
    if not state:
        for midi in midi_takes:
            midi.muted = False
    logger.debug(
        "🔇 Take %d audio mute=%s (%d associated MIDI take(s))",
        take.id,
        state,
        len(midi_takes),
    )
    return [_mute_patch(take)] + [_mute_patch(midi) for midi in midi_takes]


def set_take_midi_mute(chain: Chain, take: Take, state: bool) -> list[TakePatch]:
    """Set the MIDI mute of *take* and restore mute coupling.

    For a MIDI take the take itself is toggled.  For an audio take the
    toggle applies to all of its associated MIDI takes.  Any audio take in
    the chain that references a toggled MIDI take and now has every
    associated MIDI take muted is muted too.

    Returns one batch: the toggled MIDI takes followed by every audio take
    that references them.
    """
    targets = [take] if take.is_midi() else associated_midi_takes(chain, take)
    for midi in targets:
        midi.muted = state

    target_ids = {midi.id for midi in targets}
    owners = [
        t
        for t in chain.takes
        if t.is_audio() and target_ids.intersection(t.associated_midi_takes)
    ]
    if state:
        for owner in owners:
            if get_take_midi_mute(chain, owner):
                owner.muted = True

    batch = [_mute_patch(midi) for midi in targets]
    batch.extend(_mute_patch(owner) for owner in owners if owner.id not in target_ids)
    return batch


def toggle_take_audio_mute(chain: Chain, take: Take) -> list[TakePatch]:
    return set_take_audio_mute(chain, take, not get_take_audio_mute(take))


def toggle_take_midi_mute(chain: Chain, take: Take) -> list[TakePatch]:
    if take.is_midi():
        return set_take_midi_mute(chain, take, not take.muted)
    return set_take_midi_mute(chain, take, not get_take_midi_mute(chain, take))


# ---------------------------------------------------------------------------
# Echo exclusivity
# ---------------------------------------------------------------------------


def set_chain_echo(synth: Synth, chain: Chain, state: bool) -> list[ChainPatch]:
    """Set echo on *chain*, clearing every sibling when turning it on.

    Returns ``{id, echo}`` for every chain of *synth*, in synth order.
    """
    if state:
        for sibling in synth.chains:
            if sibling is not chain:
                sibling.echo = False
    chain.echo = state
    logger.debug("🎧 Synth %d echo chain=%s", synth.id, chain.id if state else None)
    return [ChainPatch(id=c.id, echo=c.echo) for c in synth.chains]


def restore_echo_exclusivity(synth: Synth, preferred: int | None = None) -> list[int]:
    """Clear echo on all but one chain of *synth*, locally only.

    The chain with id *preferred* is kept if it echoes; otherwise the first
    echoing chain is.  Returns the ids of the chains that were cleared.
    """
    echoing = [c for c in synth.chains if c.echo]
    if len(echoing) <= 1:
        return []
    keep = next((c for c in echoing if c.id == preferred), echoing[0])
    cleared = [c.id for c in echoing if c is not keep]
    for chain in echoing:
        if chain is not keep:
            chain.echo = False
    logger.warning(
        "⚠️  Synth %d had %d echo chains; kept %d, cleared %s",
        synth.id,
        len(echoing),
        keep.id,
        cleared,
    )
    return cleared


def echo_winners(delta: object) -> dict[int, int | None]:
    """Map each synth id in a raw ``synths`` delta to its last echo-on chain.

    Synths whose patch sets no chain's echo to ``true`` map to ``None``.
    Entries that do not look like patches are ignored; the reconciler has
    already rejected them.
    """
    winners: dict[int, int | None] = {}
    if not isinstance(delta, list):
        return winners
    for synth_patch in delta:
        if not isinstance(synth_patch, dict) or not _is_id(synth_patch.get("id")):
            continue
        synth_id = synth_patch["id"]
        winners.setdefault(synth_id, None)
        chains = synth_patch.get("chains")
        if not isinstance(chains, list):
            continue
        for chain_patch in chains:
            if (
                isinstance(chain_patch, dict)
                and _is_id(chain_patch.get("id"))
                and chain_patch.get("echo") is True
                and not chain_patch.get("delete", chain_patch.get("deleted"))
            ):
                winners[synth_id] = chain_patch["id"]
    return winners


def _is_id(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _mute_patch(take: Take) -> TakePatch:
    return TakePatch(id=take.id, muted=take.muted)


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


def find_violations(synths: list[Synth]) -> list[str]:
    """Describe every place where inbound data breaks the rules above.

    The poller logs whatever is left after its echo repair; dangling MIDI
    references are only reported, since the next server update is what
    brings the missing takes in.  Two checks:

    1. More than one echo chain in a synth.
    2. An associated MIDI take id that is missing or is not a MIDI take.
    """
    problems: list[str] = []
    for synth in synths:
        echoing = [c.id for c in synth.chains if c.echo]
        if len(echoing) > 1:
            problems.append(f"Synth {synth.id} has {len(echoing)} echo chains: {echoing}")
        for chain in synth.chains:
            by_id = {t.id: t for t in chain.takes}
            for take in chain.takes:
                for midi_id in take.associated_midi_takes:
                    midi = by_id.get(midi_id)
                    if midi is None or not midi.is_midi():
                        problems.append(
                            f"Take {take.id} in chain {chain.id} of synth {synth.id} "
                            f"references {midi_id}, which is not a MIDI take in that chain"
                        )
    return problems
