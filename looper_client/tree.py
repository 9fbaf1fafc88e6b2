"""In-memory entity tree: the local replica of the server's synths.

``EntityTree`` owns an ordered list of ``Synth`` objects.  Chains and takes
are reached through their owners only; the ``synth_id`` / ``chain_id``
back-references on children are plain ids resolved here by lookup.

Usage::

    tree = EntityTree()
    tree.load(await api.fetch_synths())        # strict, full tree
    tree.apply(update["action"]["synths"])    # sparse, from the poll stream
    take = tree.take(synth_id=0, chain_id=1, take_id=4)
"""
from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping

from looper_client.errors import EntityNotFoundError, MalformedPatchError
from looper_client.models import (
    CHAIN_FIELDS,
    SYNTH_FIELDS,
    TAKE_FIELDS,
    Chain,
    ChainPatch,
    Synth,
    SynthPatch,
    Take,
    TakePatch,
)
from looper_client.reconcile import (
    CollectionSpec,
    NestedSpec,
    PatchInput,
    load_collection,
    reconcile,
)

logger = logging.getLogger(__name__)

TAKE_SPEC = CollectionSpec(
    entity=Take,
    patch=TakePatch,
    fields=TAKE_FIELDS,
    defaults={"selected": False},
)

CHAIN_SPEC = CollectionSpec(
    entity=Chain,
    patch=ChainPatch,
    fields=CHAIN_FIELDS,
    nested=(NestedSpec("takes", TAKE_SPEC, parent_key="chain_id"),),
    defaults={"selected": False},
)

SYNTH_SPEC = CollectionSpec(
    entity=Synth,
    patch=SynthPatch,
    fields=SYNTH_FIELDS,
    nested=(NestedSpec("chains", CHAIN_SPEC, parent_key="synth_id"),),
)


class EntityTree:
    """Owner of the replica's ``Synth`` → ``Chain`` → ``Take`` hierarchy."""

    def __init__(self, synths: list[Synth] | None = None) -> None:
        self.synths: list[Synth] = synths if synths is not None else []

    # ------------------------------------------------------------------
    # Bulk updates
    # ------------------------------------------------------------------

    def load(self, payload: Iterable[Mapping[str, object]]) -> None:
        """Replace the whole tree with the result of ``GET /api/synths``.

        Raises ``MissingPropertyError`` if any entity lacks a wire field; the
        current tree is left untouched in that case.
        """
        synths = load_collection(payload, SYNTH_SPEC)
        self.synths[:] = synths  # type: ignore[assignment]
        logger.info("✅ Loaded %d synth(s) from server", len(self.synths))

    def apply(self, patches: Iterable[PatchInput] | None) -> None:
        """Reconcile a ``synths`` delta into the tree."""
        reconcile(self.synths, patches, SYNTH_SPEC)

    def upsert_synth(self, data: Mapping[str, object]) -> Synth:
        """Merge one server-confirmed synth and return the replica object."""
        synth_id = _require_id(data)
        self.apply([data])
        return self.synth(synth_id)

    def upsert_chain(self, synth_id: int, data: Mapping[str, object]) -> Chain:
        chain_id = _require_id(data)
        self.apply([{"id": synth_id, "chains": [data]}])
        return self.chain(synth_id, chain_id)

    def upsert_take(self, synth_id: int, chain_id: int, data: Mapping[str, object]) -> Take:
        take_id = _require_id(data)
        self.apply([{"id": synth_id, "chains": [{"id": chain_id, "takes": [data]}]}])
        return self.take(synth_id, chain_id, take_id)

    def discard_synth(self, synth_id: int) -> None:
        """Drop a synth if present.  Never inserts, unlike a delete patch."""
        self.synths[:] = [s for s in self.synths if s.id != synth_id]

    def discard_chain(self, synth_id: int, chain_id: int) -> None:
        try:
            synth = self.synth(synth_id)
        except EntityNotFoundError:
            return
        synth.chains[:] = [c for c in synth.chains if c.id != chain_id]

    def discard_take(self, synth_id: int, chain_id: int, take_id: int) -> None:
        try:
            chain = self.chain(synth_id, chain_id)
        except EntityNotFoundError:
            return
        chain.takes[:] = [t for t in chain.takes if t.id != take_id]

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def synth(self, synth_id: int) -> Synth:
        for synth in self.synths:
            if synth.id == synth_id:
                return synth
        raise EntityNotFoundError(f"No synth {synth_id}")

    def chain(self, synth_id: int, chain_id: int) -> Chain:
        for chain in self.synth(synth_id).chains:
            if chain.id == chain_id:
                return chain
        raise EntityNotFoundError(f"No chain {chain_id} in synth {synth_id}")

    def take(self, synth_id: int, chain_id: int, take_id: int) -> Take:
        for take in self.chain(synth_id, chain_id).takes:
            if take.id == take_id:
                return take
        raise EntityNotFoundError(
            f"No take {take_id} in chain {chain_id} of synth {synth_id}"
        )

    def parent_synth(self, chain: Chain) -> Synth:
        """Resolve a chain's non-owning ``synth_id`` back-reference."""
        if chain.synth_id is None:
            raise EntityNotFoundError(f"Chain {chain.id} has no parent synth")
        return self.synth(chain.synth_id)

    def parent_chain(self, take: Take) -> Chain:
        """Resolve a take's owning chain.

        Chain ids are only unique per synth, so the match is made on the
        chain that actually holds this take object.
        """
        for synth in self.synths:
            for chain in synth.chains:
                if chain.id == take.chain_id and any(t is take for t in chain.takes):
                    return chain
        raise EntityNotFoundError(f"Take {take.id} has no parent chain")

    def iter_takes(self) -> Iterable[tuple[Synth, Chain, Take]]:
        for synth in self.synths:
            for chain in synth.chains:
                for take in chain.takes:
                    yield synth, chain, take


def _require_id(data: Mapping[str, object]) -> int:
    entity_id = data.get("id")
    if not isinstance(entity_id, int) or isinstance(entity_id, bool):
        raise MalformedPatchError(f"Entity has no integer 'id': {dict(data)!r}")
    return entity_id
