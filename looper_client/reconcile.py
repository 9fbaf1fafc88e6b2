"""Identity-keyed recursive merge of sparse patches into entity collections.

The reconciler is the only code path that turns server data into replica
entities.  It is generic over the entity level: a ``CollectionSpec``
describes which scalar fields may be copied, which fields are owned
sub-collections (each with its own spec), and which defaults a freshly
inserted entity starts with.

Merge rules, applied to each patch in order:

- ``delete: true`` removes the entity with that id if present.  Deleting an
  id that is not there is a no-op.
- An unknown id inserts a new entity seeded with only its id and empty
  sub-collections, then the present scalar fields, then the supplied nested
  patches, then ``defaults``.  Fields the patch does not carry keep the
  model's declared default.  The new entity is appended.
- A known id gets its present scalar fields overwritten and its supplied
  nested patches merged.  Absent fields are left untouched.

Applying the same patch list twice leaves the collection exactly as applying
it once did, and untouched siblings never move.

A patch without an integer ``id`` is a contract violation and raises
``MalformedPatchError`` immediately.
"""
from __future__ import annotations

import copy
import dataclasses
import logging
from collections.abc import Iterable, Mapping, MutableSequence
from typing import Protocol

from pydantic import BaseModel, ValidationError

from looper_client.errors import MalformedPatchError, MissingPropertyError
from looper_client.models import EntityPatch

logger = logging.getLogger(__name__)


class Identified(Protocol):
    id: int


PatchInput = Mapping[str, object] | EntityPatch


@dataclasses.dataclass(frozen=True)
class NestedSpec:
    """An owned sub-collection of an entity (e.g. a chain's ``takes``).

    ``parent_key`` names the attribute on each child that receives the
    owner's id, a non-owning back-reference resolved by lookup.
    """

    field: str
    spec: CollectionSpec
    parent_key: str | None = None


@dataclasses.dataclass(frozen=True)
class CollectionSpec:
    """How to merge patches into one entity level."""

    entity: type[BaseModel]
    patch: type[EntityPatch]
    fields: tuple[str, ...]
    nested: tuple[NestedSpec, ...] = ()
    defaults: Mapping[str, object] = dataclasses.field(default_factory=dict)


def reconcile(
    target: MutableSequence[Identified],
    patches: Iterable[PatchInput] | None,
    spec: CollectionSpec,
) -> None:
    """Merge *patches* into *target* in place.

    ``None`` means the owner's patch did not mention this collection at all
    and is a no-op, unlike an empty list which is merely a patch with no
    entries.
    """
    if patches is None:
        return
    for raw in patches:
        patch = _coerce_patch(raw, spec.patch)

        if patch.delete is True:
            index = _index_of(target, patch.id)
            if index is not None:
                del target[index]
                logger.debug("🗑️  Removed %s %d", spec.entity.__name__, patch.id)
            continue

        index = _index_of(target, patch.id)
        if index is None:
            target.append(_insert(patch, spec))
        else:
            _merge(target[index], patch, spec)


def load_collection(
    items: Iterable[Mapping[str, object]],
    spec: CollectionSpec,
) -> list[BaseModel]:
    """Build a fresh collection from full entity representations.

    Unlike ``reconcile`` this is strict: every scalar field of every level
    must be present, otherwise ``MissingPropertyError`` is raised before any
    entity is built.  Sub-collections themselves are optional and default to
    empty.
    """
    items = list(items)
    for item in items:
        _require_properties(item, spec)
    result: list[BaseModel] = []
    reconcile(result, items, spec)
    return result


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _coerce_patch(raw: PatchInput, model: type[EntityPatch]) -> EntityPatch:
    """Validate one raw patch entry against the level's patch model."""
    if isinstance(raw, model):
        return raw
    if not isinstance(raw, Mapping):
        raise MalformedPatchError(
            f"{model.__name__} entry must be an object, got {type(raw).__name__}"
        )
    if "id" not in raw:
        raise MalformedPatchError(f"{model.__name__} entry has no 'id': {dict(raw)!r}")
    try:
        return model.model_validate(raw)
    except ValidationError as exc:
        raise MalformedPatchError(f"Invalid {model.__name__}: {exc}") from exc


def _index_of(target: MutableSequence[Identified], entity_id: int) -> int | None:
    for index, entity in enumerate(target):
        if entity.id == entity_id:
            return index
    return None


def _insert(patch: EntityPatch, spec: CollectionSpec) -> BaseModel:
    """Build a new entity from the fields *patch* carries.

    ``model_construct`` skips validation but still fills every field the
    patch does not carry with the model's declared default (``name=""``,
    ``muted=False``, ``type=None``, ...).  Those schema defaults are what an
    unpatched field reads as; ``spec.defaults`` is applied on top of them.
    """
    seed: dict[str, object] = {"id": patch.id}
    for nested in spec.nested:
        seed[nested.field] = []
    entity = spec.entity.model_construct(**seed)
    _merge(entity, patch, spec)
    for name, value in spec.defaults.items():
        setattr(entity, name, copy.copy(value))
    logger.debug("➕ Inserted %s %d", spec.entity.__name__, patch.id)
    return entity


def _merge(entity: BaseModel, patch: EntityPatch, spec: CollectionSpec) -> None:
    present = patch.model_fields_set
    for name in spec.fields:
        if name in present:
            value = getattr(patch, name)
            setattr(entity, name, list(value) if isinstance(value, list) else value)

    for nested in spec.nested:
        if nested.field not in present:
            continue
        children = getattr(entity, nested.field)
        reconcile(children, getattr(patch, nested.field), nested.spec)
        if nested.parent_key is not None:
            for child in children:
                setattr(child, nested.parent_key, entity.id)  # type: ignore[attr-defined]


def _require_properties(item: Mapping[str, object], spec: CollectionSpec) -> None:
    if not isinstance(item, Mapping):
        raise MalformedPatchError(
            f"{spec.entity.__name__} must be an object, got {type(item).__name__}"
        )
    for prop in ("id", *spec.fields):
        if prop not in item:
            raise MissingPropertyError(prop)
    for nested in spec.nested:
        children = item.get(nested.field)
        if children is None:
            continue
        if not isinstance(children, list):
            raise MalformedPatchError(f"'{nested.field}' must be a list")
        for child in children:
            _require_properties(child, nested.spec)
