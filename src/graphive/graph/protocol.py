"""Field-level patches used for optimistic writes and their rollback.

A patch records, per touched field, the value before and the value this
write produced. Rolling back restores a field only while it still holds the
produced value, so a later write to the same entity is never clobbered.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, TypeVar, Union

from graphive.models import GraphEdge, GraphNode

Entity = Union[GraphNode, GraphEdge]
E = TypeVar("E", GraphNode, GraphEdge)


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


# Marks a data key that was absent before (or is removed by) a write
MISSING: Any = _Missing()

# ("label",) addresses data["label"]; ("@hidden",) addresses the model attribute
FieldPath = tuple[str, ...]


def data_path(key: str) -> FieldPath:
    return (key,)


def attr_path(name: str) -> FieldPath:
    return ("@" + name,)


@dataclass(frozen=True)
class FieldChange:
    path: FieldPath
    before: Any
    after: Any


@dataclass
class Patch:
    entity_id: str
    changes: list[FieldChange] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.changes


def read_field(entity: Entity, path: FieldPath) -> Any:
    (key,) = path
    if key.startswith("@"):
        return getattr(entity, key[1:])
    return entity.data.get(key, MISSING)


def _write(entity: E, values: dict[FieldPath, Any]) -> E:
    data = dict(entity.data)
    attrs: dict[str, Any] = {}
    for (key,), value in values.items():
        if key.startswith("@"):
            attrs[key[1:]] = value
        elif value is MISSING:
            data.pop(key, None)
        else:
            data[key] = value
    return entity.model_copy(update={"data": data, **attrs})


def apply_patch(entity: E, values: dict[FieldPath, Any]) -> tuple[E, Patch]:
    """Apply ``values`` and return the new entity plus the patch describing it.

    Fields whose value would not change are left out of the patch.
    """
    changes = [
        FieldChange(path, read_field(entity, path), value)
        for path, value in values.items()
        if not _same(read_field(entity, path), value)
    ]
    patch = Patch(entity.id, changes)
    if patch.is_empty:
        return entity, patch
    return _write(entity, {c.path: c.after for c in changes}), patch


def revert_patch(entity: E, patch: Patch) -> E:
    """Undo ``patch`` on ``entity`` for the fields still holding its values."""
    restore = {
        c.path: c.before
        for c in patch.changes
        if _same(read_field(entity, c.path), c.after)
    }
    if not restore:
        return entity
    return _write(entity, restore)


def _same(current: Any, produced: Any) -> bool:
    if current is MISSING or produced is MISSING:
        return current is produced
    return current == produced
