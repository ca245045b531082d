from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class EventAdd:
    """An object appeared in the watch cache."""

    key: str


@dataclass(frozen=True)
class EventUpdate:
    """An object changed; ``old`` is the previous cached state.

    ``old`` is excluded from equality so a pending update for the same key
    is coalesced by the queue, which keeps the earliest ``old``.
    """

    key: str
    old: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class EventDelete:
    """An object left the watch cache.

    ``tombstone`` is the last known state; it is the only copy left once the
    live cache has evicted the object.
    """

    key: str
    tombstone: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class EventSync:
    """A full resync request that carries no object state."""

    key: str


Event = EventAdd | EventUpdate | EventDelete | EventSync


def event_kind(event: Event) -> str:
    if isinstance(event, EventAdd):
        return "add"
    if isinstance(event, EventUpdate):
        return "update"
    if isinstance(event, EventDelete):
        return "delete"
    return "sync"
