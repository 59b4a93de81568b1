"""TaskGuard — single-flight bookkeeping of running processes per session key."""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class Killable(Protocol):
    """Anything the guard can preempt."""

    def kill(self) -> None:
        """Request termination.  Must be idempotent."""
        ...


@dataclass
class _Slot:
    generation: int
    session_id: str | None
    handle: Killable | None = None


class TaskGuard:
    """Enforces at most one in-flight task per session key.

    ``reserve`` returns a generation token.  ``attach`` and ``release``
    accept that token so that callbacks belonging to a preempted task
    cannot disturb the slot of the task that replaced it.
    """

    def __init__(self) -> None:
        self._slots: dict[str, _Slot] = {}
        self._generations = itertools.count(1)

    def reserve(self, session_key: str, session_id: str | None = None) -> int:
        """Claim *session_key*, killing any task that currently holds it.

        The key reports active from this moment, before a handle exists.
        """
        previous = self._slots.get(session_key)
        if previous is not None and previous.handle is not None:
            logger.info("%s: preempting running task", session_key)
            previous.handle.kill()
        generation = next(self._generations)
        self._slots[session_key] = _Slot(generation=generation, session_id=session_id)
        return generation

    def attach(
        self, session_key: str, handle: Killable, generation: int | None = None
    ) -> bool:
        """Store the spawned *handle* in the reserved slot.

        If the reservation was replaced or released while the process was
        being spawned, the orphaned handle is killed and False is returned.
        """
        slot = self._slots.get(session_key)
        if slot is None or (generation is not None and slot.generation != generation):
            logger.info("%s: reservation superseded before spawn, killing orphan", session_key)
            handle.kill()
            return False
        slot.handle = handle
        return True

    def release(self, session_key: str, generation: int | None = None) -> bool:
        """Free *session_key*.  A stale *generation* is ignored.

        Returns True if a slot was removed.
        """
        slot = self._slots.get(session_key)
        if slot is None:
            return False
        if generation is not None and slot.generation != generation:
            logger.debug(
                "%s: ignoring release for stale generation %d (current %d)",
                session_key,
                generation,
                slot.generation,
            )
            return False
        del self._slots[session_key]
        return True

    def is_active(self, session_key: str) -> bool:
        return session_key in self._slots

    def is_current(self, session_key: str, generation: int) -> bool:
        slot = self._slots.get(session_key)
        return slot is not None and slot.generation == generation

    def session_id(self, session_key: str) -> str | None:
        """The external session id the current reservation intends to resume."""
        slot = self._slots.get(session_key)
        return slot.session_id if slot is not None else None

    def cancel(self, session_key: str) -> bool:
        """Kill and release whatever holds *session_key*."""
        slot = self._slots.pop(session_key, None)
        if slot is None:
            return False
        if slot.handle is not None:
            slot.handle.kill()
        return True

    def kill_all(self) -> int:
        """Kill every attached handle and clear all slots.  Returns the count."""
        slots = list(self._slots.values())
        self._slots.clear()
        killed = 0
        for slot in slots:
            if slot.handle is not None:
                slot.handle.kill()
                killed += 1
        return killed

    @property
    def active_keys(self) -> list[str]:
        return list(self._slots)
