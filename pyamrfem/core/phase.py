# pyamrfem/core/phase.py
"""
Single-writer / multiple-reader phase flag, one per partition.

A partition is either idle, being mutated by one refinement pass, or being
read by one or more indexing passes.  Mutations requested while readers are
present, or on elements held by a running batch, fail with
:class:`ElementLocked` instead of relying on call order.
"""
import logging
from contextlib import contextmanager
from enum import Enum
from typing import Iterable, Set

from pyamrfem.core.errors import ElementLocked

logger = logging.getLogger(__name__)


class Phase(Enum):
    IDLE = "idle"
    WRITING = "writing"
    INDEXING = "indexing"


class PartitionPhase:
    def __init__(self, rank: int):
        self.rank = rank
        self.state = Phase.IDLE
        self._readers = 0
        self._locked: Set[int] = set()

    @property
    def locked_elements(self) -> frozenset:
        return frozenset(self._locked)

    @contextmanager
    def writing(self, elements: Iterable[int] = ()):
        """Hold the partition for one batch pass; *elements* are locked against
        direct refine/coarsen calls until the pass ends."""
        if self.state is not Phase.IDLE:
            raise ElementLocked(
                f"Partition {self.rank} is {self.state.value}; cannot start a refinement pass."
            )
        self.state = Phase.WRITING
        self._locked = set(int(e) for e in elements)
        logger.debug("Partition %d: writing phase, %d elements locked.", self.rank, len(self._locked))
        try:
            yield self
        finally:
            self.state = Phase.IDLE
            self._locked.clear()

    @contextmanager
    def indexing(self):
        if self.state is Phase.WRITING:
            raise ElementLocked(
                f"Partition {self.rank} is being modified; cannot start an indexing pass."
            )
        self.state = Phase.INDEXING
        self._readers += 1
        try:
            yield self
        finally:
            self._readers -= 1
            if self._readers == 0:
                self.state = Phase.IDLE

    def check_mutable(self, eid: int, *, in_batch: bool = False) -> None:
        if self.state is Phase.INDEXING:
            raise ElementLocked(
                f"Element {eid}: partition {self.rank} is locked by an indexing pass."
            )
        if not in_batch and eid in self._locked:
            raise ElementLocked(f"Element {eid} is locked by an in-progress refinement pass.")
