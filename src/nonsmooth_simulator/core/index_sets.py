"""Nested index sets of interactions.

``IndexSet_0`` holds every interaction of the model. ``IndexSet_i`` for
``i >= 1`` holds the interactions active at derivative level ``i`` and is
always a subset of ``IndexSet_{i-1}``. Removing an interaction from a level
removes it from every finer level too.
"""

from __future__ import annotations

from typing import Iterable, Iterator, List

from .errors import ConfigurationError


class IndexSet:
    """Set of interaction numbers iterated in ascending order."""

    def __init__(self, level: int, members: Iterable[int] = ()):
        self.level = level
        self._members = set(members)

    def add(self, number: int) -> None:
        self._members.add(number)

    def discard(self, number: int) -> None:
        self._members.discard(number)

    def clear(self) -> None:
        self._members.clear()

    def __contains__(self, number: object) -> bool:
        return number in self._members

    def __iter__(self) -> Iterator[int]:
        return iter(sorted(self._members))

    def __len__(self) -> int:
        return len(self._members)

    def as_list(self) -> List[int]:
        return sorted(self._members)

    def issubset(self, other: "IndexSet") -> bool:
        return self._members <= other._members

    def __repr__(self) -> str:
        return f"IndexSet(level={self.level}, members={self.as_list()})"


class Topology:
    """The stack of index sets of one model."""

    def __init__(self, nsds, number_of_index_sets: int = 1):
        self.nsds = nsds
        self.index_sets: List[IndexSet] = []
        self.resize(number_of_index_sets)

    @property
    def number_of_index_sets(self) -> int:
        return len(self.index_sets)

    def resize(self, number_of_index_sets: int) -> None:
        if number_of_index_sets < 1:
            raise ConfigurationError("a topology needs at least one index set")
        while len(self.index_sets) < number_of_index_sets:
            self.index_sets.append(IndexSet(len(self.index_sets)))
        del self.index_sets[number_of_index_sets:]
        self.refresh_level0()

    def refresh_level0(self) -> None:
        base = self.index_sets[0]
        base.clear()
        for inter in self.nsds.interactions:
            base.add(inter.number)

    def index_set(self, level: int) -> IndexSet:
        return self.index_sets[level]

    def apply(self, level: int, to_add: Iterable[int], to_remove: Iterable[int]) -> None:
        """Apply a batch of activation decisions to ``IndexSet_level``."""
        if level < 1 or level >= len(self.index_sets):
            raise ConfigurationError(f"cannot update index set {level}")
        for number in to_remove:
            for finer in self.index_sets[level:]:
                finer.discard(number)
        coarser = self.index_sets[level - 1]
        for number in to_add:
            if number in coarser:
                self.index_sets[level].add(number)

    def check_nested(self) -> bool:
        return all(
            self.index_sets[i].issubset(self.index_sets[i - 1])
            for i in range(1, len(self.index_sets))
        )

    def snapshot(self) -> List[List[int]]:
        return [s.as_list() for s in self.index_sets]
