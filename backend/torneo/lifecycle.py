"""Central state-transition tables.

Each aggregate declares its legality matrix once, next to its status enum,
and every lifecycle method checks against it through ``require``.
"""

from __future__ import annotations

from enum import Enum
from typing import Generic, Iterable, Mapping, TypeVar

from torneo.utils.errors import InvalidStateTransitionError

S = TypeVar("S", bound=Enum)


class TransitionTable(Generic[S]):
    """Legality matrix for one status enum.

    Reflexive transitions are never legal; a state with no outgoing edges
    is terminal.
    """

    def __init__(self, entity: str, edges: Mapping[S, Iterable[S]]):
        self.entity = entity
        self._edges: dict[S, frozenset[S]] = {}
        for source, targets in edges.items():
            targets = frozenset(targets)
            if source in targets:
                raise ValueError(f"{entity}: reflexive transition on {source}")
            self._edges[source] = targets

    def can_transition(self, source: S, target: S) -> bool:
        return target in self._edges.get(source, frozenset())

    def allowed_targets(self, source: S) -> frozenset[S]:
        return self._edges.get(source, frozenset())

    def is_terminal(self, state: S) -> bool:
        return not self._edges.get(state)

    def require(
        self,
        source: S,
        target: S,
        entity_id: str | None = None,
    ) -> None:
        """Raise InvalidStateTransitionError unless source -> target is legal."""
        if not self.can_transition(source, target):
            raise InvalidStateTransitionError(
                entity=self.entity,
                entity_id=entity_id,
                current=source.value,
                target=target.value,
            )

    def edges(self) -> list[tuple[S, S]]:
        """All legal (source, target) pairs."""
        return [
            (source, target)
            for source, targets in self._edges.items()
            for target in targets
        ]
