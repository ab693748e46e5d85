"""Transition graph for semi-Markov multistate models."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Any

import numpy as np
import networkx as nx

from .exceptions import ConfigurationError

__all__ = ["TransitionGraph"]


def _is_null(value: Any) -> bool:
    if value is None:
        return True
    try:
        value = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid transition matrix entry: {value!r}") from e
    return bool(np.isnan(value)) or value == 0


@dataclass(frozen=True)
class TransitionGraph:
    """Directed graph of possible transitions between health states.

    Parameters
    ----------
    transitions : Tuple[Tuple[int, int, int], ...]
        ``(transition_id, from_state, to_state)`` triples
    num_states : int
        Number of states in the model
    state_names : Optional[Tuple[str, ...]]
        Optional display names, one per state
    """
    transitions: Tuple[Tuple[int, int, int], ...]
    num_states: int
    state_names: Optional[Tuple[str, ...]] = None
    _outgoing: Dict[int, List[Tuple[int, int]]] = field(
        init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        outgoing: Dict[int, List[Tuple[int, int]]] = {s: [] for s in range(self.num_states)}
        for trans_id, from_state, to_state in self.transitions:
            outgoing.setdefault(from_state, []).append((trans_id, to_state))
        for state in outgoing:
            outgoing[state].sort()
        object.__setattr__(self, "_outgoing", outgoing)
        self.validate()

    @classmethod
    def from_matrix(
        cls,
        matrix: Sequence[Sequence[Any]],
        state_names: Optional[Sequence[str]] = None,
    ) -> "TransitionGraph":
        """Build a graph from a square transition matrix.

        Entry ``(i, j)`` holds a positive transition index if ``i -> j`` is
        possible. ``None``, ``NaN`` and ``0`` mark impossible transitions.
        """
        rows = [list(row) for row in matrix]
        n = len(rows)
        if n == 0:
            raise ConfigurationError("Transition matrix is empty")
        for i, row in enumerate(rows):
            if len(row) != n:
                raise ConfigurationError(
                    f"Transition matrix must be square: row {i} has {len(row)} "
                    f"entries, expected {n}"
                )

        transitions = []
        for i in range(n):
            for j in range(n):
                if _is_null(rows[i][j]):
                    continue
                if i == j:
                    raise ConfigurationError(
                        f"Transition matrix diagonal must be null (state {i} has a self-loop)"
                    )
                trans_id = float(rows[i][j])
                if trans_id < 0 or trans_id != int(trans_id):
                    raise ConfigurationError(
                        f"Transition index from state {i} to state {j} must be a "
                        f"positive integer, got {rows[i][j]!r}"
                    )
                transitions.append((int(trans_id), i, j))

        names = tuple(state_names) if state_names is not None else None
        return cls(transitions=tuple(transitions), num_states=n, state_names=names)

    def validate(self) -> None:
        """Check transition ids, self-loops and reachability of an absorbing state."""
        if self.num_states < 1:
            raise ConfigurationError("Transition graph needs at least one state")
        if self.state_names is not None and len(self.state_names) != self.num_states:
            raise ConfigurationError(
                f"Expected {self.num_states} state names, got {len(self.state_names)}"
            )

        seen = set()
        for trans_id, from_state, to_state in self.transitions:
            if trans_id in seen:
                raise ConfigurationError(f"Duplicate transition index {trans_id}")
            seen.add(trans_id)
            for state in (from_state, to_state):
                if not 0 <= state < self.num_states:
                    raise ConfigurationError(
                        f"Transition {trans_id} references unknown state {state}"
                    )
            if from_state == to_state:
                raise ConfigurationError(
                    f"Transition {trans_id} is a self-loop on state {from_state}"
                )

        absorbing = self.absorbing_states
        if not absorbing:
            raise ConfigurationError("Transition graph has no absorbing state")

        G = self.to_networkx()
        # States that can reach the absorbing set, found on the reversed graph
        can_absorb = set(absorbing)
        reverse = G.reverse(copy=False)
        for state in absorbing:
            can_absorb |= nx.descendants(reverse, state)
        trapped = sorted(set(range(self.num_states)) - can_absorb)
        if trapped:
            raise ConfigurationError(
                f"States {trapped} have no path to an absorbing state"
            )

    def to_networkx(self) -> nx.DiGraph:
        """Return the graph as a ``networkx.DiGraph`` with ``transition`` edge labels."""
        G = nx.DiGraph()
        G.add_nodes_from(range(self.num_states))
        for trans_id, from_state, to_state in self.transitions:
            G.add_edge(from_state, to_state, transition=trans_id)
        return G

    @property
    def transition_ids(self) -> List[int]:
        return sorted(t[0] for t in self.transitions)

    @property
    def state_transitions(self) -> Dict[int, List[int]]:
        """Dictionary mapping source states to possible target states."""
        return {s: [to for _, to in out] for s, out in self._outgoing.items()}

    @property
    def absorbing_states(self) -> List[int]:
        return [s for s, out in self._outgoing.items() if not out]

    @property
    def first_transient_state(self) -> int:
        for state in range(self.num_states):
            if self._outgoing[state]:
                return state
        raise ConfigurationError("Transition graph has no non-absorbing state")

    def transitions_from(self, state: int) -> List[Tuple[int, int]]:
        """``(transition_id, to_state)`` pairs leaving ``state``, by ascending id."""
        return list(self._outgoing[state])

    def is_absorbing(self, state: int) -> bool:
        return not self._outgoing[state]

    def state_name(self, state: int) -> str:
        if self.state_names is None:
            return str(state)
        return self.state_names[state]
