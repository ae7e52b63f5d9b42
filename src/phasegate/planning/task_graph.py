"""Deterministic work-item dependency graph with lifecycle state."""

from __future__ import annotations

import dataclasses
from collections.abc import Iterable, Iterator, Mapping, Sequence
from heapq import heapify, heappop, heappush
from types import MappingProxyType
from typing import Final

from phasegate.domain.errors import (
    CycleDetected,
    DanglingDependency,
    InvalidTransition,
    StructuralError,
    UnknownWorkItem,
)
from phasegate.domain.models import TERMINAL_WORK_ITEM_STATES, WorkItem, WorkItemState

GraphSnapshot = Mapping[str, WorkItemState]

_LIFECYCLE: Final[Mapping[WorkItemState, frozenset[WorkItemState]]] = {
    WorkItemState.PENDING: frozenset({WorkItemState.IN_PROGRESS, WorkItemState.ABANDONED}),
    WorkItemState.IN_PROGRESS: frozenset({WorkItemState.DONE, WorkItemState.ABANDONED}),
    WorkItemState.DONE: frozenset(),
    WorkItemState.ABANDONED: frozenset(),
}


class TaskGraph:
    """
    Validated DAG of work items.

    Structure is fixed once built; only per-item lifecycle state mutates, and only
    through :meth:`mark_state`. Use :meth:`build` (or the ``with_*`` edits, which
    return a new graph) so that cyclic or dangling input never yields an object.
    """

    __slots__ = ("_items", "_parents", "_children", "_dispatch_order", "_states")

    def __init__(
        self,
        items: Mapping[str, WorkItem],
        parents: Mapping[str, tuple[str, ...]],
    ) -> None:
        self._items: dict[str, WorkItem] = dict(items)
        self._parents: dict[str, tuple[str, ...]] = dict(parents)
        self._children: dict[str, list[str]] = {item_id: [] for item_id in self._items}
        for child, dependencies in self._parents.items():
            for parent in dependencies:
                self._children[parent].append(child)

        insertion = {item_id: index for index, item_id in enumerate(self._items)}
        self._dispatch_order: tuple[str, ...] = tuple(
            sorted(
                self._items,
                key=lambda item_id: (-self._items[item_id].priority, insertion[item_id]),
            )
        )
        self._states: dict[str, WorkItemState] = dict.fromkeys(self._items, WorkItemState.PENDING)

    @classmethod
    def build(
        cls,
        items: Iterable[WorkItem | Mapping[str, object]],
        edges: Iterable[tuple[str, str]] = (),
    ) -> TaskGraph:
        """
        Validate items plus ``(dependency, dependent)`` edges and return a graph.

        Raises ``DanglingDependency`` or ``CycleDetected`` naming the offending ids;
        nothing is constructed on failure.
        """
        parsed: dict[str, WorkItem] = {}
        for raw in items:
            item = raw if isinstance(raw, WorkItem) else WorkItem.from_dict(raw)
            if item.id in parsed:
                raise StructuralError(f"duplicate work item id: {item.id}")
            parsed[item.id] = item

        parents: dict[str, list[str]] = {item_id: [] for item_id in parsed}
        missing: list[tuple[str, str]] = []
        for item in parsed.values():
            for dependency in item.dependencies:
                if dependency not in parsed:
                    missing.append((item.id, dependency))
                elif dependency not in parents[item.id]:
                    parents[item.id].append(dependency)
        for dependency, dependent in edges:
            if dependent not in parsed:
                missing.append((dependent, dependency))
            elif dependency not in parsed:
                missing.append((dependent, dependency))
            elif dependency == dependent:
                raise CycleDetected(((dependent,),))
            elif dependency not in parents[dependent]:
                parents[dependent].append(dependency)
        if missing:
            raise DanglingDependency(tuple(missing))

        cycles = _detect_cycles(parsed, parents)
        if cycles:
            raise CycleDetected(cycles)

        normalized = {
            item_id: dataclasses.replace(item, dependencies=tuple(parents[item_id]))
            for item_id, item in parsed.items()
        }
        return cls(normalized, {item_id: tuple(deps) for item_id, deps in parents.items()})

    def with_work_item(self, item: WorkItem | Mapping[str, object]) -> TaskGraph:
        """Return a new validated graph with ``item`` added (states reset)."""
        return TaskGraph.build((*self._items.values(), item))

    def with_dependency(self, dependency: str, dependent: str) -> TaskGraph:
        """Return a new validated graph with the edge added (states reset)."""
        return TaskGraph.build(self._items.values(), ((dependency, dependent),))

    def copy(self) -> TaskGraph:
        """Same structure, every item back to pending."""
        return TaskGraph(self._items, self._parents)

    @property
    def work_item_ids(self) -> tuple[str, ...]:
        """Ids in insertion order."""
        return tuple(self._items)

    @property
    def edges(self) -> tuple[tuple[str, str], ...]:
        return tuple(
            (dependency, item_id)
            for item_id, dependencies in self._parents.items()
            for dependency in dependencies
        )

    def __contains__(self, work_item_id: object) -> bool:
        return work_item_id in self._items

    def __len__(self) -> int:
        return len(self._items)

    def work_item(self, work_item_id: str) -> WorkItem:
        self._assert_known(work_item_id)
        return self._items[work_item_id]

    def state_of(self, work_item_id: str) -> WorkItemState:
        self._assert_known(work_item_id)
        return self._states[work_item_id]

    def snapshot(self) -> GraphSnapshot:
        """Read-only copy of every item's current state."""
        return MappingProxyType(dict(self._states))

    def dependencies_of(self, work_item_id: str, *, transitive: bool = False) -> tuple[str, ...]:
        self._assert_known(work_item_id)
        if not transitive:
            return self._parents[work_item_id]
        return self._closure(work_item_id, upstream=True)

    def dependents_of(self, work_item_id: str, *, transitive: bool = False) -> tuple[str, ...]:
        self._assert_known(work_item_id)
        if not transitive:
            return tuple(self._children[work_item_id])
        return self._closure(work_item_id, upstream=False)

    def ready(self, snapshot: GraphSnapshot | None = None) -> Iterator[str]:
        """
        Lazily yield pending items whose dependencies are all done.

        Order is by descending priority, then insertion order.
        """
        states = self._states if snapshot is None else snapshot
        for work_item_id in self._dispatch_order:
            if states.get(work_item_id, WorkItemState.PENDING) is not WorkItemState.PENDING:
                continue
            if all(
                states.get(dependency) is WorkItemState.DONE
                for dependency in self._parents[work_item_id]
            ):
                yield work_item_id

    def is_ready(self, work_item_id: str) -> bool:
        self._assert_known(work_item_id)
        return self._states[work_item_id] is WorkItemState.PENDING and all(
            self._states[dependency] is WorkItemState.DONE
            for dependency in self._parents[work_item_id]
        )

    def check_transition(self, work_item_id: str, new_state: WorkItemState) -> WorkItemState:
        """Validate a lifecycle change without applying it; return the current state."""
        self._assert_known(work_item_id)
        current = self._states[work_item_id]
        if new_state not in _LIFECYCLE[current]:
            raise InvalidTransition(work_item_id, current.value, new_state.value)
        if new_state is WorkItemState.IN_PROGRESS:
            unfinished = [
                dependency
                for dependency in self._parents[work_item_id]
                if self._states[dependency] is not WorkItemState.DONE
            ]
            if unfinished:
                raise InvalidTransition(
                    work_item_id,
                    current.value,
                    new_state.value,
                    detail="dependencies not done: " + ", ".join(unfinished),
                )
        return current

    def mark_state(self, work_item_id: str, new_state: WorkItemState) -> WorkItemState:
        """Apply a lifecycle change and return the prior state."""
        prior = self.check_transition(work_item_id, new_state)
        self._states[work_item_id] = new_state
        return prior

    def all_terminal(self, work_item_ids: Iterable[str] | None = None) -> bool:
        ids = self._items if work_item_ids is None else work_item_ids
        return all(self._states[item_id] in TERMINAL_WORK_ITEM_STATES for item_id in ids)

    def topological_order(self) -> tuple[str, ...]:
        """Dependency-respecting order; ties follow dispatch order."""
        rank = {item_id: index for index, item_id in enumerate(self._dispatch_order)}
        indegree = {item_id: len(deps) for item_id, deps in self._parents.items()}
        ready = [(rank[item_id], item_id) for item_id, degree in indegree.items() if degree == 0]
        heapify(ready)

        order: list[str] = []
        while ready:
            _, item_id = heappop(ready)
            order.append(item_id)
            for child in self._children[item_id]:
                indegree[child] -= 1
                if indegree[child] == 0:
                    heappush(ready, (rank[child], child))
        return tuple(order)

    def critical_path(self, *, remaining_only: bool = False) -> tuple[str, ...]:
        """
        Longest estimate-weighted dependency chain.

        With ``remaining_only`` the chain is computed over items not yet terminal.
        """
        ordered = [
            item_id
            for item_id in self.topological_order()
            if not (remaining_only and self._states[item_id] in TERMINAL_WORK_ITEM_STATES)
        ]
        if not ordered:
            return ()
        included = set(ordered)

        distances: dict[str, float] = {}
        predecessors: dict[str, str | None] = {}
        for item_id in ordered:
            distances[item_id] = self._items[item_id].estimate
            predecessors[item_id] = None

        for parent in ordered:
            for child in sorted(self._children[parent]):
                if child not in included:
                    continue
                candidate = distances[parent] + self._items[child].estimate
                current = distances[child]
                if candidate > current:
                    distances[child] = candidate
                    predecessors[child] = parent
                elif candidate == current:
                    existing = predecessors[child]
                    if existing is None or parent < existing:
                        predecessors[child] = parent

        end_node = ordered[0]
        for item_id in ordered[1:]:
            if distances[item_id] > distances[end_node] or (
                distances[item_id] == distances[end_node] and item_id < end_node
            ):
                end_node = item_id

        path: list[str] = []
        cursor: str | None = end_node
        while cursor is not None:
            path.append(cursor)
            cursor = predecessors[cursor]
        path.reverse()
        return tuple(path)

    def to_spec(self) -> dict[str, object]:
        """Serialize structure (not state) in the form accepted by :meth:`build`."""
        return {"work_items": [item.to_dict() for item in self._items.values()]}

    @classmethod
    def from_spec(cls, payload: Mapping[str, object]) -> TaskGraph:
        raw_items = payload.get("work_items", ())
        raw_edges = payload.get("edges", ())
        if not isinstance(raw_items, Sequence) or isinstance(raw_items, (str, bytes)):
            raise ValueError("'work_items' must be a sequence of objects.")
        return cls.build(raw_items, _parse_edges(raw_edges))  # type: ignore[arg-type]

    def _closure(self, work_item_id: str, *, upstream: bool) -> tuple[str, ...]:
        visited: set[str] = set()
        pending: list[str] = (
            list(self._parents[work_item_id]) if upstream else list(self._children[work_item_id])
        )
        while pending:
            node = pending.pop()
            if node in visited:
                continue
            visited.add(node)
            pending.extend(self._parents[node] if upstream else self._children[node])
        return tuple(item_id for item_id in self._items if item_id in visited)

    def _assert_known(self, work_item_id: str) -> None:
        if work_item_id not in self._items:
            raise UnknownWorkItem(work_item_id)


def _detect_cycles(
    items: Mapping[str, WorkItem],
    parents: Mapping[str, Sequence[str]],
) -> tuple[tuple[str, ...], ...]:
    """Iterative DFS over dependency edges; cycles are canonicalized rotations."""
    children: dict[str, list[str]] = {item_id: [] for item_id in items}
    for child, dependencies in parents.items():
        for parent in dependencies:
            children[parent].append(child)

    state: dict[str, int] = {}
    stack: list[str] = []
    stack_index: dict[str, int] = {}
    cycles: dict[tuple[str, ...], None] = {}

    for start in sorted(items):
        if state.get(start, 0) != 0:
            continue

        state[start] = 1
        stack.append(start)
        stack_index[start] = 0
        frames: list[tuple[str, Iterator[str]]] = [(start, iter(sorted(children[start])))]

        while frames:
            node, child_iter = frames[-1]
            try:
                child = next(child_iter)
            except StopIteration:
                frames.pop()
                state[node] = 2
                stack.pop()
                del stack_index[node]
                continue

            child_state = state.get(child, 0)
            if child_state == 0:
                state[child] = 1
                stack_index[child] = len(stack)
                stack.append(child)
                frames.append((child, iter(sorted(children[child]))))
            elif child_state == 1:
                cycles[_canonicalize_cycle(stack[stack_index[child] :])] = None

    return tuple(sorted(cycles))


def _canonicalize_cycle(core: Sequence[str]) -> tuple[str, ...]:
    best = tuple(core)
    for offset in range(1, len(core)):
        rotated = tuple(core[offset:]) + tuple(core[:offset])
        if rotated < best:
            best = rotated
    return best


def _parse_edges(raw_edges: object) -> tuple[tuple[str, str], ...]:
    if not isinstance(raw_edges, Sequence) or isinstance(raw_edges, (str, bytes)):
        raise ValueError("'edges' must be a sequence of [dependency, dependent] pairs.")

    edges: list[tuple[str, str]] = []
    for index, raw_edge in enumerate(raw_edges):
        if (
            not isinstance(raw_edge, Sequence)
            or isinstance(raw_edge, (str, bytes))
            or len(raw_edge) != 2
            or not all(isinstance(part, str) for part in raw_edge)
        ):
            raise ValueError(f"'edges[{index}]' must be a pair of work item ids.")
        edges.append((raw_edge[0], raw_edge[1]))
    return tuple(edges)


__all__ = ["GraphSnapshot", "TaskGraph"]
