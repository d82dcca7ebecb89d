"""
Dependency Resolver
===================

Analyzes work item dependencies and computes execution batches using
topological sorting (Kahn's algorithm) and file-overlap bin packing.

Key Features:
- Computes the current ready set in store order
- Detects circular dependencies before execution starts
- Layers the graph for visualization
- Packs ready items into batches with no overlapping declared files
- Generates visualization (Mermaid, ASCII) for dependency graphs

Declared files are advisory: two items with disjoint file lists can still
conflict at merge time, which the executor handles separately.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set, Tuple
import logging

from taskweave.task_store import WorkItem

logger = logging.getLogger(__name__)


@dataclass
class DependencyGraph:
    """
    Result of dependency resolution.

    Attributes:
        batches: Topological layers; items in a layer only depend on earlier layers
        task_order: Flattened list of all items in layer order
        circular_deps: Concrete dependency cycles found by DFS
        missing_deps: Item ids that reference unknown dependency ids
    """
    batches: List[List[str]]
    task_order: List[str]
    circular_deps: List[Tuple[str, ...]] = field(default_factory=list)
    missing_deps: List[str] = field(default_factory=list)


def _build_edges(items: Sequence[WorkItem]) -> Tuple[Dict[str, List[str]], Dict[str, int]]:
    # adjacency[dep_id] = items that depend on dep_id; unknown ids are ignored
    known = {item.id for item in items}
    adjacency: Dict[str, List[str]] = {item.id: [] for item in items}
    in_degree: Dict[str, int] = {item.id: 0 for item in items}
    for item in items:
        for dep_id in item.dependencies:
            if dep_id in known:
                adjacency[dep_id].append(item.id)
                in_degree[item.id] += 1
    return adjacency, in_degree


class DependencyResolver:
    """
    Resolves work item dependencies and computes execution batches.

    Every query takes the ordered item list and recomputes from scratch;
    completions change readiness between rounds, so nothing is cached
    except the last resolved graph used for rendering.
    """

    def __init__(self):
        self.last_graph: Optional[DependencyGraph] = None
        self.last_items: Dict[str, WorkItem] = {}
        self.last_adjacency: Dict[str, List[str]] = {}

    def ready(self, items: Sequence[WorkItem]) -> List[str]:
        """
        Ids of pending items whose dependencies all exist and are done.

        Args:
            items: Work items in store order

        Returns:
            Ready ids in store order
        """
        by_id = {item.id: item for item in items}
        ready_ids = []
        for item in items:
            if item.done:
                continue
            if all(dep in by_id and by_id[dep].done for dep in item.dependencies):
                ready_ids.append(item.id)
        return ready_ids

    def detect_cycle(self, items: Sequence[WorkItem]) -> Tuple[bool, List[str]]:
        """
        Check the dependency relation for cycles with Kahn's algorithm.

        The offending list holds every item Kahn's algorithm could not
        remove, which may include items that merely sit downstream of
        the cycle.

        Returns:
            Tuple of (has cycle, offending ids in store order)
        """
        adjacency, in_degree = _build_edges(items)
        queue = [item.id for item in items if in_degree[item.id] == 0]
        visited = 0

        while queue:
            current = queue.pop(0)
            visited += 1
            for dependent_id in adjacency[current]:
                in_degree[dependent_id] -= 1
                if in_degree[dependent_id] == 0:
                    queue.append(dependent_id)

        if visited == len(items):
            return False, []

        offending = [item.id for item in items if in_degree[item.id] > 0]
        logger.warning(f"Circular dependencies detected among: {offending}")
        return True, offending

    def topological_layers(self, items: Sequence[WorkItem]) -> List[List[str]]:
        """
        Peel the graph into layers; items caught in a cycle never appear.

        Returns:
            Layers of ids, each in store order
        """
        adjacency, in_degree = _build_edges(items)
        order = {item.id: i for i, item in enumerate(items)}
        layer = [item.id for item in items if in_degree[item.id] == 0]
        layers = []

        while layer:
            layers.append(layer)
            next_layer = []
            for item_id in layer:
                for dependent_id in adjacency[item_id]:
                    in_degree[dependent_id] -= 1
                    if in_degree[dependent_id] == 0:
                        next_layer.append(dependent_id)
            next_layer.sort(key=lambda item_id: order[item_id])
            layer = next_layer

        return layers

    def conflict_free_batches(
        self,
        items: Sequence[WorkItem],
        ready_ids: Optional[Sequence[str]] = None
    ) -> List[List[str]]:
        """
        Greedy first-fit packing of ready items by declared files.

        No two items in one batch declare an overlapping file; an item
        declaring no files fits in any batch.

        Args:
            items: Work items in store order
            ready_ids: Ids to pack (defaults to the current ready set)

        Returns:
            Batches of ids, each in store order
        """
        if ready_ids is None:
            ready_ids = self.ready(items)
        by_id = {item.id: item for item in items}
        remaining = [item_id for item_id in ready_ids if item_id in by_id]
        batches = []

        while remaining:
            batch: List[str] = []
            claimed: Set[str] = set()
            deferred = []

            for item_id in remaining:
                files = by_id[item_id].touched_files
                if not files or not (files & claimed):
                    batch.append(item_id)
                    claimed |= files
                else:
                    deferred.append(item_id)

            if not batch:
                # Unreachable with first-fit, guards against looping forever
                break

            batches.append(batch)
            remaining = deferred

        logger.debug(f"Packed {len(ready_ids)} ready items into batches {batches}")
        return batches

    def resolve(self, items: Sequence[WorkItem]) -> DependencyGraph:
        """
        Resolve the full graph for reporting.

        Args:
            items: Work items in store order

        Returns:
            DependencyGraph with layers, cycles and missing references
        """
        if not items:
            logger.info("No items provided, returning empty graph")
            graph = DependencyGraph(batches=[], task_order=[])
            self.last_graph, self.last_items, self.last_adjacency = graph, {}, {}
            return graph

        item_map = {item.id: item for item in items}
        missing_deps = []
        for item in items:
            for dep_id in item.dependencies:
                if dep_id not in item_map:
                    if item.id not in missing_deps:
                        missing_deps.append(item.id)
                    logger.warning(f"Task {item.id} has invalid dependency: {dep_id}")

        batches = self.topological_layers(items)
        task_order = [item_id for layer in batches for item_id in layer]

        circular_deps = []
        placed = set(task_order)
        remaining = [item.id for item in items if item.id not in placed]
        if remaining:
            circular_deps = self._detect_cycles(remaining, item_map)

        logger.info(f"Resolved {len(items)} tasks into {len(batches)} layers")

        graph = DependencyGraph(
            batches=batches,
            task_order=task_order,
            circular_deps=circular_deps,
            missing_deps=missing_deps
        )
        self.last_graph = graph
        self.last_items = item_map
        self.last_adjacency, _ = _build_edges(items)
        return graph

    def _detect_cycles(self, remaining: List[str], item_map: Dict[str, WorkItem]) -> List[Tuple[str, ...]]:
        """Find concrete cycles among unresolved items using DFS."""
        cycles: List[Tuple[str, ...]] = []
        visited = set()
        rec_stack = set()

        def dfs(item_id: str, path: List[str]) -> bool:
            visited.add(item_id)
            rec_stack.add(item_id)
            path.append(item_id)

            for dep_id in item_map[item_id].dependencies:
                if dep_id not in item_map:
                    continue
                if dep_id not in visited:
                    if dfs(dep_id, path):
                        return True
                elif dep_id in rec_stack:
                    cycle_start = path.index(dep_id)
                    cycle = tuple(path[cycle_start:] + [dep_id])
                    if cycle not in cycles:
                        cycles.append(cycle)
                    return True

            path.pop()
            rec_stack.remove(item_id)
            return False

        for item_id in remaining:
            if item_id not in visited:
                dfs(item_id, [])

        return cycles

    def to_mermaid(self, items: Sequence[WorkItem]) -> str:
        """
        Generate a Mermaid flowchart of dependencies.

        Returns:
            Mermaid diagram string
        """
        graph = self.resolve(items)
        if not items:
            return "graph TD\n  Empty[No tasks]"

        node_ids = {item.id: f"T{i}" for i, item in enumerate(items)}
        layer_of = {item_id: n for n, layer in enumerate(graph.batches) for item_id in layer}

        lines = ["graph TD"]
        for item in items:
            title = (item.title or item.id).replace('"', "'").replace("[", "(").replace("]", ")")
            if len(title) > 40:
                title = title[:37] + "..."
            marker = " (done)" if item.done else ""
            if item.id in layer_of:
                lines.append(f'  {node_ids[item.id]}["{item.id}: {title}{marker}<br/>Layer {layer_of[item.id]}"]')
            else:
                lines.append(f'  {node_ids[item.id]}["{item.id}: {title}{marker}"]')

        for item_id, dependents in self.last_adjacency.items():
            for dependent_id in dependents:
                lines.append(f"  {node_ids[item_id]} --> {node_ids[dependent_id]}")

        if graph.circular_deps:
            lines.append("")
            lines.append("  %% Circular dependencies detected")
            for cycle in graph.circular_deps:
                lines.append(f'  %% Cycle: {" -> ".join(cycle)}')

        return "\n".join(lines)

    def to_ascii(self, items: Sequence[WorkItem]) -> str:
        """
        Generate an ASCII listing of the dependency layers.

        Returns:
            ASCII diagram string
        """
        graph = self.resolve(items)
        if not items:
            return "No tasks"

        lines = []
        lines.append("=" * 70)
        lines.append("DEPENDENCY GRAPH")
        lines.append("=" * 70)

        for layer_num, layer in enumerate(graph.batches):
            mode = "can run in parallel" if len(layer) > 1 else "sequential"
            lines.append(f"\nLAYER {layer_num} ({mode}):")
            lines.append("-" * 70)

            for item_id in layer:
                item = self.last_items[item_id]
                mark = "x" if item.done else " "
                lines.append(f"  [{mark}] {item_id}: {item.title}")
                if item.dependencies:
                    lines.append(f"      Depends on: {', '.join(item.dependencies)}")

        if graph.circular_deps:
            lines.append("\n" + "!" * 70)
            lines.append("CIRCULAR DEPENDENCIES DETECTED:")
            lines.append("!" * 70)
            for cycle in graph.circular_deps:
                lines.append(f"  {' -> '.join(cycle)}")

        if graph.missing_deps:
            lines.append("\n" + "!" * 70)
            lines.append("MISSING/INVALID DEPENDENCIES:")
            lines.append("!" * 70)
            for item_id in graph.missing_deps:
                item = self.last_items[item_id]
                unknown = [d for d in item.dependencies if d not in self.last_items]
                lines.append(f"  {item_id}: {', '.join(unknown)}")

        done = sum(1 for item in items if item.done)
        lines.append("\n" + "=" * 70)
        lines.append(f"Total: {len(items)} tasks ({done} done) in {len(graph.batches)} layers")
        lines.append("=" * 70)

        return "\n".join(lines)
