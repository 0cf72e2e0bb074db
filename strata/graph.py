"""
Dependency graph construction.

The graph is rebuilt from the desired specs on every reconciliation: edges
come both from explicit depends_on lists and from reference fields in the
validated parameters, and both have to be re-checked each time.
"""

import heapq
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set

from .errors import CycleDetected, DanglingDependency, DuplicateResource, InvalidParameters
from .ids import is_valid_resource_id
from .models import ResourceSpec
from .params import REFERENCE_FIELDS, ResourceParameters, references, validate_parameters

logger = logging.getLogger(__name__)


@dataclass
class DependencyGraph:
    """Validated specs plus a deterministic topological order."""
    specs: Dict[str, ResourceSpec]
    parameters: Dict[str, ResourceParameters]
    edges: Dict[str, Set[str]]
    order: List[str] = field(default_factory=list)

    def dependencies(self, resource_id: str) -> Set[str]:
        return set(self.edges.get(resource_id, ()))

    def dependents(self, resource_id: str) -> Set[str]:
        return {rid for rid, deps in self.edges.items() if resource_id in deps}

    def levels(self) -> List[List[str]]:
        """Group ids into waves; every member of a wave depends only on earlier waves."""
        depth: Dict[str, int] = {}
        for rid in self.order:
            deps = self.edges.get(rid, ())
            depth[rid] = 1 + max((depth[d] for d in deps), default=-1)
        waves: List[List[str]] = []
        for rid in self.order:
            while len(waves) <= depth[rid]:
                waves.append([])
            waves[depth[rid]].append(rid)
        return waves


def topological_order(
    edges: Mapping[str, Iterable[str]], priority: Optional[Callable[[str], Any]] = None
) -> List[str]:
    """
    Order nodes so every node follows all of its dependencies.

    Ties between ready nodes are broken by id ascending, so the same input
    always yields the same order.

    Args:
        edges: node -> ids it depends on; every dependency must be a node
        priority: Optional sort key applied before the id when several nodes
            are ready at once

    Raises:
        CycleDetected: If the dependency relation has a cycle
    """
    remaining = {node: set(deps) for node, deps in edges.items()}
    dependents: Dict[str, Set[str]] = {node: set() for node in remaining}
    for node, deps in remaining.items():
        for dep in deps:
            dependents[dep].add(node)

    rank = priority or (lambda node: 0)
    ready = [(rank(node), node) for node, deps in remaining.items() if not deps]
    heapq.heapify(ready)
    order = []

    while ready:
        _, node = heapq.heappop(ready)
        order.append(node)
        for child in sorted(dependents[node]):
            remaining[child].discard(node)
            if not remaining[child]:
                heapq.heappush(ready, (rank(child), child))

    if len(order) != len(remaining):
        done = set(order)
        stuck = {node for node in remaining if node not in done}
        raise CycleDetected(_find_cycle(stuck, edges))

    return order


def _find_cycle(stuck: Set[str], edges: Mapping[str, Iterable[str]]) -> List[str]:
    """Walk dependencies from the smallest stuck node until one repeats."""
    start = min(stuck)
    path = [start]
    seen = {start: 0}
    node = start
    while True:
        node = min(dep for dep in edges[node] if dep in stuck)
        if node in seen:
            cycle = path[seen[node]:]
            return cycle + [node]
        seen[node] = len(path)
        path.append(node)


def build_graph(specs: Iterable[ResourceSpec]) -> DependencyGraph:
    """
    Validate specs and build their dependency graph.

    Args:
        specs: Desired resources

    Returns:
        DependencyGraph with a topologically valid order

    Raises:
        DuplicateResource, InvalidParameters, DanglingDependency, CycleDetected
    """
    by_id: Dict[str, ResourceSpec] = {}
    for spec in specs:
        if spec.id in by_id:
            raise DuplicateResource(spec.id)
        if not is_valid_resource_id(spec.id):
            raise InvalidParameters(spec.id, "resource id must be a lowercase DNS label")
        by_id[spec.id] = spec

    parameters: Dict[str, ResourceParameters] = {}
    edges: Dict[str, Set[str]] = {}

    for rid in sorted(by_id):
        spec = by_id[rid]
        params = validate_parameters(spec)
        parameters[rid] = params

        deps = set(spec.depends_on)
        for name, ref in references(params).items():
            target = by_id.get(ref)
            if target is None:
                raise DanglingDependency(rid, ref)
            if target.kind != REFERENCE_FIELDS[name]:
                raise InvalidParameters(
                    rid, f"{name} must reference a {REFERENCE_FIELDS[name].value}, "
                         f"{ref} is a {target.kind.value}"
                )
            deps.add(ref)

        if rid in deps:
            raise CycleDetected([rid, rid])
        for dep in sorted(deps):
            if dep not in by_id:
                raise DanglingDependency(rid, dep)
        edges[rid] = deps

    order = topological_order(edges)
    logger.debug(f"Built dependency graph over {len(order)} resources: {order}")
    return DependencyGraph(specs=by_id, parameters=parameters, edges=edges, order=order)
