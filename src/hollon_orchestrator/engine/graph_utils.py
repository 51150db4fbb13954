"""
Engine Module - Graph Utilities
===============================
Cycle detection over dependency edge maps (node -> nodes it depends on).
"""

import logging
from typing import Dict, Iterable, List, Mapping, Optional

logger = logging.getLogger(__name__)

Edges = Mapping[str, Iterable[str]]


def find_cycle(edges: Edges) -> Optional[List[str]]:
    """
    Find one cycle in the edge map using depth-first search.

    Nodes that only appear as edge targets are treated as leaves. Runs in
    O(V+E) and handles empty and disconnected graphs.

    Args:
        edges: Adjacency map, node -> dependency nodes

    Returns:
        The cycle as a node path whose first and last element are equal
        (``[a, a]`` for a self-loop), or None when the graph is acyclic
    """
    WHITE, GRAY, BLACK = 0, 1, 2  # unvisited, on the DFS stack, done
    color: Dict[str, int] = {}

    for root in list(edges.keys()):
        if color.get(root, WHITE) != WHITE:
            continue

        # Explicit stack of (node, iterator over its dependencies)
        path: List[str] = [root]
        stack = [(root, iter(edges.get(root, ())))]
        color[root] = GRAY

        while stack:
            node, deps = stack[-1]
            advanced = False
            for dep in deps:
                state = color.get(dep, WHITE)
                if state == GRAY:
                    return path[path.index(dep):] + [dep]
                if state == WHITE:
                    color[dep] = GRAY
                    path.append(dep)
                    stack.append((dep, iter(edges.get(dep, ()))))
                    advanced = True
                    break
            if not advanced:
                color[node] = BLACK
                path.pop()
                stack.pop()

    return None


def has_cycle(edges: Edges) -> bool:
    """True if the edge map contains any cycle, including a self-loop."""
    return find_cycle(edges) is not None


def merge_edges(base: Edges, extra: Edges) -> Dict[str, List[str]]:
    """Union of two edge maps without mutating either."""
    merged: Dict[str, List[str]] = {node: list(deps) for node, deps in base.items()}
    for node, deps in extra.items():
        current = merged.setdefault(node, [])
        for dep in deps:
            if dep not in current:
                current.append(dep)
    return merged
