"""
Router - Picks the next nodes after a node completes.

``route(node_id, post_state)`` walks the node's outgoing edges in priority
then declaration order and returns the ordered, de-duplicated targets. It is
a pure function of the post-step state: routing functions get a read-only,
deep-copied view and their label must resolve through the edge's closed
``path_map``.
"""

import copy
import logging
from collections.abc import Callable, Mapping
from types import MappingProxyType
from typing import Any

from stepgraph.errors import RoutingError
from stepgraph.graph.edge import END, EdgeCondition, EdgeSpec, GraphSpec

logger = logging.getLogger(__name__)

RouterFunc = Callable[[Mapping[str, Any]], Any]


class Router:
    """
    Evaluates the edges of a graph.

    Example:
        router = Router(graph)
        router.register("approval_gate", lambda f: "ship" if f["tests_passed"] else "hold")
        router.route("check", {"tests_passed": True, "risk_level": "low"})
    """

    def __init__(self, graph: GraphSpec, routers: dict[str, RouterFunc] | None = None):
        self.graph = graph
        self._routers: dict[str, RouterFunc] = dict(routers or {})

    def register(self, name: str, func: RouterFunc) -> None:
        """Register a routing function under the name edges refer to."""
        self._routers[name] = func

    def missing_routers(self) -> list[str]:
        """Router names referenced by edges but never registered."""
        missing = []
        for edge in self.graph.edges:
            if (
                edge.condition == EdgeCondition.ROUTER
                and isinstance(edge.router, str)
                and edge.router not in self._routers
            ):
                missing.append(edge.router)
        return missing

    def route(self, node_id: str, post_state: Mapping[str, Any]) -> list[str]:
        """
        Return the ordered set of nodes to activate after ``node_id``.

        Raises:
            RoutingError: A router label is outside its closed set, or a
                safety-critical edge saw a value that is not a typed flag
        """
        targets: list[str] = []
        for edge in self.graph.get_outgoing_edges(node_id):
            if edge.condition == EdgeCondition.ROUTER:
                chosen = self._resolve_router(edge, post_state)
            elif edge.should_traverse(post_state):
                chosen = [edge.target] if edge.target else []
            else:
                chosen = []

            for target in chosen:
                if target not in targets:
                    targets.append(target)

        if targets:
            logger.debug(f"Routed '{node_id}' -> {targets}")
        return [t for t in targets if t != END]

    def _resolve_router(self, edge: EdgeSpec, state: Mapping[str, Any]) -> list[str]:
        func = self._get_router(edge)
        view = MappingProxyType(copy.deepcopy(edge.routing_view(state)))

        try:
            result = func(view)
        except Exception as e:
            raise RoutingError(f"Router for edge '{edge.id}' raised: {e}") from e

        if result is None:
            return []
        labels = list(result) if isinstance(result, (list, tuple)) else [result]

        targets: list[str] = []
        for label in labels:
            targets.extend(self._label_targets(edge, label))
        return targets

    def _get_router(self, edge: EdgeSpec) -> RouterFunc:
        if callable(edge.router):
            return edge.router
        if edge.router is None or edge.router not in self._routers:
            raise RoutingError(f"Edge '{edge.id}' references unregistered router '{edge.router}'")
        return self._routers[edge.router]

    def _label_targets(self, edge: EdgeSpec, label: Any) -> list[str]:
        if isinstance(label, str) and label in edge.path_map:
            mapped = edge.path_map[label]
            return [mapped] if isinstance(mapped, str) else list(mapped)

        # Without a path_map a plain router may name nodes directly
        if not edge.path_map and not edge.safety_critical:
            if label == END or (isinstance(label, str) and self.graph.get_node(label)):
                return [label]

        raise RoutingError(
            f"Router for edge '{edge.id}' returned {label!r}, "
            f"expected one of {sorted(edge.path_map) or 'the graph node IDs'}"
        )
