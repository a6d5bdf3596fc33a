"""
Edge Protocol - How nodes connect in a graph.

Edges carry control flow only; data moves exclusively through channel writes.

Edge Types:
- always: Static edge, traversed every time the source completes
- conditional: Traversed when an expression over the post-step state is true
- router: A registered routing function returns a label, ``path_map`` turns
  the label into one or more targets

An edge marked ``safety_critical`` resolves purely from the typed flag
channels it declares in ``flags``. Its expression or router never sees the
rest of the state, which keeps the transition statically analysable.
"""

import logging
from collections.abc import Callable, Mapping
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from stepgraph.errors import RoutingError
from stepgraph.graph.channel import ChannelSpec
from stepgraph.graph.node import NodeSpec
from stepgraph.graph.reducers import BUILTIN_REDUCERS
from stepgraph.graph.safe_eval import expression_names, safe_eval

logger = logging.getLogger(__name__)

END = "__end__"

# Values a safety-critical flag channel may hold
FLAG_TYPES = (bool, int, type(None))


class EdgeCondition(StrEnum):
    """When an edge should be traversed."""

    ALWAYS = "always"  # Always after source completes
    CONDITIONAL = "conditional"  # Based on expression
    ROUTER = "router"  # Based on a routing function's label


class EdgeSpec(BaseModel):
    """
    Specification for an edge between nodes.

    Examples:
        # Static edge
        EdgeSpec(id="draft-to-review", source="draft", target="review")

        # Conditional edge over state
        EdgeSpec(
            id="review-to-revise",
            source="review",
            target="revise",
            condition=EdgeCondition.CONDITIONAL,
            condition_expr="score < 0.8",
        )

        # Safety-critical routing from typed flags only
        EdgeSpec(
            id="gate",
            source="check",
            condition=EdgeCondition.ROUTER,
            router="approval_gate",
            path_map={"ship": "deploy", "hold": "notify"},
            safety_critical=True,
            flags=["tests_passed", "risk_level"],
            flag_values=["low", "high"],
        )
    """

    id: str
    source: str = Field(description="Source node ID")
    target: str | None = Field(
        default=None, description="Target node ID (ALWAYS and CONDITIONAL edges)"
    )

    condition: EdgeCondition = EdgeCondition.ALWAYS
    condition_expr: str | None = Field(
        default=None,
        description="Expression for CONDITIONAL edges, e.g. 'approved == true'",
    )
    router: str | Callable[[Mapping[str, Any]], Any] | None = Field(
        default=None,
        description="Registered router name (or callable) for ROUTER edges",
    )
    path_map: dict[str, str | list[str]] = Field(
        default_factory=dict,
        description="Router label -> target node ID(s)",
    )

    safety_critical: bool = False
    flags: list[str] = Field(
        default_factory=list,
        description="Flag channels a safety-critical edge may read",
    )
    flag_values: list[str] = Field(
        default_factory=list,
        description="Closed set of string values allowed in flag channels",
    )

    # Higher priority edges are evaluated first
    priority: int = 0
    description: str = ""

    model_config = {"extra": "allow", "arbitrary_types_allowed": True}

    def targets(self) -> list[str]:
        """Every node this edge can possibly lead to."""
        if self.condition == EdgeCondition.ROUTER:
            found: list[str] = []
            for value in self.path_map.values():
                for target in [value] if isinstance(value, str) else value:
                    if target not in found:
                        found.append(target)
            return found
        return [self.target] if self.target else []

    def routing_view(self, state: Mapping[str, Any]) -> dict[str, Any]:
        """
        Return the part of the state this edge may look at.

        For safety-critical edges only the declared flags are visible, and
        each must hold a typed flag value.
        """
        if not self.safety_critical:
            return dict(state)

        view = {}
        for flag in self.flags:
            value = state.get(flag)
            if isinstance(value, FLAG_TYPES):
                view[flag] = value
            elif isinstance(value, str) and value in self.flag_values:
                view[flag] = value
            else:
                raise RoutingError(
                    f"Edge '{self.id}' is safety-critical but flag '{flag}' holds "
                    f"{type(value).__name__} value {value!r}; expected bool, int, None "
                    f"or one of {self.flag_values}"
                )
        return view

    def should_traverse(self, state: Mapping[str, Any]) -> bool:
        """Decide ALWAYS and CONDITIONAL edges against the post-step state."""
        if self.condition == EdgeCondition.ALWAYS:
            return True

        if self.condition == EdgeCondition.CONDITIONAL:
            return self._evaluate_condition(state)

        return False

    def _evaluate_condition(self, state: Mapping[str, Any]) -> bool:
        if not self.condition_expr:
            return True

        context = {
            "true": True,  # Allow lowercase true/false in conditions
            "false": False,
            "null": None,
            **self.routing_view(state),
        }

        try:
            return bool(safe_eval(self.condition_expr, context))
        except Exception as e:
            if self.safety_critical:
                raise RoutingError(
                    f"Safety-critical condition '{self.condition_expr}' on edge "
                    f"'{self.id}' failed: {e}"
                ) from e
            logger.warning(
                f"Condition evaluation failed on edge '{self.id}': {self.condition_expr} ({e})"
            )
            return False


class GraphSpec(BaseModel):
    """
    Complete, immutable definition of a graph.

    List order of ``nodes`` is the declaration order: it fixes the order in
    which a step's writes are merged and the order of the next active set.

    Example:
        GraphSpec(
            id="review-loop",
            channels=[
                ChannelSpec(name="draft", reducer="overwrite"),
                ChannelSpec(name="notes", reducer="append"),
                ChannelSpec(name="approved", reducer="overwrite", default=False),
            ],
            nodes=[
                NodeSpec(id="write", reads=["notes"], writes=["draft"]),
                NodeSpec(id="review", reads=["draft"], writes=["notes", "approved"]),
                NodeSpec(id="publish", reads=["draft"], writes=["notes"]),
            ],
            edges=[
                EdgeSpec(id="e1", source="write", target="review"),
                EdgeSpec(id="e2", source="review", target="write",
                         condition=EdgeCondition.CONDITIONAL,
                         condition_expr="not approved",
                         safety_critical=True, flags=["approved"]),
                EdgeSpec(id="e3", source="review", target="publish",
                         condition=EdgeCondition.CONDITIONAL,
                         condition_expr="approved",
                         safety_critical=True, flags=["approved"]),
            ],
            entry_nodes=["write"],
            interrupt_before=["publish"],
            interrupt_fallbacks={"publish": "write"},
        )
    """

    id: str
    version: str = "1.0.0"

    channels: list[ChannelSpec] = Field(default_factory=list)
    nodes: list[NodeSpec] = Field(default_factory=list)
    edges: list[EdgeSpec] = Field(default_factory=list)

    entry_nodes: list[str] = Field(default_factory=list, description="Active set of step 0")
    interrupt_before: list[str] = Field(
        default_factory=list, description="Nodes that pause for approval before running"
    )
    interrupt_fallbacks: dict[str, str] = Field(
        default_factory=dict,
        description="Guarded node -> node to route to when its interrupt is rejected",
    )

    description: str = ""

    model_config = {"extra": "allow"}

    def get_node(self, node_id: str) -> NodeSpec | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def node_order(self) -> dict[str, int]:
        """Node ID -> declaration index."""
        return {node.id: index for index, node in enumerate(self.nodes)}

    def sort_nodes(self, node_ids: set[str] | list[str]) -> list[str]:
        """Order node IDs by declaration order, dropping duplicates and END."""
        order = self.node_order()
        unique = {n for n in node_ids if n != END}
        return sorted(unique, key=lambda n: order.get(n, len(order)))

    def get_outgoing_edges(self, node_id: str) -> list[EdgeSpec]:
        """All edges leaving a node, by priority then declaration order."""
        edges = [e for e in self.edges if e.source == node_id]
        return sorted(edges, key=lambda e: -e.priority)

    def validate(self) -> list[str]:
        """Validate the graph structure; returns every problem found."""
        errors: list[str] = []
        node_ids = [n.id for n in self.nodes]
        channel_names = [c.name for c in self.channels]
        known_nodes = set(node_ids)
        known_channels = set(channel_names)

        for dup in sorted({n for n in node_ids if node_ids.count(n) > 1}):
            errors.append(f"Duplicate node ID: '{dup}'")
        for dup in sorted({c for c in channel_names if channel_names.count(c) > 1}):
            errors.append(f"Duplicate channel name: '{dup}'")
        if END in known_nodes:
            errors.append(f"'{END}' is reserved and cannot be a node ID")

        for channel in self.channels:
            if isinstance(channel.reducer, str) and channel.reducer not in BUILTIN_REDUCERS:
                errors.append(
                    f"Channel '{channel.name}' uses unknown reducer '{channel.reducer}'"
                )

        # One untyped channel holding the whole state is a modelling defect
        if len(self.channels) == 1 and self.channels[0].reducer is None:
            errors.append(
                f"Graph state is a single untyped channel '{self.channels[0].name}'; "
                "declare one channel per piece of state with an explicit reducer"
            )

        for node in self.nodes:
            for kind in ("reads", "writes", "triggers"):
                for name in getattr(node, kind):
                    if name not in known_channels:
                        errors.append(f"Node '{node.id}' {kind} unknown channel '{name}'")

        if not self.entry_nodes:
            errors.append("Graph has no entry nodes")
        for entry in self.entry_nodes:
            if entry not in known_nodes:
                errors.append(f"Entry node '{entry}' not found")

        for guarded in self.interrupt_before:
            if guarded not in known_nodes:
                errors.append(f"Interrupt node '{guarded}' not found")
        for guarded, fallback in self.interrupt_fallbacks.items():
            if guarded not in known_nodes:
                errors.append(f"Fallback declared for unknown node '{guarded}'")
            if fallback != END and fallback not in known_nodes:
                errors.append(f"Fallback for '{guarded}' references missing node '{fallback}'")

        for edge in self.edges:
            errors.extend(self._validate_edge(edge, known_nodes, known_channels))

        # Reachability from entry nodes, fallbacks, and trigger-activated nodes
        reachable: set[str] = set()
        to_visit = list(self.entry_nodes) + list(self.interrupt_fallbacks.values())
        to_visit += [n.id for n in self.nodes if n.triggers]
        while to_visit:
            current = to_visit.pop()
            if current in reachable or current == END:
                continue
            reachable.add(current)
            for edge in self.get_outgoing_edges(current):
                to_visit.extend(edge.targets())
        for node in self.nodes:
            if node.id not in reachable:
                errors.append(f"Node '{node.id}' is unreachable from entry")

        return errors

    def _validate_edge(
        self, edge: EdgeSpec, known_nodes: set[str], known_channels: set[str]
    ) -> list[str]:
        errors = []
        if edge.source not in known_nodes:
            errors.append(f"Edge '{edge.id}' references missing source '{edge.source}'")

        if edge.condition == EdgeCondition.ROUTER:
            if edge.router is None:
                errors.append(f"Router edge '{edge.id}' has no router")
            if edge.safety_critical and not edge.path_map:
                errors.append(
                    f"Safety-critical router edge '{edge.id}' needs a closed path_map"
                )
        elif not edge.target:
            errors.append(f"Edge '{edge.id}' has no target")

        for target in edge.targets():
            if target != END and target not in known_nodes:
                errors.append(f"Edge '{edge.id}' references missing target '{target}'")

        if edge.safety_critical:
            if edge.condition == EdgeCondition.ALWAYS:
                errors.append(f"Edge '{edge.id}' is static and cannot be safety-critical")
            if not edge.flags:
                errors.append(f"Safety-critical edge '{edge.id}' declares no flags")
            for flag in edge.flags:
                if flag not in known_channels:
                    errors.append(f"Edge '{edge.id}' flag '{flag}' is not a channel")
            if edge.condition == EdgeCondition.CONDITIONAL and edge.condition_expr:
                try:
                    names = expression_names(edge.condition_expr) - {"true", "false", "null"}
                except SyntaxError as e:
                    errors.append(f"Edge '{edge.id}' condition does not parse: {e}")
                else:
                    extra = names - set(edge.flags)
                    if extra:
                        errors.append(
                            f"Safety-critical edge '{edge.id}' reads non-flag names "
                            f"{sorted(extra)}"
                        )
        return errors
