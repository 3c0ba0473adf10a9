"""Workflow graph stored as an arena: integer node indices plus a separate edge list."""

import heapq
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, TYPE_CHECKING

if TYPE_CHECKING:
    from .definition import WorkflowDefinition


@dataclass
class GraphEdge:
    """Directed edge between two node indices."""
    index: int
    source: int
    target: int
    data: Any = None  # EdgeDefinition when built from a workflow


@dataclass
class GraphNode:
    """A node in the arena. ``inbound``/``outbound`` hold edge indices."""
    index: int
    id: str
    data: Any = None  # NodeDefinition when built from a workflow
    inbound: List[int] = field(default_factory=list)
    outbound: List[int] = field(default_factory=list)


class WorkflowGraph:
    """Directed graph of workflow nodes.

    Nodes keep their declaration order as their index, which makes the
    topological order deterministic: among nodes that are ready at the same
    time, the one declared first comes first.
    """

    def __init__(self, nodes: List[GraphNode], edges: List[GraphEdge]):
        self.nodes = nodes
        self.edges = edges

    @classmethod
    def build(
        cls,
        node_ids: Sequence[str],
        edges: Iterable[Tuple[str, str]],
        node_data: Optional[Sequence[Any]] = None,
        edge_data: Optional[Sequence[Any]] = None,
    ) -> "WorkflowGraph":
        """Build from node ids and (source, target) pairs.

        Raises:
            ValueError: on duplicate node ids or edges to unknown nodes
        """
        nodes: List[GraphNode] = []
        index: Dict[str, int] = {}
        for i, node_id in enumerate(node_ids):
            if node_id in index:
                raise ValueError(f"Duplicate node id '{node_id}'")
            index[node_id] = i
            nodes.append(GraphNode(i, node_id, node_data[i] if node_data is not None else None))

        graph_edges: List[GraphEdge] = []
        for i, (source, target) in enumerate(edges):
            if source not in index:
                raise ValueError(f"Edge references non-existent node '{source}'")
            if target not in index:
                raise ValueError(f"Edge references non-existent node '{target}'")
            edge = GraphEdge(i, index[source], index[target], edge_data[i] if edge_data is not None else None)
            graph_edges.append(edge)
            nodes[edge.source].outbound.append(i)
            nodes[edge.target].inbound.append(i)

        return cls(nodes, graph_edges)

    @classmethod
    def from_definition(cls, definition: "WorkflowDefinition") -> "WorkflowGraph":
        """Build the execution graph; the definition must already be validated."""
        graph = cls.build(
            [node.id for node in definition.nodes],
            [(edge.source, edge.target) for edge in definition.edges],
            node_data=definition.nodes,
            edge_data=definition.edges,
        )
        cycle = graph.find_cycle()
        if cycle:
            raise ValueError(f"Workflow contains a cycle: {' -> '.join(cycle)}")
        return graph

    def __len__(self) -> int:
        return len(self.nodes)

    def successors(self, index: int) -> List[int]:
        return [self.edges[e].target for e in self.nodes[index].outbound]

    def find_cycle(self) -> Optional[List[str]]:
        """Return the node ids of one cycle (first node repeated at the end), or None."""
        WHITE, GRAY, BLACK = 0, 1, 2
        color = [WHITE] * len(self.nodes)

        # Iterative DFS so long chains don't hit the recursion limit
        for start in range(len(self.nodes)):
            if color[start] != WHITE:
                continue
            path: List[int] = [start]
            pending = [iter(self.successors(start))]
            color[start] = GRAY
            while pending:
                succ = next(pending[-1], None)
                if succ is None:
                    color[path.pop()] = BLACK
                    pending.pop()
                elif color[succ] == GRAY:
                    # Back edge found (cycle)
                    cycle = path[path.index(succ):] + [succ]
                    return [self.nodes[i].id for i in cycle]
                elif color[succ] == WHITE:
                    color[succ] = GRAY
                    path.append(succ)
                    pending.append(iter(self.successors(succ)))
        return None

    def topological_order(self) -> List[int]:
        """Kahn's algorithm; ties broken by declaration order.

        Raises:
            ValueError: if the graph contains a cycle
        """
        in_degree = [len(node.inbound) for node in self.nodes]
        ready = [node.index for node in self.nodes if in_degree[node.index] == 0]
        heapq.heapify(ready)

        order: List[int] = []
        while ready:
            current = heapq.heappop(ready)
            order.append(current)
            for succ in self.successors(current):
                in_degree[succ] -= 1
                if in_degree[succ] == 0:
                    heapq.heappush(ready, succ)

        if len(order) != len(self.nodes):
            raise ValueError("Workflow contains a cycle")
        return order

    def is_terminal(self, index: int) -> bool:
        """True if the node has no outgoing edges."""
        return not self.nodes[index].outbound
