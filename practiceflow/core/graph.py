"""
Workflow Graph

Adjacency-list view over a workflow's blocks and connections, built and
validated when a workflow is saved and rebuilt by the Step Executor on each
tick.

Validation rejects:
- duplicate block ids
- connections that reference unknown blocks
- more than one trigger block, or connections into the trigger
- more than one outgoing connection from a non-conditional block
- conditional connections without a "true"/"false" port, or two per port
- cycles
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from .exceptions import GraphValidationError
from .nodes import Connection, ConditionalNode, NodeType, TriggerNode, create_node_from_dict

logger = logging.getLogger(__name__)

START_STEP = "start"


class WorkflowGraph:
    """
    Parsed and validated workflow graph.

    Example:
        >>> graph = WorkflowGraph.from_definition(
        ...     blocks=[{"id": "t", "type": "trigger"},
        ...             {"id": "wait", "type": "delay", "config": {"value": 1, "unit": "days"}}],
        ...     connections=[{"from": "t", "to": "wait"}],
        ... )
        >>> graph.next_block("t")
        'wait'
    """

    def __init__(self, nodes: Dict[str, NodeType], connections: List[Connection]):
        self.nodes = nodes
        self.connections = connections
        self._outgoing: Dict[str, List[Connection]] = {block_id: [] for block_id in nodes}
        for connection in connections:
            self._outgoing.setdefault(connection.source, []).append(connection)

    @classmethod
    def from_definition(
        cls,
        blocks: Optional[Iterable[Dict[str, Any]]],
        connections: Optional[Iterable[Dict[str, Any]]],
    ) -> "WorkflowGraph":
        """
        Parse stored blocks and connections and validate the result.

        Raises:
            GraphValidationError: If any block or connection is invalid
        """
        nodes: Dict[str, NodeType] = {}
        for block in blocks or []:
            block_id = block.get("id") if isinstance(block, dict) else None
            if block_id in nodes:
                raise GraphValidationError(f"Duplicate block id: {block_id}", block_id=block_id)
            try:
                node = create_node_from_dict(block)
            except (ValueError, TypeError, AttributeError) as e:
                raise GraphValidationError(f"Invalid block {block_id}: {e}", block_id=block_id)
            nodes[node.id] = node

        edges: List[Connection] = []
        for raw in connections or []:
            try:
                edges.append(Connection.model_validate(raw))
            except (ValueError, TypeError) as e:
                raise GraphValidationError(f"Invalid connection {raw}: {e}")

        graph = cls(nodes, edges)
        graph.validate()
        return graph

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self) -> None:
        triggers = [n for n in self.nodes.values() if isinstance(n, TriggerNode)]
        if len(triggers) > 1:
            raise GraphValidationError(
                f"Workflow can have at most one trigger block (found {len(triggers)})",
                block_id=triggers[1].id,
            )

        for connection in self.connections:
            for end in (connection.source, connection.target):
                if end not in self.nodes:
                    raise GraphValidationError(
                        f"Connection references non-existent block: {end}", block_id=end
                    )
            if isinstance(self.nodes[connection.target], TriggerNode):
                raise GraphValidationError(
                    f"Connection into trigger block {connection.target}",
                    block_id=connection.target,
                )

        for block_id, node in self.nodes.items():
            outgoing = self._outgoing.get(block_id, [])
            if isinstance(node, ConditionalNode):
                self._validate_branches(block_id, outgoing)
            elif len(outgoing) > 1:
                raise GraphValidationError(
                    f"Block {block_id} has {len(outgoing)} outgoing connections; "
                    f"only conditional blocks may branch",
                    block_id=block_id,
                )

        self._check_acyclic()
        logger.debug(f"Graph validation passed: {len(self.nodes)} blocks, {len(self.connections)} connections")

    def _validate_branches(self, block_id: str, outgoing: List[Connection]) -> None:
        seen = set()
        for connection in outgoing:
            branch = connection.branch
            if branch is None:
                raise GraphValidationError(
                    f"Conditional block {block_id} has a connection without a "
                    f"'true'/'false' port: {connection.from_port!r}",
                    block_id=block_id,
                )
            if branch in seen:
                raise GraphValidationError(
                    f"Conditional block {block_id} has two '{branch}' connections",
                    block_id=block_id,
                )
            seen.add(branch)

    def _check_acyclic(self) -> None:
        # Iterative DFS with white/grey/black marking
        state: Dict[str, int] = {block_id: 0 for block_id in self.nodes}
        for root in self.nodes:
            if state[root]:
                continue
            stack = [(root, iter(self.successors(root)))]
            state[root] = 1
            while stack:
                block_id, children = stack[-1]
                child = next(children, None)
                if child is None:
                    state[block_id] = 2
                    stack.pop()
                elif state[child] == 1:
                    raise GraphValidationError(
                        f"Cycle detected through block {child}", block_id=child
                    )
                elif state[child] == 0:
                    state[child] = 1
                    stack.append((child, iter(self.successors(child))))

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    @property
    def trigger(self) -> Optional[TriggerNode]:
        for node in self.nodes.values():
            if isinstance(node, TriggerNode):
                return node
        return None

    def get(self, block_id: str) -> Optional[NodeType]:
        return self.nodes.get(block_id)

    def resolve_step(self, step: Optional[str]) -> Optional[NodeType]:
        """Map an enrollment's ``current_step`` to its block ("start" is the trigger)."""
        if step is None or step == START_STEP:
            return self.trigger
        return self.nodes.get(step)

    def successors(self, block_id: str) -> List[str]:
        return [c.target for c in self._outgoing.get(block_id, [])]

    def next_block(self, block_id: str) -> Optional[str]:
        """Single successor of a non-branching block, or None at the end of the graph."""
        outgoing = self._outgoing.get(block_id, [])
        return outgoing[0].target if outgoing else None

    def branch_target(self, block_id: str, result: bool) -> Optional[str]:
        """Successor of a conditional block for the given result, or None."""
        wanted = "true" if result else "false"
        for connection in self._outgoing.get(block_id, []):
            if connection.branch == wanted:
                return connection.target
        return None

    def __len__(self) -> int:
        return len(self.nodes)

    def __repr__(self) -> str:
        return f"<WorkflowGraph(blocks={len(self.nodes)}, connections={len(self.connections)})>"
