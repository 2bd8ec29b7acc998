"""Graph visualization tools."""

from typing import Iterable, List

from relaygraph.core.graph.checkpoint import Checkpoint
from relaygraph.core.graph.compiler import ExecutionPlan
from relaygraph.core.graph.edges import END, START


def _node_id(name: str) -> str:
    return "".join(ch if ch.isalnum() or ch == "_" else "_" for ch in name)


class GraphVisualizer:
    """Visualize graph structure and execution."""

    def __init__(self, plan: ExecutionPlan):
        self.plan = plan

    def render_graph(self) -> str:
        """Mermaid flowchart; conditional edges are dotted and labelled by router."""
        lines: List[str] = ["flowchart TD"]
        lines.append(f"    {_node_id(START)}([start])")
        for name in self.plan.nodes:
            lines.append(f"    {_node_id(name)}[{name}]")
        lines.append(f"    {_node_id(END)}([end])")

        lines.append(f"    {_node_id(START)} --> {_node_id(self.plan.entry_point)}")
        for source, targets in self.plan.edges.items():
            for target in targets:
                lines.append(f"    {_node_id(source)} --> {_node_id(target)}")
        for source, branches in self.plan.branches.items():
            for branch in branches:
                targets = branch.static_targets()
                if targets is None:
                    lines.append(f"    {_node_id(source)} -.->|{branch.name}| {_node_id(source)}_dynamic{{?}}")
                    continue
                for target in targets:
                    lines.append(f"    {_node_id(source)} -.->|{branch.name}| {_node_id(target)}")
        return "\n".join(lines)

    def render_execution(self, checkpoints: Iterable[Checkpoint]) -> str:
        """One line per checkpoint: sequence, source, step and pending nodes."""
        lines = []
        for checkpoint in checkpoints:
            source = checkpoint.metadata.get("source", "?")
            step = checkpoint.metadata.get("step", "?")
            pending = ", ".join(checkpoint.pending_nodes) or "-"
            lines.append(
                f"#{checkpoint.sequence_number} [{source} step {step}] "
                f"fields={sorted(checkpoint.state)} pending={pending}"
            )
        return "\n".join(lines)
